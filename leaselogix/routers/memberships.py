"""
Memberships Router - direct administration of property roles.

Provides endpoints for:
- Granting roles (merged into an existing membership when one exists)
- Listing memberships in the caller's scope
- Updating roles or the active flag
- Deactivating a membership
"""

from typing import Optional

from fastapi import APIRouter, Depends, Query, Response, status
from sqlalchemy.ext.asyncio import AsyncSession

from leaselogix.api import deps
from leaselogix.core.db import get_db
from leaselogix.schemas.membership import (
    MembershipGrantRequest,
    MembershipGrantResponse,
    MembershipListResponse,
    MembershipResponse,
    MembershipUpdate,
)
from leaselogix.services.authorization import AuthorizationEngine
from leaselogix.services.membership_service import MembershipService
from leaselogix.services.membership_store import MembershipStore
from leaselogix.services.principal import Principal

router = APIRouter()


async def _service(
    db: AsyncSession = Depends(get_db),
    store: MembershipStore = Depends(deps.get_membership_store),
    engine: AuthorizationEngine = Depends(deps.get_engine),
) -> MembershipService:
    return MembershipService(db, engine=engine, store=store)


@router.post("", response_model=MembershipGrantResponse, status_code=status.HTTP_201_CREATED)
async def grant_membership(
    data: MembershipGrantRequest,
    response: Response,
    service: MembershipService = Depends(_service),
    principal: Principal = Depends(deps.get_current_principal),
) -> MembershipGrantResponse:
    """
    Grant property roles directly.

    Returns 201 when a membership was created, 200 when roles were merged into
    an existing one.
    """
    result = await service.grant(data, principal)
    if not result.created:
        response.status_code = status.HTTP_200_OK
    return result


@router.get("", response_model=MembershipListResponse)
async def list_memberships(
    service: MembershipService = Depends(_service),
    principal: Principal = Depends(deps.get_current_principal),
    property_id: Optional[str] = Query(None, description="Filter by property"),
    user_id: Optional[str] = Query(None, description="Filter by user"),
    include_inactive: bool = Query(False),
    page: int = Query(1, ge=1),
    page_size: int = Query(50, ge=1, le=100),
) -> MembershipListResponse:
    return await service.list_memberships(
        principal,
        property_id=property_id,
        user_id=user_id,
        include_inactive=include_inactive,
        page=page,
        page_size=page_size,
    )


@router.put("/{membership_id}", response_model=MembershipResponse)
async def update_membership(
    membership_id: str,
    data: MembershipUpdate,
    service: MembershipService = Depends(_service),
    principal: Principal = Depends(deps.get_current_principal),
) -> MembershipResponse:
    return await service.update(membership_id, data, principal)


@router.delete("/{membership_id}", response_model=MembershipResponse)
async def deactivate_membership(
    membership_id: str,
    service: MembershipService = Depends(_service),
    principal: Principal = Depends(deps.get_current_principal),
) -> MembershipResponse:
    """Deactivate a membership. Roles are kept for the audit trail."""
    return await service.deactivate(membership_id, principal)
