"""
Invitations Router - API endpoints for property-role invitations.

Provides endpoints for:
- Issuing invitations (landlords, property managers, admins)
- Listing invitations in the caller's scope
- Cancelling and resending pending invitations (issuer or admin)
"""

from typing import Literal, Optional

from fastapi import APIRouter, Depends, Query, status

from leaselogix.api import deps
from leaselogix.schemas.invitation import (
    InvitationCreate,
    InvitationListResponse,
    InvitationResponse,
    InvitationStats,
    ResendInvitationResponse,
)
from leaselogix.services.invitation_service import InvitationService
from leaselogix.services.principal import Principal

router = APIRouter()


@router.post("", response_model=InvitationResponse, status_code=status.HTTP_201_CREATED)
async def create_invitation(
    data: InvitationCreate,
    service: InvitationService = Depends(deps.get_invitation_service),
    principal: Principal = Depends(deps.get_current_principal),
) -> InvitationResponse:
    """
    Issue an invitation.

    The caller must be allowed to grant every requested role on the target
    property or unit. The token is only ever sent to the invitee.
    """
    return await service.issue(data, principal)


@router.get("", response_model=InvitationListResponse)
async def list_invitations(
    service: InvitationService = Depends(deps.get_invitation_service),
    principal: Principal = Depends(deps.get_current_principal),
    status_filter: Optional[Literal["pending", "accepted", "declined", "cancelled", "expired"]] = Query(
        None, alias="status", description="Filter by status"
    ),
    property_id: Optional[str] = Query(None, description="Filter by property"),
    email: Optional[str] = Query(None, description="Filter by invitee email"),
    page: int = Query(1, ge=1),
    page_size: int = Query(50, ge=1, le=100),
) -> InvitationListResponse:
    """List invitations on properties the caller manages, or that the caller issued."""
    return await service.list_invitations(
        principal,
        status=status_filter,
        property_id=property_id,
        email=email,
        page=page,
        page_size=page_size,
    )


@router.get("/stats", response_model=InvitationStats)
async def get_invitation_stats(
    service: InvitationService = Depends(deps.get_invitation_service),
    principal: Principal = Depends(deps.get_current_principal),
) -> InvitationStats:
    return await service.get_invitation_stats(principal)


@router.patch("/{invitation_id}/cancel", response_model=InvitationResponse)
async def cancel_invitation(
    invitation_id: str,
    service: InvitationService = Depends(deps.get_invitation_service),
    principal: Principal = Depends(deps.get_current_principal),
) -> InvitationResponse:
    """Cancel a pending invitation."""
    return await service.cancel(invitation_id, principal)


@router.post("/{invitation_id}/resend", response_model=ResendInvitationResponse)
async def resend_invitation(
    invitation_id: str,
    service: InvitationService = Depends(deps.get_invitation_service),
    principal: Principal = Depends(deps.get_current_principal),
) -> ResendInvitationResponse:
    """
    Resend an invitation email.

    Generates a new token and extends expiration.
    """
    return await service.resend(invitation_id, principal)
