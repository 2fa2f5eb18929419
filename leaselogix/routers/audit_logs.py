"""
Audit Events Router - admin review of the action event trail.
"""

from datetime import datetime
from typing import Literal, Optional

from fastapi import APIRouter, Depends, Query
from sqlalchemy.ext.asyncio import AsyncSession

from leaselogix.api import deps
from leaselogix.core.db import get_db
from leaselogix.core.rbac import Action, ResourceKind
from leaselogix.schemas.audit_log import ActionEventFilter, ActionEventListResponse
from leaselogix.services.audit_log_service import AuditLogService
from leaselogix.services.principal import Principal

router = APIRouter()


async def _service(db: AsyncSession = Depends(get_db)) -> AuditLogService:
    return AuditLogService(db)


@router.get("", response_model=ActionEventListResponse)
async def list_action_events(
    service: AuditLogService = Depends(_service),
    page: int = Query(1, ge=1, description="Page number"),
    page_size: int = Query(50, ge=1, le=100, description="Items per page"),
    kind: Optional[str] = Query(None, description="Filter by event kind, e.g. invite.sent"),
    actor_id: Optional[str] = Query(None, description="Filter by actor"),
    resource_kind: Optional[str] = Query(None, description="Filter by resource kind"),
    resource_id: Optional[str] = Query(None, description="Filter by resource id"),
    status: Optional[Literal["success", "failure", "denied"]] = Query(None, description="Filter by status"),
    start_date: Optional[datetime] = Query(None, description="Start date filter"),
    end_date: Optional[datetime] = Query(None, description="End date filter"),
    _principal: Principal = Depends(deps.require_permission(ResourceKind.ACTION_EVENT, Action.LIST)),
) -> ActionEventListResponse:
    """List action events, newest first. Admin only."""
    filters = ActionEventFilter(
        kind=kind,
        actor_id=actor_id,
        resource_kind=resource_kind,
        resource_id=resource_id,
        status=status,
        start_date=start_date,
        end_date=end_date,
    )
    return await service.list_events(filters=filters, page=page, page_size=page_size)
