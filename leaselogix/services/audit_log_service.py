"""
Audit log service.

Provides methods for:
- Recording action events inside the caller's unit of work (``record``)
- Recording and committing on its own, e.g. for denials (``emit``)
- Listing action events with filtering and pagination
"""

import logging
from typing import Any, Dict, Optional

from sqlalchemy import desc, func, select
from sqlalchemy.exc import SQLAlchemyError
from sqlalchemy.ext.asyncio import AsyncSession

from leaselogix.models.audit_log import ActionEvent
from leaselogix.models.base import new_id, utcnow
from leaselogix.schemas.audit_log import ActionEventFilter, ActionEventListResponse, ActionEventResponse

logger = logging.getLogger(__name__)


class AuditAction:
    INVITE_SENT = "invite.sent"
    INVITE_ACCEPTED = "invite.accepted"
    INVITE_DECLINED = "invite.declined"
    INVITE_REVOKED = "invite.revoked"
    INVITE_EXPIRED = "invite.expired"
    INVITE_RESENT = "invite.resent"
    MEMBERSHIP_CREATED = "membership.created"
    MEMBERSHIP_UPDATED = "membership.updated"
    MEMBERSHIP_DEACTIVATED = "membership.deactivated"
    AUTHORIZATION_DENIED = "authorization.denied"
    USER_CREATED = "user.created"


class AuditLogService:
    """Append-only writer and reader for action events."""

    def __init__(self, db: AsyncSession):
        self.db = db

    async def record(
        self,
        kind: str,
        actor_id: Optional[str] = None,
        actor_email: Optional[str] = None,
        resource_kind: Optional[str] = None,
        resource_id: Optional[str] = None,
        old_value: Optional[Dict[str, Any]] = None,
        new_value: Optional[Dict[str, Any]] = None,
        description: Optional[str] = None,
        ip_address: Optional[str] = None,
        user_agent: Optional[str] = None,
        status: str = "success",
        error_message: Optional[str] = None,
        metadata: Optional[Dict[str, Any]] = None,
    ) -> Optional[ActionEvent]:
        """
        Add an action event to the current transaction.

        The insert runs in a SAVEPOINT so that a failing audit write never aborts
        the surrounding work; failures are logged and None is returned. The caller
        commits.
        """
        event = ActionEvent(
            id=new_id(),
            timestamp=utcnow(),
            kind=kind,
            actor_id=actor_id,
            actor_email=actor_email,
            resource_kind=resource_kind,
            resource_id=resource_id,
            old_value=old_value,
            new_value=new_value,
            description=description,
            ip_address=ip_address,
            user_agent=user_agent,
            status=status,
            error_message=error_message,
            extra_data=metadata,
        )
        try:
            async with self.db.begin_nested():
                self.db.add(event)
        except SQLAlchemyError as exc:
            logger.warning("Failed to record action event %s for %s:%s: %s", kind, resource_kind, resource_id, exc)
            return None
        return event

    async def emit(self, kind: str, **kwargs: Any) -> Optional[ActionEvent]:
        """Record an event and commit it immediately."""
        event = await self.record(kind, **kwargs)
        if event is None:
            return None
        try:
            await self.db.commit()
        except SQLAlchemyError as exc:
            logger.warning("Failed to commit action event %s: %s", kind, exc)
            await self.db.rollback()
            return None
        return event

    async def list_events(
        self,
        filters: Optional[ActionEventFilter] = None,
        page: int = 1,
        page_size: int = 50,
    ) -> ActionEventListResponse:
        """List action events, newest first."""
        query = select(ActionEvent)
        count_query = select(func.count(ActionEvent.id))

        conditions = []
        if filters:
            if filters.kind:
                conditions.append(ActionEvent.kind == filters.kind)
            if filters.actor_id:
                conditions.append(ActionEvent.actor_id == filters.actor_id)
            if filters.resource_kind:
                conditions.append(ActionEvent.resource_kind == filters.resource_kind)
            if filters.resource_id:
                conditions.append(ActionEvent.resource_id == filters.resource_id)
            if filters.status:
                conditions.append(ActionEvent.status == filters.status)
            if filters.start_date:
                conditions.append(ActionEvent.timestamp >= filters.start_date)
            if filters.end_date:
                conditions.append(ActionEvent.timestamp <= filters.end_date)

        if conditions:
            query = query.where(*conditions)
            count_query = count_query.where(*conditions)

        total_result = await self.db.execute(count_query)
        total = total_result.scalar() or 0

        offset = (page - 1) * page_size
        query = query.order_by(desc(ActionEvent.timestamp)).offset(offset).limit(page_size)
        result = await self.db.execute(query)
        events = result.scalars().all()

        total_pages = (total + page_size - 1) // page_size if total > 0 else 1

        return ActionEventListResponse(
            items=[ActionEventResponse.model_validate(event) for event in events],
            total=total,
            page=page,
            page_size=page_size,
            total_pages=total_pages,
        )
