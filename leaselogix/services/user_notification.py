import logging
from typing import Optional

from sqlalchemy.exc import SQLAlchemyError
from sqlalchemy.ext.asyncio import AsyncSession

from leaselogix.models.base import new_id
from leaselogix.models.user_notification import UserNotification

logger = logging.getLogger(__name__)


class NotificationType:
    INVITATION_RECEIVED = "invitation_received"
    INVITATION_ACCEPTED = "invitation_accepted"
    INVITATION_DECLINED = "invitation_declined"
    INVITATION_REVOKED = "invitation_revoked"


class UserNotificationService:
    def __init__(self, db: AsyncSession):
        self.db = db

    async def create_notification(
        self,
        user_id: str,
        type: str,
        title: str,
        message: str,
        link: Optional[str] = None,
        resource_kind: Optional[str] = None,
        resource_id: Optional[str] = None,
        commit: bool = True,
    ) -> Optional[UserNotification]:
        """Create an in-app notification. Failures are logged, never raised."""
        notification = UserNotification(
            id=new_id(),
            user_id=user_id,
            type=type,
            title=title,
            message=message,
            link=link,
            resource_kind=resource_kind,
            resource_id=resource_id,
        )
        try:
            async with self.db.begin_nested():
                self.db.add(notification)
            if commit:
                await self.db.commit()
        except SQLAlchemyError as exc:
            logger.warning("Failed to create %s notification for user %s: %s", type, user_id, exc)
            if commit:
                await self.db.rollback()
            return None
        return notification
