from sqlalchemy import Boolean, Column, DateTime, ForeignKey, String, Text

from leaselogix.models.base import Base, utcnow


class UserNotification(Base):
    """In-app notifications (invitation received, accepted, declined, revoked)."""

    __tablename__ = "user_notifications"

    id = Column(String, primary_key=True)
    user_id = Column(String, ForeignKey("users.id"), nullable=False, index=True)

    type = Column(String, nullable=False, index=True)
    title = Column(String, nullable=False)
    message = Column(Text, nullable=False)

    # Optional link to navigate to
    link = Column(String, nullable=True)

    # Related entity (for context)
    resource_kind = Column(String, nullable=True)
    resource_id = Column(String, nullable=True)

    is_read = Column(Boolean, nullable=False, default=False)
    read_at = Column(DateTime(timezone=True), nullable=True)

    created_at = Column(DateTime(timezone=True), nullable=False, default=utcnow)
