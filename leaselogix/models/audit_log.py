"""
Action event model for the append-only audit trail.

Records every membership and invitation mutation, plus authorization denials
that matter for security:
- invite.sent, invite.accepted, invite.declined, invite.revoked, invite.expired, invite.resent
- membership.created, membership.updated, membership.deactivated
- authorization.denied
- user.created, user.password_reset
"""

from sqlalchemy import JSON, Column, DateTime, Index, String, Text

from leaselogix.models.base import Base, utcnow


class ActionEvent(Base):
    """
    One audited action.

    Rows are only ever inserted; nothing in the service layer updates or deletes them.
    """
    __tablename__ = "action_events"

    id = Column(String, primary_key=True)

    # When
    timestamp = Column(DateTime(timezone=True), nullable=False, default=utcnow, index=True)

    # Who (null for anonymous actions such as a public decline)
    actor_id = Column(String, nullable=True, index=True)
    actor_email = Column(String, nullable=True)

    # What
    kind = Column(String, nullable=False, index=True)
    resource_kind = Column(String, nullable=True)
    resource_id = Column(String, nullable=True, index=True)
    old_value = Column(JSON, nullable=True)
    new_value = Column(JSON, nullable=True)
    description = Column(Text, nullable=True)

    # Where
    ip_address = Column(String, nullable=True)
    user_agent = Column(String, nullable=True)
    request_id = Column(String, nullable=True)

    # success | failure | denied
    status = Column(String, nullable=False, default="success", index=True)
    error_message = Column(Text, nullable=True)

    # "metadata" is reserved on declarative classes
    extra_data = Column("metadata", JSON, nullable=True)

    __table_args__ = (
        Index("ix_action_events_resource", "resource_kind", "resource_id"),
    )
