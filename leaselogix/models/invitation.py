"""
Invitation model.

Tracks invitations that grant property roles:
- Target (email, role set, property, unit)
- Hash of the single-use token; the plain token only ever travels in the email link
- Status tracking (pending, accepted, declined, cancelled, expired)
- Audit trail (created_by, accepted_by, revoked_by, attempts, resends)
"""

from enum import Enum
from typing import FrozenSet, Iterable, Optional

from sqlalchemy import JSON, Column, DateTime, ForeignKey, Index, Integer, String, Text, text

from leaselogix.core.rbac import PropertyRole
from leaselogix.models.base import Base, utcnow


class InvitationStatus(str, Enum):
    PENDING = "pending"
    ACCEPTED = "accepted"
    DECLINED = "declined"
    CANCELLED = "cancelled"
    EXPIRED = "expired"


class Invitation(Base):
    """
    Property-role invitation.

    Flow:
    1. A landlord, manager or admin issues an invitation for an email and role set
    2. The invitee receives a link carrying the token
    3. The invitee verifies the token, then accepts (creating an account if needed) or declines
    4. Acceptance materializes one membership role per invited role
    """
    __tablename__ = "invitations"

    id = Column(String, primary_key=True)

    # Who is being invited (case-folded)
    email = Column(String, nullable=False, index=True)
    phone = Column(String, nullable=True)

    # What they are invited to
    roles = Column(JSON, nullable=False)
    property_id = Column(String, ForeignKey("properties.id"), nullable=True, index=True)
    unit_id = Column(String, ForeignKey("units.id"), nullable=True)
    # "{property or *}:{unit or *}:{sorted roles}" backs the one-pending-per-target index
    target_key = Column(String, nullable=False)

    message = Column(Text, nullable=True)

    # SHA-256 of the token
    token_hash = Column(String, unique=True, nullable=False, index=True)
    expires_at = Column(DateTime(timezone=True), nullable=False)

    status = Column(String, nullable=False, default=InvitationStatus.PENDING.value, index=True)

    created_by = Column(String, ForeignKey("users.id"), nullable=False, index=True)
    created_at = Column(DateTime(timezone=True), nullable=False, default=utcnow)
    updated_at = Column(DateTime(timezone=True), nullable=False, default=utcnow, onupdate=utcnow)

    accepted_by = Column(String, ForeignKey("users.id"), nullable=True)
    accepted_at = Column(DateTime(timezone=True), nullable=True)

    revoked_by = Column(String, ForeignKey("users.id"), nullable=True)
    revoked_at = Column(DateTime(timezone=True), nullable=True)

    declined_at = Column(DateTime(timezone=True), nullable=True)
    decline_reason = Column(Text, nullable=True)

    # Token lookups from the public endpoints
    attempt_count = Column(Integer, nullable=False, default=0)
    last_attempt_at = Column(DateTime(timezone=True), nullable=True)

    resend_count = Column(Integer, nullable=False, default=0)
    last_resend_at = Column(DateTime(timezone=True), nullable=True)

    __table_args__ = (
        Index(
            "uq_invitations_pending_target",
            "email",
            "target_key",
            unique=True,
            postgresql_where=text("status = 'pending'"),
            sqlite_where=text("status = 'pending'"),
        ),
        Index("ix_invitations_property_status", "property_id", "status"),
    )

    @staticmethod
    def make_target_key(
        property_id: Optional[str],
        unit_id: Optional[str],
        roles: Iterable[PropertyRole],
    ) -> str:
        role_part = ",".join(sorted(PropertyRole(role).value for role in roles))
        return f"{property_id or '*'}:{unit_id or '*'}:{role_part}"

    @property
    def role_set(self) -> FrozenSet[PropertyRole]:
        return frozenset(PropertyRole(value) for value in (self.roles or []))

    @property
    def is_pending(self) -> bool:
        return self.status == InvitationStatus.PENDING.value
