"""
Membership: the (user, property, unit) relation carrying a role set.

Flow:
1. A membership is created when an invitation is accepted, or by a direct grant
2. Later grants on the same (user, property, unit) merge roles into the same row
3. Deactivation keeps the row and its roles for audit; it grants nothing while inactive
"""

from typing import FrozenSet, Optional

from sqlalchemy import JSON, Boolean, Column, DateTime, ForeignKey, Index, String, UniqueConstraint

from leaselogix.core.rbac import PropertyRole
from leaselogix.models.base import Base, utcnow

# Placeholder for a null property/unit inside scope_key
ANY_SCOPE = "*"


class Membership(Base):
    __tablename__ = "memberships"

    id = Column(String, primary_key=True)

    user_id = Column(String, ForeignKey("users.id"), nullable=False, index=True)
    # Null only for a platform-wide admin_access grant
    property_id = Column(String, ForeignKey("properties.id"), nullable=True, index=True)
    # Null means property-wide
    unit_id = Column(String, ForeignKey("units.id"), nullable=True, index=True)

    # "{property or *}:{unit or *}" so that NULLs cannot defeat the unique index
    scope_key = Column(String, nullable=False)

    # Sorted list of PropertyRole values
    roles = Column(JSON, nullable=False, default=list)
    # Optional per-grant overrides, e.g. ["rent:read"]
    permissions = Column(JSON, nullable=True)

    is_active = Column(Boolean, nullable=False, default=True)
    invited_by = Column(String, ForeignKey("users.id"), nullable=True)

    start_date = Column(DateTime(timezone=True), nullable=False, default=utcnow)
    end_date = Column(DateTime(timezone=True), nullable=True)
    deactivated_at = Column(DateTime(timezone=True), nullable=True)
    deactivated_by = Column(String, ForeignKey("users.id"), nullable=True)

    created_at = Column(DateTime(timezone=True), nullable=False, default=utcnow)
    updated_at = Column(DateTime(timezone=True), nullable=False, default=utcnow, onupdate=utcnow)

    __table_args__ = (
        UniqueConstraint("user_id", "scope_key", name="uq_memberships_user_scope"),
        Index("ix_memberships_property_active", "property_id", "is_active"),
    )

    @staticmethod
    def make_scope_key(property_id: Optional[str], unit_id: Optional[str]) -> str:
        return f"{property_id or ANY_SCOPE}:{unit_id or ANY_SCOPE}"

    @property
    def role_set(self) -> FrozenSet[PropertyRole]:
        return frozenset(PropertyRole(value) for value in (self.roles or []))

    def set_roles(self, roles) -> None:
        # Always assign a new list; in-place mutation of a JSON column is not tracked
        self.roles = sorted(PropertyRole(role).value for role in roles)
