"""
Principal resolution.

Turns a validated session token into the per-request ``Principal``: the user's
global role, flags, active membership snapshot and a decision cache.
"""

import logging
from dataclasses import dataclass, field
from typing import Any, Dict, FrozenSet, Optional, Sequence, Tuple

from sqlalchemy.ext.asyncio import AsyncSession

from leaselogix.core.errors import ForbiddenError, ForbiddenReason, UnauthenticatedError
from leaselogix.core.rbac import GlobalRole, PropertyRole
from leaselogix.core.security import decode_access_token
from leaselogix.models.base import same_id
from leaselogix.models.membership import Membership
from leaselogix.models.user import User
from leaselogix.services.membership_store import MembershipStore

logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class MembershipGrant:
    """Immutable snapshot of one active membership."""
    id: str
    property_id: Optional[str]
    unit_id: Optional[str]
    roles: FrozenSet[PropertyRole]

    @classmethod
    def from_model(cls, membership: Membership) -> "MembershipGrant":
        return cls(
            id=membership.id,
            property_id=membership.property_id,
            unit_id=membership.unit_id,
            roles=membership.role_set,
        )

    def applies_to_property(self, property_id: Optional[str]) -> bool:
        # A property-less admin_access grant covers every property
        if self.property_id is None:
            return PropertyRole.ADMIN_ACCESS in self.roles
        return same_id(self.property_id, property_id)


@dataclass
class Principal:
    user_id: str
    email: str
    global_role: GlobalRole
    is_email_verified: bool
    is_active: bool
    # None until loaded; the engine loads it at most once per request
    memberships: Optional[Tuple[MembershipGrant, ...]] = None
    ip_address: Optional[str] = None
    capability_cache: Dict[Any, Any] = field(default_factory=dict, repr=False)

    @property
    def is_admin(self) -> bool:
        return self.global_role == GlobalRole.ADMIN

    def grants_on(self, property_id: Optional[str]) -> Tuple[MembershipGrant, ...]:
        return tuple(g for g in (self.memberships or ()) if g.applies_to_property(property_id))

    @classmethod
    def from_user(
        cls,
        user: User,
        memberships: Optional[Sequence[Membership]] = None,
        ip_address: Optional[str] = None,
    ) -> "Principal":
        try:
            global_role = GlobalRole(user.global_role)
        except ValueError:
            logger.warning("Unknown global role %r on user %s, treating as user", user.global_role, user.id)
            global_role = GlobalRole.USER

        snapshot = None
        if memberships is not None:
            snapshot = tuple(MembershipGrant.from_model(m) for m in memberships if m.is_active)

        return cls(
            user_id=user.id,
            email=user.email,
            global_role=global_role,
            is_email_verified=bool(user.is_email_verified),
            is_active=user.is_active,
            memberships=snapshot,
            ip_address=ip_address,
        )


class PrincipalResolver:
    """Loads the user behind a session token and hydrates a Principal."""

    def __init__(self, db: AsyncSession, store: Optional[MembershipStore] = None):
        self.db = db
        self.store = store or MembershipStore(db)

    async def resolve(self, token: Optional[str], ip_address: Optional[str] = None) -> Principal:
        if not token:
            raise UnauthenticatedError("Missing credentials", code="missing_credentials")

        payload = decode_access_token(token)
        if not payload or not payload.get("sub"):
            raise UnauthenticatedError("Invalid credentials", code="invalid_credentials")

        user = await self.db.get(User, payload["sub"])
        if user is None:
            raise UnauthenticatedError("User not found", code="invalid_credentials")

        return await self.for_user(user, ip_address)

    async def for_user(self, user: User, ip_address: Optional[str] = None) -> Principal:
        if not user.is_active:
            logger.warning("Inactive user %s rejected (status=%s)", user.id, user.registration_status)
            raise ForbiddenError(ForbiddenReason.INACTIVE_USER, "User account is not active")

        memberships = await self.store.find_for_user(user.id)
        return Principal.from_user(user, memberships, ip_address)
