"""
Membership store.

Owns every write to the ``memberships`` table and its invariants:
- one row per (user, property, unit); later grants merge roles into it
- a tenant role needs a unit, and a unit must belong to the property
- deactivation keeps roles for audit but grants nothing
"""

import logging
from dataclasses import dataclass, field
from typing import FrozenSet, Iterable, List, Optional

from sqlalchemy import and_, or_, select
from sqlalchemy.exc import IntegrityError
from sqlalchemy.ext.asyncio import AsyncSession

from leaselogix.core.errors import ConflictError, NotFoundError, ValidationError
from leaselogix.core.rbac import PropertyRole, parse_roles
from leaselogix.models.base import new_id, same_id, utcnow
from leaselogix.models.membership import Membership
from leaselogix.models.property import Property, Unit
from leaselogix.models.user import User

logger = logging.getLogger(__name__)

# Attempts at inserting a new row before giving up on a racing writer
UPSERT_MAX_ATTEMPTS = 3


@dataclass
class MembershipChange:
    """Result of an upsert."""
    membership: Membership
    created: bool
    changed: bool
    previous_roles: FrozenSet[PropertyRole] = field(default_factory=frozenset)


@dataclass
class MembershipFilters:
    role: Optional[PropertyRole] = None
    unit_id: Optional[str] = None
    include_inactive: bool = False


class MembershipStore:
    """CRUD and queries over the membership relation."""

    def __init__(self, db: AsyncSession):
        self.db = db

    async def upsert(
        self,
        user_id: str,
        property_id: Optional[str],
        unit_id: Optional[str],
        roles: Iterable[PropertyRole | str],
        granted_by: Optional[str] = None,
    ) -> MembershipChange:
        """
        Merge ``roles`` into the (user, property, unit) membership, creating it if needed.

        An inactive row is reactivated. Concurrent callers on the same triple end up
        with one row holding the union of their roles: the unique index rejects the
        losing insert, which is then retried as a merge.

        Raises:
            ValidationError: tenant without unit, unit outside property, unknown role
            NotFoundError: user, property or unit does not exist
        """
        role_set = parse_roles(roles)
        await self._validate_target(user_id, property_id, unit_id, role_set)
        scope_key = Membership.make_scope_key(property_id, unit_id)

        for attempt in range(1, UPSERT_MAX_ATTEMPTS + 1):
            existing = await self._get_by_scope(user_id, scope_key)
            if existing is not None:
                change = self._merge(existing, role_set, granted_by)
                await self.db.flush()
                return change

            membership = Membership(
                id=new_id(),
                user_id=user_id,
                property_id=property_id,
                unit_id=unit_id,
                scope_key=scope_key,
                is_active=True,
                invited_by=granted_by,
                start_date=utcnow(),
            )
            membership.set_roles(role_set)
            try:
                async with self.db.begin_nested():
                    self.db.add(membership)
            except IntegrityError:
                logger.info(
                    "Concurrent membership insert for user=%s scope=%s (attempt %s), merging",
                    user_id, scope_key, attempt,
                )
                continue

            logger.info(
                "Membership created: user=%s scope=%s roles=%s",
                user_id, scope_key, membership.roles,
            )
            return MembershipChange(membership=membership, created=True, changed=True)

        raise ConflictError(
            "Membership is being modified concurrently, please retry",
            code="membership_contention",
        )

    async def deactivate(self, membership_id: str, actor_id: Optional[str] = None) -> Membership:
        membership = await self.get(membership_id)
        if not membership.is_active:
            raise ConflictError("Membership is already inactive", code="membership_inactive")

        now = utcnow()
        membership.is_active = False
        membership.end_date = now
        membership.deactivated_at = now
        membership.deactivated_by = actor_id
        await self.db.flush()
        logger.info("Membership deactivated: id=%s by=%s", membership.id, actor_id)
        return membership

    async def revoke_role(
        self,
        user_id: str,
        property_id: Optional[str],
        unit_id: Optional[str],
        role: PropertyRole | str,
        actor_id: Optional[str] = None,
    ) -> Membership:
        """Remove one role; a membership left without roles is deactivated."""
        (target,) = parse_roles([role])
        membership = await self._get_by_scope(user_id, Membership.make_scope_key(property_id, unit_id))
        if membership is None or target not in membership.role_set:
            raise NotFoundError("Membership role not found", code="membership_role_not_found")

        remaining = membership.role_set - {target}
        membership.set_roles(remaining)
        if not remaining and membership.is_active:
            now = utcnow()
            membership.is_active = False
            membership.end_date = now
            membership.deactivated_at = now
            membership.deactivated_by = actor_id
        await self.db.flush()
        return membership

    async def set_roles(
        self,
        membership_id: str,
        roles: Optional[Iterable[PropertyRole | str]] = None,
        is_active: Optional[bool] = None,
        actor_id: Optional[str] = None,
    ) -> Membership:
        """Replace the role set and/or the active flag of an existing membership."""
        membership = await self.get(membership_id)

        if roles is not None:
            role_set = parse_roles(roles)
            if role_set:
                await self._validate_target(
                    membership.user_id, membership.property_id, membership.unit_id, role_set
                )
            membership.set_roles(role_set)
            if not role_set:
                is_active = False

        if is_active is not None and is_active != membership.is_active:
            now = utcnow()
            if is_active:
                if not membership.roles:
                    raise ValidationError(
                        "Cannot activate a membership without roles", code="roles_required"
                    )
                membership.is_active = True
                membership.end_date = None
                membership.deactivated_at = None
                membership.deactivated_by = None
            else:
                membership.is_active = False
                membership.end_date = now
                membership.deactivated_at = now
                membership.deactivated_by = actor_id

        await self.db.flush()
        return membership

    async def get(self, membership_id: str) -> Membership:
        membership = await self.db.get(Membership, membership_id)
        if membership is None:
            raise NotFoundError("Membership not found", code="membership_not_found")
        return membership

    async def find_for_user(
        self,
        user_id: str,
        filters: Optional[MembershipFilters] = None,
    ) -> List[Membership]:
        query = select(Membership).where(Membership.user_id == user_id)
        return await self._find(query, filters)

    async def find_for_property(
        self,
        property_id: str,
        filters: Optional[MembershipFilters] = None,
    ) -> List[Membership]:
        query = select(Membership).where(Membership.property_id == property_id)
        return await self._find(query, filters)

    async def exists_active(
        self,
        user_id: str,
        property_id: Optional[str],
        unit_id: Optional[str],
        required_roles: Iterable[PropertyRole | str],
    ) -> bool:
        """
        True iff an active membership of the user on the property holds one of the roles.

        With ``unit_id=None`` both property-wide and unit-scoped rows match; with a unit,
        only that unit's row and property-wide rows do.
        """
        required = parse_roles(required_roles)
        if not required:
            return False

        query = select(Membership).where(
            Membership.user_id == user_id,
            Membership.is_active.is_(True),
        )
        if property_id is None:
            query = query.where(Membership.property_id.is_(None))
        else:
            query = query.where(Membership.property_id == property_id)
        if unit_id is not None:
            query = query.where(or_(Membership.unit_id.is_(None), Membership.unit_id == unit_id))

        result = await self.db.execute(query)
        return any(row.role_set & required for row in result.scalars().all())

    async def property_for_unit(self, unit_id: str) -> Optional[str]:
        result = await self.db.execute(select(Unit.property_id).where(Unit.id == unit_id))
        return result.scalar_one_or_none()

    async def landlords_for_property(self, property_id: str) -> List[str]:
        """User ids holding an active landlord role on the property."""
        rows = await self.find_for_property(
            property_id, MembershipFilters(role=PropertyRole.LANDLORD)
        )
        return sorted({row.user_id for row in rows})

    async def tenants_for_unit(self, unit_id: str) -> List[str]:
        result = await self.db.execute(
            select(Membership).where(
                and_(Membership.unit_id == unit_id, Membership.is_active.is_(True))
            )
        )
        return sorted({
            row.user_id for row in result.scalars().all()
            if PropertyRole.TENANT in row.role_set
        })

    async def _find(self, query, filters: Optional[MembershipFilters]) -> List[Membership]:
        filters = filters or MembershipFilters()
        if not filters.include_inactive:
            query = query.where(Membership.is_active.is_(True))
        if filters.unit_id is not None:
            query = query.where(Membership.unit_id == filters.unit_id)

        result = await self.db.execute(query.order_by(Membership.created_at))
        rows = list(result.scalars().all())
        # Role sets are JSON lists; filter portably in Python
        if filters.role is not None:
            role = PropertyRole(filters.role)
            rows = [row for row in rows if role in row.role_set]
        return rows

    async def _get_by_scope(self, user_id: str, scope_key: str) -> Optional[Membership]:
        result = await self.db.execute(
            select(Membership)
            .where(Membership.user_id == user_id, Membership.scope_key == scope_key)
            .with_for_update()
        )
        return result.scalar_one_or_none()

    def _merge(
        self,
        membership: Membership,
        roles: FrozenSet[PropertyRole],
        granted_by: Optional[str],
    ) -> MembershipChange:
        previous = membership.role_set
        merged = previous | roles
        changed = merged != previous or not membership.is_active

        if changed:
            membership.set_roles(merged)
            if not membership.is_active:
                membership.is_active = True
                membership.start_date = utcnow()
                membership.end_date = None
                membership.deactivated_at = None
                membership.deactivated_by = None
            if granted_by and not membership.invited_by:
                membership.invited_by = granted_by
            logger.info(
                "Membership updated: id=%s roles=%s -> %s",
                membership.id, sorted(r.value for r in previous), membership.roles,
            )

        return MembershipChange(
            membership=membership, created=False, changed=changed, previous_roles=previous
        )

    async def _validate_target(
        self,
        user_id: str,
        property_id: Optional[str],
        unit_id: Optional[str],
        roles: FrozenSet[PropertyRole],
    ) -> None:
        if not roles:
            raise ValidationError("At least one role is required", code="roles_required")
        if PropertyRole.TENANT in roles and unit_id is None:
            raise ValidationError("The tenant role requires a unit", code="unit_required")
        if property_id is None:
            if roles != {PropertyRole.ADMIN_ACCESS}:
                raise ValidationError(
                    "A property is required unless only admin_access is granted",
                    code="property_required",
                )
            if unit_id is not None:
                raise ValidationError("A unit requires a property", code="property_required")

        if await self.db.get(User, user_id) is None:
            raise NotFoundError("User not found", code="user_not_found")

        if property_id is not None and await self.db.get(Property, property_id) is None:
            raise NotFoundError("Property not found", code="property_not_found")

        if unit_id is not None:
            unit = await self.db.get(Unit, unit_id)
            if unit is None:
                raise NotFoundError("Unit not found", code="unit_not_found")
            if not same_id(unit.property_id, property_id):
                raise ValidationError(
                    "Unit does not belong to the property", code="unit_not_in_property"
                )
