"""
Authorization engine.

``decide`` answers whether a principal may perform an action on a resource.
Every rule is looked up in the policy catalog (``leaselogix.core.rbac``);
the pipeline, first match wins, is:

1. inactive principal: deny
2. global admin: allow, unless the action is admin_forbidden
3. self-resource: the owner field equals the principal
4. resource-local roles: created_by / assigned_to equal the principal
5. write on an inactive property or unit: deny
6. active membership on the resource's property with a required role
   (unit-scoped grants only cover their own unit)
7. deny with a stable reason

``scope_for`` compiles the same rules into a selector for list endpoints.
"""

import logging
from dataclasses import dataclass, field
from typing import Any, Dict, FrozenSet, Iterable, Optional, Tuple

from sqlalchemy import false, or_, true
from sqlalchemy.ext.asyncio import AsyncSession

from leaselogix.core.errors import ForbiddenError, ForbiddenReason
from leaselogix.core.rbac import (
    GRANTABLE_BY,
    Action,
    PolicyEntry,
    PropertyRole,
    ResourceKind,
    ScopeTemplate,
    get_policy,
)
from leaselogix.models.base import same_id
from leaselogix.services.membership_store import MembershipStore
from leaselogix.services.principal import MembershipGrant, Principal

logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class ResourceRef:
    """What the caller knows about the resource being acted on."""
    kind: ResourceKind
    id: Optional[str] = None
    property_id: Optional[str] = None
    unit_id: Optional[str] = None
    # created_by, assigned_to, sender, ... as declared by the catalog
    attributes: Dict[str, Any] = field(default_factory=dict)
    # False when the property or unit it lives on is deactivated
    is_active: bool = True

    def value_of(self, field_name: str) -> Any:
        if field_name == "id":
            return self.id
        if field_name == "property_id":
            return self.property_id
        if field_name == "unit_id":
            return self.unit_id
        return self.attributes.get(field_name)

    def cache_key(self) -> Tuple:
        attributes = tuple(sorted((k, str(v)) for k, v in self.attributes.items()))
        return (self.kind, self.id, self.property_id, self.unit_id, self.is_active, attributes)


@dataclass(frozen=True)
class Decision:
    allowed: bool
    reason: Optional[ForbiddenReason] = None
    rule: str = ""

    @classmethod
    def allow(cls, rule: str) -> "Decision":
        return cls(True, None, rule)

    @classmethod
    def deny(cls, reason: ForbiddenReason, rule: str = "") -> "Decision":
        return cls(False, reason, rule)

    def __bool__(self) -> bool:
        return self.allowed


@dataclass(frozen=True)
class ScopePredicate:
    """
    List filter equivalent to per-item read decisions.

    A row is in scope when any of these hold: the predicate is unrestricted
    (admin), the row's property is one the principal manages, the row's unit is
    one of the principal's unit-scoped grants, or an owner field equals the principal.
    """
    unrestricted: bool = False
    property_ids: FrozenSet[str] = frozenset()
    unit_ids: FrozenSet[str] = frozenset()
    owner_fields: Tuple[str, ...] = ()
    user_id: Optional[str] = None
    template: ScopeTemplate = field(default_factory=ScopeTemplate)

    @property
    def is_empty(self) -> bool:
        return not (self.unrestricted or self.property_ids or self.unit_ids or self.owner_fields)

    def to_clause(self, model):
        """Render as a SQLAlchemy boolean clause over ``model``'s columns."""
        if self.unrestricted:
            return true()

        clauses = []
        if self.property_ids and self.template.property_field:
            clauses.append(getattr(model, self.template.property_field).in_(sorted(self.property_ids)))
        if self.unit_ids and self.template.unit_field:
            clauses.append(getattr(model, self.template.unit_field).in_(sorted(self.unit_ids)))
        for owner_field in self.owner_fields:
            clauses.append(getattr(model, owner_field) == self.user_id)

        if not clauses:
            return false()
        return or_(*clauses)

    def matches(self, resource: ResourceRef) -> bool:
        if self.unrestricted:
            return True
        if self.template.property_field:
            value = resource.value_of(self.template.property_field)
            if value is not None and str(value) in self.property_ids:
                return True
        if self.template.unit_field:
            value = resource.value_of(self.template.unit_field)
            if value is not None and str(value) in self.unit_ids:
                return True
        return any(same_id(resource.value_of(f), self.user_id) for f in self.owner_fields)


class AuthorizationEngine:
    """Evaluates policy catalog entries for a principal."""

    def __init__(self, db: AsyncSession, store: Optional[MembershipStore] = None):
        self.db = db
        self.store = store or MembershipStore(db)

    async def decide(
        self,
        principal: Principal,
        action: Action | str,
        resource: ResourceRef,
    ) -> Decision:
        action = Action(action)
        key = ("decide", action, resource.cache_key())
        cached = principal.capability_cache.get(key)
        if cached is not None:
            return cached

        decision = await self._evaluate(principal, action, resource)
        principal.capability_cache[key] = decision
        if not decision.allowed:
            logger.debug(
                "Denied %s on %s:%s for user=%s reason=%s",
                action.value, resource.kind.value, resource.id, principal.user_id,
                decision.reason.value if decision.reason else None,
            )
        return decision

    async def authorize(
        self,
        principal: Principal,
        action: Action | str,
        resource: ResourceRef,
    ) -> Decision:
        """``decide`` that raises ForbiddenError on deny."""
        decision = await self.decide(principal, action, resource)
        if not decision.allowed:
            action_str = action.value if isinstance(action, Action) else action
            logger.warning(
                "Permission denied: user=%s, permission=%s:%s, resource=%s, reason=%s",
                principal.email, resource.kind.value, action_str, resource.id, decision.reason.value,
            )
            raise ForbiddenError(decision.reason)
        return decision

    async def decide_grant(
        self,
        principal: Principal,
        property_id: Optional[str],
        unit_id: Optional[str],
        roles: Iterable[PropertyRole],
        action: Action = Action.INVITE_ISSUE,
        property_active: bool = True,
    ) -> Decision:
        """
        May the principal hand out ``roles`` on (property, unit)?

        Used for both invitations (``invite:issue`` on the property) and direct
        grants (``grant`` on a membership). On top of the catalog entry:
        tenant/vendor_access need a managing role, property_manager needs
        landlord, and landlord/admin_access need a global admin.
        """
        roles = frozenset(PropertyRole(r) for r in roles)
        if not principal.is_active:
            return Decision.deny(ForbiddenReason.INACTIVE_USER, "inactive_user")
        if principal.is_admin:
            return Decision.allow("global_admin")
        if property_id is None:
            return Decision.deny(ForbiddenReason.NOT_ADMIN, "property_less_grant")

        kind = ResourceKind.PROPERTY if action == Action.INVITE_ISSUE else ResourceKind.MEMBERSHIP
        resource = ResourceRef(
            kind=kind,
            id=property_id if kind == ResourceKind.PROPERTY else None,
            property_id=property_id,
            unit_id=unit_id,
            is_active=property_active,
        )
        decision = await self.decide(principal, action, resource)
        if not decision.allowed:
            return decision

        entry = get_policy(kind, action)
        await self._ensure_grants(principal)
        held = self._covering_roles(entry, principal.grants_on(property_id), unit_id)
        for role in sorted(roles, key=lambda r: r.value):
            allowed_by = GRANTABLE_BY[role]
            if not allowed_by:
                return Decision.deny(ForbiddenReason.NOT_ADMIN, f"grant_{role.value}")
            if not held & allowed_by:
                return Decision.deny(ForbiddenReason.ROLE_INSUFFICIENT, f"grant_{role.value}")
        return Decision.allow("grant_matrix")

    async def authorize_grant(
        self,
        principal: Principal,
        property_id: Optional[str],
        unit_id: Optional[str],
        roles: Iterable[PropertyRole],
        action: Action = Action.INVITE_ISSUE,
        property_active: bool = True,
    ) -> Decision:
        decision = await self.decide_grant(
            principal, property_id, unit_id, roles, action=action, property_active=property_active
        )
        if not decision.allowed:
            logger.warning(
                "Grant denied: user=%s, property=%s, unit=%s, roles=%s, reason=%s",
                principal.email, property_id, unit_id,
                sorted(PropertyRole(r).value for r in roles), decision.reason.value,
            )
            raise ForbiddenError(decision.reason)
        return decision

    async def scope_for(self, principal: Principal, resource_kind: ResourceKind | str) -> ScopePredicate:
        """Compile the ``list`` policy of ``resource_kind`` into a ScopePredicate."""
        kind = ResourceKind(resource_kind)
        entry = get_policy(kind, Action.LIST) or get_policy(kind, Action.READ)
        template = (entry.scope if entry and entry.scope else ScopeTemplate())

        if not principal.is_active:
            return ScopePredicate(template=template)
        if entry is None:
            return ScopePredicate(unrestricted=principal.is_admin, template=template)
        if principal.is_admin and not entry.admin_forbidden:
            return ScopePredicate(unrestricted=True, template=template)

        await self._ensure_grants(principal)
        property_ids = set()
        unit_ids = set()
        for grant in principal.memberships or ():
            if not grant.roles & entry.property_roles:
                continue
            if grant.property_id is None:
                # Platform-wide admin_access
                return ScopePredicate(unrestricted=True, template=template)
            if grant.unit_id is None or not entry.tenant_unit_scoped:
                property_ids.add(str(grant.property_id))
            else:
                unit_ids.add(str(grant.unit_id))

        return ScopePredicate(
            property_ids=frozenset(property_ids),
            unit_ids=frozenset(unit_ids),
            owner_fields=entry.owner_fields,
            user_id=principal.user_id,
            template=template,
        )

    async def _evaluate(self, principal: Principal, action: Action, resource: ResourceRef) -> Decision:
        if not principal.is_active:
            return Decision.deny(ForbiddenReason.INACTIVE_USER, "inactive_user")

        entry = get_policy(resource.kind, action)
        if entry is None:
            logger.warning("No policy entry for %s:%s", resource.kind.value, action.value)
            if principal.is_admin:
                return Decision.allow("global_admin")
            return Decision.deny(ForbiddenReason.NOT_ADMIN, "no_policy")

        if principal.is_admin and not entry.admin_forbidden:
            return Decision.allow("global_admin")

        if entry.write and not resource.is_active:
            return Decision.deny(ForbiddenReason.INACTIVE_RESOURCE, "inactive_resource")

        if entry.self_field and entry.ownership:
            if same_id(resource.value_of(entry.self_field), principal.user_id):
                return Decision.allow("self")

        for local_field in entry.local_fields:
            if same_id(resource.value_of(local_field), principal.user_id):
                return Decision.allow(f"local:{local_field}")

        if entry.self_field and entry.ownership and not entry.property_roles:
            return Decision.deny(ForbiddenReason.ROLE_INSUFFICIENT, "owner_only")

        if entry.admin_only:
            reason = ForbiddenReason.ROLE_INSUFFICIENT if principal.is_admin else ForbiddenReason.NOT_ADMIN
            return Decision.deny(reason, "admin_only")

        property_id, unit_id = await self._resolve_location(principal, resource)
        if property_id is None:
            return Decision.deny(ForbiddenReason.NOT_ADMIN, "no_property")

        await self._ensure_grants(principal)
        return self._match_memberships(entry, principal.grants_on(property_id), unit_id)

    def _match_memberships(
        self,
        entry: PolicyEntry,
        grants: Tuple[MembershipGrant, ...],
        unit_id: Optional[str],
    ) -> Decision:
        if not grants:
            return Decision.deny(ForbiddenReason.NOT_MEMBER, "membership")

        tenant_on_other_unit = False
        for grant in grants:
            matching = grant.roles & entry.property_roles
            if not matching:
                continue
            if self._covers(entry, grant, unit_id):
                return Decision.allow("membership")
            if PropertyRole.TENANT in matching:
                tenant_on_other_unit = True

        if tenant_on_other_unit:
            return Decision.deny(ForbiddenReason.TENANT_UNIT_MISMATCH, "membership")
        return Decision.deny(ForbiddenReason.ROLE_INSUFFICIENT, "membership")

    @staticmethod
    def _covers(entry: PolicyEntry, grant: MembershipGrant, unit_id: Optional[str]) -> bool:
        if grant.unit_id is None or not entry.tenant_unit_scoped:
            return True
        return same_id(grant.unit_id, unit_id)

    def _covering_roles(
        self,
        entry: PolicyEntry,
        grants: Tuple[MembershipGrant, ...],
        unit_id: Optional[str],
    ) -> FrozenSet[PropertyRole]:
        roles: FrozenSet[PropertyRole] = frozenset()
        for grant in grants:
            if self._covers(entry, grant, unit_id):
                roles = roles | grant.roles
        return roles

    async def _resolve_location(
        self,
        principal: Principal,
        resource: ResourceRef,
    ) -> Tuple[Optional[str], Optional[str]]:
        property_id = resource.property_id
        unit_id = resource.unit_id
        if resource.kind == ResourceKind.PROPERTY and property_id is None:
            property_id = resource.id
        if resource.kind == ResourceKind.UNIT and unit_id is None:
            unit_id = resource.id

        if property_id is None and unit_id is not None:
            key = ("unit_property", str(unit_id))
            if key not in principal.capability_cache:
                principal.capability_cache[key] = await self.store.property_for_unit(unit_id)
            property_id = principal.capability_cache[key]
        return property_id, unit_id

    async def _ensure_grants(self, principal: Principal) -> None:
        if principal.memberships is None:
            rows = await self.store.find_for_user(principal.user_id)
            principal.memberships = tuple(MembershipGrant.from_model(row) for row in rows)
