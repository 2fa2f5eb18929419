"""
Direct membership administration.

Grants, updates and deactivations requested through the API. Every change is
checked against the same grant matrix as invitations and audited in the same
transaction as the write.
"""

import logging
from typing import Any, Dict, FrozenSet, Optional

from sqlalchemy import and_, func, select
from sqlalchemy.ext.asyncio import AsyncSession

from leaselogix.core.errors import ForbiddenError
from leaselogix.core.rbac import Action, PropertyRole, ResourceKind, parse_roles
from leaselogix.models.membership import Membership
from leaselogix.models.property import Property
from leaselogix.schemas.membership import (
    MembershipGrantRequest,
    MembershipGrantResponse,
    MembershipListResponse,
    MembershipResponse,
    MembershipUpdate,
)
from leaselogix.services.audit_log_service import AuditAction, AuditLogService
from leaselogix.services.authorization import AuthorizationEngine
from leaselogix.services.membership_store import MembershipStore
from leaselogix.services.principal import Principal

logger = logging.getLogger(__name__)


class MembershipService:
    def __init__(
        self,
        db: AsyncSession,
        engine: Optional[AuthorizationEngine] = None,
        store: Optional[MembershipStore] = None,
        audit: Optional[AuditLogService] = None,
    ):
        self.db = db
        self.store = store or MembershipStore(db)
        self.engine = engine or AuthorizationEngine(db, self.store)
        self.audit = audit or AuditLogService(db)

    async def grant(self, data: MembershipGrantRequest, principal: Principal) -> MembershipGrantResponse:
        roles = parse_roles(data.roles)
        await self._authorize_grant(principal, data.property_id, data.unit_id, roles, Action.GRANT)

        change = await self.store.upsert(
            data.user_id, data.property_id, data.unit_id, roles, granted_by=principal.user_id
        )
        membership = change.membership
        if data.permissions is not None:
            membership.permissions = list(data.permissions)

        if change.changed or data.permissions is not None:
            await self.audit.record(
                AuditAction.MEMBERSHIP_CREATED if change.created else AuditAction.MEMBERSHIP_UPDATED,
                actor_id=principal.user_id,
                actor_email=principal.email,
                resource_kind=ResourceKind.MEMBERSHIP.value,
                resource_id=membership.id,
                old_value=None if change.created else {"roles": _role_values(change.previous_roles)},
                new_value=self._snapshot(membership),
                description=f"Roles {', '.join(_role_values(roles))} granted by {principal.email}",
                ip_address=principal.ip_address,
            )
        await self.db.commit()

        response = MembershipGrantResponse(
            **MembershipResponse.model_validate(membership).model_dump(),
            created=change.created,
            changed=change.changed,
        )
        return response

    async def update(
        self,
        membership_id: str,
        data: MembershipUpdate,
        principal: Principal,
    ) -> MembershipResponse:
        membership = await self.store.get(membership_id)
        previous = membership.role_set
        was_active = membership.is_active

        affected: FrozenSet[PropertyRole] = frozenset()
        new_roles = None
        if data.roles is not None:
            new_roles = parse_roles(data.roles)
            affected = affected | (new_roles ^ previous)
        if data.is_active is not None and data.is_active != was_active:
            affected = affected | (new_roles if new_roles is not None else previous)

        # Acting on a membership at all needs update rights on its property
        await self._authorize_grant(
            principal, membership.property_id, membership.unit_id, affected, Action.UPDATE
        )

        old_value = self._snapshot(membership)
        membership = await self.store.set_roles(
            membership_id, roles=new_roles, is_active=data.is_active, actor_id=principal.user_id
        )
        if data.permissions is not None:
            membership.permissions = list(data.permissions)

        kind = AuditAction.MEMBERSHIP_UPDATED
        if was_active and not membership.is_active:
            kind = AuditAction.MEMBERSHIP_DEACTIVATED
        await self.audit.record(
            kind,
            actor_id=principal.user_id,
            actor_email=principal.email,
            resource_kind=ResourceKind.MEMBERSHIP.value,
            resource_id=membership.id,
            old_value=old_value,
            new_value=self._snapshot(membership),
            description=f"Membership updated by {principal.email}",
            ip_address=principal.ip_address,
        )
        await self.db.commit()
        logger.info("Membership %s updated by %s", membership.id, principal.email)
        return MembershipResponse.model_validate(membership)

    async def deactivate(self, membership_id: str, principal: Principal) -> MembershipResponse:
        membership = await self.store.get(membership_id)
        await self._authorize_grant(
            principal, membership.property_id, membership.unit_id, membership.role_set, Action.REVOKE
        )

        old_value = self._snapshot(membership)
        membership = await self.store.deactivate(membership_id, actor_id=principal.user_id)
        await self.audit.record(
            AuditAction.MEMBERSHIP_DEACTIVATED,
            actor_id=principal.user_id,
            actor_email=principal.email,
            resource_kind=ResourceKind.MEMBERSHIP.value,
            resource_id=membership.id,
            old_value=old_value,
            new_value=self._snapshot(membership),
            description=f"Membership deactivated by {principal.email}",
            ip_address=principal.ip_address,
        )
        await self.db.commit()
        return MembershipResponse.model_validate(membership)

    async def list_memberships(
        self,
        principal: Principal,
        property_id: Optional[str] = None,
        user_id: Optional[str] = None,
        include_inactive: bool = False,
        page: int = 1,
        page_size: int = 50,
    ) -> MembershipListResponse:
        scope = await self.engine.scope_for(principal, ResourceKind.MEMBERSHIP)
        conditions = [scope.to_clause(Membership)]
        if property_id:
            conditions.append(Membership.property_id == property_id)
        if user_id:
            conditions.append(Membership.user_id == user_id)
        if not include_inactive:
            conditions.append(Membership.is_active.is_(True))

        total_result = await self.db.execute(select(func.count(Membership.id)).where(and_(*conditions)))
        total = total_result.scalar() or 0

        offset = (page - 1) * page_size
        result = await self.db.execute(
            select(Membership)
            .where(and_(*conditions))
            .order_by(Membership.created_at.desc())
            .offset(offset)
            .limit(page_size)
        )
        items = [MembershipResponse.model_validate(m) for m in result.scalars().all()]
        return MembershipListResponse(items=items, total=total, page=page, page_size=page_size)

    async def _authorize_grant(
        self,
        principal: Principal,
        property_id: Optional[str],
        unit_id: Optional[str],
        roles: FrozenSet[PropertyRole],
        action: Action,
    ) -> None:
        prop = await self.db.get(Property, property_id) if property_id else None
        try:
            await self.engine.authorize_grant(
                principal,
                property_id,
                unit_id,
                roles,
                action=action,
                property_active=prop.is_active if prop is not None else True,
            )
        except ForbiddenError as exc:
            await self.audit.emit(
                AuditAction.AUTHORIZATION_DENIED,
                actor_id=principal.user_id,
                actor_email=principal.email,
                resource_kind=ResourceKind.MEMBERSHIP.value,
                description=f"membership {action.value} denied",
                ip_address=principal.ip_address,
                status="denied",
                error_message=exc.message,
                metadata={
                    "reason": exc.reason.value,
                    "property_id": property_id,
                    "unit_id": unit_id,
                    "roles": _role_values(roles),
                },
            )
            raise

    @staticmethod
    def _snapshot(membership: Membership) -> Dict[str, Any]:
        return {
            "user_id": membership.user_id,
            "property_id": membership.property_id,
            "unit_id": membership.unit_id,
            "roles": list(membership.roles or []),
            "is_active": membership.is_active,
        }


def _role_values(roles) -> list:
    return sorted(PropertyRole(role).value for role in roles)
