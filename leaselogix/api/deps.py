from typing import Annotated, Optional

from fastapi import Depends, Request
from fastapi.security import OAuth2PasswordBearer
from sqlalchemy.ext.asyncio import AsyncSession

from leaselogix.core.db import get_db
from leaselogix.core.rbac import Action, ResourceKind
from leaselogix.middleware.security import get_client_ip
from leaselogix.services.audit_log_service import AuditLogService
from leaselogix.services.authorization import AuthorizationEngine, ResourceRef
from leaselogix.services.invitation_service import InvitationService
from leaselogix.services.membership_store import MembershipStore
from leaselogix.services.principal import Principal, PrincipalResolver

oauth2_scheme = OAuth2PasswordBearer(tokenUrl="/api/auth/login", auto_error=False)


async def get_current_principal(
    request: Request,
    token: Annotated[Optional[str], Depends(oauth2_scheme)],
    db: AsyncSession = Depends(get_db),
) -> Principal:
    """Resolve the bearer token once per request; later lookups reuse ``request.state``."""
    principal = getattr(request.state, "principal", None)
    if principal is not None:
        return principal

    principal = await PrincipalResolver(db).resolve(token, get_client_ip(request))
    request.state.principal = principal
    return principal


def require_permission(resource_kind: ResourceKind | str, action: Action | str):
    """
    FastAPI dependency for endpoints guarded by a resource-less catalog check.

    Usage:
        @router.get("/audit-events")
        async def list_events(p = Depends(require_permission(ResourceKind.ACTION_EVENT, Action.LIST))):
            ...
    """
    async def dependency(
        principal: Principal = Depends(get_current_principal),
        db: AsyncSession = Depends(get_db),
    ) -> Principal:
        engine = AuthorizationEngine(db)
        await engine.authorize(principal, action, ResourceRef(kind=ResourceKind(resource_kind)))
        return principal

    return dependency


async def get_membership_store(db: AsyncSession = Depends(get_db)) -> MembershipStore:
    return MembershipStore(db)


async def get_engine(
    db: AsyncSession = Depends(get_db),
    store: MembershipStore = Depends(get_membership_store),
) -> AuthorizationEngine:
    return AuthorizationEngine(db, store)


async def get_audit_service(db: AsyncSession = Depends(get_db)) -> AuditLogService:
    return AuditLogService(db)


async def get_invitation_service(
    db: AsyncSession = Depends(get_db),
    store: MembershipStore = Depends(get_membership_store),
    engine: AuthorizationEngine = Depends(get_engine),
    audit: AuditLogService = Depends(get_audit_service),
) -> InvitationService:
    return InvitationService(db, store=store, engine=engine, audit=audit)
