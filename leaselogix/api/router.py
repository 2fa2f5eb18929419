from fastapi import APIRouter

from leaselogix.routers import audit_logs, invitations, memberships, public_invites

api_router = APIRouter()

api_router.include_router(invitations.router, prefix="/invites", tags=["Invitations"])
api_router.include_router(public_invites.router, prefix="/public/invites", tags=["Public Invitations"])
api_router.include_router(memberships.router, prefix="/memberships", tags=["Memberships"])
api_router.include_router(audit_logs.router, prefix="/audit-events", tags=["Audit"])
