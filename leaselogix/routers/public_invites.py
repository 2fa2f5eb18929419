"""
Public invitation endpoints.

No authentication: the token in the path is the credential. Every route is
rate limited per client IP.
"""

from typing import Optional

from fastapi import APIRouter, Body, Depends, Request

from leaselogix.api import deps
from leaselogix.core.config import get_settings
from leaselogix.middleware.security import get_client_ip, limiter
from leaselogix.schemas.invitation import (
    AcceptInvitationRequest,
    AcceptInvitationResponse,
    DeclineInvitationRequest,
    InvitationVerifyResponse,
)
from leaselogix.services.invitation_service import InvitationService

router = APIRouter()

_RATE_LIMIT = get_settings().public_invite_rate_limit


@router.get("/{token}/verify", response_model=InvitationVerifyResponse)
@limiter.limit(_RATE_LIMIT)
async def verify_invitation(
    request: Request,
    token: str,
    service: InvitationService = Depends(deps.get_invitation_service),
) -> InvitationVerifyResponse:
    """Check a token before showing the accept form."""
    return await service.verify(token)


@router.post("/{token}/accept", response_model=AcceptInvitationResponse)
@limiter.limit(_RATE_LIMIT)
async def accept_invitation(
    request: Request,
    token: str,
    data: AcceptInvitationRequest,
    service: InvitationService = Depends(deps.get_invitation_service),
) -> AcceptInvitationResponse:
    """
    Accept an invitation.

    Creates the account when none exists for the invited email, grants the
    invited roles and returns an access token.
    """
    return await service.accept(token, data, get_client_ip(request))


@router.post("/{token}/decline")
@limiter.limit(_RATE_LIMIT)
async def decline_invitation(
    request: Request,
    token: str,
    data: Optional[DeclineInvitationRequest] = Body(None),
    service: InvitationService = Depends(deps.get_invitation_service),
) -> dict:
    return await service.decline(token, data.reason if data else None)
