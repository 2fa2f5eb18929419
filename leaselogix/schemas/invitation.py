"""
Invitation schemas for API requests/responses.
"""

from datetime import datetime
from typing import Dict, List, Literal, Optional

from pydantic import BaseModel, EmailStr, Field, field_validator

from leaselogix.core.rbac import PropertyRole


class InvitationCreate(BaseModel):
    """Request schema for issuing an invitation."""
    email: EmailStr
    roles: List[PropertyRole] = Field(..., min_length=1)
    property_id: Optional[str] = None
    unit_id: Optional[str] = None
    phone: Optional[str] = Field(None, max_length=32)
    message: Optional[str] = Field(None, max_length=500)

    @field_validator("email")
    @classmethod
    def normalize_email(cls, value: str) -> str:
        return value.strip().lower()


class InvitationResponse(BaseModel):
    """Response schema for a single invitation. Never carries the token."""
    id: str
    email: str
    roles: List[str]
    property_id: Optional[str] = None
    property_name: Optional[str] = None
    unit_id: Optional[str] = None
    unit_name: Optional[str] = None
    status: str
    created_by: str
    inviter_email: Optional[str] = None
    inviter_name: Optional[str] = None
    created_at: datetime
    expires_at: datetime
    accepted_at: Optional[datetime] = None
    accepted_by: Optional[str] = None
    revoked_at: Optional[datetime] = None
    declined_at: Optional[datetime] = None
    resend_count: int = 0
    last_resend_at: Optional[datetime] = None
    phone: Optional[str] = None
    message: Optional[str] = None


class InvitationListResponse(BaseModel):
    """Paginated list of invitations."""
    items: List[InvitationResponse]
    total: int
    page: int
    page_size: int


class InvitationVerifyResponse(BaseModel):
    """What an unauthenticated invitee may learn about their invitation."""
    email: str
    roles: List[str]
    role: str
    property_id: Optional[str] = None
    property_name: Optional[str] = None
    unit_id: Optional[str] = None
    unit_name: Optional[str] = None
    expires_at: datetime
    inviter_name: Optional[str] = None
    account_exists: bool


class AcceptInvitationRequest(BaseModel):
    """Request schema for accepting an invitation.

    Name and password are only required when no account exists for the invited email.
    """
    email: Optional[EmailStr] = None
    first_name: Optional[str] = Field(None, min_length=1, max_length=100)
    last_name: Optional[str] = Field(None, min_length=1, max_length=100)
    password: Optional[str] = Field(None, min_length=8, max_length=128)


class AcceptedMembership(BaseModel):
    id: str
    property_id: Optional[str] = None
    unit_id: Optional[str] = None
    roles: List[str]
    created: bool


class AcceptInvitationResponse(BaseModel):
    """Response after successfully accepting an invitation."""
    access_token: str
    token_type: Literal["bearer"] = "bearer"
    user_id: str
    email: str
    account_created: bool
    memberships: List[AcceptedMembership]


class DeclineInvitationRequest(BaseModel):
    reason: Optional[str] = Field(None, max_length=500)


class ResendInvitationResponse(BaseModel):
    """Response after resending an invitation."""
    success: bool
    message: str
    new_expires_at: datetime
    resend_count: int


class InvitationStats(BaseModel):
    """Per-status invitation counts within the caller's scope."""
    pending_count: int
    accepted_count: int
    declined_count: int
    expired_count: int
    cancelled_count: int
    by_status: Dict[str, int] = Field(default_factory=dict)
