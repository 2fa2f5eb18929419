"""
Membership schemas for API requests/responses.
"""

from datetime import datetime
from typing import List, Optional

from pydantic import BaseModel, Field

from leaselogix.core.rbac import PropertyRole


class MembershipGrantRequest(BaseModel):
    """Direct grant of property roles to an existing user."""
    user_id: str
    property_id: Optional[str] = None
    unit_id: Optional[str] = None
    roles: List[PropertyRole] = Field(..., min_length=1)
    permissions: Optional[List[str]] = None


class MembershipUpdate(BaseModel):
    """Replace the role set and/or toggle the active flag."""
    roles: Optional[List[PropertyRole]] = None
    is_active: Optional[bool] = None
    permissions: Optional[List[str]] = None


class MembershipResponse(BaseModel):
    id: str
    user_id: str
    property_id: Optional[str] = None
    unit_id: Optional[str] = None
    roles: List[str]
    permissions: Optional[List[str]] = None
    is_active: bool
    invited_by: Optional[str] = None
    start_date: datetime
    end_date: Optional[datetime] = None
    deactivated_at: Optional[datetime] = None
    deactivated_by: Optional[str] = None
    created_at: datetime
    updated_at: datetime

    model_config = {"from_attributes": True}


class MembershipGrantResponse(MembershipResponse):
    created: bool
    changed: bool


class MembershipListResponse(BaseModel):
    """Paginated list of memberships."""
    items: List[MembershipResponse]
    total: int
    page: int
    page_size: int
