"""
Action event schemas for API responses.
"""

from datetime import datetime
from typing import Any, List, Literal, Optional

from pydantic import BaseModel, Field


class ActionEventResponse(BaseModel):
    """Response schema for a single action event."""
    id: str
    timestamp: datetime
    kind: str
    actor_id: Optional[str] = None
    actor_email: Optional[str] = None
    resource_kind: Optional[str] = None
    resource_id: Optional[str] = None
    old_value: Optional[Any] = None
    new_value: Optional[Any] = None
    description: Optional[str] = None
    ip_address: Optional[str] = None
    user_agent: Optional[str] = None
    status: str
    error_message: Optional[str] = None
    metadata: Optional[dict] = Field(None, validation_alias="extra_data")

    model_config = {"from_attributes": True, "populate_by_name": True}


class ActionEventFilter(BaseModel):
    """Filter parameters for querying action events."""
    kind: Optional[str] = None
    actor_id: Optional[str] = None
    resource_kind: Optional[str] = None
    resource_id: Optional[str] = None
    status: Optional[Literal["success", "failure", "denied"]] = None
    start_date: Optional[datetime] = None
    end_date: Optional[datetime] = None


class ActionEventListResponse(BaseModel):
    """Paginated list of action events."""
    items: List[ActionEventResponse]
    total: int
    page: int
    page_size: int
    total_pages: int
