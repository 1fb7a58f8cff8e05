"""Pydantic schemas for the producer API."""
from datetime import datetime
from typing import Any, Dict, Optional, Union

from pydantic import BaseModel, Field

from shared.models import MAX_USER_ID


class EventRequest(BaseModel):
    """Request schema for an analytics event."""
    user_id: int = Field(..., ge=0, le=MAX_USER_ID, description="Acting user, 0 for anonymous")
    event: str = Field(..., min_length=1, description="Event name (e.g., 'page_view')")
    properties: Dict[str, Any] = Field(default_factory=dict, description="Values are stringified")
    metadata: Optional[Any] = Field(default=None, description="Arbitrary JSON stored as a blob")
    timestamp: Optional[datetime] = Field(default=None, description="Defaults to publish time")


class AuditLogRequest(BaseModel):
    """Request schema for an audit log."""
    user_id: int = Field(..., ge=0, le=MAX_USER_ID)
    action: str = Field(..., min_length=1, description="e.g. create, read, update, delete")
    resource: str = Field(..., description="Affected entity type")
    resource_id: Union[str, int] = Field(..., description="Affected entity id")
    details: Optional[Dict[str, Any]] = None
    ip_address: str = ""
    user_agent: str = ""
    timestamp: Optional[datetime] = None


class PublishResponse(BaseModel):
    """Response schema for an accepted publish."""
    queue: str = Field(..., description="Queue the record was published to")
    status: str = Field(default="accepted", description="Publish status")
    message: str = Field(default="Accepted for processing", description="Status message")
