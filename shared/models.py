"""Analytics event and audit log models shared by producers and consumers."""
import json
from datetime import datetime, timezone
from enum import Enum
from typing import Any, Dict, Optional

from pydantic import BaseModel, ConfigDict, Field, field_validator

from shared.errors import SerializationError

# Canonical user id width: unsigned 64-bit.
MAX_USER_ID = 2**64 - 1


class EventType(str, Enum):
    """First-class analytics events."""
    PAGE_VIEW = "page_view"
    BUTTON_CLICK = "button_click"
    FORM_SUBMIT = "form_submit"
    API_REQUEST = "api_request"
    USER_SIGNUP = "user_signup"
    USER_LOGIN = "user_login"
    USER_LOGOUT = "user_logout"
    ERROR_OCCURRED = "error_occurred"


class AuditAction(str, Enum):
    """Common audit actions."""
    CREATE = "create"
    READ = "read"
    UPDATE = "update"
    DELETE = "delete"
    LOGIN = "login"
    LOGOUT = "logout"


class Resource(str, Enum):
    """Common audited resources."""
    USER = "user"
    PROFILE = "profile"
    POST = "post"
    COMMENT = "comment"


def utcnow() -> datetime:
    return datetime.now(timezone.utc)


def stringify(value: Any) -> str:
    """Render a property value in its canonical string form."""
    if isinstance(value, str):
        return value.value if isinstance(value, Enum) else value
    if isinstance(value, bool):
        return "true" if value else "false"
    if isinstance(value, Enum):
        return stringify(value.value)
    if value is None:
        return ""
    if isinstance(value, (int, float)):
        return str(value)
    try:
        return json.dumps(value)
    except (TypeError, ValueError):
        return str(value)


def _dump_json(data: Any) -> str:
    try:
        return json.dumps(data)
    except (TypeError, ValueError) as e:
        raise SerializationError(f"value is not JSON serializable: {e}") from e


def _load_json(raw: str) -> Any:
    try:
        return json.loads(raw)
    except ValueError as e:
        raise SerializationError(f"stored value is not valid JSON: {e}") from e


class _Record(BaseModel):
    """Fields and defaulting rules common to both record kinds."""

    model_config = ConfigDict(validate_assignment=True)

    id: Optional[str] = Field(default=None, description="Assigned by the sink at write time")
    timestamp: Optional[datetime] = Field(default=None, description="Occurrence time (UTC)")
    user_id: int = Field(..., ge=0, le=MAX_USER_ID, description="Acting principal, 0 for system")

    @field_validator("timestamp")
    @classmethod
    def _assume_utc(cls, value: Optional[datetime]) -> Optional[datetime]:
        if value is not None and value.tzinfo is None:
            return value.replace(tzinfo=timezone.utc)
        return value

    def ensure_timestamp(self, now: Optional[datetime] = None):
        """Return this record, or a copy stamped with `now` when the timestamp is unset."""
        if self.timestamp is not None:
            return self
        return self.model_copy(update={"timestamp": now or utcnow()})


class AnalyticsEvent(_Record):
    """A single tracked analytics event."""

    event: str = Field(..., min_length=1)
    metadata: str = Field(default="", description="Producer-defined JSON blob")
    properties: Dict[str, str] = Field(default_factory=dict)

    @field_validator("event", mode="before")
    @classmethod
    def _event_value(cls, value: Any) -> Any:
        return value.value if isinstance(value, Enum) else value

    @field_validator("properties", mode="before")
    @classmethod
    def _stringify_properties(cls, value: Any) -> Any:
        if value is None:
            return {}
        if isinstance(value, dict):
            return {str(k): stringify(v) for k, v in value.items()}
        return value

    def set_metadata(self, data: Any) -> None:
        """Serialize `data` into the metadata field; None clears it."""
        self.metadata = "" if data is None else _dump_json(data)

    def get_metadata(self) -> Any:
        """Deserialize the metadata field, or None when it is empty."""
        if not self.metadata:
            return None
        return _load_json(self.metadata)

    def log_fields(self) -> Dict[str, Any]:
        return {"event_type": self.event, "user_id": self.user_id}


class AuditLog(_Record):
    """An append-only record of a user action."""

    action: str = Field(..., min_length=1)
    resource: str = ""
    resource_id: str = ""
    details: str = Field(default="", description="JSON object describing the action")
    ip_address: str = ""
    user_agent: str = ""

    @field_validator("action", "resource", mode="before")
    @classmethod
    def _enum_value(cls, value: Any) -> Any:
        return value.value if isinstance(value, Enum) else value

    @field_validator("resource_id", mode="before")
    @classmethod
    def _stringify_resource_id(cls, value: Any) -> Any:
        return stringify(value)

    def set_details(self, details: Optional[Dict[str, Any]]) -> None:
        """Serialize `details` into the details field; None or {} clears it."""
        self.details = _dump_json(details) if details else ""

    def get_details(self) -> Dict[str, Any]:
        if not self.details:
            return {}
        return _load_json(self.details)

    def log_fields(self) -> Dict[str, Any]:
        return {"action": self.action, "user_id": self.user_id, "resource": self.resource}
