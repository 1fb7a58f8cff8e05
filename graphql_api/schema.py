"""GraphQL schema for reading back analytics events and audit logs."""
from typing import List

from strawberry import Schema, field, type
from strawberry.scalars import JSON
from strawberry.types import Info

from shared.dynamodb import format_timestamp
from shared.logger import get_logger
from shared.models import MAX_USER_ID
from shared.models import AnalyticsEvent as AnalyticsEventRecord
from shared.models import AuditLog as AuditLogRecord

logger = get_logger(__name__)


def parse_user_id(user_id: str) -> int:
    """
    Parse a user id argument.

    User ids are unsigned 64-bit and GraphQL Int is 32-bit, so they travel
    as strings.
    """
    try:
        value = int(user_id)
    except ValueError:
        raise ValueError(f"Invalid user ID: {user_id!r}")
    if not 0 <= value <= MAX_USER_ID:
        raise ValueError(f"User ID out of range: {user_id!r}")
    return value


@type
class AnalyticsEvent:
    """GraphQL analytics event type."""
    id: str
    timestamp: str
    user_id: str
    event: str
    metadata: str
    properties: JSON

    @classmethod
    def from_record(cls, record: AnalyticsEventRecord) -> "AnalyticsEvent":
        return cls(
            id=record.id or "",
            timestamp=format_timestamp(record.timestamp),
            user_id=str(record.user_id),
            event=record.event,
            metadata=record.metadata,
            properties=dict(record.properties),
        )


@type
class AuditLog:
    """GraphQL audit log type."""
    id: str
    timestamp: str
    user_id: str
    action: str
    resource: str
    resource_id: str
    details: str  # JSON string
    ip_address: str
    user_agent: str

    @classmethod
    def from_record(cls, record: AuditLogRecord) -> "AuditLog":
        return cls(
            id=record.id or "",
            timestamp=format_timestamp(record.timestamp),
            user_id=str(record.user_id),
            action=record.action,
            resource=record.resource,
            resource_id=record.resource_id,
            details=record.details,
            ip_address=record.ip_address,
            user_agent=record.user_agent,
        )


@type
class Query:
    """GraphQL queries."""

    @field
    async def analytics_events(self, info: Info, user_id: str) -> List[AnalyticsEvent]:
        """Up to 1000 most recent analytics events of a user, newest first."""
        sink = info.context["sink"]
        records = await sink.get_analytics_events(parse_user_id(user_id))
        logger.info("analytics_events_query", user_id=user_id, returned=len(records))
        return [AnalyticsEvent.from_record(record) for record in records]

    @field
    async def audit_logs(self, info: Info, user_id: str) -> List[AuditLog]:
        """Up to 1000 most recent audit logs of a user, newest first."""
        sink = info.context["sink"]
        records = await sink.get_audit_logs(parse_user_id(user_id))
        logger.info("audit_logs_query", user_id=user_id, returned=len(records))
        return [AuditLog.from_record(record) for record in records]


schema = Schema(query=Query)
