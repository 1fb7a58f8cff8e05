"""Append-only DynamoDB sink for analytics events and audit logs."""
import asyncio
from contextlib import AsyncExitStack
from datetime import datetime, timezone
from typing import Any, Dict, List, Optional, Union
from uuid import uuid4

import aioboto3
from boto3.dynamodb.conditions import Key
from botocore.exceptions import BotoCoreError, ClientError

from shared.config import DynamoDBSettings
from shared.errors import SinkError
from shared.logger import get_logger
from shared.models import MAX_USER_ID, AnalyticsEvent, AuditLog

logger = get_logger(__name__)

READ_LIMIT = 1000
USER_ID_INDEX = "user-id-index"


def format_timestamp(timestamp: datetime) -> str:
    """Fixed-width UTC ISO-8601, so range keys sort chronologically as strings."""
    if timestamp.tzinfo is None:
        timestamp = timestamp.replace(tzinfo=timezone.utc)
    return timestamp.astimezone(timezone.utc).isoformat(timespec="microseconds")


def _table_definition(table_name: str) -> Dict[str, Any]:
    return {
        "TableName": table_name,
        "KeySchema": [
            {"AttributeName": "id", "KeyType": "HASH"},
            {"AttributeName": "timestamp", "KeyType": "RANGE"},
        ],
        "AttributeDefinitions": [
            {"AttributeName": "id", "AttributeType": "S"},
            {"AttributeName": "timestamp", "AttributeType": "S"},
            {"AttributeName": "user_id", "AttributeType": "N"},
        ],
        "GlobalSecondaryIndexes": [
            {
                "IndexName": USER_ID_INDEX,
                "KeySchema": [
                    {"AttributeName": "user_id", "KeyType": "HASH"},
                    {"AttributeName": "timestamp", "KeyType": "RANGE"},
                ],
                "Projection": {"ProjectionType": "ALL"},
            },
        ],
        "BillingMode": "PAY_PER_REQUEST",
    }


def _error_code(error: ClientError) -> str:
    return error.response.get("Error", {}).get("Code", "")


def _check_user_id(user_id: int) -> int:
    if not 0 <= user_id <= MAX_USER_ID:
        raise ValueError(f"user_id out of range: {user_id}")
    return user_id


class DynamoDBSink:
    """Async DynamoDB client owning one shared client/resource pair."""

    def __init__(
        self,
        analytics_table: str = "analytics_events",
        audit_logs_table: str = "audit_logs",
        region_name: str = "us-east-1",
        aws_profile: Optional[str] = None,
        endpoint_url: Optional[str] = None,
    ):
        """
        Initialize the sink. Connections are opened on first use.

        Args:
            analytics_table: Table receiving analytics events
            audit_logs_table: Table receiving audit logs
            region_name: AWS region
            aws_profile: AWS profile name (optional)
            endpoint_url: Endpoint override for DynamoDB Local (optional)
        """
        self.analytics_table = analytics_table
        self.audit_logs_table = audit_logs_table
        self.region_name = region_name
        self.aws_profile = aws_profile
        self.endpoint_url = endpoint_url
        self.session = None
        self._stack: Optional[AsyncExitStack] = None
        self._client = None
        self._resource = None
        self._connect_lock = asyncio.Lock()

    @classmethod
    def from_settings(cls, settings: DynamoDBSettings) -> "DynamoDBSink":
        return cls(
            analytics_table=settings.analytics_table,
            audit_logs_table=settings.audit_logs_table,
            region_name=settings.region_name,
            aws_profile=settings.aws_profile,
            endpoint_url=settings.endpoint_url,
        )

    def _get_session(self):
        if self.session is None:
            session_kwargs = {"region_name": self.region_name}
            if self.aws_profile:
                session_kwargs["profile_name"] = self.aws_profile
            self.session = aioboto3.Session(**session_kwargs)
        return self.session

    async def connect(self) -> None:
        """Open the client and resource shared by every call on this sink."""
        async with self._connect_lock:
            if self._stack is not None:
                return
            session = self._get_session()
            kwargs = {"endpoint_url": self.endpoint_url} if self.endpoint_url else {}
            stack = AsyncExitStack()
            try:
                self._client = await stack.enter_async_context(session.client("dynamodb", **kwargs))
                self._resource = await stack.enter_async_context(session.resource("dynamodb", **kwargs))
            except (BotoCoreError, ClientError) as e:
                await stack.aclose()
                logger.error("dynamodb_connection_failed", error=str(e))
                raise SinkError(f"cannot connect to DynamoDB: {e}") from e
            self._stack = stack
            logger.info("dynamodb_sink_connected", region_name=self.region_name)

    async def close(self) -> None:
        if self._stack is None:
            return
        stack, self._stack = self._stack, None
        self._client = None
        self._resource = None
        await stack.aclose()
        logger.info("dynamodb_sink_closed")

    async def _table(self, table_name: str):
        await self.connect()
        return await self._resource.Table(table_name)

    async def ensure_tables(self) -> None:
        """Create both tables if they don't exist (idempotent)."""
        for table_name in (self.analytics_table, self.audit_logs_table):
            await self.ensure_table_exists(table_name)

    async def ensure_table_exists(self, table_name: str) -> None:
        await self.connect()
        try:
            await self._client.describe_table(TableName=table_name)
            logger.info("dynamodb_table_exists", table_name=table_name)
            return
        except ClientError as e:
            if _error_code(e) != "ResourceNotFoundException":
                logger.error("dynamodb_table_describe_failed", table_name=table_name, error=str(e))
                raise SinkError(f"cannot describe table {table_name}: {e}") from e
        except BotoCoreError as e:
            logger.error("dynamodb_table_describe_failed", table_name=table_name, error=str(e))
            raise SinkError(f"cannot describe table {table_name}: {e}") from e

        try:
            await self._client.create_table(**_table_definition(table_name))
        except ClientError as e:
            # Another instance may have created it between describe and create.
            if _error_code(e) != "ResourceInUseException":
                logger.error("dynamodb_table_creation_failed", table_name=table_name, error=str(e))
                raise SinkError(f"cannot create table {table_name}: {e}") from e
        except BotoCoreError as e:
            logger.error("dynamodb_table_creation_failed", table_name=table_name, error=str(e))
            raise SinkError(f"cannot create table {table_name}: {e}") from e

        try:
            waiter = self._client.get_waiter("table_exists")
            await waiter.wait(TableName=table_name)
        except (BotoCoreError, ClientError) as e:
            raise SinkError(f"table {table_name} did not become active: {e}") from e
        logger.info("dynamodb_table_created", table_name=table_name)

    async def insert(self, record: Union[AnalyticsEvent, AuditLog]) -> str:
        """Append one record and return its assigned id."""
        if isinstance(record, AnalyticsEvent):
            return await self.insert_analytics_event(record)
        if isinstance(record, AuditLog):
            return await self.insert_audit_log(record)
        raise TypeError(f"unsupported record type: {type(record).__name__}")

    async def insert_analytics_event(self, event: AnalyticsEvent) -> str:
        event = event.ensure_timestamp()
        item = {
            "id": str(uuid4()),
            "timestamp": format_timestamp(event.timestamp),
            "user_id": event.user_id,
            "event": event.event,
            "metadata": event.metadata,
            "properties": dict(event.properties),
        }
        await self._put(self.analytics_table, item)
        return item["id"]

    async def insert_audit_log(self, log: AuditLog) -> str:
        log = log.ensure_timestamp()
        item = {
            "id": str(uuid4()),
            "timestamp": format_timestamp(log.timestamp),
            "user_id": log.user_id,
            "action": log.action,
            "resource": log.resource,
            "resource_id": log.resource_id,
            "details": log.details,
            "ip_address": log.ip_address,
            "user_agent": log.user_agent,
        }
        await self._put(self.audit_logs_table, item)
        return item["id"]

    async def _put(self, table_name: str, item: Dict[str, Any]) -> None:
        try:
            table = await self._table(table_name)
            await table.put_item(Item=item)
        except (BotoCoreError, ClientError) as e:
            logger.error(
                "dynamodb_write_failed",
                table_name=table_name,
                user_id=item["user_id"],
                error=str(e),
            )
            raise SinkError(f"cannot write to {table_name}: {e}") from e
        logger.debug("dynamodb_item_written", table_name=table_name, id=item["id"])

    async def get_analytics_events(self, user_id: int) -> List[AnalyticsEvent]:
        """Most recent events of a user, newest first; empty list when none."""
        items = await self._query_user(self.analytics_table, user_id)
        return [
            AnalyticsEvent(
                id=item["id"],
                timestamp=datetime.fromisoformat(item["timestamp"]),
                user_id=int(item["user_id"]),
                event=item["event"],
                metadata=item.get("metadata", ""),
                properties=dict(item.get("properties") or {}),
            )
            for item in items
        ]

    async def get_audit_logs(self, user_id: int) -> List[AuditLog]:
        """Most recent audit logs of a user, newest first; empty list when none."""
        items = await self._query_user(self.audit_logs_table, user_id)
        return [
            AuditLog(
                id=item["id"],
                timestamp=datetime.fromisoformat(item["timestamp"]),
                user_id=int(item["user_id"]),
                action=item["action"],
                resource=item.get("resource", ""),
                resource_id=item.get("resource_id", ""),
                details=item.get("details", ""),
                ip_address=item.get("ip_address", ""),
                user_agent=item.get("user_agent", ""),
            )
            for item in items
        ]

    async def _query_user(self, table_name: str, user_id: int) -> List[Dict[str, Any]]:
        _check_user_id(user_id)
        query_kwargs = {
            "IndexName": USER_ID_INDEX,
            "KeyConditionExpression": Key("user_id").eq(user_id),
            "ScanIndexForward": False,
            "Limit": READ_LIMIT,
        }
        items: List[Dict[str, Any]] = []
        try:
            table = await self._table(table_name)
            while len(items) < READ_LIMIT:
                response = await table.query(**query_kwargs)
                items.extend(response.get("Items", []))
                last_key = response.get("LastEvaluatedKey")
                if not last_key:
                    break
                query_kwargs["ExclusiveStartKey"] = last_key
                query_kwargs["Limit"] = READ_LIMIT - len(items)
        except (BotoCoreError, ClientError) as e:
            logger.error("dynamodb_query_failed", table_name=table_name, user_id=user_id, error=str(e))
            raise SinkError(f"cannot query {table_name}: {e}") from e

        logger.info("dynamodb_user_query", table_name=table_name, user_id=user_id, returned=len(items))
        return items[:READ_LIMIT]
