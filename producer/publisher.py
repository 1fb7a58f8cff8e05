"""Domain-facing publisher translating user actions into queued events."""
import asyncio
from typing import Any, Awaitable, Dict, List, Mapping, Optional, Set, Tuple, Union

from shared.config import ANALYTICS_QUEUE, AUDIT_LOGS_QUEUE
from shared.logger import get_logger
from shared.models import (
    AnalyticsEvent,
    AuditAction,
    AuditLog,
    EventType,
    Resource,
    stringify,
)

logger = get_logger(__name__)

Metadata = Optional[Mapping[str, Any]]
Record = Union[AnalyticsEvent, AuditLog]


class EventPublisher:
    """
    Builds analytics events and audit logs and hands them to the queue client.

    Holds no state besides the queue client and the set of detached
    publishes still running.
    """

    def __init__(
        self,
        queue: Any,
        analytics_queue: str = ANALYTICS_QUEUE,
        audit_logs_queue: str = AUDIT_LOGS_QUEUE,
    ):
        """
        Args:
            queue: Queue client exposing async publish(queue_name, value)
            analytics_queue: Queue receiving analytics events
            audit_logs_queue: Queue receiving audit logs
        """
        self.queue = queue
        self.analytics_queue = analytics_queue
        self.audit_logs_queue = audit_logs_queue
        self._pending: Set[asyncio.Task] = set()

    async def publish_analytics(self, event: AnalyticsEvent) -> None:
        """Publish an event, stamping it with the current time when unset."""
        await self.queue.publish(self.analytics_queue, event.ensure_timestamp())

    async def publish_audit_log(self, log: AuditLog) -> None:
        """Publish an audit log, stamping it with the current time when unset."""
        await self.queue.publish(self.audit_logs_queue, log.ensure_timestamp())

    async def track_login(self, user_id: int, success: bool, metadata: Metadata = None) -> None:
        event = self._event(user_id, EventType.USER_LOGIN, {"success": success}, metadata)
        log = self._audit_log(
            user_id,
            AuditAction.LOGIN,
            Resource.USER,
            user_id,
            {"success": success, "metadata": dict(metadata) if metadata else None},
            metadata,
        )
        await self._publish_all(event, log)

    async def track_logout(self, user_id: int, metadata: Metadata = None) -> None:
        event = self._event(user_id, EventType.USER_LOGOUT, {}, metadata)
        log = self._audit_log(user_id, AuditAction.LOGOUT, Resource.USER, user_id, None, metadata)
        await self._publish_all(event, log)

    async def track_registration(self, user_id: int, metadata: Metadata = None) -> None:
        event = self._event(user_id, EventType.USER_SIGNUP, {}, metadata)
        log = self._audit_log(
            user_id,
            AuditAction.CREATE,
            Resource.USER,
            user_id,
            {"metadata": dict(metadata) if metadata else None},
            metadata,
        )
        await self._publish_all(event, log)

    async def track_page_view(self, user_id: int, page: str, metadata: Metadata = None) -> None:
        await self._publish_all(self._event(user_id, EventType.PAGE_VIEW, {"page": page}, metadata))

    async def track_api_request(
        self,
        user_id: int,
        endpoint: str,
        method: str,
        status_code: int,
        metadata: Metadata = None,
    ) -> None:
        base = {"endpoint": endpoint, "method": method, "status_code": status_code}
        await self._publish_all(self._event(user_id, EventType.API_REQUEST, base, metadata))

    async def track_error(
        self,
        user_id: int,
        error_type: str,
        message: str,
        metadata: Metadata = None,
    ) -> None:
        base = {"error_type": error_type, "message": message}
        await self._publish_all(self._event(user_id, EventType.ERROR_OCCURRED, base, metadata))

    async def log_user_action(
        self,
        user_id: int,
        action: Union[AuditAction, str],
        resource: Union[Resource, str],
        resource_id: Any,
        details: Optional[Dict[str, Any]] = None,
        ip_address: str = "",
        user_agent: str = "",
    ) -> None:
        log = AuditLog(
            user_id=user_id,
            action=action,
            resource=resource,
            resource_id=resource_id,
            ip_address=ip_address,
            user_agent=user_agent,
        )
        log.set_details(details)
        await self._publish_all(None, log)

    def detach(self, publish: Awaitable[None]) -> asyncio.Task:
        """
        Run a publish in the background (fire-and-forget).

        Failures are logged and never reach the caller. Use drain() at
        shutdown to let detached publishes finish.
        """
        task = asyncio.ensure_future(publish)
        self._pending.add(task)
        task.add_done_callback(self._detached_done)
        return task

    def _detached_done(self, task: asyncio.Task) -> None:
        self._pending.discard(task)
        if task.cancelled():
            return
        error = task.exception()
        if error is not None:
            logger.error(
                "detached_publish_failed",
                error=str(error),
                error_type=type(error).__name__,
            )

    async def drain(self, timeout: Optional[float] = None) -> None:
        """Wait for detached publishes; cancel those still running after `timeout`."""
        if not self._pending:
            return
        _, pending = await asyncio.wait(set(self._pending), timeout=timeout)
        if pending:
            logger.warning("detached_publishes_abandoned", count=len(pending))
            for task in pending:
                task.cancel()

    def _event(
        self,
        user_id: int,
        event_type: EventType,
        base: Dict[str, Any],
        metadata: Metadata,
    ) -> AnalyticsEvent:
        properties = {key: stringify(value) for key, value in base.items()}
        for key, value in (metadata or {}).items():
            if key in properties:
                logger.warning("metadata_key_ignored", key=key, event_type=event_type.value)
                continue
            properties[key] = stringify(value)
        return AnalyticsEvent(user_id=user_id, event=event_type, properties=properties)

    def _audit_log(
        self,
        user_id: int,
        action: AuditAction,
        resource: Resource,
        resource_id: Any,
        details: Optional[Dict[str, Any]],
        metadata: Metadata,
    ) -> AuditLog:
        metadata = metadata or {}
        log = AuditLog(
            user_id=user_id,
            action=action,
            resource=resource,
            resource_id=resource_id,
            ip_address=stringify(metadata.get("ip_address", "")),
            user_agent=stringify(metadata.get("user_agent", "")),
        )
        log.set_details(details)
        return log

    async def _publish_all(self, event: Optional[AnalyticsEvent], log: Optional[AuditLog] = None) -> None:
        """Attempt every publish, then raise the first failure, if any."""
        steps: List[Tuple[str, Any, Record]] = []
        if event is not None:
            steps.append((self.analytics_queue, self.publish_analytics, event))
        if log is not None:
            steps.append((self.audit_logs_queue, self.publish_audit_log, log))

        first_error: Optional[Exception] = None
        for queue_name, publish, record in steps:
            try:
                await publish(record)
            except Exception as e:
                logger.error(
                    "tracking_publish_failed",
                    queue=queue_name,
                    error=str(e),
                    error_type=type(e).__name__,
                    **record.log_fields(),
                )
                if first_error is None:
                    first_error = e

        if first_error is not None:
            raise first_error
