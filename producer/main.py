"""Producer API service: accepts events and audit logs and queues them."""
from contextlib import asynccontextmanager
from typing import Any, Optional

from fastapi import Depends, FastAPI, HTTPException, Request, status

from producer.publisher import EventPublisher
from producer.schemas import AuditLogRequest, EventRequest, PublishResponse
from shared.config import ANALYTICS_QUEUE, AUDIT_LOGS_QUEUE, Settings, load_settings
from shared.errors import PipelineError
from shared.logger import configure_logging, get_logger
from shared.models import MAX_USER_ID, AnalyticsEvent, AuditLog
from shared.queue import QueueClient

logger = get_logger(__name__)

USER_ID_HEADER = "X-User-ID"


def resolve_user_id(request: Request) -> Optional[int]:
    """User id resolved by the upstream gateway, or None for anonymous requests."""
    raw = request.headers.get(USER_ID_HEADER)
    if raw is None:
        return None
    try:
        user_id = int(raw)
    except ValueError:
        logger.warning("invalid_user_id_header", value=raw)
        return None
    if not 0 <= user_id <= MAX_USER_ID:
        logger.warning("invalid_user_id_header", value=raw)
        return None
    return user_id


def get_publisher(request: Request) -> EventPublisher:
    return request.app.state.publisher


def create_app(settings: Optional[Settings] = None, queue: Optional[Any] = None) -> FastAPI:
    """
    Build the producer application.

    Args:
        settings: Loaded from the environment when omitted
        queue: Queue client; one is built from settings when omitted
    """
    settings = settings or load_settings()
    configure_logging(
        environment=settings.environment,
        level=settings.log_level,
        service="producer",
    )

    @asynccontextmanager
    async def lifespan(app: FastAPI):
        client = queue or QueueClient.from_settings(settings.kafka)
        try:
            await client.connect()
            for queue_name in (ANALYTICS_QUEUE, AUDIT_LOGS_QUEUE):
                await client.declare_queue(queue_name)
        except PipelineError as e:
            logger.error("producer_service_startup_failed", error=str(e))
            raise
        app.state.publisher = EventPublisher(client)
        logger.info("producer_service_started")

        yield

        await app.state.publisher.drain(timeout=settings.producer.drain_timeout_seconds)
        await client.close()
        logger.info("producer_service_shutdown")

    app = FastAPI(
        title="Event Producer API",
        description="API for publishing analytics events and audit logs",
        version="1.0.0",
        lifespan=lifespan,
    )

    @app.middleware("http")
    async def track_api_requests(request: Request, call_next):
        """Track requests from identified users without delaying the response."""
        response = await call_next(request)
        user_id = resolve_user_id(request)
        if user_id is not None:
            publisher: EventPublisher = request.app.state.publisher
            publisher.detach(
                publisher.track_api_request(
                    user_id,
                    request.url.path,
                    request.method,
                    response.status_code,
                    {
                        "ip_address": request.client.host if request.client else "",
                        "user_agent": request.headers.get("user-agent", ""),
                    },
                )
            )
        return response

    @app.get("/health")
    async def health_check():
        """Health check endpoint."""
        return {"status": "healthy", "service": "producer"}

    @app.post("/events", response_model=PublishResponse, status_code=status.HTTP_202_ACCEPTED)
    async def publish_event(
        body: EventRequest,
        publisher: EventPublisher = Depends(get_publisher),
    ) -> PublishResponse:
        """
        Publish an analytics event.

        The call waits for the broker to accept the event and answers 503
        when it cannot be queued.
        """
        try:
            event = AnalyticsEvent(
                user_id=body.user_id,
                event=body.event,
                properties=body.properties,
                timestamp=body.timestamp,
            )
            event.set_metadata(body.metadata)
            await publisher.publish_analytics(event)
        except PipelineError as e:
            logger.error("event_ingestion_failed", user_id=body.user_id, event_type=body.event, error=str(e))
            raise HTTPException(
                status_code=status.HTTP_503_SERVICE_UNAVAILABLE,
                detail=f"Failed to publish event: {e}",
            )
        logger.info("event_ingested", user_id=body.user_id, event_type=body.event)
        return PublishResponse(queue=publisher.analytics_queue)

    @app.post("/audit-logs", response_model=PublishResponse, status_code=status.HTTP_202_ACCEPTED)
    async def publish_audit_log(
        body: AuditLogRequest,
        publisher: EventPublisher = Depends(get_publisher),
    ) -> PublishResponse:
        """Publish an audit log; answers 503 when it cannot be queued."""
        try:
            log = AuditLog(
                user_id=body.user_id,
                action=body.action,
                resource=body.resource,
                resource_id=body.resource_id,
                ip_address=body.ip_address,
                user_agent=body.user_agent,
                timestamp=body.timestamp,
            )
            log.set_details(body.details)
            await publisher.publish_audit_log(log)
        except PipelineError as e:
            logger.error("audit_log_ingestion_failed", user_id=body.user_id, action=body.action, error=str(e))
            raise HTTPException(
                status_code=status.HTTP_503_SERVICE_UNAVAILABLE,
                detail=f"Failed to publish audit log: {e}",
            )
        logger.info("audit_log_ingested", user_id=body.user_id, action=body.action)
        return PublishResponse(queue=publisher.audit_logs_queue)

    return app


if __name__ == "__main__":
    import uvicorn

    uvicorn.run("producer.main:create_app", factory=True, host="0.0.0.0", port=8000)
