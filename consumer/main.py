"""Consumer service: one processor task per configured queue."""
import asyncio
import signal
from typing import Any, Dict, List, Type

from prometheus_client import start_http_server

from consumer.processor import QueueProcessor
from shared.config import ANALYTICS_QUEUE, AUDIT_LOGS_QUEUE, Settings, load_settings
from shared.dynamodb import DynamoDBSink
from shared.logger import configure_logging, get_logger
from shared.models import AnalyticsEvent, AuditLog
from shared.queue import QueueClient

logger = get_logger(__name__)

QUEUE_MODELS: Dict[str, Type[Any]] = {
    ANALYTICS_QUEUE: AnalyticsEvent,
    AUDIT_LOGS_QUEUE: AuditLog,
}


def build_processors(settings: Settings, queue: Any, sink: Any) -> List[QueueProcessor]:
    """Create one processor per configured queue."""
    processors = []
    for queue_name in settings.consumer.queues:
        model = QUEUE_MODELS.get(queue_name)
        if model is None:
            raise ValueError(f"no record type registered for queue {queue_name!r}")
        processors.append(
            QueueProcessor(
                queue=queue,
                queue_name=queue_name,
                model=model,
                sink=sink,
                insert_timeout=settings.consumer.insert_timeout_seconds,
                max_deliveries=settings.consumer.max_deliveries,
                requeue_backoff=settings.consumer.requeue_backoff_seconds,
            )
        )
    return processors


def setup_signal_handlers(shutdown_event: asyncio.Event) -> None:
    """Set the shutdown event on SIGINT/SIGTERM."""
    loop = asyncio.get_running_loop()

    def signal_handler(sig: signal.Signals) -> None:
        logger.info("signal_received", signal=sig.name)
        shutdown_event.set()

    for sig in (signal.SIGINT, signal.SIGTERM):
        loop.add_signal_handler(sig, signal_handler, sig)


async def run(settings: Settings, queue: Any, sink: Any, shutdown_event: asyncio.Event) -> None:
    """
    Run the processors until shutdown is requested or one of them stops.

    Shutdown order: end the queue streams (letting each in-flight insert
    settle within the grace period), then close the sink.
    """
    tasks: List[asyncio.Task] = []
    failures: List[BaseException] = []
    try:
        await sink.ensure_tables()
        processors = build_processors(settings, queue, sink)
        for processor in processors:
            await queue.declare_queue(processor.queue_name)
            if processor.max_deliveries:
                await queue.declare_queue(processor.dead_letter_queue)

        tasks = [
            asyncio.create_task(processor.run(), name=f"processor:{processor.queue_name}")
            for processor in processors
        ]
        waiter = asyncio.create_task(shutdown_event.wait())
        await asyncio.wait([*tasks, waiter], return_when=asyncio.FIRST_COMPLETED)
        waiter.cancel()
        if shutdown_event.is_set():
            logger.info("shutdown_signal_received")
        else:
            logger.warning("processor_exited_early")
    finally:
        await queue.close(grace_period=settings.consumer.shutdown_grace_seconds)
        results = await asyncio.gather(*tasks, return_exceptions=True)
        for task, result in zip(tasks, results):
            if isinstance(result, BaseException):
                logger.error("processor_failed", processor=task.get_name(), error=str(result))
                failures.append(result)
        await sink.close()
        logger.info("consumer_stopped")

    if failures and not shutdown_event.is_set():
        raise failures[0]


async def main() -> None:
    """Main entry point."""
    settings = load_settings()
    configure_logging(
        environment=settings.environment,
        level=settings.log_level,
        service="consumer",
    )
    if settings.consumer.metrics_port:
        start_http_server(settings.consumer.metrics_port)
        logger.info("metrics_server_started", port=settings.consumer.metrics_port)

    shutdown_event = asyncio.Event()
    setup_signal_handlers(shutdown_event)

    try:
        await run(
            settings,
            queue=QueueClient.from_settings(settings.kafka),
            sink=DynamoDBSink.from_settings(settings.dynamodb),
            shutdown_event=shutdown_event,
        )
    except Exception as e:
        logger.error("consumer_fatal_error", error=str(e))
        raise
    finally:
        logger.info("consumer_shutdown_complete")


if __name__ == "__main__":
    asyncio.run(main())
