"""Queue processor: deserialize, insert into the sink, then ack or nack."""
import asyncio
import random
import time
from typing import Any, Optional, Type, Union

from pydantic import ValidationError

from consumer.metrics import messages_processed, sink_insert_duration
from shared.errors import PoisonMessageError, TransportError
from shared.logger import get_logger
from shared.models import AnalyticsEvent, AuditLog
from shared.queue import Message

logger = get_logger(__name__)

Record = Union[AnalyticsEvent, AuditLog]

COMMITTED = "committed"
REJECTED = "rejected"
REQUEUED = "requeued"
DEAD_LETTERED = "dead_lettered"


class QueueProcessor:
    """
    Consumes one queue and writes each record to the sink.

    Per message: Received -> Committed | Rejected (final) | Rejected (requeue).
    The loop ends when the queue stream ends.
    """

    def __init__(
        self,
        queue: Any,
        queue_name: str,
        model: Type[Record],
        sink: Any,
        insert_timeout: float = 5.0,
        max_deliveries: int = 0,
        requeue_backoff: float = 0.0,
        dead_letter_queue: Optional[str] = None,
    ):
        """
        Args:
            queue: Queue client exposing consume() and publish_raw()
            queue_name: Queue to consume
            model: Record type carried by the queue
            sink: Sink exposing async insert(record)
            insert_timeout: Seconds allowed for one sink insert
            max_deliveries: Dead-letter after this many deliveries (0 disables)
            requeue_backoff: Upper bound of the jittered sleep before a requeue
            dead_letter_queue: Defaults to '<queue_name>.dlq'
        """
        self.queue = queue
        self.queue_name = queue_name
        self.model = model
        self.sink = sink
        self.insert_timeout = insert_timeout
        self.max_deliveries = max_deliveries
        self.requeue_backoff = requeue_backoff
        self.dead_letter_queue = dead_letter_queue or f"{queue_name}.dlq"

    async def run(self) -> None:
        """Process messages until the queue stream ends."""
        logger.info("processor_started", queue=self.queue_name)
        async for message in self.queue.consume(self.queue_name):
            await self.process(message)
        logger.info("processor_stopped", queue=self.queue_name)

    def decode(self, body: bytes) -> Record:
        try:
            return self.model.model_validate_json(body)
        except ValidationError as e:
            raise PoisonMessageError(
                f"invalid {self.model.__name__} payload: {e.error_count()} error(s)"
            ) from e

    async def process(self, message: Message) -> str:
        """Settle one message and return its outcome."""
        try:
            record = self.decode(message.body)
        except PoisonMessageError as e:
            logger.error(
                "poison_message_rejected",
                queue=self.queue_name,
                message_id=message.message_id,
                error=str(e),
                body=message.body[:512].decode("utf-8", errors="replace"),
            )
            return await self._settle(message, REJECTED)

        record = record.ensure_timestamp()

        start_time = time.perf_counter()
        try:
            await asyncio.wait_for(self.sink.insert(record), timeout=self.insert_timeout)
        except asyncio.TimeoutError:
            logger.warning(
                "sink_insert_timeout",
                queue=self.queue_name,
                message_id=message.message_id,
                timeout=self.insert_timeout,
                **record.log_fields(),
            )
            return await self._retry(message)
        except Exception as e:
            logger.warning(
                "sink_insert_failed",
                queue=self.queue_name,
                message_id=message.message_id,
                error=str(e),
                error_type=type(e).__name__,
                **record.log_fields(),
            )
            return await self._retry(message)
        finally:
            sink_insert_duration.labels(queue=self.queue_name).observe(time.perf_counter() - start_time)

        outcome = await self._settle(message, COMMITTED)
        logger.info(
            "record_processed",
            queue=self.queue_name,
            message_id=message.message_id,
            delivery_count=message.delivery_count,
            **record.log_fields(),
        )
        return outcome

    async def _retry(self, message: Message) -> str:
        if self.max_deliveries and message.delivery_count >= self.max_deliveries:
            try:
                await self.queue.publish_raw(
                    self.dead_letter_queue,
                    message.body,
                    {
                        **message.headers,
                        "x-original-queue": self.queue_name,
                        "x-dead-letter-reason": "max_deliveries_exceeded",
                    },
                )
            except TransportError as e:
                logger.error("dead_letter_publish_failed", queue=self.queue_name, error=str(e))
                return await self._settle(message, REQUEUED)
            logger.warning(
                "message_dead_lettered",
                queue=self.queue_name,
                dead_letter_queue=self.dead_letter_queue,
                message_id=message.message_id,
                delivery_count=message.delivery_count,
            )
            return await self._settle(message, DEAD_LETTERED)

        if self.requeue_backoff > 0:
            await asyncio.sleep(random.uniform(0, self.requeue_backoff))
        return await self._settle(message, REQUEUED)

    async def _settle(self, message: Message, outcome: str) -> str:
        try:
            if outcome == COMMITTED:
                await message.ack()
            else:
                await message.nack(requeue=outcome == REQUEUED)
        except TransportError as e:
            # Unsettled messages are redelivered once the consumer reattaches.
            logger.error(
                "message_settle_failed",
                queue=self.queue_name,
                message_id=message.message_id,
                outcome=outcome,
                error=str(e),
            )
            messages_processed.labels(queue=self.queue_name, outcome="settle_failed").inc()
            return outcome
        messages_processed.labels(queue=self.queue_name, outcome=outcome).inc()
        if outcome == REQUEUED:
            logger.info(
                "message_requeued",
                queue=self.queue_name,
                message_id=message.message_id,
                delivery_count=message.delivery_count,
            )
        return outcome
