"""
Durable queue client backed by Kafka topics.

A queue is a replicated topic consumed through a shared consumer group.
Offsets are committed only when a message is settled, one message at a
time, which gives at-least-once delivery:

- ack: commit past the message
- nack(requeue=False): commit past the message (discard)
- nack(requeue=True): re-publish the body to the tail of the same topic
  with an incremented delivery count, then commit past the original
"""
import asyncio
import json
from typing import Any, Dict, List, Optional, Set, Tuple
from uuid import uuid4

from aiokafka import AIOKafkaConsumer, AIOKafkaProducer
from aiokafka.admin import AIOKafkaAdminClient, NewTopic
from aiokafka.errors import KafkaError, TopicAlreadyExistsError, for_code
from aiokafka.structs import TopicPartition
from pydantic import BaseModel

from shared.config import KafkaSettings
from shared.errors import MessageSettledError, SerializationError, TransportError
from shared.logger import get_logger

logger = get_logger(__name__)

CONTENT_TYPE = "application/json"
CONTENT_TYPE_HEADER = "content-type"
MESSAGE_ID_HEADER = "message-id"
DELIVERY_COUNT_HEADER = "x-delivery-count"

_END = object()


def encode(value: Any) -> bytes:
    """Serialize a model or plain JSON value to its canonical wire form."""
    try:
        if isinstance(value, BaseModel):
            return value.model_dump_json(exclude_none=True).encode("utf-8")
        return json.dumps(value).encode("utf-8")
    except (TypeError, ValueError) as e:
        raise SerializationError(f"cannot encode {type(value).__name__}: {e}") from e


def _encode_headers(headers: Dict[str, str]) -> List[Tuple[str, bytes]]:
    return [(key, value.encode("utf-8")) for key, value in headers.items()]


def _decode_headers(raw: Optional[Any]) -> Dict[str, str]:
    headers = {}
    for key, value in raw or ():
        headers[key] = value.decode("utf-8", errors="replace") if value is not None else ""
    return headers


class Message:
    """A delivery from a queue, settled exactly once with ack() or nack()."""

    def __init__(
        self,
        body: bytes,
        acknowledger: Any,
        queue: str = "",
        headers: Optional[Dict[str, str]] = None,
        delivery_tag: Any = None,
    ):
        """
        Args:
            body: Raw payload bytes
            acknowledger: Object with async ack(message) and nack(message, requeue)
            queue: Name of the queue the message was pulled from
            headers: Decoded transport headers
            delivery_tag: Broker-assigned handle used by the acknowledger
        """
        self.body = body
        self.queue = queue
        self.headers = dict(headers or {})
        self.delivery_tag = delivery_tag
        self._acknowledger = acknowledger
        self._settled = False

    @property
    def message_id(self) -> Optional[str]:
        return self.headers.get(MESSAGE_ID_HEADER)

    @property
    def delivery_count(self) -> int:
        """How many times this payload has been delivered, starting at 1."""
        try:
            return max(int(self.headers.get(DELIVERY_COUNT_HEADER, "1")), 1)
        except ValueError:
            return 1

    @property
    def settled(self) -> bool:
        return self._settled

    async def ack(self) -> None:
        """Commit the message; it will not be redelivered."""
        self._claim("ack")
        await self._acknowledger.ack(self)

    async def nack(self, requeue: bool) -> None:
        """Reject the message, returning it to the queue when `requeue` is set."""
        self._claim("nack")
        await self._acknowledger.nack(self, requeue)

    def _claim(self, operation: str) -> None:
        if self._settled:
            raise MessageSettledError(
                f"cannot {operation} message {self.message_id}: already settled"
            )
        self._settled = True

    def __repr__(self) -> str:
        return f"Message(queue={self.queue!r}, id={self.message_id!r}, tag={self.delivery_tag!r})"


class ConsumerStream:
    """
    Async iterator of Messages pulled from one queue.

    Deliveries are pumped from the Kafka consumer into a bounded buffer;
    the pump blocks while the buffer is full. The stream is not restartable:
    once it ends, call QueueClient.consume() again.
    """

    def __init__(self, client: "QueueClient", queue_name: str, prefetch: int):
        self.queue_name = queue_name
        self._client = client
        self._consumer: Optional[AIOKafkaConsumer] = None
        self._buffer: asyncio.Queue = asyncio.Queue(maxsize=prefetch)
        self._pump_task: Optional[asyncio.Task] = None
        self._stopping = False
        self._closed = False
        self._finished = asyncio.Event()
        # One consumer group per queue.
        self.group_id = f"{client.group_id}.{queue_name}"

    def __aiter__(self) -> "ConsumerStream":
        return self

    async def __anext__(self) -> Message:
        if self._closed:
            raise StopAsyncIteration
        if self._consumer is None and not self._stopping:
            await self._start()
        item = await self._buffer.get()
        if item is _END:
            await self._finish()
            raise StopAsyncIteration
        return item

    async def _start(self) -> None:
        self._consumer = AIOKafkaConsumer(
            self.queue_name,
            bootstrap_servers=self._client.bootstrap_servers,
            group_id=self.group_id,
            enable_auto_commit=False,
            auto_offset_reset="earliest",
        )
        try:
            await self._consumer.start()
        except KafkaError as e:
            logger.error("queue_consumer_start_failed", queue=self.queue_name, error=str(e))
            await self._finish()
            raise TransportError(f"cannot consume {self.queue_name}: {e}") from e

        self._pump_task = asyncio.create_task(self._pump())
        logger.info(
            "queue_consumer_started",
            queue=self.queue_name,
            consumer_group=self.group_id,
        )

    async def _pump(self) -> None:
        try:
            async for record in self._consumer:
                message = Message(
                    body=record.value or b"",
                    acknowledger=self,
                    queue=self.queue_name,
                    headers=_decode_headers(record.headers),
                    delivery_tag=(record.partition, record.offset),
                )
                await self._buffer.put(message)
        except KafkaError as e:
            logger.error("queue_stream_failed", queue=self.queue_name, error=str(e))
        await self._buffer.put(_END)

    def stop(self) -> None:
        """Stop pulling; the iterator ends once the message in flight is settled."""
        if self._stopping or self._closed:
            return
        self._stopping = True
        if self._pump_task is not None:
            self._pump_task.cancel()
        # Buffered deliveries are uncommitted and will be redelivered.
        while not self._buffer.empty():
            self._buffer.get_nowait()
        self._buffer.put_nowait(_END)

    async def close(self, grace_period: float) -> None:
        self.stop()
        if self._consumer is None:
            await self._finish()
            return
        try:
            await asyncio.wait_for(self._finished.wait(), timeout=grace_period)
        except asyncio.TimeoutError:
            logger.warning(
                "queue_consumer_grace_expired",
                queue=self.queue_name,
                grace_period=grace_period,
            )
            await self._finish()

    async def _finish(self) -> None:
        if self._closed:
            return
        self._closed = True
        if self._pump_task is not None:
            self._pump_task.cancel()
            await asyncio.gather(self._pump_task, return_exceptions=True)
        if self._consumer is not None:
            try:
                await self._consumer.stop()
            except KafkaError as e:
                logger.warning("queue_consumer_stop_error", queue=self.queue_name, error=str(e))
        self._client._streams.discard(self)
        self._finished.set()
        logger.info("queue_consumer_stopped", queue=self.queue_name)

    async def ack(self, message: Message) -> None:
        await self._commit(message)

    async def nack(self, message: Message, requeue: bool) -> None:
        if requeue:
            headers = dict(message.headers)
            headers[DELIVERY_COUNT_HEADER] = str(message.delivery_count + 1)
            try:
                await self._client.publish_raw(self.queue_name, message.body, headers)
            except TransportError:
                # Committing anything after this point would skip the message.
                logger.error(
                    "message_requeue_failed",
                    queue=self.queue_name,
                    message_id=message.message_id,
                )
                self.stop()
                raise
        await self._commit(message)

    async def _commit(self, message: Message) -> None:
        partition, offset = message.delivery_tag
        try:
            await self._consumer.commit({TopicPartition(self.queue_name, partition): offset + 1})
        except KafkaError as e:
            logger.error(
                "queue_commit_failed",
                queue=self.queue_name,
                message_id=message.message_id,
                partition=partition,
                offset=offset,
                error=str(e),
            )
            raise TransportError(f"cannot commit {self.queue_name}[{partition}]@{offset}: {e}") from e


class QueueClient:
    """Owns the producer, admin client and consumer streams of one process."""

    def __init__(
        self,
        bootstrap_servers: str,
        group_id: str = "event-pipeline",
        partitions: int = 3,
        replication_factor: int = 1,
        prefetch: int = 16,
        request_timeout_ms: int = 30000,
    ):
        """
        Initialize the queue client. No connection is made until first use.

        Args:
            bootstrap_servers: Kafka broker address (e.g., 'localhost:9092')
            group_id: Consumer group prefix; each queue is consumed as "<group_id>.<queue>"
            partitions: Partitions for queues created by declare_queue
            replication_factor: Replicas for queues created by declare_queue
            prefetch: Deliveries buffered ahead of the processing loop
            request_timeout_ms: Producer and admin request timeout
        """
        self.bootstrap_servers = bootstrap_servers
        self.group_id = group_id
        self.partitions = partitions
        self.replication_factor = replication_factor
        self.prefetch = prefetch
        self.request_timeout_ms = request_timeout_ms
        self.producer: Optional[AIOKafkaProducer] = None
        self.admin: Optional[AIOKafkaAdminClient] = None
        self._streams: Set[ConsumerStream] = set()
        self._connect_lock = asyncio.Lock()
        self._closing = False
        self._closed = False

    @classmethod
    def from_settings(cls, settings: KafkaSettings) -> "QueueClient":
        return cls(
            bootstrap_servers=settings.bootstrap_servers,
            group_id=settings.consumer_group,
            partitions=settings.partitions,
            replication_factor=settings.replication_factor,
            prefetch=settings.prefetch,
            request_timeout_ms=settings.request_timeout_ms,
        )

    def _ensure_open(self) -> None:
        if self._closed:
            raise TransportError("queue client is closed")

    async def connect(self) -> None:
        """Start the producer. Safe to call more than once."""
        async with self._connect_lock:
            self._ensure_open()
            if self.producer is not None:
                return
            producer = AIOKafkaProducer(
                bootstrap_servers=self.bootstrap_servers,
                acks="all",
                enable_idempotence=True,
                retry_backoff_ms=100,
                request_timeout_ms=self.request_timeout_ms,
            )
            try:
                await producer.start()
            except KafkaError as e:
                logger.error(
                    "kafka_producer_connection_failed",
                    error=str(e),
                    bootstrap_servers=self.bootstrap_servers,
                )
                await producer.stop()
                raise TransportError(f"cannot connect to {self.bootstrap_servers}: {e}") from e
            self.producer = producer
            logger.info("kafka_producer_connected", bootstrap_servers=self.bootstrap_servers)

    async def _get_admin(self) -> AIOKafkaAdminClient:
        if self.admin is None:
            admin = AIOKafkaAdminClient(
                bootstrap_servers=self.bootstrap_servers,
                request_timeout_ms=self.request_timeout_ms,
            )
            try:
                await admin.start()
            except KafkaError as e:
                logger.error("kafka_admin_connection_failed", error=str(e))
                raise TransportError(f"cannot connect to {self.bootstrap_servers}: {e}") from e
            self.admin = admin
        return self.admin

    async def declare_queue(self, name: str) -> None:
        """Create a durable queue if it does not exist yet (idempotent)."""
        self._ensure_open()
        admin = await self._get_admin()
        topic = NewTopic(
            name=name,
            num_partitions=self.partitions,
            replication_factor=self.replication_factor,
        )
        try:
            response = await admin.create_topics([topic])
        except TopicAlreadyExistsError:
            response = None
        except KafkaError as e:
            logger.error("queue_declare_failed", queue=name, error=str(e))
            raise TransportError(f"cannot declare queue {name}: {e}") from e

        for entry in getattr(response, "topic_errors", None) or []:
            error_code = entry[1]
            if error_code == 0:
                continue
            error_type = for_code(error_code)
            if error_type is TopicAlreadyExistsError:
                continue
            logger.error("queue_declare_failed", queue=name, error=error_type.__name__)
            raise TransportError(f"cannot declare queue {name}: {error_type.__name__}")

        logger.info("queue_declared", queue=name, partitions=self.partitions)

    async def publish(self, queue_name: str, value: Any) -> None:
        """
        Serialize a value to JSON and enqueue it.

        Returns once the broker has accepted the message, not once it is consumed.

        Raises:
            SerializationError: If the value cannot be encoded
            TransportError: If the broker connection is unusable
        """
        body = encode(value)
        await self.publish_raw(queue_name, body)

    async def publish_raw(
        self,
        queue_name: str,
        body: bytes,
        headers: Optional[Dict[str, str]] = None,
    ) -> None:
        """Enqueue an already encoded body, keeping any given headers."""
        self._ensure_open()
        if self.producer is None:
            await self.connect()

        headers = dict(headers or {})
        headers.setdefault(MESSAGE_ID_HEADER, str(uuid4()))
        headers.setdefault(CONTENT_TYPE_HEADER, CONTENT_TYPE)
        message_id = headers[MESSAGE_ID_HEADER]

        try:
            await self.producer.send_and_wait(
                queue_name,
                value=body,
                headers=_encode_headers(headers),
            )
        except KafkaError as e:
            logger.error(
                "event_publish_failed",
                queue=queue_name,
                message_id=message_id,
                error=str(e),
            )
            raise TransportError(f"cannot publish to {queue_name}: {e}") from e

        logger.info("event_published", queue=queue_name, message_id=message_id)

    def consume(self, queue_name: str) -> ConsumerStream:
        """Open a lazy stream of un-acknowledged messages from a queue."""
        self._ensure_open()
        if self._closing:
            raise TransportError("queue client is closing")
        stream = ConsumerStream(self, queue_name, self.prefetch)
        self._streams.add(stream)
        return stream

    async def close(self, grace_period: float = 0.0) -> None:
        """
        Close consumer streams, then the admin client and producer.

        Messages in flight may still be settled during `grace_period` seconds.
        Calling close() again is a no-op.
        """
        if self._closing:
            return
        self._closing = True

        streams = list(self._streams)
        if streams:
            await asyncio.gather(*(stream.close(grace_period) for stream in streams))

        self._closed = True
        if self.admin is not None:
            try:
                await self.admin.close()
            except KafkaError as e:
                logger.warning("kafka_admin_close_error", error=str(e))
        if self.producer is not None:
            try:
                await self.producer.stop()
                logger.info("kafka_producer_disconnected")
            except KafkaError as e:
                logger.error("kafka_producer_disconnect_error", error=str(e))
        logger.info("queue_client_closed")
