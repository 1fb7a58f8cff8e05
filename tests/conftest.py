# ==============================================================================
# Shared Test Fixtures
# ==============================================================================
"""
Pytest fixtures shared across all test modules.

Provides:
- StubBroker: in-memory queue client with ack/nack bookkeeping and
  tail requeue, standing in for Kafka
- FakeSink: in-memory analytical store with injectable failures and delays
"""

import asyncio
import itertools
import json
from collections import deque
from typing import Any, Deque, Dict, List, Optional, Tuple
from uuid import uuid4

import pytest

from shared.errors import SinkError, TransportError
from shared.queue import DELIVERY_COUNT_HEADER, MESSAGE_ID_HEADER, Message, encode

# ==============================================================================
# Stub broker
# ==============================================================================


class StubBroker:
    """In-memory broker implementing the queue client interface.

    A consume() stream ends once its queue is empty, which lets processor
    loops run to completion inside a test. `delivery_limit` guards against
    endless requeue loops.
    """

    def __init__(self, delivery_limit: int = 50):
        self.queues: Dict[str, Deque[Tuple[bytes, Dict[str, str]]]] = {}
        self.declared: List[str] = []
        self.deliveries: List[Message] = []
        self.acked: List[Message] = []
        self.rejected: List[Message] = []
        self.requeued: List[Message] = []
        self.fail_queues: set = set()
        self.connected = False
        self.closed = False
        self.delivery_limit = delivery_limit
        self._tags = itertools.count(1)

    async def connect(self) -> None:
        self.connected = True

    async def declare_queue(self, name: str) -> None:
        self.declared.append(name)
        self.queues.setdefault(name, deque())

    async def publish(self, queue_name: str, value: Any) -> None:
        await self.publish_raw(queue_name, encode(value))

    async def publish_raw(
        self,
        queue_name: str,
        body: bytes,
        headers: Optional[Dict[str, str]] = None,
    ) -> None:
        if queue_name in self.fail_queues:
            raise TransportError(f"cannot publish to {queue_name}: broker unavailable")
        headers = dict(headers or {})
        headers.setdefault(MESSAGE_ID_HEADER, str(uuid4()))
        self.queues.setdefault(queue_name, deque()).append((body, headers))

    def consume(self, queue_name: str):
        return self._stream(queue_name)

    async def _stream(self, queue_name: str):
        pending = self.queues.setdefault(queue_name, deque())
        while pending and len(self.deliveries) < self.delivery_limit:
            body, headers = pending.popleft()
            message = Message(
                body=body,
                acknowledger=self,
                queue=queue_name,
                headers=headers,
                delivery_tag=next(self._tags),
            )
            self.deliveries.append(message)
            yield message

    async def ack(self, message: Message) -> None:
        self.acked.append(message)

    async def nack(self, message: Message, requeue: bool) -> None:
        if not requeue:
            self.rejected.append(message)
            return
        self.requeued.append(message)
        headers = dict(message.headers)
        headers[DELIVERY_COUNT_HEADER] = str(message.delivery_count + 1)
        self.queues[message.queue].append((message.body, headers))

    async def close(self, grace_period: float = 0.0) -> None:
        self.closed = True

    def records(self, queue_name: str) -> List[Dict[str, Any]]:
        """Decoded bodies currently waiting in a queue."""
        return [json.loads(body) for body, _ in self.queues.get(queue_name, ())]

    def headers(self, queue_name: str) -> List[Dict[str, str]]:
        return [headers for _, headers in self.queues.get(queue_name, ())]


# ==============================================================================
# Fake sink
# ==============================================================================


class FakeSink:
    """In-memory sink; `fail_next` and `slow_next` affect the next N inserts."""

    def __init__(self):
        self.analytics_events = []
        self.audit_logs = []
        self.inserts = 0
        self.fail_next = 0
        self.slow_next = 0
        self.delay = 0.5
        self.tables_ensured = False
        self.connected = False
        self.closed = False

    async def connect(self) -> None:
        self.connected = True

    async def ensure_tables(self) -> None:
        self.tables_ensured = True

    async def insert(self, record) -> str:
        self.inserts += 1
        if self.slow_next:
            self.slow_next -= 1
            await asyncio.sleep(self.delay)
        if self.fail_next:
            self.fail_next -= 1
            raise SinkError("sink unavailable")
        stored = record.model_copy(update={"id": str(uuid4())})
        if hasattr(record, "event"):
            self.analytics_events.append(stored)
        else:
            self.audit_logs.append(stored)
        return stored.id

    async def get_analytics_events(self, user_id: int):
        return self._latest(self.analytics_events, user_id)

    async def get_audit_logs(self, user_id: int):
        return self._latest(self.audit_logs, user_id)

    def _latest(self, rows, user_id):
        matches = [row for row in rows if row.user_id == user_id]
        return sorted(matches, key=lambda row: row.timestamp, reverse=True)[:1000]

    async def close(self) -> None:
        self.closed = True


# ==============================================================================
# Fixtures
# ==============================================================================


@pytest.fixture()
def broker():
    """A fresh stub broker per test."""
    return StubBroker()


@pytest.fixture()
def sink():
    """A fresh in-memory sink per test."""
    return FakeSink()
