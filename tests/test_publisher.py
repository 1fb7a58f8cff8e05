# ==============================================================================
# Tests for EventPublisher
# ==============================================================================
"""
Unit tests for the domain-facing publisher.

Tests cover:
- Record shapes produced by each tracking helper
- Timestamp defaulting at publish time
- Partial failure when one of two publishes fails
- Detached (fire-and-forget) publishing and draining

Uses the StubBroker from conftest.py.
"""

import asyncio
import json
from datetime import datetime, timezone

import pytest

from producer.publisher import EventPublisher
from shared.config import ANALYTICS_QUEUE, AUDIT_LOGS_QUEUE
from shared.errors import SerializationError, TransportError
from shared.models import AnalyticsEvent, AuditLog, utcnow


@pytest.fixture()
def publisher(broker):
    return EventPublisher(broker)


# ==============================================================================
# Tracking helpers
# ==============================================================================


class TestTrackingHelpers:
    """Tests for the records produced by each helper."""

    async def test_track_login(self, publisher, broker):
        await publisher.track_login(7, False, {"email": "a@b.com"})

        [event] = broker.records(ANALYTICS_QUEUE)
        assert event["user_id"] == 7
        assert event["event"] == "user_login"
        assert event["properties"] == {"success": "false", "email": "a@b.com"}

        [log] = broker.records(AUDIT_LOGS_QUEUE)
        assert log["action"] == "login"
        assert log["resource"] == "user"
        assert log["resource_id"] == "7"
        assert json.loads(log["details"]) == {"success": False, "metadata": {"email": "a@b.com"}}

    async def test_metadata_cannot_override_base_keys(self, publisher, broker):
        await publisher.track_login(1, True, {"success": "false"})

        [event] = broker.records(ANALYTICS_QUEUE)
        assert event["properties"]["success"] == "true"

    async def test_login_copies_client_fields_into_audit_log(self, publisher, broker):
        await publisher.track_login(3, True, {"ip_address": "10.0.0.1", "user_agent": "curl/8"})

        [log] = broker.records(AUDIT_LOGS_QUEUE)
        assert log["ip_address"] == "10.0.0.1"
        assert log["user_agent"] == "curl/8"

    async def test_track_logout(self, publisher, broker):
        await publisher.track_logout(5)

        [event] = broker.records(ANALYTICS_QUEUE)
        [log] = broker.records(AUDIT_LOGS_QUEUE)
        assert event["event"] == "user_logout"
        assert event["properties"] == {}
        assert log["action"] == "logout"
        assert log["details"] == ""

    async def test_track_registration(self, publisher, broker):
        await publisher.track_registration(11, {"plan": "free"})

        [event] = broker.records(ANALYTICS_QUEUE)
        [log] = broker.records(AUDIT_LOGS_QUEUE)
        assert event["event"] == "user_signup"
        assert event["properties"] == {"plan": "free"}
        assert log["action"] == "create"
        assert log["resource_id"] == "11"
        assert json.loads(log["details"]) == {"metadata": {"plan": "free"}}

    async def test_track_page_view_is_analytics_only(self, publisher, broker):
        await publisher.track_page_view(2, "/pricing", {"referrer": "search"})

        [event] = broker.records(ANALYTICS_QUEUE)
        assert event["event"] == "page_view"
        assert event["properties"] == {"page": "/pricing", "referrer": "search"}
        assert broker.records(AUDIT_LOGS_QUEUE) == []

    async def test_track_api_request(self, publisher, broker):
        await publisher.track_api_request(2, "/events", "POST", 404)

        [event] = broker.records(ANALYTICS_QUEUE)
        assert event["event"] == "api_request"
        assert event["properties"] == {"endpoint": "/events", "method": "POST", "status_code": "404"}

    async def test_track_error(self, publisher, broker):
        await publisher.track_error(0, "ValueError", "bad input")

        [event] = broker.records(ANALYTICS_QUEUE)
        assert event["user_id"] == 0
        assert event["event"] == "error_occurred"
        assert event["properties"] == {"error_type": "ValueError", "message": "bad input"}

    async def test_log_user_action(self, publisher, broker):
        await publisher.log_user_action(
            9, "update", "profile", 123, {"field": "email"}, ip_address="10.0.0.2", user_agent="ua"
        )

        [log] = broker.records(AUDIT_LOGS_QUEUE)
        assert log["action"] == "update"
        assert log["resource"] == "profile"
        assert log["resource_id"] == "123"
        assert json.loads(log["details"]) == {"field": "email"}
        assert log["ip_address"] == "10.0.0.2"
        assert broker.records(ANALYTICS_QUEUE) == []

    async def test_unserializable_details_publish_nothing(self, publisher, broker):
        with pytest.raises(SerializationError):
            await publisher.log_user_action(9, "update", "profile", 1, {"handle": object()})

        assert broker.records(AUDIT_LOGS_QUEUE) == []


# ==============================================================================
# Timestamps
# ==============================================================================


class TestTimestamps:
    """Tests for timestamp defaulting at publish time."""

    async def test_unset_timestamp_is_stamped_at_publish(self, publisher, broker):
        before = utcnow()
        await publisher.publish_analytics(AnalyticsEvent(user_id=1, event="x"))
        after = utcnow()

        [event] = broker.records(ANALYTICS_QUEUE)
        stamped = AnalyticsEvent.model_validate(event).timestamp
        assert before <= stamped <= after

    async def test_explicit_timestamp_is_preserved(self, publisher, broker):
        when = datetime(2021, 3, 4, 5, 6, 7, tzinfo=timezone.utc)
        await publisher.publish_audit_log(AuditLog(user_id=1, action="read", timestamp=when))

        [log] = broker.records(AUDIT_LOGS_QUEUE)
        assert AuditLog.model_validate(log).timestamp == when


# ==============================================================================
# Partial failure
# ==============================================================================


class TestPartialFailure:
    """Both publishes are attempted; the first failure is raised."""

    async def test_audit_log_still_published_when_analytics_fails(self, publisher, broker):
        broker.fail_queues.add(ANALYTICS_QUEUE)

        with pytest.raises(TransportError):
            await publisher.track_login(7, True)

        assert broker.records(ANALYTICS_QUEUE) == []
        assert len(broker.records(AUDIT_LOGS_QUEUE)) == 1

    async def test_first_error_is_raised_when_both_fail(self, publisher, broker):
        broker.fail_queues.update({ANALYTICS_QUEUE, AUDIT_LOGS_QUEUE})

        with pytest.raises(TransportError, match=ANALYTICS_QUEUE):
            await publisher.track_logout(7)

    async def test_audit_failure_surfaces_after_analytics_success(self, publisher, broker):
        broker.fail_queues.add(AUDIT_LOGS_QUEUE)

        with pytest.raises(TransportError, match=AUDIT_LOGS_QUEUE):
            await publisher.track_registration(7)

        assert len(broker.records(ANALYTICS_QUEUE)) == 1


# ==============================================================================
# Detached publishing
# ==============================================================================


class TestDetach:
    """Tests for fire-and-forget publishing."""

    async def test_detached_failure_does_not_raise(self, publisher, broker):
        broker.fail_queues.add(ANALYTICS_QUEUE)

        task = publisher.detach(publisher.track_page_view(1, "/"))
        await publisher.drain()

        assert task.done()
        assert isinstance(task.exception(), TransportError)

    async def test_drain_waits_for_pending_publishes(self, publisher, broker):
        publisher.detach(publisher.track_page_view(1, "/a"))
        publisher.detach(publisher.track_page_view(1, "/b"))

        await publisher.drain(timeout=1.0)

        pages = sorted(event["properties"]["page"] for event in broker.records(ANALYTICS_QUEUE))
        assert pages == ["/a", "/b"]

    async def test_drain_cancels_after_timeout(self, publisher):
        task = publisher.detach(asyncio.sleep(10))

        await publisher.drain(timeout=0.01)
        await asyncio.gather(task, return_exceptions=True)

        assert task.cancelled()
