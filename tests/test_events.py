"""
Tests for run-completion events and the publisher.
"""

import json
import pytest
from redis.exceptions import ConnectionError as RedisConnectionError

from margin_sync.config import Settings
from margin_sync.db import RunStatus, SyncKind, TriggerType
from margin_sync.events import (
    BrokerError,
    EventPublisher,
    InMemoryBroker,
    RedisStreamBroker,
    SyncEvent,
    create_publisher,
)

from tests.helpers import ts


class FlakyBroker(InMemoryBroker):
    """Fails the first `failures` sends."""

    def __init__(self, failures: int):
        super().__init__()
        self.failures = failures
        self.attempts = 0

    async def send(self, topic, key, payload):
        self.attempts += 1
        if self.attempts <= self.failures:
            raise BrokerError("broker unavailable")
        await super().send(topic, key, payload)


async def finished_run(db, merchant, status=RunStatus.SUCCESS):
    run = await db.create_run(merchant.id, SyncKind.ORDERS, TriggerType.ON_DEMAND)
    return await db.update_run(
        run.id,
        status=status,
        finished_at=ts(2026, 5, 10),
        watermark=ts(2026, 5, 9),
        summary={"counts": {"orders": {"created": 2}}, "margin": {"margin": "60.00"}},
    )


class TestSyncEvent:
    """Tests for SyncEvent."""

    async def test_from_run_carries_identity_and_counts(self, db, merchant):
        run = await finished_run(db, merchant)

        event = SyncEvent.from_run(run)

        assert event.key == merchant.id
        assert (event.merchant_id, event.sync_kind, event.run_id) == (merchant.id, SyncKind.ORDERS, run.id)
        assert event.counts == {"orders": {"created": 2}}
        assert event.margin == {"margin": "60.00"}
        assert event.watermark == ts(2026, 5, 9)

        payload = json.loads(event.model_dump_json())
        assert payload["status"] == "success"
        assert payload["sync_kind"] == "orders"


class TestEventPublisher:
    """Tests for EventPublisher."""

    async def test_publish_run_marks_published(self, db, merchant):
        broker = InMemoryBroker()
        publisher = EventPublisher(broker, "events", backoff_seconds=0)
        run = await finished_run(db, merchant)

        assert await publisher.publish_run(db, run) is True

        assert (await db.get_run(run.id)).published
        topic, key, payload = broker.messages[0]
        assert (topic, key) == ("events", merchant.id)
        assert json.loads(payload)["run_id"] == run.id

    async def test_retries_transient_broker_failures(self, db, merchant):
        broker = FlakyBroker(failures=2)
        publisher = EventPublisher(broker, "events", max_attempts=3, backoff_seconds=0)

        assert await publisher.publish_run(db, await finished_run(db, merchant))
        assert broker.attempts == 3

    async def test_exhausted_retries_leave_run_for_sweep(self, db, merchant):
        broker = FlakyBroker(failures=3)
        publisher = EventPublisher(broker, "events", max_attempts=3, backoff_seconds=0)
        run = await finished_run(db, merchant)

        assert await publisher.publish_run(db, run) is False
        assert not (await db.get_run(run.id)).published
        assert [r.id for r in await db.get_unpublished_runs()] == [run.id]

        # Broker is back
        assert await publisher.sweep(db) == 1
        assert (await db.get_run(run.id)).published
        assert await db.get_unpublished_runs() == []

    async def test_failed_runs_are_not_published(self, db, merchant):
        broker = InMemoryBroker()
        publisher = EventPublisher(broker, "events", backoff_seconds=0)
        run = await finished_run(db, merchant, status=RunStatus.FAILED)

        assert await publisher.publish_run(db, run) is False
        assert broker.messages == []
        assert await db.get_unpublished_runs() == []

    async def test_partial_runs_are_published(self, db, merchant):
        broker = InMemoryBroker()
        publisher = EventPublisher(broker, "events", backoff_seconds=0)

        assert await publisher.publish_run(db, await finished_run(db, merchant, RunStatus.PARTIAL))
        assert json.loads(broker.messages[0][2])["status"] == "partial"


class TestBrokers:
    """Broker selection and error translation."""

    def test_in_process_broker_without_redis_url(self):
        publisher = create_publisher(Settings(redis_url="", events_topic="t"))

        assert isinstance(publisher.broker, InMemoryBroker)
        assert publisher.topic == "t"

    def test_redis_broker_with_url(self):
        publisher = create_publisher(Settings(redis_url="redis://localhost:6379/0"))

        assert isinstance(publisher.broker, RedisStreamBroker)

    async def test_redis_errors_become_broker_errors(self):
        class DownClient:
            async def xadd(self, *args, **kwargs):
                raise RedisConnectionError("connection refused")

        broker = RedisStreamBroker("redis://localhost:6379/0")
        broker._client = DownClient()

        with pytest.raises(BrokerError):
            await broker.send("events", "m1", "{}")
