"""
Run-completion events.

One event per finished run (success or partial) goes to a single topic,
keyed by merchant id. Delivery is at-least-once: consumers dedupe on
(merchant_id, sync_kind, run_id).
"""

import logging
from datetime import datetime
from typing import Any, Dict, List, Optional, Protocol, Tuple

import redis.asyncio as aioredis
from pydantic import BaseModel, Field
from redis.exceptions import RedisError
from tenacity import (
    AsyncRetrying,
    RetryError,
    retry_if_exception_type,
    stop_after_attempt,
    wait_exponential,
)

from .config import Settings
from .db import RunStatus, SQLiteDatabase, SyncKind, SyncRun, utcnow

logger = logging.getLogger(__name__)


class BrokerError(Exception):
    """The broker could not accept the event."""
    pass


class SyncEvent(BaseModel):
    merchant_id: str
    sync_kind: SyncKind
    run_id: str
    status: RunStatus
    counts: Dict[str, Any] = Field(default_factory=dict)
    watermark: Optional[datetime] = None
    timestamp: datetime = Field(default_factory=utcnow)
    margin: Optional[Dict[str, Any]] = None

    @property
    def key(self) -> str:
        return self.merchant_id

    @classmethod
    def from_run(cls, run: SyncRun) -> "SyncEvent":
        return cls(
            merchant_id=run.merchant_id,
            sync_kind=run.sync_kind,
            run_id=run.id,
            status=run.status,
            counts=run.summary.get("counts", {}),
            watermark=run.watermark,
            timestamp=run.finished_at or utcnow(),
            margin=run.summary.get("margin"),
        )


class Broker(Protocol):
    async def send(self, topic: str, key: str, payload: str) -> None:
        ...

    async def close(self) -> None:
        ...


class RedisStreamBroker:
    """Appends events to a Redis stream named after the topic."""

    def __init__(self, url: str, max_len: int = 100_000):
        self._client = aioredis.from_url(url, decode_responses=True)
        self.max_len = max_len

    async def send(self, topic: str, key: str, payload: str) -> None:
        try:
            await self._client.xadd(
                topic,
                {"key": key, "payload": payload},
                maxlen=self.max_len,
                approximate=True,
            )
        except RedisError as e:
            raise BrokerError(f"Redis rejected event for {key}: {e}") from e

    async def close(self) -> None:
        await self._client.aclose()


class InMemoryBroker:
    """Keeps events in process. Used when no Redis URL is configured."""

    def __init__(self):
        self.messages: List[Tuple[str, str, str]] = []

    async def send(self, topic: str, key: str, payload: str) -> None:
        self.messages.append((topic, key, payload))

    async def close(self) -> None:
        pass


class EventPublisher:
    def __init__(
        self,
        broker: Broker,
        topic: str,
        max_attempts: int = 5,
        backoff_seconds: float = 0.5,
    ):
        self.broker = broker
        self.topic = topic
        self.max_attempts = max_attempts
        self.backoff_seconds = backoff_seconds

    async def publish(self, event: SyncEvent) -> None:
        """
        Send one event, retrying broker failures with exponential backoff.

        Raises:
            BrokerError: If every attempt failed.
        """
        payload = event.model_dump_json()
        try:
            async for attempt in AsyncRetrying(
                stop=stop_after_attempt(self.max_attempts),
                wait=wait_exponential(multiplier=self.backoff_seconds, max=30),
                retry=retry_if_exception_type(BrokerError),
            ):
                with attempt:
                    await self.broker.send(self.topic, event.key, payload)
        except RetryError as e:
            raise BrokerError(f"Gave up publishing run {event.run_id}") from e

    async def publish_run(self, db: SQLiteDatabase, run: SyncRun) -> bool:
        """
        Publish a finished run and mark it published.

        Returns:
            True if the event was accepted, False if it is left for the sweep
        """
        if run.status not in (RunStatus.SUCCESS, RunStatus.PARTIAL):
            return False

        try:
            await self.publish(SyncEvent.from_run(run))
        except BrokerError as e:
            logger.warning(f"Event for run {run.id} not published: {e}")
            return False

        await db.update_run(run.id, published=True)
        logger.info(f"Published {run.sync_kind.value} event for run {run.id}")
        return True

    async def sweep(self, db: SQLiteDatabase, limit: int = 100) -> int:
        """Retry publishing finished runs that are still unpublished."""
        published = 0
        for run in await db.get_unpublished_runs(limit):
            if await self.publish_run(db, run):
                published += 1
        if published:
            logger.info(f"Publish sweep delivered {published} pending events")
        return published

    async def close(self) -> None:
        await self.broker.close()


def create_publisher(settings: Settings) -> EventPublisher:
    """Redis stream broker when redis_url is set, in-process otherwise."""
    if settings.redis_url:
        broker: Broker = RedisStreamBroker(settings.redis_url)
    else:
        logger.warning("REDIS_URL not set, events stay in process")
        broker = InMemoryBroker()

    return EventPublisher(
        broker,
        settings.events_topic,
        max_attempts=settings.publish_max_attempts,
        backoff_seconds=settings.publish_backoff_seconds,
    )
