"""
FastAPI dependency injection.
Simple setup - database, event publisher and the sync scheduler.
"""

from typing import Optional

from .config import Settings, settings
from .db import Merchant, SQLiteDatabase
from .events import EventPublisher, create_publisher
from .processor import PagingPolicy, RateProvider, RunContext, SyncScheduler, fixed_rate_provider
from .shopify import ShopifySource


# Global instances (initialized on startup)
_db: Optional[SQLiteDatabase] = None
_publisher: Optional[EventPublisher] = None
_scheduler: Optional[SyncScheduler] = None


def paging_policy(config: Settings) -> PagingPolicy:
    return PagingPolicy(
        page_size=config.page_size,
        fetch_timeout=config.fetch_timeout_seconds,
        max_attempts=config.max_fetch_attempts,
    )


def rate_provider(config: Settings) -> Optional[RateProvider]:
    """Fixed rate table for convert mode, if one is configured."""
    if not config.exchange_rates:
        return None
    return fixed_rate_provider(config.exchange_rates)


def shopify_source_factory(config: Settings):
    """Build a ShopifySource for each merchant a run is bound to."""
    def factory(merchant: Merchant) -> ShopifySource:
        return ShopifySource.for_merchant(
            merchant,
            api_version=config.shopify_api_version,
            timeout=config.fetch_timeout_seconds,
        )
    return factory


def build_scheduler(db: SQLiteDatabase, publisher: EventPublisher, config: Settings) -> SyncScheduler:
    ctx = RunContext(
        db=db,
        source_factory=shopify_source_factory(config),
        publisher=publisher,
        policy=paging_policy(config),
        rate_provider=rate_provider(config),
    )
    return SyncScheduler(
        ctx,
        worker_count=config.worker_count,
        run_timeout=config.run_timeout_seconds,
        cron_poll_seconds=config.cron_poll_seconds,
        publish_sweep_seconds=config.publish_sweep_seconds,
        cron_enabled=config.scheduler_enabled,
    )


async def init_dependencies():
    """Initialize global dependencies. Called on app startup."""
    global _db, _publisher, _scheduler

    _db = SQLiteDatabase(settings.database_path)
    await _db.initialize()
    await _db.fail_interrupted_runs()

    _publisher = create_publisher(settings)
    _scheduler = build_scheduler(_db, _publisher, settings)
    _scheduler.start()


async def close_dependencies():
    """Close global dependencies. Called on app shutdown."""
    global _db, _publisher, _scheduler
    if _scheduler:
        await _scheduler.stop()
        _scheduler = None
    if _publisher:
        await _publisher.close()
        _publisher = None
    if _db:
        await _db.close()
        _db = None


def get_db() -> SQLiteDatabase:
    """Get the database instance."""
    if _db is None:
        raise RuntimeError("Database not initialized")
    return _db


def get_scheduler() -> SyncScheduler:
    """Get the sync scheduler instance."""
    if _scheduler is None:
        raise RuntimeError("Scheduler not initialized")
    return _scheduler
