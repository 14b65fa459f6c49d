#!/usr/bin/env python3
"""
Run one sync for one merchant, outside the web server.
Usage: python scripts/run_sync.py <merchant_id> <products|orders> [limit] [--cron]

Pass --cron when the script is started by crontab, so the run is recorded
as a cron run instead of an on-demand one.

Crontab example: 0 1 * * * cd /path/to/app && /path/to/venv/bin/python scripts/run_sync.py <id> orders --cron
"""

import asyncio
import logging
import sys
import os

# Add parent directory to path
sys.path.insert(0, os.path.dirname(os.path.dirname(os.path.abspath(__file__))))

from margin_sync.config import settings
from margin_sync.db import RunStatus, SQLiteDatabase, SyncKind, TriggerType
from margin_sync.dependencies import paging_policy, rate_provider, shopify_source_factory
from margin_sync.events import create_publisher
from margin_sync.processor import RunContext, execute_run

logging.basicConfig(
    level=logging.INFO,
    format="%(asctime)s - %(name)s - %(levelname)s - %(message)s"
)

logger = logging.getLogger(__name__)

KINDS = {"products": SyncKind.CATALOG, "orders": SyncKind.ORDERS}


async def main(merchant_id: str, kind: SyncKind, limit=None, trigger=TriggerType.ON_DEMAND):
    db = SQLiteDatabase(settings.database_path)
    await db.initialize()
    publisher = create_publisher(settings)

    try:
        merchant = await db.get_merchant(merchant_id)
        if not merchant or not merchant.is_active:
            logger.error(f"Merchant not found: {merchant_id}")
            sys.exit(1)

        run = await db.create_run_if_idle(merchant_id, kind, trigger)
        if run is None:
            active = await db.get_active_run(merchant_id, kind)
            logger.info(
                f"Coalesced: {kind.value} run {active.id if active else 'unknown'} "
                f"is already active for merchant {merchant_id}"
            )
            return

        ctx = RunContext(
            db=db,
            source_factory=shopify_source_factory(settings),
            publisher=publisher,
            policy=paging_policy(settings),
            rate_provider=rate_provider(settings),
        )
        run = await execute_run(ctx, run.id, merchant_id, kind, limit=limit)

        logger.info(f"Run {run.id} finished: {run.status.value}")
        if run.status != RunStatus.SUCCESS:
            logger.error(f"  {run.error_message}")
            sys.exit(1)

    finally:
        await publisher.close()
        await db.close()


if __name__ == "__main__":
    args = sys.argv[1:]
    trigger = TriggerType.ON_DEMAND
    if "--cron" in args:
        args.remove("--cron")
        trigger = TriggerType.CRON

    if len(args) not in (2, 3) or args[1] not in KINDS:
        print("Usage: python scripts/run_sync.py <merchant_id> <products|orders> [limit] [--cron]")
        sys.exit(1)

    limit = int(args[2]) if len(args) == 3 else None
    asyncio.run(main(args[0], KINDS[args[1]], limit, trigger))
