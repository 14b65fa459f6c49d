"""
Executes one sync run end to end.
"""

import asyncio
import logging
from dataclasses import dataclass, field
from datetime import datetime, timedelta
from typing import Any, Callable, Dict, Optional

from ..db import (
    AppSettings, Merchant, MerchantNotFound, MerchantScope, RunStatus, SQLiteDatabase,
    SyncKind, SyncRun, utcnow
)
from ..events import EventPublisher
from ..shopify import StorefrontSource
from .catalog import reconcile_catalog
from .margin import RateProvider, compute_margins
from .orders import reconcile_orders
from .outcome import ReconcileOutcome
from .paging import PagingPolicy

logger = logging.getLogger(__name__)


@dataclass
class RunContext:
    """Everything a run needs besides its own parameters."""
    db: SQLiteDatabase
    source_factory: Callable[[Merchant], StorefrontSource]
    publisher: Optional[EventPublisher] = None
    policy: PagingPolicy = field(default_factory=PagingPolicy)
    rate_provider: Optional[RateProvider] = None


def decide_status(outcome: ReconcileOutcome) -> RunStatus:
    """
    Final status of a run from its outcome.

    A fatal error after at least one committed page is partial; a
    cancelled run is failed whatever it committed.
    """
    if outcome.cancelled:
        return RunStatus.FAILED
    if outcome.error is not None:
        return RunStatus.PARTIAL if outcome.pages_completed > 0 else RunStatus.FAILED
    return RunStatus.SUCCESS


async def execute_run(
    ctx: RunContext,
    run_id: str,
    merchant_id: str,
    kind: SyncKind,
    limit: Optional[int] = None,
    cancel_event: Optional[asyncio.Event] = None,
) -> Optional[SyncRun]:
    """
    Run the reconciler for one queued run and record the result.

    Only this function decides a run's final status and watermark.
    Order runs that succeed refresh the stored margins; success and
    partial runs are published.

    Returns:
        The finished SyncRun
    """
    db = ctx.db
    await db.update_run(run_id, status=RunStatus.RUNNING, started_at=utcnow())
    logger.info(f"Starting {kind.value} run {run_id} for merchant {merchant_id}")

    source: Optional[StorefrontSource] = None
    try:
        merchant = await db.get_active_merchant(merchant_id)
        app_settings = await db.get_app_settings(merchant_id)
        scope = db.scope(merchant_id)
        source = ctx.source_factory(merchant)

        if kind == SyncKind.CATALOG:
            outcome = await reconcile_catalog(
                scope,
                source,
                limit=limit,
                policy=ctx.policy,
                cancel_event=cancel_event,
                cost_currency=app_settings.default_currency or merchant.shop_currency,
            )
            since = None
        else:
            since = await db.get_last_watermark(merchant_id, kind)
            if since is None:
                since = utcnow() - timedelta(days=app_settings.sync_lookback_days)
                logger.info(f"First order sync - fetching orders since {since}")
            outcome = await reconcile_orders(
                scope,
                source,
                watermark=since,
                limit=limit,
                policy=ctx.policy,
                cancel_event=cancel_event,
            )

    except MerchantNotFound as e:
        logger.error(f"Run {run_id} aborted: {e}")
        return await mark_run_failed(db, run_id, str(e))
    except Exception as e:
        logger.exception(f"Unexpected error in run {run_id}")
        return await mark_run_failed(db, run_id, f"Unexpected error: {e}")
    finally:
        if source is not None:
            await source.close()

    status = decide_status(outcome)
    summary = outcome.summary()
    if since is not None:
        summary["since"] = since.isoformat()

    watermark: Optional[datetime] = None
    if kind == SyncKind.ORDERS and status != RunStatus.FAILED:
        watermark = outcome.watermark

    if kind == SyncKind.ORDERS and status == RunStatus.SUCCESS:
        summary.update(await _refresh_margins(ctx, scope, app_settings, merchant))

    error_message = "Run cancelled" if outcome.cancelled else outcome.error
    run = await db.update_run(
        run_id,
        status=status,
        finished_at=utcnow(),
        watermark=watermark,
        summary=summary,
        error_message=error_message,
    )

    logger.info(
        f"Run {run_id} finished with status {status.value} "
        f"({outcome.pages_completed} pages, {len(outcome.exceptions)} exceptions)"
    )

    if ctx.publisher is not None and status in (RunStatus.SUCCESS, RunStatus.PARTIAL):
        if await ctx.publisher.publish_run(db, run):
            run.published = True

    return run


async def _refresh_margins(
    ctx: RunContext,
    scope: MerchantScope,
    app_settings: AppSettings,
    merchant: Merchant,
) -> Dict[str, Any]:
    """Recompute stored margins over the lookback window after an order run."""
    try:
        retracted = await scope.purge_cancelled_margins()
        end = utcnow()
        start = end - timedelta(days=app_settings.sync_lookback_days)
        report = await compute_margins(
            scope, app_settings, start, end, ctx.rate_provider, merchant.shop_currency
        )
        await scope.save_order_margins([r.to_record(scope.merchant_id) for r in report.orders])
    except Exception as e:
        # Orders are already committed; a margin failure does not fail the run
        logger.exception(f"Margin refresh failed for merchant {scope.merchant_id}")
        return {"margin_error": str(e)}

    return {
        "margin": report.totals(),
        "margin_exceptions": [e.as_dict() for e in report.exceptions],
        "margins_retracted": retracted,
    }


async def mark_run_failed(db: SQLiteDatabase, run_id: str, message: str) -> Optional[SyncRun]:
    """Fail a run that has not reached a final status yet."""
    run = await db.get_run(run_id)
    if run is None or run.status.is_final:
        return run
    return await db.update_run(
        run_id,
        status=RunStatus.FAILED,
        finished_at=utcnow(),
        error_message=message,
    )
