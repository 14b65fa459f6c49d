"""
Processor package: reconcilers, margin calculation and run scheduling.
"""

from .catalog import reconcile_catalog
from .cron import CronPlanner, InvalidCronExpression, parse_cron
from .margin import (
    MarginCalculator,
    MarginReport,
    MarginStatus,
    OrderMarginResult,
    RateProvider,
    fixed_rate_provider,
    compute_margins,
)
from .orders import reconcile_orders
from .outcome import EntityCounts, ReconcileOutcome, RecordException, RunCancelled
from .paging import PagingPolicy, fetch_with_retry, iter_pages
from .rules import order_revenue, margin_ratio, format_money
from .runner import RunContext, decide_status, execute_run, mark_run_failed
from .scheduler import RunHandle, SyncScheduler, TriggerResult, TriggerStatus

__all__ = [
    "reconcile_catalog",
    "reconcile_orders",
    "CronPlanner",
    "InvalidCronExpression",
    "parse_cron",
    "MarginCalculator",
    "MarginReport",
    "MarginStatus",
    "OrderMarginResult",
    "RateProvider",
    "compute_margins",
    "fixed_rate_provider",
    "EntityCounts",
    "ReconcileOutcome",
    "RecordException",
    "RunCancelled",
    "PagingPolicy",
    "fetch_with_retry",
    "iter_pages",
    "order_revenue",
    "margin_ratio",
    "format_money",
    "RunContext",
    "decide_status",
    "execute_run",
    "mark_run_failed",
    "RunHandle",
    "SyncScheduler",
    "TriggerResult",
    "TriggerStatus",
]
