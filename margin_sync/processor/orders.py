"""
Order reconciler.

Pulls orders updated since the watermark, oldest update first, and upserts
them page by page. The watermark candidate only moves once a page is
committed.
"""

import asyncio
import logging
from datetime import datetime
from typing import Optional

from pydantic import ValidationError

from ..db import MerchantScope, SyncKind
from ..shopify import ShopifyOrder, StorefrontSource
from .catalog import _first_error
from .outcome import ReconcileOutcome, RunCancelled
from .paging import PagingPolicy, iter_pages

logger = logging.getLogger(__name__)


ORDERS = "orders"


async def reconcile_orders(
    scope: MerchantScope,
    source: StorefrontSource,
    *,
    watermark: datetime,
    limit: Optional[int] = None,
    policy: Optional[PagingPolicy] = None,
    cancel_event: Optional[asyncio.Event] = None,
) -> ReconcileOutcome:
    """
    Upsert orders with updated_at >= watermark.

    Cancelled orders are stored like any other; the margin calculator is
    the one that leaves them out.

    Args:
        scope: Merchant the run is bound to
        source: External order source
        watermark: Lower bound on order updated_at
        limit: Maximum number of orders to process
        policy: Fetch timeout and retry budget
        cancel_event: Checked before each page fetch and after the last page

    Returns:
        ReconcileOutcome whose watermark is the highest updated_at of the
        last committed page, or None if no page was committed
    """
    policy = policy or PagingPolicy()
    outcome = ReconcileOutcome(kind=SyncKind.ORDERS, full_pass=limit is None)
    counts = outcome.counts_for(ORDERS)

    page_size = min(policy.page_size, limit) if limit else policy.page_size
    processed = 0
    high: Optional[datetime] = None

    try:
        async for page in iter_pages(
            lambda cursor: source.fetch_orders_page(watermark, cursor, page_size),
            policy,
            cancel_event,
        ):
            records = page.items
            if limit is not None:
                records = records[:limit - processed]

            page_high = high
            for raw in records:
                raw_id = raw.get("id") if isinstance(raw, dict) else None
                try:
                    parsed = ShopifyOrder.model_validate(raw)
                except ValidationError as e:
                    outcome.add_exception(ORDERS, raw_id, _first_error(e))
                    continue

                order = parsed.to_order(scope.merchant_id)
                counts.record(await scope.upsert_order(order))

                if page_high is None or order.updated_at > page_high:
                    page_high = order.updated_at

            await scope.commit()

            high = page_high
            outcome.watermark = high
            processed += len(records)
            outcome.pages_completed += 1

            if limit is not None and processed >= limit:
                break

        if cancel_event is not None and cancel_event.is_set():
            raise RunCancelled("Run cancelled")

    except RunCancelled:
        logger.info(f"Order sync cancelled for merchant {scope.merchant_id}")
        outcome.cancelled = True
    except Exception as e:
        logger.error(
            f"Order sync failed for merchant {scope.merchant_id} "
            f"after {outcome.pages_completed} pages: {e}"
        )
        outcome.error = str(e) or type(e).__name__

    return outcome
