"""
Catalog reconciler: products, variants and inventory items.
"""

import asyncio
import logging
from datetime import datetime
from typing import Any, Dict, List, Optional, Set

from pydantic import ValidationError

from ..db import CostSource, DuplicateCostEntryError, MerchantScope, SyncKind, utcnow
from ..shopify import (
    ShopifyInventoryItem, ShopifyProduct, ShopifyVariant, StorefrontSource
)
from .outcome import ReconcileOutcome, RunCancelled
from .paging import PagingPolicy, fetch_with_retry, iter_pages

logger = logging.getLogger(__name__)


PRODUCTS = "products"
VARIANTS = "variants"
INVENTORY_ITEMS = "inventory_items"
COST_ENTRIES = "cost_entries"


def _first_error(error: ValidationError) -> str:
    details = error.errors()
    if not details:
        return str(error)
    first = details[0]
    location = ".".join(str(part) for part in first.get("loc", ()))
    return f"{location}: {first.get('msg')}"


async def reconcile_catalog(
    scope: MerchantScope,
    source: StorefrontSource,
    *,
    limit: Optional[int] = None,
    policy: Optional[PagingPolicy] = None,
    cancel_event: Optional[asyncio.Event] = None,
    cost_currency: Optional[str] = None,
    now: Optional[datetime] = None,
) -> ReconcileOutcome:
    """
    Pull the external catalog into the store.

    A run without a limit is a full pass: once every page is processed
    without error, live rows the source no longer reports are soft-deleted.
    A limited run only upserts.

    Args:
        scope: Merchant the run is bound to
        source: External catalog source
        limit: Maximum number of products to process
        policy: Fetch timeout and retry budget
        cancel_event: Checked before each page fetch and after the last page
        cost_currency: Currency of inventory item costs reported by the source
        now: Timestamp used for soft-deletes

    Returns:
        ReconcileOutcome with per-entity counts and skipped records
    """
    policy = policy or PagingPolicy()
    outcome = ReconcileOutcome(kind=SyncKind.CATALOG, full_pass=limit is None)
    for entity in (PRODUCTS, VARIANTS, INVENTORY_ITEMS, COST_ENTRIES):
        outcome.counts_for(entity)

    seen: Dict[str, Set[str]] = {PRODUCTS: set(), VARIANTS: set(), INVENTORY_ITEMS: set()}
    page_size = min(policy.page_size, limit) if limit else policy.page_size
    processed = 0

    try:
        async for page in iter_pages(
            lambda cursor: source.fetch_products_page(cursor, page_size),
            policy,
            cancel_event,
        ):
            records = page.items
            if limit is not None:
                records = records[:limit - processed]

            await _apply_page(scope, source, records, outcome, seen, policy, cost_currency)
            await scope.commit()

            processed += len(records)
            outcome.pages_completed += 1
            logger.debug(
                f"Catalog page {outcome.pages_completed} done for merchant "
                f"{scope.merchant_id}: {len(records)} products"
            )

            if limit is not None and processed >= limit:
                break

    except RunCancelled:
        logger.info(f"Catalog sync cancelled for merchant {scope.merchant_id}")
        outcome.cancelled = True
        return outcome
    except Exception as e:
        logger.error(f"Catalog sync failed for merchant {scope.merchant_id}: {e}")
        outcome.error = str(e) or type(e).__name__
        return outcome

    # Signalled while the last page was being applied
    if cancel_event is not None and cancel_event.is_set():
        logger.info(f"Catalog sync cancelled for merchant {scope.merchant_id}")
        outcome.cancelled = True
        return outcome

    if outcome.full_pass:
        stamp = now or utcnow()
        for table in (PRODUCTS, VARIANTS, INVENTORY_ITEMS):
            deleted = await scope.soft_delete_missing(table, seen[table], stamp)
            outcome.counts_for(table).soft_deleted = deleted
            if deleted:
                logger.info(f"Soft-deleted {deleted} {table} for merchant {scope.merchant_id}")

    return outcome


async def _apply_page(
    scope: MerchantScope,
    source: StorefrontSource,
    records: List[Dict[str, Any]],
    outcome: ReconcileOutcome,
    seen: Dict[str, Set[str]],
    policy: PagingPolicy,
    cost_currency: Optional[str],
) -> None:
    """Upsert one page: products first, then variants, then inventory items."""
    merchant_id = scope.merchant_id
    variants: List[ShopifyVariant] = []
    # Ids of records that failed validation; their stored children stay live
    bad_products: Set[str] = set()
    bad_variants: Set[str] = set()

    for raw in records:
        raw_id = raw.get("id") if isinstance(raw, dict) else None
        if raw_id is not None:
            seen[PRODUCTS].add(str(raw_id))

        try:
            product = ShopifyProduct.model_validate(raw)
        except ValidationError as e:
            outcome.add_exception(PRODUCTS, raw_id, _first_error(e))
            if raw_id is not None:
                bad_products.add(str(raw_id))
            continue

        result = await scope.upsert_product(product.to_product(merchant_id))
        outcome.counts_for(PRODUCTS).record(result)

        for raw_variant in product.variants:
            variant_id = raw_variant.get("id") if isinstance(raw_variant, dict) else None
            if variant_id is not None:
                seen[VARIANTS].add(str(variant_id))
            try:
                variants.append(ShopifyVariant.model_validate(raw_variant))
            except ValidationError as e:
                outcome.add_exception(VARIANTS, variant_id, _first_error(e))
                if variant_id is not None:
                    bad_variants.add(str(variant_id))

    if bad_products or bad_variants:
        kept_variants, kept_items = await scope.live_descendants(bad_products, bad_variants)
        seen[VARIANTS].update(kept_variants)
        seen[INVENTORY_ITEMS].update(kept_items)

    item_to_variant: Dict[str, str] = {}
    for variant in variants:
        result = await scope.upsert_variant(variant.to_variant(merchant_id))
        outcome.counts_for(VARIANTS).record(result)
        if variant.inventory_item_id is not None:
            item_to_variant[str(variant.inventory_item_id)] = str(variant.id)

    if not item_to_variant:
        return

    # Known up front; a fetch failure must not expose them to soft-delete.
    seen[INVENTORY_ITEMS].update(item_to_variant)

    raw_items = await fetch_with_retry(
        lambda: source.fetch_inventory_items(sorted(item_to_variant)),
        policy,
    )

    for raw in raw_items:
        raw_id = raw.get("id") if isinstance(raw, dict) else None
        try:
            item = ShopifyInventoryItem.model_validate(raw)
        except ValidationError as e:
            outcome.add_exception(INVENTORY_ITEMS, raw_id, _first_error(e))
            continue

        item_id = str(item.id)
        seen[INVENTORY_ITEMS].add(item_id)
        result = await scope.upsert_inventory_item(
            item.to_inventory_item(merchant_id, item_to_variant.get(item_id))
        )
        outcome.counts_for(INVENTORY_ITEMS).record(result)

        if item.cost is not None:
            await _record_cost(scope, item, cost_currency, outcome)


async def _record_cost(
    scope: MerchantScope,
    item: ShopifyInventoryItem,
    currency: Optional[str],
    outcome: ReconcileOutcome,
) -> None:
    """Append the item's reported cost unless it is already the cost in effect."""
    item_id = str(item.id)
    counts = outcome.counts_for(COST_ENTRIES)

    if not currency:
        outcome.add_exception(COST_ENTRIES, item_id, "No currency known for inventory costs")
        return

    current = await scope.costs.resolve(item_id, item.updated_at)
    if current is not None and current.cost == item.cost and current.currency == currency:
        counts.unchanged += 1
        return

    try:
        await scope.costs.append(
            item_id, item.cost, currency, item.updated_at, source=CostSource.SHOPIFY
        )
        counts.created += 1
    except DuplicateCostEntryError as e:
        logger.warning(str(e))
        outcome.add_exception(COST_ENTRIES, item_id, str(e))
