"""
Payload builders and an in-memory storefront source for tests.
"""

from datetime import datetime, timezone
from typing import Any, Dict, List, Optional

from margin_sync.shopify import Page


def ts(year: int, month: int, day: int, hour: int = 0) -> datetime:
    return datetime(year, month, day, hour, tzinfo=timezone.utc)


def iso(value: datetime) -> str:
    return value.isoformat()


def make_variant(
    variant_id: int,
    product_id: int,
    inventory_item_id: Optional[int] = None,
    price: str = "10.00",
    sku: Optional[str] = None,
) -> Dict[str, Any]:
    return {
        "id": variant_id,
        "product_id": product_id,
        "title": f"Variant {variant_id}",
        "price": price,
        "sku": sku or f"SKU-{variant_id}",
        "barcode": "",
        "weight": 0.5,
        "weight_unit": "kg",
        "inventory_item_id": inventory_item_id,
        "admin_graphql_api_id": f"gid://shopify/ProductVariant/{variant_id}",
    }


def make_product(
    product_id: int,
    variants: Optional[List[Dict[str, Any]]] = None,
    title: Optional[str] = None,
) -> Dict[str, Any]:
    return {
        "id": product_id,
        "title": title or f"Product {product_id}",
        "product_type": "Shirts",
        "status": "active",
        "created_at": "2026-01-01T00:00:00-05:00",
        "updated_at": "2026-01-02T00:00:00-05:00",
        "variants": variants or [],
        "tags": "ignored",
    }


def make_item(
    item_id: int,
    cost: Optional[str] = "4.00",
    updated_at: Optional[datetime] = None,
) -> Dict[str, Any]:
    return {
        "id": item_id,
        "sku": f"SKU-{item_id}",
        "cost": cost,
        "tracked": True,
        "created_at": "2026-01-01T00:00:00Z",
        "updated_at": iso(updated_at or ts(2026, 1, 1)),
    }


def make_line(
    line_id: int,
    variant_id: Optional[int],
    quantity: int = 1,
    price: str = "10.00",
) -> Dict[str, Any]:
    return {
        "id": line_id,
        "variant_id": variant_id,
        "product_id": 1,
        "title": f"Line {line_id}",
        "sku": None,
        "quantity": quantity,
        "price": price,
    }


def make_order(
    order_id: int,
    updated_at: datetime,
    lines: Optional[List[Dict[str, Any]]] = None,
    subtotal: str = "100.00",
    total: str = "113.00",
    tax: str = "8.00",
    shipping: str = "5.00",
    currency: str = "USD",
    processed_at: Optional[datetime] = None,
    cancelled_at: Optional[datetime] = None,
) -> Dict[str, Any]:
    return {
        "id": order_id,
        "name": f"#{order_id}",
        "currency": currency,
        "subtotal_price": subtotal,
        "total_price": total,
        "total_discounts": "0.00",
        "total_tax": tax,
        "total_shipping_price_set": {
            "shop_money": {"amount": shipping, "currency_code": currency},
            "presentment_money": {"amount": shipping, "currency_code": currency},
        },
        "financial_status": "paid",
        "processed_at": iso(processed_at or updated_at),
        "created_at": iso(processed_at or updated_at),
        "updated_at": iso(updated_at),
        "cancelled_at": iso(cancelled_at) if cancelled_at else None,
        "line_items": lines or [],
    }


class FakeSource:
    """
    In-memory StorefrontSource.

    Pages are addressed by their index, used as the cursor. `failures`
    maps (listing, page index) to exceptions raised one per call before the
    page is served.
    """

    def __init__(
        self,
        product_pages: Optional[List[List[Dict[str, Any]]]] = None,
        inventory_items: Optional[List[Dict[str, Any]]] = None,
        order_pages: Optional[List[List[Dict[str, Any]]]] = None,
    ):
        self.product_pages = product_pages or [[]]
        self.inventory_items = {str(i["id"]): i for i in inventory_items or []}
        self.order_pages = order_pages or [[]]
        self.failures: Dict[tuple, List[Exception]] = {}
        self.calls: List[tuple] = []
        self.closed = False

    def fail(self, listing: str, page: int, *errors: Exception) -> None:
        self.failures.setdefault((listing, page), []).extend(errors)

    def _serve(self, listing: str, pages: List[List[Dict[str, Any]]], cursor: Optional[str]) -> Page:
        index = int(cursor or 0)
        self.calls.append((listing, index))
        pending = self.failures.get((listing, index))
        if pending:
            raise pending.pop(0)
        next_cursor = str(index + 1) if index + 1 < len(pages) else None
        return Page(items=list(pages[index]), next_cursor=next_cursor)

    async def fetch_products_page(self, cursor: Optional[str], limit: int) -> Page:
        return self._serve("products", self.product_pages, cursor)

    async def fetch_inventory_items(self, item_ids: List[str]) -> List[Dict[str, Any]]:
        self.calls.append(("inventory_items", tuple(item_ids)))
        return [self.inventory_items[i] for i in item_ids if i in self.inventory_items]

    async def fetch_orders_page(
        self, updated_since: datetime, cursor: Optional[str], limit: int
    ) -> Page:
        self.since = updated_since
        return self._serve("orders", self.order_pages, cursor)

    async def close(self) -> None:
        self.closed = True
