"""
External catalog/order source.

The reconcilers only see the StorefrontSource protocol: page-at-a-time
reads with an opaque cursor. ShopifySource implements it over the REST
Admin API.
"""

import logging
from dataclasses import dataclass
from datetime import datetime, timezone
from typing import Any, Dict, List, Optional, Protocol

from ..db.models import Merchant
from .client import ShopifyClient

logger = logging.getLogger(__name__)


@dataclass
class Page:
    """One page of raw records and the cursor of the page after it."""

    items: List[Dict[str, Any]]
    next_cursor: Optional[str] = None


class StorefrontSource(Protocol):
    async def fetch_products_page(self, cursor: Optional[str], limit: int) -> Page:
        ...

    async def fetch_inventory_items(self, item_ids: List[str]) -> List[Dict[str, Any]]:
        ...

    async def fetch_orders_page(
        self, updated_since: datetime, cursor: Optional[str], limit: int
    ) -> Page:
        ...

    async def close(self) -> None:
        ...


class ShopifySource:
    """StorefrontSource backed by the Shopify REST Admin API."""

    MAX_PAGE_SIZE = 250
    INVENTORY_IDS_PER_CALL = 100

    def __init__(self, client: ShopifyClient):
        self.client = client

    @classmethod
    def for_merchant(cls, merchant: Merchant, api_version: str, timeout: float = 60.0) -> "ShopifySource":
        return cls(ShopifyClient(
            merchant.shop_domain,
            merchant.access_token,
            api_version=api_version,
            timeout=timeout,
        ))

    async def fetch_products_page(self, cursor: Optional[str], limit: int) -> Page:
        params: Dict[str, Any] = {"limit": min(limit, self.MAX_PAGE_SIZE)}
        if cursor:
            # Shopify rejects filters alongside page_info
            params["page_info"] = cursor
        items, next_cursor = await self.client.get_list("products", params)
        return Page(items=items, next_cursor=next_cursor)

    async def fetch_inventory_items(self, item_ids: List[str]) -> List[Dict[str, Any]]:
        items: List[Dict[str, Any]] = []
        for i in range(0, len(item_ids), self.INVENTORY_IDS_PER_CALL):
            chunk = item_ids[i:i + self.INVENTORY_IDS_PER_CALL]
            page, _ = await self.client.get_list(
                "inventory_items",
                {"ids": ",".join(chunk), "limit": self.MAX_PAGE_SIZE},
            )
            items.extend(page)
        return items

    async def fetch_orders_page(
        self, updated_since: datetime, cursor: Optional[str], limit: int
    ) -> Page:
        params: Dict[str, Any] = {"limit": min(limit, self.MAX_PAGE_SIZE)}
        if cursor:
            params["page_info"] = cursor
        else:
            if updated_since.tzinfo is None:
                updated_since = updated_since.replace(tzinfo=timezone.utc)
            params.update({
                "status": "any",
                "updated_at_min": updated_since.isoformat(),
                "order": "updated_at asc",
            })
        items, next_cursor = await self.client.get_list("orders", params)
        return Page(items=items, next_cursor=next_cursor)

    async def close(self) -> None:
        await self.client.close()
