"""
Shopify API module.
"""

from margin_sync.shopify.client import (
    ShopifyClient,
    ShopifyClientError,
    ShopifyAuthError,
    ShopifyRateLimitError,
    ShopifyTransientError,
    normalize_shop_domain,
)
from margin_sync.shopify.source import Page, ShopifySource, StorefrontSource
from margin_sync.shopify.types import (
    ShopifyInventoryItem,
    ShopifyLineItem,
    ShopifyOrder,
    ShopifyProduct,
    ShopifyVariant,
)

__all__ = [
    "ShopifyClient",
    "ShopifyClientError",
    "ShopifyAuthError",
    "ShopifyRateLimitError",
    "ShopifyTransientError",
    "normalize_shop_domain",
    "Page",
    "ShopifySource",
    "StorefrontSource",
    "ShopifyInventoryItem",
    "ShopifyLineItem",
    "ShopifyOrder",
    "ShopifyProduct",
    "ShopifyVariant",
]
