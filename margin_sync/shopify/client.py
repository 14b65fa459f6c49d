"""
Shopify REST Admin API client.
"""

import asyncio
import logging
from typing import Any, Dict, List, Optional, Tuple

import httpx

logger = logging.getLogger(__name__)


class ShopifyClientError(Exception):
    """Base exception for Shopify client errors."""
    pass


class ShopifyAuthError(ShopifyClientError):
    """Authentication error. Never retried."""
    pass


class ShopifyTransientError(ShopifyClientError):
    """Network failure or server-side error; safe to retry."""
    pass


class ShopifyRateLimitError(ShopifyTransientError):
    """Rate limit exceeded."""

    def __init__(self, message: str, retry_after: Optional[float] = None):
        super().__init__(message)
        self.retry_after = retry_after


class ShopifyClient:
    """
    Async HTTP client for the Shopify REST Admin API.

    Handles authentication, rate limiting and cursor pagination. Rate
    limits are waited out here; other transient failures are raised as
    ShopifyTransientError so the caller can resume from its page cursor.
    """

    DEFAULT_API_VERSION = "2025-10"
    MAX_RETRIES = 5
    BASE_RETRY_DELAY = 1.0  # seconds

    def __init__(
        self,
        shop_domain: str,
        access_token: str,
        api_version: str = DEFAULT_API_VERSION,
        timeout: float = 60.0,
        transport: Optional[httpx.AsyncBaseTransport] = None,
    ):
        """
        Initialize Shopify client.

        Args:
            shop_domain: Store domain (e.g., "mystore.myshopify.com" or "mystore")
            access_token: Admin API access token
            api_version: Admin API version (e.g., "2025-10")
            timeout: Per-request timeout in seconds
            transport: Optional httpx transport, used by tests
        """
        self.shop_domain = normalize_shop_domain(shop_domain)
        self.access_token = access_token
        self.api_version = api_version
        self.base_url = f"https://{self.shop_domain}/admin/api/{api_version}"
        self.timeout = timeout

        self._transport = transport
        self._client: Optional[httpx.AsyncClient] = None

    async def _get_client(self) -> httpx.AsyncClient:
        """Get or create HTTP client."""
        if self._client is None or self._client.is_closed:
            self._client = httpx.AsyncClient(
                timeout=httpx.Timeout(self.timeout, connect=10.0),
                headers={
                    "Content-Type": "application/json",
                    "X-Shopify-Access-Token": self.access_token,
                },
                transport=self._transport,
            )
        return self._client

    async def close(self) -> None:
        """Close the HTTP client."""
        if self._client and not self._client.is_closed:
            await self._client.aclose()
            self._client = None

    async def get(
        self,
        path: str,
        params: Optional[Dict[str, Any]] = None,
    ) -> Tuple[Dict[str, Any], Optional[str]]:
        """
        GET a REST resource, waiting out rate limits.

        Args:
            path: Resource path relative to the API root (e.g., "products.json")
            params: Query parameters

        Returns:
            Tuple of (decoded JSON body, page_info cursor of the next page or None)

        Raises:
            ShopifyAuthError: If authentication fails
            ShopifyRateLimitError: If still rate limited after retries
            ShopifyTransientError: For network errors and 5xx responses
            ShopifyClientError: For other errors
        """
        client = await self._get_client()
        url = f"{self.base_url}/{path}"

        last_error: Optional[ShopifyClientError] = None

        for attempt in range(self.MAX_RETRIES):
            try:
                response = await client.get(url, params=params)
            except httpx.TimeoutException as e:
                raise ShopifyTransientError(f"Request timed out: {e}") from e
            except httpx.RequestError as e:
                raise ShopifyTransientError(f"Request error: {e}") from e

            if response.status_code in (401, 403):
                raise ShopifyAuthError(
                    f"Authentication failed for {self.shop_domain}"
                )

            if response.status_code == 429:
                retry_after = float(
                    response.headers.get("Retry-After", self.BASE_RETRY_DELAY * (2 ** attempt))
                )
                last_error = ShopifyRateLimitError(
                    "Rate limit exceeded", retry_after=retry_after
                )
                logger.warning(
                    f"Rate limited, waiting {retry_after:.1f}s "
                    f"(attempt {attempt + 1}/{self.MAX_RETRIES})"
                )
                await asyncio.sleep(retry_after)
                continue

            if response.status_code >= 500:
                raise ShopifyTransientError(
                    f"HTTP {response.status_code} from {self.shop_domain}"
                )

            if response.status_code >= 400:
                raise ShopifyClientError(
                    f"HTTP {response.status_code}: {response.text[:500]}"
                )

            # Log rate limit status if available
            call_limit = response.headers.get("X-Shopify-Shop-Api-Call-Limit")
            if call_limit:
                used, _, bucket = call_limit.partition("/")
                if used.isdigit() and bucket.isdigit() and int(bucket) - int(used) < 5:
                    logger.warning(f"Low rate limit headroom: {call_limit}")

            try:
                body = response.json()
            except ValueError as e:
                raise ShopifyClientError(f"Invalid JSON: {e}") from e

            return body, next_page_info(response)

        # All retries exhausted
        raise last_error or ShopifyClientError("Max retries exceeded")

    async def get_list(
        self,
        resource: str,
        params: Optional[Dict[str, Any]] = None,
    ) -> Tuple[List[Dict[str, Any]], Optional[str]]:
        """
        Fetch one page of a list resource.

        Args:
            resource: Resource name, also the JSON root key (e.g., "orders")
            params: Query parameters

        Returns:
            Tuple of (raw records, cursor of the next page or None)
        """
        body, cursor = await self.get(f"{resource}.json", params)
        records = body.get(resource)
        if not isinstance(records, list):
            raise ShopifyClientError(f"Response has no '{resource}' list")
        return records, cursor

    async def __aenter__(self):
        """Async context manager entry."""
        return self

    async def __aexit__(self, exc_type, exc_val, exc_tb):
        """Async context manager exit."""
        await self.close()


def normalize_shop_domain(shop_domain: str) -> str:
    """Strip scheme and trailing slash; expand a bare store name."""
    domain = shop_domain.strip().lower()
    if domain.startswith("https://"):
        domain = domain[8:]
    elif domain.startswith("http://"):
        domain = domain[7:]
    domain = domain.rstrip("/")
    if "." not in domain:
        domain = f"{domain}.myshopify.com"
    return domain


def next_page_info(response: httpx.Response) -> Optional[str]:
    """Extract the page_info cursor from the rel="next" Link header."""
    next_link = response.links.get("next")
    if not next_link or not next_link.get("url"):
        return None
    return httpx.URL(next_link["url"]).params.get("page_info")
