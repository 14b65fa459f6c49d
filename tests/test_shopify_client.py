"""
Tests for the Shopify REST client, the Shopify source and payload parsing.
"""

import httpx
import pytest
from decimal import Decimal

from margin_sync.shopify import (
    ShopifyAuthError,
    ShopifyClient,
    ShopifyClientError,
    ShopifyOrder,
    ShopifyRateLimitError,
    ShopifySource,
    ShopifyTransientError,
    ShopifyVariant,
    normalize_shop_domain,
)

from tests.helpers import make_line, make_order, ts


def client_for(handler) -> ShopifyClient:
    return ShopifyClient("acme", "shpat_test", transport=httpx.MockTransport(handler))


def link(page_info: str) -> dict:
    url = f"https://acme.myshopify.com/admin/api/2025-10/products.json?limit=2&page_info={page_info}"
    return {"Link": f'<{url}>; rel="next"'}


class TestNormalizeShopDomain:
    """Tests for normalize_shop_domain function."""

    @pytest.mark.parametrize("raw,expected", [
        ("acme", "acme.myshopify.com"),
        ("acme.myshopify.com", "acme.myshopify.com"),
        ("https://Acme.myshopify.com/", "acme.myshopify.com"),
        ("http://acme.myshopify.com", "acme.myshopify.com"),
        ("  shop.example.com ", "shop.example.com"),
    ])
    def test_examples(self, raw, expected):
        assert normalize_shop_domain(raw) == expected


class TestShopifyClient:
    """Tests for ShopifyClient."""

    async def test_sends_token_and_reads_next_cursor(self):
        seen = []

        def handler(request):
            seen.append(request)
            return httpx.Response(200, json={"products": [{"id": 1}]}, headers=link("abc123"))

        async with client_for(handler) as client:
            records, cursor = await client.get_list("products", {"limit": 2})

        assert records == [{"id": 1}]
        assert cursor == "abc123"
        assert seen[0].url.path == "/admin/api/2025-10/products.json"
        assert seen[0].headers["X-Shopify-Access-Token"] == "shpat_test"

    async def test_last_page_has_no_cursor(self):
        def handler(request):
            return httpx.Response(200, json={"products": []})

        async with client_for(handler) as client:
            assert await client.get_list("products") == ([], None)

    async def test_auth_failure_is_not_retried(self):
        calls = []

        def handler(request):
            calls.append(request)
            return httpx.Response(401, json={"errors": "Invalid API key"})

        async with client_for(handler) as client:
            with pytest.raises(ShopifyAuthError):
                await client.get_list("orders")

        assert len(calls) == 1

    async def test_rate_limit_is_waited_out(self):
        responses = [
            httpx.Response(429, headers={"Retry-After": "0"}),
            httpx.Response(200, json={"orders": [{"id": 7}]}),
        ]

        def handler(request):
            return responses.pop(0)

        async with client_for(handler) as client:
            records, _ = await client.get_list("orders")

        assert records == [{"id": 7}]

    async def test_rate_limit_gives_up_after_max_retries(self):
        def handler(request):
            return httpx.Response(429, headers={"Retry-After": "0"})

        async with client_for(handler) as client:
            with pytest.raises(ShopifyRateLimitError):
                await client.get_list("orders")

    async def test_server_error_is_transient(self):
        def handler(request):
            return httpx.Response(502, text="Bad gateway")

        async with client_for(handler) as client:
            with pytest.raises(ShopifyTransientError):
                await client.get_list("orders")

    async def test_network_error_is_transient(self):
        def handler(request):
            raise httpx.ConnectError("connection refused", request=request)

        async with client_for(handler) as client:
            with pytest.raises(ShopifyTransientError):
                await client.get_list("orders")

    async def test_bad_request_is_fatal(self):
        def handler(request):
            return httpx.Response(400, text="bad page_info")

        async with client_for(handler) as client:
            with pytest.raises(ShopifyClientError) as exc:
                await client.get_list("orders")

        assert not isinstance(exc.value, ShopifyTransientError)
        assert "HTTP 400" in str(exc.value)

    async def test_missing_root_key(self):
        def handler(request):
            return httpx.Response(200, json={"errors": "Not Found"})

        async with client_for(handler) as client:
            with pytest.raises(ShopifyClientError):
                await client.get_list("orders")


class TestShopifySource:
    """Tests for ShopifySource request shaping."""

    async def test_first_order_page_filters_by_watermark(self):
        seen = []

        def handler(request):
            seen.append(request.url.params)
            return httpx.Response(200, json={"orders": []}, headers=link("next1"))

        source = ShopifySource(client_for(handler))
        page = await source.fetch_orders_page(ts(2026, 5, 1), None, 500)
        await source.close()

        params = seen[0]
        assert params["limit"] == "250"
        assert params["status"] == "any"
        assert params["order"] == "updated_at asc"
        assert params["updated_at_min"] == "2026-05-01T00:00:00+00:00"
        assert page.next_cursor == "next1"

    async def test_later_pages_send_only_cursor(self):
        seen = []

        def handler(request):
            seen.append(request.url.params)
            return httpx.Response(200, json={"orders": []})

        source = ShopifySource(client_for(handler))
        await source.fetch_orders_page(ts(2026, 5, 1), "next1", 50)
        await source.close()

        assert dict(seen[0]) == {"limit": "50", "page_info": "next1"}

    async def test_inventory_items_are_fetched_in_chunks(self):
        seen = []

        def handler(request):
            ids = request.url.params["ids"].split(",")
            seen.append(ids)
            return httpx.Response(200, json={"inventory_items": [{"id": int(i)} for i in ids]})

        source = ShopifySource(client_for(handler))
        items = await source.fetch_inventory_items([str(i) for i in range(1, 251)])
        await source.close()

        assert [len(ids) for ids in seen] == [100, 100, 50]
        assert len(items) == 250


class TestPayloads:
    """Parsing raw payloads into storage models."""

    def test_order_to_model(self):
        raw = make_order(1001, ts(2026, 5, 10, 12), [make_line(1, 11, quantity=2)], processed_at=ts(2026, 5, 10))

        order = ShopifyOrder.model_validate(raw).to_order("m1")

        assert order.external_id == "1001"
        assert order.total_shipping == Decimal("5.00")
        assert order.processed_at == ts(2026, 5, 10)
        assert order.lines[0].variant_external_id == "11"
        assert order.lines[0].quantity == 2

    def test_blank_strings_are_missing(self):
        variant = ShopifyVariant.model_validate({"id": 1, "product_id": 2, "sku": " ", "price": ""})

        assert variant.sku is None
        assert variant.price is None

    def test_order_without_required_field_fails(self):
        raw = make_order(1, ts(2026, 5, 10))
        del raw["currency"]

        with pytest.raises(ValueError):
            ShopifyOrder.model_validate(raw)
