"""
Tests for the HTTP API.
"""

import httpx
import pytest_asyncio
from decimal import Decimal

from margin_sync import dependencies
from margin_sync.config import Settings
from margin_sync.db import Order, OrderLine, Variant
from margin_sync.events import EventPublisher, InMemoryBroker
from margin_sync.main import app
from margin_sync.processor import RunContext, SyncScheduler

from tests.helpers import FakeSource, ts


@pytest_asyncio.fixture
async def scheduler(db, monkeypatch):
    scheduler = SyncScheduler(RunContext(db, source_factory=lambda m: FakeSource()), cron_enabled=False)
    monkeypatch.setattr(dependencies, "_db", db)
    monkeypatch.setattr(dependencies, "_scheduler", scheduler)
    yield scheduler
    await scheduler.stop()


@pytest_asyncio.fixture
async def client(scheduler):
    transport = httpx.ASGITransport(app=app)
    async with httpx.AsyncClient(transport=transport, base_url="http://test") as client:
        yield client


class TestSyncRoutes:
    """Trigger, cancel and run status endpoints."""

    async def test_trigger_then_coalesce(self, client, merchant):
        first = await client.post("/api/v1/sync/orders", json={"merchant_id": merchant.id})
        second = await client.post("/api/v1/sync/orders", json={"merchant_id": merchant.id})

        assert first.status_code == 202
        assert first.json()["status"] == "accepted"
        assert second.status_code == 200
        assert second.json()["status"] == "coalesced"
        assert second.json()["run_id"] == first.json()["run_id"]

    async def test_unknown_merchant_is_rejected(self, client):
        response = await client.post("/api/v1/sync/products", json={"merchant_id": "nope"})

        assert response.status_code == 404
        assert response.json()["status"] == "rejected"

    async def test_limit_must_be_positive(self, client, merchant):
        response = await client.post("/api/v1/sync/products", json={"merchant_id": merchant.id, "limit": 0})

        assert response.status_code == 422

    async def test_cancel(self, client, merchant):
        accepted = (await client.post("/api/v1/sync/products", json={"merchant_id": merchant.id})).json()

        response = await client.post("/api/v1/sync/products/cancel", json={"merchant_id": merchant.id})
        idle = await client.post("/api/v1/sync/orders/cancel", json={"merchant_id": merchant.id})

        assert response.json() == {"cancelled": True, "run_id": accepted["run_id"]}
        assert idle.json() == {"cancelled": False, "run_id": None}

    async def test_run_status(self, client, merchant):
        accepted = (await client.post("/api/v1/sync/orders", json={"merchant_id": merchant.id})).json()

        run = await client.get(f"/api/v1/sync/runs/{accepted['run_id']}")
        missing = await client.get("/api/v1/sync/runs/does-not-exist")

        assert run.status_code == 200
        assert run.json()["status"] == "queued"
        assert run.json()["sync_kind"] == "orders"
        assert run.json()["trigger"] == "on_demand"
        assert missing.status_code == 404

    async def test_list_runs_by_kind(self, client, merchant):
        await client.post("/api/v1/sync/orders", json={"merchant_id": merchant.id})
        await client.post("/api/v1/sync/products", json={"merchant_id": merchant.id})

        everything = await client.get("/api/v1/sync/runs", params={"merchant_id": merchant.id})
        orders = await client.get("/api/v1/sync/runs", params={"merchant_id": merchant.id, "kind": "orders"})
        bogus = await client.get("/api/v1/sync/runs", params={"merchant_id": merchant.id, "kind": "refunds"})

        assert len(everything.json()) == 2
        assert [r["sync_kind"] for r in orders.json()] == ["orders"]
        assert bogus.status_code == 404


class TestMarginRoutes:
    """Margin report endpoints."""

    async def _seed(self, scope):
        await scope.upsert_variant(Variant(
            merchant_id=scope.merchant_id,
            external_id="v1",
            product_external_id="p1",
            inventory_item_external_id="i1",
        ))
        await scope.upsert_order(Order(
            merchant_id=scope.merchant_id,
            external_id="1",
            currency="USD",
            subtotal_price=Decimal("100"),
            total_price=Decimal("113"),
            total_tax=Decimal("8"),
            total_shipping=Decimal("5"),
            processed_at=ts(2026, 5, 10),
            updated_at=ts(2026, 5, 10),
            lines=[OrderLine(line_external_id="1", variant_external_id="v1", quantity=2)],
        ))
        await scope.commit()
        await scope.costs.append("i1", Decimal("20"), "USD", ts(2026, 5, 1))

    async def test_report(self, client, merchant, scope):
        await self._seed(scope)

        response = await client.get("/api/v1/margins", params={
            "merchant_id": merchant.id,
            "start": "2026-05-01T00:00:00Z",
            "end": "2026-05-31T00:00:00Z",
        })

        assert response.status_code == 200
        body = response.json()
        assert body["totals"]["margin"] == "60.00"
        assert body["totals"]["orders_counted"] == 1
        assert body["orders"][0]["status"] == "ok"

    async def test_unknown_merchant(self, client):
        response = await client.get("/api/v1/margins", params={"merchant_id": "nope"})

        assert response.status_code == 404

    async def test_inverted_window(self, client, merchant):
        response = await client.get("/api/v1/margins", params={
            "merchant_id": merchant.id,
            "start": "2026-06-01T00:00:00Z",
            "end": "2026-05-01T00:00:00Z",
        })

        assert response.status_code == 400

    async def test_stored_margins_empty_before_any_run(self, client, merchant):
        response = await client.get("/api/v1/margins/orders", params={"merchant_id": merchant.id})

        assert response.status_code == 200
        assert response.json() == []


class TestHealth:
    """Tests for /health."""

    async def test_degraded_when_scheduler_stopped(self, client):
        response = await client.get("/health")

        assert response.status_code == 503
        assert response.json()["scheduler"] == "stopped"
        assert response.json()["store"] == "ok"

    async def test_ok_when_running(self, client, scheduler):
        scheduler.start()

        response = await client.get("/health")

        assert response.status_code == 200
        assert response.json()["status"] == "ok"


class TestDependencies:
    """Wiring of settings into the run context."""

    async def test_exchange_rates_reach_run_context(self, db, monkeypatch):
        monkeypatch.setenv("EXCHANGE_RATES", '{"EUR/USD": "1.08"}')
        config = Settings(_env_file=None)

        scheduler = dependencies.build_scheduler(
            db, EventPublisher(InMemoryBroker(), "events"), config
        )

        assert config.exchange_rates == {"EUR/USD": Decimal("1.08")}
        assert scheduler.ctx.rate_provider("EUR", "USD", ts(2026, 5, 1)) == Decimal("1.08")

    def test_no_rates_configured(self, monkeypatch):
        monkeypatch.delenv("EXCHANGE_RATES", raising=False)

        assert dependencies.rate_provider(Settings(_env_file=None)) is None
