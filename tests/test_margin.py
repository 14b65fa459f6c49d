"""
Tests for the margin calculator.
"""

import pytest
from datetime import datetime
from decimal import Decimal
from typing import Dict, List, Optional, Tuple

from margin_sync.db import (
    AppSettings, CostEntry, MultiCurrencyMode, Order, OrderLine, Variant
)
from margin_sync.processor import (
    MarginCalculator, MarginStatus, compute_margins, fixed_rate_provider
)

from tests.helpers import ts


def cost_lookup(entries: Dict[str, List[Tuple[datetime, str, str]]]):
    """Lookup over {item_id: [(effective_at, cost, currency)]}."""
    def lookup(item_id: str, at: datetime) -> Optional[CostEntry]:
        best = None
        for effective_at, cost, currency in entries.get(item_id, []):
            if effective_at <= at and (best is None or effective_at > best.effective_at):
                best = CostEntry(
                    merchant_id="m",
                    inventory_item_external_id=item_id,
                    cost=Decimal(cost),
                    currency=currency,
                    effective_at=effective_at,
                )
        return best
    return lookup


def make_order(
    external_id: str = "1",
    lines: Optional[List[OrderLine]] = None,
    currency: str = "USD",
    processed_at: datetime = ts(2026, 5, 10),
    **totals,
) -> Order:
    fields = dict(
        subtotal_price=Decimal("100"),
        total_price=Decimal("113"),
        total_tax=Decimal("8"),
        total_shipping=Decimal("5"),
    )
    fields.update(totals)
    return Order(
        merchant_id="m",
        external_id=external_id,
        currency=currency,
        processed_at=processed_at,
        updated_at=processed_at,
        lines=lines if lines is not None else [OrderLine(line_external_id="1", variant_external_id="v1", quantity=2)],
        **fields,
    )


ITEMS = {"v1": "i1", "v2": "i2"}


def calculator(
    entries=None,
    rate_provider=None,
    **overrides,
) -> MarginCalculator:
    app_settings = AppSettings(merchant_id="m", default_currency="USD", **overrides)
    return MarginCalculator(
        app_settings,
        cost_lookup(entries if entries is not None else {"i1": [(ts(2026, 5, 1), "20", "USD")]}),
        ITEMS,
        rate_provider,
    )


class TestCalculateOrder:
    """Tests for MarginCalculator.calculate_order."""

    def test_reference_example(self):
        """Subtotal 100, tax 8, shipping 5, subtotal basis, cost 40 -> margin 60, ratio 0.60."""
        result = calculator().calculate_order(make_order())

        assert result.status == MarginStatus.OK
        assert result.revenue == Decimal("100")
        assert result.cost == Decimal("40")
        assert result.margin == Decimal("60")
        assert result.margin_ratio == Decimal("0.60")

    def test_cost_in_effect_at_processed_at_is_used(self):
        entries = {"i1": [
            (ts(2026, 5, 1), "20", "USD"),
            (ts(2026, 5, 11), "35", "USD"),  # after the order
        ]}

        result = calculator(entries).calculate_order(make_order())

        assert result.cost == Decimal("40")

    def test_missing_cost_makes_order_unknown(self):
        lines = [
            OrderLine(line_external_id="1", variant_external_id="v1", quantity=1),
            OrderLine(line_external_id="2", variant_external_id="v2", quantity=1),
        ]

        result = calculator().calculate_order(make_order(lines=lines))

        assert result.status == MarginStatus.UNKNOWN_COST
        assert result.cost is None
        assert result.margin is None
        assert result.revenue == Decimal("100")

    def test_cost_effective_after_order_is_unknown(self):
        entries = {"i1": [(ts(2026, 6, 1), "20", "USD")]}

        result = calculator(entries).calculate_order(make_order())

        assert result.status == MarginStatus.UNKNOWN_COST

    def test_line_without_variant_is_unknown(self):
        lines = [OrderLine(line_external_id="1", variant_external_id=None, quantity=1)]

        result = calculator().calculate_order(make_order(lines=lines))

        assert result.status == MarginStatus.UNKNOWN_COST

    def test_zero_revenue_has_no_ratio(self):
        order = make_order(subtotal_price=Decimal("0"), total_price=Decimal("0"))

        result = calculator().calculate_order(order)

        assert result.status == MarginStatus.OK
        assert result.margin == Decimal("-40")
        assert result.margin_ratio is None


class TestMultiCurrency:
    """warn and convert modes."""

    def test_warn_flags_foreign_order(self):
        result = calculator().calculate_order(make_order(currency="EUR"))

        assert result.status == MarginStatus.CURRENCY_MISMATCH
        assert result.currency == "EUR"
        assert result.margin is None

    def test_warn_flags_foreign_cost(self):
        entries = {"i1": [(ts(2026, 5, 1), "20", "CAD")]}

        result = calculator(entries).calculate_order(make_order())

        assert result.status == MarginStatus.CURRENCY_MISMATCH

    def test_convert_uses_rate_at_processed_at(self):
        seen = []

        def rates(from_currency, to_currency, at):
            seen.append((from_currency, to_currency, at))
            return Decimal("1.1")

        calc = calculator(rate_provider=rates, multi_currency_mode=MultiCurrencyMode.CONVERT)
        result = calc.calculate_order(make_order(currency="EUR"))

        assert result.status == MarginStatus.OK
        assert result.currency == "USD"
        assert result.revenue == Decimal("110.00")
        assert result.margin == Decimal("70.00")
        assert seen == [("EUR", "USD", ts(2026, 5, 10))]

    def test_missing_rate_fails_only_that_order(self):
        def rates(from_currency, to_currency, at):
            return None

        calc = calculator(rate_provider=rates, multi_currency_mode=MultiCurrencyMode.CONVERT)
        report = calc.calculate([make_order("1", currency="EUR"), make_order("2")])

        statuses = {r.order_external_id: r.status for r in report.orders}
        assert statuses == {"1": MarginStatus.CONVERSION_FAILED, "2": MarginStatus.OK}
        assert report.orders_counted == 1
        assert report.orders_flagged == 1
        assert report.exceptions[0].kind == "data"


class TestCalculate:
    """Aggregates over many orders."""

    def test_totals_cover_only_fully_costed_orders(self):
        unknown_lines = [OrderLine(line_external_id="1", variant_external_id="v2", quantity=1)]
        orders = [
            make_order("1"),
            make_order("2", subtotal_price=Decimal("50")),
            make_order("3", lines=unknown_lines),
            make_order("4", currency="EUR"),
        ]

        report = calculator().calculate(orders)

        assert report.orders_counted == 2
        assert report.orders_unknown_cost == 1
        assert report.orders_flagged == 1
        assert report.revenue == Decimal("150")
        assert report.cost == Decimal("80")
        assert report.margin == Decimal("70")
        assert report.margin_ratio == Decimal("0.4667")
        assert report.exceptions[0].external_id == "4"
        assert report.exceptions[0].kind == "policy"

    def test_cancelled_orders_are_left_out(self):
        orders = [make_order("1"), make_order("2")]
        orders[1].cancelled_at = ts(2026, 5, 11)

        report = calculator().calculate(orders)

        assert [r.order_external_id for r in report.orders] == ["1"]
        assert report.revenue == Decimal("100")

    def test_totals_are_serializable(self):
        totals = calculator().calculate([make_order()]).totals()

        assert totals["margin"] == "60.00"
        assert totals["margin_ratio"] == "0.6000"
        assert totals["currency"] == "USD"

    def test_first_order_fixes_currency_without_default(self):
        calc = MarginCalculator(
            AppSettings(merchant_id="m"),
            cost_lookup({"i1": [(ts(2026, 5, 1), "20", "USD")]}),
            ITEMS,
        )
        orders = [make_order("1"), make_order("2", currency="EUR", processed_at=ts(2026, 5, 11))]

        report = calc.calculate(orders)

        assert report.currency == "USD"
        assert report.revenue == Decimal("100")
        assert report.orders_counted == 1
        assert report.orders_flagged == 1
        assert report.exceptions[0].external_id == "2"

    def test_convert_without_default_uses_first_order_currency(self):
        calc = MarginCalculator(
            AppSettings(merchant_id="m", multi_currency_mode=MultiCurrencyMode.CONVERT),
            cost_lookup({"i1": [(ts(2026, 5, 1), "20", "USD")]}),
            ITEMS,
            fixed_rate_provider({"EUR/USD": "1.1"}),
        )
        orders = [make_order("1"), make_order("2", currency="EUR", processed_at=ts(2026, 5, 11))]

        report = calc.calculate(orders)

        assert report.currency == "USD"
        assert report.orders_counted == 2
        assert report.revenue == Decimal("210.00")
        assert report.cost == Decimal("80.00")


class TestFixedRateProvider:
    """Rates from a fixed EXCHANGE_RATES table."""

    def test_direct_and_inverse_pairs(self):
        rates = fixed_rate_provider({"eur/usd": "1.25"})

        assert rates("EUR", "USD", ts(2026, 5, 1)) == Decimal("1.25")
        assert rates("USD", "EUR", ts(2026, 5, 1)) == Decimal("0.8")
        assert rates("GBP", "USD", ts(2026, 5, 1)) is None

    def test_invalid_pair_is_rejected(self):
        with pytest.raises(ValueError):
            fixed_rate_provider({"EURUSD": "1.1"})


class TestComputeMargins:
    """compute_margins over the stored data of a merchant."""

    async def _seed(self, scope):
        await scope.upsert_variant(Variant(
            merchant_id=scope.merchant_id,
            external_id="v1",
            product_external_id="p1",
            inventory_item_external_id="i1",
        ))
        await scope.upsert_order(make_order("1").model_copy(update={"merchant_id": scope.merchant_id}))
        await scope.commit()
        await scope.costs.append("i1", Decimal("20"), "USD", ts(2026, 5, 1))

    async def test_uses_stored_orders_and_costs(self, scope):
        await self._seed(scope)
        app_settings = AppSettings(merchant_id=scope.merchant_id, default_currency="USD")

        report = await compute_margins(scope, app_settings, ts(2026, 5, 1), ts(2026, 5, 31))

        assert report.orders_counted == 1
        assert report.margin == Decimal("60")

    async def test_window_excludes_orders_outside(self, scope):
        await self._seed(scope)
        app_settings = AppSettings(merchant_id=scope.merchant_id, default_currency="USD")

        report = await compute_margins(scope, app_settings, ts(2026, 6, 1), ts(2026, 6, 30))

        assert report.orders == []

    async def test_soft_deleted_catalog_keeps_historical_margin(self, scope):
        await self._seed(scope)
        app_settings = AppSettings(merchant_id=scope.merchant_id, default_currency="USD")
        before = await compute_margins(scope, app_settings)

        await scope.soft_delete_missing("variants", set())
        after = await compute_margins(scope, app_settings)

        assert after.totals() == before.totals()
        assert after.orders[0].margin == Decimal("60")

    async def test_shop_currency_used_without_default(self, scope):
        await self._seed(scope)
        app_settings = AppSettings(merchant_id=scope.merchant_id)

        report = await compute_margins(scope, app_settings, shop_currency="EUR")

        assert report.orders_flagged == 1
        assert report.orders[0].status == MarginStatus.CURRENCY_MISMATCH
