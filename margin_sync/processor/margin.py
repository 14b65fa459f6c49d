"""
Margin calculator.

Revenue comes from the order totals under the merchant's accounting policy;
cost is the sum of each line's quantity times the unit cost that was in
effect for its inventory item when the order was processed.
"""

import logging
from dataclasses import dataclass, field
from datetime import datetime
from decimal import Decimal
from enum import Enum
from typing import Any, Callable, Dict, List, Mapping, Optional

from ..db import (
    AppSettings, CostEntry, MerchantScope, MultiCurrencyMode, Order, OrderMargin, utcnow
)
from .outcome import RecordException
from .rules import ZERO, convert_amount, format_money, line_cost, margin_ratio, order_revenue

logger = logging.getLogger(__name__)


# (from_currency, to_currency, at) -> rate, or None when unavailable
RateProvider = Callable[[str, str, datetime], Optional[Decimal]]
CostLookup = Callable[[str, datetime], Optional[CostEntry]]


def fixed_rate_provider(rates: Mapping[str, Any]) -> RateProvider:
    """
    RateProvider over a fixed table such as {"EUR/USD": "1.08"}.

    The same rate applies at any time. A pair missing from the table is
    answered with the inverse of its reverse pair when that one is known.

    Raises:
        ValueError: If a key is not of the form "FROM/TO"
    """
    table: Dict[tuple, Decimal] = {}
    for pair, rate in rates.items():
        source, _, target = pair.strip().upper().partition("/")
        if not source or not target:
            raise ValueError(f"Invalid currency pair: {pair!r}")
        table[(source, target)] = Decimal(str(rate))

    def provider(from_currency: str, to_currency: str, at: datetime) -> Optional[Decimal]:
        key = (from_currency.upper(), to_currency.upper())
        if key in table:
            return table[key]
        inverse = table.get((key[1], key[0]))
        if inverse:
            return Decimal(1) / inverse
        return None

    return provider


class MarginStatus(str, Enum):
    OK = "ok"
    UNKNOWN_COST = "unknown_cost"
    CURRENCY_MISMATCH = "currency_mismatch"
    CONVERSION_FAILED = "conversion_failed"


class _ConversionFailed(Exception):
    pass


@dataclass
class OrderMarginResult:
    """Margin of a single order. cost and margin are None unless fully known."""

    order_external_id: str
    processed_at: Optional[datetime]
    currency: Optional[str]
    revenue: Decimal
    cost: Optional[Decimal] = None
    margin: Optional[Decimal] = None
    margin_ratio: Optional[Decimal] = None
    status: MarginStatus = MarginStatus.OK
    detail: Optional[str] = None

    def to_record(self, merchant_id: str, computed_at: Optional[datetime] = None) -> OrderMargin:
        return OrderMargin(
            merchant_id=merchant_id,
            order_external_id=self.order_external_id,
            processed_at=self.processed_at,
            currency=self.currency,
            revenue=self.revenue,
            cost=self.cost,
            margin=self.margin,
            margin_ratio=self.margin_ratio,
            status=self.status.value,
            computed_at=computed_at or utcnow(),
        )


@dataclass
class MarginReport:
    """Per-order margins and totals over the orders whose cost is fully known."""

    start: Optional[datetime]
    end: Optional[datetime]
    currency: Optional[str]
    orders: List[OrderMarginResult] = field(default_factory=list)
    revenue: Decimal = ZERO
    cost: Decimal = ZERO
    orders_counted: int = 0
    orders_unknown_cost: int = 0
    orders_flagged: int = 0
    exceptions: List[RecordException] = field(default_factory=list)

    @property
    def margin(self) -> Decimal:
        return self.revenue - self.cost

    @property
    def margin_ratio(self) -> Optional[Decimal]:
        return margin_ratio(self.margin, self.revenue)

    def totals(self) -> Dict[str, Any]:
        ratio = self.margin_ratio
        return {
            "currency": self.currency,
            "revenue": str(self.revenue),
            "cost": str(self.cost),
            "margin": str(self.margin),
            "margin_ratio": str(ratio) if ratio is not None else None,
            "orders_counted": self.orders_counted,
            "orders_unknown_cost": self.orders_unknown_cost,
            "orders_flagged": self.orders_flagged,
        }


class MarginCalculator:
    """
    Computes order margins for one merchant.

    Pure: all data comes in through the constructor, so the same inputs
    always give the same report.
    """

    def __init__(
        self,
        app_settings: AppSettings,
        cost_lookup: CostLookup,
        item_for_variant: Mapping[str, str],
        rate_provider: Optional[RateProvider] = None,
        shop_currency: Optional[str] = None,
    ):
        self.app_settings = app_settings
        # Reporting currency; costs are recorded in it
        self.currency = app_settings.default_currency or shop_currency
        self.cost_lookup = cost_lookup
        self.item_for_variant = item_for_variant
        self.rate_provider = rate_provider

    def _convert(self, amount: Decimal, from_currency: str, to_currency: str, at: datetime) -> Decimal:
        rate = None
        if self.rate_provider is not None:
            rate = self.rate_provider(from_currency, to_currency, at)
        if rate is None:
            raise _ConversionFailed(f"No {from_currency}->{to_currency} rate at {at.isoformat()}")
        return convert_amount(amount, rate)

    def calculate_order(self, order: Order, currency: Optional[str] = None) -> OrderMarginResult:
        """
        Margin of one order in currency, else the configured reporting
        currency, else the order's own currency.
        """
        reference_time = order.processed_at or order.updated_at
        target = currency or self.currency or order.currency
        convert = self.app_settings.multi_currency_mode == MultiCurrencyMode.CONVERT

        result = OrderMarginResult(
            order_external_id=order.external_id,
            processed_at=order.processed_at,
            currency=target,
            revenue=order_revenue(order, self.app_settings),
        )

        try:
            if order.currency and target and order.currency != target:
                if not convert:
                    result.currency = order.currency
                    result.status = MarginStatus.CURRENCY_MISMATCH
                    result.detail = f"Order currency {order.currency} differs from {target}"
                    return result
                result.revenue = self._convert(result.revenue, order.currency, target, reference_time)

            total_cost = ZERO
            missing: List[str] = []
            for line in order.lines:
                item_id = self.item_for_variant.get(line.variant_external_id or "")
                entry = self.cost_lookup(item_id, reference_time) if item_id else None
                if entry is None:
                    missing.append(line.line_external_id)
                    continue

                unit_cost = entry.cost
                if target and entry.currency != target:
                    if not convert:
                        result.status = MarginStatus.CURRENCY_MISMATCH
                        result.detail = (
                            f"Cost of item {item_id} is in {entry.currency}, not {target}"
                        )
                        return result
                    unit_cost = self._convert(unit_cost, entry.currency, target, reference_time)

                total_cost += line_cost(line.quantity, unit_cost)

        except _ConversionFailed as e:
            result.status = MarginStatus.CONVERSION_FAILED
            result.detail = str(e)
            return result

        if missing:
            result.status = MarginStatus.UNKNOWN_COST
            result.detail = f"No cost known for lines {', '.join(missing)}"
            return result

        result.cost = format_money(total_cost)
        result.margin = result.revenue - result.cost
        result.margin_ratio = margin_ratio(result.margin, result.revenue)
        return result

    def calculate(
        self,
        orders: List[Order],
        start: Optional[datetime] = None,
        end: Optional[datetime] = None,
    ) -> MarginReport:
        """
        Compute margins for the non-cancelled orders in the list.

        Only orders with status ok contribute to the totals. Unknown-cost
        orders are counted separately; currency problems are reported as
        exceptions.
        """
        report = MarginReport(start=start, end=end, currency=self.currency)

        for order in orders:
            if order.is_cancelled:
                continue

            if report.currency is None:
                # No configured currency: the first order fixes it for the report
                report.currency = order.currency
            result = self.calculate_order(order, report.currency)
            report.orders.append(result)

            if result.status == MarginStatus.OK:
                report.revenue += result.revenue
                report.cost += result.cost
                report.orders_counted += 1
            elif result.status == MarginStatus.UNKNOWN_COST:
                report.orders_unknown_cost += 1
            else:
                report.orders_flagged += 1
                report.exceptions.append(RecordException(
                    entity="orders",
                    external_id=order.external_id,
                    kind="policy" if result.status == MarginStatus.CURRENCY_MISMATCH else "data",
                    message=result.detail or result.status.value,
                ))

        if report.orders_flagged:
            logger.warning(f"{report.orders_flagged} orders flagged during margin calculation")

        return report


async def compute_margins(
    scope: MerchantScope,
    app_settings: AppSettings,
    start: Optional[datetime] = None,
    end: Optional[datetime] = None,
    rate_provider: Optional[RateProvider] = None,
    shop_currency: Optional[str] = None,
) -> MarginReport:
    """
    Compute margins for a merchant's stored orders processed within [start, end].

    Cost histories are loaded once per item and resolved in memory.
    """
    orders = await scope.list_orders_for_margin(start, end)
    item_for_variant = await scope.variant_inventory_map()

    wanted = {
        item_for_variant[line.variant_external_id]
        for order in orders
        for line in order.lines
        if line.variant_external_id in item_for_variant
    }
    timelines = await scope.costs.timelines(wanted)

    def lookup(item_id: str, at: datetime) -> Optional[CostEntry]:
        timeline = timelines.get(item_id)
        return timeline.resolve(at) if timeline is not None else None

    calculator = MarginCalculator(
        app_settings, lookup, item_for_variant, rate_provider, shop_currency
    )
    report = calculator.calculate(orders, start, end)

    logger.info(
        f"Margins for merchant {scope.merchant_id}: {report.orders_counted} counted, "
        f"{report.orders_unknown_cost} unknown cost, {report.orders_flagged} flagged"
    )
    return report
