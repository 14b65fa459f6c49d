"""
Accounting rules for order revenue and margin.
"""

from decimal import Decimal, ROUND_HALF_UP
from typing import Optional

from ..db.models import AppSettings, Order, RevenueBasis


# Rule constants
MONEY_QUANTUM = Decimal("0.01")
RATIO_QUANTUM = Decimal("0.0001")
ZERO = Decimal("0")


def order_revenue(order: Order, app_settings: AppSettings) -> Decimal:
    """
    Calculate the revenue of an order under the merchant's accounting policy.

    Rules:
    1. subtotal basis: subtotal, plus taxes and/or shipping when included
    2. total basis: total, minus taxes and/or shipping when excluded

    Args:
        order: Order with its price totals
        app_settings: Merchant's revenue_basis and include flags

    Returns:
        Revenue in the order's currency
    """
    if app_settings.revenue_basis == RevenueBasis.TOTAL:
        revenue = order.total_price
        if not app_settings.include_taxes:
            revenue -= order.total_tax
        if not app_settings.include_shipping:
            revenue -= order.total_shipping
        return revenue

    revenue = order.subtotal_price
    if app_settings.include_taxes:
        revenue += order.total_tax
    if app_settings.include_shipping:
        revenue += order.total_shipping
    return revenue


def line_cost(quantity: int, unit_cost: Decimal) -> Decimal:
    """Cost of one order line: quantity x unit cost."""
    return unit_cost * quantity


def margin_ratio(margin: Decimal, revenue: Decimal) -> Optional[Decimal]:
    """
    Margin as a share of revenue, to four decimal places.

    Returns:
        None when revenue is zero
    """
    if revenue == ZERO:
        return None
    return (margin / revenue).quantize(RATIO_QUANTUM, rounding=ROUND_HALF_UP)


def convert_amount(amount: Decimal, rate: Decimal) -> Decimal:
    """Convert an amount with a from->to rate, rounded to cents."""
    return format_money(amount * rate)


def format_money(value: Decimal) -> Decimal:
    """Round a money amount to two decimal places."""
    return value.quantize(MONEY_QUANTUM, rounding=ROUND_HALF_UP)
