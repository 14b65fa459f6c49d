"""
Margin report API routes.
"""

from datetime import datetime
from decimal import Decimal
from typing import Any, Dict, List, Optional

from fastapi import APIRouter, HTTPException
from pydantic import BaseModel

from ..db import MerchantNotFound, OrderMargin
from ..dependencies import get_db, get_scheduler
from ..processor import compute_margins

router = APIRouter(prefix="/api/v1/margins")


class OrderMarginResponse(BaseModel):
    order_external_id: str
    processed_at: Optional[datetime] = None
    currency: Optional[str] = None
    revenue: Decimal
    cost: Optional[Decimal] = None
    margin: Optional[Decimal] = None
    margin_ratio: Optional[Decimal] = None
    status: str


class MarginReportResponse(BaseModel):
    merchant_id: str
    start: Optional[datetime] = None
    end: Optional[datetime] = None
    totals: Dict[str, Any]
    exceptions: List[Dict[str, Any]]
    orders: List[OrderMarginResponse]


@router.get("", response_model=MarginReportResponse)
async def margin_report(
    merchant_id: str,
    start: Optional[datetime] = None,
    end: Optional[datetime] = None,
):
    """Compute margins over the stored orders processed within [start, end]."""
    db = get_db()
    try:
        merchant = await db.get_active_merchant(merchant_id)
    except MerchantNotFound:
        raise HTTPException(status_code=404, detail="Merchant not found")

    if start and end and start > end:
        raise HTTPException(status_code=400, detail="start must not be after end")

    app_settings = await db.get_app_settings(merchant_id)
    report = await compute_margins(
        db.scope(merchant_id),
        app_settings,
        start,
        end,
        get_scheduler().ctx.rate_provider,
        merchant.shop_currency,
    )

    return MarginReportResponse(
        merchant_id=merchant_id,
        start=start,
        end=end,
        totals=report.totals(),
        exceptions=[e.as_dict() for e in report.exceptions],
        orders=[
            OrderMarginResponse(
                order_external_id=r.order_external_id,
                processed_at=r.processed_at,
                currency=r.currency,
                revenue=r.revenue,
                cost=r.cost,
                margin=r.margin,
                margin_ratio=r.margin_ratio,
                status=r.status.value,
            )
            for r in report.orders
        ],
    )


@router.get("/orders", response_model=List[OrderMarginResponse])
async def stored_margins(
    merchant_id: str,
    start: Optional[datetime] = None,
    end: Optional[datetime] = None,
):
    """Margin records saved by the last successful order runs."""
    db = get_db()
    merchant = await db.get_merchant(merchant_id)
    if not merchant or not merchant.is_active:
        raise HTTPException(status_code=404, detail="Merchant not found")

    records: List[OrderMargin] = await db.scope(merchant_id).get_order_margins(start, end)
    return [OrderMarginResponse(**record.model_dump()) for record in records]
