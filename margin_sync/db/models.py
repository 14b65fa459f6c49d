"""
Pydantic models for database entities.
Every merchant-owned entity carries its merchant_id.
"""

from datetime import datetime, timezone
from decimal import Decimal
from enum import Enum
from typing import Any, Dict, Optional
from pydantic import BaseModel, Field
import uuid


class SyncKind(str, Enum):
    """What a sync run reconciles."""
    CATALOG = "catalog"
    ORDERS = "orders"


class TriggerType(str, Enum):
    """What triggered the sync."""
    CRON = "cron"
    ON_DEMAND = "on_demand"


class RunStatus(str, Enum):
    """Lifecycle of a sync run. The last three are final outcomes."""
    QUEUED = "queued"
    RUNNING = "running"
    SUCCESS = "success"
    PARTIAL = "partial"
    FAILED = "failed"

    @property
    def is_final(self) -> bool:
        return self in (RunStatus.SUCCESS, RunStatus.PARTIAL, RunStatus.FAILED)


class RevenueBasis(str, Enum):
    SUBTOTAL = "subtotal"
    TOTAL = "total"


class MultiCurrencyMode(str, Enum):
    WARN = "warn"
    CONVERT = "convert"


class CostSource(str, Enum):
    SHOPIFY = "shopify"
    MANUAL = "manual"


def generate_uuid() -> str:
    """Generate a new UUID string."""
    return str(uuid.uuid4())


def utcnow() -> datetime:
    return datetime.now(timezone.utc)


class Merchant(BaseModel):
    """A Shopify store; the tenant root."""
    id: str = Field(default_factory=generate_uuid)
    shop_domain: str  # e.g., "mystore.myshopify.com"
    access_token: str  # opaque, handed to the external source
    shop_name: Optional[str] = None
    shop_currency: Optional[str] = None
    timezone: Optional[str] = None
    created_at: datetime = Field(default_factory=utcnow)
    updated_at: datetime = Field(default_factory=utcnow)
    deleted_at: Optional[datetime] = None

    @property
    def is_active(self) -> bool:
        return self.deleted_at is None


class AppSettings(BaseModel):
    """Per-merchant accounting policy and sync configuration."""
    merchant_id: str
    revenue_basis: RevenueBasis = RevenueBasis.SUBTOTAL
    include_taxes: bool = False
    include_shipping: bool = False
    default_currency: Optional[str] = None
    multi_currency_mode: MultiCurrencyMode = MultiCurrencyMode.WARN
    sync_lookback_days: int = 120
    auto_refresh_cron: Optional[str] = None
    products_sync_cron: Optional[str] = None
    orders_sync_cron: Optional[str] = None

    def cron_for(self, kind: SyncKind) -> Optional[str]:
        """Cron expression for a sync kind, falling back to auto_refresh_cron."""
        if kind == SyncKind.CATALOG:
            return self.products_sync_cron or self.auto_refresh_cron
        return self.orders_sync_cron or self.auto_refresh_cron


class Product(BaseModel):
    merchant_id: str
    external_id: str
    title: Optional[str] = None
    product_type: Optional[str] = None
    status: Optional[str] = None
    created_at: datetime = Field(default_factory=utcnow)
    updated_at: datetime = Field(default_factory=utcnow)
    deleted_at: Optional[datetime] = None


class Variant(BaseModel):
    merchant_id: str
    external_id: str
    product_external_id: str  # lookup relation, not ownership
    inventory_item_external_id: Optional[str] = None
    sku: Optional[str] = None
    title: Optional[str] = None
    barcode: Optional[str] = None
    price: Optional[Decimal] = None
    weight: Optional[Decimal] = None
    weight_unit: Optional[str] = None
    created_at: datetime = Field(default_factory=utcnow)
    updated_at: datetime = Field(default_factory=utcnow)
    deleted_at: Optional[datetime] = None


class InventoryItem(BaseModel):
    merchant_id: str
    external_id: str
    variant_external_id: Optional[str] = None
    sku: Optional[str] = None
    tracked: Optional[bool] = None
    created_at: datetime = Field(default_factory=utcnow)
    updated_at: datetime = Field(default_factory=utcnow)
    deleted_at: Optional[datetime] = None


class CostEntry(BaseModel):
    """One append-only cost history entry."""
    merchant_id: str
    inventory_item_external_id: str
    cost: Decimal
    currency: str
    effective_at: datetime
    source: CostSource = CostSource.SHOPIFY
    created_at: datetime = Field(default_factory=utcnow)


class OrderLine(BaseModel):
    line_external_id: str
    variant_external_id: Optional[str] = None
    product_external_id: Optional[str] = None
    sku: Optional[str] = None
    title: Optional[str] = None
    quantity: int = 1
    price: Decimal = Decimal("0")


class Order(BaseModel):
    merchant_id: str
    external_id: str
    name: Optional[str] = None
    currency: Optional[str] = None
    subtotal_price: Decimal = Decimal("0")
    total_price: Decimal = Decimal("0")
    total_discounts: Decimal = Decimal("0")
    total_shipping: Decimal = Decimal("0")
    total_tax: Decimal = Decimal("0")
    financial_status: Optional[str] = None
    processed_at: Optional[datetime] = None
    updated_at: datetime = Field(default_factory=utcnow)
    cancelled_at: Optional[datetime] = None
    lines: list[OrderLine] = Field(default_factory=list)

    @property
    def is_cancelled(self) -> bool:
        return self.cancelled_at is not None


class OrderMargin(BaseModel):
    """Latest computed margin for one order."""
    merchant_id: str
    order_external_id: str
    processed_at: Optional[datetime] = None
    currency: Optional[str] = None
    revenue: Decimal
    cost: Optional[Decimal] = None
    margin: Optional[Decimal] = None
    margin_ratio: Optional[Decimal] = None
    status: str
    computed_at: datetime = Field(default_factory=utcnow)


class SyncRun(BaseModel):
    """A record of one reconciliation execution."""
    id: str = Field(default_factory=generate_uuid)
    merchant_id: str
    sync_kind: SyncKind
    trigger: TriggerType = TriggerType.ON_DEMAND
    status: RunStatus = RunStatus.QUEUED
    created_at: datetime = Field(default_factory=utcnow)
    started_at: Optional[datetime] = None
    finished_at: Optional[datetime] = None
    watermark: Optional[datetime] = None
    summary: Dict[str, Any] = Field(default_factory=dict)
    error_message: Optional[str] = None
    published: bool = False
