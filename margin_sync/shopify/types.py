"""
Typed views over Shopify REST payloads.

Only the fields the reconcilers consume are declared; anything else in the
payload is ignored. A record missing a required field fails validation on
its own, without taking the rest of the page down with it.
"""

from datetime import datetime
from decimal import Decimal
from typing import Any, Dict, List, Optional

from pydantic import BaseModel, ConfigDict, field_validator

from ..db.models import InventoryItem, Order, OrderLine, Product, Variant


class ShopifyRecord(BaseModel):
    model_config = ConfigDict(extra="ignore")

    @field_validator("*", mode="before")
    @classmethod
    def _blank_to_none(cls, value: Any) -> Any:
        if isinstance(value, str) and value.strip() == "":
            return None
        return value


class ShopifyVariant(ShopifyRecord):
    id: int
    product_id: int
    title: Optional[str] = None
    price: Optional[Decimal] = None
    sku: Optional[str] = None
    barcode: Optional[str] = None
    weight: Optional[Decimal] = None
    weight_unit: Optional[str] = None
    inventory_item_id: Optional[int] = None

    def to_variant(self, merchant_id: str) -> Variant:
        return Variant(
            merchant_id=merchant_id,
            external_id=str(self.id),
            product_external_id=str(self.product_id),
            inventory_item_external_id=(
                str(self.inventory_item_id) if self.inventory_item_id is not None else None
            ),
            sku=self.sku,
            title=self.title,
            barcode=self.barcode,
            price=self.price,
            weight=self.weight,
            weight_unit=self.weight_unit,
        )


class ShopifyProduct(ShopifyRecord):
    id: int
    title: Optional[str] = None
    product_type: Optional[str] = None
    status: Optional[str] = None
    created_at: Optional[datetime] = None
    updated_at: Optional[datetime] = None
    # Validated one by one, see ShopifyVariant
    variants: List[Dict[str, Any]] = []

    def to_product(self, merchant_id: str) -> Product:
        return Product(
            merchant_id=merchant_id,
            external_id=str(self.id),
            title=self.title,
            product_type=self.product_type,
            status=self.status,
        )


class ShopifyInventoryItem(ShopifyRecord):
    id: int
    sku: Optional[str] = None
    cost: Optional[Decimal] = None
    tracked: Optional[bool] = None
    created_at: Optional[datetime] = None
    updated_at: datetime

    def to_inventory_item(self, merchant_id: str, variant_id: Optional[str]) -> InventoryItem:
        return InventoryItem(
            merchant_id=merchant_id,
            external_id=str(self.id),
            variant_external_id=variant_id,
            sku=self.sku,
            tracked=self.tracked,
        )


class ShopifyMoney(ShopifyRecord):
    amount: Decimal
    currency_code: Optional[str] = None


class ShopifyPriceSet(ShopifyRecord):
    shop_money: ShopifyMoney


class ShopifyLineItem(ShopifyRecord):
    id: int
    product_id: Optional[int] = None
    variant_id: Optional[int] = None
    title: Optional[str] = None
    sku: Optional[str] = None
    quantity: int
    price: Decimal

    def to_line(self) -> OrderLine:
        return OrderLine(
            line_external_id=str(self.id),
            variant_external_id=str(self.variant_id) if self.variant_id is not None else None,
            product_external_id=str(self.product_id) if self.product_id is not None else None,
            sku=self.sku,
            title=self.title,
            quantity=self.quantity,
            price=self.price,
        )


class ShopifyOrder(ShopifyRecord):
    id: int
    name: Optional[str] = None
    currency: str
    subtotal_price: Decimal
    total_price: Decimal
    total_discounts: Decimal = Decimal("0")
    total_tax: Decimal = Decimal("0")
    total_shipping_price_set: Optional[ShopifyPriceSet] = None
    financial_status: Optional[str] = None
    processed_at: Optional[datetime] = None
    created_at: Optional[datetime] = None
    updated_at: datetime
    cancelled_at: Optional[datetime] = None
    line_items: List[ShopifyLineItem] = []

    def to_order(self, merchant_id: str) -> Order:
        shipping = Decimal("0")
        if self.total_shipping_price_set is not None:
            shipping = self.total_shipping_price_set.shop_money.amount

        return Order(
            merchant_id=merchant_id,
            external_id=str(self.id),
            name=self.name,
            currency=self.currency,
            subtotal_price=self.subtotal_price,
            total_price=self.total_price,
            total_discounts=self.total_discounts,
            total_shipping=shipping,
            total_tax=self.total_tax,
            financial_status=self.financial_status,
            processed_at=self.processed_at or self.created_at,
            updated_at=self.updated_at,
            cancelled_at=self.cancelled_at,
            lines=[line.to_line() for line in self.line_items],
        )
