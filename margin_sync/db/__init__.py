"""
Database package - SQLite only.
"""

from .models import (
    Merchant, AppSettings, Product, Variant, InventoryItem, CostEntry, CostSource,
    Order, OrderLine, OrderMargin, SyncRun, SyncKind, TriggerType, RunStatus,
    RevenueBasis, MultiCurrencyMode, generate_uuid, utcnow
)
from .sqlite import SQLiteDatabase, MerchantNotFound
from .cost_basis import CostBasisStore, CostTimeline, DuplicateCostEntryError
from .scoped import MerchantScope, CREATED, UPDATED, UNCHANGED

__all__ = [
    "SQLiteDatabase",
    "MerchantNotFound",
    "MerchantScope",
    "CostBasisStore",
    "CostTimeline",
    "DuplicateCostEntryError",
    "Merchant",
    "AppSettings",
    "Product",
    "Variant",
    "InventoryItem",
    "CostEntry",
    "CostSource",
    "Order",
    "OrderLine",
    "OrderMargin",
    "SyncRun",
    "SyncKind",
    "TriggerType",
    "RunStatus",
    "RevenueBasis",
    "MultiCurrencyMode",
    "CREATED",
    "UPDATED",
    "UNCHANGED",
    "generate_uuid",
    "utcnow",
]
