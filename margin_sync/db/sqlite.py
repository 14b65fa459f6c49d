"""
SQLite database implementation.
Simple and direct - hand-written SQL over one aiosqlite connection.

Merchant-owned rows (catalog, orders, costs, margins) are only reachable
through MerchantScope, see scoped.py.
"""

import aiosqlite
import json
from datetime import datetime, timezone
from decimal import Decimal
from typing import List, Optional
import os

from .models import (
    Merchant, AppSettings, SyncRun, SyncKind, TriggerType, RunStatus,
    RevenueBasis, MultiCurrencyMode, utcnow
)


_DB_TIME_FORMAT = "%Y-%m-%dT%H:%M:%S.%fZ"


def to_db_time(value: Optional[datetime]) -> Optional[str]:
    """
    Serialize a datetime as a fixed-width UTC string.

    Fixed width keeps lexicographic order equal to chronological order,
    which the range queries rely on. Naive datetimes are taken as UTC.
    """
    if value is None:
        return None
    if value.tzinfo is None:
        value = value.replace(tzinfo=timezone.utc)
    return value.astimezone(timezone.utc).strftime(_DB_TIME_FORMAT)


def from_db_time(value: Optional[str]) -> Optional[datetime]:
    if not value:
        return None
    parsed = datetime.fromisoformat(value.replace("Z", "+00:00"))
    if parsed.tzinfo is None:
        parsed = parsed.replace(tzinfo=timezone.utc)
    return parsed


def to_db_decimal(value: Optional[Decimal]) -> Optional[str]:
    return str(value) if value is not None else None


def from_db_decimal(value: Optional[str]) -> Optional[Decimal]:
    return Decimal(value) if value is not None else None


class MerchantNotFound(Exception):
    """Merchant does not exist or was soft-deleted."""
    pass


class SQLiteDatabase:
    """SQLite database for all operations."""

    def __init__(self, db_path: str):
        self.db_path = db_path
        self._connection: Optional[aiosqlite.Connection] = None

    async def _get_connection(self) -> aiosqlite.Connection:
        """Get or create database connection."""
        if self._connection is None:
            os.makedirs(os.path.dirname(self.db_path) or ".", exist_ok=True)
            self._connection = await aiosqlite.connect(self.db_path)
            self._connection.row_factory = aiosqlite.Row
        return self._connection

    async def initialize(self) -> None:
        """Create database tables."""
        conn = await self._get_connection()

        await conn.executescript("""
            CREATE TABLE IF NOT EXISTS merchants (
                id TEXT PRIMARY KEY,
                shop_domain TEXT NOT NULL UNIQUE,
                access_token TEXT NOT NULL,
                shop_name TEXT,
                shop_currency TEXT,
                timezone TEXT,
                created_at TEXT NOT NULL,
                updated_at TEXT NOT NULL,
                deleted_at TEXT
            );

            CREATE TABLE IF NOT EXISTS app_settings (
                merchant_id TEXT PRIMARY KEY,
                revenue_basis TEXT NOT NULL DEFAULT 'subtotal',
                include_taxes INTEGER NOT NULL DEFAULT 0,
                include_shipping INTEGER NOT NULL DEFAULT 0,
                default_currency TEXT,
                multi_currency_mode TEXT NOT NULL DEFAULT 'warn',
                sync_lookback_days INTEGER NOT NULL DEFAULT 120,
                auto_refresh_cron TEXT,
                products_sync_cron TEXT,
                orders_sync_cron TEXT,
                FOREIGN KEY (merchant_id) REFERENCES merchants(id) ON DELETE CASCADE
            );

            CREATE TABLE IF NOT EXISTS products (
                merchant_id TEXT NOT NULL,
                external_id TEXT NOT NULL,
                title TEXT,
                product_type TEXT,
                status TEXT,
                created_at TEXT NOT NULL,
                updated_at TEXT NOT NULL,
                deleted_at TEXT,
                PRIMARY KEY (merchant_id, external_id)
            );

            CREATE TABLE IF NOT EXISTS variants (
                merchant_id TEXT NOT NULL,
                external_id TEXT NOT NULL,
                product_external_id TEXT NOT NULL,
                inventory_item_external_id TEXT,
                sku TEXT,
                title TEXT,
                barcode TEXT,
                price TEXT,
                weight TEXT,
                weight_unit TEXT,
                created_at TEXT NOT NULL,
                updated_at TEXT NOT NULL,
                deleted_at TEXT,
                PRIMARY KEY (merchant_id, external_id)
            );

            CREATE TABLE IF NOT EXISTS inventory_items (
                merchant_id TEXT NOT NULL,
                external_id TEXT NOT NULL,
                variant_external_id TEXT,
                sku TEXT,
                tracked INTEGER,
                created_at TEXT NOT NULL,
                updated_at TEXT NOT NULL,
                deleted_at TEXT,
                PRIMARY KEY (merchant_id, external_id)
            );

            CREATE TABLE IF NOT EXISTS inventory_cost_history (
                merchant_id TEXT NOT NULL,
                inventory_item_external_id TEXT NOT NULL,
                cost TEXT NOT NULL,
                currency TEXT NOT NULL,
                effective_at TEXT NOT NULL,
                source TEXT NOT NULL DEFAULT 'shopify',
                created_at TEXT NOT NULL,
                UNIQUE(merchant_id, inventory_item_external_id, effective_at)
            );

            CREATE TABLE IF NOT EXISTS orders (
                merchant_id TEXT NOT NULL,
                external_id TEXT NOT NULL,
                name TEXT,
                currency TEXT,
                subtotal_price TEXT NOT NULL DEFAULT '0',
                total_price TEXT NOT NULL DEFAULT '0',
                total_discounts TEXT NOT NULL DEFAULT '0',
                total_shipping TEXT NOT NULL DEFAULT '0',
                total_tax TEXT NOT NULL DEFAULT '0',
                financial_status TEXT,
                processed_at TEXT,
                updated_at TEXT NOT NULL,
                cancelled_at TEXT,
                PRIMARY KEY (merchant_id, external_id)
            );

            CREATE TABLE IF NOT EXISTS order_lines (
                merchant_id TEXT NOT NULL,
                order_external_id TEXT NOT NULL,
                line_external_id TEXT NOT NULL,
                variant_external_id TEXT,
                product_external_id TEXT,
                sku TEXT,
                title TEXT,
                quantity INTEGER NOT NULL DEFAULT 1,
                price TEXT NOT NULL DEFAULT '0',
                PRIMARY KEY (merchant_id, order_external_id, line_external_id)
            );

            CREATE TABLE IF NOT EXISTS order_margins (
                merchant_id TEXT NOT NULL,
                order_external_id TEXT NOT NULL,
                processed_at TEXT,
                currency TEXT,
                revenue TEXT NOT NULL,
                cost TEXT,
                margin TEXT,
                margin_ratio TEXT,
                status TEXT NOT NULL,
                computed_at TEXT NOT NULL,
                PRIMARY KEY (merchant_id, order_external_id)
            );

            CREATE TABLE IF NOT EXISTS sync_runs (
                id TEXT PRIMARY KEY,
                merchant_id TEXT NOT NULL,
                sync_kind TEXT NOT NULL,
                trigger TEXT NOT NULL,
                status TEXT NOT NULL DEFAULT 'queued',
                created_at TEXT NOT NULL,
                started_at TEXT,
                finished_at TEXT,
                watermark TEXT,
                summary TEXT NOT NULL DEFAULT '{}',
                error_message TEXT,
                published INTEGER NOT NULL DEFAULT 0
            );

            CREATE INDEX IF NOT EXISTS idx_variants_product ON variants(merchant_id, product_external_id);
            CREATE INDEX IF NOT EXISTS idx_cost_history_lookup
                ON inventory_cost_history(merchant_id, inventory_item_external_id, effective_at DESC);
            CREATE INDEX IF NOT EXISTS idx_orders_processed ON orders(merchant_id, processed_at);
            CREATE INDEX IF NOT EXISTS idx_sync_runs_key ON sync_runs(merchant_id, sync_kind, created_at DESC);
            CREATE INDEX IF NOT EXISTS idx_sync_runs_unpublished ON sync_runs(published, status);
        """)
        await conn.commit()

    async def close(self) -> None:
        """Close database connection."""
        if self._connection:
            await self._connection.close()
            self._connection = None

    async def ping(self) -> bool:
        """Check store connectivity."""
        try:
            conn = await self._get_connection()
            cursor = await conn.execute("SELECT 1")
            await cursor.fetchone()
            return True
        except Exception:
            return False

    def scope(self, merchant_id: str) -> "MerchantScope":
        """Data access bound to a single merchant."""
        from .scoped import MerchantScope
        return MerchantScope(self, merchant_id)

    # ===== Helper Methods =====

    def _row_to_merchant(self, row: aiosqlite.Row) -> Merchant:
        return Merchant(
            id=row["id"],
            shop_domain=row["shop_domain"],
            access_token=row["access_token"],
            shop_name=row["shop_name"],
            shop_currency=row["shop_currency"],
            timezone=row["timezone"],
            created_at=from_db_time(row["created_at"]),
            updated_at=from_db_time(row["updated_at"]),
            deleted_at=from_db_time(row["deleted_at"])
        )

    def _row_to_settings(self, row: aiosqlite.Row) -> AppSettings:
        return AppSettings(
            merchant_id=row["merchant_id"],
            revenue_basis=RevenueBasis(row["revenue_basis"]),
            include_taxes=bool(row["include_taxes"]),
            include_shipping=bool(row["include_shipping"]),
            default_currency=row["default_currency"],
            multi_currency_mode=MultiCurrencyMode(row["multi_currency_mode"]),
            sync_lookback_days=row["sync_lookback_days"],
            auto_refresh_cron=row["auto_refresh_cron"],
            products_sync_cron=row["products_sync_cron"],
            orders_sync_cron=row["orders_sync_cron"]
        )

    def _row_to_run(self, row: aiosqlite.Row) -> SyncRun:
        return SyncRun(
            id=row["id"],
            merchant_id=row["merchant_id"],
            sync_kind=SyncKind(row["sync_kind"]),
            trigger=TriggerType(row["trigger"]),
            status=RunStatus(row["status"]),
            created_at=from_db_time(row["created_at"]),
            started_at=from_db_time(row["started_at"]),
            finished_at=from_db_time(row["finished_at"]),
            watermark=from_db_time(row["watermark"]),
            summary=json.loads(row["summary"] or "{}"),
            error_message=row["error_message"],
            published=bool(row["published"])
        )

    # ===== Merchant Operations =====

    async def get_merchant(self, merchant_id: str) -> Optional[Merchant]:
        conn = await self._get_connection()
        cursor = await conn.execute("SELECT * FROM merchants WHERE id = ?", (merchant_id,))
        row = await cursor.fetchone()
        return self._row_to_merchant(row) if row else None

    async def get_active_merchant(self, merchant_id: str) -> Merchant:
        """Return a merchant that is not soft-deleted, or raise MerchantNotFound."""
        merchant = await self.get_merchant(merchant_id)
        if merchant is None or not merchant.is_active:
            raise MerchantNotFound(f"Unknown merchant: {merchant_id}")
        return merchant

    async def get_active_merchants(self) -> List[Merchant]:
        conn = await self._get_connection()
        cursor = await conn.execute(
            "SELECT * FROM merchants WHERE deleted_at IS NULL ORDER BY shop_domain"
        )
        rows = await cursor.fetchall()
        return [self._row_to_merchant(row) for row in rows]

    async def create_merchant(self, merchant: Merchant) -> Merchant:
        conn = await self._get_connection()
        await conn.execute(
            """
            INSERT INTO merchants (id, shop_domain, access_token, shop_name, shop_currency,
                                   timezone, created_at, updated_at, deleted_at)
            VALUES (?, ?, ?, ?, ?, ?, ?, ?, ?)
            """,
            (
                merchant.id,
                merchant.shop_domain,
                merchant.access_token,
                merchant.shop_name,
                merchant.shop_currency,
                merchant.timezone,
                to_db_time(merchant.created_at),
                to_db_time(merchant.updated_at),
                to_db_time(merchant.deleted_at)
            )
        )
        await conn.commit()
        return merchant

    async def soft_delete_merchant(self, merchant_id: str) -> bool:
        conn = await self._get_connection()
        now = to_db_time(utcnow())
        cursor = await conn.execute(
            "UPDATE merchants SET deleted_at = ?, updated_at = ? WHERE id = ? AND deleted_at IS NULL",
            (now, now, merchant_id)
        )
        await conn.commit()
        return cursor.rowcount > 0

    # ===== App Settings Operations =====

    async def get_app_settings(self, merchant_id: str) -> AppSettings:
        """Settings for a merchant; defaults when none were saved."""
        conn = await self._get_connection()
        cursor = await conn.execute(
            "SELECT * FROM app_settings WHERE merchant_id = ?", (merchant_id,)
        )
        row = await cursor.fetchone()
        return self._row_to_settings(row) if row else AppSettings(merchant_id=merchant_id)

    async def save_app_settings(self, app_settings: AppSettings) -> AppSettings:
        conn = await self._get_connection()
        await conn.execute(
            """
            INSERT INTO app_settings (merchant_id, revenue_basis, include_taxes, include_shipping,
                                      default_currency, multi_currency_mode, sync_lookback_days,
                                      auto_refresh_cron, products_sync_cron, orders_sync_cron)
            VALUES (?, ?, ?, ?, ?, ?, ?, ?, ?, ?)
            ON CONFLICT(merchant_id) DO UPDATE SET
                revenue_basis = excluded.revenue_basis,
                include_taxes = excluded.include_taxes,
                include_shipping = excluded.include_shipping,
                default_currency = excluded.default_currency,
                multi_currency_mode = excluded.multi_currency_mode,
                sync_lookback_days = excluded.sync_lookback_days,
                auto_refresh_cron = excluded.auto_refresh_cron,
                products_sync_cron = excluded.products_sync_cron,
                orders_sync_cron = excluded.orders_sync_cron
            """,
            (
                app_settings.merchant_id,
                app_settings.revenue_basis.value,
                int(app_settings.include_taxes),
                int(app_settings.include_shipping),
                app_settings.default_currency,
                app_settings.multi_currency_mode.value,
                app_settings.sync_lookback_days,
                app_settings.auto_refresh_cron,
                app_settings.products_sync_cron,
                app_settings.orders_sync_cron
            )
        )
        await conn.commit()
        return app_settings

    # ===== Sync Run Operations =====

    async def create_run(
        self,
        merchant_id: str,
        sync_kind: SyncKind,
        trigger: TriggerType,
        run_id: Optional[str] = None
    ) -> SyncRun:
        run = SyncRun(merchant_id=merchant_id, sync_kind=sync_kind, trigger=trigger)
        if run_id:
            run.id = run_id

        conn = await self._get_connection()
        await conn.execute(
            """
            INSERT INTO sync_runs (id, merchant_id, sync_kind, trigger, status, created_at,
                                   summary, published)
            VALUES (?, ?, ?, ?, ?, ?, ?, ?)
            """,
            (
                run.id, run.merchant_id, run.sync_kind.value, run.trigger.value,
                run.status.value, to_db_time(run.created_at), "{}", 0
            )
        )
        await conn.commit()
        return run

    async def create_run_if_idle(
        self,
        merchant_id: str,
        sync_kind: SyncKind,
        trigger: TriggerType,
        run_id: Optional[str] = None
    ) -> Optional[SyncRun]:
        """
        Create a queued run unless one is already queued or running for the key.

        The check and the insert are one statement, so separate processes
        sharing the database file cannot both start a run.

        Returns:
            The new run, or None if the key is busy
        """
        run = SyncRun(merchant_id=merchant_id, sync_kind=sync_kind, trigger=trigger)
        if run_id:
            run.id = run_id

        conn = await self._get_connection()
        cursor = await conn.execute(
            """
            INSERT INTO sync_runs (id, merchant_id, sync_kind, trigger, status, created_at,
                                   summary, published)
            SELECT ?, ?, ?, ?, ?, ?, ?, ?
            WHERE NOT EXISTS (
                SELECT 1 FROM sync_runs
                WHERE merchant_id = ? AND sync_kind = ? AND status IN ('queued', 'running')
            )
            """,
            (
                run.id, run.merchant_id, run.sync_kind.value, run.trigger.value,
                run.status.value, to_db_time(run.created_at), "{}", 0,
                run.merchant_id, run.sync_kind.value
            )
        )
        await conn.commit()
        return run if cursor.rowcount == 1 else None

    async def get_active_run(self, merchant_id: str, sync_kind: SyncKind) -> Optional[SyncRun]:
        """The queued or running run for the key, if any."""
        conn = await self._get_connection()
        cursor = await conn.execute(
            """
            SELECT * FROM sync_runs
            WHERE merchant_id = ? AND sync_kind = ? AND status IN ('queued', 'running')
            ORDER BY created_at LIMIT 1
            """,
            (merchant_id, sync_kind.value)
        )
        row = await cursor.fetchone()
        return self._row_to_run(row) if row else None

    async def get_run(self, run_id: str) -> Optional[SyncRun]:
        conn = await self._get_connection()
        cursor = await conn.execute("SELECT * FROM sync_runs WHERE id = ?", (run_id,))
        row = await cursor.fetchone()
        return self._row_to_run(row) if row else None

    async def get_runs(
        self,
        merchant_id: str,
        sync_kind: Optional[SyncKind] = None,
        limit: int = 50,
        offset: int = 0
    ) -> List[SyncRun]:
        conn = await self._get_connection()

        query = "SELECT * FROM sync_runs WHERE merchant_id = ?"
        params: list = [merchant_id]

        if sync_kind:
            query += " AND sync_kind = ?"
            params.append(sync_kind.value)

        query += " ORDER BY created_at DESC LIMIT ? OFFSET ?"
        params.extend([limit, offset])

        cursor = await conn.execute(query, params)
        rows = await cursor.fetchall()
        return [self._row_to_run(row) for row in rows]

    async def update_run(self, run_id: str, **kwargs) -> Optional[SyncRun]:
        if not kwargs:
            return await self.get_run(run_id)

        updates = []
        values = []

        for key, value in kwargs.items():
            updates.append(f"{key} = ?")
            if isinstance(value, datetime):
                values.append(to_db_time(value))
            elif isinstance(value, (RunStatus, SyncKind, TriggerType)):
                values.append(value.value)
            elif key == "summary":
                values.append(json.dumps(value, default=str))
            elif key == "published":
                values.append(int(value))
            else:
                values.append(value)

        values.append(run_id)

        conn = await self._get_connection()
        await conn.execute(f"UPDATE sync_runs SET {', '.join(updates)} WHERE id = ?", values)
        await conn.commit()

        return await self.get_run(run_id)

    async def get_last_watermark(self, merchant_id: str, sync_kind: SyncKind) -> Optional[datetime]:
        """Watermark recorded by the most recent run that advanced one."""
        conn = await self._get_connection()
        cursor = await conn.execute(
            """
            SELECT watermark FROM sync_runs
            WHERE merchant_id = ? AND sync_kind = ? AND watermark IS NOT NULL
              AND status IN ('success', 'partial')
            ORDER BY watermark DESC LIMIT 1
            """,
            (merchant_id, sync_kind.value)
        )
        row = await cursor.fetchone()
        return from_db_time(row["watermark"]) if row else None

    async def get_unpublished_runs(self, limit: int = 100) -> List[SyncRun]:
        """Completed runs whose outcome event has not reached the broker yet."""
        conn = await self._get_connection()
        cursor = await conn.execute(
            """
            SELECT * FROM sync_runs
            WHERE published = 0 AND status IN ('success', 'partial')
            ORDER BY finished_at LIMIT ?
            """,
            (limit,)
        )
        rows = await cursor.fetchall()
        return [self._row_to_run(row) for row in rows]

    async def fail_interrupted_runs(self) -> int:
        """Mark runs left queued or running by a previous process as failed."""
        conn = await self._get_connection()
        cursor = await conn.execute(
            """
            UPDATE sync_runs SET status = 'failed', finished_at = ?,
                error_message = 'Interrupted by process restart'
            WHERE status IN ('queued', 'running')
            """,
            (to_db_time(utcnow()),)
        )
        await conn.commit()
        return cursor.rowcount
