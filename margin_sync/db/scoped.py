"""
Merchant-scoped data access.

MerchantScope binds one merchant id into every statement it issues, so a
reconciliation run cannot read or write another merchant's rows. Callers
never pass a merchant id to these methods.
"""

import aiosqlite
from datetime import datetime
from typing import Any, Dict, Iterable, List, Optional, Set, Tuple

from .cost_basis import CostBasisStore
from .models import (
    Product, Variant, InventoryItem, Order, OrderLine, OrderMargin, utcnow
)
from .sqlite import (
    SQLiteDatabase, to_db_time, from_db_time, to_db_decimal, from_db_decimal
)


CREATED = "created"
UPDATED = "updated"
UNCHANGED = "unchanged"

CATALOG_TABLES = ("products", "variants", "inventory_items")

# Stays well under SQLite's bound-parameter limit.
_IN_CHUNK = 500


class MerchantScope:
    """All catalog, order, cost and margin access for one merchant."""

    def __init__(self, db: SQLiteDatabase, merchant_id: str):
        self._db = db
        self.merchant_id = merchant_id
        self.costs = CostBasisStore(db, merchant_id)

    async def _conn(self) -> aiosqlite.Connection:
        return await self._db._get_connection()

    async def commit(self) -> None:
        conn = await self._conn()
        await conn.commit()

    # ===== Generic upsert =====

    async def _upsert(
        self,
        table: str,
        external_id: str,
        fields: Dict[str, Any],
        now: Optional[datetime] = None
    ) -> str:
        """
        Insert or update one catalog row keyed by (merchant_id, external_id).

        Mutable fields follow last-write-wins; identity columns and
        created_at are never rewritten. A soft-deleted row that shows up
        again is restored.

        Returns:
            "created", "updated" or "unchanged"
        """
        conn = await self._conn()
        stamp = to_db_time(now or utcnow())

        cursor = await conn.execute(
            f"SELECT * FROM {table} WHERE merchant_id = ? AND external_id = ?",
            (self.merchant_id, external_id)
        )
        existing = await cursor.fetchone()

        if existing is None:
            columns = ["merchant_id", "external_id", *fields.keys(), "created_at", "updated_at"]
            values = [self.merchant_id, external_id, *fields.values(), stamp, stamp]
            placeholders = ", ".join("?" for _ in columns)
            await conn.execute(
                f"INSERT INTO {table} ({', '.join(columns)}) VALUES ({placeholders})",
                values
            )
            return CREATED

        changed = {k: v for k, v in fields.items() if existing[k] != v}
        if not changed and existing["deleted_at"] is None:
            return UNCHANGED

        assignments = [f"{k} = ?" for k in changed]
        assignments += ["deleted_at = NULL", "updated_at = ?"]
        await conn.execute(
            f"UPDATE {table} SET {', '.join(assignments)} "
            f"WHERE merchant_id = ? AND external_id = ?",
            [*changed.values(), stamp, self.merchant_id, external_id]
        )
        return UPDATED

    # ===== Catalog =====

    async def upsert_product(self, product: Product) -> str:
        return await self._upsert("products", product.external_id, {
            "title": product.title,
            "product_type": product.product_type,
            "status": product.status,
        })

    async def upsert_variant(self, variant: Variant) -> str:
        return await self._upsert("variants", variant.external_id, {
            "product_external_id": variant.product_external_id,
            "inventory_item_external_id": variant.inventory_item_external_id,
            "sku": variant.sku,
            "title": variant.title,
            "barcode": variant.barcode,
            "price": to_db_decimal(variant.price),
            "weight": to_db_decimal(variant.weight),
            "weight_unit": variant.weight_unit,
        })

    async def upsert_inventory_item(self, item: InventoryItem) -> str:
        return await self._upsert("inventory_items", item.external_id, {
            "variant_external_id": item.variant_external_id,
            "sku": item.sku,
            "tracked": None if item.tracked is None else int(item.tracked),
        })

    async def soft_delete_missing(
        self,
        table: str,
        seen_ids: Set[str],
        now: Optional[datetime] = None
    ) -> int:
        """Soft-delete live rows of a catalog table not in seen_ids."""
        if table not in CATALOG_TABLES:
            raise ValueError(f"Not a catalog table: {table}")

        conn = await self._conn()
        cursor = await conn.execute(
            f"SELECT external_id FROM {table} WHERE merchant_id = ? AND deleted_at IS NULL",
            (self.merchant_id,)
        )
        live = {row["external_id"] for row in await cursor.fetchall()}
        missing = sorted(live - seen_ids)

        stamp = to_db_time(now or utcnow())
        for external_id in missing:
            await conn.execute(
                f"UPDATE {table} SET deleted_at = ?, updated_at = ? "
                f"WHERE merchant_id = ? AND external_id = ?",
                (stamp, stamp, self.merchant_id, external_id)
            )
        await conn.commit()
        return len(missing)

    async def live_descendants(
        self,
        product_ids: Iterable[str] = (),
        variant_ids: Iterable[str] = ()
    ) -> Tuple[Set[str], Set[str]]:
        """
        Live variant and inventory item ids under the given products and variants.

        Returns:
            Tuple of (variant ids, inventory item ids)
        """
        conn = await self._conn()
        variants = set(variant_ids)

        products = list(product_ids)
        if products:
            marks = ",".join("?" * len(products))
            cursor = await conn.execute(
                f"""
                SELECT external_id FROM variants
                WHERE merchant_id = ? AND deleted_at IS NULL
                  AND product_external_id IN ({marks})
                """,
                [self.merchant_id, *products]
            )
            variants.update(row["external_id"] for row in await cursor.fetchall())

        items: Set[str] = set()
        if variants:
            ids = sorted(variants)
            marks = ",".join("?" * len(ids))
            cursor = await conn.execute(
                f"""
                SELECT inventory_item_external_id AS item_id FROM variants
                WHERE merchant_id = ? AND external_id IN ({marks})
                  AND inventory_item_external_id IS NOT NULL
                UNION
                SELECT external_id AS item_id FROM inventory_items
                WHERE merchant_id = ? AND deleted_at IS NULL
                  AND variant_external_id IN ({marks})
                """,
                [self.merchant_id, *ids, self.merchant_id, *ids]
            )
            items.update(row["item_id"] for row in await cursor.fetchall())

        return variants, items

    async def get_product(self, external_id: str) -> Optional[Product]:
        conn = await self._conn()
        cursor = await conn.execute(
            "SELECT * FROM products WHERE merchant_id = ? AND external_id = ?",
            (self.merchant_id, external_id)
        )
        row = await cursor.fetchone()
        if row is None:
            return None
        return Product(
            merchant_id=row["merchant_id"],
            external_id=row["external_id"],
            title=row["title"],
            product_type=row["product_type"],
            status=row["status"],
            created_at=from_db_time(row["created_at"]),
            updated_at=from_db_time(row["updated_at"]),
            deleted_at=from_db_time(row["deleted_at"])
        )

    async def get_variant(self, external_id: str) -> Optional[Variant]:
        conn = await self._conn()
        cursor = await conn.execute(
            "SELECT * FROM variants WHERE merchant_id = ? AND external_id = ?",
            (self.merchant_id, external_id)
        )
        row = await cursor.fetchone()
        if row is None:
            return None
        return Variant(
            merchant_id=row["merchant_id"],
            external_id=row["external_id"],
            product_external_id=row["product_external_id"],
            inventory_item_external_id=row["inventory_item_external_id"],
            sku=row["sku"],
            title=row["title"],
            barcode=row["barcode"],
            price=from_db_decimal(row["price"]),
            weight=from_db_decimal(row["weight"]),
            weight_unit=row["weight_unit"],
            created_at=from_db_time(row["created_at"]),
            updated_at=from_db_time(row["updated_at"]),
            deleted_at=from_db_time(row["deleted_at"])
        )

    async def count_live(self, table: str) -> int:
        if table not in CATALOG_TABLES:
            raise ValueError(f"Not a catalog table: {table}")
        conn = await self._conn()
        cursor = await conn.execute(
            f"SELECT COUNT(*) AS n FROM {table} WHERE merchant_id = ? AND deleted_at IS NULL",
            (self.merchant_id,)
        )
        row = await cursor.fetchone()
        return row["n"]

    async def variant_inventory_map(self) -> Dict[str, str]:
        """
        Map variant id -> inventory item id, soft-deleted rows included.

        Historical orders keep resolving cost after their product leaves
        the catalog.
        """
        conn = await self._conn()
        cursor = await conn.execute(
            """
            SELECT external_id, inventory_item_external_id FROM variants
            WHERE merchant_id = ? AND inventory_item_external_id IS NOT NULL
            """,
            (self.merchant_id,)
        )
        mapping = {row["external_id"]: row["inventory_item_external_id"]
                   for row in await cursor.fetchall()}

        # Inventory items also point back at their variant.
        cursor = await conn.execute(
            """
            SELECT external_id, variant_external_id FROM inventory_items
            WHERE merchant_id = ? AND variant_external_id IS NOT NULL
            """,
            (self.merchant_id,)
        )
        for row in await cursor.fetchall():
            mapping.setdefault(row["variant_external_id"], row["external_id"])
        return mapping

    # ===== Orders =====

    async def upsert_order(self, order: Order) -> str:
        """Upsert an order and replace its lines."""
        result = await self._upsert_order_row(order)

        conn = await self._conn()
        await conn.execute(
            "DELETE FROM order_lines WHERE merchant_id = ? AND order_external_id = ?",
            (self.merchant_id, order.external_id)
        )
        for line in order.lines:
            await conn.execute(
                """
                INSERT INTO order_lines (merchant_id, order_external_id, line_external_id,
                                         variant_external_id, product_external_id, sku, title,
                                         quantity, price)
                VALUES (?, ?, ?, ?, ?, ?, ?, ?, ?)
                ON CONFLICT(merchant_id, order_external_id, line_external_id) DO UPDATE SET
                    variant_external_id = excluded.variant_external_id,
                    product_external_id = excluded.product_external_id,
                    sku = excluded.sku,
                    title = excluded.title,
                    quantity = excluded.quantity,
                    price = excluded.price
                """,
                (
                    self.merchant_id, order.external_id, line.line_external_id,
                    line.variant_external_id, line.product_external_id, line.sku,
                    line.title, line.quantity, to_db_decimal(line.price)
                )
            )
        return result

    async def _upsert_order_row(self, order: Order) -> str:
        conn = await self._conn()
        fields = {
            "name": order.name,
            "currency": order.currency,
            "subtotal_price": to_db_decimal(order.subtotal_price),
            "total_price": to_db_decimal(order.total_price),
            "total_discounts": to_db_decimal(order.total_discounts),
            "total_shipping": to_db_decimal(order.total_shipping),
            "total_tax": to_db_decimal(order.total_tax),
            "financial_status": order.financial_status,
            "processed_at": to_db_time(order.processed_at),
            "updated_at": to_db_time(order.updated_at),
            "cancelled_at": to_db_time(order.cancelled_at),
        }

        cursor = await conn.execute(
            "SELECT * FROM orders WHERE merchant_id = ? AND external_id = ?",
            (self.merchant_id, order.external_id)
        )
        existing = await cursor.fetchone()

        if existing is None:
            columns = ["merchant_id", "external_id", *fields.keys()]
            placeholders = ", ".join("?" for _ in columns)
            await conn.execute(
                f"INSERT INTO orders ({', '.join(columns)}) VALUES ({placeholders})",
                [self.merchant_id, order.external_id, *fields.values()]
            )
            return CREATED

        changed = {k: v for k, v in fields.items() if existing[k] != v}
        if not changed:
            return UNCHANGED

        assignments = ", ".join(f"{k} = ?" for k in changed)
        await conn.execute(
            f"UPDATE orders SET {assignments} WHERE merchant_id = ? AND external_id = ?",
            [*changed.values(), self.merchant_id, order.external_id]
        )
        return UPDATED

    def _row_to_order(self, row: aiosqlite.Row, lines: List[OrderLine]) -> Order:
        return Order(
            merchant_id=row["merchant_id"],
            external_id=row["external_id"],
            name=row["name"],
            currency=row["currency"],
            subtotal_price=from_db_decimal(row["subtotal_price"]),
            total_price=from_db_decimal(row["total_price"]),
            total_discounts=from_db_decimal(row["total_discounts"]),
            total_shipping=from_db_decimal(row["total_shipping"]),
            total_tax=from_db_decimal(row["total_tax"]),
            financial_status=row["financial_status"],
            processed_at=from_db_time(row["processed_at"]),
            updated_at=from_db_time(row["updated_at"]),
            cancelled_at=from_db_time(row["cancelled_at"]),
            lines=lines
        )

    async def _lines_for(self, order_ids: Iterable[str]) -> Dict[str, List[OrderLine]]:
        conn = await self._conn()
        wanted = sorted(set(order_ids))
        lines: Dict[str, List[OrderLine]] = {}

        for i in range(0, len(wanted), _IN_CHUNK):
            chunk = wanted[i:i + _IN_CHUNK]
            placeholders = ", ".join("?" for _ in chunk)
            cursor = await conn.execute(
                f"SELECT * FROM order_lines WHERE merchant_id = ? "
                f"AND order_external_id IN ({placeholders}) "
                f"ORDER BY order_external_id, line_external_id",
                [self.merchant_id, *chunk]
            )
            for row in await cursor.fetchall():
                lines.setdefault(row["order_external_id"], []).append(OrderLine(
                    line_external_id=row["line_external_id"],
                    variant_external_id=row["variant_external_id"],
                    product_external_id=row["product_external_id"],
                    sku=row["sku"],
                    title=row["title"],
                    quantity=row["quantity"],
                    price=from_db_decimal(row["price"])
                ))
        return lines

    async def get_order(self, external_id: str) -> Optional[Order]:
        conn = await self._conn()
        cursor = await conn.execute(
            "SELECT * FROM orders WHERE merchant_id = ? AND external_id = ?",
            (self.merchant_id, external_id)
        )
        row = await cursor.fetchone()
        if row is None:
            return None
        lines = await self._lines_for([external_id])
        return self._row_to_order(row, lines.get(external_id, []))

    async def list_orders_for_margin(
        self,
        start: Optional[datetime] = None,
        end: Optional[datetime] = None
    ) -> List[Order]:
        """Non-cancelled orders processed within [start, end]."""
        conn = await self._conn()

        query = ("SELECT * FROM orders WHERE merchant_id = ? "
                 "AND cancelled_at IS NULL AND processed_at IS NOT NULL")
        params: list = [self.merchant_id]

        if start:
            query += " AND processed_at >= ?"
            params.append(to_db_time(start))
        if end:
            query += " AND processed_at <= ?"
            params.append(to_db_time(end))

        query += " ORDER BY processed_at"

        cursor = await conn.execute(query, params)
        rows = await cursor.fetchall()
        lines = await self._lines_for(row["external_id"] for row in rows)
        return [self._row_to_order(row, lines.get(row["external_id"], [])) for row in rows]

    # ===== Margins =====

    async def save_order_margins(self, margins: List[OrderMargin]) -> None:
        conn = await self._conn()
        for m in margins:
            await conn.execute(
                """
                INSERT INTO order_margins (merchant_id, order_external_id, processed_at, currency,
                                           revenue, cost, margin, margin_ratio, status, computed_at)
                VALUES (?, ?, ?, ?, ?, ?, ?, ?, ?, ?)
                ON CONFLICT(merchant_id, order_external_id) DO UPDATE SET
                    processed_at = excluded.processed_at,
                    currency = excluded.currency,
                    revenue = excluded.revenue,
                    cost = excluded.cost,
                    margin = excluded.margin,
                    margin_ratio = excluded.margin_ratio,
                    status = excluded.status,
                    computed_at = excluded.computed_at
                """,
                (
                    self.merchant_id, m.order_external_id, to_db_time(m.processed_at),
                    m.currency, to_db_decimal(m.revenue), to_db_decimal(m.cost),
                    to_db_decimal(m.margin), to_db_decimal(m.margin_ratio), m.status,
                    to_db_time(m.computed_at)
                )
            )
        await conn.commit()

    async def purge_cancelled_margins(self) -> int:
        """Drop margin records of orders that have since been cancelled."""
        conn = await self._conn()
        cursor = await conn.execute(
            """
            DELETE FROM order_margins
            WHERE merchant_id = ? AND order_external_id IN (
                SELECT external_id FROM orders
                WHERE merchant_id = ? AND cancelled_at IS NOT NULL
            )
            """,
            (self.merchant_id, self.merchant_id)
        )
        await conn.commit()
        return cursor.rowcount

    async def get_order_margins(
        self,
        start: Optional[datetime] = None,
        end: Optional[datetime] = None
    ) -> List[OrderMargin]:
        conn = await self._conn()

        query = "SELECT * FROM order_margins WHERE merchant_id = ?"
        params: list = [self.merchant_id]
        if start:
            query += " AND processed_at >= ?"
            params.append(to_db_time(start))
        if end:
            query += " AND processed_at <= ?"
            params.append(to_db_time(end))
        query += " ORDER BY processed_at"

        cursor = await conn.execute(query, params)
        return [
            OrderMargin(
                merchant_id=row["merchant_id"],
                order_external_id=row["order_external_id"],
                processed_at=from_db_time(row["processed_at"]),
                currency=row["currency"],
                revenue=from_db_decimal(row["revenue"]),
                cost=from_db_decimal(row["cost"]),
                margin=from_db_decimal(row["margin"]),
                margin_ratio=from_db_decimal(row["margin_ratio"]),
                status=row["status"],
                computed_at=from_db_time(row["computed_at"])
            )
            for row in await cursor.fetchall()
        ]
