"""
Append-only inventory cost history with point-in-time resolution.
"""

import bisect
import logging
import sqlite3
from datetime import datetime, timezone
from decimal import Decimal
from typing import Dict, Iterable, List, Optional

from .models import CostEntry, CostSource, utcnow
from .sqlite import SQLiteDatabase, to_db_time, from_db_time

logger = logging.getLogger(__name__)


class DuplicateCostEntryError(Exception):
    """An entry with the same (item, effective_at) already exists."""

    def __init__(self, item_id: str, effective_at: datetime):
        super().__init__(
            f"Cost entry for inventory item {item_id} at {effective_at.isoformat()} already exists"
        )
        self.item_id = item_id
        self.effective_at = effective_at


def _aware(value: datetime) -> datetime:
    if value.tzinfo is None:
        return value.replace(tzinfo=timezone.utc)
    return value


class CostTimeline:
    """
    In-memory cost history of one inventory item.

    Entries are kept sorted by effective_at so resolution is a bisect,
    whatever order they were inserted in.
    """

    def __init__(self, entries: Iterable[CostEntry]):
        self._entries = sorted(entries, key=lambda e: _aware(e.effective_at))
        self._keys = [_aware(e.effective_at) for e in self._entries]

    def __len__(self) -> int:
        return len(self._entries)

    def resolve(self, reference_time: datetime) -> Optional[CostEntry]:
        """Entry with the greatest effective_at <= reference_time, or None."""
        index = bisect.bisect_right(self._keys, _aware(reference_time))
        if index == 0:
            return None
        return self._entries[index - 1]


class CostBasisStore:
    """Cost history for one merchant. Entries are never updated or deleted."""

    # Stays well under SQLite's bound-parameter limit.
    IN_CHUNK = 500

    def __init__(self, db: SQLiteDatabase, merchant_id: str):
        self._db = db
        self.merchant_id = merchant_id

    def _row_to_entry(self, row) -> CostEntry:
        return CostEntry(
            merchant_id=row["merchant_id"],
            inventory_item_external_id=row["inventory_item_external_id"],
            cost=Decimal(row["cost"]),
            currency=row["currency"],
            effective_at=from_db_time(row["effective_at"]),
            source=CostSource(row["source"]),
            created_at=from_db_time(row["created_at"])
        )

    async def append(
        self,
        item_id: str,
        cost: Decimal,
        currency: str,
        effective_at: datetime,
        source: CostSource = CostSource.MANUAL
    ) -> CostEntry:
        """
        Append a cost entry.

        Corrections are expressed as new entries with a later effective_at.

        Raises:
            DuplicateCostEntryError: If (item_id, effective_at) is already taken.
        """
        entry = CostEntry(
            merchant_id=self.merchant_id,
            inventory_item_external_id=item_id,
            cost=cost,
            currency=currency,
            effective_at=_aware(effective_at),
            source=source
        )

        conn = await self._db._get_connection()
        try:
            await conn.execute(
                """
                INSERT INTO inventory_cost_history (merchant_id, inventory_item_external_id, cost,
                                                    currency, effective_at, source, created_at)
                VALUES (?, ?, ?, ?, ?, ?, ?)
                """,
                (
                    entry.merchant_id, item_id, str(cost), currency,
                    to_db_time(entry.effective_at), source.value, to_db_time(utcnow())
                )
            )
        except sqlite3.IntegrityError as e:
            raise DuplicateCostEntryError(item_id, entry.effective_at) from e

        await conn.commit()
        logger.debug(f"Appended cost {cost} {currency} for item {item_id} at {entry.effective_at}")
        return entry

    async def resolve(self, item_id: str, reference_time: datetime) -> Optional[CostEntry]:
        """
        Point-in-time cost of an inventory item.

        Args:
            item_id: Inventory item external id
            reference_time: Instant the cost must be in effect at

        Returns:
            The entry with the greatest effective_at <= reference_time,
            or None when no cost is known yet.
        """
        conn = await self._db._get_connection()
        cursor = await conn.execute(
            """
            SELECT * FROM inventory_cost_history
            WHERE merchant_id = ? AND inventory_item_external_id = ? AND effective_at <= ?
            ORDER BY effective_at DESC LIMIT 1
            """,
            (self.merchant_id, item_id, to_db_time(reference_time))
        )
        row = await cursor.fetchone()
        return self._row_to_entry(row) if row else None

    async def history(self, item_id: str) -> List[CostEntry]:
        conn = await self._db._get_connection()
        cursor = await conn.execute(
            """
            SELECT * FROM inventory_cost_history
            WHERE merchant_id = ? AND inventory_item_external_id = ?
            ORDER BY effective_at
            """,
            (self.merchant_id, item_id)
        )
        return [self._row_to_entry(row) for row in await cursor.fetchall()]

    async def timelines(self, item_ids: Iterable[str]) -> Dict[str, CostTimeline]:
        """Load the cost history of several items at once."""
        conn = await self._db._get_connection()
        wanted = sorted(set(item_ids))
        grouped: Dict[str, List[CostEntry]] = {item_id: [] for item_id in wanted}

        for i in range(0, len(wanted), self.IN_CHUNK):
            chunk = wanted[i:i + self.IN_CHUNK]
            placeholders = ", ".join("?" for _ in chunk)
            cursor = await conn.execute(
                f"SELECT * FROM inventory_cost_history WHERE merchant_id = ? "
                f"AND inventory_item_external_id IN ({placeholders})",
                [self.merchant_id, *chunk]
            )
            for row in await cursor.fetchall():
                grouped[row["inventory_item_external_id"]].append(self._row_to_entry(row))

        return {item_id: CostTimeline(entries) for item_id, entries in grouped.items()}
