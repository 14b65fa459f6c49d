"""
Structured results handed from the reconcilers back to the runner.
"""

from dataclasses import dataclass, field
from datetime import datetime
from typing import Any, Dict, List, Optional

from ..db import SyncKind, CREATED, UPDATED, UNCHANGED


class RunCancelled(Exception):
    """The run's cancel signal was seen at a page boundary."""
    pass


@dataclass
class EntityCounts:
    created: int = 0
    updated: int = 0
    unchanged: int = 0
    soft_deleted: int = 0

    def record(self, result: str) -> None:
        if result == CREATED:
            self.created += 1
        elif result == UPDATED:
            self.updated += 1
        elif result == UNCHANGED:
            self.unchanged += 1
        else:
            raise ValueError(f"Unknown upsert result: {result}")

    def as_dict(self) -> Dict[str, int]:
        return {
            "created": self.created,
            "updated": self.updated,
            "unchanged": self.unchanged,
            "soft_deleted": self.soft_deleted,
        }


@dataclass
class RecordException:
    """A unit that was skipped (data) or flagged (policy) while the run went on."""

    entity: str
    external_id: Optional[str]
    kind: str  # "data" or "policy"
    message: str

    def as_dict(self) -> Dict[str, Any]:
        return {
            "entity": self.entity,
            "external_id": self.external_id,
            "kind": self.kind,
            "message": self.message,
        }


@dataclass
class ReconcileOutcome:
    """
    What a reconciler did, without judging it.

    The runner turns this into a run status and decides whether the
    watermark moves.
    """

    kind: SyncKind
    counts: Dict[str, EntityCounts] = field(default_factory=dict)
    exceptions: List[RecordException] = field(default_factory=list)
    pages_completed: int = 0
    # Boundary of the last fully committed page (orders only)
    watermark: Optional[datetime] = None
    full_pass: bool = False
    cancelled: bool = False
    error: Optional[str] = None

    def counts_for(self, entity: str) -> EntityCounts:
        if entity not in self.counts:
            self.counts[entity] = EntityCounts()
        return self.counts[entity]

    def add_exception(
        self,
        entity: str,
        external_id: Any,
        message: str,
        kind: str = "data"
    ) -> None:
        self.exceptions.append(RecordException(
            entity=entity,
            external_id=str(external_id) if external_id is not None else None,
            kind=kind,
            message=message,
        ))

    @property
    def failed(self) -> bool:
        return self.cancelled or self.error is not None

    def summary(self) -> Dict[str, Any]:
        return {
            "counts": {name: c.as_dict() for name, c in self.counts.items()},
            "exceptions": [e.as_dict() for e in self.exceptions],
            "pages_completed": self.pages_completed,
            "full_pass": self.full_pass,
            "cancelled": self.cancelled,
        }
