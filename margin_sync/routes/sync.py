"""
Sync trigger and run status API routes.
"""

from datetime import datetime
from typing import Any, Dict, List, Optional

from fastapi import APIRouter, HTTPException, Query, Response
from pydantic import BaseModel, Field

from ..db import RunStatus, SyncKind, SyncRun, TriggerType
from ..dependencies import get_db, get_scheduler
from ..processor import TriggerStatus

router = APIRouter(prefix="/api/v1/sync")

# Route names -> sync kinds
KINDS = {
    "products": SyncKind.CATALOG,
    "orders": SyncKind.ORDERS,
}

STATUS_CODES = {
    TriggerStatus.ACCEPTED: 202,
    TriggerStatus.COALESCED: 200,
    TriggerStatus.REJECTED: 404,
}


class SyncRequest(BaseModel):
    merchant_id: str
    limit: Optional[int] = Field(default=None, gt=0)


class SyncResponse(BaseModel):
    status: TriggerStatus
    run_id: Optional[str] = None
    detail: Optional[str] = None


class CancelRequest(BaseModel):
    merchant_id: str


class CancelResponse(BaseModel):
    cancelled: bool
    run_id: Optional[str] = None


class RunResponse(BaseModel):
    id: str
    merchant_id: str
    sync_kind: SyncKind
    trigger: TriggerType
    status: RunStatus
    created_at: datetime
    started_at: Optional[datetime] = None
    finished_at: Optional[datetime] = None
    watermark: Optional[datetime] = None
    summary: Dict[str, Any] = {}
    error_message: Optional[str] = None
    published: bool

    @classmethod
    def from_run(cls, run: SyncRun) -> "RunResponse":
        return cls(**run.model_dump())


def _kind(name: str) -> SyncKind:
    kind = KINDS.get(name)
    if kind is None:
        raise HTTPException(status_code=404, detail=f"Unknown sync kind: {name}")
    return kind


async def _trigger(kind: SyncKind, request: SyncRequest, response: Response) -> SyncResponse:
    result = await get_scheduler().trigger(
        request.merchant_id, kind, TriggerType.ON_DEMAND, limit=request.limit
    )
    response.status_code = STATUS_CODES[result.status]
    return SyncResponse(status=result.status, run_id=result.run_id, detail=result.reason)


@router.post("/products", response_model=SyncResponse, status_code=202)
async def sync_products(request: SyncRequest, response: Response):
    """Trigger a catalog sync. A limit makes it an incremental pass."""
    return await _trigger(SyncKind.CATALOG, request, response)


@router.post("/orders", response_model=SyncResponse, status_code=202)
async def sync_orders(request: SyncRequest, response: Response):
    """Trigger an order sync from the last watermark."""
    return await _trigger(SyncKind.ORDERS, request, response)


@router.post("/{kind}/cancel", response_model=CancelResponse)
async def cancel_sync(kind: str, request: CancelRequest):
    """Ask the active run to stop at its next page boundary."""
    run_id = get_scheduler().cancel(request.merchant_id, _kind(kind))
    return CancelResponse(cancelled=run_id is not None, run_id=run_id)


@router.get("/runs/{run_id}", response_model=RunResponse)
async def get_run(run_id: str):
    db = get_db()
    run = await db.get_run(run_id)
    if not run:
        raise HTTPException(status_code=404, detail="Run not found")
    return RunResponse.from_run(run)


@router.get("/runs", response_model=List[RunResponse])
async def list_runs(
    merchant_id: str,
    kind: Optional[str] = None,
    limit: int = Query(default=50, ge=1, le=500),
    offset: int = Query(default=0, ge=0),
):
    """Recent runs of a merchant, newest first."""
    db = get_db()
    sync_kind = _kind(kind) if kind else None
    runs = await db.get_runs(merchant_id, sync_kind, limit=limit, offset=offset)
    return [RunResponse.from_run(run) for run in runs]
