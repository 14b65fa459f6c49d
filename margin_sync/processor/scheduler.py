"""
Sync scheduler.

Cron ticks and on-demand triggers go through the same intake. At most one
run per (merchant, kind) is queued or executing at any time; triggers that
arrive meanwhile are coalesced onto it. A fixed pool of asyncio workers
executes the queue.
"""

import asyncio
import logging
from dataclasses import dataclass, field
from datetime import datetime
from enum import Enum
from typing import Dict, List, Optional, Tuple

from ..db import SyncKind, TriggerType, generate_uuid, utcnow
from .cron import CronPlanner
from .runner import RunContext, execute_run, mark_run_failed

logger = logging.getLogger(__name__)

RunKey = Tuple[str, SyncKind]


class TriggerStatus(str, Enum):
    ACCEPTED = "accepted"
    COALESCED = "coalesced"
    REJECTED = "rejected"


@dataclass
class TriggerResult:
    status: TriggerStatus
    run_id: Optional[str] = None
    reason: Optional[str] = None


@dataclass
class RunHandle:
    """The registry entry of an active run."""
    run_id: str
    merchant_id: str
    kind: SyncKind
    trigger: TriggerType
    limit: Optional[int] = None
    cancel_event: asyncio.Event = field(default_factory=asyncio.Event)

    @property
    def key(self) -> RunKey:
        return (self.merchant_id, self.kind)


class SyncScheduler:
    def __init__(
        self,
        ctx: RunContext,
        worker_count: int = 4,
        run_timeout: float = 1800.0,
        cron_poll_seconds: float = 30.0,
        publish_sweep_seconds: float = 300.0,
        cron_enabled: bool = True,
    ):
        self.ctx = ctx
        self.worker_count = worker_count
        self.run_timeout = run_timeout
        self.cron_poll_seconds = cron_poll_seconds
        self.publish_sweep_seconds = publish_sweep_seconds
        self.cron_enabled = cron_enabled

        self.planner = CronPlanner()
        self._active: Dict[RunKey, RunHandle] = {}
        self._queue: asyncio.Queue = asyncio.Queue()
        self._tasks: List[asyncio.Task] = []

    # ===== Intake =====

    async def trigger(
        self,
        merchant_id: str,
        kind: SyncKind,
        trigger: TriggerType = TriggerType.ON_DEMAND,
        limit: Optional[int] = None,
    ) -> TriggerResult:
        """
        Request a run. Returns without waiting for it.

        Returns:
            accepted with the new run id, coalesced with the active run id,
            or rejected for unknown and deleted merchants
        """
        merchant = await self.ctx.db.get_merchant(merchant_id)
        if merchant is None or not merchant.is_active:
            logger.warning(f"Rejected {kind.value} trigger for unknown merchant {merchant_id}")
            return TriggerResult(TriggerStatus.REJECTED, reason=f"Merchant not found: {merchant_id}")

        key = (merchant_id, kind)
        active = self._active.get(key)
        if active is not None:
            logger.info(
                f"Coalesced {trigger.value} {kind.value} trigger for merchant {merchant_id} "
                f"into run {active.run_id}"
            )
            return TriggerResult(TriggerStatus.COALESCED, run_id=active.run_id)

        # Registered before awaiting the insert so concurrent triggers coalesce
        handle = RunHandle(
            run_id=generate_uuid(),
            merchant_id=merchant_id,
            kind=kind,
            trigger=trigger,
            limit=limit,
        )
        self._active[key] = handle
        try:
            run = await self.ctx.db.create_run_if_idle(merchant_id, kind, trigger, run_id=handle.run_id)
        except Exception:
            self._active.pop(key, None)
            raise

        if run is None:
            # Started by another process, e.g. scripts/run_sync.py
            self._active.pop(key, None)
            other = await self.ctx.db.get_active_run(merchant_id, kind)
            logger.info(
                f"Coalesced {trigger.value} {kind.value} trigger for merchant {merchant_id} "
                f"into run {other.id if other else 'unknown'} of another process"
            )
            return TriggerResult(TriggerStatus.COALESCED, run_id=other.id if other else None)

        self._queue.put_nowait(handle)
        logger.info(f"Queued {kind.value} run {handle.run_id} for merchant {merchant_id}")
        return TriggerResult(TriggerStatus.ACCEPTED, run_id=handle.run_id)

    def active_run(self, merchant_id: str, kind: SyncKind) -> Optional[RunHandle]:
        return self._active.get((merchant_id, kind))

    def cancel(self, merchant_id: str, kind: SyncKind) -> Optional[str]:
        """
        Signal the active run for the key to stop at its next page boundary.

        Returns:
            The run id that was signalled, or None if nothing is active
        """
        handle = self._active.get((merchant_id, kind))
        if handle is None:
            return None
        handle.cancel_event.set()
        logger.info(f"Cancellation requested for run {handle.run_id}")
        return handle.run_id

    # ===== Execution =====

    async def _execute(self, handle: RunHandle) -> None:
        try:
            if handle.cancel_event.is_set():
                await mark_run_failed(self.ctx.db, handle.run_id, "Run cancelled")
                return
            await asyncio.wait_for(
                execute_run(
                    self.ctx,
                    handle.run_id,
                    handle.merchant_id,
                    handle.kind,
                    limit=handle.limit,
                    cancel_event=handle.cancel_event,
                ),
                timeout=self.run_timeout,
            )
        except asyncio.TimeoutError:
            logger.error(f"Run {handle.run_id} timed out after {self.run_timeout}s")
            await mark_run_failed(self.ctx.db, handle.run_id, "Run timed out")
        except Exception as e:
            logger.exception(f"Run {handle.run_id} crashed")
            await mark_run_failed(self.ctx.db, handle.run_id, f"Unexpected error: {e}")
        finally:
            if self._active.get(handle.key) is handle:
                del self._active[handle.key]

    async def _worker(self, index: int) -> None:
        logger.debug(f"Sync worker {index} started")
        while True:
            handle = await self._queue.get()
            try:
                await self._execute(handle)
            finally:
                self._queue.task_done()

    async def join(self) -> None:
        """Wait until every queued run has finished."""
        await self._queue.join()

    # ===== Cron =====

    async def load_schedules(self, now: Optional[datetime] = None) -> None:
        """Reload cron expressions of all active merchants into the planner."""
        schedules = {}
        for merchant in await self.ctx.db.get_active_merchants():
            app_settings = await self.ctx.db.get_app_settings(merchant.id)
            for kind in SyncKind:
                expression = app_settings.cron_for(kind)
                if expression:
                    schedules[(merchant.id, kind)] = expression
        self.planner.sync(schedules, now or utcnow())

    async def cron_tick(self, now: Optional[datetime] = None) -> List[TriggerResult]:
        """Trigger every schedule that is due at now."""
        now = now or utcnow()
        await self.load_schedules(now)
        results = []
        for merchant_id, kind in self.planner.due(now):
            results.append(await self.trigger(merchant_id, kind, TriggerType.CRON))
        return results

    async def _cron_loop(self) -> None:
        while True:
            try:
                await self.cron_tick()
            except Exception:
                logger.exception("Cron tick failed")
            delay = self.planner.seconds_until_next(utcnow(), self.cron_poll_seconds)
            await asyncio.sleep(delay)

    async def _sweep_loop(self) -> None:
        publisher = self.ctx.publisher
        while True:
            await asyncio.sleep(self.publish_sweep_seconds)
            try:
                await publisher.sweep(self.ctx.db)
            except Exception:
                logger.exception("Publish sweep failed")

    # ===== Lifecycle =====

    @property
    def running(self) -> bool:
        return any(not task.done() for task in self._tasks)

    def start(self) -> None:
        if self._tasks:
            return
        for i in range(self.worker_count):
            self._tasks.append(asyncio.create_task(self._worker(i)))
        if self.cron_enabled:
            self._tasks.append(asyncio.create_task(self._cron_loop()))
        if self.ctx.publisher is not None:
            self._tasks.append(asyncio.create_task(self._sweep_loop()))
        logger.info(
            f"Scheduler started: {self.worker_count} workers, "
            f"cron {'on' if self.cron_enabled else 'off'}"
        )

    async def stop(self) -> None:
        """Cancel workers and loops. Runs still executing are failed."""
        interrupted = list(self._active.values())
        for handle in interrupted:
            handle.cancel_event.set()
        for task in self._tasks:
            task.cancel()
        await asyncio.gather(*self._tasks, return_exceptions=True)
        self._tasks = []

        for handle in interrupted:
            await mark_run_failed(self.ctx.db, handle.run_id, "Scheduler stopped")
        self._active.clear()
        logger.info("Scheduler stopped")
