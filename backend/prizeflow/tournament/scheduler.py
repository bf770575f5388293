"""
Settlement scheduler.

Drives the finalizer and the processor on a fixed interval:

    every interval: finalize pools of tournaments about to start,
                    then settle tournaments whose results are due

A tick that comes due while the previous one is still running is skipped,
not queued. stop() lets an in-flight tick finish before returning.
"""

import asyncio
from dataclasses import dataclass, field
from datetime import datetime, timezone
from typing import List, Optional, Set
from uuid import uuid4

from prizeflow.logging_config import bind_context, clear_context, get_logger
from prizeflow.tournament.distributed_lock import (
    DistributedLockManager,
    LockAcquisitionError,
    LockScope,
)
from prizeflow.tournament.prize_pool import FinalizationReport, PrizePoolFinalizer
from prizeflow.tournament.settlement import SettlementProcessor, SettlementSummary

logger = get_logger(__name__)


@dataclass
class TickResult:
    """What one tick did."""

    tick_id: str
    started_at: datetime
    finalization: Optional[FinalizationReport] = None
    settlements: List[SettlementSummary] = field(default_factory=list)
    errors: List[str] = field(default_factory=list)

    def to_dict(self) -> dict:
        return {
            "tick_id": self.tick_id,
            "started_at": self.started_at.isoformat(),
            "finalization": self.finalization.to_dict() if self.finalization else None,
            "settlements": [s.to_dict() for s in self.settlements],
            "errors": list(self.errors),
        }


class SettlementScheduler:
    """Periodic driver for prize pool finalization and settlement."""

    def __init__(
        self,
        finalizer: PrizePoolFinalizer,
        processor: SettlementProcessor,
        interval_seconds: float = 60.0,
        lock_manager: Optional[DistributedLockManager] = None,
    ):
        if interval_seconds <= 0:
            raise ValueError("interval_seconds must be positive")
        self.finalizer = finalizer
        self.processor = processor
        self.interval_seconds = interval_seconds
        self.lock_manager = lock_manager

        self._tick_lock = asyncio.Lock()
        self._stop_event = asyncio.Event()
        self._loop_task: Optional[asyncio.Task] = None
        self._tick_tasks: Set[asyncio.Task] = set()

    @property
    def is_running(self) -> bool:
        return self._loop_task is not None and not self._loop_task.done()

    @property
    def tick_in_progress(self) -> bool:
        return self._tick_lock.locked()

    async def start(self) -> None:
        """Start ticking. The first tick fires immediately."""
        if self.is_running:
            return
        self._stop_event.clear()
        self._loop_task = asyncio.create_task(self._run_loop(), name="settlement-scheduler")
        logger.info("scheduler_started", interval_seconds=self.interval_seconds)

    async def stop(self) -> None:
        """Stop ticking and wait for any in-flight tick to complete."""
        if self._loop_task is None:
            return

        self._stop_event.set()
        await self._loop_task
        self._loop_task = None

        if self._tick_tasks:
            await asyncio.gather(*self._tick_tasks, return_exceptions=True)

        logger.info("scheduler_stopped")

    async def tick(self, now: Optional[datetime] = None) -> Optional[TickResult]:
        """Run one finalize-then-settle pass.

        Returns:
            None if skipped because another tick holds the lock
        """
        if self._tick_lock.locked():
            logger.warning("tick_skipped_previous_running")
            return None

        async with self._tick_lock:
            tick_id = uuid4().hex[:12]
            bind_context(tick_id=tick_id)
            try:
                if self.lock_manager is None:
                    return await self._run_tick(tick_id, now)

                try:
                    async with self.lock_manager.lock(
                        LockScope.TICK,
                        lock_timeout_ms=int(self.interval_seconds * 1000) * 5,
                        acquire_timeout_ms=0,
                    ):
                        return await self._run_tick(tick_id, now)
                except LockAcquisitionError:
                    logger.info("tick_skipped_locked_elsewhere")
                    return None
            finally:
                clear_context()

    async def _run_tick(self, tick_id: str, now: Optional[datetime]) -> TickResult:
        now = now or datetime.now(timezone.utc)
        result = TickResult(tick_id=tick_id, started_at=now)

        try:
            result.finalization = await self.finalizer.run(now)
        except Exception as e:
            result.errors.append(f"finalization: {e}")
            logger.error("finalization_pass_failed", error=str(e), exc_info=True)

        try:
            result.settlements = await self.processor.run(now)
        except Exception as e:
            result.errors.append(f"settlement: {e}")
            logger.error("settlement_pass_failed", error=str(e), exc_info=True)

        logger.debug(
            "tick_complete",
            settlements=len(result.settlements),
            errors=len(result.errors),
        )
        return result

    async def _run_loop(self) -> None:
        while not self._stop_event.is_set():
            task = asyncio.create_task(self.tick())
            self._tick_tasks.add(task)
            task.add_done_callback(self._tick_done)

            try:
                await asyncio.wait_for(self._stop_event.wait(), timeout=self.interval_seconds)
            except asyncio.TimeoutError:
                pass

    def _tick_done(self, task: asyncio.Task) -> None:
        self._tick_tasks.discard(task)
        if task.cancelled():
            return
        exc = task.exception()
        if exc is not None:
            logger.error("tick_crashed", error=str(exc), exc_info=exc)
