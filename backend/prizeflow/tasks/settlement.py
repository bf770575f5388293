"""Settlement tick task.

Runs the same finalize-then-settle pass as the in-process scheduler, once per
beat. Overlapping ticks across workers are serialized by the Redis tick lock.
"""

import asyncio
from datetime import datetime

from prizeflow.config import get_settings
from prizeflow.logging_config import get_logger
from prizeflow.main import build_runtime
from prizeflow.tasks.celery_app import celery_app

logger = get_logger(__name__)


@celery_app.task(
    name="prizeflow.tasks.settlement.run_settlement_tick_task",
    ignore_result=False,
)
def run_settlement_tick_task(now_iso: str | None = None) -> dict:
    """Run one settlement tick.

    Not retried: the next beat is the retry, and anything left pending is
    picked up there.

    Args:
        now_iso: Optional ISO timestamp to tick at instead of the current time

    Returns:
        Tick result dict, or {"skipped": True} when another tick was running
    """
    now = datetime.fromisoformat(now_iso) if now_iso else None
    result = asyncio.run(_run_tick(now))
    logger.info("settlement_tick_task_complete", skipped=result.get("skipped", False))
    return result


async def _run_tick(now: datetime | None = None) -> dict:
    runtime = await build_runtime(get_settings())
    try:
        result = await runtime.scheduler.tick(now)
    finally:
        await runtime.close()

    if result is None:
        return {"skipped": True}
    return result.to_dict()
