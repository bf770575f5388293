"""Settlement worker entry point.

Wires settings, database, Redis, the verification client and the scheduler
together, and runs the scheduler until SIGINT/SIGTERM.

Run with:
    python -m prizeflow
"""

import asyncio
import signal
from dataclasses import dataclass
from datetime import timedelta
from typing import Optional

import httpx
from redis.asyncio import Redis
from sqlalchemy.ext.asyncio import AsyncEngine

from prizeflow.config import Settings, get_settings
from prizeflow.logging_config import configure_logging, get_logger
from prizeflow.services.verification import MatchVerificationClient
from prizeflow.tournament.distributed_lock import DistributedLockManager
from prizeflow.tournament.prize_pool import PrizePoolFinalizer
from prizeflow.tournament.scheduler import SettlementScheduler
from prizeflow.tournament.settlement import SettlementProcessor
from prizeflow.utils.db import create_engine, create_session_factory
from prizeflow.utils.redis_client import close_redis, init_redis
from prizeflow.utils.sentry import init_sentry

logger = get_logger(__name__)


@dataclass
class SettlementRuntime:
    """Everything a tick needs, plus the resources to release afterwards."""

    engine: AsyncEngine
    redis: Optional[Redis]
    verifier: MatchVerificationClient
    scheduler: SettlementScheduler

    async def close(self) -> None:
        await self.verifier.__aexit__(None, None, None)
        if self.scheduler.lock_manager is not None:
            await self.scheduler.lock_manager.cleanup_all()
        if self.redis is not None:
            await close_redis()
        await self.engine.dispose()


async def build_runtime(
    settings: Settings,
    transport: Optional[httpx.AsyncBaseTransport] = None,
) -> SettlementRuntime:
    """Create the engine, clients and scheduler from settings."""
    engine = create_engine(settings)
    session_factory = create_session_factory(engine)
    redis = await init_redis(settings)

    lock_manager = None
    if redis is not None:
        lock_manager = DistributedLockManager(
            redis,
            default_lock_timeout_ms=settings.settlement_lock_ttl_seconds * 1000,
        )

    verifier = MatchVerificationClient.from_settings(settings, transport=transport)
    await verifier.__aenter__()

    finalizer = PrizePoolFinalizer(
        session_factory,
        window=timedelta(minutes=settings.finalization_window_minutes),
    )
    processor = SettlementProcessor(
        session_factory,
        verifier,
        redis=redis,
        lock_manager=lock_manager,
        balance_cache_ttl=settings.balance_cache_ttl_seconds,
        lock_ttl_seconds=settings.settlement_lock_ttl_seconds,
    )
    scheduler = SettlementScheduler(
        finalizer,
        processor,
        interval_seconds=settings.scheduler_interval_seconds,
        lock_manager=lock_manager,
    )
    return SettlementRuntime(
        engine=engine,
        redis=redis,
        verifier=verifier,
        scheduler=scheduler,
    )


async def serve(settings: Settings) -> None:
    """Run the scheduler until a shutdown signal arrives."""
    runtime = await build_runtime(settings)
    shutdown = asyncio.Event()

    loop = asyncio.get_running_loop()
    for sig in (signal.SIGINT, signal.SIGTERM):
        try:
            loop.add_signal_handler(sig, shutdown.set)
        except NotImplementedError:
            # Windows event loops
            pass

    try:
        await runtime.scheduler.start()
        await shutdown.wait()
        logger.info("shutdown_requested")
        await runtime.scheduler.stop()
    finally:
        await runtime.close()


def main() -> None:
    settings = get_settings()
    configure_logging(
        log_level=settings.log_level,
        json_logs=settings.json_logs,
        app_env=settings.app_env,
    )
    if init_sentry(
        dsn=settings.sentry_dsn,
        environment=settings.app_env,
        traces_sample_rate=settings.sentry_traces_sample_rate,
    ):
        logger.info("sentry_initialized", environment=settings.app_env)

    logger.info(
        "settlement_worker_starting",
        environment=settings.app_env,
        interval_seconds=settings.scheduler_interval_seconds,
        redis_enabled=bool(settings.redis_url),
    )
    asyncio.run(serve(settings))
