"""
Prize pool finalization.

Shortly before a match starts the advertised pool (estimated from capacity)
is replaced by one computed from actual enrollment:

    base = participants * joining_fee * (0.7 + (0.15 - host_percentage))
    pool = ceil(base + host_contribution * 0.9)

A host taking less than the full 15% band leaves the remainder in the pool;
a host taking more shrinks it below the 70% baseline. 90% of a sponsor
contribution is added on top.

Usage:
    finalizer = PrizePoolFinalizer(session_factory)
    report = await finalizer.run()
"""

import math
from dataclasses import dataclass, field
from datetime import datetime, timedelta, timezone
from decimal import Decimal

from sqlalchemy.exc import SQLAlchemyError
from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker

from prizeflow.logging_config import get_logger
from prizeflow.tournament.repository import TournamentRepository
from prizeflow.utils.db import session_scope
from prizeflow.utils.errors import TransientInfraError

logger = get_logger(__name__)

FINALIZATION_WINDOW = timedelta(minutes=5)
MATCH_RESULT_DELAY = timedelta(minutes=15)

BASELINE_SHARE = Decimal("0.7")
HOST_BAND = Decimal("0.15")
SPONSOR_SHARE = Decimal("0.9")


def _decimal(value) -> Decimal:
    # str() first so 0.1 stays 0.1 rather than its binary expansion
    return Decimal(str(value or 0))


def compute_prize_pool(
    player_count: int,
    joining_fee: int,
    host_percentage: float,
    host_contribution: int = 0,
) -> int:
    """Prize pool for a given number of paying players.

    >>> compute_prize_pool(10, 10, 0.10)
    75
    """
    base = (
        _decimal(player_count)
        * _decimal(joining_fee)
        * (BASELINE_SHARE + (HOST_BAND - _decimal(host_percentage)))
    )
    return math.ceil(base + _decimal(host_contribution) * SPONSOR_SHARE)


def estimate_prize_pool(
    capacity: int,
    joining_fee: int,
    host_percentage: float,
    host_contribution: int = 0,
) -> int:
    """Advertised pool for a full tournament, shown until finalization."""
    return compute_prize_pool(capacity, joining_fee, host_percentage, host_contribution)


def match_result_time_for(
    match_start_time: datetime,
    delay: timedelta = MATCH_RESULT_DELAY,
) -> datetime:
    """When results become due for a match starting at match_start_time."""
    return match_start_time + delay


@dataclass
class FinalizationReport:
    """Outcome of one finalizer run."""

    scanned: int = 0
    finalized: dict[str, int] = field(default_factory=dict)
    skipped: list[str] = field(default_factory=list)
    failed: list[str] = field(default_factory=list)

    def to_dict(self) -> dict:
        return {
            "scanned": self.scanned,
            "finalized": dict(self.finalized),
            "skipped": list(self.skipped),
            "failed": list(self.failed),
        }


class PrizePoolFinalizer:
    """Freezes prize pools of tournaments about to start."""

    def __init__(
        self,
        session_factory: async_sessionmaker[AsyncSession],
        window: timedelta = FINALIZATION_WINDOW,
    ):
        self._session_factory = session_factory
        self.window = window

    async def run(self, now: datetime | None = None) -> FinalizationReport:
        """Finalize every tournament due in this window.

        Each tournament is finalized in its own transaction; a failure leaves
        its latch unset so the next run picks it up again.

        Raises:
            TransientInfraError: The scan itself failed
        """
        now = now or datetime.now(timezone.utc)
        report = FinalizationReport()

        try:
            async with session_scope(self._session_factory) as session:
                due = await TournamentRepository(session).find_due_for_finalization(
                    now, self.window
                )
                due_ids = [t.id for t in due]
        except SQLAlchemyError as e:
            raise TransientInfraError(
                "Prize pool finalization scan failed",
                details={"error": str(e)},
            ) from e

        report.scanned = len(due_ids)

        for tournament_id in due_ids:
            try:
                pool = await self.finalize(tournament_id)
            except Exception as e:
                report.failed.append(tournament_id)
                logger.error(
                    "prize_pool_finalization_failed",
                    tournament_id=tournament_id,
                    error=str(e),
                    exc_info=True,
                )
                continue

            if pool is None:
                report.skipped.append(tournament_id)
            else:
                report.finalized[tournament_id] = pool

        if report.scanned:
            logger.info(
                "prize_pool_finalization_complete",
                scanned=report.scanned,
                finalized=len(report.finalized),
                skipped=len(report.skipped),
                failed=len(report.failed),
            )
        return report

    async def finalize(self, tournament_id: str) -> int | None:
        """Compute and freeze one tournament's pool.

        Returns:
            The frozen pool, or None if it was already frozen
        """
        async with session_scope(self._session_factory) as session:
            repo = TournamentRepository(session)
            tournament = await repo.get(tournament_id)
            if tournament is None or tournament.final_pool_calculated:
                return None

            count = await repo.count_participants(tournament_id)
            pool = compute_prize_pool(
                count,
                tournament.joining_fee,
                tournament.host_percentage,
                tournament.host_contribution,
            )

            if not await repo.save_final_prize_pool(tournament_id, pool):
                return None

        logger.info(
            "prize_pool_finalized",
            tournament_id=tournament_id,
            participants=count,
            previous_pool=tournament.prize_pool,
            prize_pool=pool,
        )
        return pool
