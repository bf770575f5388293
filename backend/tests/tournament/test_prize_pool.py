"""
Prize Pool Finalization Tests.

Pool formula, the finalization window and the final_pool_calculated latch.
"""

from datetime import datetime, timedelta, timezone
from unittest.mock import AsyncMock, patch

import pytest
from sqlalchemy.exc import OperationalError

from prizeflow.tournament.prize_pool import (
    FinalizationReport,
    PrizePoolFinalizer,
    compute_prize_pool,
    estimate_prize_pool,
    match_result_time_for,
)
from prizeflow.utils.errors import TransientInfraError


# =============================================================================
# Formula
# =============================================================================


class TestComputePrizePool:
    def test_actual_enrollment(self):
        """6 x 20 x (0.7 + 0.05) = 90."""
        assert compute_prize_pool(6, 20, 0.10) == 90

    def test_sponsor_contribution(self):
        """90 + 50 x 0.9 = 135."""
        assert compute_prize_pool(6, 20, 0.10, host_contribution=50) == 135

    def test_full_host_band_leaves_baseline(self):
        assert compute_prize_pool(10, 100, 0.15) == 700

    def test_host_above_band_lowers_pool(self):
        """Not clamped: 10 x 100 x (0.7 - 0.05) = 650."""
        assert compute_prize_pool(10, 100, 0.20) == 650

    def test_no_participants_sponsor_only(self):
        assert compute_prize_pool(0, 20, 0.10, host_contribution=50) == 45

    def test_no_participants_no_sponsor(self):
        assert compute_prize_pool(0, 20, 0.10) == 0

    def test_ceiling_applied(self):
        """3 x 7 x 0.75 = 15.75 -> 16."""
        assert compute_prize_pool(3, 7, 0.10) == 16

    def test_ceiling_not_disturbed_by_float_noise(self):
        """Exact decimal shares: 0.7 + (0.15 - 0.05) is 0.8, so 10 x 10 x 0.8 is 80."""
        assert compute_prize_pool(10, 10, 0.05) == 80

    def test_estimate_uses_capacity(self):
        assert estimate_prize_pool(10, 20, 0.10) == 150

    def test_match_result_time(self):
        start = datetime(2026, 10, 19, 18, 0, tzinfo=timezone.utc)
        assert match_result_time_for(start) == start + timedelta(minutes=15)


# =============================================================================
# Finalizer
# =============================================================================


class TestPrizePoolFinalizer:
    @pytest.mark.asyncio
    async def test_scenario_a_uses_actual_participants(
        self, session_factory, make_tournament, enroll, load_tournament, now
    ):
        tournament = await make_tournament(capacity=10, prize_pool=150)
        await enroll(tournament.id, [f"p{i}" for i in range(6)])

        report = await PrizePoolFinalizer(session_factory).run(now)

        assert report.finalized == {tournament.id: 90}
        stored = await load_tournament(tournament.id)
        assert stored.prize_pool == 90
        assert stored.final_pool_calculated is True

    @pytest.mark.asyncio
    async def test_scenario_b_with_sponsor(
        self, session_factory, make_tournament, enroll, load_tournament, now
    ):
        tournament = await make_tournament(host_contribution=50)
        await enroll(tournament.id, [f"p{i}" for i in range(6)])

        await PrizePoolFinalizer(session_factory).run(now)

        assert (await load_tournament(tournament.id)).prize_pool == 135

    @pytest.mark.asyncio
    async def test_latch_makes_finalization_idempotent(
        self, session_factory, make_tournament, enroll, load_tournament, now
    ):
        tournament = await make_tournament()
        await enroll(tournament.id, ["p0", "p1"])
        finalizer = PrizePoolFinalizer(session_factory)

        await finalizer.run(now)
        # A late joiner must not change a frozen pool
        await enroll(tournament.id, ["p2"])
        second = await finalizer.run(now + timedelta(minutes=1))

        assert second.scanned == 0
        assert (await load_tournament(tournament.id)).prize_pool == 30

    @pytest.mark.asyncio
    async def test_finalize_returns_none_when_already_frozen(
        self, session_factory, make_tournament, enroll
    ):
        tournament = await make_tournament()
        await enroll(tournament.id, ["p0"])
        finalizer = PrizePoolFinalizer(session_factory)

        assert await finalizer.finalize(tournament.id) == 15
        assert await finalizer.finalize(tournament.id) is None

    @pytest.mark.asyncio
    async def test_window_bounds(
        self, session_factory, make_tournament, load_tournament, now
    ):
        at_now = await make_tournament(match_start_time=now)
        at_edge = await make_tournament(match_start_time=now + timedelta(minutes=5))
        too_early = await make_tournament(match_start_time=now + timedelta(minutes=6))
        already_started = await make_tournament(match_start_time=now - timedelta(minutes=1))

        report = await PrizePoolFinalizer(session_factory).run(now)

        assert set(report.finalized) == {at_now.id, at_edge.id}
        assert (await load_tournament(too_early.id)).final_pool_calculated is False
        assert (await load_tournament(already_started.id)).final_pool_calculated is False

    @pytest.mark.asyncio
    async def test_failed_update_leaves_latch_unset(
        self, session_factory, make_tournament, enroll, load_tournament, now
    ):
        tournament = await make_tournament()
        await enroll(tournament.id, ["p0"])
        finalizer = PrizePoolFinalizer(session_factory)

        with patch(
            "prizeflow.tournament.prize_pool.TournamentRepository.save_final_prize_pool",
            new=AsyncMock(side_effect=RuntimeError("connection reset")),
        ):
            report = await finalizer.run(now)

        assert report.failed == [tournament.id]
        assert (await load_tournament(tournament.id)).final_pool_calculated is False

        retry = await finalizer.run(now)
        assert retry.finalized == {tournament.id: 15}

    @pytest.mark.asyncio
    async def test_scan_failure_raises_transient_error(self, session_factory, now):
        with patch(
            "prizeflow.tournament.prize_pool.TournamentRepository.find_due_for_finalization",
            new=AsyncMock(side_effect=OperationalError("SELECT", {}, Exception("db down"))),
        ):
            with pytest.raises(TransientInfraError):
                await PrizePoolFinalizer(session_factory).run(now)

    def test_report_to_dict(self):
        report = FinalizationReport(scanned=2, finalized={"t-1": 90}, failed=["t-2"])

        assert report.to_dict() == {
            "scanned": 2,
            "finalized": {"t-1": 90},
            "skipped": [],
            "failed": ["t-2"],
        }
