"""Tests for the Celery settlement tick task and beat schedule."""

from datetime import datetime, timezone
from unittest.mock import AsyncMock, MagicMock, patch

import pytest

from prizeflow.tasks.celery_app import celery_app
from prizeflow.tasks.schedules import CELERY_BEAT_SCHEDULE
from prizeflow.tasks.settlement import run_settlement_tick_task
from prizeflow.tournament.scheduler import TickResult

TASK_NAME = "prizeflow.tasks.settlement.run_settlement_tick_task"


@pytest.fixture
def runtime():
    runtime = MagicMock()
    runtime.scheduler.tick = AsyncMock()
    runtime.close = AsyncMock()
    return runtime


@pytest.fixture
def patched_runtime(runtime):
    with patch("prizeflow.tasks.settlement.get_settings"), patch(
        "prizeflow.tasks.settlement.build_runtime",
        new=AsyncMock(return_value=runtime),
    ):
        yield runtime


class TestRunSettlementTickTask:
    def test_runs_one_tick_and_closes(self, patched_runtime):
        started = datetime(2026, 10, 19, 18, 0, tzinfo=timezone.utc)
        patched_runtime.scheduler.tick.return_value = TickResult(
            tick_id="abc123def456", started_at=started
        )

        result = run_settlement_tick_task("2026-10-19T18:00:00+00:00")

        patched_runtime.scheduler.tick.assert_awaited_once_with(started)
        patched_runtime.close.assert_awaited_once()
        assert result["tick_id"] == "abc123def456"
        assert result["settlements"] == []

    def test_defaults_to_current_time(self, patched_runtime):
        patched_runtime.scheduler.tick.return_value = None

        result = run_settlement_tick_task()

        patched_runtime.scheduler.tick.assert_awaited_once_with(None)
        assert result == {"skipped": True}

    def test_runtime_closed_when_tick_raises(self, patched_runtime):
        patched_runtime.scheduler.tick.side_effect = RuntimeError("boom")

        with pytest.raises(RuntimeError):
            run_settlement_tick_task()

        patched_runtime.close.assert_awaited_once()


class TestCeleryConfiguration:
    def test_task_registered(self):
        assert TASK_NAME in celery_app.tasks

    def test_beat_schedule_on_settlement_queue(self):
        entry = CELERY_BEAT_SCHEDULE["settlement-tick-every-minute"]

        assert entry["task"] == TASK_NAME
        assert entry["options"]["queue"] == "settlement"

    def test_task_routed_to_settlement_queue(self):
        routes = celery_app.conf.task_routes

        assert routes["prizeflow.tasks.settlement.*"] == {"queue": "settlement"}
