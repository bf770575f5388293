"""
Shared fixtures: an in-memory SQLite database with the full schema and
factories for tournaments, participants and identities.
"""

from datetime import datetime, timedelta, timezone

import pytest
import pytest_asyncio
from sqlalchemy.ext.asyncio import create_async_engine
from sqlalchemy.pool import StaticPool

from prizeflow.models import PlayerIdentity, Tournament, TournamentParticipant
from prizeflow.utils.db import create_schema, create_session_factory, session_scope

NOW = datetime(2026, 10, 19, 18, 0, tzinfo=timezone.utc)


@pytest.fixture
def now() -> datetime:
    return NOW


@pytest_asyncio.fixture
async def engine():
    engine = create_async_engine(
        "sqlite+aiosqlite:///:memory:",
        poolclass=StaticPool,
    )
    await create_schema(engine)
    yield engine
    await engine.dispose()


@pytest.fixture
def session_factory(engine):
    return create_session_factory(engine)


@pytest.fixture
def make_tournament(session_factory):
    """Insert a tournament; defaults match a 10-seat, 20-fee, 10% host match."""

    async def _make(**overrides) -> Tournament:
        start = overrides.pop("match_start_time", NOW + timedelta(minutes=3))
        values = dict(
            name="Friday Night Ascent",
            capacity=10,
            joining_fee=20,
            host_percentage=0.10,
            host_contribution=0,
            prize_first_pct=0.5,
            prize_second_pct=0.3,
            prize_third_pct=0.2,
            prize_pool=150,
            match_start_time=start,
            match_result_time=start + timedelta(minutes=15),
            platform="pc",
            region="eu",
            match_map="Ascent",
        )
        values.update(overrides)
        tournament = Tournament(**values)
        async with session_scope(session_factory) as session:
            session.add(tournament)
        return tournament

    return _make


@pytest.fixture
def enroll(session_factory):
    """Enroll players, creating an external identity for each unless told not to."""

    async def _enroll(
        tournament_id: str,
        player_ids: list[str],
        with_identity: bool = True,
    ) -> None:
        async with session_scope(session_factory) as session:
            for i, player_id in enumerate(player_ids):
                session.add(
                    TournamentParticipant(
                        tournament_id=tournament_id,
                        player_id=player_id,
                        joined_at=NOW - timedelta(hours=1) + timedelta(seconds=i),
                    )
                )
                if with_identity:
                    session.add(
                        PlayerIdentity(
                            player_id=player_id,
                            name=f"name-{player_id}",
                            tag=f"tag{i}",
                            platform="pc",
                            region="eu",
                        )
                    )

    return _enroll


@pytest.fixture
def load_tournament(session_factory):
    async def _load(tournament_id: str) -> Tournament:
        async with session_factory() as session:
            return await session.get(Tournament, tournament_id)

    return _load
