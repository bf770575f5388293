"""Tournament store access for the settlement engine.

Reads tournaments, participants and player identities, and performs the
two latch writes the engine owns. Both latch writes are conditional UPDATEs
so that a concurrent runner can never flip a latch twice.
"""

from datetime import datetime, timedelta
from typing import Iterable

from sqlalchemy import func, select, update
from sqlalchemy.ext.asyncio import AsyncSession

from prizeflow.models import (
    PlayerIdentity,
    Tournament,
    TournamentParticipant,
    TournamentStatus,
)


class TournamentRepository:
    """Queries and latch updates on tournaments, scoped to one session."""

    def __init__(self, session: AsyncSession):
        self.session = session

    async def get(self, tournament_id: str) -> Tournament | None:
        """Load a tournament, bypassing anything cached in the session."""
        return await self.session.get(
            Tournament, tournament_id, populate_existing=True
        )

    async def find_due_for_finalization(
        self,
        now: datetime,
        window: timedelta,
    ) -> list[Tournament]:
        """Tournaments starting within [now, now + window] with an open pool."""
        query = (
            select(Tournament)
            .where(
                Tournament.final_pool_calculated.is_(False),
                Tournament.match_start_time >= now,
                Tournament.match_start_time <= now + window,
            )
            .order_by(Tournament.match_start_time, Tournament.id)
        )
        result = await self.session.execute(query)
        return list(result.scalars().all())

    async def find_due_for_settlement(self, now: datetime) -> list[str]:
        """Ids of unprocessed tournaments whose results are due."""
        query = (
            select(Tournament.id)
            .where(
                Tournament.processed.is_(False),
                Tournament.match_result_time < now,
            )
            .order_by(Tournament.match_result_time, Tournament.id)
        )
        result = await self.session.execute(query)
        return list(result.scalars().all())

    async def count_participants(self, tournament_id: str) -> int:
        count = await self.session.scalar(
            select(func.count())
            .select_from(TournamentParticipant)
            .where(TournamentParticipant.tournament_id == tournament_id)
        )
        return int(count or 0)

    async def list_participant_ids(self, tournament_id: str) -> list[str]:
        """Participant player ids in join order."""
        result = await self.session.execute(
            select(TournamentParticipant.player_id)
            .where(TournamentParticipant.tournament_id == tournament_id)
            .order_by(TournamentParticipant.joined_at, TournamentParticipant.player_id)
        )
        return list(result.scalars().all())

    async def get_identities(
        self,
        player_ids: Iterable[str],
    ) -> dict[str, PlayerIdentity]:
        """External identities keyed by player id; players without one are absent."""
        ids = list(player_ids)
        if not ids:
            return {}
        result = await self.session.execute(
            select(PlayerIdentity).where(PlayerIdentity.player_id.in_(ids))
        )
        return {identity.player_id: identity for identity in result.scalars().all()}

    async def save_final_prize_pool(self, tournament_id: str, prize_pool: int) -> bool:
        """Freeze the prize pool.

        Returns:
            False if the pool was already frozen (or the tournament is gone)
        """
        result = await self.session.execute(
            update(Tournament)
            .where(
                Tournament.id == tournament_id,
                Tournament.final_pool_calculated.is_(False),
            )
            .values(prize_pool=prize_pool, final_pool_calculated=True)
            .execution_options(synchronize_session=False)
        )
        return result.rowcount == 1

    async def mark_processed(
        self,
        tournament_id: str,
        status: TournamentStatus,
    ) -> bool:
        """Set the terminal status and the processed latch.

        Returns:
            False if another runner already marked the tournament
        """
        result = await self.session.execute(
            update(Tournament)
            .where(
                Tournament.id == tournament_id,
                Tournament.processed.is_(False),
            )
            .values(processed=True, status=TournamentStatus(status).value)
            .execution_options(synchronize_session=False)
        )
        return result.rowcount == 1
