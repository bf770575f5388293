"""Tournament, participant and player identity models.

These rows are owned by the tournament CRUD service. The settlement engine
reads them and writes only prize_pool, final_pool_calculated, status and
processed on Tournament.
"""

from datetime import datetime
from enum import Enum

from sqlalchemy import (
    Boolean,
    DateTime,
    Float,
    ForeignKey,
    Index,
    Integer,
    String,
)
from sqlalchemy.orm import Mapped, mapped_column

from prizeflow.models.base import Base, TimestampMixin, UUIDMixin, utcnow


class TournamentStatus(str, Enum):
    """Settlement verdict of a tournament."""

    UPCOMING = "upcoming"
    VALID = "valid"
    INVALID = "invalid"


class Tournament(Base, UUIDMixin, TimestampMixin):
    """A single scheduled match with an entry fee and a prize pool."""

    __tablename__ = "tournaments"

    name: Mapped[str] = mapped_column(String(200), nullable=False)
    capacity: Mapped[int] = mapped_column(Integer, nullable=False)

    # Money (integer currency units, fractions in [0, 1])
    joining_fee: Mapped[int] = mapped_column(Integer, default=0, nullable=False)
    host_percentage: Mapped[float] = mapped_column(
        Float,
        default=0.0,
        nullable=False,
        comment="Host cut as a fraction; 0.15 is the full host band",
    )
    host_contribution: Mapped[int] = mapped_column(
        Integer,
        default=0,
        nullable=False,
        comment="Fixed sponsor add-on, 90% of which goes to the pool",
    )
    prize_first_pct: Mapped[float] = mapped_column(Float, default=0.0, nullable=False)
    prize_second_pct: Mapped[float] = mapped_column(Float, default=0.0, nullable=False)
    prize_third_pct: Mapped[float] = mapped_column(Float, default=0.0, nullable=False)
    prize_pool: Mapped[int] = mapped_column(Integer, default=0, nullable=False)

    # Schedule
    match_start_time: Mapped[datetime] = mapped_column(
        DateTime(timezone=True),
        nullable=False,
    )
    match_result_time: Mapped[datetime] = mapped_column(
        DateTime(timezone=True),
        nullable=False,
    )

    # Latches
    final_pool_calculated: Mapped[bool] = mapped_column(
        Boolean,
        default=False,
        nullable=False,
    )
    processed: Mapped[bool] = mapped_column(Boolean, default=False, nullable=False)
    status: Mapped[str] = mapped_column(
        String(20),
        default=TournamentStatus.UPCOMING.value,
        nullable=False,
    )

    # Verification request inputs
    platform: Mapped[str] = mapped_column(String(20), nullable=False)
    region: Mapped[str] = mapped_column(String(20), nullable=False)
    match_map: Mapped[str] = mapped_column(String(50), nullable=False)

    __table_args__ = (
        Index("ix_tournaments_finalization", "final_pool_calculated", "match_start_time"),
        Index("ix_tournaments_settlement", "processed", "match_result_time"),
    )

    @property
    def prize_percentages(self) -> tuple[float, float, float]:
        """Prize fractions for 1st, 2nd and 3rd place."""
        return (self.prize_first_pct, self.prize_second_pct, self.prize_third_pct)

    def __repr__(self) -> str:
        return (
            f"<Tournament {self.id[:8]}... status={self.status} "
            f"processed={self.processed} pool={self.prize_pool}>"
        )


class TournamentParticipant(Base):
    """Player enrolled in a tournament."""

    __tablename__ = "tournament_participants"

    tournament_id: Mapped[str] = mapped_column(
        String(36),
        ForeignKey("tournaments.id", ondelete="CASCADE"),
        primary_key=True,
    )
    player_id: Mapped[str] = mapped_column(String(36), primary_key=True)
    joined_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True),
        default=utcnow,
        nullable=False,
    )


class PlayerIdentity(Base):
    """In-game identity used to find a player inside the verification service."""

    __tablename__ = "player_identities"

    player_id: Mapped[str] = mapped_column(String(36), primary_key=True)
    name: Mapped[str] = mapped_column(String(50), nullable=False)
    tag: Mapped[str] = mapped_column(String(20), nullable=False)
    platform: Mapped[str] = mapped_column(String(20), nullable=False)
    region: Mapped[str] = mapped_column(String(20), nullable=False)

    @property
    def identity_key(self) -> tuple[str, str, str, str]:
        """(name, tag, platform, region) as matched against leaderboard entries."""
        return (self.name, self.tag, self.platform, self.region)

    @property
    def display_name(self) -> str:
        return f"{self.name}#{self.tag}"
