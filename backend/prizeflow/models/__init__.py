"""Database models."""

from prizeflow.models.base import Base, TimestampMixin, UUIDMixin, as_utc, utcnow
from prizeflow.models.tournament import (
    PlayerIdentity,
    Tournament,
    TournamentParticipant,
    TournamentStatus,
)
from prizeflow.models.wallet import (
    DEBIT_TYPES,
    SETTLEMENT_TYPES,
    TransactionType,
    Wallet,
    WalletTransaction,
)

__all__ = [
    # Base
    "Base",
    "TimestampMixin",
    "UUIDMixin",
    "as_utc",
    "utcnow",
    # Tournament
    "Tournament",
    "TournamentParticipant",
    "TournamentStatus",
    "PlayerIdentity",
    # Wallet
    "Wallet",
    "WalletTransaction",
    "TransactionType",
    "DEBIT_TYPES",
    "SETTLEMENT_TYPES",
]
