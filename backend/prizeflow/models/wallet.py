"""Wallet and transaction ledger models.

- Wallet: one row per user; balance is a cached projection of transactions
- WalletTransaction: append-only ledger entry with an integrity hash
- TransactionType: credit-side and debit-side transaction kinds
"""

from datetime import datetime
from enum import Enum

from sqlalchemy import (
    BigInteger,
    CheckConstraint,
    DateTime,
    Enum as SQLEnum,
    Index,
    String,
    text,
)
from sqlalchemy.orm import Mapped, mapped_column

from prizeflow.models.base import Base, UUIDMixin, utcnow


class TransactionType(str, Enum):
    """Transaction types for wallet operations."""

    CREDIT = "credit"
    DEBIT = "debit"
    TOURNAMENT_ENTRY = "tournament_entry"
    TOURNAMENT_PRIZE = "tournament_prize"
    REFUND = "refund"
    TOURNAMENT_REFUND = "tournament_refund"

    @property
    def is_debit(self) -> bool:
        """Whether the transaction subtracts from the balance."""
        return self in DEBIT_TYPES

    @property
    def is_settlement(self) -> bool:
        """Whether at most one row may exist per (user_id, ref_id, type)."""
        return self in SETTLEMENT_TYPES


DEBIT_TYPES = frozenset({TransactionType.DEBIT, TransactionType.TOURNAMENT_ENTRY})
SETTLEMENT_TYPES = frozenset(
    {TransactionType.TOURNAMENT_PRIZE, TransactionType.TOURNAMENT_REFUND}
)


class Wallet(Base):
    """Custodial balance of platform currency for one user."""

    __tablename__ = "user_wallets"

    user_id: Mapped[str] = mapped_column(String(36), primary_key=True)
    balance: Mapped[int] = mapped_column(
        BigInteger,
        default=0,
        nullable=False,
        comment="Signed sum of the user's wallet_transactions",
    )
    created_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True),
        default=utcnow,
        nullable=False,
    )
    last_updated: Mapped[datetime] = mapped_column(
        DateTime(timezone=True),
        default=utcnow,
        nullable=False,
    )

    __table_args__ = (
        CheckConstraint("balance >= 0", name="ck_user_wallets_balance_non_negative"),
    )

    def __repr__(self) -> str:
        return f"<Wallet {self.user_id[:8]}... balance={self.balance}>"


class WalletTransaction(Base, UUIDMixin):
    """Immutable ledger entry explaining a balance change.

    amount is always positive; the sign comes from tx_type.
    """

    __tablename__ = "wallet_transactions"

    user_id: Mapped[str] = mapped_column(String(36), nullable=False, index=True)
    tx_type: Mapped[TransactionType] = mapped_column(
        SQLEnum(
            TransactionType,
            name="transaction_type",
            native_enum=False,
            length=32,
            values_callable=lambda enum: [member.value for member in enum],
        ),
        nullable=False,
        index=True,
    )
    amount: Mapped[int] = mapped_column(BigInteger, nullable=False)
    balance_before: Mapped[int] = mapped_column(BigInteger, nullable=False)
    balance_after: Mapped[int] = mapped_column(BigInteger, nullable=False)
    description: Mapped[str] = mapped_column(String(500), nullable=False)
    ref_id: Mapped[str | None] = mapped_column(
        String(36),
        nullable=True,
        index=True,
        comment="Tournament the transaction belongs to",
    )
    integrity_hash: Mapped[str] = mapped_column(
        String(64),
        nullable=False,
        comment="SHA-256 hash for tamper detection",
    )
    created_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True),
        default=utcnow,
        nullable=False,
        index=True,
    )

    __table_args__ = (
        CheckConstraint("amount > 0", name="ck_wallet_transactions_amount_positive"),
        # One prize and one refund per user per tournament
        Index(
            "uq_wallet_transactions_settlement",
            "user_id",
            "ref_id",
            "tx_type",
            unique=True,
            postgresql_where=text(
                "tx_type IN ('tournament_prize', 'tournament_refund')"
            ),
            sqlite_where=text(
                "tx_type IN ('tournament_prize', 'tournament_refund')"
            ),
        ),
    )

    @property
    def signed_amount(self) -> int:
        return -self.amount if self.tx_type.is_debit else self.amount

    def __repr__(self) -> str:
        return (
            f"<WalletTransaction {self.id[:8]}... "
            f"type={self.tx_type.value} amount={self.signed_amount:+}>"
        )
