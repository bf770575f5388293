"""Wallet ledger service.

The only code allowed to change a balance. Every change appends a
WalletTransaction and updates the cached Wallet.balance in the same database
transaction, with the wallet row locked (SELECT ... FOR UPDATE) for the
read-modify-write.

Features:
- Atomic per-user balance updates under a row lock
- Overdraft rejection for debit-side transactions only
- One prize / one refund per (user, tournament) enforced before insert and
  by a partial unique index
- Transaction logging with SHA-256 integrity hashes
- Optional Redis caching for balance lookups
"""

import hashlib
import logging
import math
from dataclasses import dataclass
from datetime import datetime, timezone

from redis.asyncio import Redis
from sqlalchemy import case, func, select
from sqlalchemy.exc import IntegrityError
from sqlalchemy.ext.asyncio import AsyncSession

from prizeflow.models.wallet import (
    DEBIT_TYPES,
    TransactionType,
    Wallet,
    WalletTransaction,
)
from prizeflow.utils.errors import ErrorCode, SettlementEngineError

logger = logging.getLogger(__name__)

MAX_PAGE_SIZE = 100


class WalletError(SettlementEngineError):
    """Wallet operation error."""

    def __init__(self, message: str, code: ErrorCode = ErrorCode.INVALID_AMOUNT, details=None):
        super().__init__(code=code, message=message, details=details, recoverable=False)


class InsufficientBalanceError(WalletError):
    """A debit would overdraw the wallet. The balance is left unchanged."""

    def __init__(self, user_id: str, balance: int, amount: int):
        super().__init__(
            f"Insufficient balance: current balance is {balance}, trying to deduct {amount}",
            code=ErrorCode.INSUFFICIENT_BALANCE,
            details={"userId": user_id, "balance": balance, "amount": amount},
        )
        self.balance = balance
        self.amount = amount


# Name used by the error taxonomy for rejected debits
LedgerRejected = InsufficientBalanceError


class DuplicateTransactionError(WalletError):
    """A prize or refund for this (user, tournament) already exists."""

    def __init__(self, user_id: str, tx_type: TransactionType, ref_id: str):
        super().__init__(
            f"{tx_type.value} already recorded for user {user_id} and ref {ref_id}",
            code=ErrorCode.DUPLICATE_TRANSACTION,
            details={"userId": user_id, "type": tx_type.value, "refId": ref_id},
        )


@dataclass
class TransactionPage:
    """One page of a user's transaction history, newest first."""

    items: list[WalletTransaction]
    page: int
    limit: int
    total: int

    @property
    def total_pages(self) -> int:
        return math.ceil(self.total / self.limit) if self.total else 0


class WalletService:
    """Ledger operations on user wallets.

    The service flushes but never commits: the caller owns the transaction
    boundary and should use one session per wallet write so that the row
    lock is held only for that write. Cached balances of written wallets are
    dropped by invalidate_cached_balances(), which the caller awaits after
    the commit.
    """

    BALANCE_KEY_PREFIX = "wallet:balance:"

    def __init__(
        self,
        session: AsyncSession,
        redis: Redis | None = None,
        balance_cache_ttl: int = 300,
    ) -> None:
        """Initialize wallet service."""
        self.session = session
        self._redis = redis
        self._cache_ttl = balance_cache_ttl
        self._written_users: set[str] = set()

    async def get_balance(self, user_id: str) -> int:
        """Get a user's balance, creating an empty wallet if none exists.

        Args:
            user_id: User ID

        Returns:
            Current balance
        """
        cache_key = f"{self.BALANCE_KEY_PREFIX}{user_id}"
        if self._redis is not None:
            cached = await self._redis.get(cache_key)
            if cached is not None:
                return int(cached)

        wallet = await self.session.get(Wallet, user_id)
        if wallet is None:
            wallet = await self._create_wallet(user_id)

        if self._redis is not None:
            await self._redis.setex(cache_key, self._cache_ttl, str(wallet.balance))

        return wallet.balance

    async def apply_transaction(
        self,
        user_id: str,
        tx_type: TransactionType,
        amount: int,
        description: str,
        ref_id: str | None = None,
    ) -> tuple[WalletTransaction, int]:
        """Append a transaction and move the balance by its signed amount.

        Args:
            user_id: User ID
            tx_type: Transaction type; debit and tournament_entry subtract
            amount: Positive integer amount
            description: Human readable description
            ref_id: Tournament reference, if any

        Returns:
            (transaction, new_balance)

        Raises:
            WalletError: Amount is not a positive integer
            InsufficientBalanceError: A debit would overdraw the wallet
            DuplicateTransactionError: Prize/refund already recorded
        """
        if isinstance(amount, bool) or not isinstance(amount, int) or amount <= 0:
            raise WalletError(f"Amount must be a positive integer, got {amount!r}")

        tx_type = TransactionType(tx_type)
        wallet = await self._lock_wallet(user_id)

        if tx_type.is_settlement and ref_id is not None:
            if await self._settlement_exists(user_id, tx_type, ref_id):
                raise DuplicateTransactionError(user_id, tx_type, ref_id)

        balance_before = wallet.balance
        delta = -amount if tx_type in DEBIT_TYPES else amount
        balance_after = balance_before + delta

        if balance_after < 0:
            raise InsufficientBalanceError(user_id, balance_before, amount)

        tx = WalletTransaction(
            user_id=user_id,
            tx_type=tx_type,
            amount=amount,
            balance_before=balance_before,
            balance_after=balance_after,
            description=description,
            ref_id=ref_id,
            integrity_hash=self._compute_integrity_hash(
                user_id=user_id,
                tx_type=tx_type,
                amount=amount,
                balance_before=balance_before,
                balance_after=balance_after,
            ),
        )
        wallet.balance = balance_after
        wallet.last_updated = datetime.now(timezone.utc)
        self.session.add(tx)

        try:
            await self.session.flush()
        except IntegrityError as e:
            # Another writer recorded the same prize/refund first
            if tx_type.is_settlement and ref_id is not None:
                raise DuplicateTransactionError(user_id, tx_type, ref_id) from e
            raise

        self._written_users.add(user_id)

        logger.info(
            f"Wallet transaction: user={user_id[:8]}... "
            f"type={tx_type.value} amount={delta:+,} "
            f"balance={balance_before:,} -> {balance_after:,} ref={ref_id}"
        )

        return tx, balance_after

    async def add_credits(self, user_id: str, amount: int, description: str):
        """Admin/top-up credit."""
        return await self.apply_transaction(
            user_id, TransactionType.CREDIT, amount, description
        )

    async def debit(self, user_id: str, amount: int, description: str):
        """Plain debit; rejected if it would overdraw."""
        return await self.apply_transaction(
            user_id, TransactionType.DEBIT, amount, description
        )

    async def charge_entry_fee(self, user_id: str, tournament_id: str, entry_fee: int):
        """Debit a tournament joining fee."""
        return await self.apply_transaction(
            user_id,
            TransactionType.TOURNAMENT_ENTRY,
            entry_fee,
            f"Tournament entry fee for tournament {tournament_id}",
            ref_id=tournament_id,
        )

    async def credit_prize(
        self,
        user_id: str,
        tournament_id: str,
        amount: int,
        description: str,
    ):
        """Credit a tournament prize (at most once per user and tournament)."""
        return await self.apply_transaction(
            user_id,
            TransactionType.TOURNAMENT_PRIZE,
            amount,
            description,
            ref_id=tournament_id,
        )

    async def refund_entry_fee(
        self,
        user_id: str,
        tournament_id: str,
        amount: int,
        description: str,
    ):
        """Refund a joining fee (at most once per user and tournament)."""
        return await self.apply_transaction(
            user_id,
            TransactionType.TOURNAMENT_REFUND,
            amount,
            description,
            ref_id=tournament_id,
        )

    async def list_transactions(
        self,
        user_id: str,
        page: int = 1,
        limit: int = 20,
        *,
        tx_type: TransactionType | None = None,
    ) -> TransactionPage:
        """Get a user's transaction history, newest first.

        Args:
            user_id: User ID
            page: 1-based page number
            limit: Page size (1..100)
            tx_type: Optional filter by transaction type

        Returns:
            TransactionPage with items and pagination totals
        """
        if page < 1:
            raise WalletError(f"page must be >= 1, got {page}")
        if not 1 <= limit <= MAX_PAGE_SIZE:
            raise WalletError(f"limit must be between 1 and {MAX_PAGE_SIZE}, got {limit}")

        filters = [WalletTransaction.user_id == user_id]
        if tx_type is not None:
            filters.append(WalletTransaction.tx_type == tx_type)

        query = (
            select(WalletTransaction)
            .where(*filters)
            .order_by(WalletTransaction.created_at.desc(), WalletTransaction.id.desc())
            .offset((page - 1) * limit)
            .limit(limit)
        )
        result = await self.session.execute(query)
        items = list(result.scalars().all())

        total = await self.session.scalar(
            select(func.count()).select_from(WalletTransaction).where(*filters)
        )

        return TransactionPage(items=items, page=page, limit=limit, total=total or 0)

    async def compute_ledger_balance(self, user_id: str) -> int:
        """Signed sum of all of a user's transactions."""
        signed = case(
            (WalletTransaction.tx_type.in_(list(DEBIT_TYPES)), -WalletTransaction.amount),
            else_=WalletTransaction.amount,
        )
        total = await self.session.scalar(
            select(func.coalesce(func.sum(signed), 0)).where(
                WalletTransaction.user_id == user_id
            )
        )
        return int(total or 0)

    async def reconcile(self, user_id: str) -> bool:
        """Check that the cached balance equals the transaction sum."""
        wallet = await self.session.get(Wallet, user_id)
        cached = wallet.balance if wallet else 0
        ledger = await self.compute_ledger_balance(user_id)
        if cached != ledger:
            logger.error(
                f"Wallet mismatch: user={user_id} balance={cached} ledger={ledger}"
            )
            return False
        return True

    async def _lock_wallet(self, user_id: str) -> Wallet:
        """Load the wallet row with FOR UPDATE, creating it at 0 if absent."""
        query = select(Wallet).where(Wallet.user_id == user_id).with_for_update()
        wallet = (await self.session.execute(query)).scalar_one_or_none()
        if wallet is not None:
            return wallet

        await self._insert_empty_wallet(user_id)
        return (await self.session.execute(query)).scalar_one()

    async def _create_wallet(self, user_id: str) -> Wallet:
        await self._insert_empty_wallet(user_id)
        return await self.session.get(Wallet, user_id, populate_existing=True)

    async def _insert_empty_wallet(self, user_id: str) -> None:
        """INSERT ... ON CONFLICT DO NOTHING, so concurrent creators both succeed."""
        dialect = self.session.get_bind().dialect.name
        if dialect == "postgresql":
            from sqlalchemy.dialects.postgresql import insert
        elif dialect == "sqlite":
            from sqlalchemy.dialects.sqlite import insert
        else:
            self.session.add(Wallet(user_id=user_id, balance=0))
            await self.session.flush()
            return

        now = datetime.now(timezone.utc)
        await self.session.execute(
            insert(Wallet)
            .values(user_id=user_id, balance=0, created_at=now, last_updated=now)
            .on_conflict_do_nothing(index_elements=[Wallet.user_id])
        )

    async def _settlement_exists(
        self,
        user_id: str,
        tx_type: TransactionType,
        ref_id: str,
    ) -> bool:
        existing = await self.session.scalar(
            select(WalletTransaction.id).where(
                WalletTransaction.user_id == user_id,
                WalletTransaction.tx_type == tx_type,
                WalletTransaction.ref_id == ref_id,
            )
        )
        return existing is not None

    async def invalidate_cached_balances(self) -> None:
        """Drop cached balances of every wallet written through this service.

        Await after the session commits. Invalidating before the commit lets a
        concurrent reader re-cache the old committed balance.
        """
        users, self._written_users = self._written_users, set()
        if self._redis is None or not users:
            return
        await self._redis.delete(*(f"{self.BALANCE_KEY_PREFIX}{u}" for u in sorted(users)))

    @staticmethod
    def _compute_integrity_hash(
        user_id: str,
        tx_type: TransactionType,
        amount: int,
        balance_before: int,
        balance_after: int,
    ) -> str:
        """Compute SHA-256 integrity hash for transaction.

        This hash can be verified later to detect tampering.
        """
        data = f"{user_id}:{tx_type.value}:{amount}:{balance_before}:{balance_after}"
        return hashlib.sha256(data.encode()).hexdigest()

    @staticmethod
    def verify_integrity(tx: WalletTransaction) -> bool:
        """Verify transaction integrity hash."""
        expected = WalletService._compute_integrity_hash(
            user_id=tx.user_id,
            tx_type=tx.tx_type,
            amount=tx.amount,
            balance_before=tx.balance_before,
            balance_after=tx.balance_after,
        )
        return tx.integrity_hash == expected
