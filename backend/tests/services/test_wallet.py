"""Tests for WalletService.

Tests for ledger writes, overdraft rejection, settlement idempotency,
history paging and integrity verification.
"""

import hashlib
from unittest.mock import AsyncMock, MagicMock

import pytest
from sqlalchemy import update

from prizeflow.models import TransactionType, Wallet, WalletTransaction
from prizeflow.services.wallet import (
    DuplicateTransactionError,
    InsufficientBalanceError,
    LedgerRejected,
    WalletError,
    WalletService,
)
from prizeflow.utils.db import session_scope


async def _apply(session_factory, *args, **kwargs):
    async with session_scope(session_factory) as session:
        return await WalletService(session).apply_transaction(*args, **kwargs)


async def _balance(session_factory, user_id):
    async with session_scope(session_factory) as session:
        return await WalletService(session).get_balance(user_id)


class TestWalletServiceGetBalance:
    """Tests for balance retrieval."""

    @pytest.fixture
    def wallet_service(self):
        """Create WalletService with mocked dependencies."""
        mock_session = MagicMock()
        service = WalletService(mock_session, redis=AsyncMock())
        return service

    @pytest.mark.asyncio
    async def test_get_balance_from_cache(self, wallet_service):
        """Should return cached balance when available."""
        wallet_service._redis.get.return_value = "1000"

        balance = await wallet_service.get_balance("user-123")

        assert balance == 1000
        wallet_service._redis.get.assert_called_once_with("wallet:balance:user-123")

    @pytest.mark.asyncio
    async def test_get_balance_from_db_when_cache_miss(self, wallet_service):
        """Should fetch from DB and cache when cache miss."""
        wallet_service._redis.get.return_value = None
        wallet_service.session.get = AsyncMock(return_value=Wallet(user_id="user-123", balance=500))

        balance = await wallet_service.get_balance("user-123")

        assert balance == 500
        wallet_service._redis.setex.assert_called_once_with(
            "wallet:balance:user-123", 300, "500"
        )

    @pytest.mark.asyncio
    async def test_get_balance_creates_missing_wallet(self, session_factory):
        """Should create an empty wallet for an unknown user."""
        assert await _balance(session_factory, "new-user") == 0

        async with session_factory() as session:
            wallet = await session.get(Wallet, "new-user")
        assert wallet is not None
        assert wallet.balance == 0


class TestWalletServiceApplyTransaction:
    """Tests for balance-changing writes."""

    @pytest.mark.asyncio
    async def test_credit_creates_wallet_and_transaction(self, session_factory):
        tx, balance = await _apply(
            session_factory, "user-1", TransactionType.CREDIT, 100, "Top up"
        )

        assert balance == 100
        assert tx.amount == 100
        assert tx.balance_before == 0
        assert tx.balance_after == 100
        assert tx.tx_type == TransactionType.CREDIT
        assert await _balance(session_factory, "user-1") == 100

    @pytest.mark.asyncio
    async def test_debit_subtracts(self, session_factory):
        await _apply(session_factory, "user-1", TransactionType.CREDIT, 100, "Top up")

        tx, balance = await _apply(
            session_factory, "user-1", TransactionType.DEBIT, 30, "Withdrawal"
        )

        assert balance == 70
        assert tx.balance_before == 100
        assert tx.balance_after == 70
        assert tx.signed_amount == -30

    @pytest.mark.asyncio
    async def test_entry_fee_is_debit_side(self, session_factory):
        async with session_scope(session_factory) as session:
            service = WalletService(session)
            await service.add_credits("user-1", 50, "Top up")
            tx, balance = await service.charge_entry_fee("user-1", "t-1", 20)

        assert balance == 30
        assert tx.tx_type == TransactionType.TOURNAMENT_ENTRY
        assert tx.ref_id == "t-1"
        assert tx.description == "Tournament entry fee for tournament t-1"

    @pytest.mark.asyncio
    async def test_overdraft_rejected_and_balance_unchanged(self, session_factory):
        await _apply(session_factory, "user-1", TransactionType.CREDIT, 10, "Top up")

        with pytest.raises(InsufficientBalanceError) as exc_info:
            await _apply(session_factory, "user-1", TransactionType.DEBIT, 30, "Withdrawal")

        assert exc_info.value.balance == 10
        assert exc_info.value.amount == 30
        assert await _balance(session_factory, "user-1") == 10

    @pytest.mark.asyncio
    async def test_overdraft_error_is_ledger_rejected(self, session_factory):
        with pytest.raises(LedgerRejected):
            await _apply(session_factory, "user-1", TransactionType.TOURNAMENT_ENTRY, 1, "Entry")

    @pytest.mark.asyncio
    async def test_credit_never_rejected_on_empty_wallet(self, session_factory):
        _, balance = await _apply(
            session_factory, "user-1", TransactionType.REFUND, 5, "Refund"
        )
        assert balance == 5

    @pytest.mark.asyncio
    @pytest.mark.parametrize("amount", [0, -10, 1.5, True, "10"])
    async def test_invalid_amount_rejected(self, session_factory, amount):
        with pytest.raises(WalletError, match="positive integer"):
            await _apply(session_factory, "user-1", TransactionType.CREDIT, amount, "Bad")

    @pytest.mark.asyncio
    async def test_cache_invalidated_after_commit(self, session_factory):
        committed_at_delete = []

        async def record_committed_balance(*keys):
            async with session_factory() as reader:
                wallet = await reader.get(Wallet, "user-1")
                committed_at_delete.append(wallet.balance if wallet else None)

        redis = AsyncMock()
        redis.delete.side_effect = record_committed_balance

        async with session_scope(session_factory) as session:
            service = WalletService(session, redis=redis)
            await service.add_credits("user-1", 10, "Top up")
            redis.delete.assert_not_awaited()
        await service.invalidate_cached_balances()

        redis.delete.assert_awaited_once_with("wallet:balance:user-1")
        assert committed_at_delete == [10]

    @pytest.mark.asyncio
    async def test_invalidate_without_writes_is_noop(self, session_factory):
        redis = AsyncMock()
        async with session_scope(session_factory) as session:
            service = WalletService(session, redis=redis)
            await service.invalidate_cached_balances()

        redis.delete.assert_not_awaited()


class TestSettlementIdempotency:
    """Prizes and refunds are unique per (user, tournament, type)."""

    @pytest.mark.asyncio
    async def test_duplicate_prize_rejected(self, session_factory):
        async with session_scope(session_factory) as session:
            await WalletService(session).credit_prize("user-1", "t-1", 67, "1st place prize")

        with pytest.raises(DuplicateTransactionError):
            async with session_scope(session_factory) as session:
                await WalletService(session).credit_prize("user-1", "t-1", 67, "1st place prize")

        assert await _balance(session_factory, "user-1") == 67

    @pytest.mark.asyncio
    async def test_duplicate_refund_rejected(self, session_factory):
        async with session_scope(session_factory) as session:
            await WalletService(session).refund_entry_fee("user-1", "t-1", 20, "Refund")

        with pytest.raises(DuplicateTransactionError):
            async with session_scope(session_factory) as session:
                await WalletService(session).refund_entry_fee("user-1", "t-1", 20, "Refund")

    @pytest.mark.asyncio
    async def test_prize_in_other_tournament_allowed(self, session_factory):
        async with session_scope(session_factory) as session:
            service = WalletService(session)
            await service.credit_prize("user-1", "t-1", 10, "prize")
            _, balance = await service.credit_prize("user-1", "t-2", 10, "prize")

        assert balance == 20

    @pytest.mark.asyncio
    async def test_repeated_credits_with_same_ref_allowed(self, session_factory):
        await _apply(session_factory, "user-1", TransactionType.CREDIT, 10, "a", ref_id="t-1")
        _, balance = await _apply(
            session_factory, "user-1", TransactionType.CREDIT, 10, "b", ref_id="t-1"
        )
        assert balance == 20

    @pytest.mark.asyncio
    async def test_unique_index_backs_the_precheck(self, session_factory):
        """A duplicate that slips past the lookup is still stopped by the index."""
        async with session_scope(session_factory) as session:
            await WalletService(session).credit_prize("user-1", "t-1", 10, "prize")

        with pytest.raises(DuplicateTransactionError):
            async with session_scope(session_factory) as session:
                service = WalletService(session)
                service._settlement_exists = AsyncMock(return_value=False)
                await service.credit_prize("user-1", "t-1", 10, "prize")

        assert await _balance(session_factory, "user-1") == 10


class TestTransactionHistory:
    """Tests for list_transactions paging."""

    @pytest.mark.asyncio
    async def test_pagination(self, session_factory):
        async with session_scope(session_factory) as session:
            service = WalletService(session)
            for i in range(25):
                await service.add_credits("user-1", i + 1, f"Top up {i}")

        async with session_factory() as session:
            service = WalletService(session)
            first = await service.list_transactions("user-1", page=1, limit=10)
            last = await service.list_transactions("user-1", page=3, limit=10)

        assert first.total == 25
        assert first.total_pages == 3
        assert len(first.items) == 10
        assert len(last.items) == 5
        created = [tx.created_at for tx in first.items]
        assert created == sorted(created, reverse=True)

    @pytest.mark.asyncio
    async def test_filter_by_type(self, session_factory):
        async with session_scope(session_factory) as session:
            service = WalletService(session)
            await service.add_credits("user-1", 100, "Top up")
            await service.debit("user-1", 10, "Withdrawal")

        async with session_factory() as session:
            page = await WalletService(session).list_transactions(
                "user-1", tx_type=TransactionType.DEBIT
            )

        assert page.total == 1
        assert page.items[0].tx_type == TransactionType.DEBIT

    @pytest.mark.asyncio
    async def test_empty_history(self, session_factory):
        async with session_factory() as session:
            page = await WalletService(session).list_transactions("nobody")

        assert page.items == []
        assert page.total == 0
        assert page.total_pages == 0

    @pytest.mark.asyncio
    @pytest.mark.parametrize("page,limit", [(0, 10), (1, 0), (1, 101)])
    async def test_invalid_paging_rejected(self, session_factory, page, limit):
        async with session_factory() as session:
            with pytest.raises(WalletError):
                await WalletService(session).list_transactions("user-1", page=page, limit=limit)


class TestLedgerIntegrity:
    """Tests for hashes and balance reconciliation."""

    def test_integrity_hash_matches_sha256(self):
        expected = hashlib.sha256(b"user-1:credit:100:0:100").hexdigest()

        actual = WalletService._compute_integrity_hash(
            user_id="user-1",
            tx_type=TransactionType.CREDIT,
            amount=100,
            balance_before=0,
            balance_after=100,
        )

        assert actual == expected

    def test_verify_integrity_detects_tampering(self):
        tx = WalletTransaction(
            user_id="user-1",
            tx_type=TransactionType.CREDIT,
            amount=100,
            balance_before=0,
            balance_after=100,
            description="Top up",
            integrity_hash=WalletService._compute_integrity_hash(
                "user-1", TransactionType.CREDIT, 100, 0, 100
            ),
        )
        assert WalletService.verify_integrity(tx) is True

        tx.amount = 1000
        assert WalletService.verify_integrity(tx) is False

    @pytest.mark.asyncio
    async def test_balance_equals_sum_of_transactions(self, session_factory):
        async with session_scope(session_factory) as session:
            service = WalletService(session)
            await service.add_credits("user-1", 100, "Top up")
            await service.charge_entry_fee("user-1", "t-1", 20)
            await service.refund_entry_fee("user-1", "t-1", 20, "Refund")
            await service.credit_prize("user-1", "t-2", 67, "1st place prize")
            await service.debit("user-1", 7, "Withdrawal")

        async with session_factory() as session:
            service = WalletService(session)
            assert await service.compute_ledger_balance("user-1") == 160
            assert await service.get_balance("user-1") == 160
            assert await service.reconcile("user-1") is True

    @pytest.mark.asyncio
    async def test_reconcile_detects_drift(self, session_factory):
        await _apply(session_factory, "user-1", TransactionType.CREDIT, 100, "Top up")

        async with session_scope(session_factory) as session:
            await session.execute(
                update(Wallet).where(Wallet.user_id == "user-1").values(balance=999)
            )

        async with session_factory() as session:
            assert await WalletService(session).reconcile("user-1") is False
