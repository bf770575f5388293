"""
Tournament Settlement Processor.

Settles tournaments whose results are due, exactly once each.

Flow per tournament:
- Snapshot participants and their external identities
- validate-match-history on the verification service
- passed=false: refund every participant's joining fee, status=invalid
- passed=true: leaderboard, pay 1st-3rd their share of the prize pool,
  status=valid
- Verification service unavailable: leave the tournament pending

Every wallet write commits on its own, and prizes/refunds are unique per
(user, tournament, type) in the ledger, so a settlement interrupted halfway
can be run again without paying anyone twice. A tournament with a failed
wallet write stays unprocessed and is settled again on the next tick.

Usage:
    processor = SettlementProcessor(session_factory, verification_client)
    summaries = await processor.run()
"""

import math
from dataclasses import dataclass, field
from datetime import datetime, timezone
from decimal import Decimal
from enum import Enum
from typing import Dict, List, Optional, Sequence
from uuid import uuid4

from redis.asyncio import Redis
from sqlalchemy.exc import SQLAlchemyError
from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker

from prizeflow.logging_config import get_logger
from prizeflow.models import PlayerIdentity, TournamentStatus, as_utc
from prizeflow.services.verification import (
    Leaderboard,
    LeaderboardEntry,
    MatchVerificationClient,
    RosterEntry,
)
from prizeflow.services.wallet import DuplicateTransactionError, WalletService
from prizeflow.tournament.distributed_lock import (
    DistributedLockManager,
    LockAcquisitionError,
    LockScope,
)
from prizeflow.tournament.repository import TournamentRepository
from prizeflow.utils.db import session_scope
from prizeflow.utils.errors import (
    SettlementFailure,
    TransientInfraError,
    VerificationRejected,
    VerificationUnavailable,
)
from prizeflow.utils.sentry import capture_settlement_error

logger = get_logger(__name__)

PAID_POSITIONS = 3


def ordinal_suffix(n: int) -> str:
    """1 -> "1st", 2 -> "2nd", 11 -> "11th", 23 -> "23rd"."""
    if 10 <= n % 100 <= 20:
        suffix = "th"
    else:
        suffix = {1: "st", 2: "nd", 3: "rd"}.get(n % 10, "th")
    return f"{n}{suffix}"


def calculate_prize_amounts(prize_pool: int, percentages: Sequence[float]) -> List[int]:
    """Floor of each share of the pool; the sum never exceeds the pool."""
    pool = Decimal(prize_pool)
    return [math.floor(Decimal(str(pct or 0)) * pool) for pct in percentages]


class SettlementOutcome(str, Enum):
    """What happened to a tournament in one settlement attempt."""

    VALID = "valid"
    INVALID = "invalid"
    DEFERRED = "deferred"
    SKIPPED = "skipped"


@dataclass
class PayoutResult:
    """Prize credited (or not) to one winner."""

    payout_id: str = field(default_factory=lambda: str(uuid4()))
    user_id: str = ""
    player_name: str = ""
    rank: int = 0
    prize_amount: int = 0
    prize_percentage: float = 0.0
    kills: Optional[int] = None
    average_combat_score: Optional[float] = None
    transaction_id: Optional[str] = None
    new_balance: Optional[int] = None
    success: bool = True
    already_paid: bool = False
    error_message: Optional[str] = None
    paid_at: datetime = field(default_factory=lambda: datetime.now(timezone.utc))

    def to_dict(self) -> dict:
        return {
            "payout_id": self.payout_id,
            "user_id": self.user_id,
            "player_name": self.player_name,
            "rank": self.rank,
            "prize_amount": self.prize_amount,
            "prize_percentage": self.prize_percentage,
            "kills": self.kills,
            "average_combat_score": self.average_combat_score,
            "transaction_id": self.transaction_id,
            "new_balance": self.new_balance,
            "success": self.success,
            "already_paid": self.already_paid,
            "error_message": self.error_message,
            "paid_at": self.paid_at.isoformat(),
        }


@dataclass
class RefundResult:
    """Joining fee returned (or not) to one participant."""

    user_id: str = ""
    player_name: str = ""
    refund_amount: int = 0
    transaction_id: Optional[str] = None
    new_balance: Optional[int] = None
    success: bool = True
    already_refunded: bool = False
    error_message: Optional[str] = None

    def to_dict(self) -> dict:
        return {
            "user_id": self.user_id,
            "player_name": self.player_name,
            "refund_amount": self.refund_amount,
            "transaction_id": self.transaction_id,
            "new_balance": self.new_balance,
            "success": self.success,
            "already_refunded": self.already_refunded,
            "error_message": self.error_message,
        }


@dataclass
class SettlementSummary:
    """Result of one settlement attempt."""

    settlement_id: str = field(default_factory=lambda: str(uuid4()))
    tournament_id: str = ""
    tournament_name: str = ""
    outcome: SettlementOutcome = SettlementOutcome.SKIPPED
    prize_pool: int = 0
    joining_fee: int = 0
    match_id: Optional[str] = None
    message: Optional[str] = None
    error: Optional[dict] = None
    marked: bool = False
    payouts: List[PayoutResult] = field(default_factory=list)
    refunds: List[RefundResult] = field(default_factory=list)
    unmatched_positions: List[int] = field(default_factory=list)
    settled_at: datetime = field(default_factory=lambda: datetime.now(timezone.utc))

    @property
    def total_paid(self) -> int:
        return sum(p.prize_amount for p in self.payouts if p.success)

    @property
    def total_refunded(self) -> int:
        return sum(r.refund_amount for r in self.refunds if r.success)

    @property
    def failed_payouts(self) -> int:
        return sum(1 for p in self.payouts if not p.success)

    @property
    def failed_refunds(self) -> int:
        return sum(1 for r in self.refunds if not r.success)

    def to_dict(self) -> dict:
        return {
            "settlement_id": self.settlement_id,
            "tournament_id": self.tournament_id,
            "tournament_name": self.tournament_name,
            "outcome": self.outcome.value,
            "prize_pool": self.prize_pool,
            "joining_fee": self.joining_fee,
            "match_id": self.match_id,
            "message": self.message,
            "error": self.error,
            "marked": self.marked,
            "total_paid": self.total_paid,
            "total_refunded": self.total_refunded,
            "payouts": [p.to_dict() for p in self.payouts],
            "refunds": [r.to_dict() for r in self.refunds],
            "unmatched_positions": list(self.unmatched_positions),
            "settled_at": self.settled_at.isoformat(),
        }


@dataclass(frozen=True)
class TournamentSnapshot:
    """Tournament fields read once, before talking to the verifier."""

    tournament_id: str
    name: str
    joining_fee: int
    prize_pool: int
    prize_percentages: tuple
    match_start_time: datetime
    match_map: str
    participant_ids: tuple
    identities: Dict[str, PlayerIdentity]

    def roster(self) -> List[RosterEntry]:
        """Participants with a known external identity, in join order."""
        return [
            RosterEntry(
                name=identity.name,
                tag=identity.tag,
                region=identity.region,
                platform=identity.platform,
            )
            for identity in (self.identities.get(pid) for pid in self.participant_ids)
            if identity is not None
        ]

    def player_name(self, player_id: str) -> str:
        identity = self.identities.get(player_id)
        return identity.name if identity else player_id


@dataclass(frozen=True)
class PlannedPayout:
    rank: int
    user_id: str
    player_name: str
    amount: int
    percentage: float
    entry: LeaderboardEntry


class SettlementProcessor:
    """
    Settles due tournaments against the verification service.

    Tournaments are settled one after another. With a lock manager, each
    settlement additionally holds a Redis lock so that redundant workers
    never settle the same tournament concurrently.
    """

    def __init__(
        self,
        session_factory: async_sessionmaker[AsyncSession],
        verifier: MatchVerificationClient,
        redis: Optional[Redis] = None,
        lock_manager: Optional[DistributedLockManager] = None,
        balance_cache_ttl: int = 300,
        lock_ttl_seconds: int = 300,
    ):
        """
        Initialize settlement processor.

        Args:
            session_factory: Factory for per-unit-of-work sessions
            verifier: Verification service client
            redis: Optional Redis client for the wallet balance cache
            lock_manager: Optional lock manager for multi-instance deployments
            balance_cache_ttl: Balance cache TTL passed to WalletService
            lock_ttl_seconds: TTL of the per-tournament settlement lock
        """
        self._session_factory = session_factory
        self.verifier = verifier
        self._redis = redis
        self.lock_manager = lock_manager
        self._balance_cache_ttl = balance_cache_ttl
        self._lock_ttl_ms = lock_ttl_seconds * 1000

    async def run(self, now: Optional[datetime] = None) -> List[SettlementSummary]:
        """Settle every due tournament.

        Raises:
            TransientInfraError: The scan for due tournaments failed
        """
        now = now or datetime.now(timezone.utc)

        try:
            async with session_scope(self._session_factory) as session:
                due_ids = await TournamentRepository(session).find_due_for_settlement(now)
        except SQLAlchemyError as e:
            raise TransientInfraError(
                "Settlement scan failed",
                details={"error": str(e)},
            ) from e

        summaries = []
        for tournament_id in due_ids:
            summaries.append(await self.process_tournament(tournament_id, now))

        if due_ids:
            logger.info(
                "settlement_run_complete",
                due=len(due_ids),
                valid=sum(1 for s in summaries if s.outcome == SettlementOutcome.VALID),
                invalid=sum(1 for s in summaries if s.outcome == SettlementOutcome.INVALID),
                deferred=sum(1 for s in summaries if s.outcome == SettlementOutcome.DEFERRED),
            )
        return summaries

    async def process_tournament(
        self,
        tournament_id: str,
        now: Optional[datetime] = None,
    ) -> SettlementSummary:
        """Settle one tournament, under its Redis lock when configured."""
        now = now or datetime.now(timezone.utc)

        if self.lock_manager is None:
            return await self.settle_tournament(tournament_id, now)

        try:
            async with self.lock_manager.lock(
                LockScope.SETTLEMENT,
                tournament_id,
                lock_timeout_ms=self._lock_ttl_ms,
                acquire_timeout_ms=0,
            ):
                return await self.settle_tournament(tournament_id, now)
        except LockAcquisitionError:
            logger.info("settlement_locked_elsewhere", tournament_id=tournament_id)
            return SettlementSummary(
                tournament_id=tournament_id,
                outcome=SettlementOutcome.SKIPPED,
                message="Settlement in progress on another worker",
            )

    async def settle_tournament(
        self,
        tournament_id: str,
        now: Optional[datetime] = None,
    ) -> SettlementSummary:
        """
        Verify and settle one tournament.

        Args:
            tournament_id: Tournament ID
            now: Reference time for the due check

        Returns:
            SettlementSummary; outcome DEFERRED or SKIPPED leaves the
            tournament unprocessed
        """
        now = now or datetime.now(timezone.utc)
        summary = SettlementSummary(tournament_id=tournament_id)

        try:
            snapshot = await self._load_snapshot(tournament_id, now)
        except SQLAlchemyError as e:
            error = TransientInfraError(
                "Could not load tournament for settlement",
                details={"tournamentId": tournament_id, "error": str(e)},
            )
            logger.warning("settlement_load_failed", tournament_id=tournament_id, error=str(e))
            summary.outcome = SettlementOutcome.DEFERRED
            summary.error = error.to_dict()
            return summary

        if snapshot is None:
            summary.message = "Not due or already processed"
            return summary

        summary.tournament_name = snapshot.name
        summary.prize_pool = snapshot.prize_pool
        summary.joining_fee = snapshot.joining_fee

        if not snapshot.participant_ids:
            logger.warning("settlement_skipped_no_participants", tournament_id=tournament_id)
            summary.message = "No participants"
            return summary

        roster = snapshot.roster()
        logger.info(
            "settlement_started",
            tournament_id=tournament_id,
            participants=len(snapshot.participant_ids),
            roster=len(roster),
        )

        stage = "verify"
        try:
            validation = await self.verifier.validate(
                roster, snapshot.match_start_time, snapshot.match_map
            )
            summary.match_id = _str_or_none(validation.match_id)
            summary.message = validation.message

            if not validation.passed:
                stage = "refund"
                rejection = VerificationRejected(tournament_id, validation.message)
                summary.outcome = SettlementOutcome.INVALID
                summary.error = rejection.to_dict()
                await self._refund_all(snapshot, summary)
                if summary.failed_refunds:
                    return self._defer_incomplete(summary)
                stage = "mark"
                summary.marked = await self._mark(tournament_id, TournamentStatus.INVALID)
            else:
                board = await self.verifier.leaderboard(
                    roster, snapshot.match_start_time, snapshot.match_map
                )
                summary.match_id = _str_or_none(board.match_id) or summary.match_id
                stage = "payout"
                plan = self.plan_payouts(snapshot, board, summary)
                await self._pay_winners(snapshot, plan, summary)
                if summary.failed_payouts:
                    return self._defer_incomplete(summary)
                summary.outcome = SettlementOutcome.VALID
                stage = "mark"
                summary.marked = await self._mark(tournament_id, TournamentStatus.VALID)

        except VerificationUnavailable as e:
            logger.warning(
                "verification_unavailable",
                tournament_id=tournament_id,
                status_code=e.status_code,
                error=e.message,
            )
            summary.outcome = SettlementOutcome.DEFERRED
            summary.error = e.to_dict()
            return summary

        except Exception as e:
            failure = SettlementFailure(tournament_id, e)
            logger.error(
                "settlement_failed",
                tournament_id=tournament_id,
                stage=stage,
                error=str(e),
                exc_info=True,
            )
            capture_settlement_error(e, tournament_id, stage)
            summary.outcome = SettlementOutcome.INVALID
            summary.error = failure.to_dict()
            try:
                summary.marked = await self._mark(tournament_id, TournamentStatus.INVALID)
            except SQLAlchemyError as mark_error:
                # Stays unprocessed; picked up again next tick
                logger.error(
                    "settlement_mark_failed",
                    tournament_id=tournament_id,
                    error=str(mark_error),
                )
            return summary

        self._log_summary(summary)
        return summary

    def plan_payouts(
        self,
        snapshot: TournamentSnapshot,
        board: Leaderboard,
        summary: Optional[SettlementSummary] = None,
    ) -> List[PlannedPayout]:
        """
        Map the top leaderboard positions to participants and amounts.

        Positions with a zero amount are dropped. Positions whose identity
        does not belong to a participant are logged and dropped.
        """
        by_identity = {
            identity.identity_key: player_id
            for player_id, identity in snapshot.identities.items()
            if player_id in snapshot.participant_ids
        }
        amounts = calculate_prize_amounts(snapshot.prize_pool, snapshot.prize_percentages)

        plan: List[PlannedPayout] = []
        for rank, entry in enumerate(board.entries[:PAID_POSITIONS], 1):
            amount = amounts[rank - 1]
            if amount <= 0:
                continue

            user_id = by_identity.get(entry.player_info.identity_key)
            if user_id is None:
                logger.error(
                    "winner_not_a_participant",
                    tournament_id=snapshot.tournament_id,
                    rank=rank,
                    player=entry.player_info.display_name,
                    platform=entry.player_info.platform,
                    region=entry.player_info.region,
                )
                if summary is not None:
                    summary.unmatched_positions.append(rank)
                continue

            plan.append(
                PlannedPayout(
                    rank=rank,
                    user_id=user_id,
                    player_name=entry.player_info.name,
                    amount=amount,
                    percentage=snapshot.prize_percentages[rank - 1],
                    entry=entry,
                )
            )
        return plan

    async def retry_failed(self, summary: SettlementSummary) -> SettlementSummary:
        """
        Re-apply payouts and refunds that failed in a previous attempt,
        without asking the verification service again.

        Anything that went through in the meantime is reported by the
        ledger as a duplicate and counted as done.
        """
        for result in [p for p in summary.payouts if not p.success]:
            result.error_message = None
            await self._credit(
                summary.tournament_id,
                result,
                f"{ordinal_suffix(result.rank)} place prize for {summary.tournament_name}",
            )
        for refund in [r for r in summary.refunds if not r.success]:
            refund.error_message = None
            await self._refund(summary.tournament_id, summary.tournament_name, refund)

        logger.info(
            "settlement_retry_complete",
            tournament_id=summary.tournament_id,
            failed_payouts=summary.failed_payouts,
            failed_refunds=summary.failed_refunds,
        )
        return summary

    async def _load_snapshot(
        self,
        tournament_id: str,
        now: datetime,
    ) -> Optional[TournamentSnapshot]:
        async with session_scope(self._session_factory) as session:
            repo = TournamentRepository(session)
            tournament = await repo.get(tournament_id)
            if tournament is None or tournament.processed:
                return None
            if as_utc(tournament.match_result_time) >= now:
                return None

            participant_ids = await repo.list_participant_ids(tournament_id)
            identities = await repo.get_identities(participant_ids)

            return TournamentSnapshot(
                tournament_id=tournament.id,
                name=tournament.name,
                joining_fee=tournament.joining_fee,
                prize_pool=tournament.prize_pool,
                prize_percentages=tournament.prize_percentages,
                match_start_time=as_utc(tournament.match_start_time),
                match_map=tournament.match_map,
                participant_ids=tuple(participant_ids),
                identities=identities,
            )

    async def _refund_all(
        self,
        snapshot: TournamentSnapshot,
        summary: SettlementSummary,
    ) -> None:
        if snapshot.joining_fee <= 0:
            logger.info("refund_skipped_free_entry", tournament_id=snapshot.tournament_id)
            return

        for player_id in snapshot.participant_ids:
            refund = RefundResult(
                user_id=player_id,
                player_name=snapshot.player_name(player_id),
                refund_amount=snapshot.joining_fee,
            )
            await self._refund(snapshot.tournament_id, snapshot.name, refund)
            summary.refunds.append(refund)

    async def _refund(
        self,
        tournament_id: str,
        tournament_name: str,
        refund: RefundResult,
    ) -> None:
        description = f"Joining fee refund for {tournament_name} (match invalid)"
        try:
            async with session_scope(self._session_factory) as session:
                wallet = self._wallet(session)
                tx, balance = await wallet.refund_entry_fee(
                    refund.user_id, tournament_id, refund.refund_amount, description
                )
            await wallet.invalidate_cached_balances()
            refund.transaction_id = tx.id
            refund.new_balance = balance
            refund.success = True
        except DuplicateTransactionError:
            refund.already_refunded = True
            refund.success = True
            logger.info(
                "refund_already_recorded",
                tournament_id=tournament_id,
                user_id=refund.user_id,
            )
        except Exception as e:
            refund.success = False
            refund.error_message = str(e)
            logger.error(
                "refund_failed",
                tournament_id=tournament_id,
                user_id=refund.user_id,
                amount=refund.refund_amount,
                error=str(e),
                exc_info=True,
            )
            capture_settlement_error(
                e, tournament_id, "refund", {"user_id": refund.user_id}
            )

    async def _pay_winners(
        self,
        snapshot: TournamentSnapshot,
        plan: List[PlannedPayout],
        summary: SettlementSummary,
    ) -> None:
        for planned in plan:
            result = PayoutResult(
                user_id=planned.user_id,
                player_name=planned.player_name,
                rank=planned.rank,
                prize_amount=planned.amount,
                prize_percentage=planned.percentage * 100,
                kills=planned.entry.kills,
                average_combat_score=planned.entry.average_combat_score,
            )
            description = (
                f"{ordinal_suffix(planned.rank)} place prize for {snapshot.name}"
            )
            await self._credit(snapshot.tournament_id, result, description)
            summary.payouts.append(result)

    async def _credit(
        self,
        tournament_id: str,
        result: PayoutResult,
        description: str,
    ) -> None:
        try:
            async with session_scope(self._session_factory) as session:
                wallet = self._wallet(session)
                tx, balance = await wallet.credit_prize(
                    result.user_id, tournament_id, result.prize_amount, description
                )
            await wallet.invalidate_cached_balances()
            result.transaction_id = tx.id
            result.new_balance = balance
            result.success = True
            result.paid_at = datetime.now(timezone.utc)
            logger.info(
                "tournament_prize_paid",
                tournament_id=tournament_id,
                user_id=result.user_id,
                rank=result.rank,
                amount=result.prize_amount,
            )
        except DuplicateTransactionError:
            result.already_paid = True
            result.success = True
            logger.info(
                "tournament_prize_already_paid",
                tournament_id=tournament_id,
                user_id=result.user_id,
                rank=result.rank,
            )
        except Exception as e:
            result.success = False
            result.error_message = str(e)
            logger.error(
                "tournament_prize_failed",
                tournament_id=tournament_id,
                user_id=result.user_id,
                amount=result.prize_amount,
                error=str(e),
                exc_info=True,
            )
            capture_settlement_error(
                e, tournament_id, "payout", {"user_id": result.user_id}
            )

    async def _mark(self, tournament_id: str, status: TournamentStatus) -> bool:
        async with session_scope(self._session_factory) as session:
            marked = await TournamentRepository(session).mark_processed(tournament_id, status)
        if not marked:
            logger.warning(
                "tournament_already_processed",
                tournament_id=tournament_id,
                status=status.value,
            )
        return marked

    @staticmethod
    def _defer_incomplete(summary: SettlementSummary) -> SettlementSummary:
        """Leave the tournament unprocessed so the next tick settles it again.

        Writes that went through are reported as duplicates on the next
        attempt, so only the failed users are paid then.
        """
        error = TransientInfraError(
            "Settlement incomplete: wallet writes failed",
            details={
                "tournamentId": summary.tournament_id,
                "failedPayouts": summary.failed_payouts,
                "failedRefunds": summary.failed_refunds,
            },
        )
        logger.warning(
            "settlement_incomplete",
            tournament_id=summary.tournament_id,
            failed_payouts=summary.failed_payouts,
            failed_refunds=summary.failed_refunds,
        )
        summary.outcome = SettlementOutcome.DEFERRED
        summary.error = error.to_dict()
        return summary

    def _wallet(self, session: AsyncSession) -> WalletService:
        return WalletService(
            session,
            redis=self._redis,
            balance_cache_ttl=self._balance_cache_ttl,
        )

    @staticmethod
    def _log_summary(summary: SettlementSummary) -> None:
        logger.info(
            "tournament_settled",
            tournament_id=summary.tournament_id,
            outcome=summary.outcome.value,
            match_id=summary.match_id,
            total_paid=summary.total_paid,
            total_refunded=summary.total_refunded,
            failed_payouts=summary.failed_payouts,
            failed_refunds=summary.failed_refunds,
            unmatched_positions=summary.unmatched_positions,
        )


def _str_or_none(value) -> Optional[str]:
    return None if value is None else str(value)
