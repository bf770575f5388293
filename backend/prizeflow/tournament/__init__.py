"""
Tournament settlement pipeline.

- prize_pool: freezes prize pools shortly before match start
- settlement: verifies results and pays winners or refunds entrants
- scheduler: runs both on an interval
"""

from .prize_pool import (
    FinalizationReport,
    PrizePoolFinalizer,
    compute_prize_pool,
    estimate_prize_pool,
    match_result_time_for,
)
from .repository import TournamentRepository
from .scheduler import SettlementScheduler, TickResult
from .settlement import (
    PayoutResult,
    RefundResult,
    SettlementOutcome,
    SettlementProcessor,
    SettlementSummary,
    calculate_prize_amounts,
    ordinal_suffix,
)

__all__ = [
    "FinalizationReport",
    "PrizePoolFinalizer",
    "compute_prize_pool",
    "estimate_prize_pool",
    "match_result_time_for",
    "TournamentRepository",
    "SettlementScheduler",
    "TickResult",
    "PayoutResult",
    "RefundResult",
    "SettlementOutcome",
    "SettlementProcessor",
    "SettlementSummary",
    "calculate_prize_amounts",
    "ordinal_suffix",
]
