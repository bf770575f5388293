"""Exception classes for the settlement engine.

Every error carries a code for programmatic handling and a recoverable flag
telling the scheduler whether the tournament stays eligible for retry.
"""

from __future__ import annotations

from enum import Enum
from typing import Any


class ErrorCode(str, Enum):
    """Standard error codes."""

    INTERNAL_ERROR = "INTERNAL_ERROR"

    # Infrastructure
    TRANSIENT_INFRA = "TRANSIENT_INFRA"

    # Verification
    VERIFICATION_UNAVAILABLE = "VERIFICATION_UNAVAILABLE"
    VERIFICATION_REJECTED = "VERIFICATION_REJECTED"

    # Settlement
    SETTLEMENT_FAILURE = "SETTLEMENT_FAILURE"

    # Ledger
    INVALID_AMOUNT = "INVALID_AMOUNT"
    INSUFFICIENT_BALANCE = "INSUFFICIENT_BALANCE"
    DUPLICATE_TRANSACTION = "DUPLICATE_TRANSACTION"


class SettlementEngineError(Exception):
    """Base exception for settlement engine errors.

    Attributes:
        code: Error code for programmatic handling
        message: Human readable message
        details: Additional error details
        recoverable: Whether the work item may be retried on a later tick
    """

    def __init__(
        self,
        code: ErrorCode | str,
        message: str,
        details: dict[str, Any] | None = None,
        recoverable: bool = True,
    ):
        self.code = code if isinstance(code, str) else code.value
        self.message = message
        self.details = details or {}
        self.recoverable = recoverable
        super().__init__(message)

    def to_dict(self) -> dict[str, Any]:
        """Convert to dictionary for structured logging."""
        return {
            "errorCode": self.code,
            "errorMessage": self.message,
            "details": self.details,
            "recoverable": self.recoverable,
        }


class TransientInfraError(SettlementEngineError):
    """Storage or network failure while scanning; retried next tick."""

    def __init__(self, message: str, details: dict[str, Any] | None = None):
        super().__init__(
            code=ErrorCode.TRANSIENT_INFRA,
            message=message,
            details=details,
            recoverable=True,
        )


class VerificationUnavailable(SettlementEngineError):
    """The verification service could not give a verdict.

    Raised on timeouts, network errors, non-2xx responses and malformed
    bodies. This is not a verdict of passed=false.
    """

    def __init__(
        self,
        message: str,
        status_code: int | None = None,
        endpoint: str | None = None,
    ):
        super().__init__(
            code=ErrorCode.VERIFICATION_UNAVAILABLE,
            message=message,
            details={"statusCode": status_code, "endpoint": endpoint},
            recoverable=True,
        )
        self.status_code = status_code


class VerificationRejected(SettlementEngineError):
    """The service ruled the match invalid; participants are refunded."""

    def __init__(self, tournament_id: str, reason: str | None = None):
        super().__init__(
            code=ErrorCode.VERIFICATION_REJECTED,
            message=f"Match rejected for tournament {tournament_id}: {reason or 'no reason given'}",
            details={"tournamentId": tournament_id, "reason": reason},
            recoverable=False,
        )


class SettlementFailure(SettlementEngineError):
    """Payout computation or application failed after verification."""

    def __init__(self, tournament_id: str, cause: Exception):
        super().__init__(
            code=ErrorCode.SETTLEMENT_FAILURE,
            message=f"Settlement failed for tournament {tournament_id}: {cause}",
            details={"tournamentId": tournament_id, "cause": type(cause).__name__},
            recoverable=False,
        )
        self.__cause__ = cause
