"""Sentry error tracking for the settlement worker."""

import logging
import os
from typing import Any

import sentry_sdk
from sentry_sdk.integrations.celery import CeleryIntegration
from sentry_sdk.integrations.logging import LoggingIntegration
from sentry_sdk.integrations.redis import RedisIntegration
from sentry_sdk.integrations.sqlalchemy import SqlalchemyIntegration


def init_sentry(
    dsn: str | None = None,
    environment: str = "development",
    release: str | None = None,
    traces_sample_rate: float = 0.0,
) -> bool:
    """Initialize Sentry SDK.

    Args:
        dsn: Sentry DSN. If None, uses SENTRY_DSN env var.
        environment: Environment name (development, staging, production)
        release: Release version string
        traces_sample_rate: Fraction of transactions to trace

    Returns:
        True if Sentry was initialized, False otherwise
    """
    sentry_dsn = dsn or os.getenv("SENTRY_DSN")

    if not sentry_dsn:
        return False

    logging_integration = LoggingIntegration(
        level=logging.INFO,  # Capture INFO and above as breadcrumbs
        event_level=logging.ERROR,  # Send ERROR and above as events
    )

    sentry_sdk.init(
        dsn=sentry_dsn,
        environment=environment,
        release=release or os.getenv("APP_VERSION", "0.1.0"),
        integrations=[
            SqlalchemyIntegration(),
            RedisIntegration(),
            CeleryIntegration(),
            logging_integration,
        ],
        traces_sample_rate=traces_sample_rate,
        send_default_pii=False,
        before_send=_before_send,
    )

    return True


def _before_send(event: dict, hint: dict) -> dict | None:
    """Drop errors the scheduler retries on its own."""
    if "exc_info" in hint:
        exc_type, _, _ = hint["exc_info"]
        if exc_type.__name__ in ("VerificationUnavailable", "TransientInfraError"):
            return None

    return event


def capture_settlement_error(
    error: Exception,
    tournament_id: str,
    stage: str,
    extra: dict[str, Any] | None = None,
) -> str | None:
    """Report a terminal settlement failure with high priority.

    Args:
        error: The exception that occurred
        tournament_id: Tournament being settled
        stage: Where it failed (verify, payout, refund, mark)
        extra: Additional context

    Returns:
        Sentry event ID or None
    """
    with sentry_sdk.new_scope() as scope:
        scope.set_level("fatal")
        scope.set_tag("tournament_id", tournament_id)
        scope.set_tag("settlement_stage", stage)
        scope.set_tag("financial_error", "true")
        if extra:
            for key, value in extra.items():
                scope.set_extra(key, value)

        return sentry_sdk.capture_exception(error)
