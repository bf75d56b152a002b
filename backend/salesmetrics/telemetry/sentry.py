"""
Sentry Error Tracking
=====================

Centralized error tracking for the API and the arq worker.

Related files:
- salesmetrics/main.py: Initializes Sentry on app startup
- salesmetrics/workers/arq_worker.py: Initializes Sentry on worker startup
- salesmetrics/services/*.py: Batch and compute failures captured with context

Environment Variables:
- SENTRY_DSN: Sentry project DSN (tracking is disabled when unset)
- ENVIRONMENT: Environment name (production, staging, development)
"""

from __future__ import annotations

import os
import logging
from typing import Optional

import sentry_sdk
from sentry_sdk.integrations.fastapi import FastApiIntegration
from sentry_sdk.integrations.logging import LoggingIntegration
from sentry_sdk.integrations.sqlalchemy import SqlalchemyIntegration

logger = logging.getLogger(__name__)

_initialized = False


def init_sentry() -> bool:
    """
    Initialize Sentry SDK.

    Returns:
        True if Sentry was initialized, False when no DSN is configured or
        initialization failed.
    """
    global _initialized

    dsn = os.environ.get("SENTRY_DSN")
    if not dsn:
        logger.info("[SENTRY] SENTRY_DSN not set - error tracking disabled")
        return False

    environment = os.environ.get("ENVIRONMENT", "development")

    try:
        sentry_sdk.init(
            dsn=dsn,
            environment=environment,
            integrations=[
                FastApiIntegration(transaction_style="endpoint"),
                SqlalchemyIntegration(),
                LoggingIntegration(
                    level=logging.INFO,        # Capture INFO+ as breadcrumbs
                    event_level=logging.ERROR,  # Send ERROR+ as events
                ),
            ],
            traces_sample_rate=0.1,
            send_default_pii=False,
            release=os.environ.get("RELEASE_VERSION"),
        )
    except Exception as e:
        logger.error(f"[SENTRY] Failed to initialize: {e}")
        return False

    _initialized = True
    logger.debug(f"[SENTRY] Initialized for {environment} environment")
    return True


def set_user_context(user_id: str, email: Optional[str] = None, account_id: Optional[str] = None) -> None:
    """Attach the authenticated user to subsequent Sentry events."""
    if not _initialized:
        return
    sentry_sdk.set_user({"id": user_id, "email": email, "account_id": account_id})


def capture_exception(exception: BaseException, extra: Optional[dict] = None) -> None:
    """
    Manually capture an exception to Sentry.

    Use this for exceptions that are caught and handled (a failed batch, a
    wrapped store error) but should still be tracked.

    Example:
        except SQLAlchemyError as e:
            capture_exception(e, extra={"account_id": str(account_id), "batch": 3})
    """
    if not _initialized:
        logger.debug(f"Exception (Sentry disabled): {exception}")
        return

    with sentry_sdk.new_scope() as scope:
        if extra:
            for key, value in extra.items():
                scope.set_extra(key, value)
        sentry_sdk.capture_exception(exception)


def capture_message(message: str, level: str = "info", extra: Optional[dict] = None) -> None:
    """Capture a non-exception event (e.g. a rejected attribution conflict)."""
    if not _initialized:
        logger.log(logging.getLevelName(level.upper()), f"Message (Sentry disabled): {message}")
        return

    with sentry_sdk.new_scope() as scope:
        if extra:
            for key, value in extra.items():
                scope.set_extra(key, value)
        sentry_sdk.capture_message(message, level=level)
