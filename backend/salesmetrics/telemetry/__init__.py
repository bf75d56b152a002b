"""
Telemetry Module
================

Observability for the sales metrics backend.

Components:
- sentry.py: Error tracking for API requests and arq jobs

Environment Variables:
- SENTRY_DSN: Sentry project DSN
- ENVIRONMENT: Environment name

Usage:
    from salesmetrics.telemetry import init_observability

    init_observability()
"""

from salesmetrics.telemetry.sentry import (
    init_sentry,
    set_user_context,
    capture_exception,
    capture_message,
)


def init_observability() -> dict:
    """
    Initialize all observability tools.

    Returns:
        Dict with status of each tool initialization, e.g. {"sentry": False}
    """
    return {
        "sentry": init_sentry(),
    }


__all__ = [
    "init_observability",
    "init_sentry",
    "set_user_context",
    "capture_exception",
    "capture_message",
]
