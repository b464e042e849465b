"""
Telemetry Module
================

Observability stack for the sync engine.

Components:
- logging.py: Process-wide logging configuration
- sentry.py: Error tracking for caught-and-continued failures

Environment Variables:
- SENTRY_DSN: Sentry project DSN
- LOG_LEVEL: Root log level (default INFO)

Usage:
    from adsync.telemetry import init_observability, capture_exception

    init_observability(log_level="INFO")
"""

from typing import Optional

from adsync.telemetry.logging import configure_logging
from adsync.telemetry.sentry import (
    init_sentry,
    capture_exception,
    capture_message,
)


def init_observability(log_level: Optional[str] = None, sentry_dsn: Optional[str] = None) -> dict:
    """
    Initialize logging and error tracking.

    Returns:
        Dict with status of each tool initialization: {"sentry": True/False}
    """
    configure_logging(log_level)
    return {"sentry": init_sentry(dsn=sentry_dsn)}


__all__ = [
    "init_observability",
    "configure_logging",
    "init_sentry",
    "capture_exception",
    "capture_message",
]
