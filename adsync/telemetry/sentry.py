"""
Sentry Error Tracking
=====================

Centralized error tracking for the sync engine.

Related files:
- adsync/workers/arq_worker.py: Initializes Sentry on worker startup
- adsync/utils/tasks.py: Background task failures are captured here
- adsync/services/*.py: Caught-and-continued sync failures are captured here

Environment Variables:
- SENTRY_DSN: Sentry project DSN (required for Sentry to work)
- ENVIRONMENT: Environment name (production, staging, development)
- RELEASE_VERSION: Release tag (optional)
"""

from __future__ import annotations

import logging
import os
from typing import Optional

import sentry_sdk
from sentry_sdk.integrations.logging import LoggingIntegration
from sentry_sdk.integrations.redis import RedisIntegration
from sentry_sdk.integrations.sqlalchemy import SqlalchemyIntegration

logger = logging.getLogger(__name__)

_initialized = False


def init_sentry(dsn: Optional[str] = None, environment: Optional[str] = None) -> bool:
    """
    Initialize Sentry SDK for the worker process.

    Returns:
        True if Sentry was initialized, False when no DSN is configured or
        initialization failed.

    Example:
        from adsync.telemetry.sentry import init_sentry

        async def startup(ctx):
            init_sentry()
    """
    global _initialized

    dsn = dsn or os.environ.get("SENTRY_DSN")
    if not dsn:
        logger.debug("[SENTRY] No SENTRY_DSN configured - error tracking disabled")
        return False

    environment = environment or os.environ.get("ENVIRONMENT", "development")

    try:
        sentry_sdk.init(
            dsn=dsn,
            environment=environment,
            integrations=[
                SqlalchemyIntegration(),
                RedisIntegration(),
                LoggingIntegration(
                    level=logging.INFO,        # Capture INFO+ as breadcrumbs
                    event_level=logging.ERROR,  # Send ERROR+ as events
                ),
            ],
            traces_sample_rate=0.1,
            send_default_pii=False,
            release=os.environ.get("RELEASE_VERSION"),
        )
        _initialized = True
        logger.debug("[SENTRY] Initialized for %s environment", environment)
        return True

    except Exception as e:
        logger.error("[SENTRY] Failed to initialize: %s", e)
        return False


def capture_exception(exception: BaseException, extra: Optional[dict] = None) -> None:
    """
    Capture an exception that was caught and handled.

    Used wherever the engine logs-and-continues (a failed insight chunk, a
    failed background rollup) so the failure is still visible in monitoring.

    Args:
        exception: The exception to capture
        extra: Additional context to attach to the event

    Example:
        try:
            await self._sync_chunk(...)
        except Exception as e:
            capture_exception(e, extra={"operation": "insights_chunk", "account_id": account_id})
    """
    if not _initialized:
        logger.debug("Exception (Sentry disabled): %r", exception)
        return

    try:
        with sentry_sdk.new_scope() as scope:
            if extra:
                for key, value in extra.items():
                    scope.set_extra(key, value)
            sentry_sdk.capture_exception(exception)
    except Exception as e:
        logger.error("[SENTRY] Failed to capture exception: %s", e)


def capture_message(message: str, level: str = "info", extra: Optional[dict] = None) -> None:
    """
    Capture a message to Sentry.

    Args:
        message: The message to capture
        level: Severity level (debug, info, warning, error, fatal)
        extra: Additional context to attach
    """
    if not _initialized:
        logger.log(
            logging.getLevelName(level.upper()),
            "Message (Sentry disabled): %s", message,
        )
        return

    try:
        with sentry_sdk.new_scope() as scope:
            if extra:
                for key, value in extra.items():
                    scope.set_extra(key, value)
            sentry_sdk.capture_message(message, level=level)
    except Exception as e:
        logger.error("[SENTRY] Failed to capture message: %s", e)
