"""
Sentry Error Tracking
=====================

Centralized error tracking for the sync workers and the scheduler.

Related files:
- adsync/workers/start_worker.py: Initializes Sentry on worker startup
- adsync/workers/scheduler.py: Initializes Sentry on scheduler startup
- adsync/workers/worker_pool.py: Captures unexpected job failures

Environment Variables:
- SENTRY_DSN: Sentry project DSN (required for Sentry to work)
- ENVIRONMENT: Environment name (production, staging, development)
"""

from __future__ import annotations

import logging
import os
from functools import lru_cache
from typing import Optional

import sentry_sdk
from sentry_sdk.integrations.logging import LoggingIntegration
from sentry_sdk.integrations.redis import RedisIntegration
from sentry_sdk.integrations.sqlalchemy import SqlalchemyIntegration

logger = logging.getLogger(__name__)

_initialized = False


@lru_cache()
def get_sentry_dsn() -> Optional[str]:
    """Get Sentry DSN from environment variable."""
    return os.environ.get("SENTRY_DSN")


def init_sentry(component: str = "worker") -> bool:
    """
    Initialize Sentry SDK for a worker or scheduler process.

    Every event is tagged with `component` so worker and scheduler failures
    can be filtered apart.

    Returns:
        True if Sentry was initialized, False when no DSN is configured or
        initialization failed.
    """
    global _initialized

    dsn = get_sentry_dsn()
    if not dsn:
        logger.info("[SENTRY] SENTRY_DSN not set - error tracking disabled")
        return False

    environment = os.environ.get("ENVIRONMENT", "development")

    try:
        sentry_sdk.init(
            dsn=dsn,
            environment=environment,
            integrations=[
                SqlalchemyIntegration(),
                RedisIntegration(),
                LoggingIntegration(
                    level=logging.INFO,         # INFO+ as breadcrumbs
                    event_level=logging.ERROR,  # ERROR+ as events
                ),
            ],
            traces_sample_rate=0.1,
            send_default_pii=False,
            release=os.environ.get("RELEASE_VERSION"),
            server_name=os.environ.get("HOSTNAME"),
        )
    except Exception as e:
        logger.error("[SENTRY] Failed to initialize: %s", e)
        return False

    sentry_sdk.set_tag("component", component)
    _initialized = True
    logger.debug("[SENTRY] Initialized %s for %s environment", component, environment)
    return True


def capture_exception(exception: BaseException, extra: Optional[dict] = None) -> None:
    """
    Capture a handled exception to Sentry.

    Job failures are handled by the queue retry policy, so they never reach
    Sentry's global hooks; workers report them explicitly through this.

    Args:
        exception: The exception to capture
        extra: Additional context (job id, queue, account)
    """
    if not _initialized:
        logger.debug("[SENTRY] Not initialized, skipping capture of %r", exception)
        return

    try:
        with sentry_sdk.new_scope() as scope:
            for key, value in (extra or {}).items():
                scope.set_extra(key, value)
            sentry_sdk.capture_exception(exception)
    except Exception as e:
        logger.error("[SENTRY] Failed to capture exception: %s", e)
