#!/usr/bin/env python3
"""Start the arq workers for the sync and dimensions queues.

USAGE:
    python -m adsync.workers.start_worker

    Or via the console script:
    adsync-worker
"""

import asyncio
import logging
import signal
import sys
from typing import Any, Dict

# Configure logging
logging.basicConfig(
    level=logging.INFO,
    format="%(asctime)s [%(levelname)s] %(name)s: %(message)s",
    handlers=[logging.StreamHandler(sys.stdout)],
)

logger = logging.getLogger(__name__)


def build_deps(settings, redis_client) -> Dict[str, Any]:
    """Shared handler dependencies: DB sessions, provider client, cache."""
    from adsync.database import SessionLocal
    from adsync.services.google_ads_client import GoogleAdsApiClient
    from adsync.services.google_oauth import GoogleOAuthClient
    from adsync.services.metrics_cache import MetricsCache
    from adsync.services.rate_limiter import TokenBucketRateLimiter
    from adsync.services.token_service import CredentialVault

    vault = CredentialVault(SessionLocal, GoogleOAuthClient(settings))
    limiter = TokenBucketRateLimiter(
        redis_client,
        settings.RATE_LIMIT_KEY,
        capacity=settings.RATE_LIMIT_CAPACITY,
        refill_rate=settings.RATE_LIMIT_REFILL_PER_SECOND,
        max_wait_ms=settings.RATE_LIMIT_MAX_WAIT_MS,
        poll_interval_ms=settings.RATE_LIMIT_POLL_INTERVAL_MS,
    )
    return {
        "session_factory": SessionLocal,
        "ads_client": GoogleAdsApiClient(vault.get_valid_access_token, limiter, settings=settings),
        "cache": MetricsCache(
            redis_client, prefix=settings.CACHE_PREFIX, ttl_seconds=settings.CACHE_TTL_SECONDS,
        ),
        "settings": settings,
    }


def build_pool(settings, redis_client, **worker_options):
    """One arq Worker per queue, each with its own start throttle. Call inside a running loop."""
    from adsync.workers.dimensions_processor import run_dimensions_job
    from adsync.workers.job_queue import dimensions_queue_definition, get_redis_settings, sync_queue_definition
    from adsync.workers.sync_processor import run_sync_job
    from adsync.workers.worker_pool import (
        WorkerPool,
        build_start_throttle,
        build_worker,
        dimensions_worker_settings,
        sync_worker_settings,
    )

    deps = build_deps(settings, redis_client)
    worker_options.setdefault("handle_signals", False)
    if "redis_pool" not in worker_options:
        worker_options["redis_settings"] = get_redis_settings(settings.REDIS_URL)

    workers = []
    for function, definition, worker_settings in (
        (run_sync_job, sync_queue_definition(settings), sync_worker_settings(settings)),
        (run_dimensions_job, dimensions_queue_definition(settings), dimensions_worker_settings(settings)),
    ):
        workers.append(build_worker(
            function,
            definition,
            worker_settings,
            deps,
            throttle=build_start_throttle(redis_client, worker_settings),
            **worker_options,
        ))
    return WorkerPool(workers)


async def _serve(settings, redis_client) -> None:
    pool = build_pool(settings, redis_client)
    loop = asyncio.get_running_loop()
    for sig in (signal.SIGINT, signal.SIGTERM):
        try:
            loop.add_signal_handler(sig, pool.stop, sig)
        except NotImplementedError:
            # add_signal_handler is unavailable on Windows event loops
            signal.signal(sig, lambda signum, _: loop.call_soon_threadsafe(pool.stop, signum))

    await pool.run()


def main():
    """Start the worker pool."""
    from adsync.config import get_settings
    from adsync.state import close_redis, get_redis
    from adsync.telemetry import init_sentry
    from adsync.utils.env import load_env_file

    load_env_file()
    init_sentry("worker")
    settings = get_settings()

    logger.info("Starting adsync workers...")
    try:
        asyncio.run(_serve(settings, get_redis()))
    finally:
        close_redis()


if __name__ == "__main__":
    main()
