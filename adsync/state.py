"""
Shared Redis State
==================

Process-wide Redis client shared by the rate limiter, the job queues, the
account enqueue lock and the metrics cache.

WHY this exists:
- All workers in a process should draw from one connection pool
- The rate-limit bucket and queue state live in Redis so every worker
  process sees the same values

WHERE it's used:
- adsync/workers/start_worker.py: builds queues/limiter from this client
- adsync/workers/scheduler.py: orchestrator triggers and queue pruning

Design:
- Lazily created module-level singleton (tests inject fakeredis instead)
"""

import logging
from typing import Optional

from redis import ConnectionPool, Redis

from adsync.config import get_settings

logger = logging.getLogger(__name__)

redis_pool: Optional[ConnectionPool] = None
redis_client: Optional[Redis] = None


def get_redis() -> Redis:
    """Return the shared Redis client, creating the pool on first use."""
    global redis_pool, redis_client
    if redis_client is None:
        settings = get_settings()
        redis_pool = ConnectionPool.from_url(
            settings.REDIS_URL,
            max_connections=20,
            decode_responses=True,
        )
        redis_client = Redis(connection_pool=redis_pool)
        logger.info("[STATE] Shared Redis connection pool initialized (max_connections=20)")
    return redis_client


def close_redis() -> None:
    """Disconnect the shared pool (worker shutdown)."""
    global redis_pool, redis_client
    if redis_pool is not None:
        redis_pool.disconnect()
        logger.info("[STATE] Shared Redis connection pool closed")
    redis_pool = None
    redis_client = None
