"""Aggregate query cache and its invalidation.

WHAT:
    Read-through cache for aggregate metrics queries (written by the
    dashboard API) plus account-level invalidation run after each sync.

WHY:
    Cached aggregates embed the account ids they cover in the key, so a
    finished sync can purge everything that mentions its account with one
    SCAN pattern. Invalidation is best-effort: a Redis error is logged and
    the stale entry simply expires on its TTL.

KEY FORMAT:
    metrics:{organization_id}:{sorted account ids}:{query hash}
"""

import hashlib
import json
import logging
from typing import Any, Iterable, Optional

from redis import Redis
from redis.exceptions import RedisError

logger = logging.getLogger(__name__)


class MetricsCache:
    def __init__(self, redis_client: Redis, *, prefix: str = "metrics", ttl_seconds: int = 300):
        self.redis = redis_client
        self.prefix = prefix
        self.ttl_seconds = ttl_seconds

    def build_key(self, organization_id: Any, account_ids: Iterable[Any], query: dict) -> str:
        accounts = ",".join(sorted(str(a) for a in account_ids))
        digest = hashlib.sha1(json.dumps(query, sort_keys=True, default=str).encode("utf-8")).hexdigest()[:16]
        return f"{self.prefix}:{organization_id}:{accounts}:{digest}"

    def get(self, key: str) -> Optional[Any]:
        try:
            raw = self.redis.get(key)
        except RedisError as e:
            logger.warning("[CACHE] get failed for %s: %s", key, e)
            return None
        return json.loads(raw) if raw else None

    def set(self, key: str, value: Any, ttl_seconds: Optional[int] = None) -> None:
        try:
            self.redis.set(key, json.dumps(value, default=str), ex=ttl_seconds or self.ttl_seconds)
        except RedisError as e:
            logger.warning("[CACHE] set failed for %s: %s", key, e)

    def invalidate_account(self, account_id: Any) -> int:
        """Delete every cached aggregate whose key mentions `account_id`.

        Returns:
            Number of keys deleted (0 when Redis failed).
        """
        pattern = f"{self.prefix}:*{account_id}*"
        deleted = 0
        try:
            batch = []
            for key in self.redis.scan_iter(match=pattern, count=500):
                batch.append(key)
                if len(batch) >= 500:
                    deleted += self.redis.delete(*batch)
                    batch = []
            if batch:
                deleted += self.redis.delete(*batch)
        except RedisError as e:
            logger.warning("[CACHE] Invalidation failed for account %s: %s", account_id, e)
            return deleted

        logger.info("[CACHE] Invalidated %d keys for account %s", deleted, account_id)
        return deleted
