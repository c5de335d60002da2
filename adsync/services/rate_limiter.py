"""
Shared API Rate Limiters
========================

Redis-backed limiters shared by every worker process.

WHY THIS FILE EXISTS
--------------------
Google Ads quota is per developer token, not per worker. Every process has to
draw from the same budget, so limiter state lives in Redis and every
read-modify-write runs as a single Lua script (atomic on the server, no
in-process locks).

LIMITERS
--------
- TokenBucketRateLimiter: capacity N, refill R tokens/second. Guards every
  Google Ads request (default 60 capacity, 1 token/s).
  Keys: "ratelimit:{key}" (tokens) and "ratelimit:{key}:lastUpdate" (ms).
- SlidingWindowLimiter: at most N events per rolling window. Caps job starts
  per worker type so one queue cannot starve the shared bucket.
  Key: "ratelimit:window:{key}" (sorted set of event timestamps).

RELATED FILES
-------------
- adsync/services/google_ads_client.py: waits on the token bucket per request
- adsync/workers/worker_pool.py: job start throttle
"""

import logging
import math
import time
import uuid
from typing import Callable, Optional, Protocol

from redis import Redis

logger = logging.getLogger(__name__)


# Refill, clamp, compare and deduct in one step. State is only written when
# the request is granted, so a refusal has no side effects.
TOKEN_BUCKET_SCRIPT = """
local tokens_key = KEYS[1]
local ts_key = KEYS[2]
local capacity = tonumber(ARGV[1])
local refill_rate = tonumber(ARGV[2])
local requested = tonumber(ARGV[3])
local now = tonumber(ARGV[4])
local ttl = tonumber(ARGV[5])

local tokens = tonumber(redis.call('GET', tokens_key))
local last = tonumber(redis.call('GET', ts_key))
if tokens == nil then tokens = capacity end
if last == nil then last = now end

local elapsed = math.max(0, now - last) / 1000
tokens = math.min(capacity, tokens + elapsed * refill_rate)

if tokens < requested then
  return 0
end

tokens = tokens - requested
redis.call('SET', tokens_key, tostring(tokens), 'EX', ttl)
redis.call('SET', ts_key, tostring(now), 'EX', ttl)
return 1
"""

# Returns 0 when the event was recorded, otherwise milliseconds until the
# oldest event leaves the window.
SLIDING_WINDOW_SCRIPT = """
local key = KEYS[1]
local now = tonumber(ARGV[1])
local window = tonumber(ARGV[2])
local limit = tonumber(ARGV[3])
local member = ARGV[4]

redis.call('ZREMRANGEBYSCORE', key, '-inf', now - window)
local count = redis.call('ZCARD', key)
if count < limit then
  redis.call('ZADD', key, now, member)
  redis.call('PEXPIRE', key, window)
  return 0
end

local oldest = redis.call('ZRANGE', key, 0, 0, 'WITHSCORES')
return math.max(1, math.ceil(tonumber(oldest[2]) + window - now))
"""


class RateLimiter(Protocol):
    """What the API client needs from a limiter."""

    key: str

    def try_acquire(self, cost: int = 1) -> bool: ...

    def wait_for_token(self, cost: int = 1, max_wait_ms: Optional[int] = None) -> bool: ...


class TokenBucketRateLimiter:
    """
    Redis token bucket shared across processes.

    WHAT:
        `try_acquire(cost)` refills by elapsed time, clamps to capacity and
        deducts `cost` if enough tokens remain. `wait_for_token` polls it at a
        fixed interval until success or the wait budget runs out.

    USAGE:
        limiter = TokenBucketRateLimiter(redis_client, "google-ads", capacity=60, refill_rate=1)
        if not limiter.wait_for_token(1, max_wait_ms=30000):
            raise RateLimitExceeded("google-ads", 30000)

    NOTE:
        `clock` returns epoch seconds and `sleep` blocks; tests inject both to
        freeze or advance time.
    """

    def __init__(
        self,
        redis_client: Redis,
        key: str,
        capacity: int,
        refill_rate: float,
        *,
        max_wait_ms: int = 30000,
        poll_interval_ms: int = 100,
        clock: Callable[[], float] = time.time,
        sleep: Callable[[float], None] = time.sleep,
    ):
        if capacity <= 0:
            raise ValueError("capacity must be positive")
        if refill_rate < 0:
            raise ValueError("refill_rate must not be negative")

        self.redis = redis_client
        self.key = key
        self.capacity = capacity
        self.refill_rate = refill_rate
        self.max_wait_ms = max_wait_ms
        self.poll_interval_ms = poll_interval_ms
        self._clock = clock
        self._sleep = sleep
        self._tokens_key = f"ratelimit:{key}"
        self._ts_key = f"ratelimit:{key}:lastUpdate"
        # Keep state around for two full refills; an expired bucket reads as full
        full_refill_seconds = capacity / refill_rate if refill_rate else 3600
        self._ttl_seconds = max(60, int(math.ceil(full_refill_seconds * 2)))
        self._script = redis_client.register_script(TOKEN_BUCKET_SCRIPT)

    def _now_ms(self) -> int:
        return int(self._clock() * 1000)

    def try_acquire(self, cost: int = 1) -> bool:
        """Atomically take `cost` tokens. Returns False (state untouched) if short."""
        if cost > self.capacity:
            logger.warning("[RATE_LIMIT] %s: cost %d exceeds capacity %d", self.key, cost, self.capacity)
            return False

        allowed = self._script(
            keys=[self._tokens_key, self._ts_key],
            args=[self.capacity, self.refill_rate, cost, self._now_ms(), self._ttl_seconds],
        )
        return int(allowed) == 1

    def wait_for_token(self, cost: int = 1, max_wait_ms: Optional[int] = None) -> bool:
        """Poll `try_acquire` until it succeeds or `max_wait_ms` elapses.

        Returns:
            False on timeout; callers treat that as a retryable failure.
        """
        budget_ms = self.max_wait_ms if max_wait_ms is None else max_wait_ms
        deadline_ms = self._now_ms() + budget_ms

        while True:
            if self.try_acquire(cost):
                return True
            if self._now_ms() >= deadline_ms:
                logger.warning("[RATE_LIMIT] %s: no token within %dms", self.key, budget_ms)
                return False
            self._sleep(self.poll_interval_ms / 1000)

    def get_remaining(self) -> float:
        """Tokens available right now (read-only, for stats and logs)."""
        tokens_raw, last_raw = self.redis.mget(self._tokens_key, self._ts_key)
        if tokens_raw is None or last_raw is None:
            return float(self.capacity)
        elapsed = max(0, self._now_ms() - float(last_raw)) / 1000
        return min(float(self.capacity), float(tokens_raw) + elapsed * self.refill_rate)

    def reset(self) -> None:
        self.redis.delete(self._tokens_key, self._ts_key)


class SlidingWindowLimiter:
    """
    Redis sliding-window limiter (max N events per rolling window).

    HOW:
        Sorted set with event timestamps (ms) as scores. Entries older than
        the window are trimmed on every call, then the event is admitted only
        if the count is below the limit.
    """

    def __init__(
        self,
        redis_client: Redis,
        key: str,
        max_events: int,
        window_seconds: float,
        *,
        clock: Callable[[], float] = time.time,
    ):
        self.redis = redis_client
        self.key = key
        self.max_events = max_events
        self.window_ms = int(window_seconds * 1000)
        self._clock = clock
        self._redis_key = f"ratelimit:window:{key}"
        self._script = redis_client.register_script(SLIDING_WINDOW_SCRIPT)

    def reserve(self) -> int:
        """Record one event if allowed.

        Returns:
            0 when the event was admitted, otherwise milliseconds to wait
            before trying again.
        """
        now_ms = int(self._clock() * 1000)
        member = f"{now_ms}:{uuid.uuid4().hex}"
        wait_ms = self._script(
            keys=[self._redis_key],
            args=[now_ms, self.window_ms, self.max_events, member],
        )
        return int(wait_ms)

    def try_acquire(self) -> bool:
        return self.reserve() == 0

    def current_count(self) -> int:
        now_ms = int(self._clock() * 1000)
        return int(self.redis.zcount(self._redis_key, now_ms - self.window_ms + 1, "+inf"))
