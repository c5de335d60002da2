"""arq worker pool - consumers for the sync and dimensions queues.

WHAT:
    One arq `Worker` per queue, each running up to `concurrency` jobs at
    once (arq max_jobs) and, optionally, no more than `max_starts` job
    starts per rolling window. Handlers are plain sync functions executed
    in a thread (asyncio.to_thread) with a `JobContext`.

WHY:
    - Per-queue concurrency and start caps keep one queue from draining the
      shared Google Ads token bucket
    - The handler decides nothing about retries; `execute_job` maps the
      exception's `retryable` flag onto arq `Retry` with the queue's backoff
    - Timeouts are cooperative: the context carries a deadline the handler
      checks between batches (JobTimeout, retried like any transient error).
      arq's job timeout fires a grace period later and only stops waiting;
      the thread keeps running, so `on_interrupt` settles the record and
      the handler's own final writes are fenced on its attempt
    - Unexpected exceptions (not part of the SyncError taxonomy) go to Sentry

ARCHITECTURE:
    ┌────────────┐  poll     ┌──────────────┐  to_thread  ┌────────────────────┐
    │ arq queue  │──────────▶│ arq Worker   │────────────▶│ process_sync_job / │
    │ (zset)     │◀──────────│ execute_job  │◀────────────│ process_dimensions │
    └────────────┘ result/   │ (throttle)   │   result    └────────────────────┘
                   Retry     └──────────────┘

REFERENCES:
    - adsync/workers/job_queue.py
    - adsync/workers/start_worker.py (production wiring)
    - https://arq-docs.helpmanual.io/#retrying-jobs-and-cancellation
"""

from __future__ import annotations

import asyncio
import logging
import platform
import signal
import time
from dataclasses import dataclass, field
from datetime import datetime, timedelta, timezone
from typing import Any, Callable, Dict, List, Optional

from arq import Retry, Worker
from arq.connections import ArqRedis, RedisSettings
from arq.worker import func

from adsync.config import Settings, get_settings
from adsync.exceptions import JobCancelled, JobTimeout, SyncError
from adsync.services.rate_limiter import SlidingWindowLimiter
from adsync.telemetry import capture_exception
from adsync.workers.job_queue import QueueDefinition

logger = logging.getLogger(__name__)

JobHandler = Callable[["JobContext"], Dict[str, Any]]
InterruptHook = Callable[["JobContext", bool], None]


@dataclass
class JobContext:
    """Everything a handler gets for one job attempt."""

    job_id: str
    payload: Dict[str, Any]
    deps: Dict[str, Any]
    attempt: int = 1
    max_attempts: int = 1
    job_type: Optional[str] = None
    timeout_seconds: Optional[float] = None
    progress: int = 0
    started: float = field(default_factory=time.monotonic)

    @property
    def is_final_attempt(self) -> bool:
        return self.attempt >= self.max_attempts

    def timed_out(self) -> bool:
        if self.timeout_seconds is None:
            return False
        return time.monotonic() - self.started >= self.timeout_seconds

    def check_deadline(self) -> None:
        """Raise JobTimeout once the attempt has used up its time."""
        if self.timed_out():
            raise JobTimeout(self.job_id, self.timeout_seconds)

    def report_progress(self, progress: int) -> None:
        self.progress = max(0, min(100, int(progress)))
        logger.debug("[WORKER] Job %s progress %d%%", self.job_id, self.progress)


@dataclass
class WorkerSettings:
    """Per-queue worker configuration.

    - concurrency: jobs in flight at once
    - max_starts / window_seconds: start cap (None disables it)
    - job_timeout: cooperative deadline of one attempt, seconds
    - timeout_grace: extra seconds before arq cancels the attempt
    - shutdown_grace: seconds running jobs get after a stop signal
    """

    name: str
    concurrency: int
    job_timeout: float = 600
    timeout_grace: float = 60
    max_starts: Optional[int] = None
    window_seconds: float = 60
    poll_interval: float = 1.0
    shutdown_grace: int = 30

    @property
    def hard_timeout(self) -> float:
        # Waiting for a start slot runs inside the arq job
        start_wait = self.window_seconds if self.max_starts else 0
        return self.job_timeout + self.timeout_grace + start_wait


def sync_worker_settings(settings: Optional[Settings] = None) -> WorkerSettings:
    s = settings or get_settings()
    return WorkerSettings(
        name=s.SYNC_QUEUE_NAME,
        concurrency=s.SYNC_WORKER_CONCURRENCY,
        job_timeout=s.JOB_TIMEOUT_SECONDS,
        timeout_grace=s.JOB_TIMEOUT_GRACE_SECONDS,
        max_starts=s.SYNC_WORKER_MAX_STARTS,
        window_seconds=s.SYNC_WORKER_WINDOW_SECONDS,
        poll_interval=s.WORKER_POLL_INTERVAL_SECONDS,
        shutdown_grace=s.WORKER_SHUTDOWN_GRACE_SECONDS,
    )


def dimensions_worker_settings(settings: Optional[Settings] = None) -> WorkerSettings:
    s = settings or get_settings()
    return WorkerSettings(
        name=s.DIMENSIONS_QUEUE_NAME,
        concurrency=s.DIMENSIONS_WORKER_CONCURRENCY,
        job_timeout=s.JOB_TIMEOUT_SECONDS,
        timeout_grace=s.JOB_TIMEOUT_GRACE_SECONDS,
        max_starts=s.DIMENSIONS_WORKER_MAX_STARTS,
        window_seconds=s.DIMENSIONS_WORKER_WINDOW_SECONDS,
        poll_interval=s.WORKER_POLL_INTERVAL_SECONDS,
        shutdown_grace=s.WORKER_SHUTDOWN_GRACE_SECONDS,
    )


def build_start_throttle(redis_client, settings: WorkerSettings) -> Optional[SlidingWindowLimiter]:
    """Sliding-window start cap shared by every worker process of a queue."""
    if not settings.max_starts:
        return None
    return SlidingWindowLimiter(
        redis_client,
        f"worker:{settings.name}",
        max_events=settings.max_starts,
        window_seconds=settings.window_seconds,
    )


@dataclass
class WorkerStats:
    started_at: datetime = field(default_factory=lambda: datetime.now(timezone.utc))
    processed: int = 0
    succeeded: int = 0
    retried: int = 0
    failed: int = 0
    cancelled: int = 0
    interrupted: int = 0


# =============================================================================
# JOB EXECUTION
# =============================================================================

async def _wait_for_start_slot(throttle: Optional[SlidingWindowLimiter], name: str) -> None:
    if throttle is None:
        return
    while True:
        wait_ms = await asyncio.to_thread(throttle.reserve)
        if wait_ms == 0:
            return
        logger.debug("[WORKER] %s: start cap reached, waiting %dms", name, wait_ms)
        await asyncio.sleep(wait_ms / 1000)


async def execute_job(
    ctx: Dict[str, Any],
    handler: JobHandler,
    payload: Dict[str, Any],
    job_type: Optional[str] = None,
    *,
    on_interrupt: Optional[InterruptHook] = None,
) -> Dict[str, Any]:
    """Run one attempt of `handler` inside an arq job and map its outcome.

    - success: the handler's result is stored by arq
    - JobCancelled: completes with {"cancelled": True}
    - retryable error before the final attempt: arq Retry after the
      queue's exponential backoff
    - anything else: re-raised, arq stores the failure
    - arq timeout or shutdown (CancelledError): `on_interrupt(job_ctx,
      timed_out)` settles the record, then the cancellation propagates
    """
    definition: QueueDefinition = ctx["queue"]
    settings: WorkerSettings = ctx["worker_settings"]
    stats: WorkerStats = ctx["stats"]

    await _wait_for_start_slot(ctx.get("throttle"), settings.name)

    job_ctx = JobContext(
        job_id=ctx["job_id"],
        payload=payload,
        deps=ctx["deps"],
        attempt=ctx["job_try"],
        max_attempts=definition.attempts,
        job_type=job_type,
        timeout_seconds=settings.job_timeout,
    )
    stats.processed += 1
    logger.info(
        "[WORKER] %s: job %s (%s) attempt %d/%d",
        settings.name, job_ctx.job_id, job_type, job_ctx.attempt, job_ctx.max_attempts,
    )

    try:
        result = await asyncio.to_thread(handler, job_ctx)
    except JobCancelled:
        stats.cancelled += 1
        logger.info("[WORKER] %s: job %s cancelled", settings.name, job_ctx.job_id)
        return {"cancelled": True}
    except asyncio.CancelledError:
        timed_out = job_ctx.timed_out()
        stats.interrupted += 1
        logger.error(
            "[WORKER] %s: job %s interrupted (%s)",
            settings.name, job_ctx.job_id, "timed out" if timed_out else "shutdown",
        )
        if on_interrupt is not None:
            try:
                on_interrupt(job_ctx, timed_out)
            except Exception as e:
                logger.exception("[WORKER] %s: interrupt hook failed for job %s", settings.name, job_ctx.job_id)
                capture_exception(e, extra={"queue": settings.name, "job_id": job_ctx.job_id})
        raise
    except Exception as exc:
        retryable = bool(getattr(exc, "retryable", True))
        if not isinstance(exc, SyncError):
            logger.exception("[WORKER] %s: job %s raised unexpectedly", settings.name, job_ctx.job_id)
            capture_exception(exc, extra={"queue": settings.name, "job_id": job_ctx.job_id, "job_type": job_type})

        if retryable and not job_ctx.is_final_attempt:
            delay_ms = definition.retry_delay_ms(job_ctx.attempt)
            stats.retried += 1
            logger.warning(
                "[WORKER] %s: job %s attempt %d failed, retrying in %dms: %s",
                settings.name, job_ctx.job_id, job_ctx.attempt, delay_ms, exc,
            )
            raise Retry(defer=timedelta(milliseconds=delay_ms)) from exc

        stats.failed += 1
        logger.warning("[WORKER] %s: job %s failed: %s", settings.name, job_ctx.job_id, exc)
        raise

    if result is not None and result.get("cancelled"):
        stats.cancelled += 1
    else:
        stats.succeeded += 1
    return result or {}


# =============================================================================
# WORKER LIFECYCLE
# =============================================================================

async def startup(ctx: Dict[str, Any]) -> None:
    settings: WorkerSettings = ctx["worker_settings"]
    logger.info("=" * 60)
    logger.info("[WORKER] %s starting up", settings.name)
    logger.info("[WORKER] Python: %s", platform.python_version())
    logger.info("[WORKER] Host: %s", platform.node())
    logger.info(
        "[WORKER] concurrency=%d timeout=%ss max_starts=%s/%ss",
        settings.concurrency, settings.job_timeout, settings.max_starts, settings.window_seconds,
    )
    logger.info("=" * 60)


async def shutdown(ctx: Dict[str, Any]) -> None:
    logger.info("[WORKER] %s shut down: %s", ctx["worker_settings"].name, ctx["stats"])


def build_worker(
    function: Callable,
    definition: QueueDefinition,
    settings: WorkerSettings,
    deps: Dict[str, Any],
    *,
    throttle: Optional[SlidingWindowLimiter] = None,
    redis_pool: Optional[ArqRedis] = None,
    redis_settings: Optional[RedisSettings] = None,
    **worker_options: Any,
) -> Worker:
    """arq Worker consuming `definition.name` with `function` (an `execute_job` wrapper).

    Must be called inside a running event loop. `worker_options` go straight
    to arq (burst, handle_signals, ...).
    """
    options: Dict[str, Any] = dict(
        queue_name=definition.name,
        redis_pool=redis_pool,
        redis_settings=redis_settings,
        max_jobs=settings.concurrency,
        job_timeout=settings.hard_timeout,
        keep_result=definition.keep_result_seconds,
        max_tries=definition.attempts,
        retry_jobs=True,
        poll_delay=settings.poll_interval,
        job_completion_wait=settings.shutdown_grace,
        health_check_interval=30,
        on_startup=startup,
        on_shutdown=shutdown,
        ctx={
            "deps": deps,
            "queue": definition,
            "worker_settings": settings,
            "throttle": throttle,
            "stats": WorkerStats(),
        },
    )
    options.update(worker_options)
    return Worker(
        functions=[
            func(
                function,
                name=definition.function,
                timeout=settings.hard_timeout,
                max_tries=definition.attempts,
                keep_result=definition.keep_result_seconds,
            ),
        ],
        **options,
    )


class WorkerPool:
    """Runs every arq worker in one event loop until stopped."""

    def __init__(self, workers: List[Worker]):
        self.workers = workers

    def stop(self, signum: int = signal.SIGTERM) -> None:
        """Stop picking jobs, let running ones finish within the grace period, then cancel."""
        for worker in self.workers:
            worker.handle_sig_wait_for_completion(signal.Signals(signum))

    async def run(self) -> None:
        logger.info("[WORKER] Pool starting %d worker(s): %s", len(self.workers),
                    ", ".join(worker.queue_name for worker in self.workers))

        tasks = [asyncio.create_task(worker.async_run()) for worker in self.workers]
        try:
            await asyncio.wait(tasks, return_when=asyncio.FIRST_EXCEPTION)
        finally:
            for task in tasks:
                if not task.done():
                    task.cancel()
            await asyncio.gather(*tasks, return_exceptions=True)
            await asyncio.gather(*(worker.close() for worker in self.workers), return_exceptions=True)
            logger.info("[WORKER] Pool shut down")

        for task in tasks:
            if not task.cancelled() and task.exception() is not None:
                raise task.exception()
