"""Tests for the arq worker pool.

WHAT:
    Burst-mode arq workers on fakeredis run handlers through `execute_job`:
    success completes, retryable errors come back after backoff, permanent
    errors fail, cancellation completes quietly, and an attempt arq stops
    waiting for is handed to the interrupt hook.

WHY:
    The handlers never talk to arq; these tests pin down how their
    outcomes map onto queue results and retries.

REFERENCES:
    adsync/workers/worker_pool.py
    adsync/workers/job_queue.py
"""

import asyncio
import time
from unittest.mock import AsyncMock, patch

import pytest

from adsync.exceptions import AuthError, JobCancelled, JobTimeout, ProviderError
from adsync.services.rate_limiter import SlidingWindowLimiter
from adsync.workers import start_worker
from adsync.workers.job_queue import JobQueue, QueueDefinition
from adsync.workers.worker_pool import (
    WorkerPool,
    WorkerSettings,
    build_start_throttle,
    build_worker,
    dimensions_worker_settings,
    execute_job,
    sync_worker_settings,
)

DEFINITION = QueueDefinition(name="test-workers", function="run_test_job", attempts=3, backoff_ms=10)


def _settings(**overrides):
    options = dict(name=DEFINITION.name, concurrency=2, job_timeout=5, timeout_grace=1, poll_interval=0.01,
                   shutdown_grace=5)
    options.update(overrides)
    return WorkerSettings(**options)


def _job_function(handler, on_interrupt=None):
    async def run_test_job(ctx, payload, job_type=None):
        return await execute_job(ctx, handler, payload, job_type, on_interrupt=on_interrupt)

    return run_test_job


def _drain(pool_factory, handler, jobs, *, definition=DEFINITION, settings=None, throttle=None,
           on_interrupt=None):
    """Enqueue `jobs` ((job_id, payload) pairs) and run a burst worker until the queue is empty.

    Returns (worker stats, {job_id: QueuedJob}).
    """
    async def run():
        queue = JobQueue(definition, pool_factory=pool_factory)
        for job_id, payload in jobs:
            await queue.enqueue_async("manual_sync", payload, job_id=job_id)

        worker = build_worker(
            _job_function(handler, on_interrupt),
            definition,
            settings or _settings(),
            {"marker": "deps"},
            throttle=throttle,
            redis_pool=await pool_factory(),
            burst=True,
            handle_signals=False,
        )
        with patch("arq.worker.log_redis_info", AsyncMock()):
            await worker.main()
        await worker.close()

        outcomes = {job_id: await queue.get_job_async(job_id) for job_id, _ in jobs}
        await queue.close_async()
        return worker.ctx["stats"], outcomes

    return asyncio.run(run())


def test_successful_job_is_completed_with_result(arq_pool_factory):
    seen = []

    def handler(ctx):
        seen.append((ctx.payload, ctx.attempt, ctx.max_attempts, ctx.job_type, ctx.deps["marker"]))
        ctx.report_progress(40)
        return {"rowsProcessed": 3}

    stats, outcomes = _drain(arq_pool_factory, handler, [("job-1", {"n": 1})])

    assert seen == [({"n": 1}, 1, 3, "manual_sync", "deps")]
    job = outcomes["job-1"]
    assert job.status == "complete"
    assert job.success is True
    assert job.result == {"rowsProcessed": 3}
    assert stats.succeeded == 1


def test_permanent_error_fails_without_retry(arq_pool_factory):
    calls = []

    def handler(ctx):
        calls.append(ctx.attempt)
        raise AuthError("Token refresh failed: invalid_grant", connection_id="conn-1")

    stats, outcomes = _drain(arq_pool_factory, handler, [("job-1", {})])

    job = outcomes["job-1"]
    assert job.success is False
    assert isinstance(job.result, AuthError)
    assert job.result.connection_id == "conn-1"
    assert "invalid_grant" in str(job.result)
    assert calls == [1]
    assert stats.failed == 1


def test_retryable_error_is_retried_until_success(arq_pool_factory):
    calls = []

    def handler(ctx):
        calls.append(ctx.attempt)
        if ctx.attempt == 1:
            raise ProviderError("Google Ads API 503", status_code=503)
        return {"ok": True}

    stats, outcomes = _drain(arq_pool_factory, handler, [("job-1", {})])

    assert calls == [1, 2]
    assert outcomes["job-1"].success is True
    assert outcomes["job-1"].attempts == 2
    assert stats.retried == 1


def test_retryable_error_fails_after_last_attempt(arq_pool_factory):
    calls = []

    def handler(ctx):
        calls.append(ctx.attempt)
        raise ProviderError("Google Ads API 503", status_code=503)

    stats, outcomes = _drain(arq_pool_factory, handler, [("job-1", {})])

    assert calls == [1, 2, 3]
    assert outcomes["job-1"].success is False
    assert isinstance(outcomes["job-1"].result, ProviderError)
    assert (stats.retried, stats.failed) == (2, 1)


def test_unexpected_error_is_reported_and_retried(arq_pool_factory):
    def handler(ctx):
        if ctx.attempt == 1:
            raise KeyError("campaign")
        return {}

    with patch("adsync.workers.worker_pool.capture_exception") as capture:
        _, outcomes = _drain(arq_pool_factory, handler, [("job-1", {})])

    assert outcomes["job-1"].success is True
    capture.assert_called_once()
    assert capture.call_args.kwargs["extra"]["job_id"] == "job-1"


def test_cancelled_job_completes_quietly(arq_pool_factory):
    def handler(ctx):
        raise JobCancelled(ctx.job_id)

    stats, outcomes = _drain(arq_pool_factory, handler, [("job-1", {})])

    assert outcomes["job-1"].success is True
    assert outcomes["job-1"].result == {"cancelled": True}
    assert stats.cancelled == 1


def test_cooperative_deadline_is_retried_then_fails(arq_pool_factory):
    calls = []

    def handler(ctx):
        calls.append(ctx.attempt)
        while True:
            time.sleep(0.01)
            ctx.check_deadline()

    definition = QueueDefinition(name=DEFINITION.name, function=DEFINITION.function, attempts=2, backoff_ms=10)
    _, outcomes = _drain(arq_pool_factory, handler, [("job-1", {})], definition=definition,
                         settings=_settings(job_timeout=0.05))

    assert calls == [1, 2]
    assert isinstance(outcomes["job-1"].result, JobTimeout)


def test_hard_timeout_hands_attempt_to_interrupt_hook(arq_pool_factory):
    interrupts = []

    def handler(ctx):
        # Never reaches a checkpoint
        time.sleep(0.4)
        return {"late": True}

    stats, outcomes = _drain(
        arq_pool_factory, handler, [("job-1", {})],
        settings=_settings(job_timeout=0.05, timeout_grace=0.05),
        on_interrupt=lambda ctx, timed_out: interrupts.append((ctx.job_id, ctx.attempt, timed_out)),
    )

    assert interrupts == [("job-1", 1, True)]
    assert outcomes["job-1"].success is False
    assert stats.interrupted == 1


def test_start_cap_spaces_job_starts(arq_pool_factory, fake_redis):
    starts = []

    def handler(ctx):
        starts.append(time.monotonic())
        return {}

    throttle = SlidingWindowLimiter(fake_redis, "worker:test-workers", max_events=1, window_seconds=0.3)
    _drain(arq_pool_factory, handler, [("job-1", {}), ("job-2", {})], throttle=throttle)

    assert len(starts) == 2
    assert abs(starts[1] - starts[0]) >= 0.25


def test_both_queues_get_a_start_cap(settings, fake_redis):
    for worker_settings, max_starts, window in (
        (sync_worker_settings(settings), settings.SYNC_WORKER_MAX_STARTS, settings.SYNC_WORKER_WINDOW_SECONDS),
        (dimensions_worker_settings(settings), settings.DIMENSIONS_WORKER_MAX_STARTS,
         settings.DIMENSIONS_WORKER_WINDOW_SECONDS),
    ):
        throttle = build_start_throttle(fake_redis, worker_settings)
        assert throttle.key == f"worker:{worker_settings.name}"
        assert throttle.max_events == max_starts
        assert throttle.window_ms == window * 1000


def test_start_cap_can_be_disabled(fake_redis):
    assert build_start_throttle(fake_redis, _settings(max_starts=None)) is None


def test_build_pool_wires_throttle_per_queue(settings, fake_redis, arq_pool_factory):
    async def build():
        return start_worker.build_pool(settings, fake_redis, redis_pool=await arq_pool_factory())

    pool = asyncio.run(build())

    throttles = {worker.queue_name: worker.ctx["throttle"] for worker in pool.workers}
    assert throttles[settings.SYNC_QUEUE_NAME].max_events == settings.SYNC_WORKER_MAX_STARTS
    assert throttles[settings.DIMENSIONS_QUEUE_NAME].max_events == settings.DIMENSIONS_WORKER_MAX_STARTS


def test_hard_timeout_covers_deadline_grace_and_start_wait():
    assert _settings(job_timeout=600, timeout_grace=60).hard_timeout == 660
    assert _settings(job_timeout=600, timeout_grace=60, max_starts=10, window_seconds=60).hard_timeout == 720


def test_pool_stop_lets_running_job_finish(arq_pool_factory):
    finished = []

    def handler(ctx):
        time.sleep(0.1)
        finished.append(ctx.job_id)
        return {}

    async def run():
        queue = JobQueue(DEFINITION, pool_factory=arq_pool_factory)
        await queue.enqueue_async("manual_sync", {}, job_id="job-1")
        worker = build_worker(
            _job_function(handler), DEFINITION, _settings(), {},
            redis_pool=await arq_pool_factory(), handle_signals=False,
        )
        pool = WorkerPool([worker])

        with patch("arq.worker.log_redis_info", AsyncMock()):
            runner = asyncio.create_task(pool.run())
            for _ in range(200):
                if worker.ctx["stats"].processed:
                    break
                await asyncio.sleep(0.01)
            pool.stop()
            await asyncio.wait_for(runner, timeout=5)

        job = await queue.get_job_async("job-1")
        await queue.close_async()
        return job

    job = asyncio.run(run())

    assert finished == ["job-1"]
    assert job.success is True


@pytest.mark.parametrize("attempt, expected_ms", [(1, 10), (2, 20), (3, 40)])
def test_retry_backoff_doubles(attempt, expected_ms):
    assert DEFINITION.retry_delay_ms(attempt) == expected_ms


def test_queue_stats_count_finished_jobs(arq_pool_factory):
    def handler(ctx):
        if ctx.payload.get("fail"):
            raise AuthError("Token refresh failed: invalid_grant")
        return {}

    _drain(arq_pool_factory, handler, [("job-1", {}), ("job-2", {"fail": True})])

    queue = JobQueue(DEFINITION, pool_factory=arq_pool_factory)
    try:
        stats = queue.get_stats()
    finally:
        queue.close()
    assert stats == {"waiting": 0, "delayed": 0, "active": 0, "completed": 1, "failed": 1}
