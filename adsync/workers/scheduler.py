#!/usr/bin/env python3
"""Cron scheduler for daily and intraday syncs plus queue housekeeping.

WHAT:
    - daily_sync: DAILY_SYNC_CRON, [yesterday, today] + dimension refresh
    - intraday_sync: INTRADAY_SYNC_CRON, [today, today]
    - queue_maintenance: hourly reaping of SyncJobs the queue has lost,
      plus a queue stats log line

WHY:
    Triggers only enqueue; the workers do the fetching. Re-firing a trigger
    is harmless because chunks already covered by a fresh job are skipped.

USAGE:
    python -m adsync.workers.scheduler

    Or via the console script:
    adsync-scheduler
"""

import logging
import sys
from typing import Callable, Optional, TypeVar

from apscheduler.schedulers.blocking import BlockingScheduler
from apscheduler.triggers.cron import CronTrigger

from adsync.config import Settings, get_settings
from adsync.database import SessionLocal
from adsync.schemas import TriggerSummary
from adsync.services.sync_orchestrator import SyncOrchestrator
from adsync.state import get_redis
from adsync.telemetry import capture_exception, init_sentry
from adsync.utils.env import load_env_file
from adsync.workers.job_queue import JobQueue, dimensions_queue_definition, sync_queue_definition

logger = logging.getLogger(__name__)

T = TypeVar("T")


def build_queues(settings: Settings):
    """(sync, dimensions) producers; callers close them."""
    return JobQueue(sync_queue_definition(settings)), JobQueue(dimensions_queue_definition(settings))


def _close_queues(queues) -> None:
    for queue in queues:
        try:
            queue.close()
        except Exception as e:
            logger.warning("[SCHEDULER] Closing queue %s failed: %s", queue.name, e)


def _with_orchestrator(
    name: str,
    action: Callable[[SyncOrchestrator], T],
    settings: Optional[Settings] = None,
) -> Optional[T]:
    """Open a session and the queues, run `action` on an orchestrator, always clean up.

    Failures are logged and reported, never raised into APScheduler.
    """
    settings = settings or get_settings()
    db = None
    queues = ()
    try:
        queues = build_queues(settings)
        db = SessionLocal()
        return action(SyncOrchestrator(db, *queues, get_redis(), settings=settings))
    except Exception as e:
        logger.exception("[SCHEDULER] %s failed: %s", name, e)
        capture_exception(e, extra={"trigger": name})
        return None
    finally:
        if db is not None:
            db.close()
        _close_queues(queues)


def _run_trigger(name: str, settings: Optional[Settings] = None) -> Optional[TriggerSummary]:
    def fire(orchestrator: SyncOrchestrator) -> TriggerSummary:
        summary = getattr(orchestrator, f"trigger_{name}")()
        logger.info("[SCHEDULER] %s done: %s", name, summary.model_dump(exclude={"job_ids"}))
        return summary

    return _with_orchestrator(name, fire, settings)


def run_daily_sync() -> Optional[TriggerSummary]:
    return _run_trigger("daily_sync")


def run_intraday_sync() -> Optional[TriggerSummary]:
    return _run_trigger("intraday_sync")


def run_queue_maintenance(settings: Optional[Settings] = None) -> Optional[int]:
    """Fail SyncJobs the queue lost and log queue depth. Returns the number reaped."""
    def maintain(orchestrator: SyncOrchestrator) -> int:
        reaped = orchestrator.reap_stale_jobs()
        logger.info("[SCHEDULER] Maintenance: reaped=%d queues=%s", reaped, orchestrator.get_queue_stats())
        return reaped

    return _with_orchestrator("queue_maintenance", maintain, settings)


def build_scheduler(settings: Optional[Settings] = None) -> BlockingScheduler:
    settings = settings or get_settings()
    sched = BlockingScheduler(timezone="UTC")
    sched.add_job(
        run_daily_sync,
        trigger=CronTrigger.from_crontab(settings.DAILY_SYNC_CRON, timezone="UTC"),
        id="daily_sync",
        max_instances=1,
        coalesce=True,
    )
    if settings.INTRADAY_SYNC_ENABLED:
        sched.add_job(
            run_intraday_sync,
            trigger=CronTrigger.from_crontab(settings.INTRADAY_SYNC_CRON, timezone="UTC"),
            id="intraday_sync",
            max_instances=1,
            coalesce=True,
        )
    sched.add_job(run_queue_maintenance, trigger="interval", hours=1, id="queue_maintenance")
    return sched


def main():
    logging.basicConfig(
        level=logging.INFO,
        format="%(asctime)s [%(levelname)s] %(name)s: %(message)s",
        handlers=[logging.StreamHandler(sys.stdout)],
    )
    load_env_file()
    init_sentry("scheduler")
    settings = get_settings()

    sched = build_scheduler(settings)
    logger.info(
        "[SCHEDULER] Starting: daily=%r intraday=%r",
        settings.DAILY_SYNC_CRON,
        settings.INTRADAY_SYNC_CRON if settings.INTRADAY_SYNC_ENABLED else "disabled",
    )
    try:
        sched.start()
    except (KeyboardInterrupt, SystemExit):
        logger.info("[SCHEDULER] Stopped.")


if __name__ == "__main__":
    main()
