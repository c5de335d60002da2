"""Handler for `ads-sync` jobs: fetch metrics for one account and date range.

WHAT:
    Marks the SyncJob RUNNING and the account SYNCING, fetches campaign-level
    then ad-group-level rows, reconciles them into the warehouse, and
    finishes the SyncJob with result metrics. The account's cached
    aggregates are purged after a successful run.

WHY:
    - The SyncJob id doubles as the queue job id, so a redelivered job finds
      its own record; a terminal record short-circuits
    - Every checkpoint (after each fetch and each committed batch) checks
      for cancellation, for another attempt having taken the record over,
      and for the attempt's deadline
    - Terminal writes are conditional on the record still being RUNNING
      under this attempt, so a cancel that lands after the last checkpoint,
      or a thread arq already gave up on, cannot overwrite the outcome
    - Permanent errors (auth, missing account) fail the SyncJob right away
      and flip the account to ERROR; transient errors leave it PENDING for
      the queue's next attempt until the final one

REFERENCES:
    - adsync/workers/worker_pool.py (execute_job runs this in a worker thread)
    - adsync/services/reconciler.py
"""

from __future__ import annotations

import logging
import time
from typing import Any, Dict, Optional

from sqlalchemy.orm import Session

from adsync.exceptions import AccountNotFound, JobCancelled, JobSuperseded, ProviderError
from adsync.models import (
    AccountSyncStatusEnum,
    AdAccount,
    SyncJob,
    SyncJobStatusEnum,
)
from adsync.schemas import ReconcileResult, SyncJobPayload
from adsync.services.reconciler import MetricsReconciler
from adsync.utils.dates import today_in_timezone, utcnow
from adsync.workers.worker_pool import JobContext, execute_job

logger = logging.getLogger(__name__)


async def run_sync_job(ctx: Dict[str, Any], payload: Dict[str, Any], job_type: Optional[str] = None) -> Dict[str, Any]:
    """arq entry point for `ads-sync` jobs."""
    return await execute_job(ctx, process_sync_job, payload, job_type, on_interrupt=interrupt_sync_job)


def process_sync_job(ctx: JobContext) -> Dict[str, Any]:
    """Run one sync chunk.

    Args:
        ctx: Job context with deps "session_factory", "ads_client", "cache"
            and optionally "settings".

    Returns:
        Result metrics stored on the queue job and the SyncJob record.
    """
    payload = SyncJobPayload.model_validate(ctx.payload)
    db: Session = ctx.deps["session_factory"]()
    started = time.monotonic()

    try:
        sync_job = db.query(SyncJob).filter(SyncJob.id == payload.sync_job_id).first()
        if sync_job is None:
            raise AccountNotFound(f"SyncJob {payload.sync_job_id} not found")

        if sync_job.status == SyncJobStatusEnum.cancelled:
            logger.info("[SYNC] Job %s was cancelled before it started", sync_job.id)
            return {"cancelled": True}
        if sync_job.status == SyncJobStatusEnum.completed:
            logger.info("[SYNC] Job %s already completed, duplicate delivery ignored", sync_job.id)
            return dict(sync_job.metrics or {})
        if sync_job.status == SyncJobStatusEnum.failed:
            logger.info("[SYNC] Job %s already failed, duplicate delivery ignored", sync_job.id)
            return {"failed": True}

        account = db.query(AdAccount).filter(AdAccount.id == payload.ad_account_id).first()
        if account is None or not account.is_enabled:
            error = AccountNotFound(f"Ad account {payload.ad_account_id} missing or disabled")
            _record_failure(db, sync_job, account, error, final=True)
            raise error

        _mark_running(db, sync_job, account, ctx.attempt)
        logger.info(
            "[SYNC] Starting %s for account %s (%s..%s, attempt %d/%d)",
            sync_job.job_type.value, account.external_id, payload.date_from, payload.date_to,
            ctx.attempt, ctx.max_attempts,
        )

        try:
            totals = _run_sync(ctx, db, sync_job, account, payload)
            metrics = {
                "rowsProcessed": totals.processed,
                "rowsSkipped": totals.skipped,
                "rowsCreated": totals.created,
                "rowsUpdated": totals.updated,
                "durationMs": int((time.monotonic() - started) * 1000),
            }
            _complete(db, ctx, sync_job, account, metrics)
        except JobCancelled:
            db.rollback()
            _release_account(db, account)
            logger.info("[SYNC] Job %s cancelled mid-run", sync_job.id)
            raise
        except JobSuperseded:
            db.rollback()
            logger.warning("[SYNC] Job %s attempt %d no longer owns the record, result discarded",
                           sync_job.id, ctx.attempt)
            return {"superseded": True}
        except Exception as exc:
            db.rollback()
            final = ctx.is_final_attempt or not getattr(exc, "retryable", True)
            _record_failure(db, sync_job, account, exc, final=final, attempt=ctx.attempt)
            raise

        cache = ctx.deps.get("cache")
        if cache is not None:
            cache.invalidate_account(account.id)

        logger.info("[SYNC] Job %s complete: %s", sync_job.id, metrics)
        return metrics
    finally:
        db.close()


def _run_sync(
    ctx: JobContext,
    db: Session,
    sync_job: SyncJob,
    account: AdAccount,
    payload: SyncJobPayload,
) -> ReconcileResult:
    client = ctx.deps["ads_client"]
    settings = ctx.deps.get("settings")
    ad_level = bool(getattr(settings, "SYNC_AD_LEVEL_METRICS", False))

    reconciler = MetricsReconciler(db, account)
    today = today_in_timezone(account.timezone)

    def checkpoint() -> None:
        _ensure_still_owned(db, sync_job, ctx.attempt)
        ctx.check_deadline()

    args = (payload.connection_id, payload.customer_id, payload.date_from, payload.date_to)

    campaign_rows = client.fetch_campaign_performance(*args)
    checkpoint()
    totals = reconciler.upsert_fact_rows(campaign_rows, "campaign", today, checkpoint)
    _report_progress(ctx, db, sync_job, 50)

    try:
        ad_group_rows = client.fetch_ad_group_performance(*args)
        checkpoint()
        totals = totals.merge(reconciler.upsert_fact_rows(ad_group_rows, "ad_group", today, checkpoint))
    except ProviderError as e:
        if e.retryable:
            raise
        # Campaign-level facts are already committed; an ad-group query the
        # provider rejects outright should not throw them away
        logger.warning("[SYNC] Ad group metrics rejected for account %s: %s", account.external_id, e)

    if ad_level:
        _report_progress(ctx, db, sync_job, 75)
        try:
            ad_rows = client.fetch_ad_performance(*args)
            checkpoint()
            totals = totals.merge(reconciler.upsert_fact_rows(ad_rows, "ad", today, checkpoint))
        except ProviderError as e:
            if e.retryable:
                raise
            logger.warning("[SYNC] Ad metrics rejected for account %s: %s", account.external_id, e)

    _report_progress(ctx, db, sync_job, 100)
    return totals


# =============================================================================
# STATE TRANSITIONS
# =============================================================================

def _owned(db: Session, sync_job: SyncJob, attempt: int):
    """Query matching the SyncJob only while it is RUNNING under `attempt`."""
    return db.query(SyncJob).filter(
        SyncJob.id == sync_job.id,
        SyncJob.status == SyncJobStatusEnum.running,
        SyncJob.attempts == attempt,
    )


def _mark_running(db: Session, sync_job: SyncJob, account: AdAccount, attempt: int) -> None:
    sync_job.status = SyncJobStatusEnum.running
    sync_job.started_at = sync_job.started_at or utcnow()
    sync_job.attempts = attempt
    sync_job.error_message = None
    account.sync_status = AccountSyncStatusEnum.syncing
    db.commit()


def _report_progress(ctx: JobContext, db: Session, sync_job: SyncJob, progress: int) -> None:
    ctx.report_progress(progress)
    # Also refreshes updated_at, which the stale-job check reads
    sync_job.progress = progress
    db.commit()


def _ensure_still_owned(db: Session, sync_job: SyncJob, attempt: int) -> None:
    status, attempts = db.query(SyncJob.status, SyncJob.attempts).filter(SyncJob.id == sync_job.id).one()
    if status == SyncJobStatusEnum.cancelled:
        raise JobCancelled(str(sync_job.id))
    if status != SyncJobStatusEnum.running or attempts != attempt:
        raise JobSuperseded(str(sync_job.id), attempt)


def _complete(db: Session, ctx: JobContext, sync_job: SyncJob, account: AdAccount, metrics: Dict[str, Any]) -> None:
    now = utcnow()
    finished = _owned(db, sync_job, ctx.attempt).update(
        {
            SyncJob.status: SyncJobStatusEnum.completed,
            SyncJob.completed_at: now,
            SyncJob.progress: 100,
            SyncJob.error_message: None,
            SyncJob.metrics: metrics,
        },
        synchronize_session=False,
    )
    if not finished:
        _ensure_still_owned(db, sync_job, ctx.attempt)
        raise JobSuperseded(str(sync_job.id), ctx.attempt)
    account.sync_status = AccountSyncStatusEnum.synced
    account.last_synced_at = now
    db.commit()


def _release_account(db: Session, account: AdAccount) -> None:
    account.sync_status = (
        AccountSyncStatusEnum.synced if account.last_synced_at else AccountSyncStatusEnum.pending
    )
    db.commit()


def _record_failure(
    db: Session,
    sync_job: SyncJob,
    account,
    exc: BaseException,
    *,
    final: bool,
    attempt: Optional[int] = None,
) -> None:
    """Fail or re-queue the SyncJob. With `attempt`, only while this attempt still owns it."""
    message = str(exc) or type(exc).__name__
    if final:
        values = {
            SyncJob.status: SyncJobStatusEnum.failed,
            SyncJob.completed_at: utcnow(),
            SyncJob.error_message: message[:2000],
        }
    else:
        # Queue retries with backoff; the record waits as PENDING
        values = {
            SyncJob.status: SyncJobStatusEnum.pending,
            SyncJob.error_message: f"Attempt {attempt or sync_job.attempts} failed: {message}"[:2000],
        }

    if attempt is None:
        query = db.query(SyncJob).filter(SyncJob.id == sync_job.id)
    else:
        query = _owned(db, sync_job, attempt)
    if not query.update(values, synchronize_session=False):
        db.rollback()
        logger.info("[SYNC] Job %s changed under attempt %s, failure not recorded: %s", sync_job.id, attempt, message)
        return

    if final:
        if account is not None:
            account.sync_status = AccountSyncStatusEnum.error
        logger.error("[SYNC] Job %s failed permanently: %s", sync_job.id, message)
    else:
        logger.warning("[SYNC] Job %s attempt %s failed, will retry: %s", sync_job.id, attempt, message)
    db.commit()


def interrupt_sync_job(ctx: JobContext, timed_out: bool) -> None:
    """Settle the SyncJob of an attempt arq stopped waiting for.

    The handler thread may still be running. Moving the record off RUNNING
    for this attempt fences its remaining writes. A hard timeout is final
    (arq does not retry it); a shutdown leaves the record PENDING for the
    redelivery.
    """
    payload = SyncJobPayload.model_validate(ctx.payload)
    db: Session = ctx.deps["session_factory"]()
    try:
        sync_job = db.query(SyncJob).filter(SyncJob.id == payload.sync_job_id).first()
        if sync_job is None:
            return
        if timed_out:
            error = TimeoutError("Job exceeded its timeout and was abandoned by the worker")
        else:
            error = RuntimeError("Worker shut down mid-run")
        account = db.query(AdAccount).filter(AdAccount.id == payload.ad_account_id).first()
        _record_failure(db, sync_job, account, error, final=timed_out, attempt=ctx.attempt)
    finally:
        db.close()
