"""Sync orchestrator - decides what to sync and when, and enqueues it.

WHAT:
    Turns triggers into SyncJob records plus queue jobs:
    - Initial sync: fixed historical window ending today, on account link
    - Daily sync: [yesterday, today] for every enabled account (+ dimensions)
    - Intraday sync: [today, today]
    - Manual sync: arbitrary window, rejected synchronously when it cannot
      run (inactive connection, overlapping job, bad range)

    Windows wider than the chunk size are split into contiguous,
    non-overlapping chunks, one SyncJob and one queue job each.

WHY:
    - Only one non-terminal SyncJob may cover any given (account, day); the
      overlap check and the inserts run under a per-account Redis lock so
      two triggers racing from different processes cannot both pass it
    - SyncJob rows are committed before enqueueing, and the queue job id is
      the SyncJob id, so re-enqueueing the same chunk is a no-op
    - Trigger handlers are plain methods; scheduling policy lives in
      adsync/workers/scheduler.py

REFERENCES:
    - adsync/workers/job_queue.py (JobQueue, JobPriority)
    - adsync/workers/sync_processor.py (consumer of the SyncJob records)
"""

from __future__ import annotations

import logging
from contextlib import contextmanager
from datetime import date, datetime, timedelta, timezone
from typing import Callable, Dict, Iterator, List, Optional, Tuple
from uuid import UUID

from redis import Redis
from redis.exceptions import LockError, RedisError
from sqlalchemy.orm import Session

from adsync.config import Settings, get_settings
from adsync.exceptions import AuthError, QueueTimeout
from adsync.models import (
    NON_TERMINAL_JOB_STATUSES,
    AccountSyncStatusEnum,
    AdAccount,
    Connection,
    ConnectionStatusEnum,
    SyncJob,
    SyncJobStatusEnum,
    SyncJobTypeEnum,
)
from adsync.schemas import (
    AccessibleCustomer,
    DimensionsJobPayload,
    ManualSyncResult,
    SyncJobPayload,
    TriggerSummary,
)
from adsync.telemetry import capture_exception
from adsync.utils.dates import split_date_range, today_in_timezone
from adsync.workers.job_queue import JobPriority, JobQueue, JobType

logger = logging.getLogger(__name__)


QUEUE_JOB_TYPES: Dict[SyncJobTypeEnum, JobType] = {
    SyncJobTypeEnum.initial_sync: JobType.backfill_range,
    SyncJobTypeEnum.backfill: JobType.backfill_range,
    SyncJobTypeEnum.daily_sync: JobType.sync_account_daily,
    SyncJobTypeEnum.intraday_sync: JobType.sync_account_intraday,
    SyncJobTypeEnum.manual_sync: JobType.manual_sync,
}

JOB_PRIORITIES: Dict[SyncJobTypeEnum, JobPriority] = {
    SyncJobTypeEnum.initial_sync: JobPriority.BACKFILL,
    SyncJobTypeEnum.backfill: JobPriority.BACKFILL,
    SyncJobTypeEnum.daily_sync: JobPriority.SCHEDULED,
    SyncJobTypeEnum.intraday_sync: JobPriority.SCHEDULED,
    SyncJobTypeEnum.manual_sync: JobPriority.MANUAL,
}


class SyncOrchestrator:
    """Trigger handlers and job bookkeeping for ad account syncs.

    Args:
        db: Session used for SyncJob/AdAccount reads and writes.
        sync_queue: Queue for metrics jobs ("ads-sync").
        dimensions_queue: Queue for dimension refreshes ("ads-dimensions").
        redis_client: Used for the per-account enqueue lock.
        clock: Returns the current aware UTC datetime (tests freeze it).
    """

    def __init__(
        self,
        db: Session,
        sync_queue: JobQueue,
        dimensions_queue: Optional[JobQueue],
        redis_client: Redis,
        *,
        settings: Optional[Settings] = None,
        clock: Optional[Callable[[], datetime]] = None,
    ):
        self.db = db
        self.sync_queue = sync_queue
        self.dimensions_queue = dimensions_queue
        self.redis = redis_client
        self.settings = settings or get_settings()
        self._clock = clock or (lambda: datetime.now(timezone.utc))

    # =========================================================================
    # HELPERS
    # =========================================================================

    def _today(self, account: AdAccount) -> date:
        return today_in_timezone(account.timezone, self._clock())

    def _utcnow_naive(self) -> datetime:
        return self._clock().astimezone(timezone.utc).replace(tzinfo=None)

    @contextmanager
    def _account_lock(self, account_id: UUID) -> Iterator[None]:
        lock = self.redis.lock(
            f"adsync:lock:sync:{account_id}",
            timeout=self.settings.ACCOUNT_LOCK_TIMEOUT_SECONDS,
            blocking_timeout=5,
        )
        if not lock.acquire():
            raise QueueTimeout(
                f"Could not lock account {account_id} for enqueue",
                reason="lock_timeout",
            )
        try:
            yield
        finally:
            try:
                lock.release()
            except LockError:
                logger.warning("[ORCHESTRATOR] Lock for account %s expired before release", account_id)

    def find_blocking_job(self, account_id: UUID, date_from: date, date_to: date) -> Optional[SyncJob]:
        """Fresh non-terminal job whose window overlaps [date_from, date_to].

        Jobs without any update for SYNC_STALE_JOB_MINUTES are treated as
        abandoned and no longer block.
        """
        stale_cutoff = self._utcnow_naive() - timedelta(minutes=self.settings.SYNC_STALE_JOB_MINUTES)
        return (
            self.db.query(SyncJob)
            .filter(
                SyncJob.ad_account_id == account_id,
                SyncJob.status.in_(NON_TERMINAL_JOB_STATUSES),
                SyncJob.date_from <= date_to,
                SyncJob.date_to >= date_from,
                SyncJob.updated_at >= stale_cutoff,
            )
            .order_by(SyncJob.created_at)
            .first()
        )

    def _eligible_accounts(self) -> List[AdAccount]:
        return (
            self.db.query(AdAccount)
            .join(Connection, AdAccount.connection_id == Connection.id)
            .filter(AdAccount.is_enabled.is_(True), Connection.status == ConnectionStatusEnum.active)
            .all()
        )

    def _enqueue_window(
        self,
        account: AdAccount,
        job_type: SyncJobTypeEnum,
        date_from: date,
        date_to: date,
        *,
        initiated_by: Optional[str] = None,
    ) -> List[SyncJob]:
        """Create one SyncJob per chunk, commit, then enqueue each by its id."""
        chunks = split_date_range(date_from, date_to, self.settings.SYNC_CHUNK_DAYS)
        jobs = [
            SyncJob(
                ad_account_id=account.id,
                job_type=job_type,
                status=SyncJobStatusEnum.pending,
                date_from=chunk_from,
                date_to=chunk_to,
                initiated_by=initiated_by,
            )
            for chunk_from, chunk_to in chunks
        ]
        self.db.add_all(jobs)
        self.db.commit()

        priority = JOB_PRIORITIES[job_type]
        queue_type = QUEUE_JOB_TYPES[job_type]
        try:
            for job in jobs:
                payload = SyncJobPayload(
                    sync_job_id=job.id,
                    organization_id=account.organization_id,
                    ad_account_id=account.id,
                    connection_id=account.connection_id,
                    customer_id=account.external_id,
                    provider=account.provider,
                    job_type=job_type,
                    date_from=job.date_from,
                    date_to=job.date_to,
                    initiated_by=initiated_by,
                )
                self.sync_queue.enqueue(
                    queue_type.value,
                    payload.model_dump(mode="json"),
                    job_id=str(job.id),
                    priority=priority,
                )
        except RedisError as e:
            for job in jobs:
                if job.status == SyncJobStatusEnum.pending and self._queue_job_missing(job):
                    job.status = SyncJobStatusEnum.failed
                    job.completed_at = self._utcnow_naive()
                    job.error_message = f"Enqueue failed: {e}"
            self.db.commit()
            raise

        logger.info(
            "[ORCHESTRATOR] %s for account %s: %s..%s in %d chunk(s)",
            job_type.value, account.external_id, date_from, date_to, len(jobs),
        )
        return jobs

    def _queue_job_missing(self, job: SyncJob) -> bool:
        try:
            return self.sync_queue.get_job(str(job.id)) is None
        except RedisError:
            return True

    # =========================================================================
    # TRIGGERS
    # =========================================================================

    def trigger_initial_sync(self, account: AdAccount, days_back: Optional[int] = None) -> List[SyncJob]:
        """Backfill [today - days_back, today] for a newly linked account."""
        days = self.settings.INITIAL_SYNC_DAYS if days_back is None else days_back
        today = self._today(account)
        return self._trigger_scheduled(account, SyncJobTypeEnum.initial_sync, today - timedelta(days=days), today)

    def trigger_daily_sync(self) -> TriggerSummary:
        """[yesterday, today] for every enabled account with an ACTIVE connection."""
        logger.info("[ORCHESTRATOR] Daily sync triggered")
        return self._trigger_all(SyncJobTypeEnum.daily_sync, days_back=1, with_dimensions=True)

    def trigger_intraday_sync(self) -> TriggerSummary:
        """[today, today] for every enabled account with an ACTIVE connection."""
        if not self.settings.INTRADAY_SYNC_ENABLED:
            logger.info("[ORCHESTRATOR] Intraday sync disabled, skipping")
            return TriggerSummary()
        logger.info("[ORCHESTRATOR] Intraday sync triggered")
        return self._trigger_all(SyncJobTypeEnum.intraday_sync, days_back=0, with_dimensions=False)

    def _trigger_all(self, job_type: SyncJobTypeEnum, *, days_back: int, with_dimensions: bool) -> TriggerSummary:
        summary = TriggerSummary()
        for account in self._eligible_accounts():
            summary.accounts += 1
            today = self._today(account)
            try:
                jobs = self._trigger_scheduled(account, job_type, today - timedelta(days=days_back), today)
                if with_dimensions:
                    self.enqueue_dimensions_sync(account)
            except Exception as e:
                # One bad account must not stop the rest of the run
                self.db.rollback()
                summary.failed += 1
                logger.exception("[ORCHESTRATOR] %s failed for account %s", job_type.value, account.id)
                capture_exception(e, extra={"account_id": str(account.id), "job_type": job_type.value})
                continue

            if jobs:
                summary.enqueued += len(jobs)
                summary.job_ids.extend(str(j.id) for j in jobs)
            else:
                summary.skipped += 1

        logger.info(
            "[ORCHESTRATOR] %s: accounts=%d enqueued=%d skipped=%d failed=%d",
            job_type.value, summary.accounts, summary.enqueued, summary.skipped, summary.failed,
        )
        return summary

    def _trigger_scheduled(
        self, account: AdAccount, job_type: SyncJobTypeEnum, date_from: date, date_to: date,
    ) -> List[SyncJob]:
        with self._account_lock(account.id):
            blocking = self.find_blocking_job(account.id, date_from, date_to)
            if blocking is not None:
                logger.info(
                    "[ORCHESTRATOR] Skipping %s for account %s: job %s (%s) covers %s..%s",
                    job_type.value, account.external_id, blocking.id, blocking.status.value,
                    blocking.date_from, blocking.date_to,
                )
                return []
            return self._enqueue_window(account, job_type, date_from, date_to)

    def enqueue_manual_sync(
        self,
        organization_id: UUID,
        account_id: UUID,
        date_from: date,
        date_to: date,
        initiated_by: Optional[str] = None,
    ) -> ManualSyncResult:
        """Accept or reject a user-requested sync.

        Returns immediately with the job ids; failures after acceptance are
        only visible through job status.

        Raises:
            QueueTimeout: with `reason` account_not_found, invalid_range,
                connection_inactive, overlapping_job or lock_timeout.
        """
        account = (
            self.db.query(AdAccount)
            .filter(AdAccount.id == account_id, AdAccount.organization_id == organization_id)
            .first()
        )
        if account is None or not account.is_enabled:
            raise QueueTimeout("Account not found or disabled", reason="account_not_found")

        today = self._today(account)
        if date_from > date_to or date_from > today:
            raise QueueTimeout(f"Invalid date range {date_from}..{date_to}", reason="invalid_range")
        date_to = min(date_to, today)

        connection = self.db.query(Connection).filter(Connection.id == account.connection_id).first()
        if connection is None or connection.status != ConnectionStatusEnum.active:
            status = connection.status.value if connection else "missing"
            raise QueueTimeout(f"Connection is {status}; re-authorize to sync", reason="connection_inactive")

        with self._account_lock(account.id):
            blocking = self.find_blocking_job(account.id, date_from, date_to)
            if blocking is not None:
                raise QueueTimeout(
                    f"A {blocking.status.value} sync already covers {blocking.date_from}..{blocking.date_to}",
                    reason="overlapping_job",
                    existing_job_id=str(blocking.id),
                )
            jobs = self._enqueue_window(
                account, SyncJobTypeEnum.manual_sync, date_from, date_to, initiated_by=initiated_by,
            )
            account.sync_status = AccountSyncStatusEnum.syncing
            self.db.commit()

        return ManualSyncResult(job_ids=[str(j.id) for j in jobs], date_from=date_from, date_to=date_to)

    def enqueue_dimensions_sync(self, account: AdAccount) -> Optional[str]:
        """Queue a dimension refresh, at most once per account per day."""
        if self.dimensions_queue is None:
            return None
        payload = DimensionsJobPayload(
            organization_id=account.organization_id,
            ad_account_id=account.id,
            connection_id=account.connection_id,
            customer_id=account.external_id,
            provider=account.provider,
        )
        return self.dimensions_queue.enqueue(
            JobType.sync_dimensions.value,
            payload.model_dump(mode="json"),
            job_id=f"dims:{account.id}:{self._today(account).isoformat()}",
            priority=JobPriority.SCHEDULED,
        )

    # =========================================================================
    # JOB MANAGEMENT
    # =========================================================================

    def cancel_sync_job(self, organization_id: UUID, job_id: UUID) -> bool:
        """Mark a PENDING/RUNNING job CANCELLED. Returns False if it was already terminal.

        A running handler notices at its next batch boundary; a queued one
        skips itself when dequeued.
        """
        job = (
            self.db.query(SyncJob)
            .join(AdAccount, SyncJob.ad_account_id == AdAccount.id)
            .filter(SyncJob.id == job_id, AdAccount.organization_id == organization_id)
            .first()
        )
        if job is None or job.is_terminal:
            return False

        job.status = SyncJobStatusEnum.cancelled
        job.completed_at = self._utcnow_naive()
        self.db.flush()
        self._release_if_idle(job.ad_account)
        self.db.commit()
        logger.info("[ORCHESTRATOR] Cancelled sync job %s", job_id)
        return True

    def _release_if_idle(self, account: AdAccount) -> None:
        """Leave SYNCING once no non-terminal job remains for the account (caller commits)."""
        still_active = (
            self.db.query(SyncJob.id)
            .filter(SyncJob.ad_account_id == account.id, SyncJob.status.in_(NON_TERMINAL_JOB_STATUSES))
            .first()
        )
        if still_active is None and account.sync_status == AccountSyncStatusEnum.syncing:
            account.sync_status = (
                AccountSyncStatusEnum.synced if account.last_synced_at else AccountSyncStatusEnum.pending
            )

    def reap_stale_jobs(self) -> int:
        """Fail non-terminal SyncJobs that no queue job will ever settle.

        A PENDING/RUNNING record without an update for SYNC_STALE_JOB_MINUTES
        whose queue job is gone or already finished was lost: the queue job
        expired, arq gave up on it after repeated worker crashes, or its
        outcome could not be written back.

        Returns:
            Number of SyncJobs marked FAILED.
        """
        stale_cutoff = self._utcnow_naive() - timedelta(minutes=self.settings.SYNC_STALE_JOB_MINUTES)
        stale = (
            self.db.query(SyncJob)
            .filter(SyncJob.status.in_(NON_TERMINAL_JOB_STATUSES), SyncJob.updated_at < stale_cutoff)
            .all()
        )

        reaped = []
        for job in stale:
            queued = self.sync_queue.get_job(str(job.id))
            if queued is not None and queued.status != "complete":
                continue
            job.status = SyncJobStatusEnum.failed
            job.completed_at = self._utcnow_naive()
            job.error_message = "Abandoned: no queue job left to run it"
            reaped.append(job)
        self.db.flush()

        for account in {job.ad_account for job in reaped}:
            self._release_if_idle(account)
        self.db.commit()

        if reaped:
            logger.warning("[ORCHESTRATOR] Reaped %d abandoned sync job(s): %s",
                           len(reaped), ", ".join(str(job.id) for job in reaped))
        return len(reaped)

    def list_sync_jobs(
        self,
        organization_id: UUID,
        *,
        account_id: Optional[UUID] = None,
        status: Optional[SyncJobStatusEnum] = None,
        limit: int = 50,
        offset: int = 0,
    ) -> List[SyncJob]:
        query = (
            self.db.query(SyncJob)
            .join(AdAccount, SyncJob.ad_account_id == AdAccount.id)
            .filter(AdAccount.organization_id == organization_id)
        )
        if account_id is not None:
            query = query.filter(SyncJob.ad_account_id == account_id)
        if status is not None:
            query = query.filter(SyncJob.status == status)
        return query.order_by(SyncJob.created_at.desc()).offset(offset).limit(limit).all()

    def get_queue_stats(self) -> Dict[str, Dict[str, int]]:
        stats = {"sync": self.sync_queue.get_stats()}
        if self.dimensions_queue is not None:
            stats["dimensions"] = self.dimensions_queue.get_stats()
        return stats

    # =========================================================================
    # ACCOUNT LINKING
    # =========================================================================

    def link_ad_account(
        self,
        organization_id: UUID,
        connection_id: UUID,
        customer: AccessibleCustomer,
    ) -> Tuple[AdAccount, List[SyncJob]]:
        """Link (or re-enable) an account and fire its initial sync when new.

        Raises:
            AuthError: The connection is missing, foreign or not ACTIVE.
        """
        connection = (
            self.db.query(Connection)
            .filter(Connection.id == connection_id, Connection.organization_id == organization_id)
            .first()
        )
        if connection is None or connection.status != ConnectionStatusEnum.active:
            raise AuthError("Connection not active", connection_id=str(connection_id))

        account = (
            self.db.query(AdAccount)
            .filter(
                AdAccount.organization_id == organization_id,
                AdAccount.provider == connection.provider,
                AdAccount.external_id == customer.external_id,
            )
            .first()
        )
        if account is not None:
            account.is_enabled = True
            account.connection_id = connection.id
            account.name = customer.name
            account.currency = customer.currency
            account.timezone = customer.timezone
            self.db.commit()
            logger.info("[ORCHESTRATOR] Re-enabled account %s", account.external_id)
            return account, []

        account = AdAccount(
            organization_id=organization_id,
            connection_id=connection.id,
            provider=connection.provider,
            external_id=customer.external_id,
            name=customer.name,
            currency=customer.currency,
            timezone=customer.timezone,
            is_enabled=True,
            sync_status=AccountSyncStatusEnum.pending,
        )
        self.db.add(account)
        self.db.commit()
        logger.info("[ORCHESTRATOR] Linked account %s (%s)", account.external_id, account.name)

        jobs = self.trigger_initial_sync(account)
        self.enqueue_dimensions_sync(account)
        return account, jobs
