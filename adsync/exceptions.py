"""
Sync Pipeline Exceptions
========================

Error taxonomy shared by the vault, the API client, the queue workers and the
orchestrator.

WHY THIS FILE EXISTS
--------------------
Workers decide between "retry with backoff" and "fail now" from the error
alone. Every exception here carries a `retryable` flag that the worker pool
hands to the job queue:

- AuthError: permanent, connection needs re-authorization
- RateLimitExceeded: transient, limiter wait timed out
- ProviderError: retryable for 5xx/408/429/transport, permanent for other 4xx
- DimensionMissing: row-level, skipped by the reconciler
- QueueTimeout: manual sync rejected before anything was enqueued
- AccountNotFound: permanent, account missing or disabled
- JobCancelled: the SyncJob was cancelled while running
- JobTimeout: the attempt ran past its deadline, retried like any transient error
- JobSuperseded: the attempt lost ownership of its SyncJob (interrupted or redelivered)

RELATED FILES
-------------
- adsync/services/token_service.py: Raises AuthError
- adsync/services/google_ads_client.py: Raises RateLimitExceeded, ProviderError
- adsync/workers/worker_pool.py: Maps `retryable` onto the arq retry policy
"""

from typing import Optional


def _rebuild_error(cls, args, state):
    error = cls.__new__(cls)
    error.args = args
    error.__dict__.update(state)
    return error


class SyncError(Exception):
    """
    Base exception for all sync pipeline errors.

    WHAT:
        Parent class with a message and a `retryable` classification.

    WHY:
        Lets the worker pool classify any pipeline failure without knowing
        each concrete type.
    """

    retryable: bool = True

    def __init__(self, message: str, *, retryable: Optional[bool] = None):
        super().__init__(message)
        self.message = message
        if retryable is not None:
            self.retryable = retryable

    def __reduce__(self):
        # arq pickles failed-job errors into results; subclass constructors
        # take different arguments than `args` holds
        return _rebuild_error, (type(self), self.args, self.__dict__)


class AuthError(SyncError):
    """Token refresh failed or the connection is no longer usable."""

    retryable = False

    def __init__(self, message: str, connection_id: Optional[str] = None):
        super().__init__(message)
        self.connection_id = connection_id


class RateLimitExceeded(SyncError):
    """The shared rate limiter did not grant a token within the wait budget."""

    retryable = True

    def __init__(self, key: str, waited_ms: int):
        super().__init__(f"Rate limiter '{key}' did not grant a token within {waited_ms}ms")
        self.key = key
        self.waited_ms = waited_ms


class ProviderError(SyncError):
    """
    Upstream API returned a non-2xx response or could not be reached.

    `status_code` is None for transport failures (timeouts, resets), which
    are always retryable.
    """

    # 4xx statuses that are transient rather than a bad request
    RETRYABLE_CLIENT_STATUSES = (408, 409, 429)

    def __init__(self, message: str, status_code: Optional[int] = None, body: Optional[str] = None):
        super().__init__(message, retryable=self.is_retryable_status(status_code))
        self.status_code = status_code
        self.body = body

    @classmethod
    def is_retryable_status(cls, status_code: Optional[int]) -> bool:
        if status_code is None:
            return True
        if 400 <= status_code < 500:
            return status_code in cls.RETRYABLE_CLIENT_STATUSES
        return True


class DimensionMissing(SyncError):
    """A fact row references a campaign/ad group that is not in the warehouse."""

    retryable = False

    def __init__(self, level: str, external_id: str):
        super().__init__(f"Missing {level} dimension for external id {external_id}")
        self.level = level
        self.external_id = external_id


class QueueTimeout(SyncError):
    """
    Manual sync request rejected synchronously.

    `reason` is a short machine-readable code (overlapping_job,
    connection_inactive, account_not_found, invalid_range, lock_timeout);
    `existing_job_id` is set when an overlapping job blocks the request.
    """

    retryable = False

    def __init__(self, message: str, reason: str, existing_job_id: Optional[str] = None):
        super().__init__(message)
        self.reason = reason
        self.existing_job_id = existing_job_id


class AccountNotFound(SyncError):
    retryable = False


class JobCancelled(SyncError):
    """Raised at a chunk boundary when the SyncJob was cancelled externally."""

    retryable = False

    def __init__(self, sync_job_id: str):
        super().__init__(f"Sync job {sync_job_id} was cancelled")
        self.sync_job_id = sync_job_id


class JobTimeout(SyncError):
    """The attempt ran past its deadline; raised at the next checkpoint."""

    retryable = True

    def __init__(self, job_id: str, timeout_seconds: float):
        super().__init__(f"Job {job_id} exceeded timeout of {timeout_seconds:g}s")
        self.job_id = job_id
        self.timeout_seconds = timeout_seconds


class JobSuperseded(SyncError):
    """The SyncJob is no longer RUNNING under this attempt; its writes are discarded."""

    retryable = False

    def __init__(self, sync_job_id: str, attempt: int):
        super().__init__(f"Sync job {sync_job_id} attempt {attempt} no longer owns the job")
        self.sync_job_id = sync_job_id
        self.attempt = attempt
