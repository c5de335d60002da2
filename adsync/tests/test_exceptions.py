"""Tests for the error taxonomy.

WHY:
    arq stores a failed job's exception in its pickled result, so every
    error must survive pickling with its attributes and retry flag.

REFERENCES:
    adsync/exceptions.py
"""

import pickle

import pytest

from adsync.exceptions import (
    AuthError,
    DimensionMissing,
    JobTimeout,
    ProviderError,
    QueueTimeout,
    RateLimitExceeded,
)


@pytest.mark.parametrize(
    "error, attrs",
    [
        (RateLimitExceeded("google-ads", 30000), {"key": "google-ads", "waited_ms": 30000}),
        (QueueTimeout("busy", "overlapping_job", existing_job_id="job-1"),
         {"reason": "overlapping_job", "existing_job_id": "job-1"}),
        (DimensionMissing("campaign", "111"), {"level": "campaign", "external_id": "111"}),
        (AuthError("invalid_grant", connection_id="conn-1"), {"connection_id": "conn-1"}),
        (JobTimeout("job-1", 0.2), {"job_id": "job-1", "timeout_seconds": 0.2}),
    ],
)
def test_errors_survive_pickling(error, attrs):
    restored = pickle.loads(pickle.dumps(error))

    assert type(restored) is type(error)
    assert str(restored) == str(error)
    assert restored.retryable == error.retryable
    for name, value in attrs.items():
        assert getattr(restored, name) == value


def test_provider_error_keeps_status_derived_retry_flag():
    restored = pickle.loads(pickle.dumps(ProviderError("bad query", status_code=400, body="{}")))

    assert restored.retryable is False
    assert (restored.status_code, restored.body) == (400, "{}")
