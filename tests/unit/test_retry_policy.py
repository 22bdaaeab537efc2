import pytest

from omnicrm.config import settings
from omnicrm.db.helpers import DatabaseError
from omnicrm.jobs.errors import (
    InvalidPayloadError,
    JobTimeoutError,
    NoHandlerRegisteredError,
    NonRetryableJobError,
    is_retryable,
)
from omnicrm.jobs.retry_policy import RetryPolicy
from omnicrm.services.token_service import TokenServiceError


def test_default_ceiling_is_three():
    policy = RetryPolicy()

    assert [policy.should_retry(attempts) for attempts in (1, 2, 3)] == [True, True, False]


def test_exponential_delays():
    policy = RetryPolicy(base_delay_seconds=1.0, multiplier=2.0)

    assert [policy.delay_for(attempts) for attempts in (1, 2, 3, 4)] == [1.0, 2.0, 4.0, 8.0]


def test_delay_cap():
    policy = RetryPolicy(base_delay_seconds=10.0, multiplier=3.0, max_delay_seconds=25.0)

    assert policy.delay_for(1) == 10.0
    assert policy.delay_for(2) == 25.0


def test_from_settings(monkeypatch):
    monkeypatch.setattr(settings, "JOB_MAX_ATTEMPTS", 5)
    monkeypatch.setattr(settings, "JOB_RETRY_BASE_DELAY_SECONDS", 0.5)

    policy = RetryPolicy.from_settings()

    assert policy.max_attempts == 5
    assert policy.base_delay_seconds == 0.5


@pytest.mark.parametrize(
    "kwargs",
    [{"max_attempts": 0}, {"base_delay_seconds": -1}, {"multiplier": 0.5}],
)
def test_invalid_policy_rejected(kwargs):
    with pytest.raises(ValueError):
        RetryPolicy(**kwargs)


@pytest.mark.parametrize(
    "error, expected",
    [
        (RuntimeError("boom"), True),
        (JobTimeoutError("job-1", 5), True),
        (DatabaseError("deadlock"), True),
        (DatabaseError("constraint", recoverable=False), False),
        (NonRetryableJobError("bad data"), False),
        (NoHandlerRegisteredError("fax"), False),
        (InvalidPayloadError("bad", issues=[]), False),
        (TokenServiceError("invalid_grant", user_id="user-1", recoverable=False), False),
    ],
)
def test_is_retryable(error, expected):
    assert is_retryable(error) is expected
