import pytest

from batch_job_engine.core.exceptions import RetryLimitExceededError, SkipLimitExceededError
from batch_job_engine.services.fault_tolerance import NEVER_SKIP, RetryPolicy, RetryTemplate, SkipPolicy

from conftest import RecordingSleep


def test_backoff_grows_exponentially_up_to_max_delay():
    policy = RetryPolicy(max_attempts=5, initial_delay=1.0, max_delay=5.0, jitter=False)
    assert [policy.backoff(n) for n in range(1, 5)] == [1.0, 2.0, 4.0, 5.0]


def test_jitter_stays_within_half_to_full_delay():
    policy = RetryPolicy(initial_delay=2.0, jitter=True)
    for _ in range(50):
        assert 1.0 <= policy.backoff(1) <= 2.0


def test_retry_policy_requires_one_attempt():
    with pytest.raises(ValueError):
        RetryPolicy(max_attempts=0)


def test_no_retry_exceptions_take_precedence():
    policy = RetryPolicy(retryable_exceptions=(Exception,), no_retry_exceptions=(KeyError,))
    assert policy.is_retryable(ValueError())
    assert not policy.is_retryable(KeyError())


def test_skip_policy_counts_against_limit():
    policy = SkipPolicy(skip_limit=2, skippable_exceptions=(ValueError,))
    assert policy.should_skip(ValueError(), 0)
    assert policy.should_skip(ValueError(), 1)
    assert not policy.should_skip(TypeError(), 0)
    with pytest.raises(SkipLimitExceededError):
        policy.should_skip(ValueError(), 2)


def test_never_skip_propagates_everything():
    assert not NEVER_SKIP.should_skip(ValueError(), 0)


@pytest.mark.asyncio
async def test_retry_template_returns_after_transient_failures():
    sleep = RecordingSleep()
    attempts = []
    failures = []

    async def flaky():
        attempts.append(1)
        if len(attempts) < 3:
            raise ConnectionError("reset")
        return "done"

    template = RetryTemplate(RetryPolicy(max_attempts=3, initial_delay=0.1, jitter=False), sleep=sleep)
    result = await template.execute(flaky, "flaky op", on_failure=lambda e, n: failures.append(n))

    assert result == "done"
    assert failures == [1, 2]
    assert sleep.delays == [0.1, 0.2]


@pytest.mark.asyncio
async def test_retry_template_wraps_last_error():
    async def always_fails():
        raise ConnectionError("down")

    template = RetryTemplate(RetryPolicy(max_attempts=2, initial_delay=0.0, jitter=False), sleep=RecordingSleep())
    with pytest.raises(RetryLimitExceededError) as excinfo:
        await template.execute(always_fails, "write")

    assert isinstance(excinfo.value.__cause__, ConnectionError)
    assert excinfo.value.error_code == "RETRY_LIMIT_EXCEEDED"
