import pytest

from cicd_agent.domain.cancellation import CancelToken
from cicd_agent.domain.exceptions import ApiError, NetworkError, ValidationError
from cicd_agent.infrastructure.retry import RetryPolicy, call_with_retries


def test_backoff_delays_are_capped():
    policy = RetryPolicy(attempts=5, backoff_initial=1.0, backoff_factor=2.0, backoff_max=5.0)
    assert [policy.delay(i) for i in range(4)] == [1.0, 2.0, 4.0, 5.0]


def test_retries_transient_errors_until_success():
    calls = []
    sleeps = []

    def flaky():
        calls.append(1)
        if len(calls) < 3:
            raise NetworkError(code="NETWORK_ERROR", message="reset")
        return "ok"

    policy = RetryPolicy(attempts=3, backoff_initial=0.1, backoff_factor=2.0, backoff_max=1.0)
    assert call_with_retries(flaky, policy=policy, operation="flaky", sleep=sleeps.append) == "ok"
    assert sleeps == [0.1, 0.2]


def test_gives_up_after_attempts():
    calls = []

    def down():
        calls.append(1)
        raise ApiError(code="API_ERROR", message="boom", http_status=503)

    with pytest.raises(ApiError):
        call_with_retries(down, policy=RetryPolicy(attempts=2, backoff_initial=0.0), operation="down", sleep=lambda s: None)
    assert len(calls) == 2


def test_non_retryable_errors_are_raised_immediately():
    calls = []

    def rejected():
        calls.append(1)
        raise ApiError(code="API_ERROR", message="not found", http_status=404)

    def invalid():
        calls.append(1)
        raise ValidationError(code="BAD", message="bad")

    with pytest.raises(ApiError):
        call_with_retries(rejected, policy=RetryPolicy(attempts=5), operation="rejected", sleep=lambda s: None)
    with pytest.raises(ValidationError):
        call_with_retries(invalid, policy=RetryPolicy(attempts=5), operation="invalid", sleep=lambda s: None)
    assert len(calls) == 2


def test_cancel_interrupts_backoff():
    cancel = CancelToken()
    calls = []

    def down():
        calls.append(1)
        cancel.cancel()
        raise NetworkError(code="NETWORK_ERROR", message="reset")

    with pytest.raises(NetworkError):
        call_with_retries(down, policy=RetryPolicy(attempts=5, backoff_initial=30.0), operation="down", cancel=cancel)
    assert len(calls) == 1
