"""
Tests for the model call retry policy.
"""

import pytest

from tutorchat.exceptions import NonRetryableError, RetryableError
from tutorchat.llm.retry import backoff_delay, is_retryable_status, retry_call, status_error


class TestStatusClassification:
    """Tests for HTTP status classification."""

    @pytest.mark.parametrize("status", [None, 408, 429, 500, 502, 503])
    def test_retryable(self, status):
        assert is_retryable_status(status)
        assert isinstance(status_error("openai", status, "boom"), RetryableError)

    @pytest.mark.parametrize("status", [400, 401, 403, 404, 422])
    def test_permanent(self, status):
        assert not is_retryable_status(status)
        error = status_error("openai", status, "boom")
        assert isinstance(error, NonRetryableError)
        assert error.status_code == status
        assert error.kind == "non_retryable"


class TestBackoff:
    def test_delay_is_capped_and_jittered(self):
        for attempt in range(10):
            delay = backoff_delay(attempt, base=1.0, cap=10.0)
            ceiling = min(10.0, 2**attempt)
            assert ceiling / 2 <= delay <= ceiling


class TestRetryCall:
    """Tests for retry_call."""

    def test_retries_until_success(self):
        attempts = []
        sleeps = []

        def flaky():
            attempts.append(1)
            if len(attempts) < 3:
                raise RetryableError("openai", "rate limited", status_code=429)
            return "ok"

        assert retry_call(flaky, max_retries=4, sleep=sleeps.append) == "ok"
        assert len(attempts) == 3
        assert len(sleeps) == 2

    def test_gives_up_after_max_retries(self):
        calls = []

        def always_down():
            calls.append(1)
            raise RetryableError("openai", "unavailable", status_code=503)

        with pytest.raises(RetryableError):
            retry_call(always_down, max_retries=2, sleep=lambda _: None)
        assert len(calls) == 3

    def test_non_retryable_propagates_immediately(self):
        calls = []

        def rejected():
            calls.append(1)
            raise NonRetryableError("openai", "bad request", status_code=400)

        with pytest.raises(NonRetryableError):
            retry_call(rejected, max_retries=5, sleep=lambda _: None)
        assert len(calls) == 1

    def test_deadline_stops_retries(self):
        calls = []

        def slow():
            calls.append(1)
            raise RetryableError("openai", "timeout")

        with pytest.raises(RetryableError):
            retry_call(slow, max_retries=5, deadline=0.0, sleep=lambda _: None)
        assert len(calls) == 1
