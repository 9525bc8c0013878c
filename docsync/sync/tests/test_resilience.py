"""
Tests for retry and circuit breaker helpers.
"""

import pytest

from ..error_tracker import ErrorSeverity, ErrorTracker, SourceFetchError, SourceNotFoundError
from ..resilience import CircuitBreaker, RetryPolicy, with_retry


def no_delay_policy(attempts: int) -> RetryPolicy:
    return RetryPolicy(max_attempts=attempts, base_delay_seconds=0, jitter=False)


class TestWithRetry:

    @pytest.mark.asyncio
    async def test_retries_until_success(self):
        calls = []

        async def flaky():
            calls.append(1)
            if len(calls) < 3:
                raise SourceFetchError("transient")
            return "ok"

        assert await with_retry(flaky, policy=no_delay_policy(3)) == "ok"
        assert len(calls) == 3

    @pytest.mark.asyncio
    async def test_raises_last_error_when_exhausted(self):
        async def broken():
            raise SourceFetchError("still down")

        with pytest.raises(SourceFetchError, match="still down"):
            await with_retry(broken, policy=no_delay_policy(2))

    @pytest.mark.asyncio
    async def test_no_retry_on(self):
        calls = []

        async def gone():
            calls.append(1)
            raise SourceNotFoundError("gone")

        with pytest.raises(SourceNotFoundError):
            await with_retry(gone, policy=no_delay_policy(3), no_retry_on=(SourceNotFoundError,))
        assert len(calls) == 1

    @pytest.mark.asyncio
    async def test_open_circuit_short_circuits(self):
        breaker = CircuitBreaker(failure_threshold=1, reset_timeout_seconds=60)
        breaker.record_failure("hosted")

        async def never_called():
            raise AssertionError("should not run")

        with pytest.raises(RuntimeError, match="Circuit open"):
            await with_retry(never_called, policy=no_delay_policy(1),
                             circuit_breaker=breaker, circuit_key="hosted")

    def test_backoff_is_exponential_and_capped(self):
        policy = RetryPolicy(base_delay_seconds=1, max_delay_seconds=5, jitter=False)
        assert [policy.compute_backoff(i) for i in range(4)] == [1, 2, 4, 5]


class TestCircuitBreaker:

    def test_success_resets(self):
        breaker = CircuitBreaker(failure_threshold=2)
        breaker.record_failure("k")
        breaker.record_success("k")
        breaker.record_failure("k")

        assert not breaker.is_open("k")
        assert breaker.get_state_snapshot()["k"]["failures"] == 1

    def test_opens_at_threshold(self):
        breaker = CircuitBreaker(failure_threshold=2, reset_timeout_seconds=60)
        breaker.record_failure("k")
        breaker.record_failure("k")

        assert breaker.is_open("k")
        assert breaker.get_state_snapshot()["k"]["open_until"] is not None


class TestErrorTracker:

    def test_report_by_source(self):
        tracker = ErrorTracker()
        tracker.report_exception(SourceFetchError("timeout", source_id="a"))
        tracker.report_exception(ValueError("bad"), source_id="b", severity=ErrorSeverity.WARNING)

        assert tracker.errors_by_source() == {"a": "timeout", "b": "bad"}
        report = tracker.generate_report()
        assert report["total_errors"] == 2
        assert report["error_count"] == 1
        assert report["warning_count"] == 1
        assert not tracker.has_critical_errors()
