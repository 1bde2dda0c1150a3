"""
Tests for the bounded retry executor.
"""
import pytest

from incident_capture.backoff import BackoffExecutor, backoff_delay_ms
from incident_capture.errors import AuthError, NotFoundError, RetryExhaustedError

from conftest import SleepRecorder


class Flaky:
    def __init__(self, failures: int, result="ok", error=ConnectionError):
        self.failures = failures
        self.result = result
        self.error = error
        self.calls = 0

    def __call__(self):
        self.calls += 1
        if self.calls <= self.failures:
            raise self.error(f"failure {self.calls}")
        return self.result


class TestDelayFunction:
    def test_delays_double_and_cap(self):
        assert [backoff_delay_ms(n) for n in range(1, 7)] == [1000, 2000, 4000, 8000, 8000, 8000]

    def test_attempt_must_be_positive(self):
        with pytest.raises(ValueError):
            backoff_delay_ms(0)


class TestBackoffExecutor:
    @pytest.mark.asyncio
    async def test_three_failures_wait_twice_then_exhaust(self):
        """Waits 1000ms and 2000ms, and never after the final attempt."""
        sleeper = SleepRecorder()
        op = Flaky(failures=10)

        with pytest.raises(RetryExhaustedError) as exc_info:
            await BackoffExecutor(sleep=sleeper).call(op, label="ai_call")

        assert op.calls == 3
        assert sleeper.delays == [1.0, 2.0]
        err = exc_info.value
        assert err.attempts == 3
        assert err.label == "ai_call"
        assert isinstance(err.last_error, ConnectionError)
        assert "failure 3" in str(err.last_error)

    @pytest.mark.asyncio
    async def test_success_after_one_failure(self):
        sleeper = SleepRecorder()
        op = Flaky(failures=1, result="value")

        result, attempts = await BackoffExecutor(sleep=sleeper).call_traced(op, label="lookup")

        assert result == "value"
        assert attempts == 2
        assert sleeper.delays == [1.0]

    @pytest.mark.asyncio
    async def test_first_try_success_never_sleeps(self):
        sleeper = SleepRecorder()
        assert await BackoffExecutor(sleep=sleeper).call(lambda: 5, label="x") == 5
        assert sleeper.delays == []

    @pytest.mark.asyncio
    @pytest.mark.parametrize("error", [AuthError, NotFoundError])
    async def test_terminal_errors_are_not_retried(self, error):
        sleeper = SleepRecorder()
        op = Flaky(failures=5, error=error)

        with pytest.raises(error):
            await BackoffExecutor(sleep=sleeper).call(op, label="authorize")

        assert op.calls == 1
        assert sleeper.delays == []

    @pytest.mark.asyncio
    async def test_without_terminal_errors_retries_domain_errors(self):
        sleeper = SleepRecorder()
        op = Flaky(failures=5, error=NotFoundError)

        with pytest.raises(RetryExhaustedError) as exc_info:
            await BackoffExecutor(sleep=sleeper).without_terminal_errors().call(op, label="ai_call")

        assert op.calls == 3
        assert sleeper.delays == [1.0, 2.0]
        assert isinstance(exc_info.value.last_error, NotFoundError)

    @pytest.mark.asyncio
    async def test_awaitable_results_are_awaited(self):
        calls = []

        async def op():
            calls.append(1)
            if len(calls) < 3:
                raise TimeoutError("slow")
            return "done"

        sleeper = SleepRecorder()
        result, attempts = await BackoffExecutor(sleep=sleeper).call_traced(op, label="async_op")
        assert result == "done"
        assert attempts == 3
        assert sleeper.delays == [1.0, 2.0]

    def test_max_attempts_must_be_positive(self):
        with pytest.raises(ValueError):
            BackoffExecutor(max_attempts=0)
