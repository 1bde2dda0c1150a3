# incident_capture/backoff.py
import asyncio
import enum
import inspect
import logging
import time
from typing import Any, Awaitable, Callable, Tuple, TypeVar

from incident_capture.errors import TERMINAL_ERRORS, RetryExhaustedError

logger = logging.getLogger("incident_capture")

T = TypeVar("T")

MAX_ATTEMPTS = 3
BASE_DELAY_MS = 1000
MAX_DELAY_MS = 8000
BACKOFF_MULTIPLIER = 2


class RetryState(enum.Enum):
    ATTEMPTING = "attempting"
    BACKING_OFF = "backing_off"
    EXHAUSTED = "exhausted"
    SUCCEEDED = "succeeded"


def backoff_delay_ms(attempt: int) -> int:
    """
    Wait applied after failed attempt number `attempt` (1-based).
    1 -> 1000, 2 -> 2000, 3 -> 4000, ... capped at 8000.
    """
    if attempt < 1:
        raise ValueError(f"attempt must be >= 1, got {attempt}")
    return min(BASE_DELAY_MS * BACKOFF_MULTIPLIER ** (attempt - 1), MAX_DELAY_MS)


class BackoffExecutor:
    """
    Bounded retry for every call that crosses into the AI service or into
    another component's lookup. Terminal domain errors pass straight through.

    `sleep` is awaited between attempts and never while a lock is held;
    tests inject a recorder instead of asyncio.sleep.
    """

    def __init__(
        self,
        max_attempts: int = MAX_ATTEMPTS,
        sleep: Callable[[float], Awaitable[Any]] | None = None,
        terminal_errors: tuple = TERMINAL_ERRORS,
    ):
        if max_attempts < 1:
            raise ValueError("max_attempts must be >= 1")
        self.max_attempts = max_attempts
        self._sleep = sleep or asyncio.sleep
        self._terminal_errors = terminal_errors

    def without_terminal_errors(self) -> "BackoffExecutor":
        """Same attempts and sleep, but every failure is retried. Used for AI calls."""
        return BackoffExecutor(self.max_attempts, sleep=self._sleep, terminal_errors=())

    async def call(self, fn: Callable[[], Any], *, label: str, correlation_id: str | None = None) -> Any:
        result, _ = await self.call_traced(fn, label=label, correlation_id=correlation_id)
        return result

    async def call_traced(
        self,
        fn: Callable[[], Any],
        *,
        label: str,
        correlation_id: str | None = None,
    ) -> Tuple[Any, int]:
        """
        Returns (result, attempts_used). `fn` may be sync or return an awaitable.
        Raises RetryExhaustedError once max_attempts have failed.
        """
        state = RetryState.ATTEMPTING
        attempt = 0
        last_exception: BaseException | None = None

        while state in (RetryState.ATTEMPTING, RetryState.BACKING_OFF):
            if state is RetryState.BACKING_OFF:
                delay_ms = backoff_delay_ms(attempt)
                logger.info(
                    f"[RETRY] {label} backing off {delay_ms}ms before attempt "
                    f"{attempt + 1}/{self.max_attempts} correlation_id={correlation_id}"
                )
                await self._sleep(delay_ms / 1000.0)
                state = RetryState.ATTEMPTING

            attempt += 1
            start_time = time.monotonic()
            try:
                result = fn()
                if inspect.isawaitable(result):
                    result = await result
                state = RetryState.SUCCEEDED
                return result, attempt
            except self._terminal_errors:
                raise
            except Exception as e:
                elapsed = time.monotonic() - start_time
                last_exception = e
                logger.warning(
                    f"[RETRY] {label} attempt {attempt}/{self.max_attempts} failed "
                    f"(elapsed={elapsed:.2f}s) correlation_id={correlation_id}: {e!r}"
                )
                if attempt >= self.max_attempts:
                    state = RetryState.EXHAUSTED
                else:
                    state = RetryState.BACKING_OFF

        logger.error(
            f"[RETRY] {label} exhausted after {attempt} attempts "
            f"correlation_id={correlation_id}: {last_exception!r}"
        )
        raise RetryExhaustedError(label, attempt, last_exception) from last_exception
