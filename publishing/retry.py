"""
Crosspost Retry Policy
======================
One RetryPolicy shared by every adapter and by the chunked uploader.

Only transient failures are retried: TransientPlatformError and httpx
timeout/transport errors. Everything else propagates on the first attempt.
Backoff is deterministic (no jitter) and driven by tenacity.
"""

import asyncio
import logging
from dataclasses import dataclass, field
from typing import Callable, Awaitable, TypeVar

import httpx
from tenacity import AsyncRetrying, RetryCallState, retry_if_exception, stop_after_attempt

from .errors import PublishError, TransientPlatformError

logger = logging.getLogger("crosspost")

T = TypeVar("T")

MB = 1024 * 1024
LARGE_UPLOAD_THRESHOLD = 100 * MB


def is_transient_error(exc: BaseException) -> bool:
    if isinstance(exc, PublishError):
        return bool(exc.retryable)
    return isinstance(exc, (httpx.TimeoutException, httpx.TransportError))


def exponential_backoff(base: float) -> Callable[[int], float]:
    """attempt 0 -> base, 1 -> 2*base, 2 -> 4*base ..."""
    def _delay(attempt: int) -> float:
        return base * (2 ** attempt)
    return _delay


def linear_backoff(step: float) -> Callable[[int], float]:
    """retry 0 -> step, 1 -> 2*step, 2 -> 3*step ..."""
    def _delay(retry: int) -> float:
        return (retry + 1) * step
    return _delay


@dataclass
class RetryPolicy:
    """
    max_attempts counts the first try, so max_attempts=3 means up to two retries.
    backoff(n) is the delay after the n-th failed attempt (0-based).
    """
    max_attempts: int = 3
    backoff: Callable[[int], float] = field(default_factory=lambda: exponential_backoff(2.0))
    is_transient: Callable[[BaseException], bool] = is_transient_error
    sleep: Callable[[float], Awaitable[None]] = asyncio.sleep

    def _wait(self, retry_state: RetryCallState) -> float:
        return self.backoff(retry_state.attempt_number - 1)

    def _log_retry(self, label: str) -> Callable[[RetryCallState], None]:
        def _before_sleep(retry_state: RetryCallState) -> None:
            delay = retry_state.next_action.sleep if retry_state.next_action else 0
            logger.warning(
                f"{label} attempt {retry_state.attempt_number}/{self.max_attempts} failed "
                f"({retry_state.outcome.exception()}); retrying in {delay:.0f}s"
            )
        return _before_sleep

    async def run(self, fn: Callable[[], Awaitable[T]], label: str = "operation") -> T:
        retrying = AsyncRetrying(
            retry=retry_if_exception(self.is_transient),
            stop=stop_after_attempt(self.max_attempts),
            wait=self._wait,
            sleep=self.sleep,
            before_sleep=self._log_retry(label),
            reraise=True,
        )
        try:
            return await retrying(fn)
        except Exception as e:
            if not self.is_transient(e):
                raise
            logger.error(f"{label} failed after {self.max_attempts} attempts: {e}")
            if isinstance(e, PublishError):
                raise
            raise TransientPlatformError(f"{label} failed after {self.max_attempts} attempts: {e}") from e

    def with_sleep(self, sleep: Callable[[float], Awaitable[None]]) -> "RetryPolicy":
        return RetryPolicy(self.max_attempts, self.backoff, self.is_transient, sleep)


def phase_policy(total_size: int, sleep: Callable[[float], Awaitable[None]] = asyncio.sleep) -> RetryPolicy:
    """
    Start/finish phases: more patience for large files.

    Phase limits are total attempts (3, or 5 over 100MB), whereas chunk_policy
    allows three retries on top of the first try.
    """
    if total_size > LARGE_UPLOAD_THRESHOLD:
        return RetryPolicy(max_attempts=5, backoff=exponential_backoff(5.0), sleep=sleep)
    return RetryPolicy(max_attempts=3, backoff=exponential_backoff(2.0), sleep=sleep)


def chunk_policy(sleep: Callable[[float], Awaitable[None]] = asyncio.sleep) -> RetryPolicy:
    """Per-chunk: first try plus three retries, linear 2s steps."""
    return RetryPolicy(max_attempts=4, backoff=linear_backoff(2.0), sleep=sleep)
