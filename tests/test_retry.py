"""
Tests for RetryPolicy and the phase/chunk policies.
"""

import logging

import httpx
import pytest

from publishing.errors import PermanentPlatformError, TransientPlatformError
from publishing.retry import (
    MB,
    RetryPolicy,
    chunk_policy,
    exponential_backoff,
    is_transient_error,
    linear_backoff,
    phase_policy,
)


class Flaky:
    """Fails with the given errors in order, then returns 'ok'."""

    def __init__(self, *errors):
        self.errors = list(errors)
        self.calls = 0

    async def __call__(self):
        self.calls += 1
        if self.errors:
            raise self.errors.pop(0)
        return "ok"


class TestBackoff:

    def test_exponential(self):
        delay = exponential_backoff(2.0)
        assert [delay(n) for n in range(3)] == [2.0, 4.0, 8.0]

    def test_linear(self):
        delay = linear_backoff(2.0)
        assert [delay(n) for n in range(3)] == [2.0, 4.0, 6.0]

    def test_transient_classification(self):
        assert is_transient_error(TransientPlatformError("x"))
        assert is_transient_error(httpx.ReadTimeout("slow"))
        assert is_transient_error(httpx.ConnectError("refused"))
        assert not is_transient_error(PermanentPlatformError("bad file"))
        assert not is_transient_error(ValueError("nope"))


class TestRetryPolicy:

    @pytest.mark.asyncio
    async def test_recovers_after_transient_failures(self, sleep):
        fn = Flaky(TransientPlatformError("503"), TransientPlatformError("503"))
        policy = RetryPolicy(max_attempts=3, backoff=exponential_backoff(2.0), sleep=sleep)

        assert await policy.run(fn) == "ok"
        assert fn.calls == 3
        assert sleep.delays == [2.0, 4.0]

    @pytest.mark.asyncio
    async def test_permanent_error_is_not_retried(self, sleep):
        fn = Flaky(PermanentPlatformError("policy violation"))
        policy = RetryPolicy(max_attempts=3, sleep=sleep)

        with pytest.raises(PermanentPlatformError):
            await policy.run(fn)
        assert fn.calls == 1
        assert sleep.delays == []

    @pytest.mark.asyncio
    async def test_exhaustion_reraises_publish_error(self, sleep):
        fn = Flaky(*[TransientPlatformError("503")] * 3)
        policy = RetryPolicy(max_attempts=3, backoff=exponential_backoff(2.0), sleep=sleep)

        with pytest.raises(TransientPlatformError, match="503"):
            await policy.run(fn)
        assert fn.calls == 3
        assert sleep.delays == [2.0, 4.0]

    @pytest.mark.asyncio
    async def test_exhausted_timeout_becomes_transient_platform_error(self, sleep):
        fn = Flaky(*[httpx.ReadTimeout("slow")] * 2)
        policy = RetryPolicy(max_attempts=2, sleep=sleep)

        with pytest.raises(TransientPlatformError, match="upload failed after 2 attempts"):
            await policy.run(fn, label="upload")

    @pytest.mark.asyncio
    async def test_each_retry_is_logged(self, sleep, caplog):
        fn = Flaky(TransientPlatformError("503"), TransientPlatformError("503"))
        policy = RetryPolicy(max_attempts=3, backoff=linear_backoff(3.0), sleep=sleep)

        with caplog.at_level(logging.WARNING, logger="crosspost"):
            assert await policy.run(fn, label="finalize") == "ok"

        warnings = [r.getMessage() for r in caplog.records if r.levelno == logging.WARNING]
        assert warnings == [
            "finalize attempt 1/3 failed (503); retrying in 3s",
            "finalize attempt 2/3 failed (503); retrying in 6s",
        ]

    @pytest.mark.asyncio
    async def test_with_sleep_keeps_limits(self, sleep):
        policy = chunk_policy().with_sleep(sleep)
        fn = Flaky(*[TransientPlatformError("reset")] * 3)

        assert await policy.run(fn) == "ok"
        assert sleep.delays == [2.0, 4.0, 6.0]


class TestPhasePolicy:

    def test_small_upload(self):
        policy = phase_policy(10 * MB)
        assert policy.max_attempts == 3
        assert policy.backoff(0) == 2.0

    def test_large_upload_gets_more_patience(self):
        policy = phase_policy(101 * MB)
        assert policy.max_attempts == 5
        assert [policy.backoff(n) for n in range(4)] == [5.0, 10.0, 20.0, 40.0]

    def test_chunk_policy(self):
        policy = chunk_policy()
        assert policy.max_attempts == 4
        assert [policy.backoff(n) for n in range(3)] == [2.0, 4.0, 6.0]
