import asyncio

import pytest

from core.exceptions import (
    IntegrityException,
    MissingContentLengthException,
    NetworkException,
    PartialDownloadException,
    is_retryable,
)
from core.retry import AttemptCounter, retry_async


class Flaky:
    """Fails `failures` times with `error`, then returns `value`."""

    def __init__(self, failures: int, error: Exception, value="ok"):
        self.failures = failures
        self.error = error
        self.value = value
        self.calls = 0

    async def __call__(self):
        self.calls += 1
        if self.calls <= self.failures:
            raise self.error
        return self.value


class TestClassifier:
    def test_retryable_errors(self):
        assert is_retryable(NetworkException("boom"))
        assert is_retryable(PartialDownloadException("short"))

    def test_fatal_errors(self):
        assert not is_retryable(MissingContentLengthException("no length"))
        assert not is_retryable(IntegrityException("mismatch"))
        assert not is_retryable(ValueError("bug"))


class TestRetryAsync:
    @pytest.mark.asyncio
    async def test_succeeds_after_failures(self):
        operation = Flaky(2, NetworkException("temporary"))
        counter = AttemptCounter()

        result = await retry_async(operation, attempts=5, counter=counter)

        assert result == "ok"
        assert operation.calls == 3
        assert counter.attempts == 3

    @pytest.mark.asyncio
    async def test_exhausted_reraises_last_error(self):
        operation = Flaky(10, NetworkException("down"))

        with pytest.raises(NetworkException, match="down"):
            await retry_async(operation, attempts=4)

        assert operation.calls == 4

    @pytest.mark.asyncio
    async def test_fatal_error_is_not_retried(self):
        operation = Flaky(10, MissingContentLengthException("no length"))

        with pytest.raises(MissingContentLengthException):
            await retry_async(operation, attempts=4)

        assert operation.calls == 1

    @pytest.mark.asyncio
    async def test_timed_out_attempt_is_cancelled_and_counted(self):
        calls = []

        async def slow_then_fast():
            calls.append(1)
            if len(calls) == 1:
                await asyncio.sleep(5)
            return "done"

        result = await retry_async(slow_then_fast, attempts=3, attempt_timeout=0.05)

        assert result == "done"
        assert len(calls) == 2

    @pytest.mark.asyncio
    async def test_timeout_maps_to_network_error(self):
        async def hang():
            await asyncio.sleep(5)

        with pytest.raises(NetworkException, match="Timeout"):
            await retry_async(hang, attempts=2, attempt_timeout=0.01, label="hang")

    @pytest.mark.asyncio
    async def test_custom_classifier(self):
        operation = Flaky(1, ValueError("odd"))

        result = await retry_async(operation, attempts=2, classifier=lambda e: isinstance(e, ValueError))

        assert result == "ok"
