"""
Retry combinator shared by every remote call.

One attempt = one awaited operation bounded by a per-attempt timeout. A timed
out attempt is cancelled and counted like any other failure. Retries are
immediate and sequential; the classifier decides what is worth retrying.
"""
import asyncio
from typing import Awaitable, Callable, Optional, TypeVar

from tenacity import (
    AsyncRetrying,
    RetryCallState,
    retry_if_exception,
    stop_after_attempt,
    wait_none,
)

from core.exceptions import NetworkException, is_retryable
from core.logger import get_logger

logger = get_logger(__name__)

T = TypeVar("T")


class AttemptCounter:
    """Records how many attempts the last retry_async call used."""

    def __init__(self):
        self.attempts = 0


async def retry_async(
    operation: Callable[[], Awaitable[T]],
    attempts: int,
    attempt_timeout: Optional[float] = None,
    classifier: Callable[[BaseException], bool] = is_retryable,
    label: str = "operation",
    counter: Optional[AttemptCounter] = None,
) -> T:
    """
    Runs `operation` until it succeeds, a non-retryable error is raised, or
    `attempts` attempts were made. The last error is re-raised.

    Args:
        operation: Zero-argument coroutine factory, called once per attempt
        attempts: Attempt budget (>= 1)
        attempt_timeout: Seconds before an attempt is cancelled (None = unbounded)
        classifier: Returns True for errors that should be retried
        label: Name used in log lines and timeout errors
        counter: Optional AttemptCounter updated with the attempts used
    """

    async def _attempt() -> T:
        if attempt_timeout is None:
            return await operation()
        try:
            return await asyncio.wait_for(operation(), timeout=attempt_timeout)
        except asyncio.TimeoutError:
            raise NetworkException(
                f"Timeout of {attempt_timeout}s exceeded",
                {"operation": label, "timeout": attempt_timeout},
            )

    def _before_sleep(state: RetryCallState) -> None:
        error = state.outcome.exception() if state.outcome else None
        logger.warning(f"[RETRY] {label} failed (Attempt {state.attempt_number}/{attempts}): {error}")

    retrying = AsyncRetrying(
        stop=stop_after_attempt(max(1, attempts)),
        wait=wait_none(),
        retry=retry_if_exception(classifier),
        before_sleep=_before_sleep,
        reraise=True,
    )

    async for attempt in retrying:
        if counter is not None:
            counter.attempts = attempt.retry_state.attempt_number
        with attempt:
            return await _attempt()

    # AsyncRetrying with reraise=True either returns or raises above
    raise RuntimeError(f"Unexpected retry loop exit in {label}")
