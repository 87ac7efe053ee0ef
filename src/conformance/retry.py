"""Bounded retry combinator shared by readiness polling and payment probing."""

from __future__ import annotations

import asyncio
import logging
import time
from dataclasses import dataclass
from typing import Awaitable, Callable, TypeVar

logger = logging.getLogger(__name__)

T = TypeVar("T")


@dataclass(frozen=True)
class RetryPolicy:
    """How many times to try, how long to wait in between, and for how long overall.

    Attributes:
        max_attempts: Upper bound on calls; ``None`` means bounded only by
            *deadline_s*.
        delay_s: Seconds slept between attempts.
        backoff: Multiplier applied to the delay after each failure.
        deadline_s: Overall wall-clock budget; no new attempt starts after it.
    """

    max_attempts: int | None = 3
    delay_s: float = 0.5
    backoff: float = 1.0
    deadline_s: float | None = None

    def __post_init__(self) -> None:
        if self.max_attempts is None and self.deadline_s is None:
            raise ValueError("RetryPolicy needs max_attempts or deadline_s")
        if self.max_attempts is not None and self.max_attempts < 1:
            raise ValueError("max_attempts must be >= 1")


class RetryExhausted(Exception):
    """Raised when every attempt failed with a retryable error."""

    def __init__(self, attempts: int, elapsed_s: float, last_error: BaseException) -> None:
        self.attempts = attempts
        self.elapsed_s = elapsed_s
        self.last_error = last_error
        super().__init__(
            f"Gave up after {attempts} attempt(s) in {elapsed_s:.1f}s: {last_error}"
        )


async def retry_async(
    fn: Callable[[], Awaitable[T]],
    policy: RetryPolicy,
    retry_on: Callable[[BaseException], bool],
) -> T:
    """Call *fn* until it returns, retrying errors accepted by *retry_on*.

    Errors rejected by *retry_on* propagate immediately and do not consume
    budget. A returned value always ends the loop, whatever it is.

    Raises:
        RetryExhausted: If the attempt count or deadline ran out.
    """
    start = time.monotonic()
    deadline = None if policy.deadline_s is None else start + policy.deadline_s
    delay = policy.delay_s
    attempt = 0

    while True:
        attempt += 1
        try:
            return await fn()
        except Exception as exc:
            if not retry_on(exc):
                raise
            elapsed = time.monotonic() - start
            out_of_attempts = policy.max_attempts is not None and attempt >= policy.max_attempts
            out_of_time = deadline is not None and time.monotonic() + delay > deadline
            if out_of_attempts or out_of_time:
                raise RetryExhausted(attempt, elapsed, exc) from exc
            logger.debug("Attempt %d failed (%s); retrying in %.2fs", attempt, exc, delay)
            await asyncio.sleep(delay)
            delay *= policy.backoff
