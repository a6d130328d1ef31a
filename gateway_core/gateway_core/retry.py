"""Retry and fallback policy objects.

:class:`RetryPolicy` describes bounded retries with exponential backoff and
a retryable-error predicate; :class:`FallbackSequence` describes an ordered
list of alternate parameters tried in turn when the preferred one is
rejected.  Both are consumed by orchestrators rather than inlined, so each
policy can be tested on its own.
"""

from __future__ import annotations

import asyncio
import logging
import random
from collections.abc import Awaitable, Callable, Sequence
from typing import Generic, TypeVar

from pydantic import BaseModel, Field

logger = logging.getLogger(__name__)

T = TypeVar("T")
P = TypeVar("P")

Sleep = Callable[[float], Awaitable[None]]


def _always(_: Exception) -> bool:
    return True


class RetryPolicy(BaseModel):
    """Tuneable parameters for retry behaviour."""

    max_attempts: int = Field(
        default=3,
        ge=1,
        description="Total attempts, including the first call.",
    )
    base_delay: float = Field(
        default=1.0,
        ge=0.0,
        description="Delay in seconds before the first retry; doubles per retry.",
    )
    max_delay: float = Field(
        default=30.0,
        ge=0.0,
        description="Upper bound on delay in seconds.",
    )
    jitter: bool = Field(
        default=False,
        description="When enabled, randomise the delay within [0.5x, 1.5x].",
    )

    def delay_for(self, retry_index: int) -> float:
        """Return the backoff before retry number *retry_index* (0-based)."""
        delay: float = min(self.base_delay * (2**retry_index), self.max_delay)
        if self.jitter:
            delay *= random.uniform(0.5, 1.5)  # noqa: S311
        return delay


async def async_retry_with_backoff(
    fn: Callable[[], Awaitable[T]],
    policy: RetryPolicy,
    is_retryable: Callable[[Exception], bool] = _always,
    *,
    on_retry: Callable[[int, Exception], None] | None = None,
    sleep: Sleep = asyncio.sleep,
) -> T:
    """Await *fn* until it succeeds or *policy* is exhausted.

    Parameters
    ----------
    fn:
        Zero-argument coroutine function.  Invoked from scratch on every
        attempt, so it must be safe to call repeatedly.
    policy:
        Attempt bound and backoff schedule.
    is_retryable:
        Predicate over the raised exception.  Exceptions for which it
        returns ``False`` propagate immediately without further attempts.
    on_retry:
        Optional hook called with ``(attempt_number, exc)`` before each
        backoff sleep.
    sleep:
        Awaitable sleep, injectable for tests.

    Returns
    -------
    T
        The value returned by the first successful attempt.

    Raises
    ------
    Exception
        The last exception raised by *fn* once attempts are exhausted, or
        the first non-retryable one.
    """
    for attempt in range(1, policy.max_attempts + 1):
        try:
            return await fn()
        except Exception as exc:
            if not is_retryable(exc) or attempt >= policy.max_attempts:
                raise
            delay = policy.delay_for(attempt - 1)
            logger.warning(
                "Retry %d/%d after %.2fs: %s",
                attempt,
                policy.max_attempts - 1,
                delay,
                exc,
            )
            if on_retry is not None:
                on_retry(attempt, exc)
            await sleep(delay)
    raise AssertionError("unreachable")  # pragma: no cover


class FallbackExhausted(Exception):
    """Every candidate in a :class:`FallbackSequence` was rejected."""

    def __init__(self, tried: list[object], last_error: Exception | None) -> None:
        self.tried = tried
        self.last_error = last_error
        super().__init__(f"All {len(tried)} fallback candidate(s) rejected; last error: {last_error}")


class FallbackSequence(Generic[P]):
    """An ordered list of parameters tried in turn.

    Parameters
    ----------
    candidates:
        Candidates in preference order.  Duplicates are dropped, keeping
        the first occurrence, and falsy entries are skipped.
    """

    def __init__(self, candidates: Sequence[P]) -> None:
        seen: list[P] = []
        for candidate in candidates:
            if candidate and candidate not in seen:
                seen.append(candidate)
        self.candidates: tuple[P, ...] = tuple(seen)

    def __iter__(self):  # type: ignore[no-untyped-def]
        return iter(self.candidates)

    def __len__(self) -> int:
        return len(self.candidates)

    async def run(
        self,
        fn: Callable[[P], Awaitable[T]],
        should_advance: Callable[[Exception], bool] = _always,
        *,
        on_advance: Callable[[int, P, Exception], None] | None = None,
    ) -> tuple[T, P]:
        """Call *fn* with each candidate until one succeeds.

        An exception for which *should_advance* returns ``False`` aborts the
        whole sequence and propagates unchanged.

        Returns
        -------
        tuple
            ``(result, candidate)`` for the first accepted candidate.

        Raises
        ------
        FallbackExhausted
            When every candidate was rejected.
        """
        tried: list[object] = []
        last_error: Exception | None = None
        for index, candidate in enumerate(self.candidates):
            tried.append(candidate)
            try:
                return await fn(candidate), candidate
            except Exception as exc:
                if not should_advance(exc):
                    raise
                last_error = exc
                logger.info("Fallback candidate %r rejected: %s", candidate, exc)
                if on_advance is not None:
                    on_advance(index, candidate, exc)
        raise FallbackExhausted(tried, last_error)
