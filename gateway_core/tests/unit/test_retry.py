"""Unit tests for gateway_core.retry."""

from __future__ import annotations

import pytest
from gateway_core.retry import (
    FallbackExhausted,
    FallbackSequence,
    RetryPolicy,
    async_retry_with_backoff,
)
from pydantic import ValidationError


class _Transient(Exception):
    pass


class _Fatal(Exception):
    pass


class _FakeSleep:
    def __init__(self) -> None:
        self.delays: list[float] = []

    async def __call__(self, delay: float) -> None:
        self.delays.append(delay)


def _flaky(failures: list[Exception], value: str = "ok"):
    """Return a coroutine function that raises each of *failures* in turn, then returns *value*."""
    calls = {"n": 0}

    async def _fn() -> str:
        calls["n"] += 1
        if failures:
            raise failures.pop(0)
        return value

    _fn.calls = calls  # type: ignore[attr-defined]
    return _fn


# ---------------------------------------------------------------------------
# RetryPolicy
# ---------------------------------------------------------------------------


class TestRetryPolicy:
    def test_default_values(self):
        policy = RetryPolicy()
        assert policy.max_attempts == 3
        assert policy.base_delay == 1.0
        assert policy.max_delay == 30.0
        assert policy.jitter is False

    def test_at_least_one_attempt(self):
        with pytest.raises(ValidationError):
            RetryPolicy(max_attempts=0)

    def test_exponential_growth(self):
        policy = RetryPolicy(base_delay=1.0, max_delay=100.0)
        assert [policy.delay_for(i) for i in range(4)] == [1.0, 2.0, 4.0, 8.0]

    def test_max_delay_cap(self):
        assert RetryPolicy(base_delay=1.0, max_delay=5.0).delay_for(10) == 5.0

    def test_jitter_stays_within_bounds(self):
        policy = RetryPolicy(base_delay=10.0, max_delay=100.0, jitter=True)
        for _ in range(100):
            assert 5.0 <= policy.delay_for(0) <= 15.0


# ---------------------------------------------------------------------------
# async_retry_with_backoff
# ---------------------------------------------------------------------------


class TestAsyncRetryWithBackoff:
    @pytest.mark.asyncio
    async def test_succeeds_first_try(self):
        sleep = _FakeSleep()
        fn = _flaky([])
        assert await async_retry_with_backoff(fn, RetryPolicy(), sleep=sleep) == "ok"
        assert fn.calls["n"] == 1
        assert sleep.delays == []

    @pytest.mark.asyncio
    async def test_retries_then_succeeds(self):
        sleep = _FakeSleep()
        seen: list[int] = []
        fn = _flaky([_Transient("a"), _Transient("b")])

        result = await async_retry_with_backoff(
            fn,
            RetryPolicy(max_attempts=3, base_delay=0.5),
            on_retry=lambda attempt, _exc: seen.append(attempt),
            sleep=sleep,
        )

        assert result == "ok"
        assert fn.calls["n"] == 3
        assert sleep.delays == [0.5, 1.0]
        assert seen == [1, 2]

    @pytest.mark.asyncio
    async def test_exhaustion_raises_last_error(self):
        fn = _flaky([_Transient("1"), _Transient("2"), _Transient("3")])
        with pytest.raises(_Transient, match="2"):
            await async_retry_with_backoff(fn, RetryPolicy(max_attempts=2), sleep=_FakeSleep())
        assert fn.calls["n"] == 2

    @pytest.mark.asyncio
    async def test_non_retryable_propagates_immediately(self):
        sleep = _FakeSleep()
        fn = _flaky([_Fatal("stop")])
        with pytest.raises(_Fatal):
            await async_retry_with_backoff(
                fn,
                RetryPolicy(max_attempts=5),
                lambda exc: isinstance(exc, _Transient),
                sleep=sleep,
            )
        assert fn.calls["n"] == 1
        assert sleep.delays == []


# ---------------------------------------------------------------------------
# FallbackSequence
# ---------------------------------------------------------------------------


class TestFallbackSequence:
    def test_dedupes_and_skips_empty(self):
        sequence = FallbackSequence(["", "415", "800", "415", None, "888"])
        assert sequence.candidates == ("415", "800", "888")
        assert len(sequence) == 3
        assert list(sequence) == ["415", "800", "888"]

    @pytest.mark.asyncio
    async def test_first_accepted_candidate_wins(self):
        tried: list[str] = []

        async def _fn(candidate: str) -> str:
            tried.append(candidate)
            if candidate == "800":
                raise _Transient("none left")
            return f"+1{candidate}"

        result, candidate = await FallbackSequence(["800", "888", "877"]).run(_fn)
        assert (result, candidate) == ("+1888", "888")
        assert tried == ["800", "888"]

    @pytest.mark.asyncio
    async def test_exhausted(self):
        advanced: list[tuple[int, str]] = []

        async def _fn(candidate: str) -> str:
            raise _Transient(candidate)

        with pytest.raises(FallbackExhausted) as exc_info:
            await FallbackSequence(["a", "b"]).run(
                _fn, on_advance=lambda index, candidate, _exc: advanced.append((index, candidate))
            )
        assert exc_info.value.tried == ["a", "b"]
        assert str(exc_info.value.last_error) == "b"
        assert advanced == [(0, "a"), (1, "b")]

    @pytest.mark.asyncio
    async def test_should_advance_false_aborts(self):
        tried: list[str] = []

        async def _fn(candidate: str) -> str:
            tried.append(candidate)
            raise _Fatal(candidate)

        with pytest.raises(_Fatal):
            await FallbackSequence(["a", "b"]).run(_fn, lambda exc: not isinstance(exc, _Fatal))
        assert tried == ["a"]

    @pytest.mark.asyncio
    async def test_empty_sequence_is_exhausted(self):
        async def _fn(candidate: str) -> str:
            return candidate

        with pytest.raises(FallbackExhausted) as exc_info:
            await FallbackSequence([]).run(_fn)
        assert exc_info.value.tried == []
        assert exc_info.value.last_error is None
