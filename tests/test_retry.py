from __future__ import annotations

import pytest

from volhedge.adapters.retry import RetryAttempt, parse_retry_after_seconds, retry_with_backoff


class _Flaky(Exception):
    pass


def test_retries_until_success_with_bounded_delays() -> None:
    calls = {"count": 0}
    sleeps: list[float] = []
    attempts: list[RetryAttempt] = []

    def fn() -> str:
        calls["count"] += 1
        if calls["count"] < 3:
            raise _Flaky()
        return "ok"

    result = retry_with_backoff(
        fn,
        max_attempts=5,
        base_delay_ms=100,
        max_delay_ms=1_000,
        jitter_seed=7,
        retry_on_exceptions=(_Flaky,),
        sleep_fn=sleeps.append,
        on_retry=attempts.append,
    )

    assert result == "ok"
    assert [attempt.attempt for attempt in attempts] == [1, 2]
    assert all(0.05 <= delay <= 1.0 for delay in sleeps)


def test_non_retryable_error_propagates_immediately() -> None:
    calls = {"count": 0}

    def fn() -> None:
        calls["count"] += 1
        raise KeyError("nope")

    with pytest.raises(KeyError):
        retry_with_backoff(
            fn,
            max_attempts=3,
            base_delay_ms=1,
            max_delay_ms=1,
            jitter_seed=1,
            retry_on_exceptions=(_Flaky,),
            sleep_fn=lambda _delay: None,
        )
    assert calls["count"] == 1


def test_retry_after_overrides_backoff() -> None:
    sleeps: list[float] = []
    calls = {"count": 0}

    def fn() -> int:
        calls["count"] += 1
        if calls["count"] == 1:
            raise _Flaky()
        return 1

    retry_with_backoff(
        fn,
        max_attempts=2,
        base_delay_ms=10,
        max_delay_ms=5_000,
        jitter_seed=1,
        retry_on_exceptions=(_Flaky,),
        sleep_fn=sleeps.append,
        retry_after_getter=lambda _exc: "2",
    )

    assert sleeps == [2.0]


@pytest.mark.parametrize(
    ("raw", "expected"), [(None, None), ("", None), ("1.5", 1.5), ("-1", None), ("soon", None)]
)
def test_parse_retry_after_seconds(raw: str | None, expected: float | None) -> None:
    assert parse_retry_after_seconds(raw) == expected
