from __future__ import annotations

import pytest
from hypothesis import given
from hypothesis import strategies as st

from volhedge.domain.errors import InvalidParams
from volhedge.domain.returns import N_RETURNS, ReturnBuffer, compute_return_fp, record_return


def test_first_accepted_price_only_sets_baseline() -> None:
    buffer = ReturnBuffer(spacing_ticks=10)

    assert record_return(buffer, now=0, price_fp=100_000_000) is None
    assert buffer.baseline_price_fp == 100_000_000
    assert buffer.cursor == 0
    assert buffer.nonzero_samples == 0


def test_spacing_gate_skips_close_updates() -> None:
    buffer = ReturnBuffer(spacing_ticks=10)
    record_return(buffer, now=0, price_fp=100_000_000)

    assert record_return(buffer, now=9, price_fp=101_000_000) is None
    assert buffer.baseline_price_fp == 100_000_000

    assert record_return(buffer, now=10, price_fp=101_000_000) == 10_000
    assert buffer.cursor == 1
    assert buffer.nonzero_samples == 1
    assert buffer.samples[0] == 10_000


def test_returns_are_clamped() -> None:
    assert compute_return_fp(200_000_000, 100_000_000) == 250_000
    assert compute_return_fp(10_000_000, 100_000_000) == -250_000
    assert compute_return_fp(99_990_001, 100_000_000) == -99


def test_ring_wraps_and_chronological_order_starts_at_oldest() -> None:
    buffer = ReturnBuffer(spacing_ticks=1)
    price = 100_000_000
    record_return(buffer, now=0, price_fp=price)
    for tick in range(1, N_RETURNS + 3):
        price += 1_000_000 if tick % 2 else -1_000_000
        record_return(buffer, now=tick, price_fp=price)

    assert buffer.cursor == 2
    ordered = buffer.chronological()
    assert ordered[-1] == buffer.samples[1]
    assert ordered[0] == buffer.samples[2]


def test_zero_spacing_is_rejected() -> None:
    with pytest.raises(InvalidParams):
        ReturnBuffer(spacing_ticks=0)


@given(st.lists(st.integers(min_value=-3, max_value=3), min_size=1, max_size=100))
def test_nonzero_counter_matches_full_scan(steps: list[int]) -> None:
    buffer = ReturnBuffer(spacing_ticks=1)
    price = 1_000_000_000
    record_return(buffer, now=0, price_fp=price)
    for tick, step in enumerate(steps, start=1):
        price += step * 1_000_000
        record_return(buffer, now=tick, price_fp=price)
        assert buffer.nonzero_samples == sum(1 for sample in buffer.samples if sample != 0)


@given(
    st.integers(min_value=1, max_value=50),
    st.lists(
        st.tuples(
            st.integers(min_value=0, max_value=40),
            st.integers(min_value=1_000_000, max_value=10**12),
        ),
        min_size=1,
        max_size=80,
    ),
)
def test_samples_are_only_written_when_spacing_allows(spacing: int, steps: list[tuple[int, int]]) -> None:
    buffer = ReturnBuffer(spacing_ticks=spacing)
    now = 0
    written_at: list[int] = []
    for delta, price in steps:
        now += delta
        last = buffer.last_sample_at
        cursor = buffer.cursor
        baseline = buffer.baseline_price_fp
        samples = list(buffer.samples)

        sample = record_return(buffer, now=now, price_fp=price)

        if last is not None and now - last < spacing:
            assert sample is None
            assert buffer.cursor == cursor
            assert buffer.baseline_price_fp == baseline
            assert buffer.last_sample_at == last
            assert buffer.samples == samples
            continue
        assert buffer.last_sample_at == now
        assert buffer.baseline_price_fp == price
        if baseline == 0:
            assert sample is None
            assert buffer.cursor == cursor
            continue
        assert sample == compute_return_fp(price, baseline)
        assert buffer.samples[cursor] == sample
        assert buffer.cursor == (cursor + 1) % N_RETURNS
        written_at.append(now)

    assert all(later - earlier >= spacing for earlier, later in zip(written_at, written_at[1:]))
