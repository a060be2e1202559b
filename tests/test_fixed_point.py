from __future__ import annotations

import pytest

from volhedge.domain.errors import MathOverflow
from volhedge.domain.fixed_point import (
    I64_MAX,
    MAX_VOL_BPS,
    U32_MAX,
    checked_add,
    checked_mul,
    clamp,
    div_trunc,
    ewma,
    fp_to_bps,
    insertion_sorted,
    isqrt,
    median,
    ratio_bps,
    saturating_add,
    saturating_sub,
    scale_to_fp,
)


@pytest.mark.parametrize(
    ("numerator", "denominator", "expected"),
    [(7, 2, 3), (-7, 2, -3), (7, -2, -3), (-7, -2, 3), (0, 5, 0)],
)
def test_div_trunc_rounds_toward_zero(numerator: int, denominator: int, expected: int) -> None:
    assert div_trunc(numerator, denominator) == expected


def test_div_trunc_by_zero_raises() -> None:
    with pytest.raises(MathOverflow):
        div_trunc(1, 0)


def test_median_even_sample_truncates_toward_zero() -> None:
    assert median([-3, 0]) == -1
    assert median([3, 0]) == 1
    assert median([5, 1, 3]) == 3
    assert median([]) == 0


def test_insertion_sorted_is_stable_sort() -> None:
    assert insertion_sorted([3, -1, 2, -1, 0]) == [-1, -1, 0, 2, 3]


def test_ewma_blends_by_alpha() -> None:
    assert ewma(100, 200, 2_000) == 120
    assert ewma(100, 200, 0) == 100
    assert ewma(100, 200, 10_000) == 200


def test_ewma_rejects_alpha_out_of_range() -> None:
    with pytest.raises(MathOverflow):
        ewma(1, 1, 10_001)


@pytest.mark.parametrize(("n", "expected"), [(0, 0), (1, 1), (15, 3), (16, 4), (10**16, 10**8)])
def test_isqrt_floor(n: int, expected: int) -> None:
    assert isqrt(n) == expected


def test_scale_to_fp_handles_negative_and_positive_exponents() -> None:
    assert scale_to_fp(6_140_993_501_000, -8) == 61_409_935_010
    assert scale_to_fp(12, 0) == 12_000_000
    assert scale_to_fp(-15, -7) == -1


def test_ratio_and_bps_conversions_are_clamped() -> None:
    assert ratio_bps(1_000_000, 100_000_000) == 100
    assert ratio_bps(-1_000_000, 100_000_000) == 100
    assert ratio_bps(5, 0) == MAX_VOL_BPS
    assert ratio_bps(10**12, 1) == MAX_VOL_BPS
    assert fp_to_bps(10_000) == 100
    assert fp_to_bps(10**9) == MAX_VOL_BPS


def test_checked_helpers_raise_and_saturating_helpers_clamp() -> None:
    with pytest.raises(MathOverflow):
        checked_add(I64_MAX, 1)
    with pytest.raises(MathOverflow):
        checked_mul(2**40, 2**40)
    assert saturating_add(U32_MAX, 5, hi=U32_MAX) == U32_MAX
    assert saturating_sub(3, 5) == 0
    assert clamp(-5, 0, 10) == 0
    assert clamp(50, 0, 10) == 10
