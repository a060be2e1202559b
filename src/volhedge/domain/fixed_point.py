"""Integer fixed-point helpers.

Prices and returns are ints scaled by 1e6, ratios are basis points (10_000 = 100%).
Checked helpers raise ``MathOverflow`` when a value leaves its integer width;
saturating helpers clamp instead and are only used for advisory counters.
"""

from __future__ import annotations

from collections.abc import Iterable

from volhedge.domain.errors import MathOverflow

PRICE_FP_SCALE = 1_000_000
RET_FP_SCALE = 1_000_000

BPS_DENOM = 10_000
MAX_VOL_BPS = 10_000

MAX_RETURN_ABS_FP = 250_000
MAX_PRICE_FP = 10_000_000 * PRICE_FP_SCALE
MAX_VAR_FP2 = 10_000_000_000_000_000

I32_MIN = -(2**31)
I32_MAX = 2**31 - 1
I64_MIN = -(2**63)
I64_MAX = 2**63 - 1
U16_MAX = 2**16 - 1
U32_MAX = 2**32 - 1
U64_MAX = 2**64 - 1


def checked(value: int, *, lo: int = I64_MIN, hi: int = I64_MAX, what: str = "value") -> int:
    if value < lo or value > hi:
        raise MathOverflow(what=what, value=value)
    return value


def checked_add(a: int, b: int, *, lo: int = I64_MIN, hi: int = I64_MAX) -> int:
    return checked(a + b, lo=lo, hi=hi, what="add")


def checked_sub(a: int, b: int, *, lo: int = I64_MIN, hi: int = I64_MAX) -> int:
    return checked(a - b, lo=lo, hi=hi, what="sub")


def checked_mul(a: int, b: int, *, lo: int = I64_MIN, hi: int = I64_MAX) -> int:
    return checked(a * b, lo=lo, hi=hi, what="mul")


def saturating_add(a: int, b: int, *, hi: int = U64_MAX) -> int:
    return min(a + b, hi)


def saturating_sub(a: int, b: int, *, lo: int = 0) -> int:
    return max(a - b, lo)


def clamp(value: int, lo: int, hi: int) -> int:
    return max(lo, min(value, hi))


def div_trunc(numerator: int, denominator: int) -> int:
    """Integer division rounding toward zero (``//`` floors for negatives)."""
    if denominator == 0:
        raise MathOverflow("division by zero")
    quotient = abs(numerator) // abs(denominator)
    return quotient if (numerator >= 0) == (denominator > 0) else -quotient


def bps_of(value: int, bps: int) -> int:
    return div_trunc(value * bps, BPS_DENOM)


def ratio_bps(diff: int, base: int) -> int:
    """|diff| / base in bps, clamped to MAX_VOL_BPS."""
    if base <= 0:
        return MAX_VOL_BPS
    return min(abs(diff) * BPS_DENOM // base, MAX_VOL_BPS)


def fp_to_bps(std_fp: int) -> int:
    return min(std_fp * BPS_DENOM // RET_FP_SCALE, MAX_VOL_BPS)


def isqrt(n: int) -> int:
    """Floor square root via Newton iteration; deterministic for any n >= 0."""
    if n < 0:
        raise MathOverflow("isqrt of negative value")
    if n == 0:
        return 0
    x0 = n
    x1 = (x0 + 1) >> 1
    while x1 < x0:
        x0 = x1
        x1 = (x1 + n // x1) >> 1
    return x0


def insertion_sorted(values: Iterable[int]) -> list[int]:
    arr = list(values)
    for i in range(1, len(arr)):
        key = arr[i]
        j = i
        while j > 0 and arr[j - 1] > key:
            arr[j] = arr[j - 1]
            j -= 1
        arr[j] = key
    return arr


def median(values: Iterable[int]) -> int:
    """Median of an even- or odd-sized sample; even sizes average the middle pair toward zero."""
    arr = insertion_sorted(values)
    if not arr:
        return 0
    mid = len(arr) // 2
    if len(arr) % 2:
        return arr[mid]
    return div_trunc(arr[mid - 1] + arr[mid], 2)


def ewma(prev: int, sample: int, alpha_bps: int) -> int:
    if not 0 <= alpha_bps <= BPS_DENOM:
        raise MathOverflow("ewma alpha out of range", alpha_bps=alpha_bps)
    left = prev * (BPS_DENOM - alpha_bps) // BPS_DENOM
    right = sample * alpha_bps // BPS_DENOM
    return left + right


def scale_to_fp(mantissa: int, expo: int) -> int:
    """Rescale ``mantissa * 10**expo`` to the 1e6 fixed-point scale (truncating)."""
    shift = expo + 6
    if shift >= 0:
        return mantissa * 10**shift
    return div_trunc(mantissa, 10 ** (-shift))
