from __future__ import annotations

from collections.abc import Sequence
from dataclasses import dataclass
from enum import StrEnum

from volhedge.domain.errors import InvalidParams, VolOutOfRange
from volhedge.domain.fixed_point import (
    BPS_DENOM,
    MAX_VAR_FP2,
    MAX_VOL_BPS,
    clamp,
    div_trunc,
    ewma,
    fp_to_bps,
    isqrt,
    median,
)

# Normal-consistency constant 1.4826 for turning a MAD into a stdev estimate.
MAD_SCALE_NUM = 14_826
MAD_SCALE_DEN = 10_000


class VolMode(StrEnum):
    STDEV = "STDEV"
    EWMA = "EWMA"
    MAD = "MAD"


@dataclass
class VolState:
    mode: VolMode
    ewma_alpha_bps: int = 0
    ewma_var_fp2: int = 0
    realized_vol_bps: int = 0
    implied_vol_bps: int = 0
    vol_score_bps: int = 0
    last_vol_score_bps: int = 0

    def observe_return(self, sample_fp: int) -> None:
        if self.mode is not VolMode.EWMA:
            return
        squared = min(sample_fp * sample_fp, MAX_VAR_FP2)
        self.ewma_var_fp2 = min(ewma(self.ewma_var_fp2, squared, self.ewma_alpha_bps), MAX_VAR_FP2)

    def set_implied(self, implied_vol_bps: int) -> None:
        if not 0 <= implied_vol_bps <= MAX_VOL_BPS:
            raise VolOutOfRange(implied_vol_bps=implied_vol_bps)
        self.implied_vol_bps = implied_vol_bps


def stdev_vol_bps(returns: Sequence[int]) -> int:
    n = len(returns)
    if n == 0:
        return 0
    mean = div_trunc(sum(returns), n)
    variance = sum((r - mean) * (r - mean) for r in returns) // n
    return fp_to_bps(isqrt(min(variance, MAX_VAR_FP2)))


def ewma_vol_bps(ewma_var_fp2: int) -> int:
    return fp_to_bps(isqrt(clamp(ewma_var_fp2, 0, MAX_VAR_FP2)))


def mad_vol_bps(returns: Sequence[int]) -> int:
    if not returns:
        return 0
    center = median(returns)
    mad_fp = median(abs(r - center) for r in returns)
    return fp_to_bps(mad_fp * MAD_SCALE_NUM // MAD_SCALE_DEN)


def estimate_volatility(mode: VolMode, returns: Sequence[int], ewma_var_fp2: int = 0) -> int:
    match mode:
        case VolMode.STDEV:
            return stdev_vol_bps(returns)
        case VolMode.EWMA:
            return ewma_vol_bps(ewma_var_fp2)
        case VolMode.MAD:
            return mad_vol_bps(returns)
    raise InvalidParams(f"Unsupported vol mode: {mode!r}")


def blend_vol_score_bps(
    realized_bps: int, implied_bps: int, *, weight_realized_bps: int, weight_implied_bps: int
) -> int:
    weighted = weight_realized_bps * realized_bps + weight_implied_bps * implied_bps
    return min(weighted // BPS_DENOM, MAX_VOL_BPS)
