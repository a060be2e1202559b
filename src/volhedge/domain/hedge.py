from __future__ import annotations

from dataclasses import dataclass
from typing import TYPE_CHECKING

from volhedge.domain.errors import (
    CapExceeded,
    DriftNotMet,
    HedgeTooSoon,
    InvalidParams,
    LeverageExceeded,
    NoOutstandingRequest,
    OracleDegradedHedgeBlocked,
    OracleNotReady,
    WrongRequestId,
)
from volhedge.domain.events import HedgeConfirmed, HedgeConfirmMissed, HedgeRequested
from volhedge.domain.fixed_point import (
    BPS_DENOM,
    I64_MAX,
    MAX_PRICE_FP,
    PRICE_FP_SCALE,
    U32_MAX,
    U64_MAX,
    checked_sub,
    ewma,
    ratio_bps,
    saturating_add,
)

if TYPE_CHECKING:
    from volhedge.domain.position import PositionState

FILL_SLIPPAGE_EWMA_ALPHA_BPS = 2_000

REASON_INTERVAL = 1
REASON_DRIFT = 2


@dataclass
class HedgeState:
    hedge_notional_usd: int = 0
    last_hedge_at: int | None = None
    last_hedge_ema_price_fp: int = 0
    request_outstanding: bool = False
    last_request_id: int = 0
    last_request_at: int | None = None
    last_fill_at: int | None = None
    fill_count: int = 0
    avg_fill_slippage_bps: int = 0
    missed_confirms: int = 0


@dataclass(frozen=True)
class HedgeIntent:
    request_id: int
    target_notional_usd: int
    gap_usd: int
    reason_code: int
    drift_bps: int
    context: HedgeRequested


@dataclass(frozen=True)
class FillRecord:
    request_id: int
    hedge_notional_usd: int
    fill_price_fp: int
    ref_price_fp: int
    slippage_bps: int
    avg_fill_slippage_bps: int
    fill_count: int
    event: HedgeConfirmed


def compute_reason_code(interval_ok: bool, drift_ok: bool) -> int:
    return (REASON_INTERVAL if interval_ok else 0) | (REASON_DRIFT if drift_ok else 0)


def compute_price_drift_bps(current_price_fp: int, anchor_price_fp: int) -> int:
    """Relative move of the EMA price since the anchor, in bps (maximal without an anchor)."""
    if current_price_fp <= 0:
        return 0
    return ratio_bps(current_price_fp - anchor_price_fp, anchor_price_fp)


def compute_target_hedge_notional_usd(
    *, staked_units: int, price_fp: int, target_delta_bps: int, beta_fp: int
) -> int:
    """Delta-neutral short: -(staked value * target delta * beta)."""
    if staked_units == 0 or price_fp <= 0:
        return 0
    staked_value = staked_units * price_fp // PRICE_FP_SCALE
    with_delta = staked_value * target_delta_bps // BPS_DENOM
    with_beta = with_delta * beta_fp // PRICE_FP_SCALE
    return -min(abs(with_beta), I64_MAX)


def compute_slippage_bps(fill_price_fp: int, ref_price_fp: int) -> int:
    if ref_price_fp <= 0:
        raise InvalidParams("reference price must be positive", ref_price_fp=ref_price_fp)
    return ratio_bps(fill_price_fp - ref_price_fp, ref_price_fp)


def enforce_hedge_guardrails(state: PositionState, hedge_notional_usd: int) -> None:
    params = state.params
    staked = state.exposure.staked_units
    if abs(hedge_notional_usd) > params.max_abs_hedge_notional_usd:
        raise CapExceeded(
            hedge_notional_usd=hedge_notional_usd,
            max_abs_hedge_notional_usd=params.max_abs_hedge_notional_usd,
        )
    if staked == 0:
        if hedge_notional_usd != 0:
            raise LeverageExceeded("hedge must be flat without staked collateral")
        return
    limit = staked * params.max_hedge_per_unit_usd_fp // PRICE_FP_SCALE
    if abs(hedge_notional_usd) > limit:
        raise LeverageExceeded(hedge_notional_usd=hedge_notional_usd, limit_usd=limit)


def expire_stale_request(state: PositionState, *, now: int) -> HedgeConfirmMissed | None:
    hedge = state.hedge
    if not hedge.request_outstanding or hedge.last_request_at is None:
        return None
    since_request = now - hedge.last_request_at
    if since_request <= state.params.max_confirm_delay_ticks:
        return None
    hedge.missed_confirms = saturating_add(hedge.missed_confirms, 1, hi=U32_MAX)
    hedge.request_outstanding = False
    return HedgeConfirmMissed(
        position_id=state.position_id,
        epoch=state.policy.epoch,
        tick=now,
        request_id=hedge.last_request_id,
        since_request_ticks=since_request,
        missed_confirms=hedge.missed_confirms,
    )


def request_hedge(state: PositionState, *, now: int) -> HedgeIntent:
    """Permissionless hedge request.

    Requires the policy interval to have elapsed since the last hedge and the
    EMA drift to reach the current band, or the extreme-drift override while the
    oracle is degraded. On success the anchor advances and a new request id is
    issued for the keeper to confirm.
    """
    oracle = state.oracle
    hedge = state.hedge
    policy = state.policy
    params = state.params

    if hedge.last_hedge_at is None:
        interval_ok = True
    else:
        interval_ok = now - hedge.last_hedge_at >= policy.min_hedge_interval_ticks

    if oracle.ema_price_fp <= 0:
        raise OracleNotReady("no accepted EMA price")

    drift_bps = compute_price_drift_bps(oracle.ema_price_fp, hedge.last_hedge_ema_price_fp)
    drift_ok = drift_bps >= policy.band_bps

    if not interval_ok:
        raise HedgeTooSoon(
            last_hedge_at=hedge.last_hedge_at, min_hedge_interval_ticks=policy.min_hedge_interval_ticks
        )
    if oracle.degraded:
        if drift_bps < params.extreme_drift_bps:
            raise OracleDegradedHedgeBlocked(
                drift_bps=drift_bps, extreme_drift_bps=params.extreme_drift_bps
            )
    elif not drift_ok:
        raise DriftNotMet(drift_bps=drift_bps, band_bps=policy.band_bps)

    target = compute_target_hedge_notional_usd(
        staked_units=state.exposure.staked_units,
        price_fp=oracle.reference_price_fp(),
        target_delta_bps=params.target_delta_bps,
        beta_fp=params.beta_fp,
    )
    gap = checked_sub(target, hedge.hedge_notional_usd)
    reason_code = compute_reason_code(interval_ok, drift_ok)

    hedge.last_hedge_at = now
    hedge.last_hedge_ema_price_fp = oracle.ema_price_fp
    hedge.last_request_id = saturating_add(hedge.last_request_id, 1, hi=U64_MAX)
    hedge.last_request_at = now
    hedge.request_outstanding = True

    context = HedgeRequested(
        position_id=state.position_id,
        epoch=policy.epoch,
        tick=now,
        request_id=hedge.last_request_id,
        reason_code=reason_code,
        target_hedge_notional_usd=target,
        delta_gap_usd=gap,
        drift_bps=drift_bps,
        band_bps=policy.band_bps,
        min_hedge_interval_ticks=policy.min_hedge_interval_ticks,
        staked_units=state.exposure.staked_units,
        reserve_units=state.exposure.reserve_units,
        hedge_notional_usd=hedge.hedge_notional_usd,
        ema_price_fp=oracle.ema_price_fp,
        last_hedge_ema_price_fp=hedge.last_hedge_ema_price_fp,
        oracle_price_fp=oracle.price_fp,
        oracle_conf_fp=oracle.conf_fp,
        oracle_publish_time=oracle.publish_time,
        oracle_ok=oracle.ok,
        oracle_degraded=oracle.degraded,
        target_delta_bps=params.target_delta_bps,
        beta_fp=params.beta_fp,
        expected_carry_bps=state.exposure.expected_carry_bps(),
        config_version=state.config_version,
        config_hash=state.config_hash,
    )
    return HedgeIntent(
        request_id=hedge.last_request_id,
        target_notional_usd=target,
        gap_usd=gap,
        reason_code=reason_code,
        drift_bps=drift_bps,
        context=context,
    )


def confirm_hedge(
    state: PositionState,
    *,
    request_id: int,
    new_notional_usd: int,
    fill_price_fp: int,
    now: int,
) -> FillRecord:
    hedge = state.hedge
    if not 0 < fill_price_fp <= MAX_PRICE_FP:
        raise InvalidParams("fill price out of range", fill_price_fp=fill_price_fp)
    if not hedge.request_outstanding:
        raise NoOutstandingRequest(request_id=request_id)
    if request_id != hedge.last_request_id:
        raise WrongRequestId(request_id=request_id, expected_request_id=hedge.last_request_id)

    enforce_hedge_guardrails(state, new_notional_usd)

    ref_price_fp = state.oracle.reference_price_fp()
    if ref_price_fp <= 0:
        raise OracleNotReady("no reference price for slippage")
    slippage_bps = compute_slippage_bps(fill_price_fp, ref_price_fp)

    hedge.hedge_notional_usd = new_notional_usd
    hedge.avg_fill_slippage_bps = ewma(
        hedge.avg_fill_slippage_bps, slippage_bps, FILL_SLIPPAGE_EWMA_ALPHA_BPS
    )
    hedge.last_fill_at = now
    hedge.fill_count = saturating_add(hedge.fill_count, 1, hi=U64_MAX)
    hedge.request_outstanding = False

    event = HedgeConfirmed(
        position_id=state.position_id,
        epoch=state.policy.epoch,
        tick=now,
        request_id=request_id,
        hedge_notional_usd=hedge.hedge_notional_usd,
        fill_price_fp=fill_price_fp,
        ref_price_fp=ref_price_fp,
        slippage_bps=slippage_bps,
        avg_fill_slippage_bps=hedge.avg_fill_slippage_bps,
        hedge_fill_count=hedge.fill_count,
    )
    return FillRecord(
        request_id=request_id,
        hedge_notional_usd=hedge.hedge_notional_usd,
        fill_price_fp=fill_price_fp,
        ref_price_fp=ref_price_fp,
        slippage_bps=slippage_bps,
        avg_fill_slippage_bps=hedge.avg_fill_slippage_bps,
        fill_count=hedge.fill_count,
        event=event,
    )
