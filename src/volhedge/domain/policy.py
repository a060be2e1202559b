from __future__ import annotations

from dataclasses import dataclass
from typing import TYPE_CHECKING

from volhedge.domain.errors import InvalidParams, MathOverflow, OracleNotReady, PolicyCooldown
from volhedge.domain.events import (
    EpochUpdated,
    Event,
    NavSnapshot,
    PolicyFrozen,
    PolicyIntentComputed,
    PolicyUpdated,
    PositionSnapshot,
)
from volhedge.domain.fixed_point import (
    BPS_DENOM,
    I64_MAX,
    PRICE_FP_SCALE,
    U64_MAX,
    checked,
    checked_add,
    clamp,
    div_trunc,
)
from volhedge.domain.volatility import blend_vol_score_bps, estimate_volatility

if TYPE_CHECKING:
    from volhedge.domain.position import PositionState

CARRY_BIAS_THRESHOLD_BPS = 50
CARRY_BIAS_BPS = 200
FROZEN_REASON_ORACLE_DEGRADED = 1


@dataclass
class PolicyState:
    band_bps: int
    min_hedge_interval_ticks: int
    epoch: int = 0
    last_update_at: int | None = None


@dataclass(frozen=True)
class NavBreakdown:
    nav_usd: int
    staked_value_usd: int
    reserve_value_usd: int
    unrealized_pnl_usd: int
    staking_accrued_usd: int
    price_fp: int


@dataclass(frozen=True)
class PolicyUpdateResult:
    epoch: int
    band_bps: int
    min_hedge_interval_ticks: int
    vol_score_bps: int
    realized_updated: bool
    hysteresis_pass: bool
    frozen: bool
    nav: NavBreakdown
    events: tuple[Event, ...]


def map_by_bps(score_bps: int, min_value: int, max_value: int) -> int:
    """Linear interpolation of a 0..10_000 bps score over [min_value, max_value]."""
    if min_value == max_value:
        return min_value
    if min_value > max_value:
        raise InvalidParams("policy bounds inverted", min_value=min_value, max_value=max_value)
    return min_value + score_bps * (max_value - min_value) // BPS_DENOM


def carry_policy_bias_bps(expected_carry_bps: int) -> tuple[int, int]:
    if expected_carry_bps >= CARRY_BIAS_THRESHOLD_BPS:
        return CARRY_BIAS_BPS, CARRY_BIAS_BPS
    if expected_carry_bps <= -CARRY_BIAS_THRESHOLD_BPS:
        return -CARRY_BIAS_BPS, -CARRY_BIAS_BPS
    return 0, 0


def apply_bps_bias(value: int, bias_bps: int) -> int:
    if bias_bps == 0:
        return value
    return max(value + div_trunc(value * bias_bps, BPS_DENOM), 0)


def slew_limit(current: int, target: int, max_slew_bps: int) -> int:
    """Step ``current`` toward ``target`` by at most ``current * max_slew_bps / 10_000``.

    The step is at least one unit; a zero current value jumps straight to target.
    """
    if current == target:
        return current
    if current == 0:
        return target
    max_delta = max(current * max_slew_bps // BPS_DENOM, 1)
    if abs(target - current) <= max_delta:
        return target
    if target > current:
        return current + max_delta
    return max(current - max_delta, 0)


def _value_usd(units: int, price_fp: int) -> int:
    if units == 0:
        return 0
    if price_fp <= 0:
        raise OracleNotReady("no accepted spot price to value holdings")
    return min(units * price_fp // PRICE_FP_SCALE, I64_MAX)


def compute_nav(state: PositionState) -> NavBreakdown:
    """Value holdings at the last accepted spot price, including while the oracle is degraded."""
    price_fp = state.oracle.price_fp
    staked = _value_usd(state.exposure.staked_units, price_fp)
    reserve = _value_usd(state.exposure.reserve_units, price_fp)
    # Hedge PnL accrual is not modelled.
    unrealized = 0
    nav = checked_add(checked_add(staked, reserve), unrealized)
    nav = checked_add(nav, state.exposure.staking_accrued_usd)
    return NavBreakdown(
        nav_usd=nav,
        staked_value_usd=staked,
        reserve_value_usd=reserve,
        unrealized_pnl_usd=unrealized,
        staking_accrued_usd=state.exposure.staking_accrued_usd,
        price_fp=price_fp,
    )


def _require_cooldown_elapsed(state: PositionState, now: int) -> None:
    last = state.policy.last_update_at
    if last is None:
        return
    elapsed = now - last
    if elapsed < state.params.policy_update_min_ticks:
        raise PolicyCooldown(
            elapsed_ticks=elapsed, policy_update_min_ticks=state.params.policy_update_min_ticks
        )


def run_policy_update(state: PositionState, *, now: int) -> PolicyUpdateResult:
    """Periodic policy cycle: vol refresh, blend, hysteresis, mapping, carry bias, slew.

    While the oracle is degraded the band and interval are frozen and nothing
    is recomputed. Raises ``PolicyCooldown`` without touching state when called
    too soon, and ``OracleNotReady`` when holdings cannot be valued.
    Opening a new epoch resets every keeper's update count.
    """
    _require_cooldown_elapsed(state, now)
    nav = compute_nav(state)
    if state.policy.epoch >= U64_MAX:
        raise MathOverflow("epoch counter exhausted")

    params = state.params
    policy = state.policy
    vol = state.vol

    policy.last_update_at = now
    policy.epoch += 1
    state.keeper_updates.clear()
    epoch = policy.epoch
    header = {"position_id": state.position_id, "epoch": epoch, "tick": now}

    events: list[Event] = []
    realized_updated = False
    hysteresis_pass = False
    frozen = state.oracle.degraded

    if not frozen:
        if state.returns.nonzero_samples >= params.min_samples:
            vol.realized_vol_bps = estimate_volatility(
                vol.mode, state.returns.samples, vol.ewma_var_fp2
            )
            realized_updated = True

        score = blend_vol_score_bps(
            vol.realized_vol_bps,
            vol.implied_vol_bps,
            weight_realized_bps=params.vol_weight_realized_bps,
            weight_implied_bps=params.vol_weight_implied_bps,
        )
        vol.vol_score_bps = score

        last_score = vol.last_vol_score_bps
        hysteresis_pass = abs(score - last_score) >= params.hysteresis_bps or last_score == 0

        target_band = policy.band_bps
        target_interval = policy.min_hedge_interval_ticks
        if hysteresis_pass:
            carry = state.exposure.expected_carry_bps()
            bias_band, bias_interval = carry_policy_bias_bps(carry)
            target_band = clamp(
                apply_bps_bias(map_by_bps(score, params.min_band_bps, params.max_band_bps), bias_band),
                params.min_band_bps,
                params.max_band_bps,
            )
            target_interval = clamp(
                apply_bps_bias(
                    map_by_bps(score, params.min_interval_ticks, params.max_interval_ticks),
                    bias_interval,
                ),
                params.min_interval_ticks,
                params.max_interval_ticks,
            )
            vol.last_vol_score_bps = score
            events.append(
                PolicyIntentComputed(
                    **header,
                    vol_score_bps=score,
                    expected_carry_bps=carry,
                    bias_band_bps=bias_band,
                    bias_interval_bps=bias_interval,
                    target_band_bps=target_band,
                    target_interval_ticks=target_interval,
                )
            )

        policy.band_bps = slew_limit(policy.band_bps, target_band, params.max_policy_slew_bps)
        policy.min_hedge_interval_ticks = checked(
            slew_limit(policy.min_hedge_interval_ticks, target_interval, params.max_policy_slew_bps),
            lo=0,
            hi=U64_MAX,
            what="min_hedge_interval_ticks",
        )
        events.append(
            PolicyUpdated(
                **header,
                band_bps=policy.band_bps,
                min_hedge_interval_ticks=policy.min_hedge_interval_ticks,
                vol_score_bps=vol.vol_score_bps,
                hysteresis_pass=hysteresis_pass,
                max_policy_slew_bps=params.max_policy_slew_bps,
            )
        )
    else:
        events.append(
            PolicyFrozen(
                **header,
                band_bps=policy.band_bps,
                min_hedge_interval_ticks=policy.min_hedge_interval_ticks,
                reason_code=FROZEN_REASON_ORACLE_DEGRADED,
            )
        )

    events.append(
        NavSnapshot(
            **header,
            nav_usd=nav.nav_usd,
            staked_value_usd=nav.staked_value_usd,
            reserve_value_usd=nav.reserve_value_usd,
            unrealized_pnl_usd=nav.unrealized_pnl_usd,
            staking_accrued_usd=nav.staking_accrued_usd,
            oracle_price_fp=nav.price_fp,
            oracle_ok=state.oracle.ok,
        )
    )
    events.append(
        EpochUpdated(
            **header,
            realized_vol_bps=vol.realized_vol_bps,
            implied_vol_bps=vol.implied_vol_bps,
            vol_score_bps=vol.vol_score_bps,
            realized_updated=realized_updated,
            nonzero_samples=state.returns.nonzero_samples,
            oracle_degraded=state.oracle.degraded,
        )
    )
    events.append(
        PositionSnapshot(
            **header,
            staked_units=state.exposure.staked_units,
            reserve_units=state.exposure.reserve_units,
            hedge_notional_usd=state.hedge.hedge_notional_usd,
            band_bps=policy.band_bps,
            min_hedge_interval_ticks=policy.min_hedge_interval_ticks,
            realized_vol_bps=vol.realized_vol_bps,
            implied_vol_bps=vol.implied_vol_bps,
            vol_score_bps=vol.vol_score_bps,
            paused=state.paused,
            oracle_price_fp=state.oracle.price_fp,
            oracle_ema_price_fp=state.oracle.ema_price_fp,
            oracle_conf_fp=state.oracle.conf_fp,
            oracle_publish_time=state.oracle.publish_time,
            oracle_ok=state.oracle.ok,
            oracle_degraded=state.oracle.degraded,
            expected_carry_bps=state.exposure.expected_carry_bps(),
            config_version=state.config_version,
            config_hash=state.config_hash,
        )
    )

    return PolicyUpdateResult(
        epoch=epoch,
        band_bps=policy.band_bps,
        min_hedge_interval_ticks=policy.min_hedge_interval_ticks,
        vol_score_bps=vol.vol_score_bps,
        realized_updated=realized_updated,
        hysteresis_pass=hysteresis_pass,
        frozen=frozen,
        nav=nav,
        events=tuple(events),
    )


def remap_to_bounds(state: PositionState) -> None:
    """Re-anchor band/interval after a bounds change: clamp into the new range, then slew."""
    params = state.params
    policy = state.policy
    score = state.vol.vol_score_bps
    band = clamp(policy.band_bps, params.min_band_bps, params.max_band_bps)
    interval = clamp(policy.min_hedge_interval_ticks, params.min_interval_ticks, params.max_interval_ticks)
    target_band = map_by_bps(score, params.min_band_bps, params.max_band_bps)
    target_interval = map_by_bps(score, params.min_interval_ticks, params.max_interval_ticks)
    policy.band_bps = slew_limit(band, target_band, params.max_policy_slew_bps)
    policy.min_hedge_interval_ticks = slew_limit(interval, target_interval, params.max_policy_slew_bps)
