from __future__ import annotations

from dataclasses import asdict, dataclass
from enum import Enum


@dataclass(frozen=True)
class Event:
    position_id: str
    epoch: int
    tick: int

    @property
    def name(self) -> str:
        return type(self).__name__

    def as_payload(self) -> dict[str, object]:
        payload: dict[str, object] = {"event": self.name}
        for key, value in asdict(self).items():
            payload[key] = value.value if isinstance(value, Enum) else value
        return payload


@dataclass(frozen=True)
class OraclePriceUpdated(Event):
    feed_used: str | None
    oracle_price_fp: int
    oracle_ema_price_fp: int
    oracle_conf_fp: int
    oracle_publish_time: int
    oracle_ok: bool
    oracle_degraded: bool


@dataclass(frozen=True)
class OracleDegraded(Event):
    feed_used: str
    reason_code: int
    oracle_publish_time: int


@dataclass(frozen=True)
class OracleReturnRecorded(Event):
    idx: int
    return_fp: int
    nonzero_samples: int
    oracle_price_fp: int


@dataclass(frozen=True)
class ImpliedVolUpdated(Event):
    implied_vol_bps: int


@dataclass(frozen=True)
class CarryInputsUpdated(Event):
    funding_bps_per_day: int
    borrow_bps_per_day: int
    staking_bps_per_day: int
    expected_carry_bps: int


@dataclass(frozen=True)
class StakeAllocated(Event):
    amount: int
    new_staked_units: int
    reserve_units: int


@dataclass(frozen=True)
class ReserveUpdated(Event):
    reserve_units: int
    min_reserve_bps: int


@dataclass(frozen=True)
class StakingAccrued(Event):
    amount_usd: int
    staking_accrued_usd: int


@dataclass(frozen=True)
class PolicyIntentComputed(Event):
    vol_score_bps: int
    expected_carry_bps: int
    bias_band_bps: int
    bias_interval_bps: int
    target_band_bps: int
    target_interval_ticks: int


@dataclass(frozen=True)
class PolicyUpdated(Event):
    band_bps: int
    min_hedge_interval_ticks: int
    vol_score_bps: int
    hysteresis_pass: bool
    max_policy_slew_bps: int


@dataclass(frozen=True)
class PolicyFrozen(Event):
    band_bps: int
    min_hedge_interval_ticks: int
    reason_code: int


@dataclass(frozen=True)
class NavSnapshot(Event):
    nav_usd: int
    staked_value_usd: int
    reserve_value_usd: int
    unrealized_pnl_usd: int
    staking_accrued_usd: int
    oracle_price_fp: int
    oracle_ok: bool


@dataclass(frozen=True)
class EpochUpdated(Event):
    realized_vol_bps: int
    implied_vol_bps: int
    vol_score_bps: int
    realized_updated: bool
    nonzero_samples: int
    oracle_degraded: bool


@dataclass(frozen=True)
class HedgeRequested(Event):
    request_id: int
    reason_code: int
    target_hedge_notional_usd: int
    delta_gap_usd: int
    drift_bps: int
    band_bps: int
    min_hedge_interval_ticks: int
    staked_units: int
    reserve_units: int
    hedge_notional_usd: int
    ema_price_fp: int
    last_hedge_ema_price_fp: int
    oracle_price_fp: int
    oracle_conf_fp: int
    oracle_publish_time: int
    oracle_ok: bool
    oracle_degraded: bool
    target_delta_bps: int
    beta_fp: int
    expected_carry_bps: int
    config_version: int
    config_hash: str


@dataclass(frozen=True)
class HedgeConfirmMissed(Event):
    request_id: int
    since_request_ticks: int
    missed_confirms: int


@dataclass(frozen=True)
class HedgeConfirmed(Event):
    request_id: int
    hedge_notional_usd: int
    fill_price_fp: int
    ref_price_fp: int
    slippage_bps: int
    avg_fill_slippage_bps: int
    hedge_fill_count: int


@dataclass(frozen=True)
class ConfigUpdated(Event):
    section: str
    config_version: int
    config_hash: str
    changes: tuple[tuple[str, str], ...]


@dataclass(frozen=True)
class PausedSet(Event):
    paused: bool


@dataclass(frozen=True)
class PositionSnapshot(Event):
    staked_units: int
    reserve_units: int
    hedge_notional_usd: int
    band_bps: int
    min_hedge_interval_ticks: int
    realized_vol_bps: int
    implied_vol_bps: int
    vol_score_bps: int
    paused: bool
    oracle_price_fp: int
    oracle_ema_price_fp: int
    oracle_conf_fp: int
    oracle_publish_time: int
    oracle_ok: bool
    oracle_degraded: bool
    expected_carry_bps: int
    config_version: int
    config_hash: str
