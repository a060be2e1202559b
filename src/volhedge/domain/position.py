from __future__ import annotations

import hashlib
import json
from dataclasses import asdict, dataclass, field, fields, replace
from enum import Enum
from typing import Any

from volhedge.domain.errors import CapExceeded, InvalidParams, KeeperRateLimited, ReserveTooLow
from volhedge.domain.fixed_point import (
    BPS_DENOM,
    I32_MAX,
    I32_MIN,
    I64_MAX,
    MAX_VOL_BPS,
    U16_MAX,
    U64_MAX,
    checked_add,
    clamp,
)
from volhedge.domain.hedge import HedgeState
from volhedge.domain.oracle import FeedChoice, FeedId, OracleConfig, OracleReason, OracleState
from volhedge.domain.policy import PolicyState
from volhedge.domain.returns import N_RETURNS, ReturnBuffer
from volhedge.domain.volatility import VolMode, VolState

CONFIG_HASH_DOMAIN = "volhedge-config-v1"
STATE_SCHEMA_VERSION = 1

DEFAULT_MAX_POLICY_SLEW_BPS = 1_000
DEFAULT_HYSTERESIS_BPS = 100
DEFAULT_EXTREME_DRIFT_BPS = 2_000
DEFAULT_MAX_UPDATES_PER_EPOCH = 256


def stable_hash_payload(payload: object) -> str:
    def _default(value: object) -> str:
        if isinstance(value, Enum):
            return value.value
        raise TypeError(f"Unsupported stable hash payload type: {type(value).__name__}")

    encoded = json.dumps(payload, sort_keys=True, separators=(",", ":"), default=_default)
    return hashlib.sha256(encoded.encode("utf-8")).hexdigest()


@dataclass(frozen=True)
class EngineParams:
    min_band_bps: int = 50
    max_band_bps: int = 600
    min_interval_ticks: int = 60
    max_interval_ticks: int = 3_600
    vol_weight_realized_bps: int = 7_000
    vol_weight_implied_bps: int = 3_000
    min_samples: int = 8
    min_return_spacing_ticks: int = 10
    policy_update_min_ticks: int = 60
    max_policy_slew_bps: int = DEFAULT_MAX_POLICY_SLEW_BPS
    hysteresis_bps: int = DEFAULT_HYSTERESIS_BPS
    vol_mode: VolMode = VolMode.STDEV
    ewma_alpha_bps: int = 0
    max_staked_units: int = 1_000_000_000_000
    max_abs_hedge_notional_usd: int = 1_000_000_000_000
    max_hedge_per_unit_usd_fp: int = 1_000_000_000_000
    min_reserve_bps: int = 0
    oracle_feed_choice: FeedChoice = FeedChoice.PREFER_PRIMARY
    max_price_age_seconds: int = 60
    max_confidence_bps: int = 100
    max_price_jump_bps: int = 1_000
    target_delta_bps: int = BPS_DENOM
    beta_fp: int = 1_000_000
    max_confirm_delay_ticks: int = 300
    extreme_drift_bps: int = DEFAULT_EXTREME_DRIFT_BPS
    max_updates_per_epoch: int = DEFAULT_MAX_UPDATES_PER_EPOCH

    def validate(self) -> EngineParams:
        """Check cross-field invariants; returns ``self`` so calls can be chained."""
        checks: list[tuple[bool, str]] = [
            (
                self.vol_weight_realized_bps + self.vol_weight_implied_bps == BPS_DENOM,
                "vol weights must sum to 10000",
            ),
            (0 <= self.min_band_bps <= self.max_band_bps <= BPS_DENOM, "band bounds"),
            (0 <= self.min_interval_ticks <= self.max_interval_ticks, "interval bounds"),
            (0 < self.min_samples <= N_RETURNS, "min_samples"),
            (self.min_return_spacing_ticks > 0, "min_return_spacing_ticks"),
            (self.policy_update_min_ticks > 0, "policy_update_min_ticks"),
            (0 < self.max_policy_slew_bps <= BPS_DENOM, "max_policy_slew_bps"),
            (0 <= self.hysteresis_bps <= BPS_DENOM, "hysteresis_bps"),
            (self.max_staked_units > 0, "max_staked_units"),
            (0 < self.max_abs_hedge_notional_usd <= I64_MAX, "max_abs_hedge_notional_usd"),
            (self.max_hedge_per_unit_usd_fp > 0, "max_hedge_per_unit_usd_fp"),
            (0 <= self.min_reserve_bps <= BPS_DENOM, "min_reserve_bps"),
            (self.max_price_age_seconds > 0, "max_price_age_seconds"),
            (0 <= self.max_confidence_bps <= BPS_DENOM, "max_confidence_bps"),
            (0 <= self.max_price_jump_bps <= BPS_DENOM, "max_price_jump_bps"),
            (0 <= self.target_delta_bps <= BPS_DENOM, "target_delta_bps"),
            (self.beta_fp > 0, "beta_fp"),
            (self.max_confirm_delay_ticks > 0, "max_confirm_delay_ticks"),
            (0 <= self.extreme_drift_bps <= MAX_VOL_BPS, "extreme_drift_bps"),
            (0 < self.max_updates_per_epoch <= U16_MAX, "max_updates_per_epoch"),
        ]
        if self.vol_mode is VolMode.EWMA:
            checks.append((0 < self.ewma_alpha_bps <= BPS_DENOM, "ewma_alpha_bps"))
        else:
            checks.append((0 <= self.ewma_alpha_bps <= BPS_DENOM, "ewma_alpha_bps"))
        for ok, name in checks:
            if not ok:
                raise InvalidParams(f"invalid engine parameter: {name}", field=name)
        return self

    def oracle_config(self) -> OracleConfig:
        return OracleConfig(
            feed_choice=self.oracle_feed_choice,
            max_age_seconds=self.max_price_age_seconds,
            max_confidence_bps=self.max_confidence_bps,
            max_jump_bps=self.max_price_jump_bps,
        )

    def as_payload(self) -> dict[str, Any]:
        payload = asdict(self)
        return {key: value.value if isinstance(value, Enum) else value for key, value in payload.items()}

    @classmethod
    def from_payload(cls, payload: dict[str, Any]) -> EngineParams:
        known = {f.name for f in fields(cls)}
        values = {key: value for key, value in payload.items() if key in known}
        if "vol_mode" in values:
            values["vol_mode"] = VolMode(values["vol_mode"])
        if "oracle_feed_choice" in values:
            values["oracle_feed_choice"] = FeedChoice(values["oracle_feed_choice"])
        return cls(**values)

    def config_hash(self) -> str:
        return stable_hash_payload({"domain": CONFIG_HASH_DOMAIN, "params": self.as_payload()})


@dataclass
class Exposure:
    staked_units: int = 0
    reserve_units: int = 0
    staking_accrued_usd: int = 0
    funding_bps_per_day: int = 0
    borrow_bps_per_day: int = 0
    staking_bps_per_day: int = 0

    def expected_carry_bps(self) -> int:
        carry = self.staking_bps_per_day + self.funding_bps_per_day - self.borrow_bps_per_day
        return clamp(carry, I32_MIN, I32_MAX)

    def set_carry_inputs(self, *, funding_bps_per_day: int, borrow_bps_per_day: int, staking_bps_per_day: int) -> None:
        for name, value in (
            ("funding_bps_per_day", funding_bps_per_day),
            ("borrow_bps_per_day", borrow_bps_per_day),
            ("staking_bps_per_day", staking_bps_per_day),
        ):
            if not I32_MIN <= value <= I32_MAX:
                raise InvalidParams("carry input out of range", field=name, value=value)
        self.funding_bps_per_day = funding_bps_per_day
        self.borrow_bps_per_day = borrow_bps_per_day
        self.staking_bps_per_day = staking_bps_per_day

    def enforce_reserve_ratio(self, min_reserve_bps: int) -> None:
        required = self.staked_units * min_reserve_bps // BPS_DENOM
        if self.reserve_units < required:
            raise ReserveTooLow(
                reserve_units=self.reserve_units,
                required_units=required,
                min_reserve_bps=min_reserve_bps,
            )

    def stake(self, amount: int, *, max_staked_units: int) -> None:
        if amount <= 0:
            raise InvalidParams("stake amount must be positive", amount=amount)
        new_staked = checked_add(self.staked_units, amount, lo=0, hi=U64_MAX)
        if new_staked > max_staked_units:
            raise CapExceeded(staked_units=new_staked, max_staked_units=max_staked_units)
        self.staked_units = new_staked

    def add_reserve(self, amount: int) -> None:
        if amount <= 0:
            raise InvalidParams("reserve amount must be positive", amount=amount)
        self.reserve_units = checked_add(self.reserve_units, amount, lo=0, hi=U64_MAX)

    def accrue_staking(self, amount_usd: int) -> None:
        if amount_usd < 0:
            raise InvalidParams("staking accrual cannot be negative", amount_usd=amount_usd)
        self.staking_accrued_usd = checked_add(self.staking_accrued_usd, amount_usd)


@dataclass
class PositionState:
    """Everything one hedged position owns; passed explicitly to every operation."""

    position_id: str
    params: EngineParams
    oracle: OracleState
    returns: ReturnBuffer
    vol: VolState
    policy: PolicyState
    hedge: HedgeState
    exposure: Exposure = field(default_factory=Exposure)
    paused: bool = False
    config_version: int = 1
    config_hash: str = ""
    keeper_updates: dict[str, int] = field(default_factory=dict)

    def __post_init__(self) -> None:
        if not self.config_hash:
            self.config_hash = self.params.config_hash()

    def apply_params(self, params: EngineParams) -> None:
        """Install validated parameters and mirror them into the sub-states that cache them."""
        params.validate()
        self.params = params
        self.returns.spacing_ticks = params.min_return_spacing_ticks
        if self.vol.mode is not params.vol_mode:
            self.vol.ewma_var_fp2 = 0
        self.vol.mode = params.vol_mode
        self.vol.ewma_alpha_bps = params.ewma_alpha_bps
        self.config_version = min(self.config_version + 1, U64_MAX)
        self.config_hash = params.config_hash()

    def require_keeper_quota(self, keeper: str) -> None:
        used = self.keeper_updates.get(keeper, 0)
        if used >= self.params.max_updates_per_epoch:
            raise KeeperRateLimited(
                keeper=keeper, updates=used, max_updates_per_epoch=self.params.max_updates_per_epoch
            )

    def count_keeper_update(self, keeper: str) -> int:
        used = min(self.keeper_updates.get(keeper, 0) + 1, U16_MAX)
        self.keeper_updates[keeper] = used
        return used

    def to_payload(self) -> dict[str, Any]:
        return {
            "schema_version": STATE_SCHEMA_VERSION,
            "position_id": self.position_id,
            "params": self.params.as_payload(),
            "oracle": _enum_safe(asdict(self.oracle)),
            "returns": asdict(self.returns),
            "vol": _enum_safe(asdict(self.vol)),
            "policy": asdict(self.policy),
            "hedge": asdict(self.hedge),
            "exposure": asdict(self.exposure),
            "paused": self.paused,
            "config_version": self.config_version,
            "config_hash": self.config_hash,
            "keeper_updates": dict(self.keeper_updates),
        }

    @classmethod
    def from_payload(cls, payload: dict[str, Any]) -> PositionState:
        version = payload.get("schema_version")
        if version != STATE_SCHEMA_VERSION:
            raise InvalidParams("unsupported state schema version", schema_version=version)
        oracle = dict(payload["oracle"])
        if oracle.get("last_feed") is not None:
            oracle["last_feed"] = FeedId(oracle["last_feed"])
        oracle["last_reason"] = OracleReason(oracle.get("last_reason", 0))
        vol = dict(payload["vol"])
        vol["mode"] = VolMode(vol["mode"])
        returns = dict(payload["returns"])
        returns["samples"] = list(returns["samples"])
        return cls(
            position_id=payload["position_id"],
            params=EngineParams.from_payload(payload["params"]),
            oracle=OracleState(**oracle),
            returns=ReturnBuffer(**returns),
            vol=VolState(**vol),
            policy=PolicyState(**payload["policy"]),
            hedge=HedgeState(**payload["hedge"]),
            exposure=Exposure(**payload["exposure"]),
            paused=bool(payload["paused"]),
            config_version=int(payload["config_version"]),
            config_hash=str(payload["config_hash"]),
            keeper_updates={
                str(keeper): int(count) for keeper, count in payload.get("keeper_updates", {}).items()
            },
        )


def _enum_safe(values: dict[str, Any]) -> dict[str, Any]:
    return {key: value.value if isinstance(value, Enum) else value for key, value in values.items()}


def new_position(position_id: str, params: EngineParams) -> PositionState:
    params.validate()
    if not position_id:
        raise InvalidParams("position_id must be non-empty")
    return PositionState(
        position_id=position_id,
        params=params,
        oracle=OracleState(),
        returns=ReturnBuffer(spacing_ticks=params.min_return_spacing_ticks),
        vol=VolState(mode=params.vol_mode, ewma_alpha_bps=params.ewma_alpha_bps),
        policy=PolicyState(
            band_bps=params.min_band_bps,
            min_hedge_interval_ticks=params.min_interval_ticks,
        ),
        hedge=HedgeState(),
    )


def with_changes(params: EngineParams, **changes: Any) -> tuple[EngineParams, tuple[tuple[str, str], ...]]:
    """Copy ``params`` with ``changes`` applied and validated; also report what actually changed."""
    updated = replace(params, **changes).validate()
    diff = tuple(
        (name, str(getattr(updated, name)))
        for name in sorted(changes)
        if getattr(updated, name) != getattr(params, name)
    )
    return updated, diff
