from __future__ import annotations

import json
from typing import Annotated

from pydantic import Field, field_validator
from pydantic_settings import BaseSettings, NoDecode, SettingsConfigDict

from volhedge.domain.oracle import FeedChoice, FeedId
from volhedge.domain.position import (
    DEFAULT_EXTREME_DRIFT_BPS,
    DEFAULT_HYSTERESIS_BPS,
    DEFAULT_MAX_POLICY_SLEW_BPS,
    DEFAULT_MAX_UPDATES_PER_EPOCH,
    EngineParams,
)
from volhedge.domain.volatility import VolMode


class Settings(BaseSettings):
    model_config = SettingsConfigDict(
        env_file=".env",
        env_file_encoding="utf-8",
        extra="ignore",
    )

    position_id: str = Field(default="default", alias="POSITION_ID")
    authority: str = Field(default="authority", alias="AUTHORITY")
    keepers: Annotated[list[str], NoDecode] = Field(
        default_factory=lambda: ["keeper"], alias="KEEPERS"
    )

    hermes_base_url: str = Field(default="https://hermes.pyth.network", alias="HERMES_BASE_URL")
    hermes_timeout_seconds: float = Field(default=5.0, alias="HERMES_TIMEOUT_SECONDS")
    primary_feed_id: str | None = Field(default=None, alias="PRIMARY_FEED_ID")
    secondary_feed_id: str | None = Field(default=None, alias="SECONDARY_FEED_ID")

    state_db_path: str = Field(default="volhedge_state.db", alias="STATE_DB_PATH")
    log_level: str = Field(default="INFO", alias="LOG_LEVEL")

    observability_enabled: bool = Field(default=False, alias="OBSERVABILITY_ENABLED")
    observability_metrics_exporter: str = Field(
        default="none", alias="OBSERVABILITY_METRICS_EXPORTER"
    )
    otlp_endpoint: str | None = Field(default=None, alias="OTEL_EXPORTER_OTLP_ENDPOINT")
    prometheus_port: int = Field(default=9464, alias="OBSERVABILITY_PROMETHEUS_PORT")

    min_band_bps: int = Field(default=50, alias="MIN_BAND_BPS")
    max_band_bps: int = Field(default=600, alias="MAX_BAND_BPS")
    min_interval_ticks: int = Field(default=60, alias="MIN_INTERVAL_TICKS")
    max_interval_ticks: int = Field(default=3_600, alias="MAX_INTERVAL_TICKS")
    vol_weight_realized_bps: int = Field(default=7_000, alias="VOL_WEIGHT_REALIZED_BPS")
    vol_weight_implied_bps: int = Field(default=3_000, alias="VOL_WEIGHT_IMPLIED_BPS")
    min_samples: int = Field(default=8, alias="MIN_SAMPLES")
    min_return_spacing_ticks: int = Field(default=10, alias="MIN_RETURN_SPACING_TICKS")
    policy_update_min_ticks: int = Field(default=60, alias="POLICY_UPDATE_MIN_TICKS")
    max_policy_slew_bps: int = Field(
        default=DEFAULT_MAX_POLICY_SLEW_BPS, alias="MAX_POLICY_SLEW_BPS"
    )
    hysteresis_bps: int = Field(default=DEFAULT_HYSTERESIS_BPS, alias="HYSTERESIS_BPS")
    vol_mode: VolMode = Field(default=VolMode.STDEV, alias="VOL_MODE")
    ewma_alpha_bps: int = Field(default=0, alias="EWMA_ALPHA_BPS")
    max_staked_units: int = Field(default=1_000_000_000_000, alias="MAX_STAKED_UNITS")
    max_abs_hedge_notional_usd: int = Field(
        default=1_000_000_000_000, alias="MAX_ABS_HEDGE_NOTIONAL_USD"
    )
    max_hedge_per_unit_usd_fp: int = Field(
        default=1_000_000_000_000, alias="MAX_HEDGE_PER_UNIT_USD_FP"
    )
    min_reserve_bps: int = Field(default=0, alias="MIN_RESERVE_BPS")
    oracle_feed_choice: FeedChoice = Field(
        default=FeedChoice.PREFER_PRIMARY, alias="ORACLE_FEED_CHOICE"
    )
    max_price_age_seconds: int = Field(default=60, alias="MAX_PRICE_AGE_SECONDS")
    max_confidence_bps: int = Field(default=100, alias="MAX_CONFIDENCE_BPS")
    max_price_jump_bps: int = Field(default=1_000, alias="MAX_PRICE_JUMP_BPS")
    target_delta_bps: int = Field(default=10_000, alias="TARGET_DELTA_BPS")
    beta_fp: int = Field(default=1_000_000, alias="BETA_FP")
    max_confirm_delay_ticks: int = Field(default=300, alias="MAX_CONFIRM_DELAY_TICKS")
    extreme_drift_bps: int = Field(default=DEFAULT_EXTREME_DRIFT_BPS, alias="EXTREME_DRIFT_BPS")
    max_updates_per_epoch: int = Field(
        default=DEFAULT_MAX_UPDATES_PER_EPOCH, alias="MAX_UPDATES_PER_EPOCH"
    )

    @field_validator("keepers", mode="before")
    def parse_keepers(cls, value: str | list[str]) -> list[str]:
        items: list[object]
        if isinstance(value, str):
            raw = value.strip()
            if not raw:
                return []
            if raw.startswith("["):
                parsed = json.loads(raw)
                if not isinstance(parsed, list):
                    raise ValueError("KEEPERS JSON value must be a list")
                items = parsed
            else:
                items = raw.split(",")
        else:
            items = value

        normalized: list[str] = []
        for item in items:
            candidate = str(item).strip()
            if candidate and candidate not in normalized:
                normalized.append(candidate)
        return normalized

    @field_validator("vol_mode", "oracle_feed_choice", mode="before")
    def normalize_enum_name(cls, value: object) -> object:
        if isinstance(value, str):
            return value.strip().upper()
        return value

    @field_validator(
        "min_band_bps",
        "max_band_bps",
        "vol_weight_realized_bps",
        "vol_weight_implied_bps",
        "hysteresis_bps",
        "ewma_alpha_bps",
        "min_reserve_bps",
        "max_confidence_bps",
        "max_price_jump_bps",
        "target_delta_bps",
        "extreme_drift_bps",
    )
    def validate_bps(cls, value: int) -> int:
        if not 0 <= value <= 10_000:
            raise ValueError("bps values must be within [0, 10000]")
        return value

    @field_validator(
        "min_return_spacing_ticks",
        "policy_update_min_ticks",
        "max_policy_slew_bps",
        "max_price_age_seconds",
        "max_confirm_delay_ticks",
        "max_staked_units",
        "max_abs_hedge_notional_usd",
        "max_hedge_per_unit_usd_fp",
        "beta_fp",
        "max_updates_per_epoch",
    )
    def validate_positive(cls, value: int) -> int:
        if value <= 0:
            raise ValueError("value must be > 0")
        return value

    @field_validator("hermes_timeout_seconds")
    def validate_hermes_timeout(cls, value: float) -> float:
        if value <= 0:
            raise ValueError("HERMES_TIMEOUT_SECONDS must be > 0")
        return value

    @field_validator("observability_metrics_exporter")
    def validate_metrics_exporter(cls, value: str) -> str:
        normalized = value.strip().lower()
        if normalized not in {"none", "otlp", "prometheus"}:
            raise ValueError("OBSERVABILITY_METRICS_EXPORTER must be none, otlp or prometheus")
        return normalized

    def engine_params(self) -> EngineParams:
        return EngineParams(
            min_band_bps=self.min_band_bps,
            max_band_bps=self.max_band_bps,
            min_interval_ticks=self.min_interval_ticks,
            max_interval_ticks=self.max_interval_ticks,
            vol_weight_realized_bps=self.vol_weight_realized_bps,
            vol_weight_implied_bps=self.vol_weight_implied_bps,
            min_samples=self.min_samples,
            min_return_spacing_ticks=self.min_return_spacing_ticks,
            policy_update_min_ticks=self.policy_update_min_ticks,
            max_policy_slew_bps=self.max_policy_slew_bps,
            hysteresis_bps=self.hysteresis_bps,
            vol_mode=self.vol_mode,
            ewma_alpha_bps=self.ewma_alpha_bps,
            max_staked_units=self.max_staked_units,
            max_abs_hedge_notional_usd=self.max_abs_hedge_notional_usd,
            max_hedge_per_unit_usd_fp=self.max_hedge_per_unit_usd_fp,
            min_reserve_bps=self.min_reserve_bps,
            oracle_feed_choice=self.oracle_feed_choice,
            max_price_age_seconds=self.max_price_age_seconds,
            max_confidence_bps=self.max_confidence_bps,
            max_price_jump_bps=self.max_price_jump_bps,
            target_delta_bps=self.target_delta_bps,
            beta_fp=self.beta_fp,
            max_confirm_delay_ticks=self.max_confirm_delay_ticks,
            extreme_drift_bps=self.extreme_drift_bps,
            max_updates_per_epoch=self.max_updates_per_epoch,
        ).validate()

    def feed_ids(self) -> dict[FeedId, str]:
        ids: dict[FeedId, str] = {}
        if self.primary_feed_id:
            ids[FeedId.PRIMARY] = self.primary_feed_id
        if self.secondary_feed_id:
            ids[FeedId.SECONDARY] = self.secondary_feed_id
        return ids
