from __future__ import annotations

from pathlib import Path

import pytest

from volhedge.config import Settings
from volhedge.domain.errors import InvalidParams
from volhedge.domain.oracle import FeedChoice, FeedId
from volhedge.domain.position import EngineParams
from volhedge.domain.volatility import VolMode


def test_defaults_build_valid_engine_params() -> None:
    settings = Settings()

    params = settings.engine_params()

    assert params == EngineParams()
    assert settings.keepers == ["keeper"]
    assert settings.feed_ids() == {}


def test_parse_keepers_json_list() -> None:
    settings = Settings(KEEPERS='["k1","k2","k1"]')
    assert settings.keepers == ["k1", "k2"]


def test_parse_keepers_csv() -> None:
    settings = Settings(KEEPERS="k1, k2 ,,k3")
    assert settings.keepers == ["k1", "k2", "k3"]


def test_loads_values_from_env_file(monkeypatch, tmp_path: Path) -> None:
    env_file = tmp_path / ".env.keeper"
    env_file.write_text(
        "\n".join(
            [
                "POSITION_ID=sol-vault",
                "VOL_MODE=ewma",
                "EWMA_ALPHA_BPS=1500",
                "ORACLE_FEED_CHOICE=secondary",
                "SECONDARY_FEED_ID=0xABC",
                "KEEPERS=alpha,beta",
            ]
        )
        + "\n",
        encoding="utf-8",
    )
    monkeypatch.chdir(tmp_path)

    settings = Settings(_env_file=str(env_file))

    assert settings.position_id == "sol-vault"
    assert settings.vol_mode is VolMode.EWMA
    assert settings.oracle_feed_choice is FeedChoice.SECONDARY
    assert settings.keepers == ["alpha", "beta"]
    assert settings.feed_ids() == {FeedId.SECONDARY: "0xABC"}
    assert settings.engine_params().ewma_alpha_bps == 1_500


def test_env_vars_override_defaults(monkeypatch) -> None:
    monkeypatch.setenv("MIN_BAND_BPS", "75")
    monkeypatch.setenv("OBSERVABILITY_METRICS_EXPORTER", "Prometheus")

    settings = Settings()

    assert settings.min_band_bps == 75
    assert settings.observability_metrics_exporter == "prometheus"


@pytest.mark.parametrize(
    ("field", "value"),
    [
        ("MIN_BAND_BPS", -1),
        ("MAX_CONFIDENCE_BPS", 10_001),
        ("POLICY_UPDATE_MIN_TICKS", 0),
        ("BETA_FP", 0),
        ("MAX_UPDATES_PER_EPOCH", 0),
        ("HERMES_TIMEOUT_SECONDS", 0),
        ("OBSERVABILITY_METRICS_EXPORTER", "statsd"),
        ("VOL_MODE", "garch"),
    ],
)
def test_invalid_settings_raise(field: str, value: object) -> None:
    kwargs = {field: value}
    with pytest.raises(ValueError):
        Settings(**kwargs)


def test_cross_field_checks_run_when_building_params() -> None:
    settings = Settings(VOL_WEIGHT_REALIZED_BPS=6_000)

    with pytest.raises(InvalidParams) as exc_info:
        settings.engine_params()

    assert exc_info.value.context["field"] == "vol weights must sum to 10000"


def test_keeper_rate_limit_flows_into_engine_params(monkeypatch) -> None:
    monkeypatch.setenv("MAX_UPDATES_PER_EPOCH", "12")

    params = Settings().engine_params()

    assert params.max_updates_per_epoch == 12


def test_keeper_rate_limit_above_u16_is_rejected_when_building_params() -> None:
    settings = Settings(MAX_UPDATES_PER_EPOCH=70_000)

    with pytest.raises(InvalidParams) as exc_info:
        settings.engine_params()

    assert exc_info.value.context["field"] == "max_updates_per_epoch"
