from __future__ import annotations

import os
from pathlib import Path

import pytest

from volhedge.adapters.quote_source import StaticQuoteSource
from volhedge.config import Settings
from volhedge.domain.oracle import FeedId, Quote
from volhedge.domain.position import EngineParams
from volhedge.observability import InMemoryInstrumentation, set_instrumentation
from volhedge.persistence.state_store import InMemoryPositionStateRepository
from volhedge.services.position_engine import ManualClock, PositionEngine, StaticAuthorizer

KEEPER = "keeper-1"
AUTHORITY = "authority-1"
BASE_PRICE_FP = 100_000_000
START_UNIX = 1_700_000_000


@pytest.fixture(autouse=True)
def isolate_settings_from_host_env(monkeypatch: pytest.MonkeyPatch):
    original_env_file = Settings.model_config.get("env_file")
    Settings.model_config["env_file"] = None

    settings_env_keys: set[str] = set()
    for field in Settings.model_fields.values():
        if isinstance(field.alias, str):
            settings_env_keys.add(field.alias)

    for key in list(os.environ):
        if key in settings_env_keys:
            monkeypatch.delenv(key, raising=False)

    yield

    Settings.model_config["env_file"] = original_env_file


@pytest.fixture(autouse=True)
def isolate_default_state_db_per_test(
    isolate_settings_from_host_env: None,
    monkeypatch: pytest.MonkeyPatch,
    tmp_path: Path,
) -> None:
    del isolate_settings_from_host_env
    monkeypatch.setenv("STATE_DB_PATH", str(tmp_path / "volhedge_state.sqlite"))


@pytest.fixture
def instrumentation():
    instr = InMemoryInstrumentation()
    previous = set_instrumentation(instr)
    yield instr
    set_instrumentation(previous)


def make_quote(
    price_fp: int = BASE_PRICE_FP,
    *,
    feed: FeedId = FeedId.PRIMARY,
    ema_price_fp: int | None = None,
    conf_fp: int = 0,
    publish_time: int = START_UNIX,
) -> Quote:
    return Quote(
        feed=feed,
        price_fp=price_fp,
        ema_price_fp=price_fp if ema_price_fp is None else ema_price_fp,
        conf_fp=conf_fp,
        publish_time=publish_time,
    )


@pytest.fixture
def params() -> EngineParams:
    return EngineParams(
        min_band_bps=100,
        max_band_bps=1_000,
        min_interval_ticks=60,
        max_interval_ticks=600,
        vol_weight_realized_bps=0,
        vol_weight_implied_bps=10_000,
        min_samples=4,
        min_return_spacing_ticks=10,
        policy_update_min_ticks=60,
        max_policy_slew_bps=1_000,
        hysteresis_bps=100,
        max_confirm_delay_ticks=300,
    )


@pytest.fixture
def quotes() -> StaticQuoteSource:
    return StaticQuoteSource()


@pytest.fixture
def clock() -> ManualClock:
    return ManualClock(tick=1_000, unix_time=START_UNIX)


@pytest.fixture
def repository() -> InMemoryPositionStateRepository:
    return InMemoryPositionStateRepository()


@pytest.fixture
def emitted() -> list:
    return []


@pytest.fixture
def engine(params, quotes, clock, repository, emitted) -> PositionEngine:
    return PositionEngine.open(
        "pos-1",
        params,
        quote_source=quotes,
        clock=clock,
        authorizer=StaticAuthorizer(authority=AUTHORITY, keepers={KEEPER}),
        repository=repository,
        listeners=[emitted.append],
    )


def push_price(engine: PositionEngine, quotes: StaticQuoteSource, clock: ManualClock, price_fp: int):
    """Publish ``price_fp`` as a fresh primary quote and feed it to the engine."""
    quotes.set_quote(make_quote(price_fp, publish_time=clock.unix_time()))
    return engine.update_oracle_price(KEEPER)
