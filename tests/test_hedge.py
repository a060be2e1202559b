from __future__ import annotations

from dataclasses import replace

import pytest

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
from volhedge.domain.hedge import (
    REASON_DRIFT,
    REASON_INTERVAL,
    compute_price_drift_bps,
    compute_reason_code,
    compute_slippage_bps,
    compute_target_hedge_notional_usd,
    confirm_hedge,
    enforce_hedge_guardrails,
    expire_stale_request,
    request_hedge,
)
from volhedge.domain.position import new_position


def _set_price(state, price_fp: int, *, degraded: bool = False) -> None:
    state.oracle.price_fp = price_fp
    state.oracle.ema_price_fp = price_fp
    state.oracle.ok = not degraded
    state.oracle.degraded = degraded


@pytest.fixture
def state(params):
    position = new_position("pos-1", params)
    position.exposure.staked_units = 50
    _set_price(position, 100_000_000)
    return position


def test_target_notional_is_delta_neutral_short() -> None:
    assert (
        compute_target_hedge_notional_usd(
            staked_units=50, price_fp=100_000_000, target_delta_bps=10_000, beta_fp=1_000_000
        )
        == -5_000
    )
    assert (
        compute_target_hedge_notional_usd(
            staked_units=50, price_fp=100_000_000, target_delta_bps=5_000, beta_fp=1_500_000
        )
        == -3_750
    )
    assert (
        compute_target_hedge_notional_usd(
            staked_units=0, price_fp=100_000_000, target_delta_bps=10_000, beta_fp=1_000_000
        )
        == 0
    )


def test_drift_and_reason_helpers() -> None:
    assert compute_price_drift_bps(103_000_000, 100_000_000) == 300
    assert compute_price_drift_bps(97_000_000, 100_000_000) == 300
    assert compute_price_drift_bps(100_000_000, 0) == 10_000
    assert compute_price_drift_bps(0, 100_000_000) == 0
    assert compute_reason_code(True, True) == REASON_INTERVAL | REASON_DRIFT
    assert compute_reason_code(False, True) == REASON_DRIFT
    assert compute_reason_code(False, False) == 0


def test_first_request_sizes_hedge_and_sets_anchor(state) -> None:
    intent = request_hedge(state, now=1_000)

    assert intent.request_id == 1
    assert intent.target_notional_usd == -5_000
    assert intent.gap_usd == -5_000
    assert intent.reason_code == 3
    assert intent.drift_bps == 10_000
    assert state.hedge.request_outstanding is True
    assert state.hedge.last_hedge_ema_price_fp == 100_000_000
    assert intent.context.request_id == 1


def test_request_before_interval_is_too_soon(state) -> None:
    request_hedge(state, now=1_000)
    _set_price(state, 150_000_000)

    with pytest.raises(HedgeTooSoon):
        request_hedge(state, now=1_059)


@pytest.mark.parametrize(("band_bps", "allowed"), [(250, True), (350, False)])
def test_drift_must_reach_band(state, band_bps: int, allowed: bool) -> None:
    request_hedge(state, now=1_000)
    state.policy.band_bps = band_bps
    _set_price(state, 103_000_000)

    if allowed:
        intent = request_hedge(state, now=2_000)
        assert intent.drift_bps == 300
        assert intent.request_id == 2
    else:
        with pytest.raises(DriftNotMet):
            request_hedge(state, now=2_000)
        assert state.hedge.last_request_id == 1


def test_degraded_oracle_blocks_unless_extreme_drift(state) -> None:
    request_hedge(state, now=1_000)
    _set_price(state, 103_000_000, degraded=True)

    with pytest.raises(OracleDegradedHedgeBlocked):
        request_hedge(state, now=2_000)

    _set_price(state, 125_000_000, degraded=True)
    intent = request_hedge(state, now=2_000)

    assert intent.drift_bps == 2_500
    assert intent.context.oracle_degraded is True
    # Sizing falls back to the EMA price while spot is not valid.
    assert intent.target_notional_usd == -6_250


def test_missing_ema_price_is_reported_first(state) -> None:
    request_hedge(state, now=1_000)
    state.oracle.ema_price_fp = 0

    with pytest.raises(OracleNotReady):
        request_hedge(state, now=1_001)


def test_stale_request_expires_after_confirm_delay(state) -> None:
    request_hedge(state, now=1_000)

    assert expire_stale_request(state, now=1_300) is None
    missed = expire_stale_request(state, now=1_301)

    assert missed is not None
    assert missed.request_id == 1
    assert missed.since_request_ticks == 301
    assert state.hedge.missed_confirms == 1
    assert state.hedge.request_outstanding is False
    assert expire_stale_request(state, now=5_000) is None


def test_confirm_checks_fill_price_before_request(state) -> None:
    with pytest.raises(InvalidParams):
        confirm_hedge(state, request_id=1, new_notional_usd=0, fill_price_fp=0, now=1_000)
    with pytest.raises(NoOutstandingRequest):
        confirm_hedge(state, request_id=1, new_notional_usd=0, fill_price_fp=1, now=1_000)


def test_confirm_requires_matching_request_id(state) -> None:
    request_hedge(state, now=1_000)

    with pytest.raises(WrongRequestId):
        confirm_hedge(state, request_id=2, new_notional_usd=-5_000, fill_price_fp=100_000_000, now=1_010)

    assert state.hedge.request_outstanding is True


def test_confirm_records_fill_and_slippage(state) -> None:
    intent = request_hedge(state, now=1_000)

    fill = confirm_hedge(
        state,
        request_id=intent.request_id,
        new_notional_usd=-5_000,
        fill_price_fp=100_500_000,
        now=1_010,
    )

    assert fill.ref_price_fp == 100_000_000
    assert fill.slippage_bps == 50
    assert fill.avg_fill_slippage_bps == 10
    assert fill.fill_count == 1
    assert state.hedge.hedge_notional_usd == -5_000
    assert state.hedge.request_outstanding is False
    assert fill.event.hedge_fill_count == 1

    with pytest.raises(NoOutstandingRequest):
        confirm_hedge(state, request_id=1, new_notional_usd=0, fill_price_fp=100_000_000, now=1_020)


def test_confirm_enforces_abs_cap(state) -> None:
    state.params = replace(state.params, max_abs_hedge_notional_usd=4_000)
    intent = request_hedge(state, now=1_000)

    with pytest.raises(CapExceeded):
        confirm_hedge(
            state,
            request_id=intent.request_id,
            new_notional_usd=-5_000,
            fill_price_fp=100_000_000,
            now=1_010,
        )


def test_guardrails_enforce_per_unit_leverage(state) -> None:
    state.params = replace(state.params, max_hedge_per_unit_usd_fp=50_000_000)

    enforce_hedge_guardrails(state, -2_500)
    with pytest.raises(LeverageExceeded):
        enforce_hedge_guardrails(state, -2_501)

    state.exposure.staked_units = 0
    enforce_hedge_guardrails(state, 0)
    with pytest.raises(LeverageExceeded):
        enforce_hedge_guardrails(state, -1)


def test_slippage_needs_positive_reference() -> None:
    assert compute_slippage_bps(99_000_000, 100_000_000) == 100
    with pytest.raises(InvalidParams):
        compute_slippage_bps(1, 0)
