from __future__ import annotations

import copy
import logging
import time
from collections.abc import Callable, Iterator
from contextlib import contextmanager
from dataclasses import dataclass, replace
from enum import StrEnum
from typing import Any, Protocol

from volhedge.adapters.quote_source import QuoteSource, QuoteUnavailableError
from volhedge.domain import hedge as hedge_ops
from volhedge.domain import policy as policy_ops
from volhedge.domain.errors import (
    CapExceeded,
    EngineError,
    InvalidParams,
    Paused,
    Unauthorized,
)
from volhedge.domain.events import (
    CarryInputsUpdated,
    ConfigUpdated,
    Event,
    ImpliedVolUpdated,
    OracleDegraded,
    OraclePriceUpdated,
    OracleReturnRecorded,
    PausedSet,
    ReserveUpdated,
    StakeAllocated,
    StakingAccrued,
)
from volhedge.domain.hedge import FillRecord, HedgeIntent
from volhedge.domain.oracle import FeedChoice, FeedId, GateResult, Quote, gate_oracle
from volhedge.domain.policy import PolicyUpdateResult
from volhedge.domain.position import EngineParams, PositionState, new_position, with_changes
from volhedge.domain.returns import record_return
from volhedge.domain.volatility import VolMode
from volhedge.logging_context import with_hedge_request_context, with_position_context
from volhedge.observability import get_instrumentation
from volhedge.observability_events import emit_event, emit_rejection

logger = logging.getLogger(__name__)


class Role(StrEnum):
    KEEPER = "keeper"
    AUTHORITY = "authority"


class Clock(Protocol):
    def tick(self) -> int: ...

    def unix_time(self) -> int: ...


class Authorizer(Protocol):
    def is_permitted(self, caller: str, role: Role) -> bool: ...


class PositionStateRepository(Protocol):
    def load(self, position_id: str) -> PositionState | None: ...

    def save(self, state: PositionState) -> None: ...


class ManualClock:
    """Clock advanced explicitly; drives replays and tests."""

    def __init__(self, *, tick: int = 0, unix_time: int = 0) -> None:
        self._tick = tick
        self._unix_time = unix_time

    def tick(self) -> int:
        return self._tick

    def unix_time(self) -> int:
        return self._unix_time

    def advance(self, *, ticks: int = 0, seconds: int = 0) -> None:
        if ticks < 0 or seconds < 0:
            raise ValueError("clock cannot move backwards")
        self._tick += ticks
        self._unix_time += seconds

    def set(self, *, tick: int | None = None, unix_time: int | None = None) -> None:
        if tick is not None:
            self._tick = tick
        if unix_time is not None:
            self._unix_time = unix_time


class SystemClock:
    """Wall clock; one tick per unix second so ticks survive restarts."""

    def tick(self) -> int:
        return int(time.time())

    def unix_time(self) -> int:
        return int(time.time())


class StaticAuthorizer:
    def __init__(self, *, authority: str, keepers: frozenset[str] | set[str] = frozenset()) -> None:
        self.authority = authority
        self.keepers = frozenset(keepers)

    def is_permitted(self, caller: str, role: Role) -> bool:
        if role is Role.AUTHORITY:
            return caller == self.authority
        return caller in self.keepers


@dataclass(frozen=True)
class OracleUpdateResult:
    gate: GateResult
    return_fp: int | None
    events: tuple[Event, ...]

    @property
    def accepted(self) -> bool:
        return self.gate.accepted


class PositionEngine:
    """Single-writer orchestration of one hedged position.

    Every mutating call runs against a snapshot of the position; if it raises,
    the snapshot is restored and nothing is persisted or emitted.
    """

    def __init__(
        self,
        state: PositionState,
        *,
        quote_source: QuoteSource,
        clock: Clock,
        authorizer: Authorizer,
        repository: PositionStateRepository | None = None,
        listeners: list[Callable[[Event], None]] | None = None,
    ) -> None:
        self.state = state
        self.quote_source = quote_source
        self.clock = clock
        self.authorizer = authorizer
        self.repository = repository
        self.listeners = list(listeners or [])

    @classmethod
    def open(
        cls,
        position_id: str,
        params: EngineParams,
        *,
        quote_source: QuoteSource,
        clock: Clock,
        authorizer: Authorizer,
        repository: PositionStateRepository | None = None,
        listeners: list[Callable[[Event], None]] | None = None,
    ) -> PositionEngine:
        """Load ``position_id`` from the repository, creating it from ``params`` when absent."""
        state = repository.load(position_id) if repository is not None else None
        if state is None:
            state = new_position(position_id, params)
            if repository is not None:
                repository.save(state)
            logger.info(
                "position_initialized",
                extra={"extra": {"position_id": position_id, "config_hash": state.config_hash}},
            )
        return cls(
            state,
            quote_source=quote_source,
            clock=clock,
            authorizer=authorizer,
            repository=repository,
            listeners=listeners,
        )

    @contextmanager
    def _transaction(self, operation: str) -> Iterator[list[Event]]:
        snapshot = copy.deepcopy(self.state)
        events: list[Event] = []
        with with_position_context(
            self.state.position_id, epoch=self.state.policy.epoch, operation=operation
        ):
            try:
                with get_instrumentation().trace(operation, attrs={"position_id": self.state.position_id}):
                    yield events
                if self.repository is not None:
                    self.repository.save(self.state)
            except EngineError as exc:
                self.state = snapshot
                emit_rejection(logger, operation, exc)
                raise
            except Exception:
                self.state = snapshot
                logger.exception("operation_failed", extra={"extra": {"operation": operation}})
                raise
            for event in events:
                emit_event(logger, event)
                for listener in self.listeners:
                    listener(event)

    def _require_role(self, caller: str, role: Role) -> None:
        if not self.authorizer.is_permitted(caller, role):
            raise Unauthorized(caller=caller, role=role.value)

    def _require_not_paused(self) -> None:
        if self.state.paused:
            raise Paused()

    def _header(self, tick: int) -> dict[str, Any]:
        return {"position_id": self.state.position_id, "epoch": self.state.policy.epoch, "tick": tick}

    def _require_keeper(self, caller: str) -> None:
        self._require_role(caller, Role.KEEPER)
        self.state.require_keeper_quota(caller)

    def _fetch_quote(self, feed: FeedId) -> Quote | None:
        try:
            return self.quote_source.get_quote(feed)
        except QuoteUnavailableError as exc:
            logger.info(
                "quote_unavailable",
                extra={"extra": {"feed": feed.value, "error": str(exc)}},
            )
            return None

    def _gate_feeds(self, *, now: int) -> GateResult:
        """Read and gate the configured feed(s).

        Under PREFER_PRIMARY the secondary feed is only read once the primary
        quote has been rejected.
        """
        config = self.state.params.oracle_config()
        last_price_fp = self.state.oracle.price_fp
        if config.feed_choice is not FeedChoice.PREFER_PRIMARY:
            feed = FeedId.PRIMARY if config.feed_choice is FeedChoice.PRIMARY else FeedId.SECONDARY
            return gate_oracle(
                {feed: self._fetch_quote(feed)}, now=now, last_price_fp=last_price_fp, config=config
            )
        candidates: dict[FeedId, Quote | None] = {FeedId.PRIMARY: self._fetch_quote(FeedId.PRIMARY)}
        primary = gate_oracle(
            candidates,
            now=now,
            last_price_fp=last_price_fp,
            config=replace(config, feed_choice=FeedChoice.PRIMARY),
        )
        if primary.accepted:
            return primary
        candidates[FeedId.SECONDARY] = self._fetch_quote(FeedId.SECONDARY)
        return gate_oracle(candidates, now=now, last_price_fp=last_price_fp, config=config)

    # Keeper operations

    def update_oracle_price(self, caller: str) -> OracleUpdateResult:
        with self._transaction("update_oracle_price") as events:
            self._require_not_paused()
            self._require_keeper(caller)
            state = self.state
            now_tick = self.clock.tick()

            gate = self._gate_feeds(now=self.clock.unix_time())
            state.oracle.apply(gate)
            state.count_keeper_update(caller)
            header = self._header(now_tick)

            sample: int | None = None
            if gate.accepted:
                sample = record_return(state.returns, now=now_tick, price_fp=gate.price_fp)
                if sample is not None:
                    state.vol.observe_return(sample)
                    events.append(
                        OracleReturnRecorded(
                            **header,
                            idx=(state.returns.cursor - 1) % state.returns.capacity,
                            return_fp=sample,
                            nonzero_samples=state.returns.nonzero_samples,
                            oracle_price_fp=gate.price_fp,
                        )
                    )
            else:
                events.append(
                    OracleDegraded(
                        **header,
                        feed_used=gate.feed.value,
                        reason_code=int(gate.reason),
                        oracle_publish_time=gate.publish_time,
                    )
                )
            events.insert(
                0,
                OraclePriceUpdated(
                    **header,
                    feed_used=gate.feed.value,
                    oracle_price_fp=state.oracle.price_fp,
                    oracle_ema_price_fp=state.oracle.ema_price_fp,
                    oracle_conf_fp=state.oracle.conf_fp,
                    oracle_publish_time=state.oracle.publish_time,
                    oracle_ok=state.oracle.ok,
                    oracle_degraded=state.oracle.degraded,
                ),
            )
            get_instrumentation().counter(
                "oracle_updates_total",
                attrs={"accepted": str(gate.accepted).lower(), "reason": gate.reason.name},
            )
            return OracleUpdateResult(gate=gate, return_fp=sample, events=tuple(events))

    def update_implied_vol(self, caller: str, implied_vol_bps: int) -> None:
        with self._transaction("update_implied_vol") as events:
            self._require_not_paused()
            self._require_keeper(caller)
            self.state.vol.set_implied(implied_vol_bps)
            self.state.count_keeper_update(caller)
            events.append(ImpliedVolUpdated(**self._header(self.clock.tick()), implied_vol_bps=implied_vol_bps))

    def update_carry_inputs(
        self,
        caller: str,
        *,
        funding_bps_per_day: int,
        borrow_bps_per_day: int,
        staking_bps_per_day: int,
    ) -> int:
        with self._transaction("update_carry_inputs") as events:
            self._require_not_paused()
            self._require_keeper(caller)
            exposure = self.state.exposure
            exposure.set_carry_inputs(
                funding_bps_per_day=funding_bps_per_day,
                borrow_bps_per_day=borrow_bps_per_day,
                staking_bps_per_day=staking_bps_per_day,
            )
            carry = exposure.expected_carry_bps()
            self.state.count_keeper_update(caller)
            events.append(
                CarryInputsUpdated(
                    **self._header(self.clock.tick()),
                    funding_bps_per_day=funding_bps_per_day,
                    borrow_bps_per_day=borrow_bps_per_day,
                    staking_bps_per_day=staking_bps_per_day,
                    expected_carry_bps=carry,
                )
            )
            return carry

    def record_staking_accrual(self, caller: str, amount_usd: int) -> int:
        with self._transaction("record_staking_accrual") as events:
            self._require_not_paused()
            self._require_keeper(caller)
            exposure = self.state.exposure
            exposure.accrue_staking(amount_usd)
            self.state.count_keeper_update(caller)
            events.append(
                StakingAccrued(
                    **self._header(self.clock.tick()),
                    amount_usd=amount_usd,
                    staking_accrued_usd=exposure.staking_accrued_usd,
                )
            )
            return exposure.staking_accrued_usd

    def run_policy_update(self, caller: str) -> PolicyUpdateResult:
        with self._transaction("run_policy_update") as events:
            self._require_not_paused()
            self._require_keeper(caller)
            result = policy_ops.run_policy_update(self.state, now=self.clock.tick())
            events.extend(result.events)
            get_instrumentation().counter(
                "policy_updates_total", attrs={"frozen": str(result.frozen).lower()}
            )
            return result

    def confirm_hedge(
        self,
        caller: str,
        *,
        request_id: int,
        new_notional_usd: int,
        fill_price_fp: int,
    ) -> FillRecord:
        with self._transaction("confirm_hedge") as events, with_hedge_request_context(request_id):
            self._require_not_paused()
            self._require_keeper(caller)
            fill = hedge_ops.confirm_hedge(
                self.state,
                request_id=request_id,
                new_notional_usd=new_notional_usd,
                fill_price_fp=fill_price_fp,
                now=self.clock.tick(),
            )
            events.append(fill.event)
            self.state.count_keeper_update(caller)
            get_instrumentation().histogram("hedge_fill_slippage_bps", fill.slippage_bps)
            return fill

    # Depositor and permissionless operations

    def deposit_and_stake(self, amount: int) -> int:
        with self._transaction("deposit_and_stake") as events:
            self._require_not_paused()
            exposure = self.state.exposure
            exposure.stake(amount, max_staked_units=self.state.params.max_staked_units)
            exposure.enforce_reserve_ratio(self.state.params.min_reserve_bps)
            events.append(
                StakeAllocated(
                    **self._header(self.clock.tick()),
                    amount=amount,
                    new_staked_units=exposure.staked_units,
                    reserve_units=exposure.reserve_units,
                )
            )
            return exposure.staked_units

    def deposit_reserve(self, amount: int) -> int:
        with self._transaction("deposit_reserve") as events:
            self._require_not_paused()
            exposure = self.state.exposure
            exposure.add_reserve(amount)
            exposure.enforce_reserve_ratio(self.state.params.min_reserve_bps)
            events.append(
                ReserveUpdated(
                    **self._header(self.clock.tick()),
                    reserve_units=exposure.reserve_units,
                    min_reserve_bps=self.state.params.min_reserve_bps,
                )
            )
            return exposure.reserve_units

    def request_hedge(self) -> HedgeIntent:
        """Permissionless hedge request.

        An unconfirmed request older than the confirm delay is expired first and
        that expiry is kept even when the new request is then rejected.
        """
        with self._transaction("expire_stale_request") as events:
            self._require_not_paused()
            missed = hedge_ops.expire_stale_request(self.state, now=self.clock.tick())
            if missed is not None:
                events.append(missed)
                get_instrumentation().counter("hedge_confirm_missed_total")

        with self._transaction("request_hedge") as events:
            intent = hedge_ops.request_hedge(self.state, now=self.clock.tick())
            events.append(intent.context)
            get_instrumentation().counter(
                "hedge_requests_total", attrs={"reason_code": str(intent.reason_code)}
            )
            return intent

    # Authority operations

    def _reconfigure(
        self, caller: str, section: str, events: list[Event], **changes: Any
    ) -> EngineParams:
        self._require_role(caller, Role.AUTHORITY)
        updated, diff = with_changes(self.state.params, **changes)
        self.state.apply_params(updated)
        events.append(
            ConfigUpdated(
                **self._header(self.clock.tick()),
                section=section,
                config_version=self.state.config_version,
                config_hash=self.state.config_hash,
                changes=diff,
            )
        )
        return updated

    def set_policy_bounds(
        self,
        caller: str,
        *,
        min_band_bps: int,
        max_band_bps: int,
        min_interval_ticks: int,
        max_interval_ticks: int,
    ) -> EngineParams:
        changes = {
            "min_band_bps": min_band_bps,
            "max_band_bps": max_band_bps,
            "min_interval_ticks": min_interval_ticks,
            "max_interval_ticks": max_interval_ticks,
        }
        with self._transaction("set_policy_bounds") as events:
            updated = self._reconfigure(caller, "policy_bounds", events, **changes)
            policy_ops.remap_to_bounds(self.state)
            return updated

    def set_policy_stability(
        self,
        caller: str,
        *,
        policy_update_min_ticks: int,
        max_policy_slew_bps: int,
        hysteresis_bps: int,
        extreme_drift_bps: int,
    ) -> EngineParams:
        changes = {
            "policy_update_min_ticks": policy_update_min_ticks,
            "max_policy_slew_bps": max_policy_slew_bps,
            "hysteresis_bps": hysteresis_bps,
            "extreme_drift_bps": extreme_drift_bps,
        }
        with self._transaction("set_policy_stability") as events:
            updated = self._reconfigure(caller, "policy_stability", events, **changes)
            return updated

    def set_vol_model(
        self,
        caller: str,
        *,
        vol_mode: VolMode | str,
        ewma_alpha_bps: int,
        min_samples: int,
        min_return_spacing_ticks: int,
    ) -> EngineParams:
        with self._transaction("set_vol_model") as events:
            try:
                mode = VolMode(vol_mode)
            except ValueError as exc:
                raise InvalidParams("unknown vol mode", vol_mode=vol_mode) from exc
            changes = {
                "vol_mode": mode,
                "ewma_alpha_bps": ewma_alpha_bps,
                "min_samples": min_samples,
                "min_return_spacing_ticks": min_return_spacing_ticks,
            }
            updated = self._reconfigure(caller, "vol_model", events, **changes)
            return updated

    def set_oracle_config(
        self,
        caller: str,
        *,
        feed_choice: str,
        max_price_age_seconds: int,
        max_confidence_bps: int,
        max_price_jump_bps: int,
    ) -> EngineParams:
        with self._transaction("set_oracle_config") as events:
            try:
                choice = FeedChoice(feed_choice)
            except ValueError as exc:
                raise InvalidParams("unknown feed choice", feed_choice=feed_choice) from exc
            changes = {
                "oracle_feed_choice": choice,
                "max_price_age_seconds": max_price_age_seconds,
                "max_confidence_bps": max_confidence_bps,
                "max_price_jump_bps": max_price_jump_bps,
            }
            updated = self._reconfigure(caller, "oracle", events, **changes)
            return updated

    def set_hedge_sizing(self, caller: str, *, target_delta_bps: int, beta_fp: int) -> EngineParams:
        changes = {"target_delta_bps": target_delta_bps, "beta_fp": beta_fp}
        with self._transaction("set_hedge_sizing") as events:
            updated = self._reconfigure(caller, "hedge_sizing", events, **changes)
            return updated

    def set_risk_caps(
        self,
        caller: str,
        *,
        max_staked_units: int,
        max_abs_hedge_notional_usd: int,
        max_hedge_per_unit_usd_fp: int,
        min_reserve_bps: int,
    ) -> EngineParams:
        """Tighten or loosen caps; the current exposure must satisfy the new caps."""
        changes = {
            "max_staked_units": max_staked_units,
            "max_abs_hedge_notional_usd": max_abs_hedge_notional_usd,
            "max_hedge_per_unit_usd_fp": max_hedge_per_unit_usd_fp,
            "min_reserve_bps": min_reserve_bps,
        }
        with self._transaction("set_risk_caps") as events:
            updated = self._reconfigure(caller, "risk_caps", events, **changes)
            exposure = self.state.exposure
            if exposure.staked_units > updated.max_staked_units:
                raise CapExceeded(
                    staked_units=exposure.staked_units, max_staked_units=updated.max_staked_units
                )
            hedge_ops.enforce_hedge_guardrails(self.state, self.state.hedge.hedge_notional_usd)
            exposure.enforce_reserve_ratio(updated.min_reserve_bps)
            return updated

    def set_confirm_config(self, caller: str, *, max_confirm_delay_ticks: int) -> EngineParams:
        changes = {"max_confirm_delay_ticks": max_confirm_delay_ticks}
        with self._transaction("set_confirm_config") as events:
            updated = self._reconfigure(caller, "confirm", events, **changes)
            return updated

    def set_keeper_controls(self, caller: str, *, max_updates_per_epoch: int) -> EngineParams:
        changes = {"max_updates_per_epoch": max_updates_per_epoch}
        with self._transaction("set_keeper_controls") as events:
            updated = self._reconfigure(caller, "keeper_controls", events, **changes)
            return updated

    def set_paused(self, caller: str, paused: bool) -> None:
        with self._transaction("set_paused") as events:
            self._require_role(caller, Role.AUTHORITY)
            self.state.paused = paused
            events.append(PausedSet(**self._header(self.clock.tick()), paused=paused))
