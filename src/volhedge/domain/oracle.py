from __future__ import annotations

from collections.abc import Mapping
from dataclasses import dataclass
from enum import IntEnum, StrEnum

from volhedge.domain.fixed_point import BPS_DENOM, MAX_PRICE_FP, ratio_bps


class FeedId(StrEnum):
    PRIMARY = "PRIMARY"
    SECONDARY = "SECONDARY"


class FeedChoice(StrEnum):
    PRIMARY = "PRIMARY"
    SECONDARY = "SECONDARY"
    PREFER_PRIMARY = "PREFER_PRIMARY"


class OracleReason(IntEnum):
    OK = 0
    STALE = 1
    CONFIDENCE = 2
    JUMP = 3
    INVALID_PRICE = 10
    MISSING_PUBLISH_TIME = 11
    FUTURE_PUBLISH_TIME = 12
    FEED_UNAVAILABLE = 13


@dataclass(frozen=True)
class Quote:
    feed: FeedId
    price_fp: int
    ema_price_fp: int
    conf_fp: int
    publish_time: int


@dataclass(frozen=True)
class OracleConfig:
    feed_choice: FeedChoice
    max_age_seconds: int
    max_confidence_bps: int
    max_jump_bps: int


@dataclass(frozen=True)
class GateResult:
    feed: FeedId
    price_fp: int
    ema_price_fp: int
    conf_fp: int
    publish_time: int
    accepted: bool
    reason: OracleReason


@dataclass
class OracleState:
    price_fp: int = 0
    ema_price_fp: int = 0
    conf_fp: int = 0
    publish_time: int = 0
    ok: bool = False
    degraded: bool = False
    last_feed: FeedId | None = None
    last_reason: OracleReason = OracleReason.OK

    @property
    def spot_valid(self) -> bool:
        return self.ok and self.price_fp > 0

    def reference_price_fp(self) -> int:
        return self.price_fp if self.spot_valid else self.ema_price_fp

    def apply(self, result: GateResult) -> None:
        self.ok = result.accepted
        self.last_feed = result.feed
        self.last_reason = result.reason
        if not result.accepted:
            self.degraded = True
            return
        self.degraded = False
        self.price_fp = result.price_fp
        self.ema_price_fp = result.ema_price_fp
        self.conf_fp = result.conf_fp
        self.publish_time = result.publish_time


def _reject(quote: Quote, reason: OracleReason, *, zero_prices: bool = False) -> GateResult:
    return GateResult(
        feed=quote.feed,
        price_fp=0 if zero_prices else quote.price_fp,
        ema_price_fp=0 if zero_prices else quote.ema_price_fp,
        conf_fp=0 if zero_prices else quote.conf_fp,
        publish_time=quote.publish_time,
        accepted=False,
        reason=reason,
    )


def _unavailable(feed: FeedId) -> GateResult:
    return GateResult(
        feed=feed,
        price_fp=0,
        ema_price_fp=0,
        conf_fp=0,
        publish_time=0,
        accepted=False,
        reason=OracleReason.FEED_UNAVAILABLE,
    )


def gate_quote(quote: Quote, *, now: int, last_price_fp: int, config: OracleConfig) -> GateResult:
    if not (0 < quote.price_fp <= MAX_PRICE_FP and 0 < quote.ema_price_fp <= MAX_PRICE_FP):
        return _reject(quote, OracleReason.INVALID_PRICE, zero_prices=True)

    if quote.publish_time <= 0:
        return _reject(quote, OracleReason.MISSING_PUBLISH_TIME)
    if max(now, 0) < quote.publish_time:
        return _reject(quote, OracleReason.FUTURE_PUBLISH_TIME)
    if now - quote.publish_time > config.max_age_seconds:
        return _reject(quote, OracleReason.STALE)

    max_conf_fp = quote.price_fp * config.max_confidence_bps // BPS_DENOM
    if quote.conf_fp > max(max_conf_fp, 0):
        return _reject(quote, OracleReason.CONFIDENCE)

    if last_price_fp > 0:
        jump_bps = ratio_bps(quote.price_fp - last_price_fp, last_price_fp)
        if jump_bps > config.max_jump_bps:
            return _reject(quote, OracleReason.JUMP)

    return GateResult(
        feed=quote.feed,
        price_fp=quote.price_fp,
        ema_price_fp=quote.ema_price_fp,
        conf_fp=quote.conf_fp,
        publish_time=quote.publish_time,
        accepted=True,
        reason=OracleReason.OK,
    )


def _gate_candidate(
    feed: FeedId,
    candidates: Mapping[FeedId, Quote | None],
    *,
    now: int,
    last_price_fp: int,
    config: OracleConfig,
) -> GateResult:
    quote = candidates.get(feed)
    if quote is None:
        return _unavailable(feed)
    return gate_quote(quote, now=now, last_price_fp=last_price_fp, config=config)


def gate_oracle(
    candidates: Mapping[FeedId, Quote | None],
    *,
    now: int,
    last_price_fp: int,
    config: OracleConfig,
) -> GateResult:
    """Select and validate a quote according to the configured feed policy.

    ``candidates`` maps each feed to its latest quote, or ``None`` when the
    feed could not be read. ``last_price_fp`` is the last accepted spot price
    (0 when none has been accepted yet, which disables the jump check).
    """
    kwargs = {"now": now, "last_price_fp": last_price_fp, "config": config}
    match config.feed_choice:
        case FeedChoice.PRIMARY:
            return _gate_candidate(FeedId.PRIMARY, candidates, **kwargs)
        case FeedChoice.SECONDARY:
            return _gate_candidate(FeedId.SECONDARY, candidates, **kwargs)
        case FeedChoice.PREFER_PRIMARY:
            first = _gate_candidate(FeedId.PRIMARY, candidates, **kwargs)
            if first.accepted:
                return first
            second = _gate_candidate(FeedId.SECONDARY, candidates, **kwargs)
            if second.accepted:
                return second
            if first.reason != OracleReason.OK:
                return first
            return GateResult(
                feed=first.feed,
                price_fp=first.price_fp,
                ema_price_fp=first.ema_price_fp,
                conf_fp=first.conf_fp,
                publish_time=first.publish_time,
                accepted=False,
                reason=second.reason,
            )
    raise ValueError(f"Unsupported feed choice: {config.feed_choice!r}")
