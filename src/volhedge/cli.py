from __future__ import annotations

import argparse
import json
import logging
import sys
from collections.abc import Callable, Iterable, Mapping
from pathlib import Path
from typing import Any, TextIO

from volhedge.adapters.hermes import HermesQuoteSource
from volhedge.adapters.quote_source import StaticQuoteSource
from volhedge.config import Settings
from volhedge.domain.errors import EngineError
from volhedge.domain.events import Event
from volhedge.domain.oracle import FeedId, Quote
from volhedge.domain.position import EngineParams
from volhedge.logging_utils import setup_logging
from volhedge.observability import configure_instrumentation
from volhedge.persistence.state_store import (
    InMemoryPositionStateRepository,
    SqlitePositionStateRepository,
)
from volhedge.services.position_engine import (
    ManualClock,
    PositionEngine,
    StaticAuthorizer,
    SystemClock,
)

logger = logging.getLogger(__name__)

REPLAY_KEEPER = "replay-keeper"
REPLAY_AUTHORITY = "replay-authority"


def main(argv: list[str] | None = None) -> int:
    parser = argparse.ArgumentParser(
        prog="volhedge",
        epilog="All engine parameters are read from the environment (see Settings).",
    )
    parser.add_argument("--env-file", default=None, help="Optional dotenv file for Settings")
    subparsers = parser.add_subparsers(dest="command", required=True)

    subparsers.add_parser("show-config", help="Print effective engine parameters and config hash")

    replay_parser = subparsers.add_parser(
        "replay", help="Drive a fresh position through a JSONL script of operations"
    )
    replay_parser.add_argument("--events", required=True, help="Path to the JSONL script")
    replay_parser.add_argument("--db", default=None, help="Persist the replayed position here")

    snapshot_parser = subparsers.add_parser("snapshot", help="Print a stored position as JSON")
    snapshot_parser.add_argument("--db", default=None, help="State DB path (default STATE_DB_PATH)")
    snapshot_parser.add_argument("--position-id", default=None)

    keeper_parser = subparsers.add_parser(
        "keeper-cycle", help="Pull a Hermes quote and attempt a policy update and hedge request"
    )
    keeper_parser.add_argument("--db", default=None, help="State DB path (default STATE_DB_PATH)")
    keeper_parser.add_argument(
        "--skip-hedge", action="store_true", help="Do not attempt a hedge request"
    )

    args = parser.parse_args(argv)

    settings = _load_settings(args.env_file)
    setup_logging(settings.log_level)
    configure_instrumentation(
        enabled=settings.observability_enabled,
        metrics_exporter=settings.observability_metrics_exporter,
        otlp_endpoint=settings.otlp_endpoint,
        prometheus_port=settings.prometheus_port,
    )

    try:
        if args.command == "show-config":
            return run_show_config(settings)
        if args.command == "replay":
            return run_replay(settings, events_path=args.events, db_path=args.db)
        if args.command == "snapshot":
            return run_snapshot(
                settings,
                db_path=args.db or settings.state_db_path,
                position_id=args.position_id or settings.position_id,
            )
        if args.command == "keeper-cycle":
            return run_keeper_cycle(
                settings, db_path=args.db or settings.state_db_path, skip_hedge=args.skip_hedge
            )
    except EngineError as exc:
        print(json.dumps({"error": exc.as_payload()}, sort_keys=True))
        return 2
    except ValueError as exc:
        print(str(exc))
        return 2
    return 1


def _load_settings(env_file: str | None) -> Settings:
    if env_file in (None, ""):
        return Settings()
    return Settings(_env_file=env_file)


def _print_json(payload: Mapping[str, Any], out: TextIO | None = None) -> None:
    print(json.dumps(payload, sort_keys=True, default=str), file=out or sys.stdout)


def run_show_config(settings: Settings) -> int:
    params = settings.engine_params()
    _print_json(
        {
            "position_id": settings.position_id,
            "params": params.as_payload(),
            "config_hash": params.config_hash(),
        }
    )
    return 0


def run_snapshot(settings: Settings, *, db_path: str, position_id: str) -> int:
    if not Path(db_path).exists():
        print(f"state db not found: {db_path}")
        return 2
    repository = SqlitePositionStateRepository(db_path)
    state = repository.load(position_id)
    if state is None:
        print(f"position not found: {position_id}")
        return 2
    _print_json(state.to_payload())
    return 0


def run_keeper_cycle(settings: Settings, *, db_path: str, skip_hedge: bool) -> int:
    feed_ids = settings.feed_ids()
    if not feed_ids:
        print("PRIMARY_FEED_ID or SECONDARY_FEED_ID must be set")
        return 2
    if not settings.keepers:
        print("KEEPERS must name at least one keeper")
        return 2
    keeper = settings.keepers[0]
    repository = SqlitePositionStateRepository(db_path)
    with HermesQuoteSource(
        feed_ids,
        base_url=settings.hermes_base_url,
        timeout=settings.hermes_timeout_seconds,
    ) as quote_source:
        engine = PositionEngine.open(
            settings.position_id,
            settings.engine_params(),
            quote_source=quote_source,
            clock=SystemClock(),
            authorizer=StaticAuthorizer(authority=settings.authority, keepers=set(settings.keepers)),
            repository=repository,
            listeners=[_print_event],
        )
        engine.update_oracle_price(keeper)
        _attempt(lambda: engine.run_policy_update(keeper), "run_policy_update")
        if not skip_hedge:
            _attempt(engine.request_hedge, "request_hedge")
    return 0


def _print_event(event: Event) -> None:
    _print_json(event.as_payload())


def _attempt(fn: Callable[[], object], operation: str) -> bool:
    """Run an engine call whose retryable rejection is an expected outcome of a keeper cycle."""
    try:
        fn()
    except EngineError as exc:
        if not exc.retryable:
            raise
        _print_json({"operation": operation, "skipped": exc.as_payload()})
        return False
    return True


def _quote_from_step(step: Mapping[str, Any]) -> Quote:
    price = int(step["price_fp"])
    return Quote(
        feed=FeedId(str(step.get("feed", FeedId.PRIMARY.value)).upper()),
        price_fp=price,
        ema_price_fp=int(step.get("ema_price_fp", price)),
        conf_fp=int(step.get("conf_fp", 0)),
        publish_time=int(step["publish_time"]),
    )


def _read_steps(path: str) -> Iterable[tuple[int, dict[str, Any]]]:
    with open(path, encoding="utf-8") as handle:
        for line_no, line in enumerate(handle, start=1):
            raw = line.strip()
            if not raw or raw.startswith("#"):
                continue
            step = json.loads(raw)
            if not isinstance(step, dict) or "op" not in step:
                raise ValueError(f"line {line_no}: each step must be an object with an 'op'")
            yield line_no, step


def run_replay(
    settings: Settings,
    *,
    events_path: str,
    db_path: str | None = None,
    params: EngineParams | None = None,
) -> int:
    """Replay a scripted sequence of quotes and operations against a fresh position.

    Each emitted observable is printed as one JSON line; a rejected step prints
    its error payload and the replay continues with the next step.
    """
    quotes = StaticQuoteSource()
    clock = ManualClock()
    repository = (
        SqlitePositionStateRepository(db_path) if db_path else InMemoryPositionStateRepository()
    )
    engine = PositionEngine.open(
        settings.position_id,
        params or settings.engine_params(),
        quote_source=quotes,
        clock=clock,
        authorizer=StaticAuthorizer(authority=REPLAY_AUTHORITY, keepers={REPLAY_KEEPER}),
        repository=repository,
        listeners=[_print_event],
    )
    last_request_id = 0

    for line_no, step in _read_steps(events_path):
        op = step["op"]
        try:
            match op:
                case "quote":
                    quotes.set_quote(_quote_from_step(step))
                case "drop_quote":
                    quotes.clear(FeedId(str(step["feed"]).upper()))
                case "advance":
                    clock.advance(ticks=int(step.get("ticks", 0)), seconds=int(step.get("seconds", 0)))
                case "update_oracle":
                    engine.update_oracle_price(REPLAY_KEEPER)
                case "implied_vol":
                    engine.update_implied_vol(REPLAY_KEEPER, int(step["implied_vol_bps"]))
                case "carry":
                    engine.update_carry_inputs(
                        REPLAY_KEEPER,
                        funding_bps_per_day=int(step.get("funding_bps_per_day", 0)),
                        borrow_bps_per_day=int(step.get("borrow_bps_per_day", 0)),
                        staking_bps_per_day=int(step.get("staking_bps_per_day", 0)),
                    )
                case "accrue":
                    engine.record_staking_accrual(REPLAY_KEEPER, int(step["amount_usd"]))
                case "deposit":
                    engine.deposit_and_stake(int(step["amount"]))
                case "reserve":
                    engine.deposit_reserve(int(step["amount"]))
                case "policy":
                    engine.run_policy_update(REPLAY_KEEPER)
                case "request":
                    last_request_id = engine.request_hedge().request_id
                case "confirm":
                    request_id = step.get("request_id", "last")
                    engine.confirm_hedge(
                        REPLAY_KEEPER,
                        request_id=last_request_id if request_id == "last" else int(request_id),
                        new_notional_usd=int(step["new_notional_usd"]),
                        fill_price_fp=int(step["fill_price_fp"]),
                    )
                case "pause":
                    engine.set_paused(REPLAY_AUTHORITY, bool(step.get("paused", True)))
                case "keeper_controls":
                    engine.set_keeper_controls(
                        REPLAY_AUTHORITY, max_updates_per_epoch=int(step["max_updates_per_epoch"])
                    )
                case _:
                    raise ValueError(f"line {line_no}: unknown op {op!r}")
        except EngineError as exc:
            _print_json({"line": line_no, "op": op, "error": exc.as_payload()})
    return 0


if __name__ == "__main__":
    raise SystemExit(main())
