from __future__ import annotations

import json
from pathlib import Path

from volhedge.cli import main
from volhedge.domain.position import EngineParams

REPLAY_SCRIPT = [
    {"op": "advance", "ticks": 10, "seconds": 100},
    {"op": "quote", "price_fp": 100_000_000, "publish_time": 100},
    {"op": "deposit", "amount": 50},
    {"op": "update_oracle"},
    {"op": "implied_vol", "implied_vol_bps": 5_000},
    {"op": "policy"},
    {"op": "request"},
    {"op": "confirm", "new_notional_usd": -5_000, "fill_price_fp": 100_000_000},
    {"op": "confirm", "new_notional_usd": -5_000, "fill_price_fp": 100_000_000},
]


def _write_script(tmp_path: Path, steps: list[dict]) -> str:
    path = tmp_path / "script.jsonl"
    lines = ["# scripted keeper session"] + [json.dumps(step) for step in steps]
    path.write_text("\n".join(lines) + "\n", encoding="utf-8")
    return str(path)


def _json_lines(output: str) -> list[dict]:
    return [json.loads(line) for line in output.splitlines() if line.strip()]


def test_show_config_prints_params_and_hash(capsys) -> None:
    assert main(["show-config"]) == 0

    payload = json.loads(capsys.readouterr().out)
    assert payload["position_id"] == "default"
    assert payload["params"]["vol_mode"] == "STDEV"
    assert payload["config_hash"] == EngineParams().config_hash()


def test_replay_prints_events_and_continues_after_rejection(tmp_path: Path, capsys) -> None:
    script = _write_script(tmp_path, REPLAY_SCRIPT)

    assert main(["replay", "--events", script]) == 0

    lines = _json_lines(capsys.readouterr().out)
    events = [line["event"] for line in lines if "event" in line]
    assert events[:2] == ["StakeAllocated", "OraclePriceUpdated"]
    assert "PolicyUpdated" in events
    assert events[-2:] == ["HedgeRequested", "HedgeConfirmed"]

    policy = next(line for line in lines if line.get("event") == "PolicyUpdated")
    assert policy["band_bps"] == 55

    errors = [line for line in lines if "error" in line]
    assert len(errors) == 1
    assert errors[0]["op"] == "confirm"
    assert errors[0]["line"] == 10
    assert errors[0]["error"]["error_code"] == "NoOutstandingRequest"


def test_replay_with_db_then_snapshot(tmp_path: Path, capsys) -> None:
    script = _write_script(tmp_path, REPLAY_SCRIPT[:4])
    db_path = str(tmp_path / "replay.sqlite")

    assert main(["replay", "--events", script, "--db", db_path]) == 0
    capsys.readouterr()
    assert main(["snapshot", "--db", db_path]) == 0

    snapshot = json.loads(capsys.readouterr().out)
    assert snapshot["position_id"] == "default"
    assert snapshot["exposure"]["staked_units"] == 50
    assert snapshot["oracle"]["price_fp"] == 100_000_000


def test_replay_unknown_op_fails(tmp_path: Path, capsys) -> None:
    script = _write_script(tmp_path, [{"op": "teleport"}])

    assert main(["replay", "--events", script]) == 2
    assert "unknown op" in capsys.readouterr().out


def test_snapshot_missing_db_fails(tmp_path: Path, capsys) -> None:
    assert main(["snapshot", "--db", str(tmp_path / "absent.sqlite")]) == 2
    assert "state db not found" in capsys.readouterr().out


def test_keeper_cycle_requires_feed_ids(capsys) -> None:
    assert main(["keeper-cycle"]) == 2
    assert "PRIMARY_FEED_ID" in capsys.readouterr().out


def test_replay_reports_rate_limited_keeper(tmp_path: Path, capsys) -> None:
    steps = [
        {"op": "keeper_controls", "max_updates_per_epoch": 1},
        {"op": "implied_vol", "implied_vol_bps": 1_000},
        {"op": "implied_vol", "implied_vol_bps": 2_000},
    ]
    script = _write_script(tmp_path, steps)

    assert main(["replay", "--events", script]) == 0

    lines = _json_lines(capsys.readouterr().out)
    errors = [line for line in lines if "error" in line]
    assert [error["error"]["error_code"] for error in errors] == ["KeeperRateLimited"]
    assert errors[0]["line"] == 4
