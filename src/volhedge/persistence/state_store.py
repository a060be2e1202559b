from __future__ import annotations

import json
import logging
import sqlite3
from collections.abc import Iterator
from contextlib import contextmanager
from datetime import UTC, datetime

from volhedge.domain.position import PositionState

logger = logging.getLogger(__name__)


def create_sqlite_connection(db_path: str) -> sqlite3.Connection:
    conn = sqlite3.connect(db_path, timeout=30.0, isolation_level=None)
    conn.row_factory = sqlite3.Row
    conn.execute("PRAGMA busy_timeout = 5000")
    conn.execute("PRAGMA journal_mode = WAL")
    return conn


def ensure_schema(conn: sqlite3.Connection) -> None:
    conn.execute(
        """
        CREATE TABLE IF NOT EXISTS position_state (
            position_id TEXT PRIMARY KEY,
            config_version INTEGER NOT NULL,
            config_hash TEXT NOT NULL,
            epoch INTEGER NOT NULL,
            payload_json TEXT NOT NULL,
            updated_at TEXT NOT NULL
        )
        """
    )


def _encode(state: PositionState) -> str:
    return json.dumps(state.to_payload(), sort_keys=True, separators=(",", ":"))


class PositionStateSession:
    """Reads and writes inside one ``BEGIN IMMEDIATE`` transaction."""

    def __init__(self, conn: sqlite3.Connection) -> None:
        self._conn = conn

    def load(self, position_id: str) -> PositionState | None:
        row = self._conn.execute(
            "SELECT payload_json FROM position_state WHERE position_id = ?", (position_id,)
        ).fetchone()
        if row is None:
            return None
        return PositionState.from_payload(json.loads(row["payload_json"]))

    def list_position_ids(self) -> list[str]:
        rows = self._conn.execute(
            "SELECT position_id FROM position_state ORDER BY position_id"
        ).fetchall()
        return [str(row["position_id"]) for row in rows]

    def save(self, state: PositionState) -> None:
        self._conn.execute(
            """
            INSERT INTO position_state(position_id, config_version, config_hash, epoch, payload_json, updated_at)
            VALUES (?, ?, ?, ?, ?, ?)
            ON CONFLICT(position_id) DO UPDATE SET
                config_version = excluded.config_version,
                config_hash = excluded.config_hash,
                epoch = excluded.epoch,
                payload_json = excluded.payload_json,
                updated_at = excluded.updated_at
            """,
            (
                state.position_id,
                state.config_version,
                state.config_hash,
                state.policy.epoch,
                _encode(state),
                datetime.now(UTC).isoformat(),
            ),
        )


class SqlitePositionStateRepository:
    def __init__(self, db_path: str) -> None:
        self.db_path = db_path
        conn = create_sqlite_connection(db_path)
        try:
            ensure_schema(conn)
        finally:
            conn.close()

    @contextmanager
    def transaction(self, *, read_only: bool = False) -> Iterator[PositionStateSession]:
        conn = create_sqlite_connection(self.db_path)
        conn.execute("BEGIN" if read_only else "BEGIN IMMEDIATE")
        try:
            yield PositionStateSession(conn)
        except Exception:
            conn.execute("ROLLBACK")
            raise
        else:
            conn.execute("COMMIT")
        finally:
            conn.close()

    def load(self, position_id: str) -> PositionState | None:
        with self.transaction(read_only=True) as session:
            return session.load(position_id)

    def save(self, state: PositionState) -> None:
        with self.transaction() as session:
            session.save(state)
        logger.debug(
            "position_state_saved",
            extra={
                "extra": {
                    "position_id": state.position_id,
                    "epoch": state.policy.epoch,
                    "config_version": state.config_version,
                }
            },
        )

    def list_position_ids(self) -> list[str]:
        with self.transaction(read_only=True) as session:
            return session.list_position_ids()


class InMemoryPositionStateRepository:
    """Keeps serialized snapshots so callers never share state objects with the store."""

    def __init__(self) -> None:
        self._rows: dict[str, str] = {}

    @contextmanager
    def transaction(self, *, read_only: bool = False) -> Iterator[InMemoryPositionStateRepository]:
        backup = dict(self._rows)
        try:
            yield self
        except Exception:
            self._rows = backup
            raise

    def load(self, position_id: str) -> PositionState | None:
        raw = self._rows.get(position_id)
        if raw is None:
            return None
        return PositionState.from_payload(json.loads(raw))

    def save(self, state: PositionState) -> None:
        self._rows[state.position_id] = _encode(state)

    def list_position_ids(self) -> list[str]:
        return sorted(self._rows)
