"""
SQLite-backed state and version stores.

- A commit is a single UPSERT: state id and entered-at land in the same row
  write, so a torn commit is impossible.
- Compare-and-set commits use a conditional UPDATE and check the row count.
- Activating a version runs under ``BEGIN IMMEDIATE`` so that the
  "deactivate all, activate one" pair is one transaction.
"""

from __future__ import annotations

import json
import logging
import sqlite3
import threading
from contextlib import contextmanager
from datetime import datetime
from pathlib import Path
from typing import Dict, Iterator, List, Optional, Union

from lifecycle_engine.fsm.models import FSMTransition, FSMVersion, UserFSMState
from lifecycle_engine.stores.errors import StateCommitConflictError, VersionNotFoundError

logger = logging.getLogger(__name__)


SCHEMA = """
CREATE TABLE IF NOT EXISTS fsm_versions (
    id TEXT PRIMARY KEY,
    name TEXT NOT NULL DEFAULT '',
    is_active INTEGER NOT NULL DEFAULT 0,
    graph TEXT NOT NULL
);
CREATE TABLE IF NOT EXISTS user_fsm_state (
    user_id TEXT NOT NULL,
    version_id TEXT NOT NULL,
    state_id TEXT NOT NULL,
    entered_at TEXT NOT NULL,
    PRIMARY KEY (user_id, version_id)
);
CREATE INDEX IF NOT EXISTS idx_user_fsm_state_version
    ON user_fsm_state (version_id, state_id);
"""


class SQLiteDatabase:
    """One shared connection guarded by a lock (autocommit mode, explicit transactions)."""

    def __init__(self, db_path: Union[str, Path] = "lifecycle.db", busy_timeout_ms: int = 5000):
        self.db_path = str(db_path)
        self._lock = threading.RLock()
        self._conn = sqlite3.connect(
            self.db_path,
            check_same_thread=False,
            isolation_level=None,
            timeout=busy_timeout_ms / 1000.0,
        )
        self._conn.row_factory = sqlite3.Row
        if self.db_path != ":memory:":
            self._conn.execute("PRAGMA journal_mode=WAL")
        self._conn.execute(f"PRAGMA busy_timeout={int(busy_timeout_ms)}")
        self._conn.executescript(SCHEMA)

    def execute(self, query: str, params: tuple = ()) -> sqlite3.Cursor:
        with self._lock:
            return self._conn.execute(query, params)

    def fetchone(self, query: str, params: tuple = ()) -> Optional[sqlite3.Row]:
        with self._lock:
            return self._conn.execute(query, params).fetchone()

    def fetchall(self, query: str, params: tuple = ()) -> List[sqlite3.Row]:
        with self._lock:
            return self._conn.execute(query, params).fetchall()

    @contextmanager
    def transaction(self) -> Iterator[sqlite3.Connection]:
        """BEGIN IMMEDIATE ... COMMIT, rolled back on error."""
        with self._lock:
            self._conn.execute("BEGIN IMMEDIATE")
            try:
                yield self._conn
            except Exception:
                self._conn.execute("ROLLBACK")
                raise
            self._conn.execute("COMMIT")

    def close(self) -> None:
        with self._lock:
            self._conn.close()


def _row_to_state(row: sqlite3.Row) -> UserFSMState:
    return UserFSMState(
        user_id=row["user_id"],
        version_id=row["version_id"],
        state_id=row["state_id"],
        entered_at=datetime.fromisoformat(row["entered_at"]),
    )


class SQLiteStateStore:
    """UserFSMState rows in ``user_fsm_state``."""

    def __init__(self, db: SQLiteDatabase):
        self.db = db

    def get_current_state(self, user_id: str, version_id: str) -> Optional[UserFSMState]:
        row = self.db.fetchone(
            "SELECT * FROM user_fsm_state WHERE user_id = ? AND version_id = ?",
            (str(user_id), str(version_id)),
        )
        return _row_to_state(row) if row else None

    def commit_transition(
        self,
        user_id: str,
        version_id: str,
        new_state_id: str,
        now: datetime,
        expected_state_id: Optional[str] = None,
    ) -> UserFSMState:
        user_id, version_id, new_state_id = str(user_id), str(version_id), str(new_state_id)
        entered_at = now.isoformat()

        if expected_state_id is None:
            self.db.execute(
                """
                INSERT INTO user_fsm_state (user_id, version_id, state_id, entered_at)
                VALUES (?, ?, ?, ?)
                ON CONFLICT (user_id, version_id)
                DO UPDATE SET state_id = excluded.state_id, entered_at = excluded.entered_at
                """,
                (user_id, version_id, new_state_id, entered_at),
            )
        else:
            cursor = self.db.execute(
                """
                UPDATE user_fsm_state SET state_id = ?, entered_at = ?
                WHERE user_id = ? AND version_id = ? AND state_id = ?
                """,
                (new_state_id, entered_at, user_id, version_id, str(expected_state_id)),
            )
            if cursor.rowcount != 1:
                current = self.get_current_state(user_id, version_id)
                raise StateCommitConflictError(
                    user_id, version_id, expected_state_id,
                    current.state_id if current else None,
                )

        return UserFSMState(user_id, version_id, new_state_id, now)

    def count_by_state(self, version_id: str) -> Dict[str, int]:
        rows = self.db.fetchall(
            "SELECT state_id, COUNT(*) AS n FROM user_fsm_state "
            "WHERE version_id = ? GROUP BY state_id",
            (str(version_id),),
        )
        return {row["state_id"]: row["n"] for row in rows}

    def users_in_state(self, version_id: str, state_id: str) -> List[str]:
        rows = self.db.fetchall(
            "SELECT user_id FROM user_fsm_state WHERE version_id = ? AND state_id = ? "
            "ORDER BY user_id",
            (str(version_id), str(state_id)),
        )
        return [row["user_id"] for row in rows]


class SQLiteVersionStore:
    """FSM versions in ``fsm_versions``; the graph is stored as JSON."""

    def __init__(self, db: SQLiteDatabase):
        self.db = db

    def save_version(self, version: FSMVersion) -> FSMVersion:
        graph = version.to_dict()
        self.db.execute(
            """
            INSERT INTO fsm_versions (id, name, is_active, graph) VALUES (?, ?, ?, ?)
            ON CONFLICT (id) DO UPDATE SET name = excluded.name, graph = excluded.graph
            """,
            (version.id, version.name, int(version.is_active), json.dumps(graph)),
        )
        return self.get_version(version.id)

    def _row_to_version(self, row: sqlite3.Row) -> FSMVersion:
        graph = json.loads(row["graph"])
        graph["isActive"] = bool(row["is_active"])
        return FSMVersion.from_dict(graph)

    def get_version(self, version_id: str) -> FSMVersion:
        row = self.db.fetchone("SELECT * FROM fsm_versions WHERE id = ?", (str(version_id),))
        if row is None:
            raise VersionNotFoundError(str(version_id))
        return self._row_to_version(row)

    def get_active_version(self) -> Optional[FSMVersion]:
        row = self.db.fetchone("SELECT * FROM fsm_versions WHERE is_active = 1 ORDER BY id LIMIT 1")
        return self._row_to_version(row) if row else None

    def list_versions(self) -> List[FSMVersion]:
        return [self._row_to_version(row) for row in self.db.fetchall("SELECT * FROM fsm_versions ORDER BY id")]

    def activate(self, version_id: str) -> FSMVersion:
        version_id = str(version_id)
        with self.db.transaction() as conn:
            exists = conn.execute("SELECT 1 FROM fsm_versions WHERE id = ?", (version_id,)).fetchone()
            if exists is None:
                raise VersionNotFoundError(version_id)
            conn.execute(
                "UPDATE fsm_versions SET is_active = CASE WHEN id = ? THEN 1 ELSE 0 END",
                (version_id,),
            )
        logger.info("Activated FSM version %s", version_id)
        return self.get_version(version_id)

    def list_transitions(
        self, version_id: str, from_state_id: Optional[str] = None
    ) -> List[FSMTransition]:
        version = self.get_version(version_id)
        if from_state_id is None:
            return list(version.transitions)
        return version.transitions_from(from_state_id)


__all__ = [
    "SCHEMA",
    "SQLiteDatabase",
    "SQLiteStateStore",
    "SQLiteVersionStore",
]
