"""SQLite wash log and bay snapshot storage.

One ``wash_logs`` row per wash attempt, opened when a bay starts washing
and closed when it reaches a terminal state. One ``bay_state`` row per bay,
upserted on every status publish so downstream consumers can recover after
a restart.

Storage failures never reach the protocol path: every write catches
sqlite3.Error, logs it and reports failure through its return value.
"""

import logging
import sqlite3
import time
from datetime import datetime
from pathlib import Path
from typing import Protocol

from .bay_model import iso_utc

logger = logging.getLogger(__name__)


class LogGateway(Protocol):
    """What the bay state machines need from persistence."""

    def create_log(self, bay_id: str, course: str | None, session_id: str | None,
                   request_id: str | None, start_time: datetime) -> int | None:
        ...

    def close_log(self, log_id: int, final_state: str, error_code: str | None,
                  end_time: datetime) -> bool:
        ...

    def upsert_snapshot(self, bay_id: str, session_id: str | None, request_id: str | None,
                        state: str, progress: int, course: str | None,
                        error_code: str | None, updated_at: datetime) -> bool:
        ...


class WashLogStore:
    def __init__(self, db_path: str):
        self._db_path = db_path
        self._write_errors = 0
        self._total_writes = 0
        self._last_error: str | None = None
        self._last_error_time: float | None = None

        if db_path != ":memory:":
            Path(db_path).parent.mkdir(parents=True, exist_ok=True)
        self._conn = sqlite3.connect(db_path)
        self._conn.row_factory = sqlite3.Row
        if db_path != ":memory:":
            self._conn.execute("PRAGMA journal_mode=WAL")
        self._create_tables()

    def _create_tables(self):
        self._conn.executescript("""
            CREATE TABLE IF NOT EXISTS wash_logs (
                id INTEGER PRIMARY KEY AUTOINCREMENT,
                bay_id TEXT NOT NULL,
                course TEXT,
                status TEXT NOT NULL,
                start_time TEXT NOT NULL,
                end_time TEXT,
                created_at TEXT DEFAULT CURRENT_TIMESTAMP,
                error_code TEXT,
                session_id TEXT,
                request_id TEXT
            );
            CREATE INDEX IF NOT EXISTS idx_wash_logs_bay ON wash_logs(bay_id, start_time);

            CREATE TABLE IF NOT EXISTS bay_state (
                bay_id TEXT PRIMARY KEY,
                session_id TEXT,
                request_id TEXT,
                state TEXT NOT NULL,
                progress INTEGER NOT NULL,
                course TEXT,
                error_code TEXT,
                updated_at TEXT NOT NULL
            );
        """)
        self._conn.commit()

    def _record_error(self, action: str, exc: Exception):
        self._write_errors += 1
        self._last_error = f"{action}: {exc}"
        self._last_error_time = time.time()
        if self._write_errors <= 3 or self._write_errors % 100 == 0:
            logger.error("Wash log %s failed (error %d): %s", action, self._write_errors, exc)

    # ------------------------------------------------------------------
    # Writes
    # ------------------------------------------------------------------

    def create_log(self, bay_id, course, session_id, request_id, start_time) -> int | None:
        """Open a wash log entry. Returns its id, or None if the write failed."""
        self._total_writes += 1
        try:
            cur = self._conn.execute(
                "INSERT INTO wash_logs (bay_id, course, status, start_time, session_id, request_id) "
                "VALUES (?, ?, ?, ?, ?, ?)",
                (bay_id, course, "WASHING", iso_utc(start_time), session_id, request_id),
            )
            self._conn.commit()
        except sqlite3.Error as e:
            self._record_error("create", e)
            return None
        return cur.lastrowid

    def close_log(self, log_id, final_state, error_code, end_time) -> bool:
        """Close an open entry. Closing an already-closed entry is a no-op."""
        self._total_writes += 1
        try:
            cur = self._conn.execute(
                "UPDATE wash_logs SET status = ?, error_code = ?, end_time = ? "
                "WHERE id = ? AND end_time IS NULL",
                (final_state, error_code, iso_utc(end_time), log_id),
            )
            self._conn.commit()
        except sqlite3.Error as e:
            self._record_error("close", e)
            return False
        if cur.rowcount == 0:
            logger.warning("Wash log %s was not open, nothing closed", log_id)
            return False
        return True

    def upsert_snapshot(self, bay_id, session_id, request_id, state, progress,
                        course, error_code, updated_at) -> bool:
        self._total_writes += 1
        try:
            self._conn.execute(
                "INSERT INTO bay_state "
                "(bay_id, session_id, request_id, state, progress, course, error_code, updated_at) "
                "VALUES (?, ?, ?, ?, ?, ?, ?, ?) "
                "ON CONFLICT(bay_id) DO UPDATE SET "
                "session_id = excluded.session_id, request_id = excluded.request_id, "
                "state = excluded.state, progress = excluded.progress, "
                "course = excluded.course, error_code = excluded.error_code, "
                "updated_at = excluded.updated_at",
                (bay_id, session_id, request_id, state, progress, course,
                 error_code, iso_utc(updated_at)),
            )
            self._conn.commit()
        except sqlite3.Error as e:
            self._record_error("snapshot", e)
            return False
        return True

    def close_orphaned_logs(self, final_state: str, error_code: str,
                            end_time: datetime) -> int:
        """Close entries a previous process left open. Returns how many."""
        try:
            cur = self._conn.execute(
                "UPDATE wash_logs SET status = ?, error_code = ?, end_time = ? "
                "WHERE end_time IS NULL",
                (final_state, error_code, iso_utc(end_time)),
            )
            self._conn.commit()
        except sqlite3.Error as e:
            self._record_error("orphan cleanup", e)
            return 0
        if cur.rowcount:
            logger.warning("Closed %d wash log(s) left open by a previous run", cur.rowcount)
        return cur.rowcount

    # ------------------------------------------------------------------
    # Queries
    # ------------------------------------------------------------------

    def get_logs(self, bay_id: str | None = None, limit: int = 20) -> list[dict]:
        """Return wash log entries, newest first."""
        limit = max(1, min(int(limit), 1000))
        if bay_id:
            rows = self._conn.execute(
                "SELECT * FROM wash_logs WHERE bay_id = ? ORDER BY id DESC LIMIT ?",
                (bay_id, limit),
            ).fetchall()
        else:
            rows = self._conn.execute(
                "SELECT * FROM wash_logs ORDER BY id DESC LIMIT ?", (limit,),
            ).fetchall()
        return [dict(r) for r in rows]

    def get_open_logs(self) -> list[dict]:
        rows = self._conn.execute(
            "SELECT * FROM wash_logs WHERE end_time IS NULL ORDER BY id",
        ).fetchall()
        return [dict(r) for r in rows]

    def get_snapshots(self) -> dict[str, dict]:
        rows = self._conn.execute("SELECT * FROM bay_state").fetchall()
        return {r["bay_id"]: dict(r) for r in rows}

    def get_health(self) -> dict:
        return {
            "db_path": self._db_path,
            "total_writes": self._total_writes,
            "write_errors": self._write_errors,
            "last_error": self._last_error,
            "last_error_time": self._last_error_time,
            "healthy": self._write_errors == 0 or (
                self._last_error_time is not None
                and time.time() - self._last_error_time > 300
            ),
        }

    def close(self):
        try:
            self._conn.close()
        except sqlite3.Error:
            logger.debug("Error closing wash log database", exc_info=True)
