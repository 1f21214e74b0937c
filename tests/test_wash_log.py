"""Unit tests for SQLite wash log storage."""

import os
import sqlite3
import sys
from datetime import datetime, timedelta, timezone
from unittest.mock import MagicMock

import pytest

sys.path.insert(0, os.path.join(os.path.dirname(__file__), "..", "gateway"))

from washgate.wash_log import WashLogStore

T0 = datetime(2026, 5, 4, 9, 0, 0, tzinfo=timezone.utc)


@pytest.fixture
def store(tmp_path):
    s = WashLogStore(str(tmp_path / "wash.db"))
    yield s
    s.close()


class TestTables:
    def test_create_tables(self, store):
        tables = store._conn.execute(
            "SELECT name FROM sqlite_master WHERE type='table'"
        ).fetchall()
        names = {t["name"] for t in tables}
        assert "wash_logs" in names
        assert "bay_state" in names

    def test_creates_parent_directory(self, tmp_path):
        path = tmp_path / "nested" / "dir" / "wash.db"
        s = WashLogStore(str(path))
        assert path.exists()
        s.close()

    def test_memory_database(self):
        s = WashLogStore(":memory:")
        assert s.create_log("bay1", "BASIC", "s", None, T0) == 1
        s.close()


class TestLogs:
    def test_create_opens_entry(self, store):
        log_id = store.create_log("bay1", "BASIC", "20260504090000-bay1-001", "req-1", T0)

        assert log_id is not None
        [row] = store.get_open_logs()
        assert row["id"] == log_id
        assert row["bay_id"] == "bay1"
        assert row["course"] == "BASIC"
        assert row["status"] == "WASHING"
        assert row["start_time"] == "2026-05-04T09:00:00.000Z"
        assert row["end_time"] is None
        assert row["session_id"] == "20260504090000-bay1-001"
        assert row["request_id"] == "req-1"

    def test_close_sets_final_state(self, store):
        log_id = store.create_log("bay1", "BASIC", "s1", None, T0)
        end = T0 + timedelta(seconds=10)

        assert store.close_log(log_id, "DONE", None, end) is True

        [row] = store.get_logs()
        assert row["status"] == "DONE"
        assert row["error_code"] is None
        assert row["end_time"] == "2026-05-04T09:00:10.000Z"
        assert store.get_open_logs() == []

    def test_close_twice_is_noop(self, store):
        log_id = store.create_log("bay1", "BASIC", "s1", None, T0)
        store.close_log(log_id, "DONE", None, T0)

        assert store.close_log(log_id, "OFFLINE", "PROTOCOL_OFFLINE", T0) is False
        assert store.get_logs()[0]["status"] == "DONE"

    def test_get_logs_newest_first_and_filtered(self, store):
        for bay_id in ("bay1", "bay2", "bay1"):
            store.create_log(bay_id, "BASIC", None, None, T0)

        logs = store.get_logs()
        assert [r["id"] for r in logs] == [3, 2, 1]
        assert [r["id"] for r in store.get_logs(bay_id="bay1")] == [3, 1]
        assert len(store.get_logs(limit=1)) == 1

    def test_close_orphaned_logs(self, store):
        a = store.create_log("bay1", "BASIC", None, None, T0)
        b = store.create_log("bay2", "DELUXE", None, None, T0)
        store.close_log(b, "DONE", None, T0)

        closed = store.close_orphaned_logs("OFFLINE", "GATEWAY_RESTART", T0)

        assert closed == 1
        row = [r for r in store.get_logs() if r["id"] == a][0]
        assert row["status"] == "OFFLINE"
        assert row["error_code"] == "GATEWAY_RESTART"
        assert store.get_open_logs() == []


class TestSnapshots:
    def test_upsert_last_write_wins(self, store):
        store.upsert_snapshot("bay1", "s1", "r1", "WASHING", 10, "BASIC", None, T0)
        store.upsert_snapshot("bay1", "s1", "r1", "WASHING", 40, "BASIC", None,
                              T0 + timedelta(seconds=3))
        store.upsert_snapshot("bay2", None, None, "IDLE", 0, None, None, T0)

        snaps = store.get_snapshots()
        assert set(snaps) == {"bay1", "bay2"}
        assert snaps["bay1"]["progress"] == 40
        assert snaps["bay1"]["updated_at"] == "2026-05-04T09:00:03.000Z"


class TestFailures:
    def test_write_errors_are_swallowed(self, store):
        store._conn = MagicMock()
        store._conn.execute.side_effect = sqlite3.OperationalError("disk I/O error")

        assert store.create_log("bay1", "BASIC", None, None, T0) is None
        assert store.close_log(1, "DONE", None, T0) is False
        assert store.upsert_snapshot("bay1", None, None, "IDLE", 0, None, None, T0) is False

        health = store.get_health()
        assert health["write_errors"] == 3
        assert health["healthy"] is False
        assert "disk I/O error" in health["last_error"]

    def test_health_ok(self, store):
        store.create_log("bay1", "BASIC", None, None, T0)
        health = store.get_health()
        assert health["healthy"] is True
        assert health["total_writes"] == 1
