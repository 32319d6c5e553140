import contextlib
from datetime import date, datetime
from pathlib import Path

import psycopg
import pytest

from parley.logging import get_logger
from parley.storage.errors import StorageUnavailable
from parley.storage.postgres import PostgresStore, _escape_like


class DummyPool:
    def connection(self):
        raise AssertionError("database access should be stubbed in unit tests")


class DownPool:
    @contextlib.contextmanager
    def connection(self):
        raise psycopg.OperationalError("connection refused")
        yield  # pragma: no cover


class FakeCursor:
    def __init__(self, row=None, rows=None, rowcount=0):
        self.row = row
        self.rows = rows or []
        self.rowcount = rowcount

    def fetchone(self):
        return self.row

    def fetchall(self):
        return self.rows


class RecordingPool:
    """Hands out one connection that records statements and replays a canned row."""

    def __init__(self, cursor):
        self.cursor = cursor
        self.statements = []

    @contextlib.contextmanager
    def connection(self):
        yield self

    def execute(self, sql, params=None):
        self.statements.append((" ".join(sql.split()), params))
        return self.cursor


def make_store(tmp_path: Path, pool) -> PostgresStore:
    store: PostgresStore = PostgresStore.__new__(PostgresStore)
    store.pool = pool
    store.fs_root = tmp_path
    store.dsn = "postgresql://unused"
    store.logger = get_logger("test")
    return store


def test_row_mappers(tmp_path: Path):
    now = datetime(2024, 1, 1, 12, 0)
    user = PostgresStore._user_from_row(
        {"id": "u1", "email": "a@example.com", "created_at": now, "role": None, "is_blocked": None}
    )
    assert user.role == "user"
    assert user.is_blocked is False

    checkpoint = PostgresStore._checkpoint_from_row(
        {
            "id": "c1",
            "thread_id": "t1",
            "config": "{}",
            "checkpoint": "{}",
            "metadata": "{}",
            "created_at": now,
            "pending_writes": None,
        }
    )
    assert checkpoint.pending_writes == []
    assert checkpoint.schema_version == 1


def test_escape_like():
    assert _escape_like("50%_off\\") == "50\\%\\_off\\\\"


def test_unknown_usage_source_never_reaches_database(tmp_path: Path):
    store = make_store(tmp_path, DummyPool())
    with pytest.raises(ValueError):
        store.increment_daily_usage("u1", date(2024, 1, 1), "borrowed")


def test_operational_error_becomes_storage_unavailable(tmp_path: Path):
    store = make_store(tmp_path, DownPool())
    with pytest.raises(StorageUnavailable):
        store.get_daily_usage("u1", date(2024, 1, 1))


def test_increment_is_a_single_upsert(tmp_path: Path):
    row = {
        "user_id": "u1",
        "day": date(2024, 1, 1),
        "responses": 3,
        "shared_responses": 1,
        "personal_responses": 2,
    }
    pool = RecordingPool(FakeCursor(row=row))
    store = make_store(tmp_path, pool)

    usage = store.increment_daily_usage("u1", date(2024, 1, 1), "personal")

    assert usage.responses == 3
    assert len(pool.statements) == 1
    sql, params = pool.statements[0]
    assert "ON CONFLICT (user_id, day) DO UPDATE" in sql
    assert "personal_responses = daily_usage.personal_responses + 1" in sql
    assert params == ("u1", date(2024, 1, 1))


def test_append_writes_targets_latest_row(tmp_path: Path):
    pool = RecordingPool(FakeCursor(row=None))
    store = make_store(tmp_path, pool)

    assert store.append_checkpoint_writes("t1", ['["w1","tools",{}]']) is None
    sql, params = pool.statements[0]
    assert "pending_writes || %s::text[]" in sql
    assert "ORDER BY created_at DESC, seq DESC LIMIT 1" in sql
    assert params == (['["w1","tools",{}]'], "t1")


def test_delete_checkpoints_returns_rowcount(tmp_path: Path):
    pool = RecordingPool(FakeCursor(rowcount=4))
    store = make_store(tmp_path, pool)
    assert store.delete_checkpoints("t1") == 4
