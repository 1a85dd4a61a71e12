"""Tests for the SQLite pool and lock retry decorator."""

from __future__ import annotations

import asyncio
import sqlite3

import pytest

from topicdigest.infrastructure import database
from topicdigest.infrastructure.database import db_transaction, get_db_connection, retry_on_db_lock
from topicdigest.observability.telemetry import get_counter


def _locked_then_ok(failures: int):
    calls = []

    @retry_on_db_lock(max_retries=3, base_delay=0.0, max_delay=0.0)
    def write():
        calls.append(1)
        if len(calls) <= failures:
            raise sqlite3.OperationalError("database is locked")
        return "written"

    return write, calls


def test_lock_errors_are_retried_in_worker_threads(monkeypatch):
    sleeps: list[float] = []
    monkeypatch.setattr(database.time, "sleep", sleeps.append)
    write, calls = _locked_then_ok(failures=2)

    assert write() == "written"
    assert len(calls) == 3
    assert len(sleeps) == 2


def test_lock_errors_are_not_slept_on_the_event_loop(monkeypatch):
    sleeps: list[float] = []
    monkeypatch.setattr(database.time, "sleep", sleeps.append)
    write, calls = _locked_then_ok(failures=1)

    async def on_loop():
        return write()

    with pytest.raises(sqlite3.OperationalError):
        asyncio.run(on_loop())

    assert len(calls) == 1
    assert sleeps == []
    assert get_counter("database.lock_errors") == 1


def test_lock_retry_gives_up(monkeypatch):
    monkeypatch.setattr(database.time, "sleep", lambda _: None)
    write, calls = _locked_then_ok(failures=10)

    with pytest.raises(sqlite3.OperationalError):
        write()
    assert len(calls) == 4


def test_other_operational_errors_are_not_retried():
    calls = []

    @retry_on_db_lock()
    def broken():
        calls.append(1)
        raise sqlite3.OperationalError("no such table: nope")

    with pytest.raises(sqlite3.OperationalError):
        broken()
    assert len(calls) == 1


def test_transaction_rolls_back_on_error():
    with pytest.raises(RuntimeError):
        with db_transaction() as conn:
            conn.execute(
                "INSERT INTO actor_storage (subscription_id, key, value, updated_at) VALUES (?, ?, ?, ?)",
                ("s", "k", "1", "now"),
            )
            raise RuntimeError("boom")

    with get_db_connection() as conn:
        row = conn.execute("SELECT COUNT(*) AS n FROM actor_storage").fetchone()
    assert row["n"] == 0


def test_missing_database_is_reported(tmp_path, monkeypatch):
    monkeypatch.setenv("TOPICDIGEST_DB_PATH", str(tmp_path / "missing.db"))

    with pytest.raises(FileNotFoundError):
        with get_db_connection():
            pass
