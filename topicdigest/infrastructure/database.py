"""Centralized database configuration

Every actor's durable state (document snapshots, confirmation records,
alarms) lives in one SQLite file, reached through get_db_connection().

Provides:
- A small fixed pool of WAL-mode connections shared across threads
- TOPICDIGEST_DB_PATH override for the database file
- Retry on SQLITE_BUSY with exponential backoff (worker threads only)
- Transaction context manager
"""

from __future__ import annotations

import asyncio
import atexit
import os
import random
import sqlite3
import time
from collections.abc import Callable, Generator
from contextlib import contextmanager
from functools import wraps
from pathlib import Path
from queue import Empty, Queue
from threading import Lock
from typing import Any, TypeVar

from topicdigest.config import (
    DB_CONNECT_TIMEOUT,
    DB_POOL_SIZE,
    DB_POOL_TIMEOUT,
    DB_RETRY_BASE_DELAY,
    DB_RETRY_JITTER,
    DB_RETRY_MAX,
    DB_RETRY_MAX_DELAY,
)
from topicdigest.observability.logging import get_logger
from topicdigest.observability.telemetry import counter

F = TypeVar("F", bound=Callable[..., Any])

DB_PATH = Path(__file__).parent.parent / "data" / "topicdigest.db"

logger = get_logger(__name__)


def _on_event_loop() -> bool:
    try:
        asyncio.get_running_loop()
    except RuntimeError:
        return False
    return True


def retry_on_db_lock(
    max_retries: int = DB_RETRY_MAX,
    base_delay: float = DB_RETRY_BASE_DELAY,
    max_delay: float = DB_RETRY_MAX_DELAY,
) -> Callable[[F], F]:
    """
    Decorator to retry database operations on SQLITE_BUSY errors

    Backoff sleeps only happen in worker threads. On the event loop thread
    the lock error propagates once the connection's busy timeout runs out.

    Side Effects:
        - Sleeps between retries (exponential backoff with jitter)
        - Logs a warning for each retry and an error when retries are exhausted
    """

    def decorator(func: F) -> F:
        @wraps(func)
        def wrapper(*args: Any, **kwargs: Any) -> Any:
            attempt = 0
            while True:
                try:
                    return func(*args, **kwargs)
                except sqlite3.OperationalError as e:
                    message = str(e).lower()
                    if "locked" not in message and "busy" not in message:
                        raise
                    counter("database.lock_errors")
                    if _on_event_loop():
                        logger.error("Database locked on the event loop thread: %s", e)
                        raise
                    if attempt >= max_retries:
                        logger.error(
                            "Database lock retry exhausted after %d attempts: %s", max_retries, e
                        )
                        raise

                    delay = min(base_delay * (2**attempt), max_delay)
                    delay += random.uniform(0, delay * DB_RETRY_JITTER)
                    attempt += 1
                    logger.warning(
                        "Database locked (attempt %d/%d), retrying in %.2fs: %s",
                        attempt,
                        max_retries,
                        delay,
                        e,
                    )
                    time.sleep(delay)

        return wrapper  # type: ignore[return-value]

    return decorator


class DatabaseConnectionPool:
    """
    Fixed-size pool of SQLite connections (WAL mode, Row factory).

    Connections are opened with check_same_thread=False so worker threads
    started with asyncio.to_thread can borrow them.
    """

    def __init__(self, db_path: str, pool_size: int = DB_POOL_SIZE):
        self.db_path = db_path
        self.pool: Queue[sqlite3.Connection] = Queue(maxsize=pool_size)
        self.closed = False
        for _ in range(pool_size):
            self.pool.put(self._connect())
        atexit.register(self.close_all)

    def _connect(self) -> sqlite3.Connection:
        conn = sqlite3.connect(self.db_path, timeout=DB_CONNECT_TIMEOUT, check_same_thread=False)
        conn.execute("PRAGMA journal_mode=WAL")
        conn.execute("PRAGMA synchronous=NORMAL")
        conn.row_factory = sqlite3.Row
        return conn

    def acquire(self) -> sqlite3.Connection:
        """
        Raises:
            RuntimeError: If the pool is closed or no connection frees up in time
        """
        if self.closed:
            raise RuntimeError("Connection pool has been closed")
        try:
            return self.pool.get(timeout=DB_POOL_TIMEOUT)
        except Empty:
            counter("database.pool_exhausted")
            raise RuntimeError(
                f"No database connection available after {DB_POOL_TIMEOUT}s"
            ) from None

    def release(self, conn: sqlite3.Connection) -> None:
        if self.closed:
            conn.close()
        else:
            self.pool.put_nowait(conn)

    def close_all(self) -> None:
        self.closed = True
        while True:
            try:
                self.pool.get_nowait().close()
            except Empty:
                break


def get_db_path() -> Path:
    """Database path: TOPICDIGEST_DB_PATH if set, else the package data directory."""
    if env_path := os.getenv("TOPICDIGEST_DB_PATH"):
        return Path(env_path)
    return DB_PATH


_POOLS: dict[str, DatabaseConnectionPool] = {}
_POOLS_LOCK = Lock()


def get_pool() -> DatabaseConnectionPool:
    """Get or create the connection pool for the current database path."""
    key = str(get_db_path())
    with _POOLS_LOCK:
        pool = _POOLS.get(key)
        if pool is None or pool.closed:
            pool = DatabaseConnectionPool(key)
            _POOLS[key] = pool
        return pool


def reset_pool() -> None:
    """Close every pool (tests switch database paths between cases)."""
    with _POOLS_LOCK:
        for pool in _POOLS.values():
            pool.close_all()
        _POOLS.clear()


@contextmanager
def get_db_connection() -> Generator[sqlite3.Connection, None, None]:
    """
    Borrow a pooled connection.

    Raises:
        FileNotFoundError: If the database has not been initialized
    """
    db_path = get_db_path()
    if not db_path.exists():
        raise FileNotFoundError(f"Database not found: {db_path}\nRun init_database() first")

    pool = get_pool()
    conn = pool.acquire()
    try:
        yield conn
    finally:
        pool.release(conn)


@contextmanager
def db_transaction() -> Generator[sqlite3.Connection, None, None]:
    """Commits on success, rolls back on error."""
    with get_db_connection() as conn:
        try:
            yield conn
            conn.commit()
        except Exception:
            conn.rollback()
            raise


def init_database() -> None:
    """Create the schema if needed and check it (idempotent)."""
    from topicdigest.infrastructure.database_schema import init_database as _init_schema
    from topicdigest.infrastructure.database_schema import validate_schema

    _init_schema(get_db_path())
    with get_db_connection() as conn:
        validate_schema(conn)
