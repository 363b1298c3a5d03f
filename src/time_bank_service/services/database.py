"""Shared SQLite connection with bounded, re-entrant transactions."""

from __future__ import annotations

import sqlite3
from contextlib import contextmanager
from pathlib import Path
from threading import RLock
from typing import TYPE_CHECKING

if TYPE_CHECKING:
    from collections.abc import Iterator


class StoreTimeoutError(Exception):
    """Raised when the database could not be acquired within the configured timeout."""


class StoreConflictError(Exception):
    """Raised when a conditional write found the row in an unexpected state."""


_SCHEMA = """
CREATE TABLE IF NOT EXISTS tasks (
    task_id TEXT PRIMARY KEY,
    created_by TEXT NOT NULL,
    title TEXT NOT NULL,
    description TEXT,
    location TEXT,
    availability TEXT,
    time_offered TEXT NOT NULL,
    status TEXT NOT NULL DEFAULT 'open',
    assigned_to TEXT,
    reported_hours TEXT,
    reported_by TEXT,
    reported_at TEXT,
    created_at TEXT NOT NULL,
    accepted_at TEXT,
    completed_at TEXT,
    cancelled_at TEXT
);

CREATE INDEX IF NOT EXISTS ix_tasks_created_by ON tasks(created_by);
CREATE INDEX IF NOT EXISTS ix_tasks_assigned_to ON tasks(assigned_to);
CREATE INDEX IF NOT EXISTS ix_tasks_status_created_at ON tasks(status, created_at);

CREATE TABLE IF NOT EXISTS task_attachments (
    attachment_id TEXT PRIMARY KEY,
    task_id TEXT NOT NULL REFERENCES tasks(task_id) ON DELETE CASCADE,
    file_url TEXT NOT NULL,
    uploaded_by TEXT NOT NULL,
    uploaded_at TEXT NOT NULL
);

CREATE TABLE IF NOT EXISTS ledger (
    entry_id TEXT PRIMARY KEY,
    task_id TEXT NOT NULL,
    user_id TEXT NOT NULL,
    time_earned TEXT NOT NULL,
    timestamp TEXT NOT NULL
);

CREATE UNIQUE INDEX IF NOT EXISTS ux_ledger_task ON ledger(task_id);
CREATE INDEX IF NOT EXISTS ix_ledger_user_timestamp ON ledger(user_id, timestamp);

CREATE TABLE IF NOT EXISTS balances (
    user_id TEXT PRIMARY KEY,
    time_balance TEXT NOT NULL,
    created_at TEXT NOT NULL
);
"""


class Database:
    """
    Single SQLite connection shared by the task, ledger and balance stores.

    All access goes through `transaction()`, which holds a process-wide
    re-entrant lock and an SQLite `BEGIN IMMEDIATE` write lock. Nested
    calls on the same thread join the outermost transaction, so a
    multi-store operation commits or rolls back as one unit.
    """

    def __init__(self, db_path: str, timeout_seconds: float) -> None:
        self._lock = RLock()
        self._depth = 0
        self._timeout_seconds = timeout_seconds
        Path(db_path).parent.mkdir(parents=True, exist_ok=True)
        self._db = sqlite3.connect(
            db_path,
            timeout=timeout_seconds,
            check_same_thread=False,
            isolation_level=None,
        )
        self._db.row_factory = sqlite3.Row
        self._db.execute("PRAGMA journal_mode=WAL")
        self._db.execute("PRAGMA foreign_keys=ON")
        self._db.execute(f"PRAGMA busy_timeout={int(timeout_seconds * 1000)}")
        with self._lock:
            self._db.executescript(_SCHEMA)

    @contextmanager
    def transaction(self) -> Iterator[sqlite3.Connection]:
        """
        Run the enclosed block atomically.

        Raises:
            StoreTimeoutError: lock or SQLite busy wait exceeded the timeout
        """
        if not self._lock.acquire(timeout=self._timeout_seconds):
            msg = "Timed out waiting for the database lock"
            raise StoreTimeoutError(msg)
        try:
            if self._depth > 0:
                self._depth += 1
                try:
                    yield self._db
                finally:
                    self._depth -= 1
                return

            self._begin()
            self._depth = 1
            try:
                yield self._db
            except BaseException:
                self._depth = 0
                self._db.rollback()
                raise
            self._depth = 0
            self._commit()
        finally:
            self._lock.release()

    @contextmanager
    def read(self) -> Iterator[sqlite3.Connection]:
        """Hold the connection for a read; joins an open transaction on this thread."""
        if not self._lock.acquire(timeout=self._timeout_seconds):
            msg = "Timed out waiting for the database lock"
            raise StoreTimeoutError(msg)
        try:
            yield self._db
        finally:
            self._lock.release()

    def _begin(self) -> None:
        try:
            self._db.execute("BEGIN IMMEDIATE")
        except sqlite3.OperationalError as exc:
            if _is_busy(exc):
                msg = "Timed out waiting for the database write lock"
                raise StoreTimeoutError(msg) from exc
            raise

    def _commit(self) -> None:
        try:
            self._db.commit()
        except sqlite3.OperationalError as exc:
            self._db.rollback()
            if _is_busy(exc):
                msg = "Timed out committing the database transaction"
                raise StoreTimeoutError(msg) from exc
            raise

    def close(self) -> None:
        """Close the database connection."""
        with self._lock:
            self._db.close()


def _is_busy(exc: sqlite3.OperationalError) -> bool:
    text = str(exc).lower()
    return "locked" in text or "busy" in text
