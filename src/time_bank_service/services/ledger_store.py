"""Append-only record of time-credit grants, one per completed task."""

from __future__ import annotations

import sqlite3
from typing import TYPE_CHECKING, Any

from time_bank_service.services.hours import from_storage, to_storage

if TYPE_CHECKING:
    from time_bank_service.services.database import Database


class DuplicateLedgerEntryError(Exception):
    """Raised when a ledger entry already exists for the task."""


class LedgerStore:
    """
    SQLite-backed ledger.

    Entries are never updated or deleted. `append` refuses a second entry
    for the same task, which is the guard against double-crediting.
    """

    _SELECT_SQL = "SELECT entry_id, task_id, user_id, time_earned, timestamp FROM ledger"

    def __init__(self, database: Database) -> None:
        self._database = database

    @staticmethod
    def _row_to_entry(row: sqlite3.Row) -> dict[str, Any]:
        return {
            "entry_id": row["entry_id"],
            "task_id": row["task_id"],
            "user_id": row["user_id"],
            "time_earned": from_storage(row["time_earned"]),
            "timestamp": row["timestamp"],
        }

    def append(self, entry: dict[str, Any]) -> dict[str, Any]:
        """
        Append a ledger entry.

        Raises:
            DuplicateLedgerEntryError: an entry for entry["task_id"] exists
        """
        with self._database.transaction() as db:
            if self.exists_for_task(entry["task_id"]):
                msg = f"Ledger entry already exists for task {entry['task_id']}"
                raise DuplicateLedgerEntryError(msg)
            try:
                db.execute(
                    "INSERT INTO ledger (entry_id, task_id, user_id, time_earned, timestamp) "
                    "VALUES (?, ?, ?, ?, ?)",
                    (
                        entry["entry_id"],
                        entry["task_id"],
                        entry["user_id"],
                        to_storage(entry["time_earned"]),
                        entry["timestamp"],
                    ),
                )
            except sqlite3.IntegrityError as exc:
                msg = f"Ledger entry already exists for task {entry['task_id']}"
                raise DuplicateLedgerEntryError(msg) from exc
        return dict(entry)

    def exists_for_task(self, task_id: str) -> bool:
        """Whether a ledger entry has been written for the task."""
        with self._database.read() as db:
            row = db.execute("SELECT 1 FROM ledger WHERE task_id = ?", (task_id,)).fetchone()
        return row is not None

    def get_for_task(self, task_id: str) -> dict[str, Any] | None:
        """Fetch the ledger entry for a task, if any."""
        with self._database.read() as db:
            row = db.execute(self._SELECT_SQL + " WHERE task_id = ?", (task_id,)).fetchone()
        if row is None:
            return None
        return self._row_to_entry(row)

    def list_by_user(self, user_id: str) -> list[dict[str, Any]]:
        """List entries credited to a user, newest first."""
        with self._database.read() as db:
            rows = db.execute(
                self._SELECT_SQL + " WHERE user_id = ? ORDER BY timestamp DESC, entry_id",
                (user_id,),
            ).fetchall()
        return [self._row_to_entry(row) for row in rows]
