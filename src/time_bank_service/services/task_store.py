"""SQLite-backed task storage."""

from __future__ import annotations

import sqlite3
from enum import StrEnum
from typing import TYPE_CHECKING, Any

from time_bank_service.services.hours import from_storage, to_storage

if TYPE_CHECKING:
    from collections.abc import Mapping

    from time_bank_service.services.database import Database


class TaskStatus(StrEnum):
    """Task lifecycle states. COMPLETED and CANCELLED are terminal."""

    OPEN = "open"
    IN_PROGRESS = "in_progress"
    COMPLETED = "completed"
    CANCELLED = "cancelled"


class DuplicateTaskError(Exception):
    """Raised when attempting to insert a task with a duplicate task_id."""


class TaskStore:
    """SQLite-backed storage for tasks and their attachment references."""

    _TASK_COLUMNS: tuple[str, ...] = (
        "task_id",
        "created_by",
        "title",
        "description",
        "location",
        "availability",
        "time_offered",
        "status",
        "assigned_to",
        "reported_hours",
        "reported_by",
        "reported_at",
        "created_at",
        "accepted_at",
        "completed_at",
        "cancelled_at",
    )
    _HOURS_COLUMNS = frozenset({"time_offered", "reported_hours"})
    _TASK_COLUMNS_SQL = ", ".join(_TASK_COLUMNS)
    _TASK_INSERT_SQL = (
        "INSERT INTO tasks ("
        + _TASK_COLUMNS_SQL
        + ") VALUES ("
        + ", ".join("?" for _ in _TASK_COLUMNS)
        + ")"
    )
    _TASK_SELECT_BASE_SQL = "SELECT " + _TASK_COLUMNS_SQL + " FROM tasks"  # nosec B608

    def __init__(self, database: Database) -> None:
        self._database = database

    def _row_to_task(self, row: sqlite3.Row) -> dict[str, Any]:
        task = {column: row[column] for column in self._TASK_COLUMNS}
        task["time_offered"] = from_storage(task["time_offered"])
        task["reported_hours"] = from_storage(task["reported_hours"])
        return task

    def _encode(self, column: str, value: Any) -> Any:
        if column in self._HOURS_COLUMNS and value is not None:
            return to_storage(value)
        return value

    def insert_task(self, task_data: dict[str, Any]) -> None:
        """Insert a new task row."""
        values = tuple(self._encode(column, task_data[column]) for column in self._TASK_COLUMNS)

        with self._database.transaction() as db:
            try:
                db.execute(self._TASK_INSERT_SQL, values)
            except sqlite3.IntegrityError as exc:
                if "unique" in str(exc).lower():
                    raise DuplicateTaskError(
                        f"A task with task_id={task_data['task_id']} already exists"
                    ) from exc
                raise

    def get_task(self, task_id: str) -> dict[str, Any] | None:
        """Fetch a task by ID."""
        with self._database.read() as db:
            row = db.execute(
                self._TASK_SELECT_BASE_SQL + " WHERE task_id = ?",
                (task_id,),
            ).fetchone()
        if row is None:
            return None
        return self._row_to_task(row)

    def update_task(
        self,
        task_id: str,
        updates: dict[str, Any],
        *,
        expected: Mapping[str, Any] | None = None,
    ) -> int:
        """
        Conditionally update task columns and return the number of affected rows.

        Every column in `expected` must currently hold the given value
        (None matches NULL); otherwise nothing is written and 0 is returned.
        """
        if len(updates) == 0:
            return 0

        conditions = dict(expected or {})
        if any(column not in self._TASK_COLUMNS for column in [*updates, *conditions]):
            msg = "Attempted to update unknown task column"
            raise ValueError(msg)

        set_clause = ", ".join(f"{column} = ?" for column in updates)
        params: list[object] = [self._encode(column, value) for column, value in updates.items()]

        query = "UPDATE tasks SET " + set_clause + " WHERE task_id = ?"  # nosec B608
        params.append(task_id)
        for column, value in conditions.items():
            if value is None:
                query += f" AND {column} IS NULL"
            else:
                query += f" AND {column} = ?"
                params.append(self._encode(column, value))

        with self._database.transaction() as db:
            cursor = db.execute(query, params)
        return int(cursor.rowcount)

    def delete_task(self, task_id: str) -> int:
        """Delete a task and its attachments; return the number of deleted tasks."""
        with self._database.transaction() as db:
            db.execute("DELETE FROM task_attachments WHERE task_id = ?", (task_id,))
            cursor = db.execute("DELETE FROM tasks WHERE task_id = ?", (task_id,))
        return int(cursor.rowcount)

    def list_tasks(
        self,
        *,
        created_by: str | None = None,
        assigned_to: str | None = None,
        status: str | None = None,
        unreported_only: bool = False,
        limit: int | None = None,
        offset: int | None = None,
    ) -> list[dict[str, Any]]:
        """List tasks with optional filters, newest first."""
        clauses: list[str] = []
        params: list[object] = []

        if created_by is not None:
            clauses.append("created_by = ?")
            params.append(created_by)
        if assigned_to is not None:
            clauses.append("assigned_to = ?")
            params.append(assigned_to)
        if status is not None:
            clauses.append("status = ?")
            params.append(status)
        if unreported_only:
            clauses.append("reported_hours IS NULL")

        return self._select(clauses, params, limit, offset)

    def list_open(
        self,
        *,
        keyword: str | None = None,
        location: str | None = None,
        availability: str | None = None,
        min_time: Any = None,
        exclude_creator: str | None = None,
        limit: int | None = None,
        offset: int | None = None,
    ) -> list[dict[str, Any]]:
        """
        List open, unassigned tasks matching the browse filters.

        keyword and location match case-insensitive substrings, availability
        matches exactly and min_time keeps tasks offering at least that many hours.
        """
        clauses = ["status = ?", "assigned_to IS NULL"]
        params: list[object] = [TaskStatus.OPEN.value]

        if keyword:
            clauses.append("title LIKE ? ESCAPE '\\'")
            params.append(f"%{_escape_like(keyword)}%")
        if location:
            clauses.append("location LIKE ? ESCAPE '\\'")
            params.append(f"%{_escape_like(location)}%")
        if availability:
            clauses.append("availability = ?")
            params.append(availability)
        if exclude_creator is not None:
            clauses.append("created_by != ?")
            params.append(exclude_creator)
        if min_time is not None:
            clauses.append("CAST(time_offered AS REAL) >= ?")
            params.append(float(min_time))

        return self._select(clauses, params, limit, offset)

    def _select(
        self,
        clauses: list[str],
        params: list[object],
        limit: int | None,
        offset: int | None,
    ) -> list[dict[str, Any]]:
        query = self._TASK_SELECT_BASE_SQL
        if len(clauses) > 0:
            query += " WHERE " + " AND ".join(clauses)

        query += " ORDER BY created_at DESC, task_id"

        if limit is not None:
            query += " LIMIT ?"
            params.append(limit)
        if offset is not None:
            if limit is None:
                query += " LIMIT -1"
            query += " OFFSET ?"
            params.append(offset)

        with self._database.read() as db:
            rows = db.execute(query, params).fetchall()
        return [self._row_to_task(row) for row in rows]

    def count_tasks_by_status(self) -> dict[str, int]:
        """Count tasks grouped by status."""
        with self._database.read() as db:
            rows = db.execute("SELECT status, COUNT(*) FROM tasks GROUP BY status").fetchall()
        return {str(row[0]): int(row[1]) for row in rows}

    def insert_attachment(self, attachment_data: dict[str, Any]) -> None:
        """Insert an attachment reference for a task."""
        with self._database.transaction() as db:
            db.execute(
                """
                INSERT INTO task_attachments (
                    attachment_id, task_id, file_url, uploaded_by, uploaded_at
                ) VALUES (?, ?, ?, ?, ?)
                """,
                (
                    attachment_data["attachment_id"],
                    attachment_data["task_id"],
                    attachment_data["file_url"],
                    attachment_data["uploaded_by"],
                    attachment_data["uploaded_at"],
                ),
            )

    def get_attachments_for_task(self, task_id: str) -> list[dict[str, Any]]:
        """Fetch all attachment references for a task sorted by upload time."""
        with self._database.read() as db:
            rows = db.execute(
                "SELECT attachment_id, task_id, file_url, uploaded_by, uploaded_at "
                "FROM task_attachments WHERE task_id = ? ORDER BY uploaded_at, attachment_id",
                (task_id,),
            ).fetchall()
        return [
            {
                "attachment_id": row["attachment_id"],
                "task_id": row["task_id"],
                "file_url": row["file_url"],
                "uploaded_by": row["uploaded_by"],
                "uploaded_at": row["uploaded_at"],
            }
            for row in rows
        ]


def _escape_like(text: str) -> str:
    return text.replace("\\", "\\\\").replace("%", "\\%").replace("_", "\\_")
