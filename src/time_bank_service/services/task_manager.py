"""Task lifecycle management: all business logic lives here."""

from __future__ import annotations

import uuid
from datetime import UTC, datetime
from decimal import Decimal
from typing import TYPE_CHECKING, Any, TypeVar

from starlette.concurrency import run_in_threadpool

from time_bank_service.core.exceptions import ServiceError, retryable
from time_bank_service.logging import get_logger
from time_bank_service.services import notification_dispatcher as events
from time_bank_service.services.balance_store import (
    AccountNotFoundError,
    InsufficientBalanceError,
)
from time_bank_service.services.database import StoreConflictError, StoreTimeoutError
from time_bank_service.services.hours import REPORT_WARNING_FACTOR, is_positive_hours, to_json
from time_bank_service.services.ledger_store import DuplicateLedgerEntryError
from time_bank_service.services.task_store import TaskStatus

if TYPE_CHECKING:
    from collections.abc import Callable

    from time_bank_service.services.balance_store import BalanceStore
    from time_bank_service.services.database import Database
    from time_bank_service.services.ledger_store import LedgerStore
    from time_bank_service.services.notification_dispatcher import NotificationDispatcher
    from time_bank_service.services.task_store import TaskStore

_T = TypeVar("_T")

SETTLEMENT_CREDIT_ONLY = "credit_only"
SETTLEMENT_TRANSFER = "transfer"

_TERMINAL_STATUSES = frozenset({TaskStatus.COMPLETED, TaskStatus.CANCELLED})

# Columns cleared whenever an assignment is discarded.
_CLEARED_ASSIGNMENT: dict[str, Any] = {
    "assigned_to": None,
    "accepted_at": None,
    "reported_hours": None,
    "reported_by": None,
    "reported_at": None,
}


def _now_iso() -> str:
    """Return current UTC time as ISO 8601 string with Z suffix."""
    return datetime.now(UTC).isoformat(timespec="microseconds").replace("+00:00", "Z")


def _check_hours(value: Decimal, field_name: str) -> None:
    if not is_positive_hours(value):
        raise ServiceError(
            "INVALID_HOURS",
            f"{field_name} must be a positive number",
            400,
            {},
        )


class TaskManager:
    """
    Manages the task lifecycle: creation, acceptance, time reporting,
    approval with credit transfer, unassignment, cancellation and deletion.

    Every operation reads, checks and writes inside one database
    transaction, so guards and writes cannot interleave with a concurrent
    operation on the same task. Approval appends the ledger entry, moves
    the balances and completes the task in that same transaction.
    """

    def __init__(
        self,
        database: Database,
        store: TaskStore,
        ledger: LedgerStore,
        balances: BalanceStore,
        dispatcher: NotificationDispatcher,
        *,
        settlement: str,
        max_title_length: int,
        max_text_length: int,
        max_attachments_per_task: int,
    ) -> None:
        if settlement not in (SETTLEMENT_CREDIT_ONLY, SETTLEMENT_TRANSFER):
            msg = f"Unknown settlement mode: {settlement}"
            raise ValueError(msg)
        self._database = database
        self._store = store
        self._ledger = ledger
        self._balances = balances
        self._dispatcher = dispatcher
        self._settlement = settlement
        self._max_title_length = max_title_length
        self._max_text_length = max_text_length
        self._max_attachments_per_task = max_attachments_per_task
        self._logger = get_logger(__name__)

    # ------------------------------------------------------------------
    # Private helper methods
    # ------------------------------------------------------------------

    async def _run(self, func: Callable[..., _T], *args: Any) -> _T:
        """Run synchronous store work off the event loop, mapping store failures."""
        try:
            return await run_in_threadpool(func, *args)
        except StoreTimeoutError as exc:
            raise retryable("STORE_TIMEOUT", "Task store did not respond in time", 503) from exc
        except StoreConflictError as exc:
            raise retryable("STORE_CONFLICT", str(exc), 409) from exc

    def _require_task(self, task_id: str) -> dict[str, Any]:
        task = self._store.get_task(task_id)
        if task is None:
            raise ServiceError("TASK_NOT_FOUND", "Task not found", 404, {})
        return task

    def _require_owner(self, task: dict[str, Any], user_id: str, action: str) -> None:
        if task["created_by"] != user_id:
            raise ServiceError("NOT_OWNER", f"Only the task owner can {action}", 403, {})

    def _require_account(self, user_id: str) -> Decimal:
        try:
            return self._balances.get_balance(user_id)
        except AccountNotFoundError as exc:
            raise ServiceError("USER_NOT_FOUND", "User has no time balance account", 404, {}) from exc

    def _write(
        self,
        task_id: str,
        updates: dict[str, Any],
        expected: dict[str, Any],
    ) -> dict[str, Any]:
        changed = self._store.update_task(task_id, updates, expected=expected)
        if changed == 0:
            msg = f"Task {task_id} changed concurrently"
            raise StoreConflictError(msg)
        return self._require_task(task_id)

    def _task_to_response(self, row: dict[str, Any]) -> dict[str, Any]:
        """Convert a task row to a full task response dict."""
        return {
            "task_id": row["task_id"],
            "created_by": row["created_by"],
            "title": row["title"],
            "description": row["description"],
            "location": row["location"],
            "availability": row["availability"],
            "time_offered": to_json(row["time_offered"]),
            "status": row["status"],
            "assigned_to": row["assigned_to"],
            "reported_hours": to_json(row["reported_hours"]),
            "reported_by": row["reported_by"],
            "reported_at": row["reported_at"],
            "created_at": row["created_at"],
            "accepted_at": row["accepted_at"],
            "completed_at": row["completed_at"],
            "cancelled_at": row["cancelled_at"],
            "attachments": [
                {
                    "file_url": attachment["file_url"],
                    "uploaded_by": attachment["uploaded_by"],
                    "uploaded_at": attachment["uploaded_at"],
                }
                for attachment in self._store.get_attachments_for_task(row["task_id"])
            ],
        }

    def _task_to_summary(self, row: dict[str, Any]) -> dict[str, Any]:
        """Convert a task row to a summary dict for list views."""
        return {
            "task_id": row["task_id"],
            "created_by": row["created_by"],
            "title": row["title"],
            "location": row["location"],
            "availability": row["availability"],
            "time_offered": to_json(row["time_offered"]),
            "status": row["status"],
            "assigned_to": row["assigned_to"],
            "reported_hours": to_json(row["reported_hours"]),
            "created_at": row["created_at"],
        }

    def _validate_text(self, fields: dict[str, Any], name: str) -> str | None:
        value = fields.get(name)
        if value is None:
            return None
        stripped = str(value).strip()
        if len(stripped) > self._max_text_length:
            raise ServiceError(
                "INVALID_PAYLOAD",
                f"{name} must not exceed {self._max_text_length} characters",
                400,
                {},
            )
        return stripped or None

    # ------------------------------------------------------------------
    # Synchronous operations, run in the thread pool
    # ------------------------------------------------------------------

    def _create_task_sync(
        self,
        owner_id: str,
        task_data: dict[str, Any],
        attachment_urls: list[str],
    ) -> dict[str, Any]:
        with self._database.transaction():
            balance = self._require_account(owner_id)
            if task_data["time_offered"] > balance:
                raise ServiceError(
                    "INSUFFICIENT_BALANCE",
                    f"Cannot offer more time than the current balance of {balance} hours",
                    402,
                    {"time_balance": to_json(balance)},
                )
            self._store.insert_task(task_data)
            for file_url in attachment_urls:
                self._store.insert_attachment(
                    {
                        "attachment_id": f"att-{uuid.uuid4()}",
                        "task_id": task_data["task_id"],
                        "file_url": file_url,
                        "uploaded_by": owner_id,
                        "uploaded_at": task_data["created_at"],
                    }
                )
            return self._task_to_response(self._require_task(task_data["task_id"]))

    def _accept_task_sync(self, worker_id: str, task_id: str) -> dict[str, Any]:
        with self._database.transaction():
            task = self._require_task(task_id)

            if task["status"] != TaskStatus.OPEN or task["assigned_to"] is not None:
                raise ServiceError(
                    "TASK_NOT_OPEN",
                    f"Cannot accept task in '{task['status']}' status, must be 'open'",
                    409,
                    {},
                )

            if worker_id == task["created_by"]:
                raise ServiceError("SELF_ASSIGNMENT", "Cannot accept your own task", 400, {})

            self._require_account(worker_id)

            changed = self._store.update_task(
                task_id,
                {
                    "status": TaskStatus.IN_PROGRESS.value,
                    "assigned_to": worker_id,
                    "accepted_at": _now_iso(),
                },
                expected={"status": TaskStatus.OPEN.value, "assigned_to": None},
            )
            if changed == 0:
                raise ServiceError("TASK_NOT_OPEN", "Task was accepted by someone else", 409, {})
            return self._task_to_response(self._require_task(task_id))

    def _report_time_sync(self, worker_id: str, task_id: str, hours: Decimal) -> dict[str, Any]:
        with self._database.transaction():
            task = self._require_task(task_id)

            if task["assigned_to"] != worker_id:
                raise ServiceError(
                    "NOT_ASSIGNEE",
                    "Only the assigned worker can report time",
                    403,
                    {},
                )

            if task["status"] != TaskStatus.IN_PROGRESS:
                raise ServiceError(
                    "WRONG_STATE",
                    f"Cannot report time on task in '{task['status']}' status",
                    409,
                    {},
                )

            _check_hours(hours, "hours")

            updated = self._write(
                task_id,
                {"reported_hours": hours, "reported_by": worker_id, "reported_at": _now_iso()},
                expected={"status": TaskStatus.IN_PROGRESS.value, "assigned_to": worker_id},
            )
            response = self._task_to_response(updated)
            response["exceeds_offer"] = hours > updated["time_offered"] * REPORT_WARNING_FACTOR
            return response

    def _approve_sync(self, owner_id: str, task_id: str) -> dict[str, Any]:
        with self._database.transaction():
            task = self._require_task(task_id)
            self._require_owner(task, owner_id, "approve reported time")

            if task["status"] != TaskStatus.IN_PROGRESS:
                raise ServiceError(
                    "WRONG_STATE",
                    f"Cannot approve task in '{task['status']}' status, must be 'in_progress'",
                    409,
                    {},
                )

            hours: Decimal | None = task["reported_hours"]
            if hours is None:
                raise ServiceError(
                    "NO_REPORTED_HOURS",
                    "The worker has not reported any hours yet",
                    409,
                    {},
                )

            worker_id: str = task["assigned_to"]
            completed_at = _now_iso()

            try:
                entry = self._ledger.append(
                    {
                        "entry_id": f"le-{uuid.uuid4()}",
                        "task_id": task_id,
                        "user_id": worker_id,
                        "time_earned": hours,
                        "timestamp": completed_at,
                    }
                )
            except DuplicateLedgerEntryError as exc:
                raise ServiceError(
                    "DUPLICATE_LEDGER_ENTRY",
                    "Hours for this task have already been granted",
                    409,
                    {},
                ) from exc

            try:
                worker_balance = self._balances.credit(worker_id, hours)
                if self._settlement == SETTLEMENT_TRANSFER:
                    self._balances.debit(owner_id, hours)
            except AccountNotFoundError as exc:
                raise ServiceError(
                    "USER_NOT_FOUND",
                    "User has no time balance account",
                    404,
                    {},
                ) from exc
            except InsufficientBalanceError as exc:
                raise ServiceError(
                    "INSUFFICIENT_BALANCE",
                    "Owner balance does not cover the reported hours",
                    402,
                    {},
                ) from exc

            updated = self._write(
                task_id,
                {"status": TaskStatus.COMPLETED.value, "completed_at": completed_at},
                expected={
                    "status": TaskStatus.IN_PROGRESS.value,
                    "assigned_to": worker_id,
                    "reported_hours": hours,
                },
            )

        response = self._task_to_response(updated)
        response["ledger_entry"] = {
            "entry_id": entry["entry_id"],
            "task_id": entry["task_id"],
            "user_id": entry["user_id"],
            "time_earned": to_json(entry["time_earned"]),
            "timestamp": entry["timestamp"],
        }
        response["worker_balance"] = to_json(worker_balance)
        return response

    def _unassign_sync(self, owner_id: str, task_id: str) -> tuple[dict[str, Any], str]:
        with self._database.transaction():
            task = self._require_task(task_id)
            self._require_owner(task, owner_id, "unassign the worker")

            if task["status"] != TaskStatus.IN_PROGRESS:
                raise ServiceError(
                    "WRONG_STATE",
                    f"Cannot unassign task in '{task['status']}' status, must be 'in_progress'",
                    409,
                    {},
                )

            updated = self._write(
                task_id,
                {"status": TaskStatus.OPEN.value, **_CLEARED_ASSIGNMENT},
                expected={"status": TaskStatus.IN_PROGRESS.value},
            )
            return self._task_to_response(updated), task["assigned_to"]

    def _cancel_sync(self, owner_id: str, task_id: str) -> tuple[dict[str, Any], str | None]:
        with self._database.transaction():
            task = self._require_task(task_id)
            self._require_owner(task, owner_id, "cancel this task")

            if task["status"] in _TERMINAL_STATUSES:
                raise ServiceError(
                    "WRONG_STATE",
                    f"Cannot cancel task in '{task['status']}' status",
                    409,
                    {},
                )

            updated = self._write(
                task_id,
                {
                    "status": TaskStatus.CANCELLED.value,
                    "cancelled_at": _now_iso(),
                    **_CLEARED_ASSIGNMENT,
                },
                expected={"status": task["status"]},
            )
            return self._task_to_response(updated), task["assigned_to"]

    def _delete_sync(self, owner_id: str, task_id: str) -> dict[str, Any]:
        with self._database.transaction():
            task = self._require_task(task_id)
            self._require_owner(task, owner_id, "delete this task")
            if self._store.delete_task(task_id) == 0:
                msg = f"Task {task_id} changed concurrently"
                raise StoreConflictError(msg)
            return task

    # ------------------------------------------------------------------
    # Public methods: called by routers
    # ------------------------------------------------------------------

    async def create_task(self, owner_id: str, fields: dict[str, Any]) -> dict[str, Any]:
        """
        Create an open task offering hour credits.

        The owner's balance must cover time_offered. Nothing is debited
        at creation.

        Error precedence:
        1. INVALID_PAYLOAD: missing or oversized fields, too many attachments
        2. INVALID_HOURS: time_offered not positive or too precise
        3. USER_NOT_FOUND: owner has no balance account
        4. INSUFFICIENT_BALANCE: time_offered exceeds owner balance
        """
        title_obj = fields.get("title")
        if not isinstance(title_obj, str) or len(title_obj.strip()) < 1:
            raise ServiceError("INVALID_PAYLOAD", "Title must be a non-empty string", 400, {})
        title = title_obj.strip()
        if len(title) > self._max_title_length:
            raise ServiceError(
                "INVALID_PAYLOAD",
                f"Title must not exceed {self._max_title_length} characters",
                400,
                {},
            )

        description = self._validate_text(fields, "description")
        location = self._validate_text(fields, "location")
        availability = self._validate_text(fields, "availability")

        attachment_urls: list[str] = list(fields.get("attachments") or [])
        if len(attachment_urls) > self._max_attachments_per_task:
            raise ServiceError(
                "INVALID_PAYLOAD",
                f"A task may reference at most {self._max_attachments_per_task} attachments",
                400,
                {},
            )

        time_offered = fields.get("time_offered")
        if not isinstance(time_offered, Decimal):
            raise ServiceError("INVALID_PAYLOAD", "Missing required field: time_offered", 400, {})
        _check_hours(time_offered, "time_offered")

        task_data = {
            "task_id": f"t-{uuid.uuid4()}",
            "created_by": owner_id,
            "title": title,
            "description": description,
            "location": location,
            "availability": availability,
            "time_offered": time_offered,
            "status": TaskStatus.OPEN.value,
            "assigned_to": None,
            "reported_hours": None,
            "reported_by": None,
            "reported_at": None,
            "created_at": _now_iso(),
            "accepted_at": None,
            "completed_at": None,
            "cancelled_at": None,
        }
        result = await self._run(self._create_task_sync, owner_id, task_data, attachment_urls)
        self._logger.info(
            "Task created",
            extra={
                "task_id": result["task_id"],
                "created_by": owner_id,
                "time_offered": str(time_offered),
            },
        )
        return result

    async def get_task(self, task_id: str) -> dict[str, Any]:
        """
        Get a single task by ID.

        Raises:
            ServiceError: TASK_NOT_FOUND
        """

        def load() -> dict[str, Any]:
            with self._database.read():
                return self._task_to_response(self._require_task(task_id))

        return await self._run(load)

    async def list_tasks(
        self,
        *,
        created_by: str | None,
        assigned_to: str | None,
        status: str | None,
        limit: int | None,
        offset: int | None,
    ) -> list[dict[str, Any]]:
        """List tasks by creator, assignee and status. All filters use AND logic."""
        if status is not None and status not in {member.value for member in TaskStatus}:
            raise ServiceError("INVALID_PAYLOAD", f"Unknown status: {status}", 400, {})

        rows = await self._run(
            lambda: self._store.list_tasks(
                created_by=created_by,
                assigned_to=assigned_to,
                status=status,
                limit=limit,
                offset=offset,
            )
        )
        return [self._task_to_summary(row) for row in rows]

    async def list_open_tasks(
        self,
        caller_id: str | None,
        *,
        keyword: str | None,
        location: str | None,
        availability: str | None,
        min_time: Decimal | None,
        limit: int | None,
        offset: int | None,
    ) -> list[dict[str, Any]]:
        """List tasks a caller could accept; the caller's own tasks are hidden."""
        rows = await self._run(
            lambda: self._store.list_open(
                keyword=keyword,
                location=location,
                availability=availability,
                min_time=min_time,
                exclude_creator=caller_id,
                limit=limit,
                offset=offset,
            )
        )
        return [self._task_to_summary(row) for row in rows]

    async def list_pending_reports(self, worker_id: str) -> list[dict[str, Any]]:
        """List in-progress tasks assigned to the worker that still need a time report."""
        rows = await self._run(
            lambda: self._store.list_tasks(
                assigned_to=worker_id,
                status=TaskStatus.IN_PROGRESS.value,
                unreported_only=True,
            )
        )
        return [self._task_to_summary(row) for row in rows]

    async def accept_task(self, worker_id: str, task_id: str) -> dict[str, Any]:
        """
        Assign an open task to the calling worker.

        Exactly one of several concurrent callers succeeds; the others
        receive TASK_NOT_OPEN.

        Error precedence:
        1. TASK_NOT_FOUND
        2. TASK_NOT_OPEN: not open or already assigned
        3. SELF_ASSIGNMENT: worker is the owner
        4. USER_NOT_FOUND: worker has no balance account to be credited
        """
        task = await self._run(self._accept_task_sync, worker_id, task_id)
        self._logger.info("Task accepted", extra={"task_id": task_id, "worker_id": worker_id})
        self._dispatcher.dispatch(
            task["created_by"],
            events.TASK_ACCEPTED,
            {"task_id": task_id, "title": task["title"], "worker_id": worker_id},
        )
        return task

    async def report_time(self, worker_id: str, task_id: str, hours: Decimal) -> dict[str, Any]:
        """
        Record the worker's hours for the current assignment.

        Any positive amount is accepted; the owner is the approval gate.
        The response flags reports above 1.5 times the offer.

        Error precedence:
        1. TASK_NOT_FOUND
        2. NOT_ASSIGNEE
        3. WRONG_STATE: task not in progress
        4. INVALID_HOURS
        """
        task = await self._run(self._report_time_sync, worker_id, task_id, hours)
        exceeds_offer = task["exceeds_offer"]
        self._logger.info(
            "Time reported",
            extra={
                "task_id": task_id,
                "worker_id": worker_id,
                "hours": str(hours),
                "exceeds_offer": exceeds_offer,
            },
        )
        self._dispatcher.dispatch(
            task["created_by"],
            events.TIME_REPORTED,
            {"task_id": task_id, "title": task["title"], "hours": to_json(hours)},
        )
        return task

    async def approve_and_complete(self, owner_id: str, task_id: str) -> dict[str, Any]:
        """
        Approve the reported hours and complete the task.

        One transaction appends the ledger entry, credits the worker
        (and debits the owner in transfer settlement) and marks the task
        completed. A retry after success fails with WRONG_STATE.

        Error precedence:
        1. TASK_NOT_FOUND
        2. NOT_OWNER
        3. WRONG_STATE: task not in progress
        4. NO_REPORTED_HOURS
        5. DUPLICATE_LEDGER_ENTRY
        6. USER_NOT_FOUND / INSUFFICIENT_BALANCE: balance update failed
        """
        result = await self._run(self._approve_sync, owner_id, task_id)
        worker_id = result["assigned_to"]
        self._logger.info(
            "Task completed",
            extra={
                "task_id": task_id,
                "worker_id": worker_id,
                "time_earned": result["ledger_entry"]["time_earned"],
                "settlement": self._settlement,
            },
        )
        payload = {
            "task_id": task_id,
            "title": result["title"],
            "time_earned": result["ledger_entry"]["time_earned"],
        }
        self._dispatcher.dispatch(owner_id, events.TASK_COMPLETED, payload)
        self._dispatcher.dispatch(worker_id, events.TASK_COMPLETED, payload)
        return result

    async def unassign(self, owner_id: str, task_id: str) -> dict[str, Any]:
        """
        Return an in-progress task to open, discarding the assignment and report.

        Error precedence:
        1. TASK_NOT_FOUND
        2. NOT_OWNER
        3. WRONG_STATE: task not in progress
        """
        task, former_worker = await self._run(self._unassign_sync, owner_id, task_id)
        self._logger.info(
            "Task unassigned",
            extra={"task_id": task_id, "former_worker_id": former_worker},
        )
        self._dispatcher.dispatch(
            former_worker,
            events.TASK_UNASSIGNED,
            {"task_id": task_id, "title": task["title"]},
        )
        return task

    async def cancel_task(self, owner_id: str, task_id: str) -> dict[str, Any]:
        """
        Cancel a task that has not been completed.

        An in-progress assignment and any pending report are discarded.

        Error precedence:
        1. TASK_NOT_FOUND
        2. NOT_OWNER
        3. WRONG_STATE: task already completed or cancelled
        """
        task, former_worker = await self._run(self._cancel_sync, owner_id, task_id)
        self._logger.info(
            "Task cancelled",
            extra={"task_id": task_id, "former_worker_id": former_worker},
        )
        if former_worker is not None:
            self._dispatcher.dispatch(
                former_worker,
                events.TASK_CANCELLED,
                {"task_id": task_id, "title": task["title"]},
            )
        return task

    async def delete_task(self, owner_id: str, task_id: str) -> dict[str, Any]:
        """
        Delete a task in any state.

        Ledger entries of a completed task are kept.

        Error precedence:
        1. TASK_NOT_FOUND
        2. NOT_OWNER
        """
        task = await self._run(self._delete_sync, owner_id, task_id)
        self._logger.info("Task deleted", extra={"task_id": task_id, "status": task["status"]})
        if task["status"] == TaskStatus.IN_PROGRESS and task["assigned_to"] is not None:
            self._dispatcher.dispatch(
                task["assigned_to"],
                events.TASK_DELETED,
                {"task_id": task_id, "title": task["title"]},
            )
        return {"task_id": task_id, "deleted": True}

    def _stats_sync(self) -> dict[str, Any]:
        counts = self._store.count_tasks_by_status()
        tasks_by_status = {status.value: counts.get(status.value, 0) for status in TaskStatus}
        return {
            "total_tasks": sum(counts.values()),
            "tasks_by_status": tasks_by_status,
        }

    async def get_stats(self) -> dict[str, Any]:
        """Return task counts for the health endpoint."""
        return await self._run(self._stats_sync)
