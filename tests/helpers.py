"""Shared test helpers for building managers and task payloads."""

from __future__ import annotations

from decimal import Decimal
from typing import TYPE_CHECKING

from time_bank_service.services.task_manager import TaskManager

if TYPE_CHECKING:
    from time_bank_service.services.balance_store import BalanceStore
    from time_bank_service.services.database import Database
    from time_bank_service.services.ledger_store import LedgerStore
    from time_bank_service.services.notification_dispatcher import NotificationDispatcher
    from time_bank_service.services.task_store import TaskStore

OWNER = "u-owner"
WORKER = "u-worker"
OTHER = "u-other"


def build_manager(
    database: Database,
    task_store: TaskStore,
    ledger_store: LedgerStore,
    balance_store: BalanceStore,
    dispatcher: NotificationDispatcher,
    *,
    settlement: str = "credit_only",
) -> TaskManager:
    """Build a TaskManager with test limits."""
    return TaskManager(
        database,
        task_store,
        ledger_store,
        balance_store,
        dispatcher,
        settlement=settlement,
        max_title_length=200,
        max_text_length=1000,
        max_attachments_per_task=3,
    )


def task_fields(**overrides: object) -> dict[str, object]:
    """Valid create_task fields with optional overrides."""
    fields: dict[str, object] = {
        "title": "Help moving a sofa",
        "description": "Second floor, no elevator",
        "location": "Kreuzberg",
        "availability": "weekends",
        "attachments": [],
        "time_offered": Decimal("2"),
    }
    fields.update(overrides)
    return fields


def task_row(task_id: str, **overrides: object) -> dict[str, object]:
    """A complete tasks-table row for direct store inserts."""
    row: dict[str, object] = {
        "task_id": task_id,
        "created_by": OWNER,
        "title": "Walk the dog",
        "description": None,
        "location": "Neukoelln",
        "availability": "mornings",
        "time_offered": Decimal("1.5"),
        "status": "open",
        "assigned_to": None,
        "reported_hours": None,
        "reported_by": None,
        "reported_at": None,
        "created_at": "2026-01-01T10:00:00.000000Z",
        "accepted_at": None,
        "completed_at": None,
        "cancelled_at": None,
    }
    row.update(overrides)
    return row


# ---------------------------------------------------------------------------
# HTTP-level users; the mocked session service accepts "session-<user_id>"
# ---------------------------------------------------------------------------
ALICE = "u-alice"
BOB = "u-bob"
CAROL = "u-carol"

SESSION_PREFIX = "session-"


def auth(user_id: str) -> dict[str, str]:
    """Authorization header for a user."""
    return {"Authorization": f"Bearer {SESSION_PREFIX}{user_id}"}
