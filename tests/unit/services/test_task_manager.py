"""Unit tests for TaskManager lifecycle operations."""

from __future__ import annotations

import asyncio
from decimal import Decimal
from typing import TYPE_CHECKING, Any
from unittest.mock import AsyncMock

import pytest
from freezegun import freeze_time

from tests.helpers import OTHER, OWNER, WORKER, build_manager, task_fields
from time_bank_service.core.exceptions import ServiceError
from time_bank_service.services.database import StoreTimeoutError

if TYPE_CHECKING:
    from time_bank_service.services.balance_store import BalanceStore
    from time_bank_service.services.database import Database
    from time_bank_service.services.ledger_store import LedgerStore
    from time_bank_service.services.notification_dispatcher import NotificationDispatcher
    from time_bank_service.services.task_manager import TaskManager
    from time_bank_service.services.task_store import TaskStore


async def _create(manager: TaskManager, **overrides: Any) -> str:
    task = await manager.create_task(OWNER, task_fields(**overrides))
    return str(task["task_id"])


async def _in_progress(manager: TaskManager, **overrides: Any) -> str:
    task_id = await _create(manager, **overrides)
    await manager.accept_task(WORKER, task_id)
    return task_id


async def _reported(manager: TaskManager, hours: str = "2", **overrides: Any) -> str:
    task_id = await _in_progress(manager, **overrides)
    await manager.report_time(WORKER, task_id, Decimal(hours))
    return task_id


async def _expect_error(awaitable: Any, code: str, status_code: int) -> ServiceError:
    with pytest.raises(ServiceError) as exc_info:
        await awaitable
    assert exc_info.value.error == code
    assert exc_info.value.status_code == status_code
    return exc_info.value


# ---------------------------------------------------------------------------
# create_task
# ---------------------------------------------------------------------------


@pytest.mark.unit
async def test_create_task_returns_open_task(manager: TaskManager) -> None:
    task = await manager.create_task(
        OWNER,
        task_fields(
            time_offered=Decimal("1.5"),
            attachments=["https://files.example/a.jpg", "https://files.example/b.jpg"],
        ),
    )

    assert task["task_id"].startswith("t-")
    assert task["status"] == "open"
    assert task["created_by"] == OWNER
    assert task["assigned_to"] is None
    assert task["time_offered"] == 1.5
    assert [a["file_url"] for a in task["attachments"]] == [
        "https://files.example/a.jpg",
        "https://files.example/b.jpg",
    ]


@pytest.mark.unit
async def test_create_task_does_not_touch_balance(
    manager: TaskManager,
    balance_store: BalanceStore,
) -> None:
    await _create(manager, time_offered=Decimal("10"))
    assert balance_store.get_balance(OWNER) == Decimal("10")


@pytest.mark.unit
async def test_create_task_offer_above_balance_rejected(manager: TaskManager) -> None:
    error = await _expect_error(
        manager.create_task(OWNER, task_fields(time_offered=Decimal("10.01"))),
        "INSUFFICIENT_BALANCE",
        402,
    )
    assert error.details["time_balance"] == 10


@pytest.mark.unit
async def test_create_task_without_account_rejected(manager: TaskManager) -> None:
    await _expect_error(
        manager.create_task("u-stranger", task_fields()),
        "USER_NOT_FOUND",
        404,
    )


@pytest.mark.unit
@pytest.mark.parametrize("hours", ["0", "-1", "NaN", "Infinity"])
async def test_create_task_invalid_hours(manager: TaskManager, hours: str) -> None:
    await _expect_error(
        manager.create_task(OWNER, task_fields(time_offered=Decimal(hours))),
        "INVALID_HOURS",
        400,
    )


@pytest.mark.unit
async def test_create_task_requires_title(manager: TaskManager) -> None:
    await _expect_error(
        manager.create_task(OWNER, task_fields(title="   ")),
        "INVALID_PAYLOAD",
        400,
    )


@pytest.mark.unit
async def test_create_task_too_many_attachments(manager: TaskManager) -> None:
    urls = [f"https://files.example/{index}.jpg" for index in range(4)]
    await _expect_error(
        manager.create_task(OWNER, task_fields(attachments=urls)),
        "INVALID_PAYLOAD",
        400,
    )


# ---------------------------------------------------------------------------
# accept_task
# ---------------------------------------------------------------------------


@pytest.mark.unit
async def test_accept_assigns_worker(manager: TaskManager) -> None:
    task_id = await _create(manager)

    task = await manager.accept_task(WORKER, task_id)

    assert task["status"] == "in_progress"
    assert task["assigned_to"] == WORKER
    assert task["accepted_at"] is not None


@pytest.mark.unit
async def test_accept_own_task_rejected(manager: TaskManager) -> None:
    task_id = await _create(manager)
    await _expect_error(manager.accept_task(OWNER, task_id), "SELF_ASSIGNMENT", 400)


@pytest.mark.unit
async def test_accept_unknown_task(manager: TaskManager) -> None:
    await _expect_error(manager.accept_task(WORKER, "t-missing"), "TASK_NOT_FOUND", 404)


@pytest.mark.unit
async def test_accept_taken_task_rejected(manager: TaskManager) -> None:
    task_id = await _in_progress(manager)
    await _expect_error(manager.accept_task(OTHER, task_id), "TASK_NOT_OPEN", 409)


@pytest.mark.unit
async def test_accept_without_account_rejected(manager: TaskManager) -> None:
    task_id = await _create(manager)
    await _expect_error(manager.accept_task("u-stranger", task_id), "USER_NOT_FOUND", 404)


@pytest.mark.unit
async def test_concurrent_accepts_have_one_winner(
    manager: TaskManager,
    balance_store: BalanceStore,
) -> None:
    task_id = await _create(manager)
    workers = [f"u-worker-{index}" for index in range(6)]
    for worker in workers:
        balance_store.open_account(worker, Decimal("0"))

    results = await asyncio.gather(
        *(manager.accept_task(worker, task_id) for worker in workers),
        return_exceptions=True,
    )

    winners = [result for result in results if isinstance(result, dict)]
    losers = [result for result in results if isinstance(result, ServiceError)]
    assert len(winners) == 1
    assert len(losers) == 5
    assert all(loser.error == "TASK_NOT_OPEN" for loser in losers)

    task = await manager.get_task(task_id)
    assert task["assigned_to"] == winners[0]["assigned_to"]


# ---------------------------------------------------------------------------
# report_time
# ---------------------------------------------------------------------------


@pytest.mark.unit
async def test_report_time_records_hours(manager: TaskManager) -> None:
    task_id = await _in_progress(manager)

    task = await manager.report_time(WORKER, task_id, Decimal("1.75"))

    assert task["reported_hours"] == 1.75
    assert task["reported_by"] == WORKER
    assert task["status"] == "in_progress"
    assert task["exceeds_offer"] is False


@pytest.mark.unit
async def test_report_time_flags_large_reports(manager: TaskManager) -> None:
    task_id = await _in_progress(manager, time_offered=Decimal("2"))

    task = await manager.report_time(WORKER, task_id, Decimal("3.01"))

    assert task["reported_hours"] == 3.01
    assert task["exceeds_offer"] is True


@pytest.mark.unit
async def test_report_time_can_be_replaced(manager: TaskManager) -> None:
    task_id = await _reported(manager, hours="1")

    task = await manager.report_time(WORKER, task_id, Decimal("2.5"))

    assert task["reported_hours"] == 2.5


@pytest.mark.unit
async def test_report_time_by_non_assignee(manager: TaskManager) -> None:
    task_id = await _in_progress(manager)
    await _expect_error(
        manager.report_time(OTHER, task_id, Decimal("1")),
        "NOT_ASSIGNEE",
        403,
    )


@pytest.mark.unit
async def test_report_time_on_open_task(manager: TaskManager) -> None:
    task_id = await _create(manager)
    await _expect_error(
        manager.report_time(WORKER, task_id, Decimal("1")),
        "NOT_ASSIGNEE",
        403,
    )


@pytest.mark.unit
@pytest.mark.parametrize("hours", ["0", "-2", "-0.005"])
async def test_report_time_invalid_hours(manager: TaskManager, hours: str) -> None:
    task_id = await _in_progress(manager)
    await _expect_error(
        manager.report_time(WORKER, task_id, Decimal(hours)),
        "INVALID_HOURS",
        400,
    )


@pytest.mark.unit
async def test_report_time_accepts_tiny_positive_hours(manager: TaskManager) -> None:
    task_id = await _in_progress(manager)

    task = await manager.report_time(WORKER, task_id, Decimal("0.005"))

    assert task["reported_hours"] == 0.005


# ---------------------------------------------------------------------------
# approve_and_complete
# ---------------------------------------------------------------------------


@pytest.mark.unit
async def test_approve_credits_worker_and_completes(
    manager: TaskManager,
    balance_store: BalanceStore,
    ledger_store: LedgerStore,
) -> None:
    task_id = await _reported(manager, hours="2.5", time_offered=Decimal("2"))

    result = await manager.approve_and_complete(OWNER, task_id)

    assert result["status"] == "completed"
    assert result["completed_at"] is not None
    assert result["ledger_entry"]["user_id"] == WORKER
    assert result["ledger_entry"]["time_earned"] == 2.5
    assert result["worker_balance"] == 2.5
    assert balance_store.get_balance(WORKER) == Decimal("2.5")
    assert balance_store.get_balance(OWNER) == Decimal("10")
    assert ledger_store.exists_for_task(task_id)


@pytest.mark.unit
async def test_report_above_offer_is_approved_in_full(
    manager: TaskManager,
    balance_store: BalanceStore,
    ledger_store: LedgerStore,
) -> None:
    task_id = await _in_progress(manager, time_offered=Decimal("2"))

    reported = await manager.report_time(WORKER, task_id, Decimal("3.5"))
    assert reported["exceeds_offer"] is True

    result = await manager.approve_and_complete(OWNER, task_id)

    assert result["status"] == "completed"
    entries = ledger_store.list_by_user(WORKER)
    assert [(e["task_id"], e["time_earned"]) for e in entries] == [(task_id, Decimal("3.5"))]
    assert balance_store.get_balance(WORKER) == Decimal("3.5")


@pytest.mark.unit
async def test_approve_credits_exact_fractional_hours(
    manager: TaskManager,
    balance_store: BalanceStore,
    ledger_store: LedgerStore,
) -> None:
    task_id = await _reported(manager, hours="1.234", time_offered=Decimal("1.125"))

    result = await manager.approve_and_complete(OWNER, task_id)

    assert result["time_offered"] == 1.125
    assert result["ledger_entry"]["time_earned"] == 1.234
    assert result["worker_balance"] == 1.234
    [entry] = ledger_store.list_by_user(WORKER)
    assert entry["time_earned"] == Decimal("1.234")
    assert balance_store.get_balance(WORKER) == Decimal("1.234")


@pytest.mark.unit
async def test_approve_twice_rejected_without_second_credit(
    manager: TaskManager,
    balance_store: BalanceStore,
) -> None:
    task_id = await _reported(manager, hours="1")
    await manager.approve_and_complete(OWNER, task_id)

    await _expect_error(manager.approve_and_complete(OWNER, task_id), "WRONG_STATE", 409)

    assert balance_store.get_balance(WORKER) == Decimal("1")


@pytest.mark.unit
async def test_concurrent_approvals_credit_once(
    manager: TaskManager,
    balance_store: BalanceStore,
    ledger_store: LedgerStore,
) -> None:
    task_id = await _reported(manager, hours="1.5")

    results = await asyncio.gather(
        *(manager.approve_and_complete(OWNER, task_id) for _ in range(5)),
        return_exceptions=True,
    )

    assert sum(1 for result in results if isinstance(result, dict)) == 1
    losers = [result for result in results if not isinstance(result, dict)]
    assert len(losers) == 4
    for loser in losers:
        assert isinstance(loser, ServiceError)
        assert loser.error == "WRONG_STATE"
    assert balance_store.get_balance(WORKER) == Decimal("1.5")
    assert len(ledger_store.list_by_user(WORKER)) == 1


@pytest.mark.unit
async def test_approve_without_report(manager: TaskManager) -> None:
    task_id = await _in_progress(manager)
    await _expect_error(manager.approve_and_complete(OWNER, task_id), "NO_REPORTED_HOURS", 409)


@pytest.mark.unit
async def test_approve_by_non_owner(manager: TaskManager, balance_store: BalanceStore) -> None:
    task_id = await _reported(manager)
    await _expect_error(manager.approve_and_complete(WORKER, task_id), "NOT_OWNER", 403)
    assert balance_store.get_balance(WORKER) == Decimal("0")


@pytest.mark.unit
async def test_approve_open_task(manager: TaskManager) -> None:
    task_id = await _create(manager)
    await _expect_error(manager.approve_and_complete(OWNER, task_id), "WRONG_STATE", 409)


@pytest.mark.unit
async def test_approve_with_existing_ledger_entry_rolls_back(
    manager: TaskManager,
    balance_store: BalanceStore,
    ledger_store: LedgerStore,
) -> None:
    task_id = await _reported(manager, hours="1")
    ledger_store.append(
        {
            "entry_id": "le-stale",
            "task_id": task_id,
            "user_id": WORKER,
            "time_earned": Decimal("1"),
            "timestamp": "2026-01-01T00:00:00Z",
        }
    )

    await _expect_error(
        manager.approve_and_complete(OWNER, task_id),
        "DUPLICATE_LEDGER_ENTRY",
        409,
    )

    task = await manager.get_task(task_id)
    assert task["status"] == "in_progress"
    assert balance_store.get_balance(WORKER) == Decimal("0")


@pytest.mark.unit
async def test_transfer_settlement_debits_owner(
    database: Database,
    task_store: TaskStore,
    ledger_store: LedgerStore,
    balance_store: BalanceStore,
    dispatcher: NotificationDispatcher,
) -> None:
    balance_store.open_account(OWNER, Decimal("3"))
    balance_store.open_account(WORKER, Decimal("0"))
    manager = build_manager(
        database, task_store, ledger_store, balance_store, dispatcher, settlement="transfer"
    )
    task_id = await _reported(manager, hours="2", time_offered=Decimal("2"))

    await manager.approve_and_complete(OWNER, task_id)

    assert balance_store.get_balance(OWNER) == Decimal("1")
    assert balance_store.get_balance(WORKER) == Decimal("2")


@pytest.mark.unit
async def test_transfer_settlement_rolls_back_when_owner_short(
    database: Database,
    task_store: TaskStore,
    ledger_store: LedgerStore,
    balance_store: BalanceStore,
    dispatcher: NotificationDispatcher,
) -> None:
    balance_store.open_account(OWNER, Decimal("2"))
    balance_store.open_account(WORKER, Decimal("0"))
    manager = build_manager(
        database, task_store, ledger_store, balance_store, dispatcher, settlement="transfer"
    )
    task_id = await _reported(manager, hours="5", time_offered=Decimal("2"))

    await _expect_error(
        manager.approve_and_complete(OWNER, task_id),
        "INSUFFICIENT_BALANCE",
        402,
    )

    assert balance_store.get_balance(OWNER) == Decimal("2")
    assert balance_store.get_balance(WORKER) == Decimal("0")
    assert not ledger_store.exists_for_task(task_id)
    task = await manager.get_task(task_id)
    assert task["status"] == "in_progress"


@pytest.mark.unit
def test_unknown_settlement_rejected(
    database: Database,
    task_store: TaskStore,
    ledger_store: LedgerStore,
    balance_store: BalanceStore,
    dispatcher: NotificationDispatcher,
) -> None:
    with pytest.raises(ValueError, match="settlement"):
        build_manager(
            database, task_store, ledger_store, balance_store, dispatcher, settlement="escrow"
        )


# ---------------------------------------------------------------------------
# unassign / cancel / delete
# ---------------------------------------------------------------------------


@pytest.mark.unit
async def test_unassign_reopens_and_clears_report(
    manager: TaskManager,
    balance_store: BalanceStore,
    ledger_store: LedgerStore,
) -> None:
    task_id = await _reported(manager, hours="1.0")

    task = await manager.unassign(OWNER, task_id)

    assert task["status"] == "open"
    assert task["assigned_to"] is None
    assert task["reported_hours"] is None
    assert task["reported_by"] is None
    assert task["reported_at"] is None
    assert task["accepted_at"] is None
    assert balance_store.get_balance(OWNER) == Decimal("10")
    assert balance_store.get_balance(WORKER) == Decimal("0")
    assert ledger_store.list_by_user(WORKER) == []


@pytest.mark.unit
async def test_reaccept_after_unassign_starts_clean(manager: TaskManager) -> None:
    task_id = await _reported(manager, hours="1.0")
    await manager.unassign(OWNER, task_id)

    reaccepted = await manager.accept_task(OTHER, task_id)

    assert reaccepted["assigned_to"] == OTHER
    assert reaccepted["status"] == "in_progress"
    assert reaccepted["reported_hours"] is None
    assert reaccepted["reported_by"] is None
    assert reaccepted["reported_at"] is None
    pending = await manager.list_pending_reports(OTHER)
    assert [task["task_id"] for task in pending] == [task_id]
    await _expect_error(manager.approve_and_complete(OWNER, task_id), "NO_REPORTED_HOURS", 409)


@pytest.mark.unit
async def test_unassign_open_task(manager: TaskManager) -> None:
    task_id = await _create(manager)
    await _expect_error(manager.unassign(OWNER, task_id), "WRONG_STATE", 409)


@pytest.mark.unit
async def test_unassign_by_non_owner(manager: TaskManager) -> None:
    task_id = await _in_progress(manager)
    await _expect_error(manager.unassign(WORKER, task_id), "NOT_OWNER", 403)


@pytest.mark.unit
async def test_cancel_in_progress_task(manager: TaskManager) -> None:
    task_id = await _reported(manager)

    task = await manager.cancel_task(OWNER, task_id)

    assert task["status"] == "cancelled"
    assert task["cancelled_at"] is not None
    assert task["assigned_to"] is None
    await _expect_error(manager.report_time(WORKER, task_id, Decimal("1")), "NOT_ASSIGNEE", 403)


@pytest.mark.unit
async def test_cancel_completed_task_rejected(manager: TaskManager) -> None:
    task_id = await _reported(manager)
    await manager.approve_and_complete(OWNER, task_id)

    await _expect_error(manager.cancel_task(OWNER, task_id), "WRONG_STATE", 409)


@pytest.mark.unit
async def test_delete_completed_task_keeps_ledger(
    manager: TaskManager,
    ledger_store: LedgerStore,
) -> None:
    task_id = await _reported(manager)
    await manager.approve_and_complete(OWNER, task_id)

    result = await manager.delete_task(OWNER, task_id)

    assert result == {"task_id": task_id, "deleted": True}
    await _expect_error(manager.get_task(task_id), "TASK_NOT_FOUND", 404)
    assert ledger_store.exists_for_task(task_id)


@pytest.mark.unit
async def test_delete_by_non_owner(manager: TaskManager) -> None:
    task_id = await _create(manager)
    await _expect_error(manager.delete_task(WORKER, task_id), "NOT_OWNER", 403)


# ---------------------------------------------------------------------------
# Reads
# ---------------------------------------------------------------------------


@pytest.mark.unit
async def test_list_open_hides_callers_own_tasks(manager: TaskManager) -> None:
    open_id = await _create(manager, title="Paint a fence")
    await _in_progress(manager, title="Fix a tap")

    as_worker = await manager.list_open_tasks(
        WORKER,
        keyword=None,
        location=None,
        availability=None,
        min_time=None,
        limit=None,
        offset=None,
    )
    as_owner = await manager.list_open_tasks(
        OWNER,
        keyword=None,
        location=None,
        availability=None,
        min_time=None,
        limit=None,
        offset=None,
    )

    assert [task["task_id"] for task in as_worker] == [open_id]
    assert as_owner == []


@pytest.mark.unit
async def test_list_pending_reports(manager: TaskManager) -> None:
    pending_id = await _in_progress(manager, title="Pending")
    await _reported(manager, title="Reported")

    tasks = await manager.list_pending_reports(WORKER)

    assert [task["task_id"] for task in tasks] == [pending_id]


@pytest.mark.unit
async def test_list_tasks_rejects_unknown_status(manager: TaskManager) -> None:
    await _expect_error(
        manager.list_tasks(
            created_by=None, assigned_to=None, status="archived", limit=None, offset=None
        ),
        "INVALID_PAYLOAD",
        400,
    )


@pytest.mark.unit
async def test_get_stats_counts_every_status(manager: TaskManager) -> None:
    await _create(manager)
    await _in_progress(manager)

    stats = await manager.get_stats()

    assert stats["total_tasks"] == 2
    assert stats["tasks_by_status"] == {
        "open": 1,
        "in_progress": 1,
        "completed": 0,
        "cancelled": 0,
    }


# ---------------------------------------------------------------------------
# Notifications and store failures
# ---------------------------------------------------------------------------


@pytest.mark.unit
async def test_lifecycle_notifies_counterparties(
    manager: TaskManager,
    dispatcher: NotificationDispatcher,
    notification_client: AsyncMock,
) -> None:
    task_id = await _reported(manager)
    await manager.approve_and_complete(OWNER, task_id)
    await dispatcher.drain()

    sent = [(call.args[0], call.args[1]) for call in notification_client.notify.await_args_list]
    assert (OWNER, "task_accepted") in sent
    assert (OWNER, "time_reported") in sent
    assert (OWNER, "task_completed") in sent
    assert (WORKER, "task_completed") in sent


@pytest.mark.unit
async def test_notification_failure_does_not_fail_operation(
    manager: TaskManager,
    dispatcher: NotificationDispatcher,
    notification_client: AsyncMock,
) -> None:
    notification_client.notify = AsyncMock(side_effect=ConnectionError("dispatcher down"))
    task_id = await _create(manager)

    task = await manager.accept_task(WORKER, task_id)
    await dispatcher.drain()

    assert task["status"] == "in_progress"


@pytest.mark.unit
async def test_store_timeout_maps_to_retryable_error(
    manager: TaskManager,
    monkeypatch: pytest.MonkeyPatch,
) -> None:
    def stalled(_task_id: str) -> None:
        raise StoreTimeoutError("stalled")

    monkeypatch.setattr(manager._store, "get_task", stalled)

    error = await _expect_error(manager.get_task("t-any"), "STORE_TIMEOUT", 503)
    assert error.details["retryable"] is True


@pytest.mark.unit
async def test_stats_timeout_maps_to_retryable_error(
    manager: TaskManager,
    monkeypatch: pytest.MonkeyPatch,
) -> None:
    def stalled() -> dict[str, int]:
        raise StoreTimeoutError("stalled")

    monkeypatch.setattr(manager._store, "count_tasks_by_status", stalled)

    error = await _expect_error(manager.get_stats(), "STORE_TIMEOUT", 503)
    assert error.details["retryable"] is True


@pytest.mark.unit
async def test_lifecycle_timestamps(manager: TaskManager) -> None:
    with freeze_time("2026-05-01 09:00:00") as frozen:
        task_id = await _create(manager)

        frozen.move_to("2026-05-01 10:30:00")
        await manager.accept_task(WORKER, task_id)

        frozen.move_to("2026-05-01 12:00:00")
        await manager.report_time(WORKER, task_id, Decimal("1"))

        frozen.move_to("2026-05-02 08:15:00")
        result = await manager.approve_and_complete(OWNER, task_id)

    assert result["created_at"] == "2026-05-01T09:00:00.000000Z"
    assert result["accepted_at"] == "2026-05-01T10:30:00.000000Z"
    assert result["reported_at"] == "2026-05-01T12:00:00.000000Z"
    assert result["completed_at"] == "2026-05-02T08:15:00.000000Z"
    assert result["ledger_entry"]["timestamp"] == result["completed_at"]
