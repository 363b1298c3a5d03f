"""Service-layer fixtures backed by a temporary SQLite database."""

from __future__ import annotations

from decimal import Decimal
from typing import TYPE_CHECKING
from unittest.mock import AsyncMock

import pytest

from tests.helpers import OTHER, OWNER, WORKER, build_manager
from time_bank_service.services.account_manager import AccountManager
from time_bank_service.services.balance_store import BalanceStore
from time_bank_service.services.database import Database
from time_bank_service.services.ledger_store import LedgerStore
from time_bank_service.services.notification_dispatcher import NotificationDispatcher
from time_bank_service.services.task_store import TaskStore

if TYPE_CHECKING:
    from collections.abc import Iterator
    from pathlib import Path

    from time_bank_service.services.task_manager import TaskManager


@pytest.fixture
def database(tmp_path: Path) -> Iterator[Database]:
    """A fresh database file per test."""
    db = Database(str(tmp_path / "time-bank.db"), timeout_seconds=2)
    yield db
    db.close()


@pytest.fixture
def task_store(database: Database) -> TaskStore:
    return TaskStore(database)


@pytest.fixture
def ledger_store(database: Database) -> LedgerStore:
    return LedgerStore(database)


@pytest.fixture
def balance_store(database: Database) -> BalanceStore:
    return BalanceStore(database)


@pytest.fixture
def notification_client() -> AsyncMock:
    """Stand-in for the notification dispatcher HTTP client."""
    client = AsyncMock()
    client.notify = AsyncMock(return_value=None)
    return client


@pytest.fixture
def dispatcher(notification_client: AsyncMock) -> NotificationDispatcher:
    return NotificationDispatcher(client=notification_client)


@pytest.fixture
def manager(
    database: Database,
    task_store: TaskStore,
    ledger_store: LedgerStore,
    balance_store: BalanceStore,
    dispatcher: NotificationDispatcher,
) -> TaskManager:
    """TaskManager in credit-only settlement with owner, worker and bystander accounts."""
    balance_store.open_account(OWNER, Decimal("10"))
    balance_store.open_account(WORKER, Decimal("0"))
    balance_store.open_account(OTHER, Decimal("1"))
    return build_manager(database, task_store, ledger_store, balance_store, dispatcher)


@pytest.fixture
def account_manager(balance_store: BalanceStore, ledger_store: LedgerStore) -> AccountManager:
    return AccountManager(balance_store, ledger_store, initial_balance=Decimal("2"))
