"""Application lifecycle management."""

from __future__ import annotations

from contextlib import asynccontextmanager
from typing import TYPE_CHECKING

from time_bank_service.clients.notification_client import NotificationClient
from time_bank_service.clients.session_client import SessionClient
from time_bank_service.config import get_settings
from time_bank_service.core.state import init_app_state
from time_bank_service.logging import get_logger, setup_logging
from time_bank_service.services.account_manager import AccountManager
from time_bank_service.services.balance_store import BalanceStore
from time_bank_service.services.caller_resolver import CallerResolver
from time_bank_service.services.database import Database
from time_bank_service.services.ledger_store import LedgerStore
from time_bank_service.services.notification_dispatcher import NotificationDispatcher
from time_bank_service.services.task_manager import TaskManager
from time_bank_service.services.task_store import TaskStore

if TYPE_CHECKING:
    from collections.abc import AsyncIterator

    from fastapi import FastAPI


@asynccontextmanager
async def lifespan(_app: FastAPI) -> AsyncIterator[None]:
    """Manage application lifecycle."""
    # === STARTUP ===
    settings = get_settings()

    setup_logging(settings.logging.level, settings.logging.directory)
    logger = get_logger(__name__)

    state = init_app_state()

    database = Database(settings.database.path, settings.database.timeout_seconds)
    state.database = database

    # HTTP client for bearer session verification
    session_client = SessionClient(
        base_url=settings.session.base_url,
        verify_path=settings.session.verify_path,
        timeout_seconds=settings.session.timeout_seconds,
    )
    state.session_client = session_client
    state.caller_resolver = CallerResolver(session_client=session_client)

    notification_client: NotificationClient | None = None
    if settings.notifications.enabled:
        notification_client = NotificationClient(
            base_url=settings.notifications.base_url,
            notify_path=settings.notifications.notify_path,
            timeout_seconds=settings.notifications.timeout_seconds,
        )
    dispatcher = NotificationDispatcher(client=notification_client)
    state.dispatcher = dispatcher
    state.notification_client = notification_client

    ledger = LedgerStore(database)
    balances = BalanceStore(database)
    state.task_manager = TaskManager(
        database,
        TaskStore(database),
        ledger,
        balances,
        dispatcher,
        settlement=settings.ledger.settlement,
        max_title_length=settings.limits.max_title_length,
        max_text_length=settings.limits.max_text_length,
        max_attachments_per_task=settings.limits.max_attachments_per_task,
    )
    state.account_manager = AccountManager(
        balances,
        ledger,
        initial_balance=settings.ledger.initial_balance,
    )

    logger.info(
        "Service starting",
        extra={
            "service": settings.service.name,
            "version": settings.service.version,
            "port": settings.server.port,
            "db_path": settings.database.path,
            "session_base_url": settings.session.base_url,
            "notifications_enabled": settings.notifications.enabled,
            "settlement": settings.ledger.settlement,
        },
    )

    yield  # Application runs here

    # === SHUTDOWN ===
    logger.info("Service shutting down", extra={"uptime_seconds": state.uptime_seconds})

    await dispatcher.drain()

    # Clients may have been replaced after startup
    if state.session_client is not None:
        await state.session_client.close()
    if state.notification_client is not None:
        await state.notification_client.close()

    database.close()
