"""Application state management."""

from __future__ import annotations

from dataclasses import dataclass, field
from datetime import UTC, datetime
from typing import TYPE_CHECKING, Any

if TYPE_CHECKING:
    from time_bank_service.clients.notification_client import NotificationClient
    from time_bank_service.clients.session_client import SessionClient
    from time_bank_service.services.account_manager import AccountManager
    from time_bank_service.services.caller_resolver import CallerResolver
    from time_bank_service.services.database import Database
    from time_bank_service.services.notification_dispatcher import NotificationDispatcher
    from time_bank_service.services.task_manager import TaskManager


@dataclass
class AppState:
    """Runtime application state."""

    start_time: datetime = field(default_factory=lambda: datetime.now(UTC))
    database: Database | None = None
    task_manager: TaskManager | None = None
    account_manager: AccountManager | None = None
    session_client: SessionClient | None = None
    notification_client: NotificationClient | None = None
    caller_resolver: CallerResolver | None = None
    dispatcher: NotificationDispatcher | None = None

    def __setattr__(self, name: str, value: Any) -> None:
        """Keep resolver and dispatcher client references in sync with AppState fields."""
        super().__setattr__(name, value)

        caller_resolver = self.__dict__.get("caller_resolver")
        if name == "session_client" and value is not None and caller_resolver is not None:
            caller_resolver.set_session_client(value)
        elif name == "caller_resolver" and value is not None:
            session_client = self.__dict__.get("session_client")
            if session_client is not None:
                value.set_session_client(session_client)

        dispatcher = self.__dict__.get("dispatcher")
        if name == "notification_client" and dispatcher is not None:
            dispatcher.set_client(value)
        elif name == "dispatcher" and value is not None:
            notification_client = self.__dict__.get("notification_client")
            if notification_client is not None:
                value.set_client(notification_client)

    @property
    def uptime_seconds(self) -> float:
        """Calculate uptime in seconds."""
        return (datetime.now(UTC) - self.start_time).total_seconds()

    @property
    def started_at(self) -> str:
        """ISO format start time."""
        return self.start_time.isoformat(timespec="seconds").replace("+00:00", "Z")


# Global application state container
_state_container: dict[str, AppState | None] = {"app_state": None}


def get_app_state() -> AppState:
    """Get the current application state."""
    app_state = _state_container["app_state"]
    if app_state is None:
        msg = "Application state not initialized"
        raise RuntimeError(msg)
    return app_state


def init_app_state() -> AppState:
    """Initialize application state. Called during startup."""
    app_state = AppState()
    _state_container["app_state"] = app_state
    return app_state


def reset_app_state() -> None:
    """Reset application state. Used in testing."""
    _state_container["app_state"] = None
