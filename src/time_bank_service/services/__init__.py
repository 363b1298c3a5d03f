"""Service layer components."""

from time_bank_service.services.account_manager import AccountManager
from time_bank_service.services.caller_resolver import CallerResolver
from time_bank_service.services.notification_dispatcher import NotificationDispatcher
from time_bank_service.services.task_manager import TaskManager

__all__ = [
    "AccountManager",
    "CallerResolver",
    "NotificationDispatcher",
    "TaskManager",
]
