"""Fire-and-forget delivery of task events to the notification dispatcher."""

from __future__ import annotations

import asyncio
from typing import TYPE_CHECKING, Any

from time_bank_service.logging import get_logger

if TYPE_CHECKING:
    from time_bank_service.clients.notification_client import NotificationClient

TASK_ACCEPTED = "task_accepted"
TIME_REPORTED = "time_reported"
TASK_COMPLETED = "task_completed"
TASK_UNASSIGNED = "task_unassigned"
TASK_CANCELLED = "task_cancelled"
TASK_DELETED = "task_deleted"


class NotificationDispatcher:
    """
    Schedules notifications as background tasks.

    Delivery never blocks or fails the operation that triggered it:
    errors are logged and dropped. With no client configured, events
    are only logged.
    """

    def __init__(self, client: NotificationClient | None) -> None:
        self._client = client
        self._pending: set[asyncio.Task[None]] = set()
        self._logger = get_logger(__name__)

    def set_client(self, client: NotificationClient | None) -> None:
        """Replace the delivery client."""
        self._client = client

    @property
    def pending_count(self) -> int:
        """Number of deliveries still in flight."""
        return len(self._pending)

    def dispatch(self, user_id: str, event_type: str, payload: dict[str, Any]) -> None:
        """Schedule delivery of one event to one user."""
        if self._client is None:
            self._logger.debug(
                "Notifications disabled, event not delivered",
                extra={"user_id": user_id, "event_type": event_type},
            )
            return

        task = asyncio.get_running_loop().create_task(
            self._deliver(self._client, user_id, event_type, payload)
        )
        self._pending.add(task)
        task.add_done_callback(self._pending.discard)

    async def _deliver(
        self,
        client: NotificationClient,
        user_id: str,
        event_type: str,
        payload: dict[str, Any],
    ) -> None:
        try:
            await client.notify(user_id, event_type, payload)
        except Exception as exc:  # noqa: BLE001
            self._logger.warning(
                "Notification delivery failed",
                extra={"user_id": user_id, "event_type": event_type, "error": str(exc)},
            )

    async def drain(self) -> None:
        """Wait for all scheduled deliveries to finish."""
        while self._pending:
            await asyncio.gather(*list(self._pending), return_exceptions=True)
