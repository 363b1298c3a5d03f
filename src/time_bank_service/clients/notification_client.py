"""Async HTTP client for the external notification dispatcher."""

from __future__ import annotations

from typing import Any

import httpx


class NotificationDeliveryError(Exception):
    """Raised when the dispatcher did not accept a notification."""


class NotificationClient:
    """
    Posts task events to the notification dispatcher.

    The dispatcher owns push tokens, delivery and retries. This client
    only hands over `{user_id, event_type, payload}`.
    """

    def __init__(self, base_url: str, notify_path: str, timeout_seconds: int) -> None:
        self._base_url = base_url
        self._notify_path = notify_path
        self._client = httpx.AsyncClient(
            base_url=base_url,
            timeout=httpx.Timeout(timeout_seconds),
        )

    async def notify(self, user_id: str, event_type: str, payload: dict[str, Any]) -> None:
        """
        Send one notification.

        Raises:
            NotificationDeliveryError: transport failure or non-2xx response
        """
        try:
            response = await self._client.post(
                self._notify_path,
                json={"user_id": user_id, "event_type": event_type, "payload": payload},
            )
        except httpx.HTTPError as exc:
            msg = f"Notification dispatcher unreachable at {self._base_url}"
            raise NotificationDeliveryError(msg) from exc

        if response.status_code >= 300:
            msg = f"Notification dispatcher returned status {response.status_code}"
            raise NotificationDeliveryError(msg)

    async def close(self) -> None:
        """Close the underlying HTTP client."""
        await self._client.aclose()
