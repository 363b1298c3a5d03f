"""Async HTTP client for the session service."""

from __future__ import annotations

from typing import Any

import httpx

from time_bank_service.core.exceptions import ServiceError
from time_bank_service.logging import get_logger


class SessionClient:
    """
    Client for bearer-token verification.

    Sessions are issued and refreshed by the external auth provider. This
    service only asks it which user a token belongs to via POST to the
    configured verify path.
    """

    def __init__(
        self,
        base_url: str,
        verify_path: str,
        timeout_seconds: int,
    ) -> None:
        self._base_url = base_url
        self._verify_path = verify_path
        self._client = httpx.AsyncClient(
            base_url=base_url,
            timeout=httpx.Timeout(timeout_seconds),
        )

    async def verify_token(self, token: str) -> dict[str, Any]:
        """
        Verify a session token.

        Args:
            token: Opaque bearer token presented by the caller

        Returns:
            dict with keys: valid (bool), user_id (str)

        Raises:
            ServiceError: UNAUTHORIZED (401) if the session service says valid=false
            ServiceError: SESSION_SERVICE_UNAVAILABLE (502) on connection/timeout/unexpected errors
        """
        logger = get_logger(__name__)

        try:
            response = await self._client.post(self._verify_path, json={"token": token})
        except (httpx.ConnectError, httpx.TimeoutException) as exc:
            logger.warning(
                "Session service connection failed",
                extra={"error": str(exc), "base_url": self._base_url},
            )
            raise ServiceError(
                error="SESSION_SERVICE_UNAVAILABLE",
                message="Cannot connect to session service",
                status_code=502,
                details={"retryable": True},
            ) from exc
        except httpx.HTTPError as exc:
            logger.warning(
                "Session service HTTP error",
                extra={"error": str(exc), "base_url": self._base_url},
            )
            raise ServiceError(
                error="SESSION_SERVICE_UNAVAILABLE",
                message="Session service request failed",
                status_code=502,
                details={"retryable": True},
            ) from exc

        if response.status_code != 200:
            logger.warning(
                "Session service unexpected status",
                extra={"status_code": response.status_code, "base_url": self._base_url},
            )
            raise ServiceError(
                error="SESSION_SERVICE_UNAVAILABLE",
                message="Session service returned unexpected status",
                status_code=502,
                details={"retryable": True},
            )

        result: dict[str, Any] = response.json()

        if not result.get("valid", False):
            raise ServiceError(
                error="UNAUTHORIZED",
                message="Session token is invalid or expired",
                status_code=401,
                details={},
            )

        return result

    async def close(self) -> None:
        """Close the underlying HTTP client."""
        await self._client.aclose()
