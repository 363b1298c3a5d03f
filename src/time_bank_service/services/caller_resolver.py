"""Resolve the calling user from a bearer session token."""

from __future__ import annotations

from typing import TYPE_CHECKING, Any

from time_bank_service.core.exceptions import ServiceError

if TYPE_CHECKING:
    from time_bank_service.clients.session_client import SessionClient


def extract_bearer_token(authorization: str | None) -> str:
    """Extract the token from an Authorization header value."""
    if authorization is None:
        raise ServiceError("UNAUTHORIZED", "Missing Authorization header", 401, {})

    if not authorization.startswith("Bearer "):
        raise ServiceError(
            "UNAUTHORIZED",
            "Authorization header must use Bearer scheme",
            401,
            {},
        )

    token = authorization[len("Bearer ") :].strip()
    if not token:
        raise ServiceError("UNAUTHORIZED", "Bearer token must not be empty", 401, {})

    return token


class CallerResolver:
    """Maps an Authorization header to the user id of the caller."""

    def __init__(self, session_client: SessionClient) -> None:
        self._session_client = session_client

    def set_session_client(self, session_client: SessionClient) -> None:
        """Replace the session client."""
        self._session_client = session_client

    async def resolve(self, authorization: str | None) -> str:
        """
        Verify the bearer token and return the caller's user id.

        Raises:
            ServiceError: UNAUTHORIZED, SESSION_SERVICE_UNAVAILABLE
        """
        token = extract_bearer_token(authorization)

        result: Any
        try:
            result = await self._session_client.verify_token(token)
        except ServiceError:
            raise
        except Exception as exc:
            raise ServiceError(
                "SESSION_SERVICE_UNAVAILABLE",
                "Cannot connect to session service",
                502,
                {"retryable": True},
            ) from exc

        user_id = result.get("user_id") if isinstance(result, dict) else None
        if not isinstance(user_id, str) or len(user_id) < 1:
            raise ServiceError("UNAUTHORIZED", "Session token has no user", 401, {})
        return user_id
