"""Shared request validation helpers for time bank routers."""

from __future__ import annotations

import json
from decimal import Decimal, InvalidOperation
from typing import TYPE_CHECKING, Any

from time_bank_service.core.exceptions import ServiceError
from time_bank_service.core.state import get_app_state

if TYPE_CHECKING:
    from fastapi import Request

    from time_bank_service.services.account_manager import AccountManager
    from time_bank_service.services.task_manager import TaskManager


def parse_json_body(raw_body: bytes) -> dict[str, Any]:
    """Parse JSON body, raising ServiceError on failure."""
    try:
        data = json.loads(raw_body)
    except (json.JSONDecodeError, UnicodeDecodeError) as exc:
        raise ServiceError(
            "INVALID_JSON",
            "Request body is not valid JSON",
            400,
            {},
        ) from exc

    if not isinstance(data, dict):
        raise ServiceError(
            "INVALID_JSON",
            "Request body must be a JSON object",
            400,
            {},
        )

    return data


def optional_string(data: dict[str, Any], field_name: str) -> str | None:
    """Extract an optional string field; null and absent both map to None."""
    value = data.get(field_name)
    if value is None:
        return None
    if not isinstance(value, str):
        raise ServiceError(
            "INVALID_PAYLOAD",
            f"Field '{field_name}' must be a string",
            400,
            {},
        )
    return value


def parse_hours(value: Any, field_name: str) -> Decimal:
    """
    Convert a JSON number into a Decimal hour amount.

    Booleans and strings are rejected. The range is checked
    by the task manager, which reports it as INVALID_HOURS.
    """
    if value is None:
        raise ServiceError(
            "INVALID_PAYLOAD",
            f"Missing required field: {field_name}",
            400,
            {},
        )
    if isinstance(value, bool) or not isinstance(value, (int, float)):
        raise ServiceError(
            "INVALID_HOURS",
            f"Field '{field_name}' must be a number",
            400,
            {},
        )
    try:
        hours = Decimal(str(value))
    except InvalidOperation as exc:
        raise ServiceError(
            "INVALID_HOURS",
            f"Field '{field_name}' must be a number",
            400,
            {},
        ) from exc
    if not hours.is_finite():
        raise ServiceError("INVALID_HOURS", f"Field '{field_name}' must be finite", 400, {})
    return hours


def parse_attachments(data: dict[str, Any]) -> list[str]:
    """Extract the optional list of attachment URLs."""
    value = data.get("attachments")
    if value is None:
        return []
    if not isinstance(value, list) or not all(
        isinstance(item, str) and item.strip() for item in value
    ):
        raise ServiceError(
            "INVALID_PAYLOAD",
            "Field 'attachments' must be a list of non-empty URLs",
            400,
            {},
        )
    return [item.strip() for item in value]


def parse_pagination(request: Request) -> tuple[int | None, int | None]:
    """Read `limit` and `offset` query parameters."""
    offset_raw = request.query_params.get("offset")
    limit_raw = request.query_params.get("limit")

    offset: int | None = None
    limit: int | None = None

    if offset_raw is not None:
        try:
            offset = int(offset_raw)
        except ValueError as exc:
            raise ServiceError("INVALID_PAYLOAD", "offset must be an integer", 400, {}) from exc
        if offset < 0:
            raise ServiceError("INVALID_PAYLOAD", "offset must be >= 0", 400, {})

    if limit_raw is not None:
        try:
            limit = int(limit_raw)
        except ValueError as exc:
            raise ServiceError("INVALID_PAYLOAD", "limit must be an integer", 400, {}) from exc
        if limit <= 0:
            raise ServiceError("INVALID_PAYLOAD", "limit must be >= 1", 400, {})

    return limit, offset


def parse_min_time(request: Request) -> Decimal | None:
    """Read the `min_time` browse filter."""
    raw = request.query_params.get("min_time")
    if raw is None or raw == "":
        return None
    try:
        value = Decimal(raw)
    except InvalidOperation as exc:
        raise ServiceError("INVALID_PAYLOAD", "min_time must be a number", 400, {}) from exc
    if not value.is_finite() or value < 0:
        raise ServiceError("INVALID_PAYLOAD", "min_time must be >= 0", 400, {})
    return value


async def resolve_caller(request: Request) -> str:
    """Authenticate the request and return the caller's user id."""
    state = get_app_state()
    if state.caller_resolver is None:
        msg = "CallerResolver not initialized"
        raise RuntimeError(msg)
    return await state.caller_resolver.resolve(request.headers.get("authorization"))


def require_task_manager() -> TaskManager:
    """Return the task manager or fail loudly if startup did not run."""
    state = get_app_state()
    if state.task_manager is None:
        msg = "TaskManager not initialized"
        raise RuntimeError(msg)
    return state.task_manager


def require_account_manager() -> AccountManager:
    """Return the account manager or fail loudly if startup did not run."""
    state = get_app_state()
    if state.account_manager is None:
        msg = "AccountManager not initialized"
        raise RuntimeError(msg)
    return state.account_manager
