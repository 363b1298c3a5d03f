"""Balance account endpoints."""

from __future__ import annotations

from typing import Any

from fastapi import APIRouter, Request
from fastapi.responses import JSONResponse

from time_bank_service.routers.validation import require_account_manager, resolve_caller

router = APIRouter()


@router.post("/accounts", status_code=201)
async def open_account(request: Request) -> JSONResponse:
    """Open a balance account for the caller."""
    caller_id = await resolve_caller(request)
    result = await require_account_manager().open_account(caller_id)
    return JSONResponse(status_code=201, content=result)


# MUST be before GET /accounts/{user_id}
@router.get("/accounts/me")
async def get_own_account(request: Request) -> dict[str, Any]:
    """Get the caller's balance."""
    caller_id = await resolve_caller(request)
    return await require_account_manager().get_account(caller_id)


@router.get("/accounts/{user_id}")
async def get_account(user_id: str) -> dict[str, Any]:
    """Get a user's balance."""
    return await require_account_manager().get_account(user_id)


@router.get("/accounts/{user_id}/ledger")
async def list_ledger(user_id: str) -> dict[str, Any]:
    """List hours credited to a user, newest first."""
    entries = await require_account_manager().list_ledger(user_id)
    return {"user_id": user_id, "entries": entries}
