"""Task lifecycle endpoints."""

from __future__ import annotations

from typing import Any

from fastapi import APIRouter, Request
from fastapi.responses import JSONResponse

from time_bank_service.routers.validation import (
    optional_string,
    parse_attachments,
    parse_hours,
    parse_json_body,
    parse_min_time,
    parse_pagination,
    require_task_manager,
    resolve_caller,
)

router = APIRouter()


# ---------------------------------------------------------------------------
# POST /tasks: create task
# ---------------------------------------------------------------------------


@router.post("/tasks", status_code=201)
async def create_task(request: Request) -> JSONResponse:
    """Post a help request offering hour credits."""
    caller_id = await resolve_caller(request)

    body = await request.body()
    data = {} if body == b"" else parse_json_body(body)

    raw_time = data.get("time_offered")
    fields: dict[str, Any] = {
        "title": data.get("title"),
        "description": optional_string(data, "description"),
        "location": optional_string(data, "location"),
        "availability": optional_string(data, "availability"),
        "attachments": parse_attachments(data),
        "time_offered": None if raw_time is None else parse_hours(raw_time, "time_offered"),
    }

    result = await require_task_manager().create_task(caller_id, fields)
    return JSONResponse(status_code=201, content=result)


# ---------------------------------------------------------------------------
# Collection reads (MUST be before GET /tasks/{task_id})
# ---------------------------------------------------------------------------


@router.get("/tasks")
async def list_tasks(request: Request) -> dict[str, Any]:
    """List tasks with optional creator, assignee and status filters."""
    limit, offset = parse_pagination(request)
    tasks = await require_task_manager().list_tasks(
        created_by=request.query_params.get("created_by"),
        assigned_to=request.query_params.get("assigned_to"),
        status=request.query_params.get("status"),
        limit=limit,
        offset=offset,
    )
    return {"tasks": tasks}


@router.get("/tasks/open")
async def list_open_tasks(request: Request) -> dict[str, Any]:
    """Browse open tasks the caller could accept."""
    caller_id = await resolve_caller(request)
    limit, offset = parse_pagination(request)
    tasks = await require_task_manager().list_open_tasks(
        caller_id,
        keyword=request.query_params.get("keyword"),
        location=request.query_params.get("location"),
        availability=request.query_params.get("availability"),
        min_time=parse_min_time(request),
        limit=limit,
        offset=offset,
    )
    return {"tasks": tasks}


@router.get("/tasks/pending-reports")
async def list_pending_reports(request: Request) -> dict[str, Any]:
    """List the caller's in-progress tasks still waiting for a time report."""
    caller_id = await resolve_caller(request)
    tasks = await require_task_manager().list_pending_reports(caller_id)
    return {"tasks": tasks}


# ---------------------------------------------------------------------------
# Single task
# ---------------------------------------------------------------------------


@router.get("/tasks/{task_id}")
async def get_task(task_id: str) -> dict[str, Any]:
    """Get full task details."""
    return await require_task_manager().get_task(task_id)


@router.delete("/tasks/{task_id}")
async def delete_task(task_id: str, request: Request) -> JSONResponse:
    """Delete a task in any state. Owner only."""
    caller_id = await resolve_caller(request)
    result = await require_task_manager().delete_task(caller_id, task_id)
    return JSONResponse(status_code=200, content=result)


# ---------------------------------------------------------------------------
# Lifecycle actions
# ---------------------------------------------------------------------------


@router.post("/tasks/{task_id}/accept")
async def accept_task(task_id: str, request: Request) -> JSONResponse:
    """Take on an open task."""
    caller_id = await resolve_caller(request)
    result = await require_task_manager().accept_task(caller_id, task_id)
    return JSONResponse(status_code=200, content=result)


@router.post("/tasks/{task_id}/report")
async def report_time(task_id: str, request: Request) -> JSONResponse:
    """Report the hours spent on the caller's current assignment."""
    caller_id = await resolve_caller(request)

    body = await request.body()
    data = parse_json_body(body)
    hours = parse_hours(data.get("hours"), "hours")

    result = await require_task_manager().report_time(caller_id, task_id, hours)
    return JSONResponse(status_code=200, content=result)


@router.post("/tasks/{task_id}/approve")
async def approve_task(task_id: str, request: Request) -> JSONResponse:
    """Approve reported hours, credit the worker and complete the task."""
    caller_id = await resolve_caller(request)
    result = await require_task_manager().approve_and_complete(caller_id, task_id)
    return JSONResponse(status_code=200, content=result)


@router.post("/tasks/{task_id}/unassign")
async def unassign_worker(task_id: str, request: Request) -> JSONResponse:
    """Return an in-progress task to the open pool."""
    caller_id = await resolve_caller(request)
    result = await require_task_manager().unassign(caller_id, task_id)
    return JSONResponse(status_code=200, content=result)


@router.post("/tasks/{task_id}/cancel")
async def cancel_task(task_id: str, request: Request) -> JSONResponse:
    """Cancel a task that has not been completed."""
    caller_id = await resolve_caller(request)
    result = await require_task_manager().cancel_task(caller_id, task_id)
    return JSONResponse(status_code=200, content=result)
