"""
FastAPI routes for avatar video tasks.

  POST   /avatar-tasks                          — Create a task and start processing
  GET    /avatar-tasks                          — List the caller's tasks (paginated)
  GET    /avatar-tasks/{id}                     — Get one task (status polling)
  POST   /avatar-tasks/{id}/select_subject      — Choose a subject, continue to generation
  POST   /avatar-tasks/{id}/retry               — Resume a failed task
  POST   /avatar-tasks/{id}/cancel              — Stop a running task
  DELETE /avatar-tasks/{id}                     — Delete a task
  POST   /avatar-tasks/validate-audio-duration  — Check driving audio length

The caller is identified by the X-User-Id header, set by the web app after
it has authenticated the user. Every per-task route checks ownership.
"""

import math
import logging

from fastapi import APIRouter, Header, HTTPException, Query, Request

from .duration import MAX_AUDIO_SECONDS, is_duration_allowed, probe_duration
from .errors import (
    InvalidSelectionError,
    InvalidTaskStateError,
    RunnerClosedError,
    TaskBusyError,
    TaskNotFoundError,
)
from .models import (
    AudioDurationRequest,
    AudioDurationResponse,
    AvatarTask,
    CreateTaskRequest,
    SelectSubjectRequest,
    TaskListResponse,
)
from .orchestrator import AvatarTaskService

logger = logging.getLogger(__name__)

avatar_router = APIRouter(prefix="/avatar-tasks", tags=["avatar-tasks"])

MAX_PAGE_SIZE = 100
DEFAULT_PAGE_SIZE = 20


def _get_service(request: Request) -> AvatarTaskService:
    service = getattr(request.app.state, "avatar_service", None)
    if service is None:
        raise HTTPException(status_code=503, detail="Avatar service is not configured")
    return service


async def _owned_task(service: AvatarTaskService, task_id: str, user_id: str) -> AvatarTask:
    """Load a task, raising PermissionError when it belongs to someone else."""
    task = await service.get_task(task_id)
    if task.user_id != user_id:
        raise PermissionError("Not your task")
    return task


def _to_http_error(e: Exception, action: str) -> HTTPException:
    if isinstance(e, HTTPException):
        return e
    if isinstance(e, TaskNotFoundError):
        return HTTPException(status_code=404, detail="Task not found")
    if isinstance(e, PermissionError):
        return HTTPException(status_code=403, detail=str(e))
    if isinstance(e, (InvalidTaskStateError, InvalidSelectionError)):
        return HTTPException(status_code=400, detail=str(e))
    if isinstance(e, TaskBusyError):
        return HTTPException(status_code=409, detail=str(e))
    if isinstance(e, RunnerClosedError):
        return HTTPException(status_code=503, detail=str(e))

    logger.error(f"{action} failed: {e}", exc_info=True)
    return HTTPException(status_code=500, detail=str(e))


# ── Create / list ────────────────────────────────────────────────────────────

@avatar_router.post("", response_model=AvatarTask)
async def create_task(body: CreateTaskRequest, request: Request, x_user_id: str = Header(...)):
    """Persist the task and return at once; processing continues in the background."""
    service = _get_service(request)
    try:
        return await service.create_task(x_user_id, body)
    except Exception as e:
        raise _to_http_error(e, "Create task")


@avatar_router.get("", response_model=TaskListResponse)
async def list_tasks(
    request: Request,
    x_user_id: str = Header(...),
    page: int = Query(1, ge=1),
    limit: int = Query(DEFAULT_PAGE_SIZE, ge=1, le=MAX_PAGE_SIZE),
):
    """The caller's tasks, newest first."""
    service = _get_service(request)
    try:
        tasks = await service.list_tasks(x_user_id)
    except Exception as e:
        raise _to_http_error(e, "List tasks")

    start = (page - 1) * limit
    return TaskListResponse(
        tasks=tasks[start:start + limit],
        total=len(tasks),
        page=page,
        limit=limit,
        total_pages=math.ceil(len(tasks) / limit),
    )


# ── Audio validation ─────────────────────────────────────────────────────────

@avatar_router.post("/validate-audio-duration", response_model=AudioDurationResponse)
async def validate_audio_duration(body: AudioDurationRequest):
    """Unknown durations are reported as valid."""
    duration = await probe_duration(body.audio_url)
    return AudioDurationResponse(
        is_valid=is_duration_allowed(duration),
        duration=duration,
        max_duration=MAX_AUDIO_SECONDS,
    )


# ── Per-task operations ──────────────────────────────────────────────────────

@avatar_router.get("/{task_id}", response_model=AvatarTask)
async def get_task(task_id: str, request: Request, x_user_id: str = Header(...)):
    service = _get_service(request)
    try:
        return await _owned_task(service, task_id, x_user_id)
    except Exception as e:
        raise _to_http_error(e, "Get task")


@avatar_router.post("/{task_id}/select_subject", response_model=AvatarTask)
async def select_subject(
    task_id: str,
    body: SelectSubjectRequest,
    request: Request,
    x_user_id: str = Header(...),
):
    """
    Continue a multi-subject task with the chosen subject.

    Errors:
      - 400: Task is not awaiting selection, or mask_index is out of range
      - 409: Task is already being processed
    """
    service = _get_service(request)
    try:
        await _owned_task(service, task_id, x_user_id)
        return await service.select_subject_and_continue(task_id, body.mask_index)
    except Exception as e:
        raise _to_http_error(e, "Select subject")


@avatar_router.post("/{task_id}/retry", response_model=AvatarTask)
async def retry_task(task_id: str, request: Request, x_user_id: str = Header(...)):
    """
    Resume a failed task from its last checkpoint.

    Errors:
      - 400: Task has not failed
      - 409: Task is already being processed
    """
    service = _get_service(request)
    try:
        await _owned_task(service, task_id, x_user_id)
        return await service.retry_task(task_id)
    except Exception as e:
        raise _to_http_error(e, "Retry task")


@avatar_router.post("/{task_id}/cancel", response_model=AvatarTask)
async def cancel_task(task_id: str, request: Request, x_user_id: str = Header(...)):
    service = _get_service(request)
    try:
        await _owned_task(service, task_id, x_user_id)
        return await service.cancel_task(task_id)
    except Exception as e:
        raise _to_http_error(e, "Cancel task")


@avatar_router.delete("/{task_id}")
async def delete_task(task_id: str, request: Request, x_user_id: str = Header(...)):
    service = _get_service(request)
    try:
        await _owned_task(service, task_id, x_user_id)
        await service.delete_task(task_id)
    except Exception as e:
        raise _to_http_error(e, "Delete task")
    return {"status": "deleted", "id": task_id}
