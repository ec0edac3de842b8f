"""Task API routes.

This module provides the task lifecycle endpoints:
- POST /api/tasks - Create a task (agent, honours Idempotency-Key)
- GET /api/tasks - List tasks filtered by TaskFilter query parameters
- GET /api/tasks/{task_id} - Read one task (lazy timeout applied)
- POST /api/tasks/{task_id}/accept - Agent or worker
- POST /api/tasks/{task_id}/skip - Assigned worker
- POST /api/tasks/{task_id}/submit - Assigned worker or owning agent
- POST /api/tasks/{task_id}/approve - Owning agent (review gate)
- POST /api/tasks/{task_id}/reject - Owning agent (review gate)

Pattern:
- Authenticate (and pass the quota gate) through dependencies
- Validate the body into a typed request model
- Commit the transition and its outbox event together
- Drain the outbox in a background task after the response
"""

from typing import Any

import structlog
from fastapi import APIRouter, BackgroundTasks, Depends, Query, Request
from fastapi.responses import Response
from sqlalchemy.ext.asyncio import AsyncSession

from app.constants import IDEMPOTENCY_KEY_HEADER
from app.database import get_session
from app.exceptions import RequestValidationFailed
from app.routes.deps import (
    AuthContext,
    business_payload,
    parse_body,
    read_payload,
    require_agent,
    require_agent_or_worker,
    require_worker,
    respond,
    respond_stored,
)
from app.schemas.task import TaskAccept, TaskCreate, TaskResponse, TaskSubmit
from app.services import task_service
from app.services.idempotency import run_idempotent
from app.services.outbox import drain_outbox_in_background
from app.services.task_service import TaskFilter

log = structlog.get_logger(__name__)
router = APIRouter(prefix="/api/tasks", tags=["tasks"])


def _task_body(task: Any) -> dict[str, Any]:
    return TaskResponse.from_task(task).model_dump(mode="json")


@router.post("")
async def create_task(
    request: Request,
    auth: AuthContext = Depends(require_agent),
    payload: dict[str, Any] = Depends(read_payload),
    session: AsyncSession = Depends(get_session),
) -> Response:
    """Create an open task owned by the calling agent.

    Returns:
        201 Created: {"status": "open", "id": ..., "task": {...}}
        A repeated Idempotency-Key replays the first response verbatim.
    """
    data = parse_body(TaskCreate, payload)

    async def operation() -> tuple[int, dict[str, Any]]:
        task = await task_service.create_task(session, auth.actor_id, data)
        return 201, {"status": "open", "id": task.id, "task": _task_body(task)}

    stored = await run_idempotent(
        session,
        route="tasks.create",
        key=request.headers.get(IDEMPOTENCY_KEY_HEADER),
        scope=auth.actor_id,
        payload=business_payload(payload),
        operation=operation,
    )
    await session.commit()
    return respond_stored(request, stored)


@router.get("")
async def list_tasks(
    request: Request,
    status: str | None = Query(default=None),
    human_id: str | None = Query(default=None),
    ai_account_id: str | None = Query(default=None),
    deliverable: str | None = Query(default=None),
    origin_country: str | None = Query(default=None),
    limit: int = Query(default=50),
    session: AsyncSession = Depends(get_session),
) -> Response:
    raw_filters = {
        TaskFilter.STATUS: status,
        TaskFilter.HUMAN_ID: human_id,
        TaskFilter.AI_ACCOUNT_ID: ai_account_id,
        TaskFilter.DELIVERABLE: deliverable,
        TaskFilter.ORIGIN_COUNTRY: origin_country,
    }
    filters = {key: value for key, value in raw_filters.items() if value}
    tasks = await task_service.list_tasks(session, filters, limit=limit)
    return respond(request, {"tasks": [_task_body(task) for task in tasks]})


@router.get("/{task_id}")
async def get_task(
    request: Request, task_id: str, session: AsyncSession = Depends(get_session)
) -> Response:
    task = await task_service.get_task(session, task_id)
    return respond(request, {"task": _task_body(task)})


@router.post("/{task_id}/accept")
async def accept_task(
    request: Request,
    task_id: str,
    background_tasks: BackgroundTasks,
    auth: AuthContext = Depends(require_agent_or_worker),
    payload: dict[str, Any] = Depends(read_payload),
    session: AsyncSession = Depends(get_session),
) -> Response:
    """Assign a worker to an open task.

    An agent names the worker with ``human_id``; a worker accepts for
    themselves.
    """
    data = parse_body(TaskAccept, payload)
    if auth.is_agent:
        if not data.human_id:
            raise RequestValidationFailed(detail={"message": "human_id is required"})
        task = await task_service.accept_task(
            session, task_id, data.human_id, ai_account_id=auth.actor_id
        )
    else:
        task = await task_service.accept_task(session, task_id, auth.actor_id)
    await session.commit()

    background_tasks.add_task(drain_outbox_in_background)
    return respond(
        request,
        {"status": "accepted", "task_id": task.id, "human_id": task.human_id},
    )


@router.post("/{task_id}/skip")
async def skip_task(
    request: Request,
    task_id: str,
    auth: AuthContext = Depends(require_worker),
    session: AsyncSession = Depends(get_session),
) -> Response:
    task = await task_service.skip_task(session, task_id, auth.actor_id)
    await session.commit()
    return respond(request, {"status": "skipped", "task_id": task.id})


@router.post("/{task_id}/submit")
async def submit_task(
    request: Request,
    task_id: str,
    background_tasks: BackgroundTasks,
    auth: AuthContext = Depends(require_agent_or_worker),
    payload: dict[str, Any] = Depends(read_payload),
    session: AsyncSession = Depends(get_session),
) -> Response:
    """Store the deliverable and finish the task.

    Returns:
        200 OK: {"status": "stored", "submission_id": ..., "task_status": ...}
    """
    data = parse_body(TaskSubmit, payload)
    if auth.is_agent:
        task, submission = await task_service.submit_task(
            session, task_id, data, ai_account_id=auth.actor_id
        )
    else:
        task, submission = await task_service.submit_task(
            session, task_id, data, human_id=auth.actor_id
        )
    await session.commit()

    background_tasks.add_task(drain_outbox_in_background)
    return respond(
        request,
        {
            "status": "stored",
            "task_id": task.id,
            "submission_id": submission.id,
            "task_status": task.status.value,
        },
    )


@router.post("/{task_id}/approve")
async def approve_task(
    request: Request,
    task_id: str,
    background_tasks: BackgroundTasks,
    auth: AuthContext = Depends(require_agent),
    session: AsyncSession = Depends(get_session),
) -> Response:
    task = await task_service.approve_task(session, task_id, auth.actor_id)
    await session.commit()

    background_tasks.add_task(drain_outbox_in_background)
    return respond(request, {"status": "completed", "task_id": task.id})


@router.post("/{task_id}/reject")
async def reject_task(
    request: Request,
    task_id: str,
    background_tasks: BackgroundTasks,
    auth: AuthContext = Depends(require_agent),
    session: AsyncSession = Depends(get_session),
) -> Response:
    task = await task_service.reject_task(session, task_id, auth.actor_id)
    await session.commit()

    background_tasks.add_task(drain_outbox_in_background)
    return respond(request, {"status": "rejected", "task_id": task.id})
