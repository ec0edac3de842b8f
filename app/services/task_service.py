"""Task lifecycle service.

This module owns every task state change:
- Creation and normalized reads (lazy timeout / auto-approve on read)
- A periodic sweep applying the same transitions to tasks nobody reads
- Filtered listing keyed by the TaskFilter enum
- Accept, skip, submit, approve and reject
- Legacy USD payout and admin soft delete / restore

Architecture:
- Every transition is a conditional UPDATE guarded by the current status
  (and assignee where relevant); zero affected rows means another writer won
  and the caller gets a conflict after re-reading the row
- Transitions that emit a webhook event add the outbox row in the same
  transaction (see app.services.outbox)
- Lazy transitions on read commit immediately: the timeout is a fact about
  the task, not about the request that observed it
"""

import enum
from datetime import datetime, timedelta
from typing import Any

import structlog
from sqlalchemy import Select, and_, or_, select, update
from sqlalchemy.ext.asyncio import AsyncSession

from app.config import get_auto_approve_hours, is_review_gate_enabled
from app.constants import EVENT_TASK_ACCEPTED, EVENT_TASK_COMPLETED, EVENT_TASK_FAILED
from app.database import insert_for
from app.exceptions import (
    AccessDenied,
    RequestValidationFailed,
    ResourceNotFound,
    StateConflict,
)
from app.models import (
    TIMEOUT_ELIGIBLE_STATUSES,
    ContactStatus,
    DeliverableKind,
    FailureReason,
    Human,
    HumanStatus,
    PaidStatus,
    Submission,
    Task,
    TaskContact,
    TaskStatus,
    as_utc,
    new_id,
    utcnow,
)
from app.schemas.task import TaskCreate, TaskSubmit
from app.services.outbox import record_event
from app.services.payments import calculate_payout

log = structlog.get_logger(__name__)

MAX_LIST_LIMIT = 100


class TaskFilter(enum.Enum):
    """Supported task list filters (query parameter name → column)."""

    STATUS = "status"
    HUMAN_ID = "human_id"
    AI_ACCOUNT_ID = "ai_account_id"
    DELIVERABLE = "deliverable"
    ORIGIN_COUNTRY = "origin_country"


def _coerce_filter_value(task_filter: TaskFilter, raw: str) -> Any:
    try:
        if task_filter is TaskFilter.STATUS:
            return TaskStatus(raw)
        if task_filter is TaskFilter.DELIVERABLE:
            return DeliverableKind(raw)
    except ValueError as e:
        raise RequestValidationFailed(
            detail={"message": f"unsupported {task_filter.value}: {raw}"}
        ) from e
    if task_filter is TaskFilter.ORIGIN_COUNTRY:
        return raw.upper()
    return raw


_FILTER_COLUMNS = {
    TaskFilter.STATUS: Task.status,
    TaskFilter.HUMAN_ID: Task.human_id,
    TaskFilter.AI_ACCOUNT_ID: Task.ai_account_id,
    TaskFilter.DELIVERABLE: Task.deliverable,
    TaskFilter.ORIGIN_COUNTRY: Task.origin_country,
}


def build_task_query(filters: dict[TaskFilter, str], limit: int = 50) -> Select:
    """Build the list query from typed filters, newest first."""
    query = select(Task).where(Task.deleted_at.is_(None))
    for task_filter, raw in filters.items():
        column = _FILTER_COLUMNS[task_filter]
        query = query.where(column == _coerce_filter_value(task_filter, raw))
    limit = max(1, min(limit, MAX_LIST_LIMIT))
    return query.order_by(Task.created_at.desc(), Task.id).limit(limit)


# --- contact channel -------------------------------------------------------


async def ensure_pending_contact(session: AsyncSession, task_id: str) -> None:
    """Create the task's contact channel as pending if it does not exist."""
    await session.execute(
        insert_for(session, TaskContact)
        .values(task_id=task_id, status=ContactStatus.PENDING, created_at=utcnow())
        .on_conflict_do_nothing(index_elements=["task_id"])
    )


async def close_contact(session: AsyncSession, task_id: str, now: datetime | None = None) -> None:
    await session.execute(
        update(TaskContact)
        .where(TaskContact.task_id == task_id, TaskContact.status != ContactStatus.CLOSED)
        .values(status=ContactStatus.CLOSED, closed_at=now or utcnow())
        .execution_options(synchronize_session=False)
    )


async def _set_worker_status(
    session: AsyncSession, human_id: str | None, status: HumanStatus
) -> None:
    if not human_id:
        return
    await session.execute(
        update(Human)
        .where(Human.id == human_id)
        .values(status=status)
        .execution_options(synchronize_session=False)
    )


# --- creation and reads ----------------------------------------------------


async def create_task(session: AsyncSession, ai_account_id: str | None, data: TaskCreate) -> Task:
    """Create an open task owned by ``ai_account_id``.

    Raises:
        RequestValidationFailed: Past deadline or incomplete quote pair.
    """
    now = utcnow()
    deadline_at = as_utc(data.deadline_at)
    if deadline_at is not None and deadline_at <= now:
        raise RequestValidationFailed(detail={"message": "deadline_at must be in the future"})
    if (data.quote_amount_minor is None) != (data.quote_currency is None):
        raise RequestValidationFailed(
            detail={"message": "quote_amount_minor and quote_currency go together"}
        )

    task = Task(
        id=new_id(),
        ai_account_id=ai_account_id,
        description=data.description,
        description_display=data.description_display,
        origin_country=data.origin_country,
        budget_usd=data.budget_usd,
        quote_amount_minor=data.quote_amount_minor,
        quote_currency=data.quote_currency,
        deliverable=data.deliverable,
        deadline_at=deadline_at,
        deadline_minutes=data.deadline_minutes if deadline_at is None else None,
        status=TaskStatus.OPEN,
        paid_status=PaidStatus.PENDING,
        created_at=now,
        updated_at=now,
    )
    session.add(task)
    await session.flush()

    log.info(
        "task_created",
        task_id=task.id,
        ai_account_id=ai_account_id,
        origin_country=task.origin_country,
        deliverable=task.deliverable.value if task.deliverable else None,
    )
    return task


async def expire_task(session: AsyncSession, task: Task, now: datetime | None = None) -> bool:
    """Fail an overdue task with reason timeout.

    Returns:
        True if this call performed the transition. Concurrent callers observe
        zero affected rows and return False after re-reading the task.
    """
    now = now or utcnow()
    deadline = task.effective_deadline
    result = await session.execute(
        update(Task)
        .where(Task.id == task.id, Task.status.in_(TIMEOUT_ELIGIBLE_STATUSES))
        .values(
            status=TaskStatus.FAILED,
            failure_reason=FailureReason.TIMEOUT,
            deadline_at=deadline,
            updated_at=now,
        )
        .execution_options(synchronize_session=False)
    )
    won = result.rowcount == 1
    if won:
        await _set_worker_status(session, task.human_id, HumanStatus.AVAILABLE)
        await close_contact(session, task.id, now)
        await session.refresh(task)
        record_event(session, EVENT_TASK_FAILED, task)
        await session.commit()
        log.info("task_timed_out", task_id=task.id, human_id=task.human_id)
    else:
        await session.refresh(task)
    return won


async def auto_approve_task(session: AsyncSession, task: Task, now: datetime | None = None) -> bool:
    """Complete a review_pending task whose auto-approve deadline has passed."""
    now = now or utcnow()
    won = await _complete_from_review(session, task, now)
    if won:
        await session.commit()
        log.info("task_auto_approved", task_id=task.id)
    return won


async def apply_lazy_transitions(
    session: AsyncSession, task: Task, now: datetime | None = None
) -> Task:
    """Apply the timeout / auto-approve transitions a read is responsible for."""
    now = now or utcnow()
    if task.status in TIMEOUT_ELIGIBLE_STATUSES:
        deadline = task.effective_deadline
        if deadline is not None and now > deadline:
            await expire_task(session, task, now)
    elif task.status == TaskStatus.REVIEW_PENDING:
        review_deadline = as_utc(task.review_pending_deadline_at)
        if review_deadline is not None and now > review_deadline:
            await auto_approve_task(session, task, now)
    return task


async def sweep_overdue_tasks(
    session: AsyncSession, now: datetime | None = None
) -> tuple[int, int]:
    """Time out and auto-approve overdue tasks that no read has touched.

    Relative deadlines (deadline_minutes) are resolved in Python, so every
    live eligible task with one is loaded and checked.

    Returns:
        Tuple of (tasks timed out, tasks auto-approved).
    """
    now = now or utcnow()
    overdue = or_(
        and_(
            Task.status.in_(TIMEOUT_ELIGIBLE_STATUSES),
            or_(
                Task.deadline_at < now,
                and_(Task.deadline_at.is_(None), Task.deadline_minutes.is_not(None)),
            ),
        ),
        and_(
            Task.status == TaskStatus.REVIEW_PENDING,
            Task.review_pending_deadline_at < now,
        ),
    )
    candidates = (
        await session.execute(
            select(Task).where(Task.deleted_at.is_(None), overdue).order_by(Task.created_at)
        )
    ).scalars().all()

    timed_out = auto_approved = 0
    for task in candidates:
        if task.status == TaskStatus.REVIEW_PENDING:
            if await auto_approve_task(session, task, now):
                auto_approved += 1
            continue
        deadline = task.effective_deadline
        if deadline is not None and now > deadline and await expire_task(session, task, now):
            timed_out += 1

    if timed_out or auto_approved:
        log.info("overdue_tasks_swept", timed_out=timed_out, auto_approved=auto_approved)
    return timed_out, auto_approved


async def _load_task(session: AsyncSession, task_id: str, include_deleted: bool = False) -> Task:
    task = await session.get(Task, task_id, populate_existing=True)
    if task is None or (task.deleted_at is not None and not include_deleted):
        raise ResourceNotFound()
    return task


async def get_task(session: AsyncSession, task_id: str, now: datetime | None = None) -> Task:
    """Load a live task and apply lazy transitions.

    Raises:
        ResourceNotFound: Unknown or soft-deleted task.
    """
    task = await _load_task(session, task_id)
    return await apply_lazy_transitions(session, task, now)


async def list_tasks(
    session: AsyncSession,
    filters: dict[TaskFilter, str],
    limit: int = 50,
    now: datetime | None = None,
) -> list[Task]:
    result = await session.execute(build_task_query(filters, limit))
    tasks = list(result.scalars().all())
    for task in tasks:
        await apply_lazy_transitions(session, task, now)
    return tasks


# --- transitions -----------------------------------------------------------


def _raise_if_finished(task: Task) -> None:
    if task.status in (TaskStatus.COMPLETED, TaskStatus.REVIEW_PENDING):
        raise StateConflict("already_completed")
    if task.status == TaskStatus.FAILED and task.failure_reason == FailureReason.TIMEOUT:
        raise StateConflict("timeout")


async def accept_task(
    session: AsyncSession,
    task_id: str,
    human_id: str,
    ai_account_id: str | None = None,
) -> Task:
    """Assign ``human_id`` to an open task.

    Args:
        session: Database session.
        task_id: Task to accept.
        human_id: Worker taking the task.
        ai_account_id: Set when the owning agent accepts on the worker's
            behalf; must own the task.

    Returns:
        The accepted task. Re-accepting by the same worker is a no-op.

    Raises:
        ResourceNotFound: Unknown task or worker.
        AccessDenied: Agent does not own the task.
        StateConflict: already_completed, timeout, not_open, already_assigned,
            human_not_available.
        RequestValidationFailed: Worker has no payout destination.
    """
    task = await get_task(session, task_id)
    if ai_account_id is not None and task.ai_account_id != ai_account_id:
        raise AccessDenied()

    _raise_if_finished(task)
    if task.human_id == human_id and task.status == TaskStatus.ACCEPTED:
        log.info("task_accept_repeated", task_id=task.id, human_id=human_id)
        return task
    if task.human_id:
        raise StateConflict("already_assigned")
    if task.status != TaskStatus.OPEN:
        raise StateConflict("not_open")

    human = await session.get(Human, human_id, populate_existing=True)
    if human is None or human.deleted_at is not None:
        raise ResourceNotFound()
    destination = human.payout_destination
    if not destination:
        raise RequestValidationFailed(detail={"message": "worker has no payout destination"})
    if human.status != HumanStatus.AVAILABLE:
        raise StateConflict("human_not_available")

    result = await session.execute(
        update(Task)
        .where(Task.id == task.id, Task.status == TaskStatus.OPEN, Task.human_id.is_(None))
        .values(
            status=TaskStatus.ACCEPTED,
            human_id=human_id,
            payout_destination=destination,
            updated_at=utcnow(),
        )
        .execution_options(synchronize_session=False)
    )
    if result.rowcount != 1:
        await session.refresh(task)
        log.info("task_accept_lost_race", task_id=task.id, human_id=human_id)
        _raise_if_finished(task)
        raise StateConflict("already_assigned")

    await _set_worker_status(session, human_id, HumanStatus.BUSY)
    await ensure_pending_contact(session, task.id)
    await session.refresh(task)
    record_event(session, EVENT_TASK_ACCEPTED, task)

    log.info("task_accepted", task_id=task.id, human_id=human_id)
    return task


async def skip_task(session: AsyncSession, task_id: str, human_id: str | None) -> Task:
    """Release a task back to open.

    Only the assigned worker may release; an unassigned task cannot be skipped.

    Raises:
        RequestValidationFailed: missing_human.
        AccessDenied: not_assigned (task belongs to another worker).
        StateConflict: already_completed, timeout, not_open, not_assigned (unassigned task).
    """
    if not human_id:
        raise RequestValidationFailed("missing_human")

    task = await get_task(session, task_id)
    _raise_if_finished(task)
    if task.human_id is None:
        raise StateConflict("not_assigned")
    if task.human_id != human_id:
        raise AccessDenied("not_assigned")
    if task.status not in TIMEOUT_ELIGIBLE_STATUSES:
        raise StateConflict("not_open")

    previous_human_id = task.human_id
    result = await session.execute(
        update(Task)
        .where(
            Task.id == task.id,
            Task.status.in_(TIMEOUT_ELIGIBLE_STATUSES),
            Task.human_id == previous_human_id,
        )
        .values(
            status=TaskStatus.OPEN,
            human_id=None,
            payout_destination=None,
            updated_at=utcnow(),
        )
        .execution_options(synchronize_session=False)
    )
    if result.rowcount != 1:
        await session.refresh(task)
        _raise_if_finished(task)
        raise StateConflict("not_assigned")

    await _set_worker_status(session, previous_human_id, HumanStatus.AVAILABLE)
    await close_contact(session, task.id)
    await session.refresh(task)

    log.info("task_skipped", task_id=task.id, human_id=human_id)
    return task


async def submit_task(
    session: AsyncSession,
    task_id: str,
    data: TaskSubmit,
    human_id: str | None = None,
    ai_account_id: str | None = None,
) -> tuple[Task, Submission]:
    """Record the assignee's deliverable and finish the task.

    Without the review gate the task completes and ``task.completed`` is
    emitted. With the review gate it moves to review_pending until the owning
    agent approves (or the auto-approve deadline passes).

    Raises:
        AccessDenied: Agent does not own the task.
        StateConflict: timeout, already_completed, not_assigned.
        RequestValidationFailed: wrong_deliverable, missing_text, missing_content.
    """
    task = await get_task(session, task_id)
    if ai_account_id is not None and task.ai_account_id != ai_account_id:
        raise AccessDenied()

    _raise_if_finished(task)
    if task.status != TaskStatus.ACCEPTED or not task.human_id:
        raise StateConflict("not_assigned")
    if human_id is not None and task.human_id != human_id:
        raise StateConflict("not_assigned")

    expected = task.deliverable or DeliverableKind.TEXT
    if data.kind != expected:
        raise RequestValidationFailed(
            "wrong_deliverable",
            detail={"expected": expected.value, "received": data.kind.value},
        )
    if data.kind == DeliverableKind.TEXT and not data.text:
        raise RequestValidationFailed("missing_text")
    if data.kind != DeliverableKind.TEXT and not data.content_url:
        raise RequestValidationFailed("missing_content")

    now = utcnow()
    assignee = task.human_id
    submission = Submission(
        id=new_id(),
        task_id=task.id,
        human_id=assignee,
        kind=data.kind,
        text=data.text,
        content_url=data.content_url,
        created_at=now,
    )

    review_gate = is_review_gate_enabled()
    values: dict[str, Any] = {"submission_id": submission.id, "updated_at": now}
    if review_gate:
        values["status"] = TaskStatus.REVIEW_PENDING
        values["review_pending_deadline_at"] = now + timedelta(hours=get_auto_approve_hours())
    else:
        values["status"] = TaskStatus.COMPLETED
        values["completed_at"] = now

    result = await session.execute(
        update(Task)
        .where(
            Task.id == task.id,
            Task.status == TaskStatus.ACCEPTED,
            Task.human_id == assignee,
        )
        .values(**values)
        .execution_options(synchronize_session=False)
    )
    if result.rowcount != 1:
        await session.refresh(task)
        _raise_if_finished(task)
        raise StateConflict("not_assigned")

    session.add(submission)
    await _set_worker_status(session, assignee, HumanStatus.AVAILABLE)
    await close_contact(session, task.id, now)
    await session.refresh(task)
    if not review_gate:
        record_event(session, EVENT_TASK_COMPLETED, task)

    log.info(
        "task_submitted",
        task_id=task.id,
        human_id=assignee,
        kind=data.kind.value,
        status=task.status.value,
    )
    return task, submission


async def _complete_from_review(session: AsyncSession, task: Task, now: datetime) -> bool:
    result = await session.execute(
        update(Task)
        .where(Task.id == task.id, Task.status == TaskStatus.REVIEW_PENDING)
        .values(status=TaskStatus.COMPLETED, completed_at=now, updated_at=now)
        .execution_options(synchronize_session=False)
    )
    await session.refresh(task)
    if result.rowcount != 1:
        return False
    record_event(session, EVENT_TASK_COMPLETED, task)
    return True


async def approve_task(session: AsyncSession, task_id: str, ai_account_id: str) -> Task:
    """Owner approval of a review_pending task. Approving a completed task is a no-op.

    Raises:
        AccessDenied: Agent does not own the task.
        StateConflict: not_review_pending.
    """
    task = await get_task(session, task_id)
    if task.ai_account_id != ai_account_id:
        raise AccessDenied()
    if task.status == TaskStatus.COMPLETED:
        return task
    if task.status != TaskStatus.REVIEW_PENDING:
        raise StateConflict("not_review_pending")

    if not await _complete_from_review(session, task, utcnow()):
        if task.status == TaskStatus.COMPLETED:
            return task
        raise StateConflict("not_review_pending")

    log.info("task_approved", task_id=task.id, ai_account_id=ai_account_id)
    return task


def _is_rejected(task: Task) -> bool:
    return (
        task.status == TaskStatus.FAILED
        and task.failure_reason == FailureReason.REQUESTER_REJECTED
    )


async def reject_task(session: AsyncSession, task_id: str, ai_account_id: str) -> Task:
    """Owner rejection of a review_pending task; it fails with reason requester_rejected.

    Rejecting an already rejected task is a no-op. The worker was released at
    submit, so only the task row changes.

    Raises:
        AccessDenied: Agent does not own the task.
        StateConflict: not_review_pending.
    """
    task = await get_task(session, task_id)
    if task.ai_account_id != ai_account_id:
        raise AccessDenied()
    if _is_rejected(task):
        return task
    if task.status != TaskStatus.REVIEW_PENDING:
        raise StateConflict("not_review_pending")

    result = await session.execute(
        update(Task)
        .where(Task.id == task.id, Task.status == TaskStatus.REVIEW_PENDING)
        .values(
            status=TaskStatus.FAILED,
            failure_reason=FailureReason.REQUESTER_REJECTED,
            review_pending_deadline_at=None,
            updated_at=utcnow(),
        )
        .execution_options(synchronize_session=False)
    )
    await session.refresh(task)
    if result.rowcount != 1:
        if _is_rejected(task):
            return task
        raise StateConflict("not_review_pending")

    record_event(session, EVENT_TASK_FAILED, task)
    log.info("task_rejected", task_id=task.id, ai_account_id=ai_account_id)
    return task


async def pay_task(session: AsyncSession, task_id: str, processor_fee_usd: Any = 0) -> Task:
    """Record the legacy USD payout of a completed task (admin).

    Raises:
        StateConflict: not_completed, already_paid.
    """
    task = await get_task(session, task_id)
    if task.status != TaskStatus.COMPLETED:
        raise StateConflict("not_completed")
    if task.paid_status == PaidStatus.PAID:
        raise StateConflict("already_paid")

    breakdown = calculate_payout(task.budget_usd, processor_fee_usd)
    now = utcnow()
    result = await session.execute(
        update(Task)
        .where(
            Task.id == task.id,
            Task.status == TaskStatus.COMPLETED,
            Task.paid_status != PaidStatus.PAID,
        )
        .values(
            paid_status=PaidStatus.PAID,
            paid_at=now,
            paid_method="paypal",
            fee_rate=breakdown.fee_rate,
            fee_amount=breakdown.platform_fee,
            processor_fee_amount=breakdown.processor_fee,
            payout_amount=breakdown.payout_amount,
            updated_at=now,
        )
        .execution_options(synchronize_session=False)
    )
    if result.rowcount != 1:
        raise StateConflict("already_paid")
    await session.refresh(task)

    log.info(
        "task_paid",
        task_id=task.id,
        fee=str(breakdown.platform_fee),
        payout=str(breakdown.payout_amount),
    )
    return task


async def set_task_deleted(session: AsyncSession, task_id: str, deleted: bool) -> Task:
    """Admin soft delete / restore. Orthogonal to the lifecycle state."""
    task = await _load_task(session, task_id, include_deleted=True)
    task.deleted_at = utcnow() if deleted else None
    await session.flush()
    log.info("task_soft_delete_changed", task_id=task.id, deleted=deleted)
    return task
