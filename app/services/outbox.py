"""Transactional outbox for task events.

State changes that emit a webhook event add an OutboxEvent in the same
transaction, so an event exists if and only if its transition committed.
Events are drained independently:

    - after a request, by a FastAPI background task (best effort, fast path)
    - by the worker process poll loop (guaranteed path, reclaims expired leases)

Claiming is a conditional UPDATE (pending, or processing with an expired
lease → processing), so two drainers never dispatch the same event at the
same time.
"""

from collections.abc import Awaitable, Callable
from datetime import timedelta

import structlog
from sqlalchemy import and_, or_, select, update
from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker

import app.database as database
from app.config import get_outbox_batch_size, get_outbox_lease_seconds
from app.models import OutboxEvent, OutboxStatus, Task, utcnow
from app.schemas.task import TaskResponse
from app.services.webhook_dispatcher import dispatch_outbox_event

log = structlog.get_logger(__name__)

MAX_ATTEMPTS = 5

Dispatcher = Callable[[AsyncSession, OutboxEvent], Awaitable[None]]


def record_event(session: AsyncSession, event_type: str, task: Task) -> OutboxEvent:
    """Add an outbox event carrying the task snapshot. Commits with the caller."""
    event = OutboxEvent(
        event_type=event_type,
        task_id=task.id,
        ai_account_id=task.ai_account_id,
        payload=TaskResponse.from_task(task).model_dump(mode="json"),
        status=OutboxStatus.PENDING,
        created_at=utcnow(),
    )
    session.add(event)
    log.info("outbox_event_recorded", event_type=event_type, task_id=task.id)
    return event


async def claim_events(session: AsyncSession, limit: int | None = None) -> list[OutboxEvent]:
    """Claim up to ``limit`` dispatchable events and commit the claim."""
    now = utcnow()
    lease_cutoff = now - timedelta(seconds=get_outbox_lease_seconds())
    dispatchable = or_(
        OutboxEvent.status == OutboxStatus.PENDING,
        and_(
            OutboxEvent.status == OutboxStatus.PROCESSING,
            OutboxEvent.claimed_at < lease_cutoff,
        ),
    )

    candidate_ids = (
        await session.execute(
            select(OutboxEvent.id)
            .where(dispatchable)
            .order_by(OutboxEvent.created_at)
            .limit(limit or get_outbox_batch_size())
        )
    ).scalars().all()

    claimed_ids: list[str] = []
    for event_id in candidate_ids:
        result = await session.execute(
            update(OutboxEvent)
            .where(OutboxEvent.id == event_id, dispatchable)
            .values(
                status=OutboxStatus.PROCESSING,
                claimed_at=now,
                attempts=OutboxEvent.attempts + 1,
            )
            .execution_options(synchronize_session=False)
        )
        if result.rowcount == 1:
            claimed_ids.append(event_id)
    await session.commit()

    if not claimed_ids:
        return []
    events = (
        await session.execute(
            select(OutboxEvent)
            .where(OutboxEvent.id.in_(claimed_ids))
            .order_by(OutboxEvent.created_at)
            .execution_options(populate_existing=True)
        )
    ).scalars().all()
    return list(events)


async def drain_outbox(
    session_factory: async_sessionmaker[AsyncSession],
    dispatcher: Dispatcher,
    limit: int | None = None,
) -> int:
    """Claim and dispatch one batch of events.

    Args:
        session_factory: Factory for short-lived sessions.
        dispatcher: Coroutine delivering one event (records its own deliveries).
        limit: Batch size override.

    Returns:
        Number of events dispatched.
    """
    async with session_factory() as session:
        events = await claim_events(session, limit)

    dispatched = 0
    for event in events:
        async with session_factory() as session:
            try:
                await dispatcher(session, event)
            except Exception as e:
                await session.rollback()
                status = (
                    OutboxStatus.FAILED if event.attempts >= MAX_ATTEMPTS else OutboxStatus.PENDING
                )
                await session.execute(
                    update(OutboxEvent)
                    .where(OutboxEvent.id == event.id)
                    .values(status=status, last_error=str(e)[:2000])
                    .execution_options(synchronize_session=False)
                )
                await session.commit()
                log.error(
                    "outbox_dispatch_failed",
                    event_id=event.id,
                    event_type=event.event_type,
                    attempts=event.attempts,
                    error=str(e),
                    error_type=type(e).__name__,
                )
                continue

            await session.execute(
                update(OutboxEvent)
                .where(OutboxEvent.id == event.id)
                .values(status=OutboxStatus.DISPATCHED, dispatched_at=utcnow(), last_error=None)
                .execution_options(synchronize_session=False)
            )
            await session.commit()
            dispatched += 1

    if events:
        log.info("outbox_batch_drained", claimed=len(events), dispatched=dispatched)
    return dispatched


async def drain_outbox_in_background() -> None:
    """Background-task entry point used after mutating requests.

    Reads the session factory at call time; when the database is not
    configured the worker process remains responsible for delivery.
    """
    session_factory = database.async_session_factory
    if session_factory is None:
        log.warning("outbox_drain_skipped", reason="database_not_configured")
        return

    try:
        await drain_outbox(session_factory, dispatch_outbox_event)
    except Exception as e:
        # Events stay pending; the worker loop retries them
        log.error("outbox_background_drain_failed", error=str(e), error_type=type(e).__name__)
