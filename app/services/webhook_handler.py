"""Settlement provider webhook handler service.

This module provides inbound settlement event processing:
- Signature verification through the settlement client
- Event deduplication by provider event id (insert if absent)
- Claiming and processing of stored events by the worker

Architecture:
- The webhook endpoint only verifies and stores; it always answers 200 so the
  provider never retries a verified event we already hold, and never learns
  anything from a failed verification
- The worker claims pending rows (pending → processing, conditional update)
  and reconciles them against the order ledger in short transactions
- Each event ends processed or failed (with the error recorded)
"""

from collections.abc import Awaitable, Callable
from datetime import timedelta
from typing import Any

import structlog
from sqlalchemy import and_, or_, select, update
from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker

from app.clients.settlement import SettlementClient, SignatureVerificationFailed
from app.config import get_settlement_lease_seconds
from app.database import insert_for
from app.exceptions import ConfigurationError
from app.models import SettlementEvent, SettlementEventStatus, utcnow
from app.services.order_service import (
    apply_charge_succeeded,
    apply_checkout_completed,
    apply_payment_succeeded,
)

log = structlog.get_logger(__name__)

EventHandler = Callable[[AsyncSession, dict[str, Any]], Awaitable[None]]

EVENT_HANDLERS: dict[str, EventHandler] = {
    "checkout.session.completed": apply_checkout_completed,
    "payment_intent.succeeded": apply_payment_succeeded,
    "charge.succeeded": apply_charge_succeeded,
}


async def receive_settlement_event(
    session: AsyncSession,
    client: SettlementClient,
    body: bytes,
    signature: str | None,
) -> bool:
    """Verify and store an inbound provider event.

    Args:
        session: Database session (committed by the caller).
        client: Settlement client used for signature verification.
        body: Raw request body.
        signature: Stripe-Signature header value.

    Returns:
        True if the event was stored, False if verification failed or the
        event id was already recorded.
    """
    try:
        event = client.construct_event(body, signature)
    except (SignatureVerificationFailed, ConfigurationError) as e:
        log.error("settlement_webhook_verification_failed", error=str(e))
        return False

    data_object = (event.get("data") or {}).get("object") or {}
    log.info(
        "settlement_webhook_received",
        event_id=event["id"],
        event_type=event["type"],
        created=event.get("created"),
        object=data_object.get("object"),
    )

    result = await session.execute(
        insert_for(session, SettlementEvent)
        .values(
            event_id=event["id"],
            event_type=event["type"],
            event_created=event.get("created"),
            payload=event,
            status=SettlementEventStatus.PENDING,
            received_at=utcnow(),
        )
        .on_conflict_do_nothing(index_elements=["event_id"])
    )
    stored = result.rowcount == 1
    if not stored:
        log.info("settlement_webhook_duplicate", event_id=event["id"])
    return stored


async def claim_settlement_events(session: AsyncSession, limit: int = 25) -> list[SettlementEvent]:
    """Claim pending events (pending → processing) and commit the claim.

    A processing event whose claim is older than the lease belongs to a worker
    that died mid-event; it is claimed again. Event handlers are idempotent,
    so reprocessing a partially handled event is safe.
    """
    now = utcnow()
    lease_cutoff = now - timedelta(seconds=get_settlement_lease_seconds())
    claimable = or_(
        SettlementEvent.status == SettlementEventStatus.PENDING,
        and_(
            SettlementEvent.status == SettlementEventStatus.PROCESSING,
            SettlementEvent.claimed_at < lease_cutoff,
        ),
    )

    candidate_ids = (
        await session.execute(
            select(SettlementEvent.event_id)
            .where(claimable)
            .order_by(SettlementEvent.received_at)
            .limit(limit)
        )
    ).scalars().all()

    claimed: list[str] = []
    for event_id in candidate_ids:
        result = await session.execute(
            update(SettlementEvent)
            .where(SettlementEvent.event_id == event_id, claimable)
            .values(status=SettlementEventStatus.PROCESSING, claimed_at=now)
            .execution_options(synchronize_session=False)
        )
        if result.rowcount == 1:
            claimed.append(event_id)
    await session.commit()

    if not claimed:
        return []
    events = (
        await session.execute(
            select(SettlementEvent)
            .where(SettlementEvent.event_id.in_(claimed))
            .order_by(SettlementEvent.received_at)
            .execution_options(populate_existing=True)
        )
    ).scalars().all()
    return list(events)


async def _finish_event(
    session: AsyncSession, event_id: str, status: SettlementEventStatus, error: str | None
) -> None:
    await session.execute(
        update(SettlementEvent)
        .where(SettlementEvent.event_id == event_id)
        .values(status=status, processing_error=error, processed_at=utcnow())
        .execution_options(synchronize_session=False)
    )
    await session.commit()


async def process_settlement_event(session: AsyncSession, event: SettlementEvent) -> bool:
    """Reconcile one claimed event against the ledger.

    Returns:
        True if the event ended processed, False if it ended failed.
    """
    # Rollback expires session-bound instances; read what we need up front
    event_id, event_type = event.event_id, event.event_type
    handler = EVENT_HANDLERS.get(event_type)
    if handler is None:
        log.info("settlement_event_ignored", event_id=event_id, event_type=event_type)
        await _finish_event(session, event_id, SettlementEventStatus.PROCESSED, None)
        return True

    data_object = (event.payload.get("data") or {}).get("object") or {}
    try:
        await handler(session, data_object)
        await session.commit()
    except Exception as e:
        await session.rollback()
        log.error(
            "settlement_event_failed",
            event_id=event_id,
            event_type=event_type,
            error=str(e),
            error_type=type(e).__name__,
        )
        await _finish_event(
            session, event_id, SettlementEventStatus.FAILED, str(e)[:2000] or type(e).__name__
        )
        return False

    await _finish_event(session, event_id, SettlementEventStatus.PROCESSED, None)
    log.info("settlement_event_processed", event_id=event_id, event_type=event_type)
    return True


async def process_pending_settlement_events(
    session_factory: async_sessionmaker[AsyncSession], limit: int = 25
) -> int:
    """Claim and process one batch. Returns the number of processed events."""
    async with session_factory() as session:
        events = await claim_settlement_events(session, limit)

    processed = 0
    for event in events:
        async with session_factory() as session:
            if await process_settlement_event(session, event):
                processed += 1
    return processed
