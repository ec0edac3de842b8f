"""Tests for the transactional task event outbox."""

from datetime import timedelta
from unittest.mock import AsyncMock

import pytest
from sqlalchemy import select

import app.database as database
from app.models import OutboxEvent, OutboxStatus, utcnow
from app.services.outbox import (
    MAX_ATTEMPTS,
    claim_events,
    drain_outbox,
    drain_outbox_in_background,
    record_event,
)
from tests.support.factories import create_ai_account, create_task


@pytest.fixture
async def task(async_session):
    account = create_ai_account(account_id="ai_outbox")
    task = create_task(ai_account_id=account.id)
    async_session.add_all([account, task])
    await async_session.commit()
    return task


async def _event(session, event_id: str) -> OutboxEvent:
    result = await session.execute(
        select(OutboxEvent)
        .where(OutboxEvent.id == event_id)
        .execution_options(populate_existing=True)
    )
    return result.scalar_one()


async def _recorded(session, task, event_type: str = "task.completed") -> OutboxEvent:
    event = record_event(session, event_type, task)
    await session.commit()
    return event


async def test_record_event_snapshots_task(async_session, task):
    event = await _recorded(async_session, task)

    assert event.status == OutboxStatus.PENDING
    assert event.ai_account_id == "ai_outbox"
    assert event.task_id == task.id
    assert event.payload["id"] == task.id
    assert event.payload["status"] == "open"


async def test_record_event_discarded_with_rollback(async_session, task):
    record_event(async_session, "task.completed", task)
    await async_session.rollback()

    assert (await async_session.execute(select(OutboxEvent))).scalars().all() == []


class TestDrainOutbox:
    async def test_dispatched_event_marked(self, async_session, session_factory, task):
        event = await _recorded(async_session, task)
        dispatcher = AsyncMock()

        dispatched = await drain_outbox(session_factory, dispatcher)

        assert dispatched == 1
        assert dispatcher.await_args.args[1].id == event.id
        stored = await _event(async_session, event.id)
        assert stored.status == OutboxStatus.DISPATCHED
        assert stored.attempts == 1
        assert stored.dispatched_at is not None

    async def test_failure_returns_event_to_pending(self, async_session, session_factory, task):
        event = await _recorded(async_session, task)
        dispatcher = AsyncMock(side_effect=RuntimeError("connection reset"))

        assert await drain_outbox(session_factory, dispatcher) == 0

        stored = await _event(async_session, event.id)
        assert stored.status == OutboxStatus.PENDING
        assert stored.last_error == "connection reset"

    async def test_failure_at_max_attempts_is_final(self, async_session, session_factory, task):
        event = await _recorded(async_session, task)
        event.attempts = MAX_ATTEMPTS - 1
        await async_session.commit()

        await drain_outbox(session_factory, AsyncMock(side_effect=RuntimeError("boom")))

        stored = await _event(async_session, event.id)
        assert stored.status == OutboxStatus.FAILED
        assert stored.attempts == MAX_ATTEMPTS

    async def test_nothing_to_drain(self, session_factory):
        dispatcher = AsyncMock()

        assert await drain_outbox(session_factory, dispatcher) == 0
        dispatcher.assert_not_awaited()


class TestClaimEvents:
    async def test_claimed_event_not_claimed_again(self, async_session, task):
        await _recorded(async_session, task)

        first = await claim_events(async_session)
        second = await claim_events(async_session)

        assert len(first) == 1
        assert first[0].status == OutboxStatus.PROCESSING
        assert second == []

    async def test_expired_lease_reclaimed(self, async_session, task, monkeypatch):
        monkeypatch.setenv("OUTBOX_LEASE_SECONDS", "60")
        event = await _recorded(async_session, task)
        event.status = OutboxStatus.PROCESSING
        event.claimed_at = utcnow() - timedelta(minutes=5)
        event.attempts = 1
        await async_session.commit()

        reclaimed = await claim_events(async_session)

        assert [e.id for e in reclaimed] == [event.id]
        assert reclaimed[0].attempts == 2

    async def test_respects_limit(self, async_session, task):
        for _ in range(3):
            await _recorded(async_session, task)

        assert len(await claim_events(async_session, limit=2)) == 2


class TestDrainInBackground:
    async def test_skipped_without_database(self, monkeypatch):
        monkeypatch.setattr(database, "async_session_factory", None)

        await drain_outbox_in_background()

    async def test_uses_configured_factory(self, async_session, session_factory, task, monkeypatch):
        event = await _recorded(async_session, task)
        dispatcher = AsyncMock()
        monkeypatch.setattr(database, "async_session_factory", session_factory)
        monkeypatch.setattr("app.services.outbox.dispatch_outbox_event", dispatcher)

        await drain_outbox_in_background()

        dispatcher.assert_awaited_once()
        assert (await _event(async_session, event.id)).status == OutboxStatus.DISPATCHED

    async def test_errors_are_logged_not_raised(self, session_factory, monkeypatch):
        monkeypatch.setattr(database, "async_session_factory", session_factory)
        monkeypatch.setattr(
            "app.services.outbox.drain_outbox", AsyncMock(side_effect=RuntimeError("db down"))
        )

        await drain_outbox_in_background()
