"""Tests for the request-scoped idempotency ledger.

Tests cover:
    - First execution, replay, and conflicting payloads
    - In-flight placeholders and stale takeover
    - 4xx outcomes stored and replayed, 5xx outcomes released
"""

from datetime import timedelta
from unittest.mock import AsyncMock

import pytest
from sqlalchemy import select

from app.exceptions import RequestValidationFailed, StateConflict, UpstreamProviderError
from app.models import IdempotencyRecord, utcnow
from app.services.idempotency import (
    begin,
    hash_request,
    render_json,
    run_idempotent,
)


async def _record(session, key: str) -> IdempotencyRecord | None:
    result = await session.execute(
        select(IdempotencyRecord)
        .where(IdempotencyRecord.idem_key == key)
        .execution_options(populate_existing=True)
    )
    return result.scalar_one_or_none()


def test_hash_request_ignores_key_order():
    assert hash_request({"a": 1, "b": 2}) == hash_request({"b": 2, "a": 1})
    assert hash_request({"a": 1}) != hash_request({"a": 2})


def test_render_json_is_compact():
    assert render_json({"status": "open", "id": "t1"}) == '{"status":"open","id":"t1"}'


class TestRunIdempotent:
    async def test_without_key_runs_every_time(self, async_session):
        operation = AsyncMock(return_value=(201, {"status": "open"}))

        for _ in range(2):
            await run_idempotent(
                async_session, route="r", key=None, scope="ai_1", payload={}, operation=operation
            )

        assert operation.await_count == 2
        assert (await async_session.execute(select(IdempotencyRecord))).scalars().all() == []

    async def test_replay_returns_stored_response(self, async_session):
        operation = AsyncMock(return_value=(201, {"status": "open", "id": "t1"}))
        kwargs = dict(route="tasks.create", key="k1", scope="ai_1", payload={"x": 1})

        first = await run_idempotent(async_session, operation=operation, **kwargs)
        await async_session.commit()
        second = await run_idempotent(async_session, operation=operation, **kwargs)

        assert operation.await_count == 1
        assert second == first
        assert second.status_code == 201
        assert second.body == '{"status":"open","id":"t1"}'

    async def test_same_key_different_payload_conflicts(self, async_session):
        operation = AsyncMock(return_value=(201, {"status": "open"}))
        await run_idempotent(
            async_session, route="r", key="k1", scope="ai_1", payload={"x": 1}, operation=operation
        )
        await async_session.commit()

        with pytest.raises(StateConflict) as exc_info:
            await run_idempotent(
                async_session,
                route="r",
                key="k1",
                scope="ai_1",
                payload={"x": 2},
                operation=operation,
            )

        assert exc_info.value.reason == "idempotency_key_conflict"

    async def test_keys_are_scoped_per_tenant(self, async_session):
        operation = AsyncMock(return_value=(201, {"status": "open"}))
        for scope in ("ai_1", "ai_2"):
            await run_idempotent(
                async_session, route="r", key="k1", scope=scope, payload={}, operation=operation
            )
            await async_session.commit()

        assert operation.await_count == 2

    async def test_client_error_is_stored_and_replayed(self, async_session):
        operation = AsyncMock(side_effect=RequestValidationFailed("missing_text"))
        kwargs = dict(route="r", key="k4", scope="ai_1", payload={})

        with pytest.raises(RequestValidationFailed):
            await run_idempotent(async_session, operation=operation, **kwargs)
        replay = await run_idempotent(async_session, operation=operation, **kwargs)

        assert operation.await_count == 1
        assert replay.status_code == 400
        assert replay.body == '{"status":"error","reason":"missing_text"}'

    async def test_server_error_releases_key(self, async_session):
        operation = AsyncMock(side_effect=UpstreamProviderError(detail={"message": "down"}))
        kwargs = dict(route="r", key="k5", scope="ai_1", payload={})

        with pytest.raises(UpstreamProviderError):
            await run_idempotent(async_session, operation=operation, **kwargs)

        assert await _record(async_session, "k5") is None

        operation.side_effect = None
        operation.return_value = (201, {"status": "open"})
        retried = await run_idempotent(async_session, operation=operation, **kwargs)
        assert retried.status_code == 201

    async def test_unexpected_error_releases_key(self, async_session):
        operation = AsyncMock(side_effect=RuntimeError("boom"))

        with pytest.raises(RuntimeError):
            await run_idempotent(
                async_session, route="r", key="k6", scope="ai_1", payload={}, operation=operation
            )

        assert await _record(async_session, "k6") is None

    async def test_overlong_key_rejected(self, async_session):
        with pytest.raises(RequestValidationFailed):
            await run_idempotent(
                async_session,
                route="r",
                key="k" * 256,
                scope="ai_1",
                payload={},
                operation=AsyncMock(),
            )


class TestBegin:
    async def test_pending_placeholder_in_progress(self, async_session):
        request_hash = hash_request({})
        assert await begin(async_session, "r", "k1", "ai_1", request_hash) is None

        with pytest.raises(StateConflict) as exc_info:
            await begin(async_session, "r", "k1", "ai_1", request_hash)

        assert exc_info.value.reason == "request_in_progress"

    async def test_stale_placeholder_taken_over(self, async_session):
        request_hash = hash_request({})
        await begin(async_session, "r", "k1", "ai_1", request_hash)
        record = await _record(async_session, "k1")
        record.updated_at = utcnow() - timedelta(hours=1)
        await async_session.commit()

        assert await begin(async_session, "r", "k1", "ai_1", request_hash) is None
