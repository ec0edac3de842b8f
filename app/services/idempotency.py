"""Request-scoped idempotency ledger.

A mutation carrying an Idempotency-Key is executed at most once per
(route, key, tenant). The first request inserts a placeholder row (insert if
absent) and commits it before running the operation; the operation and the
stored response then commit together.

Outcomes for a repeated key:
    - different request body → 409 idempotency_key_conflict
    - placeholder still pending → 409 request_in_progress
    - placeholder older than IDEMPOTENCY_PENDING_TTL_SECONDS → taken over
      (its original attempt never committed a response)
    - finished → stored status code and body text replayed verbatim

Operation errors:
    - 4xx ServiceError: rendered, stored and replayed like a success
    - 5xx ServiceError (e.g. provider failure) or any other exception:
      placeholder released, exception re-raised
"""

import hashlib
import json
from collections.abc import Awaitable, Callable
from dataclasses import dataclass
from datetime import timedelta
from typing import Any

import structlog
from sqlalchemy import and_, delete, select, update
from sqlalchemy.ext.asyncio import AsyncSession

from app.config import get_idempotency_pending_ttl_seconds
from app.database import insert_for
from app.exceptions import RequestValidationFailed, ServiceError, StateConflict
from app.models import IdempotencyRecord, utcnow

log = structlog.get_logger(__name__)

MAX_KEY_LENGTH = 255


@dataclass(frozen=True)
class StoredResponse:
    """Response text exactly as first returned to the caller."""

    status_code: int
    body: str


def render_json(body: dict[str, Any]) -> str:
    """Render a response body deterministically (stored and replayed as-is)."""
    return json.dumps(body, separators=(",", ":"), ensure_ascii=False, default=str)


def hash_request(payload: dict[str, Any]) -> str:
    """SHA-256 of the canonical JSON form of the request payload."""
    canonical = json.dumps(payload, sort_keys=True, separators=(",", ":"), default=str)
    return hashlib.sha256(canonical.encode()).hexdigest()


def _record_filter(route: str, key: str, scope: str) -> Any:
    return and_(
        IdempotencyRecord.route == route,
        IdempotencyRecord.idem_key == key,
        IdempotencyRecord.ai_account_id == scope,
    )


async def begin(
    session: AsyncSession,
    route: str,
    key: str,
    scope: str,
    request_hash: str,
) -> StoredResponse | None:
    """Claim an idempotency key or return the stored response.

    Commits the placeholder so concurrent requests observe it.

    Returns:
        None if the caller should execute the operation, otherwise the
        stored response to replay.

    Raises:
        StateConflict: idempotency_key_conflict or request_in_progress.
        ServiceError: idempotency_error if the row vanished between the
            insert and the read.
    """
    stmt = (
        insert_for(session, IdempotencyRecord)
        .values(
            route=route,
            idem_key=key,
            ai_account_id=scope,
            request_hash=request_hash,
            created_at=utcnow(),
            updated_at=utcnow(),
        )
        .on_conflict_do_nothing(index_elements=["route", "idem_key", "ai_account_id"])
    )
    result = await session.execute(stmt)
    await session.commit()
    if result.rowcount == 1:
        return None

    existing = (
        await session.execute(select(IdempotencyRecord).where(_record_filter(route, key, scope)))
    ).scalar_one_or_none()
    if existing is None:
        log.error("idempotency_record_missing", route=route, ai_account_id=scope)
        raise ServiceError("idempotency_error")

    if existing.request_hash != request_hash:
        log.info("idempotency_key_conflict", route=route, ai_account_id=scope)
        raise StateConflict("idempotency_key_conflict")

    if existing.status_code is None:
        if await _take_over_stale(session, route, key, scope):
            return None
        raise StateConflict("request_in_progress")

    log.info(
        "idempotent_replay",
        route=route,
        ai_account_id=scope,
        status_code=existing.status_code,
    )
    return StoredResponse(status_code=existing.status_code, body=existing.response_body or "")


async def _take_over_stale(session: AsyncSession, route: str, key: str, scope: str) -> bool:
    cutoff = utcnow() - timedelta(seconds=get_idempotency_pending_ttl_seconds())
    result = await session.execute(
        update(IdempotencyRecord)
        .where(
            _record_filter(route, key, scope),
            IdempotencyRecord.status_code.is_(None),
            IdempotencyRecord.updated_at < cutoff,
        )
        .values(updated_at=utcnow())
        .execution_options(synchronize_session=False)
    )
    await session.commit()
    if result.rowcount == 1:
        log.warning("idempotency_stale_placeholder_taken_over", route=route, ai_account_id=scope)
        return True
    return False


async def finish(
    session: AsyncSession, route: str, key: str, scope: str, response: StoredResponse
) -> None:
    """Store the final response. Not committed here: commits with the operation."""
    await session.execute(
        update(IdempotencyRecord)
        .where(_record_filter(route, key, scope))
        .values(
            status_code=response.status_code,
            response_body=response.body,
            updated_at=utcnow(),
        )
        .execution_options(synchronize_session=False)
    )


async def release(session: AsyncSession, route: str, key: str, scope: str) -> None:
    """Delete a pending placeholder so the caller may retry."""
    await session.execute(
        delete(IdempotencyRecord).where(
            _record_filter(route, key, scope),
            IdempotencyRecord.status_code.is_(None),
        )
    )
    await session.commit()


async def run_idempotent(
    session: AsyncSession,
    *,
    route: str,
    key: str | None,
    scope: str,
    payload: dict[str, Any],
    operation: Callable[[], Awaitable[tuple[int, dict[str, Any]]]],
) -> StoredResponse:
    """Execute ``operation`` under the idempotency gate.

    Args:
        session: Request session.
        route: Stable route name (e.g. "tasks.create").
        key: Idempotency-Key header value; None or empty bypasses the gate.
        scope: Tenant id, or "" for anonymous callers.
        payload: Request body used for the conflict hash (no credentials).
        operation: Coroutine factory returning (status_code, body dict).

    Returns:
        StoredResponse to send to the caller.
    """
    if not key:
        status_code, body = await operation()
        return StoredResponse(status_code=status_code, body=render_json(body))

    if len(key) > MAX_KEY_LENGTH:
        raise RequestValidationFailed(detail={"message": "Idempotency-Key too long"})

    stored = await begin(session, route, key, scope, hash_request(payload))
    if stored is not None:
        return stored

    try:
        status_code, body = await operation()
    except ServiceError as exc:
        await session.rollback()
        if exc.status_code >= 500:
            # Retryable: let the caller try again with the same key
            await release(session, route, key, scope)
            raise
        response = StoredResponse(status_code=exc.status_code, body=render_json(exc.to_body()))
        await finish(session, route, key, scope, response)
        await session.commit()
        raise
    except Exception:
        await session.rollback()
        await release(session, route, key, scope)
        raise

    response = StoredResponse(status_code=status_code, body=render_json(body))
    await finish(session, route, key, scope, response)
    return response
