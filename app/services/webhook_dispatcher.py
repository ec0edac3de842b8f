"""Signed outbound webhook delivery.

For each task event, the owning tenant's active endpoints subscribed to the
event type receive the same JSON envelope:

    {"id": <event id>, "type": "task.completed", "created_at": ..., "task": {...}}

Each delivery is signed with the endpoint's secret:

    X-ToolCall-Event: task.completed
    X-ToolCall-Signature: sha256=<hex HMAC-SHA256 of the raw body>

Deliveries for one event run concurrently with a bounded timeout. Every
attempt is recorded in webhook_deliveries (status code, response body
truncated to 2000 characters, error text). Delivery failures are recorded and
logged; they never propagate to the task operation that produced the event.
"""

import asyncio
import hashlib
import hmac
import json
from dataclasses import dataclass
from typing import Any

import httpx
import structlog
from sqlalchemy import select
from sqlalchemy.ext.asyncio import AsyncSession

from app.config import get_webhook_timeout_seconds
from app.constants import (
    WEBHOOK_EVENT_HEADER,
    WEBHOOK_RESPONSE_BODY_LIMIT,
    WEBHOOK_SIGNATURE_HEADER,
)
from app.models import (
    OutboxEvent,
    WebhookDelivery,
    WebhookEndpoint,
    WebhookEndpointStatus,
    as_utc,
    utcnow,
)
from app.utils.encryption import DecryptionError, EncryptionKeyMissing, get_encryption_service

log = structlog.get_logger(__name__)


@dataclass(frozen=True)
class DeliveryResult:
    webhook_id: str
    status_code: int | None
    response_body: str | None
    error: str | None

    @property
    def ok(self) -> bool:
        return self.status_code is not None and 200 <= self.status_code < 300


def sign_payload(secret: str, body: bytes) -> str:
    """Return the X-ToolCall-Signature header value for ``body``."""
    digest = hmac.new(secret.encode(), body, hashlib.sha256).hexdigest()
    return f"sha256={digest}"


def build_envelope(event: OutboxEvent) -> dict[str, Any]:
    created_at = as_utc(event.created_at) or utcnow()
    return {
        "id": event.id,
        "type": event.event_type,
        "created_at": created_at.isoformat(),
        "task": event.payload,
    }


async def _deliver(
    client: httpx.AsyncClient,
    endpoint_id: str,
    url: str,
    secret: str,
    event_type: str,
    body: bytes,
) -> DeliveryResult:
    headers = {
        "Content-Type": "application/json",
        WEBHOOK_EVENT_HEADER: event_type,
        WEBHOOK_SIGNATURE_HEADER: sign_payload(secret, body),
    }
    try:
        response = await client.post(url, content=body, headers=headers)
    except httpx.TimeoutException:
        log.warning("webhook_delivery_timeout", webhook_id=endpoint_id, event_type=event_type)
        return DeliveryResult(endpoint_id, None, None, "timeout")
    except httpx.HTTPError as e:
        log.warning(
            "webhook_delivery_failed",
            webhook_id=endpoint_id,
            event_type=event_type,
            error=str(e),
            error_type=type(e).__name__,
        )
        return DeliveryResult(endpoint_id, None, None, f"{type(e).__name__}: {e}"[:2000])
    except Exception as e:
        # Non-transport errors (bad URL, bad header value) are recorded the same way
        log.error(
            "webhook_delivery_error",
            webhook_id=endpoint_id,
            event_type=event_type,
            error=str(e),
            error_type=type(e).__name__,
            exc_info=True,
        )
        return DeliveryResult(endpoint_id, None, None, f"{type(e).__name__}: {e}"[:2000])

    response_body = response.text[:WEBHOOK_RESPONSE_BODY_LIMIT]
    log.info(
        "webhook_delivered",
        webhook_id=endpoint_id,
        event_type=event_type,
        status_code=response.status_code,
    )
    return DeliveryResult(endpoint_id, response.status_code, response_body, None)


async def active_endpoints_for(
    session: AsyncSession, ai_account_id: str, event_type: str
) -> list[WebhookEndpoint]:
    """Active endpoints of a tenant subscribed to ``event_type`` (empty list = all)."""
    result = await session.execute(
        select(WebhookEndpoint).where(
            WebhookEndpoint.ai_account_id == ai_account_id,
            WebhookEndpoint.status == WebhookEndpointStatus.ACTIVE,
        )
    )
    return [endpoint for endpoint in result.scalars().all() if endpoint.subscribes_to(event_type)]


async def dispatch_outbox_event(
    session: AsyncSession,
    event: OutboxEvent,
    client: httpx.AsyncClient | None = None,
) -> list[DeliveryResult]:
    """Deliver one outbox event to every subscribed endpoint and record attempts.

    Args:
        session: Session used to read endpoints and write delivery rows.
        event: Claimed outbox event.
        client: Optional shared HTTP client (tests inject a mock transport).

    Returns:
        One DeliveryResult per endpoint.
    """
    if not event.ai_account_id:
        log.debug("webhook_dispatch_skipped", event_id=event.id, reason="no_tenant")
        return []

    endpoints = await active_endpoints_for(session, event.ai_account_id, event.event_type)
    if not endpoints:
        return []

    body = json.dumps(build_envelope(event), separators=(",", ":")).encode()

    results: list[DeliveryResult] = []
    targets: list[tuple[str, str, str]] = []
    for endpoint in endpoints:
        try:
            secret = get_encryption_service().decrypt(
                endpoint.secret_encrypted, context=f"webhook:{endpoint.id}"
            )
        except (DecryptionError, EncryptionKeyMissing) as e:
            log.error("webhook_secret_unavailable", webhook_id=endpoint.id, error=str(e))
            results.append(DeliveryResult(endpoint.id, None, None, "secret_unavailable"))
            continue
        targets.append((endpoint.id, endpoint.url, secret))

    owns_client = client is None
    if client is None:
        client = httpx.AsyncClient(timeout=get_webhook_timeout_seconds())
    try:
        results.extend(
            await asyncio.gather(
                *(
                    _deliver(client, endpoint_id, url, secret, event.event_type, body)
                    for endpoint_id, url, secret in targets
                )
            )
        )
    finally:
        if owns_client:
            await client.aclose()

    for result in results:
        session.add(
            WebhookDelivery(
                webhook_id=result.webhook_id,
                event_id=event.id,
                event_type=event.event_type,
                task_id=event.task_id,
                status_code=result.status_code,
                response_body=result.response_body,
                error=result.error,
                created_at=utcnow(),
            )
        )
    await session.commit()

    log.info(
        "webhook_event_dispatched",
        event_id=event.id,
        event_type=event.event_type,
        endpoints=len(results),
        succeeded=sum(1 for r in results if r.ok),
    )
    return results
