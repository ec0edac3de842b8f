"""Webhook routes.

This module provides FastAPI routes for both webhook directions:
- POST /api/webhooks - Register a tenant endpoint (secret returned once)
- GET /api/webhooks - List the caller's endpoints (never the secret)
- DELETE /api/webhooks/{webhook_id} - Disable an endpoint
- POST /webhooks/stripe - Settlement provider event intake

Provider intake pattern:
- Verify signature (fast, no provider call)
- Store the event if absent (fast, one insert)
- Return 200 immediately; the worker reconciles stored events
"""

import time
from typing import Any

import structlog
from fastapi import APIRouter, Depends, Request
from fastapi.responses import JSONResponse, Response
from sqlalchemy.ext.asyncio import AsyncSession

from app.clients.settlement import SettlementClient
from app.database import get_session
from app.routes.deps import (
    AuthContext,
    get_optional_settlement_client,
    parse_body,
    read_payload,
    require_agent,
    respond,
)
from app.schemas.webhook import (
    WebhookEndpointCreate,
    WebhookEndpointCreated,
    WebhookEndpointResponse,
)
from app.services import webhook_endpoints
from app.services.webhook_handler import receive_settlement_event

log = structlog.get_logger(__name__)
router = APIRouter(prefix="/api/webhooks", tags=["webhooks"])
provider_router = APIRouter(prefix="/webhooks", tags=["webhooks"])


@router.post("")
async def register_webhook(
    request: Request,
    auth: AuthContext = Depends(require_agent),
    payload: dict[str, Any] = Depends(read_payload),
    session: AsyncSession = Depends(get_session),
) -> Response:
    """Register an endpoint for task events.

    Returns:
        201 Created: Endpoint including its signing secret (shown once)
        400 Bad Request: URL is not a public https URL, or no known events
    """
    data = parse_body(WebhookEndpointCreate, payload)
    endpoint, secret = await webhook_endpoints.register_endpoint(
        session, auth.actor_id, data.url, data.events
    )
    await session.commit()

    body = WebhookEndpointCreated(
        **WebhookEndpointResponse.from_endpoint(endpoint).model_dump(), secret=secret
    )
    return respond(request, {"webhook": body.model_dump(mode="json")}, status_code=201)


@router.get("")
async def list_webhooks(
    request: Request,
    auth: AuthContext = Depends(require_agent),
    session: AsyncSession = Depends(get_session),
) -> Response:
    endpoints = await webhook_endpoints.list_endpoints(session, auth.actor_id)
    return respond(
        request,
        {
            "webhooks": [
                WebhookEndpointResponse.from_endpoint(endpoint).model_dump(mode="json")
                for endpoint in endpoints
            ]
        },
    )


@router.delete("/{webhook_id}")
async def disable_webhook(
    request: Request,
    webhook_id: str,
    auth: AuthContext = Depends(require_agent),
    session: AsyncSession = Depends(get_session),
) -> Response:
    endpoint = await webhook_endpoints.disable_endpoint(session, auth.actor_id, webhook_id)
    await session.commit()
    return respond(request, {"status": "disabled", "webhook_id": endpoint.id})


@provider_router.post("/stripe")
async def handle_stripe_webhook(
    request: Request,
    session: AsyncSession = Depends(get_session),
    client: SettlementClient | None = Depends(get_optional_settlement_client),
) -> JSONResponse:
    """Handle settlement provider events.

    Always answers 200 {"received": true}: a failed verification is logged
    and nothing is stored.
    """
    start_time = time.time()

    signature = request.headers.get("Stripe-Signature")
    body = await request.body()

    stored = False
    if client is not None:
        stored = await receive_settlement_event(session, client, body, signature)
        await session.commit()

    elapsed_ms = (time.time() - start_time) * 1000
    log.info(
        "settlement_webhook_acknowledged",
        stored=stored,
        signature=signature[:8] + "..." if signature else None,
        elapsed_ms=elapsed_ms,
    )
    if elapsed_ms > 500:
        log.warning("settlement_webhook_slow_response", elapsed_ms=elapsed_ms, target_ms=500)

    return JSONResponse(status_code=200, content={"received": True})
