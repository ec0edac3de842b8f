"""Payment order routes (agent).

- POST /api/orders - Create an order, idempotent on (order_id, version)
- GET /api/orders/{order_id}?version= - Read an order owned by the caller
- POST /api/orders/{order_id}/checkout - Create the hosted checkout session

Payment confirmation does not happen here: the provider reports it through
POST /webhooks/stripe and the worker reconciles it against the ledger.
"""

from typing import Any

import structlog
from fastapi import APIRouter, Depends, Query, Request
from fastapi.responses import Response
from sqlalchemy.ext.asyncio import AsyncSession

from app.clients.settlement import SettlementClient
from app.database import get_session
from app.routes.deps import (
    AuthContext,
    get_settlement_client,
    parse_body,
    read_payload,
    require_agent,
    respond,
)
from app.schemas.order import CheckoutCreate, OrderCreate, OrderResponse
from app.services import order_service

log = structlog.get_logger(__name__)
router = APIRouter(prefix="/api/orders", tags=["orders"])


def _order_body(order: Any) -> dict[str, Any]:
    return OrderResponse.from_order(order).model_dump(mode="json")


@router.post("")
async def create_order(
    request: Request,
    auth: AuthContext = Depends(require_agent),
    payload: dict[str, Any] = Depends(read_payload),
    session: AsyncSession = Depends(get_session),
) -> Response:
    """Create a payment order for a task the caller owns.

    Returns:
        201 Created: New order.
        200 OK: Replay of an identical (order_id, version).
        409 Conflict: order_conflict when the replay differs.
    """
    data = parse_body(OrderCreate, payload)
    order, created = await order_service.create_order(session, auth.actor_id, data)
    await session.commit()

    body: dict[str, Any] = {
        "status": "created" if created else "exists",
        "order": _order_body(order),
    }
    if order.is_international:
        body["warning_message"] = order_service.INTERNATIONAL_WARNING
    return respond(request, body, status_code=201 if created else 200)


@router.get("/{order_id}")
async def get_order(
    request: Request,
    order_id: str,
    version: int = Query(default=1, ge=1),
    auth: AuthContext = Depends(require_agent),
    session: AsyncSession = Depends(get_session),
) -> Response:
    order = await order_service.load_order(session, order_id, version, auth.actor_id)
    return respond(request, {"order": _order_body(order)})


@router.post("/{order_id}/checkout")
async def checkout_order(
    request: Request,
    order_id: str,
    auth: AuthContext = Depends(require_agent),
    payload: dict[str, Any] = Depends(read_payload),
    session: AsyncSession = Depends(get_session),
    client: SettlementClient = Depends(get_settlement_client),
) -> Response:
    """Create the hosted checkout session and return its redirect URL.

    Returns:
        200 OK: {"status": "checkout_created", "checkout_url", "checkout_session_id",
        "order", "warning_message"?}
    """
    data = parse_body(CheckoutCreate, payload)
    order, checkout = await order_service.checkout_order(
        session,
        client,
        order_id,
        data.version,
        auth.actor_id,
        success_url=data.success_url,
        cancel_url=data.cancel_url,
    )
    await session.commit()

    body: dict[str, Any] = {
        "status": "checkout_created",
        "checkout_url": checkout.url,
        "checkout_session_id": checkout.id,
        "order": _order_body(order),
    }
    if order.is_international:
        body["warning_message"] = order_service.INTERNATIONAL_WARNING
    return respond(request, body)
