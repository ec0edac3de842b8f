"""Operator routes (X-Admin-Token).

- POST /api/admin/tasks/{task_id}/delete - Soft delete a task
- POST /api/admin/tasks/{task_id}/restore - Undo a soft delete
- POST /api/admin/tasks/{task_id}/pay - Record the legacy USD payout
- POST /api/admin/orders/{order_id}/refund - Refund a paid order
- POST /api/admin/webhooks/reencrypt - Re-encrypt signing secrets after a key rotation
"""

from typing import Any

import structlog
from fastapi import APIRouter, Depends, Request
from fastapi.responses import Response
from sqlalchemy.ext.asyncio import AsyncSession

from app.clients.settlement import SettlementClient
from app.database import get_session
from app.models import as_utc
from app.routes.deps import (
    AuthContext,
    get_settlement_client,
    parse_body,
    read_payload,
    require_admin,
    respond,
)
from app.schemas.order import OrderResponse, RefundCreate
from app.schemas.task import TaskPay
from app.services import order_service, task_service, webhook_endpoints

log = structlog.get_logger(__name__)
router = APIRouter(prefix="/api/admin", tags=["admin"])


@router.post("/tasks/{task_id}/delete")
async def delete_task(
    request: Request,
    task_id: str,
    auth: AuthContext = Depends(require_admin),
    session: AsyncSession = Depends(get_session),
) -> Response:
    task = await task_service.set_task_deleted(session, task_id, deleted=True)
    await session.commit()
    return respond(request, {"status": "deleted", "task_id": task.id})


@router.post("/tasks/{task_id}/restore")
async def restore_task(
    request: Request,
    task_id: str,
    auth: AuthContext = Depends(require_admin),
    session: AsyncSession = Depends(get_session),
) -> Response:
    task = await task_service.set_task_deleted(session, task_id, deleted=False)
    await session.commit()
    return respond(request, {"status": "restored", "task_id": task.id})


@router.post("/tasks/{task_id}/pay")
async def pay_task(
    request: Request,
    task_id: str,
    auth: AuthContext = Depends(require_admin),
    payload: dict[str, Any] = Depends(read_payload),
    session: AsyncSession = Depends(get_session),
) -> Response:
    """Record the legacy payout of a completed task.

    Returns:
        200 OK: {"status": "paid", "task_id", "paid_at", "paid_method",
        "gross_amount", "fee_rate", "platform_fee", "processor_fee", "payout_amount"}
    """
    data = parse_body(TaskPay, payload)
    task = await task_service.pay_task(session, task_id, data.processor_fee_usd)
    await session.commit()

    return respond(
        request,
        {
            "status": "paid",
            "task_id": task.id,
            "paid_at": as_utc(task.paid_at).isoformat(),
            "paid_method": task.paid_method,
            "gross_amount": str(task.budget_usd),
            "fee_rate": str(task.fee_rate),
            "platform_fee": str(task.fee_amount),
            "processor_fee": str(task.processor_fee_amount),
            "payout_amount": str(task.payout_amount),
        },
    )


@router.post("/orders/{order_id}/refund")
async def refund_order(
    request: Request,
    order_id: str,
    auth: AuthContext = Depends(require_admin),
    payload: dict[str, Any] = Depends(read_payload),
    session: AsyncSession = Depends(get_session),
    client: SettlementClient = Depends(get_settlement_client),
) -> Response:
    """Refund part or all of a paid order.

    Returns:
        200 OK: {"status": <order status>, "refund_id", "refund_status", "order"}
        409 Conflict: already_fully_refunded, invalid_order_status, ...
        502 Bad Gateway: Provider error (refund_error_message recorded)
    """
    data = parse_body(RefundCreate, payload)
    order, refund = await order_service.refund_order(
        session,
        client,
        order_id,
        data.version,
        amount_minor=data.amount_minor,
        reason=data.reason,
    )
    await session.commit()

    return respond(
        request,
        {
            "status": order.status.value,
            "refund_id": refund.id,
            "refund_status": order.refund_status.value if order.refund_status else None,
            "order": OrderResponse.from_order(order).model_dump(mode="json"),
        },
    )


@router.post("/webhooks/reencrypt")
async def reencrypt_webhook_secrets(
    request: Request,
    auth: AuthContext = Depends(require_admin),
    session: AsyncSession = Depends(get_session),
) -> Response:
    """Re-encrypt webhook signing secrets under the primary FERNET_KEY.

    Returns:
        200 OK: {"status": "ok", "reencrypted": n, "failed": [webhook ids]}
    """
    rotated, failed = await webhook_endpoints.reencrypt_secrets(session)
    await session.commit()
    if failed:
        log.warning("webhook_secret_reencrypt_incomplete", failed=failed)
    return respond(request, {"status": "ok", "reencrypted": rotated, "failed": failed})
