"""Payment order service.

Orders move through:

    created → checkout_created → paid → partially_refunded → refunded
    created / checkout_created → failed_mismatch

The ledger is the source of truth. A status only moves after the provider
confirmed the action, through a conditional UPDATE guarded by the status (and,
for refunds, the refunded amount) observed before the call. Refunds first
reserve their amount on the order, so one refund amount at a time can reach
the provider.

Provider idempotency tokens:
    checkout_session_create:{order_id}:v{version}
    order_refund_create:{order_id}:v{version}:{refunded_so_far}:{amount}

The refund token includes the amount already refunded, so a retry of the same
refund reuses the provider result while a later partial refund of the same
amount is a new provider call.
"""

import json
import uuid
from datetime import datetime
from typing import Any

import structlog
from sqlalchemy import or_, select, update
from sqlalchemy.ext.asyncio import AsyncSession

from app.clients.settlement import CheckoutSession, ProviderRefund, SettlementClient
from app.config import get_app_base_url
from app.database import insert_for
from app.exceptions import (
    AccessDenied,
    ProviderOutcomeUnknown,
    RequestValidationFailed,
    ResourceNotFound,
    StateConflict,
    UpstreamProviderError,
)
from app.models import (
    REFUNDABLE_ORDER_STATUSES,
    Human,
    Order,
    OrderStatus,
    PaidStatus,
    RefundStatus,
    Task,
    as_utc,
    utcnow,
)
from app.schemas.order import OrderCreate
from app.services.payments import (
    calculate_order_amounts,
    currency_for_country,
    normalize_country,
)

log = structlog.get_logger(__name__)

# Fields that must match when an (id, version) is created again
ORDER_CORE_FIELDS = (
    "task_id",
    "human_id",
    "currency",
    "base_amount_minor",
    "fx_cost_minor",
    "total_amount_minor",
    "platform_fee_minor",
    "intl_surcharge_minor",
    "application_fee_minor",
    "payer_country",
    "payee_country",
    "is_international",
    "destination_account_id",
)

PAYABLE_ORDER_STATUSES = (OrderStatus.CREATED, OrderStatus.CHECKOUT_CREATED)

INTERNATIONAL_WARNING = "Cross-border payment: additional costs may apply"


def build_provider_token(action: str, order_id: str, version: int, *suffix: Any) -> str:
    """Stable provider idempotency token for an order action."""
    token = f"{action}:{order_id}:v{version}"
    for part in suffix:
        token += f":{part}"
    return token


def is_payout_hold_active(human: Human, now: datetime | None = None) -> bool:
    if human.payout_hold_status != "active":
        return False
    until = as_utc(human.payout_hold_until)
    if until is None:
        return True
    return until > (now or utcnow())


async def _clear_expired_hold(session: AsyncSession, human: Human) -> None:
    if human.payout_hold_status == "active" and human.payout_hold_until is not None:
        await session.execute(
            update(Human)
            .where(Human.id == human.id, Human.payout_hold_status == "active")
            .values(payout_hold_status="none", payout_hold_reason=None, payout_hold_until=None)
            .execution_options(synchronize_session=False)
        )
        log.info("payout_hold_expired_cleared", human_id=human.id)


async def load_order(
    session: AsyncSession, order_id: str, version: int, ai_account_id: str | None = None
) -> Order:
    """Load an order, checking tenant ownership when ``ai_account_id`` is given.

    Raises:
        ResourceNotFound: Unknown (id, version).
        AccessDenied: The order belongs to another tenant.
    """
    order = await session.get(Order, (order_id, version), populate_existing=True)
    if order is None:
        raise ResourceNotFound()
    if ai_account_id is not None and order.ai_account_id != ai_account_id:
        raise AccessDenied()
    return order


async def create_order(
    session: AsyncSession, ai_account_id: str, data: OrderCreate
) -> tuple[Order, bool]:
    """Create an order for a task, idempotently on (order_id, version).

    Returns:
        Tuple of (order, created). ``created`` is False for a replay of the
        same (order_id, version) with identical core fields.

    Raises:
        ResourceNotFound: task_not_found.
        AccessDenied: The task belongs to another tenant.
        StateConflict: missing_human, payout_hold_active,
            unsupported_payer_country, unsupported_payee_country,
            missing_connect_account, application_fee_exceeds_total,
            order_conflict.
    """
    task = await session.get(Task, data.task_id)
    if task is None or task.deleted_at is not None:
        raise ResourceNotFound("task_not_found")
    if task.ai_account_id != ai_account_id:
        raise AccessDenied()
    if not task.human_id:
        raise StateConflict("missing_human")

    human = await session.get(Human, task.human_id)
    if human is None or human.deleted_at is not None:
        raise StateConflict("missing_human")
    if is_payout_hold_active(human):
        raise StateConflict(
            "payout_hold_active",
            detail={
                "human_id": human.id,
                "hold_reason": human.payout_hold_reason or "payout_hold_active",
                "hold_until": as_utc(human.payout_hold_until),
            },
        )
    await _clear_expired_hold(session, human)

    payer_country = normalize_country(task.origin_country)
    if payer_country is None:
        raise StateConflict(
            "unsupported_payer_country", detail={"origin_country": task.origin_country}
        )
    payee_country = normalize_country(human.country)
    if payee_country is None:
        raise StateConflict("unsupported_payee_country", detail={"country": human.country})

    destination = (human.stripe_account_id or "").strip()
    if not destination.startswith("acct_"):
        raise StateConflict("missing_connect_account")

    amounts = calculate_order_amounts(
        data.base_amount_minor, data.fx_cost_minor, payer_country, payee_country
    )
    order_id = data.order_id or f"order_{uuid.uuid4()}"
    now = utcnow()
    values = {
        "id": order_id,
        "version": data.version,
        "task_id": task.id,
        "ai_account_id": ai_account_id,
        "human_id": human.id,
        "currency": currency_for_country(payee_country),
        "base_amount_minor": amounts.base_amount_minor,
        "fx_cost_minor": amounts.fx_cost_minor,
        "total_amount_minor": amounts.total_amount_minor,
        "platform_fee_minor": amounts.platform_fee_minor,
        "intl_surcharge_minor": amounts.intl_surcharge_minor,
        "application_fee_minor": amounts.application_fee_minor,
        "payer_country": payer_country,
        "payee_country": payee_country,
        "is_international": amounts.is_international,
        "destination_account_id": destination,
        "status": OrderStatus.CREATED,
        "refund_amount_minor": 0,
        "created_at": now,
        "updated_at": now,
    }
    result = await session.execute(
        insert_for(session, Order)
        .values(**values)
        .on_conflict_do_nothing(index_elements=["id", "version"])
    )
    order = await load_order(session, order_id, data.version)

    if result.rowcount == 1:
        log.info(
            "order_created",
            order_id=order_id,
            version=data.version,
            task_id=task.id,
            total_amount_minor=amounts.total_amount_minor,
            currency=order.currency,
            is_international=amounts.is_international,
        )
        return order, True

    mismatch = {
        name: {"existing": getattr(order, name), "requested": values[name]}
        for name in ORDER_CORE_FIELDS
        if getattr(order, name) != values[name]
    }
    if order.ai_account_id != ai_account_id or mismatch:
        log.info("order_conflict", order_id=order_id, version=data.version, fields=list(mismatch))
        raise StateConflict(
            "order_conflict",
            detail={"order_id": order_id, "version": data.version, "mismatch": mismatch},
        )
    return order, False


def _validate_redirect_url(base: str, value: str | None, default_path: str, field: str) -> str:
    url = (value or f"{base}{default_path}").strip()
    if not url.startswith(base):
        raise RequestValidationFailed(detail={"message": f"{field} must start with APP_BASE_URL"})
    return url


async def checkout_order(
    session: AsyncSession,
    client: SettlementClient,
    order_id: str,
    version: int,
    ai_account_id: str,
    success_url: str | None = None,
    cancel_url: str | None = None,
) -> tuple[Order, CheckoutSession]:
    """Create the hosted checkout session for a created order.

    Raises:
        StateConflict: invalid_order_status, checkout_already_created,
            amount_mismatch, destination_country_mismatch,
            destination_transfers_inactive, checkout_conflict.
        RequestValidationFailed: Redirect URL outside APP_BASE_URL.
        UpstreamProviderError: Provider failure (order unchanged).
    """
    order = await load_order(session, order_id, version, ai_account_id)
    if order.status != OrderStatus.CREATED:
        raise StateConflict("invalid_order_status", detail={"order_status": order.status.value})
    if order.checkout_session_id:
        raise StateConflict(
            "checkout_already_created",
            detail={"checkout_session_id": order.checkout_session_id},
        )

    base = get_app_base_url()
    success = _validate_redirect_url(base, success_url, "/payments?status=success", "success_url")
    cancel = _validate_redirect_url(base, cancel_url, "/payments?status=cancel", "cancel_url")

    expected = calculate_order_amounts(
        order.base_amount_minor, order.fx_cost_minor, order.payer_country, order.payee_country
    )
    if (
        expected.total_amount_minor != order.total_amount_minor
        or expected.application_fee_minor != order.application_fee_minor
    ):
        log.error("order_amount_mismatch", order_id=order.id, version=order.version)
        raise StateConflict("amount_mismatch")

    account = await client.retrieve_account(order.destination_account_id)
    if (account.country or "").upper() != order.payee_country:
        raise StateConflict(
            "destination_country_mismatch",
            detail={"expected": order.payee_country, "actual": account.country},
        )
    if account.transfers_capability and account.transfers_capability != "active":
        raise StateConflict("destination_transfers_inactive")

    metadata = {"order_id": order.id, "version": str(order.version)}
    params = {
        "mode": "payment",
        "line_items": [
            {
                "quantity": 1,
                "price_data": {
                    "currency": order.currency,
                    "unit_amount": order.total_amount_minor,
                    "product_data": {"name": "Order payment"},
                },
            }
        ],
        "success_url": success,
        "cancel_url": cancel,
        "client_reference_id": f"{order.id}:v{order.version}",
        "metadata": metadata,
        "payment_intent_data": {
            "application_fee_amount": order.application_fee_minor,
            "transfer_data": {"destination": order.destination_account_id},
            "metadata": metadata,
        },
    }
    checkout = await client.create_checkout_session(
        params,
        idempotency_key=build_provider_token("checkout_session_create", order.id, order.version),
    )

    result = await session.execute(
        update(Order)
        .where(
            Order.id == order.id,
            Order.version == order.version,
            Order.status == OrderStatus.CREATED,
            Order.checkout_session_id.is_(None),
        )
        .values(
            status=OrderStatus.CHECKOUT_CREATED,
            checkout_session_id=checkout.id,
            updated_at=utcnow(),
        )
        .execution_options(synchronize_session=False)
    )
    if result.rowcount != 1:
        log.warning("checkout_lost_race", order_id=order.id, version=order.version)
        raise StateConflict("checkout_conflict")

    order = await load_order(session, order.id, order.version)
    log.info(
        "order_checkout_created",
        order_id=order.id,
        version=order.version,
        checkout_session_id=checkout.id,
    )
    return order, checkout


async def _reserve_refund(
    session: AsyncSession, order: Order, refunded_so_far: int, amount: int
) -> None:
    """Record ``amount`` as the in-flight refund and commit before the provider call.

    A reservation for the same amount can be taken again: the retry reuses the
    provider token, so the provider returns the original refund.

    Raises:
        StateConflict: refund_in_progress (another amount is in flight) or
            refund_conflict (the refunded amount moved).
    """
    result = await session.execute(
        update(Order)
        .where(
            Order.id == order.id,
            Order.version == order.version,
            Order.status.in_(REFUNDABLE_ORDER_STATUSES),
            Order.refund_amount_minor == refunded_so_far,
            or_(
                Order.refund_pending_amount_minor.is_(None),
                Order.refund_pending_amount_minor == amount,
            ),
        )
        .values(
            refund_pending_amount_minor=amount,
            refund_status=RefundStatus.PENDING,
            updated_at=utcnow(),
        )
        .execution_options(synchronize_session=False)
    )
    if result.rowcount == 1:
        await session.commit()
        return

    current = await load_order(session, order.id, order.version)
    log.warning(
        "refund_reservation_lost",
        order_id=order.id,
        version=order.version,
        pending_amount_minor=current.refund_pending_amount_minor,
    )
    if current.refund_pending_amount_minor not in (None, amount):
        raise StateConflict(
            "refund_in_progress",
            detail={"pending_amount_minor": current.refund_pending_amount_minor},
        )
    raise StateConflict("refund_conflict")


def _reserved_by(order: Order, refunded_so_far: int, amount: int) -> list[Any]:
    return [
        Order.id == order.id,
        Order.version == order.version,
        Order.refund_amount_minor == refunded_so_far,
        Order.refund_pending_amount_minor == amount,
    ]


async def refund_order(
    session: AsyncSession,
    client: SettlementClient,
    order_id: str,
    version: int,
    amount_minor: int | None = None,
    reason: str | None = None,
) -> tuple[Order, ProviderRefund]:
    """Refund part or all of a paid order (admin).

    The amount is reserved on the order (and committed) before the provider
    is called, so concurrent refunds of different amounts cannot both reach
    the provider. The reservation is cleared when the provider settles the
    refund or definitively rejects it. When the outcome is unknown (timeout,
    connection loss, provider 5xx) it stays, and only a retry of the same
    amount, which reuses the provider token, can proceed.

    Args:
        amount_minor: Amount to refund; defaults to the remaining refundable amount.
        reason: duplicate, fraudulent or requested_by_customer.

    Raises:
        StateConflict: already_fully_refunded, invalid_order_status,
            refund_amount_exceeds_remaining, missing_payment_reference,
            refund_in_progress, refund_conflict.
        RequestValidationFailed: invalid_refund_amount.
        UpstreamProviderError: Provider failure (refunded amount unchanged,
            failure recorded on the order).
    """
    order = await load_order(session, order_id, version)
    refunded_so_far = order.refund_amount_minor or 0
    remaining = order.total_amount_minor - refunded_so_far
    if order.status == OrderStatus.REFUNDED:
        raise StateConflict("already_fully_refunded")
    if order.status not in REFUNDABLE_ORDER_STATUSES:
        raise StateConflict("invalid_order_status", detail={"order_status": order.status.value})
    if remaining <= 0:
        raise StateConflict("already_fully_refunded")

    amount = remaining if amount_minor is None else amount_minor
    if amount <= 0:
        raise RequestValidationFailed("invalid_refund_amount")
    if amount > remaining:
        raise StateConflict(
            "refund_amount_exceeds_remaining",
            detail={"requested": amount, "remaining": remaining},
        )
    if not order.payment_intent_id and not order.charge_id:
        raise StateConflict("missing_payment_reference")

    params: dict[str, Any] = {
        "amount": amount,
        "metadata": {"order_id": order.id, "version": str(order.version)},
    }
    if reason:
        params["reason"] = reason
    if order.payment_intent_id:
        params["payment_intent"] = order.payment_intent_id
    else:
        params["charge"] = order.charge_id

    await _reserve_refund(session, order, refunded_so_far, amount)

    token = build_provider_token(
        "order_refund_create", order.id, order.version, refunded_so_far, amount
    )
    try:
        refund = await client.create_refund(params, idempotency_key=token)
    except UpstreamProviderError as e:
        values: dict[str, Any] = {
            "refund_error_message": str((e.detail or {}).get("message") or e.reason)[:2000],
            "updated_at": utcnow(),
        }
        if not isinstance(e, ProviderOutcomeUnknown):
            values.update(refund_pending_amount_minor=None, refund_status=RefundStatus.FAILED)
        await session.execute(
            update(Order)
            .where(*_reserved_by(order, refunded_so_far, amount))
            .values(**values)
            .execution_options(synchronize_session=False)
        )
        await session.commit()
        log.warning(
            "refund_provider_failed",
            order_id=order.id,
            version=order.version,
            amount_minor=amount,
            reservation_kept=isinstance(e, ProviderOutcomeUnknown),
        )
        raise

    now = utcnow()
    values = {
        "refund_id": refund.id,
        "refund_reason": reason,
        "updated_at": now,
    }
    if refund.status == "succeeded":
        new_total = refunded_so_far + amount
        is_full = new_total >= order.total_amount_minor
        values.update(
            status=OrderStatus.REFUNDED if is_full else OrderStatus.PARTIALLY_REFUNDED,
            refund_status=RefundStatus.FULL if is_full else RefundStatus.PARTIAL,
            refund_amount_minor=new_total,
            refund_pending_amount_minor=None,
            refunded_at=now,
            refund_error_message=None,
        )
    elif refund.status in ("failed", "canceled"):
        values.update(
            refund_status=RefundStatus.FAILED,
            refund_pending_amount_minor=None,
            refund_error_message="refund_failed",
        )
    else:
        # Provider still processing: the reservation stays until a retry settles it
        values.update(refund_status=RefundStatus.PENDING)

    result = await session.execute(
        update(Order)
        .where(
            *_reserved_by(order, refunded_so_far, amount),
            Order.status.in_(REFUNDABLE_ORDER_STATUSES),
        )
        .values(**values)
        .execution_options(synchronize_session=False)
    )
    if result.rowcount != 1:
        order = await load_order(session, order.id, order.version)
        if order.refund_id == refund.id:
            # A retry sharing the provider token recorded this refund first
            return order, refund
        log.warning("refund_lost_race", order_id=order.id, version=order.version)
        raise StateConflict("refund_conflict")

    order = await load_order(session, order.id, order.version)
    log.info(
        "order_refunded",
        order_id=order.id,
        version=order.version,
        refund_id=refund.id,
        provider_status=refund.status,
        amount_minor=amount,
        refund_amount_minor=order.refund_amount_minor,
    )
    return order, refund


# --- settlement event reconciliation ---------------------------------------


def parse_order_key(
    metadata: dict[str, Any] | None, client_reference_id: str | None = None
) -> tuple[str, int] | None:
    """Extract (order_id, version) from provider metadata or "{id}:v{version}"."""
    metadata = metadata or {}
    order_id = str(metadata.get("order_id") or "").strip()
    raw_version = metadata.get("version")
    if order_id and raw_version is not None:
        try:
            version = int(raw_version)
        except (TypeError, ValueError):
            version = 0
        if version > 0:
            return order_id, version

    reference = (client_reference_id or "").strip()
    order_id, sep, raw_version = reference.rpartition(":v")
    if sep and order_id and raw_version.isdigit() and int(raw_version) > 0:
        return order_id, int(raw_version)
    return None


async def _find_order_by(session: AsyncSession, column: Any, value: str | None) -> Order | None:
    if not value:
        return None
    result = await session.execute(
        select(Order).where(column == value).order_by(Order.updated_at.desc()).limit(1)
    )
    return result.scalar_one_or_none()


async def _mark_mismatch(session: AsyncSession, order: Order, mismatches: list[dict]) -> None:
    await session.execute(
        update(Order)
        .where(
            Order.id == order.id,
            Order.version == order.version,
            Order.status.in_(PAYABLE_ORDER_STATUSES),
        )
        .values(
            status=OrderStatus.FAILED_MISMATCH,
            mismatch_reason=json.dumps({"mismatches": mismatches}, default=str),
            updated_at=utcnow(),
        )
        .execution_options(synchronize_session=False)
    )
    log.error(
        "order_reconciliation_mismatch",
        order_id=order.id,
        version=order.version,
        fields=[m["field"] for m in mismatches],
    )


async def apply_checkout_completed(session: AsyncSession, checkout: dict[str, Any]) -> None:
    """checkout.session.completed: link the session and payment intent to the order.

    Raises:
        ValueError: missing_order_key_in_session or order_not_found.
    """
    key = parse_order_key(checkout.get("metadata"), checkout.get("client_reference_id"))
    if key is None:
        raise ValueError("missing_order_key_in_session")
    order = await session.get(Order, key, populate_existing=True)
    if order is None:
        raise ValueError("order_not_found")

    session_id = checkout.get("id")
    if order.checkout_session_id and order.checkout_session_id != session_id:
        await _mark_mismatch(
            session,
            order,
            [
                {
                    "field": "checkout_session_id",
                    "db": order.checkout_session_id,
                    "stripe": session_id,
                }
            ],
        )
        return

    values: dict[str, Any] = {"updated_at": utcnow()}
    if order.status == OrderStatus.CREATED:
        values["status"] = OrderStatus.CHECKOUT_CREATED
    if not order.checkout_session_id:
        values["checkout_session_id"] = session_id
    if not order.payment_intent_id and checkout.get("payment_intent"):
        values["payment_intent_id"] = checkout.get("payment_intent")
    await session.execute(
        update(Order)
        .where(Order.id == order.id, Order.version == order.version)
        .values(**values)
        .execution_options(synchronize_session=False)
    )
    log.info("order_checkout_completed", order_id=order.id, version=order.version)


async def apply_payment_succeeded(session: AsyncSession, intent: dict[str, Any]) -> None:
    """payment_intent.succeeded: reconcile against the ledger and mark the order paid.

    Any disagreement on currency, amount, application fee or destination moves
    the order to failed_mismatch with a JSON reason instead.

    Raises:
        ValueError: order_not_found.
    """
    key = parse_order_key(intent.get("metadata"))
    order = await session.get(Order, key, populate_existing=True) if key else None
    if order is None:
        order = await _find_order_by(session, Order.payment_intent_id, intent.get("id"))
    if order is None:
        raise ValueError("order_not_found")

    destination = (intent.get("transfer_data") or {}).get("destination")
    mismatches = []
    if str(intent.get("currency") or "").lower() != order.currency:
        mismatches.append(
            {"field": "currency", "db": order.currency, "stripe": intent.get("currency")}
        )
    if intent.get("amount") != order.total_amount_minor:
        mismatches.append(
            {"field": "amount", "db": order.total_amount_minor, "stripe": intent.get("amount")}
        )
    if (intent.get("application_fee_amount") or 0) != order.application_fee_minor:
        mismatches.append(
            {
                "field": "application_fee_amount",
                "db": order.application_fee_minor,
                "stripe": intent.get("application_fee_amount"),
            }
        )
    if (destination or "") != order.destination_account_id:
        mismatches.append(
            {
                "field": "transfer_data.destination",
                "db": order.destination_account_id,
                "stripe": destination,
            }
        )
    if mismatches:
        await _mark_mismatch(session, order, mismatches)
        return

    now = utcnow()
    values: dict[str, Any] = {"status": OrderStatus.PAID, "updated_at": now}
    if not order.payment_intent_id:
        values["payment_intent_id"] = intent.get("id")
    if not order.charge_id and intent.get("latest_charge"):
        values["charge_id"] = intent.get("latest_charge")
    result = await session.execute(
        update(Order)
        .where(
            Order.id == order.id,
            Order.version == order.version,
            Order.status.in_(PAYABLE_ORDER_STATUSES),
        )
        .values(**values)
        .execution_options(synchronize_session=False)
    )
    if result.rowcount != 1:
        log.info("order_already_settled", order_id=order.id, status=order.status.value)
        return

    await session.execute(
        update(Task)
        .where(Task.id == order.task_id, Task.paid_status != PaidStatus.PAID)
        .values(paid_status=PaidStatus.PAID, paid_at=now, paid_method="stripe", updated_at=now)
        .execution_options(synchronize_session=False)
    )
    log.info("order_paid", order_id=order.id, version=order.version, task_id=order.task_id)


async def apply_charge_succeeded(session: AsyncSession, charge: dict[str, Any]) -> None:
    """charge.succeeded: record the charge id on the order.

    Raises:
        ValueError: order_not_found.
    """
    key = parse_order_key(charge.get("metadata"))
    order = await session.get(Order, key, populate_existing=True) if key else None
    if order is None:
        order = await _find_order_by(session, Order.payment_intent_id, charge.get("payment_intent"))
    if order is None:
        raise ValueError("order_not_found")

    values: dict[str, Any] = {"updated_at": utcnow()}
    if not order.charge_id:
        values["charge_id"] = charge.get("id")
    if not order.payment_intent_id and charge.get("payment_intent"):
        values["payment_intent_id"] = charge.get("payment_intent")
    await session.execute(
        update(Order)
        .where(Order.id == order.id, Order.version == order.version)
        .values(**values)
        .execution_options(synchronize_session=False)
    )
    log.info("order_charge_recorded", order_id=order.id, charge_id=charge.get("id"))
