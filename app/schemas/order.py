"""Pydantic schemas for payment orders.

Schema Naming Convention:
    - OrderCreate: POST /api/orders body
    - CheckoutCreate: POST /api/orders/{id}/checkout body
    - RefundCreate: POST /api/admin/orders/{id}/refund body
    - OrderResponse: order representation in API responses

All amounts are integers in minor units of the order currency.
"""

from datetime import datetime
from typing import Literal

from pydantic import BaseModel, ConfigDict, Field

from app.models import Order, OrderStatus, RefundStatus, as_utc


class OrderCreate(BaseModel):
    """Idempotent order creation keyed by (order_id, version)."""

    model_config = ConfigDict(extra="ignore", str_strip_whitespace=True)

    task_id: str = Field(..., min_length=1, max_length=36)
    order_id: str | None = Field(default=None, min_length=1, max_length=64)
    version: int = Field(default=1, ge=1)
    base_amount_minor: int = Field(..., ge=0, description="Base amount in minor units")
    fx_cost_minor: int = Field(default=0, ge=0, description="FX cost in minor units")


class CheckoutCreate(BaseModel):
    model_config = ConfigDict(extra="ignore", str_strip_whitespace=True)

    version: int = Field(default=1, ge=1)
    success_url: str | None = Field(default=None, max_length=2048)
    cancel_url: str | None = Field(default=None, max_length=2048)


class RefundCreate(BaseModel):
    """Refund request. ``amount_minor`` defaults to the refundable remainder."""

    model_config = ConfigDict(extra="ignore")

    version: int = Field(default=1, ge=1)
    amount_minor: int | None = Field(default=None, gt=0)
    reason: Literal["duplicate", "fraudulent", "requested_by_customer"] | None = None


class OrderResponse(BaseModel):
    model_config = ConfigDict(from_attributes=True)

    id: str
    version: int
    task_id: str
    status: OrderStatus
    currency: str
    base_amount_minor: int
    fx_cost_minor: int
    total_amount_minor: int
    platform_fee_minor: int
    intl_surcharge_minor: int
    application_fee_minor: int
    payer_country: str
    payee_country: str
    is_international: bool
    destination_account_id: str
    human_id: str
    checkout_session_id: str | None = None
    payment_intent_id: str | None = None
    charge_id: str | None = None
    mismatch_reason: str | None = None
    refund_status: RefundStatus | None = None
    refund_amount_minor: int = 0
    refund_pending_amount_minor: int | None = None
    refund_reason: str | None = None
    refund_id: str | None = None
    refunded_at: datetime | None = None
    refund_error_message: str | None = None
    created_at: datetime
    updated_at: datetime

    @classmethod
    def from_order(cls, order: Order) -> "OrderResponse":
        response = cls.model_validate(order)
        return response.model_copy(
            update={
                "refunded_at": as_utc(order.refunded_at),
                "created_at": as_utc(order.created_at),
                "updated_at": as_utc(order.updated_at),
            }
        )
