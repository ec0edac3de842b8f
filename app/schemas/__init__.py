"""Pydantic schemas for validation and serialization."""

from app.schemas.order import CheckoutCreate, OrderCreate, OrderResponse, RefundCreate
from app.schemas.task import TaskAccept, TaskCreate, TaskPay, TaskResponse, TaskSubmit
from app.schemas.webhook import (
    WebhookEndpointCreate,
    WebhookEndpointCreated,
    WebhookEndpointResponse,
)

__all__ = [
    "CheckoutCreate",
    "OrderCreate",
    "OrderResponse",
    "RefundCreate",
    "TaskAccept",
    "TaskCreate",
    "TaskPay",
    "TaskResponse",
    "TaskSubmit",
    "WebhookEndpointCreate",
    "WebhookEndpointCreated",
    "WebhookEndpointResponse",
]
