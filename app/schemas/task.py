"""Pydantic schemas for Task request validation and serialization.

This module defines Pydantic v2 schemas for creating, mutating, and returning
Task model instances via the task API.

Schema Naming Convention:
    - TaskCreate: POST /api/tasks body
    - TaskAccept / TaskSubmit / TaskPay: mutation bodies
    - TaskResponse: API responses and outbox event snapshots

Request bodies may also carry credentials (ai_account_id, ai_api_key,
human_id, human_api_key). Those are read by the auth layer; the request
schemas ignore unknown fields.
"""

from datetime import datetime
from decimal import Decimal

from pydantic import BaseModel, ConfigDict, Field, field_validator

from app.models import (
    DeliverableKind,
    FailureReason,
    PaidStatus,
    Task,
    TaskStatus,
    as_utc,
)
from app.services.payments import MIN_BUDGET_USD

CREDENTIAL_FIELDS = frozenset({"ai_account_id", "ai_api_key", "human_id", "human_api_key"})


class TaskCreate(BaseModel):
    """Schema for creating a new task.

    Defaults:
        - deliverable: None (treated as text)
        - deadline: none; either deadline_at or deadline_minutes may be given
    """

    model_config = ConfigDict(extra="ignore", str_strip_whitespace=True)

    description: str = Field(
        ...,
        min_length=1,
        max_length=4000,
        description="What the worker should do",
        examples=["Photograph the opening hours sign at the Shibuya post office"],
    )
    description_display: str | None = Field(
        default=None,
        max_length=4000,
        description="Display variant of the description (defaults to description)",
    )
    origin_country: str = Field(
        ...,
        min_length=2,
        max_length=2,
        description="ISO-3166 alpha-2 country of the requester",
        examples=["US"],
    )
    budget_usd: Decimal = Field(
        ...,
        ge=MIN_BUDGET_USD,
        max_digits=12,
        decimal_places=2,
        description="Budget in USD (minimum 5)",
    )
    quote_amount_minor: int | None = Field(default=None, ge=0)
    quote_currency: str | None = Field(default=None, min_length=3, max_length=3)
    deliverable: DeliverableKind | None = Field(
        default=None,
        description="Expected submission kind (photo/video/text)",
    )
    deadline_minutes: int | None = Field(
        default=None,
        ge=1,
        le=60 * 24 * 30,
        description="Deadline relative to creation, in minutes",
    )
    deadline_at: datetime | None = Field(default=None, description="Absolute deadline (UTC)")

    @field_validator("origin_country")
    @classmethod
    def _upper_country(cls, value: str) -> str:
        if not value.isalpha():
            raise ValueError("origin_country must be an ISO-3166 alpha-2 code")
        return value.upper()

    @field_validator("quote_currency")
    @classmethod
    def _lower_currency(cls, value: str | None) -> str | None:
        return value.lower() if value else value


class TaskAccept(BaseModel):
    """Accept body. ``human_id`` selects the worker when an agent accepts."""

    model_config = ConfigDict(extra="ignore")

    human_id: str | None = Field(default=None, max_length=64)


class TaskSubmit(BaseModel):
    """Submission body. Text deliverables need ``text``, media need ``content_url``."""

    model_config = ConfigDict(extra="ignore", str_strip_whitespace=True)

    kind: DeliverableKind
    text: str | None = Field(default=None, max_length=20000)
    content_url: str | None = Field(default=None, max_length=1000)


class TaskPay(BaseModel):
    model_config = ConfigDict(extra="ignore")

    processor_fee_usd: Decimal = Field(default=Decimal("0"), ge=0, max_digits=12, decimal_places=2)


class TaskResponse(BaseModel):
    """Schema for Task API responses and event snapshots.

    Normalization:
        - deadline_at resolved from deadline_minutes when only that is stored
        - description_display defaults to description
        - deliverable defaults to text
        - failure_reason only present for failed tasks
    """

    model_config = ConfigDict(from_attributes=True)

    id: str
    status: TaskStatus
    failure_reason: FailureReason | None = None
    description: str
    description_display: str
    origin_country: str
    budget_usd: float
    quote_amount_minor: int | None = None
    quote_currency: str | None = None
    deliverable: DeliverableKind
    deadline_at: datetime | None = None
    ai_account_id: str | None = None
    human_id: str | None = None
    paid_status: PaidStatus
    submission_id: str | None = None
    review_pending_deadline_at: datetime | None = None
    completed_at: datetime | None = None
    created_at: datetime
    updated_at: datetime

    @classmethod
    def from_task(cls, task: Task) -> "TaskResponse":
        failure_reason = None
        if task.status == TaskStatus.FAILED:
            failure_reason = task.failure_reason or FailureReason.UNKNOWN
        return cls(
            id=task.id,
            status=task.status,
            failure_reason=failure_reason,
            description=task.description,
            description_display=task.description_display or task.description,
            origin_country=task.origin_country,
            budget_usd=float(task.budget_usd),
            quote_amount_minor=task.quote_amount_minor,
            quote_currency=task.quote_currency,
            deliverable=task.deliverable or DeliverableKind.TEXT,
            deadline_at=task.effective_deadline,
            ai_account_id=task.ai_account_id,
            human_id=task.human_id,
            paid_status=task.paid_status,
            submission_id=task.submission_id,
            review_pending_deadline_at=as_utc(task.review_pending_deadline_at),
            completed_at=as_utc(task.completed_at),
            created_at=as_utc(task.created_at),
            updated_at=as_utc(task.updated_at),
        )
