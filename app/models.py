"""SQLAlchemy 2.0 ORM models.

This module contains all SQLAlchemy models for the marketplace ledger.
All models use the Mapped[type] annotation pattern required by SQLAlchemy 2.0.

Ledger tables:
    ai_accounts, humans: Requesting tenants (agents) and workers.
    tasks, submissions, task_contacts: Task lifecycle.
    orders: Payment orders keyed by (id, version).
    idempotency_keys: Request-scoped idempotency ledger.
    ai_api_usage_monthly, ai_api_usage_minute, ai_api_usage_warnings: Quota counters.
    webhook_endpoints, webhook_deliveries, outbox_events: Outbound events.
    stripe_webhook_events: Inbound settlement provider events.

Encrypted Fields Pattern:
    Webhook signing secrets are stored encrypted using Fernet symmetric
    encryption in `{field}_encrypted` LargeBinary columns. API keys are never
    stored, only their SHA-256 hex digest.

    NEVER expose encrypted fields or key hashes in __repr__ or log statements.
"""

import enum
import uuid
from datetime import datetime, timedelta, timezone
from decimal import Decimal
from typing import Any

from sqlalchemy import (
    JSON,
    Boolean,
    CheckConstraint,
    DateTime,
    Enum,
    ForeignKey,
    Index,
    Integer,
    LargeBinary,
    Numeric,
    PrimaryKeyConstraint,
    String,
    Text,
)
from sqlalchemy.orm import DeclarativeBase, Mapped, mapped_column, validates

from app.exceptions import InvalidStateTransitionError


def utcnow() -> datetime:
    """Get current UTC datetime (timezone-aware)."""
    return datetime.now(timezone.utc)


def as_utc(value: datetime | None) -> datetime | None:
    """Attach UTC to naive datetimes read back from SQLite."""
    if value is None or value.tzinfo is not None:
        return value
    return value.replace(tzinfo=timezone.utc)


def new_id() -> str:
    return str(uuid.uuid4())


def _enum(enum_cls: type[enum.Enum], name: str) -> Enum:
    # values_callable stores enum.value (lowercase), not enum.name
    return Enum(
        enum_cls,
        native_enum=True,
        name=name,
        values_callable=lambda x: [e.value for e in x],
    )


class TaskStatus(enum.Enum):
    """Task lifecycle states.

    Flow:
        open → accepted → review_pending → completed
        open → failed, accepted → failed (timeout)
        accepted → open (skip / release)
        accepted → completed (submit without review gate)

    Terminal States:
        completed, failed
    """

    OPEN = "open"
    ACCEPTED = "accepted"
    REVIEW_PENDING = "review_pending"
    COMPLETED = "completed"
    FAILED = "failed"


# Statuses a timed-out task may still be moved out of
TIMEOUT_ELIGIBLE_STATUSES = (TaskStatus.OPEN, TaskStatus.ACCEPTED)


class FailureReason(enum.Enum):
    NO_HUMAN_AVAILABLE = "no_human_available"
    TIMEOUT = "timeout"
    INVALID_REQUEST = "invalid_request"
    WRONG_DELIVERABLE = "wrong_deliverable"
    ALREADY_ASSIGNED = "already_assigned"
    NOT_ASSIGNED = "not_assigned"
    MISSING_HUMAN = "missing_human"
    NOT_FOUND = "not_found"
    REQUESTER_REJECTED = "requester_rejected"
    UNKNOWN = "unknown"


class DeliverableKind(enum.Enum):
    PHOTO = "photo"
    VIDEO = "video"
    TEXT = "text"


DELIVERABLE_KIND_TYPE = _enum(DeliverableKind, "deliverablekind")


class PaidStatus(enum.Enum):
    PENDING = "pending"
    APPROVED = "approved"
    PAID = "paid"
    FAILED = "failed"


class AccountStatus(enum.Enum):
    ACTIVE = "active"
    SUSPENDED = "suspended"


class ApiAccessStatus(enum.Enum):
    ACTIVE = "active"
    DISABLED = "disabled"


class HumanStatus(enum.Enum):
    AVAILABLE = "available"
    BUSY = "busy"


class ContactStatus(enum.Enum):
    PENDING = "pending"
    OPEN = "open"
    CLOSED = "closed"


class OrderStatus(enum.Enum):
    """Payment order states.

    Flow:
        created → checkout_created → paid → partially_refunded → refunded
        paid → refunded (full refund in one step)
        created / checkout_created → failed_mismatch (provider data disagrees with ledger)
    """

    CREATED = "created"
    CHECKOUT_CREATED = "checkout_created"
    PAID = "paid"
    PARTIALLY_REFUNDED = "partially_refunded"
    REFUNDED = "refunded"
    FAILED_MISMATCH = "failed_mismatch"


REFUNDABLE_ORDER_STATUSES = (OrderStatus.PAID, OrderStatus.PARTIALLY_REFUNDED)


class RefundStatus(enum.Enum):
    PENDING = "pending"
    PARTIAL = "partial"
    FULL = "full"
    FAILED = "failed"


class WebhookEndpointStatus(enum.Enum):
    ACTIVE = "active"
    DISABLED = "disabled"


class OutboxStatus(enum.Enum):
    PENDING = "pending"
    PROCESSING = "processing"
    DISPATCHED = "dispatched"
    FAILED = "failed"


class SettlementEventStatus(enum.Enum):
    PENDING = "pending"
    PROCESSING = "processing"
    PROCESSED = "processed"
    FAILED = "failed"


class Base(DeclarativeBase):
    """Base class for all SQLAlchemy models."""

    pass


class AiAccount(Base):
    """Requesting tenant ("agent") with API credentials and quota limits.

    Attributes:
        id: Business identifier passed as ai_account_id.
        api_key_hash: SHA-256 hex digest of the API key.
        status: Account status (suspended accounts cannot authenticate).
        api_access_status: Whether programmatic API access is enabled.
        monthly_limit: Per-account monthly ceiling (None or <= 0 uses default).
        burst_per_minute: Per-account minute ceiling (None or <= 0 uses default).
    """

    __tablename__ = "ai_accounts"

    id: Mapped[str] = mapped_column(String(64), primary_key=True)
    name: Mapped[str] = mapped_column(String(255), nullable=False, default="")
    api_key_hash: Mapped[str] = mapped_column(String(64), nullable=False)
    status: Mapped[AccountStatus] = mapped_column(
        _enum(AccountStatus, "accountstatus"), nullable=False, default=AccountStatus.ACTIVE
    )
    api_access_status: Mapped[ApiAccessStatus] = mapped_column(
        _enum(ApiAccessStatus, "apiaccessstatus"),
        nullable=False,
        default=ApiAccessStatus.ACTIVE,
    )
    monthly_limit: Mapped[int | None] = mapped_column(Integer, nullable=True)
    burst_per_minute: Mapped[int | None] = mapped_column(Integer, nullable=True)
    created_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True), nullable=False, default=utcnow
    )
    deleted_at: Mapped[datetime | None] = mapped_column(DateTime(timezone=True), nullable=True)

    def __repr__(self) -> str:
        return f"<AiAccount(id={self.id!r}, status={self.status.value!r})>"


class Human(Base):
    """Worker who accepts and executes tasks.

    Payout destinations:
        payout_email: Legacy manual payout destination.
        stripe_account_id: Settlement destination account ("acct_...").

    Payout holds block order creation while active and unexpired.
    """

    __tablename__ = "humans"

    id: Mapped[str] = mapped_column(String(64), primary_key=True)
    name: Mapped[str] = mapped_column(String(255), nullable=False, default="")
    api_key_hash: Mapped[str] = mapped_column(String(64), nullable=False)
    country: Mapped[str] = mapped_column(String(2), nullable=False)
    location: Mapped[str | None] = mapped_column(String(255), nullable=True)
    min_budget_usd: Mapped[Decimal] = mapped_column(
        Numeric(12, 2), nullable=False, default=Decimal("5")
    )
    status: Mapped[HumanStatus] = mapped_column(
        _enum(HumanStatus, "humanstatus"), nullable=False, default=HumanStatus.AVAILABLE
    )
    payout_email: Mapped[str | None] = mapped_column(String(255), nullable=True)
    stripe_account_id: Mapped[str | None] = mapped_column(String(64), nullable=True)
    payout_hold_status: Mapped[str | None] = mapped_column(String(16), nullable=True)
    payout_hold_reason: Mapped[str | None] = mapped_column(Text, nullable=True)
    payout_hold_until: Mapped[datetime | None] = mapped_column(
        DateTime(timezone=True), nullable=True
    )
    created_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True), nullable=False, default=utcnow
    )
    deleted_at: Mapped[datetime | None] = mapped_column(DateTime(timezone=True), nullable=True)

    @property
    def payout_destination(self) -> str | None:
        """Destination snapshot recorded on accept (settlement account preferred)."""
        if self.stripe_account_id and self.stripe_account_id.startswith("acct_"):
            return self.stripe_account_id
        return self.payout_email or None

    def __repr__(self) -> str:
        return f"<Human(id={self.id!r}, country={self.country!r}, status={self.status.value!r})>"


class Task(Base):
    """Marketplace task with lazily evaluated timeout.

    Tasks are created by agents, accepted by a worker, and completed with a
    submission. Timeout is not driven by a scheduler: any read of a task whose
    deadline has elapsed moves it to failed/timeout with a conditional update
    guarded by the current status, so concurrent readers persist it once.

    Invariants:
        - human_id set ⇒ status in {accepted, review_pending, completed, failed}
        - once completed or failed, human_id only changes through skip (which
          is not allowed from those states)

    Attributes:
        id: UUID string primary key.
        ai_account_id: Owning tenant (None for tasks created outside the API).
        human_id: Assigned worker.
        description / description_display: Raw and display text.
        origin_country: ISO-3166 alpha-2 country of the requester.
        budget_usd: Legacy USD budget.
        quote_amount_minor / quote_currency: Minor-unit quote pair.
        deliverable: Expected submission kind (None treated as text).
        deadline_at / deadline_minutes: Absolute deadline or relative minutes
            from created_at, resolved at read time.
        status / failure_reason: Lifecycle state.
        payout_destination: Worker payout destination snapshot taken on accept.
        paid_status, fee_rate, fee_amount, processor_fee_amount, payout_amount:
            Legacy payout breakdown.
        deleted_at: Soft delete marker.
    """

    __tablename__ = "tasks"

    # Only transitions listed here are allowed, enforced by @validates decorator.
    # Conditional UPDATE statements bypass this and guard on the current status.
    VALID_TRANSITIONS = {
        TaskStatus.OPEN: [TaskStatus.ACCEPTED, TaskStatus.FAILED],
        TaskStatus.ACCEPTED: [
            TaskStatus.OPEN,
            TaskStatus.REVIEW_PENDING,
            TaskStatus.COMPLETED,
            TaskStatus.FAILED,
        ],
        TaskStatus.REVIEW_PENDING: [TaskStatus.COMPLETED, TaskStatus.FAILED],
        TaskStatus.COMPLETED: [],
        TaskStatus.FAILED: [],
    }

    id: Mapped[str] = mapped_column(String(36), primary_key=True, default=new_id)
    ai_account_id: Mapped[str | None] = mapped_column(
        String(64), ForeignKey("ai_accounts.id", ondelete="RESTRICT"), nullable=True
    )
    human_id: Mapped[str | None] = mapped_column(
        String(64), ForeignKey("humans.id", ondelete="RESTRICT"), nullable=True
    )
    description: Mapped[str] = mapped_column(Text, nullable=False)
    description_display: Mapped[str | None] = mapped_column(Text, nullable=True)
    origin_country: Mapped[str] = mapped_column(String(2), nullable=False)
    budget_usd: Mapped[Decimal] = mapped_column(Numeric(12, 2), nullable=False)
    quote_amount_minor: Mapped[int | None] = mapped_column(Integer, nullable=True)
    quote_currency: Mapped[str | None] = mapped_column(String(3), nullable=True)
    deliverable: Mapped[DeliverableKind | None] = mapped_column(
        DELIVERABLE_KIND_TYPE, nullable=True
    )
    deadline_at: Mapped[datetime | None] = mapped_column(DateTime(timezone=True), nullable=True)
    deadline_minutes: Mapped[int | None] = mapped_column(Integer, nullable=True)
    status: Mapped[TaskStatus] = mapped_column(
        _enum(TaskStatus, "taskstatus"), nullable=False, default=TaskStatus.OPEN, index=True
    )
    failure_reason: Mapped[FailureReason | None] = mapped_column(
        _enum(FailureReason, "failurereason"), nullable=True
    )
    payout_destination: Mapped[str | None] = mapped_column(String(255), nullable=True)
    submission_id: Mapped[str | None] = mapped_column(String(36), nullable=True)
    review_pending_deadline_at: Mapped[datetime | None] = mapped_column(
        DateTime(timezone=True), nullable=True
    )
    completed_at: Mapped[datetime | None] = mapped_column(DateTime(timezone=True), nullable=True)

    # Legacy payout breakdown
    paid_status: Mapped[PaidStatus] = mapped_column(
        _enum(PaidStatus, "paidstatus"), nullable=False, default=PaidStatus.PENDING
    )
    paid_at: Mapped[datetime | None] = mapped_column(DateTime(timezone=True), nullable=True)
    paid_method: Mapped[str | None] = mapped_column(String(32), nullable=True)
    fee_rate: Mapped[Decimal | None] = mapped_column(Numeric(5, 4), nullable=True)
    fee_amount: Mapped[Decimal | None] = mapped_column(Numeric(12, 2), nullable=True)
    processor_fee_amount: Mapped[Decimal | None] = mapped_column(Numeric(12, 2), nullable=True)
    payout_amount: Mapped[Decimal | None] = mapped_column(Numeric(12, 2), nullable=True)

    deleted_at: Mapped[datetime | None] = mapped_column(DateTime(timezone=True), nullable=True)
    created_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True), nullable=False, default=utcnow
    )
    updated_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True), nullable=False, default=utcnow, onupdate=utcnow
    )

    __table_args__ = (
        Index("ix_tasks_ai_account_id_status", "ai_account_id", "status"),
        Index("ix_tasks_human_id_status", "human_id", "status"),
        Index("ix_tasks_created_at", "created_at"),
    )

    @validates("status")
    def validate_status_change(self, key: str, value: TaskStatus) -> TaskStatus:
        """Validate status transition before committing to database.

        Raises:
            InvalidStateTransitionError: If the transition is not listed in
                VALID_TRANSITIONS.
        """
        # Skip validation on initial task creation (status is None)
        if self.status is None or self.status == value:
            return value

        allowed_transitions = self.VALID_TRANSITIONS.get(self.status, [])
        if value not in allowed_transitions:
            raise InvalidStateTransitionError(
                f"Invalid transition: {self.status.value} → {value.value}",
                from_status=self.status,
                to_status=value,
            )

        return value

    @property
    def effective_deadline(self) -> datetime | None:
        """Absolute deadline, derived from deadline_minutes when only that is set."""
        if self.deadline_at is not None:
            return as_utc(self.deadline_at)
        if self.deadline_minutes is not None and self.created_at is not None:
            return as_utc(self.created_at) + timedelta(minutes=self.deadline_minutes)
        return None

    def __repr__(self) -> str:
        return (
            f"<Task(id={self.id!s:.8}, status={self.status.value!r}, "
            f"human_id={self.human_id!r})>"
        )


class Submission(Base):
    """Deliverable recorded when a worker submits a task."""

    __tablename__ = "submissions"

    id: Mapped[str] = mapped_column(String(36), primary_key=True, default=new_id)
    task_id: Mapped[str] = mapped_column(
        String(36), ForeignKey("tasks.id", ondelete="CASCADE"), nullable=False, index=True
    )
    human_id: Mapped[str] = mapped_column(String(64), nullable=False)
    kind: Mapped[DeliverableKind] = mapped_column(
        DELIVERABLE_KIND_TYPE, nullable=False
    )
    text: Mapped[str | None] = mapped_column(Text, nullable=True)
    content_url: Mapped[str | None] = mapped_column(String(1000), nullable=True)
    created_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True), nullable=False, default=utcnow
    )


class TaskContact(Base):
    """Requester/worker contact channel for a task (pending → open → closed)."""

    __tablename__ = "task_contacts"

    task_id: Mapped[str] = mapped_column(
        String(36), ForeignKey("tasks.id", ondelete="CASCADE"), primary_key=True
    )
    status: Mapped[ContactStatus] = mapped_column(
        _enum(ContactStatus, "contactstatus"), nullable=False, default=ContactStatus.PENDING
    )
    opened_at: Mapped[datetime | None] = mapped_column(DateTime(timezone=True), nullable=True)
    closed_at: Mapped[datetime | None] = mapped_column(DateTime(timezone=True), nullable=True)
    created_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True), nullable=False, default=utcnow
    )


class Order(Base):
    """Payment order for a task, keyed by (id, version).

    Amounts are integers in minor units of ``currency``:
        total_amount_minor = base_amount_minor + fx_cost_minor
        application_fee_minor = platform_fee_minor + intl_surcharge_minor

    Constraints:
        - refund_amount_minor <= total_amount_minor
        - application_fee_minor <= total_amount_minor

    Status changes go through conditional UPDATE statements guarded by the
    current status (and, for refunds, the observed refunded amount). A refund
    reserves its amount in refund_pending_amount_minor before the provider is
    called, so at most one refund amount is in flight per order.
    """

    __tablename__ = "orders"

    id: Mapped[str] = mapped_column(String(64), nullable=False)
    version: Mapped[int] = mapped_column(Integer, nullable=False)
    task_id: Mapped[str] = mapped_column(
        String(36), ForeignKey("tasks.id", ondelete="RESTRICT"), nullable=False, index=True
    )
    ai_account_id: Mapped[str] = mapped_column(String(64), nullable=False)
    human_id: Mapped[str] = mapped_column(String(64), nullable=False)
    currency: Mapped[str] = mapped_column(String(3), nullable=False)
    base_amount_minor: Mapped[int] = mapped_column(Integer, nullable=False)
    fx_cost_minor: Mapped[int] = mapped_column(Integer, nullable=False, default=0)
    total_amount_minor: Mapped[int] = mapped_column(Integer, nullable=False)
    platform_fee_minor: Mapped[int] = mapped_column(Integer, nullable=False)
    intl_surcharge_minor: Mapped[int] = mapped_column(Integer, nullable=False, default=0)
    application_fee_minor: Mapped[int] = mapped_column(Integer, nullable=False)
    payer_country: Mapped[str] = mapped_column(String(2), nullable=False)
    payee_country: Mapped[str] = mapped_column(String(2), nullable=False)
    is_international: Mapped[bool] = mapped_column(Boolean, nullable=False, default=False)
    destination_account_id: Mapped[str] = mapped_column(String(64), nullable=False)
    status: Mapped[OrderStatus] = mapped_column(
        _enum(OrderStatus, "orderstatus"), nullable=False, default=OrderStatus.CREATED
    )

    # Provider references
    checkout_session_id: Mapped[str | None] = mapped_column(String(255), nullable=True)
    payment_intent_id: Mapped[str | None] = mapped_column(String(255), nullable=True)
    charge_id: Mapped[str | None] = mapped_column(String(255), nullable=True)
    mismatch_reason: Mapped[str | None] = mapped_column(Text, nullable=True)
    provider_error: Mapped[str | None] = mapped_column(Text, nullable=True)

    # Refund sub-state
    refund_status: Mapped[RefundStatus | None] = mapped_column(
        _enum(RefundStatus, "refundstatus"), nullable=True
    )
    refund_amount_minor: Mapped[int] = mapped_column(Integer, nullable=False, default=0)
    refund_reason: Mapped[str | None] = mapped_column(String(64), nullable=True)
    refund_id: Mapped[str | None] = mapped_column(String(255), nullable=True)
    refunded_at: Mapped[datetime | None] = mapped_column(DateTime(timezone=True), nullable=True)
    refund_error_message: Mapped[str | None] = mapped_column(Text, nullable=True)
    # Amount reserved by an in-flight provider refund; NULL when none is in flight
    refund_pending_amount_minor: Mapped[int | None] = mapped_column(Integer, nullable=True)

    created_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True), nullable=False, default=utcnow
    )
    updated_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True), nullable=False, default=utcnow, onupdate=utcnow
    )

    __table_args__ = (
        PrimaryKeyConstraint("id", "version", name="pk_orders"),
        CheckConstraint("total_amount_minor >= 0", name="ck_orders_total_non_negative"),
        CheckConstraint(
            "refund_amount_minor >= 0 AND refund_amount_minor <= total_amount_minor",
            name="ck_orders_refund_bounded",
        ),
        CheckConstraint(
            "application_fee_minor <= total_amount_minor",
            name="ck_orders_application_fee_bounded",
        ),
        Index("ix_orders_checkout_session_id", "checkout_session_id"),
        Index("ix_orders_payment_intent_id", "payment_intent_id"),
    )

    @property
    def refundable_remaining_minor(self) -> int:
        return self.total_amount_minor - (self.refund_amount_minor or 0)

    def __repr__(self) -> str:
        return (
            f"<Order(id={self.id!r}, version={self.version}, status={self.status.value!r}, "
            f"total={self.total_amount_minor} {self.currency})>"
        )


class IdempotencyRecord(Base):
    """Request-scoped idempotency ledger entry.

    A row with ``status_code`` NULL is a placeholder for an in-flight request.
    Finished rows hold the exact response text so replays are byte-identical.

    Composite Primary Key:
        (route, idem_key, ai_account_id) - ai_account_id is "" for anonymous callers.
    """

    __tablename__ = "idempotency_keys"

    route: Mapped[str] = mapped_column(String(128), nullable=False)
    idem_key: Mapped[str] = mapped_column(String(255), nullable=False)
    ai_account_id: Mapped[str] = mapped_column(String(64), nullable=False, default="")
    request_hash: Mapped[str] = mapped_column(String(64), nullable=False)
    status_code: Mapped[int | None] = mapped_column(Integer, nullable=True)
    response_body: Mapped[str | None] = mapped_column(Text, nullable=True)
    created_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True), nullable=False, default=utcnow
    )
    updated_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True), nullable=False, default=utcnow, onupdate=utcnow
    )

    __table_args__ = (
        PrimaryKeyConstraint("route", "idem_key", "ai_account_id", name="pk_idempotency_keys"),
        Index("ix_idempotency_keys_created_at", "created_at"),
    )


class QuotaMonthlyUsage(Base):
    """Monthly request counter per tenant (period_key "YYYY-MM")."""

    __tablename__ = "ai_api_usage_monthly"

    ai_account_id: Mapped[str] = mapped_column(String(64), nullable=False)
    period_key: Mapped[str] = mapped_column(String(7), nullable=False)
    request_count: Mapped[int] = mapped_column(
        Integer, nullable=False, default=0, server_default="0"
    )
    updated_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True), nullable=False, default=utcnow, onupdate=utcnow
    )

    __table_args__ = (
        PrimaryKeyConstraint("ai_account_id", "period_key", name="pk_ai_api_usage_monthly"),
        CheckConstraint("request_count >= 0", name="ck_ai_api_usage_monthly_non_negative"),
    )

    def __repr__(self) -> str:
        return (
            f"<QuotaMonthlyUsage(ai_account_id={self.ai_account_id!r}, "
            f"period={self.period_key}, count={self.request_count})>"
        )


class QuotaMinuteUsage(Base):
    """Per-minute burst counter per tenant (period_key "YYYYMMDDHHMM")."""

    __tablename__ = "ai_api_usage_minute"

    ai_account_id: Mapped[str] = mapped_column(String(64), nullable=False)
    period_key: Mapped[str] = mapped_column(String(12), nullable=False)
    request_count: Mapped[int] = mapped_column(
        Integer, nullable=False, default=0, server_default="0"
    )
    created_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True), nullable=False, default=utcnow
    )

    __table_args__ = (
        PrimaryKeyConstraint("ai_account_id", "period_key", name="pk_ai_api_usage_minute"),
        # Index for cleanup queries (delete buckets older than one day)
        Index("ix_ai_api_usage_minute_created_at", "created_at"),
        CheckConstraint("request_count >= 0", name="ck_ai_api_usage_minute_non_negative"),
    )


class QuotaWarning(Base):
    """One-time marker that a tenant crossed a usage threshold in a month."""

    __tablename__ = "ai_api_usage_warnings"

    ai_account_id: Mapped[str] = mapped_column(String(64), nullable=False)
    period_key: Mapped[str] = mapped_column(String(7), nullable=False)
    threshold_percent: Mapped[int] = mapped_column(Integer, nullable=False)
    created_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True), nullable=False, default=utcnow
    )

    __table_args__ = (
        PrimaryKeyConstraint(
            "ai_account_id", "period_key", "threshold_percent", name="pk_ai_api_usage_warnings"
        ),
    )


class WebhookEndpoint(Base):
    """Tenant-registered webhook endpoint.

    ``events`` is a comma-separated subscription list; empty means all events.
    The signing secret is returned once at registration and stored encrypted.
    """

    __tablename__ = "webhook_endpoints"

    id: Mapped[str] = mapped_column(String(36), primary_key=True, default=new_id)
    ai_account_id: Mapped[str] = mapped_column(
        String(64), ForeignKey("ai_accounts.id", ondelete="CASCADE"), nullable=False, index=True
    )
    url: Mapped[str] = mapped_column(String(2048), nullable=False)
    secret_encrypted: Mapped[bytes] = mapped_column(LargeBinary, nullable=False)
    events: Mapped[str] = mapped_column(String(255), nullable=False, default="")
    status: Mapped[WebhookEndpointStatus] = mapped_column(
        _enum(WebhookEndpointStatus, "webhookendpointstatus"),
        nullable=False,
        default=WebhookEndpointStatus.ACTIVE,
    )
    created_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True), nullable=False, default=utcnow
    )
    disabled_at: Mapped[datetime | None] = mapped_column(DateTime(timezone=True), nullable=True)

    @property
    def event_list(self) -> list[str]:
        return [part.strip() for part in (self.events or "").split(",") if part.strip()]

    def subscribes_to(self, event_type: str) -> bool:
        events = self.event_list
        return not events or event_type in events

    def __repr__(self) -> str:
        """Return string representation for debugging (secret never shown)."""
        return (
            f"<WebhookEndpoint(id={self.id!s:.8}, url={self.url!r}, "
            f"status={self.status.value!r})>"
        )


class WebhookDelivery(Base):
    """Append-only record of one delivery attempt to one endpoint."""

    __tablename__ = "webhook_deliveries"

    id: Mapped[str] = mapped_column(String(36), primary_key=True, default=new_id)
    webhook_id: Mapped[str] = mapped_column(String(36), nullable=False, index=True)
    event_id: Mapped[str] = mapped_column(String(36), nullable=False, index=True)
    event_type: Mapped[str] = mapped_column(String(64), nullable=False)
    task_id: Mapped[str | None] = mapped_column(String(36), nullable=True)
    status_code: Mapped[int | None] = mapped_column(Integer, nullable=True)
    response_body: Mapped[str | None] = mapped_column(Text, nullable=True)
    error: Mapped[str | None] = mapped_column(Text, nullable=True)
    created_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True), nullable=False, default=utcnow
    )


class OutboxEvent(Base):
    """Task event written in the same transaction as the state change.

    The payload holds the task snapshot at the moment of the transition. The
    worker claims pending rows (or processing rows whose lease expired) and
    hands them to the webhook dispatcher.
    """

    __tablename__ = "outbox_events"

    id: Mapped[str] = mapped_column(String(36), primary_key=True, default=new_id)
    event_type: Mapped[str] = mapped_column(String(64), nullable=False)
    task_id: Mapped[str] = mapped_column(String(36), nullable=False, index=True)
    ai_account_id: Mapped[str | None] = mapped_column(String(64), nullable=True)
    payload: Mapped[dict[str, Any]] = mapped_column(JSON, nullable=False)
    status: Mapped[OutboxStatus] = mapped_column(
        _enum(OutboxStatus, "outboxstatus"), nullable=False, default=OutboxStatus.PENDING
    )
    attempts: Mapped[int] = mapped_column(Integer, nullable=False, default=0)
    claimed_at: Mapped[datetime | None] = mapped_column(DateTime(timezone=True), nullable=True)
    dispatched_at: Mapped[datetime | None] = mapped_column(DateTime(timezone=True), nullable=True)
    last_error: Mapped[str | None] = mapped_column(Text, nullable=True)
    created_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True), nullable=False, default=utcnow
    )

    __table_args__ = (Index("ix_outbox_events_status_created_at", "status", "created_at"),)

    def __repr__(self) -> str:
        return (
            f"<OutboxEvent(id={self.id!s:.8}, type={self.event_type!r}, "
            f"status={self.status.value!r})>"
        )


class SettlementEvent(Base):
    """Verified settlement provider event, stored once per provider event id."""

    __tablename__ = "stripe_webhook_events"

    event_id: Mapped[str] = mapped_column(String(255), primary_key=True)
    event_type: Mapped[str] = mapped_column(String(100), nullable=False)
    event_created: Mapped[int | None] = mapped_column(Integer, nullable=True)
    payload: Mapped[dict[str, Any]] = mapped_column(JSON, nullable=False)
    status: Mapped[SettlementEventStatus] = mapped_column(
        _enum(SettlementEventStatus, "settlementeventstatus"),
        nullable=False,
        default=SettlementEventStatus.PENDING,
    )
    processing_error: Mapped[str | None] = mapped_column(Text, nullable=True)
    received_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True), nullable=False, default=utcnow
    )
    # Set when a worker claims the event; a stale claim may be taken over
    claimed_at: Mapped[datetime | None] = mapped_column(DateTime(timezone=True), nullable=True)
    processed_at: Mapped[datetime | None] = mapped_column(DateTime(timezone=True), nullable=True)

    __table_args__ = (Index("ix_stripe_webhook_events_status", "status"),)

    def __repr__(self) -> str:
        return (
            f"<SettlementEvent(event_id={self.event_id!r}, type={self.event_type!r}, "
            f"status={self.status.value!r})>"
        )
