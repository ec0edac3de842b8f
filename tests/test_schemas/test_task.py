"""Tests for task request and response schemas."""

from decimal import Decimal

import pytest
from pydantic import ValidationError

from app.models import DeliverableKind, FailureReason, PaidStatus, TaskStatus
from app.schemas.task import TaskCreate, TaskResponse, TaskSubmit
from tests.support.factories import create_task


def _task(**overrides):
    return create_task(ai_account_id="ai_1", paid_status=PaidStatus.PENDING, **overrides)


def _create(**overrides) -> TaskCreate:
    body = {"description": "Check the menu board", "origin_country": "us", "budget_usd": "12.50"}
    body.update(overrides)
    return TaskCreate(**body)


def test_task_create_normalizes_input():
    payload = _create(quote_currency="JPY", description="  Check the menu board  ")

    assert payload.origin_country == "US"
    assert payload.quote_currency == "jpy"
    assert payload.description == "Check the menu board"
    assert payload.budget_usd == Decimal("12.50")


@pytest.mark.parametrize(
    "overrides,field",
    [
        ({"budget_usd": "4.99"}, "budget_usd"),
        ({"origin_country": "U1"}, "origin_country"),
        ({"origin_country": "USA"}, "origin_country"),
        ({"description": ""}, "description"),
        ({"deadline_minutes": 0}, "deadline_minutes"),
        ({"deliverable": "audio"}, "deliverable"),
    ],
)
def test_task_create_rejects_invalid_fields(overrides, field):
    with pytest.raises(ValidationError) as exc_info:
        _create(**overrides)

    assert exc_info.value.errors()[0]["loc"] == (field,)


def test_task_submit_requires_known_kind():
    assert TaskSubmit(kind="photo", content_url="https://cdn.example/p.jpg").kind is (
        DeliverableKind.PHOTO
    )
    with pytest.raises(ValidationError):
        TaskSubmit(kind="poem")


class TestTaskResponse:
    def test_defaults_for_display_fields(self):
        task = _task(description="Count the benches")

        response = TaskResponse.from_task(task)

        assert response.description_display == "Count the benches"
        assert response.deliverable == DeliverableKind.TEXT
        assert response.failure_reason is None
        assert response.created_at.tzinfo is not None

    def test_failed_task_always_has_reason(self):
        task = _task(status=TaskStatus.FAILED)

        assert TaskResponse.from_task(task).failure_reason == FailureReason.UNKNOWN

    def test_failure_reason_hidden_unless_failed(self):
        task = _task(status=TaskStatus.OPEN, failure_reason=FailureReason.TIMEOUT)

        assert TaskResponse.from_task(task).failure_reason is None

    def test_relative_deadline_resolved(self):
        task = _task(deadline_minutes=45)

        response = TaskResponse.from_task(task)

        assert (response.deadline_at - response.created_at).total_seconds() == 45 * 60
