"""Tests for webhook endpoint registration schemas.

Tests webhook schema validation:
- Default event subscription
- Unknown event names dropped, empty subscriptions rejected
- Response rendering without the signing secret
"""

from datetime import datetime

import pytest
from pydantic import ValidationError

from app.models import WebhookEndpoint, WebhookEndpointStatus
from app.schemas.webhook import WebhookEndpointCreate, WebhookEndpointResponse


def test_events_default_to_all_task_events():
    """Omitted events subscribe to everything."""
    payload = WebhookEndpointCreate(url="https://hooks.example.com/toolcall")

    assert payload.events == ["task.accepted", "task.completed", "task.failed"]


def test_unknown_events_dropped_and_duplicates_removed():
    payload = WebhookEndpointCreate(
        url="https://hooks.example.com/toolcall",
        events=["task.completed", "task.exploded", "task.completed", "task.failed"],
    )

    assert payload.events == ["task.completed", "task.failed"]


@pytest.mark.parametrize("events", [[], ["task.exploded"]])
def test_empty_subscription_rejected(events):
    with pytest.raises(ValidationError) as exc_info:
        WebhookEndpointCreate(url="https://hooks.example.com/toolcall", events=events)

    assert exc_info.value.errors()[0]["loc"] == ("events",)


def test_url_required_and_stripped():
    with pytest.raises(ValidationError):
        WebhookEndpointCreate(url="   ")

    assert WebhookEndpointCreate(url=" https://a.example/x ").url == "https://a.example/x"


def test_credentials_in_body_are_ignored():
    payload = WebhookEndpointCreate(
        url="https://hooks.example.com/toolcall", ai_account_id="ai_1", ai_api_key="key"
    )

    assert "ai_api_key" not in payload.model_dump()


def test_response_from_endpoint_has_no_secret():
    endpoint = WebhookEndpoint(
        id="wh_1",
        ai_account_id="ai_1",
        url="https://hooks.example.com/toolcall",
        secret_encrypted=b"ciphertext",
        events="task.completed",
        status=WebhookEndpointStatus.ACTIVE,
        created_at=datetime(2026, 3, 1, 9, 0),
    )

    response = WebhookEndpointResponse.from_endpoint(endpoint)

    assert response.events == ["task.completed"]
    assert response.created_at.tzinfo is not None
    assert "secret" not in response.model_dump()
