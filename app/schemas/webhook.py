"""Webhook endpoint registration schemas.

Defines Pydantic models for registering tenant webhook endpoints and for
listing them. The signing secret only appears in WebhookEndpointCreated,
returned once by the registration call.
"""

from datetime import datetime

from pydantic import BaseModel, ConfigDict, Field, field_validator

from app.constants import WEBHOOK_EVENTS
from app.models import WebhookEndpoint, WebhookEndpointStatus, as_utc


class WebhookEndpointCreate(BaseModel):
    """Registration body.

    ``events`` defaults to every task event. Unknown event names are dropped;
    a list that ends up empty is rejected.
    """

    model_config = ConfigDict(extra="ignore", str_strip_whitespace=True)

    url: str = Field(..., min_length=1, max_length=2048)
    events: list[str] | None = Field(default=None, validate_default=True)

    @field_validator("events")
    @classmethod
    def _known_events(cls, value: list[str] | None) -> list[str]:
        if value is None:
            return list(WEBHOOK_EVENTS)
        events = list(dict.fromkeys(e for e in value if e in WEBHOOK_EVENTS))
        if not events:
            raise ValueError("events must include at least one supported event")
        return events


class WebhookEndpointResponse(BaseModel):
    id: str
    url: str
    status: WebhookEndpointStatus
    events: list[str]
    created_at: datetime

    @classmethod
    def from_endpoint(cls, endpoint: WebhookEndpoint) -> "WebhookEndpointResponse":
        return cls(
            id=endpoint.id,
            url=endpoint.url,
            status=endpoint.status,
            events=endpoint.event_list or list(WEBHOOK_EVENTS),
            created_at=as_utc(endpoint.created_at),
        )


class WebhookEndpointCreated(WebhookEndpointResponse):
    """Registration response carrying the signing secret (shown once)."""

    secret: str
