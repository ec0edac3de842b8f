"""Tests for webhook route endpoints.

Tests FastAPI webhook endpoint integration:
- Tenant endpoint registration, listing and disabling
- Settlement provider intake always answering 200
- Verified events stored once, rejected events never stored
"""

from unittest.mock import MagicMock

import pytest
from sqlalchemy import select

from app.clients.settlement import SettlementClient, SignatureVerificationFailed
from app.main import app
from app.models import SettlementEvent, SettlementEventStatus
from app.routes.deps import get_optional_settlement_client
from tests.support.factories import api_key_for, create_ai_account

CREDENTIALS = {"ai_account_id": "ai_hooks", "ai_api_key": api_key_for("ai_hooks")}
PUBLIC_URL = "https://93.184.216.34/hooks"


@pytest.fixture
async def account(async_session):
    account = create_ai_account(account_id="ai_hooks")
    async_session.add(account)
    await async_session.commit()
    return account


class TestEndpointRegistry:
    async def test_register_returns_secret_once(self, app_client, account):
        response = await app_client.post(
            "/api/webhooks", json={**CREDENTIALS, "url": PUBLIC_URL, "events": ["task.completed"]}
        )

        assert response.status_code == 201
        webhook = response.json()["webhook"]
        assert webhook["url"] == PUBLIC_URL
        assert webhook["events"] == ["task.completed"]
        assert webhook["status"] == "active"
        assert len(webhook["secret"]) == 48

        listed = await app_client.get("/api/webhooks", params=CREDENTIALS)
        assert listed.status_code == 200
        entries = listed.json()["webhooks"]
        assert [e["id"] for e in entries] == [webhook["id"]]
        assert "secret" not in entries[0]

    async def test_register_defaults_to_all_events(self, app_client, account):
        response = await app_client.post("/api/webhooks", json={**CREDENTIALS, "url": PUBLIC_URL})

        assert response.json()["webhook"]["events"] == [
            "task.accepted",
            "task.completed",
            "task.failed",
        ]

    @pytest.mark.parametrize(
        "url", ["http://93.184.216.34/hooks", "https://127.0.0.1/hooks", "https://localhost/x"]
    )
    async def test_register_rejects_non_public_urls(self, app_client, account, url):
        response = await app_client.post("/api/webhooks", json={**CREDENTIALS, "url": url})

        assert response.status_code == 400
        assert response.json()["reason"] == "invalid_request"

    async def test_register_rejects_unknown_events_only(self, app_client, account):
        response = await app_client.post(
            "/api/webhooks", json={**CREDENTIALS, "url": PUBLIC_URL, "events": ["task.exploded"]}
        )

        assert response.status_code == 400

    async def test_disable(self, app_client, account):
        created = await app_client.post("/api/webhooks", json={**CREDENTIALS, "url": PUBLIC_URL})
        webhook_id = created.json()["webhook"]["id"]

        response = await app_client.delete(f"/api/webhooks/{webhook_id}", params=CREDENTIALS)

        assert response.status_code == 200
        assert response.json() == {"status": "disabled", "webhook_id": webhook_id}
        listed = await app_client.get("/api/webhooks", params=CREDENTIALS)
        assert listed.json()["webhooks"][0]["status"] == "disabled"

    async def test_disable_unknown(self, app_client, account):
        response = await app_client.delete("/api/webhooks/missing", params=CREDENTIALS)

        assert response.status_code == 404


class TestSettlementIntake:
    def _override(self, client):
        app.dependency_overrides[get_optional_settlement_client] = lambda: client

    async def _events(self, session) -> list[SettlementEvent]:
        return list((await session.execute(select(SettlementEvent))).scalars().all())

    async def test_verified_event_stored(self, app_client, async_session):
        client = MagicMock(spec=SettlementClient)
        client.construct_event.return_value = {
            "id": "evt_route",
            "type": "payment_intent.succeeded",
            "data": {"object": {"id": "pi_1"}},
        }
        self._override(client)

        response = await app_client.post(
            "/webhooks/stripe", content=b'{"id":"evt_route"}', headers={"Stripe-Signature": "t=1"}
        )

        assert response.status_code == 200
        assert response.json() == {"received": True}
        client.construct_event.assert_called_once_with(b'{"id":"evt_route"}', "t=1")
        events = await self._events(async_session)
        assert [(e.event_id, e.status) for e in events] == [
            ("evt_route", SettlementEventStatus.PENDING)
        ]

    async def test_bad_signature_still_200(self, app_client, async_session):
        client = MagicMock(spec=SettlementClient)
        client.construct_event.side_effect = SignatureVerificationFailed("no match")
        self._override(client)

        response = await app_client.post("/webhooks/stripe", content=b"{}")

        assert response.status_code == 200
        assert await self._events(async_session) == []

    async def test_unconfigured_provider_still_200(self, app_client, async_session):
        self._override(None)

        response = await app_client.post("/webhooks/stripe", content=b"{}")

        assert response.status_code == 200
        assert await self._events(async_session) == []
