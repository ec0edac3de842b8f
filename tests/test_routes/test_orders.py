"""Tests for payment order routes."""

from unittest.mock import AsyncMock

import pytest

from app.clients.settlement import CheckoutSession, ConnectedAccount, SettlementClient
from app.main import app
from app.models import TaskStatus
from app.routes.deps import get_settlement_client
from tests.support.factories import api_key_for, create_ai_account, create_human, create_task

CREDENTIALS = {"ai_account_id": "ai_pay", "ai_api_key": api_key_for("ai_pay")}


@pytest.fixture
async def task(async_session):
    account = create_ai_account(account_id="ai_pay")
    human = create_human(human_id="human_pay", country="JP", stripe_account_id="acct_jp")
    task = create_task(
        ai_account_id=account.id,
        status=TaskStatus.ACCEPTED,
        human_id=human.id,
        origin_country="US",
    )
    async_session.add_all([account, human, task])
    await async_session.commit()
    return task


@pytest.fixture
def settlement_client(app_client):
    client = AsyncMock(spec=SettlementClient)
    client.retrieve_account.return_value = ConnectedAccount(
        id="acct_jp", country="JP", transfers_capability="active"
    )
    client.create_checkout_session.return_value = CheckoutSession(
        id="cs_route", url="https://checkout.example/cs_route"
    )
    app.dependency_overrides[get_settlement_client] = lambda: client
    return client


async def _create(app_client, task, **overrides):
    body = {**CREDENTIALS, "task_id": task.id, "order_id": "order_r1", "base_amount_minor": 10000}
    body.update(overrides)
    return await app_client.post("/api/orders", json=body)


class TestCreateOrder:
    async def test_created_with_international_warning(self, app_client, task):
        response = await _create(app_client, task)

        assert response.status_code == 201
        body = response.json()
        assert body["status"] == "created"
        assert body["warning_message"]
        order = body["order"]
        assert order["currency"] == "jpy"
        assert order["application_fee_minor"] == 2300
        assert order["status"] == "created"

    async def test_replay_returns_existing(self, app_client, task):
        await _create(app_client, task)

        response = await _create(app_client, task)

        assert response.status_code == 200
        assert response.json()["status"] == "exists"

    async def test_conflicting_replay(self, app_client, task):
        await _create(app_client, task)

        response = await _create(app_client, task, base_amount_minor=500)

        assert response.status_code == 409
        body = response.json()
        assert body["reason"] == "order_conflict"
        assert "base_amount_minor" in body["mismatch"]

    async def test_unknown_task(self, app_client, task):
        response = await _create(app_client, task, task_id="missing")

        assert response.status_code == 404
        assert response.json()["reason"] == "task_not_found"


class TestGetOrder:
    async def test_owner_reads_order(self, app_client, task):
        await _create(app_client, task)

        response = await app_client.get("/api/orders/order_r1", params=CREDENTIALS)

        assert response.status_code == 200
        assert response.json()["order"]["id"] == "order_r1"

    async def test_other_tenant_denied(self, app_client, async_session, task):
        async_session.add(create_ai_account(account_id="ai_other"))
        await async_session.commit()
        await _create(app_client, task)

        response = await app_client.get(
            "/api/orders/order_r1",
            params={"ai_account_id": "ai_other", "ai_api_key": api_key_for("ai_other")},
        )

        assert response.status_code == 403

    async def test_unknown_version(self, app_client, task):
        await _create(app_client, task)

        response = await app_client.get(
            "/api/orders/order_r1", params={**CREDENTIALS, "version": 2}
        )

        assert response.status_code == 404


class TestCheckout:
    async def test_checkout_created(self, app_client, task, settlement_client):
        await _create(app_client, task)

        response = await app_client.post("/api/orders/order_r1/checkout", json=CREDENTIALS)

        assert response.status_code == 200
        body = response.json()
        assert body["status"] == "checkout_created"
        assert body["checkout_url"] == "https://checkout.example/cs_route"
        assert body["order"]["checkout_session_id"] == "cs_route"
        assert body["warning_message"]

    async def test_foreign_redirect_rejected(self, app_client, task, settlement_client):
        await _create(app_client, task)

        response = await app_client.post(
            "/api/orders/order_r1/checkout",
            json={**CREDENTIALS, "success_url": "https://phish.example/ok"},
        )

        assert response.status_code == 400
        settlement_client.create_checkout_session.assert_not_awaited()

    async def test_second_checkout_conflicts(self, app_client, task, settlement_client):
        await _create(app_client, task)
        await app_client.post("/api/orders/order_r1/checkout", json=CREDENTIALS)

        response = await app_client.post("/api/orders/order_r1/checkout", json=CREDENTIALS)

        assert response.status_code == 409
        assert response.json()["reason"] == "invalid_order_status"
