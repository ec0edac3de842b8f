"""Tests for the tenant webhook endpoint registry."""

import pytest
from cryptography.fernet import Fernet

from app.exceptions import AccessDenied, RequestValidationFailed, ResourceNotFound
from app.models import WebhookEndpointStatus
from app.services.webhook_endpoints import (
    disable_endpoint,
    is_public_ip,
    is_valid_webhook_url,
    list_endpoints,
    reencrypt_secrets,
    register_endpoint,
)
from app.utils.encryption import EncryptionService, get_encryption_service
from tests.support.factories import create_ai_account


def resolver_for(*addresses):
    async def resolve(host: str) -> list[str]:
        return list(addresses)

    return resolve


async def unresolvable(host: str) -> list[str]:
    raise OSError("Name or service not known")


public = resolver_for("93.184.216.34")


@pytest.mark.parametrize(
    "address,expected",
    [
        ("93.184.216.34", True),
        ("10.0.0.8", False),
        ("127.0.0.1", False),
        ("169.254.169.254", False),
        ("::1", False),
        ("0.0.0.0", False),
        ("not-an-ip", False),
    ],
)
def test_is_public_ip(address, expected):
    assert is_public_ip(address) is expected


class TestIsValidWebhookUrl:
    async def test_public_https_host(self):
        assert await is_valid_webhook_url("https://hooks.example.com/in", public) is True

    @pytest.mark.parametrize(
        "url",
        [
            "http://hooks.example.com/in",
            "https://localhost/in",
            "https://printer.local/in",
            "https://10.1.2.3/in",
            "ftp://hooks.example.com",
        ],
    )
    async def test_rejected_urls(self, url):
        assert await is_valid_webhook_url(url, public) is False

    async def test_host_resolving_to_private_address(self):
        resolver = resolver_for("93.184.216.34", "192.168.1.10")

        assert await is_valid_webhook_url("https://hooks.example.com/in", resolver) is False

    async def test_unresolvable_host(self):
        assert await is_valid_webhook_url("https://nowhere.example/in", unresolvable) is False

    async def test_public_ip_literal_skips_resolution(self):
        assert await is_valid_webhook_url("https://93.184.216.34/in", unresolvable) is True


class TestRegistry:
    @pytest.fixture
    async def account(self, async_session, encryption_env):
        account = create_ai_account(account_id="ai_hooks")
        async_session.add(account)
        await async_session.commit()
        return account

    async def test_register_stores_encrypted_secret(self, async_session, account):
        endpoint, secret = await register_endpoint(
            async_session,
            account.id,
            "https://hooks.example.com/in",
            ["task.completed", "task.failed"],
            resolver=public,
        )
        await async_session.commit()

        assert len(secret) == 48
        assert endpoint.secret_encrypted != secret.encode()
        assert get_encryption_service().decrypt(endpoint.secret_encrypted) == secret
        assert endpoint.event_list == ["task.completed", "task.failed"]
        assert endpoint.status == WebhookEndpointStatus.ACTIVE
        assert secret not in repr(endpoint)

    async def test_register_rejects_private_url(self, async_session, account):
        with pytest.raises(RequestValidationFailed):
            await register_endpoint(
                async_session,
                account.id,
                "https://hooks.example.com/in",
                ["task.completed"],
                resolver=resolver_for("10.0.0.1"),
            )

    async def test_list_is_tenant_scoped(self, async_session, account):
        other = create_ai_account(account_id="ai_other")
        async_session.add(other)
        await register_endpoint(
            async_session, account.id, "https://a.example.com/in", [], resolver=public
        )
        await register_endpoint(
            async_session, other.id, "https://b.example.com/in", [], resolver=public
        )
        await async_session.commit()

        endpoints = await list_endpoints(async_session, account.id)

        assert [e.url for e in endpoints] == ["https://a.example.com/in"]

    async def test_disable_is_idempotent(self, async_session, account):
        endpoint, _ = await register_endpoint(
            async_session, account.id, "https://a.example.com/in", [], resolver=public
        )
        await async_session.commit()

        disabled = await disable_endpoint(async_session, account.id, endpoint.id)
        disabled_at = disabled.disabled_at
        again = await disable_endpoint(async_session, account.id, endpoint.id)

        assert disabled.status == WebhookEndpointStatus.DISABLED
        assert again.disabled_at == disabled_at

    async def test_disable_other_tenant_denied(self, async_session, account):
        endpoint, _ = await register_endpoint(
            async_session, account.id, "https://a.example.com/in", [], resolver=public
        )
        await async_session.commit()

        with pytest.raises(AccessDenied):
            await disable_endpoint(async_session, "ai_other", endpoint.id)

    async def test_disable_unknown(self, async_session, account):
        with pytest.raises(ResourceNotFound):
            await disable_endpoint(async_session, account.id, "missing")


class TestReencryptSecrets:
    async def test_secrets_move_to_new_primary_key(
        self, async_session, encryption_env, monkeypatch: pytest.MonkeyPatch
    ):
        account = create_ai_account(account_id="ai_rotate")
        async_session.add(account)
        endpoint, secret = await register_endpoint(
            async_session, account.id, "https://a.example.com/in", [], resolver=public
        )
        broken, _ = await register_endpoint(
            async_session, account.id, "https://b.example.com/in", [], resolver=public
        )
        broken.secret_encrypted = b"unreadable"
        await async_session.commit()

        new_key = Fernet.generate_key().decode()
        EncryptionService.reset_instance()
        monkeypatch.setenv("FERNET_KEY", f"{new_key},{encryption_env}")

        rotated, failed = await reencrypt_secrets(async_session)
        await async_session.commit()

        assert rotated == 1
        assert failed == [broken.id]
        assert Fernet(new_key.encode()).decrypt(endpoint.secret_encrypted) == secret.encode()
        assert broken.secret_encrypted == b"unreadable"
