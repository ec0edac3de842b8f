"""Tenant webhook endpoint registry.

Registration rules:
    - https only; localhost and *.local hosts are refused
    - an IP literal host, or every address the host resolves to, must be
      public (not private, loopback, link-local, reserved or unspecified)
    - the signing secret is generated here, returned once, stored encrypted
"""

import asyncio
import ipaddress
import secrets
import socket
from collections.abc import Awaitable, Callable
from urllib.parse import urlsplit

import structlog
from sqlalchemy import select, update
from sqlalchemy.ext.asyncio import AsyncSession

from app.exceptions import AccessDenied, RequestValidationFailed, ResourceNotFound
from app.models import WebhookEndpoint, WebhookEndpointStatus, new_id, utcnow
from app.utils.encryption import DecryptionError, get_encryption_service

log = structlog.get_logger(__name__)

HostResolver = Callable[[str], Awaitable[list[str]]]


async def resolve_host(host: str) -> list[str]:
    """Resolve ``host`` to its IP addresses."""
    loop = asyncio.get_running_loop()
    infos = await loop.getaddrinfo(host, None, type=socket.SOCK_STREAM)
    return list(dict.fromkeys(info[4][0] for info in infos))


def is_public_ip(address: str) -> bool:
    try:
        ip = ipaddress.ip_address(address)
    except ValueError:
        return False
    return not (
        ip.is_private
        or ip.is_loopback
        or ip.is_link_local
        or ip.is_unspecified
        or ip.is_reserved
        or ip.is_multicast
    )


async def is_valid_webhook_url(url: str, resolver: HostResolver = resolve_host) -> bool:
    parts = urlsplit(url)
    if parts.scheme != "https":
        return False
    host = (parts.hostname or "").strip().lower()
    if not host or host == "localhost" or host.endswith(".local"):
        return False

    try:
        ipaddress.ip_address(host)
    except ValueError:
        pass
    else:
        return is_public_ip(host)

    try:
        addresses = await resolver(host)
    except (OSError, UnicodeError) as e:
        log.info("webhook_host_unresolvable", host=host, error=str(e))
        return False
    return bool(addresses) and all(is_public_ip(address) for address in addresses)


def generate_webhook_secret() -> str:
    return secrets.token_hex(24)


async def register_endpoint(
    session: AsyncSession,
    ai_account_id: str,
    url: str,
    events: list[str],
    resolver: HostResolver = resolve_host,
) -> tuple[WebhookEndpoint, str]:
    """Register a webhook endpoint for a tenant.

    Returns:
        Tuple of (endpoint, plaintext secret). The secret is not retrievable later.

    Raises:
        RequestValidationFailed: If the URL is not an acceptable public https URL.
    """
    if not await is_valid_webhook_url(url, resolver):
        raise RequestValidationFailed(detail={"message": "url must be a public https URL"})

    secret = generate_webhook_secret()
    endpoint = WebhookEndpoint(
        id=new_id(),
        ai_account_id=ai_account_id,
        url=url,
        secret_encrypted=get_encryption_service().encrypt(secret),
        events=",".join(events),
        status=WebhookEndpointStatus.ACTIVE,
        created_at=utcnow(),
    )
    session.add(endpoint)
    await session.flush()

    log.info("webhook_endpoint_registered", webhook_id=endpoint.id, ai_account_id=ai_account_id)
    return endpoint, secret


async def list_endpoints(session: AsyncSession, ai_account_id: str) -> list[WebhookEndpoint]:
    result = await session.execute(
        select(WebhookEndpoint)
        .where(WebhookEndpoint.ai_account_id == ai_account_id)
        .order_by(WebhookEndpoint.created_at.desc())
    )
    return list(result.scalars().all())


async def disable_endpoint(
    session: AsyncSession, ai_account_id: str, webhook_id: str
) -> WebhookEndpoint:
    """Disable an endpoint owned by the tenant. Disabling twice is a no-op.

    Raises:
        ResourceNotFound: Unknown endpoint.
        AccessDenied: Endpoint belongs to another tenant.
    """
    endpoint = await session.get(WebhookEndpoint, webhook_id)
    if endpoint is None:
        raise ResourceNotFound()
    if endpoint.ai_account_id != ai_account_id:
        raise AccessDenied()

    await session.execute(
        update(WebhookEndpoint)
        .where(
            WebhookEndpoint.id == webhook_id,
            WebhookEndpoint.status == WebhookEndpointStatus.ACTIVE,
        )
        .values(status=WebhookEndpointStatus.DISABLED, disabled_at=utcnow())
        .execution_options(synchronize_session=False)
    )
    await session.refresh(endpoint)
    log.info("webhook_endpoint_disabled", webhook_id=webhook_id, ai_account_id=ai_account_id)
    return endpoint


async def reencrypt_secrets(session: AsyncSession) -> tuple[int, list[str]]:
    """Re-encrypt every stored signing secret under the primary FERNET_KEY.

    Run after prepending a new key; the old key can be removed once this
    reports no failures. Secrets no configured key can read are left as they
    are and reported by endpoint id.

    Returns:
        Tuple of (endpoints re-encrypted, endpoint ids that failed).
    """
    service = get_encryption_service()
    result = await session.execute(select(WebhookEndpoint).order_by(WebhookEndpoint.id))
    rotated = 0
    failed: list[str] = []
    for endpoint in result.scalars():
        try:
            endpoint.secret_encrypted = service.rotate(
                endpoint.secret_encrypted, context=f"webhook:{endpoint.id}"
            )
        except DecryptionError:
            failed.append(endpoint.id)
            continue
        rotated += 1
    await session.flush()

    log.info("webhook_secrets_reencrypted", rotated=rotated, failed=len(failed))
    return rotated, failed
