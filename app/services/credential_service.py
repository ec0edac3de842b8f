"""Credential verification for agents, workers and operators.

Agent and worker API keys are stored only as SHA-256 hex digests and
compared in constant time. Operator requests present a shared token in the
X-Admin-Token header.

Usage:
    from app.services.credential_service import CredentialService

    service = CredentialService()
    account = await service.authenticate_agent(ai_account_id, api_key, db)

Security Notes:
    - Failures are logged with the account id and a reason, never the key
    - Missing credentials are a validation error (400); wrong ones are 401
"""

import hashlib
import hmac
import secrets

import structlog
from sqlalchemy.ext.asyncio import AsyncSession

from app.config import get_admin_api_token
from app.exceptions import AccessDenied, AuthenticationFailed, RequestValidationFailed
from app.models import AccountStatus, AiAccount, ApiAccessStatus, Human

log = structlog.get_logger(__name__)


def hash_api_key(api_key: str) -> str:
    """Return the SHA-256 hex digest stored for an API key."""
    return hashlib.sha256(api_key.encode()).hexdigest()


def generate_api_key(prefix: str) -> str:
    """Generate a new random API key (shown to its owner once)."""
    return f"{prefix}_{secrets.token_urlsafe(32)}"


def _key_matches(api_key: str, stored_hash: str | None) -> bool:
    if not stored_hash:
        return False
    return hmac.compare_digest(hash_api_key(api_key), stored_hash)


class CredentialService:
    """Verifies caller credentials against the ledger.

    Example:
        >>> service = CredentialService()
        >>> account = await service.authenticate_agent("ai_1", "key", db)
    """

    async def authenticate_agent(
        self, ai_account_id: str | None, api_key: str | None, db: AsyncSession
    ) -> AiAccount:
        """Verify agent credentials.

        Args:
            ai_account_id: Account identifier from body or query.
            api_key: Plaintext API key from body or query.
            db: Async database session.

        Returns:
            The active AiAccount.

        Raises:
            RequestValidationFailed: If either credential is missing.
            AuthenticationFailed: If the account is unknown, deleted, suspended
                or the key does not match.
            AccessDenied: If API access is disabled for the account.
        """
        if not ai_account_id or not api_key:
            raise RequestValidationFailed(
                detail={"message": "ai_account_id and ai_api_key are required"}
            )

        account = await db.get(AiAccount, ai_account_id)
        if (
            account is None
            or account.deleted_at is not None
            or account.status != AccountStatus.ACTIVE
            or not _key_matches(api_key, account.api_key_hash)
        ):
            log.warning("agent_authentication_failed", ai_account_id=ai_account_id)
            raise AuthenticationFailed()

        if account.api_access_status != ApiAccessStatus.ACTIVE:
            log.warning("agent_api_access_disabled", ai_account_id=ai_account_id)
            raise AccessDenied("api_access_disabled")

        return account

    async def authenticate_worker(
        self, human_id: str | None, api_key: str | None, db: AsyncSession
    ) -> Human:
        """Verify worker credentials.

        Raises:
            RequestValidationFailed: If either credential is missing.
            AuthenticationFailed: If the worker is unknown, deleted or the key
                does not match.
        """
        if not human_id or not api_key:
            raise RequestValidationFailed(
                detail={"message": "human_id and human_api_key are required"}
            )

        human = await db.get(Human, human_id)
        if (
            human is None
            or human.deleted_at is not None
            or not _key_matches(api_key, human.api_key_hash)
        ):
            log.warning("worker_authentication_failed", human_id=human_id)
            raise AuthenticationFailed()

        return human

    def verify_admin_token(self, token: str | None) -> None:
        """Verify the operator token.

        Raises:
            AuthenticationFailed: If admin access is not configured or the
                token does not match.
        """
        expected = get_admin_api_token()
        if not expected or not token or not hmac.compare_digest(token, expected):
            log.warning("admin_authentication_failed", token_provided=bool(token))
            raise AuthenticationFailed()
