"""Settlement provider (Stripe) client with bounded deadlines.

This module wraps the synchronous Stripe SDK for use from async services:
- Every call runs in a worker thread with an overall deadline
  (SETTLEMENT_TIMEOUT_SECONDS)
- Connection errors and provider rate limits are retried with exponential
  backoff; every mutation carries an idempotency key so a retry cannot
  duplicate a charge or refund
- A process-wide AsyncLimiter keeps bursts under the provider's rate limit
- Any provider failure surfaces as UpstreamProviderError (502) carrying the
  provider message; timeouts, connection errors and provider 5xx raise the
  ProviderOutcomeUnknown subclass because the mutation may have been applied

Usage:
    client = get_settlement_client()
    session = await client.create_checkout_session(params, idempotency_key="...")
"""

import asyncio
import json
from dataclasses import dataclass
from functools import lru_cache, partial
from typing import Any

import stripe
from aiolimiter import AsyncLimiter
from tenacity import (
    AsyncRetrying,
    retry_if_exception_type,
    stop_after_attempt,
    wait_exponential,
)

from app.config import (
    get_settlement_timeout_seconds,
    get_stripe_secret_key,
    get_stripe_webhook_secret,
)
from app.exceptions import ConfigurationError, ProviderOutcomeUnknown, UpstreamProviderError
from app.utils.logging import get_logger

log = get_logger(__name__)

RETRYABLE_PROVIDER_ERRORS = (stripe.APIConnectionError, stripe.RateLimitError)


def _field(obj: Any, name: str) -> Any:
    """Read a field from an SDK object or a plain dict."""
    if isinstance(obj, dict):
        return obj.get(name)
    return getattr(obj, name, None)


class SignatureVerificationFailed(Exception):
    """Raised when an inbound provider event fails signature verification."""

    pass


@dataclass(frozen=True)
class CheckoutSession:
    id: str
    url: str | None
    payment_intent: str | None = None


@dataclass(frozen=True)
class ConnectedAccount:
    """Destination account summary used for checkout preconditions."""

    id: str
    country: str | None
    transfers_capability: str | None


@dataclass(frozen=True)
class ProviderRefund:
    id: str
    status: str
    amount: int
    reason: str | None = None


class SettlementClient:
    """Async facade over the Stripe SDK.

    Attributes:
        api_key: Secret key (sk_...) used for every call.
        timeout: Overall deadline per call in seconds, retries included.
    """

    def __init__(
        self,
        api_key: str,
        webhook_secret: str | None = None,
        timeout: float | None = None,
        max_attempts: int = 3,
    ):
        self.api_key = api_key
        self.webhook_secret = webhook_secret
        self.timeout = timeout or get_settlement_timeout_seconds()
        self.max_attempts = max_attempts
        # Stripe allows 100 read/write ops per second in live mode
        self.rate_limiter = AsyncLimiter(max_rate=25, time_period=1)

    async def _call(self, operation: str, func: Any, **params: Any) -> Any:
        """Run a blocking SDK call with rate limiting, retries and a deadline."""

        async def attempt_all() -> Any:
            async for attempt in AsyncRetrying(
                retry=retry_if_exception_type(RETRYABLE_PROVIDER_ERRORS),
                stop=stop_after_attempt(self.max_attempts),
                wait=wait_exponential(multiplier=0.5, min=0.5, max=4),
                reraise=True,
            ):
                with attempt:
                    if attempt.retry_state.attempt_number > 1:
                        log.warning(
                            "settlement_call_retry",
                            operation=operation,
                            attempt=attempt.retry_state.attempt_number,
                        )
                    async with self.rate_limiter:
                        return await asyncio.to_thread(
                            partial(func, api_key=self.api_key, **params)
                        )
            return None

        try:
            return await asyncio.wait_for(attempt_all(), timeout=self.timeout)
        except asyncio.TimeoutError as e:
            log.error("settlement_call_timeout", operation=operation, timeout=self.timeout)
            raise ProviderOutcomeUnknown(
                detail={"message": f"{operation} timed out after {self.timeout}s"}
            ) from e
        except stripe.StripeError as e:
            message = e.user_message or str(e) or "stripe_error"
            log.error(
                "settlement_call_failed",
                operation=operation,
                error_type=type(e).__name__,
                http_status=e.http_status,
                code=e.code,
                message=message,
            )
            # Rejections (4xx) were not applied; anything else may have been
            outcome_unknown = (
                isinstance(e, stripe.APIConnectionError) or (e.http_status or 0) >= 500
            )
            error_class = ProviderOutcomeUnknown if outcome_unknown else UpstreamProviderError
            raise error_class(detail={"message": message}) from e

    async def retrieve_account(self, account_id: str) -> ConnectedAccount:
        account = await self._call("account_retrieve", stripe.Account.retrieve, id=account_id)
        return ConnectedAccount(
            id=_field(account, "id"),
            country=_field(account, "country"),
            transfers_capability=_field(_field(account, "capabilities") or {}, "transfers"),
        )

    async def create_checkout_session(
        self, params: dict[str, Any], idempotency_key: str
    ) -> CheckoutSession:
        """Create a hosted checkout session.

        Args:
            params: Checkout session parameters (mode, line_items, URLs, metadata...).
            idempotency_key: Stable token derived from the order and action.
        """
        session = await self._call(
            "checkout_session_create",
            stripe.checkout.Session.create,
            idempotency_key=idempotency_key,
            **params,
        )
        log.info("checkout_session_created", checkout_session_id=_field(session, "id"))
        return CheckoutSession(
            id=_field(session, "id"),
            url=_field(session, "url"),
            payment_intent=_field(session, "payment_intent"),
        )

    async def create_refund(self, params: dict[str, Any], idempotency_key: str) -> ProviderRefund:
        refund = await self._call(
            "refund_create",
            stripe.Refund.create,
            idempotency_key=idempotency_key,
            **params,
        )
        refund_id = _field(refund, "id")
        log.info("refund_created", refund_id=refund_id, refund_status=_field(refund, "status"))
        return ProviderRefund(
            id=refund_id,
            status=str(_field(refund, "status") or ""),
            amount=int(_field(refund, "amount") or 0),
            reason=_field(refund, "reason"),
        )

    def construct_event(self, payload: bytes, signature: str | None) -> dict[str, Any]:
        """Verify an inbound event signature and return the parsed event.

        Raises:
            ConfigurationError: If STRIPE_WEBHOOK_SECRET is not configured.
            SignatureVerificationFailed: If the signature or payload is invalid.
        """
        if not self.webhook_secret:
            raise ConfigurationError("STRIPE_WEBHOOK_SECRET is not configured")
        try:
            stripe.Webhook.construct_event(payload, signature or "", self.webhook_secret)
            event = json.loads(payload)
        except (stripe.SignatureVerificationError, ValueError) as e:
            raise SignatureVerificationFailed(str(e)) from e
        if not isinstance(event, dict) or not event.get("id") or not event.get("type"):
            raise SignatureVerificationFailed("event payload missing id or type")
        return event


@lru_cache
def get_settlement_client() -> SettlementClient:
    """Process-wide client built from configuration.

    Raises:
        ConfigurationError: If STRIPE_SECRET_KEY is not set.
    """
    api_key = get_stripe_secret_key()
    if not api_key:
        raise ConfigurationError("STRIPE_SECRET_KEY environment variable is required")
    return SettlementClient(api_key=api_key, webhook_secret=get_stripe_webhook_secret())
