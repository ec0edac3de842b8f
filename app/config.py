"""Configuration management for the marketplace core.

This module provides centralized configuration loading from environment variables.
Required, immutable values are cached; tunables are read on every call so tests
can override them with monkeypatch.

Environment Variables:
    DATABASE_URL: PostgreSQL connection URL (required for production)
    FERNET_KEY: Encryption key for webhook signing secrets (required)
    APP_BASE_URL: Public base URL used to validate checkout redirect URLs
    ADMIN_API_TOKEN: Shared token for operator endpoints (X-Admin-Token header)
    AI_API_LIMIT_BYPASS_IDS: Comma-separated agent account IDs exempt from quotas
    AI_API_DEFAULT_MONTHLY_LIMIT: Monthly request ceiling (default: 50000)
    AI_API_DEFAULT_BURST_PER_MINUTE: Per-minute request ceiling (default: 60)
    AI_API_WARN_THRESHOLDS: Usage warning percentages (default: "80,95")
    STRIPE_SECRET_KEY: Settlement provider API key
    STRIPE_WEBHOOK_SECRET: Settlement provider webhook signing secret
    SETTLEMENT_TIMEOUT_SECONDS: Deadline for provider calls (default: 10)
    WEBHOOK_TIMEOUT_SECONDS: Deadline for webhook deliveries (default: 10)
    INTL_SURCHARGE_BPS: International surcharge in basis points (default: 300)
    INTL_SURCHARGE_MIN_MINOR: Minimum international surcharge (default: 100)
    REVIEW_GATE_ENABLED: Route submissions through review_pending (default: false)
    REVIEW_PENDING_AUTO_APPROVE_HOURS: Auto-approve window (default: 72, 24-72)
    IDEMPOTENCY_PENDING_TTL_SECONDS: Age after which a placeholder can be retaken
    OUTBOX_POLL_INTERVAL_SECONDS: Worker poll interval (default: 2)
    OUTBOX_BATCH_SIZE: Events claimed per poll (default: 25)
    OUTBOX_LEASE_SECONDS: Lease before a claimed event is reclaimed (default: 120)

Usage:
    from app.config import get_database_url, get_quota_defaults

    db_url = get_database_url()  # Raises if DATABASE_URL not set
    monthly, burst = get_quota_defaults()
"""

import os
from functools import lru_cache

import structlog

log = structlog.get_logger(__name__)

DEFAULT_MONTHLY_LIMIT = 50000
DEFAULT_BURST_PER_MINUTE = 60
DEFAULT_WARN_THRESHOLDS = (80, 95)


def _get_int(
    name: str, default: int, minimum: int | None = None, maximum: int | None = None
) -> int:
    """Read an integer environment variable, falling back to default on bad input."""
    raw = os.getenv(name)
    if raw is None or raw.strip() == "":
        return default
    try:
        value = int(raw)
    except ValueError:
        log.warning("config_invalid_integer", name=name, value=raw, default=default)
        return default

    if minimum is not None and value < minimum:
        log.warning("config_value_clamped", name=name, value=value, clamped_to=minimum)
        return minimum
    if maximum is not None and value > maximum:
        log.warning("config_value_clamped", name=name, value=value, clamped_to=maximum)
        return maximum
    return value


def _get_bool(name: str, default: bool = False) -> bool:
    raw = os.getenv(name)
    if raw is None:
        return default
    return raw.strip().lower() in {"1", "true", "yes", "on"}


@lru_cache
def get_database_url() -> str:
    """Get database URL from environment.

    Converts postgresql:// to postgresql+asyncpg:// for async SQLAlchemy.

    Environment Variable:
        DATABASE_URL: PostgreSQL connection URL

    Returns:
        Database URL with asyncpg driver.

    Raises:
        ValueError: If DATABASE_URL not set.
    """
    url = os.getenv("DATABASE_URL")
    if not url:
        raise ValueError("DATABASE_URL environment variable is required")

    # Hosted Postgres hands out postgresql:// but we need postgresql+asyncpg://
    if url.startswith("postgresql://"):
        url = url.replace("postgresql://", "postgresql+asyncpg://", 1)

    return url


def get_database_pool_settings() -> dict[str, int | bool]:
    """Connection pool settings for the production engine.

    Environment Variables:
        DATABASE_POOL_SIZE: Persistent connections per process (default 10)
        DATABASE_MAX_OVERFLOW: Extra connections under load (default 5)
        DATABASE_ECHO: Log every SQL statement when "true"
    """
    return {
        "pool_size": _get_int("DATABASE_POOL_SIZE", 10, minimum=1, maximum=100),
        "max_overflow": _get_int("DATABASE_MAX_OVERFLOW", 5, minimum=0, maximum=100),
        "echo": _get_bool("DATABASE_ECHO"),
    }


@lru_cache
def get_fernet_key() -> str:
    """Get Fernet encryption key from environment.

    Environment Variable:
        FERNET_KEY: Base64-encoded Fernet key for webhook secret encryption

    Returns:
        Fernet key string.

    Raises:
        ValueError: If FERNET_KEY not set.
    """
    key = os.getenv("FERNET_KEY")
    if not key:
        raise ValueError("FERNET_KEY environment variable is required")
    return key


def get_app_base_url() -> str:
    """Get the public base URL of the web application.

    Checkout success/cancel URLs must start with this prefix.

    Environment Variable:
        APP_BASE_URL: e.g. "https://toolcall.example" (default: "http://localhost:8000")

    Returns:
        Base URL without trailing slash.
    """
    return os.getenv("APP_BASE_URL", "http://localhost:8000").rstrip("/")


def get_admin_api_token() -> str | None:
    """Get the operator token compared against the X-Admin-Token header.

    Returns:
        Token string, or None when admin endpoints are disabled.
    """
    return os.getenv("ADMIN_API_TOKEN") or None


def get_limit_bypass_ids() -> frozenset[str]:
    """Get agent account IDs exempt from quota accounting.

    Environment Variable:
        AI_API_LIMIT_BYPASS_IDS: Comma-separated list, e.g. "acct_a,acct_b"

    Returns:
        Set of account IDs, empty if not configured.
    """
    raw = os.getenv("AI_API_LIMIT_BYPASS_IDS", "")
    return frozenset(part.strip() for part in raw.split(",") if part.strip())


def get_quota_defaults() -> tuple[int, int]:
    """Get default (monthly_limit, burst_per_minute) for agent accounts.

    Accounts with their own positive limits override these values.

    Returns:
        Tuple of (monthly limit, per-minute limit).
    """
    monthly = _get_int("AI_API_DEFAULT_MONTHLY_LIMIT", DEFAULT_MONTHLY_LIMIT, minimum=1)
    burst = _get_int("AI_API_DEFAULT_BURST_PER_MINUTE", DEFAULT_BURST_PER_MINUTE, minimum=1)
    return monthly, burst


def get_warn_thresholds() -> tuple[int, ...]:
    """Get usage warning thresholds as ascending percentages.

    Environment Variable:
        AI_API_WARN_THRESHOLDS: Comma-separated integers in 1-100 (default: "80,95")
    """
    raw = os.getenv("AI_API_WARN_THRESHOLDS")
    if not raw:
        return DEFAULT_WARN_THRESHOLDS

    thresholds: set[int] = set()
    for part in raw.split(","):
        part = part.strip()
        if not part:
            continue
        try:
            value = int(part)
        except ValueError:
            log.warning("config_invalid_threshold", value=part)
            continue
        if 0 < value <= 100:
            thresholds.add(value)

    return tuple(sorted(thresholds)) or DEFAULT_WARN_THRESHOLDS


def get_stripe_secret_key() -> str | None:
    """Get the settlement provider API key.

    Returns:
        Secret key string, or None if settlement is not configured.
    """
    return os.getenv("STRIPE_SECRET_KEY") or None


def get_stripe_webhook_secret() -> str | None:
    """Get the settlement provider webhook signing secret."""
    return os.getenv("STRIPE_WEBHOOK_SECRET") or None


def get_alert_webhook_url() -> str | None:
    """Get the Discord webhook used for operator alerts (None disables alerts)."""
    return os.getenv("DISCORD_WEBHOOK_URL") or None


def get_settlement_timeout_seconds() -> float:
    return float(_get_int("SETTLEMENT_TIMEOUT_SECONDS", 10, minimum=1, maximum=60))


def get_webhook_timeout_seconds() -> float:
    return float(_get_int("WEBHOOK_TIMEOUT_SECONDS", 10, minimum=1, maximum=30))


def get_intl_surcharge() -> tuple[int, int]:
    """Get international surcharge configuration.

    Returns:
        Tuple of (basis points, minimum surcharge in minor units).
    """
    bps = _get_int("INTL_SURCHARGE_BPS", 300, minimum=0, maximum=10000)
    minimum = _get_int("INTL_SURCHARGE_MIN_MINOR", 100, minimum=0)
    return bps, minimum


def is_review_gate_enabled() -> bool:
    """Whether submissions wait in review_pending for requester approval.

    Environment Variable:
        REVIEW_GATE_ENABLED: "true" to enable (default: false, submit completes directly)
    """
    return _get_bool("REVIEW_GATE_ENABLED", False)


def get_auto_approve_hours() -> int:
    """Get hours after which a review_pending task is auto-approved (clamped to 24-72)."""
    return _get_int("REVIEW_PENDING_AUTO_APPROVE_HOURS", 72, minimum=24, maximum=72)


def get_idempotency_pending_ttl_seconds() -> int:
    return _get_int("IDEMPOTENCY_PENDING_TTL_SECONDS", 300, minimum=30)


def get_outbox_poll_interval_seconds() -> float:
    return float(_get_int("OUTBOX_POLL_INTERVAL_SECONDS", 2, minimum=1, maximum=60))


def get_outbox_batch_size() -> int:
    return _get_int("OUTBOX_BATCH_SIZE", 25, minimum=1, maximum=500)


def get_outbox_lease_seconds() -> int:
    return _get_int("OUTBOX_LEASE_SECONDS", 120, minimum=10)


def get_settlement_lease_seconds() -> int:
    """Seconds a claimed settlement event stays with one worker before another may reclaim it."""
    return _get_int("SETTLEMENT_EVENT_LEASE_SECONDS", 300, minimum=30)
