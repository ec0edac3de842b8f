"""Project-wide constants and mappings.

This module contains event names, supported settlement countries, and the
header names shared by the quota gate and the webhook dispatcher.
"""

# Outbound task events
EVENT_TASK_ACCEPTED = "task.accepted"
EVENT_TASK_COMPLETED = "task.completed"
EVENT_TASK_FAILED = "task.failed"

WEBHOOK_EVENTS: tuple[str, ...] = (
    EVENT_TASK_ACCEPTED,
    EVENT_TASK_COMPLETED,
    EVENT_TASK_FAILED,
)

# Settlement countries → payout currency (lowercase, provider convention)
COUNTRY_CURRENCY: dict[str, str] = {
    "JP": "jpy",
    "US": "usd",
}

# Country where the platform operator is established
OPERATOR_COUNTRY = "JP"

# Refund reasons accepted by the settlement provider
REFUND_REASONS: frozenset[str] = frozenset({"duplicate", "fraudulent", "requested_by_customer"})

# Provider events processed by the settlement worker
SETTLEMENT_EVENT_TYPES: frozenset[str] = frozenset(
    {"checkout.session.completed", "payment_intent.succeeded", "charge.succeeded"}
)

# Outbound webhook headers
WEBHOOK_EVENT_HEADER = "X-ToolCall-Event"
WEBHOOK_SIGNATURE_HEADER = "X-ToolCall-Signature"
WEBHOOK_RESPONSE_BODY_LIMIT = 2000

# Quota headers
RATE_LIMIT_HEADER_PREFIX = "X-AI-RateLimit"
RATE_LIMIT_BYPASS_HEADER = "X-AI-RateLimit-Bypass"
USAGE_WARN_HEADER = "X-AI-Usage-Warn"
USAGE_WARN_THRESHOLD_HEADER = "X-AI-Usage-Warn-Threshold"

IDEMPOTENCY_KEY_HEADER = "Idempotency-Key"
ADMIN_TOKEN_HEADER = "X-Admin-Token"
