"""Discord webhook alerts for operators.

Alerts go to the Discord channel configured in DISCORD_WEBHOOK_URL. The core
raises them for one-time agent quota warnings; delivery is best effort and
never fails the request or worker cycle that triggered it.

Architecture Pattern:
    - Async HTTP client (httpx), 5s timeout
    - Discord limits: 2000 chars of content, 1024 per embed field, 25 fields
    - Graceful degradation (log on failure, never raise to the caller)
"""

from typing import Any

import httpx

from app.config import get_alert_webhook_url
from app.utils.logging import get_logger

log = get_logger(__name__)

ALERT_TIMEOUT_SECONDS = 5.0
MAX_MESSAGE_CHARS = 2000
MAX_FIELD_CHARS = 1024
MAX_FIELDS = 25

LEVEL_COLORS = {
    "CRITICAL": 0xFF0000,
    "WARNING": 0xFFA500,
    "INFO": 0x0000FF,
}
DEFAULT_COLOR = 0x808080


def build_alert_payload(
    level: str, message: str, details: dict[str, Any] | None = None
) -> dict[str, Any]:
    """Build the Discord webhook body for an alert.

    Detail values are stringified and truncated; fields beyond Discord's
    limit are dropped.
    """
    text = message[:MAX_MESSAGE_CHARS]
    fields = [
        {"name": str(key), "value": str(value)[:MAX_FIELD_CHARS], "inline": True}
        for key, value in list((details or {}).items())[:MAX_FIELDS]
    ]
    return {
        "content": f"**{level}**: {text}",
        "embeds": [
            {
                "title": f"{level} Alert",
                "description": text,
                "fields": fields,
                "color": LEVEL_COLORS.get(level, DEFAULT_COLOR),
            }
        ],
    }


async def send_alert(level: str, message: str, details: dict[str, Any] | None = None) -> bool:
    """Send an alert to the operator Discord channel.

    Args:
        level: Alert level ("CRITICAL", "WARNING", "INFO")
        message: Alert message (truncated to 2000 chars)
        details: Optional structured details rendered as embed fields

    Returns:
        True when Discord accepted the alert, False when alerts are not
        configured or delivery failed.

    Example:
        >>> await send_alert(
        ...     level="WARNING",
        ...     message="Agent account ai_1 reached 80% of its monthly API quota",
        ...     details={"ai_account_id": "ai_1", "threshold_percent": "80"},
        ... )
    """
    webhook_url = get_alert_webhook_url()
    if not webhook_url:
        log.info("alert_skipped_not_configured", level=level, message=message[:100])
        return False

    payload = build_alert_payload(level, message, details)
    try:
        async with httpx.AsyncClient(timeout=ALERT_TIMEOUT_SECONDS) as client:
            response = await client.post(webhook_url, json=payload)
            response.raise_for_status()
    except httpx.TimeoutException:
        log.error("alert_delivery_timeout", level=level)
        return False
    except httpx.HTTPStatusError as e:
        log.error(
            "alert_delivery_rejected",
            level=level,
            status_code=e.response.status_code,
            response=e.response.text[:500],
        )
        return False
    except httpx.HTTPError as e:
        log.error("alert_delivery_failed", level=level, error=str(e))
        return False

    log.info("alert_sent", level=level, message=message[:100])
    return True
