"""Helpers shared by services, routes and the worker.

Modules:
    encryption: Fernet storage of webhook signing secrets (supports key rotation).
    logging: structlog JSON setup and logger lookup.
    alerts: Best-effort operator notifications through a Discord webhook.
"""

from app.utils.alerts import send_alert
from app.utils.encryption import DecryptionError, EncryptionKeyMissing, get_encryption_service
from app.utils.logging import configure_logging, get_logger

__all__ = [
    "DecryptionError",
    "EncryptionKeyMissing",
    "configure_logging",
    "get_encryption_service",
    "get_logger",
    "send_alert",
]
