"""ToolCall marketplace core.

This package contains the FastAPI service that connects requesting agents
with human workers: task lifecycle, idempotent request handling, quota-gated
API access, payment settlement and signed webhook delivery. State lives in
PostgreSQL.
"""

from app.database import async_session_factory, get_session
from app.models import Base, Order, Task

__all__ = [
    "Base",
    "Order",
    "Task",
    "async_session_factory",
    "get_session",
]
