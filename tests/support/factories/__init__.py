# Data factories for test data generation

from tests.support.factories.marketplace_factory import (
    api_key_for,
    create_ai_account,
    create_human,
    create_order,
    create_task,
)

__all__ = [
    "api_key_for",
    "create_ai_account",
    "create_human",
    "create_order",
    "create_task",
]
