"""Tests that the Alembic migration stays in step with the models.

The migration is parsed as a module and its source inspected; no database
is touched, so these run without PostgreSQL.
"""

import importlib.util
import re
from pathlib import Path

import pytest

from app.models import Base

MIGRATION_PATH = Path(__file__).resolve().parent.parent / (
    "alembic/versions/20261019_0001_001_initial_ledger.py"
)


@pytest.fixture(scope="module")
def migration_source() -> str:
    return MIGRATION_PATH.read_text()


def test_migration_file_is_valid() -> None:
    """The migration can be imported and has the required Alembic attributes."""
    spec = importlib.util.spec_from_file_location("migration", MIGRATION_PATH)
    assert spec is not None
    assert spec.loader is not None

    migration = importlib.util.module_from_spec(spec)
    spec.loader.exec_module(migration)

    assert migration.revision == "001_initial_ledger"
    assert migration.down_revision is None
    assert callable(migration.upgrade)
    assert callable(migration.downgrade)


def test_upgrade_creates_every_model_table(migration_source: str) -> None:
    created = set(re.findall(r'op\.create_table\(\s*"(\w+)"', migration_source))

    assert created == set(Base.metadata.tables)


def test_downgrade_drops_every_created_table(migration_source: str) -> None:
    created = re.findall(r'op\.create_table\(\s*"(\w+)"', migration_source)
    dropped = re.findall(r'op\.drop_table\("(\w+)"', migration_source)

    assert sorted(created) == sorted(dropped)
