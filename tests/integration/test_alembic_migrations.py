from __future__ import annotations

import asyncio

import pytest
from alembic import command
from sqlalchemy import text
from sqlalchemy.exc import ProgrammingError

from cms.db.database import StoreClient, StoreErrorKind, classify_store_error
from cms.db.readiness import ReadinessInitializer
from cms.db.schema import DEFAULT_SCHEMA_REQUIREMENT, ApplyMigrations, build_alembic_config, find_missing_tables

pytestmark = [pytest.mark.integration, pytest.mark.slow]


@pytest.fixture
def pg_store(postgres_url):
    cfg = build_alembic_config(postgres_url)
    command.downgrade(cfg, "base")
    store = StoreClient(postgres_url)
    yield store
    store.dispose()


def _current_revision(store: StoreClient) -> str:
    with store.engine.connect() as connection:
        return connection.execute(text("SELECT version_num FROM alembic_version")).scalar_one()


def test_alembic_upgrade_and_downgrade_cycle(postgres_url) -> None:
    """Migrations upgrade from base to head and cleanly downgrade back to base."""
    cfg = build_alembic_config(postgres_url)

    command.downgrade(cfg, "base")
    command.upgrade(cfg, "head")
    command.downgrade(cfg, "base")
    command.upgrade(cfg, "head")


def test_gate_migrates_empty_database(pg_store) -> None:
    gate = ReadinessInitializer(pg_store, settle_delay=0)

    asyncio.run(gate.ensure_ready())

    assert gate.is_ready
    assert asyncio.run(find_missing_tables(pg_store, DEFAULT_SCHEMA_REQUIREMENT)) == []
    assert _current_revision(pg_store) == "cms_featured_image_20250301"


def test_gate_adds_missing_column_inline(pg_store, postgres_url) -> None:
    command.upgrade(build_alembic_config(postgres_url), "cms_initial_20250101")
    assert not pg_store.has_column("posts", "featured_image")

    gate = ReadinessInitializer(pg_store, repair_actions=[], settle_delay=0)
    asyncio.run(gate.ensure_ready())

    assert pg_store.has_column("posts", "featured_image")
    # the later revision tolerates the column already being there
    ApplyMigrations().apply(pg_store)
    assert _current_revision(pg_store) == "cms_featured_image_20250301"


def test_missing_table_errors_are_classified(pg_store) -> None:
    with pytest.raises(ProgrammingError) as excinfo:
        with pg_store.engine.connect() as connection:
            connection.execute(text("SELECT id FROM posts"))
    assert classify_store_error(excinfo.value) is StoreErrorKind.MISSING_TABLE
