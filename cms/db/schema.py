"""
Schema requirements and repair strategies.

``SchemaRequirement`` names the tables the application cannot run without and
the columns that older deployments may lack. ``RepairAction`` subclasses are
the ordered strategies the readiness gate tries, least destructive first.
Every action is idempotent so several processes may run it concurrently.
"""
from __future__ import annotations

import asyncio
import logging
from dataclasses import dataclass
from pathlib import Path
from typing import List, Optional, Tuple

from alembic import command
from alembic.autogenerate import compare_metadata
from alembic.config import Config
from alembic.runtime.migration import MigrationContext
from sqlalchemy import MetaData, Text
from sqlalchemy.exc import SQLAlchemyError
from sqlalchemy.types import TypeEngine
from starlette.concurrency import run_in_threadpool

from cms.db import models
from cms.db.database import StoreClient, StoreErrorKind, classify_store_error
from cms.utils.settings import get_settings

logger = logging.getLogger("cms.readiness")

SERVICE_ROOT = Path(__file__).resolve().parents[2]

REQUIRED_TABLES: Tuple[str, ...] = ("users", "categories", "tags", "posts", "post_tags")


@dataclass(frozen=True)
class OptionalColumn:
    """A column introduced after the initial schema (additive drift)."""
    table: str
    column: str
    type_: TypeEngine


@dataclass(frozen=True)
class SchemaRequirement:
    tables: Tuple[str, ...]
    optional_columns: Tuple[OptionalColumn, ...] = ()


DEFAULT_SCHEMA_REQUIREMENT = SchemaRequirement(
    tables=REQUIRED_TABLES,
    optional_columns=(OptionalColumn("posts", "featured_image", Text()),),
)


async def find_missing_tables(store: StoreClient, requirement: SchemaRequirement) -> List[str]:
    """Return required tables absent from the store, checking them concurrently.

    A connectivity failure while checking a table counts as missing; any other
    store error propagates.
    """

    async def _check(table_name: str) -> bool:
        try:
            return await run_in_threadpool(store.has_table, table_name)
        except SQLAlchemyError as exc:
            if classify_store_error(exc) is not StoreErrorKind.CONNECTIVITY:
                raise
            logger.warning("readiness: cannot check table %s, store unreachable: %s", table_name, exc)
            return False

    results = await asyncio.gather(*(_check(name) for name in requirement.tables))
    return [name for name, present in zip(requirement.tables, results) if not present]


def build_alembic_config(database_url: Optional[str] = None) -> Config:
    """Return an Alembic config pointing at the service migrations.

    Migrations live beside the package in a source checkout. An installed
    copy has to name an ``alembic.ini`` through ``ALEMBIC_CONFIG``, whose
    ``script_location`` is then used as written.
    """
    explicit_ini = get_settings().alembic_config
    if explicit_ini:
        cfg = Config(explicit_ini)
    else:
        ini_path = SERVICE_ROOT / "alembic.ini"
        cfg = Config(str(ini_path) if ini_path.exists() else None)
        cfg.set_main_option("script_location", str(SERVICE_ROOT / "migrations"))
    script_location = cfg.get_main_option("script_location")
    if not script_location or not Path(script_location).is_dir():
        raise FileNotFoundError(
            f"Alembic migrations not found at {script_location!r}; "
            "run from a source checkout or set ALEMBIC_CONFIG"
        )
    if database_url:
        # ConfigParser interpolation treats '%' specially
        cfg.set_main_option("sqlalchemy.url", database_url.replace("%", "%%"))
    # The application already configured logging; keep env.py from resetting it
    cfg.attributes["configure_logger"] = False
    return cfg


class RepairAction:
    """One step of the repair cascade.

    ``apply`` is blocking and runs in a worker thread; ``verify`` confirms the
    action left every required table in place.
    """

    name = "repair"

    def apply(self, store: StoreClient) -> None:
        raise NotImplementedError

    async def verify(self, store: StoreClient, requirement: SchemaRequirement) -> bool:
        try:
            missing = await find_missing_tables(store, requirement)
        except SQLAlchemyError as exc:
            logger.warning("readiness: verification after %s failed: %s", self.name, exc)
            return False
        if missing:
            logger.warning("readiness: still missing after %s: %s", self.name, ", ".join(missing))
            return False
        return True

    def __repr__(self) -> str:
        return f"<{type(self).__name__} {self.name}>"


class ApplyMigrations(RepairAction):
    """Run recorded Alembic migrations up to head."""

    name = "apply_migrations"

    def __init__(self, config_factory=build_alembic_config, revision: str = "head"):
        self._config_factory = config_factory
        self.revision = revision

    def apply(self, store: StoreClient) -> None:
        cfg = self._config_factory(store.url)
        with store.engine.begin() as connection:
            cfg.attributes["connection"] = connection
            command.upgrade(cfg, self.revision)
        logger.info("readiness: migrations applied up to %s", self.revision)


class SynchronizeSchema(RepairAction):
    """Create every table in the ORM metadata that the store lacks; never drops."""

    name = "synchronize_schema"

    def __init__(self, metadata: Optional[MetaData] = None):
        self.metadata = metadata if metadata is not None else models.Base.metadata

    def apply(self, store: StoreClient) -> None:
        self.metadata.create_all(bind=store.engine, checkfirst=True)
        logger.info("readiness: schema synchronized from ORM metadata")


class GenerateMigration(RepairAction):
    """Autogenerate a revision for the current drift, then upgrade to it.

    Nothing is written when the live schema already matches the metadata.
    """

    name = "generate_migration"

    def __init__(
        self,
        config_factory=build_alembic_config,
        metadata: Optional[MetaData] = None,
        message: str = "auto schema sync",
    ):
        self._config_factory = config_factory
        self.metadata = metadata if metadata is not None else models.Base.metadata
        self.message = message

    def pending_changes(self, store: StoreClient) -> list:
        with store.engine.connect() as connection:
            # only structural drift (tables, columns) is repaired
            context = MigrationContext.configure(connection, opts={"compare_type": False})
            return compare_metadata(context, self.metadata)

    def apply(self, store: StoreClient) -> None:
        diff = self.pending_changes(store)
        if not diff:
            logger.info("readiness: no schema drift detected; no migration generated")
            return
        logger.info("readiness: generating migration for %d schema difference(s)", len(diff))
        cfg = self._config_factory(store.url)
        with store.engine.begin() as connection:
            cfg.attributes["connection"] = connection
            command.revision(cfg, message=self.message, autogenerate=True)
            command.upgrade(cfg, "head")


def default_repair_actions() -> List[RepairAction]:
    return [ApplyMigrations(), SynchronizeSchema(), GenerateMigration()]
