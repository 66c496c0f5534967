"""
Database engine, session management and store connectivity.

Builds the SQLAlchemy engine from environment configuration with sensible
test fallbacks (SQLite in-memory). The ``StoreClient`` wraps the engine so the
readiness gate can ping, reconnect and reprovision it, and inspect the live
schema without issuing ad-hoc queries.
"""
import logging
import os
import sys
from enum import Enum
from typing import Callable, Optional, Set

from sqlalchemy import create_engine, inspect, text
from sqlalchemy.engine import Engine
from sqlalchemy.exc import DBAPIError, DisconnectionError, InterfaceError, OperationalError, SQLAlchemyError
from sqlalchemy.exc import TimeoutError as PoolTimeoutError
from sqlalchemy.orm import Session, sessionmaker
from sqlalchemy.pool import StaticPool
from sqlalchemy.types import TypeEngine

from cms.utils.settings import get_settings

logger = logging.getLogger(__name__)

IN_MEMORY_SQLITE_URL = "sqlite+pysqlite:///:memory:"


class StoreErrorKind(str, Enum):
    CONNECTIVITY = "connectivity"
    MISSING_TABLE = "missing_table"
    MISSING_COLUMN = "missing_column"
    OTHER = "other"


# SQLSTATE classes reported by PostgreSQL drivers
_SQLSTATE_KINDS = {
    "42P01": StoreErrorKind.MISSING_TABLE,   # undefined_table
    "42703": StoreErrorKind.MISSING_COLUMN,  # undefined_column
    "57P01": StoreErrorKind.CONNECTIVITY,    # admin_shutdown
    "57P02": StoreErrorKind.CONNECTIVITY,    # crash_shutdown
    "57P03": StoreErrorKind.CONNECTIVITY,    # cannot_connect_now
}

# sqlite3 primary result codes that mean the database file itself is unusable
_SQLITE_CONNECTIVITY_CODES = {
    10,  # SQLITE_IOERR
    14,  # SQLITE_CANTOPEN
    26,  # SQLITE_NOTADB
}


def _sqlstate(orig) -> Optional[str]:
    return getattr(orig, "pgcode", None) or getattr(orig, "sqlstate", None)


def classify_store_error(exc: BaseException) -> StoreErrorKind:
    """Map an exception raised by the store into a closed set of kinds.

    Classification relies on exception types, SQLSTATE codes and sqlite
    result codes only.
    """
    if isinstance(exc, (DisconnectionError, PoolTimeoutError, ConnectionError)):
        return StoreErrorKind.CONNECTIVITY
    if isinstance(exc, DBAPIError):
        if exc.connection_invalidated:
            return StoreErrorKind.CONNECTIVITY
        orig = exc.orig
        code = _sqlstate(orig)
        if code:
            if code.startswith("08"):  # connection_exception class
                return StoreErrorKind.CONNECTIVITY
            return _SQLSTATE_KINDS.get(code, StoreErrorKind.OTHER)
        sqlite_code = getattr(orig, "sqlite_errorcode", None)
        if sqlite_code is not None:
            # extended codes carry the primary code in the low byte
            if (sqlite_code & 0xFF) in _SQLITE_CONNECTIVITY_CODES:
                return StoreErrorKind.CONNECTIVITY
            return StoreErrorKind.OTHER
        if isinstance(exc, (OperationalError, InterfaceError)):
            # driver-level failure before any statement ran (refused, DNS, auth)
            return StoreErrorKind.CONNECTIVITY
    return StoreErrorKind.OTHER


def _is_pytest_runtime() -> bool:
    """Best-effort detection that we're executing under pytest."""
    if os.getenv("PYTEST_RUNNING") == "1":
        return True
    if "PYTEST_CURRENT_TEST" in os.environ:
        return True
    return "pytest" in sys.modules


def resolve_database_url() -> str:
    """Return the store URL.

    Order: CMS_TEST_DB, then DATABASE_URL / POSTGRES_* settings, then an
    in-memory SQLite database when running under pytest.
    """
    explicit_test_db = os.getenv("CMS_TEST_DB")
    if explicit_test_db:
        return explicit_test_db
    url = get_settings().database_url
    if url:
        return url
    if _is_pytest_runtime():
        return IN_MEMORY_SQLITE_URL
    raise ValueError(
        "Missing required database configuration: set DATABASE_URL or "
        "POSTGRES_USER, POSTGRES_PASSWORD, POSTGRES_HOST, POSTGRES_PORT, POSTGRES_DB"
    )


def create_store_engine(url: str) -> Engine:
    """Create an engine; SQLite gets thread-safe settings and in-memory gets a StaticPool."""
    if url.startswith("sqlite"):
        kwargs = {"connect_args": {"check_same_thread": False}}
        if ":memory:" in url or url.rstrip("/") in ("sqlite:", "sqlite+pysqlite:"):
            # In-memory SQLite with StaticPool so the schema persists across connections
            kwargs["poolclass"] = StaticPool
        return create_engine(url, **kwargs)
    return create_engine(url, pool_pre_ping=True)


class StoreClient:
    """Process-wide handle on the relational store."""

    def __init__(self, url: str, engine_factory: Callable[[str], Engine] = create_store_engine):
        self.url = url
        self._engine_factory = engine_factory
        self.engine: Engine = engine_factory(url)
        self.SessionLocal = sessionmaker(autocommit=False, autoflush=False, bind=self.engine)

    @property
    def dialect_name(self) -> str:
        return self.engine.dialect.name

    def ping(self) -> None:
        """Round-trip a trivial statement; raises on connectivity failure."""
        with self.engine.connect() as connection:
            connection.execute(text("SELECT 1"))

    def reconnect(self) -> None:
        """Drop pooled connections so the next checkout sees fresh schema state."""
        if isinstance(self.engine.pool, StaticPool):
            # disposing drops the only connection, and the in-memory database with it
            return
        self.engine.dispose()

    def reprovision(self) -> None:
        """Replace the engine with a freshly built one for the same URL."""
        old = self.engine
        self.engine = self._engine_factory(self.url)
        self.SessionLocal.configure(bind=self.engine)
        try:
            old.dispose()
        except SQLAlchemyError as exc:
            logger.debug("store: disposing previous engine failed: %s", exc)
        logger.info("store: engine reprovisioned for dialect=%s", self.dialect_name)

    def has_table(self, table_name: str) -> bool:
        with self.engine.connect() as connection:
            return inspect(connection).has_table(table_name)

    def column_names(self, table_name: str) -> Set[str]:
        with self.engine.connect() as connection:
            return {col["name"] for col in inspect(connection).get_columns(table_name)}

    def has_column(self, table_name: str, column_name: str) -> bool:
        return column_name in self.column_names(table_name)

    def add_column_if_missing(self, table_name: str, column_name: str, column_type: TypeEngine) -> bool:
        """Add a nullable column when absent; returns True if DDL was issued.

        Idempotent: PostgreSQL uses ``ADD COLUMN IF NOT EXISTS`` so racing
        processes cannot collide, other dialects check first.
        """
        with self.engine.begin() as connection:
            dialect = connection.dialect
            preparer = dialect.identifier_preparer
            table_sql = preparer.quote(table_name)
            column_sql = preparer.quote(column_name)
            type_sql = column_type.compile(dialect=dialect)
            if dialect.name == "postgresql":
                connection.execute(
                    text(f"ALTER TABLE {table_sql} ADD COLUMN IF NOT EXISTS {column_sql} {type_sql}")
                )
                return True
            existing = {col["name"] for col in inspect(connection).get_columns(table_name)}
            if column_name in existing:
                return False
            connection.execute(text(f"ALTER TABLE {table_sql} ADD COLUMN {column_sql} {type_sql}"))
            return True

    def session(self) -> Session:
        return self.SessionLocal()

    def dispose(self) -> None:
        self.engine.dispose()


_store: Optional[StoreClient] = None


def get_store() -> StoreClient:
    """Return the process-wide store client, building it on first use."""
    global _store
    if _store is None:
        _store = StoreClient(resolve_database_url())
    return _store


def reset_store_for_tests(store: Optional[StoreClient] = None) -> None:
    """Drop (or replace) the process-wide store client."""
    global _store
    if _store is not None and store is not _store:
        try:
            _store.dispose()
        except SQLAlchemyError as exc:
            logger.debug("store: disposing replaced store failed: %s", exc)
    _store = store
