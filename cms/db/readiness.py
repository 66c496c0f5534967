"""
Lazy schema readiness gate.

Every data-access path awaits ``ReadinessInitializer.ensure_ready()`` before
issuing queries. The first caller verifies the schema and repairs it when
needed; callers arriving while that attempt runs join it and receive the same
outcome. Once ready, the check is a single attribute comparison.

A failed attempt is not memoized: the gate returns to ``NOT_STARTED`` and the
next caller starts a fresh attempt.
"""
from __future__ import annotations

import asyncio
import logging
import time
from datetime import datetime, timezone
from enum import Enum
from typing import Any, Awaitable, Callable, Dict, List, Optional, Sequence

from sqlalchemy.exc import SQLAlchemyError
from starlette.concurrency import run_in_threadpool

from cms.db.database import StoreClient, classify_store_error, get_store
from cms.db.schema import (
    DEFAULT_SCHEMA_REQUIREMENT,
    OptionalColumn,
    RepairAction,
    SchemaRequirement,
    default_repair_actions,
    find_missing_tables,
)
from cms.utils.settings import get_settings

logger = logging.getLogger("cms.readiness")

REMEDIATION = (
    "Database not initialized. Run `alembic upgrade head` against DATABASE_URL, "
    "then retry the request."
)


class ReadinessState(str, Enum):
    NOT_STARTED = "not_started"
    IN_PROGRESS = "in_progress"
    READY = "ready"


class InitializationError(RuntimeError):
    """The repair cascade was exhausted without a verified schema."""

    def __init__(self, message: str, *, remediation: str = REMEDIATION, attempted_actions: Sequence[str] = ()):
        super().__init__(message)
        self.remediation = remediation
        self.attempted_actions = tuple(attempted_actions)


class ReadinessInitializer:
    """Single-flight schema verification and repair for one store."""

    def __init__(
        self,
        store: Optional[StoreClient],
        requirement: SchemaRequirement = DEFAULT_SCHEMA_REQUIREMENT,
        repair_actions: Optional[Sequence[RepairAction]] = None,
        *,
        settle_delay: float = 2.0,
        build_phase: bool = False,
        sleep: Callable[[float], Awaitable[Any]] = asyncio.sleep,
    ):
        self.store = store
        self.requirement = requirement
        self.repair_actions: List[RepairAction] = (
            list(repair_actions) if repair_actions is not None else default_repair_actions()
        )
        self.settle_delay = settle_delay
        self.build_phase = build_phase
        self._sleep = sleep
        self._state = ReadinessState.NOT_STARTED
        self._pending: Optional[asyncio.Future] = None
        self.attempts = 0
        self.last_error: Optional[str] = None
        self.ready_at: Optional[datetime] = None

    @property
    def state(self) -> ReadinessState:
        return self._state

    @property
    def is_ready(self) -> bool:
        return self._state is ReadinessState.READY

    async def ensure_ready(self) -> None:
        """Return once the schema is verified; raise ``InitializationError`` otherwise."""
        if self._state is ReadinessState.READY:
            return
        if self.build_phase:
            return
        if self._pending is None:
            self._state = ReadinessState.IN_PROGRESS
            self._pending = asyncio.ensure_future(self._run_attempt())
            self._pending.add_done_callback(self._consume_outcome)
        # shield: a caller that stops waiting must not cancel the shared attempt
        await asyncio.shield(self._pending)

    def invalidate(self, reason: str) -> None:
        """Forget a READY verdict after the live schema was found to drift."""
        if self._state is ReadinessState.READY:
            logger.warning("readiness: schema drift detected at runtime (%s); re-verifying on next request", reason)
            self._state = ReadinessState.NOT_STARTED
            self.ready_at = None

    def snapshot(self) -> Dict[str, Any]:
        return {
            "state": self._state.value,
            "attempts": self.attempts,
            "last_error": self.last_error,
            "ready_at": self.ready_at.isoformat() if self.ready_at else None,
            "required_tables": list(self.requirement.tables),
            "repair_actions": [a.name for a in self.repair_actions],
        }

    @staticmethod
    def _consume_outcome(task: asyncio.Future) -> None:
        # Retrieve the exception so an attempt every caller abandoned is not reported as unhandled
        if not task.cancelled():
            task.exception()

    async def _run_attempt(self) -> None:
        self.attempts += 1
        started = time.monotonic()
        try:
            await self._initialize()
        except InitializationError as exc:
            self.last_error = str(exc)
            self._state = ReadinessState.NOT_STARTED
            logger.error("readiness: initialization failed: %s", exc)
            raise
        except Exception as exc:
            self.last_error = str(exc)
            self._state = ReadinessState.NOT_STARTED
            logger.exception("readiness: unexpected failure during initialization")
            raise InitializationError(f"Database initialization failed: {exc}") from exc
        else:
            self._state = ReadinessState.READY
            self.ready_at = datetime.now(timezone.utc)
            self.last_error = None
            logger.info("readiness: store ready in %.2fs (attempt %d)", time.monotonic() - started, self.attempts)
        finally:
            self._pending = None

    async def _initialize(self) -> None:
        await self._ensure_store_connectable()
        try:
            missing = await find_missing_tables(self.store, self.requirement)
        except SQLAlchemyError as exc:
            logger.warning(
                "readiness: table check failed (%s), attempting repair: %s",
                classify_store_error(exc).value,
                exc,
            )
            missing = list(self.requirement.tables)

        if not missing:
            logger.info("readiness: all %d required tables present", len(self.requirement.tables))
        else:
            logger.warning(
                "readiness: missing tables %s (required: %s)",
                ", ".join(missing),
                ", ".join(self.requirement.tables),
            )
            await self._run_repair_cascade()

        unresolved = await self._repair_optional_columns()
        if unresolved:
            # a column the direct ALTER could not add is left to the full repair cascade
            await self._run_repair_cascade(columns=unresolved)

    async def _ensure_store_connectable(self) -> None:
        try:
            await run_in_threadpool(self.store.ping)
            return
        except SQLAlchemyError as exc:
            logger.warning(
                "readiness: store not connectable (%s), reprovisioning client: %s",
                classify_store_error(exc).value,
                exc,
            )
        try:
            await run_in_threadpool(self.store.reprovision)
            await run_in_threadpool(self.store.ping)
        except SQLAlchemyError as exc:
            # the repair cascade retries connectivity on its own
            logger.error("readiness: store still unreachable after reprovision: %s", exc)

    async def _repair_optional_columns(self) -> List[OptionalColumn]:
        """Add missing optional columns in place; return those still absent."""
        unresolved: List[OptionalColumn] = []
        added = False
        for col in self.requirement.optional_columns:
            try:
                present = await run_in_threadpool(self.store.has_column, col.table, col.column)
                if present:
                    continue
                logger.warning("readiness: column %s.%s missing, adding it", col.table, col.column)
                added = await run_in_threadpool(
                    self.store.add_column_if_missing, col.table, col.column, col.type_
                ) or added
                logger.info("readiness: column %s.%s added", col.table, col.column)
            except SQLAlchemyError as exc:
                logger.error("readiness: failed to add column %s.%s: %s", col.table, col.column, exc)
                unresolved.append(col)
        if added:
            await run_in_threadpool(self.store.reconnect)
        return unresolved

    async def _missing_columns(self, columns: Sequence[OptionalColumn]) -> List[str]:
        missing = []
        for col in columns:
            try:
                present = await run_in_threadpool(self.store.has_column, col.table, col.column)
            except SQLAlchemyError as exc:
                logger.warning("readiness: column check %s.%s failed: %s", col.table, col.column, exc)
                present = False
            if not present:
                missing.append(f"{col.table}.{col.column}")
        return missing

    async def _run_repair_cascade(self, columns: Sequence[OptionalColumn] = ()) -> None:
        attempted: List[str] = []
        for action in self.repair_actions:
            attempted.append(action.name)
            logger.info("readiness: running repair action %s", action.name)
            try:
                await run_in_threadpool(action.apply, self.store)
            except Exception as exc:
                logger.warning("readiness: repair action %s failed: %s", action.name, exc)
                continue
            try:
                await run_in_threadpool(self.store.reconnect)
            except SQLAlchemyError as exc:
                logger.warning("readiness: reconnect after %s failed: %s", action.name, exc)
            await self._sleep(self.settle_delay)
            if not await action.verify(self.store, self.requirement):
                continue
            still_missing = await self._missing_columns(columns)
            if still_missing:
                logger.warning(
                    "readiness: columns still missing after %s: %s", action.name, ", ".join(still_missing)
                )
                continue
            logger.info(
                "readiness: all %d tables verified after %s: %s",
                len(self.requirement.tables),
                action.name,
                ", ".join(self.requirement.tables),
            )
            return
        raise InitializationError(
            f"Database schema could not be initialized; tried {', '.join(attempted) or 'no repair actions'}",
            attempted_actions=attempted,
        )


_readiness: Optional[ReadinessInitializer] = None


def get_readiness_initializer() -> ReadinessInitializer:
    """Return the process-wide initializer bound to the process-wide store."""
    global _readiness
    if _readiness is None:
        settings = get_settings()
        # build phase never touches the store, so no URL is required to build one
        _readiness = ReadinessInitializer(
            None if settings.is_build_phase else get_store(),
            settle_delay=settings.schema_settle_delay_seconds,
            build_phase=settings.is_build_phase,
        )
    return _readiness


def reset_readiness_for_tests(initializer: Optional[ReadinessInitializer] = None) -> None:
    global _readiness
    _readiness = initializer
