"""
Unit tests for the schema readiness gate: single-flight coordination, the
repair cascade, inline column repair and the build-phase bypass.
"""
import asyncio
import threading
from unittest.mock import Mock

import pytest
pytest.importorskip("pytest_asyncio")

from sqlalchemy.exc import OperationalError, ProgrammingError

from cms.db.readiness import InitializationError, ReadinessInitializer, ReadinessState
from cms.db.schema import (
    DEFAULT_SCHEMA_REQUIREMENT,
    REQUIRED_TABLES,
    ApplyMigrations,
    RepairAction,
    SynchronizeSchema,
    find_missing_tables,
)


class RecordingSync(SynchronizeSchema):
    """SynchronizeSchema that counts applies and can be held open by a gate."""

    def __init__(self, gate: threading.Event = None):
        super().__init__()
        self.calls = 0
        self.gate = gate

    def apply(self, store):
        self.calls += 1
        if self.gate is not None:
            self.gate.wait(timeout=5)
        super().apply(store)


class NoopAction(RepairAction):
    def __init__(self, name):
        self.name = name
        self.calls = 0

    def apply(self, store):
        self.calls += 1


class ExplodingAction(RepairAction):
    name = "exploding"

    def apply(self, store):
        raise RuntimeError("migration tool not installed")


def _unreachable():
    return OperationalError("SELECT 1", {}, Exception("connection refused"))


@pytest.mark.asyncio
async def test_concurrent_callers_share_one_repair_attempt(store, sleeps):
    action = RecordingSync()
    gate = ReadinessInitializer(store, repair_actions=[action], settle_delay=0, sleep=sleeps)

    await asyncio.gather(*(gate.ensure_ready() for _ in range(10)))

    assert action.calls == 1
    assert gate.attempts == 1
    assert gate.state is ReadinessState.READY
    assert await find_missing_tables(store, DEFAULT_SCHEMA_REQUIREMENT) == []


@pytest.mark.asyncio
async def test_ready_gate_performs_no_io(migrated_store):
    gate = ReadinessInitializer(migrated_store, repair_actions=[], settle_delay=0)
    await gate.ensure_ready()
    assert gate.is_ready

    spy = Mock()
    gate.store = spy
    for _ in range(5):
        await gate.ensure_ready()
    assert spy.method_calls == []
    assert gate.attempts == 1


@pytest.mark.asyncio
async def test_present_schema_skips_repair_cascade(migrated_store, sleeps):
    action = NoopAction("should_not_run")
    gate = ReadinessInitializer(migrated_store, repair_actions=[action], settle_delay=2.0, sleep=sleeps)

    await gate.ensure_ready()

    assert gate.is_ready
    assert action.calls == 0
    assert sleeps.delays == []


@pytest.mark.asyncio
async def test_exhausted_cascade_raises_with_attempted_actions(store, sleeps):
    first, second = NoopAction("first"), NoopAction("second")
    gate = ReadinessInitializer(store, repair_actions=[first, second], settle_delay=2.0, sleep=sleeps)

    with pytest.raises(InitializationError) as excinfo:
        await gate.ensure_ready()

    err = excinfo.value
    assert err.attempted_actions == ("first", "second")
    assert "alembic upgrade head" in err.remediation
    assert first.calls == 1 and second.calls == 1
    # settle delay after every applied action
    assert sleeps.delays == [2.0, 2.0]
    assert gate.state is ReadinessState.NOT_STARTED
    assert gate.last_error


@pytest.mark.asyncio
async def test_joined_callers_receive_identical_failure(store, sleeps):
    gate = ReadinessInitializer(store, repair_actions=[NoopAction("noop")], settle_delay=0, sleep=sleeps)

    results = await asyncio.gather(*(gate.ensure_ready() for _ in range(4)), return_exceptions=True)

    assert all(isinstance(r, InitializationError) for r in results)
    assert len({id(r) for r in results}) == 1
    assert gate.attempts == 1


@pytest.mark.asyncio
async def test_failure_is_not_memoized(store, sleeps):
    gate = ReadinessInitializer(store, repair_actions=[NoopAction("noop")], settle_delay=0, sleep=sleeps)
    with pytest.raises(InitializationError):
        await gate.ensure_ready()

    gate.repair_actions = [SynchronizeSchema()]
    await gate.ensure_ready()

    assert gate.is_ready
    assert gate.attempts == 2
    assert gate.last_error is None


@pytest.mark.asyncio
async def test_cascade_moves_past_failing_action_and_stops_at_first_success(store, sleeps):
    sync = RecordingSync()
    after = NoopAction("never_reached")
    gate = ReadinessInitializer(store, repair_actions=[ExplodingAction(), sync, after], settle_delay=0, sleep=sleeps)

    await gate.ensure_ready()

    assert gate.is_ready
    assert sync.calls == 1
    assert after.calls == 0


@pytest.mark.asyncio
async def test_abandoning_caller_does_not_cancel_shared_attempt(store, sleeps):
    hold = threading.Event()
    action = RecordingSync(gate=hold)
    gate = ReadinessInitializer(store, repair_actions=[action], settle_delay=0, sleep=sleeps)

    impatient = asyncio.create_task(gate.ensure_ready())
    await asyncio.sleep(0.05)
    assert gate.state is ReadinessState.IN_PROGRESS
    impatient.cancel()
    with pytest.raises(asyncio.CancelledError):
        await impatient

    hold.set()
    await gate.ensure_ready()

    assert gate.is_ready
    assert action.calls == 1


@pytest.mark.asyncio
async def test_build_phase_is_inert():
    gate = ReadinessInitializer(None, build_phase=True)
    await gate.ensure_ready()
    assert gate.state is ReadinessState.NOT_STARTED
    assert gate.attempts == 0


@pytest.mark.asyncio
async def test_missing_optional_column_is_added_inline(store, sleeps):
    ApplyMigrations(revision="cms_initial_20250101").apply(store)
    assert not store.has_column("posts", "featured_image")
    cascade = NoopAction("cascade")
    gate = ReadinessInitializer(store, repair_actions=[cascade], settle_delay=0, sleep=sleeps)

    await gate.ensure_ready()

    assert gate.is_ready
    assert store.has_column("posts", "featured_image")
    assert cascade.calls == 0


@pytest.mark.asyncio
async def test_failed_column_add_falls_back_to_repair_cascade(store, sleeps):
    ApplyMigrations(revision="cms_initial_20250101").apply(store)
    store.add_column_if_missing = Mock(side_effect=OperationalError("ALTER TABLE", {}, Exception("permission denied")))
    noop = NoopAction("noop")
    gate = ReadinessInitializer(store, repair_actions=[noop, ApplyMigrations()], settle_delay=0, sleep=sleeps)

    await gate.ensure_ready()

    assert gate.is_ready
    assert noop.calls == 1
    assert store.has_column("posts", "featured_image")


@pytest.mark.asyncio
async def test_column_missing_after_cascade_is_not_ready(store, sleeps):
    ApplyMigrations(revision="cms_initial_20250101").apply(store)
    store.add_column_if_missing = Mock(side_effect=OperationalError("ALTER TABLE", {}, Exception("permission denied")))
    gate = ReadinessInitializer(store, repair_actions=[NoopAction("noop")], settle_delay=0, sleep=sleeps)

    with pytest.raises(InitializationError) as excinfo:
        await gate.ensure_ready()

    assert excinfo.value.attempted_actions == ("noop",)
    assert gate.state is ReadinessState.NOT_STARTED
    assert not store.has_column("posts", "featured_image")


@pytest.mark.asyncio
async def test_unreachable_store_is_reprovisioned_once(migrated_store):
    migrated_store.ping = Mock(side_effect=[_unreachable(), None])
    migrated_store.reprovision = Mock()
    gate = ReadinessInitializer(migrated_store, repair_actions=[], settle_delay=0)

    await gate.ensure_ready()

    migrated_store.reprovision.assert_called_once_with()
    assert migrated_store.ping.call_count == 2
    assert gate.is_ready


@pytest.mark.asyncio
async def test_unexpected_error_is_wrapped_as_initialization_error(migrated_store):
    migrated_store.has_table = Mock(side_effect=RuntimeError("boom"))
    gate = ReadinessInitializer(migrated_store, repair_actions=[], settle_delay=0)

    with pytest.raises(InitializationError) as excinfo:
        await gate.ensure_ready()
    assert isinstance(excinfo.value.__cause__, RuntimeError)
    assert gate.state is ReadinessState.NOT_STARTED


@pytest.mark.asyncio
async def test_find_missing_tables_treats_connectivity_as_missing(migrated_store):
    migrated_store.has_table = Mock(side_effect=_unreachable())
    missing = await find_missing_tables(migrated_store, DEFAULT_SCHEMA_REQUIREMENT)
    assert missing == list(REQUIRED_TABLES)


@pytest.mark.asyncio
async def test_find_missing_tables_propagates_other_store_errors(migrated_store):
    migrated_store.has_table = Mock(side_effect=ProgrammingError("SELECT", {}, Exception("syntax")))
    with pytest.raises(ProgrammingError):
        await find_missing_tables(migrated_store, DEFAULT_SCHEMA_REQUIREMENT)


@pytest.mark.asyncio
async def test_invalidate_forces_reverification(migrated_store):
    gate = ReadinessInitializer(migrated_store, repair_actions=[], settle_delay=0)
    await gate.ensure_ready()

    gate.invalidate("missing_column")
    assert gate.state is ReadinessState.NOT_STARTED

    await gate.ensure_ready()
    assert gate.is_ready
    assert gate.attempts == 2


def test_snapshot_reports_state(migrated_store):
    gate = ReadinessInitializer(migrated_store, repair_actions=[SynchronizeSchema()])
    snap = gate.snapshot()
    assert snap["state"] == "not_started"
    assert snap["attempts"] == 0
    assert snap["ready_at"] is None
    assert snap["repair_actions"] == ["synchronize_schema"]
    assert snap["required_tables"] == list(REQUIRED_TABLES)
