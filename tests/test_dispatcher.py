import asyncio

import pytest

from jobctl.db.session import build_engine, build_session_factory
from jobctl.domain.errors import (
    ConcurrencyLimitExceeded, DuplicateJobError, StoreUnavailable,
    UnitValidationError, UnknownUnitError,
)
from jobctl.domain.models import ConcurrencyBudget, JobConfig
from jobctl.domain.states import JobMode, JobStatus
from jobctl.engine import ExecutionEngine, RecordSource, UnitResult, unit
from jobctl.scheduler import guard
from jobctl.scheduler.dispatcher import dispatch_job
from jobctl.store import records


@pytest.fixture
def gate():
    return asyncio.Event()


@pytest.fixture
def sync_unit(registry, gate):
    @unit("sync", records=lambda ctx: RecordSource.of(range(1000)), registry=registry)
    async def sync(batch, context):
        await gate.wait()
        return UnitResult(items_processed=len(batch))
    return sync


async def test_dispatch_persists_queued_record(session, engine, sync_unit, gate):
    record = await dispatch_job(
        session, engine, "nightly-sync", "sync", JobMode.CHUNKED, JobConfig(chunk_size=200),
        context={"run": 1},
    )

    stored = await records.get_record(session, record.id, refresh=True)
    assert stored.status == JobStatus.QUEUED
    assert stored.logical_name == "nightly-sync"
    assert stored.unit_name == "sync"
    assert stored.retry_count == 0
    assert stored.input_context == {"run": 1}
    assert await guard.holder(session, "nightly-sync") == record.id

    gate.set()
    await engine.join(record.id)


async def test_duplicate_launch_is_refused(session, engine, sync_unit, gate, drain):
    first = await dispatch_job(session, engine, "nightly-sync", "sync", JobMode.CHUNKED, JobConfig(chunk_size=200))

    with pytest.raises(DuplicateJobError) as exc:
        await dispatch_job(session, engine, "nightly-sync", "sync", JobMode.CHUNKED, JobConfig(chunk_size=200))
    assert exc.value.job_id == first.id
    assert len(await records.history(session, "nightly-sync")) == 1
    assert engine.active_count() == 1

    gate.set()
    await drain()

    finished = await records.get_record(session, first.id, refresh=True)
    assert finished.status == JobStatus.COMPLETED
    assert finished.items_processed == 1000
    assert finished.slices_executed == 5

    # Once the first run is over the logical job can start again
    again = await dispatch_job(session, engine, "nightly-sync", "sync", JobMode.CHUNKED, JobConfig(chunk_size=200))
    assert again.id != first.id
    await drain()


async def test_concurrent_dispatches_launch_once(session_factory, engine, sync_unit, gate):
    async def attempt():
        async with session_factory() as s:
            try:
                return await dispatch_job(s, engine, "nightly-sync", "sync", JobMode.SINGLE_SHOT)
            except DuplicateJobError:
                return None

    results = await asyncio.gather(attempt(), attempt(), attempt())
    launched = [r for r in results if r is not None]
    assert len(launched) == 1
    assert engine.active_count() == 1

    gate.set()
    await engine.idle()


async def test_unknown_unit_leaves_nothing_behind(session, engine):
    with pytest.raises(UnknownUnitError):
        await dispatch_job(session, engine, "nightly-sync", "missing", JobMode.SINGLE_SHOT)
    assert await records.history(session, "nightly-sync") == []
    assert await guard.try_acquire(session, "nightly-sync", "probe")


async def test_engine_refusal_releases_reservation(session, engine, registry):
    @unit("callout", makes_external_calls=True, registry=registry)
    async def callout(batch, context):
        return UnitResult(items_processed=0)

    with pytest.raises(UnitValidationError):
        await dispatch_job(session, engine, "push-crm", "callout", JobMode.SINGLE_SHOT, JobConfig())

    assert await records.history(session, "push-crm") == []
    assert await guard.try_acquire(session, "push-crm", "probe")


async def test_capacity_refusal_releases_reservation(session, registry, sync_unit, gate):
    engine = ExecutionEngine(ConcurrencyBudget(1), registry=registry)
    try:
        await dispatch_job(session, engine, "job-a", "sync", JobMode.SINGLE_SHOT)
        with pytest.raises(ConcurrencyLimitExceeded):
            await dispatch_job(session, engine, "job-b", "sync", JobMode.SINGLE_SHOT)

        assert await records.history(session, "job-b") == []
        assert await guard.holder(session, "job-b") is None
    finally:
        gate.set()
        await engine.shutdown()


async def test_retry_count_cannot_exceed_max(session, engine, sync_unit):
    with pytest.raises(ValueError):
        await dispatch_job(session, engine, "nightly-sync", "sync", JobMode.SINGLE_SHOT, max_retries=1, retry_count=2)


async def test_unreachable_store_launches_nothing(tmp_path, engine, sync_unit):
    db_engine = build_engine(f"sqlite+aiosqlite:///{tmp_path / 'missing' / 'jobs.db'}")
    try:
        async with build_session_factory(db_engine)() as s:
            with pytest.raises(StoreUnavailable):
                await dispatch_job(s, engine, "nightly-sync", "sync", JobMode.SINGLE_SHOT)
        assert engine.active_count() == 0
    finally:
        await db_engine.dispose()
