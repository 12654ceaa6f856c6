import asyncio
from datetime import timedelta

import pytest
from prometheus_client import REGISTRY
from sqlalchemy import select

from jobctl.commands.cancel_job import CANCEL_REASON, cancel_job
from jobctl.commands.chain_job import on_unit_complete
from jobctl.db.models import JobEventLog
from jobctl.domain.errors import JobNotFoundError, UnitRuntimeError, UnitValidationError
from jobctl.domain.models import ChainStage, ItemError, JobConfig
from jobctl.domain.states import FailureKind, JobEvent, JobMode, JobStatus
from jobctl.engine import RecordSource, UnitResult, unit
from jobctl.scheduler.dispatcher import dispatch_job
from jobctl.scheduler.ticker import run_reconcile
from jobctl.settings import settings
from jobctl.store import records
from jobctl.utils.clock import as_utc


async def event_log(session, job_id):
    rows = await session.execute(select(JobEventLog).where(JobEventLog.job_id == job_id).order_by(JobEventLog.id))
    return rows.scalars().all()


def terminal_count(status):
    return REGISTRY.get_sample_value("job_terminal_total", {"status": status}) or 0.0


@pytest.fixture(autouse=True)
def fast_backoff(monkeypatch):
    monkeypatch.setattr(settings, "BACKOFF_BASE_SECONDS", 0.01)


# Retry

async def test_failed_run_is_retried_with_backoff(session, engine, registry, drain):
    attempts = []

    @unit("flaky", records=lambda ctx: RecordSource.of(range(10)), registry=registry)
    async def flaky(batch, context):
        attempts.append(dict(context))
        if len(attempts) == 1:
            raise UnitRuntimeError("upstream timeout")
        return UnitResult(items_processed=len(batch))

    first = await dispatch_job(session, engine, "nightly-sync", "flaky", JobMode.SINGLE_SHOT,
                               context={"cursor": 0}, max_retries=2)
    await drain()

    failed = await records.get_record(session, first.id, refresh=True)
    assert failed.status == JobStatus.FAILED
    assert failed.failure_kind == FailureKind.RUNTIME

    continuation = await records.find_continuation(session, first.id)
    retry = await records.get_record(session, continuation.id, refresh=True)
    assert retry.retry_count == 1
    assert retry.status == JobStatus.COMPLETED
    assert retry.items_processed == 10
    assert attempts == [{"cursor": 0}, {"cursor": 0}]

    retried = [e for e in await event_log(session, first.id) if e.event_type == JobEvent.RETRIED]
    assert len(retried) == 1
    # First retry waits base * 2
    assert retried[0].meta["delay_seconds"] == pytest.approx(0.02)
    assert retried[0].meta["retry_job_id"] == retry.id


async def test_retries_exhausted_leaves_final_failure(session, engine, registry, drain):
    @unit("broken", registry=registry)
    async def broken(batch, context):
        raise UnitRuntimeError("still down")

    first = await dispatch_job(session, engine, "nightly-sync", "broken", JobMode.SINGLE_SHOT, max_retries=2)
    await drain()

    runs = await records.history(session, "nightly-sync")
    assert [r.retry_count for r in runs] == [0, 1, 2]
    assert all(r.status == JobStatus.FAILED for r in runs)

    last = runs[-1]
    assert last.status_reason == "still down"
    assert [e.message for e in await records.error_log(session, last.id)] == ["still down"]
    assert JobEvent.GIVE_UP in [e.event_type for e in await event_log(session, last.id)]
    assert await records.find_continuation(session, last.id) is None
    assert runs[0].id == first.id


async def test_validation_failure_is_not_retried(session, engine, registry, drain):
    @unit("strict", registry=registry)
    async def strict(batch, context):
        raise UnitValidationError("context is stale")

    await dispatch_job(session, engine, "nightly-sync", "strict", JobMode.SINGLE_SHOT, max_retries=3)
    await drain()

    runs = await records.history(session, "nightly-sync")
    assert len(runs) == 1
    assert runs[0].failure_kind == FailureKind.VALIDATION


# Chaining

@pytest.fixture
def staged_units(registry):
    received = {}

    @unit("extract", records=lambda ctx: RecordSource.of(range(4)), registry=registry)
    async def extract(batch, context):
        received["extract"] = dict(context)
        return UnitResult(items_processed=len(batch), context={**context, "extracted": len(batch)})

    @unit("transform", records=lambda ctx: RecordSource.of(range(4)), registry=registry)
    async def transform(batch, context):
        received["transform"] = dict(context)
        return UnitResult(
            items_processed=len(batch) - 1,
            errors=[ItemError("unparseable", item_ref="3")],
            context={**context, "transformed": True},
        )

    @unit("load", registry=registry)
    async def load(batch, context):
        received["load"] = dict(context)
        return UnitResult(items_processed=len(batch))

    return received


async def test_chain_passes_context_and_halts_on_errors(session, engine, staged_units, drain):
    first = await dispatch_job(
        session, engine, "etl-extract", "extract", JobMode.SINGLE_SHOT,
        context={"batch_date": "2024-01-01"},
        chain=[ChainStage("etl-transform", "transform"), ChainStage("etl-load", "load")],
        error_tolerance=0,
    )
    await drain()

    upstream = await records.get_record(session, first.id, refresh=True)
    assert upstream.status == JobStatus.COMPLETED
    assert upstream.context == {"batch_date": "2024-01-01", "extracted": 4}

    [second] = await records.history(session, "etl-transform")
    assert second.parent_job_id == first.id
    assert second.status == JobStatus.COMPLETED
    assert second.error_count == 1
    assert staged_units["transform"] == {"batch_date": "2024-01-01", "extracted": 4}

    # Successor output does not leak back upstream
    upstream = await records.get_record(session, first.id, refresh=True)
    assert "transformed" not in upstream.context

    # One item error with zero tolerance stops the chain
    assert await records.history(session, "etl-load") == []
    assert "load" not in staged_units
    assert JobEvent.CHAIN_HALTED in [e.event_type for e in await event_log(session, second.id)]


async def test_chain_runs_to_the_end_within_tolerance(session, engine, staged_units, drain):
    first = await dispatch_job(
        session, engine, "etl-extract", "extract", JobMode.SINGLE_SHOT,
        chain=[ChainStage("etl-transform", "transform"), ChainStage("etl-load", "load")],
        error_tolerance=1,
    )
    await drain()

    [second] = await records.history(session, "etl-transform")
    [third] = await records.history(session, "etl-load")
    assert third.parent_job_id == second.id
    assert third.status == JobStatus.COMPLETED
    assert staged_units["load"]["transformed"] is True
    assert await records.chain_depth(session, third.id, ceiling=10) == 3
    assert second.parent_job_id == first.id


async def test_chain_depth_limit_rejects_link(session, engine, staged_units, drain, monkeypatch):
    monkeypatch.setattr(settings, "CHAIN_DEPTH_LIMIT", 2)

    await dispatch_job(
        session, engine, "etl-extract", "extract", JobMode.SINGLE_SHOT,
        chain=[ChainStage("etl-transform", "transform"), ChainStage("etl-load", "load")],
        error_tolerance=5,
    )
    await drain()

    [second] = await records.history(session, "etl-transform")
    assert second.status == JobStatus.COMPLETED

    [rejected] = await records.history(session, "etl-load")
    assert rejected.id.startswith("rejected-")
    assert rejected.status == JobStatus.FAILED
    assert rejected.failure_kind == FailureKind.CHAIN_DEPTH
    assert rejected.parent_job_id == second.id
    assert "load" not in staged_units


async def test_chaining_twice_returns_existing_successor(session, engine, staged_units, drain):
    first = await dispatch_job(
        session, engine, "etl-extract", "extract", JobMode.SINGLE_SHOT,
        chain=[ChainStage("etl-transform", "transform")],
    )
    await drain()

    upstream = await records.get_record(session, first.id, refresh=True)
    again = await on_unit_complete(session, engine, upstream)
    [second] = await records.history(session, "etl-transform")
    assert again.id == second.id


# Cancellation

async def test_cancel_running_job(session, engine, registry, drain):
    started = asyncio.Event()
    gate = asyncio.Event()

    @unit("gated", records=lambda ctx: RecordSource.of(range(3)), registry=registry)
    async def gated(batch, context):
        started.set()
        await gate.wait()
        return UnitResult(items_processed=len(batch))

    record = await dispatch_job(session, engine, "nightly-sync", "gated", JobMode.CHUNKED, JobConfig(chunk_size=1))
    await started.wait()

    assert await cancel_job(session, engine, record.id) is True
    marked = await records.get_record(session, record.id, refresh=True)
    assert marked.status == JobStatus.ABORTED
    assert marked.cancel_requested_at is not None

    # Already terminal: a second request is a no-op
    assert await cancel_job(session, engine, record.id) is False

    gate.set()
    await drain()

    final = await records.get_record(session, record.id, refresh=True)
    assert final.status == JobStatus.ABORTED
    assert final.status_reason == CANCEL_REASON
    assert final.settled


async def test_cancel_unknown_job(session, engine):
    with pytest.raises(JobNotFoundError):
        await cancel_job(session, engine, "missing")


async def test_cancel_refused_by_engine_leaves_record(session, fake_engine, registry):
    @unit("noop", registry=registry)
    async def noop(batch, context):
        return UnitResult(items_processed=0)

    record = await dispatch_job(session, fake_engine, "nightly-sync", "noop", JobMode.SINGLE_SHOT)
    fake_engine.accept_cancel = False

    assert await cancel_job(session, fake_engine, record.id) is False
    assert (await records.get_record(session, record.id, refresh=True)).status == JobStatus.QUEUED


async def test_completion_before_cancel_wins(session, fake_engine, registry):
    @unit("noop", registry=registry)
    async def noop(batch, context):
        return UnitResult(items_processed=0)

    record = await dispatch_job(session, fake_engine, "nightly-sync", "noop", JobMode.SINGLE_SHOT)
    fake_engine.update(record.id, status=JobStatus.RUNNING, items_total=10, items_processed=5)
    await run_reconcile(session, fake_engine)

    aborted_before, completed_before = terminal_count("aborted"), terminal_count("completed")
    assert await cancel_job(session, fake_engine, record.id)
    aborted = await records.get_record(session, record.id, refresh=True)
    cancelled_at = as_utc(aborted.cancel_requested_at)

    # The engine had already finished when the cancel reached it
    fake_engine.update(record.id, status=JobStatus.COMPLETED, items_processed=10,
                       finished_at=cancelled_at - timedelta(seconds=1))
    await run_reconcile(session, fake_engine)

    final = await records.get_record(session, record.id, refresh=True)
    assert final.status == JobStatus.COMPLETED
    assert final.items_processed == 10
    assert final.settled
    assert JobEvent.RECONCILED_OVERRIDE in [e.event_type for e in await event_log(session, record.id)]

    # One terminal outcome per record, counted when the abort was recorded
    assert terminal_count("aborted") - aborted_before == 1
    assert terminal_count("completed") == completed_before


async def test_completion_after_cancel_stays_aborted(session, fake_engine, registry):
    @unit("noop", registry=registry)
    async def noop(batch, context):
        return UnitResult(items_processed=0)

    record = await dispatch_job(session, fake_engine, "nightly-sync", "noop", JobMode.SINGLE_SHOT)
    assert await cancel_job(session, fake_engine, record.id)
    aborted = await records.get_record(session, record.id, refresh=True)

    fake_engine.update(record.id, status=JobStatus.COMPLETED,
                       finished_at=as_utc(aborted.cancel_requested_at) + timedelta(seconds=1))
    await run_reconcile(session, fake_engine)

    final = await records.get_record(session, record.id, refresh=True)
    assert final.status == JobStatus.ABORTED
    assert final.settled


# Recurring

async def test_recurring_job_schedules_next_occurrence(session, fake_engine, registry):
    @unit("digest", registry=registry)
    async def digest(batch, context):
        return UnitResult(items_processed=0)

    config = JobConfig(cron_schedule="0 6 * * *")
    first = await dispatch_job(session, fake_engine, "daily-digest", "digest", JobMode.RECURRING, config)

    fake_engine.update(first.id, status=JobStatus.COMPLETED, items_total=0, context={"last": "monday"},
                       finished_at=as_utc(first.created_at))
    await run_reconcile(session, fake_engine)

    nxt = await records.find_continuation(session, first.id)
    assert nxt is not None
    assert nxt.mode == JobMode.RECURRING
    assert nxt.logical_name == "daily-digest"
    assert nxt.input_context == {"last": "monday"}
    assert nxt.config["cron_schedule"] == "0 6 * * *"
    assert JobEvent.RECURRED in [e.event_type for e in await event_log(session, first.id)]

    # Cancelling an occurrence ends the series
    assert await cancel_job(session, fake_engine, nxt.id)
    fake_engine.update(nxt.id, status=JobStatus.ABORTED)
    await run_reconcile(session, fake_engine)

    assert await records.find_continuation(session, nxt.id) is None
    assert len(await records.history(session, "daily-digest")) == 2
