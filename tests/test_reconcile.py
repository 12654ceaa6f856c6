from datetime import timedelta

import pytest
from sqlalchemy import select

from jobctl.db.models import JobEventLog, OutboxEvent
from jobctl.domain.errors import ConcurrentUpdateError
from jobctl.domain.models import EngineSnapshot, ItemError, UnitFailure
from jobctl.domain.states import FailureKind, JobEvent, JobMode, JobStatus
from jobctl.engine import UnitResult, unit
from jobctl.monitoring.dashboard import compute_progress
from jobctl.scheduler import guard
from jobctl.scheduler.dispatcher import dispatch_job
from jobctl.scheduler.ticker import run_reconcile
from jobctl.settings import settings
from jobctl.store import records
from jobctl.utils.clock import utcnow


@pytest.fixture
def noop_unit(registry):
    @unit("noop", registry=registry)
    async def noop(batch, context):
        return UnitResult(items_processed=len(batch))
    return noop


async def events_for(session, job_id):
    rows = await session.execute(
        select(JobEventLog.event_type).where(JobEventLog.job_id == job_id).order_by(JobEventLog.id)
    )
    return [row[0] for row in rows]


async def test_progress_follows_engine_and_never_regresses(session, fake_engine, noop_unit):
    record = await dispatch_job(session, fake_engine, "nightly-sync", "noop", JobMode.CHUNKED)

    fake_engine.update(record.id, status=JobStatus.RUNNING, items_total=100, items_processed=50,
                       slices_executed=1, started_at=utcnow())
    report = await run_reconcile(session, fake_engine)
    assert report.observed == 1

    stored = await records.get_record(session, record.id, refresh=True)
    assert stored.status == JobStatus.RUNNING
    assert stored.items_processed == 50
    assert stored.started_at is not None

    # A stale snapshot must not move progress backwards
    fake_engine.update(record.id, items_processed=30, slices_executed=0)
    await run_reconcile(session, fake_engine)

    stored = await records.get_record(session, record.id, refresh=True)
    assert stored.items_processed == 50
    assert stored.slices_executed == 1
    assert JobEvent.STARTED in await events_for(session, record.id)


async def test_terminal_snapshot_is_merged_once(session, fake_engine, noop_unit):
    record = await dispatch_job(session, fake_engine, "nightly-sync", "noop", JobMode.SINGLE_SHOT)

    fake_engine.update(
        record.id, status=JobStatus.COMPLETED, items_total=3, items_processed=2,
        errors=[ItemError("bad row", item_ref="row-2")], finished_at=utcnow(),
    )
    first = await run_reconcile(session, fake_engine)
    second = await run_reconcile(session, fake_engine)

    assert first.transitions == 1
    assert first.settled == 1
    assert second.observed == 0
    assert second.settled == 0

    stored = await records.get_record(session, record.id, refresh=True)
    assert stored.status == JobStatus.COMPLETED
    assert stored.engine_done and stored.settled
    assert stored.error_count == 1
    assert stored.status_reason == "completed with 1 item errors"

    log = await records.error_log(session, record.id)
    assert [(e.kind, e.item_ref, e.message) for e in log] == [("item", "row-2", "bad row")]

    notifications = (await session.execute(select(OutboxEvent))).scalars().all()
    assert len(notifications) == 1
    assert notifications[0].payload["job_id"] == record.id
    assert notifications[0].payload["status"] == "completed"

    # Slot freed for the next run
    assert await guard.holder(session, "nightly-sync") is None


async def test_failed_snapshot_records_reason(session, fake_engine, noop_unit):
    record = await dispatch_job(session, fake_engine, "nightly-sync", "noop", JobMode.SINGLE_SHOT, max_retries=0)

    fake_engine.update(
        record.id, status=JobStatus.FAILED, finished_at=utcnow(),
        failure=UnitFailure(kind=FailureKind.VALIDATION, message="context is stale"),
    )
    await run_reconcile(session, fake_engine)

    stored = await records.get_record(session, record.id, refresh=True)
    assert stored.status == JobStatus.FAILED
    assert stored.failure_kind == FailureKind.VALIDATION
    assert stored.status_reason == "context is stale"
    assert [e.message for e in await records.error_log(session, record.id)] == ["context is stale"]
    assert JobEvent.GIVE_UP in await events_for(session, record.id)


async def test_job_unknown_to_engine_is_lost(session, fake_engine, noop_unit):
    record = await dispatch_job(session, fake_engine, "nightly-sync", "noop", JobMode.SINGLE_SHOT, max_retries=0)
    del fake_engine.snapshots[record.id]

    report = await run_reconcile(session, fake_engine)
    assert report.lost == 1

    stored = await records.get_record(session, record.id, refresh=True)
    assert stored.status == JobStatus.FAILED
    assert stored.failure_kind == FailureKind.LOST
    assert stored.status_reason
    assert stored.settled


async def test_lost_job_is_retried(session, fake_engine, noop_unit, monkeypatch):
    monkeypatch.setattr(settings, "BACKOFF_BASE_SECONDS", 0.01)

    record = await dispatch_job(session, fake_engine, "nightly-sync", "noop", JobMode.SINGLE_SHOT, max_retries=1)
    del fake_engine.snapshots[record.id]
    await run_reconcile(session, fake_engine)

    retry = await records.find_continuation(session, record.id)
    assert retry is not None
    assert retry.retry_count == 1
    assert retry.id in fake_engine.launched


async def test_history_is_ordered_and_filtered(session, fake_engine, noop_unit):
    first = await dispatch_job(session, fake_engine, "nightly-sync", "noop", JobMode.SINGLE_SHOT)
    fake_engine.update(first.id, status=JobStatus.COMPLETED, items_total=0, finished_at=utcnow())
    await run_reconcile(session, fake_engine)

    second = await dispatch_job(session, fake_engine, "nightly-sync", "noop", JobMode.SINGLE_SHOT)
    await dispatch_job(session, fake_engine, "weekly-report", "noop", JobMode.SINGLE_SHOT)

    runs = await records.history(session, "nightly-sync")
    assert [r.id for r in runs] == [first.id, second.id]

    recent = await records.history(session, "nightly-sync", since=utcnow() + timedelta(hours=1))
    assert recent == []


async def test_completed_snapshot_settles_the_final_total(session, fake_engine, noop_unit):
    record = await dispatch_job(session, fake_engine, "nightly-sync", "noop", JobMode.CHUNKED)

    fake_engine.update(record.id, status=JobStatus.RUNNING, items_total=8, items_processed=4,
                       slices_executed=2, started_at=utcnow())
    await run_reconcile(session, fake_engine)

    # The source ran dry before reaching its declared total
    fake_engine.update(record.id, status=JobStatus.COMPLETED, items_total=5, items_processed=5,
                       slices_executed=3, finished_at=utcnow())
    await run_reconcile(session, fake_engine)

    stored = await records.get_record(session, record.id, refresh=True)
    assert stored.status == JobStatus.COMPLETED
    assert stored.items_total == 5
    assert compute_progress(stored) == 1.0


async def test_concurrent_writes_to_one_record_are_combined(session, session_factory, fake_engine, noop_unit,
                                                            monkeypatch):
    record = await dispatch_job(session, fake_engine, "nightly-sync", "noop", JobMode.CHUNKED)
    snap = EngineSnapshot(job_id=record.id, status=JobStatus.RUNNING, items_total=200,
                          items_processed=50, slices_executed=1, started_at=utcnow())

    async with session_factory() as merging, session_factory() as cancelling:
        commit = cancelling.commit
        merged = []

        async def merge_then_commit():
            # A reconcile tick lands between the cancel's read and its commit
            if not merged:
                merged.append(await records.update_record(
                    merging, record.id, lambda rec: records.merge_snapshot(merging, rec, snap),
                ))
            await commit()

        monkeypatch.setattr(cancelling, "commit", merge_then_commit)
        aborted = await records.update_record(
            cancelling, record.id, lambda rec: records.mark_aborted(cancelling, rec, "operator"),
        )

    assert aborted is True
    stored = await records.get_record(session, record.id, refresh=True)
    assert stored.status == JobStatus.ABORTED
    assert stored.items_processed == 50
    assert stored.items_total == 200
    assert stored.started_at is not None

    events = await events_for(session, record.id)
    assert JobEvent.STARTED in events
    assert events.count(JobEvent.ABORTED) == 1


async def test_update_gives_up_when_record_keeps_changing(session, session_factory, fake_engine, noop_unit,
                                                          monkeypatch):
    record = await dispatch_job(session, fake_engine, "nightly-sync", "noop", JobMode.SINGLE_SHOT)

    async with session_factory() as other, session_factory() as writer:
        commit = writer.commit
        touches = []

        async def touch_then_commit():
            touches.append(len(touches))
            await records.update_record(other, record.id, lambda rec: setattr(rec, "status_reason", f"touch {len(touches)}"))
            await commit()

        monkeypatch.setattr(writer, "commit", touch_then_commit)
        with pytest.raises(ConcurrentUpdateError):
            await records.update_record(
                writer, record.id, lambda rec: records.mark_aborted(writer, rec, "operator"), attempts=2,
            )

    assert len(touches) == 2
    stored = await records.get_record(session, record.id, refresh=True)
    assert stored.status == JobStatus.QUEUED
    assert stored.status_reason == "touch 2"
