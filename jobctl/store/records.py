"""
Job Record Store: persistence of JobRecords, their error log and audit trail.

The engine is the source of truth while a unit runs; `merge_snapshot` folds
its view into the stored record without ever moving progress backwards or
reopening a terminal record (the single exception being the cancel race, see
`_finished_before_cancel`).
"""
import copy
import logging
from contextlib import contextmanager
from datetime import datetime
from typing import Any, Callable, Optional, TypeVar

from sqlalchemy import select, func
from sqlalchemy.exc import OperationalError, InterfaceError
from sqlalchemy.ext.asyncio import AsyncSession
from sqlalchemy.orm.exc import StaleDataError

from jobctl.db.models import JobRecord, ErrorLogEntry, JobEventLog
from jobctl.domain.errors import JobNotFoundError, StoreUnavailable, ConcurrentUpdateError
from jobctl.domain.models import EngineSnapshot, JobConfig
from jobctl.domain.states import (
    JobStatus, JobMode, JobEvent, FailureKind, ACTIVE_STATUSES, TERMINAL_STATUSES, can_transition, is_terminal,
)
from jobctl.api.v1.metrics import JOB_TERMINAL_TOTAL, JOB_DURATION
from jobctl.utils.clock import utcnow, as_utc

logger = logging.getLogger(__name__)

T = TypeVar("T")

UPDATE_ATTEMPTS = 3


@contextmanager
def translate_store_errors():
    """Connection-level database failures surface as StoreUnavailable."""
    try:
        yield
    except (OperationalError, InterfaceError) as e:
        raise StoreUnavailable(f"job store unavailable: {e.orig if e.orig is not None else e}") from e


def log_event(session: AsyncSession, job_id: str, event: JobEvent, **meta: Any) -> None:
    session.add(JobEventLog(job_id=job_id, event_type=event, timestamp=utcnow(), meta=meta))


def create_record(
    session: AsyncSession,
    *,
    job_id: str,
    logical_name: str,
    unit_name: str,
    mode: JobMode,
    config: JobConfig,
    context: Optional[dict[str, Any]] = None,
    max_retries: int = 3,
    retry_count: int = 0,
    parent_job_id: Optional[str] = None,
    supersedes_job_id: Optional[str] = None,
    chain: Optional[list[dict[str, Any]]] = None,
    error_tolerance: int = 0,
    not_before: Optional[datetime] = None,
    status: JobStatus = JobStatus.QUEUED,
) -> JobRecord:
    now = utcnow()
    record = JobRecord(
        id=job_id,
        logical_name=logical_name,
        unit_name=unit_name,
        mode=mode,
        status=status,
        items_processed=0,
        error_count=0,
        slices_executed=0,
        created_at=now,
        updated_at=now,
        not_before=not_before,
        retry_count=retry_count,
        max_retries=max_retries,
        config=config.to_dict(),
        input_context=copy.deepcopy(context or {}),
        context=copy.deepcopy(context or {}),
        chain=copy.deepcopy(chain or []),
        error_tolerance=error_tolerance,
        parent_job_id=parent_job_id,
        supersedes_job_id=supersedes_job_id,
        engine_done=False,
        settled=False,
    )
    session.add(record)
    log_event(
        session, job_id, JobEvent.CREATED,
        logical_name=logical_name, mode=str(mode), retry_count=retry_count, parent_job_id=parent_job_id,
    )
    return record


async def find_record(session: AsyncSession, job_id: str, refresh: bool = False) -> Optional[JobRecord]:
    with translate_store_errors():
        return await session.get(JobRecord, job_id, populate_existing=refresh)


async def get_record(session: AsyncSession, job_id: str, refresh: bool = False) -> JobRecord:
    record = await find_record(session, job_id, refresh=refresh)
    if record is None:
        raise JobNotFoundError(job_id)
    return record


async def update_record(
    session: AsyncSession,
    job_id: str,
    mutate: Callable[[JobRecord], T],
    attempts: int = UPDATE_ATTEMPTS,
) -> T:
    """
    Applies `mutate` to a freshly loaded record and commits.

    The version column makes a concurrent write to the same record fail the
    flush with StaleDataError; we then reload and apply the mutation again on
    top of the other writer's result.
    """
    for attempt in range(1, attempts + 1):
        with translate_store_errors():
            record = await get_record(session, job_id, refresh=True)
            result = mutate(record)
            try:
                await session.commit()
                return result
            except StaleDataError:
                await session.rollback()
                logger.info("Concurrent update on job %s, retrying (%d/%d)", job_id, attempt, attempts)
    raise ConcurrentUpdateError(job_id)


def merge_snapshot(session: AsyncSession, record: JobRecord, snap: EngineSnapshot) -> Optional[JobStatus]:
    """
    Folds an engine snapshot into the record.

    Returns the terminal status the record moved into during this merge, or
    None when it did not change terminal state.
    """
    current = JobStatus(record.status)
    target = JobStatus(snap.status)

    if is_terminal(current):
        if is_terminal(target):
            record.engine_done = True
        if current == JobStatus.ABORTED and target in (JobStatus.COMPLETED, JobStatus.FAILED) \
                and _finished_before_cancel(record, snap):
            _absorb_progress(session, record, snap)
            # Already counted as aborted by mark_aborted
            _enter_terminal(session, record, snap, count=False)
            record.settled = False
            log_event(
                session, record.id, JobEvent.RECONCILED_OVERRIDE,
                replaced=str(current), status=str(target),
            )
            logger.info("Job %s finished as %s before its cancel landed; keeping engine status", record.id, target)
            return target
        return None

    _absorb_progress(session, record, snap)

    if target == current or not can_transition(current, target):
        return None

    record.status = target
    if target == JobStatus.RUNNING:
        log_event(session, record.id, JobEvent.STARTED, started_at=_iso(snap.started_at))

    if is_terminal(target):
        _enter_terminal(session, record, snap)
        record.engine_done = True
        return target
    return None


def mark_lost(session: AsyncSession, record: JobRecord) -> bool:
    """The engine no longer knows the job (e.g. restart). Returns True if the record failed because of it."""
    record.engine_done = True
    if is_terminal(JobStatus(record.status)):
        return False
    reason = "execution engine lost track of the job"
    record.status = JobStatus.FAILED
    record.failure_kind = FailureKind.LOST
    record.status_reason = reason
    record.completed_at = utcnow()
    session.add(ErrorLogEntry(job_id=record.id, kind="unit", message=reason, created_at=utcnow()))
    log_event(session, record.id, JobEvent.LOST)
    JOB_TERMINAL_TOTAL.labels(status=str(JobStatus.FAILED)).inc()
    return True


def mark_aborted(session: AsyncSession, record: JobRecord, reason: str) -> bool:
    """Optimistic abort after the engine accepted a cancel. False if the record is already terminal."""
    if is_terminal(JobStatus(record.status)):
        return False
    now = utcnow()
    record.status = JobStatus.ABORTED
    record.status_reason = reason
    record.cancel_requested_at = now
    record.completed_at = now
    log_event(session, record.id, JobEvent.ABORTED, reason=reason)
    JOB_TERMINAL_TOTAL.labels(status=str(JobStatus.ABORTED)).inc()
    return True


def record_rejected_link(
    session: AsyncSession, record: JobRecord, kind: FailureKind, reason: str,
) -> None:
    """Turns a freshly created record into a terminal failure that never reached the engine."""
    record.status = JobStatus.FAILED
    record.failure_kind = kind
    record.status_reason = reason
    record.completed_at = utcnow()
    record.engine_done = True
    session.add(ErrorLogEntry(job_id=record.id, kind="unit", message=reason, created_at=utcnow()))
    log_event(session, record.id, JobEvent.FAILED, reason=reason, kind=str(kind))
    JOB_TERMINAL_TOTAL.labels(status=str(JobStatus.FAILED)).inc()


def _finished_before_cancel(record: JobRecord, snap: EngineSnapshot) -> bool:
    cancelled_at = as_utc(record.cancel_requested_at)
    finished_at = as_utc(snap.finished_at)
    if cancelled_at is None or finished_at is None:
        return False
    return finished_at < cancelled_at


def _absorb_progress(session: AsyncSession, record: JobRecord, snap: EngineSnapshot) -> None:
    if snap.items_total is not None:
        if snap.status == JobStatus.COMPLETED:
            # Final count; the source may have yielded fewer records than it declared
            record.items_total = snap.items_total
        else:
            record.items_total = max(record.items_total or 0, snap.items_total)
    record.items_processed = max(record.items_processed or 0, snap.items_processed)
    record.slices_executed = max(record.slices_executed or 0, snap.slices_executed)

    known = record.error_count or 0
    for item_error in snap.errors[known:]:
        session.add(ErrorLogEntry(
            job_id=record.id,
            kind="item",
            item_ref=item_error.item_ref,
            message=item_error.message,
            created_at=utcnow(),
        ))
    record.error_count = max(known, len(snap.errors))

    if snap.context != record.context:
        record.context = copy.deepcopy(snap.context)
    if snap.started_at is not None and record.started_at is None:
        record.started_at = snap.started_at


def _enter_terminal(session: AsyncSession, record: JobRecord, snap: EngineSnapshot, count: bool = True) -> None:
    target = JobStatus(snap.status)
    record.status = target
    record.completed_at = snap.finished_at or utcnow()

    if target == JobStatus.FAILED:
        kind = snap.failure.kind if snap.failure else FailureKind.RUNTIME
        message = (snap.failure.message if snap.failure else "") or "unit failed"
        record.failure_kind = kind
        record.status_reason = message
        session.add(ErrorLogEntry(job_id=record.id, kind="unit", message=message, created_at=utcnow()))
        log_event(session, record.id, JobEvent.FAILED, reason=message, kind=str(kind))
    elif target == JobStatus.ABORTED:
        record.status_reason = record.status_reason or "aborted by the execution engine"
        log_event(session, record.id, JobEvent.ABORTED, reason=record.status_reason)
    else:
        record.failure_kind = None
        record.status_reason = f"completed with {record.error_count} item errors" if record.error_count else None
        log_event(
            session, record.id, JobEvent.COMPLETED,
            items_processed=record.items_processed, error_count=record.error_count,
        )

    if count:
        JOB_TERMINAL_TOTAL.labels(status=str(target)).inc()
    started_at = as_utc(record.started_at)
    if started_at is not None:
        duration = (as_utc(record.completed_at) - started_at).total_seconds()
        if duration >= 0:
            JOB_DURATION.observe(duration)


def _iso(value: Optional[datetime]) -> Optional[str]:
    return value.isoformat() if value else None


async def records_to_reconcile(session: AsyncSession, limit: int = 500) -> list[JobRecord]:
    """Records whose final engine snapshot has not been consumed yet."""
    stmt = (
        select(JobRecord)
        .where(JobRecord.engine_done.is_(False))
        .order_by(JobRecord.created_at.asc())
        .limit(limit)
        .execution_options(populate_existing=True)
    )
    with translate_store_errors():
        return list((await session.execute(stmt)).scalars().all())


async def records_to_settle(session: AsyncSession, limit: int = 500) -> list[JobRecord]:
    stmt = (
        select(JobRecord)
        .where(
            JobRecord.status.in_([str(s) for s in TERMINAL_STATUSES]),
            JobRecord.engine_done.is_(True),
            JobRecord.settled.is_(False),
        )
        .order_by(JobRecord.completed_at.asc())
        .limit(limit)
        .execution_options(populate_existing=True)
    )
    with translate_store_errors():
        return list((await session.execute(stmt)).scalars().all())


async def list_active_records(session: AsyncSession) -> list[JobRecord]:
    stmt = (
        select(JobRecord)
        .where(JobRecord.status.in_([str(s) for s in ACTIVE_STATUSES]))
        .order_by(JobRecord.created_at.asc())
        .execution_options(populate_existing=True)
    )
    with translate_store_errors():
        return list((await session.execute(stmt)).scalars().all())


async def history(session: AsyncSession, logical_name: str, since: Optional[datetime] = None) -> list[JobRecord]:
    stmt = select(JobRecord).where(JobRecord.logical_name == logical_name)
    if since is not None:
        stmt = stmt.where(JobRecord.created_at >= since)
    stmt = stmt.order_by(JobRecord.created_at.asc()).execution_options(populate_existing=True)
    with translate_store_errors():
        return list((await session.execute(stmt)).scalars().all())


async def error_log(session: AsyncSession, job_id: str) -> list[ErrorLogEntry]:
    stmt = select(ErrorLogEntry).where(ErrorLogEntry.job_id == job_id).order_by(ErrorLogEntry.id.asc())
    with translate_store_errors():
        return list((await session.execute(stmt)).scalars().all())


async def find_successor(session: AsyncSession, job_id: str) -> Optional[JobRecord]:
    """The first link dispatched from this record by the chaining controller."""
    stmt = (
        select(JobRecord)
        .where(JobRecord.parent_job_id == job_id, JobRecord.retry_count == 0)
        .order_by(JobRecord.created_at.asc())
        .limit(1)
    )
    with translate_store_errors():
        return (await session.execute(stmt)).scalar_one_or_none()


async def find_continuation(session: AsyncSession, job_id: str) -> Optional[JobRecord]:
    """The retry or next recurrence that superseded this record, if any."""
    stmt = select(JobRecord).where(JobRecord.supersedes_job_id == job_id).limit(1)
    with translate_store_errors():
        return (await session.execute(stmt)).scalar_one_or_none()


async def chain_depth(session: AsyncSession, job_id: str, ceiling: int) -> int:
    """
    Number of links from the chain root to `job_id`, inclusive.

    Walks `parent_job_id` back-references and stops counting past `ceiling`
    so a corrupt lineage cannot loop forever.
    """
    depth = 0
    current: Optional[str] = job_id
    seen: set[str] = set()
    with translate_store_errors():
        while current is not None and current not in seen and depth <= ceiling:
            seen.add(current)
            parent = await session.scalar(select(JobRecord.parent_job_id).where(JobRecord.id == current))
            depth += 1
            current = parent
    return depth


async def count_by_status(session: AsyncSession) -> dict[str, int]:
    stmt = select(JobRecord.status, func.count(JobRecord.id)).group_by(JobRecord.status)
    with translate_store_errors():
        rows = (await session.execute(stmt)).all()
    return {status: count for status, count in rows}
