"""
Monitoring Dashboard Service.

Read-only views over the Job Record Store plus `cancel`, the one write path
back into the engine. Everything here reads what the reconciler last pulled
from the engine; nothing blocks on a running unit.
"""
from datetime import datetime
from typing import Optional

from pydantic import BaseModel, ConfigDict
from sqlalchemy.ext.asyncio import AsyncSession

from jobctl.commands.cancel_job import cancel_job
from jobctl.db.models import JobRecord
from jobctl.domain.states import JobStatus, JobMode
from jobctl.engine.adapter import EngineAdapter
from jobctl.store import records
from jobctl.utils.clock import utcnow, as_utc

FALLBACK_REASONS = {
    JobStatus.FAILED: "failed without a recorded reason",
    JobStatus.ABORTED: "aborted",
}


class JobSummary(BaseModel):
    id: str
    logical_name: str
    unit_name: str
    mode: JobMode
    status: JobStatus
    items_total: Optional[int] = None
    items_processed: int
    error_count: int
    slices_executed: int
    progress: float
    eta_seconds: Optional[float] = None
    retry_count: int
    max_retries: int
    parent_job_id: Optional[str] = None
    supersedes_job_id: Optional[str] = None
    reason: Optional[str] = None
    created_at: datetime
    started_at: Optional[datetime] = None
    completed_at: Optional[datetime] = None


class ErrorEntry(BaseModel):
    id: int
    job_id: str
    kind: str
    item_ref: Optional[str] = None
    message: str
    created_at: datetime
    model_config = ConfigDict(from_attributes=True)


def compute_progress(record: JobRecord) -> float:
    """
    items_processed / items_total, clamped to [0, 1].

    0 while the total is unknown; a completed job with nothing to do is 1.
    """
    total = record.items_total
    if total is None:
        return 0.0
    if total == 0:
        return 1.0 if record.status == JobStatus.COMPLETED else 0.0
    return max(0.0, min(1.0, (record.items_processed or 0) / total))


def compute_eta(record: JobRecord, now: Optional[datetime] = None) -> Optional[float]:
    """Remaining seconds, extrapolated from the throughput so far. None when unknowable."""
    if record.status != JobStatus.RUNNING:
        return None
    started_at = as_utc(record.started_at)
    if started_at is None or not record.items_total or not record.items_processed:
        return None
    elapsed = ((now or utcnow()) - started_at).total_seconds()
    if elapsed <= 0:
        return None
    remaining = max(record.items_total - record.items_processed, 0)
    return remaining * (elapsed / record.items_processed)


def summarize(record: JobRecord, now: Optional[datetime] = None) -> JobSummary:
    status = JobStatus(record.status)
    reason = record.status_reason
    if status in FALLBACK_REASONS and not reason:
        reason = FALLBACK_REASONS[status]
    return JobSummary(
        id=record.id,
        logical_name=record.logical_name,
        unit_name=record.unit_name,
        mode=JobMode(record.mode),
        status=status,
        items_total=record.items_total,
        items_processed=record.items_processed or 0,
        error_count=record.error_count or 0,
        slices_executed=record.slices_executed or 0,
        progress=compute_progress(record),
        eta_seconds=compute_eta(record, now),
        retry_count=record.retry_count,
        max_retries=record.max_retries,
        parent_job_id=record.parent_job_id,
        supersedes_job_id=record.supersedes_job_id,
        reason=reason,
        created_at=as_utc(record.created_at),
        started_at=as_utc(record.started_at),
        completed_at=as_utc(record.completed_at),
    )


async def list_active(session: AsyncSession) -> list[JobSummary]:
    now = utcnow()
    return [summarize(r, now) for r in await records.list_active_records(session)]


async def progress(session: AsyncSession, job_id: str) -> float:
    record = await records.get_record(session, job_id, refresh=True)
    return compute_progress(record)


async def get_summary(session: AsyncSession, job_id: str) -> JobSummary:
    return summarize(await records.get_record(session, job_id, refresh=True))


async def history(session: AsyncSession, logical_name: str, since: Optional[datetime] = None) -> list[JobSummary]:
    now = utcnow()
    return [summarize(r, now) for r in await records.history(session, logical_name, since)]


async def error_log(session: AsyncSession, job_id: str) -> list[ErrorEntry]:
    await records.get_record(session, job_id)
    return [ErrorEntry.model_validate(e) for e in await records.error_log(session, job_id)]


async def cancel(session: AsyncSession, engine: EngineAdapter, job_id: str) -> bool:
    return await cancel_job(session, engine, job_id)
