import logging
import time
from dataclasses import dataclass, field

from sqlalchemy.ext.asyncio import AsyncSession

from jobctl.commands.chain_job import on_unit_complete
from jobctl.commands.retry_job import on_unit_failed
from jobctl.db.models import JobRecord
from jobctl.domain.errors import (
    ChainDepthExceeded, ConcurrencyLimitExceeded, DuplicateJobError, JobError, UnknownUnitError, UnitValidationError,
)
from jobctl.domain.models import JobConfig
from jobctl.domain.states import JobStatus, JobMode, JobEvent, ACTIVE_STATUSES
from jobctl.engine.adapter import EngineAdapter
from jobctl.scheduler import guard
from jobctl.scheduler.dispatcher import dispatch_job
from jobctl.services.outbox import enqueue_notification
from jobctl.store import records
from jobctl.api.v1.metrics import JOBS_ACTIVE, RECONCILE_DURATION, ENGINE_INFLIGHT

logger = logging.getLogger(__name__)


@dataclass
class TickReport:
    observed: int = 0
    transitions: int = 0
    lost: int = 0
    settled: int = 0
    deferred: list[str] = field(default_factory=list)


async def run_reconcile(session: AsyncSession, engine: EngineAdapter) -> TickReport:
    """
    One reconciliation pass:
    1. Pull engine snapshots into every record the engine still owns.
    2. Settle records that became terminal (chain, retry, recur, notify).
    3. Refresh gauges.

    Every step is safe to repeat: a terminal state observed twice is merged
    once, and settle handlers detect follow-ups they already dispatched.
    """
    started = time.perf_counter()
    report = TickReport()

    # Ids up front: a rollback further down expires every loaded instance
    pending = [record.id for record in await records.records_to_reconcile(session)]
    for job_id in pending:
        report.observed += 1
        await _reconcile_record(session, engine, job_id, report)

    terminal = [record.id for record in await records.records_to_settle(session)]
    for job_id in terminal:
        record = await records.get_record(session, job_id, refresh=True)
        if record.settled:
            continue
        if await settle_record(session, engine, record):
            report.settled += 1
        else:
            report.deferred.append(job_id)

    await _refresh_gauges(session, engine)
    RECONCILE_DURATION.observe(time.perf_counter() - started)

    if report.transitions or report.settled or report.lost:
        logger.info(
            "Reconciled %d records: %d terminal, %d lost, %d settled, %d deferred",
            report.observed, report.transitions, report.lost, report.settled, len(report.deferred),
        )
    return report


async def _reconcile_record(session: AsyncSession, engine: EngineAdapter, job_id: str, report: TickReport) -> None:
    snap = await engine.status(job_id)

    if snap is None:
        lost = await records.update_record(session, job_id, lambda rec: records.mark_lost(session, rec))
        if lost:
            report.lost += 1
            logger.warning("Job %s is unknown to the engine; marked failed", job_id)
        return

    outcome = await records.update_record(session, job_id, lambda rec: records.merge_snapshot(session, rec, snap))
    if outcome is not None:
        report.transitions += 1

    record = await records.get_record(session, job_id)
    if record.engine_done:
        await engine.forget(job_id)


async def settle_record(session: AsyncSession, engine: EngineAdapter, record: JobRecord) -> bool:
    """
    Runs the one-time follow-up for a terminal record.

    Returns False when the follow-up could not run yet (engine full, logical
    job busy); the record stays unsettled and the next tick tries again.
    """
    status = JobStatus(record.status)
    final = True

    try:
        if status == JobStatus.COMPLETED:
            await on_unit_complete(session, engine, record)
        elif status == JobStatus.FAILED:
            decision, _ = await on_unit_failed(session, engine, record)
            final = not decision.retry

        if final and record.mode == JobMode.RECURRING and status != JobStatus.ABORTED:
            await _schedule_next_occurrence(session, engine, record)

    except (ConcurrencyLimitExceeded, DuplicateJobError) as e:
        logger.info("Deferring follow-up of %s: %s", record.id, e)
        await session.rollback()
        return False
    except ChainDepthExceeded as e:
        # The dispatcher already persisted the rejected link as Failed
        logger.error("Chain from %s stopped: %s", record.id, e)
    except (UnknownUnitError, UnitValidationError) as e:
        # Retrying next tick would fail the same way
        logger.error("Follow-up of %s rejected: %s", record.id, e)
        records.log_event(session, record.id, JobEvent.CHAIN_HALTED, reason=str(e))
    except JobError as e:
        logger.error("Follow-up of %s failed: %s", record.id, e)
        await session.rollback()
        return False

    if final:
        enqueue_notification(session, record)
        await guard.release_job(session, record.logical_name, record.id)

    def _settle(rec):
        rec.settled = True

    await records.update_record(session, record.id, _settle)
    return True


async def _schedule_next_occurrence(session: AsyncSession, engine: EngineAdapter, record: JobRecord) -> None:
    existing = await records.find_continuation(session, record.id)
    if existing is not None:
        return
    nxt = await dispatch_job(
        session,
        engine,
        record.logical_name,
        record.unit_name,
        JobMode.RECURRING,
        JobConfig.from_dict(record.config),
        context=record.context,
        max_retries=record.max_retries,
        error_tolerance=record.error_tolerance,
        supersedes_job_id=record.id,
    )
    records.log_event(session, record.id, JobEvent.RECURRED, next_job_id=nxt.id)
    logger.info("Scheduled next occurrence of %s as %s", record.logical_name, nxt.id)


async def _refresh_gauges(session: AsyncSession, engine: EngineAdapter) -> None:
    counts = await records.count_by_status(session)
    for status in ACTIVE_STATUSES:
        JOBS_ACTIVE.labels(status=str(status)).set(counts.get(str(status), 0))
    active_count = getattr(engine, "active_count", None)
    if callable(active_count):
        ENGINE_INFLIGHT.set(active_count())
