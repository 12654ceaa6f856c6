import logging
from datetime import timedelta
from typing import Optional

from sqlalchemy.ext.asyncio import AsyncSession

from jobctl.db.models import JobRecord
from jobctl.domain.models import JobConfig
from jobctl.domain.retry import RetryDecision, RetryPolicy, decide_retry
from jobctl.domain.states import JobStatus, JobEvent, FailureKind
from jobctl.engine.adapter import EngineAdapter
from jobctl.scheduler.dispatcher import dispatch_job
from jobctl.store import records
from jobctl.api.v1.metrics import JOB_FAILURES
from jobctl.utils.clock import utcnow

logger = logging.getLogger(__name__)


def _failure_kind(record: JobRecord) -> Optional[FailureKind]:
    return FailureKind(record.failure_kind) if record.failure_kind else None


async def on_unit_failed(
    session: AsyncSession,
    engine: EngineAdapter,
    record: JobRecord,
    policy: Optional[RetryPolicy] = None,
) -> tuple[RetryDecision, Optional[JobRecord]]:
    """
    Decides retry vs. give-up for a Failed record and acts on it.

    On Retry the same logical job is re-dispatched with `retry_count + 1`, the
    original input context and chain, and a start delayed by the backoff. The
    new record supersedes this one, so the Duplicate Guard hands the slot over
    instead of rejecting the continuation.

    Returns the decision and, on Retry, the new record.
    """
    if record.status != JobStatus.FAILED:
        return RetryDecision.give_up(f"record is {record.status}, not failed"), None

    existing = await records.find_continuation(session, record.id)
    if existing is not None:
        return RetryDecision.retry_after(0.0), existing

    decision = decide_retry(record.retry_count, record.max_retries, _failure_kind(record), policy)

    if not decision.retry:
        JOB_FAILURES.labels(type="final").inc()
        records.log_event(session, record.id, JobEvent.GIVE_UP, reason=decision.reason)
        logger.warning("Giving up on %s (%s): %s", record.id, record.logical_name, decision.reason)
        return decision, None

    retry = await dispatch_job(
        session,
        engine,
        record.logical_name,
        record.unit_name,
        record.mode,
        JobConfig.from_dict(record.config),
        context=record.input_context,
        parent_job_id=record.parent_job_id,
        chain=record.chain,
        error_tolerance=record.error_tolerance,
        max_retries=record.max_retries,
        retry_count=record.retry_count + 1,
        supersedes_job_id=record.id,
        not_before=utcnow() + timedelta(seconds=decision.delay_seconds),
    )

    JOB_FAILURES.labels(type="retryable").inc()
    records.log_event(
        session, record.id, JobEvent.RETRIED,
        retry_job_id=retry.id, retry_count=retry.retry_count, delay_seconds=decision.delay_seconds,
    )
    logger.info(
        "Retrying %s as %s in %.2fs (attempt %d/%d)",
        record.logical_name, retry.id, decision.delay_seconds, retry.retry_count, record.max_retries,
    )
    return decision, retry
