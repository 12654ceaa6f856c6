import logging

from sqlalchemy.ext.asyncio import AsyncSession

from jobctl.domain.errors import JobNotFoundError
from jobctl.domain.states import JobStatus, JobEvent, is_terminal
from jobctl.engine.adapter import EngineAdapter
from jobctl.store import records
from jobctl.api.v1.metrics import CANCEL_REQUESTS

logger = logging.getLogger(__name__)

CANCEL_REASON = "cancelled by request"


async def cancel_job(session: AsyncSession, engine: EngineAdapter, job_id: str) -> bool:
    """
    Requests advisory cancellation of a job.

    Returns False (no-op) when the job is already terminal or the engine
    refuses. On acceptance the record is optimistically marked Aborted; the
    reconciler may still replace that with the engine's Completed/Failed if the
    unit had finished before the cancel landed.
    """
    record = await records.find_record(session, job_id, refresh=True)
    if record is None:
        raise JobNotFoundError(job_id)

    if is_terminal(JobStatus(record.status)):
        CANCEL_REQUESTS.labels(accepted="false").inc()
        return False

    accepted = await engine.cancel(job_id)
    CANCEL_REQUESTS.labels(accepted=str(accepted).lower()).inc()
    if not accepted:
        logger.info("Engine declined cancel for %s", job_id)
        return False

    def _abort(rec):
        records.log_event(session, rec.id, JobEvent.CANCEL_REQUESTED)
        return records.mark_aborted(session, rec, CANCEL_REASON)

    aborted = await records.update_record(session, job_id, _abort)
    if aborted:
        logger.info("Job %s marked aborted pending engine confirmation", job_id)
    else:
        logger.info("Cancel for %s accepted but the record was already terminal", job_id)
    return True
