import copy
import logging
from typing import Optional

from sqlalchemy.ext.asyncio import AsyncSession

from jobctl.db.models import JobRecord
from jobctl.domain.models import ChainStage
from jobctl.domain.states import JobStatus, JobEvent
from jobctl.engine.adapter import EngineAdapter
from jobctl.scheduler.dispatcher import dispatch_job
from jobctl.store import records

logger = logging.getLogger(__name__)


def chain_allowed(record: JobRecord) -> bool:
    """A successor may start only from a Completed record within its error tolerance."""
    return record.status == JobStatus.COMPLETED and (record.error_count or 0) <= (record.error_tolerance or 0)


async def on_unit_complete(
    session: AsyncSession,
    engine: EngineAdapter,
    record: JobRecord,
) -> Optional[JobRecord]:
    """
    Dispatches the next chain stage after `record` finished.

    The successor receives a copy of the upstream context; the upstream record
    is not touched. Safe to call repeatedly for the same record: an already
    dispatched successor is returned instead of launching another.

    Raises whatever `dispatch_job` raises (DuplicateJobError,
    ConcurrencyLimitExceeded, ChainDepthExceeded, ...).
    """
    if not record.chain:
        return None

    if not chain_allowed(record):
        logger.info(
            "Chain halted after %s (%s): status=%s errors=%s tolerance=%s",
            record.id, record.logical_name, record.status, record.error_count, record.error_tolerance,
        )
        records.log_event(
            session, record.id, JobEvent.CHAIN_HALTED,
            status=str(record.status), error_count=record.error_count, tolerance=record.error_tolerance,
        )
        return None

    existing = await records.find_successor(session, record.id)
    if existing is not None:
        return existing

    stage = ChainStage.from_dict(record.chain[0])
    remaining = copy.deepcopy(record.chain[1:])

    successor = await dispatch_job(
        session,
        engine,
        stage.logical_name,
        stage.unit_name,
        stage.mode,
        stage.config,
        context=copy.deepcopy(record.context or {}),
        parent_job_id=record.id,
        chain=remaining,
        error_tolerance=record.error_tolerance,
        max_retries=record.max_retries,
    )

    records.log_event(session, record.id, JobEvent.CHAINED, successor=successor.id, stage=stage.logical_name)
    logger.info("Chained %s -> %s (%s)", record.id, successor.id, stage.logical_name)
    return successor
