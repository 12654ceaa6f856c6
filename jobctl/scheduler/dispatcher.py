import logging
from datetime import datetime
from typing import Any, Optional, Union
from uuid import uuid4

from sqlalchemy.ext.asyncio import AsyncSession

from jobctl.db.models import JobRecord
from jobctl.domain.errors import (
    ChainDepthExceeded, ConcurrencyLimitExceeded, DuplicateJobError, StoreUnavailable, UnitValidationError,
)
from jobctl.domain.models import ChainStage, JobConfig
from jobctl.domain.states import JobMode, FailureKind
from jobctl.engine.adapter import EngineAdapter
from jobctl.engine.units import Unit
from jobctl.scheduler import guard
from jobctl.settings import settings
from jobctl.store import records
from jobctl.api.v1.metrics import JOBS_DISPATCHED, DISPATCH_REJECTIONS

logger = logging.getLogger(__name__)


async def dispatch_job(
    session: AsyncSession,
    engine: EngineAdapter,
    logical_name: str,
    unit: Union[Unit, str],
    mode: JobMode,
    config: Optional[JobConfig] = None,
    *,
    context: Optional[dict[str, Any]] = None,
    parent_job_id: Optional[str] = None,
    chain: Optional[list[Union[ChainStage, dict[str, Any]]]] = None,
    error_tolerance: Optional[int] = None,
    max_retries: Optional[int] = None,
    retry_count: int = 0,
    supersedes_job_id: Optional[str] = None,
    not_before: Optional[datetime] = None,
) -> JobRecord:
    """
    Launches one unit of work and persists its JobRecord.

    Order matters: chain depth is checked first, then the Duplicate Guard
    reserves the logical job, then the engine launches, and only then is the
    record written (and the reservation bound to it) in a single commit.
    Anything that goes wrong before the record exists undoes the earlier
    steps, so a refused dispatch leaves no record behind.

    Raises:
        DuplicateJobError: another launch of `logical_name` is active.
        ConcurrencyLimitExceeded: the engine has no capacity left.
        ChainDepthExceeded: the new link would exceed the chain depth limit.
            A Failed record for the link is persisted before raising.
        UnitValidationError: the engine refused the unit/config combination.
        StoreUnavailable: the store could not be reached; nothing launched.
    """
    config = config or JobConfig()
    mode = JobMode(mode)
    unit = engine.registry.resolve(unit)
    retries = settings.MAX_RETRIES if max_retries is None else max_retries
    tolerance = settings.ERROR_TOLERANCE_FOR_CHAINING if error_tolerance is None else error_tolerance
    stages = [s.to_dict() if isinstance(s, ChainStage) else dict(s) for s in (chain or [])]

    if retry_count > retries:
        raise ValueError(f"retry_count {retry_count} exceeds max_retries {retries}")

    common = dict(
        logical_name=logical_name,
        unit_name=unit.name,
        mode=mode,
        config=config,
        context=context,
        max_retries=retries,
        retry_count=retry_count,
        parent_job_id=parent_job_id,
        supersedes_job_id=supersedes_job_id,
        chain=stages,
        error_tolerance=tolerance,
        not_before=not_before,
    )

    # 1. Chain depth
    if parent_job_id is not None:
        limit = settings.CHAIN_DEPTH_LIMIT
        depth = await records.chain_depth(session, parent_job_id, ceiling=limit) + 1
        if depth > limit:
            link_id = f"rejected-{uuid4().hex}"
            record = records.create_record(session, job_id=link_id, **common)
            reason = f"chain depth {depth} exceeds limit {limit}"
            records.record_rejected_link(session, record, FailureKind.CHAIN_DEPTH, reason)
            with records.translate_store_errors():
                await session.commit()
            DISPATCH_REJECTIONS.labels(reason="chain_depth").inc()
            logger.warning("Chain halted at %s: %s (link %s)", logical_name, reason, link_id)
            raise ChainDepthExceeded(link_id, depth, limit)

    # 2. Duplicate Guard
    token = uuid4().hex
    if not await guard.try_acquire(session, logical_name, token, supersedes=supersedes_job_id):
        conflicting = await guard.holder(session, logical_name)
        DISPATCH_REJECTIONS.labels(reason="duplicate").inc()
        logger.info("Refused duplicate launch of %s (active: %s)", logical_name, conflicting)
        raise DuplicateJobError(logical_name, conflicting)

    # 3. Engine launch
    try:
        job_id = await engine.launch(unit, mode, config, context=context, not_before=not_before)
    except (ConcurrencyLimitExceeded, UnitValidationError) as e:
        await guard.release_token(session, logical_name, token)
        reason = "capacity" if isinstance(e, ConcurrencyLimitExceeded) else "validation"
        DISPATCH_REJECTIONS.labels(reason=reason).inc()
        logger.info("Engine refused %s: %s", logical_name, e)
        raise
    except Exception:
        await guard.release_token(session, logical_name, token)
        raise

    # 4. Record + binding, one commit
    try:
        record = records.create_record(session, job_id=job_id, **common)
        await guard.bind(session, logical_name, token, job_id)
        with records.translate_store_errors():
            await session.commit()
    except StoreUnavailable:
        await session.rollback()
        await engine.cancel(job_id)
        logger.error("Could not persist job %s for %s; cancelled the launch", job_id, logical_name)
        raise

    JOBS_DISPATCHED.labels(mode=str(mode)).inc()
    logger.info(
        "Dispatched %s as job %s (unit=%s, mode=%s, retry=%d/%d, parent=%s)",
        logical_name, job_id, unit.name, mode, retry_count, retries, parent_job_id,
    )
    return record
