"""
Duplicate Guard: at most one active launch per logical job.

A reservation is a row in `job_slots` keyed by logical name. It is taken by
a single conditional INSERT, or by a single conditional UPDATE when the
current holder is provably finished (or is the record being continued by a
retry). There is no separate check before the write, so two concurrent
dispatches of the same logical job cannot both succeed.
"""
import logging
from datetime import timedelta
from typing import Optional

from sqlalchemy import select, update, delete, or_, and_
from sqlalchemy.dialects import postgresql, sqlite
from sqlalchemy.ext.asyncio import AsyncSession

from jobctl.db.models import JobSlot, JobRecord
from jobctl.domain.states import TERMINAL_STATUSES
from jobctl.settings import settings
from jobctl.store.records import translate_store_errors
from jobctl.utils.clock import utcnow

logger = logging.getLogger(__name__)


def _insert_for(session: AsyncSession):
    dialect = session.get_bind().dialect.name
    if dialect == "postgresql":
        return postgresql.insert
    if dialect == "sqlite":
        return sqlite.insert
    raise NotImplementedError(f"duplicate guard does not support the {dialect} dialect")


async def try_acquire(
    session: AsyncSession,
    logical_name: str,
    token: str,
    supersedes: Optional[str] = None,
    reservation_ttl_seconds: Optional[int] = None,
) -> bool:
    """
    Reserves the logical job for the caller identified by `token`.

    Returns False when another launch holds it. `supersedes` names the record a
    retry or recurrence continues; its reservation is handed over rather than
    treated as a conflict.
    """
    ttl = reservation_ttl_seconds if reservation_ttl_seconds is not None else settings.RESERVATION_TTL_SECONDS
    now = utcnow()

    with translate_store_errors():
        insert = _insert_for(session)
        stmt = (
            insert(JobSlot.__table__)
            .values(logical_name=logical_name, token=token, job_id=None, acquired_at=now)
            .on_conflict_do_nothing(index_elements=["logical_name"])
        )
        result = await session.execute(stmt)
        if result.rowcount == 1:
            await session.commit()
            logger.debug("Reserved %s (token=%s)", logical_name, token)
            return True

        finished_holders = select(JobRecord.id).where(
            JobRecord.status.in_([str(s) for s in TERMINAL_STATUSES])
        )
        takeover = [
            JobSlot.job_id.in_(finished_holders),
            # Reservation abandoned between guard and record creation
            and_(JobSlot.job_id.is_(None), JobSlot.acquired_at < now - timedelta(seconds=ttl)),
        ]
        if supersedes is not None:
            takeover.append(JobSlot.job_id == supersedes)

        stmt = (
            update(JobSlot.__table__)
            .where(JobSlot.logical_name == logical_name, or_(*takeover))
            .values(token=token, job_id=None, acquired_at=now)
        )
        result = await session.execute(stmt)
        await session.commit()

    if result.rowcount == 1:
        logger.debug("Took over reservation for %s (token=%s, supersedes=%s)", logical_name, token, supersedes)
        return True
    return False


async def holder(session: AsyncSession, logical_name: str) -> Optional[str]:
    """Job id currently holding the logical job (None if unbound or free)."""
    with translate_store_errors():
        return await session.scalar(select(JobSlot.job_id).where(JobSlot.logical_name == logical_name))


async def bind(session: AsyncSession, logical_name: str, token: str, job_id: str) -> None:
    """Points the reservation at the record it produced. Caller commits."""
    stmt = (
        update(JobSlot)
        .where(JobSlot.logical_name == logical_name, JobSlot.token == token)
        .values(job_id=job_id)
        .execution_options(synchronize_session=False)
    )
    with translate_store_errors():
        await session.execute(stmt)


async def release_token(session: AsyncSession, logical_name: str, token: str) -> None:
    """Drops a reservation that never produced a launch."""
    stmt = delete(JobSlot).where(JobSlot.logical_name == logical_name, JobSlot.token == token)
    with translate_store_errors():
        await session.execute(stmt)
        await session.commit()


async def release_job(session: AsyncSession, logical_name: str, job_id: str) -> None:
    """Frees the slot if (and only if) `job_id` still holds it. Caller commits."""
    stmt = (
        delete(JobSlot)
        .where(JobSlot.logical_name == logical_name, JobSlot.job_id == job_id)
        .execution_options(synchronize_session=False)
    )
    with translate_store_errors():
        await session.execute(stmt)
