import asyncio
import logging
from typing import Optional

from sqlalchemy import select
from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker

from jobctl.db.models import JobRecord, OutboxEvent
from jobctl.services.notifier import Notifier
from jobctl.api.v1.metrics import NOTIFICATIONS_TOTAL
from jobctl.utils.clock import utcnow

logger = logging.getLogger(__name__)

# A notification that keeps failing is dropped after this many tries
MAX_PUBLISH_ATTEMPTS = 5


def enqueue_notification(session: AsyncSession, record: JobRecord, summary: Optional[str] = None) -> None:
    """Stages a terminal-state notification in the caller's transaction."""
    session.add(OutboxEvent(
        event_type=f"JOB_{str(record.status).upper()}",
        payload={
            "job_id": record.id,
            "logical_name": record.logical_name,
            "status": str(record.status),
            "summary": summary or record.status_reason or "",
            "items_processed": record.items_processed,
            "items_total": record.items_total,
            "error_count": record.error_count,
        },
        status="PENDING",
        created_at=utcnow(),
    ))


class OutboxProcessor:
    def __init__(self, session_factory: async_sessionmaker[AsyncSession], notifier: Notifier, interval: float = 1.0):
        self.session_factory = session_factory
        self.notifier = notifier
        self.interval = interval
        self.running = False
        self._task = None

    async def start(self):
        self.running = True
        self._task = asyncio.create_task(self.run_loop())
        logger.info("OutboxProcessor started.")

    async def stop(self):
        self.running = False
        if self._task:
            self._task.cancel()
            try:
                await self._task
            except asyncio.CancelledError:
                pass
        await self.notifier.close()
        logger.info("OutboxProcessor stopped.")

    async def run_loop(self):
        while self.running:
            try:
                processed_count = await self.process_batch()
                if processed_count == 0:
                    await asyncio.sleep(self.interval)
            except Exception as e:
                logger.error(f"Error in OutboxProcessor: {e}", exc_info=True)
                await asyncio.sleep(self.interval)

    async def process_batch(self, batch_size: int = 50) -> int:
        """
        Publishes pending notifications. Returns how many events were published.

        Delivery is fire-and-forget from the job's point of view: a failure
        only bumps the event's attempt counter, it never touches a JobRecord.
        """
        async with self.session_factory() as session:
            async with session.begin():
                stmt = (
                    select(OutboxEvent)
                    .where(OutboxEvent.status == "PENDING")
                    .order_by(OutboxEvent.created_at.asc())
                    .with_for_update(skip_locked=True)
                    .limit(batch_size)
                )
                result = await session.execute(stmt)
                events = result.scalars().all()

                published = 0
                for event in events:
                    try:
                        await self.notifier.send(event.event_type, event.payload)
                        event.status = "PUBLISHED"
                        event.published_at = utcnow()
                        published += 1
                        NOTIFICATIONS_TOTAL.labels(result="published").inc()
                    except Exception as e:
                        event.attempts += 1
                        NOTIFICATIONS_TOTAL.labels(result="failed").inc()
                        if event.attempts >= MAX_PUBLISH_ATTEMPTS:
                            event.status = "FAILED"
                        logger.error(f"Failed to publish event {event.id} (attempt {event.attempts}): {e}")

                return published
