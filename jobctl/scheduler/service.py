import asyncio
import logging

from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker

from jobctl.engine.adapter import EngineAdapter
from jobctl.scheduler.ticker import run_reconcile

logger = logging.getLogger(__name__)


class SchedulerService:
    """
    Polls the engine into the Job Record Store on a fixed interval.

    There is no completion callback from the engine, so this loop is the only
    thing that moves records forward and triggers chaining and retries.
    """

    def __init__(self, session_factory: async_sessionmaker[AsyncSession], engine: EngineAdapter, interval: float = 5.0):
        self.session_factory = session_factory
        self.engine = engine
        self.interval = interval
        self._running = False
        self._task = None

    async def start(self):
        self._running = True
        self._task = asyncio.create_task(self._loop())
        logger.info("Scheduler service started (interval=%ss).", self.interval)

    async def stop(self):
        self._running = False
        if self._task:
            self._task.cancel()
            try:
                await self._task
            except asyncio.CancelledError:
                pass
        logger.info("Scheduler service stopped.")

    async def _loop(self):
        session = None
        while self._running:
            try:
                if not session:
                    session = self.session_factory()

                await run_reconcile(session, self.engine)
                # Long-lived session: don't let the identity map grow with history
                session.expunge_all()

            except Exception as e:
                logger.error(f"Error in reconcile ticker: {e}", exc_info=True)

                # Drop the session so a broken connection is replaced next tick
                if session:
                    await session.close()
                    session = None

            await asyncio.sleep(self.interval)

        if session:
            await session.close()
