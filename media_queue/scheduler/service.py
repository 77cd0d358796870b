import asyncio
import logging
from typing import Optional, Sequence

from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker

from media_queue.db.session import AsyncSessionLocal
from media_queue.queues.store import LeaseQueue
from media_queue.scheduler.ticker import run_maintenance
from media_queue.settings import settings

logger = logging.getLogger(__name__)


class ReaperService:
    """Runs queue maintenance on a fixed interval for the life of the app."""

    def __init__(
        self,
        queues: Sequence[LeaseQueue],
        session_factory: async_sessionmaker[AsyncSession] = AsyncSessionLocal,
        interval: Optional[float] = None,
    ):
        self.queues = list(queues)
        self.session_factory = session_factory
        self.interval = interval if interval is not None else settings.REAPER_INTERVAL_SECONDS
        self._running = False
        self._task = None

    async def start(self):
        self._running = True
        self._task = asyncio.create_task(self._loop())
        logger.info("Reaper started (interval %ss, lease timeout %ss).", self.interval, settings.LEASE_TIMEOUT_SECONDS)

    async def stop(self):
        self._running = False
        if self._task:
            self._task.cancel()
            try:
                await self._task
            except asyncio.CancelledError:
                pass
        logger.info("Reaper stopped.")

    async def tick(self):
        return await run_maintenance(self.session_factory, self.queues)

    async def _loop(self):
        while self._running:
            try:
                await self.tick()
            except Exception as e:
                # Usually the database is unreachable; retry next interval
                logger.error(f"Error in reaper tick: {e}", exc_info=True)

            await asyncio.sleep(self.interval)
