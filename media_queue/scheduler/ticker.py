import logging
from datetime import timedelta
from typing import Any, Iterable, Optional

from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker

from media_queue.api.v1.metrics import QUEUE_DEPTH, REAPER_ERRORS
from media_queue.queues.store import LeaseQueue
from media_queue.settings import settings

logger = logging.getLogger(__name__)


async def run_maintenance(
    session_factory: async_sessionmaker[AsyncSession],
    queues: Iterable[LeaseQueue],
    lease_timeout_seconds: Optional[float] = None,
    retention: Optional[timedelta] = None,
) -> dict[str, Any]:
    """
    One reaper tick:
    1. Return claimed items with a silent heartbeat to pending
    2. Delete terminal items past the retention window
    3. Refresh queue depth gauges

    Each queue runs in its own session, so a failure in one queue's
    maintenance (including a dead connection on rollback) never blocks the
    others.
    """
    timeout = lease_timeout_seconds if lease_timeout_seconds is not None else settings.LEASE_TIMEOUT_SECONDS
    keep_for = retention if retention is not None else timedelta(hours=settings.QUEUE_RETENTION_HOURS)

    report: dict[str, Any] = {}
    for queue in queues:
        try:
            async with session_factory() as session:
                expired = await queue.expire_stale(session, timeout)
                cleaned = await queue.clean_completed(session, keep_for)
                await session.commit()
        except Exception as e:
            REAPER_ERRORS.labels(queue=queue.kind).inc()
            logger.error(f"Maintenance failed for {queue.kind} queue: {e}", exc_info=True)
            report[queue.kind.value] = {"error": str(e)}
            continue

        report[queue.kind.value] = {"expired": expired, "cleaned": cleaned}

        try:
            async with session_factory() as session:
                counts = await queue.stats(session)
            for status, count in counts.items():
                QUEUE_DEPTH.labels(queue=queue.kind, status=status).set(count)
        except Exception as e:
            logger.warning(f"Could not refresh queue depth for {queue.kind}: {e}")

    return report
