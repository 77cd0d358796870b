import logging
from typing import Any, Iterable

from sqlalchemy.exc import SQLAlchemyError
from sqlalchemy.ext.asyncio import AsyncSession

from media_queue.db.models import StorageEvent
from media_queue.domain.errors import ResultSinkError
from media_queue.utils.clock import utc_now

logger = logging.getLogger(__name__)


async def store_events(session: AsyncSession, batch_id: str, events: Iterable[dict[str, Any]]) -> int:
    """Persists parsed events for a batch. Returns the number stored."""
    received_at = utc_now()
    rows = [
        StorageEvent(batch_id=batch_id, received_at=received_at, **event)
        for event in events
    ]
    try:
        session.add_all(rows)
        await session.flush()
    except SQLAlchemyError as e:
        raise ResultSinkError(f"Failed to store events for batch {batch_id}: {e}") from e

    logger.debug("Stored %d events for batch %s", len(rows), batch_id)
    return len(rows)
