import logging

from fastapi import APIRouter, Depends, HTTPException, Request

from media_queue.api.deps import DbSession, EventQueue
from media_queue.api.v1.schemas import envelope
from media_queue.auth.security import require_ingest_credentials
from media_queue.domain.states import SourceProtocol
from media_queue.queues.events import estimate_event_count

logger = logging.getLogger(__name__)

router = APIRouter(dependencies=[Depends(require_ingest_credentials)])


@router.post("/{protocol}")
async def ingest_events(protocol: SourceProtocol, request: Request, session: DbSession, events: EventQueue):
    """Stores a raw log body as one event batch for workers to parse."""
    body = (await request.body()).decode("utf-8", errors="replace")
    if not body.strip():
        raise HTTPException(status_code=400, detail="Empty payload")

    batch_id = await events.enqueue_batch(session, body, protocol)
    await session.commit()

    received = estimate_event_count(body, protocol)
    logger.debug("Queued %s batch %s (~%d events)", protocol, batch_id, received)
    return envelope({"batchId": batch_id, "received": received})
