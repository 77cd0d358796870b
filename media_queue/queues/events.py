from typing import Any
from uuid import uuid4

from sqlalchemy.ext.asyncio import AsyncSession

from media_queue.db.models import EventBatch
from media_queue.domain.states import QueueKind, SourceProtocol
from media_queue.queues.store import LeaseQueue


def estimate_event_count(raw_payload: str, protocol: SourceProtocol) -> int:
    """
    Rough event count for a raw ingest body, used for status display only.

    Elasticsearch bulk bodies alternate action and document lines.
    """
    lines = sum(1 for line in raw_payload.splitlines() if line.strip())
    if protocol == SourceProtocol.ELASTICSEARCH:
        return lines // 2
    return lines


class EventBatchQueue(LeaseQueue[EventBatch]):
    """Raw ingested log batches, keyed by a generated batch id."""

    model = EventBatch
    kind = QueueKind.EVENTS

    @property
    def key_column(self):
        return EventBatch.batch_id

    def key_of(self, item: EventBatch) -> Any:
        return item.batch_id

    async def enqueue_batch(self, session: AsyncSession, raw_payload: str, protocol: SourceProtocol) -> str:
        return await self.enqueue(
            session,
            batch_id=str(uuid4()),
            raw_payload=raw_payload,
            source_protocol=protocol,
            event_count_estimate=estimate_event_count(raw_payload, protocol),
        )

    async def complete_batch(self, session: AsyncSession, batch_id: str, worker_id: str, events_processed: int) -> bool:
        return await self.complete(
            session,
            batch_id,
            worker_id,
            {"eventsProcessed": events_processed},
            events_processed=events_processed,
        )
