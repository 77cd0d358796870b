import logging
from datetime import timedelta
from typing import Any, Generic, Optional, TypeVar

from sqlalchemy import delete, func, select, update
from sqlalchemy.ext.asyncio import AsyncSession

from media_queue.api.v1.metrics import (
    CLAIM_TOTAL,
    ITEMS_CLEANED,
    ITEMS_COMPLETED,
    ITEMS_ENQUEUED,
    ITEMS_FAILED,
    STALE_RECLAIMED,
)
from media_queue.db.models import LeaseItemMixin
from media_queue.domain.retry import RetryPolicy
from media_queue.domain.states import TERMINAL_STATUSES, LeaseStatus, QueueKind
from media_queue.utils.clock import Clock, utc_now

logger = logging.getLogger(__name__)

ItemT = TypeVar("ItemT", bound=LeaseItemMixin)


class LeaseQueue(Generic[ItemT]):
    """
    Persistent lease queue over one table.

    Every state transition is a single conditional UPDATE whose WHERE clause
    carries the ownership/status predicate, so concurrent callers can never
    both succeed. Methods flush but never commit; the caller owns the
    transaction.
    """

    model: type[ItemT]
    kind: QueueKind

    def __init__(
        self,
        retry_policy: Optional[RetryPolicy] = None,
        clock: Clock = utc_now,
    ):
        self.retry_policy = retry_policy or RetryPolicy()
        self.clock = clock

    # Subclasses keyed by something other than the row id override these
    @property
    def key_column(self):
        return self.model.id

    def key_of(self, item: ItemT) -> Any:
        return item.id

    def _release_values(self) -> dict[str, Any]:
        """Columns cleared whenever an item leaves the claimed state."""
        return {
            "claimed_by": None,
            "claimed_at": None,
            "last_heartbeat_at": None,
        }

    def _owned(self, key: Any, worker_id: str):
        return (
            self.key_column == key,
            self.model.claimed_by == worker_id,
            self.model.status == LeaseStatus.CLAIMED,
        )

    async def _guarded_update(self, session: AsyncSession, key: Any, worker_id: str, **values) -> bool:
        stmt = (
            update(self.model)
            .where(*self._owned(key, worker_id))
            .values(**values)
            .execution_options(synchronize_session=False)
        )
        res = await session.execute(stmt)
        return res.rowcount > 0

    async def enqueue(self, session: AsyncSession, **payload) -> Any:
        now = self.clock()
        item = self.model(
            **payload,
            status=LeaseStatus.PENDING,
            created_at=now,
            available_at=now,
            attempts=0,
            max_attempts=self.retry_policy.max_attempts,
        )
        session.add(item)
        await session.flush()

        ITEMS_ENQUEUED.labels(queue=self.kind).inc()
        return self.key_of(item)

    async def get(self, session: AsyncSession, key: Any) -> Optional[ItemT]:
        stmt = select(self.model).where(self.key_column == key)
        return await session.scalar(stmt)

    async def claim_next(self, session: AsyncSession, worker_id: str) -> Optional[ItemT]:
        """
        Atomically leases the oldest pending item to worker_id.

        One statement: the subquery picks the oldest eligible row (skipping
        rows another transaction holds on Postgres) and the outer predicate
        re-checks `pending`, so a row claimed concurrently simply drops out.
        """
        now = self.clock()
        model = self.model

        next_id = (
            select(model.id)
            .where(
                model.status == LeaseStatus.PENDING,
                model.available_at <= now,
            )
            .order_by(model.created_at.asc(), model.id.asc())
            .limit(1)
            .with_for_update(skip_locked=True)
            .scalar_subquery()
        )

        stmt = (
            update(model)
            .where(model.id == next_id, model.status == LeaseStatus.PENDING)
            .values(
                status=LeaseStatus.CLAIMED,
                claimed_by=worker_id,
                claimed_at=now,
                last_heartbeat_at=now,
                attempts=model.attempts + 1,
            )
            .returning(model)
            .execution_options(synchronize_session=False, populate_existing=True)
        )

        result = await session.execute(stmt)
        item = result.scalar_one_or_none()

        if item is None:
            CLAIM_TOTAL.labels(queue=self.kind, outcome="empty").inc()
            return None

        CLAIM_TOTAL.labels(queue=self.kind, outcome="claimed").inc()
        logger.info("Claimed %s item %s for worker %s (attempt %s)", self.kind, self.key_of(item), worker_id, item.attempts)
        return item

    async def heartbeat(self, session: AsyncSession, key: Any, worker_id: str) -> bool:
        return await self._guarded_update(session, key, worker_id, last_heartbeat_at=self.clock())

    async def complete(
        self,
        session: AsyncSession,
        key: Any,
        worker_id: str,
        result: Optional[dict[str, Any]],
        **values,
    ) -> bool:
        ok = await self._guarded_update(
            session,
            key,
            worker_id,
            status=LeaseStatus.COMPLETED,
            result=result,
            completed_at=self.clock(),
            **values,
            **self._release_values(),
        )
        if ok:
            ITEMS_COMPLETED.labels(queue=self.kind).inc()
        return ok

    async def fail(self, session: AsyncSession, key: Any, worker_id: str, error: str) -> bool:
        """
        Marks the item failed, or returns it to pending with backoff when the
        retry policy still allows attempts. False if worker_id holds no claim.
        """
        stmt = (
            select(self.model.attempts, self.model.max_attempts)
            .where(*self._owned(key, worker_id))
            .with_for_update()
        )
        row = (await session.execute(stmt)).one_or_none()
        if row is None:
            return False

        attempts, max_attempts = row
        now = self.clock()

        if attempts < max_attempts:
            ok = await self._guarded_update(
                session,
                key,
                worker_id,
                status=LeaseStatus.PENDING,
                error_message=error,
                available_at=self.retry_policy.next_run(attempts, now),
                **self._release_values(),
            )
            if ok:
                ITEMS_FAILED.labels(queue=self.kind, type="retryable").inc()
                logger.warning(
                    "%s item %s failed on attempt %s/%s, re-queued: %s",
                    self.kind, key, attempts, max_attempts, error,
                )
            return ok

        ok = await self._guarded_update(
            session,
            key,
            worker_id,
            status=LeaseStatus.FAILED,
            error_message=error,
            completed_at=now,
            **self._release_values(),
        )
        if ok:
            ITEMS_FAILED.labels(queue=self.kind, type="final").inc()
            logger.warning("%s item %s failed permanently: %s", self.kind, key, error)
        return ok

    async def expire_stale(self, session: AsyncSession, timeout_seconds: float) -> int:
        """
        Returns every claimed item whose last heartbeat is older than the
        timeout to pending. One bulk UPDATE guarded by `claimed`, so it cannot
        undo a claim or heartbeat that commits first.
        """
        cutoff = self.clock() - timedelta(seconds=timeout_seconds)
        stmt = (
            update(self.model)
            .where(
                self.model.status == LeaseStatus.CLAIMED,
                self.model.last_heartbeat_at < cutoff,
            )
            .values(status=LeaseStatus.PENDING, **self._release_values())
            .execution_options(synchronize_session=False)
        )
        res = await session.execute(stmt)
        count = res.rowcount

        if count > 0:
            STALE_RECLAIMED.labels(queue=self.kind).inc(count)
            logger.warning("Expired %d stale %s items (timeout %ss)", count, self.kind, timeout_seconds)
        return count

    async def clean_completed(self, session: AsyncSession, retention: timedelta) -> int:
        cutoff = self.clock() - retention
        stmt = (
            delete(self.model)
            .where(
                self.model.status.in_(TERMINAL_STATUSES),
                self.model.completed_at < cutoff,
            )
            .execution_options(synchronize_session=False)
        )
        res = await session.execute(stmt)
        count = res.rowcount

        if count > 0:
            ITEMS_CLEANED.labels(queue=self.kind).inc(count)
            logger.info("Deleted %d terminal %s items past retention", count, self.kind)
        return count

    async def stats(self, session: AsyncSession) -> dict[str, int]:
        stmt = (
            select(self.model.status, func.count())
            .group_by(self.model.status)
        )
        rows = (await session.execute(stmt)).all()

        counts = {status.value: 0 for status in LeaseStatus}
        for status, count in rows:
            if status in counts:
                counts[status] = count
        return counts
