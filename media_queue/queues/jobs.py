from typing import Any, Optional

from sqlalchemy.ext.asyncio import AsyncSession

from media_queue.db.models import ProxyJob
from media_queue.domain.states import JobType, QueueKind
from media_queue.queues.store import LeaseQueue


class ProxyJobQueue(LeaseQueue[ProxyJob]):
    """Proxy/thumbnail generation jobs, keyed by integer job id."""

    model = ProxyJob
    kind = QueueKind.JOBS

    def _release_values(self) -> dict[str, Any]:
        values = super()._release_values()
        values["stage"] = None
        return values

    async def enqueue_job(
        self,
        session: AsyncSession,
        asset_id: int,
        space_name: str,
        primary_file_path: str,
        asset_type: str,
        job_type: JobType = JobType.FULL,
    ) -> int:
        return await self.enqueue(
            session,
            asset_id=asset_id,
            space_name=space_name,
            primary_file_path=primary_file_path,
            asset_type=asset_type,
            job_type=job_type,
        )

    async def progress(self, session: AsyncSession, job_id: int, worker_id: str, stage: Optional[str]) -> bool:
        """Records the worker's current stage; also counts as a heartbeat."""
        return await self._guarded_update(
            session,
            job_id,
            worker_id,
            stage=stage,
            last_heartbeat_at=self.clock(),
        )
