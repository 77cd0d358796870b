import asyncio
import logging
import time
from dataclasses import dataclass, field
from typing import Any, Coroutine, Dict, List, Optional

logger = logging.getLogger(__name__)


@dataclass
class ActiveLease:
    kind: str
    key: Any
    claim: Dict[str, Any]
    started_at: float = field(default_factory=time.monotonic)
    heartbeat_task: Optional[asyncio.Task] = None
    execution_task: Optional[asyncio.Task] = None
    # Server reported the lease gone (heartbeat 404)
    lost: bool = False
    # Given up during drain; the reaper will hand it out again
    abandoned: bool = False

    @property
    def lease_id(self) -> str:
        return f"{self.kind}:{self.key}"


class LeaseRegistry:
    """
    The worker's in-flight leases and their heartbeat tasks.

    All timer lifecycle goes through start/stop/release/abandon_all so a
    heartbeat can never outlive the lease it belongs to.
    """

    def __init__(self):
        self._leases: Dict[str, ActiveLease] = {}

    def __len__(self) -> int:
        return len(self._leases)

    def __contains__(self, lease_id: str) -> bool:
        return lease_id in self._leases

    def get(self, lease_id: str) -> Optional[ActiveLease]:
        return self._leases.get(lease_id)

    def start(self, lease: ActiveLease, heartbeat: Coroutine[Any, Any, None]) -> ActiveLease:
        """Registers the lease and starts its heartbeat immediately."""
        if lease.lease_id in self._leases:
            heartbeat.close()
            raise ValueError(f"Lease {lease.lease_id} is already active")

        lease.heartbeat_task = asyncio.create_task(heartbeat, name=f"heartbeat-{lease.lease_id}")
        self._leases[lease.lease_id] = lease
        return lease

    async def stop(self, lease_id: str) -> None:
        """Cancels the lease's heartbeat and waits until it has exited."""
        lease = self._leases.get(lease_id)
        if lease is None or lease.heartbeat_task is None:
            return

        task = lease.heartbeat_task
        task.cancel()
        try:
            await task
        except asyncio.CancelledError:
            pass

    def release(self, lease_id: str) -> None:
        self._leases.pop(lease_id, None)

    def execution_tasks(self) -> List[asyncio.Task]:
        return [lease.execution_task for lease in self._leases.values() if lease.execution_task is not None]

    async def abandon_all(self) -> int:
        """
        Stops every heartbeat and forgets the leases without reporting them.
        Returns how many were abandoned.
        """
        leases = list(self._leases.values())
        for lease in leases:
            lease.abandoned = True
            await self.stop(lease.lease_id)
            logger.warning(
                "Abandoned %s %s after %.0fs; it stays claimed until the reaper expires it",
                lease.kind, lease.key, time.monotonic() - lease.started_at,
            )
        self._leases.clear()
        return len(leases)
