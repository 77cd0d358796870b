import asyncio
import inspect
import logging
import signal
from typing import Any, Awaitable, Callable, Dict, List, Optional, Sequence, Tuple

from media_worker.client import LeaseLostError, WorkerClient
from media_worker.kinds import QueueBinding
from media_worker.registry import ActiveLease, LeaseRegistry

logger = logging.getLogger(__name__)

# Handlers receive the claim payload. Sync handlers run in a thread so
# CPU-bound work does not stall heartbeats of other leases.
Handler = Callable[[dict], Any]
Middleware = Callable[[dict, Callable[[dict], Awaitable[Any]]], Awaitable[Any]]


class WorkerLoop:
    """
    Polls the manager for work across queue kinds, runs up to
    `max_concurrent` leases at once and heartbeats each while it runs.

    Polling: queues are tried in the order given. After a successful claim
    with capacity left the loop claims again straight away; an empty poll or
    a full registry falls back to `poll_interval`.

    Draining: `stop()` ends polling at once; `run()` then waits up to
    `drain_timeout` for executing leases and abandons the rest to the reaper.
    """

    def __init__(
        self,
        client: WorkerClient,
        handlers: Sequence[Tuple[QueueBinding, Handler]],
        max_concurrent: int = 2,
        poll_interval: float = 5.0,
        heartbeat_interval: float = 30.0,
        drain_timeout: float = 300.0,
    ):
        if not handlers:
            raise ValueError("WorkerLoop needs at least one queue handler")

        self.client = client
        self.bindings: List[QueueBinding] = [binding for binding, _ in handlers]
        self.handlers: Dict[str, Handler] = {binding.name: handler for binding, handler in handlers}
        self.max_concurrent = max_concurrent
        self.poll_interval = poll_interval
        self.heartbeat_interval = heartbeat_interval
        self.drain_timeout = drain_timeout

        self.registry = LeaseRegistry()
        self.middlewares: List[Middleware] = []
        self._shutdown_event = asyncio.Event()

    @property
    def running(self) -> bool:
        return not self._shutdown_event.is_set()

    def add_middleware(self, middleware: Middleware):
        self.middlewares.append(middleware)

    def has_capacity(self) -> bool:
        return len(self.registry) < self.max_concurrent

    def install_signal_handlers(self):
        loop = asyncio.get_running_loop()
        for sig in (signal.SIGINT, signal.SIGTERM):
            try:
                loop.add_signal_handler(sig, self.stop)
            except NotImplementedError:
                # Windows support
                pass

    def stop(self):
        if self.running:
            logger.info("Shutdown signal received, polling stopped")
        self._shutdown_event.set()

    async def run(self):
        logger.info(
            "Worker %s started (queues=%s, max concurrent=%s, poll=%ss, heartbeat=%ss)",
            self.client.worker_id,
            ",".join(b.name for b in self.bindings),
            self.max_concurrent,
            self.poll_interval,
            self.heartbeat_interval,
        )

        while self.running:
            claimed = False
            try:
                claimed = await self.poll_once()
            except Exception as e:
                logger.exception("Poll failed for worker %s: %s", self.client.worker_id, e)

            if claimed and self.has_capacity():
                # Backlog: claim again without waiting
                await asyncio.sleep(0)
                continue

            await self._wait(self.poll_interval)

        await self.drain(self.drain_timeout)
        logger.info("Worker loop stopped")

    async def _wait(self, timeout: float):
        try:
            await asyncio.wait_for(self._shutdown_event.wait(), timeout=timeout)
        except asyncio.TimeoutError:
            pass

    async def poll_once(self) -> bool:
        """One pass over the queues in priority order. True if anything was claimed."""
        claimed_any = False
        for binding in self.bindings:
            if not self.running or not self.has_capacity():
                break

            claim = await self.client.claim(binding.name)
            if not claim:
                continue

            self._launch(binding, claim)
            claimed_any = True
        return claimed_any

    def _launch(self, binding: QueueBinding, claim: dict) -> ActiveLease:
        key = binding.key_of(claim)
        lease = ActiveLease(kind=binding.name, key=key, claim=claim)
        self.registry.start(lease, self._heartbeat_loop(lease))
        lease.execution_task = asyncio.create_task(self._execute(binding, lease), name=f"lease-{lease.lease_id}")

        logger.info(
            "Claimed %s %s (active %d/%d)",
            binding.name, key, len(self.registry), self.max_concurrent,
        )
        return lease

    async def _heartbeat_loop(self, lease: ActiveLease):
        while True:
            await asyncio.sleep(self.heartbeat_interval)
            logger.debug("Sending heartbeat for %s", lease.lease_id)
            try:
                ok = await self.client.heartbeat(lease.kind, lease.key)
            except LeaseLostError:
                lease.lost = True
                logger.warning("Lease %s was reclaimed; heartbeat stopped", lease.lease_id)
                return
            if not ok:
                # Transient; only the server's timeout decides whether the claim is lost
                logger.warning("Heartbeat for %s failed, retrying next tick", lease.lease_id)

    async def _invoke(self, binding: QueueBinding, claim: dict) -> Any:
        handler = self.handlers[binding.name]

        async def core_invoker(payload):
            if inspect.iscoroutinefunction(handler):
                return await handler(payload)
            return await asyncio.to_thread(handler, payload)

        chain = core_invoker

        # Apply middleware in reverse order (onion)
        for mw in reversed(self.middlewares):
            # Capture current chain and mw in closure
            def make_wrapper(current_mw, current_chain):
                async def wrapper(payload):
                    return await current_mw(payload, current_chain)
                return wrapper
            chain = make_wrapper(mw, chain)

        return await chain(claim)

    async def _execute(self, binding: QueueBinding, lease: ActiveLease):
        lease_id = lease.lease_id
        try:
            if binding.report_progress:
                await self.client.progress(binding.name, lease.key, "processing")

            result = await self._invoke(binding, lease.claim)
            body = binding.completion_body(result)

            await self.registry.stop(lease_id)
            if lease.abandoned:
                return
            if lease.lost:
                logger.warning("%s %s finished after its lease was lost; result discarded", binding.name, lease.key)
                return

            if await self.client.complete(binding.name, lease.key, body):
                logger.info("%s %s completed", binding.name, lease.key)
            else:
                # Server kept the lease; the reaper will hand it out again
                logger.error("%s %s handler succeeded but completion was not accepted", binding.name, lease.key)

        except LeaseLostError:
            logger.warning("%s %s was reclaimed by the server; result discarded", binding.name, lease.key)
        except Exception as e:
            await self._report_failure(binding, lease, e)
        finally:
            await self.registry.stop(lease_id)
            self.registry.release(lease_id)

    async def _report_failure(self, binding: QueueBinding, lease: ActiveLease, error: Exception):
        """Handler, result encoding or rejected completion: the item is failed on the server."""
        await self.registry.stop(lease.lease_id)
        if lease.abandoned or lease.lost:
            return

        error_msg = f"{type(error).__name__}: {error}"
        logger.error("%s %s failed: %s", binding.name, lease.key, error_msg)
        try:
            if not await self.client.fail(binding.name, lease.key, error_msg):
                logger.error("Failed to report failure for %s", lease.lease_id)
        except LeaseLostError:
            logger.warning("%s %s was reclaimed before its failure was reported", binding.name, lease.key)

    async def drain(self, timeout: Optional[float] = None):
        """Waits up to `timeout` for executing leases, then abandons the rest."""
        timeout = self.drain_timeout if timeout is None else timeout
        tasks = self.registry.execution_tasks()
        if not tasks:
            return

        logger.info("Waiting up to %ss for %d active leases to finish...", timeout, len(tasks))
        _, pending = await asyncio.wait(tasks, timeout=timeout)

        if pending:
            abandoned = await self.registry.abandon_all()
            logger.warning("Drain timeout, abandoned %d leases", abandoned)
