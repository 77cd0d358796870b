import asyncio
import logging
import sys

from pydantic import ValidationError

from media_worker.client import WorkerClient
from media_worker.config import WorkerSettings, load_handler
from media_worker.kinds import EVENTS, JOBS
from media_worker.loop import WorkerLoop

logger = logging.getLogger("media_worker")


def build_loop(config: WorkerSettings, client: WorkerClient) -> WorkerLoop:
    # Priority order: proxy jobs first, then event batches
    handlers = []
    if config.JOB_HANDLER:
        handlers.append((JOBS, load_handler(config.JOB_HANDLER)))
    if config.EVENT_PROCESSING_ENABLED and config.EVENT_HANDLER:
        handlers.append((EVENTS, load_handler(config.EVENT_HANDLER)))

    return WorkerLoop(
        client,
        handlers,
        max_concurrent=config.MAX_CONCURRENT_JOBS,
        poll_interval=config.POLL_INTERVAL_SECONDS,
        heartbeat_interval=config.HEARTBEAT_INTERVAL_SECONDS,
        drain_timeout=config.DRAIN_TIMEOUT_SECONDS,
    )


async def main(config: WorkerSettings) -> int:
    client = WorkerClient(config.MANAGER_URL, config.WORKER_ID, config.WORKER_API_KEY)
    try:
        loop = build_loop(config, client)

        logger.info("Checking manager connectivity at %s ...", config.MANAGER_URL)
        if await client.status() is None:
            logger.error("Cannot reach manager at %s; check URL and API key", config.MANAGER_URL)
            return 1
        logger.info("Manager connection verified")

        loop.install_signal_handlers()
        await loop.run()
        return 0
    finally:
        await client.close()


def run() -> None:
    try:
        config = WorkerSettings()
    except ValidationError as e:
        print(f"Invalid worker configuration:\n{e}", file=sys.stderr)
        sys.exit(2)

    logging.basicConfig(
        level=config.LOG_LEVEL.upper(),
        format="%(asctime)s %(levelname)s %(name)s: %(message)s",
    )
    sys.exit(asyncio.run(main(config)))


if __name__ == "__main__":
    run()
