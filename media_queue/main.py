import asyncio
import logging
from contextlib import asynccontextmanager

from fastapi import Depends, FastAPI
from sqlalchemy.exc import OperationalError

from media_queue.settings import settings
from media_queue.auth.security import require_worker
from media_queue.api.v1.worker import router as worker_router
from media_queue.api.v1.admin import router as admin_router
from media_queue.api.v1.ingest import router as ingest_router
from media_queue.api.v1.metrics import router as metrics_router

logger = logging.getLogger("uvicorn")


@asynccontextmanager
async def lifespan(app: FastAPI):
    # Startup
    from media_queue.db.session import init_db
    from media_queue.queues.registry import event_batches, proxy_jobs
    from media_queue.scheduler.service import ReaperService

    # 1. Schema (retry while the database container is still coming up)
    for i in range(10):
        try:
            await init_db()
            break
        except OperationalError as e:
            logger.warning(f"Database not ready, retrying in 2s... ({i+1}/10): {e}")
            await asyncio.sleep(2)

    if not settings.WORKER_API_KEY:
        logger.warning("WORKER_API_KEY is not set; the worker API will refuse all requests.")

    # 2. Start Reaper
    reaper = ReaperService([proxy_jobs, event_batches])
    await reaper.start()

    yield

    # Shutdown
    await reaper.stop()

app = FastAPI(
    title=settings.PROJECT_NAME,
    lifespan=lifespan
)

app.include_router(worker_router, prefix="/api/v1/worker", tags=["worker"], dependencies=[Depends(require_worker)])
app.include_router(admin_router, prefix="/api/v1/admin", tags=["admin"], dependencies=[Depends(require_worker)])
app.include_router(ingest_router, prefix="/api/v1/ingest", tags=["ingest"])
app.include_router(metrics_router, tags=["metrics"])


@app.get("/health")
async def health():
    return {"status": "ok"}
