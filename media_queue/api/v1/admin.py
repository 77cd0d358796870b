from fastapi import APIRouter, HTTPException, status

from media_queue.api.deps import DbSession, EventQueue, JobQueue, SessionFactory
from media_queue.api.v1.schemas import EventBatchDTO, JobCreate, ProxyJobDTO, envelope
from media_queue.domain.errors import ItemNotFoundError
from media_queue.domain.states import ProxyStatus
from media_queue.scheduler.ticker import run_maintenance
from media_queue.sinks.assets import set_proxy_status

router = APIRouter()


@router.post("/jobs", status_code=status.HTTP_201_CREATED)
async def create_job(payload: JobCreate, session: DbSession, jobs: JobQueue):
    job_id = await jobs.enqueue_job(
        session,
        asset_id=payload.asset_id,
        space_name=payload.space_name,
        primary_file_path=payload.primary_file_path,
        asset_type=payload.asset_type,
        job_type=payload.job_type,
    )
    await set_proxy_status(session, payload.asset_id, ProxyStatus.QUEUED)
    await session.commit()

    job = await jobs.get(session, job_id)
    return envelope(ProxyJobDTO.model_validate(job))


@router.get("/jobs/{job_id}")
async def get_job(job_id: int, session: DbSession, jobs: JobQueue):
    job = await jobs.get(session, job_id)
    if not job:
        raise HTTPException(status_code=404, detail=str(ItemNotFoundError(jobs.kind, job_id)))
    return envelope(ProxyJobDTO.model_validate(job))


@router.get("/events/{batch_id}")
async def get_batch(batch_id: str, session: DbSession, events: EventQueue):
    batch = await events.get(session, batch_id)
    if not batch:
        raise HTTPException(status_code=404, detail=str(ItemNotFoundError(events.kind, batch_id)))
    return envelope(EventBatchDTO.model_validate(batch))


@router.post("/expire_stale")
async def trigger_maintenance(session_factory: SessionFactory, jobs: JobQueue, events: EventQueue):
    report = await run_maintenance(session_factory, [jobs, events])
    return envelope(report)
