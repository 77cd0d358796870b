import logging

from fastapi import APIRouter, HTTPException

from media_queue.api.deps import DbSession, EventQueue, JobQueue
from media_queue.api.v1.schemas import (
    CompleteBatchRequest,
    CompleteJobRequest,
    EventBatchClaim,
    FailRequest,
    JobClaim,
    ProgressRequest,
    ProxyJobDTO,
    WorkerRequest,
    envelope,
)
from media_queue.domain.errors import LeaseNotHeldError, ResultSinkError
from media_queue.domain.states import LeaseStatus, ProxyStatus
from media_queue.settings import settings
from media_queue.sinks.assets import apply_job_result, set_proxy_status
from media_queue.sinks.events import store_events

logger = logging.getLogger(__name__)

router = APIRouter()

OK = envelope({"ok": True})


def not_held(key, worker_id) -> HTTPException:
    return HTTPException(status_code=404, detail=str(LeaseNotHeldError(key, worker_id)))


@router.get("/status")
async def worker_status(session: DbSession, jobs: JobQueue, events: EventQueue):
    return envelope({
        "workerApiEnabled": bool(settings.WORKER_API_KEY),
        "queues": {
            jobs.kind.value: await jobs.stats(session),
            events.kind.value: await events.stats(session),
        },
    })


# --- Proxy jobs ---

@router.post("/jobs/claim")
async def claim_job(body: WorkerRequest, session: DbSession, jobs: JobQueue):
    job = await jobs.claim_next(session, body.worker_id)
    if job is None:
        return envelope(None)

    await set_proxy_status(session, job.asset_id, ProxyStatus.GENERATING)
    await session.commit()

    logger.info("Catalog job %s (asset %s) claimed by %s", job.id, job.asset_id, body.worker_id)
    return envelope(JobClaim(
        job=ProxyJobDTO.model_validate(job),
        catalog_data_path=settings.CATALOG_DATA_PATH,
    ))


@router.put("/jobs/{job_id}/progress")
async def job_progress(job_id: int, body: ProgressRequest, session: DbSession, jobs: JobQueue):
    if not await jobs.progress(session, job_id, body.worker_id, body.stage):
        raise not_held(job_id, body.worker_id)
    await session.commit()
    return OK


@router.put("/jobs/{job_id}/heartbeat")
async def job_heartbeat(job_id: int, body: WorkerRequest, session: DbSession, jobs: JobQueue):
    if not await jobs.heartbeat(session, job_id, body.worker_id):
        raise not_held(job_id, body.worker_id)
    await session.commit()
    return OK


@router.put("/jobs/{job_id}/complete")
async def job_complete(job_id: int, body: CompleteJobRequest, session: DbSession, jobs: JobQueue):
    """
    Writes the result onto the asset and marks the job completed in one
    transaction. If the asset write fails the job is left claimed so the
    reaper hands it out again.
    """
    job = await jobs.get(session, job_id)
    if job is None or job.status != LeaseStatus.CLAIMED or job.claimed_by != body.worker_id:
        raise not_held(job_id, body.worker_id)

    result = body.result.as_result()
    try:
        await apply_job_result(session, job.asset_id, result)
    except ResultSinkError as e:
        await session.rollback()
        logger.error("Job %s result not stored, lease kept: %s", job_id, e)
        raise HTTPException(status_code=500, detail="Failed to store job result")

    if not await jobs.complete(session, job_id, body.worker_id, result):
        # Lease lost between the check and the update
        await session.rollback()
        raise not_held(job_id, body.worker_id)

    await session.commit()
    logger.info("Catalog job %s completed by %s (proxy status %s)", job_id, body.worker_id, result.get("proxyStatus"))
    return OK


@router.put("/jobs/{job_id}/fail")
async def job_fail(job_id: int, body: FailRequest, session: DbSession, jobs: JobQueue):
    job = await jobs.get(session, job_id)
    if job is None:
        raise not_held(job_id, body.worker_id)
    asset_id = job.asset_id
    retrying = job.attempts < job.max_attempts

    if not await jobs.fail(session, job_id, body.worker_id, body.error):
        raise not_held(job_id, body.worker_id)

    await set_proxy_status(session, asset_id, ProxyStatus.QUEUED if retrying else ProxyStatus.FAILED)
    await session.commit()

    logger.warning("Catalog job %s failed on %s: %s", job_id, body.worker_id, body.error)
    return OK


# --- Event batches ---

@router.post("/events/claim")
async def claim_batch(body: WorkerRequest, session: DbSession, events: EventQueue):
    batch = await events.claim_next(session, body.worker_id)
    if batch is None:
        return envelope(None)

    await session.commit()
    return envelope(EventBatchClaim.model_validate(batch))


@router.put("/events/{batch_id}/heartbeat")
async def batch_heartbeat(batch_id: str, body: WorkerRequest, session: DbSession, events: EventQueue):
    if not await events.heartbeat(session, batch_id, body.worker_id):
        raise not_held(batch_id, body.worker_id)
    await session.commit()
    return OK


@router.put("/events/{batch_id}/complete")
async def batch_complete(batch_id: str, body: CompleteBatchRequest, session: DbSession, events: EventQueue):
    """Stores the parsed events and completes the batch atomically."""
    try:
        stored = await store_events(
            session,
            batch_id,
            (event.model_dump(exclude_none=True) for event in body.events),
        )
    except ResultSinkError as e:
        await session.rollback()
        logger.error("Batch %s events not stored, lease kept: %s", batch_id, e)
        raise HTTPException(status_code=500, detail="Failed to store events")

    if not await events.complete_batch(session, batch_id, body.worker_id, stored):
        # Stale or foreign claim: discard the events written above
        await session.rollback()
        raise not_held(batch_id, body.worker_id)

    await session.commit()
    logger.info("Event batch %s completed by %s (%d events)", batch_id, body.worker_id, stored)
    return envelope({"eventsProcessed": stored})


@router.put("/events/{batch_id}/fail")
async def batch_fail(batch_id: str, body: FailRequest, session: DbSession, events: EventQueue):
    if not await events.fail(session, batch_id, body.worker_id, body.error):
        raise not_held(batch_id, body.worker_id)
    await session.commit()
    return OK
