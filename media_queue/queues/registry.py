from media_queue.domain.retry import RetryPolicy
from media_queue.queues.events import EventBatchQueue
from media_queue.queues.jobs import ProxyJobQueue
from media_queue.settings import settings


def _policy(max_attempts: int) -> RetryPolicy:
    return RetryPolicy(
        max_attempts=max_attempts,
        base_delay_seconds=settings.RETRY_BASE_DELAY_SECONDS,
        max_delay_seconds=settings.RETRY_MAX_DELAY_SECONDS,
    )


proxy_jobs = ProxyJobQueue(retry_policy=_policy(settings.JOB_MAX_ATTEMPTS))
event_batches = EventBatchQueue(retry_policy=_policy(settings.EVENT_BATCH_MAX_ATTEMPTS))


def get_job_queue() -> ProxyJobQueue:
    return proxy_jobs


def get_event_queue() -> EventBatchQueue:
    return event_batches
