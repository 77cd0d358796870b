from prometheus_client import Counter, Gauge, CONTENT_TYPE_LATEST, generate_latest
from fastapi import APIRouter, Response

router = APIRouter()

# Metrics Definitions
QUEUE_DEPTH = Gauge('work_queue_items', 'Number of queue items by status', ['queue', 'status'])

ITEMS_ENQUEUED = Counter('work_queue_enqueued_total', 'Total items enqueued', ['queue'])

CLAIM_TOTAL = Counter(
    'work_queue_claims_total',
    'Claim attempts by outcome',
    ['queue', 'outcome']  # claimed | empty
)

ITEMS_COMPLETED = Counter('work_queue_completed_total', 'Total items completed', ['queue'])

ITEMS_FAILED = Counter(
    'work_queue_failed_total',
    'Total failure reports',
    ['queue', 'type']  # retryable | final
)

STALE_RECLAIMED = Counter(
    'work_queue_reclaimed_total',
    'Total claimed items returned to pending by the reaper',
    ['queue']
)

ITEMS_CLEANED = Counter('work_queue_cleaned_total', 'Total terminal items deleted by retention', ['queue'])

REAPER_ERRORS = Counter('reaper_errors_total', 'Maintenance failures per queue', ['queue'])


@router.get("/metrics")
async def metrics():
    return Response(content=generate_latest(), media_type=CONTENT_TYPE_LATEST)
