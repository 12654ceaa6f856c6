from prometheus_client import Counter, Gauge, Histogram, generate_latest, CONTENT_TYPE_LATEST
from fastapi import APIRouter, Response

router = APIRouter()

# Metrics Definitions
JOBS_DISPATCHED = Counter('job_dispatch_total', 'Jobs launched through the dispatcher', ['mode'])
DISPATCH_REJECTIONS = Counter('job_dispatch_rejected_total', 'Dispatches refused before launch', ['reason'])  # duplicate|capacity|chain_depth|validation
JOB_FAILURES = Counter('job_failures_total', 'Failed job records by retry outcome', ['type'])  # retryable|final
JOB_TERMINAL_TOTAL = Counter('job_terminal_total', 'Job records reaching a terminal status', ['status'])
JOB_DURATION = Histogram('job_duration_seconds', 'Time from first batch to terminal status', buckets=[1.0, 5.0, 10.0, 60.0, 300.0, 1800.0])

JOBS_ACTIVE = Gauge(
    "jobs_active",
    "Job records in a non-terminal status",
    ["status"]
)

ENGINE_INFLIGHT = Gauge(
    "engine_inflight_units",
    "Units the execution engine currently holds in a non-terminal state"
)

CANCEL_REQUESTS = Counter(
    "job_cancel_requests_total",
    "Dashboard cancel requests",
    ["accepted"]
)

RECONCILE_DURATION = Histogram(
    "reconcile_tick_seconds",
    "Duration of one reconciliation tick",
    buckets=[0.01, 0.05, 0.1, 0.5, 1.0, 5.0]
)

NOTIFICATIONS_TOTAL = Counter(
    "job_notifications_total",
    "Terminal-state notifications handed to the notifier",
    ["result"]  # published|failed
)


@router.get("/metrics")
async def metrics():
    return Response(content=generate_latest(), media_type=CONTENT_TYPE_LATEST)
