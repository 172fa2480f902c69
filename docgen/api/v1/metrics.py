from prometheus_client import Counter, Gauge, Histogram, generate_latest, CONTENT_TYPE_LATEST
from fastapi import APIRouter, Response

router = APIRouter()

# Metrics Definitions
QUEUE_DEPTH = Gauge('docgen_queue_depth', 'Number of claimable generation jobs at the last check')
POLLER_RUNNING = Gauge('docgen_poller_running', 'Whether the poll loop is running (1) or stopped (0)')

JOB_CLAIMS = Counter('docgen_job_claims_total', 'Claim attempts by result', ['result'])  # claimed|lost|exhausted
JOB_OUTCOMES = Counter('docgen_job_outcomes_total', 'Processed jobs by outcome', ['outcome'])
JOB_FAILURES = Counter('docgen_job_failures_total', 'Job failures by classification', ['kind'])

POLL_CYCLE_ERRORS = Counter('docgen_poll_cycle_errors_total', 'Poll cycles aborted by a job store error')
POLL_CYCLES_SKIPPED = Counter('docgen_poll_cycles_skipped_total', 'Poll cycles skipped because one was in progress')

JOB_DURATION = Histogram(
    'docgen_job_duration_seconds',
    'Time from claim to terminal write',
    buckets=[0.5, 1.0, 5.0, 10.0, 30.0, 60.0, 120.0, 300.0],
)

EXPIRED_LOCKS_REQUEUED = Counter(
    'docgen_expired_locks_requeued_total',
    'PROCESSING jobs demoted after their lease expired',
)

ARTIFACT_LINK_FAILURES = Counter(
    'docgen_artifact_link_failures_total',
    'Parent record links that could not be created for an uploaded artifact',
)


@router.get("/metrics")
async def metrics():
    return Response(content=generate_latest(), media_type=CONTENT_TYPE_LATEST)
