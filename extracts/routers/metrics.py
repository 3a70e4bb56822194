"""Prometheus metrics for the API and the worker."""

from fastapi import APIRouter, Response
from prometheus_client import (
    CONTENT_TYPE_LATEST,
    Counter,
    Gauge,
    Histogram,
    generate_latest,
)

router = APIRouter()

# Job metrics
JOBS_PROCESSED = Counter(
    "extracts_jobs_processed_total",
    "Jobs finished by the worker",
    ["job_type", "outcome"],
)

JOB_DURATION = Histogram(
    "extracts_job_duration_seconds",
    "Job handler duration in seconds",
    ["job_type"],
    buckets=[1, 5, 15, 30, 60, 120, 300, 600, 1200],
)

JOBS_REQUEUED = Counter(
    "extracts_jobs_requeued_total",
    "Exhausted jobs re-enqueued by disposition",
    ["job_type", "disposition"],
)

# Code delivery metrics
CODE_WAITS = Counter(
    "extracts_code_waits_total",
    "Code waits by kind and outcome",
    ["kind", "outcome"],
)

CODES_PUBLISHED = Counter(
    "extracts_codes_published_total",
    "Codes received by the delivery endpoint",
    ["kind", "delivered"],
)

PENDING_CODE_REQUESTS = Gauge(
    "extracts_pending_code_requests",
    "Code subscriptions currently open in this process",
)

# Status sweep metrics
SWEEP_RUNS = Counter(
    "extracts_status_sweep_runs_total",
    "Status sweep ticks by outcome",
    ["outcome"],
)

ORDERS_DOWNLOADED = Counter(
    "extracts_orders_downloaded_total",
    "Orders whose artifact was downloaded and validated",
)

WORKER_READY = Gauge(
    "extracts_worker_ready",
    "Worker initialization state (1=ready, 0=not ready)",
)


def record_job(job_type: str, outcome: str, duration: float):
    """Record a finished job."""
    JOBS_PROCESSED.labels(job_type=job_type, outcome=outcome).inc()
    JOB_DURATION.labels(job_type=job_type).observe(duration)


def record_requeue(job_type: str, disposition: str):
    JOBS_REQUEUED.labels(job_type=job_type, disposition=disposition).inc()


def record_code_wait(kind: str, outcome: str):
    """Record a code wait outcome (delivered, timeout, cancelled)."""
    CODE_WAITS.labels(kind=kind, outcome=outcome).inc()


def record_code_published(kind: str, subscribers: int):
    CODES_PUBLISHED.labels(kind=kind, delivered=str(subscribers > 0).lower()).inc()


def set_pending_code_requests(count: int):
    PENDING_CODE_REQUESTS.set(count)


def record_sweep(outcome: str):
    """Record a sweep tick (ran, skipped, failed)."""
    SWEEP_RUNS.labels(outcome=outcome).inc()


def record_download():
    ORDERS_DOWNLOADED.inc()


def set_worker_ready(is_ready: bool):
    WORKER_READY.set(1 if is_ready else 0)


@router.get("/metrics", include_in_schema=False)
async def metrics():
    """Prometheus metrics endpoint.

    Returns metrics in Prometheus text format for scraping.
    This endpoint is excluded from OpenAPI docs.
    """
    return Response(
        content=generate_latest(),
        media_type=CONTENT_TYPE_LATEST,
    )
