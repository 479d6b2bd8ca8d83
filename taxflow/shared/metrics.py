"""Prometheus metrics for the API and the processing pipeline.

Exposes key metrics for monitoring:
- Request counts by endpoint and status
- Request duration histograms
- Job outcomes and stage durations
- External provider calls

Based on Prometheus best practices:
https://prometheus.io/docs/practices/naming/
"""

from prometheus_client import Counter, Histogram, generate_latest
from prometheus_client.openmetrics.exposition import CONTENT_TYPE_LATEST

# Request metrics
http_requests_total = Counter(
    "http_requests_total",
    "Total HTTP requests",
    ["method", "endpoint", "status"],
)

http_request_duration_seconds = Histogram(
    "http_request_duration_seconds",
    "HTTP request duration in seconds",
    ["method", "endpoint"],
    buckets=(0.01, 0.05, 0.1, 0.5, 1.0, 2.5, 5.0, 10.0),
)

# Job metrics
jobs_submitted_total = Counter(
    "jobs_submitted_total",
    "Total processing jobs submitted",
    ["content_type"],
)

jobs_finished_total = Counter(
    "jobs_finished_total",
    "Total processing jobs that reached a resting stage",
    ["stage"],  # completed, ready_for_review, failed, cancelled, queued (retry)
)

stage_duration_seconds = Histogram(
    "pipeline_stage_duration_seconds",
    "Duration of a single pipeline stage in seconds",
    ["stage"],
    buckets=(0.01, 0.1, 0.5, 1.0, 5.0, 15.0, 30.0, 60.0, 120.0),
)

lease_conflicts_total = Counter(
    "job_lease_conflicts_total",
    "Lease acquisitions rejected because another worker holds the job",
)

# External provider metrics
provider_requests_total = Counter(
    "provider_requests_total",
    "Total external provider calls",
    ["port", "status"],  # port: classification, vision; status: success, failed, timeout, open
)


def get_metrics() -> tuple[bytes, str]:
    """Generate Prometheus metrics in text format.

    Returns:
        Tuple of (metrics bytes, content type)
    """
    return generate_latest(), CONTENT_TYPE_LATEST
