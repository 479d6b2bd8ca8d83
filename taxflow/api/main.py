"""FastAPI application for invoice job control.

Endpoints:
- Health and readiness checks for Kubernetes
- Job submission, status, retry and cancel
- Stateless tax calculation
- Prometheus metrics for monitoring

Jobs run on the arq worker when the queue is enabled, otherwise in-process
as background tasks against an in-memory store.

Based on FastAPI best practices:
https://fastapi.tiangolo.com/
"""

import asyncio
import logging
import time
from datetime import datetime
from typing import Any

from arq import create_pool
from arq.connections import ArqRedis
from fastapi import (
    BackgroundTasks,
    Depends,
    FastAPI,
    File,
    HTTPException,
    Request,
    Response,
    UploadFile,
    status,
)
from fastapi.responses import JSONResponse
from pydantic import BaseModel

from taxflow.classification.schema import Classification
from taxflow.extraction.schema import ExtractionResult
from taxflow.pipeline.job import ProcessingJob
from taxflow.pipeline.processor import InvoicePipeline, is_supported_content_type
from taxflow.pipeline.states import JobProgress, JobStage
from taxflow.pipeline.store import InMemoryJobStore, RedisJobStore
from taxflow.pipeline.tasks import WorkerSettings, enqueue_job, retry_delay_seconds
from taxflow.shared import metrics
from taxflow.shared.config import get_settings
from taxflow.shared.errors import (
    ConcurrencyConflictError,
    InvalidTransitionError,
    JobNotFoundError,
    TaxInputError,
)
from taxflow.tax.engine import calculate_taxes
from taxflow.tax.rules import load_rule_book
from taxflow.tax.schema import TaxFacts

logger = logging.getLogger(__name__)

settings = get_settings()
app = FastAPI(
    title="Invoice Tax Pipeline",
    description="Colombian invoice extraction, classification and tax computation",
    version=settings.service_version,
)

_arq_pool: ArqRedis | None = None
_pipeline: InvoicePipeline | None = None


async def get_arq_pool() -> ArqRedis:
    """Shared arq connection, created on first use."""
    global _arq_pool
    if _arq_pool is None:
        _arq_pool = await create_pool(WorkerSettings.get_redis_settings())
    return _arq_pool


async def get_pipeline() -> InvoicePipeline:
    """Pipeline bound to the Redis store (queue enabled) or an in-memory one."""
    global _pipeline
    if _pipeline is None:
        if settings.queue_enabled:
            store = RedisJobStore(await get_arq_pool())
        else:
            store = InMemoryJobStore()
        _pipeline = InvoicePipeline(store, settings)
    return _pipeline


@app.middleware("http")
async def metrics_middleware(request: Request, call_next):  # type: ignore[no-untyped-def]
    """Middleware to collect request metrics.

    Tracks:
    - Request count by method, endpoint, and status
    - Request duration by method and endpoint
    """
    # Skip metrics for /metrics endpoint itself
    if request.url.path == "/metrics":
        return await call_next(request)

    start_time = time.time()
    response = await call_next(request)
    duration = time.time() - start_time

    # Route template keeps job ids out of label values
    route = request.scope.get("route")
    endpoint = getattr(route, "path", request.url.path)

    metrics.http_requests_total.labels(
        method=request.method,
        endpoint=endpoint,
        status=response.status_code,
    ).inc()

    metrics.http_request_duration_seconds.labels(
        method=request.method,
        endpoint=endpoint,
    ).observe(duration)

    return response


@app.exception_handler(JobNotFoundError)
async def job_not_found_handler(request: Request, exc: JobNotFoundError) -> JSONResponse:
    return JSONResponse(status_code=status.HTTP_404_NOT_FOUND, content={"detail": str(exc)})


@app.exception_handler(InvalidTransitionError)
async def invalid_transition_handler(
    request: Request, exc: InvalidTransitionError
) -> JSONResponse:
    return JSONResponse(status_code=status.HTTP_409_CONFLICT, content={"detail": str(exc)})


@app.exception_handler(ConcurrencyConflictError)
async def conflict_handler(request: Request, exc: ConcurrencyConflictError) -> JSONResponse:
    return JSONResponse(status_code=status.HTTP_409_CONFLICT, content={"detail": str(exc)})


class HealthResponse(BaseModel):
    """Health check response."""

    status: str
    version: str
    service: str


class ReadinessResponse(BaseModel):
    """Readiness check response."""

    ready: bool


class JobResponse(BaseModel):
    """Processing job status with results once available."""

    id: str
    stage: JobStage
    attempts: int
    max_attempts: int
    progress: JobProgress
    created_at: datetime
    started_at: datetime | None = None
    finished_at: datetime | None = None
    last_error: str | None = None
    filename: str | None = None
    content_type: str
    extraction: ExtractionResult | None = None
    classification: Classification | None = None
    taxes: dict[str, Any] | None = None

    @classmethod
    def from_job(cls, job: ProcessingJob) -> "JobResponse":
        return cls(
            **job.model_dump(exclude={"extraction", "classification", "tax_result", "progress"}),
            progress=job.progress,
            extraction=job.extraction,
            classification=job.classification,
            taxes=job.tax_result.rounded() if job.tax_result else None,
        )


class TaxCalculationRequest(BaseModel):
    """Inputs for a stateless tax calculation."""

    facts: TaxFacts
    classification: Classification


async def run_until_rest(pipeline: InvoicePipeline, job_id: str) -> None:
    """Run a job in-process, backing off between automatic retries."""
    while True:
        try:
            job = await pipeline.run(job_id)
        except ConcurrencyConflictError:
            logger.info(f"Job {job_id} already running elsewhere")
            return
        if job.stage != JobStage.QUEUED:
            return
        await asyncio.sleep(retry_delay_seconds(pipeline.settings, job.attempts))


async def dispatch(
    job_id: str, pipeline: InvoicePipeline, background_tasks: BackgroundTasks
) -> None:
    if settings.queue_enabled:
        await enqueue_job(await get_arq_pool(), job_id)
    else:
        background_tasks.add_task(run_until_rest, pipeline, job_id)


@app.get("/health", response_model=HealthResponse, tags=["Health"])
def health_check() -> HealthResponse:
    """Health check endpoint for liveness probe."""
    return HealthResponse(
        status="healthy", version=settings.service_version, service=settings.service_name
    )


@app.get("/ready", response_model=ReadinessResponse, tags=["Health"])
def readiness_check() -> ReadinessResponse:
    """Readiness check endpoint for Kubernetes readiness probe."""
    return ReadinessResponse(ready=True)


@app.get("/metrics", tags=["Monitoring"])
def get_metrics() -> Response:
    """Prometheus metrics endpoint.

    Returns:
        Prometheus metrics in text format
    """
    metrics_data, content_type = metrics.get_metrics()
    return Response(content=metrics_data, media_type=content_type)


@app.post(
    "/api/v1/jobs",
    response_model=JobResponse,
    status_code=status.HTTP_202_ACCEPTED,
    tags=["Jobs"],
)
async def submit_job(
    background_tasks: BackgroundTasks,
    file: UploadFile = File(..., description="UBL XML invoice, image or PDF"),  # noqa: B008
    pipeline: InvoicePipeline = Depends(get_pipeline),  # noqa: B008
) -> JobResponse:
    """Submit an invoice document for processing.

    ## Usage

    ```bash
    curl -X POST "http://localhost:8000/api/v1/jobs" \\
      -F "file=@factura.xml;type=application/xml"
    ```

    ## Error Handling

    - Returns 400 if the file is empty
    - Returns 415 if the content type is not XML, image or PDF
    """
    content_type = file.content_type or ""
    if not is_supported_content_type(content_type):
        raise HTTPException(
            status_code=status.HTTP_415_UNSUPPORTED_MEDIA_TYPE,
            detail=f"Unsupported file type: {content_type or 'unknown'}. "
            "Send UBL XML, an image or a PDF.",
        )

    content = await file.read()
    if not content:
        raise HTTPException(status_code=status.HTTP_400_BAD_REQUEST, detail="Empty file")

    job = await pipeline.submit(content, content_type, filename=file.filename)
    await dispatch(job.id, pipeline, background_tasks)
    return JobResponse.from_job(job)


@app.get("/api/v1/jobs/{job_id}", response_model=JobResponse, tags=["Jobs"])
async def get_job(
    job_id: str, pipeline: InvoicePipeline = Depends(get_pipeline)  # noqa: B008
) -> JobResponse:
    """Get job status, progress and results."""
    return JobResponse.from_job(await pipeline.store.get(job_id))


@app.post("/api/v1/jobs/{job_id}/retry", response_model=JobResponse, tags=["Jobs"])
async def retry_job(
    job_id: str,
    background_tasks: BackgroundTasks,
    pipeline: InvoicePipeline = Depends(get_pipeline),  # noqa: B008
) -> JobResponse:
    """Re-queue a failed job that still has attempts left.

    Returns 409 when the job is not failed or its attempts are exhausted.
    """
    job = await pipeline.retry(job_id)
    await dispatch(job.id, pipeline, background_tasks)
    return JobResponse.from_job(job)


@app.post("/api/v1/jobs/{job_id}/cancel", response_model=JobResponse, tags=["Jobs"])
async def cancel_job(
    job_id: str, pipeline: InvoicePipeline = Depends(get_pipeline)  # noqa: B008
) -> JobResponse:
    """Cancel a queued or running job.

    A running job stops before its next stage; the response then still
    shows its current stage.
    """
    return JobResponse.from_job(await pipeline.cancel(job_id))


@app.post("/api/v1/tax/calculate", tags=["Tax"])
def calculate(request: TaxCalculationRequest) -> dict[str, Any]:
    """Compute IVA, ReteIVA, ReteFuente and ICA without creating a job.

    Amounts are rounded to two decimals in the response.
    """
    try:
        result = calculate_taxes(
            request.facts,
            request.classification,
            rule_book=load_rule_book(settings.tax_rules_path),
        )
    except TaxInputError as e:
        raise HTTPException(status_code=422, detail=str(e)) from e
    return result.rounded()
