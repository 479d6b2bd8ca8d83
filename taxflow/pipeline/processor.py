"""Invoice processing pipeline.

Sequences extraction, classification and tax computation for one job:

    queued -> parsing -> classifying -> tax_computing -> ready_for_review | completed

Every run holds the job's lease, persists a progress snapshot on entering
each stage, checkpoints each stage's output and checks for cancellation
before each stage and after each external call. Failures feed the retry
policy: retryable errors send the job back to ``queued`` until
``max_attempts`` is used up.
"""

import logging
import time
import uuid
from collections.abc import AsyncIterator
from contextlib import asynccontextmanager

from taxflow.classification.base import ClassificationProvider
from taxflow.classification.factory import create_classification_provider
from taxflow.classification.schema import Classification, ContextHints
from taxflow.extraction.base import VisionExtractionProvider
from taxflow.extraction.factory import create_vision_provider
from taxflow.extraction.schema import ExtractionResult
from taxflow.extraction.ubl_parser import parse_document
from taxflow.pipeline.job import ProcessingJob
from taxflow.pipeline.states import CANCELLABLE_STAGES, FINISHED_STAGES, JobStage
from taxflow.pipeline.store import JobStore
from taxflow.shared import metrics
from taxflow.shared.config import Settings
from taxflow.shared.errors import (
    ClassificationUnavailableError,
    ConcurrencyConflictError,
    InvalidTransitionError,
    MalformedInputError,
    StaleProgressError,
    TaxflowError,
    VisionExtractionError,
)
from taxflow.shared.guard import ProviderGuard
from taxflow.tax.engine import TaxCalculator
from taxflow.tax.rules import RetentionAgentPredicate, RuleBook, load_rule_book
from taxflow.tax.schema import TaxComputationResult, TaxFacts

logger = logging.getLogger(__name__)

XML_CONTENT_TYPES = frozenset({"application/xml", "text/xml"})


def normalize_content_type(content_type: str) -> str:
    return content_type.split(";", 1)[0].strip().lower()


def is_supported_content_type(content_type: str) -> bool:
    media_type = normalize_content_type(content_type)
    return (
        media_type in XML_CONTENT_TYPES
        or media_type.startswith("image/")
        or media_type == "application/pdf"
    )


def _require_checkpoints(job: ProcessingJob, *checkpoints: str) -> None:
    missing = [name for name in checkpoints if getattr(job, name) is None]
    if missing:
        raise InvalidTransitionError(
            f"Job {job.id} cannot enter {job.stage.value}: missing {', '.join(missing)}"
        )


class _CancelledDuringStage(Exception):
    """Cancel flag observed after an external call; the result is dropped."""


class InvoicePipeline:
    """Resumable job pipeline.

    Args:
        store: Job Store implementation
        settings: Application settings
        classifier: Classification provider; created from settings on first use
        vision: Vision provider; created from settings on first use
        rule_book: Tax rules; loaded from ``settings.tax_rules_path`` when omitted
        is_retention_agent: Buyer predicate for the tax engine
    """

    def __init__(
        self,
        store: JobStore,
        settings: Settings,
        *,
        classifier: ClassificationProvider | None = None,
        vision: VisionExtractionProvider | None = None,
        rule_book: RuleBook | None = None,
        is_retention_agent: RetentionAgentPredicate | None = None,
    ) -> None:
        self.store = store
        self.settings = settings
        self._classifier = classifier
        self._vision = vision
        self._calculator = TaxCalculator(
            rule_book=rule_book or load_rule_book(settings.tax_rules_path),
            is_retention_agent=is_retention_agent,
        )
        self._hints = ContextHints(
            tax_regime=settings.default_tax_regime,
            default_city=settings.default_city_code,
        )
        self.classification_guard = ProviderGuard.from_settings(
            "classification",
            ClassificationUnavailableError,
            settings,
            timeout_seconds=settings.classification_timeout_seconds,
        )
        self.vision_guard = ProviderGuard.from_settings(
            "vision",
            VisionExtractionError,
            settings,
            timeout_seconds=settings.vision_timeout_seconds,
        )

    @property
    def classifier(self) -> ClassificationProvider:
        if self._classifier is None:
            self._classifier = create_classification_provider(self.settings)
        return self._classifier

    @property
    def vision(self) -> VisionExtractionProvider:
        if self._vision is None:
            self._vision = create_vision_provider(self.settings)
        return self._vision

    @asynccontextmanager
    async def _lease(self, job_id: str) -> AsyncIterator[None]:
        owner = uuid.uuid4().hex
        if not await self.store.acquire_lease(job_id, owner, self.settings.job_lease_seconds):
            metrics.lease_conflicts_total.inc()
            raise ConcurrencyConflictError(job_id)
        try:
            yield
        finally:
            await self.store.release_lease(job_id, owner)

    # Job control

    async def submit(
        self, document: bytes, content_type: str, filename: str | None = None
    ) -> ProcessingJob:
        """Create a queued job for ``document``."""
        job = ProcessingJob(
            max_attempts=self.settings.job_max_attempts,
            filename=filename,
            content_type=normalize_content_type(content_type),
        )
        job.progress = job.progress.model_copy(update={"message": "Queued for processing"})
        await self.store.put_document(job.id, document)
        await self.store.create(job)
        metrics.jobs_submitted_total.labels(content_type=job.content_type).inc()
        logger.info(f"Submitted job {job.id} ({job.content_type}, {len(document)} bytes)")
        return job

    async def run(self, job_id: str) -> ProcessingJob:
        """Run a job from its current stage to a resting stage.

        Returns the job as persisted. A job left in ``queued`` failed with
        a retryable error and should be re-enqueued.

        Raises:
            ConcurrencyConflictError: Another worker holds the job
            JobNotFoundError: Unknown job id
        """
        async with self._lease(job_id):
            job = await self.store.get(job_id)
            if job.stage in FINISHED_STAGES or job.stage == JobStage.FAILED:
                logger.info(f"Job {job_id} is {job.stage.value}; nothing to run")
                return job
            return await self._execute(job)

    async def retry(self, job_id: str) -> ProcessingJob:
        """Move a failed job back to ``queued``.

        Raises:
            InvalidTransitionError: Job is not failed or has no attempts left
            ConcurrencyConflictError: Another worker holds the job
        """
        async with self._lease(job_id):
            job = await self.store.get(job_id)
            if job.stage != JobStage.FAILED:
                raise InvalidTransitionError(
                    f"Only failed jobs can be retried; job {job_id} is {job.stage.value}"
                )
            if not job.can_retry:
                raise InvalidTransitionError(
                    f"Job {job_id} has used all {job.max_attempts} attempts"
                )
            await self.store.clear_cancel(job_id)
            job.advance(JobStage.QUEUED, message="Retry requested")
            await self.store.save(job)
            logger.info(f"Job {job_id} re-queued (attempt {job.attempts + 1}/{job.max_attempts})")
            return job

    async def cancel(self, job_id: str) -> ProcessingJob:
        """Cancel a queued or in-progress job.

        If a worker is running the job, a cancel flag is set instead and the
        worker stops before its next stage.

        Raises:
            InvalidTransitionError: Job already finished or failed
        """
        try:
            async with self._lease(job_id):
                job = await self.store.get(job_id)
                self._cancel(job, "Cancelled on request")
                await self.store.save(job)
                return job
        except StaleProgressError:
            raise
        except ConcurrencyConflictError:
            job = await self.store.get(job_id)
            if job.stage not in CANCELLABLE_STAGES:
                raise InvalidTransitionError(
                    f"Cannot cancel job {job_id} in stage {job.stage.value}"
                ) from None
            await self.store.request_cancel(job_id)
            logger.info(f"Job {job_id} is running elsewhere; cancel requested")
            return job

    # Execution

    async def _execute(self, job: ProcessingJob) -> ProcessingJob:
        stages = (
            (JobStage.PARSING, "extraction", self._parse, "Document parsed"),
            (JobStage.CLASSIFYING, "classification", self._classify, "Invoice classified"),
            (JobStage.TAX_COMPUTING, "tax_result", self._compute_taxes, "Taxes computed"),
        )

        for stage, checkpoint, step, done_message in stages:
            if getattr(job, checkpoint) is not None:
                logger.debug(f"Job {job.id}: skipping {stage.value}, checkpoint present")
                continue
            if await self.store.is_cancel_requested(job.id):
                return await self._persist_cancel(job)

            job.advance(stage, message=f"Started {stage.value.replace('_', ' ')}")
            await self.store.save(job)

            started = time.perf_counter()
            try:
                result = await step(job)
            except _CancelledDuringStage:
                return await self._persist_cancel(job)
            except TaxflowError as e:
                return await self._fail(job, e, retryable=e.retryable)
            except Exception as e:
                logger.exception(f"Unexpected error in {stage.value} for job {job.id}: {e}")
                return await self._fail(job, e, retryable=True)
            finally:
                metrics.stage_duration_seconds.labels(stage=stage.value).observe(
                    time.perf_counter() - started
                )

            setattr(job, checkpoint, result)
            job.advance(stage, message=done_message, percent=job.progress.percent + 20)
            await self.store.save(job)

        if await self.store.is_cancel_requested(job.id):
            return await self._persist_cancel(job)
        return await self._finalize(job)

    async def _parse(self, job: ProcessingJob) -> ExtractionResult:
        document = await self.store.get_document(job.id)
        media_type = normalize_content_type(job.content_type)

        if media_type in XML_CONTENT_TYPES:
            return parse_document(document)

        if media_type.startswith("image/") or media_type == "application/pdf":
            extraction = await self.vision_guard.call(self.vision.extract, document, media_type)
            await self._raise_if_cancelled(job)
            return extraction

        raise MalformedInputError(f"Unsupported content type: {job.content_type}")

    async def _classify(self, job: ProcessingJob) -> Classification:
        _require_checkpoints(job, "extraction")
        classification = await self.classification_guard.call(
            self.classifier.classify, job.extraction, self._hints
        )
        await self._raise_if_cancelled(job)
        return classification

    async def _compute_taxes(self, job: ProcessingJob) -> TaxComputationResult:
        _require_checkpoints(job, "extraction", "classification")
        return self._calculator.calculate(
            TaxFacts.from_extraction(job.extraction), job.classification
        )

    async def _raise_if_cancelled(self, job: ProcessingJob) -> None:
        if await self.store.is_cancel_requested(job.id):
            logger.info(f"Job {job.id} cancelled while waiting on a provider; result discarded")
            raise _CancelledDuringStage()

    async def _finalize(self, job: ProcessingJob) -> ProcessingJob:
        _require_checkpoints(job, "extraction", "classification", "tax_result")

        # Resumed with every checkpoint present; re-enter the last stage first.
        if job.stage != JobStage.TAX_COMPUTING:
            job.advance(JobStage.TAX_COMPUTING, message="Resuming finalization", percent=90)
            await self.store.save(job)

        threshold = self.settings.review_confidence_threshold
        reasons = []
        if job.extraction.needs_review(threshold):
            reasons.append(f"extraction confidence {job.extraction.confidence:.2f}")
        if job.classification.confidence < threshold:
            reasons.append(f"classification confidence {job.classification.confidence:.2f}")
        if job.tax_result.warnings:
            reasons.append(f"{len(job.tax_result.warnings)} tax warning(s)")

        if reasons:
            job.advance(JobStage.READY_FOR_REVIEW, message="Needs review: " + ", ".join(reasons))
        else:
            job.advance(JobStage.COMPLETED, message="Processing complete")
        await self.store.save(job)

        metrics.jobs_finished_total.labels(stage=job.stage.value).inc()
        logger.info(f"Job {job.id} finished as {job.stage.value}")
        return job

    async def _fail(
        self, job: ProcessingJob, error: BaseException, *, retryable: bool
    ) -> ProcessingJob:
        job.attempts += 1
        job.last_error = str(error) or type(error).__name__
        job.advance(JobStage.FAILED, message=job.last_error)
        await self.store.save(job)

        if retryable and job.attempts < job.max_attempts:
            job.advance(
                JobStage.QUEUED,
                message=f"Retrying after attempt {job.attempts}/{job.max_attempts}: "
                f"{job.last_error}",
            )
            await self.store.save(job)
            metrics.jobs_finished_total.labels(stage=JobStage.QUEUED.value).inc()
            logger.warning(f"Job {job.id} attempt {job.attempts} failed, re-queued: {error}")
        else:
            metrics.jobs_finished_total.labels(stage=JobStage.FAILED.value).inc()
            logger.error(f"Job {job.id} failed after {job.attempts} attempt(s): {error}")
        return job

    def _cancel(self, job: ProcessingJob, message: str) -> None:
        if job.stage not in CANCELLABLE_STAGES:
            raise InvalidTransitionError(f"Cannot cancel job {job.id} in stage {job.stage.value}")
        job.advance(JobStage.CANCELLED, message=message)

    async def _persist_cancel(self, job: ProcessingJob) -> ProcessingJob:
        self._cancel(job, "Cancelled during processing")
        await self.store.save(job)
        await self.store.clear_cancel(job.id)
        metrics.jobs_finished_total.labels(stage=JobStage.CANCELLED.value).inc()
        logger.info(f"Job {job.id} cancelled")
        return job
