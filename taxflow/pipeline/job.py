"""Processing job record and the downstream invoice bundle."""

import uuid
from datetime import datetime

from pydantic import BaseModel, ConfigDict, Field

from taxflow.classification.schema import Classification
from taxflow.extraction.schema import ExtractionResult
from taxflow.pipeline.states import (
    FINISHED_STAGES,
    IN_PROGRESS_STAGES,
    JobProgress,
    JobStage,
    QueuedProgress,
    make_progress,
    transition,
    utcnow,
)
from taxflow.shared.errors import InvalidTransitionError
from taxflow.tax.schema import TaxComputationResult


class InvoiceBundle(BaseModel):
    """Everything downstream consumers need for one invoice."""

    model_config = ConfigDict(frozen=True)

    invoice_id: str
    extraction: ExtractionResult
    classification: Classification
    tax_result: TaxComputationResult


class ProcessingJob(BaseModel):
    """One document moving through the pipeline.

    Checkpoints (``extraction``, ``classification``, ``tax_result``) survive
    failures and retries so a resumed job skips work already done.
    """

    id: str = Field(default_factory=lambda: uuid.uuid4().hex)
    stage: JobStage = JobStage.QUEUED
    attempts: int = Field(0, ge=0)
    max_attempts: int = Field(3, ge=1)
    progress: JobProgress = Field(default_factory=QueuedProgress)
    created_at: datetime = Field(default_factory=utcnow)
    started_at: datetime | None = None
    finished_at: datetime | None = None
    last_error: str | None = None

    filename: str | None = None
    content_type: str

    extraction: ExtractionResult | None = None
    classification: Classification | None = None
    tax_result: TaxComputationResult | None = None

    @property
    def can_retry(self) -> bool:
        return self.stage == JobStage.FAILED and self.attempts < self.max_attempts

    @property
    def is_terminal(self) -> bool:
        """Finished, cancelled, or failed with no attempts left."""
        if self.stage in FINISHED_STAGES:
            return True
        return self.stage == JobStage.FAILED and not self.can_retry

    def advance(self, stage: JobStage, message: str = "", percent: int | None = None) -> None:
        """Move to ``stage`` and record a new progress snapshot.

        Re-entering the current in-progress stage only refreshes progress,
        which is how a crashed stage resumes and how in-stage progress is
        reported.

        Raises:
            InvalidTransitionError: Transition not allowed
        """
        if not (stage == self.stage and stage in IN_PROGRESS_STAGES):
            transition(self.stage, stage)

        sequence = self.progress.sequence + 1
        self.progress = make_progress(stage, sequence, message, percent)  # type: ignore[assignment]
        self.stage = stage

        now = self.progress.timestamp
        if stage in IN_PROGRESS_STAGES and self.started_at is None:
            self.started_at = now
        if stage in FINISHED_STAGES or stage == JobStage.FAILED:
            self.finished_at = now
        elif stage == JobStage.QUEUED:
            self.finished_at = None

    def bundle(self) -> InvoiceBundle:
        """Downstream bundle of a finished job.

        Raises:
            InvalidTransitionError: Job has not reached review or completion
        """
        if self.stage not in (JobStage.READY_FOR_REVIEW, JobStage.COMPLETED):
            raise InvalidTransitionError(
                f"Job {self.id} has no results in stage {self.stage.value}"
            )
        if self.extraction is None or self.classification is None or self.tax_result is None:
            raise InvalidTransitionError(f"Job {self.id} is missing checkpoints")
        return InvoiceBundle(
            invoice_id=self.extraction.document_id,
            extraction=self.extraction,
            classification=self.classification,
            tax_result=self.tax_result,
        )
