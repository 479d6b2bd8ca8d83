"""Unit tests for job stages, progress snapshots and the job record."""

from decimal import Decimal

import pytest
from pydantic import TypeAdapter, ValidationError

from taxflow.classification.schema import Classification
from taxflow.extraction.schema import ExtractionResult
from taxflow.pipeline.job import ProcessingJob
from taxflow.pipeline.states import (
    JobProgress,
    JobStage,
    ParsingProgress,
    TaxComputingProgress,
    make_progress,
    transition,
)
from taxflow.shared.errors import InvalidTransitionError
from taxflow.tax.engine import calculate_taxes


@pytest.fixture
def job() -> ProcessingJob:
    return ProcessingJob(content_type="application/xml", filename="invoice.xml")


class TestTransitions:
    """Test the stage transition table."""

    @pytest.mark.parametrize(
        "current, target",
        [
            (JobStage.QUEUED, JobStage.PARSING),
            (JobStage.PARSING, JobStage.CLASSIFYING),
            (JobStage.CLASSIFYING, JobStage.TAX_COMPUTING),
            (JobStage.TAX_COMPUTING, JobStage.COMPLETED),
            (JobStage.TAX_COMPUTING, JobStage.READY_FOR_REVIEW),
            (JobStage.PARSING, JobStage.FAILED),
            (JobStage.CLASSIFYING, JobStage.CANCELLED),
            (JobStage.FAILED, JobStage.QUEUED),
            (JobStage.QUEUED, JobStage.TAX_COMPUTING),
        ],
    )
    def test_allowed(self, current: JobStage, target: JobStage) -> None:
        """Allowed transitions return the target stage."""
        assert transition(current, target) == target

    @pytest.mark.parametrize(
        "current, target",
        [
            (JobStage.PARSING, JobStage.COMPLETED),
            (JobStage.CLASSIFYING, JobStage.PARSING),
            (JobStage.COMPLETED, JobStage.QUEUED),
            (JobStage.CANCELLED, JobStage.QUEUED),
            (JobStage.READY_FOR_REVIEW, JobStage.FAILED),
            (JobStage.FAILED, JobStage.CANCELLED),
        ],
    )
    def test_rejected(self, current: JobStage, target: JobStage) -> None:
        """Everything else raises InvalidTransitionError."""
        with pytest.raises(InvalidTransitionError):
            transition(current, target)


class TestProgress:
    """Test stage-tagged progress snapshots."""

    def test_default_percent_per_stage(self) -> None:
        """Each stage starts at the bottom of its band."""
        assert make_progress(JobStage.PARSING, 1).percent == 10
        assert make_progress(JobStage.CLASSIFYING, 1).percent == 40
        assert make_progress(JobStage.TAX_COMPUTING, 1).percent == 70
        assert make_progress(JobStage.COMPLETED, 1).percent == 100

    def test_percent_outside_band_rejected(self) -> None:
        """A parsing snapshot cannot claim 95%."""
        with pytest.raises(ValidationError):
            make_progress(JobStage.PARSING, 1, percent=95)

    def test_negative_sequence_rejected(self) -> None:
        """Sequence numbers are non-negative."""
        with pytest.raises(ValidationError):
            make_progress(JobStage.QUEUED, -1)

    def test_discriminated_by_stage(self) -> None:
        """Serialized snapshots come back as the right variant."""
        adapter = TypeAdapter(JobProgress)
        data = TaxComputingProgress(percent=80, sequence=5, message="Computing").model_dump()

        progress = adapter.validate_python(data)

        assert isinstance(progress, TaxComputingProgress)
        assert progress.percent == 80

    def test_discriminator_enforces_band(self) -> None:
        """A stage tag cannot be paired with another stage's percent."""
        adapter = TypeAdapter(JobProgress)
        with pytest.raises(ValidationError):
            adapter.validate_python({"stage": "parsing", "percent": 95})


class TestProcessingJob:
    """Test the job record."""

    def test_new_job_is_queued(self, job: ProcessingJob) -> None:
        """New jobs start queued with sequence 0."""
        assert job.stage == JobStage.QUEUED
        assert job.progress.stage == "queued"
        assert job.progress.sequence == 0
        assert job.started_at is None

    def test_advance_increments_sequence(self, job: ProcessingJob) -> None:
        """Every snapshot is newer than the last."""
        job.advance(JobStage.PARSING, "Parsing")
        job.advance(JobStage.PARSING, "Parsed", percent=30)
        job.advance(JobStage.CLASSIFYING)

        assert job.progress.sequence == 3
        assert job.progress.percent == 40
        assert job.started_at is not None

    def test_advance_rejects_invalid_transition(self, job: ProcessingJob) -> None:
        """Stages cannot be skipped from in-progress stages."""
        job.advance(JobStage.PARSING)
        with pytest.raises(InvalidTransitionError):
            job.advance(JobStage.COMPLETED)

        assert job.stage == JobStage.PARSING
        assert isinstance(job.progress, ParsingProgress)

    def test_finished_at_cleared_on_requeue(self, job: ProcessingJob) -> None:
        """A failed job re-queued for retry is no longer finished."""
        job.advance(JobStage.PARSING)
        job.advance(JobStage.FAILED, "boom")
        assert job.finished_at is not None

        job.advance(JobStage.QUEUED, "retry")
        assert job.finished_at is None

    def test_can_retry_and_terminal(self, job: ProcessingJob) -> None:
        """Failed jobs can be retried until attempts run out."""
        job.advance(JobStage.FAILED)
        job.attempts = 1
        assert job.can_retry is True
        assert job.is_terminal is False

        job.attempts = job.max_attempts
        assert job.can_retry is False
        assert job.is_terminal is True

    def test_round_trips_through_json(self, job: ProcessingJob) -> None:
        """Stored jobs keep their progress variant."""
        job.advance(JobStage.PARSING, percent=20)

        restored = ProcessingJob.model_validate_json(job.model_dump_json())

        assert isinstance(restored.progress, ParsingProgress)
        assert restored.progress.percent == 20
        assert restored.stage == JobStage.PARSING


class TestBundle:
    """Test the downstream bundle."""

    def test_bundle_requires_finished_job(self, job: ProcessingJob) -> None:
        """In-progress jobs have no bundle."""
        with pytest.raises(InvalidTransitionError):
            job.bundle()

    def test_bundle(
        self,
        job: ProcessingJob,
        extraction: ExtractionResult,
        classification: Classification,
    ) -> None:
        """Completed jobs expose all three checkpoints."""
        job.extraction = extraction
        job.classification = classification
        job.tax_result = calculate_taxes(extraction, classification)
        for stage in (
            JobStage.PARSING,
            JobStage.CLASSIFYING,
            JobStage.TAX_COMPUTING,
            JobStage.COMPLETED,
        ):
            job.advance(stage)

        bundle = job.bundle()

        assert bundle.invoice_id == "SETP990000001"
        assert bundle.tax_result.net_amount == Decimal("1131160")
