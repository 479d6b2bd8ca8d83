"""Job stages, allowed transitions and progress snapshots.

Progress is a tagged union keyed by stage, so a snapshot can never carry a
percent outside its stage's band (e.g. "parsing, 95%").
"""

from datetime import datetime, timezone
from enum import Enum
from typing import Annotated, Literal, Union

from pydantic import BaseModel, ConfigDict, Field

from taxflow.shared.errors import InvalidTransitionError


class JobStage(str, Enum):
    """Processing job stages."""

    QUEUED = "queued"
    PARSING = "parsing"
    CLASSIFYING = "classifying"
    TAX_COMPUTING = "tax_computing"
    READY_FOR_REVIEW = "ready_for_review"
    COMPLETED = "completed"
    FAILED = "failed"
    CANCELLED = "cancelled"


IN_PROGRESS_STAGES = frozenset({JobStage.PARSING, JobStage.CLASSIFYING, JobStage.TAX_COMPUTING})
CANCELLABLE_STAGES = IN_PROGRESS_STAGES | {JobStage.QUEUED}
FINISHED_STAGES = frozenset({JobStage.READY_FOR_REVIEW, JobStage.COMPLETED, JobStage.CANCELLED})

_ABORT = {JobStage.FAILED, JobStage.CANCELLED}

# A queued job may jump ahead when earlier stages are checkpointed.
TRANSITIONS: dict[JobStage, frozenset[JobStage]] = {
    JobStage.QUEUED: frozenset(
        {JobStage.PARSING, JobStage.CLASSIFYING, JobStage.TAX_COMPUTING, *_ABORT}
    ),
    JobStage.PARSING: frozenset({JobStage.CLASSIFYING, *_ABORT}),
    JobStage.CLASSIFYING: frozenset({JobStage.TAX_COMPUTING, *_ABORT}),
    JobStage.TAX_COMPUTING: frozenset({JobStage.READY_FOR_REVIEW, JobStage.COMPLETED, *_ABORT}),
    JobStage.READY_FOR_REVIEW: frozenset(),
    JobStage.COMPLETED: frozenset(),
    JobStage.FAILED: frozenset({JobStage.QUEUED}),
    JobStage.CANCELLED: frozenset(),
}


def transition(current: JobStage, target: JobStage) -> JobStage:
    """Validate a stage change.

    Raises:
        InvalidTransitionError: ``target`` is not reachable from ``current``
    """
    if target not in TRANSITIONS[current]:
        raise InvalidTransitionError(
            f"Cannot move job from {current.value} to {target.value}"
        )
    return target


def utcnow() -> datetime:
    return datetime.now(timezone.utc)


class _Progress(BaseModel):
    model_config = ConfigDict(frozen=True)

    message: str = ""
    timestamp: datetime = Field(default_factory=utcnow)
    sequence: int = Field(0, ge=0, description="Monotonic per job; newer snapshots win")


class QueuedProgress(_Progress):
    stage: Literal["queued"] = "queued"
    percent: int = Field(0, ge=0, le=0)


class ParsingProgress(_Progress):
    stage: Literal["parsing"] = "parsing"
    percent: int = Field(10, ge=10, le=30)


class ClassifyingProgress(_Progress):
    stage: Literal["classifying"] = "classifying"
    percent: int = Field(40, ge=40, le=60)


class TaxComputingProgress(_Progress):
    stage: Literal["tax_computing"] = "tax_computing"
    percent: int = Field(70, ge=70, le=90)


class ReadyForReviewProgress(_Progress):
    stage: Literal["ready_for_review"] = "ready_for_review"
    percent: int = Field(100, ge=100, le=100)


class CompletedProgress(_Progress):
    stage: Literal["completed"] = "completed"
    percent: int = Field(100, ge=100, le=100)


class FailedProgress(_Progress):
    stage: Literal["failed"] = "failed"
    percent: int = Field(0, ge=0, le=0)


class CancelledProgress(_Progress):
    stage: Literal["cancelled"] = "cancelled"
    percent: int = Field(0, ge=0, le=0)


JobProgress = Annotated[
    Union[
        QueuedProgress,
        ParsingProgress,
        ClassifyingProgress,
        TaxComputingProgress,
        ReadyForReviewProgress,
        CompletedProgress,
        FailedProgress,
        CancelledProgress,
    ],
    Field(discriminator="stage"),
]

PROGRESS_TYPES: dict[JobStage, type[_Progress]] = {
    JobStage.QUEUED: QueuedProgress,
    JobStage.PARSING: ParsingProgress,
    JobStage.CLASSIFYING: ClassifyingProgress,
    JobStage.TAX_COMPUTING: TaxComputingProgress,
    JobStage.READY_FOR_REVIEW: ReadyForReviewProgress,
    JobStage.COMPLETED: CompletedProgress,
    JobStage.FAILED: FailedProgress,
    JobStage.CANCELLED: CancelledProgress,
}


def make_progress(
    stage: JobStage,
    sequence: int,
    message: str = "",
    percent: int | None = None,
) -> _Progress:
    """Build the progress variant for ``stage``.

    Raises:
        pydantic.ValidationError: ``percent`` is outside the stage's band
    """
    fields: dict[str, object] = {"message": message, "sequence": sequence}
    if percent is not None:
        fields["percent"] = percent
    return PROGRESS_TYPES[stage](**fields)
