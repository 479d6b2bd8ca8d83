"""Error taxonomy shared by the parser, tax engine, providers and pipeline.

The pipeline decides retries from these classes alone, so every component
raises one of them rather than a bare ``Exception``.
"""


class TaxflowError(Exception):
    """Base class for all pipeline errors."""

    retryable: bool = False


class ParseError(TaxflowError):
    """Document could not be turned into an extraction result."""


class MalformedInputError(ParseError):
    """Document bytes are not a usable electronic invoice."""

    retryable = True


class UnrecognizedDocumentTypeError(MalformedInputError):
    """Root element is not Invoice, CreditNote or DebitNote."""


class SchemaDriftError(MalformedInputError):
    """A field is present but does not match the expected UBL shape.

    Attributes:
        path: Element path that failed to convert
    """

    def __init__(self, path: str, message: str) -> None:
        super().__init__(f"{path}: {message}")
        self.path = path


class MissingRequiredFieldError(ParseError):
    """A mandatory field is absent. Never retried."""

    def __init__(self, field: str) -> None:
        super().__init__(f"Missing required field: {field}")
        self.field = field


class ExternalServiceError(TaxflowError):
    """Failure talking to an external capability (classification, vision).

    Retryable unless the provider says otherwise.
    """

    def __init__(self, message: str, *, retryable: bool = True) -> None:
        super().__init__(message)
        self.retryable = retryable


class ClassificationUnavailableError(ExternalServiceError):
    """Classification provider errored or timed out."""


class VisionExtractionError(ExternalServiceError):
    """Vision/OCR provider errored or timed out."""


class InvalidProviderResponseError(ExternalServiceError):
    """Provider answered, but the payload failed validation."""


class ProviderAuthenticationError(ExternalServiceError):
    """Credentials rejected; retrying cannot help."""

    def __init__(self, message: str) -> None:
        super().__init__(message, retryable=False)


class ConcurrencyConflictError(TaxflowError):
    """Another worker holds the lease for this job."""

    def __init__(self, job_id: str) -> None:
        super().__init__(f"Job {job_id} is leased by another worker")
        self.job_id = job_id


class StaleProgressError(ConcurrencyConflictError):
    """A save carried a progress snapshot older than the stored one."""

    def __init__(self, job_id: str, stored: int, incoming: int) -> None:
        TaxflowError.__init__(
            self, f"Job {job_id}: progress {incoming} is older than stored {stored}"
        )
        self.job_id = job_id


class InvalidTransitionError(TaxflowError):
    """Requested job state change is not allowed."""


class JobNotFoundError(TaxflowError):
    """No job record for the given id."""

    def __init__(self, job_id: str) -> None:
        super().__init__(f"Job not found: {job_id}")
        self.job_id = job_id


class TaxInputError(TaxflowError):
    """Tax engine input has an invalid shape."""


class ConfigurationGapWarning(UserWarning):
    """Tax tables have no entry for a city/activity; the component is zeroed."""
