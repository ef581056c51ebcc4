"""Error taxonomy for submission and the ingestion pipeline.

Every failure a job can hit maps onto exactly one class below. Pipeline
errors carry the stage that raised them so the worker can record a useful
``error_message`` and the synchronous HTTP path can report it verbatim.

Example:
    Handle any stage failure uniformly:
        >>> from gis_ingest.core import errors
        >>> try:
        ...     pipeline.run(job)
        ... except errors.PipelineError as exc:
        ...     print(exc.stage, exc)
"""

from __future__ import annotations


class ValidationError(ValueError):
    """Submission input is missing or malformed.

    Raised by the submitter before any job row or pipeline run exists.
    """


class PipelineError(RuntimeError):
    """Base class for failures that abort a running job."""

    stage = "pipeline"

    def __init__(self, message: str) -> None:
        super().__init__(message)
        self.message = message

    def describe(self) -> str:
        """Return the message stored on failed jobs."""
        return f"{self.stage}: {self.message}"


class RetrievalError(PipelineError):
    """Raw archive missing from storage or transferred incompletely.

    Attributes:
        transient: True when the failure may succeed on a later attempt
            (network or storage hiccup); False for a missing object.
    """

    stage = "fetch"

    def __init__(self, message: str, *, transient: bool = False) -> None:
        super().__init__(message)
        self.transient = transient


class ExtractionError(PipelineError):
    """Archive could not be unpacked into scratch space."""

    stage = "extract"


class ConversionError(PipelineError):
    """Conversion tool failed or produced unusable output."""

    stage = "convert"


class LoadError(PipelineError):
    """A feature batch failed to persist or counts disagree."""

    stage = "load"


class PublishError(PipelineError):
    """Upload, layer registration or activation failed."""

    stage = "publish"


class StageTimeoutError(PipelineError):
    """A stage exceeded the configured wall-clock ceiling."""

    def __init__(self, stage: str, elapsed: float, limit: float) -> None:
        super().__init__(
            f"stage exceeded {limit:.0f}s wall-clock limit "
            f"(took {elapsed:.1f}s)"
        )
        self.stage = stage
        self.elapsed = elapsed
        self.limit = limit


class LeaseLostError(PipelineError):
    """Another worker reclaimed the job after this worker's lease lapsed."""

    stage = "lease"
