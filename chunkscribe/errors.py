from typing import Optional


class PipelineError(RuntimeError):
    """Base class for failures reported to the client as an error record."""

    code = "internal"

    def __init__(self, message: str, *, chunk_index: Optional[int] = None) -> None:
        super().__init__(message)
        self.message = message
        self.chunk_index = chunk_index


class ValidationError(PipelineError):
    """Missing input or credential, or an unsupported format."""

    code = "validation"


class DownloadError(PipelineError):
    """The source URL could not be fetched."""

    code = "download"


class ProbeError(PipelineError):
    code = "probe"


class PlanningError(PipelineError):
    code = "planning"


class ExtractionError(PipelineError):
    code = "extraction"


class TranscriptionAPIError(PipelineError):
    code = "transcription"


class RequestCancelled(PipelineError):
    """The caller went away or asked to stop. Not a failure of the pipeline."""

    code = "cancelled"
