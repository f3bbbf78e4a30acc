"""Failure taxonomy for download job execution.

Every stage of the pipeline raises one of these; anything else reaching the
pipeline boundary is reported as ``Aborted``.
"""

MAX_ERROR_LENGTH = 500


class PipelineError(Exception):
    code = "Aborted"


class VideoNotFoundError(PipelineError):
    """The referenced video row does not exist."""

    code = "NotFound"


class VideoGoneError(VideoNotFoundError):
    """The video was soft-deleted and must not be downloaded."""

    code = "Gone"


class ResolutionFailedError(PipelineError):
    code = "ResolutionFailed"


class TransferFailedError(PipelineError):
    code = "TransferFailed"


class StorageFailedError(PipelineError):
    code = "StorageFailed"


# Not a subclass of concurrent.futures/asyncio CancelledError: raised by our own
# cancel tokens and handled like any other stage failure.
class CancelledError(PipelineError):
    code = "Cancelled"


def describe_failure(exc):
    """Return the short ``last_error`` text recorded for a failed job."""
    if isinstance(exc, PipelineError):
        detail = str(exc).strip()
        text = f"{exc.code}: {detail}" if detail else exc.code
    else:
        text = f"Aborted: {type(exc).__name__}: {exc}"
    if len(text) > MAX_ERROR_LENGTH:
        text = text[: MAX_ERROR_LENGTH - 3] + "..."
    return text
