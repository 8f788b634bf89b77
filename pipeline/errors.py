"""Error taxonomy for the document pipeline and the live session."""

from __future__ import annotations


class PipelineError(Exception):
    """Base class for every error raised by this project."""

    retryable = True


class TransientRemoteFailure(PipelineError):
    """A remote call failed in a way worth retrying (rate limit, 5xx, transport)."""

    def __init__(self, message: str, status_code: int | None = None, rate_limited: bool = False):
        super().__init__(message)
        self.status_code = status_code
        self.rate_limited = rate_limited


class ExhaustedRetries(PipelineError):
    """Every attempt of a retried call failed."""

    def __init__(self, attempts: int, last_error: BaseException):
        super().__init__(f"Gave up after {attempts} attempts: {last_error}")
        self.attempts = attempts
        self.last_error = last_error


class MalformedResponse(PipelineError):
    """The collaborator answered but its structured output could not be recovered."""

    retryable = False


class RemoteRequestRejected(PipelineError):
    """The API refused the request itself (bad key, bad model); retrying will not help."""

    retryable = False


class NoValidResults(PipelineError):
    """No chunk of the document produced a usable result."""

    retryable = False


class OperationCancelled(PipelineError):
    retryable = False


class PermissionDenied(PipelineError):
    """Microphone access was refused."""

    retryable = False


class ChannelError(PipelineError):
    """The live streaming channel failed."""

    retryable = False
