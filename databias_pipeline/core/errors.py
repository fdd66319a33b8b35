"""Pipeline error taxonomy.

The job queue consults ``retryable``: non-retryable errors fail a job on the
current attempt, everything else is retried with backoff. ``category`` is
recorded in error summaries and audit entries so internal failures can be told
apart from transient ones.
"""
from typing import Optional


class PipelineError(Exception):
    """Base class for errors raised while processing an analysis."""

    retryable: bool = True
    category: str = "error"

    def __init__(self, message: str, *, cause: Optional[BaseException] = None):
        super().__init__(message)
        self.message = message
        self.cause = cause

    def summary(self) -> str:
        """Short, user-visible description (never a traceback)."""
        return f"{self.category}: {self.message}"


class ValidationError(PipelineError):
    """Bad input: missing source, unsupported analyzer or content type, empty data."""

    retryable = False
    category = "validation"


class NotFoundError(PipelineError):
    """A referenced dataset, webhook payload or analysis does not exist for the tenant."""

    retryable = False
    category = "not_found"


class TransientIOError(PipelineError):
    """Storage or network failure that may succeed on a later attempt."""

    retryable = True
    category = "transient_io"


class InternalError(PipelineError):
    """Unexpected exception; retried conservatively like a transient failure."""

    retryable = True
    category = "internal"


def is_retryable(exc: BaseException) -> bool:
    return getattr(exc, "retryable", True)


def error_summary(exc: BaseException) -> str:
    if isinstance(exc, PipelineError):
        return exc.summary()
    return f"{InternalError.category}: {exc}"
