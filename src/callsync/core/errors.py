"""Error taxonomy for the webhook-to-CRM pipeline.

Every error raised by the pipeline derives from SyncError, which carries the
HTTP status used when the error surfaces through the API and whether the
sync state machine may schedule another attempt after it.

- AuthenticationError: bad or missing webhook signature. Rejected before any
  state is created, never retried.
- ValidationError / MappingError: malformed input or a missing required mapped
  field. Recorded on the sync event, retried up to the cap.
- RemoteError: CRM or voice platform call failure (including timeouts).
  Retried with backoff.
- ConfigurationError: unknown CRM provider, unsupported action type. Fails
  identically on every attempt, so it is terminal.
- NotFoundError: referenced integration or sync event does not exist.
"""

from __future__ import annotations


class SyncError(Exception):
    """Base class for pipeline errors."""

    status_code: int = 500
    retryable: bool = True

    def __init__(self, message: str) -> None:
        self.message = message
        super().__init__(message)


class AuthenticationError(SyncError):
    status_code = 401
    retryable = False


class ValidationError(SyncError):
    status_code = 400


class MappingError(ValidationError):
    """A required field mapping could not be satisfied."""

    def __init__(self, source_field: str, reason: str = "missing from source payload") -> None:
        self.source_field = source_field
        super().__init__(f"Failed to map required field '{source_field}': {reason}")


class RemoteError(SyncError):
    status_code = 502

    def __init__(self, message: str, provider: str | None = None) -> None:
        self.provider = provider
        super().__init__(message)


class ConfigurationError(SyncError):
    status_code = 422
    retryable = False


class NotFoundError(SyncError):
    status_code = 404
    retryable = False


def is_retryable(exc: BaseException) -> bool:
    """Whether a failure should consume a retry rather than end the event."""
    if isinstance(exc, SyncError):
        return exc.retryable
    return True
