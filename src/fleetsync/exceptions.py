"""Exception hierarchy for fleetsync."""

from __future__ import annotations

import httpx
import pydantic


class SyncError(Exception):
    """Base exception for all fleetsync errors."""

    def __init__(
        self,
        message: str,
        *,
        resource: str = "",
        status_code: int | None = None,
    ) -> None:
        self.resource = resource
        self.status_code = status_code
        super().__init__(message)


class NetworkError(SyncError):
    """Transient transport failure (connection, timeout, 5xx). Retryable."""


class AuthError(SyncError):
    """Session expired or access forbidden.

    Never retried. The client clears every cache when it sees one so data
    from one principal is never shown to another.
    """


class ValidationError(SyncError):
    """Caller supplied bad input. Never retried."""


class PayloadError(ValidationError):
    """A fetched payload failed schema validation at the fetch boundary."""


class UnknownError(SyncError):
    """Anything not covered above. Surfaced with a generic message."""


def normalize_error(exc: BaseException, *, resource: str = "") -> SyncError:
    """Map a foreign exception into the fleetsync taxonomy.

    The original exception is kept as ``__cause__``.
    """
    if isinstance(exc, SyncError):
        if resource and not exc.resource:
            exc.resource = resource
        return exc

    error: SyncError
    if isinstance(exc, httpx.HTTPStatusError):
        error = error_for_status(
            exc.response.status_code, str(exc), resource=resource
        )
    elif isinstance(exc, (httpx.TransportError, ConnectionError, TimeoutError, OSError)):
        error = NetworkError(str(exc) or type(exc).__name__, resource=resource)
    elif isinstance(exc, pydantic.ValidationError):
        error = PayloadError(str(exc), resource=resource)
    elif isinstance(exc, (ValueError, TypeError)):
        error = ValidationError(str(exc), resource=resource)
    else:
        error = UnknownError("An unexpected error occurred", resource=resource)
    error.__cause__ = exc
    return error


def error_for_status(
    status_code: int, message: str, *, resource: str = ""
) -> SyncError:
    """Pick the error type for an HTTP status code."""
    if status_code in (401, 403):
        return AuthError(message, resource=resource, status_code=status_code)
    if status_code in (400, 404, 409, 422):
        return ValidationError(message, resource=resource, status_code=status_code)
    if status_code in (408, 429) or status_code >= 500:
        return NetworkError(message, resource=resource, status_code=status_code)
    return UnknownError(message, resource=resource, status_code=status_code)


def is_retryable(exc: BaseException) -> bool:
    """Only transient network failures are retried."""
    return isinstance(exc, NetworkError)
