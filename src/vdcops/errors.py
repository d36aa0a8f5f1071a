"""Error taxonomy for the request engine and the reconciler.

Every failure that leaves the engine is one of the exceptions below.
HTTP failures are normalized into RequestError, which always carries the
server-assigned request id so it can be quoted in bug reports.
"""

from __future__ import annotations

from collections.abc import Generator
from contextlib import contextmanager
from enum import Enum
from typing import TYPE_CHECKING

if TYPE_CHECKING:
    from .models import RequestHandle

NO_ERROR_MESSAGE = "no error message received from server"
MAX_RETRIES_MESSAGE = "maximum number of retries exhausted"


class ErrorKind(str, Enum):
    """Classification of a non-2xx response."""

    SERVER_TRANSIENT = "server_transient"
    STATE_CONFLICT = "state_conflict"
    RATE_LIMITED = "rate_limited"
    NOT_FOUND = "not_found"
    CONFLICT = "conflict"
    PERMANENT = "permanent"


RETRYABLE_KINDS = frozenset(
    {ErrorKind.SERVER_TRANSIENT, ErrorKind.STATE_CONFLICT, ErrorKind.RATE_LIMITED}
)


class VdcError(Exception):
    """Base class for all errors raised by vdcops."""

    pass


class ValidationError(VdcError):
    """Raised for malformed input detected before any request is sent."""

    pass


class TransportError(VdcError):
    """Network-level failure (connection reset, TLS failure, timeout)."""

    def __init__(self, message: str, *, method: str, is_timeout: bool = False) -> None:
        super().__init__(message)
        self.method = method
        self.is_timeout = is_timeout


class RequestError(VdcError):
    """A response with status >= 300, decoded from the error envelope.

    Attributes:
        status_code: HTTP status of the response.
        title: Title from the error envelope (may be empty).
        description: Description from the error envelope (may be empty).
        request_id: Value of the X-Request-Id response header.
        rate_limit_reset: Raw ratelimit-reset header (Unix ms), if sent.
    """

    def __init__(
        self,
        status_code: int,
        title: str = "",
        description: str = "",
        request_id: str = "",
        rate_limit_reset: str | None = None,
    ) -> None:
        self.status_code = status_code
        self.title = title
        self.description = description
        self.request_id = request_id
        self.rate_limit_reset = rate_limit_reset
        super().__init__(self._format())

    def _format(self) -> str:
        message = self.description or NO_ERROR_MESSAGE
        text = (
            f"Status code: {self.status_code}. Error: {message}. "
            f"Request UUID: {self.request_id}."
        )
        if self.status_code >= 500:
            text += " Please report this error along with the request UUID."
        return text

    @property
    def kind(self) -> ErrorKind:
        """Classify the response status."""
        if self.status_code >= 500:
            return ErrorKind.SERVER_TRANSIENT
        if self.status_code == 424:
            return ErrorKind.STATE_CONFLICT
        if self.status_code == 429:
            return ErrorKind.RATE_LIMITED
        if self.status_code == 404:
            return ErrorKind.NOT_FOUND
        if self.status_code == 409:
            return ErrorKind.CONFLICT
        return ErrorKind.PERMANENT

    @property
    def retryable(self) -> bool:
        return self.kind in RETRYABLE_KINDS


class DecodeError(VdcError):
    """A 2xx response body could not be decoded into the expected output."""

    def __init__(self, message: str, request_id: str = "") -> None:
        super().__init__(f"{message}. Request UUID: {request_id}.")
        self.request_id = request_id


class MaxRetriesExceededError(VdcError):
    """Retry budget exhausted; wraps the error of the last attempt."""

    def __init__(self, last_error: Exception, attempts: int) -> None:
        super().__init__(f"{MAX_RETRIES_MESSAGE} after {attempts} attempts: {last_error}")
        self.last_error = last_error
        self.attempts = attempts

    @property
    def request_id(self) -> str:
        return getattr(self.last_error, "request_id", "")


class AsyncRequestFailedError(VdcError):
    """The request-status endpoint reported `failed` for a request."""

    def __init__(self, request_id: str, message: str) -> None:
        super().__init__(f"Request {request_id} failed: {message or NO_ERROR_MESSAGE}")
        self.request_id = request_id
        self.message = message


class OperationTimeoutError(VdcError):
    """A polling deadline, power-state deadline or context deadline elapsed."""

    def __init__(self, message: str, subject: str = "") -> None:
        super().__init__(message)
        self.subject = subject


class OperationCancelledError(VdcError):
    """The caller's context was cancelled before the operation completed."""

    pass


class MutationAppliedError(OperationCancelledError):
    """A mutation succeeded but waiting for its completion was cut short.

    The mutation is NOT rolled back. `handle` identifies the request so the
    caller can check on it later.
    """

    def __init__(self, handle: RequestHandle, cause: Exception) -> None:
        super().__init__(
            f"mutation applied (request {handle.request_id}) but completion wait "
            f"was interrupted: {cause}"
        )
        self.handle = handle
        self.cause = cause


class ReconcileError(VdcError):
    """First non-suppressed error of a reconcile pass, with context."""

    def __init__(self, operation: str, server_id: str, object_id: str, cause: Exception) -> None:
        super().__init__(
            f"Error during {operation} of object ({object_id}) on server ({server_id}): {cause}"
        )
        self.operation = operation
        self.server_id = server_id
        self.object_id = object_id
        self.cause = cause


class CombinedError(VdcError):
    """Independent failures of one compound operation, reported together."""

    def __init__(self, errors: list[Exception]) -> None:
        super().__init__("; ".join(str(e) for e in errors))
        self.errors = list(errors)


def remove_error_with_codes(err: Exception | None, *codes: int) -> Exception | None:
    """Return None if `err` is a RequestError whose status is in `codes`.

    Any other error (including None) is returned unchanged.
    """
    if isinstance(err, RequestError) and err.status_code in codes:
        return None
    return err


@contextmanager
def skip_http_codes(*codes: int) -> Generator[None, None, None]:
    """Suppress RequestError responses with one of the given status codes.

    Usage:
        with skip_http_codes(404, 409):
            await client.unlink_storage(ctx, server_id, storage_id)
    """
    try:
        yield
    except RequestError as e:
        if remove_error_with_codes(e, *codes) is not None:
            raise
