from __future__ import annotations

from enum import Enum
from typing import Optional


class ErrorKind(str, Enum):
    """Stable classification carried by every service error.

    Callers match on the kind instead of on exception identity, so an error
    that has been wrapped or re-raised still classifies the same way.
    """

    NOT_FOUND = "not_found"
    CONFLICT = "conflict"
    INVALID_CREDENTIALS = "invalid_credentials"
    SIGNING_FAILURE = "signing_failure"
    TRANSIENT_STORAGE = "transient_storage"
    INTERNAL = "internal"
    CANCELLED = "cancelled"
    VALIDATION = "validation"


class ServiceError(Exception):
    """Base class for service-layer exceptions mapped to HTTP responses.

    Each subclass defines an ``ErrorKind``, an HTTP ``status_code`` and a stable
    ``error_code`` used in the API error envelope:
    - validation_error (400)
    - unauthorized (401)
    - not_found (404)
    - conflict (409)
    - server_error (500)
    - service_unavailable (503)
    - timeout (504)
    """

    kind: ErrorKind = ErrorKind.VALIDATION
    status_code: int = 400
    error_code: str = "validation_error"

    def __init__(
        self,
        message: str,
        *,
        status_code: Optional[int] = None,
        detail: Optional[dict] = None,
        error_code: Optional[str] = None,
    ) -> None:
        super().__init__(message)
        self.message = message
        if status_code is not None:
            self.status_code = status_code
        if error_code is not None:
            self.error_code = error_code
        self.detail = detail or {}


class ValidationError(ServiceError):
    """Request validation failed (400)."""
    kind = ErrorKind.VALIDATION
    status_code = 400
    error_code = "validation_error"


class InvalidCredentialsError(ServiceError):
    """Challenge code or password did not match (401)."""
    kind = ErrorKind.INVALID_CREDENTIALS
    status_code = 401
    error_code = "unauthorized"


class InvalidTokenError(InvalidCredentialsError):
    """Bearer token is malformed, forged or expired (401)."""
    pass


class NotFoundError(ServiceError):
    """Requested account not found (404)."""
    kind = ErrorKind.NOT_FOUND
    status_code = 404
    error_code = "not_found"


class ConflictError(ServiceError):
    """Duplicate creation (409)."""
    kind = ErrorKind.CONFLICT
    status_code = 409
    error_code = "conflict"


class SigningError(ServiceError):
    """Token signing failed because of the key or the signature backend (500)."""
    kind = ErrorKind.SIGNING_FAILURE
    status_code = 500
    error_code = "server_error"


class TransientStorageError(ServiceError):
    """Transaction or connection failure; the caller may retry (503)."""
    kind = ErrorKind.TRANSIENT_STORAGE
    status_code = 503
    error_code = "service_unavailable"


class DeadlineExceededError(ServiceError):
    """The operation deadline elapsed and its transaction was aborted (504)."""
    kind = ErrorKind.CANCELLED
    status_code = 504
    error_code = "timeout"


class ServerError(ServiceError):
    """Internal server error (500)."""
    kind = ErrorKind.INTERNAL
    status_code = 500
    error_code = "server_error"


def error_kind(exc: BaseException | None) -> ErrorKind:
    """Classify an exception, looking through ``raise ... from`` chains.

    The outermost ``ServiceError`` wins; anything else is ``INTERNAL``.
    """
    seen: set[int] = set()
    current = exc
    while current is not None and id(current) not in seen:
        seen.add(id(current))
        if isinstance(current, ServiceError):
            return current.kind
        current = current.__cause__ or current.__context__
    return ErrorKind.INTERNAL


__all__ = [
    "ErrorKind",
    "ServiceError",
    "ValidationError",
    "InvalidCredentialsError",
    "InvalidTokenError",
    "NotFoundError",
    "ConflictError",
    "SigningError",
    "TransientStorageError",
    "DeadlineExceededError",
    "ServerError",
    "error_kind",
]
