from __future__ import annotations

from typing import Optional


class ServiceError(Exception):
    """Base class for service-layer exceptions mapped to HTTP responses.

    Each subclass carries an HTTP ``status_code`` and a stable ``error_code``:
    - unauthorized (401)
    - forbidden (403)
    - not_found (404)
    - rate_limited (429)
    - validation_error (400)
    - conflict (409)
    - server_error (500, 502)
    """

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
    status_code = 400
    error_code = "validation_error"


class ThreadIdMissing(ValidationError):
    """No thread id could be resolved from a checkpoint run configuration."""


class AuthenticationError(ServiceError):
    """No resolvable caller identity (401)."""
    status_code = 401
    error_code = "unauthorized"


class ForbiddenError(ServiceError):
    """Caller is known but not allowed, e.g. a blocked account (403)."""
    status_code = 403
    error_code = "forbidden"


class NotFoundError(ServiceError):
    """Resource missing or not owned by the caller (404)."""
    status_code = 404
    error_code = "not_found"


class ConflictError(ServiceError):
    """Resource conflict, e.g. a run already in flight on the thread (409)."""
    status_code = 409
    error_code = "conflict"


class QuotaExceededError(ServiceError):
    """Daily response cap reached (429)."""
    status_code = 429
    error_code = "rate_limited"


class UpstreamModelError(ServiceError):
    """The generation call failed outright, mid-stream, or timed out (502)."""
    status_code = 502
    error_code = "server_error"


class PersistenceError(ServiceError):
    """A write on the primary message path did not commit (500)."""
    status_code = 500
    error_code = "server_error"


class ServerError(ServiceError):
    """Internal server error (500)."""
    status_code = 500
    error_code = "server_error"


__all__ = [
    "ServiceError",
    "ValidationError",
    "ThreadIdMissing",
    "AuthenticationError",
    "ForbiddenError",
    "NotFoundError",
    "ConflictError",
    "QuotaExceededError",
    "UpstreamModelError",
    "PersistenceError",
    "ServerError",
]
