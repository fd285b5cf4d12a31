from __future__ import annotations

from typing import Any, Optional


class ServiceError(Exception):
    """Base class for service-layer exceptions mapped to HTTP responses.

    Each class carries an HTTP ``status_code``. ``title`` overrides the
    status-derived ``error`` field of the response envelope, which the
    request authentication gate uses to answer with ``Access Denied``.
    ``details`` becomes the optional ``details`` list of the envelope.
    """

    status_code: int = 400
    title: Optional[str] = None

    def __init__(
        self,
        message: str,
        *,
        status_code: Optional[int] = None,
        detail: Optional[dict] = None,
        details: Optional[list[Any]] = None,
        title: Optional[str] = None,
    ) -> None:
        super().__init__(message)
        self.message = message
        if status_code is not None:
            self.status_code = status_code
        if title is not None:
            self.title = title
        self.detail = detail or {}
        self.details = details


class ValidationError(ServiceError):
    """Request validation failed (400)."""
    status_code = 400


class BadRequestError(ValidationError):
    """Alias for ValidationError - request is malformed or invalid."""
    pass


class AuthenticationError(ServiceError):
    """Authentication failed or missing (401)."""
    status_code = 401


class ForbiddenError(ServiceError):
    """Credential present but rejected (403)."""
    status_code = 403


class NotFoundError(ServiceError):
    """Requested resource not found (404)."""
    status_code = 404


class ConflictError(ServiceError):
    """Resource conflict, e.g., duplicate creation (409)."""
    status_code = 409


class RateLimitedError(ServiceError):
    """Rate limit exceeded (429). ``headers`` are copied onto the response."""
    status_code = 429

    def __init__(self, message: str, *, headers: Optional[dict] = None, **kwargs: Any) -> None:
        super().__init__(message, **kwargs)
        self.headers = headers or {}


class ServerError(ServiceError):
    """Internal server error (500)."""
    status_code = 500


__all__ = [
    "ServiceError",
    "ValidationError",
    "BadRequestError",
    "AuthenticationError",
    "ForbiddenError",
    "NotFoundError",
    "ConflictError",
    "RateLimitedError",
    "ServerError",
]
