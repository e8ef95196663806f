from __future__ import annotations

from typing import Any, Optional


class ServiceError(Exception):
    """Base class for service-layer exceptions mapped to HTTP responses.

    Each subclass carries the HTTP ``status_code`` and a stable ``error_code``
    used in the ``{"error": ..., "message": ...}`` response body.
    """

    status_code: int = 400
    error_code: str = "validation_error"

    def __init__(
        self,
        message: str,
        *,
        status_code: Optional[int] = None,
        detail: Optional[Any] = None,
        error_code: Optional[str] = None,
    ) -> None:
        super().__init__(message)
        self.message = message
        if status_code is not None:
            self.status_code = status_code
        if error_code is not None:
            self.error_code = error_code
        self.detail = detail if detail is not None else {}


class ValidationFailed(ServiceError):
    """Request payload violated its schema (400).

    ``detail`` is a list of ``{"field": ..., "message": ...}`` entries, one per
    violated constraint.
    """

    status_code = 400
    error_code = "validation_error"


class AuthenticationError(ServiceError):
    """Caller could not be established as a verified actor (401)."""

    status_code = 401
    error_code = "unauthorized"


class TokenInvalid(AuthenticationError):
    """Identity provider rejected or could not parse the bearer token."""


class NotAdmin(AuthenticationError):
    """Verified subject does not hold the elevated-privilege flag."""


class TargetNotFound(ServiceError):
    """Referenced subject does not exist (reported as a client error)."""

    status_code = 400
    error_code = "not_found"


class RateLimitedError(ServiceError):
    """Rate limit exceeded (429)."""

    status_code = 429
    error_code = "rate_limited"


__all__ = [
    "ServiceError",
    "ValidationFailed",
    "AuthenticationError",
    "TokenInvalid",
    "NotAdmin",
    "TargetNotFound",
    "RateLimitedError",
]
