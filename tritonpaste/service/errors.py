from __future__ import annotations

from typing import Optional


class ServiceError(Exception):
    """Base class for service-layer exceptions mapped to HTTP responses.

    Each subclass fixes the HTTP ``status_code`` and the ``error_type`` string
    rendered in the ``{"error": {"code", "type", "message"}}`` envelope:
    - validation_error (400)
    - unauthorized (401)
    - not_found (404)
    - internal_server_error (500)
    - service_unavailable (503)
    """

    status_code: int = 400
    error_type: str = "validation_error"

    def __init__(
        self,
        message: str,
        *,
        status_code: Optional[int] = None,
        error_type: Optional[str] = None,
        headers: Optional[dict[str, str]] = None,
    ) -> None:
        super().__init__(message)
        self.message = message
        if status_code is not None:
            self.status_code = status_code
        if error_type is not None:
            self.error_type = error_type
        self.headers = headers or {}


class ValidationError(ServiceError):
    """Request validation failed (400)."""
    status_code = 400
    error_type = "validation_error"


class ConflictError(ValidationError):
    """Uniqueness conflict on create; reported to clients as a validation error."""
    pass


class AuthenticationError(ServiceError):
    """Missing, malformed, expired or unknown credentials (401)."""
    status_code = 401
    error_type = "unauthorized"

    def __init__(self, message: str, **kwargs) -> None:
        headers = kwargs.pop("headers", None) or {}
        headers.setdefault("WWW-Authenticate", "Bearer")
        super().__init__(message, headers=headers, **kwargs)


class NotFoundError(ServiceError):
    """Requested identity not found (404)."""
    status_code = 404
    error_type = "not_found"


class ServerError(ServiceError):
    """Internal server error (500)."""
    status_code = 500
    error_type = "internal_server_error"


class UpstreamError(ServerError):
    """The OAuth provider could not be reached or answered unexpectedly."""
    pass


class ServiceUnavailableError(ServiceError):
    """A dependency is down or not configured (503)."""
    status_code = 503
    error_type = "service_unavailable"


__all__ = [
    "ServiceError",
    "ValidationError",
    "ConflictError",
    "AuthenticationError",
    "NotFoundError",
    "ServerError",
    "UpstreamError",
    "ServiceUnavailableError",
]
