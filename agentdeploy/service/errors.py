from __future__ import annotations

from typing import Dict, Optional


class ServiceError(Exception):
    """Base class for service-layer exceptions mapped to HTTP responses.

    Each subclass fixes an HTTP ``status_code`` and a stable ``error_code``:
    - unauthorized (401)
    - forbidden (403)
    - not_found (404)
    - rate_limited (429)
    - service_unavailable (503)

    The base class itself answers 400 validation_error. ``headers`` are
    copied onto the error response.
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
        headers: Optional[Dict[str, str]] = None,
    ) -> None:
        super().__init__(message)
        self.message = message
        if status_code is not None:
            self.status_code = status_code
        if error_code is not None:
            self.error_code = error_code
        self.detail = detail or {}
        self.headers = headers


class AuthenticationError(ServiceError):
    status_code = 401
    error_code = "unauthorized"


class ForbiddenError(ServiceError):
    status_code = 403
    error_code = "forbidden"


class NotFoundError(ServiceError):
    status_code = 404
    error_code = "not_found"


class RateLimitedError(ServiceError):
    status_code = 429
    error_code = "rate_limited"


class ServiceUnavailableError(ServiceError):
    """A required collaborator (store, container runtime) is unreachable (503)."""
    status_code = 503
    error_code = "service_unavailable"


class LinkFailure(Exception):
    """Terminal failure while linking a messaging account."""

    def __init__(self, message: str, *, status_code: Optional[int] = None) -> None:
        super().__init__(message)
        self.message = message
        self.status_code = status_code


class ProvisionFailure(Exception):
    """A runtime never reached a sustained running state."""


__all__ = [
    "ServiceError",
    "AuthenticationError",
    "ForbiddenError",
    "NotFoundError",
    "RateLimitedError",
    "ServiceUnavailableError",
    "LinkFailure",
    "ProvisionFailure",
]
