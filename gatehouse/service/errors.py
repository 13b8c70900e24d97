from __future__ import annotations

from typing import Optional


class ServiceError(Exception):
    """Base class for service-layer failures that map onto an HTTP status.

    Each subclass fixes a status code and a stable machine-readable
    ``error_code``; the API layer renders both into the error envelope.
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
    """Malformed input rejected before the store is touched (400)."""
    status_code = 400
    error_code = "validation_error"


class BadRequestError(ValidationError):
    pass


class AuthenticationError(ServiceError):
    """Missing, invalid or expired credentials (401)."""
    status_code = 401
    error_code = "unauthorized"


class ForbiddenError(ServiceError):
    """Authenticated but not allowed, including locked accounts (403)."""
    status_code = 403
    error_code = "forbidden"


class NotFoundError(ServiceError):
    status_code = 404
    error_code = "not_found"


class ConflictError(ServiceError):
    """Duplicate creation or a mutation blocked by existing references (409)."""
    status_code = 409
    error_code = "conflict"


class RateLimitedError(ServiceError):
    status_code = 429
    error_code = "rate_limited"

    def __init__(self, message: str, *, retry_after: int = 0, **kwargs) -> None:
        super().__init__(message, **kwargs)
        self.retry_after = max(0, int(retry_after))
        self.detail.setdefault("retry_after", self.retry_after)


class ServerError(ServiceError):
    status_code = 500
    error_code = "server_error"


class ConfigurationError(ServerError):
    """Unknown config key or rate-limit action; a deployment bug, never user input."""
    error_code = "configuration_error"


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
    "ConfigurationError",
]
