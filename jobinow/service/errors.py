from __future__ import annotations

from typing import Optional


class ServiceError(Exception):
    """Base class for service-layer exceptions mapped to HTTP responses.

    Each subclass carries an HTTP ``status_code`` and a stable ``error_code``:
    - unauthorized (401)
    - not_found (404)
    - validation_error (400)
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


class AuthenticationError(ServiceError):
    """Authentication failed or missing (401)."""
    status_code = 401
    error_code = "unauthorized"


class InvalidCredentials(AuthenticationError):
    """Unknown email, wrong secret, or wrong current password."""


class NoAuthenticateUser(AuthenticationError):
    """No authenticated principal accompanies the request."""

    def __init__(self, message: str = "authentication required", **kwargs) -> None:
        super().__init__(message, **kwargs)


class ResourceNotFound(AuthenticationError):
    """An authenticated principal whose user record no longer exists.

    Reported to clients as 401 so the anomaly does not reveal which
    accounts exist.
    """

    def __init__(self, message: str = "user not found", **kwargs) -> None:
        super().__init__(message, **kwargs)


class PasswordMismatch(ValidationError):
    """New password and its confirmation differ."""

    def __init__(self, message: str = "passwords are not the same", **kwargs) -> None:
        kwargs.setdefault("detail", {"field": "confirmation_password"})
        super().__init__(message, **kwargs)


class NotFoundError(ServiceError):
    """Requested resource not found (404)."""
    status_code = 404
    error_code = "not_found"


__all__ = [
    "ServiceError",
    "ValidationError",
    "AuthenticationError",
    "InvalidCredentials",
    "NoAuthenticateUser",
    "ResourceNotFound",
    "PasswordMismatch",
    "NotFoundError",
]
