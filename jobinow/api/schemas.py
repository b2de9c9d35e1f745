from __future__ import annotations

import unicodedata
from datetime import datetime
from typing import Any, List, Optional
from uuid import uuid4

from pydantic import BaseModel, Field, field_validator

from jobinow.storage.models import Page, User

_VALID_ERROR_CODES = frozenset({
    "unauthorized",
    "forbidden",
    "not_found",
    "validation_error",
    "conflict",
    "server_error",
})


def _normalize_unicode(value: str) -> str:
    """NFKC-normalize and drop zero-width characters used for spoofing."""
    zero_width = "\u200b\u200c\u200d\ufeff"
    cleaned = "".join(c for c in value if c not in zero_width)
    return unicodedata.normalize("NFKC", cleaned)


class ErrorBody(BaseModel):
    """Error envelope body with a stable code value."""

    code: str = Field(..., description="Stable error code")
    message: str
    details: Optional[Any] = None  # object, array, or null

    @field_validator("code")
    @classmethod
    def _validate_error_code(cls, value: str) -> str:
        if value not in _VALID_ERROR_CODES:
            raise ValueError(
                f"Invalid error code '{value}'. Must be one of: {', '.join(sorted(_VALID_ERROR_CODES))}"
            )
        return value


class Envelope(BaseModel):
    status: str = Field(..., pattern="^(ok|error)$")
    data: Optional[Any] = None
    error: Optional[ErrorBody] = None
    request_id: str = Field(default_factory=lambda: str(uuid4()))


class LoginRequest(BaseModel):
    # Format is not validated here: a malformed email must fail exactly like
    # an unknown one.
    email: str = Field(..., min_length=1, max_length=254)
    password: str = Field(..., min_length=1, max_length=128)

    @field_validator("email")
    @classmethod
    def _normalize_login_email(cls, value: str) -> str:
        return _normalize_unicode(value.strip().lower())


class LoginResponse(BaseModel):
    access_token: str
    token_type: str = "bearer"
    user_id: str
    role: str
    expires_at: Optional[datetime] = None


class PasswordChangeRequest(BaseModel):
    """Request to change password (requires current password).

    Strength rules for the new password are applied by the session manager
    once the current password has been verified.
    """

    current_password: str = Field(..., min_length=1, max_length=128)
    new_password: str = Field(..., max_length=1024)
    confirmation_password: str = Field(..., max_length=1024)


class PasswordChangeResponse(BaseModel):
    status: str = "changed"


class LogoutResponse(BaseModel):
    status: str = "logged_out"
    revoked: int = 0


class UserResponse(BaseModel):
    id: str
    email: str
    role: str
    status: str
    first_name: Optional[str] = None
    last_name: Optional[str] = None
    created_at: datetime

    @classmethod
    def from_user(cls, user: User) -> "UserResponse":
        return cls(
            id=user.id,
            email=user.email,
            role=user.role.value,
            status=user.status.value,
            first_name=user.first_name,
            last_name=user.last_name,
            created_at=user.created_at,
        )


class UserPageResponse(BaseModel):
    items: List[UserResponse]
    page: int
    size: int
    total: int
    pages: int

    @classmethod
    def from_page(cls, page: Page[User]) -> "UserPageResponse":
        return cls(
            items=[UserResponse.from_user(u) for u in page.items],
            page=page.page,
            size=page.size,
            total=page.total,
            pages=page.pages,
        )


class HealthResponse(BaseModel):
    status: str
    store: str
    cache: str
    build_sha: Optional[str] = None
