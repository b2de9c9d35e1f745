from __future__ import annotations

from typing import Optional

from fastapi import APIRouter, Depends, Header, Path, Query

from jobinow.api.schemas import (
    Envelope,
    LoginRequest,
    LoginResponse,
    LogoutResponse,
    PasswordChangeRequest,
    PasswordChangeResponse,
    UserPageResponse,
    UserResponse,
)
from jobinow.logging import get_logger
from jobinow.service.auth import Principal
from jobinow.service.errors import ValidationError
from jobinow.service.runtime import get_runtime
from jobinow.storage.models import Role, User

logger = get_logger(__name__)

router = APIRouter(prefix="/v1")


async def get_principal(authorization: Optional[str] = Header(None)) -> Principal:
    """Bearer filter: never raises for bad credentials, only yields anonymous."""
    runtime = get_runtime()
    return await runtime.sessions.verify_bearer(authorization)


async def get_current_user(principal: Principal = Depends(get_principal)) -> User:
    runtime = get_runtime()
    return runtime.sessions.resolve_current_user(principal)


def _parse_role(raw: str) -> Role:
    normalized = raw.strip().upper().replace("-", "_")
    try:
        return Role(normalized)
    except ValueError:
        raise ValidationError(
            "unknown role",
            detail={"field": "role", "allowed": [r.value for r in Role]},
        )


@router.post("/auth/login", response_model=Envelope, tags=["auth"])
async def login(body: LoginRequest):
    """Authenticate with email and password.

    Every earlier token of the account is revoked and the user is marked
    online.

    Raises:
        401: If credentials are invalid
    """
    runtime = get_runtime()
    user, token = await runtime.sessions.authenticate(body.email, body.password)
    runtime.sessions.connect(user)
    return Envelope(
        status="ok",
        data=LoginResponse(
            access_token=token.token,
            token_type="bearer",
            user_id=user.id,
            role=user.role.value,
            expires_at=token.expires_at,
        ),
    )


@router.post("/auth/password/change", response_model=Envelope, tags=["auth"])
async def change_password(
    body: PasswordChangeRequest,
    user: User = Depends(get_current_user),
):
    """Change the current user's password.

    Requires the current password; outstanding tokens are revoked when
    REVOKE_TOKENS_ON_PASSWORD_CHANGE is enabled.
    """
    runtime = get_runtime()
    await runtime.sessions.change_password(
        body.current_password,
        body.new_password,
        body.confirmation_password,
        user,
    )
    return Envelope(status="ok", data=PasswordChangeResponse())


@router.post("/auth/logout", response_model=Envelope, tags=["auth"])
async def logout(user: User = Depends(get_current_user)):
    runtime = get_runtime()
    revoked = await runtime.sessions.logout(user)
    return Envelope(status="ok", data=LogoutResponse(revoked=revoked))


@router.get("/me", response_model=Envelope, tags=["auth"])
async def get_me(user: User = Depends(get_current_user)):
    return Envelope(status="ok", data=UserResponse.from_user(user))


@router.get("/users", response_model=Envelope, tags=["users"])
async def list_users(
    page: int = Query(0, ge=0),
    size: Optional[int] = Query(None, ge=1),
    user: User = Depends(get_current_user),
):
    runtime = get_runtime()
    result = runtime.users.list_users(page, size)
    return Envelope(status="ok", data=UserPageResponse.from_page(result))


@router.get("/users/connected", response_model=Envelope, tags=["users"])
async def list_connected_users(
    page: int = Query(0, ge=0),
    size: Optional[int] = Query(None, ge=1),
    user: User = Depends(get_current_user),
):
    runtime = get_runtime()
    result = runtime.users.list_connected_users(page, size)
    return Envelope(status="ok", data=UserPageResponse.from_page(result))


@router.get("/users/roles/{role}", response_model=Envelope, tags=["users"])
async def list_users_by_role(
    role: str = Path(..., max_length=32),
    page: int = Query(0, ge=0),
    size: Optional[int] = Query(None, ge=1),
    user: User = Depends(get_current_user),
):
    runtime = get_runtime()
    result = runtime.users.list_by_role(_parse_role(role), page, size)
    return Envelope(status="ok", data=UserPageResponse.from_page(result))


@router.get("/users/{user_id}", response_model=Envelope, tags=["users"])
async def get_user(
    user_id: str = Path(..., max_length=64),
    user: User = Depends(get_current_user),
):
    runtime = get_runtime()
    found = runtime.users.get_user(user_id)
    return Envelope(status="ok", data=UserResponse.from_user(found))
