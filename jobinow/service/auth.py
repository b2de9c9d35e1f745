from __future__ import annotations

import asyncio
import contextlib
import time
import uuid
from dataclasses import dataclass
from datetime import datetime, timezone
from typing import AsyncIterator, Dict, Iterable, List, Optional, Protocol, Tuple

from redis.exceptions import RedisError

from jobinow.config import Settings
from jobinow.logging import get_logger
from jobinow.service.credentials import CredentialVerifier, TokenIssuer
from jobinow.service.errors import (
    InvalidCredentials,
    NoAuthenticateUser,
    PasswordMismatch,
    ResourceNotFound,
    ValidationError,
)
from jobinow.storage.common import normalize_email
from jobinow.storage.errors import PersistenceError
from jobinow.storage.models import Page, Role, Token, User, UserStatus
from jobinow.storage.redis_cache import CacheBackend

logger = get_logger(__name__)

_INVALID_LOGIN = "invalid email or password"
_LOCK_POLL_SECONDS = 0.05

MIN_PASSWORD_LENGTH = 8
MAX_PASSWORD_LENGTH = 128


class TokenStore(Protocol):
    def save_token(self, token: Token) -> Token: ...

    def find_all_valid_tokens(self, user_id: str) -> List[Token]: ...

    def save_tokens(self, tokens: Iterable[Token]) -> List[Token]: ...

    def get_token(self, value: str) -> Optional[Token]: ...

    def expire_tokens_before(self, cutoff: datetime) -> int: ...

    def prune_tokens(self, before: datetime) -> int: ...


class UserDirectory(Protocol):
    def create_user(
        self,
        email: str,
        *,
        role: Role = Role.JOB_SEEKER,
        first_name: Optional[str] = None,
        last_name: Optional[str] = None,
        status: UserStatus = UserStatus.OFFLINE,
    ) -> User: ...

    def get_user_by_email(self, email: str) -> Optional[User]: ...

    def get_user(self, user_id: str) -> Optional[User]: ...

    def list_users(self, page: int = 0, size: int = 20) -> Page[User]: ...

    def list_users_by_role(self, role: Role, page: int = 0, size: int = 20) -> Page[User]: ...

    def list_users_by_status(
        self, status: UserStatus, page: int = 0, size: int = 20
    ) -> Page[User]: ...

    def set_user_status(self, user_id: str, status: UserStatus) -> Optional[User]: ...

    def save_password(
        self, user_id: str, password_hash: str, password_algo: str
    ) -> None: ...

    def get_password_record(self, user_id: str) -> Optional[tuple[str, str]]: ...


class SessionStore(TokenStore, UserDirectory, Protocol):
    """Both halves of persistence the session manager writes to."""


@dataclass(frozen=True)
class Principal:
    """The caller identity established by the bearer filter for one request."""

    email: Optional[str] = None
    user_id: Optional[str] = None
    token_id: Optional[str] = None
    authenticated: bool = False
    anonymous: bool = True

    @classmethod
    def anonymous_principal(cls) -> "Principal":
        return cls()

    @classmethod
    def for_user(cls, user: User, token: Optional[Token] = None) -> "Principal":
        return cls(
            email=user.email,
            user_id=user.id,
            token_id=token.id if token else None,
            authenticated=True,
            anonymous=False,
        )


@dataclass
class _UserLock:
    lock: asyncio.Lock
    holders: int = 0


class SessionManager:
    """Issues, tracks and revokes bearer tokens and resolves the current user.

    The only state held here is the per-user lock registry that serializes
    revoke-then-issue for concurrent logins of the same account; entries are
    dropped as soon as nobody holds or waits on them.
    """

    def __init__(
        self,
        store: SessionStore,
        cache: CacheBackend,
        settings: Settings,
        *,
        verifier: Optional[CredentialVerifier] = None,
        issuer: Optional[TokenIssuer] = None,
    ) -> None:
        self.store = store
        self.cache = cache
        self.settings = settings
        self.verifier = verifier or CredentialVerifier()
        self.issuer = issuer or TokenIssuer(settings)
        self.logger = logger
        self._user_locks: Dict[str, _UserLock] = {}

    def _now(self) -> datetime:
        return datetime.now(timezone.utc)

    # locking
    @contextlib.asynccontextmanager
    async def _user_lock(self, user_id: str) -> AsyncIterator[None]:
        entry = self._user_locks.get(user_id)
        if entry is None:
            entry = _UserLock(lock=asyncio.Lock())
            self._user_locks[user_id] = entry
        entry.holders += 1
        try:
            async with entry.lock:
                owner = await self._acquire_distributed_lock(user_id)
                try:
                    yield
                finally:
                    if owner:
                        await self._release_distributed_lock(user_id, owner)
        finally:
            entry.holders -= 1
            if entry.holders == 0 and self._user_locks.get(user_id) is entry:
                del self._user_locks[user_id]

    async def _acquire_distributed_lock(self, user_id: str) -> Optional[str]:
        if not self.cache:
            return None
        owner = str(uuid.uuid4())
        ttl = self.settings.user_lock_ttl_seconds
        deadline = time.monotonic() + ttl
        while True:
            try:
                if await self.cache.acquire_user_lock(user_id, owner, ttl):
                    return owner
            except RedisError as exc:
                # the in-process lock still serializes this worker
                self.logger.warning(
                    "user_lock_cache_unavailable", user_id=user_id, error=str(exc)
                )
                return None
            if time.monotonic() >= deadline:
                self.logger.warning("user_lock_timeout", user_id=user_id, ttl=ttl)
                raise PersistenceError(
                    "another login for this account is in progress",
                    {"user_id": user_id},
                    retryable=True,
                )
            await asyncio.sleep(_LOCK_POLL_SECONDS)

    async def _release_distributed_lock(self, user_id: str, owner: str) -> None:
        try:
            await self.cache.release_user_lock(user_id, owner)
        except RedisError as exc:
            # the lock expires on its own after user_lock_ttl_seconds
            self.logger.warning(
                "user_lock_release_failed", user_id=user_id, error=str(exc)
            )

    # credentials
    def _verify_secret(self, user_id: str, secret: str) -> bool:
        record = self.store.get_password_record(user_id)
        if not record:
            self.logger.warning("password_record_missing", user_id=user_id)
            return False
        stored_hash, algo = record
        return self.verifier.verify(secret, stored_hash, algo)

    def _issue_token(self, user: User) -> Token:
        value, expires_at = self.issuer.issue(user.id, user.email, user.role.value)
        token = Token(
            id=str(uuid.uuid4()),
            user_id=user.id,
            token=value,
            created_at=self._now(),
            expires_at=expires_at,
        )
        return self.store.save_token(token)

    async def authenticate(self, email: str, secret: str) -> Tuple[User, Token]:
        """Verify credentials and replace every outstanding token with a new one.

        Unknown email and wrong secret raise the same error so callers cannot
        discover which accounts exist.
        """

        user = self.store.get_user_by_email(normalize_email(email))
        if not user:
            self.logger.info("login_failed", reason="unknown_email")
            raise InvalidCredentials(_INVALID_LOGIN)
        if not self._verify_secret(user.id, secret):
            self.logger.info("login_failed", reason="bad_secret", user_id=user.id)
            raise InvalidCredentials(_INVALID_LOGIN)

        async with self._user_lock(user.id):
            revoked = await self._revoke_all(user)
            token = self._issue_token(user)
        self.logger.info(
            "login_succeeded", user_id=user.id, token_id=token.id, revoked=revoked
        )
        return user, token

    def resolve_current_user(self, principal: Optional[Principal]) -> User:
        if principal is None or not principal.authenticated or principal.anonymous:
            raise NoAuthenticateUser()
        user = self.store.get_user_by_email(normalize_email(principal.email or ""))
        if not user:
            self.logger.error(
                "principal_user_missing",
                user_id=principal.user_id,
                token_id=principal.token_id,
            )
            raise ResourceNotFound()
        return user

    def _check_password_strength(self, secret: str) -> None:
        if len(secret) < MIN_PASSWORD_LENGTH:
            raise ValidationError(
                f"password must be at least {MIN_PASSWORD_LENGTH} characters",
                detail={"field": "new_password"},
            )
        if len(secret) > MAX_PASSWORD_LENGTH:
            raise ValidationError(
                f"password must be at most {MAX_PASSWORD_LENGTH} characters",
                detail={"field": "new_password"},
            )

    async def change_password(
        self,
        current_secret: str,
        new_secret: str,
        confirm_secret: str,
        user: Optional[User],
    ) -> None:
        if user is None:
            raise NoAuthenticateUser()
        if not self._verify_secret(user.id, current_secret):
            self.logger.info("password_change_rejected", reason="wrong_password", user_id=user.id)
            raise InvalidCredentials("wrong password")
        if new_secret != confirm_secret:
            self.logger.info("password_change_rejected", reason="mismatch", user_id=user.id)
            raise PasswordMismatch()
        self._check_password_strength(new_secret)

        digest, algo = self.verifier.hash(new_secret)
        async with self._user_lock(user.id):
            self.store.save_password(user.id, digest, algo)
            revoked = 0
            if self.settings.revoke_tokens_on_password_change:
                revoked = await self._revoke_all(user)
        self.logger.info("password_changed", user_id=user.id, revoked=revoked)

    async def revoke_all_user_tokens(self, user: User) -> int:
        """Revoke every valid token of ``user``; returns how many were revoked."""
        async with self._user_lock(user.id):
            return await self._revoke_all(user)

    async def _revoke_all(self, user: User) -> int:
        valid = self.store.find_all_valid_tokens(user.id)
        if not valid:
            return 0
        for token in valid:
            token.revoke()
        self.store.save_tokens(valid)
        await self._denylist(valid)
        self.logger.info("tokens_revoked", user_id=user.id, count=len(valid))
        return len(valid)

    async def _denylist(self, tokens: List[Token]) -> None:
        if not self.cache:
            return
        now = self._now()
        for token in tokens:
            if token.expires_at is None:
                continue
            ttl = int((token.expires_at - now).total_seconds())
            try:
                await self.cache.mark_token_revoked(token.id, ttl)
            except RedisError as exc:
                # the store flags stay authoritative
                self.logger.warning(
                    "token_denylist_failed", token_id=token.id, error=str(exc)
                )

    def connect(self, user: Optional[User]) -> None:
        if user is None:
            return
        self.store.set_user_status(user.id, UserStatus.ONLINE)
        user.status = UserStatus.ONLINE
        self.logger.info("user_connected", user_id=user.id)

    def disconnect(self, user: Optional[User]) -> None:
        if user is None:
            return
        self.store.set_user_status(user.id, UserStatus.OFFLINE)
        user.status = UserStatus.OFFLINE
        self.logger.info("user_disconnected", user_id=user.id)

    async def logout(self, user: User) -> int:
        revoked = await self.revoke_all_user_tokens(user)
        self.disconnect(user)
        return revoked

    def _extract_bearer(self, header: Optional[str]) -> Optional[str]:
        if not header:
            return None
        scheme, _, value = header.strip().partition(" ")
        if scheme.lower() != "bearer" or not value.strip():
            return None
        return value.strip()

    async def _is_denylisted(self, token_id: str) -> bool:
        if not self.cache:
            return False
        try:
            return await self.cache.is_token_revoked(token_id)
        except RedisError as exc:
            # fall through to the store flags, which are authoritative
            self.logger.warning(
                "token_denylist_check_failed", token_id=token_id, error=str(exc)
            )
            return False

    async def verify_bearer(self, authorization: Optional[str]) -> Principal:
        """Turn an ``Authorization`` header into a principal.

        Authentication failures yield the anonymous principal; persistence
        failures propagate.
        """

        anonymous = Principal.anonymous_principal()
        raw = self._extract_bearer(authorization)
        if not raw:
            return anonymous
        payload = self.issuer.decode(raw)
        if not payload or payload.get("token_type") != "access":
            return anonymous
        token = self.store.get_token(raw)
        if not token or not token.is_valid or token.user_id != payload.get("sub"):
            return anonymous
        if token.expires_at is not None and token.expires_at <= self._now():
            return anonymous
        if await self._is_denylisted(token.id):
            return anonymous
        user = self.store.get_user(token.user_id)
        if not user:
            return anonymous
        return Principal.for_user(user, token)

    def expire_stale_tokens(self, now: Optional[datetime] = None) -> int:
        """Flag valid tokens past their own expiry as expired."""
        cutoff = now or self._now()
        count = self.store.expire_tokens_before(cutoff)
        if count:
            self.logger.info("tokens_expired", count=count)
        return count


__all__ = [
    "Principal",
    "SessionManager",
    "SessionStore",
    "TokenStore",
    "UserDirectory",
]
