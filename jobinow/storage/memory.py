from __future__ import annotations

import json
import os
import tempfile
import threading
import uuid
from dataclasses import replace
from datetime import datetime, timezone
from pathlib import Path
from typing import Dict, Iterable, List, Optional

from jobinow.logging import get_logger
from jobinow.storage.common import (
    merge_token_flags,
    normalize_email,
    parse_ts,
    slice_page,
    sort_users,
)
from jobinow.storage.errors import ConstraintViolation, PersistenceError
from jobinow.storage.models import (
    Page,
    Role,
    Token,
    TokenType,
    User,
    UserStatus,
)


class MemoryStore:
    """In-memory backing store with a JSON snapshot on the shared filesystem.

    Used for development and tests. Every mutation runs under a single
    re-entrant data lock and rewrites the snapshot before returning.
    """

    def __init__(self, fs_root: str = "/tmp/jobinow") -> None:
        self.logger = get_logger(__name__)
        self.users: Dict[str, User] = {}
        self.credentials: Dict[str, tuple[str, str]] = {}
        self.tokens: Dict[str, Token] = {}
        # token value -> token id
        self._token_index: Dict[str, str] = {}
        # RLock so helpers can re-acquire inside an outer mutation
        self._data_lock = threading.RLock()
        self.fs_root = Path(fs_root)
        self.fs_root.mkdir(parents=True, exist_ok=True)

        if not self._load_state():
            self._persist_state()

    def _state_path(self) -> Path:
        state_dir = self.fs_root / "state"
        state_dir.mkdir(parents=True, exist_ok=True)
        return state_dir / "memory_store.json"

    @staticmethod
    def _serialize_datetime(dt: Optional[datetime]) -> Optional[str]:
        return dt.isoformat() if dt else None

    # users
    def create_user(
        self,
        email: str,
        *,
        role: Role = Role.JOB_SEEKER,
        first_name: Optional[str] = None,
        last_name: Optional[str] = None,
        status: UserStatus = UserStatus.OFFLINE,
    ) -> User:
        normalized = normalize_email(email)
        with self._data_lock:
            if any(existing.email == normalized for existing in self.users.values()):
                raise ConstraintViolation("email already exists", {"field": "email"})
            user = User(
                id=str(uuid.uuid4()),
                email=normalized,
                role=Role(role),
                status=UserStatus(status),
                first_name=first_name,
                last_name=last_name,
            )
            self.users[user.id] = user
            self._persist_state()
            return replace(user)

    def get_user_by_email(self, email: str) -> Optional[User]:
        normalized = normalize_email(email)
        with self._data_lock:
            user = next((u for u in self.users.values() if u.email == normalized), None)
            return replace(user) if user else None

    def get_user(self, user_id: str) -> Optional[User]:
        with self._data_lock:
            user = self.users.get(user_id)
            return replace(user) if user else None

    def list_users(self, page: int = 0, size: int = 20) -> Page[User]:
        with self._data_lock:
            ordered = sort_users([replace(u) for u in self.users.values()])
        return slice_page(ordered, page, size)

    def list_users_by_role(self, role: Role, page: int = 0, size: int = 20) -> Page[User]:
        role = Role(role)
        with self._data_lock:
            ordered = sort_users(
                [replace(u) for u in self.users.values() if u.role == role]
            )
        return slice_page(ordered, page, size)

    def list_users_by_status(
        self, status: UserStatus, page: int = 0, size: int = 20
    ) -> Page[User]:
        status = UserStatus(status)
        with self._data_lock:
            ordered = sort_users(
                [replace(u) for u in self.users.values() if u.status == status]
            )
        return slice_page(ordered, page, size)

    def set_user_status(self, user_id: str, status: UserStatus) -> Optional[User]:
        with self._data_lock:
            user = self.users.get(user_id)
            if not user:
                return None
            user.status = UserStatus(status)
            self._persist_state()
            return replace(user)

    def update_user_role(self, user_id: str, role: Role) -> Optional[User]:
        with self._data_lock:
            user = self.users.get(user_id)
            if not user:
                return None
            user.role = Role(role)
            self._persist_state()
            return replace(user)

    def save_password(
        self, user_id: str, password_hash: str, password_algo: str
    ) -> None:
        with self._data_lock:
            if user_id not in self.users:
                raise ConstraintViolation(
                    "user not found for credentials", {"user_id": user_id}
                )
            self.credentials[user_id] = (password_hash, password_algo)
            self._persist_state()

    def get_password_record(self, user_id: str) -> Optional[tuple[str, str]]:
        with self._data_lock:
            return self.credentials.get(user_id)

    # tokens
    def save_token(self, token: Token) -> Token:
        with self._data_lock:
            self._check_new_token(token, pending_values=set())
            stored = replace(token)
            self.tokens[stored.id] = stored
            self._token_index[stored.token] = stored.id
            self._persist_state()
            return replace(stored)

    def _check_new_token(self, token: Token, pending_values: set[str]) -> None:
        if token.user_id not in self.users:
            raise ConstraintViolation("token user missing", {"user_id": token.user_id})
        if token.token in self._token_index or token.token in pending_values:
            raise ConstraintViolation("token already exists", {"field": "token"})

    def get_token(self, value: str) -> Optional[Token]:
        with self._data_lock:
            token_id = self._token_index.get(value)
            if token_id is None:
                return None
            return replace(self.tokens[token_id])

    def find_all_valid_tokens(self, user_id: str) -> List[Token]:
        with self._data_lock:
            return [
                replace(t)
                for t in self.tokens.values()
                if t.user_id == user_id and t.is_valid
            ]

    def save_tokens(self, tokens: Iterable[Token]) -> List[Token]:
        """Persist a batch of token updates all-or-nothing.

        Existing tokens have their flags OR-merged; unknown ids are inserted
        after the same checks as :meth:`save_token`. The whole batch is
        validated before any change is applied.
        """

        batch = list(tokens)
        with self._data_lock:
            pending_values: set[str] = set()
            for token in batch:
                if token.id in self.tokens:
                    continue
                self._check_new_token(token, pending_values)
                pending_values.add(token.token)

            snapshot = {t.id: replace(self.tokens[t.id]) for t in batch if t.id in self.tokens}
            inserted: List[Token] = []
            saved: List[Token] = []
            for token in batch:
                current = self.tokens.get(token.id)
                if current is not None:
                    saved.append(replace(merge_token_flags(current, token)))
                    continue
                stored = replace(token)
                self.tokens[stored.id] = stored
                self._token_index[stored.token] = stored.id
                inserted.append(stored)
                saved.append(replace(stored))
            try:
                self._persist_state()
            except PersistenceError:
                for token_id, previous in snapshot.items():
                    self.tokens[token_id] = previous
                for stored in inserted:
                    self.tokens.pop(stored.id, None)
                    self._token_index.pop(stored.token, None)
                raise
            return saved

    def expire_tokens_before(self, cutoff: datetime) -> int:
        with self._data_lock:
            stale = [
                t
                for t in self.tokens.values()
                if t.is_valid and t.expires_at is not None and t.expires_at <= cutoff
            ]
            for token in stale:
                token.expired = True
            if stale:
                self._persist_state()
            return len(stale)

    def prune_tokens(self, before: datetime) -> int:
        with self._data_lock:
            dead = [
                t
                for t in self.tokens.values()
                if not t.is_valid and t.created_at < before
            ]
            for token in dead:
                self.tokens.pop(token.id, None)
                self._token_index.pop(token.token, None)
            if dead:
                self._persist_state()
            return len(dead)

    def verify_connection(self) -> None:
        self._state_path()

    def close(self) -> None:
        return None

    # snapshot
    def _persist_state(self) -> None:
        with self._data_lock:
            state = {
                "users": [self._serialize_user(u) for u in self.users.values()],
                "credentials": [
                    {
                        "user_id": user_id,
                        "password_hash": creds[0],
                        "password_algo": creds[1],
                    }
                    for user_id, creds in self.credentials.items()
                ],
                "tokens": [self._serialize_token(t) for t in self.tokens.values()],
            }
            path = self._state_path()
            tmp_path = None
            try:
                fd, tmp_path = tempfile.mkstemp(
                    dir=str(path.parent), prefix=".memory_store_", suffix=".tmp"
                )
                with os.fdopen(fd, "w") as handle:
                    json.dump(state, handle, indent=2)
                os.replace(tmp_path, path)
            except OSError as exc:
                if tmp_path and os.path.exists(tmp_path):
                    os.unlink(tmp_path)
                self.logger.error(
                    "memory_store_persist_failed", error=str(exc), path=str(path)
                )
                raise PersistenceError(
                    "failed to persist in-memory state", {"path": str(path)}
                ) from exc

    def _load_state(self) -> bool:
        path = self._state_path()
        # read directly instead of exists() to avoid a TOCTOU race
        try:
            data = json.loads(path.read_text())
        except FileNotFoundError:
            return False
        except json.JSONDecodeError as exc:
            self.logger.error(
                "memory_store_state_corrupt", error=str(exc), path=str(path)
            )
            raise PersistenceError(
                "in-memory state snapshot is corrupt", {"path": str(path)}
            ) from exc
        self.users = {u["id"]: self._deserialize_user(u) for u in data.get("users", [])}
        self.credentials = {
            entry["user_id"]: (entry["password_hash"], entry.get("password_algo", ""))
            for entry in data.get("credentials", [])
        }
        self.tokens = {
            t["id"]: self._deserialize_token(t) for t in data.get("tokens", [])
        }
        self._token_index = {t.token: t.id for t in self.tokens.values()}
        return True

    def _serialize_user(self, user: User) -> dict:
        return {
            "id": user.id,
            "email": user.email,
            "role": user.role.value,
            "status": user.status.value,
            "first_name": user.first_name,
            "last_name": user.last_name,
            "created_at": self._serialize_datetime(user.created_at),
        }

    def _deserialize_user(self, data: dict) -> User:
        return User(
            id=str(data["id"]),
            email=data["email"],
            role=Role(data.get("role", Role.JOB_SEEKER.value)),
            status=UserStatus(data.get("status", UserStatus.OFFLINE.value)),
            first_name=data.get("first_name"),
            last_name=data.get("last_name"),
            created_at=parse_ts(data.get("created_at")) or datetime.now(timezone.utc),
        )

    def _serialize_token(self, token: Token) -> dict:
        return {
            "id": token.id,
            "user_id": token.user_id,
            "token": token.token,
            "token_type": token.token_type.value,
            "expired": token.expired,
            "revoked": token.revoked,
            "created_at": self._serialize_datetime(token.created_at),
            "expires_at": self._serialize_datetime(token.expires_at),
        }

    def _deserialize_token(self, data: dict) -> Token:
        return Token(
            id=str(data["id"]),
            user_id=str(data["user_id"]),
            token=data["token"],
            token_type=TokenType(data.get("token_type", TokenType.BEARER.value)),
            expired=bool(data.get("expired", False)),
            revoked=bool(data.get("revoked", False)),
            created_at=parse_ts(data.get("created_at")) or datetime.now(timezone.utc),
            expires_at=parse_ts(data.get("expires_at")),
        )
