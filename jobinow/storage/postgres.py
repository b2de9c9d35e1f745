from __future__ import annotations

import uuid
from contextlib import contextmanager
from datetime import datetime, timezone
from pathlib import Path
from typing import Any, Iterable, Iterator, List, Optional

from psycopg import errors
from psycopg.rows import dict_row
from psycopg_pool import ConnectionPool, PoolTimeout

from jobinow.logging import get_logger
from jobinow.storage.common import normalize_email, parse_ts
from jobinow.storage.errors import ConstraintViolation, PersistenceError
from jobinow.storage.models import Page, Role, Token, TokenType, User, UserStatus

_SCHEMA = (
    """
    CREATE TABLE IF NOT EXISTS app_user (
        id UUID PRIMARY KEY,
        email TEXT NOT NULL UNIQUE,
        role TEXT NOT NULL DEFAULT 'JOB_SEEKER',
        status TEXT NOT NULL DEFAULT 'OFFLINE',
        first_name TEXT,
        last_name TEXT,
        created_at TIMESTAMPTZ NOT NULL DEFAULT now(),
        updated_at TIMESTAMPTZ NOT NULL DEFAULT now()
    )
    """,
    """
    CREATE TABLE IF NOT EXISTS user_auth_credential (
        user_id UUID PRIMARY KEY REFERENCES app_user(id) ON DELETE CASCADE,
        password_hash TEXT NOT NULL,
        password_algo TEXT NOT NULL,
        created_at TIMESTAMPTZ NOT NULL DEFAULT now(),
        last_updated_at TIMESTAMPTZ
    )
    """,
    """
    CREATE TABLE IF NOT EXISTS auth_token (
        id UUID PRIMARY KEY,
        user_id UUID NOT NULL REFERENCES app_user(id) ON DELETE CASCADE,
        token TEXT NOT NULL UNIQUE,
        token_type TEXT NOT NULL DEFAULT 'BEARER',
        expired BOOLEAN NOT NULL DEFAULT FALSE,
        revoked BOOLEAN NOT NULL DEFAULT FALSE,
        created_at TIMESTAMPTZ NOT NULL DEFAULT now(),
        expires_at TIMESTAMPTZ
    )
    """,
    """
    CREATE INDEX IF NOT EXISTS auth_token_valid_by_user
        ON auth_token (user_id) WHERE NOT expired AND NOT revoked
    """,
)

# Flags are OR-merged so a stale writer can never clear them
_UPSERT_TOKEN = """
    INSERT INTO auth_token (id, user_id, token, token_type, expired, revoked, created_at, expires_at)
    VALUES (%s, %s, %s, %s, %s, %s, %s, %s)
    ON CONFLICT (id) DO UPDATE
    SET expired = auth_token.expired OR EXCLUDED.expired,
        revoked = auth_token.revoked OR EXCLUDED.revoked
    RETURNING *
"""


class PostgresStore:
    """Postgres-backed user directory and token store."""

    def __init__(self, dsn: str, fs_root: str, *, timeout_seconds: float = 5.0) -> None:
        self.dsn = dsn
        self.fs_root = Path(fs_root)
        self.fs_root.mkdir(parents=True, exist_ok=True)
        self.logger = get_logger(__name__)
        self.timeout_seconds = timeout_seconds
        statement_timeout_ms = max(1, int(timeout_seconds * 1000))
        self.pool = ConnectionPool(
            self.dsn,
            min_size=2,
            max_size=10,
            timeout=timeout_seconds,
            kwargs={
                "row_factory": dict_row,
                "autocommit": False,
                "connect_timeout": max(1, int(timeout_seconds)),
                "options": f"-c statement_timeout={statement_timeout_ms}",
            },
        )
        self._ensure_schema()

    @contextmanager
    def _connect(self) -> Iterator[Any]:
        """Check out a pooled connection; the block runs as one transaction.

        Pool exhaustion, statement timeouts and dropped connections surface
        as retryable :class:`PersistenceError`.
        """

        try:
            with self.pool.connection(timeout=self.timeout_seconds) as conn:
                yield conn
        except PoolTimeout as exc:
            self.logger.warning("postgres_pool_timeout", timeout=self.timeout_seconds)
            raise PersistenceError(
                "database unavailable", {"reason": "pool_timeout"}, retryable=True
            ) from exc
        except errors.OperationalError as exc:
            self.logger.warning("postgres_operational_error", error=str(exc))
            raise PersistenceError(
                "database unavailable", {"reason": "operational_error"}, retryable=True
            ) from exc

    def _ensure_schema(self) -> None:
        with self._connect() as conn:
            for statement in _SCHEMA:
                conn.execute(statement)

    def verify_connection(self) -> None:
        with self._connect() as conn:
            conn.execute("SELECT 1").fetchone()

    def close(self) -> None:
        self.pool.close()

    @staticmethod
    def _user_from_row(row: dict) -> User:
        return User(
            id=str(row["id"]),
            email=row["email"],
            role=Role(row.get("role") or Role.JOB_SEEKER.value),
            status=UserStatus(row.get("status") or UserStatus.OFFLINE.value),
            first_name=row.get("first_name"),
            last_name=row.get("last_name"),
            created_at=parse_ts(row.get("created_at")) or datetime.now(timezone.utc),
        )

    @staticmethod
    def _token_from_row(row: dict) -> Token:
        return Token(
            id=str(row["id"]),
            user_id=str(row["user_id"]),
            token=row["token"],
            token_type=TokenType(row.get("token_type") or TokenType.BEARER.value),
            expired=bool(row.get("expired", False)),
            revoked=bool(row.get("revoked", False)),
            created_at=parse_ts(row.get("created_at")) or datetime.now(timezone.utc),
            expires_at=parse_ts(row.get("expires_at")),
        )

    @staticmethod
    def _token_params(token: Token) -> tuple:
        return (
            token.id,
            token.user_id,
            token.token,
            token.token_type.value,
            token.expired,
            token.revoked,
            token.created_at,
            token.expires_at,
        )

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
        user_id = str(uuid.uuid4())
        try:
            with self._connect() as conn:
                row = conn.execute(
                    """
                    INSERT INTO app_user (id, email, role, status, first_name, last_name)
                    VALUES (%s, %s, %s, %s, %s, %s)
                    RETURNING *
                    """,
                    (
                        user_id,
                        normalize_email(email),
                        Role(role).value,
                        UserStatus(status).value,
                        first_name,
                        last_name,
                    ),
                ).fetchone()
        except errors.UniqueViolation:
            raise ConstraintViolation("email already exists", {"field": "email"})
        return self._user_from_row(row)

    def get_user_by_email(self, email: str) -> Optional[User]:
        with self._connect() as conn:
            row = conn.execute(
                "SELECT * FROM app_user WHERE email = %s", (normalize_email(email),)
            ).fetchone()
        return self._user_from_row(row) if row else None

    def get_user(self, user_id: str) -> Optional[User]:
        try:
            uuid.UUID(str(user_id))
        except ValueError:
            return None
        with self._connect() as conn:
            row = conn.execute(
                "SELECT * FROM app_user WHERE id = %s", (user_id,)
            ).fetchone()
        return self._user_from_row(row) if row else None

    def _page_users(
        self, where: str, params: tuple, page: int, size: int
    ) -> Page[User]:
        with self._connect() as conn:
            total_row = conn.execute(
                f"SELECT COUNT(*) AS total FROM app_user {where}", params
            ).fetchone()
            rows = conn.execute(
                f"SELECT * FROM app_user {where} ORDER BY created_at, id LIMIT %s OFFSET %s",
                params + (size, page * size),
            ).fetchall()
        return Page(
            items=[self._user_from_row(row) for row in rows],
            page=page,
            size=size,
            total=int(total_row["total"]) if total_row else 0,
        )

    def list_users(self, page: int = 0, size: int = 20) -> Page[User]:
        return self._page_users("", (), page, size)

    def list_users_by_role(self, role: Role, page: int = 0, size: int = 20) -> Page[User]:
        return self._page_users("WHERE role = %s", (Role(role).value,), page, size)

    def list_users_by_status(
        self, status: UserStatus, page: int = 0, size: int = 20
    ) -> Page[User]:
        return self._page_users(
            "WHERE status = %s", (UserStatus(status).value,), page, size
        )

    def set_user_status(self, user_id: str, status: UserStatus) -> Optional[User]:
        with self._connect() as conn:
            row = conn.execute(
                "UPDATE app_user SET status = %s, updated_at = now() WHERE id = %s RETURNING *",
                (UserStatus(status).value, user_id),
            ).fetchone()
        return self._user_from_row(row) if row else None

    def update_user_role(self, user_id: str, role: Role) -> Optional[User]:
        with self._connect() as conn:
            row = conn.execute(
                "UPDATE app_user SET role = %s, updated_at = now() WHERE id = %s RETURNING *",
                (Role(role).value, user_id),
            ).fetchone()
        return self._user_from_row(row) if row else None

    def save_password(
        self, user_id: str, password_hash: str, password_algo: str
    ) -> None:
        try:
            with self._connect() as conn:
                conn.execute(
                    """
                    INSERT INTO user_auth_credential (user_id, password_hash, password_algo, last_updated_at)
                    VALUES (%s, %s, %s, now())
                    ON CONFLICT (user_id) DO UPDATE
                    SET password_hash = EXCLUDED.password_hash,
                        password_algo = EXCLUDED.password_algo,
                        last_updated_at = now()
                    """,
                    (user_id, password_hash, password_algo),
                )
        except errors.ForeignKeyViolation:
            raise ConstraintViolation(
                "user not found for credentials", {"user_id": user_id}
            )

    def get_password_record(self, user_id: str) -> Optional[tuple[str, str]]:
        with self._connect() as conn:
            row = conn.execute(
                "SELECT password_hash, password_algo FROM user_auth_credential WHERE user_id = %s",
                (user_id,),
            ).fetchone()
        if not row:
            return None
        return row["password_hash"], row.get("password_algo") or ""

    # tokens
    def save_token(self, token: Token) -> Token:
        try:
            with self._connect() as conn:
                row = conn.execute(
                    """
                    INSERT INTO auth_token (id, user_id, token, token_type, expired, revoked, created_at, expires_at)
                    VALUES (%s, %s, %s, %s, %s, %s, %s, %s)
                    RETURNING *
                    """,
                    self._token_params(token),
                ).fetchone()
        except errors.ForeignKeyViolation:
            raise ConstraintViolation("token user missing", {"user_id": token.user_id})
        except errors.UniqueViolation:
            raise ConstraintViolation("token already exists", {"field": "token"})
        return self._token_from_row(row)

    def get_token(self, value: str) -> Optional[Token]:
        with self._connect() as conn:
            row = conn.execute(
                "SELECT * FROM auth_token WHERE token = %s", (value,)
            ).fetchone()
        return self._token_from_row(row) if row else None

    def find_all_valid_tokens(self, user_id: str) -> List[Token]:
        with self._connect() as conn:
            rows = conn.execute(
                """
                SELECT * FROM auth_token
                WHERE user_id = %s AND NOT expired AND NOT revoked
                """,
                (user_id,),
            ).fetchall()
        return [self._token_from_row(row) for row in rows]

    def save_tokens(self, tokens: Iterable[Token]) -> List[Token]:
        batch = list(tokens)
        if not batch:
            return []
        saved: List[Token] = []
        try:
            # one connection block is one transaction; any failure rolls back the batch
            with self._connect() as conn:
                for token in batch:
                    row = conn.execute(_UPSERT_TOKEN, self._token_params(token)).fetchone()
                    saved.append(self._token_from_row(row))
        except errors.ForeignKeyViolation:
            raise ConstraintViolation("token user missing", {"field": "user_id"})
        except errors.UniqueViolation:
            raise ConstraintViolation("token already exists", {"field": "token"})
        return saved

    def expire_tokens_before(self, cutoff: datetime) -> int:
        with self._connect() as conn:
            result = conn.execute(
                """
                UPDATE auth_token SET expired = TRUE
                WHERE NOT expired AND NOT revoked AND expires_at IS NOT NULL AND expires_at <= %s
                """,
                (cutoff,),
            )
            return result.rowcount or 0

    def prune_tokens(self, before: datetime) -> int:
        with self._connect() as conn:
            result = conn.execute(
                "DELETE FROM auth_token WHERE (expired OR revoked) AND created_at < %s",
                (before,),
            )
            return result.rowcount or 0
