from __future__ import annotations

import uuid
from dataclasses import dataclass, field
from datetime import datetime, timedelta, timezone
from enum import Enum
from typing import Generic, List, Optional, TypeVar


def _utcnow() -> datetime:
    return datetime.now(timezone.utc)


class Role(str, Enum):
    JOB_SEEKER = "JOB_SEEKER"
    RECRUITER = "RECRUITER"
    AGENT = "AGENT"
    MANAGER = "MANAGER"
    ADMIN = "ADMIN"


class UserStatus(str, Enum):
    ONLINE = "ONLINE"
    OFFLINE = "OFFLINE"


class TokenType(str, Enum):
    BEARER = "BEARER"


@dataclass
class User:
    id: str
    email: str
    role: Role = Role.JOB_SEEKER
    status: UserStatus = UserStatus.OFFLINE
    first_name: Optional[str] = None
    last_name: Optional[str] = None
    created_at: datetime = field(default_factory=_utcnow)


@dataclass
class Token:
    """A persisted bearer credential.

    ``expired`` and ``revoked`` only ever move from False to True; a token is
    usable while both are False.
    """

    id: str
    user_id: str
    token: str
    token_type: TokenType = TokenType.BEARER
    expired: bool = False
    revoked: bool = False
    created_at: datetime = field(default_factory=_utcnow)
    expires_at: Optional[datetime] = None

    @classmethod
    def new(
        cls, user_id: str, value: str, ttl_minutes: int = 60 * 24
    ) -> "Token":
        now = _utcnow()
        return cls(
            id=str(uuid.uuid4()),
            user_id=user_id,
            token=value,
            created_at=now,
            expires_at=now + timedelta(minutes=ttl_minutes),
        )

    @property
    def is_valid(self) -> bool:
        return not self.expired and not self.revoked

    def revoke(self) -> None:
        self.expired = True
        self.revoked = True


T = TypeVar("T")


@dataclass
class Page(Generic[T]):
    """One slice of a listing; ``page`` is zero-based."""

    items: List[T]
    page: int
    size: int
    total: int

    @property
    def pages(self) -> int:
        if self.size <= 0:
            return 0
        return (self.total + self.size - 1) // self.size
