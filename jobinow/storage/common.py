"""Common utilities shared between storage backends.

Both MemoryStore and PostgresStore go through these helpers so that
normalization and flag-merge rules stay identical across backends.
"""

from __future__ import annotations

from datetime import datetime, timezone
from typing import Any, List, Optional, Sequence, TypeVar

from jobinow.storage.models import Page, Token

T = TypeVar("T")


def normalize_email(email: str) -> str:
    """Lower-case and trim an email so lookups and uniqueness agree."""
    return (email or "").strip().lower()


def clamp_page(page: int, size: int, max_size: int = 100) -> tuple[int, int]:
    """Return a non-negative page index and a size within ``[1, max_size]``."""
    page = max(0, int(page))
    size = max(1, min(int(size), max_size))
    return page, size


def slice_page(items: Sequence[T], page: int, size: int) -> Page[T]:
    """Cut one zero-based page out of an already ordered sequence."""
    start = page * size
    return Page(items=list(items[start : start + size]), page=page, size=size, total=len(items))


def merge_token_flags(current: Token, incoming: Token) -> Token:
    """Apply an update without ever clearing a validity flag.

    A stale in-memory copy carrying ``revoked=False`` must not resurrect a
    token another writer already revoked.
    """
    current.expired = current.expired or incoming.expired
    current.revoked = current.revoked or incoming.revoked
    return current


def parse_ts(value: Optional[Any]) -> Optional[datetime]:
    if isinstance(value, datetime):
        if value.tzinfo is None:
            return value.replace(tzinfo=timezone.utc)
        return value
    if isinstance(value, str):
        try:
            parsed = datetime.fromisoformat(value)
        except ValueError:
            return None
        if parsed.tzinfo is None:
            parsed = parsed.replace(tzinfo=timezone.utc)
        return parsed
    return None


def sort_users(users: List[Any]) -> List[Any]:
    """Stable listing order: oldest account first, id as tie-breaker."""
    return sorted(users, key=lambda u: (u.created_at, u.id))
