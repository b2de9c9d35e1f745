#!/usr/bin/env python3
"""Delete revoked or expired bearer tokens older than a cutoff.

Usage:
    # Drop dead tokens created more than 30 days ago:
    python scripts/prune_tokens.py

    # Explicit retention window or cutoff:
    python scripts/prune_tokens.py --older-than-days 90
    python scripts/prune_tokens.py --before 2024-06-01T00:00:00+00:00

Valid tokens are never touched, whatever their age.

Environment Variables:
    TOKEN_RETENTION_DAYS: Default retention window in days (30 if unset)
    DATABASE_URL: PostgreSQL connection string (optional, uses memory store if not set)
"""
from __future__ import annotations

import argparse
import os
import sys
from datetime import datetime, timedelta, timezone
from pathlib import Path

# Add project root to path for imports
ROOT = Path(__file__).resolve().parent.parent
sys.path.insert(0, str(ROOT))

DEFAULT_RETENTION_DAYS = 30


def resolve_cutoff(before: str | None, older_than_days: int, now: datetime | None = None) -> datetime:
    """Return the prune cutoff as an aware UTC datetime.

    An explicit ``before`` timestamp wins; naive values are read as UTC.
    """
    if before:
        cutoff = datetime.fromisoformat(before)
        if cutoff.tzinfo is None:
            cutoff = cutoff.replace(tzinfo=timezone.utc)
        return cutoff.astimezone(timezone.utc)
    if older_than_days < 0:
        raise ValueError("older_than_days must be non-negative")
    now = now or datetime.now(timezone.utc)
    return now - timedelta(days=older_than_days)


def prune_tokens(cutoff: datetime) -> dict:
    """Remove dead tokens created before ``cutoff``.

    Returns:
        dict with the cutoff (ISO 8601) and the number of tokens removed
    """
    # Import here to avoid loading config before env vars are set
    from jobinow.logging import get_logger
    from jobinow.service.runtime import get_runtime

    logger = get_logger("prune_tokens")
    removed = get_runtime().store.prune_tokens(cutoff)
    logger.info("tokens_pruned", count=removed, cutoff=cutoff.isoformat())
    return {"cutoff": cutoff.isoformat(), "removed": removed}


def main():
    parser = argparse.ArgumentParser(
        description="Prune dead jobinow bearer tokens",
        formatter_class=argparse.RawDescriptionHelpFormatter,
        epilog=__doc__,
    )
    parser.add_argument(
        "--older-than-days",
        type=int,
        default=int(os.environ.get("TOKEN_RETENTION_DAYS", DEFAULT_RETENTION_DAYS)),
        help="Retention window in days (or set TOKEN_RETENTION_DAYS env var)",
    )
    parser.add_argument(
        "--before",
        default=None,
        help="Explicit ISO 8601 cutoff; overrides --older-than-days",
    )

    args = parser.parse_args()

    try:
        cutoff = resolve_cutoff(args.before, args.older_than_days)
    except ValueError as e:
        print(f"Error: {e}")
        sys.exit(1)

    if not os.environ.get("SHARED_FS_ROOT"):
        os.environ["SHARED_FS_ROOT"] = "/tmp/jobinow-bootstrap"

    if not os.environ.get("DATABASE_URL"):
        os.environ["USE_MEMORY_STORE"] = "true"
        print("Note: Using in-memory store (set DATABASE_URL for persistence)")

    os.environ.setdefault("ALLOW_REDIS_FALLBACK_DEV", "true")

    from jobinow.storage.errors import PersistenceError

    try:
        result = prune_tokens(cutoff)
    except PersistenceError as e:
        print(f"Error: {e.message}")
        sys.exit(1)

    print(f"Removed {result['removed']} dead token(s) created before {result['cutoff']}")


if __name__ == "__main__":
    main()
