#!/usr/bin/env python3
"""Provision a user with a password, or re-role an existing one.

Usage:
    # Using environment variables:
    USER_EMAIL=manager@example.com USER_PASSWORD=SecurePassword123! USER_ROLE=MANAGER \
        python scripts/bootstrap_user.py

    # Or with command line args:
    python scripts/bootstrap_user.py --email manager@example.com \
        --password SecurePassword123! --role MANAGER

Environment Variables:
    USER_EMAIL: Email for the user
    USER_PASSWORD: Password for the user (must meet complexity requirements)
    USER_ROLE: One of JOB_SEEKER, RECRUITER, AGENT, MANAGER, ADMIN
    DATABASE_URL: PostgreSQL connection string (optional, uses memory store if not set)
"""
from __future__ import annotations

import argparse
import os
import sys
from pathlib import Path

# Add project root to path for imports
ROOT = Path(__file__).resolve().parent.parent
sys.path.insert(0, str(ROOT))


def validate_password(password: str) -> bool:
    """Check password meets complexity requirements."""
    if len(password) < 12:
        return False
    has_upper = any(c.isupper() for c in password)
    has_lower = any(c.islower() for c in password)
    has_digit = any(c.isdigit() for c in password)
    has_special = any(c in "!@#$%^&*()_+-=[]{}|;':\",./<>?" for c in password)
    return sum([has_upper, has_lower, has_digit, has_special]) >= 3


def bootstrap_user(
    email: str,
    password: str,
    role: str,
    *,
    first_name: str | None = None,
    last_name: str | None = None,
    dry_run: bool = False,
) -> dict:
    """Create a user or update the role of an existing one.

    An existing user without a stored credential (left behind by an
    interrupted earlier run) gets ``password`` set.

    Returns:
        dict with user_id, email, role and status ('created', 'updated',
        'password_set', 'unchanged' or 'dry_run')
    """
    # Import here to avoid loading config before env vars are set
    from jobinow.service.runtime import get_runtime
    from jobinow.storage.errors import PersistenceError
    from jobinow.storage.models import Role

    target_role = Role(role)
    runtime = get_runtime()
    existing = runtime.store.get_user_by_email(email)

    if existing:
        missing_password = runtime.store.get_password_record(existing.id) is None
        if existing.role == target_role and not missing_password:
            print(f"User {existing.email} already has role {target_role.value} (id: {existing.id})")
            return {
                "user_id": existing.id,
                "email": existing.email,
                "role": target_role.value,
                "status": "unchanged",
            }
        if dry_run:
            if missing_password:
                print(f"[DRY RUN] Would set missing password for {existing.email}")
            if existing.role != target_role:
                print(f"[DRY RUN] Would change role of {existing.email} to {target_role.value}")
            return {"user_id": existing.id, "email": existing.email, "role": target_role.value, "status": "dry_run"}
        if existing.role != target_role:
            runtime.store.update_user_role(existing.id, target_role)
            print(f"Changed role of {existing.email} to {target_role.value} (id: {existing.id})")
        if missing_password:
            digest, algo = runtime.sessions.verifier.hash(password)
            runtime.store.save_password(existing.id, digest, algo)
            print(f"Set missing password for {existing.email} (id: {existing.id})")
        return {
            "user_id": existing.id,
            "email": existing.email,
            "role": target_role.value,
            "status": "password_set" if missing_password else "updated",
        }

    if dry_run:
        print(f"[DRY RUN] Would create {target_role.value} user: {email}")
        return {"user_id": None, "email": email, "role": target_role.value, "status": "dry_run"}

    user = runtime.store.create_user(
        email, role=target_role, first_name=first_name, last_name=last_name
    )
    digest, algo = runtime.sessions.verifier.hash(password)
    try:
        runtime.store.save_password(user.id, digest, algo)
    except PersistenceError:
        print(f"Created {user.email} but storing the password failed; re-run to set it")
        raise
    print(f"Created {target_role.value} user: {user.email} (id: {user.id})")
    return {
        "user_id": user.id,
        "email": user.email,
        "role": target_role.value,
        "status": "created",
    }


def main():
    parser = argparse.ArgumentParser(
        description="Provision a jobinow user",
        formatter_class=argparse.RawDescriptionHelpFormatter,
        epilog=__doc__,
    )
    parser.add_argument(
        "--email",
        default=os.environ.get("USER_EMAIL"),
        help="User email (or set USER_EMAIL env var)",
    )
    parser.add_argument(
        "--password",
        default=os.environ.get("USER_PASSWORD"),
        help="User password (or set USER_PASSWORD env var)",
    )
    parser.add_argument(
        "--role",
        default=os.environ.get("USER_ROLE", "JOB_SEEKER"),
        choices=["JOB_SEEKER", "RECRUITER", "AGENT", "MANAGER", "ADMIN"],
        help="User role (or set USER_ROLE env var)",
    )
    parser.add_argument("--first-name", default=None)
    parser.add_argument("--last-name", default=None)
    parser.add_argument(
        "--dry-run",
        action="store_true",
        help="Show what would be done without making changes",
    )

    args = parser.parse_args()

    if not args.email:
        print("Error: --email or USER_EMAIL environment variable required")
        sys.exit(1)

    if not args.password:
        print("Error: --password or USER_PASSWORD environment variable required")
        sys.exit(1)

    if not validate_password(args.password):
        print("Error: Password must be at least 12 characters with 3+ character classes")
        print("       (uppercase, lowercase, digits, special characters)")
        sys.exit(1)

    if not os.environ.get("SHARED_FS_ROOT"):
        os.environ["SHARED_FS_ROOT"] = "/tmp/jobinow-bootstrap"

    # Use memory store if no database configured
    if not os.environ.get("DATABASE_URL"):
        os.environ["USE_MEMORY_STORE"] = "true"
        print("Note: Using in-memory store (set DATABASE_URL for persistence)")

    os.environ.setdefault("ALLOW_REDIS_FALLBACK_DEV", "true")

    from jobinow.storage.errors import PersistenceError

    try:
        result = bootstrap_user(
            args.email,
            args.password,
            args.role,
            first_name=args.first_name,
            last_name=args.last_name,
            dry_run=args.dry_run,
        )
    except PersistenceError as e:
        print(f"Error: {e.message}")
        sys.exit(1)

    if result["status"] == "created":
        print("\nUser created successfully!")
        print(f"  Email: {result['email']}")
        print(f"  Role: {result['role']}")
        print(f"  User ID: {result['user_id']}")
    elif result["status"] == "updated":
        print("\nExisting user role updated!")
    elif result["status"] == "password_set":
        print("\nMissing password set; the user can now log in.")
    elif result["status"] == "unchanged":
        print("\nNo changes needed.")


if __name__ == "__main__":
    main()
