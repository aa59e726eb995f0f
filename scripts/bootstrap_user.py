#!/usr/bin/env python3
"""Create a user account for local setup.

Usage:
    # Using environment variables:
    BOOTSTRAP_EMAIL=dev@example.com BOOTSTRAP_PASSWORD=changeme123 python scripts/bootstrap_user.py

    # Or with command line args:
    python scripts/bootstrap_user.py --email dev@example.com --password changeme123

Environment Variables:
    BOOTSTRAP_EMAIL: Email for the account
    BOOTSTRAP_PASSWORD: Password for the account (at least 8 characters)
    DATABASE_URL: PostgreSQL connection string (optional, uses the persisted
        memory store under SHARED_FS_ROOT if not set)
"""
from __future__ import annotations

import argparse
import asyncio
import os
import sys
from pathlib import Path

# Add project root to path for imports
ROOT = Path(__file__).resolve().parent.parent
sys.path.insert(0, str(ROOT))


async def bootstrap_user(email: str, password: str, dry_run: bool = False) -> dict:
    """Create the account unless one already exists for ``email``.

    Returns:
        dict with user_id, email, and status ('created', 'exists' or 'dry_run')
    """
    # Import here to avoid loading config before env vars are set
    from taskflow.service.auth import normalize_email
    from taskflow.service.result import unwrap
    from taskflow.service.runtime import get_runtime

    runtime = get_runtime()
    try:
        existing = runtime.users.get_by_email(normalize_email(email))
        if existing:
            print(f"User {email} already exists (id: {existing.id})")
            return {"user_id": existing.id, "email": email, "status": "exists"}

        if dry_run:
            print(f"[DRY RUN] Would create user: {email}")
            return {"user_id": None, "email": email, "status": "dry_run"}

        grant = unwrap(await runtime.auth.signup(email, password, client_id="bootstrap"))
        print(f"Created user: {email} (id: {grant.user_id})")
        return {
            "user_id": grant.user_id,
            "email": email,
            "status": "created",
            "access_token": grant.access_token,
        }
    finally:
        await runtime.aclose()


def main():
    parser = argparse.ArgumentParser(
        description="Create a TaskFlow user account",
        formatter_class=argparse.RawDescriptionHelpFormatter,
        epilog=__doc__,
    )
    parser.add_argument(
        "--email",
        default=os.environ.get("BOOTSTRAP_EMAIL"),
        help="Account email (or set BOOTSTRAP_EMAIL env var)",
    )
    parser.add_argument(
        "--password",
        default=os.environ.get("BOOTSTRAP_PASSWORD"),
        help="Account password (or set BOOTSTRAP_PASSWORD env var)",
    )
    parser.add_argument(
        "--dry-run",
        action="store_true",
        help="Show what would be done without making changes",
    )

    args = parser.parse_args()

    if not args.email:
        print("Error: --email or BOOTSTRAP_EMAIL environment variable required")
        sys.exit(1)

    if not args.password:
        print("Error: --password or BOOTSTRAP_PASSWORD environment variable required")
        sys.exit(1)

    if not os.environ.get("SHARED_FS_ROOT"):
        os.environ["SHARED_FS_ROOT"] = "/tmp/taskflow-bootstrap"

    # Use memory store if no database configured
    if not os.environ.get("DATABASE_URL"):
        os.environ["USE_MEMORY_STORE"] = "true"
        print("Note: Using in-memory store (set DATABASE_URL for persistence)")

    os.environ.setdefault("ALLOW_REDIS_FALLBACK_DEV", "true")

    try:
        result = asyncio.run(bootstrap_user(args.email, args.password, args.dry_run))
    except Exception as e:
        print(f"Error: {e}")
        sys.exit(1)

    if result["status"] == "created":
        print("\nUser created successfully!")
        print(f"  Email: {result['email']}")
        print(f"  User ID: {result['user_id']}")
        print(f"  Access Token: {result['access_token'][:50]}...")
    elif result["status"] == "exists":
        print("\nNo changes needed - the account already exists.")


if __name__ == "__main__":
    main()
