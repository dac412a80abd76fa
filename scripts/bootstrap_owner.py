#!/usr/bin/env python3
"""Create the owner account that access codes are emailed to.

Usage:
    # Using environment variables:
    OWNER_EMAIL=owner@example.com python scripts/bootstrap_owner.py

    # Or with command line args:
    python scripts/bootstrap_owner.py --email owner@example.com --first-name Ada

Environment Variables:
    OWNER_EMAIL: Email for the owner account
    DATABASE_URL: PostgreSQL connection string (optional, uses memory store if not set)
    SHARED_FS_ROOT: Where the memory store persists its state file
"""
from __future__ import annotations

import argparse
import os
import sys
from pathlib import Path

# Add project root to path for imports
ROOT = Path(__file__).resolve().parent.parent
sys.path.insert(0, str(ROOT))


def bootstrap_owner(
    email: str,
    *,
    first_name: str | None = None,
    last_name: str | None = None,
    bio: str | None = None,
    dry_run: bool = False,
) -> dict:
    """Create the owner account unless one already exists.

    Returns:
        dict with account_id, email, and status ('created', 'exists' or 'dry_run')
    """
    # Import here to avoid loading config before env vars are set
    from studiogate.service.runtime import get_runtime

    store = get_runtime().store

    existing = store.get_account()
    if existing is not None:
        if existing.email.lower() != email.strip().lower():
            print(f"Owner account already exists with a different email: {existing.email}")
        else:
            print(f"Owner {email} already exists (id: {existing.id})")
        return {"account_id": existing.id, "email": existing.email, "status": "exists"}

    if dry_run:
        print(f"[DRY RUN] Would create owner account: {email}")
        return {"account_id": None, "email": email, "status": "dry_run"}

    account = store.create_account(
        email, first_name=first_name, last_name=last_name, bio=bio
    )
    print(f"Created owner account: {account.email} (id: {account.id})")
    return {"account_id": account.id, "email": account.email, "status": "created"}


def main():
    parser = argparse.ArgumentParser(
        description="Bootstrap the owner account for Studio Gate",
        formatter_class=argparse.RawDescriptionHelpFormatter,
        epilog=__doc__,
    )
    parser.add_argument(
        "--email",
        default=os.environ.get("OWNER_EMAIL"),
        help="Owner email (or set OWNER_EMAIL env var)",
    )
    parser.add_argument("--first-name", default=None, help="Owner first name")
    parser.add_argument("--last-name", default=None, help="Owner last name")
    parser.add_argument("--bio", default=None, help="Short owner bio")
    parser.add_argument(
        "--dry-run",
        action="store_true",
        help="Show what would be done without making changes",
    )

    args = parser.parse_args()

    if not args.email or "@" not in args.email:
        print("Error: a valid --email or OWNER_EMAIL environment variable is required")
        sys.exit(1)

    # Seeding is this script's job; keep the runtime from seeding on its own
    os.environ.pop("OWNER_EMAIL", None)

    if not os.environ.get("DATABASE_URL"):
        os.environ["USE_MEMORY_STORE"] = "true"
        os.environ.setdefault("SHARED_FS_ROOT", "/tmp/studiogate-bootstrap")
        print("Note: Using in-memory store (set DATABASE_URL for persistence)")

    os.environ.setdefault("ALLOW_REDIS_FALLBACK_DEV", "true")

    try:
        result = bootstrap_owner(
            args.email,
            first_name=args.first_name,
            last_name=args.last_name,
            bio=args.bio,
            dry_run=args.dry_run,
        )
    except Exception as e:
        print(f"Error: {e}")
        sys.exit(1)

    if result["status"] == "created":
        print("\nOwner account created successfully!")
        print(f"  Email: {result['email']}")
        print(f"  Account ID: {result['account_id']}")
    elif result["status"] == "exists":
        print("\nNo changes needed - an owner account is already set up.")


if __name__ == "__main__":
    main()
