#!/usr/bin/env python3
"""Bootstrap the first active account with a password.

Usage:
    # Using environment variables:
    ADMIN_EMAIL=admin@example.com ADMIN_PASSWORD='SecurePassword123!' python scripts/bootstrap_admin.py

    # Or with command line args:
    python scripts/bootstrap_admin.py --email admin@example.com --password 'SecurePassword123!'

Environment Variables:
    ADMIN_EMAIL: Email for the account
    ADMIN_PASSWORD: Password for the account (must satisfy the password policy)
    ADMIN_NAME: Optional display name
    DATABASE_URL: PostgreSQL connection string (optional, uses memory store if not set)
"""
from __future__ import annotations

import argparse
import os
import sys
from datetime import datetime, timezone
from pathlib import Path

# Add project root to path for imports
ROOT = Path(__file__).resolve().parent.parent
sys.path.insert(0, str(ROOT))


def bootstrap_admin(runtime, email: str, password: str, name: str | None = None, dry_run: bool = False) -> dict:
    """Create the account, or re-activate it when it already exists.

    Returns:
        dict with account_id, email, and status ('created', 'activated',
        'already_active' or 'dry_run')
    """
    from gatekeep.service.credentials import normalize_email
    from gatekeep.storage.models import AccountStatus

    existing = runtime.store.accounts.get_by_email(normalize_email(email))
    if existing:
        if existing.is_active and existing.password_hash:
            print(f"Account {email} already exists and is active (id: {existing.id})")
            return {"account_id": existing.id, "email": email, "status": "already_active"}
        if dry_run:
            print(f"[DRY RUN] Would activate existing account {email}")
            return {"account_id": existing.id, "email": email, "status": "dry_run"}
        runtime.policy.check(password)
        runtime.store.accounts.update(
            existing.id,
            datetime.now(timezone.utc),
            status=AccountStatus.ACTIVE,
            password_hash=runtime.hasher.hash(password),
        )
        runtime.lockouts.unlock(existing.id, "bootstrap")
        print(f"Activated existing account {email} (id: {existing.id})")
        return {"account_id": existing.id, "email": email, "status": "activated"}

    if dry_run:
        print(f"[DRY RUN] Would create account: {email}")
        return {"account_id": None, "email": email, "status": "dry_run"}

    account = runtime.auth.create_account(email, password, name=name)
    print(f"Created account: {email} (id: {account.id})")
    return {"account_id": account.id, "email": email, "status": "created"}


def main():
    parser = argparse.ArgumentParser(
        description="Bootstrap an active account for Gatekeep",
        formatter_class=argparse.RawDescriptionHelpFormatter,
        epilog=__doc__,
    )
    parser.add_argument(
        "--email",
        default=os.environ.get("ADMIN_EMAIL"),
        help="Account email (or set ADMIN_EMAIL env var)",
    )
    parser.add_argument(
        "--password",
        default=os.environ.get("ADMIN_PASSWORD"),
        help="Account password (or set ADMIN_PASSWORD env var)",
    )
    parser.add_argument(
        "--name",
        default=os.environ.get("ADMIN_NAME"),
        help="Display name (or set ADMIN_NAME env var)",
    )
    parser.add_argument(
        "--dry-run",
        action="store_true",
        help="Show what would be done without making changes",
    )

    args = parser.parse_args()

    if not args.email:
        print("Error: --email or ADMIN_EMAIL environment variable required")
        sys.exit(1)

    if not args.password:
        print("Error: --password or ADMIN_PASSWORD environment variable required")
        sys.exit(1)

    # Use memory store if no database configured
    if not os.environ.get("DATABASE_URL"):
        os.environ["USE_MEMORY_STORE"] = "true"
        print("Note: Using in-memory store (set DATABASE_URL for persistence)")

    from gatekeep.config import Settings
    from gatekeep.service.errors import ServiceError
    from gatekeep.service.runtime import Runtime

    runtime = Runtime(Settings.from_env())
    try:
        result = bootstrap_admin(runtime, args.email, args.password, args.name, args.dry_run)
    except ServiceError as e:
        print(f"Error: {e.message}")
        if e.detail:
            print(f"       {e.detail}")
        sys.exit(1)
    finally:
        runtime.close()

    if result["status"] == "created":
        print("\nAccount created successfully!")
        print(f"  Email: {result['email']}")
        print(f"  Account ID: {result['account_id']}")
    elif result["status"] == "activated":
        print("\nExisting account activated!")
    elif result["status"] == "already_active":
        print("\nNo changes needed - account is already active.")


if __name__ == "__main__":
    main()
