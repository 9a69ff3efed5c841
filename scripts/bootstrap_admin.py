#!/usr/bin/env python3
"""Bootstrap a super-admin account.

Super-admins manage organizations and org admins; they hold no membership
and always log in without an organization.

Usage:
    # Using environment variables:
    ADMIN_EMAIL=root@example.com ADMIN_PASSWORD=SecurePassword123! python scripts/bootstrap_admin.py

    # Or with command line args:
    python scripts/bootstrap_admin.py --email root@example.com --password SecurePassword123!

Environment Variables:
    ADMIN_EMAIL: Email for the super-admin
    ADMIN_PASSWORD: Password for the super-admin
    DATABASE_URL: PostgreSQL connection string (optional, uses the persisted
        memory store under SHARED_FS_ROOT if not set)
"""
from __future__ import annotations

import argparse
import os
import sys
from pathlib import Path

# Add project root to path for imports
ROOT = Path(__file__).resolve().parent.parent
sys.path.insert(0, str(ROOT))


def bootstrap_super_admin(email: str, password: str, dry_run: bool = False) -> dict:
    """Create a super-admin or reset an existing one's password.

    Returns:
        dict with user_id, email, and status ('created', 'updated' or 'dry_run')
    """
    # Import here to avoid loading config before env vars are set
    from tenantgate.service.runtime import get_runtime

    runtime = get_runtime()
    existing_user = runtime.store.get_user_by_email(email)

    if dry_run:
        action = "reset password for" if existing_user else "create"
        print(f"[DRY RUN] Would {action} super-admin {email}")
        return {
            "user_id": existing_user.id if existing_user else None,
            "email": email,
            "status": "dry_run",
        }

    user = runtime.auth.bootstrap_super_admin(email, password)
    return {
        "user_id": user.id,
        "email": user.email,
        "status": "updated" if existing_user else "created",
    }


def main():
    parser = argparse.ArgumentParser(
        description="Bootstrap a super-admin for tenantgate",
        formatter_class=argparse.RawDescriptionHelpFormatter,
        epilog=__doc__,
    )
    parser.add_argument(
        "--email",
        default=os.environ.get("ADMIN_EMAIL"),
        help="Super-admin email (or set ADMIN_EMAIL env var)",
    )
    parser.add_argument(
        "--password",
        default=os.environ.get("ADMIN_PASSWORD"),
        help="Super-admin password (or set ADMIN_PASSWORD env var)",
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

    if not os.environ.get("DATABASE_URL"):
        os.environ["USE_MEMORY_STORE"] = "true"
        print("Note: Using the file-backed memory store (set DATABASE_URL for Postgres)")

    # Bootstrap only touches the document store
    os.environ.setdefault("ALLOW_REDIS_FALLBACK_DEV", "true")

    from tenantgate.service.errors import ServiceError
    from tenantgate.storage.errors import BackendUnavailable

    try:
        result = bootstrap_super_admin(args.email, args.password, args.dry_run)
    except (ServiceError, BackendUnavailable) as e:
        print(f"Error: {e}")
        sys.exit(1)

    if result["status"] == "created":
        print("\nSuper-admin created successfully!")
    elif result["status"] == "updated":
        print("\nExisting super-admin password reset.")
    if result["user_id"]:
        print(f"  Email: {result['email']}")
        print(f"  User ID: {result['user_id']}")


if __name__ == "__main__":
    main()
