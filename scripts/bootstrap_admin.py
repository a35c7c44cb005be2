#!/usr/bin/env python3
"""Create or promote an admin account.

Usage:
    # Using environment variables:
    ADMIN_EMAIL=admin@example.com ADMIN_PASSWORD=changeme123 python scripts/bootstrap_admin.py

    # Or with command line args:
    python scripts/bootstrap_admin.py --email admin@example.com --password changeme123 --name "Site Admin"

Environment Variables:
    ADMIN_EMAIL: Email for the admin user
    ADMIN_PASSWORD: Password for the admin user
    DATABASE_URL: PostgreSQL connection string (memory store is used if not set)
    STATE_DIR: Where the memory store keeps its snapshot
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


async def bootstrap_admin(
    email: str, password: str, name: str = "Administrator", dry_run: bool = False
) -> dict:
    """Create or promote an admin user.

    Returns:
        dict with user_id, email, and status
        ('created', 'promoted', 'already_admin' or 'dry_run')
    """
    # Import here to avoid loading config before env vars are set
    from csaccess.service.runtime import get_runtime
    from csaccess.service.validation import normalize_email

    runtime = get_runtime()
    await runtime.open()
    try:
        normalized = normalize_email(email)
        existing_user = await runtime.store.find_by_email(normalized)

        if existing_user:
            if existing_user.role == "admin":
                print(f"User {normalized} already exists as admin (id: {existing_user.id})")
                return {
                    "user_id": existing_user.id,
                    "email": normalized,
                    "status": "already_admin",
                }

            if dry_run:
                print(f"[DRY RUN] Would promote existing user {normalized} to admin")
                return {"user_id": existing_user.id, "email": normalized, "status": "dry_run"}

            await runtime.auth.set_role(existing_user.id, "admin")
            print(f"Promoted existing user {normalized} to admin (id: {existing_user.id})")
            return {
                "user_id": existing_user.id,
                "email": normalized,
                "status": "promoted",
            }

        if dry_run:
            print(f"[DRY RUN] Would create admin user: {normalized}")
            return {"user_id": None, "email": normalized, "status": "dry_run"}

        user = await runtime.auth.create_user(normalized, name, password, role="admin")
        user_id = user.id

        print(f"Created admin user: {normalized} (id: {user_id})")
        return {
            "user_id": user_id,
            "email": normalized,
            "status": "created",
        }
    finally:
        await runtime.close()


def main():
    parser = argparse.ArgumentParser(
        description="Bootstrap an admin user for CSAccess",
        formatter_class=argparse.RawDescriptionHelpFormatter,
        epilog=__doc__,
    )
    parser.add_argument(
        "--email",
        default=os.environ.get("ADMIN_EMAIL"),
        help="Admin email (or set ADMIN_EMAIL env var)",
    )
    parser.add_argument(
        "--password",
        default=os.environ.get("ADMIN_PASSWORD"),
        help="Admin password (or set ADMIN_PASSWORD env var)",
    )
    parser.add_argument("--name", default="Administrator", help="Display name")
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
        os.environ.setdefault("STATE_DIR", "/tmp/csaccess-bootstrap")
        print(f"Note: Using in-memory store persisted under {os.environ['STATE_DIR']}")

    try:
        result = asyncio.run(
            bootstrap_admin(args.email, args.password, args.name, args.dry_run)
        )
    except Exception as e:
        print(f"Error: {e}")
        sys.exit(1)

    if result["status"] == "created":
        print("\nAdmin user created successfully!")
        print(f"  Email: {result['email']}")
        print(f"  User ID: {result['user_id']}")
    elif result["status"] == "promoted":
        print("\nExisting user promoted to admin!")
    elif result["status"] == "already_admin":
        print("\nNo changes needed - user is already an admin.")


if __name__ == "__main__":
    main()
