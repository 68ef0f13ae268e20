#!/usr/bin/env python3
"""Seed the default ADMIN account.

Usage:
    ADMIN_EMAIL=admin@example.com ADMIN_PASSWORD='Str0ng!Passw0rd' python scripts/bootstrap_admin.py

    python scripts/bootstrap_admin.py --email admin@example.com --password 'Str0ng!Passw0rd'

Environment Variables:
    ADMIN_EMAIL: Email for the admin account
    ADMIN_PASSWORD: Password (8+ chars with lowercase, uppercase, digit and symbol)
    DATABASE_URL: PostgreSQL connection string (memory store is used if unset)
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


async def bootstrap_admin(email: str, password: str, dry_run: bool = False) -> dict:
    # Import here to avoid loading config before env vars are set
    from harmonia.service.runtime import Runtime

    runtime = Runtime()
    try:
        existing = runtime.accounts.get_account_by_email(email)
        if dry_run:
            action = "promote" if existing else "create"
            print(f"[DRY RUN] Would {action} admin account: {email}")
            return {"account_id": existing.id if existing else None, "email": email, "status": "dry_run"}
        account, status = runtime.auth.ensure_admin(email, password)
        return {"account_id": account.id, "email": account.email, "status": status}
    finally:
        await runtime.close()


def main():
    parser = argparse.ArgumentParser(
        description="Seed the default Harmonia admin account",
        formatter_class=argparse.RawDescriptionHelpFormatter,
        epilog=__doc__,
    )
    parser.add_argument("--email", default=os.environ.get("ADMIN_EMAIL"), help="Admin email (or ADMIN_EMAIL)")
    parser.add_argument(
        "--password", default=os.environ.get("ADMIN_PASSWORD"), help="Admin password (or ADMIN_PASSWORD)"
    )
    parser.add_argument("--dry-run", action="store_true", help="Show what would be done without making changes")
    args = parser.parse_args()

    if not args.email:
        print("Error: --email or ADMIN_EMAIL environment variable required")
        sys.exit(1)
    if not args.password:
        print("Error: --password or ADMIN_PASSWORD environment variable required")
        sys.exit(1)

    if not os.environ.get("DATABASE_URL"):
        os.environ["USE_MEMORY_STORE"] = "true"
        os.environ.setdefault("USE_MEMORY_CACHE", "true")
        os.environ.setdefault("SHARED_FS_ROOT", "/tmp/harmonia-bootstrap")
        print("Note: Using in-memory store (set DATABASE_URL for persistence)")

    try:
        result = asyncio.run(bootstrap_admin(args.email, args.password, args.dry_run))
    except Exception as e:
        print(f"Error: {e}")
        sys.exit(1)

    messages = {
        "created": "Admin account created",
        "promoted": "Existing account promoted to admin",
        "already_admin": "No changes needed - account is already an admin",
    }
    if result["status"] in messages:
        print(f"{messages[result['status']]}: {result['email']} (id: {result['account_id']})")


if __name__ == "__main__":
    main()
