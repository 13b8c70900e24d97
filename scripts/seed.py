#!/usr/bin/env python3
"""Seed system roles and the bootstrap admin account.

Usage:
    python scripts/seed.py
    python scripts/seed.py --admin-password 'S3cure!Passw0rd'
    ADMIN_PASSWORD='S3cure!Passw0rd' python scripts/seed.py

The admin account is created with ``require_password_change`` set, so the
first sign-in lands on the password-change page. Running the script again
changes nothing.
"""
from __future__ import annotations

import argparse
import asyncio
import os
import sys


async def run_seed(args: argparse.Namespace) -> dict:
    # Imported late so environment defaults below apply to settings
    from gatehouse.service.runtime import get_runtime
    from gatehouse.service.seed import seed_database

    runtime = get_runtime()
    return await seed_database(
        runtime.store,
        runtime.permissions,
        runtime.codec,
        admin_username=args.admin_username,
        admin_email=args.admin_email,
        admin_password=args.admin_password,
    )


def main() -> None:
    parser = argparse.ArgumentParser(
        description="Seed system roles and the admin account",
        formatter_class=argparse.RawDescriptionHelpFormatter,
        epilog=__doc__,
    )
    parser.add_argument("--admin-username", default=os.environ.get("ADMIN_USERNAME", "admin"))
    parser.add_argument("--admin-email", default=os.environ.get("ADMIN_EMAIL", "admin@example.com"))
    parser.add_argument(
        "--admin-password",
        default=os.environ.get("ADMIN_PASSWORD"),
        help="Admin password (or set ADMIN_PASSWORD); generated and printed when omitted",
    )
    args = parser.parse_args()

    if not os.environ.get("DATABASE_URL"):
        os.environ["USE_MEMORY_STORE"] = "true"
        print("Note: Using in-memory store (set DATABASE_URL for persistence)")
    # Seeding never touches pending two-factor challenges
    os.environ.setdefault("ALLOW_REDIS_FALLBACK_DEV", "true")

    try:
        result = asyncio.run(run_seed(args))
    except Exception as e:
        print(f"Error: {e}")
        sys.exit(1)

    print(f"System roles: {', '.join(result['roles'])}")
    if result["admin_created"]:
        print(f"Created admin user '{args.admin_username}' (id: {result['admin_user_id']})")
        if result["admin_password"]:
            print(f"  Generated password: {result['admin_password']}")
        print("  A password change is required on first sign-in.")
    else:
        print("Admin user already exists; nothing to do.")


if __name__ == "__main__":
    main()
