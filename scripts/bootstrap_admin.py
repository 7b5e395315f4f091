#!/usr/bin/env python3
"""Create (or promote) the first administrator account.

Usage:
    ADMIN_EMAIL=admin@example.com ADMIN_PASSWORD=correct-horse python scripts/bootstrap_admin.py
    python scripts/bootstrap_admin.py --email admin@example.com --password correct-horse

The schema is migrated first. The account gets ``role = 'admin'`` on the user
record and membership of the ``admin`` RBAC role, which is created if missing.

Environment Variables:
    ADMIN_EMAIL: Email for the admin user
    ADMIN_PASSWORD: Password for the admin user (at least 8 characters)
    DATABASE_URL: sqlite:///path.db or postgresql://... (default sqlite:///vibekit.db)
"""
from __future__ import annotations

import argparse
import asyncio
import os
import sys
from pathlib import Path

ROOT = Path(__file__).resolve().parent.parent
sys.path.insert(0, str(ROOT))

from vibeauth.service.errors import ServiceError  # noqa: E402
from vibeauth.service.passwords import MIN_PASSWORD_LENGTH  # noqa: E402
from vibeauth.service.provider import IdentityProvider  # noqa: E402

ADMIN_ROLE = "admin"


async def _ensure_admin_role(provider: IdentityProvider, user_id: str) -> None:
    if await provider.permissions.get_role(ADMIN_ROLE) is None:
        await provider.permissions.create_role(ADMIN_ROLE, "Full administrative access")
    await provider.permissions.assign_role(user_id, ADMIN_ROLE)


async def bootstrap_admin(
    provider: IdentityProvider, email: str, password: str, dry_run: bool = False
) -> dict:
    """Returns ``{user_id, email, status}``; status is created, promoted, already_admin or dry_run."""
    existing = await provider.get_user_by_email(email)

    if existing:
        if existing.role == ADMIN_ROLE and await provider.permissions.user_has_role(
            existing.id, ADMIN_ROLE
        ):
            print(f"User {existing.email} already exists as admin (id: {existing.id})")
            return {"user_id": existing.id, "email": existing.email, "status": "already_admin"}
        if dry_run:
            print(f"[DRY RUN] Would promote existing user {existing.email} to admin")
            return {"user_id": existing.id, "email": existing.email, "status": "dry_run"}
        await provider.set_role(existing.id, ADMIN_ROLE)
        await _ensure_admin_role(provider, existing.id)
        print(f"Promoted existing user {existing.email} to admin (id: {existing.id})")
        return {"user_id": existing.id, "email": existing.email, "status": "promoted"}

    if dry_run:
        print(f"[DRY RUN] Would create admin user: {email}")
        return {"user_id": None, "email": email, "status": "dry_run"}

    user = await provider.passwords.admin_create_user(email, password, name="Administrator", role=ADMIN_ROLE)
    await _ensure_admin_role(provider, user.id)
    print(f"Created admin user: {user.email} (id: {user.id})")
    return {"user_id": user.id, "email": user.email, "status": "created"}


def main(argv: list[str] | None = None) -> None:
    parser = argparse.ArgumentParser(
        description="Bootstrap an administrator account",
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
    parser.add_argument(
        "--dry-run",
        action="store_true",
        help="Show what would be done without making changes",
    )
    args = parser.parse_args(argv)

    if not args.email:
        print("Error: --email or ADMIN_EMAIL environment variable required")
        sys.exit(1)
    if not args.password:
        print("Error: --password or ADMIN_PASSWORD environment variable required")
        sys.exit(1)
    if len(args.password) < MIN_PASSWORD_LENGTH:
        print(f"Error: Password must be at least {MIN_PASSWORD_LENGTH} characters")
        sys.exit(1)

    from vibeauth.service.runtime import get_runtime

    try:
        runtime = get_runtime()
        result = asyncio.run(bootstrap_admin(runtime.auth, args.email, args.password, args.dry_run))
    except ServiceError as exc:
        print(f"Error: {exc.message} ({exc.error_code})")
        sys.exit(1)
    except Exception as exc:
        print(f"Error: {exc}")
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
