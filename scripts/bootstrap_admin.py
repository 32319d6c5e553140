#!/usr/bin/env python3
"""Create or promote an admin account.

Admins are exempt from the daily response cap.

Usage:
    ADMIN_EMAIL=admin@example.com ADMIN_PASSWORD=SecurePassword123! python scripts/bootstrap_admin.py
    python scripts/bootstrap_admin.py --email admin@example.com --password SecurePassword123!

Environment Variables:
    ADMIN_EMAIL: Email for the admin user
    ADMIN_PASSWORD: Password for the admin user
    DATABASE_URL: PostgreSQL connection string (memory store is used when unset)
"""
from __future__ import annotations

import argparse
import asyncio
import os
import secrets
import sys
from pathlib import Path

ROOT = Path(__file__).resolve().parent.parent
sys.path.insert(0, str(ROOT))


def validate_password(password: str) -> bool:
    """At least 12 characters drawn from 3+ character classes."""
    if len(password) < 12:
        return False
    has_upper = any(c.isupper() for c in password)
    has_lower = any(c.islower() for c in password)
    has_digit = any(c.isdigit() for c in password)
    has_special = any(not c.isalnum() for c in password)
    return sum([has_upper, has_lower, has_digit, has_special]) >= 3


async def bootstrap_admin(email: str, password: str, dry_run: bool = False) -> dict:
    # runtime reads settings on import; env must be prepared first
    from parley.service.runtime import get_runtime

    runtime = get_runtime()
    existing_user = runtime.store.get_user_by_email(email.strip().lower())

    if existing_user:
        if existing_user.is_admin:
            return {"user_id": existing_user.id, "email": email, "status": "already_admin"}
        if dry_run:
            return {"user_id": existing_user.id, "email": email, "status": "dry_run"}
        runtime.store.update_user_role(existing_user.id, "admin")
        return {"user_id": existing_user.id, "email": email, "status": "promoted"}

    if dry_run:
        return {"user_id": None, "email": email, "status": "dry_run"}

    user, _ = await runtime.auth.signup(email, password)
    admin = runtime.store.update_user_role(user.id, "admin")
    # tokens embed the role, so mint one after the promotion
    return {
        "user_id": user.id,
        "email": email,
        "status": "created",
        "access_token": runtime.auth.issue_token(admin or user),
    }


def main() -> None:
    parser = argparse.ArgumentParser(
        description="Bootstrap an admin user for Parley",
        formatter_class=argparse.RawDescriptionHelpFormatter,
        epilog=__doc__,
    )
    parser.add_argument("--email", default=os.environ.get("ADMIN_EMAIL"))
    parser.add_argument("--password", default=os.environ.get("ADMIN_PASSWORD"))
    parser.add_argument("--dry-run", action="store_true")
    args = parser.parse_args()

    if not args.email or not args.password:
        print("Error: --email/--password or ADMIN_EMAIL/ADMIN_PASSWORD are required")
        sys.exit(1)
    if not validate_password(args.password):
        print("Error: Password must be at least 12 characters with 3+ character classes")
        sys.exit(1)

    if not os.environ.get("JWT_SECRET"):
        os.environ["JWT_SECRET"] = secrets.token_urlsafe(48)
    os.environ.setdefault("SHARED_FS_ROOT", "/tmp/parley-bootstrap")
    if not os.environ.get("DATABASE_URL"):
        os.environ["USE_MEMORY_STORE"] = "true"
        print("Note: Using in-memory store (set DATABASE_URL for persistence)")
    os.environ.setdefault("ALLOW_REDIS_FALLBACK_DEV", "true")

    try:
        result = asyncio.run(bootstrap_admin(args.email, args.password, args.dry_run))
    except Exception as exc:
        print(f"Error: {exc}")
        sys.exit(1)

    status = result["status"]
    if status == "created":
        print(f"Created admin user {result['email']} (id: {result['user_id']})")
        print(f"  Access Token: {result['access_token'][:50]}...")
    elif status == "promoted":
        print(f"Promoted {result['email']} to admin (id: {result['user_id']})")
    elif status == "already_admin":
        print(f"{result['email']} is already an admin; nothing to do.")
    else:
        print(f"[DRY RUN] No changes made for {result['email']}")


if __name__ == "__main__":
    main()
