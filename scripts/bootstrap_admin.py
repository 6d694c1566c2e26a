#!/usr/bin/env python3
"""Create an admin account, or promote an existing one.

Usage:
    # Using environment variables:
    ADMIN_EMAIL=admin@example.org ADMIN_PASSWORD='Relief@2024x' python scripts/bootstrap_admin.py

    # Or with command line args:
    python scripts/bootstrap_admin.py --email admin@example.org --password 'Relief@2024x' --name "Ops Lead"

Environment Variables:
    ADMIN_EMAIL: Email for the admin user
    ADMIN_PASSWORD: Password for the admin user (must satisfy the password policy)
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


def bootstrap_admin(email: str, password: str, name: str = "", dry_run: bool = False) -> dict:
    """Create or promote an admin user.

    Returns:
        dict with user_id, email, and status
    """
    # Import here to avoid loading config before env vars are set
    from reliefgate.service.passwords import hash_secret
    from reliefgate.service.runtime import get_runtime

    runtime = get_runtime()
    normalized = email.strip().lower()
    existing_user = runtime.store.get_user_by_email(normalized)

    if existing_user:
        if "admin" in runtime.store.list_roles(existing_user.id):
            print(f"User {normalized} already exists as admin (id: {existing_user.id})")
            return {"user_id": existing_user.id, "email": normalized, "status": "already_admin"}

        if dry_run:
            print(f"[DRY RUN] Would promote existing user {normalized} to admin")
            return {"user_id": existing_user.id, "email": normalized, "status": "dry_run"}

        runtime.store.assign_role(existing_user.id, "admin")
        print(f"Promoted existing user {normalized} to admin (id: {existing_user.id})")
        return {"user_id": existing_user.id, "email": normalized, "status": "promoted"}

    if dry_run:
        print(f"[DRY RUN] Would create admin user: {normalized}")
        return {"user_id": None, "email": normalized, "status": "dry_run"}

    user = runtime.store.create_user(
        normalized,
        name or normalized.split("@")[0],
        auth_provider="email",
        password_hash=hash_secret(runtime.auth.hasher, password),
    )
    runtime.store.assign_role(user.id, runtime.settings.default_role)
    runtime.store.assign_role(user.id, "admin")
    print(f"Created admin user: {normalized} (id: {user.id})")
    return {"user_id": user.id, "email": normalized, "status": "created"}


def main():
    parser = argparse.ArgumentParser(
        description="Bootstrap an admin user for ReliefGate",
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
    parser.add_argument("--name", default="", help="Display name for a new account")
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

    from reliefgate.service.passwords import validate_password

    check = validate_password(args.password)
    if not check.is_valid:
        print("Error: password does not meet the policy:")
        for error in check.errors:
            print(f"       - {error}")
        sys.exit(1)

    # Use memory store if no database configured
    if not os.environ.get("DATABASE_URL"):
        os.environ["USE_MEMORY_STORE"] = "true"
        print("Note: Using in-memory store (set DATABASE_URL for persistence)")

    os.environ.setdefault("ALLOW_REDIS_FALLBACK_DEV", "true")

    try:
        result = bootstrap_admin(args.email, args.password, args.name, args.dry_run)
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
