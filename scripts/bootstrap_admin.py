#!/usr/bin/env python3
"""Bootstrap an admin user for initial setup.

Usage:
    # Using environment variables:
    ADMIN_EMAIL=admin@example.com ADMIN_PASSWORD=SecurePassword123! python scripts/bootstrap_admin.py

    # Or with command line args:
    python scripts/bootstrap_admin.py --email admin@example.com --password SecurePassword123!

Environment Variables:
    ADMIN_EMAIL: Email for the admin user
    ADMIN_PASSWORD: Password for the admin user (must meet complexity requirements)
    ADMIN_ROLE: Role granted to the admin user (default: Admin)
    MONGO_URI: MongoDB connection string (optional, uses memory store if not set)
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


def validate_password(password: str) -> bool:
    """Check password meets complexity requirements."""
    if len(password) < 12:
        return False
    has_upper = any(c.isupper() for c in password)
    has_lower = any(c.islower() for c in password)
    has_digit = any(c.isdigit() for c in password)
    has_special = any(c in "!@#$%^&*()_+-=[]{}|;':\",./<>?" for c in password)
    return sum([has_upper, has_lower, has_digit, has_special]) >= 3


async def bootstrap_admin(
    email: str,
    password: str,
    *,
    role: str = "Admin",
    first_name: str | None = None,
    last_name: str | None = None,
    dry_run: bool = False,
) -> dict:
    """Create a user holding ``role``, or grant ``role`` to an existing user.

    Returns:
        dict with user_id, email, and status
        ('created', 'promoted', 'already_admin' or 'dry_run')
    """
    # Import here to avoid loading config before env vars are set
    from recordkeep.service.auth import UserProfile
    from recordkeep.service.runtime import get_runtime
    from recordkeep.service.tokens import first_claim

    runtime = get_runtime()
    await runtime.startup()
    await runtime.roles.ensure(role)

    existing_user = await runtime.users.find_by_email(email)

    if existing_user:
        if existing_user.has_role(role):
            print(f"User {email} already holds {role} (id: {existing_user.id})")
            return {
                "user_id": existing_user.id,
                "email": email,
                "status": "already_admin",
            }

        if dry_run:
            print(f"[DRY RUN] Would grant {role} to existing user {email}")
            return {"user_id": existing_user.id, "email": email, "status": "dry_run"}

        await runtime.auth.add_role(existing_user.id, role)
        print(f"Granted {role} to existing user {email} (id: {existing_user.id})")
        return {
            "user_id": existing_user.id,
            "email": email,
            "status": "promoted",
        }

    if dry_run:
        print(f"[DRY RUN] Would create {role} user: {email}")
        return {"user_id": None, "email": email, "status": "dry_run"}

    tokens = await runtime.auth.signup(
        UserProfile(first_name=first_name, last_name=last_name, email=email),
        password,
    )
    user_id = first_claim(runtime.issuer.recover_claims(tokens.access_token), "sub")
    await runtime.auth.add_role(user_id, role)

    print(f"Created {role} user: {email} (id: {user_id})")
    return {
        "user_id": user_id,
        "email": email,
        "status": "created",
        "access_token": tokens.access_token,
    }


def main():
    parser = argparse.ArgumentParser(
        description="Bootstrap an admin user for recordkeep",
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
        "--role",
        default=os.environ.get("ADMIN_ROLE", "Admin"),
        help="Role to grant (or set ADMIN_ROLE env var)",
    )
    parser.add_argument("--first-name", default=None)
    parser.add_argument("--last-name", default=None)
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

    if not validate_password(args.password):
        print("Error: Password must be at least 12 characters with 3+ character classes")
        print("       (uppercase, lowercase, digits, special characters)")
        sys.exit(1)

    if not os.environ.get("SHARED_FS_ROOT"):
        os.environ["SHARED_FS_ROOT"] = "/tmp/recordkeep-bootstrap"

    # Use memory store if no database configured
    if not os.environ.get("MONGO_URI"):
        os.environ["USE_MEMORY_STORE"] = "true"
        print("Note: Using in-memory store (set MONGO_URI for persistence)")

    from recordkeep.service.errors import ServiceError
    from recordkeep.storage.errors import StorageUnavailable

    try:
        result = asyncio.run(
            bootstrap_admin(
                args.email,
                args.password,
                role=args.role,
                first_name=args.first_name,
                last_name=args.last_name,
                dry_run=args.dry_run,
            )
        )
    except (ServiceError, StorageUnavailable) as e:
        print(f"Error: {e}")
        sys.exit(1)

    if result["status"] == "created":
        print("\nAdmin user created successfully!")
        print(f"  Email: {result['email']}")
        print(f"  User ID: {result['user_id']}")
        if result.get("access_token"):
            print(f"  Access Token: {result['access_token'][:50]}...")
    elif result["status"] == "promoted":
        print("\nExisting user promoted to admin!")
    elif result["status"] == "already_admin":
        print("\nNo changes needed - user is already an admin.")


if __name__ == "__main__":
    main()
