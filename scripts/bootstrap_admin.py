#!/usr/bin/env python3
"""Bootstrap an admin principal for testing and initial setup.

Usage:
    # Using environment variables:
    ADMIN_EMAIL=admin@example.com ADMIN_PASSWORD=SecurePassword123! python scripts/bootstrap_admin.py

    # Or with command line args:
    python scripts/bootstrap_admin.py --email admin@example.com --password SecurePassword123!

Environment Variables:
    ADMIN_EMAIL: Email for the admin principal
    ADMIN_PASSWORD: Password for the admin principal (must meet complexity requirements)
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


def validate_password(password: str) -> bool:
    """Check password meets complexity requirements."""
    if len(password) < 12:
        return False
    has_upper = any(c.isupper() for c in password)
    has_lower = any(c.islower() for c in password)
    has_digit = any(c.isdigit() for c in password)
    has_special = any(c in "!@#$%^&*()_+-=[]{}|;':\",./<>?" for c in password)
    return sum([has_upper, has_lower, has_digit, has_special]) >= 3


def bootstrap_admin(email: str, password: str, dry_run: bool = False) -> dict:
    """Create an active admin principal, or promote an existing one.

    Returns:
        dict with principal_id, email, and status
        ('created', 'promoted', 'already_admin' or 'dry_run')
    """
    # Import here to avoid loading config before env vars are set
    from authsync.service.runtime import get_runtime
    from authsync.storage.models import ROLE_ADMIN, STATUS_ACTIVE, utcnow

    runtime = get_runtime()
    existing = runtime.store.get_principal_by_email(email)

    if existing:
        if existing.role == ROLE_ADMIN and existing.status == STATUS_ACTIVE:
            print(f"Principal {email} already exists as admin (id: {existing.id})")
            return {"principal_id": existing.id, "email": email, "status": "already_admin"}

        if dry_run:
            print(f"[DRY RUN] Would promote existing principal {email} to admin")
            return {"principal_id": existing.id, "email": email, "status": "dry_run"}

        runtime.store.set_principal_role(existing.id, ROLE_ADMIN)
        if existing.otp_pending:
            runtime.store.mark_otp_verified(existing.id, utcnow())
        runtime.store.set_principal_status(existing.id, STATUS_ACTIVE)
        print(f"Promoted existing principal {email} to admin (id: {existing.id})")
        return {"principal_id": existing.id, "email": email, "status": "promoted"}

    if dry_run:
        print(f"[DRY RUN] Would create admin principal: {email}")
        return {"principal_id": None, "email": email, "status": "dry_run"}

    result = runtime.auth.register(
        "Administrator", email, password, role=ROLE_ADMIN, require_otp=False
    )
    print(f"Created admin principal: {email} (id: {result.principal.id})")
    return {
        "principal_id": result.principal.id,
        "email": email,
        "status": "created",
        "access_token": result.tokens.access_token,
    }


def main(argv: list[str] | None = None) -> int:
    parser = argparse.ArgumentParser(
        description="Bootstrap an admin principal for authsync",
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
        return 1

    if not args.password:
        print("Error: --password or ADMIN_PASSWORD environment variable required")
        return 1

    if not validate_password(args.password):
        print("Error: Password must be at least 12 characters with 3+ character classes")
        print("       (uppercase, lowercase, digits, special characters)")
        return 1

    # Use memory store if no database configured
    if not os.environ.get("DATABASE_URL"):
        os.environ["USE_MEMORY_STORE"] = "true"
        os.environ.setdefault("TEST_MODE", "true")
        print("Note: Using in-memory store (set DATABASE_URL for persistence)")

    from authsync.service.errors import ServiceError

    try:
        result = bootstrap_admin(args.email, args.password, args.dry_run)
    except (ServiceError, ValueError) as exc:
        print(f"Error: {exc}")
        return 1

    if result["status"] == "created":
        print("\nAdmin principal created successfully!")
        print(f"  Email: {result['email']}")
        print(f"  Principal ID: {result['principal_id']}")
        if result.get("access_token"):
            print(f"  Access Token: {result['access_token'][:50]}...")
    elif result["status"] == "promoted":
        print("\nExisting principal promoted to admin!")
    elif result["status"] == "already_admin":
        print("\nNo changes needed - principal is already an admin.")
    return 0


if __name__ == "__main__":
    sys.exit(main())
