#!/usr/bin/env python3
"""Provision a user with an argon2id password hash.

Usage:
    # Using environment variables:
    BOOTSTRAP_EMAIL=ops@example.com BOOTSTRAP_PASSWORD=SecurePassword123! python scripts/bootstrap_user.py

    # Or with command line args:
    python scripts/bootstrap_user.py --email ops@example.com --password SecurePassword123! --role admin

Running it again for an existing email changes nothing.

Environment Variables:
    BOOTSTRAP_EMAIL: Email for the user
    BOOTSTRAP_PASSWORD: Password for the user
    DATABASE_URL: PostgreSQL connection string (optional, uses the file-backed
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


def bootstrap_user(
    store,
    verifier,
    email: str,
    password: str,
    *,
    role: str = "user",
    tenant_id: str = "public",
    dry_run: bool = False,
) -> dict:
    """Create a user and store its password hash unless the email is taken.

    Returns:
        dict with user_id, email, and status ('created', 'exists' or 'dry_run')
    """
    with store.transaction() as tx:
        existing_user = tx.get_user_by_email(email)

    if existing_user:
        print(f"User {existing_user.email} already exists (id: {existing_user.id})")
        return {
            "user_id": existing_user.id,
            "email": existing_user.email,
            "status": "exists",
        }

    if dry_run:
        print(f"[DRY RUN] Would create {role} user: {email}")
        return {"user_id": None, "email": email, "status": "dry_run"}

    user = store.create_user(email, role=role, tenant_id=tenant_id)
    store.save_password(user.id, verifier.hash(password), verifier.algo)
    print(f"Created {role} user: {user.email} (id: {user.id})")
    return {"user_id": user.id, "email": user.email, "status": "created"}


def _open_store():
    # Import here to avoid loading config before env vars are set
    from shield.config import get_settings
    from shield.storage.memory import MemoryStore
    from shield.storage.postgres import PostgresStore

    settings = get_settings()
    if settings.use_memory_store:
        return MemoryStore(fs_root=settings.shared_fs_root)
    return PostgresStore(
        settings.database_url,
        min_size=1,
        max_size=1,
        timeout_seconds=settings.store_timeout_seconds,
    )


def main():
    parser = argparse.ArgumentParser(
        description="Provision a Shield user",
        formatter_class=argparse.RawDescriptionHelpFormatter,
        epilog=__doc__,
    )
    parser.add_argument(
        "--email",
        default=os.environ.get("BOOTSTRAP_EMAIL"),
        help="User email (or set BOOTSTRAP_EMAIL env var)",
    )
    parser.add_argument(
        "--password",
        default=os.environ.get("BOOTSTRAP_PASSWORD"),
        help="User password (or set BOOTSTRAP_PASSWORD env var)",
    )
    parser.add_argument("--role", default="user", help="Role claim for issued tokens")
    parser.add_argument("--tenant", default="public", help="Tenant id claim")
    parser.add_argument(
        "--dry-run",
        action="store_true",
        help="Show what would be done without making changes",
    )

    args = parser.parse_args()

    if not args.email:
        print("Error: --email or BOOTSTRAP_EMAIL environment variable required")
        sys.exit(1)

    if not args.password:
        print("Error: --password or BOOTSTRAP_PASSWORD environment variable required")
        sys.exit(1)

    if not os.environ.get("DATABASE_URL"):
        os.environ["USE_MEMORY_STORE"] = "true"
        print("Note: Using file-backed memory store (set DATABASE_URL for Postgres)")

    from shield.service.passwords import CredentialVerifier

    store = _open_store()
    try:
        result = bootstrap_user(
            store,
            CredentialVerifier(),
            args.email,
            args.password,
            role=args.role,
            tenant_id=args.tenant,
            dry_run=args.dry_run,
        )
    except Exception as e:
        print(f"Error: {e}")
        sys.exit(1)
    finally:
        store.close()

    if result["status"] == "exists":
        print("\nNo changes needed - user already exists.")


if __name__ == "__main__":
    main()
