#!/usr/bin/env python3
"""Promote an account to admin or superadmin, or mint a signing key.

Usage:
    # Promote an existing account:
    python scripts/bootstrap_admin.py --username alice

    # Create the account first when it does not exist yet:
    ADMIN_PASSWORD=SecurePassword123! python scripts/bootstrap_admin.py --username alice --superadmin

    # Print a fresh hex Ed25519 key for JWT_KEY:
    python scripts/bootstrap_admin.py --generate-key

Environment Variables:
    ADMIN_USERNAME: Account to promote
    ADMIN_PASSWORD: Password used when the account has to be created
    DATABASE_URL: PostgreSQL connection string (optional, uses memory store if not set)
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


def generate_key() -> str:
    """Return a new Ed25519 private key as 64 hex characters (32-byte seed)."""
    from cryptography.hazmat.primitives import serialization
    from cryptography.hazmat.primitives.asymmetric.ed25519 import Ed25519PrivateKey

    key = Ed25519PrivateKey.generate()
    raw = key.private_bytes(
        encoding=serialization.Encoding.Raw,
        format=serialization.PrivateFormat.Raw,
        encryption_algorithm=serialization.NoEncryption(),
    )
    return raw.hex()


async def bootstrap_admin(
    username: str,
    password: str | None,
    account_type: str = "admin",
    dry_run: bool = False,
) -> dict:
    """Promote ``username`` to ``account_type``, creating the account if a password is given.

    Returns:
        dict with account_id, username, and status
        ('promoted', 'created', 'already_promoted', 'missing' or 'dry_run')
    """
    # Import here to avoid loading config before env vars are set
    from keeper.service.auth import normalize_username
    from keeper.service.runtime import get_runtime
    from keeper.storage.models import AccountType

    target = AccountType(account_type)
    username = normalize_username(username)
    runtime = get_runtime()
    try:
        await runtime.start()
        directory = runtime.store
        async with directory.transaction() as tx:
            existing = await directory.lookup_by_username(tx, username)

        if existing is None and not password:
            return {"account_id": None, "username": username, "status": "missing"}
        if existing is not None and existing.account_type == target:
            return {
                "account_id": existing.id,
                "username": username,
                "status": "already_promoted",
            }
        if dry_run:
            action = "promote" if existing else "create and promote"
            print(f"[DRY RUN] Would {action} {username} to {target.label}")
            return {
                "account_id": existing.id if existing else None,
                "username": username,
                "status": "dry_run",
            }

        status = "promoted"
        if existing is None:
            await runtime.auth.create_profile(username, password)
            status = "created"
        async with directory.transaction() as tx:
            account = await directory.update_account_type(tx, username, target)
        print(f"{username} is now {target.label} (id: {account.id})")
        return {"account_id": account.id, "username": username, "status": status}
    finally:
        await runtime.close()


def main():
    parser = argparse.ArgumentParser(
        description="Bootstrap an administrative account for Keeper",
        formatter_class=argparse.RawDescriptionHelpFormatter,
        epilog=__doc__,
    )
    parser.add_argument(
        "--username",
        default=os.environ.get("ADMIN_USERNAME"),
        help="Account to promote (or set ADMIN_USERNAME env var)",
    )
    parser.add_argument(
        "--password",
        default=os.environ.get("ADMIN_PASSWORD"),
        help="Password used to create the account if missing (or set ADMIN_PASSWORD)",
    )
    parser.add_argument(
        "--superadmin",
        action="store_true",
        help="Promote to superadmin instead of admin",
    )
    parser.add_argument(
        "--generate-key",
        action="store_true",
        help="Print a fresh hex-encoded signing key and exit",
    )
    parser.add_argument(
        "--dry-run",
        action="store_true",
        help="Show what would be done without making changes",
    )

    args = parser.parse_args()

    if args.generate_key:
        print(generate_key())
        return

    if not args.username:
        print("Error: --username or ADMIN_USERNAME environment variable required")
        sys.exit(1)

    if not os.environ.get("SHARED_FS_ROOT"):
        os.environ["SHARED_FS_ROOT"] = "/tmp/keeper-bootstrap"

    # Use memory store if no database configured
    if not os.environ.get("DATABASE_URL"):
        os.environ["USE_MEMORY_STORE"] = "true"
        print("Note: Using in-memory store persisted under SHARED_FS_ROOT")

    account_type = "superadmin" if args.superadmin else "admin"
    try:
        result = asyncio.run(
            bootstrap_admin(args.username, args.password, account_type, args.dry_run)
        )
    except Exception as e:
        print(f"Error: {e}")
        sys.exit(1)

    if result["status"] == "missing":
        print(f"Error: account {args.username} does not exist; pass --password to create it")
        sys.exit(1)
    elif result["status"] == "created":
        print("\nAccount created and promoted.")
    elif result["status"] == "promoted":
        print("\nExisting account promoted.")
    elif result["status"] == "already_promoted":
        print(f"\nNo changes needed - {args.username} already has that role.")


if __name__ == "__main__":
    main()
