#!/usr/bin/env python3
"""Create the default store configuration for a tenant.

Sign-in fails with ``no_default_store`` until the tenant owns a default
store, so run this once per deployment.

Usage:
    # Using environment variables:
    DATABASE_URL=postgresql://... DEFAULT_OWNER=admin python scripts/seed_default_store.py

    # Or with command line args:
    python scripts/seed_default_store.py --owner admin --name store-built-in --dry-run

Environment Variables:
    DEFAULT_OWNER: Tenant that owns the store (default: admin)
    DEFAULT_STORE_NAME: Store name (default: store-built-in)
    DATABASE_URL: PostgreSQL connection string (uses the memory store if not set)
    SHARED_FS_ROOT: State directory for the memory store
"""
from __future__ import annotations

import argparse
import os
import sys
from pathlib import Path

# Add project root to path for imports
ROOT = Path(__file__).resolve().parent.parent
sys.path.insert(0, str(ROOT))


def seed_default_store(
    store, owner: str, name: str, display_name: str | None = None, dry_run: bool = False
) -> dict:
    """Create the tenant's default store unless one exists.

    Returns:
        dict with owner, name and status ('created', 'exists' or 'dry_run')
    """
    from chatgate.storage.models import StoreConfig

    existing = store.get_default_store(owner)
    if existing:
        print(f"Tenant {owner} already has default store {existing.name}")
        return {"owner": owner, "name": existing.name, "status": "exists"}

    if dry_run:
        print(f"[DRY RUN] Would create default store {owner}/{name}")
        return {"owner": owner, "name": name, "status": "dry_run"}

    store.create_store(
        StoreConfig.new(owner, name, display_name=display_name, is_default=True)
    )
    print(f"Created default store {owner}/{name}")
    return {"owner": owner, "name": name, "status": "created"}


def _open_store(settings):
    if settings.use_memory_store:
        from chatgate.storage.memory import MemoryStore

        return MemoryStore(fs_root=settings.shared_fs_root)
    from chatgate.storage.postgres import PostgresStore

    return PostgresStore(settings.database_url)


def main():
    parser = argparse.ArgumentParser(
        description="Create the default store for a Chatgate tenant",
        formatter_class=argparse.RawDescriptionHelpFormatter,
        epilog=__doc__,
    )
    parser.add_argument(
        "--owner",
        default=None,
        help="Tenant owner (or set DEFAULT_OWNER env var)",
    )
    parser.add_argument(
        "--name",
        default=None,
        help="Store name (or set DEFAULT_STORE_NAME env var)",
    )
    parser.add_argument("--display-name", default=None, help="Display name (defaults to name)")
    parser.add_argument(
        "--dry-run",
        action="store_true",
        help="Show what would be done without making changes",
    )

    args = parser.parse_args()

    if not os.environ.get("DATABASE_URL"):
        os.environ["USE_MEMORY_STORE"] = "true"
        print("Note: Using in-memory store (set DATABASE_URL for persistence)")

    from chatgate.config import get_settings

    settings = get_settings()
    owner = args.owner or settings.default_owner
    name = args.name or settings.default_store_name
    if not owner or not name:
        print("Error: --owner and --name must not be empty")
        sys.exit(1)

    try:
        store = _open_store(settings)
        result = seed_default_store(
            store, owner, name, args.display_name, dry_run=args.dry_run
        )
        if result["status"] == "created":
            print("\nDefault store ready; sign-in can now bootstrap conversations.")
        elif result["status"] == "exists":
            print("\nNo changes needed.")
    except Exception as e:
        print(f"Error: {e}")
        sys.exit(1)


if __name__ == "__main__":
    main()
