#!/usr/bin/env python3
"""Delete audit log entries older than the retention window.

Usage:
    # Uses AUDIT_RETENTION_DAYS (default 90) and DATABASE_URL from the environment:
    python scripts/purge_audit_log.py

    # Override the window, or only report what would be removed:
    python scripts/purge_audit_log.py --days 30
    python scripts/purge_audit_log.py --dry-run

Environment Variables:
    DATABASE_URL: PostgreSQL connection string (uses the memory store if not set)
    SHARED_FS_ROOT: Memory store state directory
    AUDIT_RETENTION_DAYS: Retention window in days
"""
from __future__ import annotations

import argparse
import os
import sys
from datetime import timedelta
from pathlib import Path

# Add project root to path for imports
ROOT = Path(__file__).resolve().parent.parent
sys.path.insert(0, str(ROOT))


def _build_store(settings):
    from vaultsync.storage.memory import MemoryStore
    from vaultsync.storage.postgres import PostgresStore

    if settings.use_memory_store:
        return MemoryStore(fs_root=settings.shared_fs_root)
    return PostgresStore(
        settings.database_url,
        pool_timeout=settings.database_pool_timeout,
        statement_timeout_ms=settings.database_statement_timeout_ms,
    )


def purge(days: int | None = None, dry_run: bool = False) -> dict:
    """Purge expired entries and return ``{retention_days, cutoff, purged}``."""
    # Import here to avoid loading config before env vars are set
    from vaultsync.config import get_settings
    from vaultsync.service.audit import AuditSink
    from vaultsync.storage.models import utcnow

    settings = get_settings()
    retention_days = days or settings.audit_retention_days
    store = _build_store(settings)
    try:
        now = utcnow()
        cutoff = now - timedelta(days=retention_days)
        if dry_run:
            print(f"[DRY RUN] Would purge audit entries created before {cutoff.isoformat()}")
            return {"retention_days": retention_days, "cutoff": cutoff.isoformat(), "purged": 0}
        sink = AuditSink(store, retention_days=retention_days)
        purged = sink.purge_expired(now)
        return {"retention_days": retention_days, "cutoff": cutoff.isoformat(), "purged": purged}
    finally:
        store.close()


def main():
    parser = argparse.ArgumentParser(
        description="Purge expired vaultsync audit log entries",
        formatter_class=argparse.RawDescriptionHelpFormatter,
        epilog=__doc__,
    )
    parser.add_argument(
        "--days",
        type=int,
        default=None,
        help="Retention window in days (defaults to AUDIT_RETENTION_DAYS)",
    )
    parser.add_argument(
        "--dry-run",
        action="store_true",
        help="Show what would be done without making changes",
    )
    args = parser.parse_args()

    if args.days is not None and args.days < 1:
        print("Error: --days must be at least 1")
        sys.exit(1)

    if not os.environ.get("DATABASE_URL"):
        os.environ["USE_MEMORY_STORE"] = "true"
        print("Note: Using in-memory store (set DATABASE_URL to purge PostgreSQL)")

    try:
        result = purge(args.days, args.dry_run)
    except Exception as e:
        print(f"Error: {e}")
        sys.exit(1)

    print(
        f"Purged {result['purged']} audit entries older than "
        f"{result['retention_days']} days (cutoff {result['cutoff']})"
    )


if __name__ == "__main__":
    main()
