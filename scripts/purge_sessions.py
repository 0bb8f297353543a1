#!/usr/bin/env python3
"""Delete session rows that expired more than SESSION_RETENTION_DAYS ago.

For deployments that disable the in-app sweep (SESSION_SWEEP_ENABLED=false)
and run the purge from cron or another external scheduler instead.

Usage:
    python scripts/purge_sessions.py
    python scripts/purge_sessions.py --dry-run --limit 50
    python scripts/purge_sessions.py --retention-days 30

Environment Variables:
    DATABASE_URL: PostgreSQL connection string
    USE_MEMORY_STORE: Purge the local JSON snapshot instead of PostgreSQL
    SESSION_RETENTION_DAYS: Grace period after expiry (default 14)
"""
from __future__ import annotations

import argparse
import sys
from datetime import timedelta
from pathlib import Path
from typing import Optional

# Add project root to path for imports
ROOT = Path(__file__).resolve().parent.parent
sys.path.insert(0, str(ROOT))


def purge_sessions(
    *, dry_run: bool = False, retention_days: Optional[int] = None, limit: int = 100
) -> dict:
    """Run one purge pass.

    Returns:
        dict with cutoff, status ('dry_run' or 'purged') and the row count
    """
    # Import here to avoid loading config before env vars are set
    from ephemera.config import get_settings
    from ephemera.service.sweep import SessionSweeper
    from ephemera.storage.memory import MemoryStore
    from ephemera.storage.postgres import PostgresStore

    settings = get_settings()
    store = (
        MemoryStore(fs_root=settings.shared_fs_root)
        if settings.use_memory_store
        else PostgresStore(settings.database_url, min_size=1, max_size=2)
    )
    days = settings.session_retention_days if retention_days is None else retention_days
    sweeper = SessionSweeper(store, retention=timedelta(days=days))
    cutoff = sweeper.cutoff()
    try:
        if dry_run:
            pending = sweeper.pending(limit=limit)
            for record in pending:
                print(
                    f"[DRY RUN] would delete session {record.id} "
                    f"(user {record.user_id}, expired {record.expires_at.isoformat()})"
                )
            return {"cutoff": cutoff.isoformat(), "status": "dry_run", "count": len(pending)}
        deleted = sweeper.purge()
        print(f"Deleted {deleted} session(s) expired before {cutoff.isoformat()}")
        return {"cutoff": cutoff.isoformat(), "status": "purged", "count": deleted}
    finally:
        if isinstance(store, PostgresStore):
            store.close()


def main(argv: Optional[list[str]] = None) -> int:
    parser = argparse.ArgumentParser(
        description="Delete expired session rows past the retention window",
        formatter_class=argparse.RawDescriptionHelpFormatter,
        epilog=__doc__,
    )
    parser.add_argument(
        "--dry-run",
        action="store_true",
        help="List the sessions that would be deleted without deleting them",
    )
    parser.add_argument(
        "--retention-days",
        type=int,
        default=None,
        help="Override SESSION_RETENTION_DAYS for this run",
    )
    parser.add_argument(
        "--limit",
        type=int,
        default=100,
        help="Maximum rows to list in --dry-run mode (default: 100)",
    )
    args = parser.parse_args(argv)

    if args.retention_days is not None and args.retention_days < 0:
        print("Error: --retention-days must not be negative", file=sys.stderr)
        return 1

    try:
        purge_sessions(
            dry_run=args.dry_run, retention_days=args.retention_days, limit=args.limit
        )
    except Exception as exc:
        print(f"Error: {exc}", file=sys.stderr)
        return 1
    return 0


if __name__ == "__main__":
    sys.exit(main())
