#!/usr/bin/env python3
"""Remove expired session rows from the durable session store.

Rows are removed when their expiry has passed, or when they carry no expiry
and are older than 30 days.

Usage:
    DATABASE_URL=postgresql://... JWT_SECRET=... python scripts/cleanup_sessions.py
    python scripts/cleanup_sessions.py --dry-run

Environment Variables:
    DATABASE_URL: PostgreSQL connection string
    REDIS_URL: Redis connection string used by the runtime
    JWT_SECRET: Token signing secret (required by settings validation)
"""
from __future__ import annotations

import argparse
import asyncio
import sys
from pathlib import Path

# Add project root to path for imports
ROOT = Path(__file__).resolve().parent.parent
sys.path.insert(0, str(ROOT))


async def cleanup_sessions(dry_run: bool = False) -> dict:
    """Run one cleanup pass.

    Returns:
        dict with ``status`` ('removed' or 'dry_run') and ``count``
    """
    # Import here to avoid loading config before env vars are set
    from tokenward.logging import set_correlation_id
    from tokenward.service.runtime import get_runtime

    set_correlation_id()
    runtime = get_runtime()
    try:
        if dry_run:
            count = runtime.store.count_expired()
            print(f"[DRY RUN] Would remove {count} expired session(s)")
            return {"status": "dry_run", "count": count}

        count = await runtime.sessions.cleanup_expired_sessions()
        print(f"Removed {count} expired session(s)")
        return {"status": "removed", "count": count}
    finally:
        await runtime.close()


def main(argv: list[str] | None = None) -> int:
    parser = argparse.ArgumentParser(
        description="Remove expired sessions",
        formatter_class=argparse.RawDescriptionHelpFormatter,
        epilog=__doc__,
    )
    parser.add_argument(
        "--dry-run",
        action="store_true",
        help="Report how many rows would be removed without deleting them",
    )
    args = parser.parse_args(argv)

    try:
        asyncio.run(cleanup_sessions(args.dry_run))
    except Exception as e:
        print(f"Error: {e}")
        return 1
    return 0


if __name__ == "__main__":
    sys.exit(main())
