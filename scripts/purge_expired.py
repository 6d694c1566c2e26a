#!/usr/bin/env python3
"""Delete expired one-time codes, refresh tokens, reset tokens and old attempts.

Intended for cron when the in-process purge task is disabled
(PURGE_INTERVAL_SECONDS=0).

Usage:
    DATABASE_URL=postgresql://... python scripts/purge_expired.py --retention-hours 24
"""
from __future__ import annotations

import argparse
import sys
from datetime import timedelta
from pathlib import Path

# Add project root to path for imports
ROOT = Path(__file__).resolve().parent.parent
sys.path.insert(0, str(ROOT))


def main():
    parser = argparse.ArgumentParser(
        description="Purge expired credential rows",
        formatter_class=argparse.RawDescriptionHelpFormatter,
        epilog=__doc__,
    )
    parser.add_argument(
        "--retention-hours",
        type=int,
        default=None,
        help="Keep attempts newer than this many hours (default: ATTEMPT_RETENTION_HOURS)",
    )
    args = parser.parse_args()

    from reliefgate.config import get_settings
    from reliefgate.service.maintenance import purge_expired
    from reliefgate.storage.postgres import PostgresStore

    settings = get_settings()
    retention_hours = args.retention_hours or settings.attempt_retention_hours
    if retention_hours < 1:
        print("Error: --retention-hours must be at least 1")
        sys.exit(1)

    store = PostgresStore(settings.database_url, min_size=1, max_size=1)
    try:
        counts = purge_expired(store, attempt_retention=timedelta(hours=retention_hours))
    finally:
        store.close()

    for name, removed in counts.items():
        print(f"{name}: {removed}")


if __name__ == "__main__":
    main()
