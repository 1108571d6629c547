"""
Retention job: hard-delete users tombstoned longer than USER_RETENTION_DAYS.

Dry-run by default. Use --live to delete.
"""
from __future__ import annotations

import argparse
import logging
from typing import Optional

from saas_engine.core.config import settings
from saas_engine.core.logging import configure_logging
from saas_engine.features.users.service import purge_deleted_users

logger = logging.getLogger("saas_engine.workers.purge")


def run_purge(*, retention_days: Optional[int] = None, dry_run: bool = True) -> dict:
    days = retention_days if retention_days is not None else settings.USER_RETENTION_DAYS
    user_ids = purge_deleted_users(retention_days=days, dry_run=dry_run)
    logger.info(
        "[purge] deleted-user retention",
        extra={"retention_days": days, "dry_run": dry_run, "candidates": len(user_ids)},
    )
    return {
        "retention_days": days,
        "dry_run": dry_run,
        "candidates": len(user_ids),
        "deleted": 0 if dry_run else len(user_ids),
    }


def main(argv=None) -> int:
    parser = argparse.ArgumentParser(description="Purge soft-deleted users past retention")
    parser.add_argument("--live", action="store_true", help="Actually delete (default: dry run)")
    parser.add_argument("--retention-days", type=int, default=None)
    args = parser.parse_args(argv)

    configure_logging(settings.ENV)
    result = run_purge(retention_days=args.retention_days, dry_run=not args.live)
    print(result)
    return 0


if __name__ == "__main__":
    raise SystemExit(main())
