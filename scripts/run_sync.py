"""
Script to run a sync pass for all (or selected) entity kinds

Usage:
    python scripts/run_sync.py                 # every kind
    python scripts/run_sync.py matters tasks   # selected kinds
    python scripts/run_sync.py --cleanup       # also prune old sync runs
"""

import argparse
import asyncio
import sys
import os
import logging

# Add current directory to path to allow imports from core, models, etc.
sys.path.append(os.getcwd())

from core.logging import setup_logging
from ingestion.service import run_sync, cleanup_old_runs
from models.base import EntityKind, SyncStatus

setup_logging()
logger = logging.getLogger(__name__)


async def main(kinds, cleanup: bool) -> int:
    summaries = await run_sync(kinds or None)

    for summary in summaries:
        logger.info(
            f"{summary.entity_kind.value}: {summary.status.value} "
            f"({summary.records_upserted} upserted, {summary.records_unchanged} unchanged, "
            f"{summary.error_count} errors)"
        )

    if cleanup:
        await cleanup_old_runs()

    failed = len(kinds or list(EntityKind)) - len(summaries)
    failed += sum(1 for s in summaries if s.status == SyncStatus.FAILED)
    return 1 if failed else 0


if __name__ == "__main__":
    parser = argparse.ArgumentParser(description="Synchronize remote records into the local store")
    parser.add_argument("kinds", nargs="*", choices=[k.value for k in EntityKind], help="Entity kinds to sync")
    parser.add_argument("--cleanup", action="store_true", help="Delete sync runs past the retention window")
    args = parser.parse_args()

    sys.exit(asyncio.run(main([EntityKind(k) for k in args.kinds], args.cleanup)))
