#!/usr/bin/env python3
"""
ticketgate cleanup: purge stale PENDING tickets from a scheduler.

Usage:
  ticketgate-cleanup --stats                  # statistics only
  ticketgate-cleanup --dry-run --max-age 48   # preview
  ticketgate-cleanup --max-age 48 --batch-size 500
  ticketgate-cleanup --orphans                # also drop orphaned transactions

Reads DATABASE_URL (and the DB_* pool knobs) from the environment.
"""

import argparse
import asyncio
import logging
import os
import sys

from .cleanup import (
    DEFAULT_BATCH_SIZE,
    DEFAULT_MAX_AGE_HOURS,
    CleanupEngine,
    CleanupOptions,
    CleanupStats,
)
from .infra.sql import Database


def print_stats(stats: CleanupStats, options: CleanupOptions) -> None:
    print("Current statistics:")
    print(f"   Total PENDING tickets: {stats.total_pending_tickets:,}")
    print(f"   Eligible for deletion: {stats.eligible_for_deletion:,}")
    print("Tickets by age:")
    print(f"   Under 1 hour:   {stats.under_1_hour:,}")
    print(f"   Under 24 hours: {stats.under_24_hours:,}")
    print(f"   Under 7 days:   {stats.under_7_days:,}")
    print(f"   Over 7 days:    {stats.over_7_days:,}")
    print("Tickets by payment status:")
    print(f"   Pending payments: {stats.payment_pending:,}")
    print(f"   Failed payments:  {stats.payment_failed:,}")
    print(f"   Expired payments: {stats.payment_expired:,}")
    print("Cleanup criteria:")
    print(f"   Max age: {options.max_age:g} hours")
    print(f"   Include failed payments: "
          f"{'yes' if options.include_failed_payments else 'no'}")
    print(f"   Batch size: {options.batch_size:,}")


async def run(args: argparse.Namespace) -> int:
    database_url = os.environ.get("DATABASE_URL")
    if not database_url:
        print("NEED DATABASE_URL!", file=sys.stderr)
        return 2

    options = CleanupOptions(
        dry_run=args.dry_run,
        max_age=args.max_age,
        batch_size=args.batch_size,
        include_failed_payments=args.include_failed,
    )

    db = Database(database_url)
    await db.open()
    try:
        engine = CleanupEngine(db)
        stats = await engine.get_stats(
            max_age_hours=options.max_age,
            include_failed_payments=options.include_failed_payments,
        )
        print_stats(stats, options)
        if args.stats:
            return 0

        if stats.eligible_for_deletion == 0:
            print("No tickets found for cleanup")
        else:
            result = await engine.cleanup(options)
            verb = "Would delete" if result.dry_run else "Deleted"
            print("Cleanup results:")
            print(f"   {verb}: {result.deleted_tickets:,} tickets")
            print(f"   Affected transactions: "
                  f"{result.affected_transactions:,}")
            print(f"   Affected ticket types: "
                  f"{len(result.affected_ticket_types):,}")
            print(f"   Execution time: {result.execution_time_ms}ms")

        if args.orphans:
            orphans = await engine.cleanup_orphaned_transactions(
                dry_run=args.dry_run
            )
            verb = "Would delete" if orphans.dry_run else "Deleted"
            print(f"   {verb}: {orphans.deleted_transactions:,} "
                  f"orphaned transactions")
    finally:
        await db.close()
    return 0


def build_parser() -> argparse.ArgumentParser:
    ap = argparse.ArgumentParser(
        description="Delete PENDING tickets that never completed payment"
    )
    ap.add_argument("--stats", action="store_true",
                    help="Show statistics only, don't clean up")
    ap.add_argument("--dry-run", action="store_true",
                    help="Preview what would be deleted")
    ap.add_argument("--max-age", type=float, default=DEFAULT_MAX_AGE_HOURS,
                    help="Max age in hours for PENDING tickets (default: 24)")
    ap.add_argument("--batch-size", type=int, default=DEFAULT_BATCH_SIZE,
                    help="Tickets per batch (default: 100)")
    ap.add_argument("--include-failed", dest="include_failed",
                    action="store_true", default=True,
                    help="Include tickets of failed/expired payments "
                         "(default)")
    ap.add_argument("--exclude-failed", dest="include_failed",
                    action="store_false",
                    help="Only delete by age")
    ap.add_argument("--orphans", action="store_true",
                    help="Also delete failed transactions without tickets")
    ap.add_argument("--log-level", default=os.getenv("LOG_LEVEL", "WARNING"),
                    help="Log level (default: WARNING)")
    return ap


def main(argv=None) -> int:
    args = build_parser().parse_args(argv)
    if args.max_age < 0 or args.batch_size < 1:
        print("--max-age must be >= 0 and --batch-size >= 1",
              file=sys.stderr)
        return 2
    logging.basicConfig(level=args.log_level.upper(),
                        format="%(asctime)s %(levelname)s %(name)s: "
                               "%(message)s")
    return asyncio.run(run(args))


if __name__ == "__main__":
    sys.exit(main())
