#!/usr/bin/env python3
"""CLI entry point for the heating oil price scraper."""

import argparse
import asyncio
import json
import logging
import signal
import sys

from .backoff import BackoffManager
from .batch import run_sweep
from .config import Settings, get_settings
from .db import SupplierDatabase
from .fetcher import PriceFetcher
from .rules import ScrapeConfigError, load_scrape_config, sync_sources_from_config
from .scheduler import ScheduleMode, build_scheduler

logger = logging.getLogger(__name__)


def setup_logging(level: str) -> None:
    logging.basicConfig(
        level=getattr(logging, level.upper(), logging.INFO),
        format="%(asctime)s - %(name)s - %(levelname)s - %(message)s",
    )


async def run_batch(settings: Settings, db: SupplierDatabase, dry_run: bool, supplier: str | None) -> int:
    """Run a sequential sweep and print the totals."""
    rules = load_scrape_config(settings.scrape_config_path)
    fetcher = PriceFetcher(timeout=settings.fetch_timeout_seconds, user_agent=settings.user_agent)
    summary = await run_sweep(
        db,
        fetcher,
        BackoffManager(db),
        rules,
        dry_run=dry_run,
        name_filter=supplier,
        delay=settings.batch_delay_seconds,
        max_retries=settings.max_retries,
        retry_delay=settings.retry_delay_seconds,
    )
    print(
        f"\nResults: {summary.success} success, {summary.failed} failed, "
        f"{summary.skipped_unconfigured + summary.skipped_backoff} skipped"
    )
    return 0


async def run_scheduler(settings: Settings, db: SupplierDatabase, active: bool) -> int:
    """Run the distributed scheduler until SIGINT/SIGTERM."""
    scheduler = build_scheduler(settings, db)
    if active:
        scheduler.set_mode(ScheduleMode.ACTIVE)

    shutdown = asyncio.Event()
    loop = asyncio.get_running_loop()
    for sig in (signal.SIGTERM, signal.SIGINT):
        loop.add_signal_handler(sig, shutdown.set)

    scheduler.start()
    try:
        await shutdown.wait()
    finally:
        scheduler.stop()
        await scheduler.wait_for_firings()
    return 0


def print_preview(settings: Settings, db: SupplierDatabase) -> int:
    scheduler = build_scheduler(settings, db)
    preview = scheduler.preview_schedule(db.get_scrapable_sources())
    print(f"Schedule preview ({len(preview)} suppliers, window "
          f"{settings.window_start_hour}:00-{settings.window_end_hour}:00 {settings.window_timezone}):")
    for item in preview:
        local = item["next_run"].astimezone(settings.tz)
        print(f"  {local:%Y-%m-%d %H:%M}  +{item['base_offset']:>3}m  {item['source_name']}")
    return 0


def run_serve(settings: Settings, host: str, port: int) -> int:
    """Run the status API with the scheduler attached."""
    import uvicorn

    uvicorn.run(
        "heatscrape.webapp.app:create_default_app",
        factory=True,
        host=host,
        port=port,
        log_level=settings.log_level.lower(),
    )
    return 0


def main() -> int:
    parser = argparse.ArgumentParser(
        description="Heating oil price scraper",
        formatter_class=argparse.RawDescriptionHelpFormatter,
        epilog="""
Examples:
  heatscrape --sweep                      # Scrape all configured suppliers now
  heatscrape --sweep --dry-run            # Scrape without saving anything
  heatscrape --sweep --supplier "Domino"  # Scrape matching suppliers only
  heatscrape --schedule                   # Run the distributed scheduler (shadow mode by default)
  heatscrape --schedule --active          # Run the distributed scheduler and scrape
  heatscrape --preview                    # Show next scheduled times
  heatscrape --monthly-reset              # Retry phone_only suppliers (cron, 1st of month)
  heatscrape --backoff-stats              # Supplier counts per scrape status
  heatscrape --sync-config                # Add configured domains to the supplier table
  heatscrape --serve                      # Run the status API with the scheduler
        """,
    )

    group = parser.add_mutually_exclusive_group(required=True)
    group.add_argument("--sweep", action="store_true", help="Scrape all configured suppliers sequentially")
    group.add_argument("--schedule", action="store_true", help="Run the distributed scheduler")
    group.add_argument("--preview", action="store_true", help="Preview the distributed schedule")
    group.add_argument("--monthly-reset", action="store_true", help="Reset phone_only suppliers to active")
    group.add_argument("--backoff-stats", action="store_true", help="Show backoff statistics")
    group.add_argument("--sync-config", action="store_true", help="Sync scrape config domains to suppliers")
    group.add_argument("--serve", action="store_true", help="Run the status API and scheduler")

    parser.add_argument("--dry-run", action="store_true", help="With --sweep: don't save anything")
    parser.add_argument("--supplier", help="With --sweep: filter suppliers by name")
    parser.add_argument("--active", action="store_true", help="With --schedule: scrape instead of shadowing")
    parser.add_argument("--host", default="127.0.0.1", help="With --serve: host to bind to")
    parser.add_argument("--port", type=int, default=8000, help="With --serve: port to bind to")

    args = parser.parse_args()

    settings = get_settings()
    setup_logging(settings.log_level)

    if args.serve:
        return run_serve(settings, args.host, args.port)

    db = SupplierDatabase(settings.db_path)

    try:
        if args.sweep:
            return asyncio.run(run_batch(settings, db, args.dry_run, args.supplier))

        if args.schedule:
            return asyncio.run(run_scheduler(settings, db, args.active))

        if args.sync_config:
            stats = sync_sources_from_config(db, settings.scrape_config_path)
            print(json.dumps(stats, indent=2))
            return 0
    except ScrapeConfigError as e:
        print(f"Error: {e}", file=sys.stderr)
        return 1

    if args.preview:
        return print_preview(settings, db)

    if args.monthly_reset:
        count = BackoffManager(db).monthly_reset()
        print(f"Reset {count} phone_only suppliers to active")
        return 0

    if args.backoff_stats:
        print(json.dumps(BackoffManager(db).get_backoff_stats(), indent=2))
        return 0

    return 0


if __name__ == "__main__":
    sys.exit(main())
