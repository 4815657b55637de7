#!/usr/bin/env python3
"""
Homecal Sync - keeps a local calendar store in sync with CalDAV servers and ICS feeds.

This is the command-line entry point.
"""

import sys
import logging
import argparse
import threading
from datetime import datetime
from pathlib import Path

from rich.console import Console
from rich.logging import RichHandler
from rich.table import Table

from homecal.admin import AdminService
from homecal.config import Config
from homecal.errors import CalendarError
from homecal.event_storage import create_storage_backend
from homecal.quota_manager import QuotaManager
from homecal.recurrence import next_due_date
from homecal.retry import RetryExecutor
from homecal.source_manager import SourceManager
from homecal.sync_service import PersistentSyncService, SyncScheduler
from homecal.timezone_utils import set_timezone

logger = logging.getLogger("homecal")

console = Console()

EXAMPLE_CONFIG = """
[General]
password_program = "/usr/bin/pass"
timezone = "Europe/Amsterdam"

[Features]
write_enabled = false

[CalDAV.Primary]
url = "https://nextcloud.example.com/remote.php/dav"
username = "your_username"
password_key = "nextcloud/password"

[Subscription.Holidays]
url = "https://example.com/holidays.ics"
color = "#34a853"
"""


def parse_args(argv=None):
    """Parse command line arguments."""
    parser = argparse.ArgumentParser(
        description="Homecal Sync - calendar synchronization for CalDAV and ICS sources"
    )
    parser.add_argument(
        "-c", "--config",
        type=Path,
        help="Path to configuration file (default: auto-detect)"
    )
    parser.add_argument(
        "--debug",
        action="store_true",
        help="Enable debug output"
    )
    commands = parser.add_subparsers(dest="command", required=True)

    commands.add_parser("run", help="Run the sync scheduler until interrupted")
    commands.add_parser("sync", help="Run one sync cycle over all sources")

    health = commands.add_parser("health", help="Probe one source")
    health.add_argument("source_id", help="Source id (see 'sync' output)")

    next_due = commands.add_parser("next-due", help="Compute the next due date of a rule")
    next_due.add_argument("rule", help="RRULE, e.g. 'FREQ=WEEKLY;BYDAY=MO,WE'")
    next_due.add_argument("--anchor", type=datetime.fromisoformat, required=True,
                          help="Original start date of the series (ISO format)")
    next_due.add_argument("--previous", type=datetime.fromisoformat,
                          help="Due date of the instance being completed")
    next_due.add_argument("--reference", type=datetime.fromisoformat,
                          help="Reference day (default: today)")
    return parser.parse_args(argv)


def setup_logging(debug: bool) -> None:
    logging.basicConfig(
        level=logging.DEBUG if debug else logging.INFO,
        format="%(message)s",
        datefmt="[%X]",
        handlers=[RichHandler(rich_tracebacks=True, show_path=False, console=console)],
    )


def load_config(path):
    try:
        return Config.load(path)
    except FileNotFoundError as e:
        console.print(f"[bold red]Error:[/] {e}")
        console.print("\nPlease create a configuration file at:")
        console.print(f"  - {Config.get_default_config_path()}")
        console.print("\nExample configuration:")
        console.print(EXAMPLE_CONFIG, markup=False)
        sys.exit(1)
    except Exception as e:
        console.print(f"[bold red]Error loading configuration:[/] {e}")
        sys.exit(1)


def build_service(config: Config) -> PersistentSyncService:
    storage = create_storage_backend(config.database)
    quota = QuotaManager(
        capacity=config.quota.capacity,
        refill_rate=config.quota.refill_rate,
        max_idle=config.quota.max_idle,
    )
    return PersistentSyncService(storage, config, source_manager=SourceManager(storage), quota=quota)


def print_results(results) -> None:
    table = Table(show_header=True, header_style="bold cyan")
    table.add_column("Source")
    table.add_column("OK")
    table.add_column("Events", justify="right")
    table.add_column("New", justify="right")
    table.add_column("Updated", justify="right")
    table.add_column("Errors")
    for result in results:
        table.add_row(
            result.source_id,
            "[green]yes[/]" if result.success else "[red]no[/]",
            str(result.events_count),
            str(result.new_events),
            str(result.updated_events),
            "; ".join(result.errors),
        )
    console.print(table)


def cmd_run(config: Config) -> int:
    service = build_service(config)
    scheduler = SyncScheduler(service)
    if not scheduler.start():
        console.print("[yellow]Sync is disabled; nothing to run[/]")
        return 1
    try:
        threading.Event().wait()
    except KeyboardInterrupt:
        console.print("[yellow]Interrupted by user[/]")
    finally:
        scheduler.stop(timeout=5)
        service.storage.close()
    return 0


def cmd_sync(config: Config) -> int:
    service = build_service(config)
    try:
        created, updated = service.bootstrap()
        logger.info("Source catalog: %d new, %d updated", created, updated)
        results = service.sync_all()
        if service.quota is not None:
            service.quota.maybe_cleanup()
    finally:
        service.storage.close()
    print_results(results)
    return 0 if all(r.success for r in results) else 2


def cmd_health(config: Config, source_id: str) -> int:
    service = build_service(config)
    admin = AdminService(
        service.storage, config,
        adapters=service.adapters,
        quota=service.quota,
        retry=RetryExecutor(max_attempts=1),
        source_manager=service.source_manager,
    )
    try:
        report = admin.health_check(source_id)
    finally:
        service.storage.close()

    table = Table.grid(padding=(0, 2))
    for key, value in report.items():
        table.add_row(f"[bold]{key}[/]", str(value))
    console.print(table)
    return 0 if report["ok"] else 2


def cmd_next_due(args) -> int:
    due = next_due_date(args.rule, args.anchor, args.previous, args.reference)
    if due is None:
        console.print("Series has no further occurrences")
        return 1
    console.print(due.isoformat())
    return 0


def main(argv=None):
    """Main entry point."""
    args = parse_args(argv)
    setup_logging(args.debug)

    if args.command == "next-due" and args.config is None:
        # Rule arithmetic needs no configuration beyond the local timezone
        return cmd_next_due(args)

    config = load_config(args.config)
    set_timezone(config.timezone)

    if args.debug:
        logger.debug("Loaded configuration from: %s", args.config or Config.get_default_config_path())
        logger.debug("  CalDAV accounts: %d", len(config.caldav_accounts))
        logger.debug("  ICS feeds: %d", len(config.ics_feeds))

    try:
        if args.command == "run":
            return cmd_run(config)
        if args.command == "sync":
            return cmd_sync(config)
        if args.command == "health":
            return cmd_health(config, args.source_id)
        return cmd_next_due(args)
    except CalendarError as e:
        console.print(f"[bold red]Error:[/] {e}")
        return 1


if __name__ == "__main__":
    sys.exit(main())
