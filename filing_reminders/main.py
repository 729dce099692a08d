"""Filing Reminders -- Command Line Entry Point.

Subcommands::

    run                   One batch run (lock, hour gate, queue, render, rollover)
    build-queue           Refresh the reminder queue only
    rebuild-client ID     Replace one client's scheduled reminders
    status                Client traffic-light table and dashboard counts
    rollover-candidates   Received filings whose deadline has passed

Usage::

    python -m filing_reminders.main run
    python -m filing_reminders.main --config custom.yaml status
    python -m filing_reminders.main --db /tmp/reminders.db build-queue --date 2025-11-01
"""

from __future__ import annotations

import argparse
import json
import logging
import sys
from datetime import date
from typing import Optional

from .bank_holidays import BankHolidayCache
from .client_actions import get_rollover_candidates
from .config import ReminderConfig, get_config
from .dashboard import get_client_status_list, get_dashboard_metrics
from .models import FilingRemindersError
from .queue_builder import QueueBuilder
from .scheduler import process_reminders
from .store import ReminderStore

logger = logging.getLogger(__name__)


# ---------------------------------------------------------------------------
# Helpers
# ---------------------------------------------------------------------------

def _setup_logging(cfg: ReminderConfig, verbose: bool) -> None:
    level = logging.DEBUG if verbose else getattr(logging, cfg.logging.level.upper(), logging.INFO)
    handlers: list[logging.Handler] = [logging.StreamHandler()]
    if cfg.logging.log_file:
        handlers.append(logging.FileHandler(cfg.logging.log_file, encoding="utf-8"))
    logging.basicConfig(
        level=level,
        format=cfg.logging.format,
        datefmt=cfg.logging.datefmt,
        handlers=handlers,
    )


def _parse_date(value: Optional[str]) -> Optional[date]:
    return date.fromisoformat(value) if value else None


def _open_store(cfg: ReminderConfig, db_override: Optional[str]) -> ReminderStore:
    path = db_override or cfg.store.resolved_path
    logger.debug("Using database %s", path)
    return ReminderStore(path)


def _print_build(label: str, summary: dict) -> None:
    print()
    print("=" * 65)
    print(f"  {label}")
    print("=" * 65)
    print(f"  Created : {summary['created']}")
    print(f"  Skipped : {summary['skipped']}")
    for reason, count in sorted(summary["skip_reasons"].items(), key=lambda x: -x[1]):
        print(f"    {reason:<30s}: {count}")
    if summary["errors"]:
        print(f"  Errors  : {len(summary['errors'])}")
        for err in summary["errors"]:
            print(f"    - {err}")
    print("=" * 65)


# ---------------------------------------------------------------------------
# Subcommands
# ---------------------------------------------------------------------------

def _cmd_run(store: ReminderStore, cfg: ReminderConfig, args: argparse.Namespace) -> int:
    holidays = BankHolidayCache(cfg.bank_holidays, store=store)
    result = process_reminders(store, cfg.batch, holidays=holidays)
    print(json.dumps(result.to_dict(), indent=2))
    if result.lock_held:
        return 0
    return 1 if result.errors else 0


def _cmd_build_queue(store: ReminderStore, cfg: ReminderConfig, args: argparse.Namespace) -> int:
    holidays = BankHolidayCache(cfg.bank_holidays, store=store)
    builder = QueueBuilder(store, holidays=holidays, config=cfg.batch)
    result = builder.build_queue(_parse_date(args.date))
    _print_build("Queue build", result.to_dict())
    return 0


def _cmd_rebuild_client(store: ReminderStore, cfg: ReminderConfig, args: argparse.Namespace) -> int:
    if store.get_client(args.client_id) is None:
        print(f"\nERROR: client {args.client_id!r} not found")
        return 1
    holidays = BankHolidayCache(cfg.bank_holidays, store=store)
    builder = QueueBuilder(store, holidays=holidays, config=cfg.batch)
    result = builder.rebuild_for_client(args.client_id, _parse_date(args.date))
    _print_build(f"Rebuild for {args.client_id}", result.to_dict())
    return 0


def _cmd_status(store: ReminderStore, cfg: ReminderConfig, args: argparse.Namespace) -> int:
    today = _parse_date(args.date) or date.today()
    rows = get_client_status_list(store, today)
    metrics = get_dashboard_metrics(store, today)

    print()
    print("=" * 65)
    print(f"  Client Status -- {today.isoformat()}")
    print("=" * 65)
    for row in rows:
        deadline = row.next_deadline.isoformat() if row.next_deadline else "-"
        days = f"{row.days_until_deadline:>5d}d" if row.days_until_deadline is not None else "     -"
        print(f"  {row.status.value:<6s} {row.detailed_status.value:<7s} "
              f"{row.company_name[:30]:<30s} {deadline:<10s} {days}")
    print("-" * 65)
    counts = metrics.to_dict()
    print("  " + "  ".join(f"{k}: {v}" for k, v in counts.items()))
    print("=" * 65)
    return 0


def _cmd_rollover_candidates(store: ReminderStore, cfg: ReminderConfig, args: argparse.Namespace) -> int:
    candidates = get_rollover_candidates(store, _parse_date(args.date))
    if not candidates:
        print("\nNo filings ready for rollover.")
        return 0
    print()
    for c in candidates:
        print(f"  {c.client_name[:30]:<30s} {c.filing_type_id.value:<26s} "
              f"{c.deadline_date.isoformat()}  {c.days_overdue:>4d} days overdue")
    return 0


_COMMANDS = {
    "run": _cmd_run,
    "build-queue": _cmd_build_queue,
    "rebuild-client": _cmd_rebuild_client,
    "status": _cmd_status,
    "rollover-candidates": _cmd_rollover_candidates,
}


# ---------------------------------------------------------------------------
# CLI Entry Point
# ---------------------------------------------------------------------------

def build_parser() -> argparse.ArgumentParser:
    parser = argparse.ArgumentParser(
        description="Filing Reminders - UK filing deadline reminder engine",
        formatter_class=argparse.RawDescriptionHelpFormatter,
        epilog=(
            "Examples:\n"
            "  python -m filing_reminders.main run\n"
            "  python -m filing_reminders.main build-queue --date 2025-11-01\n"
            "  python -m filing_reminders.main rebuild-client acme-ltd\n"
            "  python -m filing_reminders.main --verbose status\n"
        ),
    )
    parser.add_argument(
        "--config",
        type=str,
        default=None,
        help="Path to config.yaml (default: project root config.yaml)",
    )
    parser.add_argument(
        "--db",
        type=str,
        default=None,
        help="Path to the SQLite database (overrides config)",
    )
    parser.add_argument(
        "--verbose", "-v",
        action="store_true",
        help="Enable verbose (DEBUG) logging",
    )

    sub = parser.add_subparsers(dest="command", required=True)
    sub.add_parser("run", help="Run one batch")

    for name, help_text in (
        ("build-queue", "Refresh the reminder queue"),
        ("status", "Show client statuses"),
        ("rollover-candidates", "List filings ready for rollover"),
    ):
        p = sub.add_parser(name, help=help_text)
        p.add_argument("--date", type=str, default=None, help="Reference date (YYYY-MM-DD)")

    p = sub.add_parser("rebuild-client", help="Rebuild one client's scheduled reminders")
    p.add_argument("client_id")
    p.add_argument("--date", type=str, default=None, help="Reference date (YYYY-MM-DD)")

    return parser


def main(argv: Optional[list[str]] = None) -> int:
    """CLI entry point.

    Returns:
        Exit code (0 = success, 1 = error).
    """
    args = build_parser().parse_args(argv)

    try:
        cfg = get_config(args.config)
    except (ValueError, OSError) as exc:
        print(f"\nERROR: could not load configuration: {exc}")
        return 1

    _setup_logging(cfg, args.verbose)

    try:
        store = _open_store(cfg, args.db)
        return _COMMANDS[args.command](store, cfg, args)
    except FilingRemindersError as exc:
        logger.error("Reminder engine error: %s", exc)
        print(f"\nERROR: {exc}")
        return 1
    except ValueError as exc:
        logger.error("Bad input: %s", exc)
        print(f"\nERROR: {exc}")
        return 1
    except Exception as exc:
        logger.exception("Unexpected error")
        print(f"\nUNEXPECTED ERROR: {exc}")
        return 1


if __name__ == "__main__":
    sys.exit(main())
