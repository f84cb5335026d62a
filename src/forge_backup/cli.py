from __future__ import annotations

import argparse
import logging
import os
import signal
import sys
import threading
from pathlib import Path
from typing import Any, Dict, Optional, Sequence

from .config import DEFAULT_CONFIG_PATH, ConfigurationError, CoreConfig, load_config
from .errors import BackupError
from .logger import configure_logging
from .scheduler import start_backup


def parse_args(argv: Optional[Sequence[str]] = None) -> argparse.Namespace:
    parser = argparse.ArgumentParser(description="Back up forge repositories, stars and organizations.")
    parser.add_argument(
        "--config",
        default=os.getenv("FORGE_BACKUP_CONFIG"),
        help=f"Path to configuration YAML file (default {DEFAULT_CONFIG_PATH} if present).",
    )
    parser.add_argument(
        "--log-level",
        default=None,
        help="Log level (default from config, INFO otherwise).",
    )

    subparsers = parser.add_subparsers(dest="command", required=True)
    backup = subparsers.add_parser("backup", help="Run a single backup.")
    _add_backup_flags(backup)
    listing = subparsers.add_parser("list", help="Print the repositories that would be backed up.")
    _add_backup_flags(listing, with_run_type=False)
    continuous = subparsers.add_parser("continuous", help="Back up on an interval, rotating old snapshots.")
    _add_backup_flags(continuous)
    continuous.add_argument("-i", "--interval", help="Interval between backups, e.g. 24h or 1h30m.")
    continuous.add_argument("--cron", help="Cron expression, alternative to --interval.")
    continuous.add_argument("-n", "--max-backups", type=int, help="Number of snapshot directories to keep.")
    return parser.parse_args(argv)


def _add_backup_flags(parser: argparse.ArgumentParser, with_run_type: bool = True) -> None:
    parser.add_argument(
        "-u",
        "--username",
        dest="usernames",
        action="append",
        help="User to back up (repeatable). Leave out to back up the authenticated user.",
    )
    parser.add_argument("--in-org", action="append", help="Back up all members of an organization (repeatable).")
    parser.add_argument(
        "-s",
        "--backup-stars",
        action="store_true",
        default=None,
        help="Include starred repositories.",
    )
    parser.add_argument("-t", "--token", help="Forge access token.")
    parser.add_argument("-o", "--output", help="Output directory, or JSON file for --run-type fetch.")
    if with_run_type:
        parser.add_argument(
            "--run-type",
            help="clone (default), fetch (write repositories.json) or dry-run (print the list).",
        )
    parser.add_argument("--ntfy-url", help="Endpoint notified when a backup finishes.")
    parser.add_argument(
        "--recurse-submodules",
        action="store_true",
        default=None,
        help="Clone submodules as well.",
    )
    parser.add_argument("--max-workers", type=int, help="Limit concurrent clones.")


def load_configuration(args: argparse.Namespace) -> CoreConfig:
    if args.config:
        config = load_config(Path(args.config).expanduser(), required=True)
    else:
        config = load_config(Path(DEFAULT_CONFIG_PATH))

    backup: Dict[str, Any] = {
        "usernames": args.usernames,
        "in_org": args.in_org,
        "backup_stars": args.backup_stars,
        "token": args.token,
        "output": args.output,
        "run_type": "dry-run" if args.command == "list" else getattr(args, "run_type", None),
        "ntfy_url": args.ntfy_url,
        "recurse_submodules": args.recurse_submodules,
        "max_workers": args.max_workers,
    }
    scheduler: Dict[str, Any] = {}
    if args.command == "continuous":
        scheduler = {"max_backups": args.max_backups}
        # A trigger given on the command line replaces the configured one.
        if args.interval:
            scheduler.update(interval=args.interval, cron="")
        elif args.cron:
            scheduler.update(cron=args.cron, interval="")
    return config.with_overrides(backup=backup, scheduler=scheduler)


def run(config: CoreConfig, continuous: bool) -> int:
    stop_event = threading.Event()

    def _handle_signal(signum: int, _frame: Optional[object]) -> None:
        logging.info("Received signal %s; stopping scheduler", signum)
        stop_event.set()

    scheduler = config.scheduler
    if continuous:
        if not scheduler.enabled:
            logging.error("Continuous mode needs --interval or --cron")
            return 2
        signal.signal(signal.SIGTERM, _handle_signal)
        signal.signal(signal.SIGINT, _handle_signal)

    try:
        start_backup(
            config.backup,
            scheduler.interval if continuous else None,
            scheduler.max_backups,
            cron=scheduler.cron if continuous else None,
            timezone=scheduler.timezone,
            stop_event=stop_event,
        )
    except BackupError as exc:
        logging.error("Backup failed: %s", exc)
        return 1
    return 0


def main(argv: Optional[Sequence[str]] = None) -> int:
    args = parse_args(argv)
    configure_logging(args.log_level or os.getenv("FORGE_BACKUP_LOG_LEVEL", "INFO"))

    try:
        config = load_configuration(args)
    except ConfigurationError as exc:
        logging.error("Configuration error: %s", exc)
        return 2

    if not args.log_level:
        configure_logging(config.logging.level)

    return run(config, continuous=args.command == "continuous")


if __name__ == "__main__":
    sys.exit(main())
