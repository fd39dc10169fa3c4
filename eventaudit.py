#!/usr/bin/env python3
"""
Eventaudit – consistency audit for a surveillance event archive.

Compares the event database with the event directory tree it mirrors and
removes whichever side is inconsistent:

  - event directories with no event row, and monitor directories with no monitor row
  - event rows with no directory (together with their frames and stats)
  - frame and stat rows whose event is gone
  - events left open by the recorder are closed from their frames
  - stale loose images are removed from the image directory

Nothing younger than --min-age is touched. Actions are confirmed interactively
unless --report (describe only) or --yes (act without asking) is given.
Use --help for full options and examples.
"""

import argparse
import logging
import sqlite3
import sys
import time
from pathlib import Path
from typing import Callable, Dict, List, Optional, Sequence

from close_cmd import close_open_events
from common import (
    DEFAULT_DB_NAME,
    DEFAULT_EVENT_ROOT,
    DEFAULT_IMAGE_ROOT,
    MIN_AGE,
    AuditConfig,
    AuditEnvironmentError,
    AuditQuit,
    RunMode,
    build_report,
    connect_database,
    setup_logging,
    write_report,
)
from confirm import ConfirmationPolicy
from reconcile_cmd import ORPHAN_TABLES, delete_orphans, reconcile_database, reconcile_filesystem
from snapshot_cmd import load_database_state, load_filesystem_state
from sweep_cmd import sweep_images


def new_stats() -> Dict[str, int]:
    return {
        "db_monitors": 0,
        "db_events": 0,
        "fs_monitors": 0,
        "fs_events": 0,
        "unknown_monitors": 0,
        "fs_only_events": 0,
        "db_only_events": 0,
        "orphan_frames": 0,
        "orphan_stats": 0,
        "open_events": 0,
        "old_images": 0,
        "images_deleted": 0,
        "deleted": 0,
        "closed": 0,
        "declined": 0,
        "errors": 0,
    }


def run_pass(
    config: AuditConfig,
    policy: ConfirmationPolicy,
    pass_started: Optional[float] = None,
) -> Dict[str, object]:
    """Load both snapshots, reconcile them, close open events and sweep images once."""
    if pass_started is None:
        pass_started = time.time()
    now = int(pass_started)
    stats = new_stats()
    findings: List[Dict[str, object]] = []

    conn = connect_database(config.db_path)
    try:
        db_state = load_database_state(conn, now)
        fs_state = load_filesystem_state(config.event_root, pass_started)
        stats["db_monitors"] = len(db_state)
        stats["db_events"] = sum(len(events) for events in db_state.values())
        stats["fs_monitors"] = len(fs_state)
        stats["fs_events"] = sum(len(events) for events in fs_state.values())

        reconcile_filesystem(fs_state, db_state, config, policy, stats, findings)
        reconcile_database(conn, db_state, fs_state, config, policy, stats, findings)
        for table in ORPHAN_TABLES:
            delete_orphans(conn, table, policy, stats, findings)
        close_open_events(conn, now, config, policy, stats, findings)
    finally:
        conn.close()

    if config.image_root is not None:
        sweep_images(config.image_root, pass_started, policy, stats, findings)

    run_finished = int(time.time())
    logging.info(
        "Audit summary: db monitors %d, events %d | fs monitors %d, events %d | "
        "found %d | deleted %d | closed %d | declined %d | errors %d"
        % (
            stats["db_monitors"],
            stats["db_events"],
            stats["fs_monitors"],
            stats["fs_events"],
            len(findings),
            stats["deleted"],
            stats["closed"],
            stats["declined"],
            stats["errors"],
        )
    )
    return build_report(
        config=config,
        mode=policy.mode,
        stats=stats,
        run_started=now,
        run_finished=run_finished,
        details={"findings": findings},
    )


def run(
    config: AuditConfig,
    policy: ConfirmationPolicy,
    sleep: Callable[[float], None] = time.sleep,
) -> Dict[str, object]:
    """Run one pass, or with a delay keep running passes until stopped.

    In single-pass mode errors propagate. In continuous mode a failed pass is logged
    and the next pass starts over from fresh snapshots.
    """
    while True:
        try:
            report = run_pass(config, policy)
        except (AuditEnvironmentError, sqlite3.Error) as exc:
            if not config.delay:
                raise
            logging.error(f"Audit pass aborted: {exc}")
        else:
            if config.summary_path:
                write_report(report, config.summary_path)
            if not config.delay:
                return report
        sleep(config.delay)


def _non_negative_int(value: str) -> int:
    try:
        number = int(value)
    except ValueError:
        raise argparse.ArgumentTypeError(f"not an integer: {value!r}")
    if number < 0:
        raise argparse.ArgumentTypeError(f"must not be negative: {number}")
    return number


def build_parser() -> argparse.ArgumentParser:
    parser = argparse.ArgumentParser(
        description='Audit the event database against the event directory tree '
                    'and remove or repair whichever side is inconsistent.',
        formatter_class=argparse.RawDescriptionHelpFormatter,
        epilog="""
Examples:
    python eventaudit.py --db zm.db --events /var/cache/zoneminder/events
    python eventaudit.py --report --db zm.db --events /srv/events --images /srv/images
    python eventaudit.py --yes --delay 900 --log /var/log/eventaudit.log
        """,
    )
    mode = parser.add_mutually_exclusive_group()
    mode.add_argument(
        '-r', '--report',
        action='store_true',
        help="Just report, don't actually do anything",
    )
    mode.add_argument(
        '-y', '--yes',
        action='store_true',
        help='Do all actions without confirmation',
    )
    parser.add_argument(
        '-d', '--delay',
        type=_non_negative_int,
        default=0,
        metavar='SECONDS',
        help='Delay between passes; the default of 0 means run once only',
    )
    parser.add_argument(
        '--db',
        type=Path,
        default=Path(DEFAULT_DB_NAME),
        help=f'Path to the event database (default: {DEFAULT_DB_NAME})',
    )
    parser.add_argument(
        '--events',
        type=Path,
        default=Path(DEFAULT_EVENT_ROOT),
        help=f'Event directory root (default: {DEFAULT_EVENT_ROOT})',
    )
    parser.add_argument(
        '--images',
        type=Path,
        help=f'Loose image directory to sweep (default: {DEFAULT_IMAGE_ROOT}, skipped if absent)',
    )
    parser.add_argument(
        '--min-age',
        type=_non_negative_int,
        default=MIN_AGE,
        metavar='SECONDS',
        help=f'Never act on anything younger than this (default: {MIN_AGE})',
    )
    parser.add_argument(
        '--summary',
        type=Path,
        help='Write a JSON report of each pass to this file',
    )
    parser.add_argument(
        '--log',
        type=Path,
        help='Write log output to this file (the only sink when --delay is set)',
    )
    parser.add_argument(
        '--verbose',
        action='store_true',
        help='Enable verbose (debug) logging',
    )
    return parser


def config_from_args(args: argparse.Namespace) -> AuditConfig:
    if args.report:
        mode = RunMode.REPORT
    elif args.yes:
        mode = RunMode.AUTO_CONFIRM
    else:
        mode = RunMode.INTERACTIVE
    if args.images is not None:
        image_root: Optional[Path] = args.images.resolve()
    else:
        image_root = Path(DEFAULT_IMAGE_ROOT).resolve()
        if not image_root.is_dir():
            logging.info(f"No image directory at {image_root}, loose images will not be swept")
            image_root = None
    return AuditConfig(
        mode=mode,
        db_path=args.db,
        event_root=args.events.resolve(),
        image_root=image_root,
        delay=args.delay,
        min_age=args.min_age,
        summary_path=args.summary,
    )


def main(argv: Optional[Sequence[str]] = None) -> None:
    """Main entry point for the script."""
    parser = build_parser()
    args = parser.parse_args(argv)

    setup_logging(args.log, args.verbose, console=not (args.delay and args.log))

    config = config_from_args(args)
    if not config.event_root.is_dir():
        logging.error(f"Event directory does not exist: {config.event_root}")
        sys.exit(1)
    if config.image_root is not None and not config.image_root.is_dir():
        logging.error(f"Image directory does not exist: {config.image_root}")
        sys.exit(1)

    policy = ConfirmationPolicy(config.mode)
    try:
        run(config, policy)
    except AuditQuit:
        logging.info("Quitting at operator request")
        sys.exit(0)
    except (AuditEnvironmentError, sqlite3.Error) as exc:
        logging.error(f"Audit aborted: {exc}")
        sys.exit(1)
    sys.exit(0)


if __name__ == "__main__":
    main()
