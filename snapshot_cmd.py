"""
Snapshot loaders: what the database and the event tree each say exists, with ages.
"""

import logging
import os
import sqlite3
from pathlib import Path
from typing import Dict, List, Optional, Tuple

from common import (
    ALWAYS_ELIGIBLE,
    RECENT_EVENT_WINDOW,
    Age,
    AuditEnvironmentError,
    BoundedAge,
    parse_id,
)


# monitor id -> (event id -> age)
Snapshot = Dict[int, Dict[int, Age]]


def age_from_mtime(mtime: float, pass_started: float) -> BoundedAge:
    """Age of a filesystem entry relative to the start of the pass."""
    return BoundedAge(pass_started - mtime)


def age_from_row(value: Optional[float]) -> BoundedAge:
    """Age computed by the database. A missing StartTime never counts as old."""
    return BoundedAge(value if value is not None else 0)


def load_database_state(conn: sqlite3.Connection, now: int) -> Snapshot:
    """Read every monitor and, per monitor, its events with their age in seconds.

    Query errors propagate: a partial view of the database must not drive deletions.
    """
    monitors: Snapshot = {}
    monitor_rows = conn.execute("SELECT Id FROM Monitors ORDER BY Id").fetchall()
    for monitor in monitor_rows:
        monitor_id = int(monitor["Id"])
        logging.debug(f"Found database monitor '{monitor_id}'")
        rows = conn.execute(
            """
            SELECT Id, ? - CAST(strftime('%s', StartTime) AS INTEGER) AS Age
            FROM Events
            WHERE MonitorId = ?
            ORDER BY Id
            """,
            (now, monitor_id),
        ).fetchall()
        events = {int(row["Id"]): age_from_row(row["Age"]) for row in rows}
        logging.debug(f"Got {len(events)} database events for monitor '{monitor_id}'")
        monitors[monitor_id] = events
    return monitors


def _list_id_dirs(directory: Path) -> List[Tuple[int, os.DirEntry]]:
    """List the numerically named subdirectories of directory."""
    found: List[Tuple[int, os.DirEntry]] = []
    try:
        with os.scandir(directory) as entries:
            for entry in entries:
                ident = parse_id(entry.name)
                if ident is None:
                    if entry.name.isdigit():
                        logging.debug(f"Ignoring non-canonical numeric entry '{entry.path}'")
                    continue
                if entry.is_dir(follow_symlinks=False):
                    found.append((ident, entry))
    except OSError as exc:
        raise AuditEnvironmentError(f"Can't open directory '{directory}': {exc}") from exc
    return found


def load_filesystem_events(
    monitor_dir: Path,
    pass_started: float,
    recent_window: int = RECENT_EVENT_WINDOW,
) -> Dict[int, Age]:
    """Ages of the event directories of one monitor.

    Only the recent_window highest event ids are stat'ed; older ones are always eligible.
    An entry that cannot be stat'ed stays in the snapshot with age 0, so neither side
    of it is touched this pass.
    """
    entries = sorted(_list_id_dirs(monitor_dir), key=lambda item: item[0], reverse=True)
    events: Dict[int, Age] = {}
    for rank, (event_id, entry) in enumerate(entries):
        if rank >= recent_window:
            events[event_id] = ALWAYS_ELIGIBLE
            continue
        try:
            mtime = entry.stat(follow_symlinks=False).st_mtime
        except OSError as exc:
            logging.warning(f"Can't stat {entry.path}, leaving it for the next pass: {exc}")
            events[event_id] = BoundedAge(0)
            continue
        events[event_id] = age_from_mtime(mtime, pass_started)
    return events


def load_filesystem_state(
    event_root: Path,
    pass_started: float,
    recent_window: int = RECENT_EVENT_WINDOW,
) -> Snapshot:
    """Read <event_root>/<monitor>/<event> directories into a snapshot."""
    monitors: Snapshot = {}
    for monitor_id, entry in sorted(_list_id_dirs(event_root), key=lambda item: item[0]):
        logging.debug(f"Found filesystem monitor '{monitor_id}'")
        events = load_filesystem_events(Path(entry.path), pass_started, recent_window)
        logging.debug(f"Got {len(events)} filesystem events for monitor '{monitor_id}'")
        monitors[monitor_id] = events
    return monitors
