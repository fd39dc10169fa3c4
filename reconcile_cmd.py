"""
Reconcile command: diff the database and filesystem snapshots and remove the side that is wrong.

Filesystem-only monitors are always removed. Filesystem-only and database-only events
are removed once older than the minimum age. Frame and Stat rows whose event is gone
are removed regardless of age. Database monitors without a directory are left alone;
the directory appears with the first event.
"""

import logging
import sqlite3
from typing import Dict, List

from common import AuditConfig, id_path, record_finding, remove_tree
from confirm import ConfirmationPolicy, settle
from snapshot_cmd import Snapshot


ORPHAN_TABLES = {
    "Frames": ("orphan_frames", "frame"),
    "Stats": ("orphan_stats", "statistic"),
}


def delete_event_rows(conn: sqlite3.Connection, event_id: int) -> bool:
    """Delete an event and its frames and stats in one transaction."""
    try:
        conn.execute("DELETE FROM Events WHERE Id = ?", (event_id,))
        conn.execute("DELETE FROM Frames WHERE EventId = ?", (event_id,))
        conn.execute("DELETE FROM Stats WHERE EventId = ?", (event_id,))
        conn.commit()
    except sqlite3.Error:
        conn.rollback()
        raise
    return True


def reconcile_filesystem(
    fs_state: Snapshot,
    db_state: Snapshot,
    config: AuditConfig,
    policy: ConfirmationPolicy,
    stats: Dict[str, int],
    findings: List[Dict[str, object]],
) -> None:
    """Remove monitor and event directories that the database does not know about."""
    for monitor_id, fs_events in fs_state.items():
        db_events = db_state.get(monitor_id)
        if db_events is None:
            monitor_dir = id_path(config.event_root, monitor_id)
            finding = record_finding(
                findings,
                "unknown_monitor",
                f"Filesystem monitor '{monitor_id}' does not exist in database",
                monitor=monitor_id,
                path=str(monitor_dir),
            )
            stats["unknown_monitors"] += 1
            settle(policy, finding, stats, lambda: remove_tree(monitor_dir))
            continue

        for event_id, age in fs_events.items():
            if event_id in db_events or not age.is_older_than(config.min_age):
                continue
            event_dir = id_path(config.event_root, monitor_id, event_id)
            finding = record_finding(
                findings,
                "filesystem_event",
                f"Filesystem event '{monitor_id}/{event_id}' does not exist in database",
                monitor=monitor_id,
                event=event_id,
                path=str(event_dir),
            )
            stats["fs_only_events"] += 1
            settle(policy, finding, stats, lambda: remove_tree(event_dir))


def reconcile_database(
    conn: sqlite3.Connection,
    db_state: Snapshot,
    fs_state: Snapshot,
    config: AuditConfig,
    policy: ConfirmationPolicy,
    stats: Dict[str, int],
    findings: List[Dict[str, object]],
) -> None:
    """Remove event rows (with frames and stats) whose directory is missing."""
    for monitor_id, db_events in db_state.items():
        fs_events = fs_state.get(monitor_id)
        if fs_events is None:
            logging.debug(f"Database monitor '{monitor_id}' has no directory yet")
            continue

        for event_id, age in db_events.items():
            if event_id in fs_events or not age.is_older_than(config.min_age):
                continue
            finding = record_finding(
                findings,
                "database_event",
                f"Database event '{monitor_id}/{event_id}' does not exist in filesystem",
                monitor=monitor_id,
                event=event_id,
            )
            stats["db_only_events"] += 1
            settle(policy, finding, stats, lambda: delete_event_rows(conn, event_id))


def find_orphans(conn: sqlite3.Connection, table: str) -> List[int]:
    """Event ids referenced by table rows whose event no longer exists."""
    if table not in ORPHAN_TABLES:
        raise ValueError(f"Unknown table: {table}")
    rows = conn.execute(
        f"""
        SELECT DISTINCT T.EventId AS EventId
        FROM {table} AS T
        LEFT JOIN Events AS E ON T.EventId = E.Id
        WHERE E.Id IS NULL
        ORDER BY T.EventId
        """
    ).fetchall()
    return [int(row["EventId"]) for row in rows]


def delete_orphans(
    conn: sqlite3.Connection,
    table: str,
    policy: ConfirmationPolicy,
    stats: Dict[str, int],
    findings: List[Dict[str, object]],
) -> None:
    """Remove Frame or Stat rows left behind by deleted events. No age gate applies."""
    stat_key, label = ORPHAN_TABLES[table]

    def delete_rows(event_id: int) -> bool:
        conn.execute(f"DELETE FROM {table} WHERE EventId = ?", (event_id,))
        conn.commit()
        return True

    for event_id in find_orphans(conn, table):
        finding = record_finding(
            findings,
            stat_key,
            f"Found orphaned {label} records for event '{event_id}'",
            event=event_id,
        )
        stats[stat_key] += 1
        settle(policy, finding, stats, lambda: delete_rows(event_id))
