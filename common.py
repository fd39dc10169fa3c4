"""
Shared code for the event audit: constants, run configuration, ages, DB, deletion, reporting.
"""

import enum
import json
import logging
import os
import re
import shutil
import sqlite3
import sys
from dataclasses import dataclass
from datetime import datetime
from pathlib import Path
from typing import Dict, List, Optional, Union


DEFAULT_DB_NAME = "zm.db"
DEFAULT_EVENT_ROOT = "events"
DEFAULT_IMAGE_ROOT = "images"
MIN_AGE = 300
RECOVER_TAG = "(r)"
RECOVER_TEXT = "Recovered."
IMAGE_MAX_AGE = 15 * 60
IMAGE_EXTENSIONS = {".jpg", ".gif", ".wbmp"}
RECENT_EVENT_WINDOW = 25

_ID_PATTERN = re.compile(r"^[1-9][0-9]*$")


class AuditError(Exception):
    """Base class for errors that abort an audit pass."""


class AuditEnvironmentError(AuditError):
    """A required directory or database cannot be opened."""


class AuditQuit(AuditError):
    """The operator asked to stop the whole run."""


class RunMode(enum.Enum):
    REPORT = "report"
    AUTO_CONFIRM = "auto-confirm"
    INTERACTIVE = "interactive"


@dataclass(frozen=True)
class AuditConfig:
    """Options for one audit run, fixed at startup."""
    mode: RunMode
    db_path: Path
    event_root: Path
    image_root: Optional[Path] = None
    delay: int = 0
    min_age: int = MIN_AGE
    summary_path: Optional[Path] = None


@dataclass(frozen=True)
class BoundedAge:
    """A measured age in seconds."""
    seconds: float

    def is_older_than(self, threshold: float) -> bool:
        return self.seconds > threshold


@dataclass(frozen=True)
class AlwaysEligible:
    """Age of an entry that is never measured and always old enough to act on."""

    def is_older_than(self, threshold: float) -> bool:
        return True


Age = Union[BoundedAge, AlwaysEligible]
ALWAYS_ELIGIBLE = AlwaysEligible()


def setup_logging(log_file: Optional[Path] = None, verbose: bool = False, console: bool = True) -> None:
    """Configure logging to console and/or file."""
    level = logging.DEBUG if verbose else logging.INFO
    handlers: List[logging.Handler] = []
    if console or not log_file:
        handlers.append(logging.StreamHandler(sys.stdout))

    if log_file:
        handlers.append(logging.FileHandler(log_file, mode='a', encoding='utf-8'))

    logging.basicConfig(
        level=level,
        format='%(asctime)s - %(levelname)s - %(message)s',
        handlers=handlers
    )


def parse_id(name: str) -> Optional[int]:
    """Return the positive integer a directory name stands for, or None."""
    if not _ID_PATTERN.match(name):
        return None
    return int(name)


def connect_database(db_path: Path) -> sqlite3.Connection:
    """Open the event database. The recorder owns the schema, so it must already exist."""
    if not db_path.is_file():
        raise AuditEnvironmentError(f"Database not found: {db_path}")
    try:
        conn = sqlite3.connect(str(db_path))
    except sqlite3.Error as exc:
        raise AuditEnvironmentError(f"Cannot open database {db_path}: {exc}") from exc
    conn.row_factory = sqlite3.Row
    return conn


def is_under_root(file_path: Path, root: Path) -> bool:
    """Return True if file_path is under root."""
    try:
        file_path.relative_to(root)
    except ValueError:
        return False
    return True


def id_path(root: Path, *ids: int) -> Path:
    """Build root/<id>/<id>... from validated positive integer identifiers."""
    path = root
    for ident in ids:
        if isinstance(ident, bool) or not isinstance(ident, int) or ident <= 0:
            raise ValueError(f"Invalid identifier for path: {ident!r}")
        path = path / str(ident)
    if not is_under_root(path, root) or path == root:
        raise ValueError(f"Refusing to build path outside {root}: {path}")
    return path


def remove_tree(path: Path) -> bool:
    """Recursively delete a directory. Returns False (and logs) on failure."""
    try:
        shutil.rmtree(path)
    except OSError as exc:
        logging.warning(f"Failed to delete {path}: {exc}")
        return False
    return True


def remove_file(path: Path) -> bool:
    """Delete a single file. Returns False (and logs) on failure."""
    try:
        os.unlink(path)
    except OSError as exc:
        logging.warning(f"Failed to delete {path}: {exc}")
        return False
    return True


def record_finding(
    findings: List[Dict[str, object]],
    kind: str,
    description: str,
    **fields: object,
) -> Dict[str, object]:
    """Log a discrepancy and add it to the pass findings. Callers fill in 'action'."""
    logging.warning(description)
    finding: Dict[str, object] = {"kind": kind, "description": description, "action": "reported"}
    finding.update(fields)
    findings.append(finding)
    return finding


def build_report(
    config: AuditConfig,
    mode: RunMode,
    stats: Dict[str, int],
    run_started: int,
    run_finished: int,
    details: Optional[Dict[str, object]],
) -> Dict[str, object]:
    """Build JSON-compatible report."""
    report: Dict[str, object] = {
        "run_started": datetime.fromtimestamp(run_started).isoformat(),
        "run_finished": datetime.fromtimestamp(run_finished).isoformat(),
        "duration_seconds": run_finished - run_started,
        "event_root": str(config.event_root),
        "image_root": str(config.image_root) if config.image_root else None,
        "db": str(config.db_path),
        "mode": mode.value,
        "min_age": config.min_age,
        "stats": stats,
    }
    if details:
        report.update(details)
    return report


def write_report(report: Dict[str, object], report_path: Path) -> None:
    """Write report to file."""
    report_json = json.dumps(report, indent=2, sort_keys=True)
    report_path.parent.mkdir(parents=True, exist_ok=True)
    report_path.write_text(report_json, encoding='utf-8')
    logging.info(f"Report written to {report_path}")
