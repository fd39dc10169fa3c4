"""
Sweep command: delete stale loose images from the image directory.
"""

import logging
import os
from pathlib import Path
from typing import Dict, List

from common import (
    IMAGE_EXTENSIONS,
    IMAGE_MAX_AGE,
    AuditEnvironmentError,
    record_finding,
    remove_file,
)
from confirm import ConfirmationPolicy, settle


def find_old_images(image_root: Path, pass_started: float, max_age: float = IMAGE_MAX_AGE) -> List[Path]:
    """Image files directly under image_root last modified more than max_age seconds ago."""
    old: List[Path] = []
    try:
        with os.scandir(image_root) as entries:
            for entry in entries:
                if Path(entry.name).suffix.lower() not in IMAGE_EXTENSIONS:
                    continue
                try:
                    if not entry.is_file(follow_symlinks=False):
                        continue
                    mtime = entry.stat(follow_symlinks=False).st_mtime
                except OSError as exc:
                    logging.warning(f"Skipping entry {entry.path}: {exc}")
                    continue
                if pass_started - mtime > max_age:
                    old.append(Path(entry.path))
    except OSError as exc:
        raise AuditEnvironmentError(f"Can't open directory '{image_root}': {exc}") from exc
    return sorted(old)


def sweep_images(
    image_root: Path,
    pass_started: float,
    policy: ConfirmationPolicy,
    stats: Dict[str, int],
    findings: List[Dict[str, object]],
) -> None:
    """Delete old loose images as one batch behind a single confirmation."""
    old_files = find_old_images(image_root, pass_started)
    if not old_files:
        return
    stats["old_images"] += len(old_files)
    finding = record_finding(
        findings,
        "old_images",
        f"Found {len(old_files)} old images",
        count=len(old_files),
        path=str(image_root),
    )

    def delete_all() -> bool:
        failed = [path for path in old_files if not remove_file(path)]
        if failed:
            finding["failed"] = [str(path) for path in failed]
        stats["images_deleted"] += len(old_files) - len(failed)
        return not failed

    settle(policy, finding, stats, delete_all)
