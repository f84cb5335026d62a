from __future__ import annotations

import logging
import shutil
from datetime import datetime
from pathlib import Path
from typing import List, Optional, Tuple

from .errors import BackupIOError

LOG = logging.getLogger(__name__)

SNAPSHOT_FORMAT = "%Y-%m-%d-%H-%M-%S"


def rolling_dir(base_path: Path, max_backups: int, now: Optional[datetime] = None) -> Path:
    """Prune the oldest snapshots under ``base_path`` and create the next one.

    After the call at most ``max_backups`` snapshot directories exist,
    including the returned new one.
    """
    if max_backups < 1:
        LOG.warning("max_backups must be at least 1 (got %s); keeping a single backup", max_backups)
        max_backups = 1

    try:
        base_path.mkdir(parents=True, exist_ok=True)
    except OSError as exc:
        raise BackupIOError(f"Cannot create backup directory {base_path}: {exc}") from exc

    snapshots = list_snapshots(base_path)
    LOG.debug("Found snapshots %s", [path.name for _, path in snapshots])

    over_limit = len(snapshots) - max_backups + 1
    for _, oldest in snapshots[: max(over_limit, 0)]:
        _remove_snapshot(oldest)

    return create_snapshot(base_path, now)


def list_snapshots(base_path: Path) -> List[Tuple[datetime, Path]]:
    """Return snapshot directories under ``base_path``, oldest first."""
    snapshots: List[Tuple[datetime, Path]] = []
    try:
        children = list(base_path.iterdir())
    except OSError as exc:
        raise BackupIOError(f"Cannot list backup directory {base_path}: {exc}") from exc

    for child in children:
        if not child.is_dir():
            LOG.warning("Found a file in the backup directory, ignoring: %s", child.name)
            continue
        try:
            created = datetime.strptime(child.name, SNAPSHOT_FORMAT)
        except ValueError:
            LOG.warning("Skipping non-snapshot directory %s", child)
            continue
        snapshots.append((created, child))

    snapshots.sort(key=lambda item: item[0])
    return snapshots


def create_snapshot(base_path: Path, now: Optional[datetime] = None) -> Path:
    snapshot = base_path / (now or datetime.now()).strftime(SNAPSHOT_FORMAT)
    try:
        base_path.mkdir(parents=True, exist_ok=True)
        snapshot.mkdir()
    except FileExistsError as exc:
        raise BackupIOError(f"Snapshot directory {snapshot} already exists") from exc
    except OSError as exc:
        raise BackupIOError(f"Cannot create snapshot directory {snapshot}: {exc}") from exc
    LOG.info("Created snapshot directory %s", snapshot)
    return snapshot


def _remove_snapshot(path: Path) -> None:
    try:
        shutil.rmtree(path)
    except OSError as exc:
        raise BackupIOError(f"Cannot remove old backup {path}: {exc}") from exc
    LOG.info("Removed oldest backup %s", path)
