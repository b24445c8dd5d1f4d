"""
Backup siblings for files the installer overwrites or deactivates.

A backup is the original path plus ``.disabled``.  ``backup_if_absent`` never
replaces an existing sibling, so the first install's original survives any
number of re-installs (or an install that crashed half-way).
"""

from __future__ import annotations

import logging
import os
import shutil
from pathlib import Path

BACKUP_SUFFIX = ".disabled"

_log = logging.getLogger(__name__)


def backup_path(path: str | Path) -> Path:
    path = Path(path)
    return path.with_name(path.name + BACKUP_SUFFIX)


def backup_if_absent(path: str | Path) -> bool:
    """Copy ``path`` to its backup sibling unless one already exists.

    Returns True when a new backup was created.
    """
    path = Path(path)
    backup = backup_path(path)
    if not path.is_file() or backup.exists():
        return False
    shutil.copy2(path, backup)
    _log.info("Created backup: %s", backup.name)
    return True


def disable_file(path: str | Path) -> Path:
    """Move ``path`` onto its backup sibling, replacing an older sibling."""
    path = Path(path)
    backup = backup_path(path)
    if backup.exists():
        backup.unlink()
    os.replace(path, backup)
    return backup


def restore_backup(path: str | Path, delete_backup: bool = False) -> bool:
    """Copy the backup sibling back over ``path``.

    Returns False when there is no backup to restore.
    """
    path = Path(path)
    backup = backup_path(path)
    if not backup.is_file():
        return False
    path.parent.mkdir(parents=True, exist_ok=True)
    if path.exists():
        make_writable(path)
    shutil.copy2(backup, path)
    if delete_backup:
        backup.unlink()
    return True


def make_writable(path: Path):
    mode = path.stat().st_mode
    if not mode & 0o200:
        path.chmod(mode | 0o200)
