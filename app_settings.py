"""
Persisted installer preferences.

Stored as a small INI file next to the log directory:

    [Repository]
    Source=https://example.org/repo

    [Install]
    DisableBlacklistedDlls=true
    DeleteBackupsOnUninstall=false
    Workers=0

    [Stereo]
    Depth=30
    Popout=100

Missing or unreadable values fall back to the defaults below.
"""

from __future__ import annotations

import logging
import os
from dataclasses import dataclass
from pathlib import Path

from key_value_store import KeyValueStore

APP_DIR_NAME = "StereoModInstaller"
SETTINGS_FILENAME = "settings.ini"

_TRUE = {"1", "true", "yes", "on"}
_FALSE = {"0", "false", "no", "off"}

_log = logging.getLogger(__name__)


@dataclass
class AppSettings:
    repository: str = ""
    disable_blacklisted_dlls: bool = True
    delete_backups_on_uninstall: bool = False
    workers: int = 0  # 0 = pick from CPU count
    depth: float = 30
    popout: float = 100


def app_data_dir() -> Path:
    return Path(os.environ.get("APPDATA", "~")).expanduser() / APP_DIR_NAME


def default_settings_path() -> Path:
    return app_data_dir() / SETTINGS_FILENAME


def _get_bool(store: KeyValueStore, group: str, key: str, default: bool) -> bool:
    raw = store.get_value(group, key)
    if raw is None:
        return default
    lowered = raw.strip().lower()
    if lowered in _TRUE:
        return True
    if lowered in _FALSE:
        return False
    _log.warning("Ignoring invalid boolean %s/%s=%r", group, key, raw)
    return default


def _get_number(store: KeyValueStore, group: str, key: str, default, cast):
    raw = store.get_value(group, key)
    if raw is None:
        return default
    try:
        return cast(raw.strip())
    except ValueError:
        _log.warning("Ignoring invalid number %s/%s=%r", group, key, raw)
        return default


def load_settings(path: str | Path | None = None) -> AppSettings:
    path = Path(path) if path else default_settings_path()
    store = KeyValueStore()
    store.load(path)

    defaults = AppSettings()
    return AppSettings(
        repository=store.get_value("Repository", "Source") or defaults.repository,
        disable_blacklisted_dlls=_get_bool(
            store, "Install", "DisableBlacklistedDlls", defaults.disable_blacklisted_dlls
        ),
        delete_backups_on_uninstall=_get_bool(
            store, "Install", "DeleteBackupsOnUninstall", defaults.delete_backups_on_uninstall
        ),
        workers=max(0, _get_number(store, "Install", "Workers", defaults.workers, int)),
        depth=_get_number(store, "Stereo", "Depth", defaults.depth, float),
        popout=_get_number(store, "Stereo", "Popout", defaults.popout, float),
    )


def _format_number(value: float) -> str:
    return str(int(value)) if float(value).is_integer() else str(value)


def save_settings(settings: AppSettings, path: str | Path | None = None):
    path = Path(path) if path else default_settings_path()
    store = KeyValueStore()
    store.load(path)
    store.set_value("Repository", "Source", settings.repository)
    store.set_value("Install", "DisableBlacklistedDlls", str(settings.disable_blacklisted_dlls).lower())
    store.set_value(
        "Install", "DeleteBackupsOnUninstall", str(settings.delete_backups_on_uninstall).lower()
    )
    store.set_value("Install", "Workers", str(settings.workers))
    store.set_value("Stereo", "Depth", _format_number(settings.depth))
    store.set_value("Stereo", "Popout", _format_number(settings.popout))
    store.save(path)
    _log.info("Saved settings to %s", path)
