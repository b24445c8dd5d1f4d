"""
Registry destination for the settings patcher.

Some games keep their settings under a registry key instead of a file.  An
instruction ``Root`` whose config path starts with ``HK`` is applied here:
the same fan-out as for text files, but each leaf becomes a named value
under the key, written as ``REG_DWORD`` or ``REG_SZ``.

Registry writes are best-effort.  Nothing here raises for a bad root, a
denied key or a failed value; those become ``SettingWarning`` records.
"""

from __future__ import annotations

import logging
import re
import sys
from contextlib import contextmanager
from typing import Callable, ContextManager, Iterable, Iterator, Protocol

from errors import SettingWarning, UnknownRegistryRoot, WarningKind
from patch_engine import expand_setting, resolve_value, warn
from settings_schema import (
    Child,
    GameSettingOverride,
    RegistryValueType,
    Root,
    find_child_by_id,
)

if sys.platform == "win32":
    import winreg
else:
    winreg = None

_log = logging.getLogger(__name__)

HIVE_ALIASES = {
    "HKEY_CURRENT_USER": "HKEY_CURRENT_USER",
    "HKCU": "HKEY_CURRENT_USER",
    "HKEY_LOCAL_MACHINE": "HKEY_LOCAL_MACHINE",
    "HKLM": "HKEY_LOCAL_MACHINE",
    "HKEY_CLASSES_ROOT": "HKEY_CLASSES_ROOT",
    "HKCR": "HKEY_CLASSES_ROOT",
    "HKEY_USERS": "HKEY_USERS",
    "HKU": "HKEY_USERS",
    "HKEY_CURRENT_CONFIG": "HKEY_CURRENT_CONFIG",
    "HKCC": "HKEY_CURRENT_CONFIG",
}

DWORD_MIN = -(2**31)
DWORD_MAX = 2**32 - 1
_INT32_MIN = -(2**31)
_INT32_MAX = 2**31 - 1


class RegistryKey(Protocol):
    def set_value(self, name: str, data: int | str, kind: RegistryValueType) -> None: ...


RegistryOpener = Callable[[str, str], ContextManager[RegistryKey]]


def registry_available() -> bool:
    return winreg is not None


def is_registry_path(path: str) -> bool:
    return path[:2].upper() == "HK"


def split_registry_path(path: str) -> tuple[str, str]:
    """``HKCU\\Software\\Game`` -> ``("HKEY_CURRENT_USER", "Software\\Game")``."""
    normalized = path.replace("/", "\\")
    head, _, rest = normalized.partition("\\")
    hive = HIVE_ALIASES.get(head.upper())
    if hive is None:
        raise UnknownRegistryRoot(f"Unknown registry root: {head}")
    return hive, rest.strip("\\")


def _parse_int(value: str | None) -> int | None:
    if value is None:
        return None
    text = value.strip()
    if not re.fullmatch(r"[+-]?\d+", text, re.ASCII):
        return None
    return int(text)


def encode_registry_value(
    value: str | None, value_type: RegistryValueType
) -> tuple[int | str, RegistryValueType] | None:
    """Pick the data and kind to write; None means the value cannot be written."""
    if value_type is RegistryValueType.DWORD:
        number = _parse_int(value)
        if number is None or not DWORD_MIN <= number <= DWORD_MAX:
            return None
        return number & 0xFFFFFFFF, RegistryValueType.DWORD

    if value_type is RegistryValueType.STRING:
        return value or "", RegistryValueType.STRING

    number = _parse_int(value)
    if number is not None and _INT32_MIN <= number <= _INT32_MAX:
        return number & 0xFFFFFFFF, RegistryValueType.DWORD
    return value or "", RegistryValueType.STRING


class WinRegistryKey:
    """``RegistryKey`` backed by an open ``winreg`` handle."""

    def __init__(self, handle):
        self._handle = handle

    def set_value(self, name: str, data: int | str, kind: RegistryValueType) -> None:
        reg_type = winreg.REG_DWORD if kind is RegistryValueType.DWORD else winreg.REG_SZ
        winreg.SetValueEx(self._handle, name, 0, reg_type, data)


@contextmanager
def open_registry_key(hive: str, sub_key: str) -> Iterator[RegistryKey]:
    """Create (or open) ``hive\\sub_key`` for writing."""
    if winreg is None:
        raise OSError("The Windows registry is not available on this platform")
    with winreg.CreateKeyEx(getattr(winreg, hive), sub_key, 0, winreg.KEY_WRITE) as handle:
        yield WinRegistryKey(handle)


def _write_leaf(
    key: RegistryKey,
    definition: Child,
    parent: Child | None,
    raw_value: str | None,
    warnings: list[SettingWarning],
    setting_id: str | None,
    target: str,
) -> bool:
    value_name = definition.key_or_search_pattern or definition.name
    if not value_name:
        return False

    value = resolve_value(definition, parent, raw_value)
    encoded = encode_registry_value(value, definition.registry_kind)
    if encoded is None:
        warn(
            warnings,
            WarningKind.REGISTRY_WRITE_FAILED,
            f"Value {value!r} for {value_name!r} is not a valid DWORD",
            setting_id,
            target,
        )
        return False

    data, kind = encoded
    try:
        key.set_value(value_name, data, kind)
    except (OSError, ValueError, OverflowError) as exc:
        warn(
            warnings,
            WarningKind.REGISTRY_WRITE_FAILED,
            f"Error setting registry value {value_name!r}: {exc}",
            setting_id,
            target,
        )
        return False

    _log.info("Set REG %s = %r (%s)", value_name, data, kind.name)
    return True


def apply_registry_settings(
    registry_path: str,
    root: Root,
    overrides: Iterable[GameSettingOverride],
    *,
    opener: RegistryOpener | None = None,
) -> list[SettingWarning]:
    """Write every override ``root`` defines under ``registry_path``."""
    warnings: list[SettingWarning] = []
    overrides = [o for o in overrides if o.setting_id]

    try:
        hive, sub_key = split_registry_path(registry_path)
    except UnknownRegistryRoot as exc:
        warn(warnings, WarningKind.UNKNOWN_REGISTRY_ROOT, str(exc), target=registry_path)
        return warnings

    if not overrides:
        return warnings

    if opener is None:
        if not registry_available():
            warn(
                warnings,
                WarningKind.REGISTRY_UNAVAILABLE,
                "Skipping registry settings on non-Windows platform",
                target=registry_path,
            )
            return warnings
        opener = open_registry_key

    _log.info("Writing to registry: %s", registry_path)
    try:
        with opener(hive, sub_key) as key:
            for override in overrides:
                definition = find_child_by_id(root.children, override.setting_id)
                if definition is None:
                    continue
                for leaf in expand_setting(
                    definition,
                    override.value,
                    warnings=warnings,
                    setting_id=override.setting_id,
                    target=registry_path,
                ):
                    _write_leaf(
                        key,
                        leaf.definition,
                        leaf.parent,
                        leaf.value,
                        warnings,
                        override.setting_id,
                        registry_path,
                    )
    except PermissionError as exc:
        warn(
            warnings,
            WarningKind.REGISTRY_ACCESS_DENIED,
            f"Access denied opening registry key: {exc}",
            target=registry_path,
        )
    except OSError as exc:
        warn(
            warnings,
            WarningKind.REGISTRY_WRITE_FAILED,
            f"Failed to create/open registry key: {exc}",
            target=registry_path,
        )

    return warnings
