"""
Error taxonomy for the Stereo Mod Installer core.

Two channels exist:

* Exceptions for failures that end the enclosing install/uninstall call
  (missing archive, missing executable, extraction I/O failure).
* ``SettingWarning`` records for per-setting and per-target problems.  These
  are collected and returned next to the result so one bad setting never
  blocks the rest of an install; the caller decides whether to show them.
"""

from __future__ import annotations

from dataclasses import dataclass
from enum import Enum


class InstallerError(Exception):
    """Base class for every fatal installer error."""


class MissingSourceArchive(InstallerError, FileNotFoundError):
    """A payload archive (or a required subtree inside it) is not available."""


class MissingTargetExecutable(InstallerError, FileNotFoundError):
    """The game executable needed for architecture detection was not found."""


class InvalidExecutable(InstallerError, ValueError):
    """The file does not carry a valid PE header."""


class PartialExtractionFailure(InstallerError, OSError):
    """Extraction or copying stopped mid-way (disk full, permission denied)."""


class MalformedInstructionDocument(InstallerError, ValueError):
    """A settings instruction or override document could not be decoded."""


class UnknownRegistryRoot(InstallerError, ValueError):
    """A registry path does not start with a known HKEY_* hive."""


class PayloadNotConfigured(InstallerError):
    """The game entry lacks a payload the selected mod type requires."""


class WarningKind(Enum):
    UNRESOLVED_OVERRIDE = "unresolved_override"
    UNRESOLVED_ANCHOR = "unresolved_anchor"
    AMBIGUOUS_RESOLUTION = "ambiguous_resolution"
    REGISTRY_ACCESS_DENIED = "registry_access_denied"
    UNKNOWN_REGISTRY_ROOT = "unknown_registry_root"
    REGISTRY_UNAVAILABLE = "registry_unavailable"
    REGISTRY_WRITE_FAILED = "registry_write_failed"
    MALFORMED_DOCUMENT = "malformed_document"
    MISSING_SOURCE_FILE = "missing_source_file"


@dataclass(frozen=True)
class SettingWarning:
    """A recoverable problem encountered while applying settings or files."""

    kind: WarningKind
    message: str
    setting_id: str | None = None
    target: str | None = None

    def __str__(self) -> str:
        parts = [self.message]
        if self.setting_id:
            parts.append(f"setting={self.setting_id}")
        if self.target:
            parts.append(f"target={self.target}")
        return " | ".join(parts)
