"""
Config archive installation.

A config archive carries the game-side configuration a stereo mod needs.  If
its top level holds an instruction document (the first ``*.json``, or a file
named ``T``), every ``Root`` in it names the config files / registry keys to
patch, and the caller's overrides are written into them through
``patch_engine`` / ``registry_target``.  Without a usable document the archive
is simply copied into the game directory.
"""

from __future__ import annotations

import logging
import os
import re
import tempfile
from dataclasses import dataclass, field
from pathlib import Path
from typing import Iterable

from errors import (
    MalformedInstructionDocument,
    MissingSourceArchive,
    SettingWarning,
    WarningKind,
)
from archive_selector import unpack_archive, copy_all_files, find_instruction_file
from file_backups import backup_if_absent, make_writable
from patch_engine import apply_settings_to_content, warn
from registry_target import RegistryOpener, apply_registry_settings, is_registry_path
from settings_schema import (
    GameSettingOverride,
    Root,
    find_definition,
    parse_overrides,
    parse_settings_document,
)

INSTRUCTION_FILE_NAMES = ("T",)

_log = logging.getLogger(__name__)


@dataclass
class ConfigResult:
    installed_files: list[Path] = field(default_factory=list)
    warnings: list[SettingWarning] = field(default_factory=list)


# ── Path templates ────────────────────────────────────────────────────


def _local_appdata() -> str:
    return os.environ.get("LOCALAPPDATA") or str(Path.home() / "AppData" / "Local")


def _roaming_appdata() -> str:
    return os.environ.get("APPDATA") or str(Path.home() / "AppData" / "Roaming")


def resolve_path_template(template: str, target_dir: str | Path) -> str:
    """Expand ``%GameRoot%``, ``%LOCALAPPDATA%`` and ``%APPDATA%`` (any case)."""
    values = {
        "%gameroot%": str(target_dir),
        "%localappdata%": _local_appdata(),
        "%appdata%": _roaming_appdata(),
    }
    return re.sub(
        r"%(GameRoot|LOCALAPPDATA|APPDATA)%",
        lambda m: values[m.group(0).lower()],
        template,
        flags=re.IGNORECASE,
    )


def _file_target(resolved: str, target_dir: Path) -> Path:
    path = Path(resolved.replace("\\", "/"))
    if not path.is_absolute():
        path = target_dir / path
    return path


def _read_text(path: Path) -> str:
    data = path.read_bytes()
    try:
        return data.decode("utf-8-sig")
    except UnicodeDecodeError:
        return data.decode("latin-1")


# ── Instruction documents ─────────────────────────────────────────────


def _patch_file(
    path: Path,
    root: Root,
    overrides: list[GameSettingOverride],
    warnings: list[SettingWarning],
) -> bool:
    path.parent.mkdir(parents=True, exist_ok=True)

    if path.is_file():
        content = _read_text(path)
        backup_if_absent(path)
    elif root.default_preset:
        _log.info("Using default preset for %s", path.name)
        content = root.default_preset
    else:
        content = ""

    if overrides:
        patched = apply_settings_to_content(
            content, root, overrides, target=str(path), report_unresolved=False
        )
        content = patched.content
        warnings.extend(patched.warnings)

    if not content:
        return False

    if path.exists():
        make_writable(path)
    with open(path, "w", encoding="utf-8", newline="") as f:
        f.write(content)
    _log.info("Wrote config file: %s", path)
    return True


def _report_unresolved(
    roots: list[Root],
    overrides: Iterable[GameSettingOverride],
    warnings: list[SettingWarning],
    source_name: str | None = None,
):
    for override in overrides:
        if override.setting_id and find_definition(roots, override.setting_id) is None:
            warn(
                warnings,
                WarningKind.UNRESOLVED_OVERRIDE,
                "Setting not found in instruction document",
                override.setting_id,
                target=source_name,
            )


def apply_settings_document(
    instructions_text: str | bytes,
    source_dir: str | Path,
    target_dir: str | Path,
    overrides_json: str | bytes | None = None,
    *,
    exclude: tuple[Path, ...] = (),
    registry_opener: RegistryOpener | None = None,
    workers: int | None = None,
    source_name: str | None = None,
) -> ConfigResult:
    """Apply an instruction document, falling back to copying ``source_dir``.

    Returns every file written (absolute paths) and the warnings collected
    on the way.  Per-setting and registry problems never raise.  Document
    level warnings name ``source_name`` as their target.
    """
    source_dir = Path(source_dir)
    target_dir = Path(target_dir)
    result = ConfigResult()

    try:
        roots = parse_settings_document(instructions_text)
    except MalformedInstructionDocument as exc:
        warn(result.warnings, WarningKind.MALFORMED_DOCUMENT, str(exc), target=source_name)
        _log.info("Invalid or empty instruction file, falling back to copy all")
        result.installed_files = copy_all_files(
            source_dir, target_dir, exclude=exclude, workers=workers
        )
        return result

    _log.info("Found %d configuration definition(s)", len(roots))

    try:
        overrides = [o for o in parse_overrides(overrides_json) if o.setting_id]
    except MalformedInstructionDocument as exc:
        warn(result.warnings, WarningKind.MALFORMED_DOCUMENT, str(exc), target=source_name)
        overrides = []
    if overrides:
        _log.info("Loaded %d settings override(s)", len(overrides))
        _report_unresolved(roots, overrides, result.warnings, source_name)

    for root in roots:
        if root.is_inert:
            continue
        for template in root.config_file_paths:
            resolved = resolve_path_template(template, target_dir)

            if is_registry_path(resolved):
                result.warnings.extend(
                    apply_registry_settings(resolved, root, overrides, opener=registry_opener)
                )
                continue

            path = _file_target(resolved, target_dir)
            if _patch_file(path, root, overrides, result.warnings):
                result.installed_files.append(path)

    return result


# ── Archives ──────────────────────────────────────────────────────────


def extract_config_archive(
    archive: str | Path,
    target_dir: str | Path,
    overrides_json: str | bytes | None = None,
    *,
    registry_opener: RegistryOpener | None = None,
    workers: int | None = None,
) -> ConfigResult:
    """Extract a config archive and install it into ``target_dir``.

    Raises ``MissingSourceArchive`` if the archive does not exist or cannot
    be read.  The temporary extraction directory is always removed.
    """
    archive = Path(archive)
    target_dir = Path(target_dir)
    if not archive.is_file():
        raise MissingSourceArchive(f"Config archive not found: {archive}")

    with tempfile.TemporaryDirectory(prefix="stereo_config_") as tmp:
        extract_dir = Path(tmp)
        unpack_archive(archive, extract_dir)

        instruction_file = find_instruction_file(extract_dir, INSTRUCTION_FILE_NAMES)
        if instruction_file is not None:
            _log.info("Found instruction file: %s", instruction_file.name)
            result = apply_settings_document(
                instruction_file.read_bytes(),
                extract_dir,
                target_dir,
                overrides_json,
                exclude=(instruction_file,),
                registry_opener=registry_opener,
                workers=workers,
                source_name=archive.name,
            )
        else:
            _log.info("No JSON instructions found, copying all files...")
            result = ConfigResult(copy_all_files(extract_dir, target_dir, workers=workers))

    _log.info("Config extraction complete: %d file(s) installed", len(result.installed_files))
    return result
