"""
Archive extraction for mod payloads.

Handles reading .zip/.7z/.rar archives, choosing the ``x64``/``x32`` subtree
that matches the game executable, and copying the selected files into the
game directory, either driven by a JSON file-instruction document or by
copying everything with relative paths preserved.

Every file that is about to be overwritten first gets a ``.disabled`` backup
(created only once, see ``file_backups``).

File instruction document (optional, top level of the selected files):

{
    "Files": [
        {"Source": "d3d11.dll", "Target": "d3d11.dll"},
        {"Source": "loader.dll", "Target": "dxgi.dll", "AdditionalTargets": ["d3d12.dll"]}
    ]
}
"""

from __future__ import annotations

import json
import logging
import os
import shutil
import struct
import sys
import tempfile
import zipfile
from concurrent.futures import ThreadPoolExecutor, as_completed
from dataclasses import dataclass, field
from pathlib import Path

import py7zr
import rarfile
from pydantic import AliasChoices, Field, ValidationError

from errors import (
    InstallerError,
    InvalidExecutable,
    MalformedInstructionDocument,
    MissingSourceArchive,
    MissingTargetExecutable,
    PartialExtractionFailure,
    SettingWarning,
    WarningKind,
)
from file_backups import backup_if_absent, make_writable
from patch_engine import warn
from settings_schema import SchemaModel

# Point rarfile at UnRAR.exe — frozen exe uses _MEIPASS, dev uses assets/
if getattr(sys, "frozen", False):
    _unrar = Path(sys._MEIPASS) / "UnRAR.exe"
else:
    _unrar = Path(__file__).parent / "assets" / "UnRAR.exe"
if _unrar.exists():
    rarfile.UNRAR_TOOL = str(_unrar)

SUPPORTED_EXTENSIONS = {".zip", ".7z", ".rar"}
ARCH_DIRS = ("x64", "x32")

PE_POINTER_OFFSET = 0x3C
PE_SIGNATURE = b"PE\x00\x00"
MACHINE_AMD64 = 0x8664
MACHINE_ARM64 = 0xAA64

_log = logging.getLogger(__name__)


class FileInstruction(SchemaModel):
    source: str | None = Field(None, validation_alias=AliasChoices("Source", "source"))
    target: str | None = Field(None, validation_alias=AliasChoices("Target", "target"))
    additional_targets: list[str] = Field(
        default_factory=list, validation_alias=AliasChoices("AdditionalTargets", "additionalTargets")
    )

    def target_names(self) -> list[str]:
        names = [self.target] if self.target else []
        names.extend(t for t in self.additional_targets if t)
        if not names and self.source:
            names.append(Path(self.source.replace("\\", "/")).name)
        return names


class FileInstructions(SchemaModel):
    files: list[FileInstruction] = Field(default_factory=list, validation_alias=AliasChoices("Files", "files"))


@dataclass
class ExtractionResult:
    files: list[Path] = field(default_factory=list)
    warnings: list[SettingWarning] = field(default_factory=list)


# ── Archive access ────────────────────────────────────────────────────


def list_archive_names(filepath: Path) -> list[str]:
    ext = filepath.suffix.lower()
    names = []

    if ext == ".zip":
        with zipfile.ZipFile(filepath, "r") as zf:
            names = zf.namelist()
    elif ext == ".7z":
        with py7zr.SevenZipFile(filepath, "r") as sz:
            names = sz.getnames()
    elif ext == ".rar":
        with rarfile.RarFile(filepath, "r") as rf:
            names = [info.filename for info in rf.infolist()]
    else:
        raise ValueError(f"Unsupported archive format: {ext}")

    return [n.replace("\\", "/") for n in names]


def extract_archive(filepath: Path, dest: Path):
    """Extract every member of ``filepath`` into ``dest``."""
    ext = filepath.suffix.lower()
    dest.mkdir(parents=True, exist_ok=True)

    if ext == ".zip":
        with zipfile.ZipFile(filepath, "r") as zf:
            zf.extractall(dest)
    elif ext == ".7z":
        with py7zr.SevenZipFile(filepath, "r") as sz:
            sz.extractall(path=dest)
    elif ext == ".rar":
        with rarfile.RarFile(filepath, "r") as rf:
            rf.extractall(dest)
    else:
        raise ValueError(f"Unsupported archive format: {ext}")


def unpack_archive(archive: Path, dest: Path):
    _log.info("Extracting %s...", archive.name)
    try:
        extract_archive(archive, dest)
    except (zipfile.BadZipFile, py7zr.Bad7zFile, rarfile.Error, ValueError) as exc:
        raise MissingSourceArchive(f"Cannot read archive {archive.name}: {exc}") from exc
    except OSError as exc:
        raise PartialExtractionFailure(f"Extraction of {archive.name} failed: {exc}") from exc


# ── Architecture selection ────────────────────────────────────────────


def is_64bit_executable(exe_path: Path) -> bool:
    """Classify a PE executable by the machine field of its COFF header."""
    with open(exe_path, "rb") as f:
        dos_header = f.read(PE_POINTER_OFFSET + 4)
        if len(dos_header) < PE_POINTER_OFFSET + 4 or dos_header[:2] != b"MZ":
            raise InvalidExecutable(f"Not a PE executable: {exe_path}")
        (pe_offset,) = struct.unpack_from("<I", dos_header, PE_POINTER_OFFSET)

        f.seek(pe_offset)
        header = f.read(6)

    if len(header) < 6 or header[:4] != PE_SIGNATURE:
        raise InvalidExecutable(f"Invalid PE signature: {exe_path}")
    (machine,) = struct.unpack_from("<H", header, 4)
    return machine in (MACHINE_AMD64, MACHINE_ARM64)


def locate_executable(target_dir: Path, executable: Path | None = None) -> Path:
    """The given executable if it exists, else the first ``*.exe`` under ``target_dir``."""
    if executable is not None and Path(executable).is_file():
        return Path(executable)

    _log.info("Executable not provided or not found, scanning %s", target_dir)
    if target_dir.is_dir():
        for candidate in sorted(target_dir.rglob("*")):
            if candidate.is_file() and candidate.suffix.lower() == ".exe":
                return candidate
    raise MissingTargetExecutable(f"Target executable not found in: {target_dir}")


def find_arch_dirs(extract_dir: Path) -> dict[str, Path] | None:
    """The ``x64``/``x32`` folders if they are the only top-level folders.

    Top-level files other than JSON instruction documents rule the split out.
    """
    dirs: dict[str, Path] = {}
    for entry in extract_dir.iterdir():
        if entry.is_dir():
            if entry.name.lower() not in ARCH_DIRS:
                return None
            dirs[entry.name.lower()] = entry
        elif entry.suffix.lower() != ".json":
            return None
    return dirs or None


def has_arch_split(names: list[str]) -> bool:
    """Same rule as ``find_arch_dirs``, from an archive listing."""
    found = False
    for name in names:
        parts = name.strip("/").split("/")
        if not parts[0]:
            continue
        if len(parts) == 1 and not name.endswith("/"):
            if not parts[0].lower().endswith(".json"):
                return False
        elif parts[0].lower() in ARCH_DIRS:
            found = True
        else:
            return False
    return found


def archive_needs_executable(archive: Path) -> bool:
    """True when installing ``archive`` requires picking x64 or x32."""
    try:
        return has_arch_split(list_archive_names(archive))
    except (zipfile.BadZipFile, py7zr.Bad7zFile, rarfile.Error, ValueError) as exc:
        raise MissingSourceArchive(f"Cannot read archive {archive.name}: {exc}") from exc


def select_source_root(
    extract_dir: Path, target_dir: Path, executable: Path | None = None
) -> Path:
    """Return the directory whose contents should be installed."""
    arch_dirs = find_arch_dirs(extract_dir)
    if arch_dirs is None:
        return extract_dir

    _log.info("Found architecture-specific subdirectories (x64/x32)")
    exe = locate_executable(target_dir, executable)
    arch = "x64" if is_64bit_executable(exe) else "x32"
    _log.info("Detected %s executable %s, using %s", "64-bit" if arch == "x64" else "32-bit", exe.name, arch)

    chosen = arch_dirs.get(arch)
    if chosen is None:
        raise MissingSourceArchive(f"Could not find {arch} subdirectory in archive")
    return chosen


# ── File instructions ─────────────────────────────────────────────────


def find_instruction_file(directory: Path, extra_names: tuple[str, ...] = ()) -> Path | None:
    files = sorted(p for p in directory.iterdir() if p.is_file())
    for p in files:
        if p.suffix.lower() == ".json":
            return p
    wanted = {n.lower() for n in extra_names}
    for p in files:
        if p.name.lower() in wanted:
            return p
    return None


def parse_file_instructions(data: bytes) -> FileInstructions:
    try:
        return FileInstructions.model_validate(json.loads(data.decode("utf-8-sig")))
    except (UnicodeDecodeError, json.JSONDecodeError, ValidationError) as exc:
        raise MalformedInstructionDocument(f"Invalid file instructions: {exc}") from exc


def _install_file(src: Path, dst: Path) -> Path:
    dst.parent.mkdir(parents=True, exist_ok=True)
    if dst.exists():
        backup_if_absent(dst)
        make_writable(dst)
    shutil.copy2(src, dst)
    return dst


def apply_file_instructions(
    instructions: FileInstructions,
    source_root: Path,
    target_dir: Path,
    warnings: list[SettingWarning] | None = None,
) -> list[Path]:
    installed: list[Path] = []
    target_dir.mkdir(parents=True, exist_ok=True)
    _log.info("Processing %d file instruction(s)...", len(instructions.files))

    for instruction in instructions.files:
        if not instruction.source:
            _log.info("Skipping instruction with empty source")
            continue

        src = source_root / instruction.source.replace("\\", "/")
        if not src.is_file():
            warn(
                warnings,
                WarningKind.MISSING_SOURCE_FILE,
                f"Source file not found: {instruction.source}",
                target=str(target_dir),
            )
            continue

        for name in instruction.target_names():
            dst = target_dir / name.replace("\\", "/")
            installed.append(_install_file(src, dst))
            _log.info("%s -> %s", instruction.source, name)

    return installed


def copy_all_files(
    source_root: Path,
    target_dir: Path,
    *,
    exclude: tuple[Path, ...] = (),
    workers: int | None = None,
) -> list[Path]:
    """Copy every file under ``source_root`` to ``target_dir``, keeping relative paths."""
    target_dir.mkdir(parents=True, exist_ok=True)
    excluded = {p.resolve() for p in exclude}
    jobs = [
        (src, target_dir / src.relative_to(source_root))
        for src in sorted(source_root.rglob("*"))
        if src.is_file() and src.resolve() not in excluded
    ]
    _log.info("Copying %d file(s)...", len(jobs))

    if workers is None or workers <= 0:
        workers = max(1, min(8, (os.cpu_count() or 4) - 1))

    installed: list[Path] = []
    with ThreadPoolExecutor(max_workers=workers) as ex:
        futs = [ex.submit(_install_file, src, dst) for src, dst in jobs]
        for fut in as_completed(futs):
            installed.append(fut.result())

    return sorted(installed)


# ── Public API ────────────────────────────────────────────────────────


def extract_mod_archive(
    archive: str | Path,
    target_dir: str | Path,
    executable: str | Path | None = None,
    *,
    workers: int | None = None,
) -> ExtractionResult:
    """Install the contents of ``archive`` into ``target_dir``.

    Raises ``MissingSourceArchive`` when the archive (or the subtree for the
    executable's architecture) is missing, ``MissingTargetExecutable`` when
    an architecture choice is needed but no executable exists, and
    ``PartialExtractionFailure`` on I/O errors.  The temporary extraction
    directory is always removed.
    """
    archive = Path(archive)
    target_dir = Path(target_dir)
    if not archive.is_file():
        raise MissingSourceArchive(f"Archive not found: {archive}")

    result = ExtractionResult()
    with tempfile.TemporaryDirectory(prefix="stereo_mod_") as tmp:
        extract_dir = Path(tmp)
        unpack_archive(archive, extract_dir)

        try:
            source_root = select_source_root(
                extract_dir, target_dir, Path(executable) if executable else None
            )
            instruction_file = find_instruction_file(source_root)
            if instruction_file is None and source_root != extract_dir:
                instruction_file = find_instruction_file(extract_dir)

            instructions = None
            if instruction_file is not None:
                _log.info("Found instruction file: %s", instruction_file.name)
                try:
                    instructions = parse_file_instructions(instruction_file.read_bytes())
                except MalformedInstructionDocument as exc:
                    warn(result.warnings, WarningKind.MALFORMED_DOCUMENT, str(exc), target=archive.name)

            if instructions is not None and instructions.files:
                result.files = apply_file_instructions(
                    instructions, source_root, target_dir, result.warnings
                )
            else:
                _log.info("No file instructions found, copying all files...")
                result.files = copy_all_files(
                    source_root,
                    target_dir,
                    exclude=(instruction_file,) if instruction_file else (),
                    workers=workers,
                )
        except InstallerError:
            raise
        except OSError as exc:
            raise PartialExtractionFailure(f"Installing {archive.name} failed: {exc}") from exc

    _log.info("Extraction complete: %d file(s) from %s", len(result.files), archive.name)
    return result


def extract_renamed_dll_archive(
    archive: str | Path,
    target_dir: str | Path,
    executable: str | Path | None,
    dll_name: str,
) -> ExtractionResult:
    """Install an injector-style payload: per-architecture DLLs, main DLL renamed.

    The archive must hold ``x64``/``x32`` folders.  Top-level DLLs of the
    folder matching the executable are copied; the one whose name contains
    ``reshade`` (or the only one) is installed as ``dll_name``.
    """
    archive = Path(archive)
    target_dir = Path(target_dir)
    if not archive.is_file():
        raise MissingSourceArchive(f"Archive not found: {archive}")

    exe = locate_executable(target_dir, Path(executable) if executable else None)
    arch = "x64" if is_64bit_executable(exe) else "x32"
    _log.info("Detected architecture: %s, target DLL: %s", arch, dll_name)

    result = ExtractionResult()
    with tempfile.TemporaryDirectory(prefix="stereo_mod_") as tmp:
        extract_dir = Path(tmp)
        unpack_archive(archive, extract_dir)

        arch_dir = (find_arch_dirs(extract_dir) or {}).get(arch)
        if arch_dir is None:
            raise MissingSourceArchive(f"No files found in {arch} folder of {archive.name}")

        dlls = sorted(p for p in arch_dir.iterdir() if p.is_file() and p.suffix.lower() == ".dll")
        if not dlls:
            raise MissingSourceArchive(f"No DLL files found in {archive.name}")

        try:
            for src in dlls:
                if "reshade" in src.name.lower() or len(dlls) == 1:
                    name = dll_name
                    _log.info("Copying and renaming %s -> %s", src.name, dll_name)
                else:
                    name = src.name
                    _log.info("Copying %s", src.name)
                result.files.append(_install_file(src, target_dir / name))
        except OSError as exc:
            raise PartialExtractionFailure(f"Installing {archive.name} failed: {exc}") from exc

    return result
