"""
Stereo Mod Installer - Core Logic

Installs one of three mod flavours into a game directory, tracks every
touched path in ``3dfiles.txt`` inside the game root, and reverts them on
uninstall using the ``.disabled`` backups left behind.

    3D+       ReShade-style injector DLL (renamed per game) + optional
              overwatch payload
    3D Ultra  3Dmigoto payload + optional shader mod, ``truegame.ini`` and a
              generated ``d3dx.ini``
    Native    ReShade build with the game's native DLL name

Every flavour first installs the game's config archive (if it has one) with
the settings overrides that belong to the flavour.
"""

from __future__ import annotations

import json
import logging
import os
from dataclasses import dataclass, field
from enum import Enum
from pathlib import Path
from typing import Callable, Optional

from pydantic import BaseModel, ConfigDict, Field, ValidationError
from pydantic.alias_generators import to_pascal

from archive_selector import (
    archive_needs_executable,
    extract_mod_archive,
    extract_renamed_dll_archive,
    locate_executable,
)
from config_extractor import extract_config_archive
from errors import (
    InstallerError,
    MalformedInstructionDocument,
    MissingSourceArchive,
    PayloadNotConfigured,
    SettingWarning,
)
from file_backups import backup_if_absent, backup_path, disable_file, make_writable, restore_backup
from key_value_store import KeyValueStore
from registry_target import RegistryOpener

MANIFEST_FILENAME = "3dfiles.txt"
TRUEGAME_INI = "truegame.ini"
D3DX_INI = "d3dx.ini"

BLACKLISTED_FILES = ("nvngx_dlss.dll", "nvngx_dlssg.dll", "ShaderToggler.addon")

DEFAULT_TRUEGAME_INI = "\r\n".join(
    [
        "[GENERAL]",
        "# For future use",
        "",
        "[DEPTH]",
        "# Controls the stereo separation value, with a valid range of 0% - 150%, indicated as an int",
        "Depth = 30",
        "",
        "# Controls the stereo convergence value, with a valid range of 50% - 150%, indicated as an int",
        "Popout = 100",
        "",
        "[INPUT]",
        "# Hotkeys are specified in the format W,X,Y,Z where:",
        "# - W indicates the primary keycode",
        "# - X indicates whether ALT should be pressed",
        "# - Y indicates whether CTRL should be pressed",
        "# - Z indicates whether SHIFT should be pressed",
        "# e.g. Ctrl+F12 = 123,0,1,0",
        "",
        "CyclePanelDisplayMode = 90,0,1,0",
        "IncreaseDepth  = 115,0,1,0",
        "DecreaseDepth  = 114,0,1,0",
        "IncreasePopout = 117,0,1,0",
        "DecreasePopout = 116,0,1,0",
        "CyclePanelDockPosition = 118,0,1,0",
        "IncreasePanelOpacity = 113,0,1,0",
        "DecreasePanelOpacity = 112,0,1,0",
        "ToggleStereo = 84,0,1,0",
        "",
        "[UI]",
        "PanelOpacityMin = 0.2",
        "PanelOpacityMax = 1.0",
        "PanelOpacity = 0.8",
        "PanelDockPosition = TopLeft",
        "PanelDisplayMode = Minimal",
        "",
        "[IMGUI]",
        "[Window][Debug##Default]",
        "Pos=60,60",
        "Size=400,400",
        "Collapsed=0",
        "",
        "[Window][Geo11]",
        "Pos=0,0",
        "Size=3840,2160",
        "Collapsed=0",
        "",
    ]
)

_log = logging.getLogger(__name__)


class ModType(Enum):
    THREE_D_PLUS = "3D+"
    THREE_D_ULTRA = "3D Ultra"
    NATIVE = "Native"

    @property
    def description(self) -> str:
        return self.value

    @classmethod
    def from_description(cls, text: str) -> "ModType":
        wanted = text.strip().casefold()
        for mod_type in cls:
            if wanted in (mod_type.value.casefold(), mod_type.name.casefold()):
                return mod_type
        raise ValueError(f"Unknown mod type: {text!r}")


class GameEntry(BaseModel):
    """One game in the repository index (PascalCase on the wire)."""

    model_config = ConfigDict(
        alias_generator=to_pascal,
        populate_by_name=True,
        extra="ignore",
    )

    game_name: str | None = None
    executable_path: str | None = None
    relative_executable_path: str | None = None
    config_archive_path: str | None = None
    settings_plus: str | None = None
    settings_ultra: str | None = None
    settings_native: str | None = None
    reshade_path: str | None = None
    target_dll_file_name: str | None = None
    overwatch_path: str | None = None
    migoto_path: str | None = None
    shader_mod: str | None = None
    d3dx_settings: str | None = Field(None, alias="D3DXSettings")
    native_reshade: str | None = None
    native_reshade_dll: str | None = None

    def settings_for(self, mod_type: ModType) -> str | None:
        return {
            ModType.THREE_D_PLUS: self.settings_plus,
            ModType.THREE_D_ULTRA: self.settings_ultra,
            ModType.NATIVE: self.settings_native,
        }[mod_type]


class GameIndex(BaseModel):
    model_config = ConfigDict(alias_generator=to_pascal, populate_by_name=True, extra="ignore")

    generated_at: str | None = None
    games: list[GameEntry] = Field(default_factory=list)

    def find(self, name: str) -> GameEntry | None:
        wanted = name.casefold()
        for game in self.games:
            if game.game_name and game.game_name.casefold() == wanted:
                return game
        return None


def parse_game_index(data: str | bytes) -> GameIndex:
    try:
        return GameIndex.model_validate_json(data)
    except ValidationError as exc:
        raise MalformedInstructionDocument(f"Invalid game index: {exc}") from exc


@dataclass(frozen=True)
class Hotkey:
    """A virtual-key code plus modifier flags."""

    vk: int
    alt: bool = False
    ctrl: bool = False
    shift: bool = False

    def to_ini(self) -> str:
        return f"{self.vk},{int(self.alt)},{int(self.ctrl)},{int(self.shift)}"

    @classmethod
    def parse(cls, text: str) -> "Hotkey":
        """``"115,0,1,0"`` -> ``Hotkey(115, ctrl=True)``."""
        parts = [p.strip() for p in text.split(",")]
        if not parts[0] or len(parts) > 4:
            raise ValueError(f"Invalid hotkey: {text!r}")
        flags = [p not in ("", "0") for p in parts[1:]] + [False] * (4 - len(parts))
        return cls(int(parts[0]), *flags)


@dataclass
class InstallSettings:
    depth: float = 30
    popout: float = 100
    disable_blacklisted_dlls: bool = True
    depth_inc: Hotkey | None = None
    depth_dec: Hotkey | None = None
    popout_inc: Hotkey | None = None
    popout_dec: Hotkey | None = None


class InstallState(Enum):
    STAGING = "staging"
    EXTRACTING = "extracting"
    PATCHING = "patching"
    BLACKLIST_PROCESSING = "blacklist_processing"
    MANIFEST_WRITTEN = "manifest_written"
    FAILED = "failed"


@dataclass
class InstallResult:
    files: list[str] = field(default_factory=list)  # Manifest-relative paths
    warnings: list[SettingWarning] = field(default_factory=list)
    state: InstallState = InstallState.STAGING


@dataclass
class _Payloads:
    config: Path | None = None
    main: Path | None = None
    extra: Path | None = None  # Overwatch (3D+) or shader mod (3D Ultra)


def has_non_ascii(text: str) -> bool:
    return any(ord(c) > 0x7F for c in text)


class ModInstaller:
    """
    Installs and uninstalls a stereo mod for one game directory.

    Workflow:
        1. install() stages payloads through ``fetch``, extracts and patches,
           then writes the manifest last
        2. uninstall() walks the manifest, restoring backups or deleting files
    """

    def __init__(
        self,
        game_install_path: str | Path,
        fetch: Optional[Callable[[str], Path]] = None,
        log_callback: Optional[Callable[[str], None]] = None,
        registry_opener: RegistryOpener | None = None,
        workers: int | None = None,
    ):
        self.game_install_path = Path(game_install_path)
        self.manifest_path = self.game_install_path / MANIFEST_FILENAME
        self._fetch = fetch
        self._log_cb = log_callback or _log.info
        self._registry_opener = registry_opener
        self._workers = workers

        self.state = InstallState.STAGING

    # ── Logging ───────────────────────────────────────────────────────

    def log(self, msg: str):
        self._log_cb(msg)

    def _enter(self, state: InstallState):
        _log.debug("Install state: %s -> %s", self.state.name, state.name)
        self.state = state

    # ── Paths ─────────────────────────────────────────────────────────

    def target_directory(self, entry: GameEntry) -> Path:
        rel = (entry.relative_executable_path or "").replace("\\", "/")
        return self.game_install_path / rel if rel else self.game_install_path

    def executable_path(self, entry: GameEntry) -> Path | None:
        """Executable inside the target directory, else relative to the game root."""
        exe = (entry.executable_path or "").replace("\\", "/")
        if not exe:
            return None
        candidate = self.target_directory(entry) / Path(exe).name
        fallback = self.game_install_path / exe
        if not candidate.is_file() and fallback.is_file():
            return fallback
        return candidate

    def relative_path(self, path: str | Path) -> str:
        """Manifest form of ``path``: POSIX-style, relative to the game root when possible."""
        try:
            rel = os.path.relpath(Path(path), self.game_install_path)
        except ValueError:
            rel = str(path)
        return Path(rel).as_posix()

    # ── Manifest ──────────────────────────────────────────────────────

    def read_manifest(self) -> list[str]:
        if not self.manifest_path.is_file():
            return []
        text = self.manifest_path.read_text(encoding="utf-8-sig")
        return [line.strip() for line in text.splitlines() if line.strip()]

    def is_installed(self) -> bool:
        return self.manifest_path.is_file()

    def _write_manifest(self, paths: list[str]) -> list[str]:
        merged = list(dict.fromkeys(self.read_manifest() + paths))
        tmp = self.manifest_path.with_name(self.manifest_path.name + ".tmp")
        tmp.write_text("".join(f"{p}\n" for p in merged), encoding="utf-8")
        os.replace(tmp, self.manifest_path)
        self.log(f"Created {MANIFEST_FILENAME} with {len(merged)} entries")
        return merged

    # ── Install ───────────────────────────────────────────────────────

    def install(
        self,
        entry: GameEntry,
        mod_type: ModType,
        settings: InstallSettings | None = None,
    ) -> InstallResult:
        settings = settings or InstallSettings()
        result = InstallResult()
        self.state = InstallState.STAGING
        self.log(f"Installing {mod_type.description} mod for {entry.game_name or self.game_install_path.name}...")
        owned: list[Path] = []

        try:
            if not self.game_install_path.is_dir():
                raise InstallerError(f"Game install path not found: {self.game_install_path}")
            target_dir = self.target_directory(entry)
            exe = self.executable_path(entry)

            payloads = self._stage(entry, mod_type)
            exe = self._resolve_executable(mod_type, payloads, target_dir, exe)
            owned = self._mod_owned_paths()

            self._enter(InstallState.EXTRACTING)
            touched: list[Path] = []
            if payloads.config is not None:
                self.log(f"Installing config archive (mode: {mod_type.description})...")
                config = extract_config_archive(
                    payloads.config,
                    target_dir,
                    entry.settings_for(mod_type),
                    registry_opener=self._registry_opener,
                    workers=self._workers,
                )
                touched.extend(config.installed_files)
                result.warnings.extend(config.warnings)

            if mod_type is ModType.THREE_D_PLUS:
                touched.extend(self._install_plus(entry, payloads, target_dir, exe, result))
            elif mod_type is ModType.THREE_D_ULTRA:
                touched.extend(self._install_ultra(payloads, target_dir, exe, result))
            else:
                self.log("Installing Native ReShade mode...")
                native = extract_renamed_dll_archive(
                    payloads.main, target_dir, exe, entry.native_reshade_dll
                )
                touched.extend(native.files)

            self._enter(InstallState.PATCHING)
            if mod_type is ModType.THREE_D_ULTRA:
                touched.append(self.write_truegame_ini(target_dir, settings))
                d3dx = self.write_d3dx_ini(target_dir, entry.d3dx_settings)
                if d3dx is not None:
                    touched.append(d3dx)

            self._enter(InstallState.BLACKLIST_PROCESSING)
            if settings.disable_blacklisted_dlls:
                touched.extend(self.process_blacklist(target_dir))

            self._discard_backups(owned)
            new_paths = list(dict.fromkeys(self.relative_path(p) for p in touched))
            self._write_manifest(new_paths)
            self._enter(InstallState.MANIFEST_WRITTEN)
        except Exception as e:
            self._discard_backups(owned)
            self._enter(InstallState.FAILED)
            self.log(f"Error: {e}")
            raise

        result.files = new_paths
        result.state = self.state
        self.log(f"Successfully installed {mod_type.description} ({len(new_paths)} files)")
        return result

    def _stage(self, entry: GameEntry, mod_type: ModType) -> _Payloads:
        """Check the entry has what ``mod_type`` needs, then fetch every payload."""
        if self._fetch is None:
            raise InstallerError("No content fetcher configured")
        if mod_type is ModType.THREE_D_PLUS:
            if not entry.reshade_path or not entry.target_dll_file_name:
                raise PayloadNotConfigured("ReshadePath or TargetDllFileName not configured")
            main, extra = entry.reshade_path, entry.overwatch_path
        elif mod_type is ModType.THREE_D_ULTRA:
            if not entry.migoto_path:
                raise PayloadNotConfigured("MigotoPath not configured")
            main, extra = entry.migoto_path, entry.shader_mod
        else:
            if not entry.native_reshade or not entry.native_reshade_dll:
                raise PayloadNotConfigured("NativeReshade or NativeReshadeDll not configured")
            main, extra = entry.native_reshade, None

        payloads = _Payloads()
        if entry.config_archive_path:
            payloads.config = self._fetch_payload(entry.config_archive_path)
        payloads.main = self._fetch_payload(main)
        if extra:
            payloads.extra = self._fetch_payload(extra)
        return payloads

    def _fetch_payload(self, locator: str) -> Path:
        self.log(f"Fetching {locator}...")
        path = Path(self._fetch(locator))
        if not path.is_file():
            raise MissingSourceArchive(f"Payload not available: {locator}")
        return path

    def _resolve_executable(
        self, mod_type: ModType, payloads: _Payloads, target_dir: Path, exe: Path | None
    ) -> Path | None:
        """Locate the executable now if any payload needs an architecture choice."""
        needed = mod_type is not ModType.THREE_D_ULTRA or any(
            archive_needs_executable(a) for a in (payloads.main, payloads.extra) if a is not None
        )
        if not needed:
            return exe
        return locate_executable(target_dir, exe)

    def _mod_owned_paths(self) -> list[Path]:
        """Tracked files that exist without a backup, i.e. ones a previous install created."""
        owned = []
        for rel in self.read_manifest():
            path = self.game_install_path / rel
            if path.is_file() and not backup_path(path).exists():
                owned.append(path)
        return owned

    def _discard_backups(self, paths: list[Path]):
        # A reinstall must not back up the previous install's own files
        for path in paths:
            backup = backup_path(path)
            if backup.is_file():
                make_writable(backup)
                backup.unlink()

    def _install_plus(
        self,
        entry: GameEntry,
        payloads: _Payloads,
        target_dir: Path,
        exe: Path | None,
        result: InstallResult,
    ) -> list[Path]:
        files = extract_renamed_dll_archive(
            payloads.main, target_dir, exe, entry.target_dll_file_name
        ).files
        if payloads.extra is not None:
            self.log("Installing overwatch payload...")
            extra = extract_mod_archive(payloads.extra, target_dir, exe, workers=self._workers)
            files.extend(extra.files)
            result.warnings.extend(extra.warnings)
        return files

    def _install_ultra(
        self,
        payloads: _Payloads,
        target_dir: Path,
        exe: Path | None,
        result: InstallResult,
    ) -> list[Path]:
        files: list[Path] = []
        for archive in (payloads.main, payloads.extra):
            if archive is None:
                continue
            extracted = extract_mod_archive(archive, target_dir, exe, workers=self._workers)
            files.extend(extracted.files)
            result.warnings.extend(extracted.warnings)
        return files

    # ── Generated files ───────────────────────────────────────────────

    def write_truegame_ini(self, target_dir: Path, settings: InstallSettings) -> Path:
        ini_path = target_dir / TRUEGAME_INI
        if ini_path.exists():
            backup_if_absent(ini_path)
            make_writable(ini_path)
        else:
            target_dir.mkdir(parents=True, exist_ok=True)
            ini_path.write_bytes(DEFAULT_TRUEGAME_INI.encode("utf-8"))
            self.log(f"Created {TRUEGAME_INI}")

        store = KeyValueStore()
        store.load(ini_path)
        store.set_value("DEPTH", "Depth", str(int(settings.depth)))
        store.set_value("DEPTH", "Popout", str(int(settings.popout)))

        hotkeys = {
            "IncreaseDepth": settings.depth_inc,
            "DecreaseDepth": settings.depth_dec,
            "IncreasePopout": settings.popout_inc,
            "DecreasePopout": settings.popout_dec,
        }
        for key, hotkey in hotkeys.items():
            if hotkey is not None:
                store.set_value("INPUT", key, hotkey.to_ini())

        store.save(ini_path)
        self.log(f"Updated {TRUEGAME_INI}: Depth={int(settings.depth)}, Popout={int(settings.popout)}")
        return ini_path

    def write_d3dx_ini(self, target_dir: Path, d3dx_settings: str | None) -> Path | None:
        """Generate ``d3dx.ini`` for ``target_dir``.

        An existing file is moved aside first; the oldest ``.disabled`` copy is
        the one kept.  Returns the path when it must be tracked (written or
        moved aside), else None.
        """
        d3dx_path = target_dir / D3DX_INI
        moved = False
        if d3dx_path.exists():
            if backup_path(d3dx_path).exists():
                make_writable(d3dx_path)
                d3dx_path.unlink()
            else:
                disable_file(d3dx_path)
            moved = True
            self.log(f"Backed up {D3DX_INI} to .disabled")

        target = str(target_dir)
        content = "" if has_non_ascii(target) else f"[Rendering]\r\nbase_path_override={target}"
        if d3dx_settings:
            content = d3dx_settings + "\r\n\r\n" + content
            self.log(f"Applied D3DXSettings override (length: {len(d3dx_settings)})")

        if not content.strip():
            return d3dx_path if moved else None

        target_dir.mkdir(parents=True, exist_ok=True)
        with open(d3dx_path, "w", encoding="utf-8", newline="") as f:
            f.write(content)
        self.log(f"Generated {D3DX_INI} pointing to {target}")
        return d3dx_path

    def process_blacklist(self, target_dir: Path) -> list[Path]:
        disabled = []
        for name in BLACKLISTED_FILES:
            path = target_dir / name
            if path.is_file():
                disable_file(path)
                disabled.append(path)
                self.log(f"Disabled blacklisted file: {name}")
        return disabled

    # ── Uninstall ─────────────────────────────────────────────────────

    def uninstall(self, delete_backups: bool = False) -> list[str]:
        if not self.manifest_path.is_file():
            self.log(f"No {MANIFEST_FILENAME} found, nothing to uninstall")
            return []
        entries = self.read_manifest()

        self.log("Restoring original files...")
        handled = []
        for rel in entries:
            path = self.game_install_path / rel
            if restore_backup(path, delete_backup=delete_backups):
                self.log(f"  Restored: {rel}")
                handled.append(rel)
            elif path.is_file():
                make_writable(path)
                path.unlink()
                self.log(f"  Deleted: {rel}")
                handled.append(rel)
                self._remove_empty_parents(path)
            else:
                self.log(f"  Already missing: {rel}")

        self.manifest_path.unlink()
        self.log("Mod uninstalled successfully")
        return handled

    def _remove_empty_parents(self, path: Path):
        root = self.game_install_path.resolve()
        parent = path.parent
        while parent.exists() and parent.resolve() != root and root in parent.resolve().parents:
            if any(parent.iterdir()):
                break
            parent.rmdir()
            self.log(f"  Removed empty dir: {self.relative_path(parent)}")
            parent = parent.parent


def load_game_entry(path: str | Path) -> GameEntry:
    """Read a single game entry (or a one-game index) from a JSON file."""
    try:
        data = json.loads(Path(path).read_bytes().decode("utf-8-sig"))
        if isinstance(data, dict) and ("Games" in data or "games" in data):
            games = GameIndex.model_validate(data).games
            if len(games) != 1:
                raise MalformedInstructionDocument(
                    f"{path} lists {len(games)} games, pass --game to pick one"
                )
            return games[0]
        return GameEntry.model_validate(data)
    except (UnicodeDecodeError, json.JSONDecodeError, ValidationError) as exc:
        raise MalformedInstructionDocument(f"Invalid game entry in {path}: {exc}") from exc
