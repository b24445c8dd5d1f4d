"""
Shared fixtures and helpers for the Stereo Mod Installer test suite.
"""

import struct
import zipfile
from contextlib import contextmanager
from pathlib import Path

import pytest

from errors import MissingSourceArchive

MACHINE_I386 = 0x014C
MACHINE_AMD64 = 0x8664


def make_zip(path: Path, members: dict) -> Path:
    """Write a zip at ``path`` with ``{member name: str | bytes}`` contents."""
    path.parent.mkdir(parents=True, exist_ok=True)
    with zipfile.ZipFile(path, "w") as zf:
        for member, data in members.items():
            zf.writestr(member, data)
    return path


def make_pe(path: Path, machine: int = MACHINE_AMD64) -> Path:
    """Write a minimal PE stub: DOS header, e_lfanew and a COFF machine field."""
    path.parent.mkdir(parents=True, exist_ok=True)
    dos = bytearray(b"MZ" + b"\x00" * 0x3E)
    struct.pack_into("<I", dos, 0x3C, 0x40)
    coff = b"PE\x00\x00" + struct.pack("<H", machine) + b"\x00" * 18
    path.write_bytes(bytes(dos) + coff)
    return path


class FakeRegistryKey:
    def __init__(self, store: dict, path: str):
        self._store = store
        self._path = path

    def set_value(self, name, data, kind):
        self._store.setdefault(self._path, {})[name] = (data, kind)


class FakeRegistry:
    """In-memory stand-in for ``registry_target.open_registry_key``."""

    def __init__(self, deny: bool = False):
        self.values: dict[str, dict] = {}
        self.opened: list[tuple[str, str]] = []
        self.deny = deny

    @contextmanager
    def opener(self, hive: str, sub_key: str):
        self.opened.append((hive, sub_key))
        if self.deny:
            raise PermissionError("Access is denied")
        yield FakeRegistryKey(self.values, f"{hive}\\{sub_key}")


class FakeFetcher:
    """Serves locators from a local directory and records every request."""

    def __init__(self, root: Path):
        self.root = root
        self.requests: list[str] = []

    def add(self, locator: str, path_or_members) -> Path:
        dest = self.root / locator
        if isinstance(path_or_members, dict):
            return make_zip(dest, path_or_members)
        dest.parent.mkdir(parents=True, exist_ok=True)
        dest.write_bytes(Path(path_or_members).read_bytes())
        return dest

    def fetch(self, locator: str) -> Path:
        self.requests.append(locator)
        path = self.root / locator
        if not path.is_file():
            raise MissingSourceArchive(f"Not in repository: {locator}")
        return path


@pytest.fixture
def dirs(tmp_path):
    """Return (repo_dir, game_dir) as fresh tmp_path subdirectories."""
    repo = tmp_path / "repo"
    game = tmp_path / "game"
    repo.mkdir()
    game.mkdir()
    return repo, game


@pytest.fixture
def fake_registry():
    return FakeRegistry()


@pytest.fixture
def fetcher(dirs):
    return FakeFetcher(dirs[0])
