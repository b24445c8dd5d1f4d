"""
Fetching mod payloads from the game repository.

The repository is either a local directory (a mirrored download folder) or
an HTTP(S) base URL.  Payload locators in the game index are relative to it.
Everything fetched lands in a cache directory so repeated installs do not
download again.

Large payloads are published split into parts named ``<file>.NNN-TTT``
(part ``NNN`` of ``TTT``).  A locator naming any part fetches all of them
and returns the merged file.
"""

from __future__ import annotations

import hashlib
import logging
import os
import re
import shutil
import tempfile
from pathlib import Path

import requests
from requests.adapters import HTTPAdapter
from urllib3.util.retry import Retry

from errors import MissingSourceArchive

SPLIT_PART_RE = re.compile(r"^(.*)\.(\d{3})-(\d{3})$")
CACHE_DIR_NAME = "StereoModInstaller"
CHUNK_SIZE = 262144
INDEX_FILE = "index.json"

_log = logging.getLogger(__name__)


def is_url(locator: str) -> bool:
    return locator.lower().startswith(("http://", "https://"))


def default_cache_dir() -> Path:
    return Path(tempfile.gettempdir()) / CACHE_DIR_NAME


def cache_name(locator: str) -> str:
    """``<md5 of locator>_<basename>``, so equal basenames never collide."""
    digest = hashlib.md5(locator.encode("utf-8")).hexdigest()
    return f"{digest}_{_basename(locator)}"


def _basename(locator: str) -> str:
    return locator.split("?", 1)[0].replace("\\", "/").rstrip("/").rsplit("/", 1)[-1]


def make_session() -> requests.Session:
    session = requests.Session()
    retry_strategy = Retry(total=3, backoff_factor=0.3, status_forcelist=[429, 500, 502, 503, 504])
    adapter = HTTPAdapter(max_retries=retry_strategy, pool_connections=1, pool_maxsize=10)
    session.mount("http://", adapter)
    session.mount("https://", adapter)
    return session


class RepositoryFetcher:
    """Fetch locators from a local or HTTP repository into a cache directory."""

    def __init__(
        self,
        base: str | Path,
        cache_dir: str | Path | None = None,
        session: requests.Session | None = None,
    ):
        self.base = str(base).rstrip("/\\")
        self.is_local = not is_url(self.base)
        self.cache_dir = Path(cache_dir) if cache_dir else default_cache_dir()
        self._session = session
        _log.info("Repository mode: %s (%s)", "LOCAL" if self.is_local else "HTTP", self.base)

    @property
    def session(self) -> requests.Session:
        if self._session is None:
            self._session = make_session()
        return self._session

    # ── Public API ────────────────────────────────────────────────────

    def fetch(self, locator: str) -> Path:
        """Return a local path holding the content ``locator`` names."""
        self.cache_dir.mkdir(parents=True, exist_ok=True)

        m = SPLIT_PART_RE.match(locator)
        if m:
            return self._fetch_split(m.group(1), int(m.group(3)))

        cached = self.cache_dir / cache_name(locator)
        if cached.is_file():
            _log.info("Using cached: %s", _basename(locator))
            return cached
        _log.info("Fetching: %s", locator)
        self._download(locator, cached)
        return cached

    def read_index(self) -> bytes:
        """Raw bytes of the repository's game index."""
        if self.is_local:
            return (Path(self.base) / INDEX_FILE).read_bytes()
        response = self.session.get(f"{self.base}/{INDEX_FILE}", timeout=60)
        response.raise_for_status()
        return response.content

    # ── Internals ─────────────────────────────────────────────────────

    def _fetch_split(self, base_locator: str, total: int) -> Path:
        merged = self.cache_dir / _basename(base_locator)
        parts = [f"{base_locator}.{i:03d}-{total:03d}" for i in range(1, total + 1)]
        part_paths = [self.cache_dir / _basename(p) for p in parts]

        if merged.is_file() and all(p.is_file() for p in part_paths):
            _log.info("Using cached merged file: %s", merged.name)
            return merged

        _log.info("Detected split file (%d parts), fetching...", total)
        for i, (part, dest) in enumerate(zip(parts, part_paths), 1):
            if not dest.is_file():
                _log.info("  part %d/%d: %s", i, total, dest.name)
                self._download(part, dest)

        _log.info("Merging %d parts...", total)
        tmp = merged.with_name(merged.name + ".tmp")
        with open(tmp, "wb") as out:
            for src in part_paths:
                with open(src, "rb") as f:
                    shutil.copyfileobj(f, out)
        os.replace(tmp, merged)
        return merged

    def _source_path(self, locator: str) -> Path:
        path = Path(locator)
        if path.is_absolute() and path.exists():
            return path
        return Path(self.base) / locator.replace("\\", "/")

    def _download(self, locator: str, dest: Path):
        dest.parent.mkdir(parents=True, exist_ok=True)
        tmp = dest.with_name(dest.name + ".part")

        try:
            if self.is_local and not is_url(locator):
                shutil.copyfile(self._source_path(locator), tmp)
            else:
                url = locator if is_url(locator) else f"{self.base}/{locator.lstrip('/')}"
                with self.session.get(url, stream=True, timeout=60, allow_redirects=True) as r:
                    r.raise_for_status()
                    with open(tmp, "wb") as f:
                        for chunk in r.iter_content(chunk_size=CHUNK_SIZE):
                            if chunk:
                                f.write(chunk)
        except (OSError, requests.RequestException) as exc:
            tmp.unlink(missing_ok=True)
            raise MissingSourceArchive(f"Failed to fetch {locator}: {exc}") from exc

        os.replace(tmp, dest)
