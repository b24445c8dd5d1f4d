"""
Minimal grouped key/value text store (INI subset).

Used to edit ``truegame.ini`` during installs and to persist the
installer's own settings.  Only the features those callers need are
supported: ``[group]`` headers, ``key=value`` lines, ``;``/``#`` comments.
Comments and blank lines are dropped on save.
"""

from __future__ import annotations

from pathlib import Path

COMMENT_PREFIXES = (";", "#")


class KeyValueStore:
    """Groups of ordered key/value pairs, matched case-insensitively.

    The first spelling seen for a group or key is the one written back.
    Keys that appear before any header live in the unnamed group ``""``.
    """

    def __init__(self):
        # lower(group) -> (group spelling, {lower(key): [key spelling, value]})
        self._groups: dict[str, tuple[str, dict[str, list[str]]]] = {}

    # ── Loading ───────────────────────────────────────────────────────

    def load(self, path: str | Path):
        """Parse ``path`` if it exists; a missing file leaves the store empty."""
        path = Path(path)
        self._groups.clear()
        if path.is_file():
            self.load_bytes(path.read_bytes())

    def load_bytes(self, data: bytes):
        if not data:
            self._groups.clear()
            return
        self.loads(data.decode("utf-8-sig", errors="replace"))

    def loads(self, text: str):
        self._groups.clear()
        current = ""

        for raw_line in text.splitlines():
            line = raw_line.strip()
            if not line or line.startswith(COMMENT_PREFIXES):
                continue

            if line.startswith("[") and line.endswith("]"):
                current = line[1:-1].strip()
                self._group(current)
                continue

            key, sep, value = line.partition("=")
            key = key.strip()
            if not sep or not key:
                continue
            self.set_value(current, key, value.strip())

    # ── Access ────────────────────────────────────────────────────────

    def _group(self, group: str) -> dict[str, list[str]]:
        entry = self._groups.get(group.lower())
        if entry is None:
            entry = (group, {})
            self._groups[group.lower()] = entry
        return entry[1]

    def get_value(self, group: str, key: str) -> str | None:
        entry = self._groups.get(group.lower())
        if entry is None:
            return None
        pair = entry[1].get(key.lower())
        return pair[1] if pair else None

    def set_value(self, group: str, key: str, value: str):
        keys = self._group(group)
        pair = keys.get(key.lower())
        if pair is None:
            keys[key.lower()] = [key, value]
        else:
            pair[1] = value

    def groups(self) -> list[str]:
        return [spelling for spelling, _ in self._groups.values()]

    def items(self, group: str) -> list[tuple[str, str]]:
        entry = self._groups.get(group.lower())
        if entry is None:
            return []
        return [(k, v) for k, v in entry[1].values()]

    def __contains__(self, group: str) -> bool:
        return group.lower() in self._groups

    # ── Saving ────────────────────────────────────────────────────────

    def dumps(self) -> str:
        out: list[str] = []

        unnamed = self._groups.get("")
        if unnamed and unnamed[1]:
            out.extend(f"{k}={v}" for k, v in unnamed[1].values())
            out.append("")

        for lowered, (spelling, keys) in self._groups.items():
            if not lowered:
                continue
            out.append(f"[{spelling}]")
            out.extend(f"{k}={v}" for k, v in keys.values())
            out.append("")

        return "\n".join(out).rstrip()

    def save(self, path: str | Path):
        path = Path(path)
        path.parent.mkdir(parents=True, exist_ok=True)
        path.write_text(self.dumps(), encoding="utf-8")
