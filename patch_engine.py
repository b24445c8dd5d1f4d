"""
Declarative settings patcher for text configuration files.

Given the ``Root`` instruction tree for one file and the caller's overrides,
rewrite the file's lines in place.  There is no fixed schema for the target
file: each definition says either which ``key`` to write (``key=value``
style) or gives a search pattern with a ``{0}`` placeholder marking where the
value goes, optionally below an anchor line such as a section header.

Per-setting problems never raise.  They are reported as ``SettingWarning``
records (and logged) so the remaining overrides still apply.
"""

from __future__ import annotations

import logging
import re
from dataclasses import dataclass, field
from typing import Iterable

from errors import SettingWarning, WarningKind
from settings_schema import (
    VALUE_PLACEHOLDER,
    Child,
    GameSettingOverride,
    KeyValueSeparator,
    Root,
    find_child_by_id,
)

RES_WIDTH_PLACEHOLDER = "%ResWidth%"
RES_HEIGHT_PLACEHOLDER = "%ResHeight%"
INPUT_VALUE_PLACEHOLDER = "%InputValue%"

_NEWLINE_RE = re.compile(r"\r\n|\r|\n")

_log = logging.getLogger(__name__)


@dataclass
class PatchResult:
    content: str
    warnings: list[SettingWarning] = field(default_factory=list)


@dataclass(frozen=True)
class LeafWrite:
    """A single value to write for one leaf definition."""

    definition: Child
    parent: Child | None
    value: str | None


def warn(
    warnings: list[SettingWarning] | None,
    kind: WarningKind,
    message: str,
    setting_id: str | None = None,
    target: str | None = None,
):
    record = SettingWarning(kind, message, setting_id=setting_id, target=target)
    _log.warning("%s", record)
    if warnings is not None:
        warnings.append(record)


# ── Text helpers ──────────────────────────────────────────────────────


def split_lines(content: str) -> list[str]:
    if not content:
        return []
    return _NEWLINE_RE.split(content)


def detect_newline(content: str) -> str:
    return "\r\n" if "\r\n" in content else "\n"


def replace_placeholder(template: str, placeholder: str, value: str | None) -> str:
    """Case-insensitive replacement of every ``placeholder`` in ``template``."""
    replacement = value or ""
    return re.sub(re.escape(placeholder), lambda _m: replacement, template, flags=re.IGNORECASE)


def _find(line: str, needle: str, start: int = 0) -> int:
    m = re.compile(re.escape(needle), re.IGNORECASE).search(line, start)
    return m.start() if m else -1


def _find_line(lines: list[str], needle: str) -> int | None:
    for i, line in enumerate(lines):
        if _find(line, needle) >= 0:
            return i
    return None


def _append(lines: list[str], line: str):
    # Keep a trailing newline at the end of the file.
    if lines and lines[-1] == "":
        lines.insert(len(lines) - 1, line)
    else:
        lines.append(line)


# ── Fan-out ───────────────────────────────────────────────────────────


def split_resolution(raw_value: str | None) -> tuple[str, str] | None:
    """``"1920x1080"`` -> ``("1920", "1080")``; anything else -> None."""
    if not raw_value:
        return None
    parts = raw_value.lower().split("x")
    if len(parts) != 2:
        return None
    return parts[0].strip(), parts[1].strip()


def expand_setting(
    definition: Child,
    raw_value: str | None,
    *,
    warnings: list[SettingWarning] | None = None,
    setting_id: str | None = None,
    target: str | None = None,
) -> list[LeafWrite]:
    """Turn one override into the leaf writes it implies.

    * Resolution definitions split ``WIDTHxHEIGHT`` across the children that
      declare an ``override_value`` template.
    * Other definitions with children write every child, substituting
      ``%InputValue%`` into the child's template when it has one.
    * A definition without children is written directly.
    """
    if definition.is_resolution and definition.children:
        dims = split_resolution(raw_value)
        if dims is None:
            warn(
                warnings,
                WarningKind.AMBIGUOUS_RESOLUTION,
                f"Resolution value {raw_value!r} is not WIDTHxHEIGHT, skipped",
                setting_id,
                target,
            )
            return []
        width, height = dims
        writes = []
        for child in definition.children:
            if not child.override_value:
                continue
            value = replace_placeholder(child.override_value, RES_WIDTH_PLACEHOLDER, width)
            value = replace_placeholder(value, RES_HEIGHT_PLACEHOLDER, height)
            writes.append(LeafWrite(child, definition, value))
        return writes

    if definition.children:
        return [
            LeafWrite(
                child,
                definition,
                raw_value
                if child.override_value is None
                else replace_placeholder(child.override_value, INPUT_VALUE_PLACEHOLDER, raw_value),
            )
            for child in definition.children
        ]

    return [LeafWrite(definition, None, raw_value)]


def resolve_value(definition: Child, parent: Child | None, raw_value: str | None) -> str:
    """Map a friendly/raw value to the literal that must be written.

    The parent's value list wins when it has one (a resolution definition
    usually carries the list for its children).
    """
    owner = parent if parent is not None and parent.available_setting_values is not None else definition
    mapped = owner.lookup_value(raw_value)
    if mapped is not None:
        return mapped
    return raw_value or ""


# ── Leaf writes ───────────────────────────────────────────────────────


def _write_pattern(lines: list[str], pattern: str, value: str, start: int, anchored: bool) -> bool:
    prefix, suffix = pattern.split(VALUE_PLACEHOLDER, 1)

    for i in range(start, len(lines)):
        line = lines[i]
        prefix_at = _find(line, prefix)
        if prefix_at < 0:
            continue
        value_at = prefix_at + len(prefix)
        if suffix:
            suffix_at = _find(line, suffix, value_at)
            if suffix_at < 0:
                continue
            lines[i] = line[:value_at] + value + line[suffix_at:]
        else:
            lines[i] = line[:value_at] + value
        return True

    if anchored:
        return False
    _append(lines, pattern.replace(VALUE_PLACEHOLDER, value))
    return True


def _write_key_value(
    lines: list[str], key: str, separator: str, value: str, start: int, anchored: bool
) -> bool:
    new_line = f"{key}{separator}{value}"
    folded_key = key.casefold()

    for i in range(start, len(lines)):
        stripped = lines[i].strip()
        if stripped[: len(key)].casefold() != folded_key:
            continue
        remainder = stripped[len(key):].lstrip()
        if not remainder or remainder.startswith(separator):
            lines[i] = new_line
            return True

    if anchored:
        return False
    _append(lines, new_line)
    return True


def apply_single_setting(
    lines: list[str],
    definition: Child,
    parent: Child | None,
    raw_value: str | None,
    separator: str,
    mode: KeyValueSeparator,
    *,
    warnings: list[SettingWarning] | None = None,
    setting_id: str | None = None,
    target: str | None = None,
) -> bool:
    """Write one leaf definition into ``lines``.  Returns True if a line changed."""
    key = definition.key_or_search_pattern
    if not key:
        if mode is KeyValueSeparator.SYNTHETIC_ID and definition.id:
            key = definition.id
        else:
            return False

    value = resolve_value(definition, parent, raw_value)

    start = 0
    anchored = bool(definition.preceding_element)
    if anchored:
        anchor_at = _find_line(lines, definition.preceding_element)
        if anchor_at is None:
            warn(
                warnings,
                WarningKind.UNRESOLVED_ANCHOR,
                f"Anchor {definition.preceding_element!r} not found, {key!r} not written",
                setting_id,
                target,
            )
            return False
        start = anchor_at + 1

    if VALUE_PLACEHOLDER in key:
        return _write_pattern(lines, key, value, start, anchored)
    return _write_key_value(lines, key, separator, value, start, anchored)


def apply_setting(
    lines: list[str],
    definition: Child,
    raw_value: str | None,
    separator: str,
    mode: KeyValueSeparator,
    *,
    warnings: list[SettingWarning] | None = None,
    setting_id: str | None = None,
    target: str | None = None,
) -> int:
    """Apply one override (with fan-out).  Returns the number of leaf writes made."""
    written = 0
    for leaf in expand_setting(
        definition, raw_value, warnings=warnings, setting_id=setting_id, target=target
    ):
        if apply_single_setting(
            lines,
            leaf.definition,
            leaf.parent,
            leaf.value,
            separator,
            mode,
            warnings=warnings,
            setting_id=setting_id,
            target=target,
        ):
            written += 1
    return written


def apply_settings_to_content(
    content: str,
    root: Root,
    overrides: Iterable[GameSettingOverride],
    *,
    target: str | None = None,
    report_unresolved: bool = True,
) -> PatchResult:
    """Apply every override that ``root`` defines to ``content``.

    Overrides whose id ``root`` does not define are skipped; pass
    ``report_unresolved=False`` when the caller checks ids across several
    roots itself.
    """
    warnings: list[SettingWarning] = []
    lines = split_lines(content)
    mode = root.separator_mode

    for override in overrides:
        if not override.setting_id:
            continue
        definition = find_child_by_id(root.children, override.setting_id)
        if definition is None:
            if report_unresolved:
                warn(
                    warnings,
                    WarningKind.UNRESOLVED_OVERRIDE,
                    "Setting not found in instruction document",
                    override.setting_id,
                    target,
                )
            continue
        apply_setting(
            lines,
            definition,
            override.value,
            mode.text,
            mode,
            warnings=warnings,
            setting_id=override.setting_id,
            target=target,
        )

    return PatchResult(detect_newline(content).join(lines), warnings)
