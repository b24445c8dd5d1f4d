"""
Tests for registry-backed settings (using an in-memory registry).
"""

import json

import pytest

import registry_target
from errors import UnknownRegistryRoot, WarningKind
from registry_target import (
    apply_registry_settings,
    encode_registry_value,
    is_registry_path,
    split_registry_path,
)
from settings_schema import RegistryValueType, parse_overrides, parse_settings_document
from tests.conftest import FakeRegistry


def make_root(children):
    return parse_settings_document(json.dumps([{"Children": children}]))[0]


def overrides(*pairs):
    return parse_overrides(json.dumps([{"GameSettingId": i, "Value": v} for i, v in pairs]))


# ── paths ────────────────────────────────────────────────────────────────────

@pytest.mark.parametrize(
    "path, expected",
    [
        ("HKCU\\Software\\Game", ("HKEY_CURRENT_USER", "Software\\Game")),
        ("hkey_local_machine\\SOFTWARE\\Vendor\\", ("HKEY_LOCAL_MACHINE", "SOFTWARE\\Vendor")),
        ("HKCR/Classes/x", ("HKEY_CLASSES_ROOT", "Classes\\x")),
        ("HKU\\S-1-5", ("HKEY_USERS", "S-1-5")),
        ("HKCC\\System", ("HKEY_CURRENT_CONFIG", "System")),
    ],
)
def test_split_registry_path(path, expected):
    assert split_registry_path(path) == expected


def test_unknown_root_raises():
    with pytest.raises(UnknownRegistryRoot):
        split_registry_path("HKXX\\Software")


def test_is_registry_path():
    assert is_registry_path("hkcu\\x")
    assert not is_registry_path("C:\\Games\\x.ini")


# ── value encoding ───────────────────────────────────────────────────────────

def test_encode_dword():
    assert encode_registry_value("1", RegistryValueType.DWORD) == (1, RegistryValueType.DWORD)
    assert encode_registry_value("-1", RegistryValueType.DWORD) == (0xFFFFFFFF, RegistryValueType.DWORD)
    assert encode_registry_value("4294967295", RegistryValueType.DWORD) == (0xFFFFFFFF, RegistryValueType.DWORD)
    assert encode_registry_value("abc", RegistryValueType.DWORD) is None
    assert encode_registry_value("4294967296", RegistryValueType.DWORD) is None


def test_encode_dword_rejects_non_plain_digits():
    assert encode_registry_value(" 12 ", RegistryValueType.DWORD) == (12, RegistryValueType.DWORD)
    assert encode_registry_value("1_000", RegistryValueType.DWORD) is None
    assert encode_registry_value("\u0661\u0662", RegistryValueType.DWORD) is None
    assert encode_registry_value("1_000", RegistryValueType.UNSPECIFIED) == ("1_000", RegistryValueType.STRING)


def test_encode_string():
    assert encode_registry_value("42", RegistryValueType.STRING) == ("42", RegistryValueType.STRING)
    assert encode_registry_value(None, RegistryValueType.STRING) == ("", RegistryValueType.STRING)


def test_encode_unspecified_prefers_integer():
    assert encode_registry_value("7", RegistryValueType.UNSPECIFIED) == (7, RegistryValueType.DWORD)
    assert encode_registry_value("High", RegistryValueType.UNSPECIFIED) == ("High", RegistryValueType.STRING)
    assert encode_registry_value("3000000000", RegistryValueType.UNSPECIFIED) == (
        "3000000000",
        RegistryValueType.STRING,
    )


# ── applying ─────────────────────────────────────────────────────────────────

def test_writes_values_under_key(fake_registry):
    root = make_root([
        {"ID": "fs", "KeyOrSearchPattern": "Fullscreen", "RegistryValueType": 4,
         "AvailableSettingValues": [{"FriendlyName": "On", "Value": "1"}]},
        {"ID": "lang", "Name": "Language", "RegistryValueType": 1},
    ])
    warnings = apply_registry_settings(
        "HKCU\\Software\\Game", root, overrides(("fs", "on"), ("lang", "en")), opener=fake_registry.opener
    )
    assert warnings == []
    assert fake_registry.opened == [("HKEY_CURRENT_USER", "Software\\Game")]
    assert fake_registry.values["HKEY_CURRENT_USER\\Software\\Game"] == {
        "Fullscreen": (1, RegistryValueType.DWORD),
        "Language": ("en", RegistryValueType.STRING),
    }


def test_resolution_fan_out_to_registry(fake_registry):
    root = make_root([
        {"ID": "res", "ValueRangeType": 3, "Children": [
            {"KeyOrSearchPattern": "Width", "OverrideValue": "%ResWidth%"},
            {"KeyOrSearchPattern": "Height", "OverrideValue": "%ResHeight%"},
        ]},
    ])
    apply_registry_settings("HKCU\\G", root, overrides(("res", "1280x720")), opener=fake_registry.opener)
    assert fake_registry.values["HKEY_CURRENT_USER\\G"] == {
        "Width": (1280, RegistryValueType.DWORD),
        "Height": (720, RegistryValueType.DWORD),
    }


def test_invalid_dword_is_a_warning_and_others_continue(fake_registry):
    root = make_root([
        {"ID": "a", "KeyOrSearchPattern": "A", "RegistryValueType": 4},
        {"ID": "b", "KeyOrSearchPattern": "B", "RegistryValueType": 4},
    ])
    warnings = apply_registry_settings(
        "HKCU\\G", root, overrides(("a", "oops"), ("b", "2")), opener=fake_registry.opener
    )
    assert [w.kind for w in warnings] == [WarningKind.REGISTRY_WRITE_FAILED]
    assert fake_registry.values["HKEY_CURRENT_USER\\G"] == {"B": (2, RegistryValueType.DWORD)}


def test_access_denied_becomes_warning():
    registry = FakeRegistry(deny=True)
    root = make_root([{"ID": "a", "KeyOrSearchPattern": "A"}])
    warnings = apply_registry_settings("HKLM\\Software\\G", root, overrides(("a", "1")), opener=registry.opener)
    assert [w.kind for w in warnings] == [WarningKind.REGISTRY_ACCESS_DENIED]
    assert registry.values == {}


def test_unknown_root_becomes_warning(fake_registry):
    root = make_root([{"ID": "a", "KeyOrSearchPattern": "A"}])
    warnings = apply_registry_settings("HKZZ\\G", root, overrides(("a", "1")), opener=fake_registry.opener)
    assert [w.kind for w in warnings] == [WarningKind.UNKNOWN_REGISTRY_ROOT]
    assert fake_registry.opened == []


def test_no_overrides_does_not_open_key(fake_registry):
    root = make_root([{"ID": "a", "KeyOrSearchPattern": "A"}])
    assert apply_registry_settings("HKCU\\G", root, [], opener=fake_registry.opener) == []
    assert fake_registry.opened == []


def test_unavailable_registry_is_skipped(monkeypatch):
    monkeypatch.setattr(registry_target, "winreg", None)
    root = make_root([{"ID": "a", "KeyOrSearchPattern": "A"}])
    warnings = apply_registry_settings("HKCU\\G", root, overrides(("a", "1")))
    assert [w.kind for w in warnings] == [WarningKind.REGISTRY_UNAVAILABLE]
