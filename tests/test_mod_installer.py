"""
Tests for ModInstaller: install flavours, manifest tracking and uninstall.
"""

import json

import pytest

from errors import (
    InstallerError,
    MalformedInstructionDocument,
    MissingSourceArchive,
    MissingTargetExecutable,
    PayloadNotConfigured,
    WarningKind,
)
from key_value_store import KeyValueStore
from mod_installer import (
    MANIFEST_FILENAME,
    GameEntry,
    Hotkey,
    InstallSettings,
    InstallState,
    ModInstaller,
    ModType,
    load_game_entry,
    parse_game_index,
)
from tests.conftest import MACHINE_I386, make_pe


CONFIG_DOC = json.dumps([
    {
        "ConfigFilePaths": [{"Path": "%GameRoot%\\Game.ini"}],
        "Children": [{"ID": "quality", "KeyOrSearchPattern": "Quality"}],
    }
])


# ── helpers ──────────────────────────────────────────────────────────────────

def snapshot(root):
    """Every path under ``root`` with file bytes (None for directories)."""
    return {
        p.relative_to(root).as_posix(): (p.read_bytes() if p.is_file() else None)
        for p in root.rglob("*")
    }


def plus_entry(**overrides):
    data = {
        "GameName": "Test Game",
        "ExecutablePath": "Game.exe",
        "ConfigArchivePath": "config.zip",
        "SettingsPlus": json.dumps([{"GameSettingId": "quality", "Value": "3"}]),
        "ReshadePath": "reshade.zip",
        "TargetDllFileName": "dxgi.dll",
        "OverwatchPath": "overwatch.zip",
    }
    data.update(overrides)
    return GameEntry.model_validate(data)


def ultra_entry(**overrides):
    data = {
        "GameName": "Test Game",
        "MigotoPath": "migoto.zip",
        "ShaderMod": "shaders.zip",
        "D3DXSettings": "[Loader]\r\ntarget=Game.exe",
    }
    data.update(overrides)
    return GameEntry.model_validate(data)


@pytest.fixture
def plus_setup(dirs, fetcher):
    _, game = dirs
    make_pe(game / "Game.exe")
    (game / "Game.ini").write_bytes(b"Quality=0\n")
    (game / "dxgi.dll").write_bytes(b"system")
    (game / "nvngx_dlss.dll").write_bytes(b"dlss")
    fetcher.add("config.zip", {"T": CONFIG_DOC})
    fetcher.add("reshade.zip", {"x64/ReShade64.dll": b"rs64", "x32/ReShade32.dll": b"rs32"})
    fetcher.add("overwatch.zip", {"reshade-shaders/Shaders/Stereo.fx": b"fx"})
    return game, fetcher


@pytest.fixture
def ultra_setup(dirs, fetcher):
    _, game = dirs
    (game / "d3dx.ini").write_bytes(b"orig")
    fetcher.add("migoto.zip", {"d3d11.dll": b"3dm", "d3dx.ini": b"archive", "ShaderFixes/a.txt": b"fix"})
    fetcher.add("shaders.zip", {"ShaderFixes/b.txt": b"b"})
    return game, fetcher


# ── 3D+ ──────────────────────────────────────────────────────────────────────

def test_plus_install(plus_setup):
    game, fetcher = plus_setup
    messages = []
    installer = ModInstaller(game, fetcher.fetch, log_callback=messages.append)

    result = installer.install(plus_entry(), ModType.THREE_D_PLUS)

    assert result.state is InstallState.MANIFEST_WRITTEN
    assert installer.state is InstallState.MANIFEST_WRITTEN
    assert result.files == ["Game.ini", "dxgi.dll", "reshade-shaders/Shaders/Stereo.fx", "nvngx_dlss.dll"]
    assert installer.read_manifest() == result.files
    assert fetcher.requests == ["config.zip", "reshade.zip", "overwatch.zip"]

    assert (game / "Game.ini").read_bytes() == b"Quality=3\n"
    assert (game / "Game.ini.disabled").read_bytes() == b"Quality=0\n"
    assert (game / "dxgi.dll").read_bytes() == b"rs64"
    assert (game / "dxgi.dll.disabled").read_bytes() == b"system"
    assert not (game / "nvngx_dlss.dll").exists()
    assert (game / "nvngx_dlss.dll.disabled").read_bytes() == b"dlss"
    assert any("Successfully installed 3D+" in m for m in messages)


def test_install_then_uninstall_restores_tree(plus_setup):
    game, fetcher = plus_setup
    before = snapshot(game)
    installer = ModInstaller(game, fetcher.fetch)

    installer.install(plus_entry(), ModType.THREE_D_PLUS)
    installer.uninstall(delete_backups=True)

    assert snapshot(game) == before


def test_uninstall_keeps_backups_by_default(plus_setup):
    game, fetcher = plus_setup
    installer = ModInstaller(game, fetcher.fetch)
    installer.install(plus_entry(), ModType.THREE_D_PLUS)

    handled = installer.uninstall()

    assert handled == ["Game.ini", "dxgi.dll", "reshade-shaders/Shaders/Stereo.fx", "nvngx_dlss.dll"]
    assert (game / "dxgi.dll").read_bytes() == b"system"
    assert (game / "dxgi.dll.disabled").exists()
    assert (game / "nvngx_dlss.dll").read_bytes() == b"dlss"
    assert not (game / "reshade-shaders").exists()
    assert not (game / MANIFEST_FILENAME).exists()
    assert not installer.is_installed()


def test_reinstall_keeps_oldest_backup_and_merges_manifest(plus_setup):
    game, fetcher = plus_setup
    before = snapshot(game)
    installer = ModInstaller(game, fetcher.fetch)

    installer.install(plus_entry(), ModType.THREE_D_PLUS)
    second = installer.install(plus_entry(), ModType.THREE_D_PLUS)

    assert "nvngx_dlss.dll" not in second.files
    assert "nvngx_dlss.dll" in installer.read_manifest()
    assert (game / "dxgi.dll.disabled").read_bytes() == b"system"
    assert (game / "Game.ini.disabled").read_bytes() == b"Quality=0\n"

    installer.uninstall(delete_backups=True)
    assert snapshot(game) == before


def test_failed_reinstall_leaves_no_backups_of_mod_files(plus_setup):
    game, fetcher = plus_setup
    (game / "Game.ini").unlink()
    before = snapshot(game)
    installer = ModInstaller(game, fetcher.fetch)

    installer.install(plus_entry(), ModType.THREE_D_PLUS)
    assert (game / "Game.ini").read_bytes() == b"Quality=3"

    (fetcher.root / "reshade.zip").write_bytes(b"garbage")
    with pytest.raises(MissingSourceArchive):
        installer.install(plus_entry(), ModType.THREE_D_PLUS)
    assert installer.state is InstallState.FAILED
    assert not (game / "Game.ini.disabled").exists()

    fetcher.add("reshade.zip", {"x64/ReShade64.dll": b"rs64", "x32/ReShade32.dll": b"rs32"})
    installer.install(plus_entry(), ModType.THREE_D_PLUS)
    installer.uninstall(delete_backups=True)
    assert snapshot(game) == before


def test_blacklist_can_be_kept(plus_setup):
    game, fetcher = plus_setup
    installer = ModInstaller(game, fetcher.fetch)
    result = installer.install(plus_entry(), ModType.THREE_D_PLUS, InstallSettings(disable_blacklisted_dlls=False))
    assert (game / "nvngx_dlss.dll").read_bytes() == b"dlss"
    assert "nvngx_dlss.dll" not in result.files


def test_config_warnings_are_returned(plus_setup):
    game, fetcher = plus_setup
    entry = plus_entry(SettingsPlus=json.dumps([{"GameSettingId": "ghost", "Value": "1"}]))
    result = ModInstaller(game, fetcher.fetch).install(entry, ModType.THREE_D_PLUS)
    assert [(w.kind, w.setting_id) for w in result.warnings] == [(WarningKind.UNRESOLVED_OVERRIDE, "ghost")]
    assert (game / "Game.ini").read_bytes() == b"Quality=0\n"


def test_plus_without_overwatch(plus_setup):
    game, fetcher = plus_setup
    result = ModInstaller(game, fetcher.fetch).install(
        plus_entry(OverwatchPath=None, ConfigArchivePath=None), ModType.THREE_D_PLUS
    )
    assert result.files == ["dxgi.dll", "nvngx_dlss.dll"]
    assert fetcher.requests == ["reshade.zip"]


# ── failures abort before any change ─────────────────────────────────────────

def test_missing_executable_aborts_before_mutation(plus_setup):
    game, fetcher = plus_setup
    (game / "Game.exe").unlink()
    before = snapshot(game)
    installer = ModInstaller(game, fetcher.fetch)

    with pytest.raises(MissingTargetExecutable):
        installer.install(plus_entry(), ModType.THREE_D_PLUS)

    assert installer.state is InstallState.FAILED
    assert snapshot(game) == before


@pytest.mark.parametrize(
    "mod_type, entry",
    [
        (ModType.THREE_D_PLUS, {"ReshadePath": "reshade.zip"}),
        (ModType.THREE_D_ULTRA, {"ShaderMod": "shaders.zip"}),
        (ModType.NATIVE, {"NativeReshade": "native.zip"}),
    ],
)
def test_payload_not_configured(dirs, fetcher, mod_type, entry):
    _, game = dirs
    installer = ModInstaller(game, fetcher.fetch)
    with pytest.raises(PayloadNotConfigured):
        installer.install(GameEntry.model_validate(entry), mod_type)
    assert fetcher.requests == []
    assert installer.state is InstallState.FAILED


def test_missing_payload_aborts_before_mutation(plus_setup):
    game, fetcher = plus_setup
    before = snapshot(game)
    with pytest.raises(MissingSourceArchive):
        ModInstaller(game, fetcher.fetch).install(plus_entry(OverwatchPath="gone.zip"), ModType.THREE_D_PLUS)
    assert snapshot(game) == before


def test_fetch_returning_missing_path(plus_setup, tmp_path):
    game, _ = plus_setup
    with pytest.raises(MissingSourceArchive):
        ModInstaller(game, lambda locator: tmp_path / "nothing.zip").install(plus_entry(), ModType.THREE_D_PLUS)


def test_no_fetcher(dirs):
    with pytest.raises(InstallerError):
        ModInstaller(dirs[1]).install(plus_entry(), ModType.THREE_D_PLUS)


def test_missing_game_dir(tmp_path, fetcher):
    installer = ModInstaller(tmp_path / "absent", fetcher.fetch)
    with pytest.raises(InstallerError):
        installer.install(plus_entry(), ModType.THREE_D_PLUS)
    assert installer.state is InstallState.FAILED


# ── 3D Ultra ─────────────────────────────────────────────────────────────────

def test_ultra_install(ultra_setup):
    game, fetcher = ultra_setup
    settings = InstallSettings(depth=45.7, popout=90, depth_inc=Hotkey(120, ctrl=True))

    result = ModInstaller(game, fetcher.fetch).install(ultra_entry(), ModType.THREE_D_ULTRA, settings)

    assert sorted(result.files) == sorted(
        ["ShaderFixes/a.txt", "ShaderFixes/b.txt", "d3d11.dll", "d3dx.ini", "truegame.ini"]
    )
    store = KeyValueStore()
    store.load(game / "truegame.ini")
    assert store.get_value("DEPTH", "Depth") == "45"
    assert store.get_value("DEPTH", "Popout") == "90"
    assert store.get_value("INPUT", "IncreaseDepth") == "120,0,1,0"
    assert store.get_value("INPUT", "DecreaseDepth") == "114,0,1,0"

    expected = f"[Loader]\r\ntarget=Game.exe\r\n\r\n[Rendering]\r\nbase_path_override={game}"
    assert (game / "d3dx.ini").read_bytes() == expected.encode("utf-8")
    assert (game / "d3dx.ini.disabled").read_bytes() == b"orig"


def test_ultra_round_trip(ultra_setup):
    game, fetcher = ultra_setup
    before = snapshot(game)
    installer = ModInstaller(game, fetcher.fetch)
    installer.install(ultra_entry(), ModType.THREE_D_ULTRA)
    installer.uninstall(delete_backups=True)
    assert snapshot(game) == before


def test_ultra_in_executable_subdirectory(dirs, fetcher):
    _, game = dirs
    fetcher.add("migoto.zip", {"d3d11.dll": b"3dm"})
    entry = ultra_entry(ShaderMod=None, D3DXSettings=None, RelativeExecutablePath="bin\\x64")

    result = ModInstaller(game, fetcher.fetch).install(entry, ModType.THREE_D_ULTRA)

    assert result.files == ["bin/x64/d3d11.dll", "bin/x64/truegame.ini", "bin/x64/d3dx.ini"]
    assert (game / "bin" / "x64" / "d3dx.ini").read_text() == (
        f"[Rendering]\nbase_path_override={game / 'bin' / 'x64'}"
    )


def test_ultra_arch_split_needs_executable(ultra_setup):
    game, fetcher = ultra_setup
    fetcher.add("shaders.zip", {"x64/a.txt": b"a", "x32/a.txt": b"a"})
    before = snapshot(game)
    installer = ModInstaller(game, fetcher.fetch)
    with pytest.raises(MissingTargetExecutable):
        installer.install(ultra_entry(), ModType.THREE_D_ULTRA)
    assert snapshot(game) == before
    assert not installer.is_installed()


def test_existing_truegame_ini_is_updated_in_place(tmp_path):
    ini = tmp_path / "truegame.ini"
    ini.write_text("[DEPTH]\nDepth = 10\nCustom = keep\n")
    ModInstaller(tmp_path).write_truegame_ini(tmp_path, InstallSettings(depth=55, popout=120))

    store = KeyValueStore()
    store.load(ini)
    assert store.get_value("DEPTH", "Depth") == "55"
    assert store.get_value("DEPTH", "Popout") == "120"
    assert store.get_value("DEPTH", "Custom") == "keep"
    assert (tmp_path / "truegame.ini.disabled").read_text() == "[DEPTH]\nDepth = 10\nCustom = keep\n"


def test_d3dx_ini_skipped_for_non_ascii_path(tmp_path):
    target = tmp_path / "Spiele-ü"
    target.mkdir()
    installer = ModInstaller(target)
    assert installer.write_d3dx_ini(target, None) is None
    assert not (target / "d3dx.ini").exists()

    (target / "d3dx.ini").write_text("old")
    assert installer.write_d3dx_ini(target, None) == target / "d3dx.ini"
    assert not (target / "d3dx.ini").exists()
    assert (target / "d3dx.ini.disabled").read_text() == "old"


# ── Native ───────────────────────────────────────────────────────────────────

def test_native_install(dirs, fetcher):
    _, game = dirs
    make_pe(game / "Game.exe", MACHINE_I386)
    fetcher.add("native.zip", {"x64/ReShade64.dll": b"rs64", "x32/ReShade32.dll": b"rs32"})
    entry = GameEntry.model_validate(
        {"GameName": "Test Game", "NativeReshade": "native.zip", "NativeReshadeDll": "d3d9.dll"}
    )

    result = ModInstaller(game, fetcher.fetch).install(entry, ModType.NATIVE)

    assert result.files == ["d3d9.dll"]
    assert (game / "d3d9.dll").read_bytes() == b"rs32"


# ── uninstall edge cases ─────────────────────────────────────────────────────

def test_uninstall_without_manifest(tmp_path):
    assert ModInstaller(tmp_path).uninstall() == []


def test_uninstall_tolerates_missing_entries(tmp_path):
    (tmp_path / MANIFEST_FILENAME).write_text("gone.dll\n\nsub/present.dll\n")
    (tmp_path / "sub").mkdir()
    (tmp_path / "sub" / "present.dll").write_bytes(b"x")

    handled = ModInstaller(tmp_path).uninstall()

    assert handled == ["sub/present.dll"]
    assert not (tmp_path / "sub").exists()
    assert tmp_path.is_dir()
    assert not (tmp_path / MANIFEST_FILENAME).exists()


def test_uninstall_restores_backup_when_live_file_missing(tmp_path):
    (tmp_path / MANIFEST_FILENAME).write_text("nvngx_dlss.dll\n")
    (tmp_path / "nvngx_dlss.dll.disabled").write_bytes(b"dlss")
    assert ModInstaller(tmp_path).uninstall() == ["nvngx_dlss.dll"]
    assert (tmp_path / "nvngx_dlss.dll").read_bytes() == b"dlss"


# ── models ───────────────────────────────────────────────────────────────────

@pytest.mark.parametrize(
    "text, expected",
    [
        ("3D+", ModType.THREE_D_PLUS),
        ("3d ultra", ModType.THREE_D_ULTRA),
        (" native ", ModType.NATIVE),
        ("THREE_D_PLUS", ModType.THREE_D_PLUS),
    ],
)
def test_mod_type_from_description(text, expected):
    assert ModType.from_description(text) is expected


def test_mod_type_unknown():
    with pytest.raises(ValueError):
        ModType.from_description("4D")


def test_hotkey_parse():
    assert Hotkey.parse("115,0,1,0") == Hotkey(115, ctrl=True)
    assert Hotkey.parse("84") == Hotkey(84)
    assert Hotkey.parse("65, 1, 0, 1").to_ini() == "65,1,0,1"
    for bad in ("", "a,0", "1,2,3,4,5"):
        with pytest.raises(ValueError):
            Hotkey.parse(bad)


def test_game_entry_settings_for():
    entry = GameEntry.model_validate({"SettingsPlus": "p", "SettingsUltra": "u", "settings_native": "n"})
    assert entry.settings_for(ModType.THREE_D_PLUS) == "p"
    assert entry.settings_for(ModType.THREE_D_ULTRA) == "u"
    assert entry.settings_for(ModType.NATIVE) == "n"


def test_parse_game_index():
    index = parse_game_index(json.dumps({"GeneratedAt": "2024-01-01", "Games": [{"GameName": "Nioh 3"}]}))
    assert index.find("nioh 3").game_name == "Nioh 3"
    assert index.find("other") is None
    with pytest.raises(MalformedInstructionDocument):
        parse_game_index("{broken")


def test_load_game_entry(tmp_path):
    single = tmp_path / "entry.json"
    single.write_text(json.dumps({"GameName": "A", "MigotoPath": "m.zip"}))
    assert load_game_entry(single).migoto_path == "m.zip"

    index = tmp_path / "index.json"
    index.write_text(json.dumps({"Games": [{"GameName": "B"}]}))
    assert load_game_entry(index).game_name == "B"

    index.write_text(json.dumps({"Games": [{"GameName": "B"}, {"GameName": "C"}]}))
    with pytest.raises(MalformedInstructionDocument):
        load_game_entry(index)

    single.write_text("not json")
    with pytest.raises(MalformedInstructionDocument):
        load_game_entry(single)
