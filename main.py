#!/usr/bin/env python3
"""Stereo Mod Installer — Entry Point"""

import argparse
import faulthandler
import logging
import sys
import traceback
from dataclasses import replace
from logging.handlers import RotatingFileHandler
from pathlib import Path

from app_settings import app_data_dir, load_settings, save_settings
from content_fetch import RepositoryFetcher
from errors import InstallerError
from mod_installer import (
    Hotkey,
    InstallSettings,
    ModInstaller,
    ModType,
    load_game_entry,
    parse_game_index,
)


def setup_logging() -> tuple[logging.Logger, Path]:
    log_dir = app_data_dir()
    log_dir.mkdir(parents=True, exist_ok=True)
    log_file = log_dir / "stereomodinstaller.log"

    handler = RotatingFileHandler(
        log_file,
        maxBytes=1 * 1024 * 1024,  # 1 MB
        backupCount=2,
        encoding="utf-8",
    )
    handler.setFormatter(logging.Formatter("%(asctime)s  %(levelname)-8s  %(message)s"))

    # Modules log through logging.getLogger(__name__), so the handler sits on the root.
    root = logging.getLogger()
    root.setLevel(logging.DEBUG)
    root.addHandler(handler)
    return logging.getLogger("stereomodinstaller"), log_dir


def install_crash_handler(logger: logging.Logger, log_dir: Path):
    # Python-level unhandled exceptions
    def handle_exception(exc_type, exc_value, exc_tb):
        if issubclass(exc_type, KeyboardInterrupt):
            sys.__excepthook__(exc_type, exc_value, exc_tb)
            return
        logger.critical(
            "Unhandled exception:\n%s",
            "".join(traceback.format_exception(exc_type, exc_value, exc_tb)),
        )

    sys.excepthook = handle_exception

    # C-level crashes (segfault, abort) — faulthandler writes to a separate
    # file because it can't use Python logging machinery after a crash
    crash_file = log_dir / "crash.log"
    faulthandler.enable(open(crash_file, "w"), all_threads=True)


def parse_args(argv=None) -> argparse.Namespace:
    parser = argparse.ArgumentParser(description="Stereo Mod Installer")
    parser.add_argument("--settings", help="Settings file (default: %%APPDATA%%/StereoModInstaller/settings.ini)")
    sub = parser.add_subparsers(dest="command", required=True)

    install = sub.add_parser("install", help="Install a mod into a game directory")
    install.add_argument("--game-dir", required=True)
    source = install.add_mutually_exclusive_group(required=True)
    source.add_argument("--entry", help="JSON file with the game's index entry")
    source.add_argument("--game", help="Game name to look up in the repository index")
    install.add_argument("--mod-type", required=True, help='"3D+", "3D Ultra" or "Native"')
    install.add_argument("--repo", help="Repository directory or URL")
    install.add_argument("--cache-dir")
    install.add_argument("--depth", type=float)
    install.add_argument("--popout", type=float)
    install.add_argument("--keep-blacklisted", action="store_true")
    install.add_argument("--workers", type=int)
    install.add_argument("--save-settings", action="store_true", help="Store the effective options after a successful install")
    for name in ("depth-inc", "depth-dec", "popout-inc", "popout-dec"):
        install.add_argument(f"--{name}", type=Hotkey.parse, metavar="VK,ALT,CTRL,SHIFT")

    uninstall = sub.add_parser("uninstall", help="Revert the installed mod")
    uninstall.add_argument("--game-dir", required=True)
    uninstall.add_argument("--delete-backups", action="store_true")

    status = sub.add_parser("status", help="Show the installed file list")
    status.add_argument("--game-dir", required=True)

    return parser.parse_args(argv)


def _printer(logger: logging.Logger):
    def emit(msg: str):
        print(msg)
        logger.info(msg)

    return emit


def run_install(args, settings, logger) -> int:
    repo = args.repo or settings.repository
    if not repo:
        print("No repository configured. Pass --repo or set [Repository] Source.", file=sys.stderr)
        return 1
    fetcher = RepositoryFetcher(repo, cache_dir=args.cache_dir)

    if args.entry:
        entry = load_game_entry(args.entry)
    else:
        entry = parse_game_index(fetcher.read_index()).find(args.game)
        if entry is None:
            print(f"Game not found in repository index: {args.game}", file=sys.stderr)
            return 1

    install_settings = InstallSettings(
        depth=settings.depth if args.depth is None else args.depth,
        popout=settings.popout if args.popout is None else args.popout,
        disable_blacklisted_dlls=settings.disable_blacklisted_dlls and not args.keep_blacklisted,
        depth_inc=args.depth_inc,
        depth_dec=args.depth_dec,
        popout_inc=args.popout_inc,
        popout_dec=args.popout_dec,
    )
    workers = args.workers if args.workers is not None else settings.workers

    installer = ModInstaller(
        args.game_dir, fetcher.fetch, log_callback=_printer(logger), workers=workers or None
    )
    result = installer.install(entry, ModType.from_description(args.mod_type), install_settings)
    for warning in result.warnings:
        print(f"WARNING: {warning}")
    if args.save_settings:
        save_settings(
            replace(
                settings,
                repository=str(repo),
                disable_blacklisted_dlls=install_settings.disable_blacklisted_dlls,
                workers=workers,
                depth=install_settings.depth,
                popout=install_settings.popout,
            ),
            args.settings,
        )
        logger.info("Saved settings")
    return 0


def run_uninstall(args, settings, logger) -> int:
    installer = ModInstaller(args.game_dir, log_callback=_printer(logger))
    installer.uninstall(delete_backups=args.delete_backups or settings.delete_backups_on_uninstall)
    return 0


def run_status(args, settings, logger) -> int:
    installer = ModInstaller(args.game_dir, log_callback=_printer(logger))
    if not installer.is_installed():
        print("No mod installed")
        return 0
    entries = installer.read_manifest()
    print(f"Installed ({len(entries)} file(s)):")
    for rel in entries:
        print(f"  {rel}")
    return 0


COMMANDS = {"install": run_install, "uninstall": run_uninstall, "status": run_status}


def main(argv=None) -> int:
    args = parse_args(argv)
    logger, log_dir = setup_logging()
    install_crash_handler(logger, log_dir)
    logger.info("Starting Stereo Mod Installer (%s)", args.command)

    settings = load_settings(args.settings)
    try:
        return COMMANDS[args.command](args, settings, logger)
    except (InstallerError, OSError, ValueError) as e:
        logger.error("%s failed: %s", args.command, e)
        print(f"Error: {e}", file=sys.stderr)
        return 1


if __name__ == "__main__":
    sys.exit(main())
