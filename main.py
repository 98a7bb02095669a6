#!/usr/bin/env python3
"""WololoKingdoms converter - command line entry point"""

import argparse
import faulthandler
import logging
import os
import subprocess
import sys
import traceback
from logging.handlers import RotatingFileHandler
from pathlib import Path

from conversion_errors import ConversionError
from conversion_listener import REPLACE_TOKEN, ConversionListener
from conversion_settings import ConversionSettings, load_settings
from converter import JobState, convert
from drs_archive import DEFAULT_WORKERS

INSTALLER_TIMEOUT = 300


def setup_logging(verbose: bool = False) -> tuple[logging.Logger, Path]:
    log_dir = Path(os.environ.get("APPDATA", "~")).expanduser() / "WololoKingdoms"
    log_dir.mkdir(parents=True, exist_ok=True)
    log_file = log_dir / "wololokingdoms.log"

    handler = RotatingFileHandler(
        log_file,
        maxBytes=1 * 1024 * 1024,  # 1 MB
        backupCount=2,
        encoding="utf-8",
    )
    handler.setFormatter(logging.Formatter("%(asctime)s  %(levelname)-8s  %(name)s  %(message)s"))

    root = logging.getLogger()
    root.setLevel(logging.DEBUG)
    root.addHandler(handler)
    if verbose:
        console = logging.StreamHandler()
        console.setLevel(logging.DEBUG)
        console.setFormatter(logging.Formatter("%(levelname)-8s  %(name)s  %(message)s"))
        root.addHandler(console)

    logger = logging.getLogger("wololokingdoms")
    return logger, log_dir


def install_crash_handler(logger: logging.Logger, log_dir: Path):
    def handle_exception(exc_type, exc_value, exc_tb):
        if issubclass(exc_type, KeyboardInterrupt):
            sys.__excepthook__(exc_type, exc_value, exc_tb)
            return
        logger.critical(
            "Unhandled exception:\n%s",
            "".join(traceback.format_exception(exc_type, exc_value, exc_tb)),
        )

    sys.excepthook = handle_exception

    # faulthandler cannot go through logging after a C-level crash
    crash_file = log_dir / "crash.log"
    faulthandler.enable(open(crash_file, "w"), all_threads=True)


def run_installer(executable: str, flags: list[str], logger: logging.Logger) -> tuple[bool, str]:
    """Launch the UserPatch installer and wait for it; wine is used off Windows."""
    cmd = [executable, *flags]
    if sys.platform != "win32":
        cmd.insert(0, "wine")
    logger.info("Running UserPatch installer: %s", " ".join(cmd))
    try:
        proc = subprocess.Popen(
            cmd,
            cwd=str(Path(executable).parent),
            stdout=subprocess.PIPE,
            stderr=subprocess.STDOUT,
            text=True,
        )
        stdout, _ = proc.communicate(timeout=INSTALLER_TIMEOUT)
    except subprocess.TimeoutExpired:
        proc.kill()
        return False, "UserPatch installer timed out after 5 minutes"
    except OSError as exc:
        return False, f"Error running UserPatch installer: {exc}"

    logger.info("UserPatch installer exited with code %d", proc.returncode)
    if stdout:
        for line in stdout.strip().split("\n")[-10:]:
            logger.info("  [SetupAoC] %s", line)
    return proc.returncode == 0, stdout or ""


class ConsoleListener(ConversionListener):
    """Prints job events; dialogs are answered automatically."""

    def __init__(self, logger: logging.Logger, *, quiet: bool = False, launch_installer: bool = True):
        self.logger = logger
        self.quiet = quiet
        self.launch_installer = launch_installer
        self.failed_message = None
        self.installer_result = None

    def _print(self, text: str):
        if not self.quiet:
            print(text)

    def log(self, message: str):
        self.logger.info(message)
        self._print(message)

    def set_status(self, message: str):
        self.logger.info("Status: %s", message)
        self._print(f"== {message}")

    def report_progress(self, percent: int):
        self._print(f"[{percent:3d}%]")

    def report_error(self, message: str):
        self.failed_message = message
        self.logger.error(message)
        print(f"ERROR: {message}", file=sys.stderr)

    def request_confirm_dialog(self, text: str):
        self._print(f"NOTE: {text}")

    def request_confirm_dialog_titled(self, title: str, text: str):
        self._print(f"NOTE ({title}): {text}")

    def request_confirm_dialog_with_replacement(self, title: str, text: str, replacement_text: str):
        self._print(f"NOTE ({title}): {text.replace(REPLACE_TOKEN, replacement_text)}")

    def on_finished(self):
        self._print("Conversion finished.")

    def request_install_external_patch(self, executable: str, flags: list[str]):
        if not self.launch_installer:
            self._print(f"UserPatch installer: {executable} {' '.join(flags)}")
            return
        self.installer_result = run_installer(executable, flags, self.logger)


SETTING_FLAGS = (
    ("use_voobly", "Install as a Voobly data mod"),
    ("use_exe", "Install as a standalone mod"),
    ("use_both", "Install for both Voobly and standalone"),
    ("use_regional_monks", "Give civilizations their regional monk graphics"),
    ("use_small_trees", "Use small tree graphics"),
    ("use_short_walls", "Use short wall graphics"),
    ("use_no_snow", "Replace snow terrains"),
    ("use_grid", "Draw a grid on land terrains"),
    ("fix_flags", "Clear unit flags AoC does not support"),
    ("replace_tooltips", "Use the bundled tooltip texts"),
    ("restricted_civ_mods", "Keep civilization bonuses unchanged by overrides"),
    ("copy_maps", "Copy the built-in random maps"),
    ("copy_custom_maps", "Copy custom random maps and map packs"),
)


def parse_args(argv=None) -> argparse.Namespace:
    parser = argparse.ArgumentParser(description="Convert an HD edition installation into an AoC data mod")
    parser.add_argument("--config", help="JSON settings file; command line options override it")
    parser.add_argument("--hd-dir")
    parser.add_argument("--output-dir")
    parser.add_argument("--voobly-dir")
    parser.add_argument("--up-dir", help="Directory containing SetupAoC.exe")
    parser.add_argument("--resource-dir")
    parser.add_argument("--language")
    parser.add_argument("--dlc-level", type=int, choices=[1, 2, 3])
    parser.add_argument("--patch-version", choices=["5.7", "5.8"])
    parser.add_argument("--hotkeys", type=int, choices=[0, 1, 2, 3])
    parser.add_argument("--mod-name")
    for name, help_text in SETTING_FLAGS:
        parser.add_argument(f"--{name.replace('_', '-')}", action="store_true", default=None, help=help_text)
    parser.add_argument("--workers", type=int, default=DEFAULT_WORKERS)
    parser.add_argument("--no-installer", action="store_true", help="Print the UserPatch command instead of running it")
    parser.add_argument("--quiet", action="store_true")
    parser.add_argument("--verbose", action="store_true")
    return parser.parse_args(argv)


def settings_from_args(args: argparse.Namespace) -> ConversionSettings:
    fields = {
        "hd_dir": args.hd_dir,
        "output_dir": args.output_dir,
        "voobly_dir": args.voobly_dir,
        "up_dir": args.up_dir,
        "resource_dir": args.resource_dir,
        "language": args.language,
        "dlc_level": args.dlc_level,
        "patch_version": args.patch_version,
        "hotkeys": args.hotkeys,
        "mod_name": args.mod_name,
    }
    for name, _ in SETTING_FLAGS:
        fields[name] = getattr(args, name)
    fields = {k: v for k, v in fields.items() if v is not None}
    if args.config:
        return load_settings(args.config, **fields)
    return ConversionSettings.create(**fields)


def main(argv=None) -> int:
    args = parse_args(argv)
    logger, log_dir = setup_logging(args.verbose)
    install_crash_handler(logger, log_dir)
    logger.info("Starting WololoKingdoms converter")

    try:
        settings = settings_from_args(args)
    except ConversionError as exc:
        logger.error("%s", exc)
        print(f"ERROR: {exc}", file=sys.stderr)
        return 2

    listener = ConsoleListener(logger, quiet=args.quiet, launch_installer=not args.no_installer)
    state = convert(settings, listener, max_workers=args.workers)
    if state is not JobState.FINISHED:
        return 1
    if listener.installer_result is not None and not listener.installer_result[0]:
        print(f"ERROR: {listener.installer_result[1].strip()}", file=sys.stderr)
        return 3
    return 0


if __name__ == "__main__":
    raise SystemExit(main())
