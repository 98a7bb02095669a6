"""
WololoKingdoms converter - conversion pipeline.

A ``ConversionJob`` turns an HD edition installation into an AoC data mod:

    Validating -> Extracting -> Patching -> MigratingMaps -> Repacking
        -> Deploying -> (InstallingPatch) -> Finished

Any stage failure moves the job to Failed.  Exactly one terminal event
(``on_finished`` or ``report_error``) reaches the listener, and the staging
directory is removed on every exit path.
"""

from __future__ import annotations

import logging
from enum import Enum
from pathlib import Path
from typing import Optional

from conversion_errors import ConfigurationError, ConversionError, ConversionIOError
from conversion_listener import REPLACE_TOKEN, ConversionListener
from conversion_settings import ConversionSettings
from data_patches import PatchContext, PatchReport, apply_patches
from deployment import VOOBLY, DeploymentTarget, DeploymentWriter, StagingArea, resolve_targets
from drs_archive import DEFAULT_WORKERS, StagingArchive, extract_all, repack
from game_data import (
    DATA_FILENAME,
    LANGUAGE_INI,
    GameData,
    format_language_ini,
    read_game_data,
    read_strings,
    strings_path,
    write_game_data,
)
from map_migrator import MAP_DIR_NAME, MapMigrator, seed_existing_maps
from userpatch_installer import InstallRequest, plan_install

DATA_DIR = "Data"
ARCHIVE_SUFFIX = ".drs"
FALLBACK_LANGUAGE = "en"

_log = logging.getLogger(__name__)


class JobState(str, Enum):
    CREATED = "created"
    VALIDATING = "validating"
    EXTRACTING = "extracting"
    PATCHING = "patching"
    MIGRATING_MAPS = "migrating_maps"
    REPACKING = "repacking"
    DEPLOYING = "deploying"
    INSTALLING_PATCH = "installing_patch"
    FINISHED = "finished"
    FAILED = "failed"


STAGE_WEIGHTS = {
    JobState.VALIDATING: 2,
    JobState.EXTRACTING: 20,
    JobState.PATCHING: 25,
    JobState.MIGRATING_MAPS: 10,
    JobState.REPACKING: 23,
    JobState.DEPLOYING: 18,
    JobState.INSTALLING_PATCH: 2,
}

STAGE_STATUS = {
    JobState.VALIDATING: "Checking settings",
    JobState.EXTRACTING: "Extracting resource archives",
    JobState.PATCHING: "Patching game data",
    JobState.MIGRATING_MAPS: "Copying maps",
    JobState.REPACKING: "Repacking archives",
    JobState.DEPLOYING: "Installing converted files",
    JobState.INSTALLING_PATCH: "Preparing UserPatch installation",
}


class ConversionJob:
    """One single-shot conversion run.

    Workflow:
        1. job = ConversionJob(settings, listener)
        2. job.run()      blocks until Finished or Failed
        3. job.close()    or use the job as a context manager
    """

    def __init__(
        self,
        settings: ConversionSettings,
        listener: Optional[ConversionListener] = None,
        *,
        max_workers: int = DEFAULT_WORKERS,
    ):
        self.settings = settings
        self.listener = listener or ConversionListener()
        self.max_workers = max_workers
        self.targets: list[DeploymentTarget] = resolve_targets(settings)

        self.state = JobState.CREATED
        self.error: ConversionError | None = None

        # Runtime state
        self.archives: dict[str, StagingArchive] = {}
        self.game_data: GameData | None = None
        self.strings: dict[int, str] = {}
        self.patch_report: PatchReport | None = None
        self.install_request: InstallRequest | None = None
        self._staging: StagingArea | None = None
        self._completed = 0
        self._progress = 0

    def __enter__(self) -> ConversionJob:
        return self

    def __exit__(self, exc_type, exc, tb):
        self.close()

    @property
    def data_dir(self) -> Path:
        return self.settings.hd_dir / DATA_DIR

    @property
    def staging_dir(self) -> Path | None:
        return self._staging.path if self._staging else None

    # ── Listener plumbing ─────────────────────────────────────────────

    def log(self, msg: str):
        self.listener.log(msg)

    def _enter(self, state: JobState):
        self.state = state
        _log.info("Stage: %s", state.value)
        self.listener.set_status(STAGE_STATUS[state])

    def _report(self, percent: int):
        # 100 is reserved for the finished event.
        percent = min(int(percent), 99)
        if percent > self._progress:
            self._progress = percent
            self.listener.report_progress(percent)

    def _stage_progress(self, done: int, total: int):
        weight = STAGE_WEIGHTS[self.state]
        self._report(self._completed + weight * done // max(total, 1))

    def _complete_stage(self):
        self._completed += STAGE_WEIGHTS[self.state]
        self._report(self._completed)

    # ── Run ───────────────────────────────────────────────────────────

    def run(self) -> JobState:
        if self.state is not JobState.CREATED:
            raise RuntimeError("A ConversionJob can only be run once")

        self.listener.report_progress(0)
        try:
            self._validate()
            self._extract()
            self._patch()
            self._migrate_maps()
            self._repack()
            self._deploy()
            self._install_patch()
        except ConversionError as exc:
            self._fail(exc)
        except OSError as exc:
            self._fail(ConversionIOError(f"File operation failed: {exc}"))
        except Exception as exc:
            _log.exception("Unexpected error during conversion")
            self._fail(ConversionError(f"Unexpected error: {exc}"))
        else:
            self._finish()
        finally:
            self._cleanup_staging()
        return self.state

    def _finish(self):
        self.state = JobState.FINISHED
        self._progress = 100
        self.listener.report_progress(100)
        _log.info("Conversion finished")
        self.listener.on_finished()

    def _fail(self, exc: ConversionError):
        failed_stage = self.state
        self.error = exc
        self.state = JobState.FAILED
        _log.error("Conversion failed during %s: %s", failed_stage.value, exc)
        self.listener.report_error(str(exc))

    def _cleanup_staging(self):
        if self._staging is not None:
            self._staging.cleanup()
            self._staging = None

    def close(self):
        """Release staging files and in-memory archives. Safe to call repeatedly."""
        self._cleanup_staging()
        self.archives.clear()
        self.game_data = None
        self.strings = {}

    # ── Stages ────────────────────────────────────────────────────────

    def _validate(self):
        self._enter(JobState.VALIDATING)
        self.settings.verify_paths()
        if not self.data_dir.is_dir():
            raise ConfigurationError(
                f"No Data directory in the HD installation: {self.data_dir}"
            )
        if not (self.data_dir / DATA_FILENAME).is_file():
            raise ConfigurationError(
                f"Game data {DATA_FILENAME} not found in {self.data_dir}"
            )
        for target in self.targets:
            self.log(f"Destination ({target.name}): {target.root}")
        self._staging = StagingArea()
        self._complete_stage()

    def _extract(self):
        self._enter(JobState.EXTRACTING)
        paths = sorted(
            (p for p in self.data_dir.iterdir()
             if p.is_file() and p.suffix.lower() == ARCHIVE_SUFFIX),
            key=lambda p: p.name.lower(),
        )
        if not paths:
            raise ConversionIOError(f"No resource archives (*.drs) found in {self.data_dir}")

        total = len(paths) + 1
        for i, archive in enumerate(extract_all(paths, self.max_workers), start=1):
            self.archives[archive.name.lower()] = archive
            self.log(f"  Extracted {archive.name} ({len(archive)} entries)")
            self._stage_progress(i, total)

        self.game_data = read_game_data(self.data_dir / DATA_FILENAME)
        self.log(
            f"  Read game data {self.game_data.version}: "
            f"{len(self.game_data.civilizations)} civilizations, "
            f"{len(self.game_data.units)} units"
        )
        self.strings = self._load_strings()
        self._complete_stage()

    def _load_strings(self) -> dict[int, str]:
        hd_dir = self.settings.hd_dir
        path = strings_path(hd_dir, self.settings.language)
        if not path.is_file() and self.settings.language != FALLBACK_LANGUAGE:
            self.log(
                f"WARNING: No strings for language '{self.settings.language}', "
                f"using '{FALLBACK_LANGUAGE}'"
            )
            path = strings_path(hd_dir, FALLBACK_LANGUAGE)
        if not path.is_file():
            _log.warning("No string table found at %s", path)
            self.log(f"WARNING: String table not found: {path}")
            return {}
        strings = read_strings(path)
        self.log(f"  Read {len(strings)} UI string(s)")
        return strings

    def _patch(self):
        self._enter(JobState.PATCHING)
        ctx = PatchContext(
            settings=self.settings,
            data=self.game_data,
            strings=self.strings,
            archives=self.archives,
            log=self.log,
            max_workers=self.max_workers,
        )
        self.patch_report = apply_patches(ctx)
        if self.patch_report.neutralized_civs:
            names = ", ".join(c.name.title() for c in self.patch_report.neutralized_civs)
            self.log(f"  Restricted civ mods: reset bonus changes for {names}")
            self.listener.request_confirm_dialog(
                "Some civilization overrides swapped civilization bonuses. "
                "Restricted civ mods is enabled, so those bonuses were left unchanged."
            )
        self._complete_stage()

    def _migrate_maps(self):
        self._enter(JobState.MIGRATING_MAPS)
        migrator = MapMigrator(self.settings, self.log)
        renamed: list[str] = []
        for i, target in enumerate(self.targets, start=1):
            staged_map_dir = self._staging.target_dir(target) / MAP_DIR_NAME
            if migrator.enabled:
                report = migrator.migrate(staged_map_dir, target.map_dir)
                self.log(
                    f"  {target.name}: {len(report.copied)} map(s) copied, "
                    f"{len(report.skipped)} already present, {len(report.renamed)} renamed"
                )
                renamed.extend(report.renamed.values())
            else:
                seed_existing_maps(target.map_dir, staged_map_dir)
            self._stage_progress(i, len(self.targets))

        if renamed:
            self.listener.request_confirm_dialog_with_replacement(
                "Maps",
                "Some maps already existed with different content and were saved "
                f"under new names: {REPLACE_TOKEN}",
                ", ".join(sorted(set(renamed))),
            )
        self._complete_stage()

    def _repack(self):
        self._enter(JobState.REPACKING)
        names = sorted(self.archives)
        total = len(names) + 1
        for i, key in enumerate(names, start=1):
            archive = self.archives[key]
            repack(archive, self._staging.common_path(Path(DATA_DIR) / archive.name))
            self._stage_progress(i, total)

        write_game_data(self.game_data, self._staging.common_path(Path(DATA_DIR) / DATA_FILENAME))
        self._staging.write_text(LANGUAGE_INI, format_language_ini(self.strings))
        self._complete_stage()

    def _deploy(self):
        self._enter(JobState.DEPLOYING)
        writer = DeploymentWriter(self._staging, self.log)
        writer.publish(self.targets)
        if any(t.name == VOOBLY for t in self.targets):
            self.listener.request_confirm_dialog_titled(
                "Voobly",
                f'Select the "{self.settings.mod_name}" data mod in the Voobly '
                "game settings to play the converted content.",
            )
        self._complete_stage()

    def _install_patch(self):
        if not self.settings.installs_user_patch:
            return
        self._enter(JobState.INSTALLING_PATCH)
        request = plan_install(self.settings)
        self.install_request = request
        self.log(f"Requesting UserPatch installation: {request.executable}")
        self.listener.request_install_external_patch(str(request.executable), list(request.flags))


def convert(
    settings: ConversionSettings,
    listener: Optional[ConversionListener] = None,
    *,
    max_workers: int = DEFAULT_WORKERS,
) -> JobState:
    """Run one conversion job to completion and release it."""
    with ConversionJob(settings, listener, max_workers=max_workers) as job:
        return job.run()
