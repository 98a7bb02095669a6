"""
Staging and publishing of converted output.

Everything a job produces is written into a private staging directory first:

    <staging>/common/             shared by every destination (Data/, language.ini)
    <staging>/targets/<name>/     destination-specific files (Script.RM/)

Publishing assembles the complete new tree for every destination next to it
(same filesystem), and only once all of them are assembled swaps each one into
place with renames.  Files already in a destination that the conversion does
not produce (saved games, scenarios, the user's own data) are copied into the
new tree first.  A failure before the swap removes the assembled trees, and
any parent directories created for them, and leaves every destination as it
was.
"""

from __future__ import annotations

import logging
import shutil
import tempfile
import uuid
from dataclasses import dataclass
from pathlib import Path
from typing import Callable, Optional

from conversion_errors import ConversionIOError
from conversion_settings import ConversionSettings
from map_migrator import MAP_DIR_NAME

STANDALONE = "standalone"
VOOBLY = "voobly"

STANDALONE_MODS_RELPATH = Path("Games")
VOOBLY_MODS_RELPATH = Path("Voobly Mods") / "AOC" / "Data Mods"

_log = logging.getLogger(__name__)


@dataclass(frozen=True)
class DeploymentTarget:
    name: str
    root: Path

    @property
    def map_dir(self) -> Path:
        return self.root / MAP_DIR_NAME


def resolve_targets(settings: ConversionSettings) -> list[DeploymentTarget]:
    targets = []
    if settings.targets_standalone:
        targets.append(
            DeploymentTarget(STANDALONE, settings.output_dir / STANDALONE_MODS_RELPATH / settings.mod_name)
        )
    if settings.targets_voobly:
        targets.append(
            DeploymentTarget(VOOBLY, settings.voobly_dir / VOOBLY_MODS_RELPATH / settings.mod_name)
        )
    return targets


def _remove_tree(path: Path):
    try:
        shutil.rmtree(path)
    except FileNotFoundError:
        pass
    except OSError as exc:
        _log.warning("Could not remove %s: %s", path, exc)


def _first_missing(path: Path) -> Optional[Path]:
    """Topmost ancestor of ``path`` (or ``path`` itself) that does not exist yet."""
    missing = None
    while not path.exists() and path.parent != path:
        missing = path
        path = path.parent
    return missing


def _remove_created_dirs(path: Path, top: Optional[Path]):
    """Remove empty directories from ``path`` upwards, stopping after ``top``."""
    if top is None:
        return
    while True:
        try:
            path.rmdir()
        except FileNotFoundError:
            pass
        except OSError:
            return
        if path == top or path.parent == path:
            return
        path = path.parent


def _carry_over(live: Path, new_tree: Path) -> int:
    """Copy everything under ``live`` that ``new_tree`` does not already have."""
    count = 0
    for path in sorted(live.iterdir()):
        dst = new_tree / path.name
        if path.is_dir() and not path.is_symlink():
            if dst.is_dir():
                count += _carry_over(path, dst)
            elif not dst.exists():
                shutil.copytree(path, dst, symlinks=True)
                count += sum(1 for p in dst.rglob("*") if not p.is_dir())
        elif not dst.exists() and not dst.is_symlink():
            shutil.copy2(path, dst, follow_symlinks=False)
            count += 1
    return count


class StagingArea:
    """Temporary directory owned by one job."""

    def __init__(self, prefix: str = "wk-staging-"):
        try:
            self.path = Path(tempfile.mkdtemp(prefix=prefix))
        except OSError as exc:
            raise ConversionIOError(f"Could not create staging directory: {exc}") from exc
        self.common_dir = self.path / "common"
        self.common_dir.mkdir()
        _log.debug("Created staging directory %s", self.path)

    def target_dir(self, target: DeploymentTarget) -> Path:
        return self.path / "targets" / target.name

    def common_path(self, relpath: str | Path) -> Path:
        return self.common_dir / relpath

    def write_bytes(self, relpath: str | Path, data: bytes) -> Path:
        dst = self.common_path(relpath)
        try:
            dst.parent.mkdir(parents=True, exist_ok=True)
            dst.write_bytes(data)
        except OSError as exc:
            raise ConversionIOError(f"Could not stage {relpath}: {exc}") from exc
        return dst

    def write_text(self, relpath: str | Path, text: str) -> Path:
        return self.write_bytes(relpath, text.encode("utf-8"))

    @property
    def exists(self) -> bool:
        return self.path.exists()

    def cleanup(self):
        if self.path.exists():
            _remove_tree(self.path)
            _log.debug("Removed staging directory %s", self.path)


class DeploymentWriter:
    def __init__(
        self,
        staging: StagingArea,
        log_callback: Optional[Callable[[str], None]] = None,
    ):
        self.staging = staging
        self._log_cb = log_callback or (lambda _: None)

    def log(self, msg: str):
        self._log_cb(msg)

    def _assemble(self, target: DeploymentTarget) -> Path:
        root = target.root
        root.parent.mkdir(parents=True, exist_ok=True)
        new_tree = Path(tempfile.mkdtemp(prefix=f".{root.name}.new-", dir=root.parent))
        try:
            new_tree.chmod(0o755)
            shutil.copytree(self.staging.common_dir, new_tree, dirs_exist_ok=True)
            target_dir = self.staging.target_dir(target)
            if target_dir.is_dir():
                shutil.copytree(target_dir, new_tree, dirs_exist_ok=True)
            if root.is_dir():
                kept = _carry_over(root, new_tree)
                if kept:
                    self.log(f"  Keeping {kept} existing file(s) in {root}")
        except BaseException:
            _remove_tree(new_tree)
            raise
        return new_tree

    def _swap(self, target: DeploymentTarget, new_tree: Path):
        root = target.root
        backup = None
        if root.exists():
            backup = root.parent / f".{root.name}.old-{uuid.uuid4().hex[:8]}"
            root.rename(backup)
        try:
            new_tree.rename(root)
        except OSError:
            if backup is not None:
                backup.rename(root)
            raise
        if backup is not None:
            _remove_tree(backup)

    def publish(self, targets: list[DeploymentTarget]) -> list[Path]:
        """Atomically replace every target directory with the staged output.

        Existing files the staged output does not contain are kept.
        """
        prepared: list[tuple[DeploymentTarget, Path]] = []
        created: dict[str, Optional[Path]] = {}
        try:
            for target in targets:
                self.log(f"  Preparing {target.name} install in {target.root}")
                created[target.name] = _first_missing(target.root.parent)
                prepared.append((target, self._assemble(target)))
        except OSError as exc:
            for _, new_tree in prepared:
                _remove_tree(new_tree)
            for target in targets:
                if target.name in created:
                    _remove_created_dirs(target.root.parent, created[target.name])
            raise ConversionIOError(f"Could not prepare installation: {exc}") from exc

        published: list[Path] = []
        for i, (target, new_tree) in enumerate(prepared):
            try:
                self._swap(target, new_tree)
            except OSError as exc:
                for leftover_target, leftover in prepared[i:]:
                    _remove_tree(leftover)
                    if not leftover_target.root.exists():
                        _remove_created_dirs(
                            leftover_target.root.parent, created[leftover_target.name]
                        )
                raise ConversionIOError(f"Could not publish to {target.root}: {exc}") from exc
            self.log(f"  Published {target.name} install: {target.root}")
            published.append(target.root)
        return published
