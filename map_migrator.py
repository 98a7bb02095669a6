"""
Copies random map scripts from the HD installation into converted mods.

Built-in maps come from ``resources/_common/random-map-scripts``; custom maps
are collected from ``mods/``, either as loose ``.rms`` files or from map packs
downloaded as .zip/.7z/.rar archives.

Maps are placed with collision handling:

* same name, same content (SHA-256)      -> skipped
* same name, different content           -> saved as "<stem> (2).rms", "(3)", ...

An existing file is never overwritten.
"""

from __future__ import annotations

import hashlib
import logging
import shutil
import tempfile
import zipfile
from dataclasses import dataclass, field
from pathlib import Path
from typing import Callable, Optional

import py7zr
import rarfile

from conversion_settings import ConversionSettings

BUILTIN_MAPS_RELPATH = Path("resources") / "_common" / "random-map-scripts"
CUSTOM_MAPS_RELPATH = Path("mods")
MAP_DIR_NAME = "Script.RM"
MAP_EXTENSIONS = {".rms"}
PACK_EXTENSIONS = {".zip", ".7z", ".rar"}

_log = logging.getLogger(__name__)


@dataclass
class MapFile:
    name: str
    source: str
    data: bytes


@dataclass
class MigrationReport:
    copied: list[str] = field(default_factory=list)
    skipped: list[str] = field(default_factory=list)
    renamed: dict[str, str] = field(default_factory=dict)
    preserved: int = 0


def _digest(data: bytes) -> str:
    return hashlib.sha256(data).hexdigest()


def _is_map(name: str) -> bool:
    return Path(name).suffix.lower() in MAP_EXTENSIONS


# ── Map pack reading ──────────────────────────────────────────────────


def _list_pack_names(filepath: Path) -> list[str]:
    ext = filepath.suffix.lower()
    names = []
    if ext == ".zip":
        with zipfile.ZipFile(filepath, "r") as zf:
            names = zf.namelist()
    elif ext == ".7z":
        with py7zr.SevenZipFile(filepath, "r") as sz:
            names = sz.getnames()
    elif ext == ".rar":
        with rarfile.RarFile(filepath, "r") as rf:
            names = [info.filename for info in rf.infolist()]
    else:
        raise ValueError(f"Unsupported archive format: {ext}")
    return [n.replace("\\", "/") for n in names]


def _extract_from_pack(filepath: Path, members: list[str], dest: Path):
    ext = filepath.suffix.lower()
    if ext == ".zip":
        with zipfile.ZipFile(filepath, "r") as zf:
            for m in members:
                zf.extract(m, dest)
    elif ext == ".7z":
        with py7zr.SevenZipFile(filepath, "r") as sz:
            sz.extract(dest, targets=members)
    elif ext == ".rar":
        with rarfile.RarFile(filepath, "r") as rf:
            for m in members:
                rf.extract(m, dest)


def read_pack_maps(filepath: Path) -> list[MapFile]:
    """Return every map script inside a map pack, ordered by member name."""
    members = sorted(n for n in _list_pack_names(filepath) if not n.endswith("/") and _is_map(n))
    if not members:
        return []
    maps: list[MapFile] = []
    with tempfile.TemporaryDirectory() as tmpdir:
        tmppath = Path(tmpdir)
        _extract_from_pack(filepath, members, tmppath)
        for member in members:
            extracted = tmppath / member
            if not extracted.exists():
                _log.warning("Expected %s in %s but it was not extracted", member, filepath.name)
                continue
            maps.append(
                MapFile(
                    name=Path(member).name,
                    source=f"{filepath.name}:{member}",
                    data=extracted.read_bytes(),
                )
            )
    return maps


# ── Placement ─────────────────────────────────────────────────────────


def place_map(map_dir: Path, name: str, data: bytes) -> tuple[str, str]:
    """Write ``data`` as ``name`` into ``map_dir`` without overwriting anything.

    Returns ``(outcome, final_name)`` with outcome "copied", "skipped" or "renamed".
    """
    map_dir.mkdir(parents=True, exist_ok=True)
    digest = _digest(data)
    stem, suffix = Path(name).stem, Path(name).suffix
    candidate = name
    n = 1
    while True:
        target = map_dir / candidate
        if not target.exists():
            target.write_bytes(data)
            return ("copied" if n == 1 else "renamed"), candidate
        if _digest(target.read_bytes()) == digest:
            return "skipped", candidate
        n += 1
        candidate = f"{stem} ({n}){suffix}"


def seed_existing_maps(live_map_dir: Path, staged_map_dir: Path) -> int:
    """Carry maps already installed at a destination into its staged tree."""
    if not live_map_dir.is_dir():
        return 0
    shutil.copytree(live_map_dir, staged_map_dir, symlinks=True, dirs_exist_ok=True)
    return sum(1 for path in live_map_dir.rglob("*") if not path.is_dir())


# ── Migrator ──────────────────────────────────────────────────────────


class MapMigrator:
    """Collects source maps once and places them into each destination tree."""

    def __init__(
        self,
        settings: ConversionSettings,
        log_callback: Optional[Callable[[str], None]] = None,
    ):
        self.settings = settings
        self._log_cb = log_callback or (lambda _: None)
        self._maps: list[MapFile] | None = None

    def log(self, msg: str):
        self._log_cb(msg)

    def warn(self, msg: str):
        _log.warning("%s", msg)
        self.log(f"WARNING: {msg}")

    @property
    def enabled(self) -> bool:
        return self.settings.copy_maps or self.settings.copy_custom_maps

    def collect_builtin_maps(self) -> list[MapFile]:
        source = self.settings.hd_dir / BUILTIN_MAPS_RELPATH
        if not source.is_dir():
            self.warn(f"Built-in map directory not found, skipping maps: {source}")
            return []
        maps = [
            MapFile(name=p.name, source=str(p), data=p.read_bytes())
            for p in sorted(source.iterdir())
            if p.is_file() and _is_map(p.name)
        ]
        self.log(f"  Found {len(maps)} built-in map(s)")
        return maps

    def collect_custom_maps(self) -> list[MapFile]:
        source = self.settings.hd_dir / CUSTOM_MAPS_RELPATH
        if not source.is_dir():
            self.warn(f"Custom map directory not found, skipping custom maps: {source}")
            return []
        maps: list[MapFile] = []
        for path in sorted(p for p in source.rglob("*") if p.is_file()):
            suffix = path.suffix.lower()
            if suffix in MAP_EXTENSIONS:
                maps.append(MapFile(name=path.name, source=str(path), data=path.read_bytes()))
            elif suffix in PACK_EXTENSIONS:
                try:
                    maps.extend(read_pack_maps(path))
                except Exception as exc:
                    self.warn(f"Could not read map pack {path.name}: {exc}")
        self.log(f"  Found {len(maps)} custom map(s)")
        return maps

    def source_maps(self) -> list[MapFile]:
        if self._maps is None:
            maps: list[MapFile] = []
            if self.settings.copy_maps:
                maps.extend(self.collect_builtin_maps())
            if self.settings.copy_custom_maps:
                maps.extend(self.collect_custom_maps())
            self._maps = maps
        return self._maps

    def migrate(self, staged_map_dir: Path, live_map_dir: Path | None = None) -> MigrationReport:
        report = MigrationReport()
        if live_map_dir is not None:
            report.preserved = seed_existing_maps(live_map_dir, staged_map_dir)

        for map_file in self.source_maps():
            outcome, final_name = place_map(staged_map_dir, map_file.name, map_file.data)
            if outcome == "copied":
                report.copied.append(final_name)
            elif outcome == "skipped":
                report.skipped.append(final_name)
            else:
                report.renamed[map_file.source] = final_name
                self.log(f"  {map_file.name} already exists with other content, saved as {final_name}")
        return report
