"""
Compatibility patches applied to the extracted game data.

Each optional patch is a ``DataPatch`` tied to one settings flag.  Patches are
independent: every one of them touches only its own fields of the tables (or
its own archive entries), so any subset can be enabled without changing what
the others produce.

DLC filtering and civilization overrides are not optional and always run
after the flagged patches.
"""

from __future__ import annotations

import logging
from dataclasses import dataclass, field
from pathlib import Path
from typing import Callable

from conversion_settings import DLC_CIV_LIMITS, Civ, ConversionSettings, CivOverride
from drs_archive import DEFAULT_WORKERS, DrsEntry, StagingArchive, entry_name, transform_entries
from game_data import NO_GRAPHIC, GameData, GraphicSet, read_strings

TERRAIN_ARCHIVE = "terrain.drs"

# Snow terrain id -> terrain whose graphics replace it.
SNOW_TERRAIN_REPLACEMENTS = {
    32: 0,   # Snow -> Grass
    33: 3,   # Grass, snow -> Dirt 3
    34: 6,   # Dirt, snow -> Dirt 1
    35: 2,   # Ice -> Beach
}
WATER_TERRAINS = frozenset({1, 4, 15, 22, 23, 28})
GRID_OVERLAY_SLP = 15021

TREE_CLASS = 15
SMALL_TREE_GRAPHICS = {
    435: 4655,
    1052: 4656,
    1053: 4657,
    1054: 4658,
    1144: 4659,
    1146: 4660,
    1148: 4661,
}

WALL_CLASS = 27
SHORT_WALL_GRAPHICS = {
    2110: 4721,
    2111: 4722,
    2112: 4723,
    2113: 4724,
    2114: 4725,
}

BASE_MONK_UNIT = 125
REGIONAL_MONK_UNITS = {
    GraphicSet.EAST_ASIAN: 1727,
    GraphicSet.MIDDLE_EASTERN: 1728,
    GraphicSet.MESOAMERICAN: 1729,
    GraphicSet.INDIAN: 1730,
    GraphicSet.AFRICAN: 1731,
    GraphicSet.SOUTHEAST_ASIAN: 1732,
}

# Unit flag bits the AoC engine understands; HD sets extra bits it chokes on.
AOC_UNIT_FLAG_MASK = 0x000003FF

CIV_NAME_STRING_BASE = 10270
CIV_HELP_STRING_BASE = 120150
CIV_CUSTOM_TEXT_STRING_BASE = 20150

TOOLTIP_DIR = "tooltips"
FALLBACK_LANGUAGE = "en"

_log = logging.getLogger(__name__)


@dataclass
class PatchContext:
    settings: ConversionSettings
    data: GameData
    strings: dict[int, str]
    archives: dict[str, StagingArchive]
    log: Callable[[str], None] = lambda _: None
    max_workers: int = DEFAULT_WORKERS


@dataclass(frozen=True)
class DataPatch:
    name: str
    flag: str
    apply: Callable[[PatchContext], None]

    def enabled(self, settings: ConversionSettings) -> bool:
        return bool(getattr(settings, self.flag))


@dataclass
class PatchReport:
    applied: list[str] = field(default_factory=list)
    civ_overrides: dict[Civ, CivOverride] = field(default_factory=dict)
    neutralized_civs: list[Civ] = field(default_factory=list)
    dropped_civs: list[int] = field(default_factory=list)


# ── Individual patches ────────────────────────────────────────────────


def remove_snow(ctx: PatchContext):
    """Swap snow terrains for their snowless counterparts and drop snow skins."""
    slp_swaps: dict[int, int] = {}
    for terrain in ctx.data.terrains:
        replacement_id = SNOW_TERRAIN_REPLACEMENTS.get(terrain.id)
        if replacement_id is None:
            continue
        replacement = ctx.data.terrain(replacement_id)
        if replacement is None:
            ctx.log(f"  No replacement terrain {replacement_id} for {terrain.name}, left as is")
            continue
        if terrain.slp_id != replacement.slp_id:
            slp_swaps[terrain.slp_id] = replacement.slp_id
        terrain.slp_id = replacement.slp_id

    for unit in ctx.data.units:
        unit.snow_graphic = NO_GRAPHIC

    archive = ctx.archives.get(TERRAIN_ARCHIVE)
    if archive is None or not slp_swaps:
        return

    def swap(entry: DrsEntry) -> bytes | None:
        if entry.extension != "slp" or entry.resource_id not in slp_swaps:
            return None
        return archive.get(entry_name("slp", slp_swaps[entry.resource_id]))

    changed = transform_entries(archive, swap, ctx.max_workers)
    _log.debug("Replaced %d snow terrain graphic(s) in %s", len(changed), TERRAIN_ARCHIVE)


def shrink_trees(ctx: PatchContext):
    for unit in ctx.data.units:
        if unit.unit_class == TREE_CLASS:
            unit.standing_graphic = SMALL_TREE_GRAPHICS.get(
                unit.standing_graphic, unit.standing_graphic
            )


def shorten_walls(ctx: PatchContext):
    for unit in ctx.data.units:
        if unit.unit_class == WALL_CLASS:
            unit.standing_graphic = SHORT_WALL_GRAPHICS.get(
                unit.standing_graphic, unit.standing_graphic
            )


def use_regional_monks(ctx: PatchContext):
    for civ in ctx.data.civilizations:
        if civ.monk_unit == BASE_MONK_UNIT:
            civ.monk_unit = REGIONAL_MONK_UNITS.get(civ.graphic_set, BASE_MONK_UNIT)


def add_grid(ctx: PatchContext):
    for terrain in ctx.data.terrains:
        if terrain.id not in WATER_TERRAINS:
            terrain.overlay_slp = GRID_OVERLAY_SLP


def fix_unit_flags(ctx: PatchContext):
    fixed = 0
    for unit in ctx.data.units:
        masked = unit.flags & AOC_UNIT_FLAG_MASK
        if masked != unit.flags:
            unit.flags = masked
            fixed += 1
    if fixed:
        ctx.log(f"  Cleared unsupported flags on {fixed} unit(s)")


def tooltip_file(resource_dir: Path, language: str) -> Path:
    candidate = resource_dir / TOOLTIP_DIR / f"{language}.txt"
    if candidate.is_file():
        return candidate
    fallback = resource_dir / TOOLTIP_DIR / f"{FALLBACK_LANGUAGE}.txt"
    _log.warning("No tooltips for language %r, using %r", language, FALLBACK_LANGUAGE)
    return fallback


def replace_tooltips(ctx: PatchContext):
    path = tooltip_file(ctx.settings.resource_dir, ctx.settings.language)
    replacements = read_strings(path)
    ctx.strings.update(replacements)
    ctx.log(f"  Replaced {len(replacements)} tooltip string(s) from {path.name}")


def restrict_civ_overrides(
    overrides: dict[Civ, CivOverride],
) -> tuple[dict[Civ, CivOverride], list[Civ]]:
    """Strip the gameplay part (bonus swaps) from civ overrides; keep the text."""
    allowed: dict[Civ, CivOverride] = {}
    neutralized: list[Civ] = []
    for civ, override in overrides.items():
        if override.bonus_slot is not None and override.bonus_slot != civ:
            override = override.model_copy(update={"bonus_slot": None})
            neutralized.append(civ)
        allowed[civ] = override
    return allowed, sorted(neutralized)


PATCHES: tuple[DataPatch, ...] = (
    DataPatch("No snow", "use_no_snow", remove_snow),
    DataPatch("Small trees", "use_small_trees", shrink_trees),
    DataPatch("Short walls", "use_short_walls", shorten_walls),
    DataPatch("Regional monks", "use_regional_monks", use_regional_monks),
    DataPatch("Grid", "use_grid", add_grid),
    DataPatch("Fix flags", "fix_flags", fix_unit_flags),
    DataPatch("Replace tooltips", "replace_tooltips", replace_tooltips),
)


# ── Always-on steps ───────────────────────────────────────────────────


def filter_dlc_civs(data: GameData, settings: ConversionSettings) -> list[int]:
    limit = DLC_CIV_LIMITS[settings.dlc_level]
    dropped = [c.id for c in data.civilizations if c.id > limit]
    if dropped:
        data.civilizations = [c for c in data.civilizations if c.id <= limit]
    return dropped


def apply_civ_overrides(ctx: PatchContext, overrides: dict[Civ, CivOverride]):
    bonus_by_civ = {c.id: c.bonus_tech for c in ctx.data.civilizations}
    for civ_id in sorted(overrides):
        override = overrides[civ_id]
        civ = ctx.data.civ(civ_id)
        if civ is None:
            ctx.log(f"  Skipping override for {civ_id.name.title()}: not part of this conversion")
            continue
        civ.name = override.short_name
        ctx.strings[CIV_NAME_STRING_BASE + civ_id] = override.display_name
        if override.description:
            ctx.strings[CIV_HELP_STRING_BASE + civ_id] = override.description
        if override.custom_text:
            ctx.strings[CIV_CUSTOM_TEXT_STRING_BASE + civ_id] = override.custom_text
        if override.bonus_slot is not None:
            bonus = bonus_by_civ.get(override.bonus_slot)
            if bonus is None:
                ctx.log(
                    f"  Bonus of {override.bonus_slot.name.title()} unavailable, "
                    f"{civ_id.name.title()} keeps its own"
                )
            else:
                civ.bonus_tech = bonus


def apply_patches(ctx: PatchContext) -> PatchReport:
    """Run every enabled patch, then DLC filtering and civ overrides."""
    settings = ctx.settings
    report = PatchReport()

    for patch in PATCHES:
        if not patch.enabled(settings):
            continue
        ctx.log(f"Applying patch: {patch.name}")
        patch.apply(ctx)
        report.applied.append(patch.name)

    overrides = dict(settings.civ_overrides)
    if settings.restricted_civ_mods:
        overrides, report.neutralized_civs = restrict_civ_overrides(overrides)
        report.applied.append("Restricted civ mods")
    report.civ_overrides = overrides

    report.dropped_civs = filter_dlc_civs(ctx.data, settings)
    if report.dropped_civs:
        ctx.log(f"Excluded {len(report.dropped_civs)} civilization(s) above the selected DLC level")

    apply_civ_overrides(ctx, overrides)
    return report
