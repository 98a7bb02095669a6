"""
Settings schema for one WololoKingdoms conversion run.

Front ends build a ``ConversionSettings`` once, up front, and hand the same
immutable value to the converter.  Construction validates everything that can
be checked before touching any archive: which destinations are selected,
whether the directories those destinations need exist with the right
permissions, and whether civilization overrides use known civilizations.

Settings can also be stored as JSON, which ``load_settings`` reads:

{
    "hd_dir": "C:/Steam/steamapps/common/Age2HD",
    "output_dir": "C:/Games/Age of Empires II",
    "use_exe": true,
    "use_no_snow": true,
    "copy_maps": true,
    "dlc_level": 3,
    "civ_overrides": {
        "BRITONS": {
            "display_name": "Britons",
            "short_name": "Britons",
            "description": "Foot archer civilization",
            "bonus_slot": "FRANKS"
        }
    }
}
"""

from __future__ import annotations

import json
import logging
import os
import re
from enum import Enum, IntEnum
from pathlib import Path

from pydantic import BaseModel, ConfigDict, Field, ValidationError, field_validator, model_validator

from conversion_errors import ConfigurationError

DEFAULT_MOD_NAME = "WololoKingdoms"
DEFAULT_RESOURCE_DIR = Path(__file__).parent / "resources"

_INVALID_MOD_NAME_RE = re.compile(r'[<>:"/\\|?*]')
_LANGUAGE_RE = re.compile(r"^[A-Za-z]{2,3}(?:[-_][A-Za-z]{2,4})?$")

_log = logging.getLogger(__name__)


class Civ(IntEnum):
    """Civilization ids as laid out in the HD game data."""

    BRITONS = 1
    FRANKS = 2
    GOTHS = 3
    TEUTONS = 4
    JAPANESE = 5
    CHINESE = 6
    BYZANTINES = 7
    PERSIANS = 8
    SARACENS = 9
    TURKS = 10
    VIKINGS = 11
    MONGOLS = 12
    CELTS = 13
    SPANISH = 14
    AZTECS = 15
    MAYANS = 16
    HUNS = 17
    KOREANS = 18
    ITALIANS = 19
    INDIANS = 20
    INCAS = 21
    MAGYARS = 22
    SLAVS = 23
    PORTUGUESE = 24
    ETHIOPIANS = 25
    MALIANS = 26
    BERBERS = 27
    KHMER = 28
    MALAY = 29
    BURMESE = 30
    VIETNAMESE = 31


class DlcLevel(IntEnum):
    FORGOTTEN = 1
    AFRICAN_KINGDOMS = 2
    RISE_OF_THE_RAJAS = 3


# Highest civ id shipped with each expansion.
DLC_CIV_LIMITS = {
    DlcLevel.FORGOTTEN: Civ.SLAVS,
    DlcLevel.AFRICAN_KINGDOMS: Civ.BERBERS,
    DlcLevel.RISE_OF_THE_RAJAS: Civ.VIETNAMESE,
}


class PatchVersion(str, Enum):
    HD_5_7 = "5.7"
    HD_5_8 = "5.8"


class HotkeyProfile(IntEnum):
    KEEP_EXISTING = 0
    AOC = 1
    HD_FOR_MOD = 2
    HD_GLOBAL = 3


def _coerce_civ(value):
    if isinstance(value, str):
        name = value.strip()
        if name.isdigit():
            return int(name)
        try:
            return Civ[name.upper()]
        except KeyError:
            raise ValueError(f"Unknown civilization {value!r}")
    return value


class CivOverride(BaseModel):
    """Replacement text and bonus for one civilization.

    ``bonus_slot`` names the civilization whose bonus tech this civilization
    receives; ``None`` keeps the original bonus.
    """

    model_config = ConfigDict(frozen=True, extra="forbid")

    display_name: str
    short_name: str
    description: str = ""
    bonus_slot: Civ | None = None
    custom_text: str = ""

    @field_validator("bonus_slot", mode="before")
    @classmethod
    def _coerce_slot(cls, v):
        return None if v is None else _coerce_civ(v)

    @field_validator("display_name", "short_name")
    @classmethod
    def _not_blank(cls, v: str) -> str:
        if not v.strip():
            raise ValueError("must not be blank")
        return v


def _check_dir(path: Path, label: str, *, writable: bool = False) -> str | None:
    if not path.exists():
        return f"{label} does not exist: {path}"
    if not path.is_dir():
        return f"{label} is not a directory: {path}"
    mode = os.R_OK | os.X_OK
    if writable:
        mode |= os.W_OK
    if not os.access(path, mode):
        need = "writable" if writable else "readable"
        return f"{label} is not {need}: {path}"
    return None


class ConversionSettings(BaseModel):
    """Validated, immutable configuration for one conversion job."""

    model_config = ConfigDict(frozen=True, extra="forbid")

    # Destinations
    use_voobly: bool = False
    use_exe: bool = False
    use_both: bool = False

    # Data patches
    use_regional_monks: bool = False
    use_small_trees: bool = False
    use_short_walls: bool = False
    use_no_snow: bool = False
    use_grid: bool = False
    fix_flags: bool = False
    replace_tooltips: bool = False
    restricted_civ_mods: bool = False

    # Maps
    copy_maps: bool = False
    copy_custom_maps: bool = False

    language: str = "en"
    dlc_level: DlcLevel = DlcLevel.RISE_OF_THE_RAJAS
    patch_version: PatchVersion = PatchVersion.HD_5_8
    hotkeys: HotkeyProfile = HotkeyProfile.KEEP_EXISTING
    mod_name: str = DEFAULT_MOD_NAME

    hd_dir: Path
    output_dir: Path | None = None
    voobly_dir: Path | None = None
    up_dir: Path | None = None
    resource_dir: Path = DEFAULT_RESOURCE_DIR

    civ_overrides: dict[Civ, CivOverride] = Field(default_factory=dict)

    @field_validator("civ_overrides", mode="before")
    @classmethod
    def _coerce_override_keys(cls, v):
        if isinstance(v, dict):
            return {_coerce_civ(key): value for key, value in v.items()}
        return v

    @field_validator("mod_name")
    @classmethod
    def _check_mod_name(cls, v: str) -> str:
        cleaned = v.strip()
        if not cleaned or cleaned.strip(".") == "":
            raise ValueError("mod name must not be empty")
        if _INVALID_MOD_NAME_RE.search(cleaned):
            raise ValueError(f"mod name {v!r} contains characters not allowed in a folder name")
        return cleaned

    @field_validator("language")
    @classmethod
    def _check_language(cls, v: str) -> str:
        if not _LANGUAGE_RE.match(v):
            raise ValueError(f"invalid language code {v!r}")
        return v

    @model_validator(mode="after")
    def _check_destinations(self) -> ConversionSettings:
        if not (self.use_voobly or self.use_exe or self.use_both):
            raise ValueError(
                "No destination selected: enable use_voobly, use_exe or use_both"
            )
        problems = self._path_problems()
        if problems:
            raise ValueError("; ".join(problems))
        return self

    # ── Derived selection ─────────────────────────────────────────────

    @property
    def targets_voobly(self) -> bool:
        return self.use_voobly or self.use_both

    @property
    def targets_standalone(self) -> bool:
        return self.use_exe or self.use_both

    @property
    def installs_user_patch(self) -> bool:
        return self.targets_standalone and self.up_dir is not None

    # ── Filesystem checks ─────────────────────────────────────────────

    def _path_problems(self) -> list[str]:
        problems: list[str] = []
        issue = _check_dir(self.hd_dir, "HD installation directory")
        if issue:
            problems.append(issue)

        if self.targets_standalone:
            if self.output_dir is None:
                problems.append("output_dir is required for a standalone install")
            else:
                issue = _check_dir(self.output_dir, "Output directory", writable=True)
                if issue:
                    problems.append(issue)

        if self.targets_voobly:
            if self.voobly_dir is None:
                problems.append("voobly_dir is required for a Voobly install")
            else:
                issue = _check_dir(self.voobly_dir, "Voobly directory", writable=True)
                if issue:
                    problems.append(issue)

        if self.up_dir is not None:
            issue = _check_dir(self.up_dir, "UserPatch directory")
            if issue:
                problems.append(issue)

        if self.replace_tooltips:
            issue = _check_dir(self.resource_dir, "Resource directory")
            if issue:
                problems.append(issue)
        return problems

    def verify_paths(self):
        """Re-check the directories; they may have changed since construction."""
        problems = self._path_problems()
        if problems:
            raise ConfigurationError("; ".join(problems))

    # ── Construction ──────────────────────────────────────────────────

    @classmethod
    def create(cls, **fields) -> ConversionSettings:
        """Build validated settings from individual fields.

        Raises ``ConfigurationError`` describing every rejected field.
        """
        try:
            return cls.model_validate(fields)
        except ValidationError as exc:
            raise ConfigurationError(_format_validation_error(exc)) from exc


def _format_validation_error(exc: ValidationError) -> str:
    lines = []
    for err in exc.errors():
        loc = ".".join(str(part) for part in err["loc"])
        msg = err["msg"]
        if msg.startswith("Value error, "):
            msg = msg[len("Value error, "):]
        lines.append(f"{loc}: {msg}" if loc else msg)
    return "Invalid settings: " + "; ".join(lines)


def load_settings(path: str | Path, **overrides) -> ConversionSettings:
    """Read a JSON settings file; keyword overrides win over file values.

    Raises ``ConfigurationError`` if the file is unreadable, not JSON, or
    fails validation.
    """
    path = Path(path)
    try:
        data = json.loads(path.read_text(encoding="utf-8"))
    except (OSError, json.JSONDecodeError) as exc:
        raise ConfigurationError(f"Could not read settings file {path}: {exc}") from exc
    if not isinstance(data, dict):
        raise ConfigurationError(f"Settings file {path} must contain a JSON object")
    data.update({k: v for k, v in overrides.items() if v is not None})
    _log.debug("Loaded settings from %s (%d field(s))", path, len(data))
    return ConversionSettings.create(**data)
