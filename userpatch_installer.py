"""
Hand-off to the external UserPatch installer.

The converter never runs the installer itself.  Once a standalone install has
been published it builds an ``InstallRequest`` (executable + ordered command
line flags) and passes it to the listener; the host decides how to launch it.

The ``-f:`` flag is a string of 0/1 characters, one per UserPatch feature in
the order the installer expects.  Some features are "disable X" switches in
the installer, so they are written inverted.
"""

from __future__ import annotations

import logging
import sys
from dataclasses import dataclass, fields, replace
from pathlib import Path

from conversion_errors import ExternalProcessHandoffError
from conversion_settings import ConversionSettings

SETUP_EXE_NAME = "SetupAoC.exe"

_log = logging.getLogger(__name__)


@dataclass(frozen=True)
class UserPatchOptions:
    widescreen_command_bar: bool = True
    windowed_mode: bool = sys.platform == "win32"
    upnp: bool = False
    alternate_red: bool = False
    alternate_purple: bool = False
    alternate_gray: bool = False
    extend_population_caps: bool = True
    replace_snow_with_grass: bool = False
    water_animation: bool = True
    precision_scrolling: bool = True
    shift_group_append: bool = True
    keydown_hotkeys: bool = True
    savegame_format: bool = True
    multiple_queue: bool = False
    original_patrol_delay: bool = False
    water_movement: bool = True
    weather_system: bool = True
    custom_terrains: bool = True
    terrain_underwater: bool = True
    numeric_age_display: bool = False
    touch_screen_control: bool = True
    store_spec_addresses: bool = True
    normal_mouse: bool = False
    delink_volume: bool = False
    # The stock chat box flickers under wine.
    wine_chatbox: bool = sys.platform != "win32"
    low_quality_environment: bool = False
    low_fps: bool = False
    extended_hotkeys: bool = True
    force_gameplay_features: bool = False
    display_ore_resource: bool = False
    multiplayer_anti_cheat: bool = True
    default_background_mode: bool = False
    sp_at_multiplayer_speed: bool = False
    debug_logging: bool = False
    statistics_font_style: bool = False
    background_audio_playback: bool = False
    civilian_attack_switch: bool = False
    handle_small_farm_selections: bool = False
    spec_research_events: bool = False

    @classmethod
    def bare(cls) -> UserPatchOptions:
        return cls(**{f.name: False for f in fields(cls)})

    def feature_bits(self) -> str:
        bits = []
        for f in fields(self):
            enabled = getattr(self, f.name)
            if f.name in INVERTED_FEATURES:
                enabled = not enabled
            bits.append("1" if enabled else "0")
        return "".join(bits)


# Features the installer exposes as "Disable ..." switches.
INVERTED_FEATURES = frozenset({
    "water_movement",
    "weather_system",
    "custom_terrains",
    "terrain_underwater",
    "extended_hotkeys",
    "multiplayer_anti_cheat",
    "civilian_attack_switch",
})


@dataclass(frozen=True)
class InstallRequest:
    executable: Path
    flags: tuple[str, ...]


def options_for(settings: ConversionSettings, base: UserPatchOptions | None = None) -> UserPatchOptions:
    base = base or UserPatchOptions()
    return replace(base, replace_snow_with_grass=settings.use_no_snow)


def build_install_flags(
    settings: ConversionSettings,
    options: UserPatchOptions | None = None,
) -> list[str]:
    options = options_for(settings, options)
    return [
        "-i",
        f"-f:{options.feature_bits()}",
        f"-d:{int(settings.dlc_level)}",
        f"-p:{settings.patch_version.value}",
        f"-h:{int(settings.hotkeys)}",
        f"-g:{settings.mod_name}",
    ]


def plan_install(
    settings: ConversionSettings,
    options: UserPatchOptions | None = None,
) -> InstallRequest | None:
    """Return the installer launch request, or ``None`` if none is wanted.

    Raises ``ExternalProcessHandoffError`` when an install is implied but the
    installer executable cannot be found.
    """
    if not settings.installs_user_patch:
        return None
    executable = settings.up_dir / SETUP_EXE_NAME
    if not executable.is_file():
        raise ExternalProcessHandoffError(
            f"UserPatch installer not found at {executable}; the mod was installed "
            "but UserPatch was not set up"
        )
    flags = tuple(build_install_flags(settings, options))
    _log.debug("UserPatch request: %s %s", executable, " ".join(flags))
    return InstallRequest(executable=executable, flags=flags)
