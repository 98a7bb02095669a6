"""
Shared fixtures and helpers for the WololoKingdoms converter test suite.

Archives and data files are built here with ``struct``/``zlib`` directly so
the codecs under test are never used to produce their own input.
"""

import struct
import zipfile
import zlib
from pathlib import Path

import pytest

from conversion_listener import ConversionListener
from conversion_settings import ConversionSettings

COPYRIGHT = b"Copyright (c) 1997 Ensemble Studios.\x1a\x00\x00\x00"

GRASS_SLP = b"grass terrain slp"
BEACH_SLP = b"beach terrain slp"
SNOW_SLP = b"snow terrain slp"
ICE_SLP = b"ice terrain slp"

TERRAIN_TABLES = [
    ("slp", [(15000, GRASS_SLP), (15014, BEACH_SLP), (15024, SNOW_SLP), (15026, ICE_SLP)]),
]
GRAPHICS_TABLES = [
    ("slp", [(1, b"slp one"), (2, b"slp two payload")]),
    ("wav", [(5, b"RIFF wave")]),
]

DEFAULT_CIVS = [
    (0, 0, -1, 125, "Gaia"),
    (1, 0, 101, 125, "Britons"),
    (2, 0, 102, 125, "Franks"),
    (5, 1, 105, 125, "Japanese"),
    (15, 3, 115, 125, "Aztecs"),
    (23, 6, 123, 125, "Slavs"),
    (25, 7, 125, 125, "Ethiopians"),
    (27, 2, 127, 125, "Berbers"),
    (30, 8, 130, 125, "Burmese"),
]
DEFAULT_TERRAINS = [
    (0, 15000, -1, "Grass 1"),
    (1, 15002, -1, "Water"),
    (2, 15014, -1, "Beach"),
    (3, 15007, -1, "Dirt 3"),
    (6, 15001, -1, "Dirt 1"),
    (32, 15024, -1, "Snow"),
    (35, 15026, -1, "Ice"),
]
DEFAULT_UNITS = [
    (83, 4, 0x401, 1388, 1389, "Villager"),
    (349, 15, 0x0, 435, 436, "Oak Tree"),
    (72, 27, 0x0, 2110, 2115, "Palisade Wall"),
    (125, 18, 0x2, 132, -1, "Monk"),
]

DEFAULT_STRINGS = (
    "// HD key-value strings\n"
    '1 "Hello"\n'
    '10271 "Britons"\n'
    '26093 "Create Villager"\n'
)

ARABIA_RMS = b"/* Arabia */\n<PLAYER_SETUP>\nrandom_placement\n"
ARENA_RMS = b"/* Arena */\n<PLAYER_SETUP>\nrandom_placement\n"
MEGARANDOM_RMS = b"/* Megarandom */\nstart_random\n"
ISLANDS_RMS = b"/* Islands */\nbase_terrain WATER\n"


def make_drs(tables, *, version=b"1.00", copyright=COPYRIGHT, archive_type=b"tribe"):
    """Build DRS bytes with tables, entries and payloads laid out contiguously."""
    entry_count = sum(len(entries) for _, entries in tables)
    header_size = 64 + 12 * len(tables) + 12 * entry_count
    out = bytearray(
        struct.pack(
            "<40s4s12sii",
            copyright,
            version,
            archive_type.ljust(12, b"\x00"),
            len(tables),
            header_size,
        )
    )
    entries_offset = 64 + 12 * len(tables)
    for ext, entries in tables:
        out += struct.pack("<4sii", ext.ljust(4).encode("ascii")[::-1], entries_offset, len(entries))
        entries_offset += 12 * len(entries)
    data_offset = header_size
    for _, entries in tables:
        for resource_id, payload in entries:
            out += struct.pack("<iii", resource_id, data_offset, len(payload))
            data_offset += len(payload)
    for _, entries in tables:
        for _, payload in entries:
            out += payload
    return bytes(out)


def _pack_str(text):
    raw = text.encode("utf-8")
    return struct.pack("<H", len(raw)) + raw


def make_dat_body(version="VER 5.8", civs=None, terrains=None, units=None):
    civs = DEFAULT_CIVS if civs is None else civs
    terrains = DEFAULT_TERRAINS if terrains is None else terrains
    units = DEFAULT_UNITS if units is None else units
    body = bytearray(version.encode("ascii").ljust(8, b"\x00"))
    body += struct.pack("<H", len(civs))
    for civ_id, graphic_set, bonus, monk, name in civs:
        body += struct.pack("<BBhh", civ_id, graphic_set, bonus, monk) + _pack_str(name)
    body += struct.pack("<H", len(terrains))
    for terrain_id, slp, overlay, name in terrains:
        body += struct.pack("<Bii", terrain_id, slp, overlay) + _pack_str(name)
    body += struct.pack("<H", len(units))
    for unit_id, unit_class, flags, standing, snow, name in units:
        body += struct.pack("<hBIii", unit_id, unit_class, flags, standing, snow) + _pack_str(name)
    return bytes(body)


def deflate(body):
    compressor = zlib.compressobj(9, zlib.DEFLATED, -15)
    return compressor.compress(body) + compressor.flush()


def make_dat(**kwargs):
    return deflate(make_dat_body(**kwargs))


def make_zip(path, members):
    with zipfile.ZipFile(path, "w") as zf:
        for member, data in members.items():
            zf.writestr(member, data)
    return path


def read_tree(root: Path) -> dict:
    """Map every file under root (relative posix path) to its bytes."""
    return {
        p.relative_to(root).as_posix(): p.read_bytes()
        for p in sorted(root.rglob("*"))
        if p.is_file()
    }


class RecordingListener(ConversionListener):
    """Keeps every event as a tuple, in the order it arrived."""

    def __init__(self):
        self.events = []

    def kinds(self):
        return [e[0] for e in self.events]

    @property
    def progress(self):
        return [e[1] for e in self.events if e[0] == "progress"]

    @property
    def logs(self):
        return [e[1] for e in self.events if e[0] == "log"]

    def of(self, kind):
        return [e for e in self.events if e[0] == kind]

    def log(self, text):
        self.events.append(("log", text))

    def set_status(self, text):
        self.events.append(("status", text))

    def report_progress(self, percent):
        self.events.append(("progress", percent))

    def report_error(self, text):
        self.events.append(("error", text))

    def request_confirm_dialog(self, text):
        self.events.append(("dialog", text))

    def request_confirm_dialog_titled(self, title, text):
        self.events.append(("dialog_titled", title, text))

    def request_confirm_dialog_with_replacement(self, title, text, replacement_text):
        self.events.append(("dialog_replace", title, text, replacement_text))

    def on_finished(self):
        self.events.append(("finished",))

    def request_install_external_patch(self, executable, flags):
        self.events.append(("install", executable, list(flags)))


@pytest.fixture
def hd_install(tmp_path):
    """A small but complete HD installation tree."""
    hd = tmp_path / "hd"
    data_dir = hd / "Data"
    data_dir.mkdir(parents=True)
    (data_dir / "graphics.drs").write_bytes(make_drs(GRAPHICS_TABLES))
    (data_dir / "terrain.drs").write_bytes(make_drs(TERRAIN_TABLES))
    (data_dir / "empires2_x1_p1.dat").write_bytes(make_dat())

    strings = hd / "resources" / "en" / "strings" / "key-value"
    strings.mkdir(parents=True)
    (strings / "key-value-strings-utf8.txt").write_text(DEFAULT_STRINGS, encoding="utf-8")

    maps = hd / "resources" / "_common" / "random-map-scripts"
    maps.mkdir(parents=True)
    (maps / "Arabia.rms").write_bytes(ARABIA_RMS)
    (maps / "Arena.rms").write_bytes(ARENA_RMS)

    mods = hd / "mods" / "12345"
    mods.mkdir(parents=True)
    (mods / "Megarandom.rms").write_bytes(MEGARANDOM_RMS)
    make_zip(
        hd / "mods" / "islands_pack.zip",
        {"maps/Islands.rms": ISLANDS_RMS, "readme.txt": "Map pack"},
    )
    return hd


@pytest.fixture
def dirs(tmp_path):
    """Return (output_dir, voobly_dir, up_dir) as fresh tmp_path subdirectories."""
    out = tmp_path / "aoc"
    voobly = tmp_path / "voobly"
    up = tmp_path / "userpatch"
    for d in (out, voobly, up):
        d.mkdir()
    (up / "SetupAoC.exe").write_bytes(b"MZ stub installer")
    return out, voobly, up


@pytest.fixture
def resource_dir(tmp_path):
    res = tmp_path / "res"
    tooltips = res / "tooltips"
    tooltips.mkdir(parents=True)
    (tooltips / "en.txt").write_text(
        '// replacement tooltips\n26093 "Create <b>Villager<b>"\n', encoding="utf-8"
    )
    return res


@pytest.fixture
def make_settings(hd_install, dirs):
    """Factory for standalone settings pointing at the fixture install."""
    out, _, _ = dirs

    def factory(**fields):
        fields.setdefault("hd_dir", hd_install)
        if not any(fields.get(k) for k in ("use_exe", "use_voobly", "use_both")):
            fields["use_exe"] = True
        fields.setdefault("output_dir", out)
        return ConversionSettings.create(**fields)

    return factory
