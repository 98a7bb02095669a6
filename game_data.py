"""
Codecs for the structured game-data tables.

``empires2_x1_p1.dat`` is a raw-deflate stream whose body holds an 8-byte
version tag followed by three tables, each prefixed by a u16 record count:

    civilizations   id:u8 graphic_set:u8 bonus_tech:i16 monk_unit:i16 name:str
    terrains        id:u8 slp_id:i32 overlay_slp:i32 name:str
    units           id:i16 unit_class:u8 flags:u32 standing_graphic:i32 snow_graphic:i32 name:str

``str`` is a u16 byte length followed by UTF-8.  UI strings live in the HD
key-value text files and are written back out as ``language.ini``.
"""

from __future__ import annotations

import logging
import re
import struct
import zlib
from dataclasses import dataclass, field
from enum import IntEnum
from pathlib import Path

from conversion_errors import ArchiveFormatError, ConversionIOError, SchemaVersionError

DATA_FILENAME = "empires2_x1_p1.dat"
LANGUAGE_INI = "language.ini"
STRINGS_RELPATH = Path("strings") / "key-value" / "key-value-strings-utf8.txt"

SUPPORTED_VERSIONS = ("VER 5.7", "VER 5.8")
VERSION_SIZE = 8
NO_GRAPHIC = -1
COMPRESSION_LEVEL = 9

_KV_LINE_RE = re.compile(r'^\s*(\d+)\s+"(.*)"\s*$')

_log = logging.getLogger(__name__)


class GraphicSet(IntEnum):
    WESTERN_EUROPEAN = 0
    EAST_ASIAN = 1
    MIDDLE_EASTERN = 2
    MESOAMERICAN = 3
    MEDITERRANEAN = 4
    INDIAN = 5
    SLAVIC = 6
    AFRICAN = 7
    SOUTHEAST_ASIAN = 8


@dataclass
class Civilization:
    id: int
    graphic_set: int
    bonus_tech: int
    monk_unit: int
    name: str


@dataclass
class Terrain:
    id: int
    slp_id: int
    overlay_slp: int
    name: str


@dataclass
class Unit:
    id: int
    unit_class: int
    flags: int
    standing_graphic: int
    snow_graphic: int
    name: str


@dataclass
class GameData:
    version: str
    civilizations: list[Civilization] = field(default_factory=list)
    terrains: list[Terrain] = field(default_factory=list)
    units: list[Unit] = field(default_factory=list)

    def civ(self, civ_id: int) -> Civilization | None:
        return next((c for c in self.civilizations if c.id == civ_id), None)

    def terrain(self, terrain_id: int) -> Terrain | None:
        return next((t for t in self.terrains if t.id == terrain_id), None)


class _Reader:
    def __init__(self, data: bytes, label: str):
        self.data = data
        self.pos = 0
        self.label = label

    def unpack(self, fmt: str) -> tuple:
        try:
            values = struct.unpack_from(fmt, self.data, self.pos)
        except struct.error:
            raise ArchiveFormatError(f"{self.label}: table data truncated at byte {self.pos}")
        self.pos += struct.calcsize(fmt)
        return values

    def string(self) -> str:
        (length,) = self.unpack("<H")
        raw = self.data[self.pos:self.pos + length]
        if len(raw) != length:
            raise ArchiveFormatError(f"{self.label}: string truncated at byte {self.pos}")
        self.pos += length
        try:
            return raw.decode("utf-8")
        except UnicodeDecodeError:
            raise ArchiveFormatError(f"{self.label}: invalid UTF-8 text at byte {self.pos - length}")


def _pack_string(out: bytearray, text: str):
    raw = text.encode("utf-8")
    out.extend(struct.pack("<H", len(raw)))
    out.extend(raw)


def decode_game_data(raw: bytes, label: str = DATA_FILENAME) -> GameData:
    """Decompress and parse a data file.

    Raises ``SchemaVersionError`` for an unknown version tag and
    ``ArchiveFormatError`` for anything malformed.
    """
    try:
        body = zlib.decompress(raw, -zlib.MAX_WBITS)
    except zlib.error as exc:
        raise ArchiveFormatError(f"{label}: could not decompress game data: {exc}") from exc

    if len(body) < VERSION_SIZE:
        raise ArchiveFormatError(f"{label}: missing version header")
    version = body[:VERSION_SIZE].rstrip(b"\x00").decode("ascii", errors="replace")
    if version not in SUPPORTED_VERSIONS:
        raise SchemaVersionError(
            f"{label}: unsupported game data version {version!r} "
            f"(supported: {', '.join(SUPPORTED_VERSIONS)})"
        )

    reader = _Reader(body, label)
    reader.pos = VERSION_SIZE
    data = GameData(version=version)

    (count,) = reader.unpack("<H")
    for _ in range(count):
        civ_id, graphic_set, bonus_tech, monk_unit = reader.unpack("<BBhh")
        data.civilizations.append(
            Civilization(civ_id, graphic_set, bonus_tech, monk_unit, reader.string())
        )

    (count,) = reader.unpack("<H")
    for _ in range(count):
        terrain_id, slp_id, overlay_slp = reader.unpack("<Bii")
        data.terrains.append(Terrain(terrain_id, slp_id, overlay_slp, reader.string()))

    (count,) = reader.unpack("<H")
    for _ in range(count):
        unit_id, unit_class, flags, standing, snow = reader.unpack("<hBIii")
        data.units.append(Unit(unit_id, unit_class, flags, standing, snow, reader.string()))

    if reader.pos != len(body):
        raise ArchiveFormatError(
            f"{label}: {len(body) - reader.pos} unexpected trailing byte(s) after unit table"
        )
    return data


def encode_game_data(data: GameData) -> bytes:
    if data.version not in SUPPORTED_VERSIONS:
        raise SchemaVersionError(f"Cannot write game data version {data.version!r}")
    body = bytearray(data.version.encode("ascii").ljust(VERSION_SIZE, b"\x00"))

    body.extend(struct.pack("<H", len(data.civilizations)))
    for civ in data.civilizations:
        body.extend(struct.pack("<BBhh", civ.id, civ.graphic_set, civ.bonus_tech, civ.monk_unit))
        _pack_string(body, civ.name)

    body.extend(struct.pack("<H", len(data.terrains)))
    for terrain in data.terrains:
        body.extend(struct.pack("<Bii", terrain.id, terrain.slp_id, terrain.overlay_slp))
        _pack_string(body, terrain.name)

    body.extend(struct.pack("<H", len(data.units)))
    for unit in data.units:
        body.extend(
            struct.pack(
                "<hBIii",
                unit.id,
                unit.unit_class,
                unit.flags,
                unit.standing_graphic,
                unit.snow_graphic,
            )
        )
        _pack_string(body, unit.name)

    compressor = zlib.compressobj(COMPRESSION_LEVEL, zlib.DEFLATED, -zlib.MAX_WBITS)
    return compressor.compress(bytes(body)) + compressor.flush()


def read_game_data(path: str | Path) -> GameData:
    path = Path(path)
    try:
        raw = path.read_bytes()
    except OSError as exc:
        raise ConversionIOError(f"Could not read game data {path}: {exc}") from exc
    return decode_game_data(raw, path.name)


def write_game_data(data: GameData, path: str | Path) -> Path:
    path = Path(path)
    try:
        path.parent.mkdir(parents=True, exist_ok=True)
        path.write_bytes(encode_game_data(data))
    except OSError as exc:
        raise ConversionIOError(f"Could not write game data {path}: {exc}") from exc
    return path


# ── String tables ─────────────────────────────────────────────────────


def parse_key_value_strings(text: str) -> dict[int, str]:
    strings: dict[int, str] = {}
    for lineno, line in enumerate(text.splitlines(), start=1):
        stripped = line.strip()
        if not stripped or stripped.startswith("//"):
            continue
        match = _KV_LINE_RE.match(stripped)
        if not match:
            _log.debug("Skipping unparseable string line %d: %r", lineno, line)
            continue
        strings[int(match.group(1))] = match.group(2)
    return strings


def read_strings(path: str | Path) -> dict[int, str]:
    path = Path(path)
    try:
        text = path.read_text(encoding="utf-8-sig")
    except UnicodeDecodeError as exc:
        raise ArchiveFormatError(f"{path}: string table is not valid UTF-8: {exc}") from exc
    except OSError as exc:
        raise ConversionIOError(f"Could not read string table {path}: {exc}") from exc
    return parse_key_value_strings(text)


def strings_path(hd_dir: Path, language: str) -> Path:
    return hd_dir / "resources" / language / STRINGS_RELPATH


def _escape_ini_value(text: str) -> str:
    return text.replace("\r\n", "\n").replace("\r", "\n").replace("\n", "\\n")


def format_language_ini(strings: dict[int, str]) -> str:
    """One `<id>=<text>` line per string, line breaks written as `\\n`."""
    lines = [
        f"{string_id}={_escape_ini_value(strings[string_id])}" for string_id in sorted(strings)
    ]
    return "\n".join(lines) + "\n" if lines else ""
