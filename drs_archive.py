"""
Reader and writer for DRS resource archives.

This module can:

1. Parse a DRS archive (graphics.drs, terrain.drs, ...) into a ``StagingArchive``
2. Let callers replace, add or remove entry payloads in memory
3. Run entry-level transformations on a bounded worker pool
4. Repack a ``StagingArchive`` deterministically

Layout (little-endian):

    header          copyright[40] version[4] archive_type[12] table_count:i32 first_file_offset:i32
    table headers   extension[4] (reversed, space padded) entries_offset:i32 entry_count:i32
    entry tables    resource_id:i32 data_offset:i32 size:i32
    payloads

Repacking writes the tables in the order they were read (empty ones included),
then tables for newly added extensions, entries by index and payloads
contiguously in the same order, so an archive laid out that way round-trips
byte for byte.  Two tables with the same extension are rejected on read.
"""

from __future__ import annotations

import argparse
import logging
import struct
from concurrent.futures import ThreadPoolExecutor
from dataclasses import dataclass, field
from pathlib import Path
from typing import Callable, Iterable, Iterator, Optional

from conversion_errors import ArchiveFormatError, ConversionIOError

COPYRIGHT = b"Copyright (c) 1997 Ensemble Studios.\x1a\x00\x00\x00"
COPYRIGHT_PREFIX = b"Copyright (c) "
DEFAULT_VERSION = b"1.00"
SUPPORTED_VERSIONS = {b"1.00"}
DEFAULT_ARCHIVE_TYPE = b"tribe".ljust(12, b"\x00")

HEADER = struct.Struct("<40s4s12sii")
TABLE_HEADER = struct.Struct("<4sii")
ENTRY = struct.Struct("<iii")

DEFAULT_WORKERS = 4

_log = logging.getLogger(__name__)


@dataclass
class DrsEntry:
    extension: str
    resource_id: int
    index: int
    data: bytes

    @property
    def name(self) -> str:
        return entry_name(self.extension, self.resource_id)


def entry_name(extension: str, resource_id: int) -> str:
    return f"{resource_id}.{extension}"


def _split_entry_name(name: str) -> tuple[str, int]:
    stem, _, extension = name.partition(".")
    try:
        resource_id = int(stem)
    except ValueError:
        raise ValueError(f"Invalid entry name {name!r}, expected '<id>.<ext>'")
    if not extension or len(extension) > 4:
        raise ValueError(f"Invalid entry extension in {name!r}")
    return extension, resource_id


def _decode_extension(raw: bytes, label: str) -> str:
    try:
        extension = raw[::-1].decode("ascii").strip()
    except UnicodeDecodeError:
        raise ArchiveFormatError(f"{label}: table extension {raw!r} is not ASCII")
    if not extension:
        raise ArchiveFormatError(f"{label}: empty table extension")
    return extension


def _encode_extension(extension: str) -> bytes:
    return extension.ljust(4).encode("ascii")[::-1]


@dataclass
class StagingArchive:
    """In-memory contents of one DRS archive, keyed by entry name."""

    name: str
    copyright: bytes = COPYRIGHT
    version: bytes = DEFAULT_VERSION
    archive_type: bytes = DEFAULT_ARCHIVE_TYPE
    entries: dict[str, DrsEntry] = field(default_factory=dict)
    # Table order as read, including tables without entries.
    table_extensions: list[str] = field(default_factory=list)

    def __contains__(self, name: str) -> bool:
        return name in self.entries

    def __len__(self) -> int:
        return len(self.entries)

    def ordered_entries(self) -> list[DrsEntry]:
        return sorted(self.entries.values(), key=lambda e: e.index)

    def names(self) -> list[str]:
        return [e.name for e in self.ordered_entries()]

    def get(self, name: str) -> Optional[bytes]:
        entry = self.entries.get(name)
        return entry.data if entry else None

    def set(self, name: str, data: bytes) -> DrsEntry:
        """Replace an entry's payload, or append a new entry after the last one."""
        entry = self.entries.get(name)
        if entry is not None:
            entry.data = bytes(data)
            return entry
        extension, resource_id = _split_entry_name(name)
        return self.add(extension, resource_id, data)

    def add(self, extension: str, resource_id: int, data: bytes) -> DrsEntry:
        name = entry_name(extension, resource_id)
        if name in self.entries:
            raise ValueError(f"Entry {name} already exists in {self.name}")
        next_index = max((e.index for e in self.entries.values()), default=-1) + 1
        entry = DrsEntry(extension, resource_id, next_index, bytes(data))
        self.entries[name] = entry
        return entry

    def remove(self, name: str):
        del self.entries[name]

    def to_bytes(self) -> bytes:
        return pack_bytes(self)


# ── Reading ───────────────────────────────────────────────────────────


def extract_bytes(data: bytes, name: str = "<memory>") -> StagingArchive:
    """Parse DRS bytes; raises ``ArchiveFormatError`` on any inconsistency."""
    end = len(data)
    if end < HEADER.size:
        raise ArchiveFormatError(f"{name}: truncated header ({end} bytes)")

    copyright, version, archive_type, table_count, first_file_offset = HEADER.unpack_from(data, 0)
    if not copyright.startswith(COPYRIGHT_PREFIX):
        raise ArchiveFormatError(f"{name}: not a DRS archive (bad signature)")
    if version not in SUPPORTED_VERSIONS:
        raise ArchiveFormatError(f"{name}: unsupported DRS version {version!r}")
    if table_count < 0 or HEADER.size + table_count * TABLE_HEADER.size > end:
        raise ArchiveFormatError(f"{name}: table count {table_count} exceeds file size")

    tables: list[tuple[str, int, int]] = []
    pos = HEADER.size
    for _ in range(table_count):
        raw_ext, entries_offset, entry_count = TABLE_HEADER.unpack_from(data, pos)
        pos += TABLE_HEADER.size
        extension = _decode_extension(raw_ext, name)
        if any(extension == seen for seen, _, _ in tables):
            raise ArchiveFormatError(f"{name}: duplicate .{extension} table")
        tables.append((extension, entries_offset, entry_count))

    archive = StagingArchive(
        name=name,
        copyright=copyright,
        version=version,
        archive_type=archive_type,
        table_extensions=[extension for extension, _, _ in tables],
    )
    expected_offset = pos
    index = 0
    spans: list[tuple[DrsEntry, int, int]] = []
    for extension, entries_offset, entry_count in tables:
        if entries_offset != expected_offset:
            raise ArchiveFormatError(
                f"{name}: .{extension} entry table at offset {entries_offset}, "
                f"expected {expected_offset}"
            )
        if entry_count < 0 or entries_offset + entry_count * ENTRY.size > end:
            raise ArchiveFormatError(f"{name}: .{extension} entry table is truncated")
        for i in range(entry_count):
            resource_id, offset, size = ENTRY.unpack_from(data, entries_offset + i * ENTRY.size)
            entry = DrsEntry(extension, resource_id, index, b"")
            if entry.name in archive.entries:
                raise ArchiveFormatError(f"{name}: duplicate entry {entry.name}")
            archive.entries[entry.name] = entry
            spans.append((entry, offset, size))
            index += 1
        expected_offset = entries_offset + entry_count * ENTRY.size

    if first_file_offset != expected_offset:
        raise ArchiveFormatError(
            f"{name}: header checksum mismatch (first file offset {first_file_offset}, "
            f"header is {expected_offset} bytes)"
        )

    for entry, offset, size in spans:
        if size < 0 or offset < expected_offset or offset + size > end:
            raise ArchiveFormatError(
                f"{name}: payload of {entry.name} is truncated "
                f"(offset {offset}, size {size}, file {end} bytes)"
            )
        entry.data = data[offset:offset + size]

    _log.debug("Parsed %s: %d table(s), %d entr(ies)", name, len(tables), len(archive))
    return archive


def extract(archive_path: str | Path) -> StagingArchive:
    path = Path(archive_path)
    try:
        data = path.read_bytes()
    except OSError as exc:
        raise ConversionIOError(f"Could not read archive {path}: {exc}") from exc
    return extract_bytes(data, path.name)


def extract_all(paths: Iterable[Path], max_workers: int = DEFAULT_WORKERS) -> Iterator[StagingArchive]:
    """Extract several archives on a worker pool, yielding them in input order."""
    with ThreadPoolExecutor(max_workers=max(1, max_workers)) as executor:
        yield from executor.map(extract, list(paths))


# ── Writing ───────────────────────────────────────────────────────────


def pack_bytes(archive: StagingArchive) -> bytes:
    """Serialize ``archive``: known tables in their original order, then new ones."""
    ordered = archive.ordered_entries()
    tables: dict[str, list[DrsEntry]] = {extension: [] for extension in archive.table_extensions}
    for entry in ordered:
        tables.setdefault(entry.extension, []).append(entry)

    entries_offset = HEADER.size + len(tables) * TABLE_HEADER.size
    header_size = entries_offset + len(ordered) * ENTRY.size

    out = bytearray(
        HEADER.pack(
            archive.copyright,
            archive.version,
            archive.archive_type,
            len(tables),
            header_size,
        )
    )
    for extension, items in tables.items():
        out.extend(TABLE_HEADER.pack(_encode_extension(extension), entries_offset, len(items)))
        entries_offset += len(items) * ENTRY.size

    data_offset = header_size
    for items in tables.values():
        for entry in items:
            out.extend(ENTRY.pack(entry.resource_id, data_offset, len(entry.data)))
            data_offset += len(entry.data)

    for items in tables.values():
        for entry in items:
            out.extend(entry.data)
    return bytes(out)


def repack(archive: StagingArchive, destination_path: str | Path) -> Path:
    destination = Path(destination_path)
    payload = pack_bytes(archive)
    try:
        destination.parent.mkdir(parents=True, exist_ok=True)
        destination.write_bytes(payload)
    except OSError as exc:
        raise ConversionIOError(f"Could not write archive {destination}: {exc}") from exc
    _log.debug("Wrote %s (%d bytes, %d entries)", destination, len(payload), len(archive))
    return destination


# ── Entry transformations ─────────────────────────────────────────────


def transform_entries(
    archive: StagingArchive,
    transform: Callable[[DrsEntry], Optional[bytes]],
    max_workers: int = DEFAULT_WORKERS,
) -> list[str]:
    """Apply ``transform`` to every entry; ``None`` leaves an entry untouched.

    Transforms run concurrently and all see the original payloads. Results are
    applied in entry index order once every worker is done. Returns the names
    of the entries that changed.
    """
    ordered = archive.ordered_entries()
    with ThreadPoolExecutor(max_workers=max(1, max_workers)) as executor:
        results = list(executor.map(transform, ordered))

    changed: list[str] = []
    for entry, new_data in zip(ordered, results):
        if new_data is not None and new_data != entry.data:
            entry.data = bytes(new_data)
            changed.append(entry.name)
    return changed


def main() -> int:
    parser = argparse.ArgumentParser(description="Inspect or unpack a DRS archive")
    parser.add_argument("archive", help="Path to the .drs file")
    parser.add_argument("--output-dir", help="If set, write every entry into this directory")
    parser.add_argument(
        "--verify",
        action="store_true",
        help="Repack in memory and report whether the bytes are identical",
    )
    args = parser.parse_args()

    path = Path(args.archive)
    archive = extract(path)
    print(f"Archive: {path}")
    print(f"Entries: {len(archive)}")
    for entry in archive.ordered_entries():
        print(f"  {entry.name:>16}  {len(entry.data):>10} bytes")

    if args.verify:
        same = pack_bytes(archive) == path.read_bytes()
        print("Round trip: identical" if same else "Round trip: DIFFERS")

    if args.output_dir:
        out_dir = Path(args.output_dir)
        out_dir.mkdir(parents=True, exist_ok=True)
        for entry in archive.ordered_entries():
            (out_dir / entry.name).write_bytes(entry.data)
        print(f"Wrote entries to: {out_dir}")
    return 0


if __name__ == "__main__":
    raise SystemExit(main())
