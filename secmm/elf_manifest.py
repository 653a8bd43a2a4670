"""Security manifest carried in an ELF PT_NOTE segment."""

from __future__ import annotations

import logging
import struct
from dataclasses import dataclass
from enum import IntFlag
from typing import Optional

log = logging.getLogger(__name__)

SECOS_NOTE_NAME = b"SECOS\x00"
SECOS_NOTE_TYPE = 0x51534543

PT_NOTE = 4

_EHDR = struct.Struct("<16sHHIQQQIHHHHHH")
_PHDR = struct.Struct("<IIQQQQQQ")
_NOTE_HEADER = struct.Struct("<III")
_RAW_MANIFEST = struct.Struct("<IIQQ")


class ManifestFlag(IntFlag):
    """Requirements a program declares in its manifest."""

    REQUIRE_WX_BLOCK = 1 << 0
    REQUIRE_STACK_GUARD = 1 << 1
    REQUIRE_NX_DATA = 1 << 2
    REQUIRE_RX_CODE = 1 << 3


class ManifestError(ValueError):
    """Base class of manifest errors."""


class ManifestNotFoundError(ManifestError):
    """The image carries no manifest note."""


class ManifestFormatError(ManifestError):
    """The image or manifest is malformed."""


class ManifestRangeError(ManifestError):
    """A header or segment lies outside the image."""


class ManifestUnsupportedError(ManifestError):
    """The manifest asks for something the image does not satisfy."""


@dataclass(frozen=True)
class Manifest:
    version: int
    flags: int
    max_mem: int
    entry_hint: int

    @property
    def required(self) -> ManifestFlag:
        return ManifestFlag(self.flags)


def _align4(value: int) -> int:
    return (value + 3) & ~3


def _scan_notes(data: bytes, start: int, end: int) -> Optional[bytes]:
    note = start
    while note + _NOTE_HEADER.size <= end:
        namesz, descsz, note_type = _NOTE_HEADER.unpack_from(data, note)
        name_at = note + _NOTE_HEADER.size
        desc_at = name_at + _align4(namesz)
        following = desc_at + _align4(descsz)
        if following > end:
            break
        if (
            namesz
            and descsz
            and note_type == SECOS_NOTE_TYPE
            and namesz >= len(SECOS_NOTE_NAME)
            and data[name_at:name_at + 5] == SECOS_NOTE_NAME[:5]
            and descsz >= _RAW_MANIFEST.size
        ):
            return data[desc_at:desc_at + _RAW_MANIFEST.size]
        note = following
    return None


def parse_manifest(data: bytes) -> Manifest:
    """Find and decode the SECOS manifest note of an ELF64 image."""
    data = bytes(data)
    size = len(data)
    if size < _EHDR.size:
        raise ManifestFormatError("buffer smaller than an ELF header")
    fields = _EHDR.unpack_from(data)
    phoff, phentsize, phnum = fields[5], fields[9], fields[10]
    if phoff == 0 or phnum == 0:
        raise ManifestNotFoundError("image has no program headers")
    if phentsize != _PHDR.size:
        raise ManifestFormatError(f"program header size {phentsize} unsupported")
    raw = None
    for index in range(phnum):
        at = phoff + index * _PHDR.size
        if at + _PHDR.size > size:
            raise ManifestRangeError(f"program header {index} beyond image")
        p_type, _, p_offset, _, _, p_filesz, _, _ = _PHDR.unpack_from(data, at)
        if p_type != PT_NOTE:
            continue
        if p_offset + p_filesz > size:
            raise ManifestRangeError(f"note segment {index} beyond image")
        raw = _scan_notes(data, p_offset, p_offset + p_filesz)
        if raw is not None:
            break
    if raw is None:
        raise ManifestNotFoundError("no SECOS manifest note")
    manifest = Manifest(*_RAW_MANIFEST.unpack(raw))
    log.debug("manifest parsed version=%#x flags=%#010x", manifest.version, manifest.flags)
    return manifest


def validate_manifest(manifest: Optional[Manifest], real_entry: int) -> Manifest:
    """Check a manifest against the loaded image; return it when acceptable."""
    if manifest is None:
        raise ManifestFormatError("manifest missing")
    if manifest.entry_hint and manifest.entry_hint != real_entry:
        log.warning("manifest entry mismatch")
        raise ManifestUnsupportedError(
            f"entry hint {manifest.entry_hint:#x} differs from entry {real_entry:#x}"
        )
    # W^X and stack guard requirements are already enforced by the loader and
    # the stack allocator; max_mem has no per-process counter to check against.
    return manifest