"""ELF64 loader that maps PT_LOAD segments into a user address space."""

from __future__ import annotations

import logging
import struct
from dataclasses import dataclass, field
from enum import IntFlag
from typing import Iterator, Optional

from .paging import (
    PAGE_SIZE,
    USER_CODE_BASE,
    USER_DATA_BASE,
    USER_STACK_TOP,
    AddressSpace,
    MappingError,
)
from .pmm import OutOfMemoryError

log = logging.getLogger(__name__)

ELF_MAGIC = b"\x7fELF"
PT_LOAD = 1
PT_NOTE = 4

# Data segments must end their start address this far below the stack top.
STACK_MARGIN = 0x100000

_EHDR = struct.Struct("<16sHHIQQQIHHHHHH")
_PHDR = struct.Struct("<IIQQQQQQ")


class SegmentFlag(IntFlag):
    """Permission bits of a program header."""

    X = 1
    W = 2
    R = 4


class ElfError(ValueError):
    """Base class of loader errors."""


class ElfMagicError(ElfError):
    """The buffer does not start with the ELF magic."""


class ElfFormatError(ElfError):
    """The image uses a layout the loader does not support."""


class ElfRangeError(ElfError):
    """A header, segment or address lies outside the allowed range."""


class ElfFlagError(ElfError):
    """A segment asks for forbidden permissions."""


class ElfMapError(ElfError):
    """A segment page could not be mapped or reached."""


@dataclass(frozen=True)
class ElfHeader:
    """The ELF64 file header."""

    ident: bytes
    type: int
    machine: int
    version: int
    entry: int
    phoff: int
    shoff: int
    flags: int
    ehsize: int
    phentsize: int
    phnum: int
    shentsize: int
    shnum: int
    shstrndx: int


@dataclass(frozen=True)
class ProgramHeader:
    """One ELF64 program header."""

    type: int
    flags: int
    offset: int
    vaddr: int
    paddr: int
    filesz: int
    memsz: int
    align: int

    @property
    def executable(self) -> bool:
        return bool(self.flags & SegmentFlag.X)

    @property
    def writable(self) -> bool:
        return bool(self.flags & SegmentFlag.W)


@dataclass
class LoadedImage:
    """Entry point and every user page mapped for a loaded image."""

    entry: int
    pages: list[int] = field(default_factory=list)


def parse_header(data: bytes) -> ElfHeader:
    """Decode and check the ELF64 file header."""
    if len(data) < _EHDR.size:
        raise ElfFormatError("buffer smaller than an ELF header")
    header = ElfHeader(*_EHDR.unpack_from(data))
    if header.ident[:4] != ELF_MAGIC:
        log.warning("ELF magic error")
        raise ElfMagicError("missing ELF magic")
    return header


def program_headers(data: bytes, header: ElfHeader) -> Iterator[ProgramHeader]:
    """Yield the program headers, raising when one lies beyond the buffer."""
    for index in range(header.phnum):
        at = header.phoff + index * _PHDR.size
        if at + _PHDR.size > len(data):
            raise ElfRangeError(f"program header {index} beyond image")
        yield ProgramHeader(*_PHDR.unpack_from(data, at))


def _check_segment(ph: ProgramHeader, size: int) -> None:
    if ph.executable and ph.writable:
        raise ElfFlagError(f"segment at {ph.vaddr:#x} is both writable and executable")
    if ph.offset + ph.filesz > size:
        raise ElfRangeError(f"segment at {ph.vaddr:#x} extends beyond the file")
    if ph.executable:
        if not USER_CODE_BASE <= ph.vaddr < USER_DATA_BASE:
            raise ElfRangeError(f"code segment at {ph.vaddr:#x} out of range")
    elif not USER_DATA_BASE <= ph.vaddr < USER_STACK_TOP - STACK_MARGIN:
        raise ElfRangeError(f"data segment at {ph.vaddr:#x} out of range")
    if ph.align not in (0, PAGE_SIZE):
        raise ElfFormatError(f"segment alignment {ph.align:#x} unsupported")


def _map_segment(space: AddressSpace, ph: ProgramHeader, memsz: int,
                 pages: list[int]) -> None:
    start = ph.vaddr & ~(PAGE_SIZE - 1)
    end = (ph.vaddr + memsz + PAGE_SIZE - 1) & ~(PAGE_SIZE - 1)
    code = ph.executable and not ph.writable
    for va in range(start, end, PAGE_SIZE):
        try:
            if code:
                space.map_user_code(va)
            else:
                space.map_user_data(va)
        except (MappingError, OutOfMemoryError) as exc:
            raise ElfMapError(f"mapping page {va:#018x} failed: {exc}") from exc
        log.debug("page %#018x -> %s%s", va, "X" if ph.executable else "-",
                  "W" if ph.writable else "R")
        pages.append(va)


def _copy_segment(space: AddressSpace, vaddr: int, content: bytes, memsz: int) -> None:
    filesz = len(content)
    offset = 0
    while offset < memsz:
        va = vaddr + offset
        chunk = min(PAGE_SIZE - (va & (PAGE_SIZE - 1)), memsz - offset)
        phys = space.translate(va)
        if offset < filesz:
            if phys is None:
                raise ElfMapError(f"cannot translate {va:#018x}")
            piece = content[offset:offset + chunk]
            piece += bytes(chunk - len(piece))
            space.memory.write(phys, piece)
        elif phys is not None:
            space.memory.write(phys, bytes(chunk))
        offset += chunk


def load_image(data: bytes, space: AddressSpace) -> LoadedImage:
    """Map and fill every PT_LOAD segment of an ELF64 image in ``space``.

    On failure the pages mapped so far are released again.
    """
    data = bytes(data)
    header = parse_header(data)
    if header.phoff == 0 or header.phnum == 0:
        raise ElfFormatError("image has no program headers")
    if header.phentsize != _PHDR.size:
        raise ElfFormatError(f"program header size {header.phentsize} unsupported")
    if header.entry == 0:
        log.warning("ELF entry point is 0")
    log.debug("free memory before mapping=%#018x", space.pmm.free_memory)

    image = LoadedImage(header.entry)
    try:
        for ph in program_headers(data, header):
            if ph.type != PT_LOAD:
                continue
            _check_segment(ph, len(data))
            memsz = max(ph.memsz, ph.filesz)
            if memsz == 0:
                continue
            _map_segment(space, ph, memsz, image.pages)
            _copy_segment(space, ph.vaddr,
                          data[ph.offset:ph.offset + ph.filesz], memsz)
            log.debug("segment loaded: vaddr=%#018x size=%#018x flags=%s%s",
                      ph.vaddr, memsz, "X" if ph.executable else "-",
                      "W" if ph.writable else "R")
    except ElfError:
        unload_image(space, image.pages)
        raise
    log.info("ELF load complete")
    return image


def unload_image(space: Optional[AddressSpace], pages: list[int]) -> int:
    """Unmap the given pages, freeing their frames; return how many were unmapped."""
    if space is None:
        raise ValueError("no address space given")
    freed = 0
    for va in pages:
        try:
            space.unmap(va)
        except MappingError:
            continue
        freed += 1
    log.info("unload done pages=%x", freed)
    return freed