"""Boot-loader information structures (Multiboot 1 and Multiboot 2)."""

from __future__ import annotations

import struct
from dataclasses import dataclass
from enum import IntEnum
from typing import Iterator, Optional, Tuple

MULTIBOOT2_BOOTLOADER_MAGIC = 0x36D76289

MB1_FLAG_MEM_INFO = 1 << 0
MB1_FLAG_MMAP = 1 << 6

TAG_END = 0
TAG_CMDLINE = 1
TAG_BOOT_LOADER = 2
TAG_MODULE = 3
TAG_MEMINFO = 4
TAG_BOOTDEV = 5
TAG_MMAP = 6
TAG_FRAMEBUFFER = 8

FB_TYPE_INDEXED = 0
FB_TYPE_RGB = 1

_MB1_INFO = struct.Struct("<20I4H")
_MB1_MMAP_ENTRY = struct.Struct("<IQQI")
_MB2_TAG_HEADER = struct.Struct("<II")
_MB2_MMAP_HEADER = struct.Struct("<IIII")
_MB2_MMAP_ENTRY = struct.Struct("<QQII")
_MB2_FRAMEBUFFER = struct.Struct("<IIQIIIBBBB")


class MemoryType(IntEnum):
    """Memory region types reported by the boot loader."""

    AVAILABLE = 1
    RESERVED = 2
    ACPI_RECLAIMABLE = 3
    NVS = 4
    BADRAM = 5


@dataclass(frozen=True)
class MemoryRegion:
    """A physical memory range reported by the boot loader."""

    addr: int
    length: int
    type: int = MemoryType.AVAILABLE

    @property
    def end(self) -> int:
        return self.addr + self.length

    @property
    def available(self) -> bool:
        return self.type == MemoryType.AVAILABLE


@dataclass(frozen=True)
class MultibootInfo:
    """The fixed part of the Multiboot 1 information structure."""

    flags: int
    mem_lower: int
    mem_upper: int
    boot_device: int
    cmdline: int
    mods_count: int
    mods_addr: int
    syms: Tuple[int, int, int, int]
    mmap_length: int
    mmap_addr: int
    drives_length: int
    drives_addr: int
    config_table: int
    boot_loader_name: int
    apm_table: int
    vbe_control_info: int
    vbe_mode_info: int
    vbe_mode: int
    vbe_interface_seg: int
    vbe_interface_off: int
    vbe_interface_len: int

    @property
    def has_mem_info(self) -> bool:
        return bool(self.flags & MB1_FLAG_MEM_INFO)

    @property
    def has_mmap(self) -> bool:
        return bool(self.flags & MB1_FLAG_MMAP)


@dataclass(frozen=True)
class Multiboot2Tag:
    """One Multiboot 2 tag; ``data`` holds the whole tag, header included."""

    type: int
    size: int
    data: bytes


@dataclass(frozen=True)
class FramebufferInfo:
    """Framebuffer description from a Multiboot 2 framebuffer tag."""

    addr: int
    pitch: int
    width: int
    height: int
    bpp: int
    fb_type: int
    rgb: Optional[Tuple[Tuple[int, int], Tuple[int, int], Tuple[int, int]]] = None


def parse_multiboot1_info(data: bytes) -> MultibootInfo:
    """Decode the packed Multiboot 1 information structure."""
    if len(data) < _MB1_INFO.size:
        raise ValueError(
            f"multiboot info needs {_MB1_INFO.size} bytes, got {len(data)}"
        )
    values = _MB1_INFO.unpack_from(data)
    head, syms, rest = values[:7], tuple(values[7:11]), values[11:]
    return MultibootInfo(*head, syms, *rest)


def parse_multiboot1_mmap(data: bytes) -> list[MemoryRegion]:
    """Decode a Multiboot 1 memory map buffer into regions of every type."""
    regions = []
    offset = 0
    while offset + _MB1_MMAP_ENTRY.size <= len(data):
        size, addr, length, mem_type = _MB1_MMAP_ENTRY.unpack_from(data, offset)
        regions.append(MemoryRegion(addr, length, mem_type))
        offset += size + 4
    return regions


def iter_multiboot2_tags(data: bytes) -> Iterator[Multiboot2Tag]:
    """Yield the tags of a Multiboot 2 information block up to the end tag."""
    data = bytes(data)
    offset = 8  # total_size and reserved
    while True:
        if offset + _MB2_TAG_HEADER.size > len(data):
            raise ValueError("multiboot2 information truncated before end tag")
        tag_type, size = _MB2_TAG_HEADER.unpack_from(data, offset)
        if tag_type == TAG_END:
            return
        if size < _MB2_TAG_HEADER.size or offset + size > len(data):
            raise ValueError(f"multiboot2 tag at offset {offset} has bad size {size}")
        yield Multiboot2Tag(tag_type, size, data[offset:offset + size])
        offset += (size + 7) & ~7


def parse_multiboot2_mmap(tag: Multiboot2Tag) -> list[MemoryRegion]:
    """Decode the entries of a Multiboot 2 memory map tag."""
    if tag.type != TAG_MMAP:
        raise ValueError(f"tag type {tag.type} is not a memory map")
    if tag.size < _MB2_MMAP_HEADER.size:
        raise ValueError("memory map tag too short")
    _, _, entry_size, _ = _MB2_MMAP_HEADER.unpack_from(tag.data)
    if entry_size < _MB2_MMAP_ENTRY.size:
        raise ValueError(f"memory map entry size {entry_size} too small")
    regions = []
    pos = _MB2_MMAP_HEADER.size
    while pos + entry_size <= tag.size:
        addr, length, mem_type, _ = _MB2_MMAP_ENTRY.unpack_from(tag.data, pos)
        regions.append(MemoryRegion(addr, length, mem_type))
        pos += entry_size
    return regions


def parse_multiboot2_framebuffer(tag: Multiboot2Tag) -> FramebufferInfo:
    """Decode a Multiboot 2 framebuffer tag."""
    if tag.type != TAG_FRAMEBUFFER:
        raise ValueError(f"tag type {tag.type} is not a framebuffer")
    if tag.size < _MB2_FRAMEBUFFER.size:
        raise ValueError("framebuffer tag too short")
    _, _, addr, pitch, width, height, bpp, fb_type, _, _ = _MB2_FRAMEBUFFER.unpack_from(
        tag.data
    )
    rgb = None
    start = _MB2_FRAMEBUFFER.size
    if fb_type == FB_TYPE_RGB and tag.size >= start + 6:
        raw = tag.data[start:start + 6]
        rgb = ((raw[0], raw[1]), (raw[2], raw[3]), (raw[4], raw[5]))
    return FramebufferInfo(addr, pitch, width, height, bpp, fb_type, rgb)