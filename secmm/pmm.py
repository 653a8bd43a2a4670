"""Physical memory: a simulated RAM and a bitmap frame allocator."""

from __future__ import annotations

import logging
from dataclasses import replace
from itertools import islice
from typing import Iterable, Optional

from .multiboot import (
    MemoryRegion,
    MemoryType,
    MultibootInfo,
    iter_multiboot2_tags,
    parse_multiboot2_mmap,
    TAG_MMAP,
)

log = logging.getLogger(__name__)

FRAME_SIZE = 4096
MAPPED_LIMIT = 512 * 1024 * 1024
IDENTITY_LIMIT = 128 * 1024 * 1024
MAX_MB1_REGIONS = 64
MAX_MB2_REGIONS = 128
DEFAULT_KERNEL_END = 0x200000
_MB = 1024 * 1024


class OutOfMemoryError(MemoryError):
    """No free physical frame is left."""


class PhysicalMemory:
    """Sparse byte-addressable physical memory; unwritten bytes read as zero."""

    def __init__(self, size: Optional[int] = None) -> None:
        self.size = size
        self._frames: dict[int, bytearray] = {}

    def _check(self, addr: int, length: int) -> None:
        if addr < 0 or length < 0:
            raise ValueError(f"invalid physical range {addr:#x}+{length}")
        if self.size is not None and addr + length > self.size:
            raise ValueError(f"physical range {addr:#x}+{length} beyond memory size")

    def read(self, addr: int, size: int) -> bytes:
        self._check(addr, size)
        out = bytearray()
        pos, end = addr, addr + size
        while pos < end:
            frame, off = divmod(pos, FRAME_SIZE)
            chunk = min(FRAME_SIZE - off, end - pos)
            page = self._frames.get(frame)
            out += page[off:off + chunk] if page is not None else bytes(chunk)
            pos += chunk
        return bytes(out)

    def write(self, addr: int, data: bytes) -> None:
        data = bytes(data)
        self._check(addr, len(data))
        pos = 0
        while pos < len(data):
            frame, off = divmod(addr + pos, FRAME_SIZE)
            chunk = min(FRAME_SIZE - off, len(data) - pos)
            page = self._frames.setdefault(frame, bytearray(FRAME_SIZE))
            page[off:off + chunk] = data[pos:pos + chunk]
            pos += chunk

    def read_u64(self, addr: int) -> int:
        return int.from_bytes(self.read(addr, 8), "little")

    def write_u64(self, addr: int, value: int) -> None:
        self.write(addr, value.to_bytes(8, "little"))

    def zero_frame(self, addr: int) -> None:
        """Clear the whole frame starting at ``addr``."""
        if addr % FRAME_SIZE:
            raise ValueError(f"frame address {addr:#x} is not page aligned")
        self._check(addr, FRAME_SIZE)
        self._frames.pop(addr // FRAME_SIZE, None)


class PhysicalMemoryManager:
    """Bitmap allocator of 4 KiB physical frames.

    The bitmap is thought of as living at ``kernel_end``; every frame from 0
    up to the end of the bitmap stays reserved.
    """

    def __init__(self, kernel_end: int = DEFAULT_KERNEL_END) -> None:
        self.kernel_end = kernel_end
        self._bitmap = bytearray()
        self.total_frames = 0
        self.used_frames = 0
        self.total_memory = 0
        self.max_phys_addr = 0

    # -- bitmap helpers -------------------------------------------------
    def _test(self, frame: int) -> bool:
        return bool(self._bitmap[frame >> 3] & (1 << (frame & 7)))

    def _set(self, frame: int) -> None:
        self._bitmap[frame >> 3] |= 1 << (frame & 7)

    def _clear(self, frame: int) -> None:
        self._bitmap[frame >> 3] &= ~(1 << (frame & 7)) & 0xFF

    # -- accounting -----------------------------------------------------
    @property
    def used_memory(self) -> int:
        return self.used_frames * FRAME_SIZE

    @property
    def free_memory(self) -> int:
        return (self.total_frames - self.used_frames) * FRAME_SIZE

    # -- initialisation -------------------------------------------------
    def build(self, regions: Iterable[MemoryRegion]) -> None:
        """Set up the frame bitmap from a list of available regions."""
        regions = list(regions)
        max_addr = max((r.end for r in regions), default=0)
        self.total_memory = sum(r.length for r in regions)
        self.total_frames = min(-(-max_addr // FRAME_SIZE), MAPPED_LIMIT // FRAME_SIZE)
        self.max_phys_addr = max_addr
        bitmap_size = (self.total_frames + 7) // 8
        log.debug("max_addr=%#x total_frames=%d bitmap_size=%d bytes",
                  max_addr, self.total_frames, bitmap_size)
        # A cleared bitmap leaves every frame below the limit free.
        self._bitmap = bytearray(bitmap_size)
        self.used_frames = 0
        for index, region in enumerate(regions):
            if region.length:
                log.debug("region %d: sizeMB=%d", index, region.length // _MB)

        kernel_end_frame = min((self.kernel_end + bitmap_size) // FRAME_SIZE + 1,
                               self.total_frames)
        for frame in range(kernel_end_frame):
            if not self._test(frame):
                self._set(frame)
                self.used_frames += 1

        if self.used_frames in (0, self.total_frames) or self.free_memory == 0:
            log.warning("no free frames in the reported regions")
        log.info("PMM initialized")
        log.debug("%s", self.format_stats())

    def init_mb1(self, info: MultibootInfo, mmap: Optional[Iterable[MemoryRegion]] = None) -> None:
        """Initialise from Multiboot 1 information and its decoded memory map."""
        if info is None:
            raise ValueError("multiboot info missing")
        if not info.has_mmap:
            log.warning("no MB1 memory map, synthetic fallback")
            upper_kb = info.mem_upper if info.has_mem_info else 0
            if upper_kb == 0:
                upper_kb = 64 * 1024
            self.build([MemoryRegion(0x100000, max(0, upper_kb * 1024 - 0x100000))])
            return
        if mmap is None:
            raise ValueError("multiboot info announces a memory map but none was given")
        available = (r for r in mmap if r.type == MemoryType.AVAILABLE)
        regions = []
        for region in islice(available, MAX_MB1_REGIONS):
            if region.end > IDENTITY_LIMIT:
                length = 0 if region.addr >= IDENTITY_LIMIT else IDENTITY_LIMIT - region.addr
                region = replace(region, length=length)
            regions.append(region)
        self.build(regions)

    def init_mb2(self, data: bytes) -> None:
        """Initialise from a Multiboot 2 information block."""
        if not data:
            raise ValueError("multiboot2 info missing")
        regions: list[MemoryRegion] = []
        for tag in iter_multiboot2_tags(data):
            if tag.type != TAG_MMAP:
                continue
            for region in parse_multiboot2_mmap(tag):
                if len(regions) >= MAX_MB2_REGIONS:
                    break
                if region.type == MemoryType.AVAILABLE:
                    regions.append(region)
        if not regions:
            log.warning("no MB2 regions reported, synthetic fallback 1MB..64MB")
            regions = [MemoryRegion(0x100000, 63 * _MB)]
        elif len(regions) == 1 and regions[0].addr == 0 and regions[0].length < 0x100000:
            log.warning("only low memory in mmap; adding synthetic region 1MB..256MB")
            regions.append(MemoryRegion(0x100000, 255 * _MB))
        self.build(regions)

    # -- allocation -----------------------------------------------------
    def alloc_frame(self) -> int:
        """Reserve the lowest free frame and return its physical address."""
        for index, byte in enumerate(self._bitmap):
            if byte == 0xFF:
                continue
            for bit in range(8):
                if not byte & (1 << bit):
                    frame = index * 8 + bit
                    if frame >= self.total_frames:
                        raise OutOfMemoryError("no free physical frame")
                    self._set(frame)
                    self.used_frames += 1
                    return frame * FRAME_SIZE
        raise OutOfMemoryError("no free physical frame")

    def free_frame(self, addr: int) -> None:
        """Release the frame holding ``addr``; freeing a free frame does nothing."""
        if not self.is_used(addr):
            return
        self._clear(addr // FRAME_SIZE)
        self.used_frames -= 1

    def is_used(self, addr: int) -> bool:
        frame = addr // FRAME_SIZE
        if frame < 0 or frame >= self.total_frames:
            return False
        return self._test(frame)

    def format_stats(self) -> str:
        return (
            f"     Total memory:   {self.total_memory // _MB} MB\n"
            f"     Used memory:    {self.used_memory // _MB} MB\n"
            f"     Free memory:    {self.free_memory // _MB} MB\n"
        )