"""Four-level x86-64 page tables kept in simulated physical memory."""

from __future__ import annotations

import logging
from enum import IntFlag
from typing import Optional

from .pmm import FRAME_SIZE, OutOfMemoryError, PhysicalMemory, PhysicalMemoryManager

log = logging.getLogger(__name__)

PAGE_SIZE = FRAME_SIZE
PT_ENTRIES = 512
ENTRY_SIZE = 8
ADDRESS_MASK = 0x000FFFFFFFFFF000
PAGE_OFFSET_MASK = 0xFFF

PHYSMAP_BASE = 0xFFFF888000000000

USER_CODE_BASE = 0x0000000100000000
USER_DATA_BASE = 0x0000000200000000
USER_STACK_TOP = 0x00000003FFF00000

_LEVEL_SHIFTS = (39, 30, 21)
_PT_SHIFT = 12


class PageFlag(IntFlag):
    """Bits of an x86-64 page table entry."""

    PRESENT = 1 << 0
    RW = 1 << 1
    USER = 1 << 2
    PWT = 1 << 3
    PCD = 1 << 4
    ACCESSED = 1 << 5
    DIRTY = 1 << 6
    PS = 1 << 7
    GLOBAL = 1 << 8
    NOEXEC = 1 << 63


_PRESENT = int(PageFlag.PRESENT)
_TABLE_FLAGS = int(PageFlag.RW | PageFlag.USER | PageFlag.PWT | PageFlag.PCD)


class MappingError(Exception):
    """A page could not be mapped or unmapped."""


def phys_to_virt(phys: int) -> int:
    """Return the physmap virtual address of a physical address."""
    return PHYSMAP_BASE + phys


def virt_to_phys(virt: int) -> int:
    """Return the physical address behind a physmap virtual address."""
    if virt < PHYSMAP_BASE:
        raise ValueError(f"address {virt:#x} is not inside the physmap")
    return virt - PHYSMAP_BASE


def _index(virt: int, shift: int) -> int:
    return (virt >> shift) & (PT_ENTRIES - 1)


class AddressSpace:
    """An address space rooted at a PML4 frame.

    Page tables are addressed by their physical address, as if physical
    memory were identity mapped.
    """

    def __init__(
        self,
        memory: PhysicalMemory,
        pmm: PhysicalMemoryManager,
        pml4_phys: Optional[int] = None,
    ) -> None:
        self.memory = memory
        self.pmm = pmm
        if pml4_phys is None:
            pml4_phys = self._new_table()
        self.pml4_phys = pml4_phys & ADDRESS_MASK

    def __repr__(self) -> str:
        return f"AddressSpace(pml4_phys={self.pml4_phys:#x})"

    # -- table walking --------------------------------------------------
    def _new_table(self) -> int:
        frame = self.pmm.alloc_frame()
        self.memory.zero_frame(frame)
        return frame

    def _page_table(self, virt: int, create: bool, flags: int = 0) -> Optional[int]:
        """Return the physical address of the last-level table for ``virt``."""
        table = self.pml4_phys
        for shift in _LEVEL_SHIFTS:
            slot = table + _index(virt, shift) * ENTRY_SIZE
            entry = self.memory.read_u64(slot)
            if entry & _PRESENT:
                table = entry & ADDRESS_MASK
                continue
            if not create:
                return None
            child = self._new_table()
            self.memory.write_u64(slot, child | (flags & _TABLE_FLAGS) | _PRESENT)
            table = child
        return table

    def _pte_slot(self, virt: int, create: bool = False, flags: int = 0) -> Optional[int]:
        table = self._page_table(virt, create, flags)
        if table is None:
            return None
        return table + _index(virt, _PT_SHIFT) * ENTRY_SIZE

    # -- mapping --------------------------------------------------------
    def map(self, virt: int, phys: int, flags: int) -> None:
        """Map the 4 KiB page at ``virt`` to the frame at ``phys``."""
        if virt & PAGE_OFFSET_MASK or phys & PAGE_OFFSET_MASK:
            raise MappingError(f"unaligned mapping {virt:#x} -> {phys:#x}")
        flags = int(flags)
        slot = self._pte_slot(virt, create=True, flags=flags)
        if self.memory.read_u64(slot) & _PRESENT:
            raise MappingError(f"virtual address {virt:#x} already mapped")
        entry = (phys & ADDRESS_MASK) | (flags & ~int(PageFlag.PS)) | _PRESENT
        self.memory.write_u64(slot, entry)

    def unmap(self, virt: int, free_frame: bool = True) -> int:
        """Remove the mapping at ``virt`` and return the frame it pointed to."""
        if virt & PAGE_OFFSET_MASK:
            raise MappingError(f"unaligned virtual address {virt:#x}")
        slot = self._pte_slot(virt)
        if slot is None:
            raise MappingError(f"no page table covers {virt:#x}")
        entry = self.memory.read_u64(slot)
        if not entry & _PRESENT:
            raise MappingError(f"virtual address {virt:#x} not mapped")
        self.memory.write_u64(slot, 0)
        frame = entry & ADDRESS_MASK
        if free_frame:
            self.pmm.free_frame(frame)
        return frame

    def translate(self, virt: int) -> Optional[int]:
        """Return the physical address for ``virt``, or None when unmapped."""
        entry = self.entry(virt)
        if not entry & _PRESENT:
            return None
        return (entry & ADDRESS_MASK) | (virt & PAGE_OFFSET_MASK)

    def entry(self, virt: int) -> int:
        """Return the raw last-level entry for ``virt`` (0 when absent)."""
        slot = self._pte_slot(virt)
        if slot is None:
            return 0
        return self.memory.read_u64(slot)

    def _map_fresh_frame(self, virt: int, flags: int) -> int:
        frame = self.pmm.alloc_frame()
        self.memory.zero_frame(frame)
        try:
            self.map(virt, frame, flags)
        except (MappingError, OutOfMemoryError):
            self.pmm.free_frame(frame)
            raise
        return frame

    def alloc_page(self, virt: int, flags: int) -> int:
        """Map a fresh zeroed writable frame at ``virt`` and return it."""
        return self._map_fresh_frame(virt, int(flags) | int(PageFlag.RW))

    def map_user_page(self, virt: int, rw: bool, executable: bool) -> int:
        """Map a fresh zeroed user frame at ``virt`` and return it."""
        if virt & PAGE_OFFSET_MASK:
            raise MappingError(f"unaligned user address {virt:#x}")
        flags = PageFlag.PRESENT | PageFlag.USER
        if rw:
            flags |= PageFlag.RW
        if not executable:
            flags |= PageFlag.NOEXEC
        try:
            frame = self._map_fresh_frame(virt, int(flags))
        except MappingError:
            log.warning("user page mapping failed at %#018x", virt)
            raise
        if not rw:
            slot = self._pte_slot(virt)
            entry = self.memory.read_u64(slot)
            self.memory.write_u64(slot, entry & ~int(PageFlag.RW))
        return frame

    def map_user_code(self, virt: int) -> int:
        """Map a read-only executable user page."""
        return self.map_user_page(virt, rw=False, executable=True)

    def map_user_data(self, virt: int) -> int:
        """Map a writable non-executable user page."""
        return self.map_user_page(virt, rw=True, executable=False)