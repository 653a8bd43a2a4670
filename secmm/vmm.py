"""Kernel virtual memory manager: physmap, user spaces, W^X and page faults."""

from __future__ import annotations

import logging
from dataclasses import dataclass
from typing import Optional

from .paging import (
    ADDRESS_MASK,
    PAGE_SIZE,
    PHYSMAP_BASE,
    PT_ENTRIES,
    USER_CODE_BASE,
    USER_STACK_TOP,
    AddressSpace,
    MappingError,
    PageFlag,
)
from .pmm import OutOfMemoryError, PhysicalMemory, PhysicalMemoryManager

log = logging.getLogger(__name__)

HUGE_PAGE_SIZE = 2 * 1024 * 1024
GIGABYTE = 1 << 30
MAX_REGIONS = 32
DEFAULT_STACK_PAGES = 4
KERNEL_HALF_BASE = 0xFFFF800000000000

ENTRY_SIZE = 8
_INDEX_MASK = PT_ENTRIES - 1

_PRESENT = int(PageFlag.PRESENT)
_RW = int(PageFlag.RW)
_USER = int(PageFlag.USER)
_PS = int(PageFlag.PS)
_NOEXEC = int(PageFlag.NOEXEC)

_PHYSMAP_PML4_INDEX = (PHYSMAP_BASE >> 39) & _INDEX_MASK
_PHYSMAP_PDPT_START = (PHYSMAP_BASE >> 30) & _INDEX_MASK


def _align_up(value: int, alignment: int) -> int:
    return (value + alignment - 1) & ~(alignment - 1)


def _page_range(start: int, end: int) -> range:
    return range(start & ~0xFFF, _align_up(end, PAGE_SIZE), PAGE_SIZE)


@dataclass(frozen=True)
class KernelSections:
    """Boundaries of the kernel image sections and the boot stack."""

    text_start: int
    text_end: int
    rodata_start: int
    rodata_end: int
    data_start: int
    data_end: int
    bss_start: int
    bss_end: int
    stack_bottom: int
    stack_top: int


@dataclass(frozen=True)
class Region:
    """A virtual range whose pages are allocated on first touch."""

    start: int
    size: int
    flags: int

    def __contains__(self, addr: int) -> bool:
        return self.start <= addr < self.start + self.size


class PageFaultError(Exception):
    """A page fault that could not be resolved."""

    def __init__(self, address: int, error_code: int) -> None:
        super().__init__(
            f"unhandled page fault at {address:#018x} "
            f"({describe_fault_error(error_code)})"
        )
        self.address = address
        self.error_code = error_code


def describe_fault_error(error_code: int) -> str:
    """Decode the bits of a page fault error code into words."""
    words = [
        "present" if error_code & 1 else "not-present",
        "write" if error_code & 2 else "read",
        "user" if error_code & 4 else "kernel",
    ]
    if error_code & 8:
        words.append("rsvd")
    if error_code & 16:
        words.append("instr")
    return " ".join(words)


class VirtualMemoryManager:
    """Owns the kernel address space and creates user address spaces."""

    def __init__(
        self,
        memory: PhysicalMemory,
        pmm: PhysicalMemoryManager,
        kernel_space: Optional[AddressSpace] = None,
    ) -> None:
        self.memory = memory
        self.pmm = pmm
        self.kernel_space = kernel_space or AddressSpace(memory, pmm)
        self.current_space = self.kernel_space
        self.user_spaces: list[AddressSpace] = []
        self.regions: list[Region] = []
        self.physmap_initialized = False
        self.physmap_limit = 0
        log.info("VMM init (CR3= %#018x)", self.kernel_space.pml4_phys)

    # -- raw table access ----------------------------------------------
    def _read(self, table: int, index: int) -> int:
        return self.memory.read_u64(table + index * ENTRY_SIZE)

    def _write(self, table: int, index: int, value: int) -> None:
        self.memory.write_u64(table + index * ENTRY_SIZE, value)

    def _new_table(self) -> int:
        frame = self.pmm.alloc_frame()
        self.memory.zero_frame(frame)
        return frame

    def _kernel_pte_slot(self, virt: int) -> Optional[int]:
        table = self.kernel_space.pml4_phys
        for shift in (39, 30, 21):
            entry = self._read(table, (virt >> shift) & _INDEX_MASK)
            if not entry & _PRESENT:
                return None
            table = entry & ADDRESS_MASK
        return table + ((virt >> 12) & _INDEX_MASK) * ENTRY_SIZE

    # -- physmap --------------------------------------------------------
    def _fill_physmap(self, pdpt: int, cursor: int, target: int) -> int:
        while cursor < target:
            pdpt_i = _PHYSMAP_PDPT_START + ((cursor >> 30) & _INDEX_MASK)
            if pdpt_i >= PT_ENTRIES:
                log.warning("physmap exceeds PDPT range")
                break
            entry = self._read(pdpt, pdpt_i)
            if entry & _PRESENT:
                pdt = entry & ADDRESS_MASK
            else:
                try:
                    pdt = self._new_table()
                except OutOfMemoryError:
                    log.error("physmap: PDT allocation failed")
                    break
                self._write(pdpt, pdpt_i, pdt | _PRESENT | _RW)
            for pdt_i in range(PT_ENTRIES):
                if cursor >= target:
                    break
                if ((PHYSMAP_BASE + cursor) >> 21) & _INDEX_MASK != pdt_i:
                    continue
                if not self._read(pdt, pdt_i) & _PRESENT:
                    self._write(
                        pdt, pdt_i,
                        (cursor & ADDRESS_MASK) | _PRESENT | _RW | _PS | _NOEXEC,
                    )
                cursor += HUGE_PAGE_SIZE
        return cursor

    def init_physmap(self) -> None:
        """Map all physical memory at the physmap base with 2 MiB pages."""
        if self.physmap_initialized:
            return
        total = self.pmm.total_memory
        if total == 0:
            log.warning("physmap: total memory = 0")
            return
        limit = _align_up(total, HUGE_PAGE_SIZE)
        pml4 = self.kernel_space.pml4_phys
        entry = self._read(pml4, _PHYSMAP_PML4_INDEX)
        if entry & _PRESENT:
            pdpt = entry & ADDRESS_MASK
        else:
            pdpt = self._new_table()
            self._write(pml4, _PHYSMAP_PML4_INDEX, pdpt | _PRESENT | _RW)
        self._fill_physmap(pdpt, 0, limit)
        self.physmap_initialized = True
        self.physmap_limit = limit
        log.info("physmap initialized up to %#018x", limit)

    def extend_physmap(self, phys_end: int) -> None:
        """Grow the physmap so that it covers at least ``phys_end``."""
        if not self.physmap_initialized:
            return
        target = _align_up(phys_end, HUGE_PAGE_SIZE)
        if target <= self.physmap_limit:
            return
        entry = self._read(self.kernel_space.pml4_phys, _PHYSMAP_PML4_INDEX)
        if not entry & _PRESENT:
            log.error("extend physmap: PDPT missing")
            return
        self.physmap_limit = self._fill_physmap(
            entry & ADDRESS_MASK, self.physmap_limit, target
        )
        log.info("physmap extended to %#018x", self.physmap_limit)

    # -- address spaces -------------------------------------------------
    def create_user_space(self) -> AddressSpace:
        """Create a user address space sharing the kernel's top-level entries."""
        pml4 = self._new_table()
        kernel_pml4 = self.kernel_space.pml4_phys
        for index in range(PT_ENTRIES):
            entry = self._read(kernel_pml4, index)
            if entry & _PRESENT:
                self._write(pml4, index, entry & ~_USER)
        # Drop whatever covers the user range so user pages get their own tables.
        for addr in range(USER_CODE_BASE, USER_STACK_TOP, GIGABYTE):
            entry = self._read(pml4, (addr >> 39) & _INDEX_MASK)
            if not entry & _PRESENT:
                continue
            pdpt = entry & ADDRESS_MASK
            pdpt_i = (addr >> 30) & _INDEX_MASK
            if self._read(pdpt, pdpt_i) & _PRESENT:
                self._write(pdpt, pdpt_i, 0)
        space = AddressSpace(self.memory, self.pmm, pml4_phys=pml4)
        self.user_spaces.append(space)
        log.info("new address space CR3=%#018x", space.pml4_phys)
        return space

    def destroy_space(self, space: AddressSpace) -> None:
        """Forget a user address space created by this manager."""
        if space is None:
            raise ValueError("no address space given")
        try:
            self.user_spaces.remove(space)
        except ValueError:
            raise ValueError(f"{space!r} is not a live user space") from None

    def switch_space(self, space: AddressSpace) -> None:
        """Make ``space`` the active address space."""
        if space is None:
            raise ValueError("no address space given")
        self.current_space = space

    def alloc_user_stack(self, space: Optional[AddressSpace], pages: int) -> int:
        """Map a user stack below the stack top and return the top.

        The page just under the lowest stack page stays unmapped as a guard.
        Without a space the kernel space is used.
        """
        target = space if space is not None else self.kernel_space
        if pages <= 0:
            pages = DEFAULT_STACK_PAGES
        top = USER_STACK_TOP
        for i in range(pages):
            try:
                target.map_user_data(top - (i + 1) * PAGE_SIZE)
            except (MappingError, OutOfMemoryError):
                log.warning("user stack page allocation failed")
                break
        return top

    def harden_user_space(self, space: Optional[AddressSpace]) -> None:
        """Clear the USER bit on top-level entries whose base is in the kernel half."""
        if space is None:
            return
        pml4 = space.pml4_phys
        for index in range(PT_ENTRIES):
            entry = self._read(pml4, index)
            if not entry & _PRESENT:
                continue
            if (index << 39) >= KERNEL_HALF_BASE:
                self._write(pml4, index, entry & ~_USER)
        log.info("hardened user space: cleared USER bit on high kernel regions")

    # -- kernel W^X -----------------------------------------------------
    def _split_identity(self, base: int) -> Optional[int]:
        """Turn the 2 MiB identity page at ``base`` into a table of 4 KiB pages."""
        pml4 = self.kernel_space.pml4_phys
        entry = self._read(pml4, (base >> 39) & _INDEX_MASK)
        if not entry & _PRESENT:
            return None
        pdpt = entry & ADDRESS_MASK
        entry = self._read(pdpt, (base >> 30) & _INDEX_MASK)
        if not entry & _PRESENT:
            return None
        pdt = entry & ADDRESS_MASK
        pdt_i = (base >> 21) & _INDEX_MASK
        entry = self._read(pdt, pdt_i)
        if not entry & _PS:
            return entry & ADDRESS_MASK
        try:
            pt = self._new_table()
        except OutOfMemoryError:
            log.error("page table allocation failed")
            return None
        phys_base = entry & ADDRESS_MASK
        self.memory.write(pt, b"".join(
            ((phys_base + i * PAGE_SIZE) | _PRESENT | _RW).to_bytes(8, "little")
            for i in range(PT_ENTRIES)
        ))
        self._write(pdt, pdt_i, pt | _PRESENT | _RW)
        return pt

    def _set_page_flags(self, virt: int, clear: int, set_: int) -> None:
        self._split_identity(virt & ~(HUGE_PAGE_SIZE - 1))
        slot = self._kernel_pte_slot(virt)
        if slot is None:
            return
        entry = self.memory.read_u64(slot)
        if not entry & _PRESENT:
            return
        self.memory.write_u64(slot, (entry & ~clear) | set_)

    def protect_kernel_sections(self, sections: KernelSections) -> None:
        """Apply W^X: text RX, rodata R/NX, data, bss and stack RW/NX."""
        log.info("protecting kernel sections (W^X)")
        low = min(sections.text_start, sections.rodata_start, sections.data_start,
                  sections.bss_start, sections.stack_bottom)
        start = low & ~(HUGE_PAGE_SIZE - 1)
        end = _align_up(sections.stack_top, HUGE_PAGE_SIZE)
        for base in range(start, end, HUGE_PAGE_SIZE):
            self._split_identity(base)

        for virt in _page_range(sections.text_start, sections.text_end):
            self._set_page_flags(virt, _RW | _NOEXEC, 0)
        for virt in _page_range(sections.rodata_start, sections.rodata_end):
            self._set_page_flags(virt, _RW, _NOEXEC)
        writable = (
            (sections.data_start, sections.data_end),
            (sections.bss_start, sections.bss_end),
            (sections.stack_bottom, sections.stack_top),
        )
        for first, last in writable:
            for virt in _page_range(first, last):
                self._set_page_flags(virt, _NOEXEC, _NOEXEC | _RW)
        log.info("W^X applied: text RX, rodata R/NX, data+bss RW/NX, stack RW/NX")

    # -- demand paging --------------------------------------------------
    def region_add(self, start: int, size: int, flags: int) -> Region:
        """Register a demand-zero region."""
        if len(self.regions) >= MAX_REGIONS:
            raise ValueError(f"region table full ({MAX_REGIONS} entries)")
        region = Region(start, size, int(flags))
        self.regions.append(region)
        return region

    def region_find(self, addr: int) -> Optional[Region]:
        """Return the first region holding ``addr``, or None."""
        return next((r for r in self.regions if addr in r), None)

    def handle_page_fault(self, fault_addr: int, error_code: int) -> int:
        """Resolve a fault inside a demand region; return the frame mapped."""
        log.warning("page fault at %#018x EC=%#018x (%s)", fault_addr, error_code,
                    describe_fault_error(error_code))
        region = self.region_find(fault_addr)
        if region is not None and not error_code & 1:
            page = fault_addr & ~0xFFF
            try:
                frame = self.kernel_space.alloc_page(page, region.flags)
            except (MappingError, OutOfMemoryError):
                log.error("demand allocation failed")
            else:
                log.info("demand allocated page %#018x", page)
                return frame
        raise PageFaultError(fault_addr, error_code)

    def describe_entry(self, virt: int) -> str:
        """Describe where ``virt`` maps in the kernel space."""
        phys = self.kernel_space.translate(virt)
        if not phys:
            return f"Virt 0x{virt:016X} -> unmapped"
        return f"Virt 0x{virt:016X} -> phys 0x{phys:016X}"