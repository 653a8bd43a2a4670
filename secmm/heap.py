"""First-fit kernel heap built from physical frames."""

from __future__ import annotations

import logging
from dataclasses import dataclass
from typing import Optional

from .pmm import FRAME_SIZE, OutOfMemoryError, PhysicalMemoryManager

log = logging.getLogger(__name__)

HEADER_SIZE = 24
SIZE_ALIGNMENT = 8
SPLIT_SLACK = 16


def _align_up(value: int, alignment: int) -> int:
    return (value + alignment - 1) & ~(alignment - 1)


@dataclass
class _Block:
    addr: int
    size: int
    is_free: bool = True

    @property
    def payload(self) -> int:
        return self.addr + HEADER_SIZE


@dataclass(frozen=True)
class HeapStats:
    """Running byte counters of the heap."""

    allocated: int
    freed: int

    @property
    def in_use(self) -> int:
        return self.allocated - self.freed


class Heap:
    """A linked list of blocks, each preceded by a header, carved from frames.

    Addresses returned by :meth:`malloc` are physical addresses of the
    payload just past a block header.
    """

    def __init__(self, pmm: PhysicalMemoryManager) -> None:
        self._pmm = pmm
        start = pmm.alloc_frame()
        self._blocks: list[_Block] = [_Block(start, FRAME_SIZE - HEADER_SIZE)]
        self._allocated = 0
        self._freed = 0
        log.info("heap initialized @ %#018x", start)

    def _split(self, index: int, size: int) -> None:
        block = self._blocks[index]
        tail = _Block(block.addr + HEADER_SIZE + size, block.size - size - HEADER_SIZE)
        self._blocks.insert(index + 1, tail)
        block.size = size

    def malloc(self, size: int) -> int:
        """Allocate ``size`` bytes and return the payload address."""
        if size <= 0:
            raise ValueError(f"cannot allocate {size} bytes")
        size = _align_up(size, SIZE_ALIGNMENT)
        for index, block in enumerate(self._blocks):
            if block.is_free and block.size >= size:
                if block.size - size > HEADER_SIZE + SPLIT_SLACK:
                    self._split(index, size)
                block.is_free = False
                self._allocated += block.size
                return block.payload
        # No fitting block: grow by one frame.
        try:
            frame = self._pmm.alloc_frame()
        except OutOfMemoryError:
            log.error("allocation failed: heap cannot expand")
            raise
        self._blocks.append(_Block(frame, FRAME_SIZE - HEADER_SIZE))
        index = len(self._blocks) - 1
        block = self._blocks[index]
        if block.size > size + HEADER_SIZE + SPLIT_SLACK:
            self._split(index, size)
        block.is_free = False
        self._allocated += block.size
        return block.payload

    def malloc_aligned(self, size: int, alignment: int) -> int:
        """Allocate ``size`` bytes and return an address aligned to ``alignment``."""
        ptr = self.malloc(size + alignment)
        return _align_up(ptr, alignment)

    def free(self, ptr: Optional[int]) -> None:
        """Release a block returned by :meth:`malloc` and merge free neighbours."""
        if ptr is None:
            return
        block = next((b for b in self._blocks if b.payload == ptr), None)
        if block is None:
            raise ValueError(f"pointer {ptr:#x} was not returned by this heap")
        if block.is_free:
            return
        block.is_free = True
        self._freed += block.size
        index = 0
        while index + 1 < len(self._blocks):
            current, following = self._blocks[index], self._blocks[index + 1]
            if current.is_free and following.is_free:
                current.size += HEADER_SIZE + following.size
                del self._blocks[index + 1]
            else:
                index += 1

    def blocks(self) -> list[tuple[int, int, bool]]:
        """Return ``(header address, payload size, is_free)`` for every block in order."""
        return [(b.addr, b.size, b.is_free) for b in self._blocks]

    def stats(self) -> HeapStats:
        return HeapStats(self._allocated, self._freed)

    def format_stats(self) -> str:
        s = self.stats()
        return (
            "\n=== Heap Statistics ===\n"
            f"Allocated:  {s.allocated} bytes\n"
            f"Freed:      {s.freed} bytes\n"
            f"In use:     {s.in_use} bytes\n\n"
        )