import struct

import pytest

from secmm.multiboot import MemoryRegion, MemoryType, parse_multiboot1_info
from secmm.pmm import (
    DEFAULT_KERNEL_END,
    FRAME_SIZE,
    IDENTITY_LIMIT,
    MAPPED_LIMIT,
    OutOfMemoryError,
    PhysicalMemory,
    PhysicalMemoryManager,
)

MB = 1024 * 1024


def _info(flags=0, mem_upper=0):
    values = [flags, 0, mem_upper] + [0] * 17 + [0] * 4
    return parse_multiboot1_info(struct.pack("<20I4H", *values))


def _mb2(entries):
    body = struct.pack("<II", 24, 0) + b"".join(
        struct.pack("<QQII", a, l, t, 0) for a, l, t in entries)
    tag = struct.pack("<II", 6, 8 + len(body)) + body
    tag += b"\0" * ((-len(tag)) % 8)
    rest = tag + struct.pack("<II", 0, 8)
    return struct.pack("<II", 8 + len(rest), 0) + rest


@pytest.fixture
def pmm():
    manager = PhysicalMemoryManager()
    manager.build([MemoryRegion(0x100000, 63 * MB)])
    return manager


# --- PhysicalMemory -------------------------------------------------------

def test_memory_reads_zero_when_unwritten():
    mem = PhysicalMemory()
    assert mem.read(0x5000, 16) == bytes(16)


def test_memory_write_read_across_frames():
    mem = PhysicalMemory()
    data = bytes(range(200))
    mem.write(FRAME_SIZE - 100, data)
    assert mem.read(FRAME_SIZE - 100, 200) == data


def test_memory_u64_round_trip():
    mem = PhysicalMemory()
    mem.write_u64(0x1008, (1 << 63) | 0x1234)
    assert mem.read_u64(0x1008) == (1 << 63) | 0x1234


def test_memory_zero_frame():
    mem = PhysicalMemory()
    mem.write(0x2000, b"\xff" * 32)
    mem.zero_frame(0x2000)
    assert mem.read(0x2000, 32) == bytes(32)


def test_memory_zero_frame_unaligned():
    with pytest.raises(ValueError):
        PhysicalMemory().zero_frame(0x2004)


def test_memory_size_limit():
    mem = PhysicalMemory(size=2 * FRAME_SIZE)
    with pytest.raises(ValueError):
        mem.write(2 * FRAME_SIZE - 4, b"12345678")


# --- PhysicalMemoryManager ------------------------------------------------

def test_build_totals(pmm):
    assert pmm.total_memory == 63 * MB
    assert pmm.max_phys_addr == 0x100000 + 63 * MB
    assert pmm.total_frames * FRAME_SIZE == 64 * MB
    assert pmm.free_memory + pmm.used_memory == pmm.total_frames * FRAME_SIZE


def test_kernel_area_reserved(pmm):
    assert pmm.is_used(0)
    assert pmm.is_used(DEFAULT_KERNEL_END)
    assert pmm.alloc_frame() > DEFAULT_KERNEL_END


def test_build_clamps_to_mapped_limit():
    manager = PhysicalMemoryManager()
    manager.build([MemoryRegion(0x100000, 1024 * MB)])
    assert manager.total_frames * FRAME_SIZE == MAPPED_LIMIT


def test_alloc_and_free(pmm):
    free_before = pmm.free_memory
    first = pmm.alloc_frame()
    second = pmm.alloc_frame()
    assert first % FRAME_SIZE == 0 and second % FRAME_SIZE == 0
    assert first != second
    assert pmm.is_used(first) and pmm.is_used(second)
    assert pmm.free_memory == free_before - 2 * FRAME_SIZE
    pmm.free_frame(first)
    assert not pmm.is_used(first)
    assert pmm.alloc_frame() == first


def test_double_free_keeps_count(pmm):
    addr = pmm.alloc_frame()
    pmm.free_frame(addr)
    used = pmm.used_frames
    pmm.free_frame(addr)
    assert pmm.used_frames == used


def test_exhaustion_raises():
    manager = PhysicalMemoryManager(kernel_end=0x1000)
    manager.build([MemoryRegion(0, 16 * FRAME_SIZE)])
    available = manager.total_frames - manager.used_frames
    frames = {manager.alloc_frame() for _ in range(available)}
    assert len(frames) == available
    with pytest.raises(OutOfMemoryError):
        manager.alloc_frame()


def test_kernel_covers_everything():
    manager = PhysicalMemoryManager()
    manager.build([MemoryRegion(0, 0x100000)])
    assert manager.free_memory == 0
    with pytest.raises(OutOfMemoryError):
        manager.alloc_frame()


def test_init_mb1_without_any_info_uses_64mb():
    manager = PhysicalMemoryManager()
    manager.init_mb1(_info(flags=0))
    assert manager.total_memory == 64 * MB - 0x100000


def test_init_mb1_uses_mem_upper():
    manager = PhysicalMemoryManager()
    manager.init_mb1(_info(flags=1, mem_upper=32 * 1024))
    assert manager.total_memory == 32 * MB - 0x100000


def test_init_mb1_mmap_flag_without_map():
    with pytest.raises(ValueError):
        PhysicalMemoryManager().init_mb1(_info(flags=1 << 6))


def test_init_mb2_regions():
    manager = PhysicalMemoryManager()
    manager.init_mb2(_mb2([(0, 0x9FC00, 1), (0x100000, 127 * MB, 1), (0xF0000, 0x10000, 2)]))
    assert manager.total_memory == 0x9FC00 + 127 * MB
    assert manager.max_phys_addr == 0x100000 + 127 * MB


def test_init_mb2_no_regions_fallback():
    manager = PhysicalMemoryManager()
    manager.init_mb2(_mb2([(0xF0000, 0x10000, 2)]))
    assert manager.total_memory == 63 * MB


def test_init_mb2_low_memory_only():
    manager = PhysicalMemoryManager()
    manager.init_mb2(_mb2([(0, 0x9FC00, 1)]))
    assert manager.total_memory == 0x9FC00 + 255 * MB


def test_format_stats(pmm):
    text = pmm.format_stats()
    assert f"Total memory:   {pmm.total_memory // MB} MB" in text
    assert f"Free memory:    {pmm.free_memory // MB} MB" in text