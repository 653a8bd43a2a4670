import struct

import pytest

from secmm.multiboot import (
    FB_TYPE_RGB,
    TAG_FRAMEBUFFER,
    TAG_MMAP,
    MemoryRegion,
    MemoryType,
    Multiboot2Tag,
    iter_multiboot2_tags,
    parse_multiboot1_info,
    parse_multiboot1_mmap,
    parse_multiboot2_framebuffer,
    parse_multiboot2_mmap,
)


def _mb1_info(flags=0, mem_lower=0, mem_upper=0, mmap_length=0, mmap_addr=0):
    values = [flags, mem_lower, mem_upper] + [0] * 5 + [0] * 3
    values += [mmap_length, mmap_addr] + [0] * 7 + [0] * 4
    return struct.pack("<20I4H", *values)


def _tag(tag_type, body):
    size = 8 + len(body)
    raw = struct.pack("<II", tag_type, size) + body
    return raw + b"\0" * ((-len(raw)) % 8)


def _mb2(*tags):
    body = b"".join(tags) + struct.pack("<II", 0, 8)
    return struct.pack("<II", 8 + len(body), 0) + body


def _mmap_tag(entries):
    body = struct.pack("<II", 24, 0)
    body += b"".join(struct.pack("<QQII", a, l, t, 0) for a, l, t in entries)
    return _tag(TAG_MMAP, body)


def test_parse_mb1_info_fields():
    info = parse_multiboot1_info(_mb1_info(flags=0x41, mem_lower=640, mem_upper=4096,
                                           mmap_length=48, mmap_addr=0x9000))
    assert info.flags == 0x41
    assert info.mem_lower == 640
    assert info.mem_upper == 4096
    assert info.mmap_length == 48
    assert info.mmap_addr == 0x9000
    assert info.has_mem_info and info.has_mmap


def test_mb1_flags_absent():
    info = parse_multiboot1_info(_mb1_info(flags=0))
    assert not info.has_mem_info
    assert not info.has_mmap


def test_mb1_info_truncated():
    with pytest.raises(ValueError):
        parse_multiboot1_info(_mb1_info()[:40])


def test_mb1_mmap_entries():
    raw = struct.pack("<IQQI", 20, 0, 0x9FC00, 1) + struct.pack("<IQQI", 20, 0x100000, 0x7F00000, 2)
    regions = parse_multiboot1_mmap(raw)
    assert regions == [
        MemoryRegion(0, 0x9FC00, MemoryType.AVAILABLE),
        MemoryRegion(0x100000, 0x7F00000, MemoryType.RESERVED),
    ]
    assert regions[0].available and not regions[1].available


def test_mb1_mmap_ignores_partial_entry():
    raw = struct.pack("<IQQI", 20, 0x1000, 0x2000, 1) + b"\x01\x02\x03"
    regions = parse_multiboot1_mmap(raw)
    assert len(regions) == 1
    assert regions[0].end == 0x3000


def test_iter_tags_stops_at_end():
    data = _mb2(_tag(1, b"cmd\0"), _tag(2, b"grub\0"))
    tags = list(iter_multiboot2_tags(data))
    assert [t.type for t in tags] == [1, 2]
    assert tags[0].data[8:] == b"cmd\0"


def test_iter_tags_truncated_raises():
    data = _mb2(_tag(1, b"cmd\0"))[:-8]
    with pytest.raises(ValueError):
        list(iter_multiboot2_tags(data))


def test_mb2_mmap_entries():
    data = _mb2(_mmap_tag([(0, 0x9FC00, 1), (0x100000, 0x3F00000, 1), (0xF0000, 0x10000, 2)]))
    (tag,) = list(iter_multiboot2_tags(data))
    regions = parse_multiboot2_mmap(tag)
    assert [(r.addr, r.length, r.type) for r in regions] == [
        (0, 0x9FC00, 1), (0x100000, 0x3F00000, 1), (0xF0000, 0x10000, 2)
    ]


def test_mb2_mmap_wrong_tag_type():
    with pytest.raises(ValueError):
        parse_multiboot2_mmap(Multiboot2Tag(1, 8, struct.pack("<II", 1, 8)))


def test_mb2_mmap_zero_entry_size_rejected():
    body = struct.pack("<II", 0, 0)
    tag = Multiboot2Tag(TAG_MMAP, 16, struct.pack("<II", TAG_MMAP, 16) + body)
    with pytest.raises(ValueError):
        parse_multiboot2_mmap(tag)


def test_framebuffer_rgb():
    body = struct.pack("<QIIIBBBB", 0xFD000000, 4096, 1024, 768, 32, FB_TYPE_RGB, 0, 0)
    body += bytes([8, 16, 8, 8, 8, 0])
    (tag,) = list(iter_multiboot2_tags(_mb2(_tag(TAG_FRAMEBUFFER, body))))
    fb = parse_multiboot2_framebuffer(tag)
    assert (fb.addr, fb.pitch, fb.width, fb.height, fb.bpp) == (0xFD000000, 4096, 1024, 768, 32)
    assert fb.rgb == ((8, 16), (8, 8), (8, 0))


def test_framebuffer_indexed_has_no_rgb():
    body = struct.pack("<QIIIBBBB", 0xB8000, 160, 80, 25, 8, 0, 0, 0)
    (tag,) = list(iter_multiboot2_tags(_mb2(_tag(TAG_FRAMEBUFFER, body))))
    fb = parse_multiboot2_framebuffer(tag)
    assert fb.rgb is None
    assert fb.width == 80


def test_framebuffer_too_short():
    tag = Multiboot2Tag(TAG_FRAMEBUFFER, 16, struct.pack("<IIQ", TAG_FRAMEBUFFER, 16, 0))
    with pytest.raises(ValueError):
        parse_multiboot2_framebuffer(tag)