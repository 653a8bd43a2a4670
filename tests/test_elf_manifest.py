import struct

import pytest

from secmm.elf_manifest import (
    SECOS_NOTE_TYPE,
    Manifest,
    ManifestFlag,
    ManifestFormatError,
    ManifestNotFoundError,
    ManifestRangeError,
    ManifestUnsupportedError,
    parse_manifest,
    validate_manifest,
)

EHDR_SIZE = 64
PHDR_SIZE = 56


def make_note(name=b"SECOS\x00", note_type=SECOS_NOTE_TYPE, desc=None):
    if desc is None:
        desc = struct.pack("<IIQQ", 1, 0x3, 0x100000, 0x100000000)
    pad = lambda b: b + bytes((-len(b)) % 4)
    return struct.pack("<III", len(name), len(desc), note_type) + pad(name) + pad(desc)


def make_elf(notes, p_type=4, phnum=1, phentsize=PHDR_SIZE, phoff=EHDR_SIZE,
             offset_extra=0, truncate=None):
    note_off = EHDR_SIZE + PHDR_SIZE * phnum
    ehdr = struct.pack(
        "<16sHHIQQQIHHHHHH",
        b"\x7fELF" + bytes(12), 2, 0x3E, 1, 0x100000000, phoff, 0, 0,
        EHDR_SIZE, phentsize, phnum, 0, 0, 0,
    )
    phdrs = b"".join(
        struct.pack("<IIQQQQQQ", p_type, 4, note_off + offset_extra, 0, 0,
                    len(notes), len(notes), 4)
        for _ in range(phnum)
    )
    data = ehdr + phdrs + notes
    return data if truncate is None else data[:truncate]


def test_parse_round_trip():
    manifest = parse_manifest(make_elf(make_note()))
    assert manifest == Manifest(1, 0x3, 0x100000, 0x100000000)
    assert manifest.required == ManifestFlag.REQUIRE_WX_BLOCK | ManifestFlag.REQUIRE_STACK_GUARD


def test_second_note_found():
    notes = make_note(name=b"GNU\x00", note_type=3) + make_note()
    assert parse_manifest(make_elf(notes)).version == 1


def test_short_buffer():
    with pytest.raises(ManifestFormatError):
        parse_manifest(b"\x7fELF")


def test_no_program_headers():
    with pytest.raises(ManifestNotFoundError):
        parse_manifest(make_elf(make_note(), phoff=0))


def test_wrong_phentsize():
    with pytest.raises(ManifestFormatError):
        parse_manifest(make_elf(make_note(), phentsize=32))


def test_header_beyond_image():
    with pytest.raises(ManifestRangeError):
        parse_manifest(make_elf(b"", p_type=1, phnum=2, truncate=EHDR_SIZE + PHDR_SIZE + 10))


def test_note_segment_beyond_image():
    with pytest.raises(ManifestRangeError):
        parse_manifest(make_elf(make_note(), offset_extra=8))


def test_no_note_segment():
    with pytest.raises(ManifestNotFoundError):
        parse_manifest(make_elf(make_note(), p_type=1))


@pytest.mark.parametrize(
    "note",
    [
        make_note(name=b"OTHER\x00"),
        make_note(note_type=0x1234),
        make_note(desc=bytes(16)),
    ],
)
def test_non_matching_notes(note):
    with pytest.raises(ManifestNotFoundError):
        parse_manifest(make_elf(note))


def test_truncated_note_not_found():
    note = make_note()
    with pytest.raises(ManifestNotFoundError):
        parse_manifest(make_elf(note[:-4]))


def test_validate_matching_entry():
    manifest = Manifest(1, 0, 0, 0x100000000)
    assert validate_manifest(manifest, 0x100000000) is manifest


def test_validate_zero_hint_accepts_any_entry():
    manifest = Manifest(1, 0, 0, 0)
    assert validate_manifest(manifest, 0xDEAD000) is manifest


def test_validate_entry_mismatch():
    with pytest.raises(ManifestUnsupportedError):
        validate_manifest(Manifest(1, 0, 0, 0x100000000), 0x100001000)


def test_validate_missing():
    with pytest.raises(ManifestFormatError):
        validate_manifest(None, 0)