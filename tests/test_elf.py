import struct

import pytest

from kmodtools.elf import Elf, ElfError, ModVersion, SymbolBind


def build_elf(sections, *, bits=64, msb=False, machine=62, shentsize=None):
    """Build a minimal ELF image holding *sections* as (name, data, flags)."""
    e = ">" if msb else "<"
    ehdr_size = 64 if bits == 64 else 52
    shdr_size = 64 if bits == 64 else 40

    names = [name for name, _, _ in sections] + [".shstrtab"]
    shstrtab = bytearray(b"\0")
    name_offsets = []
    for name in names:
        name_offsets.append(len(shstrtab))
        shstrtab += name.encode() + b"\0"

    datas = [data for _, data, _ in sections] + [bytes(shstrtab)]
    flags = [fl for _, _, fl in sections] + [0]
    body = bytearray()
    offsets = []
    for data in datas:
        offsets.append(ehdr_size + len(body))
        body += data
    shoff = ehdr_size + len(body)

    shdrs = bytes(shdr_size)
    for nameoff, off, data, fl in zip(name_offsets, offsets, datas, flags):
        if bits == 64:
            shdrs += struct.pack(e + "IIQQQQIIQQ", nameoff, 1, fl, 0, off, len(data), 0, 0, 1, 0)
        else:
            shdrs += struct.pack(e + "IIIIIIIIII", nameoff, 1, fl, 0, off, len(data), 0, 0, 1, 0)

    count = len(datas) + 1
    ident = b"\x7fELF" + bytes([2 if bits == 64 else 1, 2 if msb else 1, 1]) + bytes(9)
    if bits == 64:
        ehdr = ident + struct.pack(
            e + "HHIQQQIHHHHHH", 1, machine, 1, 0, 0, shoff, 0, 64, 0, 0,
            shentsize or 64, count, count - 1,
        )
    else:
        ehdr = ident + struct.pack(
            e + "HHIIIIIHHHHHH", 1, machine, 1, 0, 0, shoff, 0, 52, 0, 0,
            shentsize or 40, count, count - 1,
        )
    return ehdr + bytes(body) + shdrs


def modversion(crc, name, *, bits=64, msb=False):
    e = ">" if msb else "<"
    if bits == 64:
        return struct.pack(e + "Q", crc) + name.encode().ljust(56, b"\0")
    return struct.pack(e + "I", crc) + name.encode().ljust(60, b"\0")


MODINFO = b"\0\0license=GPL\0author=Someone\0\0vermagic=6.1.0 SMP\0alias=foo\0"


def test_not_elf():
    with pytest.raises(ElfError):
        Elf(b"NOTANELF" * 20)


def test_too_short():
    with pytest.raises(ElfError):
        Elf(b"\x7fELF")


def test_bad_class():
    data = bytearray(build_elf([(".modinfo", MODINFO, 0)]))
    data[4] = 7
    with pytest.raises(ElfError):
        Elf(bytes(data))


def test_bad_section_entry_size():
    with pytest.raises(ElfError):
        Elf(build_elf([(".modinfo", MODINFO, 0)], shentsize=50))


@pytest.mark.parametrize("bits,msb", [(64, False), (64, True), (32, False), (32, True)])
def test_header_fields(bits, msb):
    elf = Elf(build_elf([(".modinfo", MODINFO, 0)], bits=bits, msb=msb, machine=2))
    assert elf.is_32bit == (bits == 32)
    assert elf.msb == msb
    assert elf.machine == 2


def test_get_section_locates_data():
    payload = b"hello\0world\0"
    elf = Elf(build_elf([(".modinfo", MODINFO, 0), ("custom", payload, 0)]))
    index, offset, size = elf.get_section("custom")
    assert elf.data[offset:offset + size] == payload
    assert elf.section_info(index)[2] == "custom"
    assert elf.get_section("missing") is None


def test_section_info_rejects_null_index():
    elf = Elf(build_elf([(".modinfo", MODINFO, 0)]))
    with pytest.raises(ElfError):
        elf.section_info(0)


def test_cstring_reads_first_string():
    elf = Elf(build_elf([("custom", b"alpha\0beta\0", 0)]))
    _, offset, _ = elf.get_section("custom")
    assert elf.cstring(offset) == "alpha"


@pytest.mark.parametrize("bits,msb", [(64, False), (32, True)])
def test_modinfo_strings(bits, msb):
    elf = Elf(build_elf([(".modinfo", MODINFO, 0)], bits=bits, msb=msb))
    assert elf.modinfo_strings() == [
        "license=GPL",
        "author=Someone",
        "vermagic=6.1.0 SMP",
        "alias=foo",
    ]


def test_modinfo_unterminated_last_string():
    elf = Elf(build_elf([(".modinfo", b"a=1\0b=2", 0)]))
    assert elf.modinfo_strings() == ["a=1", "b=2"]


def test_modinfo_missing_section():
    elf = Elf(build_elf([("other", b"x\0", 0)]))
    with pytest.raises(ElfError):
        elf.modinfo_strings()


@pytest.mark.parametrize("bits,msb", [(64, False), (64, True), (32, False), (32, True)])
def test_modversions(bits, msb):
    versions = modversion(0x1234, "module_layout", bits=bits, msb=msb) + modversion(
        0xDEAD, ".foo", bits=bits, msb=msb
    )
    elf = Elf(build_elf([("__versions", versions, 0)], bits=bits, msb=msb))
    assert elf.modversions() == [
        ModVersion(0x1234, SymbolBind.UNDEF, "module_layout"),
        ModVersion(0xDEAD, SymbolBind.UNDEF, "foo"),
    ]


def test_modversions_empty_and_missing():
    assert Elf(build_elf([("__versions", b"", 0)])).modversions() == []
    with pytest.raises(ElfError):
        Elf(build_elf([(".modinfo", MODINFO, 0)])).modversions()


def test_modversions_bad_size():
    elf = Elf(build_elf([("__versions", modversion(1, "a") + b"xyz", 0)]))
    with pytest.raises(ElfError):
        elf.modversions()


def test_modversions_name_too_long():
    entry = struct.pack("<Q", 1) + b"x" * 56
    elf = Elf(build_elf([("__versions", entry, 0)]))
    with pytest.raises(ElfError):
        elf.modversions()


def test_strip_vermagic():
    original = build_elf([(".modinfo", MODINFO, 0)])
    elf = Elf(original)
    stripped = elf.strip(force_vermagic=True)
    assert len(stripped) == len(original)
    assert elf.data == original
    assert Elf(stripped).modinfo_strings() == [
        "license=GPL",
        "author=Someone",
        "alias=foo",
    ]


def test_strip_vermagic_missing():
    elf = Elf(build_elf([(".modinfo", b"license=GPL\0alias=foo\0", 0)]))
    with pytest.raises(ElfError):
        elf.strip(force_vermagic=True)


@pytest.mark.parametrize("bits,msb", [(64, False), (32, True)])
def test_strip_modversion_clears_alloc(bits, msb):
    versions = modversion(7, "module_layout", bits=bits, msb=msb)
    original = build_elf(
        [(".modinfo", MODINFO, 0), ("__versions", versions, 0x6)], bits=bits, msb=msb
    )
    stripped = Elf(Elf(original).strip(force_modversion=True))
    index, _, _ = stripped.get_section("__versions")
    flag_size = 4 if bits == 32 else 8
    flags = stripped.read_uint(
        stripped.section_offset + index * stripped.section_entry_size + 8, flag_size
    )
    assert flags & 0x2 == 0
    assert flags & 0x4 == 0x4
    assert stripped.modinfo_strings() == Elf(original).modinfo_strings()


def test_strip_without_versions_section_is_unchanged():
    original = build_elf([(".modinfo", MODINFO, 0)])
    assert Elf(original).strip(force_modversion=True) == original


def test_strip_needs_a_flag():
    elf = Elf(build_elf([(".modinfo", MODINFO, 0)]))
    with pytest.raises(ValueError):
        elf.strip()