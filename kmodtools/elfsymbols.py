"""Symbol tables of kernel module ELF images.

:func:`symbols` lists the symbols a module exports, with their CRCs.
:func:`dependency_symbols` lists the symbols a module needs from elsewhere.
"""

from __future__ import annotations

from dataclasses import dataclass
from typing import Iterator

from .elf import (
    SECTION_KSYMTAB,
    SECTION_STRTAB,
    SECTION_SYMTAB,
    SECTION_VERSIONS,
    Elf,
    ElfError,
    ModVersion,
    SymbolBind,
)

SHN_UNDEF = 0
SHN_ABS = 0xFFF1
STB_LOCAL = 0
STB_GLOBAL = 1
STB_WEAK = 2
STT_REGISTER = 13
EM_SPARC = 2
EM_SPARCV9 = 43
CRC_PREFIX = b"__crc_"
CRC_INVALID = (1 << 64) - 1

_SYM_SIZE = {True: 16, False: 24}
# field name -> (offset, size) within a symbol table entry
_SYM_FIELDS = {
    True: {"name": (0, 4), "value": (4, 4), "info": (12, 1), "shndx": (14, 2)},
    False: {"name": (0, 4), "info": (4, 1), "shndx": (6, 2), "value": (8, 8)},
}

_BINDS = {
    STB_LOCAL: SymbolBind.LOCAL,
    STB_GLOBAL: SymbolBind.GLOBAL,
    STB_WEAK: SymbolBind.WEAK,
}


@dataclass(frozen=True)
class _Symbol:
    name_off: int
    value: int
    info: int
    shndx: int


def _decode(raw: bytes) -> str:
    return raw.decode("utf-8", "surrogateescape")


def _section(elf: Elf, name: str) -> tuple[int, int] | None:
    offset, size = elf.sections.get(name, (0, 0))
    return None if offset == 0 else (offset, size)


def _raw_cstring(elf: Elf, offset: int) -> bytes:
    end = elf.data.find(b"\0", offset)
    return elf.data[offset:end if end >= 0 else len(elf.data)]


def _symbol_table(elf: Elf) -> tuple[int, int, list[_Symbol]]:
    """Return offset and size of .strtab and the entries of .symtab after the first."""
    strtab = _section(elf, SECTION_STRTAB)
    if strtab is None:
        raise ElfError("no .strtab found")
    symtab = _section(elf, SECTION_SYMTAB)
    if symtab is None:
        raise ElfError("no .symtab found")
    symlen = _SYM_SIZE[elf.is_32bit]
    sym_off, symtablen = symtab
    if symtablen % symlen != 0:
        raise ElfError(
            f"unexpected .symtab of length {symtablen}, not multiple of {symlen}"
        )
    return strtab[0], strtab[1], list(_read_symbols(elf, sym_off, symtablen // symlen))


def _read_symbols(elf: Elf, sym_off: int, count: int) -> Iterator[_Symbol]:
    symlen = _SYM_SIZE[elf.is_32bit]
    fields = _SYM_FIELDS[elf.is_32bit]
    for index in range(1, count):
        base = sym_off + index * symlen

        def field(name: str) -> int:
            off, size = fields[name]
            return elf.read_uint(base + off, size)

        yield _Symbol(field("name"), field("value"), field("info"), field("shndx"))


def _resolve_crc(elf: Elf, crc: int, shndx: int) -> int:
    if shndx in (SHN_ABS, SHN_UNDEF):
        return crc
    try:
        offset, size, _ = elf.section_info(shndx)
    except ElfError:
        return CRC_INVALID
    if size < 4 or crc > size - 4:
        return CRC_INVALID
    return elf.read_uint(offset + crc, 4)


def _ksymtab_symbols(elf: Elf) -> list[ModVersion]:
    found = _section(elf, SECTION_KSYMTAB)
    if found is None:
        raise ElfError("no __ksymtab_strings section")
    offset, size = found
    while size > 1 and elf.data[offset] == 0:
        offset += 1
        size -= 1
    if size <= 1:
        return []
    raw = elf.data[offset:offset + size]
    if raw[-1] != 0:
        raise ElfError("section __ksymtab_strings does not end with NUL")
    return [ModVersion(0, SymbolBind.GLOBAL, _decode(part)) for part in raw.split(b"\0") if part]


def symbols(elf: Elf) -> list[ModVersion]:
    """Return the symbols exported by the module.

    The CRC symbols of the symbol table are used when there are any;
    otherwise the names in __ksymtab_strings are listed with CRC 0.
    """
    try:
        str_off, strtablen, entries = _symbol_table(elf)
    except ElfError:
        return _ksymtab_symbols(elf)

    crc_entries = []
    for sym in entries:
        if sym.name_off >= strtablen:
            return _ksymtab_symbols(elf)
        if elf.data.startswith(CRC_PREFIX, str_off + sym.name_off):
            crc_entries.append(sym)
    if not crc_entries:
        return _ksymtab_symbols(elf)

    return [
        ModVersion(
            _resolve_crc(elf, sym.value, sym.shndx),
            _BINDS.get(sym.info >> 4, SymbolBind.NONE),
            elf.cstring(str_off + sym.name_off + len(CRC_PREFIX)),
        )
        for sym in crc_entries
    ]


def _version_offsets(elf: Elf) -> list[int]:
    found = _section(elf, SECTION_VERSIONS)
    if found is None:
        return []
    verlen, _, _ = elf.modversion_lengths
    offset, size = found
    if size % verlen != 0:
        return []
    return list(range(offset, offset + size, verlen))


def _version_name(elf: Elf, offset: int) -> bytes | None:
    """Name of the version entry at *offset*, or None if it fills its field."""
    _, crclen, namlen = elf.modversion_lengths
    field = elf.data[offset + crclen:offset + crclen + namlen]
    nul = field.find(b"\0")
    return None if nul < 0 else field[:nul]


def dependency_symbols(elf: Elf) -> list[ModVersion]:
    """Return the undefined symbols of the module, with CRCs from __versions.

    Entries of __versions that no undefined symbol refers to (such as
    module_layout) are appended at the end.
    """
    str_off, strtablen, entries = _symbol_table(elf)
    _, crclen, _ = elf.modversion_lengths
    versions = _version_offsets(elf)
    visited = [False] * len(versions)
    handle_register = elf.machine in (EM_SPARC, EM_SPARCV9)

    result: list[ModVersion] = []
    for index, sym in enumerate(entries, start=1):
        if sym.shndx != SHN_UNDEF:
            continue
        # sparc gcc creates undefined references for global asm register variables
        if handle_register and sym.info & 0xF == STT_REGISTER:
            continue
        if sym.name_off >= strtablen:
            raise ElfError(
                f".strtab is {strtablen} bytes, but .symtab entry {index} "
                f"wants to access offset {sym.name_off}"
            )
        name = _raw_cstring(elf, str_off + sym.name_off)
        if not name:
            continue

        crc = 0
        for vindex, voff in enumerate(versions):
            if _version_name(elf, voff) == name:
                visited[vindex] = True
                crc = elf.read_uint(voff, crclen)
                break

        bind = SymbolBind.WEAK if sym.info >> 4 == STB_WEAK else SymbolBind.UNDEF
        result.append(ModVersion(crc, bind, _decode(name)))

    for vindex, voff in enumerate(versions):
        if visited[vindex]:
            continue
        name = _version_name(elf, voff)
        if name is None:
            raise ElfError(f"symbol name at index {vindex} too long")
        result.append(
            ModVersion(elf.read_uint(voff, crclen), SymbolBind.UNDEF, _decode(name))
        )
    return result