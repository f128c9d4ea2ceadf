"""Reading kernel module ELF images: sections, modinfo strings and modversions.

Both 32 and 64 bit images in either byte order are supported. The image is
never modified; :meth:`Elf.strip` returns a changed copy.
"""

from __future__ import annotations

import enum
from dataclasses import dataclass

ELFMAG = b"\x7fELF"
EI_NIDENT = 16
EI_CLASS = 4
EI_DATA = 5
ELFCLASS32 = 1
ELFCLASS64 = 2
ELFDATA2LSB = 1
ELFDATA2MSB = 2
SHF_ALLOC = 0x2

SECTION_KSYMTAB = "__ksymtab_strings"
SECTION_MODINFO = ".modinfo"
SECTION_STRTAB = ".strtab"
SECTION_SYMTAB = ".symtab"
SECTION_VERSIONS = "__versions"
SECTION_NAMES = (
    SECTION_KSYMTAB,
    SECTION_MODINFO,
    SECTION_STRTAB,
    SECTION_SYMTAB,
    SECTION_VERSIONS,
)

_EHDR_SIZE = {True: 52, False: 64}
# field name -> (offset, size) within the ELF header
_EHDR_FIELDS = {
    True: {
        "machine": (18, 2),
        "shoff": (32, 4),
        "shentsize": (46, 2),
        "shnum": (48, 2),
        "shstrndx": (50, 2),
    },
    False: {
        "machine": (18, 2),
        "shoff": (40, 8),
        "shentsize": (58, 2),
        "shnum": (60, 2),
        "shstrndx": (62, 2),
    },
}
_SHDR_SIZE = {True: 40, False: 64}
# field name -> (offset, size) within a section header
_SHDR_FIELDS = {
    True: {"name": (0, 4), "flags": (8, 4), "offset": (16, 4), "size": (20, 4)},
    False: {"name": (0, 4), "flags": (8, 8), "offset": (24, 8), "size": (32, 8)},
}

_MODVERSION_SIZE = 64
_VERMAGIC = b"vermagic="


class ElfError(ValueError):
    """The ELF image is malformed, or lacks what was asked of it."""


class SymbolBind(enum.Enum):
    """Binding of a symbol as reported for a module."""

    NONE = enum.auto()
    LOCAL = enum.auto()
    GLOBAL = enum.auto()
    WEAK = enum.auto()
    UNDEF = enum.auto()


@dataclass(frozen=True)
class ModVersion:
    """A symbol with its CRC and binding."""

    crc: int
    bind: SymbolBind
    symbol: str


def _decode(raw: bytes) -> str:
    return raw.decode("utf-8", "surrogateescape")


class Elf:
    """A parsed, read-only ELF image."""

    def __init__(self, data: bytes) -> None:
        data = bytes(data)
        size = len(data)
        if size <= EI_NIDENT or data[:4] != ELFMAG:
            raise ElfError("not an ELF image")

        elf_class = data[EI_CLASS]
        if elf_class == ELFCLASS32:
            self.is_32bit = True
        elif elf_class == ELFCLASS64:
            self.is_32bit = False
        else:
            raise ElfError(f"unknown ELF class {elf_class}")
        if size <= _EHDR_SIZE[self.is_32bit]:
            raise ElfError("ELF image too short for its header")

        encoding = data[EI_DATA]
        if encoding == ELFDATA2LSB:
            self.msb = False
        elif encoding == ELFDATA2MSB:
            self.msb = True
        else:
            raise ElfError(f"unknown ELF data encoding {encoding}")

        self.data = data
        self._order = "big" if self.msb else "little"

        shdr_size = _SHDR_SIZE[self.is_32bit]
        if not self._range_valid(0, shdr_size):
            raise ElfError("ELF image too short")

        fields = _EHDR_FIELDS[self.is_32bit]
        self.section_offset = self.read_uint(*fields["shoff"])
        self.section_count = self.read_uint(*fields["shnum"])
        self.section_entry_size = self.read_uint(*fields["shentsize"])
        self.strings_index = self.read_uint(*fields["shstrndx"])
        self.machine = self.read_uint(*fields["machine"])

        if self.section_entry_size != shdr_size:
            raise ElfError(
                f"unexpected section entry size: {self.section_entry_size}, "
                f"expected {shdr_size}"
            )
        if not self._range_valid(self.section_offset, shdr_size * self.section_count):
            raise ElfError("section headers out of bounds")

        _, self.strings_offset, self.strings_size, _ = self._section_geometry(
            self.strings_index
        )
        if (
            self.strings_size == 0
            or self.data[self.strings_offset + self.strings_size - 1] != 0
        ):
            raise ElfError("section names table does not end with NUL")

        self.sections: dict[str, tuple[int, int]] = {}
        self._save_sections()

    # --- low-level access

    def _range_valid(self, offset: int, size: int) -> bool:
        return offset + size <= len(self.data)

    def read_uint(self, offset: int, size: int) -> int:
        """Read an unsigned integer of *size* bytes in the image's byte order."""
        if size > 8 or offset < 0 or not self._range_valid(offset, size):
            raise ElfError(f"cannot read {size} bytes at offset {offset}")
        return int.from_bytes(self.data[offset:offset + size], self._order)

    def _write_uint(self, buf: bytearray, offset: int, size: int, value: int) -> None:
        buf[offset:offset + size] = (value & ((1 << (8 * size)) - 1)).to_bytes(
            size, self._order
        )

    def _cstring_end(self, offset: int) -> int:
        end = self.data.find(b"\0", offset)
        return len(self.data) if end < 0 else end

    def cstring(self, offset: int) -> str:
        """Return the NUL-terminated string starting at *offset*."""
        return _decode(self.data[offset:self._cstring_end(offset)])

    @property
    def modversion_lengths(self) -> tuple[int, int, int]:
        """Size of a modversion entry, of its CRC and of its name field."""
        crclen = 4 if self.is_32bit else 8
        return _MODVERSION_SIZE, crclen, _MODVERSION_SIZE - crclen

    # --- sections

    def _section_header_offset(self, index: int) -> int:
        if index == 0 or index >= self.section_count:
            raise ElfError(f"invalid section number: {index}")
        return self.section_offset + index * self.section_entry_size

    def _section_geometry(self, index: int) -> tuple[int, int, int, int]:
        header = self._section_header_offset(index)
        if not self._range_valid(header, _SHDR_SIZE[self.is_32bit]):
            raise ElfError(f"section header {index} out of bounds")
        fields = _SHDR_FIELDS[self.is_32bit]
        size = self.read_uint(header + fields["size"][0], fields["size"][1])
        offset = self.read_uint(header + fields["offset"][0], fields["offset"][1])
        nameoff = self.read_uint(header + fields["name"][0], fields["name"][1])
        if not self._range_valid(offset, size):
            raise ElfError(f"section {index} out of bounds")
        return header, offset, size, nameoff

    def section_info(self, index: int) -> tuple[int, int, str]:
        """Return the offset, size and name of the section at *index*."""
        _, offset, size, nameoff = self._section_geometry(index)
        if nameoff >= self.strings_size:
            raise ElfError(f"section {index} name out of bounds")
        return offset, size, self.cstring(self.strings_offset + nameoff)

    def _save_sections(self) -> None:
        self.sections = {name: (0, 0) for name in SECTION_NAMES}
        missing = set(SECTION_NAMES)
        for index in range(1, self.section_count):
            if not missing:
                break
            try:
                offset, size, name = self.section_info(index)
            except ElfError:
                continue
            if name in missing:
                self.sections[name] = (offset, size)
                missing.discard(name)

    def _section(self, name: str) -> tuple[int, int] | None:
        offset, size = self.sections.get(name, (0, 0))
        return None if offset == 0 else (offset, size)

    def get_section(self, name: str) -> tuple[int, int, int] | None:
        """Return index, offset and size of the first section named *name*."""
        for index in range(1, self.section_count):
            try:
                offset, size, found = self.section_info(index)
            except ElfError:
                continue
            if found == name:
                return index, offset, size
        return None

    def _skip_padding(self, offset: int, size: int) -> tuple[int, int]:
        while size > 1 and self.data[offset] == 0:
            offset += 1
            size -= 1
        return offset, size

    # --- module information

    def modinfo_strings(self) -> list[str]:
        """Return the strings of the .modinfo section, in order."""
        found = self._section(SECTION_MODINFO)
        if found is None:
            raise ElfError("no .modinfo section")
        start, size = self._skip_padding(*found)
        if size <= 1:
            return []
        raw = self.data[start:start + size]
        return [_decode(part) for part in raw.split(b"\0") if part]

    def modversions(self) -> list[ModVersion]:
        """Return the entries of the __versions section."""
        verlen, crclen, namlen = self.modversion_lengths
        found = self._section(SECTION_VERSIONS)
        if found is None:
            raise ElfError("no __versions section")
        start, size = found
        if size == 0:
            return []
        if size % verlen != 0:
            raise ElfError(f"__versions size {size} is not a multiple of {verlen}")

        result = []
        for index, offset in enumerate(range(start, start + size, verlen)):
            crc = self.read_uint(offset, crclen)
            name_field = self.data[offset + crclen:offset + crclen + namlen]
            nul = name_field.find(b"\0")
            if nul < 0:
                raise ElfError(f"symbol name at index {index} too long")
            name = name_field[:nul]
            if name.startswith(b"."):
                name = name[1:]
            result.append(ModVersion(crc, SymbolBind.UNDEF, _decode(name)))
        return result

    # --- stripping

    def strip(self, force_modversion: bool = False, force_vermagic: bool = False) -> bytes:
        """Return a copy of the image with version information disabled.

        With *force_modversion* the __versions section loses its ALLOC flag;
        with *force_vermagic* the vermagic modinfo string is blanked out.
        """
        if not (force_modversion or force_vermagic):
            raise ValueError("nothing to strip")
        changed = bytearray(self.data)
        if force_modversion:
            self._strip_versions_section(changed)
        if force_vermagic:
            self._strip_vermagic(changed)
        return bytes(changed)

    def _strip_versions_section(self, changed: bytearray) -> None:
        found = self.get_section(SECTION_VERSIONS)
        if found is None:
            return
        flag_off, flag_size = _SHDR_FIELDS[self.is_32bit]["flags"]
        offset = self._section_header_offset(found[0]) + flag_off
        value = self.read_uint(offset, flag_size) & ~SHF_ALLOC
        self._write_uint(changed, offset, flag_size, value)

    def _strip_vermagic(self, changed: bytearray) -> None:
        found = self._section(SECTION_MODINFO)
        if found is None:
            return
        start, size = self._skip_padding(*found)
        if size <= 1:
            return
        i = 0
        while i < size:
            pos = start + i
            if self.data[pos] == 0 or i + 1 >= size or i + len(_VERMAGIC) >= size:
                i += 1
                continue
            end = self._cstring_end(pos)
            if self.data.startswith(_VERMAGIC, pos):
                changed[pos:end] = bytes(end - pos)
                return
            i += end - pos + 1
        raise ElfError("no vermagic found in .modinfo")