"""Opening kernel module files, compressed or not.

The compression is recognised from the first bytes of the file. The
contents are read, and decompressed if needed, the first time they are
asked for.
"""

from __future__ import annotations

import enum
import gzip
import lzma
import zlib
from pathlib import Path
from typing import BinaryIO

import zstandard

from .elf import Elf

MAGIC_ZSTD = bytes([0x28, 0xB5, 0x2F, 0xFD])
MAGIC_XZ = bytes([0xFD]) + b"7zXZ\0"
MAGIC_ZLIB = bytes([0x1F, 0x8B])
_HEADER_SIZE = 6
_ZSTD_CONTENTSIZE_UNKNOWN = (1 << 64) - 1
_ZSTD_CONTENTSIZE_ERROR = (1 << 64) - 2


class Compression(enum.Enum):
    """Compression of a module file."""

    NONE = "none"
    ZSTD = "zstd"
    XZ = "xz"
    ZLIB = "zlib"


class ModuleFileError(ValueError):
    """A module file is too short, or its compressed data is invalid."""


_MAGICS = (
    (MAGIC_ZSTD, Compression.ZSTD),
    (MAGIC_XZ, Compression.XZ),
    (MAGIC_ZLIB, Compression.ZLIB),
)


def detect_compression(header: bytes) -> Compression:
    """Return the compression indicated by the first bytes of a file."""
    for magic, compression in _MAGICS:
        if header.startswith(magic):
            return compression
    return Compression.NONE


def _load_zstd(data: bytes) -> bytes:
    try:
        params = zstandard.get_frame_parameters(data)
    except zstandard.ZstdError as exc:
        raise ModuleFileError(f"zstd: {exc}") from exc
    frame_size = params.content_size
    if frame_size in (0, _ZSTD_CONTENTSIZE_UNKNOWN, _ZSTD_CONTENTSIZE_ERROR) or frame_size < 0:
        raise ModuleFileError("zstd: Failed to determine decompression size")
    try:
        return zstandard.ZstdDecompressor().decompress(data, max_output_size=frame_size)
    except zstandard.ZstdError as exc:
        raise ModuleFileError(f"zstd: {exc}") from exc


def _load_xz(data: bytes) -> bytes:
    try:
        return lzma.decompress(data, format=lzma.FORMAT_XZ)
    except MemoryError:
        raise
    except lzma.LZMAError as exc:
        raise ModuleFileError(f"xz: {exc}") from exc


def _load_zlib(data: bytes) -> bytes:
    try:
        return gzip.decompress(data)
    except (gzip.BadGzipFile, EOFError, zlib.error) as exc:
        raise ModuleFileError(f"gzip: {exc}") from exc


_LOADERS = {
    Compression.ZSTD: _load_zstd,
    Compression.XZ: _load_xz,
    Compression.ZLIB: _load_zlib,
    Compression.NONE: lambda data: data,
}


class ModuleFile:
    """A module file kept open, with lazily loaded contents."""

    def __init__(self, path: str | Path) -> None:
        self.path = Path(path)
        self._file: BinaryIO = open(self.path, "rb")
        header = self._file.read(_HEADER_SIZE)
        if len(header) != _HEADER_SIZE:
            self._file.close()
            raise ModuleFileError(f"{self.path}: file too short")
        self.compression = detect_compression(header)
        self._contents: bytes | None = None
        self._elf: Elf | None = None

    def fileno(self) -> int:
        """Return the descriptor of the open file."""
        return self._file.fileno()

    def contents(self) -> bytes:
        """Return the (decompressed) contents of the file."""
        if self._contents is None:
            self._file.seek(0)
            self._contents = _LOADERS[self.compression](self._file.read())
        return self._contents

    @property
    def size(self) -> int:
        """Size of the (decompressed) contents."""
        return len(self.contents())

    def elf(self) -> Elf:
        """Return the contents parsed as an ELF image."""
        if self._elf is None:
            self._elf = Elf(self.contents())
        return self._elf

    def close(self) -> None:
        """Close the underlying file."""
        self._file.close()

    def __enter__(self) -> "ModuleFile":
        return self

    def __exit__(self, *args: object) -> None:
        self.close()