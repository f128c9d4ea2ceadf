"""Stream-based reader for the binary module index files.

Unlike :class:`kmodtools.index.Index`, which holds the whole file in memory,
this reader keeps the file open and reads each trie node on demand. Values of
a node are kept sorted by priority as they are read, so an exact search
returns the value with the lowest priority.
"""

from __future__ import annotations

import os
import struct
from dataclasses import dataclass, field
from pathlib import Path
from typing import BinaryIO, Iterator, TextIO

from .index import (
    INDEX_CHILDMAX,
    INDEX_MAGIC,
    INDEX_NODE_CHILDS,
    INDEX_NODE_MASK,
    INDEX_NODE_PREFIX,
    INDEX_NODE_VALUES,
    INDEX_VERSION_MAJOR,
    IndexFormatError,
    IndexValue,
    _fnmatch,
    insert_value,
)

_U32 = struct.Struct(">I")
_WILDCARDS = "*?["
_ENCODING = "latin-1"
_CHUNK = 256


@dataclass
class _FileNode:
    prefix: str
    first: int
    last: int
    children: tuple[int, ...] = ()
    values: list[IndexValue] = field(default_factory=list)


class IndexFile:
    """An index file opened for reading; nodes are read as they are needed."""

    def __init__(self, path: str | Path) -> None:
        self._file: BinaryIO = open(path, "rb")
        try:
            magic = self._read_u32()
            if magic != INDEX_MAGIC:
                raise IndexFormatError(f"{path}: bad magic number")
            version = self._read_u32()
            if version is None or version >> 16 != INDEX_VERSION_MAJOR:
                raise IndexFormatError(f"{path}: unsupported index version")
            root = self._read_u32()
            if root is None:
                raise IndexFormatError(f"{path}: missing root offset")
        except BaseException:
            self._file.close()
            raise
        self.version = version
        self.root_offset = root

    def close(self) -> None:
        """Close the underlying file."""
        self._file.close()

    def __enter__(self) -> "IndexFile":
        return self

    def __exit__(self, *args: object) -> None:
        self.close()

    # --- low-level reading

    def _read_u32(self) -> int | None:
        data = self._file.read(4)
        if len(data) != 4:
            return None
        return _U32.unpack(data)[0]

    def _read_cstring(self) -> str | None:
        """Read up to and including a NUL; None if nothing is left to read."""
        chunks: list[bytes] = []
        while True:
            chunk = self._file.read(_CHUNK)
            if not chunk:
                break
            nul = chunk.find(b"\0")
            if nul >= 0:
                chunks.append(chunk[:nul])
                self._file.seek(nul + 1 - len(chunk), os.SEEK_CUR)
                return b"".join(chunks).decode(_ENCODING)
            chunks.append(chunk)
        if not chunks:
            return None
        return b"".join(chunks).decode(_ENCODING)

    def _read_node(self, offset: int) -> _FileNode | None:
        pos = offset & INDEX_NODE_MASK
        if pos == 0:
            return None
        self._file.seek(pos)

        prefix = ""
        if offset & INDEX_NODE_PREFIX:
            read = self._read_cstring()
            if read is None:
                return None
            prefix = read

        if offset & INDEX_NODE_CHILDS:
            bounds = self._file.read(2)
            if len(bounds) != 2 or bounds[0] > bounds[1]:
                return None
            first, last = bounds[0], bounds[1]
            count = last - first + 1
            raw = self._file.read(4 * count)
            if len(raw) != 4 * count:
                return None
            node = _FileNode(prefix, first, last, struct.unpack(f">{count}I", raw))
        else:
            node = _FileNode(prefix, INDEX_CHILDMAX, 0)

        if offset & INDEX_NODE_VALUES:
            value_count = self._read_u32()
            if value_count is None:
                return None
            for _ in range(value_count):
                priority = self._read_u32()
                if priority is None:
                    return None
                value = self._read_cstring()
                if value is None:
                    return None
                insert_value(node.values, IndexValue(priority, value))

        return node

    def _child_at(self, node: _FileNode, code: int) -> _FileNode | None:
        if node.first <= code <= node.last:
            return self._read_node(node.children[code - node.first])
        return None

    def _child(self, node: _FileNode, ch: str) -> _FileNode | None:
        return self._child_at(node, ord(ch))

    def _children(self, node: _FileNode) -> Iterator[tuple[str, _FileNode]]:
        for code in range(node.first, node.last + 1):
            child = self._child_at(node, code)
            if child is not None:
                yield chr(code), child

    def _root(self) -> _FileNode | None:
        return self._read_node(self.root_offset)

    # --- searching

    def search(self, key: str) -> str | None:
        """Return the lowest-priority value stored under exactly *key*, or None."""
        key = key.split("\0", 1)[0]
        node = self._root()
        pos = 0
        while node is not None:
            if not key.startswith(node.prefix, pos):
                return None
            pos += len(node.prefix)
            if pos == len(key):
                return node.values[0].value if node.values else None
            node = self._child(node, key[pos])
            pos += 1
        return None

    def search_wild(self, key: str) -> list[IndexValue]:
        """Return the values of all keys matching *key*, keys being patterns.

        The result is ordered by ascending priority.
        """
        key = key.split("\0", 1)[0]
        out: list[IndexValue] = []
        self._wild_node(self._root(), key, out)
        return out

    @staticmethod
    def _add_all_values(node: _FileNode, out: list[IndexValue]) -> None:
        for value in node.values:
            insert_value(out, value)

    def _wild_all(
        self, node: _FileNode, start: int, buf: str, subkey: str, out: list[IndexValue]
    ) -> None:
        buf += node.prefix[start:]
        for ch, child in self._children(node):
            self._wild_all(child, 0, buf + ch, subkey, out)
        if node.values and _fnmatch(buf, subkey):
            self._add_all_values(node, out)

    def _wild_node(self, node: _FileNode | None, key: str, out: list[IndexValue]) -> None:
        while node is not None:
            for j, ch in enumerate(node.prefix):
                if ch in _WILDCARDS:
                    self._wild_all(node, j, "", key[j:], out)
                    return
                if j >= len(key) or ch != key[j]:
                    return
            key = key[len(node.prefix):]

            for wildcard in _WILDCARDS:
                child = self._child(node, wildcard)
                if child is not None:
                    self._wild_all(child, 0, wildcard, key, out)

            if not key:
                self._add_all_values(node, out)
                return

            node = self._child(node, key[0])
            key = key[1:]

    # --- dumping

    def dump(self, out: TextIO, alias_prefix: bool = False) -> None:
        """Write every key and value as "key value" lines to *out*."""
        root = self._root()
        if root is None:
            return
        self._dump_node(root, "alias " if alias_prefix else "", out)

    def _dump_node(self, node: _FileNode, buf: str, out: TextIO) -> None:
        buf += node.prefix
        for value in node.values:
            out.write(f"{buf} {value.value}\n")
        for ch, child in self._children(node):
            self._dump_node(child, buf + ch, out)