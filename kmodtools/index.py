"""Reader for the binary module index files (modules.dep.bin, modules.alias.bin, ...).

Integers are stored as 32 bit unsigned big-endian values. A file starts with a
magic number, a version and the offset of the root node of a compressed trie.
Each node offset carries flags in its high nibble that say which parts of the
node (prefix, children, values) are present.
"""

from __future__ import annotations

import bisect
import re
import string
import struct
from dataclasses import dataclass
from functools import lru_cache
from pathlib import Path
from typing import Iterator, TextIO

INDEX_MAGIC = 0xB007F457
INDEX_VERSION_MAJOR = 0x0002
INDEX_VERSION_MINOR = 0x0001
INDEX_VERSION = (INDEX_VERSION_MAJOR << 16) | INDEX_VERSION_MINOR

INDEX_CHILDMAX = 128

INDEX_NODE_FLAGS = 0xF0000000
INDEX_NODE_PREFIX = 0x80000000
INDEX_NODE_VALUES = 0x40000000
INDEX_NODE_CHILDS = 0x20000000
INDEX_NODE_MASK = 0x0FFFFFFF

_HEADER = struct.Struct(">III")
_U32 = struct.Struct(">I")
_WILDCARDS = "*?["
_ENCODING = "latin-1"


class IndexFormatError(ValueError):
    """The index data is malformed or of an unsupported version."""


@dataclass(frozen=True)
class IndexValue:
    """A value stored under a key, with its priority."""

    priority: int
    value: str


def insert_value(values: list[IndexValue], value: IndexValue) -> None:
    """Insert *value* into *values*, kept sorted by ascending priority.

    A new value goes in front of existing values of the same priority.
    """
    pos = bisect.bisect_left(values, value.priority, key=lambda v: v.priority)
    values.insert(pos, value)


# --- POSIX fnmatch (no flags): '*', '?', bracket expressions, backslash escapes

_CHAR_CLASSES = {
    "alpha": string.ascii_letters,
    "digit": string.digits,
    "alnum": string.ascii_letters + string.digits,
    "upper": string.ascii_uppercase,
    "lower": string.ascii_lowercase,
    "space": " \t\n\r\x0b\x0c",
    "blank": " \t",
    "punct": string.punctuation,
    "xdigit": string.hexdigits,
    "cntrl": "".join(map(chr, range(32))) + "\x7f",
    "print": "".join(map(chr, range(32, 127))),
    "graph": "".join(map(chr, range(33, 127))),
}


def _bracket(pattern: str, pos: int) -> tuple[str, int] | None:
    """Translate a bracket expression starting after '['; None if unterminated."""
    end = len(pattern)
    negate = False
    if pos < end and pattern[pos] in "!^":
        negate = True
        pos += 1
    items: list[str] = []
    first = True
    while True:
        if pos >= end:
            return None
        c = pattern[pos]
        if c == "]" and not first:
            pos += 1
            break
        first = False
        if pattern.startswith("[:", pos):
            close = pattern.find(":]", pos + 2)
            if close >= 0 and pattern[pos + 2:close] in _CHAR_CLASSES:
                items.extend(re.escape(ch) for ch in _CHAR_CLASSES[pattern[pos + 2:close]])
                pos = close + 2
                continue
        if c == "\\" and pos + 1 < end:
            c = pattern[pos + 1]
            pos += 2
        else:
            pos += 1
        if pos + 1 < end and pattern[pos] == "-" and pattern[pos + 1] != "]":
            hi = pattern[pos + 1]
            pos += 2
            if hi == "\\" and pos < end:
                hi = pattern[pos]
                pos += 1
            if c <= hi:
                items.append(f"{re.escape(c)}-{re.escape(hi)}")
            continue
        items.append(re.escape(c))
    if not items:
        return ("." if negate else "(?!)"), pos
    return f"[{'^' if negate else ''}{''.join(items)}]", pos


@lru_cache(maxsize=512)
def _compile_pattern(pattern: str) -> re.Pattern[str]:
    parts: list[str] = []
    pos = 0
    end = len(pattern)
    while pos < end:
        c = pattern[pos]
        pos += 1
        if c == "*":
            parts.append(".*")
        elif c == "?":
            parts.append(".")
        elif c == "\\":
            if pos < end:
                parts.append(re.escape(pattern[pos]))
                pos += 1
            else:
                parts.append(re.escape("\\"))
        elif c == "[":
            parsed = _bracket(pattern, pos)
            if parsed is None:
                parts.append(re.escape("["))
            else:
                expr, pos = parsed
                parts.append(expr)
        else:
            parts.append(re.escape(c))
    return re.compile("".join(parts), re.DOTALL)


def _fnmatch(pattern: str, name: str) -> bool:
    return _compile_pattern(pattern).fullmatch(name) is not None


@dataclass(frozen=True, slots=True)
class _Node:
    prefix: str
    first: int
    last: int
    children_pos: int
    value_count: int
    values_pos: int


class Index:
    """A module index held in memory, searchable by exact key or wildcard."""

    def __init__(self, data: bytes) -> None:
        self._data = bytes(data)
        if len(self._data) < _HEADER.size:
            raise IndexFormatError("index data too short for header")
        magic, version, root = _HEADER.unpack_from(self._data, 0)
        if magic != INDEX_MAGIC:
            raise IndexFormatError(
                f"magic check fail: {magic:x} instead of {INDEX_MAGIC:x}"
            )
        if version >> 16 != INDEX_VERSION_MAJOR:
            raise IndexFormatError(
                f"major version check fail: {version >> 16} "
                f"instead of {INDEX_VERSION_MAJOR}"
            )
        self.version = version
        self.root_offset = root

    @classmethod
    def open(cls, path: str | Path) -> "Index":
        """Read an index file from *path*."""
        return cls(Path(path).read_bytes())

    # --- low-level reading

    def _u32(self, pos: int) -> int:
        if pos + 4 > len(self._data):
            raise IndexFormatError(f"truncated integer at offset {pos}")
        return _U32.unpack_from(self._data, pos)[0]

    def _byte(self, pos: int) -> int:
        if pos >= len(self._data):
            raise IndexFormatError(f"truncated data at offset {pos}")
        return self._data[pos]

    def _cstring(self, pos: int) -> tuple[str, int]:
        end = self._data.find(b"\0", pos)
        if end < 0:
            raise IndexFormatError(f"unterminated string at offset {pos}")
        return self._data[pos:end].decode(_ENCODING), end + 1

    def _read_node(self, offset: int) -> _Node | None:
        pos = offset & INDEX_NODE_MASK
        if pos == 0 or pos >= len(self._data):
            return None

        prefix = ""
        if offset & INDEX_NODE_PREFIX:
            prefix, pos = self._cstring(pos)

        if offset & INDEX_NODE_CHILDS:
            first = self._byte(pos)
            last = self._byte(pos + 1)
            pos += 2
            if first > last or first >= INDEX_CHILDMAX or last >= INDEX_CHILDMAX:
                return None
            children_pos = pos
            pos += 4 * (last - first + 1)
        else:
            first, last, children_pos = INDEX_CHILDMAX, 0, 0

        if offset & INDEX_NODE_VALUES:
            value_count = self._u32(pos)
            values_pos = pos + 4
        else:
            value_count, values_pos = 0, 0

        return _Node(prefix, first, last, children_pos, value_count, values_pos)

    def _child_at(self, node: _Node, code: int) -> _Node | None:
        if node.first <= code <= node.last:
            return self._read_node(self._u32(node.children_pos + 4 * (code - node.first)))
        return None

    def _child(self, node: _Node, ch: str) -> _Node | None:
        return self._child_at(node, ord(ch))

    def _children(self, node: _Node) -> Iterator[tuple[str, _Node]]:
        for code in range(node.first, node.last + 1):
            child = self._child_at(node, code)
            if child is not None:
                yield chr(code), child

    def _values(self, node: _Node) -> Iterator[IndexValue]:
        pos = node.values_pos
        for _ in range(node.value_count):
            priority = self._u32(pos)
            value, pos = self._cstring(pos + 4)
            yield IndexValue(priority, value)

    def _root(self) -> _Node | None:
        return self._read_node(self.root_offset)

    # --- searching

    def search(self, key: str) -> str | None:
        """Return the first value stored under exactly *key*, or None."""
        key = key.split("\0", 1)[0]
        node = self._root()
        pos = 0
        while node is not None:
            if not key.startswith(node.prefix, pos):
                return None
            pos += len(node.prefix)
            if pos == len(key):
                return next((v.value for v in self._values(node)), None)
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

    def _add_all_values(self, node: _Node, out: list[IndexValue]) -> None:
        for value in self._values(node):
            insert_value(out, value)

    def _wild_all(
        self, node: _Node, start: int, buf: str, subkey: str, out: list[IndexValue]
    ) -> None:
        buf += node.prefix[start:]
        for ch, child in self._children(node):
            self._wild_all(child, 0, buf + ch, subkey, out)
        if node.value_count > 0 and _fnmatch(buf, subkey):
            self._add_all_values(node, out)

    def _wild_node(self, node: _Node | None, key: str, out: list[IndexValue]) -> None:
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

    def _dump_node(self, node: _Node, buf: str, out: TextIO) -> None:
        buf += node.prefix
        for value in self._values(node):
            out.write(f"{buf} {value.value}\n")
        for ch, child in self._children(node):
            self._dump_node(child, buf + ch, out)