import io
import struct

import pytest

from kmodtools.index import (
    INDEX_MAGIC,
    INDEX_NODE_CHILDS,
    INDEX_NODE_PREFIX,
    INDEX_NODE_VALUES,
    INDEX_VERSION,
    Index,
    IndexFormatError,
    IndexValue,
)
from kmodtools.indexfile import IndexFile


class _Trie:
    def __init__(self):
        self.children = {}
        self.values = []


def build_index(entries, version=INDEX_VERSION, magic=INDEX_MAGIC):
    root = _Trie()
    for key, values in entries.items():
        node = root
        for ch in key:
            node = node.children.setdefault(ch, _Trie())
        node.values.extend(values)

    body = bytearray()

    def write(node):
        prefix = ""
        while len(node.children) == 1 and not node.values:
            ch, child = next(iter(node.children.items()))
            prefix += ch
            node = child
        child_offsets = {ch: write(c) for ch, c in node.children.items()}
        pos = 12 + len(body)
        flags = 0
        if prefix:
            body.extend(prefix.encode("latin-1") + b"\0")
            flags |= INDEX_NODE_PREFIX
        if child_offsets:
            first = min(ord(c) for c in child_offsets)
            last = max(ord(c) for c in child_offsets)
            body.extend(bytes([first, last]))
            for code in range(first, last + 1):
                body.extend(struct.pack(">I", child_offsets.get(chr(code), 0)))
            flags |= INDEX_NODE_CHILDS
        if node.values:
            body.extend(struct.pack(">I", len(node.values)))
            for priority, value in node.values:
                body.extend(struct.pack(">I", priority) + value.encode("latin-1") + b"\0")
            flags |= INDEX_NODE_VALUES
        return pos | flags

    root_offset = write(root)
    return struct.pack(">III", magic, version, root_offset) + bytes(body)


ENTRIES = {
    "snd": [(0, "kernel/sound/snd.ko")],
    "snd_pcm": [(0, "kernel/sound/snd-pcm.ko")],
    "ext4": [(5, "later"), (1, "earlier")],
    "pci:v00008086d*": [(2, "e1000e")],
    "usb:v1234p????": [(1, "usbthing")],
}


@pytest.fixture
def index_path(tmp_path):
    path = tmp_path / "modules.alias.bin"
    path.write_bytes(build_index(ENTRIES))
    return path


def test_search_exact(index_path):
    with IndexFile(index_path) as idx:
        assert idx.search("snd") == "kernel/sound/snd.ko"
        assert idx.search("snd_pcm") == "kernel/sound/snd-pcm.ko"


def test_search_missing(index_path):
    with IndexFile(index_path) as idx:
        assert idx.search("sn") is None
        assert idx.search("snd_pcmx") is None
        assert idx.search("nothing") is None


def test_search_returns_lowest_priority(index_path):
    with IndexFile(index_path) as idx:
        assert idx.search("ext4") == "earlier"


def test_search_wild_matches_patterns(index_path):
    with IndexFile(index_path) as idx:
        assert idx.search_wild("pci:v00008086d0000ABCD") == [IndexValue(2, "e1000e")]
        assert idx.search_wild("usb:v1234pABCD") == [IndexValue(1, "usbthing")]
        assert idx.search_wild("usb:v1234pABC") == []


def test_search_wild_exact_key_sorted(index_path):
    with IndexFile(index_path) as idx:
        result = idx.search_wild("ext4")
    assert [v.priority for v in result] == sorted(v.priority for v in result)
    assert {v.value for v in result} == {"earlier", "later"}


def test_search_wild_agrees_with_memory_index(index_path):
    mem = Index.open(index_path)
    keys = ["snd", "snd_pcm", "ext4", "pci:v00008086d1", "usb:v1234pzzzz", "x"]
    with IndexFile(index_path) as idx:
        for key in keys:
            assert idx.search_wild(key) == mem.search_wild(key)


def test_dump_lines(index_path):
    out = io.StringIO()
    with IndexFile(index_path) as idx:
        idx.dump(out)
    lines = out.getvalue().splitlines()
    assert "snd kernel/sound/snd.ko" in lines
    assert "snd_pcm kernel/sound/snd-pcm.ko" in lines
    assert len(lines) == sum(len(v) for v in ENTRIES.values())


def test_dump_alias_prefix(index_path):
    out = io.StringIO()
    with IndexFile(index_path) as idx:
        idx.dump(out, alias_prefix=True)
    lines = out.getvalue().splitlines()
    assert lines
    assert all(line.startswith("alias ") for line in lines)
    assert "alias snd kernel/sound/snd.ko" in lines


def test_dump_sorted_like_memory_index_for_single_values(tmp_path):
    entries = {"a": [(0, "x")], "ab": [(0, "y")], "b": [(0, "z")]}
    path = tmp_path / "idx.bin"
    path.write_bytes(build_index(entries))
    mem_out = io.StringIO()
    Index.open(path).dump(mem_out)
    file_out = io.StringIO()
    with IndexFile(path) as idx:
        idx.dump(file_out)
    assert file_out.getvalue() == mem_out.getvalue()


def test_bad_magic(tmp_path):
    path = tmp_path / "bad.bin"
    path.write_bytes(build_index(ENTRIES, magic=0x12345678))
    with pytest.raises(IndexFormatError):
        IndexFile(path)


def test_bad_major_version(tmp_path):
    path = tmp_path / "bad.bin"
    path.write_bytes(build_index(ENTRIES, version=0x00030001))
    with pytest.raises(IndexFormatError):
        IndexFile(path)


def test_truncated_header(tmp_path):
    path = tmp_path / "short.bin"
    path.write_bytes(struct.pack(">II", INDEX_MAGIC, INDEX_VERSION))
    with pytest.raises(IndexFormatError):
        IndexFile(path)


def test_minor_version_accepted(tmp_path):
    path = tmp_path / "minor.bin"
    path.write_bytes(build_index({"k": [(0, "v")]}, version=0x00020007))
    with IndexFile(path) as idx:
        assert idx.search("k") == "v"


def test_closed_file_rejects_reads(index_path):
    idx = IndexFile(index_path)
    idx.close()
    with pytest.raises(ValueError):
        idx.search("snd")