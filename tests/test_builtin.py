import errno

import pytest

from kmodtools.builtin import MODULES_BUILTIN_MODINFO, BuiltinModinfoError, builtin_modinfo


def write_modinfo(directory, data):
    (directory / MODULES_BUILTIN_MODINFO).write_bytes(data)
    return directory


SAMPLE = (
    b"ext4.license=GPL\0ext4.author=Someone\0ext4.alias=fs-ext4\0"
    b"ext4dev.license=GPL\0vfat.license=GPL\0vfat.alias=fs-vfat\0"
)


def test_entries_of_module(tmp_path):
    write_modinfo(tmp_path, SAMPLE)
    assert builtin_modinfo(tmp_path, "ext4") == [
        "license=GPL",
        "author=Someone",
        "alias=fs-ext4",
    ]


def test_entries_of_later_module(tmp_path):
    write_modinfo(tmp_path, SAMPLE)
    assert builtin_modinfo(str(tmp_path), "vfat") == ["license=GPL", "alias=fs-vfat"]


def test_prefix_must_end_at_dot(tmp_path):
    write_modinfo(tmp_path, SAMPLE)
    assert builtin_modinfo(tmp_path, "ext4dev") == ["license=GPL"]


def test_unknown_module(tmp_path):
    write_modinfo(tmp_path, SAMPLE)
    assert builtin_modinfo(tmp_path, "nosuch") == []


def test_stops_after_first_group(tmp_path):
    write_modinfo(tmp_path, b"a.x=1\0b.y=2\0a.z=3\0")
    assert builtin_modinfo(tmp_path, "a") == ["x=1"]


def test_last_string_without_nul(tmp_path):
    write_modinfo(tmp_path, b"a.x=1\0a.y=2")
    assert builtin_modinfo(tmp_path, "a") == ["x=1", "y=2"]


def test_string_without_dot(tmp_path):
    write_modinfo(tmp_path, b"a.x=1\0nodot\0")
    with pytest.raises(BuiltinModinfoError):
        builtin_modinfo(tmp_path, "b")


def test_empty_string_is_malformed(tmp_path):
    write_modinfo(tmp_path, b"\0\0a.x=1\0")
    with pytest.raises(BuiltinModinfoError):
        builtin_modinfo(tmp_path, "a")


def test_missing_file(tmp_path):
    with pytest.raises(FileNotFoundError):
        builtin_modinfo(tmp_path, "ext4")


def test_directory_name_too_long(tmp_path):
    with pytest.raises(OSError) as info:
        builtin_modinfo("/" + "d" * 5000, "ext4")
    assert info.value.errno == errno.ENAMETOOLONG