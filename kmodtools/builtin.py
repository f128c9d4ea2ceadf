"""Lookup of modinfo strings of built-in modules in modules.builtin.modinfo.

The file holds NUL-separated strings of the form ``modname.key=value``,
grouped by module.
"""

from __future__ import annotations

import errno
import os
from pathlib import Path
from typing import BinaryIO, Iterator

MODULES_BUILTIN_MODINFO = "modules.builtin.modinfo"
PATH_MAX = 4096
_CHUNK = 64 * 1024


class BuiltinModinfoError(ValueError):
    """modules.builtin.modinfo holds a malformed entry."""


def _strings(fp: BinaryIO) -> Iterator[bytes]:
    pending = b""
    while True:
        block = fp.read(_CHUNK)
        if not block:
            break
        pending += block
        *complete, pending = pending.split(b"\0")
        yield from complete
    if pending:
        yield pending


def builtin_modinfo(dirname: str | Path, modname: str) -> list[str]:
    """Return the modinfo strings (``key=value``) of built-in module *modname*.

    The list is empty when the module has no entry.
    """
    dirname = os.fspath(dirname)
    if len(os.fsencode(dirname)) + 1 + len(MODULES_BUILTIN_MODINFO) + 1 >= PATH_MAX:
        raise OSError(errno.ENAMETOOLONG, os.strerror(errno.ENAMETOOLONG), dirname)
    path = f"{dirname}/{MODULES_BUILTIN_MODINFO}"
    prefix = modname.encode("utf-8", "surrogateescape") + b"."

    result: list[str] = []
    with open(path, "rb") as fp:
        for raw in _strings(fp):
            dot = raw.find(b".")
            if dot < 0:
                raise BuiltinModinfoError(
                    f"{path}: unexpected string without modname prefix"
                )
            if not raw.startswith(prefix):
                # Entries of one module are contiguous: once matched, stop at
                # the first entry of another module.
                if not result:
                    continue
                break
            result.append(raw[dot + 1:].decode("utf-8", "surrogateescape"))
    return result