"""Parsing of module options given on the kernel command line.

Options of the form ``module.param[=value]`` are picked out of the command
line; anything else is ignored. A whole option wrapped in quotes by a boot
loader (``"mod.param=a b"``) is re-quoted as ``mod.param="a b"``.
"""

from __future__ import annotations

import enum
from dataclasses import dataclass
from pathlib import Path

_SPACES = " \n\t\v\f\r"


@dataclass(frozen=True)
class KcmdlineOption:
    """One ``modname.param`` option.

    ``param`` holds the parameter name together with ``=value`` when a value
    is given; ``value`` holds just the value, or None when there is none.
    """

    modname: str
    param: str
    value: str | None = None


class _State(enum.Enum):
    IGNORE = enum.auto()
    MODNAME = enum.auto()
    PARAM = enum.auto()
    VALUE = enum.auto()
    COMPLETE = enum.auto()


def parse_kcmdline(text: str) -> list[KcmdlineOption]:
    """Return the module options found in a kernel command line."""
    text = text.split("\0", 1)[0]
    chars = text + "\0"
    options: list[KcmdlineOption] = []

    state = _State.MODNAME
    is_quoted = False
    quote_start: int | None = None
    modname = 0
    modname_end = 0
    param = 0
    value: int | None = None

    for pos, ch in enumerate(chars):
        if ch == '"':
            is_quoted = not is_quoted
            if is_quoted and state is _State.MODNAME and pos == modname:
                quote_start = pos
                modname = pos + 1
            elif state is not _State.VALUE:
                state = _State.IGNORE
        elif ch == "\0" or ch in _SPACES:
            if is_quoted and state is _State.VALUE:
                pass
            elif is_quoted:
                state = _State.IGNORE
            elif state in (_State.VALUE, _State.PARAM):
                state = _State.COMPLETE
            else:
                modname = pos + 1
                state = _State.MODNAME
                quote_start = None
                value = None
        elif ch == ".":
            if state is _State.MODNAME:
                modname_end = pos
                param = pos + 1
                state = _State.PARAM
            elif state is _State.PARAM:
                state = _State.IGNORE
        elif ch == "=":
            if state is _State.PARAM:
                value = pos + 1
                state = _State.VALUE
            elif state is _State.MODNAME:
                state = _State.IGNORE

        if state is _State.COMPLETE:
            name = chars[modname:modname_end]
            if value is None:
                options.append(KcmdlineOption(name, chars[param:pos]))
            elif quote_start is not None and quote_start < modname:
                raw_value = chars[value:pos]
                options.append(
                    KcmdlineOption(
                        name,
                        chars[param:value] + '"' + raw_value,
                        '"' + raw_value,
                    )
                )
            else:
                options.append(
                    KcmdlineOption(name, chars[param:pos], chars[value:pos])
                )
            modname = pos + 1
            state = _State.MODNAME
            quote_start = None
            value = None

    return options


def read_kcmdline(path: str | Path = "/proc/cmdline") -> list[KcmdlineOption]:
    """Read a kernel command line from *path* and return its module options."""
    return parse_kcmdline(Path(path).read_text(encoding="utf-8", errors="replace"))