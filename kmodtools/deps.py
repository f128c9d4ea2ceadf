"""Soft and weak dependency declarations from modprobe configuration.

``softdep mod pre: a b post: c`` names modules to load before and after
``mod``; ``weakdep mod a b`` names modules that may be needed by ``mod``.
"""

from __future__ import annotations

import re
from dataclasses import dataclass

_SPACE = re.compile(r"[ \t\n\v\f\r]+")


def _tokens(line: str) -> list[str]:
    return [token for token in _SPACE.split(line) if token]


@dataclass(frozen=True)
class SoftDep:
    """Modules to load before (pre) and after (post) module *name*."""

    name: str
    pre: tuple[str, ...] = ()
    post: tuple[str, ...] = ()

    def plain(self) -> str:
        """Return the dependencies in configuration-like text form."""
        parts = []
        if self.pre:
            parts.append("pre: " + " ".join(self.pre))
        if self.post:
            parts.append("post: " + " ".join(self.post))
        return "".join(parts)


@dataclass(frozen=True)
class WeakDep:
    """Modules that module *name* may need."""

    name: str
    weak: tuple[str, ...] = ()

    def plain(self) -> str:
        """Return the dependencies separated by spaces."""
        return " ".join(self.weak)


def parse_softdep(modname: str, line: str) -> SoftDep:
    """Parse the dependency part of a ``softdep`` line.

    Names before the first ``pre:`` or ``post:`` marker are ignored.
    """
    pre: list[str] = []
    post: list[str] = []
    target: list[str] | None = None
    for token in _tokens(line):
        if token == "pre:":
            target = pre
        elif token == "post:":
            target = post
        elif target is not None:
            target.append(token)
    return SoftDep(modname, tuple(pre), tuple(post))


def parse_weakdep(modname: str, line: str) -> WeakDep:
    """Parse the dependency part of a ``weakdep`` line."""
    return WeakDep(modname, tuple(_tokens(line)))