"""modprobe configuration: aliases, blacklists, options, commands and deps.

Configuration is read from ``*.conf`` files in the given directories (or
from single files), from ``modules.softdep`` and ``modules.weakdep`` in the
module directory, and from module options on the kernel command line.
Files are parsed in the order of their names. A name seen again in a later
directory is ignored.
"""

from __future__ import annotations

import logging
import os
from dataclasses import dataclass, field
from pathlib import Path
from typing import Iterable, Iterator

from .deps import SoftDep, WeakDep, parse_softdep, parse_weakdep
from .kcmdline import parse_kcmdline

PATH_MAX = 4096
_DELIMS = "\t "

logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class Alias:
    """``alias name modname``."""

    name: str
    modname: str


@dataclass(frozen=True)
class ModOptions:
    """``options modname options...``."""

    modname: str
    options: str


@dataclass(frozen=True)
class Command:
    """``install``/``remove`` command for module *modname*."""

    modname: str
    command: str


@dataclass(frozen=True)
class ConfigPath:
    """A configuration path that was read, with its modification stamp in µs."""

    path: str
    stamp: int


def _underscores(name: str | None) -> str | None:
    """Turn '-' into '_' outside bracket expressions; None if *name* is invalid."""
    if name is None:
        return None
    out: list[str] = []
    pos = 0
    while pos < len(name):
        ch = name[pos]
        if ch == "-":
            out.append("_")
            pos += 1
        elif ch == "]":
            return None
        elif ch == "[":
            end = name.find("]", pos)
            if end < 0:
                return None
            out.append(name[pos:end + 1])
            pos = end + 1
        else:
            out.append(ch)
            pos += 1
    return "".join(out)


def _next_token(text: str, pos: int) -> tuple[str | None, int]:
    """Return the next token delimited by tabs/spaces and the position after it.

    The returned position is past the single delimiter that ended the token.
    """
    while pos < len(text) and text[pos] in _DELIMS:
        pos += 1
    if pos >= len(text):
        return None, len(text)
    end = pos
    while end < len(text) and text[end] not in _DELIMS:
        end += 1
    token = text[pos:end]
    return token, min(end + 1, len(text))


def _rest(text: str, pos: int) -> str | None:
    rest = text[pos:]
    return rest or None


def _logical_lines(lines: Iterable[str]) -> Iterator[tuple[int, str]]:
    """Join backslash-continued lines; yield (line number, text)."""
    pending: list[str] = []
    linenum = 0
    for raw in lines:
        linenum += 1
        line = raw[:-1] if raw.endswith("\n") else raw
        if line.endswith("\\"):
            pending.append(line[:-1])
            continue
        pending.append(line)
        yield linenum, "".join(pending)
        pending = []
    if pending:
        yield linenum, "".join(pending)


def _stamp(st: os.stat_result) -> int:
    return st.st_mtime_ns // 1000


def list_config_files(
    dirname: str | os.PathLike[str], config_paths: Iterable[str | os.PathLike[str]]
) -> tuple[list[str], list[ConfigPath]]:
    """Return the files to parse, in order, and the configuration paths found.

    ``modules.softdep`` and ``modules.weakdep`` from *dirname* come first in
    the candidate list; names are sorted and the first file of a given name
    wins. Paths that cannot be stat'ed are left out.
    """
    dirname = os.fspath(dirname)
    found: dict[str, tuple[str, str, bool]] = {}

    def insert(path: str, name: str | None) -> None:
        is_single = name is None
        if name is None:
            name = os.path.basename(path)
        if name in found:
            logger.debug("Ignoring duplicate config file: %s/%s", path, name)
            return
        found[name] = (path, name, is_single)

    insert(dirname, "modules.softdep")
    insert(dirname, "modules.weakdep")

    paths: list[ConfigPath] = []
    for entry in config_paths:
        path = os.fspath(entry)
        try:
            st = os.stat(path)
        except OSError as exc:
            logger.debug("could not stat '%s': %s", path, exc)
            continue
        stamp = _stamp(st)
        if not os.path.isdir(path):
            insert(path, None)
        else:
            try:
                names = os.listdir(path)
            except OSError as exc:
                logger.error("opendir(%s): %s", path, exc)
                continue
            for fn in names:
                if fn.startswith(".") or len(fn) < 6 or not fn.endswith(".conf"):
                    continue
                full = os.path.join(path, fn)
                try:
                    is_dir = os.path.isdir(full) if os.path.exists(full) else None
                except OSError:
                    is_dir = None
                if is_dir is None:
                    logger.error("Cannot stat directory entry: %s/%s", path, fn)
                    continue
                if is_dir:
                    logger.error(
                        "Directories inside directories are not supported: %s/%s",
                        path,
                        fn,
                    )
                    continue
                insert(path, fn)
        paths.append(ConfigPath(path, stamp))

    files: list[str] = []
    for name in sorted(found):
        path, fname, is_single = found[name]
        if is_single:
            files.append(path)
            continue
        full = f"{path}/{fname}"
        if len(os.fsencode(full)) >= PATH_MAX:
            logger.error("Error parsing %s/%s: path too long", path, fname)
            continue
        files.append(full)
    return files, paths


@dataclass
class Config:
    """Parsed configuration; entries are kept in the order they were read."""

    aliases: list[Alias] = field(default_factory=list)
    blacklists: list[str] = field(default_factory=list)
    options: list[ModOptions] = field(default_factory=list)
    install_commands: list[Command] = field(default_factory=list)
    remove_commands: list[Command] = field(default_factory=list)
    softdeps: list[SoftDep] = field(default_factory=list)
    weakdeps: list[WeakDep] = field(default_factory=list)
    paths: list[ConfigPath] = field(default_factory=list)

    def __init__(self) -> None:
        self.aliases = []
        self.blacklists = []
        self.options = []
        self.install_commands = []
        self.remove_commands = []
        self.softdeps = []
        self.weakdeps = []
        self.paths = []

    @classmethod
    def load(
        cls,
        dirname: str | os.PathLike[str],
        config_paths: Iterable[str | os.PathLike[str]],
        kcmdline_path: str | os.PathLike[str] | None = "/proc/cmdline",
    ) -> "Config":
        """Read the configuration files and the kernel command line."""
        config = cls()
        files, config.paths = list_config_files(dirname, config_paths)
        for fn in files:
            logger.debug("parsing file '%s'", fn)
            try:
                config.parse_file(fn)
            except OSError as exc:
                logger.debug("could not open '%s': %s", fn, exc)
        if kcmdline_path is not None:
            try:
                text = Path(kcmdline_path).read_text(
                    encoding="utf-8", errors="surrogateescape"
                )
            except OSError as exc:
                logger.debug("could not open '%s' for reading: %s", kcmdline_path, exc)
            else:
                config.apply_kcmdline(text)
        return config

    def parse_file(self, path: str | os.PathLike[str]) -> None:
        """Parse one configuration file."""
        with open(path, encoding="utf-8", errors="surrogateescape") as fp:
            self.parse_lines(fp, os.fspath(path))

    def parse_lines(self, lines: Iterable[str], filename: str = "<config>") -> None:
        """Parse configuration lines; bad lines are logged and skipped."""
        for linenum, line in _logical_lines(lines):
            if not line or line.startswith("#"):
                continue
            cmd, pos = _next_token(line, 0)
            if cmd is None:
                continue
            if not self._parse_command(cmd, line, pos):
                logger.error(
                    "%s line %d: ignoring bad line starting with '%s'",
                    filename,
                    linenum,
                    cmd,
                )

    def _parse_command(self, cmd: str, line: str, pos: int) -> bool:
        if cmd == "alias":
            alias, pos = _next_token(line, pos)
            modname, pos = _next_token(line, pos)
            alias, modname = _underscores(alias), _underscores(modname)
            if alias is None or modname is None:
                return False
            self.aliases.append(Alias(alias, modname))
        elif cmd == "blacklist":
            modname = _underscores(_next_token(line, pos)[0])
            if modname is None:
                return False
            self.blacklists.append(modname)
        elif cmd in ("options", "install", "remove", "softdep", "weakdep"):
            token, pos = _next_token(line, pos)
            modname = _underscores(token)
            rest = _rest(line, pos) if token is not None else None
            if modname is None or rest is None:
                return False
            if cmd == "options":
                self.options.append(ModOptions(modname, rest.replace("\t", " ")))
            elif cmd == "install":
                self.install_commands.append(Command(modname, rest))
            elif cmd == "remove":
                self.remove_commands.append(Command(modname, rest))
            elif cmd == "softdep":
                self.softdeps.append(parse_softdep(modname, rest))
            else:
                self.weakdeps.append(parse_weakdep(modname, rest))
        elif cmd in ("include", "config"):
            logger.error("command %s is deprecated and not parsed anymore", cmd)
        else:
            return False
        return True

    def apply_kcmdline(self, text: str) -> None:
        """Add blacklists and options given on a kernel command line."""
        for option in parse_kcmdline(text):
            if option.modname == "modprobe" and option.param.startswith("blacklist="):
                value = option.value if option.value is not None else ""
                self.blacklists.extend(value.split(","))
                continue
            modname = _underscores(option.modname)
            if modname is None:
                logger.error(
                    "Ignoring bad option on kernel command line while parsing "
                    "module name: '%s'",
                    option.modname,
                )
                continue
            self.options.append(ModOptions(modname, option.param.replace("\t", " ")))

    # --- iteration

    def iter_blacklists(self) -> Iterator[str]:
        """Yield blacklisted module names."""
        yield from self.blacklists

    def iter_install_commands(self) -> Iterator[tuple[str, str]]:
        """Yield (modname, command) of install commands."""
        for cmd in self.install_commands:
            yield cmd.modname, cmd.command

    def iter_remove_commands(self) -> Iterator[tuple[str, str]]:
        """Yield (modname, command) of remove commands."""
        for cmd in self.remove_commands:
            yield cmd.modname, cmd.command

    def iter_aliases(self) -> Iterator[tuple[str, str]]:
        """Yield (alias, modname) pairs."""
        for alias in self.aliases:
            yield alias.name, alias.modname

    def iter_options(self) -> Iterator[tuple[str, str]]:
        """Yield (modname, options) pairs."""
        for opt in self.options:
            yield opt.modname, opt.options

    def iter_softdeps(self) -> Iterator[tuple[str, str]]:
        """Yield (modname, dependencies as text) pairs."""
        for dep in self.softdeps:
            yield dep.name, dep.plain()

    def iter_weakdeps(self) -> Iterator[tuple[str, str]]:
        """Yield (modname, dependencies as text) pairs."""
        for dep in self.weakdeps:
            yield dep.name, dep.plain()