"""Readers for Linux kernel module files, module indexes, built-in modinfo and modprobe configuration."""

__version__ = "0.1.0"

__all__ = [
    "builtin",
    "config",
    "deps",
    "elf",
    "elfsymbols",
    "index",
    "indexfile",
    "kcmdline",
    "modfile",
]