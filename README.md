# kmodtools

Pure-Python readers for the files that Linux kernel module tooling works with:

- **Module indexes** (`modules.dep.bin`, `modules.alias.bin`, ...): exact and
  wildcard lookups, and dumping the whole index as `key value` lines.
- **Kernel module files** (`.ko`, `.ko.gz`, `.ko.xz`, `.ko.zst`): compression
  detection from the file's first bytes and decompression, with ELF parsing of
  `.modinfo`, `__versions` and symbol tables.
- **Built-in module information** from `modules.builtin.modinfo`.
- **modprobe configuration**: `alias`, `blacklist`, `options`, `install`,
  `remove`, `softdep` and `weakdep` lines from `*.conf` files in the given
  directories, `modules.softdep` and `modules.weakdep` in the module
  directory, plus module options given on the kernel command line.

## Installation

```
pip install kmodtools
```

## Usage

### Looking things up in a module index

```python
from kmodtools.index import Index

idx = Index.open("/lib/modules/6.8.0/modules.dep.bin")
print(idx.search("ext4"))            # first value stored under the key, or None

aliases = Index.open("/lib/modules/6.8.0/modules.alias.bin")
for value in aliases.search_wild("pci:v00008086d00001533sv*"):
    print(value.priority, value.value)
```

`search_wild` treats the keys stored in the index as shell-style patterns
(`*`, `?`, `[...]`) and returns `IndexValue` objects ordered by ascending
priority. `Index.dump(out, alias_prefix=False)` writes every entry to a text
stream. Malformed data or an unsupported version raises `IndexFormatError`.

`kmodtools.indexfile.IndexFile` offers the same `search`, `search_wild` and
`dump`, reading nodes from the open file on demand; it can be used as a
context manager.

### Reading a module file

```python
from kmodtools.modfile import ModuleFile

with ModuleFile("/lib/modules/6.8.0/kernel/fs/ext4/ext4.ko.zst") as mod:
    print(mod.compression)
    elf = mod.elf()
    for entry in elf.modinfo_strings():
        print(entry)
    for version in elf.modversions():
        print(hex(version.crc), version.symbol)
```

`kmodtools.modfile.detect_compression(header)` tells the compression from a
file's first bytes. Bad compressed data raises `ModuleFileError`; a malformed
ELF image, or a missing section that was asked for, raises
`kmodtools.elf.ElfError`.

`Elf.strip(force_modversion=..., force_vermagic=...)` returns a copy of the
image with the `__versions` section's ALLOC flag cleared and/or the
`vermagic=` modinfo string blanked out.

`kmodtools.elfsymbols.symbols(elf)` lists the symbols a module exports and
`kmodtools.elfsymbols.dependency_symbols(elf)` those it needs from elsewhere,
each as a `ModVersion` with `crc`, `bind` and `symbol`.

### Built-in modules

```python
from kmodtools.builtin import builtin_modinfo

print(builtin_modinfo("/lib/modules/6.8.0", "ext4"))   # ["key=value", ...]
```

### modprobe configuration

```python
from kmodtools.config import Config

config = Config.load(
    "/lib/modules/6.8.0",
    ["/etc/modprobe.d", "/run/modprobe.d", "/lib/modprobe.d"],
    "/proc/cmdline",
)
for name, modname in config.iter_aliases():
    print(name, "->", modname)
for modname, deps in config.iter_softdeps():
    print(modname, deps)
```

Configuration text can also be fed directly with `Config.parse_lines`, and a
kernel command line with `Config.apply_kcmdline`. Bad lines are logged and
skipped. Kernel command line options can be parsed on their own with
`kmodtools.kcmdline.parse_kcmdline`; `softdep`/`weakdep` text with
`kmodtools.deps.parse_softdep` and `parse_weakdep`.

## What this package does not do

It only reads. It does not load or unload modules into a running kernel,
does not resolve module names through the indexes into dependency lists,
does not query the state of loaded modules, does not write index files, and
does not read module signatures. It provides no command-line programs.

## Running the tests

```
pip install -e ".[test]"
pytest
```