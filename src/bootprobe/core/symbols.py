"""Kernel symbol table loaded from the ELF artifact."""

import re
from pathlib import Path
from typing import Dict, Iterator, List, Optional, Set, Union

from elftools.common.exceptions import ELFError
from elftools.elf.elffile import ELFFile
from elftools.elf.sections import SymbolTableSection

from bootprobe.core.errors import BuildFailure, SymbolNotFound

_RUST_HASH = re.compile(r"h[0-9a-f]{16}")
_SYMBOL_TYPES = ("STT_FUNC", "STT_NOTYPE", "STT_OBJECT")


def demangle_legacy(name: str) -> Optional[str]:
    """Demangle a legacy Rust symbol into its path.

    ``_ZN13vitros_kernel3idt19timer_handler_inner17h0123456789abcdefE``
    becomes ``vitros_kernel::idt::timer_handler_inner``. Returns None for
    names that are not legacy-mangled.
    """
    if not name.startswith("_ZN") or not name.endswith("E"):
        return None
    body = name[3:-1]
    parts: List[str] = []
    i = 0
    while i < len(body):
        j = i
        while j < len(body) and body[j].isdigit():
            j += 1
        if j == i:
            return None
        length = int(body[i:j])
        part = body[j:j + length]
        if len(part) != length:
            return None
        parts.append(part)
        i = j + length
    if parts and _RUST_HASH.fullmatch(parts[-1]):
        parts.pop()
    return "::".join(parts) if parts else None


class SymbolTable:
    """Name to address mapping for a kernel binary.

    Lookups accept the raw linker name (``boot_complete``), a full Rust path
    (``vitros_kernel::sched::context::switch_context``) or any ``::``-aligned
    suffix of one (``context::switch_context``).

    Example:
        table = SymbolTable.from_elf("target/x86_64-unknown-none/debug/vitros-kernel")
        addr = table.resolve("boot_complete")
    """

    def __init__(self, symbols: Optional[Dict[str, int]] = None) -> None:
        self._addresses: Dict[str, int] = {}
        self._paths: Dict[str, List[str]] = {}
        for name, address in (symbols or {}).items():
            self.add(name, address)

    @classmethod
    def from_elf(cls, path: Union[str, Path]) -> "SymbolTable":
        """Read ``.symtab`` from an ELF file.

        Raises:
            BuildFailure: If the file cannot be read or is not an ELF
        """
        table = cls()
        try:
            with open(path, "rb") as f:
                elf = ELFFile(f)
                for section in elf.iter_sections():
                    if not isinstance(section, SymbolTableSection):
                        continue
                    for sym in section.iter_symbols():
                        if not sym.name or sym["st_value"] == 0:
                            continue
                        if sym["st_info"]["type"] not in _SYMBOL_TYPES:
                            continue
                        table.add(sym.name, sym["st_value"])
        except (OSError, ELFError) as e:
            raise BuildFailure(f"Cannot read symbol table from {path}: {e}")
        return table

    def add(self, name: str, address: int) -> None:
        self._addresses[name] = address
        path = demangle_legacy(name)
        if path:
            self._paths.setdefault(path, []).append(name)

    def resolve(self, symbol: str) -> int:
        """Resolve a symbol to its address.

        Raises:
            SymbolNotFound: If no symbol matches, or several distinct
                addresses do
        """
        candidates = self.candidates(symbol)
        if not candidates:
            raise SymbolNotFound(f"Symbol not found: {symbol}")
        if len(candidates) > 1:
            addrs = ", ".join(f"0x{a:x}" for a in sorted(candidates))
            raise SymbolNotFound(f"Symbol '{symbol}' is ambiguous ({addrs})")
        return candidates.pop()

    def candidates(self, symbol: str) -> Set[int]:
        """Every address ``symbol`` could refer to (empty if absent)."""
        if symbol in self._addresses:
            return {self._addresses[symbol]}
        found: Set[int] = set()
        for path, names in self._paths.items():
            if path == symbol or path.endswith("::" + symbol):
                found.update(self._addresses[n] for n in names)
        return found

    def lookup(self, address: int) -> Optional[str]:
        """Find a symbol name at an exact address (demangled if possible)."""
        for name, addr in self._addresses.items():
            if addr == address:
                return demangle_legacy(name) or name
        return None

    def __contains__(self, symbol: object) -> bool:
        if not isinstance(symbol, str):
            return False
        try:
            self.resolve(symbol)
        except SymbolNotFound:
            return False
        return True

    def __iter__(self) -> Iterator[str]:
        return iter(self._addresses)

    def __len__(self) -> int:
        return len(self._addresses)
