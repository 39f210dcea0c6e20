"""Symbol Resolution Module for the SQL Server dump analyzer.

Resolves symbol names to addresses and addresses back to the nearest symbol
using offline symbol maps. A symbol map is a JSON file named
``<module>.symbols.json`` found on the symbols path::

    {
        "module": "sqlmin",
        "symbols": {"g_rgUlTraceFlags": "0x2A61B40", ...},
        "types": {"_PEB": {"ProcessParameters": 32}}
    }

Symbol values are relative to the module base. Addresses in modules without
a map resolve to ``module+offset``.
"""
from __future__ import annotations

import bisect
import json
import logging
import os
from dataclasses import dataclass, field
from pathlib import Path
from typing import Dict, Iterable, List, Optional, Tuple, Union

from .config import DEFAULT_TYPE_OFFSETS, SYMBOL_MAP_SUFFIX
from .errors import BackendError

logger = logging.getLogger(__name__)


@dataclass
class SymbolInfo:
    """Information about a resolved symbol."""
    module_name: str
    function_name: Optional[str]
    offset: int  # Offset from function start, or from module base when function_name is None
    rva: int = 0  # Relative Virtual Address within module

    @property
    def display_name(self) -> str:
        if self.function_name:
            return f"{self.module_name}!{self.function_name}"
        return self.module_name


@dataclass
class ModuleSymbolInfo:
    """Symbol information for a loaded module."""
    name: str
    base_address: int
    size: int
    map_path: Optional[Path] = None
    symbols_loaded: bool = False
    # Symbol table: name -> RVA
    symbols: Dict[str, int] = field(default_factory=dict)
    # Parallel sorted RVA and name lists for address lookups
    _rvas: List[int] = field(default_factory=list, repr=False)
    _names: List[str] = field(default_factory=list, repr=False)

    def set_symbols(self, symbols: Dict[str, int]) -> None:
        self.symbols = dict(symbols)
        ordered = sorted((rva, name) for name, rva in self.symbols.items())
        self._rvas = [rva for rva, _ in ordered]
        self._names = [name for _, name in ordered]
        self.symbols_loaded = True

    def clear(self) -> None:
        self.symbols = {}
        self._rvas = []
        self._names = []
        self.map_path = None
        self.symbols_loaded = False

    def nearest_symbol(self, rva: int) -> Optional[Tuple[str, int]]:
        """Closest symbol at or before rva, as (name, displacement)."""
        index = bisect.bisect_right(self._rvas, rva) - 1
        if index < 0:
            return None
        return self._names[index], rva - self._rvas[index]


def module_key(module_name: str) -> str:
    """Debugger style module key: file name without directory or extension, lower case."""
    base = module_name.replace('\\', '/').rsplit('/', 1)[-1]
    stem, _, _ = base.rpartition('.')
    return (stem or base).lower()


def _parse_int(value: Union[int, str]) -> int:
    if isinstance(value, int):
        return value
    return int(value, 0)


class SymbolResolver:
    """
    Offline symbol resolver for SQL Server dumps.

    Modules are registered from the dump's module list; symbol maps are
    loaded lazily from the symbols path the first time a module is looked up.
    """

    def __init__(self, symbols_path: Optional[Iterable[Union[str, Path]]] = None):
        self.symbols_path: List[Path] = [Path(p) for p in (symbols_path or [])]
        self._modules: Dict[int, ModuleSymbolInfo] = {}  # base_address -> ModuleSymbolInfo
        self._by_key: Dict[str, ModuleSymbolInfo] = {}
        self._type_offsets: Dict[str, Dict[str, int]] = {
            type_name: dict(fields) for type_name, fields in DEFAULT_TYPE_OFFSETS.items()
        }

        # Statistics
        self.stats = {
            'maps_loaded': 0,
            'addresses_resolved': 0,
            'addresses_unresolved': 0,
        }

    def set_symbols_path(self, symbols_path: Iterable[Union[str, Path]]) -> None:
        """Replace the symbols path and forget previously loaded maps."""
        self.symbols_path = [Path(p) for p in symbols_path]
        self._type_offsets = {
            type_name: dict(fields) for type_name, fields in DEFAULT_TYPE_OFFSETS.items()
        }
        for mod in self._modules.values():
            mod.clear()

    def register_module(self, name: str, base_address: int, size: int) -> ModuleSymbolInfo:
        """Register a module for symbol resolution."""
        mod = ModuleSymbolInfo(name=name, base_address=base_address, size=size)
        self._modules[base_address] = mod
        self._by_key.setdefault(module_key(name), mod)
        return mod

    @property
    def modules(self) -> List[ModuleSymbolInfo]:
        return list(self._modules.values())

    # ------------------------------------------------------------------
    # Symbol maps
    # ------------------------------------------------------------------

    def load_symbol_map(self, path: Union[str, Path], module: Optional[ModuleSymbolInfo] = None) -> None:
        """Load a symbol map file and attach it to its module.

        Raises:
            BackendError: the file is unreadable or names an unregistered module
        """
        path = Path(path)
        try:
            with open(path, 'r', encoding='utf-8') as f:
                data = json.load(f)
        except (OSError, ValueError) as e:
            raise BackendError(f"Could not load symbol map {path}: {e}") from e

        if data.get('module'):
            key = data['module'].lower()
        elif path.name.endswith(SYMBOL_MAP_SUFFIX):
            key = path.name[:-len(SYMBOL_MAP_SUFFIX)].lower()
        else:
            key = path.stem.lower()
        if module is None:
            module = self._by_key.get(key)

        for type_name, fields in (data.get('types') or {}).items():
            full_name = type_name if '!' in type_name else f"{key}!{type_name}"
            self._type_offsets.setdefault(full_name, {}).update(
                {field_name: _parse_int(offset) for field_name, offset in fields.items()}
            )

        if module is None:
            if data.get('symbols'):
                raise BackendError(f"Symbol map {path} is for module '{key}' which is not loaded")
            return

        module.set_symbols({name: _parse_int(rva) for name, rva in (data.get('symbols') or {}).items()})
        module.map_path = path
        self.stats['maps_loaded'] += 1
        logger.info("Loaded %d symbols for %s from %s", len(module.symbols), module.name, path)

    def _find_symbol_map(self, mod: ModuleSymbolInfo) -> Optional[Path]:
        file_name = module_key(mod.name) + SYMBOL_MAP_SUFFIX
        for directory in self.symbols_path:
            candidate = directory / file_name
            if candidate.is_file():
                return candidate
        return None

    def _ensure_symbols(self, mod: ModuleSymbolInfo) -> None:
        if mod.symbols_loaded:
            return
        path = self._find_symbol_map(mod)
        if path is not None:
            self.load_symbol_map(path, mod)
        else:
            logger.debug("No symbol map for %s on %s", mod.name, os.pathsep.join(map(str, self.symbols_path)))
            mod.symbols_loaded = True

    # ------------------------------------------------------------------
    # Lookups
    # ------------------------------------------------------------------

    def resolve_name(self, symbol_name: str) -> int:
        """
        Resolve ``module!symbol`` to a virtual address.

        Raises:
            BackendError: the module is not loaded or the symbol is unknown
        """
        module_name, sep, name = symbol_name.partition('!')
        if not sep:
            raise BackendError(f"Symbol '{symbol_name}' must be qualified as module!name")

        mod = self._by_key.get(module_name.lower())
        if mod is None:
            raise BackendError(f"Module '{module_name}' is not loaded")

        self._ensure_symbols(mod)
        if name not in mod.symbols:
            raise BackendError(f"Symbol '{symbol_name}' not found")
        return mod.base_address + mod.symbols[name]

    def type_field_offset(self, type_name: str, field_name: str) -> int:
        """Offset of field_name inside type_name (e.g. 'ntdll!_PEB', 'ProcessParameters')."""
        module_name = type_name.partition('!')[0]
        mod = self._by_key.get(module_name.lower())
        if mod is not None:
            self._ensure_symbols(mod)

        fields = self._type_offsets.get(type_name)
        if fields is None or field_name not in fields:
            raise BackendError(f"No offset known for {type_name}.{field_name}")
        return fields[field_name]

    def _find_module_for_address(self, address: int) -> Optional[ModuleSymbolInfo]:
        """Find which module contains the given address."""
        for base, mod in self._modules.items():
            if base <= address < base + mod.size:
                return mod
        return None

    def get_module_for_address(self, address: int) -> Optional[Tuple[str, int]]:
        """
        Get module name and offset for an address.

        Returns:
            Tuple of (module_name, offset) or None
        """
        mod = self._find_module_for_address(address)
        if mod:
            return (mod.name, address - mod.base_address)
        return None

    def resolve_address(self, address: int) -> Optional[SymbolInfo]:
        """
        Resolve an address to a symbol.

        Args:
            address: Virtual address to resolve

        Returns:
            SymbolInfo if the address is inside a module, None otherwise
        """
        mod = self._find_module_for_address(address)
        if not mod:
            self.stats['addresses_unresolved'] += 1
            return None

        self._ensure_symbols(mod)
        rva = address - mod.base_address
        self.stats['addresses_resolved'] += 1

        nearest = mod.nearest_symbol(rva)
        if nearest:
            name, displacement = nearest
            return SymbolInfo(module_name=module_key(mod.name), function_name=name,
                              offset=displacement, rva=rva)

        # Fall back to module + offset format
        return SymbolInfo(module_name=module_key(mod.name), function_name=None, offset=rva, rva=rva)

    def format_address(self, address: int) -> str:
        """
        Format an address with symbol or module information.

        Example: "sqlmin!CStatement::Execute+0x1A" or "0x7FF812345678"
        """
        info = self.resolve_address(address)
        if info:
            return f"{info.display_name}+0x{info.offset:X}"
        return f"0x{address:X}"
