"""
Debug backend for the SQL Server dump analyzer.

DebugBackend is the capability surface the memory interpreter and the
session consume: raw virtual memory reads, symbol and type-field
resolution, PEB lookup, symbolization and per-thread stack traces.

MinidumpBackend implements it over the dump file itself:
- Virtual memory is read through the minidump library's file reader
  (not available when SQL Server compressed the dump memory)
- The PEB is found through the first thread's TEB
- Symbols come from offline symbol maps (see symbol_resolver)
- Stack traces are the context RIP plus return addresses found by
  scanning the thread's stack memory for pointers into loaded modules
"""
from __future__ import annotations

import logging
import struct
from abc import ABC, abstractmethod
from pathlib import Path
from typing import Iterable, List, Optional, Tuple, Union

from .config import CONTEXT_AMD64_RIP_OFFSET, MAX_STACK_FRAMES, TEB_TYPE
from .dump_extractor import MinidumpContents, MinidumpStreamType, MinidumpThread
from .errors import BackendError, NotAccessible
from .symbol_resolver import SymbolResolver

logger = logging.getLogger(__name__)

try:
    from minidump.minidumpfile import MinidumpFile
    HAS_MINIDUMP = True
except ImportError:
    MinidumpFile = None
    HAS_MINIDUMP = False


class DebugBackend(ABC):
    """Byte, symbol and thread access into a dumped address space."""

    @abstractmethod
    def read_bytes(self, address: int, length: int) -> bytes:
        """Read length bytes at address. Raises NotAccessible if unmapped."""

    def read_pointer(self, address: int) -> int:
        return struct.unpack('<Q', self.read_bytes(address, 8))[0]

    @abstractmethod
    def resolve_symbol_address(self, name: str) -> int:
        """Virtual address of a module!symbol name."""

    @abstractmethod
    def resolve_type_field_offset(self, type_name: str, field_name: str) -> int:
        """Byte offset of a field inside a structure, e.g. ('ntdll!_PEB', 'ProcessParameters')."""

    @abstractmethod
    def get_current_process_environment_block_address(self) -> int:
        """Virtual address of the process PEB."""

    @abstractmethod
    def symbolize_address(self, address: int) -> Tuple[str, int]:
        """Nearest symbol name and displacement. Raises BackendError when unknown."""

    @abstractmethod
    def enumerate_thread_ids(self) -> List[int]:
        """OS thread ids ordered by debugger thread index."""

    @abstractmethod
    def get_stack_trace(self, debugger_thread_id: int) -> List[int]:
        """Instruction addresses of a thread's frames, innermost first."""

    def set_symbols_path(self, symbols_path: Iterable[Union[str, Path]]) -> None:
        """Change where symbols are looked up. Backends without symbols ignore it."""

    def close(self) -> None:
        """Release any handles held by the backend."""


class MinidumpBackend(DebugBackend):
    """DebugBackend reading memory, threads and modules from the dump file."""

    def __init__(self, file_name: Union[str, Path], contents: MinidumpContents,
                 symbols_path: Optional[Iterable[Union[str, Path]]] = None,
                 minidump_file=None):
        """
        Args:
            file_name: Path of the dump file
            contents: Records already decoded from the same file
            symbols_path: Directories searched for symbol maps
            minidump_file: Pre-parsed minidump.MinidumpFile (parsed lazily otherwise)
        """
        self.file_name = Path(file_name)
        self.contents = contents
        self._minidump = minidump_file
        self._reader = None
        self._closed = False

        self.symbols = SymbolResolver(symbols_path)
        for name, module in contents.loaded_modules:
            self.symbols.register_module(name, module.base_of_image, module.size_of_image)

    def _get_reader(self):
        if self._closed:
            raise BackendError(f"Dump {self.file_name.name} is closed")
        if self._reader is None:
            if self.contents.has_stream(MinidumpStreamType.SQL_COMPRESSED_MEMORY):
                raise BackendError(f"Dump {self.file_name.name} memory is compressed and cannot be read")
            if self._minidump is None:
                if not HAS_MINIDUMP:
                    raise BackendError("The 'minidump' package is required to read dump memory")
                try:
                    self._minidump = MinidumpFile.parse(str(self.file_name))
                except Exception as e:
                    # minidump rejects stream types missing from its own enum
                    raise BackendError(f"Failed to parse {self.file_name.name} with minidump: {e}") from e
            try:
                self._reader = self._minidump.get_reader()
            except Exception as e:
                # minidump raises bare errors for dumps without memory lists
                raise BackendError(f"Dump {self.file_name.name} has no readable memory: {e}") from e
        return self._reader

    @staticmethod
    def _segment_at(reader, address: int):
        for segment in reader.memory_segments:
            if segment.inrange(address):
                return segment
        return None

    def read_bytes(self, address: int, length: int) -> bytes:
        reader = self._get_reader()
        chunks = []
        position, end = address, address + length
        # minidump reads must stay inside one segment
        while position < end:
            segment = self._segment_at(reader, position)
            if segment is None:
                raise NotAccessible(address, length,
                                    f"Memory at 0x{position:X} ({length} bytes from 0x{address:X}) is not in the dump")
            size = min(end, segment.end_virtual_address) - position
            try:
                chunks.append(bytes(reader.read(position, size)))
            except Exception as e:
                raise BackendError(f"Failed to read {size} bytes at 0x{position:X} from {self.file_name.name}: {e}") from e
            position += size
        return b''.join(chunks)

    def _read_file_range(self, rva: int, size: int) -> bytes:
        handle = self._get_reader().file_handle
        handle.seek(rva)
        return handle.read(size)

    def resolve_symbol_address(self, name: str) -> int:
        return self.symbols.resolve_name(name)

    def resolve_type_field_offset(self, type_name: str, field_name: str) -> int:
        return self.symbols.type_field_offset(type_name, field_name)

    def get_current_process_environment_block_address(self) -> int:
        if not self.contents.threads:
            raise BackendError("Dump has no threads; cannot locate the PEB")
        teb = self.contents.threads[0].teb
        return self.read_pointer(teb + self.resolve_type_field_offset(TEB_TYPE, "ProcessEnvironmentBlock"))

    def symbolize_address(self, address: int) -> Tuple[str, int]:
        info = self.symbols.resolve_address(address)
        if info is None:
            raise BackendError(f"Address 0x{address:X} is not inside a loaded module")
        return info.display_name, info.offset

    def enumerate_thread_ids(self) -> List[int]:
        return [t.thread_id for t in self.contents.threads]

    def set_symbols_path(self, symbols_path: Iterable[Union[str, Path]]) -> None:
        self.symbols.set_symbols_path(symbols_path)

    def _thread(self, debugger_thread_id: int) -> MinidumpThread:
        if not 0 <= debugger_thread_id < len(self.contents.threads):
            raise BackendError(f"No thread with debugger id {debugger_thread_id}")
        return self.contents.threads[debugger_thread_id]

    def _context_rip(self, thread: MinidumpThread) -> Optional[int]:
        context = thread.thread_context
        if context.data_size < CONTEXT_AMD64_RIP_OFFSET + 8:
            return None
        raw = self._read_file_range(context.rva + CONTEXT_AMD64_RIP_OFFSET, 8)
        if len(raw) < 8:
            return None
        return struct.unpack('<Q', raw)[0]

    def get_stack_trace(self, debugger_thread_id: int) -> List[int]:
        thread = self._thread(debugger_thread_id)
        frames: List[int] = []

        # RIP from CONTEXT is frame #0
        rip = self._context_rip(thread)
        if rip:
            frames.append(rip)

        # Scan the stack for return addresses, innermost (lowest address) first
        stack_data = self._read_file_range(thread.stack.memory.rva, thread.stack.memory.data_size)
        for i in range(0, len(stack_data) - 7, 8):
            if len(frames) >= MAX_STACK_FRAMES:
                break
            ptr_val = struct.unpack('<Q', stack_data[i:i + 8])[0]
            if self.symbols.get_module_for_address(ptr_val) is None:
                continue
            # Dedup consecutive duplicates
            if frames and frames[-1] == ptr_val:
                continue
            frames.append(ptr_val)

        logger.debug("Thread %d (OS id %d): %d frames", debugger_thread_id, thread.thread_id, len(frames))
        return frames

    def close(self) -> None:
        self._closed = True
        handle = getattr(self._minidump, 'file_handle', None)
        if handle is not None:
            handle.close()
        self._reader = None
        self._minidump = None
