"""
Memory interpreter for SQL Server dumps.

Rebuilds values that are not stored as minidump records by walking
pointers through the dumped address space:
- NT UNICODE_STRING structures
- Process command line and environment block (via the PEB)
- The trace flag bitmap in sqlmin
- Hardware manufacturer / product strings

Every function takes a DebugBackend as its first argument.
"""
from __future__ import annotations

import logging
import struct
from dataclasses import dataclass
from typing import Dict, List

from .backend import DebugBackend
from .config import (
    HARDWARE_STRING_SIZE,
    PEB_TYPE,
    PROCESS_PARAMETERS_TYPE,
    SYSTEM_MANUFACTURER_SYMBOL,
    SYSTEM_PRODUCT_NAME_SYMBOL,
    TRACE_FLAG_SCAN_LIMIT,
    TRACE_FLAG_SYMBOL,
)
from .errors import DecodeNotImplementedError, InvalidData, NotAccessible

logger = logging.getLogger(__name__)

# Little-endian struct formats by width, (unsigned, signed)
_INTEGRAL_FORMATS = {
    1: ('<B', '<b'),
    2: ('<H', '<h'),
    4: ('<I', '<i'),
    8: ('<Q', '<q'),
}

# UNICODE_STRING layout on x64
_NT_STRING_LENGTH = 0x0
_NT_STRING_MAXIMUM_LENGTH = 0x2
_NT_STRING_BUFFER = 0x8


@dataclass(frozen=True)
class NtUnicodeString:
    """A decoded UNICODE_STRING.

    ``text`` holds all ``maximum_length`` bytes of the buffer, which can run
    past the logical end of the string. ``value`` is the string cut to
    ``length``.
    """
    length: int
    maximum_length: int
    buffer_address: int
    text: str

    @property
    def value(self) -> str:
        return self.text[:self.length // 2]


# ============================================================================
# Primitive reads
# ============================================================================

def read_virtual_memory(backend: DebugBackend, address: int, length: int) -> bytes:
    """Read exactly length bytes, raising InvalidData on a short read."""
    data = backend.read_bytes(address, length)
    if len(data) != length:
        raise InvalidData(
            f"Read {len(data)} bytes at 0x{address:X}, expected {length}"
        )
    return data


def read_integral(backend: DebugBackend, address: int, width: int, signed: bool = False) -> int:
    """Read a little-endian integer of 1, 2, 4 or 8 bytes."""
    formats = _INTEGRAL_FORMATS.get(width)
    if formats is None:
        raise DecodeNotImplementedError(f"No decoder for {width}-byte integers")
    fmt = formats[1] if signed else formats[0]
    return struct.unpack(fmt, read_virtual_memory(backend, address, width))[0]


def read_nt_unicode_string(backend: DebugBackend, address: int) -> NtUnicodeString:
    """
    Decode the UNICODE_STRING at address.

    Reads maximum_length bytes from the buffer, not length. Use
    ``NtUnicodeString.value`` for the logical string.
    """
    length = read_integral(backend, address + _NT_STRING_LENGTH, 2)
    maximum_length = read_integral(backend, address + _NT_STRING_MAXIMUM_LENGTH, 2)
    buffer_address = backend.read_pointer(address + _NT_STRING_BUFFER)

    if maximum_length == 0:
        raise InvalidData(f"UNICODE_STRING at 0x{address:X} has no buffer")

    raw = read_virtual_memory(backend, buffer_address, maximum_length)
    return NtUnicodeString(
        length=length,
        maximum_length=maximum_length,
        buffer_address=buffer_address,
        text=raw.decode('utf-16-le', errors='replace'),
    )


def read_unicode_string_raw(backend: DebugBackend, address: int, length: int,
                            is_pointer: bool = False) -> str:
    """
    Read length bytes as UTF-16 text.

    Args:
        address: Start of the text, or of a pointer to it when is_pointer is set
        length: Byte count to read
    """
    if is_pointer:
        address = backend.read_pointer(address)
    return read_virtual_memory(backend, address, length).decode('utf-16-le', errors='replace')


# ============================================================================
# Process environment
# ============================================================================

def _process_parameters(backend: DebugBackend) -> int:
    peb = backend.get_current_process_environment_block_address()
    offset = backend.resolve_type_field_offset(PEB_TYPE, "ProcessParameters")
    return backend.read_pointer(peb + offset)


def get_process_command_line(backend: DebugBackend) -> str:
    """Command line of the dumped process, read from its PEB."""
    params = _process_parameters(backend)
    offset = backend.resolve_type_field_offset(PROCESS_PARAMETERS_TYPE, "CommandLine")
    return read_nt_unicode_string(backend, params + offset).value


def get_environment_block_raw(backend: DebugBackend) -> str:
    """
    Environment block of the dumped process as one string.

    Variables are separated by NUL characters. The block ends with a single
    NUL, not two.
    """
    params = _process_parameters(backend)
    size_offset = backend.resolve_type_field_offset(PROCESS_PARAMETERS_TYPE, "EnvironmentSize")
    block_offset = backend.resolve_type_field_offset(PROCESS_PARAMETERS_TYPE, "Environment")

    size = read_integral(backend, params + size_offset, 8)
    logger.debug("Environment block is %d bytes", size)
    return read_unicode_string_raw(backend, params + block_offset, size, is_pointer=True)


def parse_environment_block(text: str) -> Dict[str, str]:
    """
    Split a NUL separated KEY=VALUE block into a dict.

    Tokens that do not contain exactly one '=' are dropped. A repeated key
    keeps its last value.
    """
    variables: Dict[str, str] = {}
    for token in text.split('\0'):
        if not token.strip():
            continue
        parts = token.split('=')
        if len(parts) != 2:
            continue
        variables[parts[0]] = parts[1]
    return variables


def get_instance_name(command_line: str) -> str:
    """SQL Server instance name from the ``-s`` startup option, or "" if absent."""
    start = command_line.find('-s')
    if start < 0:
        return ""
    start += 2
    end = command_line.find(' ', start)
    if end < 0:
        return command_line[start:]
    return command_line[start:end]


# ============================================================================
# SQL Server globals
# ============================================================================

def get_trace_flags(backend: DebugBackend, symbol: str = TRACE_FLAG_SYMBOL,
                    limit: int = TRACE_FLAG_SCAN_LIMIT) -> List[int]:
    """
    Decode the enabled trace flags from the sqlmin trace flag bitmap.

    The table size is not published, so bytes are read until ``limit`` or
    the first unreadable address. The counter is advanced before the flag
    number is computed, so byte N maps to flags (N + 1) * 8 + bit.
    """
    base = backend.resolve_symbol_address(symbol)
    if not base:
        raise InvalidData(f"Symbol {symbol} resolved to a null address")

    flags: List[int] = []
    counter = 0
    while counter < limit:
        try:
            value = read_integral(backend, base + counter, 1)
        except NotAccessible:
            logger.debug("Trace flag scan stopped at 0x%X after %d bytes", base + counter, counter)
            break
        counter += 1
        if not value:
            continue
        for bit in range(8):
            if value & (1 << bit):
                flags.append(counter * 8 + bit)

    return flags


def _read_hardware_string(backend: DebugBackend, symbol: str) -> str:
    address = backend.resolve_symbol_address(symbol)
    text = read_unicode_string_raw(backend, address, HARDWARE_STRING_SIZE)
    return text.split('\0', 1)[0]


def get_system_manufacturer(backend: DebugBackend) -> str:
    """Hardware vendor, e.g. 'Dell Inc.' or 'Microsoft Corporation'."""
    return _read_hardware_string(backend, SYSTEM_MANUFACTURER_SYMBOL)


def get_system_product_name(backend: DebugBackend) -> str:
    """Hardware model, e.g. 'Virtual Machine' or 'PowerEdge R720'."""
    return _read_hardware_string(backend, SYSTEM_PRODUCT_NAME_SYMBOL)
