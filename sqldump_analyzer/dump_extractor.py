"""
Minidump Binary Parser for SQL Server memory dumps

Reads the MINIDUMP_HEADER and stream directory, then decodes the streams the
analyzer cares about:
- Thread list
- Module list and unloaded module list (names resolved through RVAs)
- Wide comment streams (SQL Server writes between one and three of them)
- Exception and misc info streams

All structures are little-endian and decoded with struct unpacking from a
shared BinaryReader cursor.
"""
from __future__ import annotations

import logging
import mmap
import os
import struct
from dataclasses import dataclass, field
from enum import IntEnum, IntFlag
from pathlib import Path
from typing import List, Optional, Tuple, Union

from .config import MMAP_THRESHOLD
from .errors import FormatError

logger = logging.getLogger(__name__)

MINIDUMP_SIGNATURE = 0x504D444D  # 'MDMP'

HEADER_SIZE = 32
DIRECTORY_ENTRY_SIZE = 12
THREAD_SIZE = 48
MODULE_SIZE = 108
UNLOADED_MODULE_SIZE = 24
MAX_EXCEPTION_PARAMETERS = 15


# ============================================================================
# MINIDUMP STRUCTURES
# ============================================================================

class MinidumpStreamType(IntEnum):
    """MINIDUMP_STREAM_TYPE enum"""
    UNUSED = 0
    RESERVED_STREAM_0 = 1
    RESERVED_STREAM_1 = 2
    THREAD_LIST = 3
    MODULE_LIST = 4
    MEMORY_LIST = 5
    EXCEPTION = 6
    SYSTEM_INFO = 7
    THREAD_EX_LIST = 8
    MEMORY_64_LIST = 9
    COMMENT_STREAM_A = 10
    COMMENT_STREAM_W = 11
    HANDLE_DATA = 12
    FUNCTION_TABLE = 13
    UNLOADED_MODULE_LIST = 14
    MISC_INFO = 15
    MEMORY_INFO_LIST = 16
    THREAD_INFO_LIST = 17
    HANDLE_OPERATION_LIST = 18
    TOKEN = 19
    JAVASCRIPT_DATA = 20
    SYSTEM_MEMORY_INFO = 21
    PROCESS_VM_COUNTERS = 22
    IPT_TRACE = 23
    THREAD_NAMES = 24
    SQL_COMPRESSED_MEMORY = 0x7000
    CE_STREAM_NULL = 0x8000
    CE_STREAM_SYSTEM_INFO = 0x8001
    CE_STREAM_EXCEPTION = 0x8002
    CE_STREAM_MODULE_LIST = 0x8003
    CE_STREAM_PROCESS_LIST = 0x8004
    CE_STREAM_THREAD_LIST = 0x8005
    CE_STREAM_THREAD_CONTEXT_LIST = 0x8006
    CE_STREAM_THREAD_CALL_STACK_LIST = 0x8007
    CE_STREAM_MEMORY_VIRTUAL_LIST = 0x8008
    CE_STREAM_MEMORY_PHYSICAL_LIST = 0x8009
    CE_STREAM_BUCKET_PARAMETERS = 0x800A
    CE_STREAM_PROCESS_MODULE_MAP = 0x800B
    CE_STREAM_DIAGNOSIS_LIST = 0x800C
    LAST_RESERVED_STREAM = 0xFFFF


class MinidumpType(IntFlag):
    """MINIDUMP_TYPE flags stored in the header"""
    NORMAL = 0x00000000
    WITH_DATA_SEGS = 0x00000001
    WITH_FULL_MEMORY = 0x00000002
    WITH_HANDLE_DATA = 0x00000004
    FILTER_MEMORY = 0x00000008
    SCAN_MEMORY = 0x00000010
    WITH_UNLOADED_MODULES = 0x00000020
    WITH_INDIRECTLY_REFERENCED_MEMORY = 0x00000040
    FILTER_MODULE_PATHS = 0x00000080
    WITH_PROCESS_THREAD_DATA = 0x00000100
    WITH_PRIVATE_READ_WRITE_MEMORY = 0x00000200
    WITHOUT_OPTIONAL_DATA = 0x00000400
    WITH_FULL_MEMORY_INFO = 0x00000800
    WITH_THREAD_INFO = 0x00001000
    WITH_CODE_SEGS = 0x00002000
    WITHOUT_AUXILIARY_STATE = 0x00004000
    WITH_FULL_AUXILIARY_STATE = 0x00008000
    WITH_PRIVATE_WRITE_COPY_MEMORY = 0x00010000
    IGNORE_INACCESSIBLE_MEMORY = 0x00020000
    WITH_TOKEN_INFORMATION = 0x00040000
    WITH_MODULE_HEADERS = 0x00080000
    FILTER_TRIAGE = 0x00100000
    WITH_AVX_XSTATE_CONTEXT = 0x00200000
    WITH_IPT_TRACE = 0x00400000
    SCAN_INACCESSIBLE_PARTIAL_PAGES = 0x00800000
    FILTER_WRITE_COMBINED_MEMORY = 0x01000000


# MINIDUMP_MISC_INFO Flags1
MISC1_PROCESS_ID = 0x00000001
MISC1_PROCESS_TIMES = 0x00000002


@dataclass(frozen=True)
class MinidumpHeader:
    """MINIDUMP_HEADER"""
    signature: int  # 0x504D444D ('PMDM')
    version: int
    num_streams: int
    stream_directory_rva: int
    checksum: int
    time_date_stamp: int
    flags: int

    @property
    def dump_type(self) -> MinidumpType:
        return MinidumpType(self.flags & 0x01FFFFFF)

    @property
    def has_full_memory(self) -> bool:
        return bool(self.flags & MinidumpType.WITH_FULL_MEMORY)


@dataclass(frozen=True)
class MinidumpLocationDescriptor:
    """MINIDUMP_LOCATION_DESCRIPTOR"""
    data_size: int
    rva: int


@dataclass(frozen=True)
class MinidumpDirectory:
    """MINIDUMP_DIRECTORY entry"""
    stream_type: int
    data_size: int
    rva: int

    @property
    def known_type(self) -> Optional[MinidumpStreamType]:
        try:
            return MinidumpStreamType(self.stream_type)
        except ValueError:
            return None


@dataclass(frozen=True)
class MinidumpMemoryDescriptor:
    """MINIDUMP_MEMORY_DESCRIPTOR"""
    start_of_memory_range: int
    memory: MinidumpLocationDescriptor


@dataclass(frozen=True)
class MinidumpThread:
    """MINIDUMP_THREAD"""
    thread_id: int
    suspend_count: int
    priority_class: int
    priority: int
    teb: int
    stack: MinidumpMemoryDescriptor
    thread_context: MinidumpLocationDescriptor


@dataclass(frozen=True)
class VsFixedFileInfo:
    """VS_FIXEDFILEINFO version structure"""
    signature: int
    struct_version: int
    file_version_ms: int
    file_version_ls: int
    product_version_ms: int
    product_version_ls: int
    file_flags_mask: int
    file_flags: int
    file_os: int
    file_type: int
    file_subtype: int
    file_date_ms: int
    file_date_ls: int

    @property
    def file_version(self) -> str:
        return _format_version(self.file_version_ms, self.file_version_ls)

    @property
    def product_version(self) -> str:
        return _format_version(self.product_version_ms, self.product_version_ls)


@dataclass(frozen=True)
class MinidumpModule:
    """MINIDUMP_MODULE"""
    base_of_image: int
    size_of_image: int
    checksum: int
    time_date_stamp: int
    module_name_rva: int
    version_info: VsFixedFileInfo
    cv_record: MinidumpLocationDescriptor
    misc_record: MinidumpLocationDescriptor
    reserved0: int
    reserved1: int


@dataclass(frozen=True)
class MinidumpUnloadedModule:
    """MINIDUMP_UNLOADED_MODULE"""
    base_of_image: int
    size_of_image: int
    checksum: int
    time_date_stamp: int
    module_name_rva: int


@dataclass(frozen=True)
class MinidumpExceptionStream:
    """MINIDUMP_EXCEPTION_STREAM with its embedded MINIDUMP_EXCEPTION"""
    thread_id: int
    exception_code: int
    exception_flags: int
    exception_record: int
    exception_address: int
    exception_information: Tuple[int, ...]
    thread_context: MinidumpLocationDescriptor


@dataclass(frozen=True)
class MinidumpMiscInfo:
    """MINIDUMP_MISC_INFO"""
    size_of_info: int
    flags1: int
    process_id: int
    process_create_time: int
    process_user_time: int
    process_kernel_time: int

    @property
    def has_process_id(self) -> bool:
        return bool(self.flags1 & MISC1_PROCESS_ID)

    @property
    def has_process_times(self) -> bool:
        return bool(self.flags1 & MISC1_PROCESS_TIMES)


@dataclass
class MinidumpContents:
    """Everything decoded when a dump is opened."""
    header: MinidumpHeader
    directories: List[MinidumpDirectory] = field(default_factory=list)
    comments: List[str] = field(default_factory=list)
    threads: List[MinidumpThread] = field(default_factory=list)
    loaded_modules: List[Tuple[str, MinidumpModule]] = field(default_factory=list)
    unloaded_modules: List[Tuple[str, MinidumpUnloadedModule]] = field(default_factory=list)
    exception: Optional[MinidumpExceptionStream] = None
    misc_info: Optional[MinidumpMiscInfo] = None
    # Streams that failed to decode, one message each
    errors: List[str] = field(default_factory=list)

    def has_stream(self, stream_type: int) -> bool:
        return any(d.stream_type == stream_type for d in self.directories)


def _format_version(ms: int, ls: int) -> str:
    """Format MS/LS version parts into a dotted version string."""
    return f"{(ms >> 16) & 0xFFFF}.{ms & 0xFFFF}.{(ls >> 16) & 0xFFFF}.{ls & 0xFFFF}"


# ============================================================================
# BINARY READER
# ============================================================================

Buffer = Union[bytes, bytearray, memoryview, mmap.mmap]


class BinaryReader:
    """Little-endian cursor over the raw dump bytes."""

    def __init__(self, data: Buffer):
        self.data = data
        self.position = 0

    def __len__(self) -> int:
        return len(self.data)

    def seek(self, position: int) -> None:
        if position < 0 or position > len(self.data):
            raise FormatError(f"Seek to 0x{position:X} is outside the file (size 0x{len(self.data):X})")
        self.position = position

    def tell(self) -> int:
        return self.position

    def read(self, size: int) -> bytes:
        end = self.position + size
        if size < 0 or end > len(self.data):
            raise FormatError(
                f"Read of {size} bytes at 0x{self.position:X} runs past end of file (size 0x{len(self.data):X})"
            )
        chunk = bytes(self.data[self.position:end])
        self.position = end
        return chunk

    def unpack(self, fmt: str) -> Tuple[int, ...]:
        return struct.unpack(fmt, self.read(struct.calcsize(fmt)))

    def read_u32(self) -> int:
        return self.unpack('<I')[0]

    def read_u64(self) -> int:
        return self.unpack('<Q')[0]


# ============================================================================
# HEADER AND DIRECTORY
# ============================================================================

def parse_header(reader: BinaryReader) -> MinidumpHeader:
    """Parse MINIDUMP_HEADER at offset 0.

    MINIDUMP_HEADER is 32 bytes:
    DWORD Signature, Version, NumberOfStreams, StreamDirectoryRva,
    CheckSum, TimeDateStamp; QWORD Flags
    """
    reader.seek(0)
    if len(reader) < HEADER_SIZE:
        raise FormatError(f"File is {len(reader)} bytes, too small for a minidump header")

    sig, ver, streams, stream_dir_rva, checksum, timestamp, flags = reader.unpack('<IIIIIIQ')

    # Verify MDMP signature before trusting anything else
    if sig != MINIDUMP_SIGNATURE:
        raise FormatError(
            f"Header signature does not match! Expected 0x{MINIDUMP_SIGNATURE:08X} but read 0x{sig:08X}"
        )

    return MinidumpHeader(
        signature=sig,
        version=ver,
        num_streams=streams,
        stream_directory_rva=stream_dir_rva,
        checksum=checksum,
        time_date_stamp=timestamp,
        flags=flags,
    )


def parse_directory(reader: BinaryReader, header: MinidumpHeader) -> List[MinidumpDirectory]:
    """Parse the MINIDUMP_DIRECTORY array, exactly header.num_streams entries."""
    end = header.stream_directory_rva + header.num_streams * DIRECTORY_ENTRY_SIZE
    if end > len(reader):
        raise FormatError(
            f"Stream directory at 0x{header.stream_directory_rva:X} with {header.num_streams} "
            f"entries runs past end of file"
        )

    reader.seek(header.stream_directory_rva)
    directories = []
    for _ in range(header.num_streams):
        stream_type, data_size, rva = reader.unpack('<III')
        if rva + data_size > len(reader):
            raise FormatError(
                f"Stream type {stream_type} at 0x{rva:X} (0x{data_size:X} bytes) runs past end of file"
            )
        directories.append(MinidumpDirectory(stream_type=stream_type, data_size=data_size, rva=rva))

    logger.debug("Parsed %d directory entries at 0x%X", len(directories), header.stream_directory_rva)
    return directories


def parse(data: Buffer) -> Tuple[MinidumpHeader, List[MinidumpDirectory]]:
    """Parse the header and stream directory of a minidump image."""
    reader = BinaryReader(data)
    header = parse_header(reader)
    return header, parse_directory(reader, header)


# ============================================================================
# RVA STRINGS
# ============================================================================

def resolve_string(reader: BinaryReader, rva: int) -> str:
    """Read a MINIDUMP_STRING at rva without disturbing the reader position.

    MINIDUMP_STRING is a ULONG32 Length (in bytes, not including the null
    terminator) followed by UTF-16LE characters.
    """
    saved = reader.tell()
    try:
        reader.seek(rva)
        length = reader.read_u32()
        raw = reader.read(length)
    finally:
        reader.seek(saved)

    try:
        return raw.decode('utf-16-le')
    except UnicodeDecodeError as e:
        raise FormatError(f"String at RVA 0x{rva:X} is not valid UTF-16: {e}") from e


# ============================================================================
# RECORD DECODERS
# ============================================================================

def read_location_descriptor(reader: BinaryReader) -> MinidumpLocationDescriptor:
    data_size, rva = reader.unpack('<II')
    return MinidumpLocationDescriptor(data_size=data_size, rva=rva)


def read_memory_descriptor(reader: BinaryReader) -> MinidumpMemoryDescriptor:
    start = reader.read_u64()
    return MinidumpMemoryDescriptor(start_of_memory_range=start, memory=read_location_descriptor(reader))


def read_thread(reader: BinaryReader) -> MinidumpThread:
    # ThreadId, SuspendCount, PriorityClass, Priority, Teb,
    # Stack (MemoryDescriptor), ThreadContext (LocationDescriptor)
    thread_id, suspend_count, priority_class, priority, teb = reader.unpack('<IIIIQ')
    return MinidumpThread(
        thread_id=thread_id,
        suspend_count=suspend_count,
        priority_class=priority_class,
        priority=priority,
        teb=teb,
        stack=read_memory_descriptor(reader),
        thread_context=read_location_descriptor(reader),
    )


def read_fixed_file_info(reader: BinaryReader) -> VsFixedFileInfo:
    return VsFixedFileInfo(*reader.unpack('<13I'))


def read_module(reader: BinaryReader) -> MinidumpModule:
    # BaseOfImage (8), SizeOfImage, CheckSum, TimeDateStamp, ModuleNameRva (4 each),
    # VS_FIXEDFILEINFO (52), CvRecord (8), MiscRecord (8), Reserved0/1 (16)
    base, size, checksum, timestamp, name_rva = reader.unpack('<QIIII')
    version_info = read_fixed_file_info(reader)
    cv_record = read_location_descriptor(reader)
    misc_record = read_location_descriptor(reader)
    reserved0, reserved1 = reader.unpack('<QQ')
    return MinidumpModule(
        base_of_image=base,
        size_of_image=size,
        checksum=checksum,
        time_date_stamp=timestamp,
        module_name_rva=name_rva,
        version_info=version_info,
        cv_record=cv_record,
        misc_record=misc_record,
        reserved0=reserved0,
        reserved1=reserved1,
    )


def read_unloaded_module(reader: BinaryReader) -> MinidumpUnloadedModule:
    base, size, checksum, timestamp, name_rva = reader.unpack('<QIIII')
    return MinidumpUnloadedModule(
        base_of_image=base,
        size_of_image=size,
        checksum=checksum,
        time_date_stamp=timestamp,
        module_name_rva=name_rva,
    )


def _check_fits(directory: MinidumpDirectory, needed: int, what: str) -> None:
    if needed > directory.data_size:
        raise FormatError(
            f"{what} needs {needed} bytes but the stream is only {directory.data_size} bytes"
        )


def decode_thread_list(reader: BinaryReader, directory: MinidumpDirectory) -> List[MinidumpThread]:
    reader.seek(directory.rva)
    num_threads = reader.read_u32()
    _check_fits(directory, 4 + num_threads * THREAD_SIZE, f"Thread list of {num_threads} threads")
    return [read_thread(reader) for _ in range(num_threads)]


def decode_module_list(reader: BinaryReader,
                       directory: MinidumpDirectory) -> List[Tuple[str, MinidumpModule]]:
    reader.seek(directory.rva)
    num_modules = reader.read_u32()
    _check_fits(directory, 4 + num_modules * MODULE_SIZE, f"Module list of {num_modules} modules")

    modules = []
    for _ in range(num_modules):
        module = read_module(reader)
        modules.append((resolve_string(reader, module.module_name_rva), module))
    return modules


def decode_unloaded_module_list(reader: BinaryReader,
                                directory: MinidumpDirectory) -> List[Tuple[str, MinidumpUnloadedModule]]:
    reader.seek(directory.rva)
    header_size, entry_size, num_entries = reader.unpack('<III')
    header_size = max(header_size, 12)
    entry_size = max(entry_size, UNLOADED_MODULE_SIZE)
    _check_fits(directory, header_size + num_entries * entry_size,
                f"Unloaded module list of {num_entries} entries")

    modules = []
    offset = directory.rva + header_size
    for _ in range(num_entries):
        reader.seek(offset)
        module = read_unloaded_module(reader)
        modules.append((resolve_string(reader, module.module_name_rva), module))
        offset += entry_size
    return modules


def decode_comment_w(reader: BinaryReader, directory: MinidumpDirectory) -> str:
    reader.seek(directory.rva)
    raw = reader.read(directory.data_size)
    return raw.decode('utf-16-le', errors='replace').rstrip('\x00')


def decode_exception(reader: BinaryReader, directory: MinidumpDirectory) -> MinidumpExceptionStream:
    # ThreadId, __alignment, then MINIDUMP_EXCEPTION:
    # ExceptionCode, ExceptionFlags, ExceptionRecord (8), ExceptionAddress (8),
    # NumberParameters, __unusedAlignment, ExceptionInformation[15] (8 each)
    _check_fits(directory, 8 + 32 + MAX_EXCEPTION_PARAMETERS * 8 + 8, "Exception stream")
    reader.seek(directory.rva)
    thread_id, _alignment = reader.unpack('<II')
    code, flags, record, address, num_params, _unused = reader.unpack('<IIQQII')
    information = reader.unpack(f'<{MAX_EXCEPTION_PARAMETERS}Q')
    context = read_location_descriptor(reader)
    return MinidumpExceptionStream(
        thread_id=thread_id,
        exception_code=code,
        exception_flags=flags,
        exception_record=record,
        exception_address=address,
        exception_information=tuple(information[:min(num_params, MAX_EXCEPTION_PARAMETERS)]),
        thread_context=context,
    )


def decode_misc_info(reader: BinaryReader, directory: MinidumpDirectory) -> MinidumpMiscInfo:
    _check_fits(directory, 24, "Misc info stream")
    reader.seek(directory.rva)
    return MinidumpMiscInfo(*reader.unpack('<6I'))


def decode_streams(reader: BinaryReader, header: MinidumpHeader,
                   directories: List[MinidumpDirectory]) -> MinidumpContents:
    """Decode every stream the analyzer understands.

    A malformed stream is dropped and reported in contents.errors; the other
    streams still decode.
    """
    contents = MinidumpContents(header=header, directories=list(directories))

    for directory in directories:
        stream_type = directory.stream_type
        try:
            if stream_type == MinidumpStreamType.COMMENT_STREAM_W:
                # Not unique in SQL Server dumps; keep every one in order
                contents.comments.append(decode_comment_w(reader, directory))
            elif stream_type == MinidumpStreamType.THREAD_LIST:
                contents.threads.extend(decode_thread_list(reader, directory))
            elif stream_type == MinidumpStreamType.MODULE_LIST:
                contents.loaded_modules.extend(decode_module_list(reader, directory))
            elif stream_type == MinidumpStreamType.UNLOADED_MODULE_LIST:
                contents.unloaded_modules.extend(decode_unloaded_module_list(reader, directory))
            elif stream_type == MinidumpStreamType.EXCEPTION:
                contents.exception = decode_exception(reader, directory)
            elif stream_type == MinidumpStreamType.MISC_INFO:
                contents.misc_info = decode_misc_info(reader, directory)
        except FormatError as e:
            name = directory.known_type.name if directory.known_type else str(stream_type)
            message = f"{name} stream at 0x{directory.rva:X}: {e}"
            logger.warning("Skipping malformed stream: %s", message)
            contents.errors.append(message)

    return contents


def read_contents(data: Buffer) -> MinidumpContents:
    """Parse header, directory and streams from an in-memory dump image."""
    reader = BinaryReader(data)
    header = parse_header(reader)
    directories = parse_directory(reader, header)
    return decode_streams(reader, header, directories)


# ============================================================================
# FILE READER
# ============================================================================

class MinidumpReader:
    """Reads a minidump file eagerly into MinidumpContents."""

    def __init__(self):
        self.file_name: Optional[Path] = None
        self.contents: Optional[MinidumpContents] = None

    def read_dump(self, file_name: Union[str, Path]) -> MinidumpContents:
        """Open and parse a dump file.

        Uses memory-mapping for large files (>100MB) so the whole dump is
        never copied into memory; only the streams are read.

        Raises:
            FileNotFoundError: the file does not exist
            FormatError: the header or directory is invalid
        """
        path = Path(file_name)
        if not path.exists():
            raise FileNotFoundError(f"Can't open file {path} as it doesn't exist!")

        file_size = os.path.getsize(path)
        with open(path, 'rb') as f:
            if file_size > MMAP_THRESHOLD:
                with mmap.mmap(f.fileno(), 0, access=mmap.ACCESS_READ) as mapped:
                    contents = read_contents(mapped)
            else:
                contents = read_contents(f.read())

        logger.info("Read %s: %d streams, %d threads, %d modules, %d comments",
                    path.name, len(contents.directories), len(contents.threads),
                    len(contents.loaded_modules), len(contents.comments))
        self.file_name = path
        self.contents = contents
        return contents
