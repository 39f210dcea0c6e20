import struct
from collections import Counter

import pytest

from sqldump_analyzer.backend import DebugBackend
from sqldump_analyzer.config import (
    DEFAULT_TYPE_OFFSETS,
    HARDWARE_STRING_SIZE,
    SYSTEM_MANUFACTURER_SYMBOL,
    SYSTEM_PRODUCT_NAME_SYMBOL,
    TRACE_FLAG_SYMBOL,
)
from sqldump_analyzer.dump_extractor import MINIDUMP_SIGNATURE, MinidumpStreamType
from sqldump_analyzer.errors import BackendError, NotAccessible


# ============================================================================
# Synthetic minidump builder
# ============================================================================

class DumpBuilder:
    """Builds a minidump image in memory.

    Stream payloads and strings are appended after the header; the stream
    directory is written last and the header points at it.
    """

    def __init__(self, signature=MINIDUMP_SIGNATURE, timestamp=1700000000, flags=0x2):
        self.signature = signature
        self.timestamp = timestamp
        self.flags = flags
        self.data = bytearray(32)
        self.directory = []

    def add_blob(self, payload):
        rva = len(self.data)
        self.data += payload
        return rva

    def add_string(self, text):
        encoded = text.encode('utf-16-le')
        return self.add_blob(struct.pack('<I', len(encoded)) + encoded)

    def add_stream(self, stream_type, payload, data_size=None):
        rva = self.add_blob(payload)
        self.directory.append((int(stream_type), len(payload) if data_size is None else data_size, rva))
        return rva

    def add_comment(self, text):
        return self.add_stream(MinidumpStreamType.COMMENT_STREAM_W, (text + '\0').encode('utf-16-le'))

    @staticmethod
    def pack_thread(thread_id, teb=0, stack_start=0, stack_rva=0, stack_size=0,
                    context_rva=0, context_size=0, priority_class=32, priority=0):
        return (struct.pack('<IIIIQ', thread_id, 0, priority_class, priority, teb)
                + struct.pack('<QII', stack_start, stack_size, stack_rva)
                + struct.pack('<II', context_size, context_rva))

    def add_thread_list(self, threads):
        return self.add_stream(MinidumpStreamType.THREAD_LIST,
                               struct.pack('<I', len(threads)) + b''.join(threads))

    def add_module_list(self, modules):
        """modules: (name, base, size) tuples."""
        records = []
        for name, base, size in modules:
            name_rva = self.add_string(name)
            version = struct.pack('<13I', 0xFEEF04BD, 0x10000, 0x000F0000, 0x10E80001, 0, 0, 0, 0, 0, 0, 0, 0, 0)
            records.append(struct.pack('<QIIII', base, size, 0, 0, name_rva) + version
                           + struct.pack('<IIII', 0, 0, 0, 0) + struct.pack('<QQ', 0, 0))
        return self.add_stream(MinidumpStreamType.MODULE_LIST,
                               struct.pack('<I', len(records)) + b''.join(records))

    def add_unloaded_module_list(self, modules):
        records = []
        for name, base, size in modules:
            name_rva = self.add_string(name)
            records.append(struct.pack('<QIIII', base, size, 0, 0, name_rva))
        return self.add_stream(MinidumpStreamType.UNLOADED_MODULE_LIST,
                               struct.pack('<III', 12, 24, len(records)) + b''.join(records))

    def add_exception(self, thread_id, code=0xC0000005, address=0):
        payload = (struct.pack('<II', thread_id, 0)
                   + struct.pack('<IIQQII', code, 0, 0, address, 0, 0)
                   + struct.pack('<15Q', *([0] * 15))
                   + struct.pack('<II', 0, 0))
        return self.add_stream(MinidumpStreamType.EXCEPTION, payload)

    def add_misc_info(self, process_id, create_time, flags1=0x3):
        return self.add_stream(MinidumpStreamType.MISC_INFO,
                               struct.pack('<6I', 24, flags1, process_id, create_time, 0, 0))

    def add_system_info(self, architecture=9, processors=16, build_number=20348):
        """x64 Windows Server by default (architecture 9 is AMD64)."""
        csd_version_rva = self.add_string("")
        payload = (struct.pack('<HHHBBIIIIIHH', architecture, 6, 0x5507, processors, 3,
                               10, 0, build_number, 2, csd_version_rva, 0x110, 0)
                   + struct.pack('<QQ', 0, 0) + bytes(8))
        return self.add_stream(MinidumpStreamType.SYSTEM_INFO, payload)

    def add_memory64_list(self, ranges):
        """ranges: (address, data) tuples. Range data is stored back to back."""
        base_rva = self.add_blob(b''.join(data for _, data in ranges))
        descriptors = b''.join(struct.pack('<QQ', address, len(data)) for address, data in ranges)
        return self.add_stream(MinidumpStreamType.MEMORY_64_LIST,
                               struct.pack('<QQ', len(ranges), base_rva) + descriptors)

    def build(self):
        data = bytearray(self.data)
        directory_rva = len(data)
        for entry in self.directory:
            data += struct.pack('<III', *entry)
        data[0:32] = struct.pack('<IIIIIIQ', self.signature, 0xA793, len(self.directory),
                                 directory_rva, 0, self.timestamp, self.flags)
        return bytes(data)


# ============================================================================
# In-memory backend
# ============================================================================

PEB_ADDRESS = 0x7FF6A0000
PROCESS_PARAMETERS_ADDRESS = 0x1F0000
COMMAND_LINE_BUFFER = 0x1F2000
ENVIRONMENT_BUFFER = 0x1F4000
TRACE_FLAGS_ADDRESS = 0x7FFA2A61B40
MANUFACTURER_ADDRESS = 0x7FFA2A70000
PRODUCT_NAME_ADDRESS = 0x7FFA2A70100


class FakeBackend(DebugBackend):
    """DebugBackend over a sparse byte map, counting calls."""

    def __init__(self):
        self.memory = {}
        self.symbols = {}
        self.type_offsets = {name: dict(fields) for name, fields in DEFAULT_TYPE_OFFSETS.items()}
        self.peb = 0
        self.thread_ids = []
        self.stacks = {}
        self.symbol_names = {}
        self.symbols_path = []
        self.calls = Counter()
        self.closed = False

    def write(self, address, data):
        for i, b in enumerate(data):
            self.memory[address + i] = b

    def write_pointer(self, address, value):
        self.write(address, struct.pack('<Q', value))

    def read_bytes(self, address, length):
        self.calls['read_bytes'] += 1
        try:
            return bytes(self.memory[address + i] for i in range(length))
        except KeyError:
            raise NotAccessible(address, length)

    def resolve_symbol_address(self, name):
        self.calls['resolve_symbol_address'] += 1
        if name not in self.symbols:
            raise BackendError(f"Symbol '{name}' not found")
        return self.symbols[name]

    def resolve_type_field_offset(self, type_name, field_name):
        try:
            return self.type_offsets[type_name][field_name]
        except KeyError:
            raise BackendError(f"No offset known for {type_name}.{field_name}")

    def get_current_process_environment_block_address(self):
        self.calls['peb'] += 1
        if not self.peb:
            raise BackendError("No PEB")
        return self.peb

    def symbolize_address(self, address):
        if address not in self.symbol_names:
            raise BackendError(f"Address 0x{address:X} is not inside a loaded module")
        return self.symbol_names[address]

    def enumerate_thread_ids(self):
        return list(self.thread_ids)

    def get_stack_trace(self, debugger_thread_id):
        self.calls['get_stack_trace'] += 1
        return list(self.stacks.get(debugger_thread_id, []))

    def set_symbols_path(self, symbols_path):
        self.symbols_path = list(symbols_path)

    def close(self):
        self.closed = True

    # Process layout helpers

    def load_process(self, command_line, environment, command_line_slack=b''):
        """Lay out a PEB, process parameters, command line and environment block."""
        params = PROCESS_PARAMETERS_ADDRESS
        self.peb = PEB_ADDRESS
        self.write_pointer(PEB_ADDRESS + 0x20, params)

        encoded = command_line.encode('utf-16-le')
        maximum = len(encoded) + len(command_line_slack)
        self.write(params + 0x70, struct.pack('<HHIQ', len(encoded), maximum, 0, COMMAND_LINE_BUFFER))
        self.write(COMMAND_LINE_BUFFER, encoded + command_line_slack)

        block = environment.encode('utf-16-le')
        self.write_pointer(params + 0x80, ENVIRONMENT_BUFFER)
        self.write(params + 0x3F0, struct.pack('<Q', len(block)))
        self.write(ENVIRONMENT_BUFFER, block)

    def load_trace_flags(self, bitmap):
        self.symbols[TRACE_FLAG_SYMBOL] = TRACE_FLAGS_ADDRESS
        self.write(TRACE_FLAGS_ADDRESS, bitmap)

    def load_hardware(self, manufacturer, product_name):
        self.symbols[SYSTEM_MANUFACTURER_SYMBOL] = MANUFACTURER_ADDRESS
        self.symbols[SYSTEM_PRODUCT_NAME_SYMBOL] = PRODUCT_NAME_ADDRESS
        self.write(MANUFACTURER_ADDRESS, manufacturer.encode('utf-16-le').ljust(HARDWARE_STRING_SIZE, b'\0'))
        self.write(PRODUCT_NAME_ADDRESS, product_name.encode('utf-16-le').ljust(HARDWARE_STRING_SIZE, b'\0'))


@pytest.fixture
def dump_builder():
    return DumpBuilder()


@pytest.fixture
def fake_backend():
    return FakeBackend()


@pytest.fixture
def sql_dump_bytes():
    """A small SQL Server style dump: two threads, three modules, two comments."""
    builder = DumpBuilder()
    builder.add_comment("SQL Server dump comment 1")
    builder.add_thread_list([
        DumpBuilder.pack_thread(0x1A2C, teb=0x7FF6B0000),
        DumpBuilder.pack_thread(0x2B3D, teb=0x7FF6B2000),
    ])
    builder.add_module_list([
        (r"C:\Program Files\Microsoft SQL Server\MSSQL\Binn\sqlservr.exe", 0x7FF700000000, 0x80000),
        (r"C:\Program Files\Microsoft SQL Server\MSSQL\Binn\sqlmin.dll", 0x7FFA00000000, 0x4000000),
        (r"C:\Windows\System32\ENTAPI.DLL", 0x7FFB00000000, 0x20000),
    ])
    builder.add_unloaded_module_list([("oldagent.dll", 0x7FFC00000000, 0x1000)])
    builder.add_comment("SQL Server dump comment 2")
    builder.add_exception(thread_id=0x2B3D)
    builder.add_misc_info(process_id=4242, create_time=1700000000 - 3600)
    return builder.build()
