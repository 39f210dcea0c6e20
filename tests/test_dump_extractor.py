import struct

import pytest

from sqldump_analyzer.dump_extractor import (
    BinaryReader,
    MinidumpReader,
    MinidumpStreamType,
    decode_unloaded_module_list,
    parse,
    read_contents,
    resolve_string,
)
from sqldump_analyzer.errors import FormatError


@pytest.mark.parametrize("signature", [0, 0x504D444E, 0x4D444D50, 0xFFFFFFFF])
def test_bad_magic_rejected(signature, dump_builder):
    dump_builder.signature = signature
    dump_builder.add_comment("never read")
    with pytest.raises(FormatError):
        parse(dump_builder.build())


def test_bad_magic_leaves_reader_empty(tmp_path, dump_builder):
    dump_builder.signature = 0x12345678
    dump_path = tmp_path / "bad.mdmp"
    dump_path.write_bytes(dump_builder.build())

    reader = MinidumpReader()
    with pytest.raises(FormatError):
        reader.read_dump(dump_path)
    assert reader.contents is None


def test_file_too_small():
    with pytest.raises(FormatError):
        parse(b"MDMP")


def test_missing_file(tmp_path):
    with pytest.raises(FileNotFoundError):
        MinidumpReader().read_dump(tmp_path / "missing.mdmp")


def test_parse_header_and_directory(dump_builder):
    dump_builder.add_comment("first")
    dump_builder.add_stream(0x1234, b"\x00" * 8)
    header, directories = parse(dump_builder.build())

    assert header.num_streams == 2
    assert header.time_date_stamp == 1700000000
    assert [d.stream_type for d in directories] == [MinidumpStreamType.COMMENT_STREAM_W, 0x1234]
    assert directories[1].known_type is None


def test_directory_past_eof(dump_builder):
    data = bytearray(dump_builder.build())
    # Claim 5 streams while the file holds none
    struct.pack_into('<I', data, 8, 5)
    with pytest.raises(FormatError):
        parse(bytes(data))


def test_stream_past_eof(dump_builder):
    dump_builder.add_stream(MinidumpStreamType.THREAD_LIST, b"\x00" * 4, data_size=0x10000)
    with pytest.raises(FormatError):
        parse(dump_builder.build())


def test_all_comment_streams_kept_in_order(dump_builder):
    comments = ["first comment", "second comment", "third comment"]
    for text in comments:
        dump_builder.add_comment(text)
        dump_builder.add_stream(MinidumpStreamType.SYSTEM_INFO, b"\x00" * 4)

    contents = read_contents(dump_builder.build())
    assert contents.comments == comments


def test_resolve_string_restores_cursor(dump_builder):
    rva = dump_builder.add_string("sqlmin.dll")
    data = dump_builder.build()
    reader = BinaryReader(data)
    reader.seek(7)

    assert resolve_string(reader, rva) == "sqlmin.dll"
    assert reader.tell() == 7


def test_module_name_bytes_unchanged_by_resolution(sql_dump_bytes):
    contents = read_contents(sql_dump_bytes)
    name, module = contents.loaded_modules[1]

    # Re-read the same region directly
    length = struct.unpack_from('<I', sql_dump_bytes, module.module_name_rva)[0]
    raw = sql_dump_bytes[module.module_name_rva:module.module_name_rva + 4 + length]
    assert raw == struct.pack('<I', len(name.encode('utf-16-le'))) + name.encode('utf-16-le')
    assert name.endswith("sqlmin.dll")


def test_resolve_string_past_eof():
    data = struct.pack('<I', 100) + b"a\x00"
    with pytest.raises(FormatError):
        resolve_string(BinaryReader(data), 0)


def test_thread_and_module_lists(sql_dump_bytes):
    contents = read_contents(sql_dump_bytes)

    assert [t.thread_id for t in contents.threads] == [0x1A2C, 0x2B3D]
    assert contents.threads[0].teb == 0x7FF6B0000
    assert contents.threads[0].priority_class == 32
    assert len(contents.loaded_modules) == 3
    name, module = contents.loaded_modules[0]
    assert name.endswith("sqlservr.exe")
    assert module.base_of_image == 0x7FF700000000
    assert module.size_of_image == 0x80000
    assert module.version_info.file_version == "15.0.4328.1"
    assert contents.errors == []


def test_unloaded_module_names_resolved(sql_dump_bytes):
    contents = read_contents(sql_dump_bytes)
    assert [name for name, _ in contents.unloaded_modules] == ["oldagent.dll"]
    assert contents.unloaded_modules[0][1].base_of_image == 0x7FFC00000000


def test_unloaded_module_entry_size_respected(dump_builder):
    name_rva = dump_builder.add_string("wide.dll")
    # 32-byte entries: 24 bytes of record plus 8 bytes the decoder must skip
    entry = struct.pack('<QIIII', 0x1000, 0x200, 0, 0, name_rva) + b"\xFF" * 8
    rva = dump_builder.add_stream(MinidumpStreamType.UNLOADED_MODULE_LIST,
                                  struct.pack('<III', 12, 32, 2) + entry + entry)
    data = dump_builder.build()
    header, directories = parse(data)
    directory = next(d for d in directories if d.rva == rva)

    modules = decode_unloaded_module_list(BinaryReader(data), directory)
    assert [name for name, _ in modules] == ["wide.dll", "wide.dll"]


def test_exception_and_misc_info(sql_dump_bytes):
    contents = read_contents(sql_dump_bytes)
    assert contents.exception.thread_id == 0x2B3D
    assert contents.exception.exception_code == 0xC0000005
    assert contents.misc_info.process_id == 4242
    assert contents.misc_info.has_process_times


def test_malformed_stream_reported_not_fatal(dump_builder):
    dump_builder.add_comment("still here")
    # Count says 50 threads, stream only holds one
    dump_builder.add_stream(MinidumpStreamType.THREAD_LIST,
                            struct.pack('<I', 50) + b"\x00" * 48)
    dump_builder.add_module_list([("sqlservr.exe", 0x1000, 0x100)])

    contents = read_contents(dump_builder.build())
    assert contents.threads == []
    assert len(contents.errors) == 1
    assert "THREAD_LIST" in contents.errors[0]
    assert contents.comments == ["still here"]
    assert contents.loaded_modules[0][0] == "sqlservr.exe"


def test_unknown_streams_ignored(dump_builder):
    dump_builder.add_stream(MinidumpStreamType.SQL_COMPRESSED_MEMORY, b"\x01\x02\x03\x04")
    dump_builder.add_stream(MinidumpStreamType.CE_STREAM_DIAGNOSIS_LIST, b"")
    dump_builder.add_stream(0xBEEF, b"junk")

    contents = read_contents(dump_builder.build())
    assert contents.errors == []
    assert contents.has_stream(MinidumpStreamType.SQL_COMPRESSED_MEMORY)


def test_read_dump_from_file(tmp_path, sql_dump_bytes):
    dump_path = tmp_path / "SQLDump0001.mdmp"
    dump_path.write_bytes(sql_dump_bytes)

    reader = MinidumpReader()
    contents = reader.read_dump(dump_path)
    assert reader.file_name == dump_path
    assert contents.comments == ["SQL Server dump comment 1", "SQL Server dump comment 2"]
