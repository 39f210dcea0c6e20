from unittest.mock import patch

import sqldump_cli


def test_missing_dump(tmp_path, capsys):
    assert sqldump_cli.main([str(tmp_path / "missing.mdmp")]) == 1
    assert "doesn't exist" in capsys.readouterr().err


def test_not_a_minidump(tmp_path, capsys):
    dump_path = tmp_path / "notes.txt"
    dump_path.write_bytes(b"this is not a minidump at all, just text" * 4)

    assert sqldump_cli.main([str(dump_path)]) == 1
    assert "not a valid minidump" in capsys.readouterr().err


def test_report_printed(tmp_path, capsys, sql_dump_bytes, fake_backend):
    dump_path = tmp_path / "SQLDump0001.mdmp"
    dump_path.write_bytes(sql_dump_bytes)

    from sqldump_analyzer.core import DumpSession
    real_open = DumpSession.open.__func__

    def open_with_fake(cls, file_name, backend=None, settings=None):
        return real_open(cls, file_name, backend=fake_backend, settings=settings)

    with patch.object(DumpSession, "open", classmethod(open_with_fake)):
        assert sqldump_cli.main([str(dump_path), "--section", "modules",
                                 "--symbols", str(tmp_path)]) == 0

    out = capsys.readouterr().out
    assert "LOADED MODULES" in out
    assert "ENTAPI.DLL  [KNOWN BAD MODULE]" in out
    assert fake_backend.closed
