import threading

import pytest

from errors import CorruptedRecordError, StartupIOError, TruncatedTailError, WriteError
from storage import LogWriter, Record, decode_record, encode_record, replay


def _replay(path, **kw):
    errors = []
    records = list(replay(str(path), on_error=errors.append, **kw))
    return records, errors


# ---------- codec ----------

def test_encode_record_is_compact_and_omits_tombstone_val():
    assert encode_record("a", {"x": 1}) == '{"key":"a","val":{"x":1}}'
    assert encode_record("a", None) == '{"key":"a"}'
    assert encode_record(7, "ü") == '{"key":7,"val":"ü"}'


def test_encode_record_rejects_bad_keys_and_values():
    with pytest.raises(TypeError):
        encode_record(["a"], 1)
    with pytest.raises(TypeError):
        encode_record(True, 1)
    with pytest.raises(TypeError):
        encode_record("a", object())
    with pytest.raises(ValueError):
        encode_record("a", float("nan"))


def test_decode_record_tombstones():
    assert decode_record('{"key":"a"}') == Record("a")
    assert decode_record('{"key":"a","val":null}').is_tombstone
    assert decode_record('{"key":"a","val":0}') == Record("a", 0)


def test_decode_record_rejects_malformed_rows():
    for row in ("", "not json", '{"val":1}', "[1,2]", '{"key":[1]}', '{"key":true,"val":1}'):
        with pytest.raises(CorruptedRecordError):
            decode_record(row, lineno=3)


# ---------- replay ----------

def test_replay_missing_file_yields_nothing(tmp_path):
    records, errors = _replay(tmp_path / "nope.db")
    assert records == []
    assert errors == []


def test_replay_in_order(tmp_path):
    path = tmp_path / "data.db"
    path.write_text('{"key":"a","val":1}\n{"key":"b","val":[2]}\n{"key":"a"}\n', encoding="utf-8")
    records, errors = _replay(path)
    assert records == [Record("a", 1), Record("b", [2]), Record("a")]
    assert errors == []


def test_replay_reports_corrupted_rows_and_keeps_going(tmp_path):
    path = tmp_path / "data.db"
    path.write_text(
        '{"key":"a","val":1}\n'
        "\n"
        "garbage\n"
        '{"val":"no key"}\n'
        '{"key":"b","val":2}\n',
        encoding="utf-8",
    )
    records, errors = _replay(path)
    assert records == [Record("a", 1), Record("b", 2)]
    assert len(errors) == 3
    assert all(type(e) is CorruptedRecordError for e in errors)
    assert "Empty lines" in str(errors[0])
    assert [e.lineno for e in errors] == [2, 3, 4]


def test_replay_truncated_tail_reports_exactly_one_diagnostic(tmp_path):
    path = tmp_path / "data.db"
    path.write_text('{"key":"a","val":1}\n{"key":"b","val":2}\n{"key":"c","va', encoding="utf-8")
    records, errors = _replay(path)
    assert records == [Record("a", 1), Record("b", 2)]
    assert len(errors) == 1
    assert isinstance(errors[0], TruncatedTailError)
    assert errors[0].fragment == '{"key":"c","va'


def test_replay_tail_cut_inside_multibyte_char_is_truncated_tail(tmp_path):
    path = tmp_path / "data.db"
    path.write_bytes(b'{"key":"a","val":1}\n' + '{"key":"b","val":"ü'.encode("utf-8")[:-1])
    records, errors = _replay(path)
    assert records == [Record("a", 1)]
    assert len(errors) == 1
    assert isinstance(errors[0], TruncatedTailError)
    assert errors[0].fragment.startswith('{"key":"b"')


def test_replay_undecodable_row_spoils_only_itself(tmp_path):
    path = tmp_path / "data.db"
    path.write_bytes(
        b'{"key":"a","val":1}\n'
        b'{"key":"x","val":"\xff"}\n'
        b'{"key":"b","val":"\xc3\xbc"}\n'
    )
    records, errors = _replay(path, chunk_size=4)
    assert records == [Record("a", 1), Record("b", "ü")]
    assert len(errors) == 1
    assert type(errors[0]) is CorruptedRecordError
    assert errors[0].lineno == 2


def test_replay_reassembles_records_across_small_chunks(tmp_path):
    path = tmp_path / "data.db"
    lines = ['{"key":"k%d","val":{"n":%d}}' % (i, i) for i in range(20)]
    path.write_text("\n".join(lines) + "\n", encoding="utf-8")
    records, errors = _replay(path, chunk_size=3)
    assert [r.key for r in records] == ["k%d" % i for i in range(20)]
    assert records[7].val == {"n": 7}
    assert errors == []


def test_replay_unreadable_path_raises_startup_error(tmp_path):
    with pytest.raises(StartupIOError):
        list(replay(str(tmp_path)))


# ---------- writer ----------

def test_writer_appends_in_order_and_runs_callbacks(tmp_path):
    path = tmp_path / "sub" / "data.db"
    done = []
    writer = LogWriter(str(path))
    for i in range(5):
        assert writer.write(f"line{i}\n", lambda err, i=i: done.append((i, err))) is True
    writer.close()
    assert done == [(i, None) for i in range(5)]
    assert path.read_text(encoding="utf-8") == "".join(f"line{i}\n" for i in range(5))


def test_writer_signals_backpressure_then_drain(tmp_path):
    drained = threading.Event()
    writer = LogWriter(str(tmp_path / "data.db"), high_water_mark=4, on_drain=drained.set)
    try:
        assert writer.write("0123456789\n") is False
        assert drained.wait(5)
        assert writer.buffered == 0
    finally:
        writer.close()


def test_writer_reports_failed_writes(tmp_path, monkeypatch):
    def boom(self, data):
        raise OSError("disk full")

    monkeypatch.setattr(LogWriter, "_write_chunk", boom)
    errors = []
    writer = LogWriter(str(tmp_path / "data.db"))
    writer.write("x\n", errors.append)
    writer.close()
    assert len(errors) == 1
    assert isinstance(errors[0], WriteError)
    assert isinstance(errors[0].__cause__, OSError)


def test_writer_rejects_writes_after_close(tmp_path):
    writer = LogWriter(str(tmp_path / "data.db"))
    writer.close()
    with pytest.raises(WriteError):
        writer.write("late\n")


def test_writer_open_failure_is_startup_error(tmp_path):
    with pytest.raises(StartupIOError):
        LogWriter(str(tmp_path))
