import io

import main


def _run(monkeypatch, capsys, argv, commands):
    monkeypatch.setattr("sys.stdin", io.StringIO("".join(c + "\n" for c in commands)))
    code = main.main(argv)
    return code, capsys.readouterr().out.splitlines()


def test_set_get_and_persist_across_runs(tmp_path, monkeypatch, capsys):
    db = str(tmp_path / "cli.db")
    code, out = _run(
        monkeypatch,
        capsys,
        ["kvstore", db],
        ["SET a '{\"x\": 1}'", "SET b hello world", "GET a", "GET b", "GET nope", "SIZE", "EXIT"],
    )
    assert code == 0
    assert out == ["OK", "OK", '{"x": 1}', '"hello world"', "", "2"]

    code, out = _run(monkeypatch, capsys, ["kvstore", db], ["FIRST", "LAST", "KEYS", "DEL a", "SIZE"])
    assert code == 0
    assert out == ["a", "b", "a", "b", "OK", "1"]

    code, out = _run(monkeypatch, capsys, ["kvstore", db], ["GET a", "RESET", "SIZE"])
    assert out == ["", "OK", "0"]

    code, out = _run(monkeypatch, capsys, ["kvstore", db], ["SIZE"])
    assert out == ["0"]


def test_usage_errors(monkeypatch, capsys):
    code, out = _run(
        monkeypatch,
        capsys,
        ["kvstore", main.MEMORY_PATH],
        ["SET a", "SET a null", "GET", "SIZE x", "FLY", 'SET "a b', "FIRST"],
    )
    assert code == 0
    assert out == [
        main.ERR_USAGE_SET,
        main.ERR_NULL_VALUE,
        main.ERR_USAGE_KEY.format(cmd="GET"),
        main.ERR_USAGE_NONE.format(cmd="SIZE"),
        main.ERR_UNKNOWN_CMD,
        main.ERR_SYNTAX,
        "",
    ]


def test_unopenable_db_exits_nonzero(tmp_path, monkeypatch, capsys):
    monkeypatch.setattr("sys.stdin", io.StringIO(""))
    assert main.main(["kvstore", str(tmp_path)]) == 1
    assert "ERR cannot open" in capsys.readouterr().err
