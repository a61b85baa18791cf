import io

import pytest

import svgrep


@pytest.fixture
def csv_file(tmp_path):
    path = tmp_path / "data.csv"
    path.write_text(
        "id;name;city\n"
        "1;foo;bar\n"
        "2; foo ;paris\n"
        "3;baz;bar\n",
        encoding="utf-8",
    )
    return str(path)


def run(argv, capsys):
    svgrep.main(argv)
    return capsys.readouterr()


def test_no_match_prints_every_line(csv_file, capsys):
    out = run([csv_file], capsys).out
    assert out.splitlines() == [
        "(0) id;(1) name;(2) city",
        "(0) 1;(1) foo;(2) bar",
        "(0) 2;(1)  foo ;(2) paris",
        "(0) 3;(1) baz;(2) bar",
    ]


def test_match_and_select(csv_file, capsys):
    out = run([csv_file, "-m", "1=foo&2=bar@0,1"], capsys).out
    assert out.splitlines() == ["(0) 1;(1) foo"]


def test_any_column(csv_file, capsys):
    out = run([csv_file, "-m", "*=^bar$@0"], capsys).out
    assert out.splitlines() == ["(0) 1", "(0) 3"]


def test_several_matches_are_or(csv_file, capsys):
    out = run([csv_file, "-m", "1=foo@0", "-m", "2=bar@0"], capsys).out
    assert out.splitlines() == ["(0) 1", "(0) 1", "(0) 2", "(0) 3"]


def test_placeholder_for_missing_column(csv_file, capsys):
    out = run([csv_file, "-m", "0=^3$@0,99,2"], capsys).out
    assert out.splitlines() == ["(0) 3;(99) <no col 99>;(2) bar"]


def test_trim_only_affects_output(csv_file, capsys):
    assert run([csv_file, "-m", "1=^foo$@1", "-t"], capsys).out.splitlines() == ["(1) foo"]
    assert run([csv_file, "-m", "1=foo@1", "--trim"], capsys).out.splitlines() == ["(1) foo", "(1) foo"]


def test_custom_delimiters(csv_file, capsys):
    argv = [csv_file, "-m", "1:foo+2:bar#0", "--matches-char", ":", "--conj-char", "+",
            "--cell-select-char", "#"]
    assert run(argv, capsys).out.splitlines() == ["(0) 1"]


def test_tab_separator_escape(tmp_path, capsys):
    path = tmp_path / "data.tsv"
    path.write_text("a\tb\nc\td\n", encoding="utf-8")
    out = run([str(path), "-s", "\\t", "-m", "1=d"], capsys).out
    assert out.splitlines() == ["(0) c\t(1) d"]


def set_stdin(monkeypatch, data):
    monkeypatch.setattr("sys.stdin", io.TextIOWrapper(io.BytesIO(data), encoding="utf-8"))


def test_reads_stdin(monkeypatch, capsys):
    set_stdin(monkeypatch, b"a,b\nc,d\n")
    out = run(["-s", ",", "-m", "*=c"], capsys).out
    assert out.splitlines() == ["(0) c,(1) d"]


def test_crlf_file(tmp_path, capsys):
    path = tmp_path / "data.csv"
    path.write_bytes(b"a;x\r\nb;y\r\n")
    out = run([str(path), "-m", "1=^x$"], capsys).out
    assert out == "(0) a;(1) x\n"


def test_crlf_stdin(monkeypatch, capsys):
    set_stdin(monkeypatch, b"a;x\r\nb;y\r\n")
    out = run(["-m", "1=^x$"], capsys).out
    assert out == "(0) a;(1) x\n"


def test_bare_carriage_return_stays_in_cell(tmp_path, monkeypatch, capsys):
    path = tmp_path / "data.csv"
    path.write_bytes(b"a\rb;c\n")
    assert run([str(path)], capsys).out == "(0) a\rb;(1) c\n"

    set_stdin(monkeypatch, b"a\rb;c\n")
    assert run([], capsys).out == "(0) a\rb;(1) c\n"


def test_last_line_without_newline(tmp_path, capsys):
    path = tmp_path / "data.csv"
    path.write_bytes(b"a;b\nc;d")
    assert run([str(path)], capsys).out.splitlines() == ["(0) a;(1) b", "(0) c;(1) d"]


def test_stdin_decode_error_names_input(monkeypatch, capsys):
    set_stdin(monkeypatch, b"a;\xff\n")
    with pytest.raises(SystemExit) as exc:
        svgrep.main([])
    assert exc.value.code == 1
    assert capsys.readouterr().err.startswith("Error: Error reading file <stdin>: ")


def test_file_decode_error_names_input(tmp_path, capsys):
    path = tmp_path / "data.csv"
    path.write_bytes(b"a;\xff\n")
    with pytest.raises(SystemExit) as exc:
        svgrep.main([str(path)])
    assert exc.value.code == 1
    assert f"Error reading file {path}: " in capsys.readouterr().err


def test_verbose_reports_on_stderr(csv_file, capsys):
    captured = run([csv_file, "-v", "-m", "1=foo@0"], capsys)
    assert captured.out.splitlines() == ["(0) 1", "(0) 2"]
    assert "match '1=foo@0': 1 column predicate(s)" in captured.err
    assert "2 lines printed / 4 lines read." in captured.err


@pytest.mark.parametrize("expr,message", [
    ("1=(", "no valid regular expression"),
    ("x=foo", "no valid column expression"),
    ("1=foo@a", "no valid display column"),
    ("1=a@0@1", "no valid match expression"),
])
def test_bad_expression_exits_before_printing(csv_file, capsys, expr, message):
    with pytest.raises(SystemExit) as exc:
        svgrep.main([csv_file, "-m", "1=foo", "-m", expr])
    assert exc.value.code == 1
    captured = capsys.readouterr()
    assert captured.out == ""
    assert captured.err.startswith("Error: ")
    assert message in captured.err


def test_bad_expression_is_reported_before_opening_input(tmp_path, capsys):
    missing = str(tmp_path / "missing.csv")
    with pytest.raises(SystemExit):
        svgrep.main([missing, "-m", "1=("])
    assert "no valid regular expression" in capsys.readouterr().err


def test_missing_file(tmp_path, capsys):
    missing = str(tmp_path / "missing.csv")
    with pytest.raises(SystemExit) as exc:
        svgrep.main([missing])
    assert exc.value.code == 1
    captured = capsys.readouterr()
    assert captured.out == ""
    assert f"Error reading file {missing}" in captured.err


def test_multi_character_delimiter_is_rejected(csv_file, capsys):
    with pytest.raises(SystemExit) as exc:
        svgrep.main([csv_file, "--conj-char", "&&"])
    assert exc.value.code == 1
    assert "single character" in capsys.readouterr().err


def test_version(capsys):
    with pytest.raises(SystemExit) as exc:
        svgrep.main(["--version"])
    assert exc.value.code == 0
    assert capsys.readouterr().out.strip() == f"svgrep {svgrep.__version__}"


def test_verbose_reports_delimiters(csv_file, capsys):
    captured = run([csv_file, "-v", "--conj-char", "+", "-m", "1=foo+2=bar"], capsys)
    assert captured.out.splitlines() == ["(0) 1;(1) foo;(2) bar"]
    assert "delimiters: select '@', conjunction '+', equals '='" in captured.err
