import pytest

from giu import Repl, VERSION, check, main, run


def script(tmp_path, source: str, name: str = "main.giu"):
    path = tmp_path / name
    path.write_text(source, encoding="utf-8")
    return str(path)


EXAMPLES = [
    ("let x = 10; let y = 20; println(x + y);", "30\n"),
    ("let add = fn(a, b) { a + b }; println(add(5, 3));", "8\n"),
    (
        "let arr = [1,2,3,4,5]; println(len(arr)); println(head(arr));",
        "5\n1\n",
    ),
    (
        """
        if (11 > 10) {
            println("x is greater than 10");
        } else {
            println("x is less than or equal to 10");
        }
        """,
        "x is greater than 10\n",
    ),
    (
        """
        struct Person {
            name: null,
            age: null,
            greet: fn() { println("Hello, I'm ", this.name); },
        }
        let p = Person { name: "John", age: 30 };
        p.greet();
        """,
        "Hello, I'm John\n",
    ),
]


@pytest.mark.parametrize("source, expected", EXAMPLES)
def test_run_examples(tmp_path, capsys, source, expected):
    assert run(script(tmp_path, source)) == 0
    assert capsys.readouterr().out == expected


def test_main_run_exits_with_status(tmp_path, capsys):
    path = script(tmp_path, 'println("hello");')
    with pytest.raises(SystemExit) as excinfo:
        main(["run", path])
    assert excinfo.value.code == 0
    assert capsys.readouterr().out == "hello\n"


def test_runtime_error_is_reported_with_trace(tmp_path, capsys):
    path = script(
        tmp_path,
        """
        let inner = fn() { 1 / 0 };
        let outer = fn() { inner() };
        outer();
        """,
    )
    assert run(path) == 1
    err = capsys.readouterr().err
    lines = err.splitlines()
    assert lines[0].startswith(f"[{path}, line 2")
    assert "] error: " in lines[0]
    assert lines[1].startswith(f"...within [function: inner] called from [{path}, line 3")
    assert lines[2].startswith(f"...within [function: outer] called from [{path}, line 4")


def test_deep_recursion_runs_to_completion(tmp_path, capsys):
    path = script(
        tmp_path,
        """
        fn sum(xs) {
            if (is_empty(xs)) { return 0; }
            return head(xs) + sum(tail(xs));
        }
        let xs = [];
        for (let i = 0; i < 1000; i += 1) { push(xs, 1); }
        println(sum(xs));
        """,
    )
    assert run(path) == 0
    assert capsys.readouterr().out == "1000\n"


def test_unbounded_recursion_collapses_the_repeated_trace(tmp_path, capsys):
    path = script(tmp_path, "fn forever() { forever() }\nforever();")
    assert run(path) == 1
    lines = capsys.readouterr().err.splitlines()
    assert lines[0].endswith("] error: maximum recursion depth exceeded")
    assert lines[1].startswith(f"...within [function: forever] called from [{path}, line 1")
    assert lines[2].startswith("...previous line repeated ")
    assert lines[3].startswith(f"...within [function: forever] called from [{path}, line 2")
    assert len(lines) == 4


def test_parse_error_is_reported(tmp_path, capsys):
    path = script(tmp_path, "let = 5;")
    assert run(path) == 1
    err = capsys.readouterr().err
    assert err.startswith(f"[{path}, line 1, column 5] error: expected `identifier`")


def test_missing_file(tmp_path, capsys):
    assert run(str(tmp_path / "missing.giu")) == 1
    assert capsys.readouterr().err.startswith("error:")


def test_script_arguments_are_visible_to_the_script(tmp_path, capsys):
    path = script(tmp_path, "import std.env; println(args());")
    with pytest.raises(SystemExit) as excinfo:
        main(["run", path, "one", "--two"])
    assert excinfo.value.code == 0
    assert capsys.readouterr().out == '["one", "--two"]\n'


def test_relative_imports_resolve_against_the_script(tmp_path, capsys, monkeypatch):
    monkeypatch.chdir("/")
    (tmp_path / "helper.giu").write_text('let message = "from helper";')
    path = script(tmp_path, "import helper; println(message);")
    assert run(path) == 0
    assert capsys.readouterr().out == "from helper\n"


def test_check(tmp_path, capsys):
    good = script(tmp_path, "let x = 1 / 0;", "good.giu")
    assert check(good) == 0
    assert capsys.readouterr().out == "check finished: no errors found\n"

    bad = script(tmp_path, "let x = ;", "bad.giu")
    with pytest.raises(SystemExit) as excinfo:
        main(["check", bad])
    assert excinfo.value.code == 1
    assert "error:" in capsys.readouterr().err


def test_version(capsys):
    with pytest.raises(SystemExit) as excinfo:
        main(["--version"])
    assert excinfo.value.code == 0
    assert capsys.readouterr().out == f"giu {VERSION}\n"


# REPL


def test_repl_prints_non_null_results(capsys):
    repl = Repl()
    assert repl.runsource("1 + 2") is False
    assert repl.runsource("let x = 5;") is False
    assert repl.runsource("x * 2") is False
    assert repl.runsource("null") is False
    assert capsys.readouterr().out == "3\n10\n"


def test_repl_reports_errors_and_keeps_its_bindings(capsys):
    repl = Repl()
    repl.runsource("let total = 1;")
    assert repl.runsource("total / 0") is False
    assert "error:" in capsys.readouterr().err
    repl.runsource("total")
    assert capsys.readouterr().out == "1\n"


def test_repl_waits_for_incomplete_input(capsys):
    repl = Repl()
    assert repl.runsource("let f = fn(x) {") is True
    assert repl.runsource("if (true) { 1 }") is True
    assert repl.runsource("if (true) { 1 }\n") is False
    assert capsys.readouterr().out == "1\n"
    assert repl.runsource("let = ;\n") is False
    assert "error:" in capsys.readouterr().err
