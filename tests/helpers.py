from giu import Error, Interpreter, Value


def run_giu(source: str):
    return Interpreter().eval_source(source)


def write(path, source: str):
    path.parent.mkdir(parents=True, exist_ok=True)
    path.write_text(source, encoding="utf-8")
    return path


def assert_ok(result, expected=None):
    assert isinstance(result, Value), f"expected value, got error: {result}"
    if expected is not None:
        assert result == expected
        assert type(result) is type(expected)


def assert_error(result, kind=None, contains=None):
    assert isinstance(result, Error), f"expected error, got value {result}"
    if kind is not None:
        assert result.kind == kind, f"expected {kind}, got {result.kind}: {result}"
    if contains is not None:
        assert contains in result.message
