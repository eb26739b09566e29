import pytest

from giu import (
    INTEGER_MAX,
    Array,
    BigInteger,
    Boolean,
    ErrorKind,
    HashMap,
    Integer,
    Null,
    String,
)

from helpers import assert_error, assert_ok, run_giu


# Arithmetic and promotion


def test_program_value_is_value_of_last_statement():
    assert_ok(run_giu("let x = 10; let y = 20; x + y"), Integer(30))


def test_non_expression_statements_produce_null():
    assert_ok(run_giu("let x = 1;"), Null())


def test_integer_overflow_promotes_to_big_integer():
    assert_ok(run_giu("9223372036854775807 + 1"), BigInteger(INTEGER_MAX + 1))
    assert_ok(
        run_giu("4000000000 * 4000000000 * 4000000000"),
        BigInteger(4000000000**3),
    )
    assert_ok(run_giu("-9223372036854775807 - 2"), BigInteger(-(2**63) - 1))


def test_results_back_in_range_stay_integers():
    assert_ok(run_giu("9223372036854775807 - 1"), Integer(INTEGER_MAX - 1))


def test_arithmetic_with_a_big_integer_stays_big():
    assert_ok(run_giu("let big = 9223372036854775807 + 1; big - big"), BigInteger(0))


def test_negating_the_most_negative_integer():
    assert_ok(run_giu("let m = -9223372036854775807 - 1; type(m)"), String("integer"))
    assert_ok(run_giu("let m = -9223372036854775807 - 1; -m"), BigInteger(2**63))


def test_division_truncates_toward_zero():
    assert_ok(run_giu("7 / 2"), Integer(3))
    assert_ok(run_giu("-7 / 2"), Integer(-3))
    assert_ok(run_giu("7 / -2"), Integer(-3))


def test_remainder_takes_the_sign_of_the_dividend():
    assert_ok(run_giu("7 % 3"), Integer(1))
    assert_ok(run_giu("-7 % 3"), Integer(-1))
    assert_ok(run_giu("7 % -3"), Integer(1))


def test_division_by_zero():
    assert_error(run_giu("1 / 0"), ErrorKind.DIVISION_BY_ZERO)
    assert_error(run_giu("1 % 0"), ErrorKind.DIVISION_BY_ZERO)


def test_string_concatenation_and_type_mismatch():
    assert_ok(run_giu('"foo" + "bar"'), String("foobar"))
    assert_error(run_giu('1 + "a"'), ErrorKind.TYPE_MISMATCH, "`integer` and `string`")
    assert_error(run_giu('"a" - "b"'), ErrorKind.TYPE_MISMATCH)


def test_comparisons():
    assert_ok(run_giu("1 < 2"), Boolean(True))
    assert_ok(run_giu('"abc" < "abd"'), Boolean(True))
    assert_ok(run_giu("9223372036854775808 > 1"), Boolean(True))
    assert_error(run_giu('1 < "2"'), ErrorKind.TYPE_MISMATCH)


def test_structural_equality():
    assert_ok(run_giu("[1, [2, 3]] == [1, [2, 3]]"), Boolean(True))
    assert_ok(run_giu('{"a": 1} == {"a": 1}'), Boolean(True))
    assert_ok(run_giu('{"a": 1} != {"a": 2}'), Boolean(True))
    assert_ok(run_giu('1 == "1"'), Boolean(False))
    assert_ok(run_giu("null == null"), Boolean(True))


def test_self_containing_collections_compare_equal_to_themselves():
    assert_ok(run_giu("let a = []; push(a, a); a == a"), Boolean(True))
    assert_ok(run_giu('let m = {}; m["self"] = m; m == m'), Boolean(True))
    assert_ok(run_giu("let a = [1]; push(a, a); [a] == [a]"), Boolean(True))


def test_logical_operators_short_circuit():
    assert_ok(run_giu("false && 1 / 0 == 0"), Boolean(False))
    assert_ok(run_giu("true || 1 / 0 == 0"), Boolean(True))
    assert_ok(run_giu("!false && true"), Boolean(True))


def test_logical_operators_require_booleans():
    assert_error(run_giu("1 && true"), ErrorKind.TYPE_MISMATCH)
    assert_error(run_giu("true || 1"), ErrorKind.TYPE_MISMATCH)
    assert_error(run_giu("!1"), ErrorKind.TYPE_MISMATCH)


# Control flow


def test_if_is_an_expression():
    assert_ok(run_giu("let x = if (1 > 2) { 1 } else { 2 }; x"), Integer(2))
    assert_ok(
        run_giu('if (false) { "a" } else if (true) { "b" } else { "c" }'),
        String("b"),
    )
    assert_ok(run_giu("if (false) { 1 }"), Null())


def test_conditions_must_be_boolean():
    assert_error(run_giu("if (1) { 2 }"), ErrorKind.TYPE_MISMATCH, "non-boolean")
    assert_error(run_giu("while (null) { }"), ErrorKind.TYPE_MISMATCH)


def test_while_with_break_and_continue():
    source = """
    let i = 0;
    let sum = 0;
    while (true) {
        i += 1;
        if (i > 10) { break; }
        if (i % 2 == 0) { continue; }
        sum += i;
    }
    sum
    """
    assert_ok(run_giu(source), Integer(25))


def test_for_in_over_arrays_strings_and_maps():
    assert_ok(
        run_giu("let total = 0; for (x in [1, 2, 3]) { total += x; } total"),
        Integer(6),
    )
    assert_ok(
        run_giu('let out = ""; for (c in "abc") { out = c + out; } out'),
        String("cba"),
    )
    assert_ok(
        run_giu('let ks = []; for (k in {"b": 1, "a": 2}) { push(ks, k); } ks'),
        Array([String("b"), String("a")]),
    )
    assert_error(run_giu("for (x in 5) { }"), ErrorKind.TYPE_MISMATCH)


def test_for_in_iterates_over_a_snapshot():
    source = """
    let xs = [1, 2];
    let count = 0;
    for (x in xs) { push(xs, x); count += 1; }
    [count, len(xs)]
    """
    assert_ok(run_giu(source), Array([Integer(2), Integer(4)]))


def test_c_style_for_and_continue_runs_the_update():
    source = """
    let out = [];
    for (let i = 0; i < 6; i += 1) {
        if (i == 2) { continue; }
        if (i == 4) { break; }
        push(out, i);
    }
    out
    """
    assert_ok(run_giu(source), Array([Integer(0), Integer(1), Integer(3)]))


def test_return_passes_through_loops():
    source = """
    fn find(xs, target) {
        for (x in xs) {
            while (true) {
                if (x == target) { return "found"; }
                break;
            }
        }
        return "missing";
    }
    [find([1, 2, 3], 2), find([1], 5)]
    """
    assert_ok(run_giu(source), Array([String("found"), String("missing")]))


def test_break_outside_of_loop_is_an_error():
    assert_error(run_giu("break;"), ErrorKind.INVALID_OPERATION)
    assert_error(run_giu("let f = fn() { continue; }; f();"), ErrorKind.INVALID_OPERATION)


def test_top_level_return_ends_the_program():
    assert_ok(run_giu("let x = 1; return x + 1; x = 100;"), Integer(2))


# Functions and closures


def test_function_call():
    assert_ok(run_giu("let add = fn(a, b) { a + b }; add(5, 3)"), Integer(8))


def test_function_returns_value_of_last_statement_or_null():
    assert_ok(run_giu("let f = fn() { 1; 2 }; f()"), Integer(2))
    assert_ok(run_giu("let f = fn() { }; f()"), Null())
    assert_ok(run_giu("let f = fn() { let x = 1; }; f()"), Null())


def test_recursion():
    source = """
    fn fib(n) {
        if (n < 2) { return n; }
        fib(n - 1) + fib(n - 2)
    }
    fib(15)
    """
    assert_ok(run_giu(source), Integer(610))


def test_deep_recursion():
    source = """
    fn count(n) {
        if (n == 0) { return 0; }
        return 1 + count(n - 1);
    }
    count(2000)
    """
    assert_ok(run_giu(source), Integer(2000))


def test_deep_recursion_over_head_and_tail():
    source = """
    fn sum(xs) {
        if (is_empty(xs)) { return 0; }
        return head(xs) + sum(tail(xs));
    }
    let xs = [];
    for (let i = 1; i <= 1000; i += 1) { push(xs, i); }
    sum(xs)
    """
    assert_ok(run_giu(source), Integer(500500))


def test_unbounded_recursion_is_an_error():
    source = """
    fn forever(n) { forever(n + 1) }
    forever(0)
    """
    result = run_giu(source)
    assert_error(result, ErrorKind.RECURSION_LIMIT)
    assert len(result.trace) > 1000
    assert all(element.function.ast.name == "forever" for element in result.trace)


def test_closure_observes_later_assignments():
    source = """
    let x = 1;
    let get = fn() { x };
    x = 2;
    get()
    """
    assert_ok(run_giu(source), Integer(2))


def test_closure_outlives_its_defining_block():
    source = """
    fn counter() {
        let count = 0;
        fn() { count += 1; count }
    }
    let a = counter();
    let b = counter();
    a();
    a();
    [a(), b()]
    """
    assert_ok(run_giu(source), Array([Integer(3), Integer(1)]))


def test_closure_is_not_affected_by_outer_shadowing():
    source = """
    let make = fn() { let x = 1; fn() { x } };
    let get = make();
    let x = 100;
    get()
    """
    assert_ok(run_giu(source), Integer(1))


def test_scoping_is_lexical_not_dynamic():
    source = """
    let x = "global";
    let show = fn() { x };
    let caller = fn() { let x = "local"; show() };
    caller()
    """
    assert_ok(run_giu(source), String("global"))


def test_let_in_a_block_shadows_without_mutating():
    source = """
    let x = 1;
    if (true) { let x = 2; }
    x
    """
    assert_ok(run_giu(source), Integer(1))


def test_assignment_to_undefined_variable_is_an_error():
    assert_error(run_giu("y = 1;"), ErrorKind.UNDEFINED_VARIABLE, "`y`")
    assert_error(run_giu("y"), ErrorKind.UNDEFINED_VARIABLE)


def test_wrong_argument_count():
    assert_error(
        run_giu("let f = fn(a) { a }; f(1, 2)"),
        ErrorKind.WRONG_ARGUMENT_COUNT,
        "expected 1, received 2",
    )


def test_calling_a_non_function():
    assert_error(run_giu("let x = 1; x()"), ErrorKind.NOT_CALLABLE)


def test_runtime_error_collects_call_trace():
    source = """
    let inner = fn() { 1 / 0 };
    let outer = fn() { inner() };
    outer()
    """
    result = run_giu(source)
    assert_error(result, ErrorKind.DIVISION_BY_ZERO)
    assert [str(element.function) for element in result.trace] == [
        "[function: inner]",
        "[function: outer]",
    ]


def test_errors_are_not_swallowed_by_loops():
    assert_error(
        run_giu("for (x in [1, 0]) { 10 / x; }"), ErrorKind.DIVISION_BY_ZERO
    )


# Collections


def test_array_indexing_and_assignment():
    assert_ok(run_giu("let a = [1, 2, 3]; a[1] = 20; a[2] += 5; a"),
              Array([Integer(1), Integer(20), Integer(8)]))
    assert_error(run_giu("[1, 2][2]"), ErrorKind.INDEX_OUT_OF_BOUNDS)
    assert_error(run_giu("[1, 2][-1]"), ErrorKind.INDEX_OUT_OF_BOUNDS)
    assert_error(run_giu('[1, 2]["0"]'), ErrorKind.TYPE_MISMATCH)


def test_string_indexing():
    assert_ok(run_giu('"hello"[1]'), String("e"))
    assert_error(run_giu('"hi"[5]'), ErrorKind.INDEX_OUT_OF_BOUNDS)
    assert_error(run_giu('let s = "hi"; s[0] = "y";'), ErrorKind.TYPE_MISMATCH)


def test_hashmap_indexing_and_assignment():
    source = """
    let m = {"a": 1};
    m["b"] = 2;
    m["a"] += 10;
    m
    """
    assert_ok(run_giu(source), HashMap({String("a"): Integer(11), String("b"): Integer(2)}))
    assert_error(run_giu('{"a": 1}["z"]'), ErrorKind.MISSING_KEY)
    assert_error(run_giu("{[1]: 2}"), ErrorKind.TYPE_MISMATCH, "not hashable")
    assert_error(run_giu("let m = {}; m[[1]] = 2;"), ErrorKind.TYPE_MISMATCH)


def test_integer_and_big_integer_keys_are_interchangeable():
    assert_ok(run_giu("let m = {1: \"one\"}; m[9223372036854775808 - 9223372036854775807]"),
              String("one"))


def test_composite_values_alias_on_assignment():
    source = """
    let a = [1];
    let b = a;
    push(b, 2);
    let m = {};
    let n = m;
    n["k"] = a;
    [len(a), len(m)]
    """
    assert_ok(run_giu(source), Array([Integer(2), Integer(1)]))


def test_methods_on_builtin_types():
    assert_ok(run_giu('"abc".len()'), Integer(3))
    assert_ok(run_giu("let xs = [1]; xs.push(2); xs"), Array([Integer(1), Integer(2)]))
    assert_ok(run_giu('{"a": 1}.get("b")'), Null())
    assert_ok(run_giu("(-5).abs()"), Integer(5))
    assert_error(run_giu('"abc".nope()'), ErrorKind.UNDEFINED_METHOD)


@pytest.mark.parametrize(
    "source, kind",
    [
        ("undefined_function()", ErrorKind.UNDEFINED_VARIABLE),
        ("len(1)", ErrorKind.TYPE_MISMATCH),
        ("len()", ErrorKind.WRONG_ARGUMENT_COUNT),
        ("head([])", ErrorKind.INDEX_OUT_OF_BOUNDS),
        ("1.x", ErrorKind.UNDEFINED_FIELD),
    ],
)
def test_runtime_error_kinds(source, kind):
    assert_error(run_giu(source), kind)
