import pytest

from giu import (
    AstExpressionAccessDot,
    AstExpressionAccessIndex,
    AstExpressionAnd,
    AstExpressionAssignment,
    AstExpressionBinary,
    AstExpressionFor,
    AstExpressionForC,
    AstExpressionFunction,
    AstExpressionFunctionCall,
    AstExpressionHashMap,
    AstExpressionIdentifier,
    AstExpressionIf,
    AstExpressionInteger,
    AstExpressionOr,
    AstExpressionStructLiteral,
    AstExpressionUnary,
    AstStatementExpression,
    AstStatementFunction,
    AstStatementImport,
    AstStatementLet,
    AstStatementReturn,
    AstStatementStruct,
    BigInteger,
    Integer,
    Lexer,
    ParseError,
    Parser,
    TokenKind,
)


def parse(source: str):
    return Parser(Lexer(source)).parse_program()


def expression(source: str):
    program = parse(source)
    assert len(program.statements) == 1
    statement = program.statements[0]
    assert isinstance(statement, AstStatementExpression)
    return statement.expression


def test_multiplication_binds_tighter_than_addition():
    tree = expression("1 + 2 * 3;")
    assert isinstance(tree, AstExpressionBinary)
    assert tree.operator == TokenKind.ADD
    assert isinstance(tree.rhs, AstExpressionBinary)
    assert tree.rhs.operator == TokenKind.MUL


def test_binary_operators_are_left_associative():
    tree = expression("10 - 4 - 3;")
    assert isinstance(tree, AstExpressionBinary)
    assert isinstance(tree.lhs, AstExpressionBinary)
    assert tree.lhs.operator == TokenKind.SUB


def test_logical_precedence():
    tree = expression("a || b && c == d;")
    assert isinstance(tree, AstExpressionOr)
    assert isinstance(tree.rhs, AstExpressionAnd)
    assert isinstance(tree.rhs.rhs, AstExpressionBinary)
    assert tree.rhs.rhs.operator == TokenKind.EQ


def test_relational_binds_tighter_than_equality():
    tree = expression("1 < 2 == true;")
    assert isinstance(tree, AstExpressionBinary)
    assert tree.operator == TokenKind.EQ
    assert tree.lhs.operator == TokenKind.LT


def test_unary_binds_tighter_than_binary():
    tree = expression("-a * b;")
    assert isinstance(tree, AstExpressionBinary)
    assert isinstance(tree.lhs, AstExpressionUnary)


def test_postfix_chain():
    tree = expression("a.b[0](1, 2);")
    assert isinstance(tree, AstExpressionFunctionCall)
    assert len(tree.arguments) == 2
    assert isinstance(tree.function, AstExpressionAccessIndex)
    assert isinstance(tree.function.store, AstExpressionAccessDot)


def test_grouping_overrides_precedence():
    tree = expression("(1 + 2) * 3;")
    assert isinstance(tree, AstExpressionBinary)
    assert tree.operator == TokenKind.MUL


def test_assignment_is_right_associative():
    tree = expression("a = b = 1;")
    assert isinstance(tree, AstExpressionAssignment)
    assert isinstance(tree.target, AstExpressionIdentifier)
    assert isinstance(tree.expression, AstExpressionAssignment)


def test_compound_assignment_records_operator():
    tree = expression("xs[0] += 2;")
    assert isinstance(tree, AstExpressionAssignment)
    assert tree.operator == TokenKind.ADD
    assert isinstance(tree.target, AstExpressionAccessIndex)


def test_invalid_assignment_target():
    with pytest.raises(ParseError) as excinfo:
        parse("1 + 2 = 3;")
    assert "invalid assignment target" in excinfo.value.why


def test_integer_literals_beyond_64_bits_become_big_integers():
    small = expression("9223372036854775807;")
    big = expression("9223372036854775808;")
    assert isinstance(small, AstExpressionInteger)
    assert isinstance(small.data, Integer)
    assert isinstance(big.data, BigInteger)


def test_let_names_function_literals():
    program = parse("let add = fn(a, b) { a + b };")
    statement = program.statements[0]
    assert isinstance(statement, AstStatementLet)
    assert isinstance(statement.expression, AstExpressionFunction)
    assert statement.expression.name == "add"
    assert [p.name for p in statement.expression.parameters] == ["a", "b"]


def test_function_statement():
    program = parse("fn square(x) { x * x }")
    statement = program.statements[0]
    assert isinstance(statement, AstStatementFunction)
    assert statement.function.name == "square"


def test_duplicate_parameters_are_rejected():
    with pytest.raises(ParseError):
        parse("let f = fn(a, a) { a };")


def test_struct_definition_separates_fields_and_methods():
    program = parse(
        """
        struct Person {
            name: null,
            age: 0,
            greet: fn() { println(this.name); },
        }
        """
    )
    statement = program.statements[0]
    assert isinstance(statement, AstStatementStruct)
    assert [f.name for f, _ in statement.fields] == ["name", "age"]
    assert [m.name for m, _ in statement.methods] == ["greet"]
    assert statement.methods[0][1].name == "Person.greet"


def test_struct_literal_is_distinguished_from_block():
    literal = expression('Person { name: "John", age: 30 };')
    assert isinstance(literal, AstExpressionStructLiteral)
    assert [f.name for f, _ in literal.fields] == ["name", "age"]

    empty = expression("Empty {};")
    assert isinstance(empty, AstExpressionStructLiteral)

    conditional = expression("if (ready) { go(); }")
    assert isinstance(conditional, AstExpressionIf)


def test_hashmap_literal():
    tree = expression('{"a": 1, "b": 2};')
    assert isinstance(tree, AstExpressionHashMap)
    assert len(tree.elements) == 2


def test_if_else_if_else_chain():
    tree = expression("if (a) { 1 } else if (b) { 2 } else { 3 }")
    assert isinstance(tree, AstExpressionIf)
    assert len(tree.conditionals) == 2
    assert tree.else_block is not None


def test_for_in_and_c_style_for():
    for_in = expression("for (x in xs) { println(x); }")
    assert isinstance(for_in, AstExpressionFor)
    assert for_in.identifier.name == "x"

    for_c = expression("for (let i = 0; i < 10; i += 1) { println(i); }")
    assert isinstance(for_c, AstExpressionForC)
    assert isinstance(for_c.initializer, AstStatementLet)
    assert for_c.condition is not None
    assert for_c.update is not None

    forever = expression("for (;;) { break; }")
    assert isinstance(forever, AstExpressionForC)
    assert forever.initializer is None
    assert forever.condition is None
    assert forever.update is None


def test_import_forms():
    everything = parse("import lib.strings;").statements[0]
    assert isinstance(everything, AstStatementImport)
    assert [p.name for p in everything.path] == ["lib", "strings"]
    assert everything.names is None

    selected = parse("import std.math.{min, max};").statements[0]
    assert isinstance(selected, AstStatementImport)
    assert [p.name for p in selected.path] == ["std", "math"]
    assert [n.name for n in selected.names] == ["min", "max"]


def test_return_with_and_without_value():
    program = parse("fn f() { return; } fn g() { return 1; }")
    f = program.statements[0].function.body.statements[0]
    g = program.statements[1].function.body.statements[0]
    assert isinstance(f, AstStatementReturn) and f.expression is None
    assert isinstance(g, AstStatementReturn) and g.expression is not None


def test_block_ending_statements_may_omit_semicolons():
    program = parse(
        """
        if (a) { b(); }
        while (c) { d(); }
        let e = fn() { 1 }
        f()
        """
    )
    assert len(program.statements) == 4


def test_missing_semicolon_is_an_error():
    with pytest.raises(ParseError) as excinfo:
        parse("let x = 1 let y = 2;")
    assert "expected `;`" in excinfo.value.why


def test_parse_error_reports_location_and_expected_construct():
    with pytest.raises(ParseError) as excinfo:
        parse("let = 5;")
    assert excinfo.value.location.line == 1
    assert excinfo.value.location.column == 5
    assert "expected `identifier`" in str(excinfo.value)


def test_unclosed_block_is_an_error():
    with pytest.raises(ParseError):
        parse("fn f() { 1 + 2")


def test_parsing_is_deterministic():
    source = "let f = fn(x) { if (x > 1) { x * f(x - 1) } else { 1 } }; f(5);"
    assert parse(source) == parse(source)
