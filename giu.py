#!/usr/bin/env python3

from abc import ABC, abstractmethod
from argparse import REMAINDER, ArgumentParser
from dataclasses import dataclass, field
from pathlib import Path
from string import digits, printable, whitespace
from types import ModuleType
from typing import (
    Any,
    Callable,
    Iterator,
    Optional,
    Tuple,
    Type,
    TypeVar,
    Union,
    final,
)
import code
import enum
import json
import logging
import os
import random
import re
import sys
import threading
import time

import re2

readline: Optional[ModuleType]
try:
    # REPL readline support.
    import readline
except ImportError:
    readline = None

VERSION = "0.1.0"

# Integers are signed 64-bit values. Results outside of this range are
# represented as big integers.
INTEGER_MIN = -(2**63)
INTEGER_MAX = 2**63 - 1

logger = logging.getLogger("giu")
logger.addHandler(logging.NullHandler())

# Every call in a giu program costs several Python frames, so programs are
# evaluated on a thread with a large stack and a raised recursion limit.
EVALUATION_STACK_SIZE = 512 * 1024 * 1024
EVALUATION_RECURSION_LIMIT = 100000


def escape(text: str) -> str:
    MAPPING = {
        "\t": "\\t",
        "\n": "\\n",
        "\r": "\\r",
        '"': '\\"',
        "\\": "\\\\",
    }
    return "".join([MAPPING.get(c, c) for c in text])


def quote(item: Any) -> str:
    text = str(item)
    return f"`{text}`" if "`" not in text else f'"{text}"'


class ErrorKind(enum.Enum):
    UNDEFINED_VARIABLE = "undefined variable"
    UNDEFINED_FIELD = "undefined field"
    UNDEFINED_METHOD = "undefined method"
    TYPE_MISMATCH = "type mismatch"
    DIVISION_BY_ZERO = "division by zero"
    INDEX_OUT_OF_BOUNDS = "index out of bounds"
    MISSING_KEY = "missing key"
    WRONG_ARGUMENT_COUNT = "wrong argument count"
    IMPORT_CYCLE = "import cycle"
    MODULE_NOT_FOUND = "module not found"
    NOT_CALLABLE = "not callable"
    INVALID_OPERATION = "invalid operation"
    SYNTAX = "syntax error"
    RECURSION_LIMIT = "recursion limit exceeded"
    HOST = "host error"

    def __str__(self):
        return self.value


class BuiltinError(Exception):
    """
    Raised from within a builtin function to produce a runtime error of the
    given kind at the call site of the builtin.
    """

    def __init__(self, message: str, kind: ErrorKind = ErrorKind.TYPE_MISMATCH):
        super().__init__(message)
        self.kind = kind


ValueType = TypeVar("ValueType", bound="Value")


class Value(ABC):
    @staticmethod
    @abstractmethod
    def typename() -> str:
        raise NotImplementedError()

    @abstractmethod
    def __hash__(self):
        raise NotImplementedError()

    @abstractmethod
    def __eq__(self, other):
        raise NotImplementedError()

    @abstractmethod
    def __str__(self):
        raise NotImplementedError()


@final
@dataclass
class Null(Value):
    @staticmethod
    def typename() -> str:
        return "null"

    def __hash__(self):
        return 0

    def __eq__(self, other):
        return type(self) is type(other)

    def __str__(self):
        return "null"


@final
@dataclass
class Boolean(Value):
    data: bool

    @staticmethod
    def typename() -> str:
        return "boolean"

    def __hash__(self):
        return hash(self.data)

    def __eq__(self, other):
        if type(self) is not type(other):
            return False
        return self.data == other.data

    def __str__(self):
        return "true" if self.data else "false"


@final
@dataclass
class Integer(Value):
    data: int

    @staticmethod
    def typename() -> str:
        return "integer"

    def __hash__(self):
        return hash(self.data)

    def __eq__(self, other):
        # Integers and big integers holding the same number are equal so that
        # either may be used to look up a map entry.
        if not isinstance(other, (Integer, BigInteger)):
            return False
        return self.data == other.data

    def __str__(self):
        return str(self.data)


@final
@dataclass
class BigInteger(Value):
    data: int

    @staticmethod
    def typename() -> str:
        return "biginteger"

    def __hash__(self):
        return hash(self.data)

    def __eq__(self, other):
        if not isinstance(other, (Integer, BigInteger)):
            return False
        return self.data == other.data

    def __str__(self):
        return str(self.data)


INTEGERS = (Integer, BigInteger)


def integer(data: int) -> Union[Integer, BigInteger]:
    if INTEGER_MIN <= data <= INTEGER_MAX:
        return Integer(data)
    return BigInteger(data)


def promote(lhs: Value, rhs: Value, data: int) -> Union[Integer, BigInteger]:
    """
    Produce the result of an integer operation on lhs and rhs. Any big integer
    operand makes the result a big integer, and a result that does not fit in
    64 bits becomes a big integer.
    """
    if isinstance(lhs, BigInteger) or isinstance(rhs, BigInteger):
        return BigInteger(data)
    return integer(data)


@final
@dataclass
class String(Value):
    data: str

    @staticmethod
    def typename() -> str:
        return "string"

    def __hash__(self):
        return hash(self.data)

    def __eq__(self, other):
        if type(self) is not type(other):
            return False
        return self.data == other.data

    def __str__(self):
        return f'"{escape(self.data)}"'


@final
@dataclass
class Array(Value):
    # The list is shared by every handle to the array. Assignment aliases the
    # storage, so mutation through one handle is visible through all of them.
    data: list[Value] = field(default_factory=list)

    @staticmethod
    def typename() -> str:
        return "array"

    def __hash__(self):
        return hash(id(self.data))

    def __eq__(self, other):
        if self is other:
            return True
        if type(self) is not type(other):
            return False
        if len(self.data) != len(other.data):
            return False
        for i in range(len(self.data)):
            if self.data[i] != other.data[i]:
                return False
        return True

    def __str__(self):
        elements = ", ".join([str(x) for x in self.data])
        return f"[{elements}]"


@final
@dataclass
class HashMap(Value):
    data: dict[Value, Value] = field(default_factory=dict)

    @staticmethod
    def typename() -> str:
        return "hashmap"

    def __hash__(self):
        return hash(id(self.data))

    def __eq__(self, other):
        if self is other:
            return True
        if type(self) is not type(other):
            return False
        if len(self.data) != len(other.data):
            return False
        for k, v in self.data.items():
            if k not in other.data or other.data[k] != v:
                return False
        return True

    def __str__(self):
        elements = ", ".join([f"{str(k)}: {str(v)}" for k, v in self.data.items()])
        return f"{{{elements}}}"


def hashable(value: Value) -> bool:
    return isinstance(value, (Boolean, Integer, BigInteger, String))


@final
@dataclass
class Function(Value):
    ast: "AstExpressionFunction"
    env: "Environment"

    @staticmethod
    def typename() -> str:
        return "function"

    def __hash__(self):
        return hash(id(self.ast)) + hash(id(self.env))

    def __eq__(self, other):
        if type(self) is not type(other):
            return False
        return self.ast is other.ast and self.env is other.env

    def __str__(self):
        if self.ast.name is not None:
            return f"[function: {self.ast.name}]"
        return "[function]"


@final
@dataclass(eq=False)
class StructDef(Value):
    name: str
    fields: dict[str, Value]
    methods: dict[str, Function]

    @staticmethod
    def typename() -> str:
        return "struct"

    def __hash__(self):
        return hash(id(self))

    def __eq__(self, other):
        return self is other

    def __str__(self):
        return f"struct {self.name}"


@final
@dataclass(eq=False)
class Instance(Value):
    struct: StructDef
    fields: dict[str, Value]

    @staticmethod
    def typename() -> str:
        return "instance"

    def __hash__(self):
        return hash(id(self))

    def __eq__(self, other):
        # Instances compare by identity of their storage, never by fields.
        return self is other

    def __str__(self):
        elements = ", ".join([f"{k}: {str(v)}" for k, v in self.fields.items()])
        return f"{self.struct.name} {{{elements}}}"


def typename(value: Value) -> str:
    if isinstance(value, Instance):
        return value.struct.name
    return value.typename()


def display(value: Value) -> str:
    """
    Textual form used when writing a value to an output stream. Strings are
    written raw, everything else uses its regular textual form.
    """
    if isinstance(value, String):
        return value.data
    return str(value)


@dataclass
class SourceLocation:
    filename: Optional[str]
    line: int
    column: int = 1

    def __str__(self):
        if self.filename is None:
            return f"line {self.line}, column {self.column}"
        return f"{self.filename}, line {self.line}, column {self.column}"


@dataclass
class Return:
    value: Value


@dataclass
class Break:
    location: Optional[SourceLocation]


@dataclass
class Continue:
    location: Optional[SourceLocation]


@dataclass
class Error:
    @dataclass
    class TraceElement:
        location: Optional[SourceLocation]
        function: Union[Function, "Builtin"]

    location: Optional[SourceLocation]
    message: str
    kind: ErrorKind
    trace: list[TraceElement]

    def __init__(
        self,
        location: Optional[SourceLocation],
        message: str,
        kind: ErrorKind = ErrorKind.INVALID_OPERATION,
    ):
        self.location = location
        self.message = message
        self.kind = kind
        self.trace = list()

    def __str__(self):
        return self.message


# Evaluation of every AST node produces either a value or one of these
# non-value outcomes, which propagate upward until a loop, function call, or
# program consumes them.
ControlFlow = Union[Return, Break, Continue, Error]


class Builtin(Value):
    name: str = "builtin"

    @staticmethod
    def typename() -> str:
        return "function"

    def __hash__(self):
        return hash(type(self))

    def __eq__(self, other):
        return type(self) is type(other)

    def __str__(self):
        return f"[built-in function: {self.name}]"

    def call(self, arguments: list[Value]) -> Union[Value, Error]:
        try:
            result = self.function(arguments)
        except BuiltinError as e:
            return Error(None, str(e), e.kind)
        except RecursionError:
            return Error(
                None, "maximum recursion depth exceeded", ErrorKind.RECURSION_LIMIT
            )
        except Exception as e:
            message = f"{e}"
            if len(message) == 0:
                message = f"encountered exception {type(e).__name__}"
            return Error(None, message, ErrorKind.HOST)
        if isinstance(result, (Value, Error)):
            return result
        # Builtins that have nothing to produce return null.
        return Null()

    def expect_argument_count(self, arguments: list[Value], bgn: int, end: int) -> None:
        if bgn <= len(arguments) <= end:
            return
        if bgn == end:
            expected = f"{bgn}"
        elif end == sys.maxsize:
            expected = f"at least {bgn}"
        else:
            expected = f"{bgn} to {end}"
        raise BuiltinError(
            f"wrong number of arguments to {quote(self.name)} (expected {expected}, received {len(arguments)})",
            ErrorKind.WRONG_ARGUMENT_COUNT,
        )

    def typed_argument(
        self,
        arguments: list[Value],
        index: int,
        ty: Union[Type[ValueType], Tuple[Type[Value], ...]],
    ) -> ValueType:
        argument = arguments[index]
        if not isinstance(argument, ty):
            types = ty if isinstance(ty, tuple) else (ty,)
            expected = " or ".join(sorted({quote(t.typename()) for t in types}))
            raise BuiltinError(
                f"expected {expected} for argument {index + 1} of {quote(self.name)}, received {quote(typename(argument))}"
            )
        return argument  # type: ignore

    @abstractmethod
    def function(self, arguments: list[Value]) -> Union[Value, Error, None]:
        raise NotImplementedError()


class TokenKind(enum.Enum):
    # Meta
    EOF = "eof"
    # Identifiers and Literals
    IDENTIFIER = "identifier"
    INTEGER = "integer"
    STRING = "string"
    # Operators
    ADD = "+"
    SUB = "-"
    MUL = "*"
    DIV = "/"
    REM = "%"
    EQ = "=="
    NE = "!="
    LE = "<="
    GE = ">="
    LT = "<"
    GT = ">"
    AND = "&&"
    OR = "||"
    NOT = "!"
    ASSIGN = "="
    ADD_ASSIGN = "+="
    SUB_ASSIGN = "-="
    MUL_ASSIGN = "*="
    DIV_ASSIGN = "/="
    REM_ASSIGN = "%="
    DOT = "."
    # Delimiters
    COMMA = ","
    COLON = ":"
    SEMICOLON = ";"
    LPAREN = "("
    RPAREN = ")"
    LBRACE = "{"
    RBRACE = "}"
    LBRACKET = "["
    RBRACKET = "]"
    # Keywords
    LET = "let"
    FN = "fn"
    STRUCT = "struct"
    IF = "if"
    ELSE = "else"
    WHILE = "while"
    FOR = "for"
    IN = "in"
    BREAK = "break"
    CONTINUE = "continue"
    RETURN = "return"
    IMPORT = "import"
    NULL = "null"
    TRUE = "true"
    FALSE = "false"
    THIS = "this"

    def __str__(self):
        return self.value


@dataclass
class Token:
    KEYWORDS = {
        # fmt: off
        str(TokenKind.LET):      TokenKind.LET,
        str(TokenKind.FN):       TokenKind.FN,
        str(TokenKind.STRUCT):   TokenKind.STRUCT,
        str(TokenKind.IF):       TokenKind.IF,
        str(TokenKind.ELSE):     TokenKind.ELSE,
        str(TokenKind.WHILE):    TokenKind.WHILE,
        str(TokenKind.FOR):      TokenKind.FOR,
        str(TokenKind.IN):       TokenKind.IN,
        str(TokenKind.BREAK):    TokenKind.BREAK,
        str(TokenKind.CONTINUE): TokenKind.CONTINUE,
        str(TokenKind.RETURN):   TokenKind.RETURN,
        str(TokenKind.IMPORT):   TokenKind.IMPORT,
        str(TokenKind.NULL):     TokenKind.NULL,
        str(TokenKind.TRUE):     TokenKind.TRUE,
        str(TokenKind.FALSE):    TokenKind.FALSE,
        str(TokenKind.THIS):     TokenKind.THIS,
        # fmt: on
    }

    kind: TokenKind
    literal: str
    location: Optional[SourceLocation] = None
    number: Optional[int] = None
    string: Optional[str] = None

    def __str__(self):
        if self.kind == TokenKind.EOF:
            return "end-of-file"
        return self.literal

    @staticmethod
    def lookup_identifier(identifier: str) -> TokenKind:
        return Token.KEYWORDS.get(identifier, TokenKind.IDENTIFIER)


@dataclass
class ParseError(Exception):
    location: Optional[SourceLocation]
    why: str

    def __str__(self):
        if self.location is None:
            return f"{self.why}"
        return f"[{self.location}] {self.why}"


class LexError(ParseError):
    pass


class Lexer:
    EOF_LITERAL = ""
    RE_IDENTIFIER = re.compile(r"^[a-zA-Z_]\w*", re.ASCII)
    RE_INTEGER = re.compile(r"^\d+", re.ASCII)
    # Operators and delimiters, longest first so that the first match is the
    # maximal munch.
    SYMBOLS = sorted(
        [kind for kind in TokenKind if not kind.value.isalpha()],
        key=lambda kind: len(kind.value),
        reverse=True,
    )
    ESCAPES = {
        "n": "\n",
        "t": "\t",
        "r": "\r",
        '"': '"',
        "\\": "\\",
    }

    def __init__(self, source: str, filename: Optional[str] = None):
        self.source: str = source
        self.filename: Optional[str] = filename
        self.position: int = 0
        self.line: int = 1
        self.column: int = 1

    def __iter__(self) -> Iterator[Token]:
        # Every iteration lexes the source from the start, independent of any
        # tokens already produced by this lexer.
        lexer = Lexer(self.source, self.filename)
        while True:
            token = lexer.next_token()
            yield token
            if token.kind == TokenKind.EOF:
                return

    @property
    def location(self) -> SourceLocation:
        return SourceLocation(self.filename, self.line, self.column)

    @staticmethod
    def _is_letter(ch: str) -> bool:
        return ch.isascii() and (ch.isalpha() or ch == "_")

    def _current_character(self) -> str:
        if self.position >= len(self.source):
            return Lexer.EOF_LITERAL
        return self.source[self.position]

    def _peek_character(self) -> str:
        if self.position + 1 >= len(self.source):
            return Lexer.EOF_LITERAL
        return self.source[self.position + 1]

    def _is_eof(self) -> bool:
        return self.position >= len(self.source)

    def _remaining(self) -> str:
        return self.source[self.position :]

    def _advance_character(self) -> None:
        if self._is_eof():
            return
        if self.source[self.position] == "\n":
            self.line += 1
            self.column = 1
        else:
            self.column += 1
        self.position += 1

    def _advance_characters(self, count: int) -> None:
        for _ in range(count):
            self._advance_character()

    def _skip_whitespace(self) -> None:
        while not self._is_eof() and self._current_character() in whitespace:
            self._advance_character()

    def _skip_comment(self) -> None:
        if not self._remaining().startswith("//"):
            return
        while not self._is_eof() and self._current_character() != "\n":
            self._advance_character()
        self._advance_character()

    def _skip_whitespace_and_comments(self) -> None:
        while not self._is_eof() and (
            self._current_character() in whitespace
            or self._remaining().startswith("//")
        ):
            self._skip_whitespace()
            self._skip_comment()

    def _lex_keyword_or_identifier(self, location: SourceLocation) -> Token:
        match = Lexer.RE_IDENTIFIER.match(self._remaining())
        assert match is not None  # guaranteed by _is_letter
        text = match[0]
        self._advance_characters(len(text))
        return Token(Token.lookup_identifier(text), text, location)

    def _lex_integer(self, location: SourceLocation) -> Token:
        match = Lexer.RE_INTEGER.match(self._remaining())
        assert match is not None  # guaranteed by regexp
        text = match[0]
        self._advance_characters(len(text))
        # Literals of any size are lexically valid. Literals outside of the
        # 64-bit range become big integers when parsed.
        return Token(TokenKind.INTEGER, text, location, number=int(text))

    def _lex_string(self, location: SourceLocation) -> Token:
        start = self.position
        self._advance_character()  # opening quote
        string = ""
        while self._current_character() != '"':
            if self._is_eof():
                raise LexError(location, "unterminated string literal")
            if self._current_character() == "\\":
                escape_location = self.location
                sequence = self._peek_character()
                if sequence not in Lexer.ESCAPES:
                    raise LexError(
                        escape_location,
                        f"unknown escape sequence {quote(escape(chr(92) + sequence))}",
                    )
                string += Lexer.ESCAPES[sequence]
                self._advance_characters(2)
                continue
            string += self._current_character()
            self._advance_character()
        self._advance_character()  # closing quote
        literal = self.source[start : self.position]
        return Token(TokenKind.STRING, literal, location, string=string)

    def next_token(self) -> Token:
        self._skip_whitespace_and_comments()
        location = self.location

        if self._is_eof():
            return Token(TokenKind.EOF, Lexer.EOF_LITERAL, location)

        # Literals, Identifiers, and Keywords
        if self._current_character() == '"':
            return self._lex_string(location)
        if Lexer._is_letter(self._current_character()):
            return self._lex_keyword_or_identifier(location)
        if self._current_character() in digits:
            return self._lex_integer(location)

        # Operators and Delimiters
        remaining = self._remaining()
        for kind in Lexer.SYMBOLS:
            if remaining.startswith(kind.value):
                self._advance_characters(len(kind.value))
                return Token(kind, kind.value, location)

        character = self._current_character()
        if character in printable and character not in whitespace:
            found = quote(character)
        else:
            found = f"{ord(character):#04x}"
        raise LexError(location, f"unexpected character {found}")


class Environment:
    def __init__(
        self,
        outer: Optional["Environment"] = None,
        interpreter: Optional["Interpreter"] = None,
    ):
        self.outer: Optional["Environment"] = outer
        self.store: dict[str, Value] = dict()
        # Every environment in a chain shares the interpreter context of the
        # root environment it descends from.
        if interpreter is None and outer is not None:
            interpreter = outer.interpreter
        self.interpreter: Optional["Interpreter"] = interpreter

    def define(self, name: str, value: Value) -> None:
        self.store[name] = value

    def get(self, name: str) -> Optional[Value]:
        env: Optional[Environment] = self
        while env is not None:
            if name in env.store:
                return env.store[name]
            env = env.outer
        return None

    def set(self, name: str, value: Value) -> bool:
        """
        Rebind the nearest existing binding of name. Returns False, without
        creating a binding, if no environment in the chain defines name.
        """
        env: Optional[Environment] = self
        while env is not None:
            if name in env.store:
                env.store[name] = value
                return True
            env = env.outer
        return False


def mismatch(
    location: Optional[SourceLocation], operator: str, lhs: Value, rhs: Value
) -> Error:
    return Error(
        location,
        f"attempted {operator} operation with types {quote(typename(lhs))} and {quote(typename(rhs))}",
        ErrorKind.TYPE_MISMATCH,
    )


def truncated_quotient(lhs: int, rhs: int) -> int:
    quotient = abs(lhs) // abs(rhs)
    return quotient if (lhs < 0) == (rhs < 0) else -quotient


def operation_add(
    location: Optional[SourceLocation], lhs: Value, rhs: Value
) -> Union[Value, Error]:
    if isinstance(lhs, INTEGERS) and isinstance(rhs, INTEGERS):
        return promote(lhs, rhs, lhs.data + rhs.data)
    if isinstance(lhs, String) and isinstance(rhs, String):
        return String(lhs.data + rhs.data)
    return mismatch(location, "+", lhs, rhs)


def operation_sub(
    location: Optional[SourceLocation], lhs: Value, rhs: Value
) -> Union[Value, Error]:
    if not (isinstance(lhs, INTEGERS) and isinstance(rhs, INTEGERS)):
        return mismatch(location, "-", lhs, rhs)
    return promote(lhs, rhs, lhs.data - rhs.data)


def operation_mul(
    location: Optional[SourceLocation], lhs: Value, rhs: Value
) -> Union[Value, Error]:
    if not (isinstance(lhs, INTEGERS) and isinstance(rhs, INTEGERS)):
        return mismatch(location, "*", lhs, rhs)
    return promote(lhs, rhs, lhs.data * rhs.data)


def operation_div(
    location: Optional[SourceLocation], lhs: Value, rhs: Value
) -> Union[Value, Error]:
    if not (isinstance(lhs, INTEGERS) and isinstance(rhs, INTEGERS)):
        return mismatch(location, "/", lhs, rhs)
    if rhs.data == 0:
        return Error(location, "division by zero", ErrorKind.DIVISION_BY_ZERO)
    return promote(lhs, rhs, truncated_quotient(lhs.data, rhs.data))


def operation_rem(
    location: Optional[SourceLocation], lhs: Value, rhs: Value
) -> Union[Value, Error]:
    if not (isinstance(lhs, INTEGERS) and isinstance(rhs, INTEGERS)):
        return mismatch(location, "%", lhs, rhs)
    if rhs.data == 0:
        return Error(location, "remainder with divisor zero", ErrorKind.DIVISION_BY_ZERO)
    # The remainder has the same sign as the dividend.
    #   +7 % +3 => +1
    #   +7 % -3 => +1
    #   -7 % +3 => -1
    #   -7 % -3 => -1
    quotient = truncated_quotient(lhs.data, rhs.data)
    return promote(lhs, rhs, lhs.data - rhs.data * quotient)


def operation_eq(
    location: Optional[SourceLocation], lhs: Value, rhs: Value
) -> Union[Value, Error]:
    return Boolean(lhs == rhs)


def operation_ne(
    location: Optional[SourceLocation], lhs: Value, rhs: Value
) -> Union[Value, Error]:
    return Boolean(lhs != rhs)


def comparison(operator: str, test: Callable[[Any, Any], bool]):
    def operation(
        location: Optional[SourceLocation], lhs: Value, rhs: Value
    ) -> Union[Value, Error]:
        if isinstance(lhs, INTEGERS) and isinstance(rhs, INTEGERS):
            return Boolean(test(lhs.data, rhs.data))
        if isinstance(lhs, String) and isinstance(rhs, String):
            return Boolean(test(lhs.data, rhs.data))
        return mismatch(location, operator, lhs, rhs)

    return operation


BinaryOperation = Callable[
    [Optional[SourceLocation], Value, Value], Union[Value, Error]
]

BINARY_OPERATIONS: dict[TokenKind, BinaryOperation] = {
    # fmt: off
    TokenKind.ADD: operation_add,
    TokenKind.SUB: operation_sub,
    TokenKind.MUL: operation_mul,
    TokenKind.DIV: operation_div,
    TokenKind.REM: operation_rem,
    TokenKind.EQ:  operation_eq,
    TokenKind.NE:  operation_ne,
    TokenKind.LT:  comparison("<", lambda a, b: a < b),
    TokenKind.LE:  comparison("<=", lambda a, b: a <= b),
    TokenKind.GT:  comparison(">", lambda a, b: a > b),
    TokenKind.GE:  comparison(">=", lambda a, b: a >= b),
    # fmt: on
}

COMPOUND_ASSIGNMENTS: dict[TokenKind, Optional[TokenKind]] = {
    # fmt: off
    TokenKind.ASSIGN:     None,
    TokenKind.ADD_ASSIGN: TokenKind.ADD,
    TokenKind.SUB_ASSIGN: TokenKind.SUB,
    TokenKind.MUL_ASSIGN: TokenKind.MUL,
    TokenKind.DIV_ASSIGN: TokenKind.DIV,
    TokenKind.REM_ASSIGN: TokenKind.REM,
    # fmt: on
}


def unhashable(location: Optional[SourceLocation], key: Value) -> Error:
    return Error(
        location,
        f"value of type {quote(typename(key))} is not hashable",
        ErrorKind.TYPE_MISMATCH,
    )


def sequence_position(
    location: Optional[SourceLocation], length: int, index: Value
) -> Union[int, Error]:
    if not isinstance(index, INTEGERS):
        return Error(
            location,
            f"expected integer index, received {quote(typename(index))}",
            ErrorKind.TYPE_MISMATCH,
        )
    if not 0 <= index.data < length:
        return Error(
            location,
            f"index {index.data} out of bounds for length {length}",
            ErrorKind.INDEX_OUT_OF_BOUNDS,
        )
    return index.data


def index_get(
    location: Optional[SourceLocation], store: Value, index: Value
) -> Union[Value, Error]:
    if isinstance(store, Array):
        position = sequence_position(location, len(store.data), index)
        if isinstance(position, Error):
            return position
        return store.data[position]
    if isinstance(store, String):
        position = sequence_position(location, len(store.data), index)
        if isinstance(position, Error):
            return position
        return String(store.data[position])
    if isinstance(store, HashMap):
        if not hashable(index):
            return unhashable(location, index)
        if index not in store.data:
            return Error(location, f"missing key {index}", ErrorKind.MISSING_KEY)
        return store.data[index]
    return Error(
        location,
        f"attempted to index into type {quote(typename(store))} with type {quote(typename(index))}",
        ErrorKind.TYPE_MISMATCH,
    )


def index_set(
    location: Optional[SourceLocation], store: Value, index: Value, value: Value
) -> Optional[Error]:
    if isinstance(store, Array):
        position = sequence_position(location, len(store.data), index)
        if isinstance(position, Error):
            return position
        store.data[position] = value
        return None
    if isinstance(store, HashMap):
        if not hashable(index):
            return unhashable(location, index)
        store.data[index] = value
        return None
    return Error(
        location,
        f"attempted indexed assignment into type {quote(typename(store))}",
        ErrorKind.TYPE_MISMATCH,
    )


def field_get(
    location: Optional[SourceLocation], store: Value, name: str
) -> Union[Value, Error]:
    if isinstance(store, Instance):
        if name in store.fields:
            return store.fields[name]
        if name in store.struct.methods:
            return store.struct.methods[name]
        return Error(
            location,
            f"struct {quote(store.struct.name)} has no field or method {quote(name)}",
            ErrorKind.UNDEFINED_FIELD,
        )
    return Error(
        location,
        f"value of type {quote(typename(store))} has no field {quote(name)}",
        ErrorKind.UNDEFINED_FIELD,
    )


def field_set(
    location: Optional[SourceLocation], store: Value, name: str, value: Value
) -> Optional[Error]:
    if not isinstance(store, Instance):
        return Error(
            location,
            f"attempted field assignment into type {quote(typename(store))}",
            ErrorKind.TYPE_MISMATCH,
        )
    if name not in store.fields:
        return Error(
            location,
            f"struct {quote(store.struct.name)} has no field {quote(name)}",
            ErrorKind.UNDEFINED_FIELD,
        )
    store.fields[name] = value
    return None


class AstNode(ABC):
    location: Optional[SourceLocation]

    @abstractmethod
    def eval(self, env: Environment) -> Union[Value, ControlFlow]:
        raise NotImplementedError()


class AstExpression(AstNode):
    pass


class AstStatement(AstNode):
    pass


def evaluate_condition(
    location: Optional[SourceLocation], expression: AstExpression, env: Environment
) -> Union[bool, ControlFlow]:
    result = expression.eval(env)
    if not isinstance(result, Value):
        return result
    if not isinstance(result, Boolean):
        return Error(
            location,
            f"conditional with non-boolean type {quote(typename(result))}",
            ErrorKind.TYPE_MISMATCH,
        )
    return result.data


@final
@dataclass
class AstProgram(AstNode):
    location: Optional[SourceLocation]
    statements: list[AstStatement]

    def eval(self, env: Environment) -> Union[Value, Error]:
        result: Value = Null()
        for statement in self.statements:
            produced = statement.eval(env)
            if isinstance(produced, Return):
                return produced.value
            if isinstance(produced, Break):
                return Error(
                    produced.location,
                    "attempted to break outside of a loop",
                    ErrorKind.INVALID_OPERATION,
                )
            if isinstance(produced, Continue):
                return Error(
                    produced.location,
                    "attempted to continue outside of a loop",
                    ErrorKind.INVALID_OPERATION,
                )
            if isinstance(produced, Error):
                return produced
            result = produced
        return result


@final
@dataclass
class AstIdentifier:
    """
    Identifier with no additional behavior attached.
    """

    location: Optional[SourceLocation]
    name: str


@final
@dataclass
class AstBlock(AstNode):
    location: Optional[SourceLocation]
    statements: list[AstStatement]

    def eval(self, env: Environment) -> Union[Value, ControlFlow]:
        env = Environment(env)  # Blocks execute with a new lexical scope.
        result: Union[Value, ControlFlow] = Null()
        for statement in self.statements:
            result = statement.eval(env)
            if not isinstance(result, Value):
                return result
        return result


@final
@dataclass
class AstExpressionIdentifier(AstExpression):
    location: Optional[SourceLocation]
    name: str

    def eval(self, env: Environment) -> Union[Value, ControlFlow]:
        value = env.get(self.name)
        if value is None:
            return Error(
                self.location,
                f"undefined variable {quote(self.name)}",
                ErrorKind.UNDEFINED_VARIABLE,
            )
        return value


@final
@dataclass
class AstExpressionNull(AstExpression):
    location: Optional[SourceLocation]

    def eval(self, env: Environment) -> Union[Value, ControlFlow]:
        return Null()


@final
@dataclass
class AstExpressionBoolean(AstExpression):
    location: Optional[SourceLocation]
    data: Boolean

    def eval(self, env: Environment) -> Union[Value, ControlFlow]:
        return self.data


@final
@dataclass
class AstExpressionInteger(AstExpression):
    location: Optional[SourceLocation]
    data: Union[Integer, BigInteger]

    def eval(self, env: Environment) -> Union[Value, ControlFlow]:
        return self.data


@final
@dataclass
class AstExpressionString(AstExpression):
    location: Optional[SourceLocation]
    data: String

    def eval(self, env: Environment) -> Union[Value, ControlFlow]:
        return self.data


@final
@dataclass
class AstExpressionArray(AstExpression):
    location: Optional[SourceLocation]
    elements: list[AstExpression]

    def eval(self, env: Environment) -> Union[Value, ControlFlow]:
        values: list[Value] = list()
        for element in self.elements:
            result = element.eval(env)
            if not isinstance(result, Value):
                return result
            values.append(result)
        return Array(values)


@final
@dataclass
class AstExpressionHashMap(AstExpression):
    location: Optional[SourceLocation]
    elements: list[Tuple[AstExpression, AstExpression]]

    def eval(self, env: Environment) -> Union[Value, ControlFlow]:
        elements: dict[Value, Value] = dict()
        for k, v in self.elements:
            key = k.eval(env)
            if not isinstance(key, Value):
                return key
            if not hashable(key):
                return unhashable(k.location, key)
            value = v.eval(env)
            if not isinstance(value, Value):
                return value
            elements[key] = value
        return HashMap(elements)


@final
@dataclass
class AstExpressionFunction(AstExpression):
    location: Optional[SourceLocation]
    parameters: list[AstIdentifier]
    body: AstBlock
    name: Optional[str] = None

    def eval(self, env: Environment) -> Union[Value, ControlFlow]:
        return Function(self, env)


@final
@dataclass
class AstExpressionStructLiteral(AstExpression):
    location: Optional[SourceLocation]
    name: AstIdentifier
    fields: list[Tuple[AstIdentifier, AstExpression]]

    def eval(self, env: Environment) -> Union[Value, ControlFlow]:
        struct = env.get(self.name.name)
        if struct is None:
            return Error(
                self.location,
                f"undefined variable {quote(self.name.name)}",
                ErrorKind.UNDEFINED_VARIABLE,
            )
        if not isinstance(struct, StructDef):
            return Error(
                self.location,
                f"attempted to instantiate non-struct type {quote(typename(struct))}",
                ErrorKind.TYPE_MISMATCH,
            )
        # Fields not named in the literal share the default values of the
        # struct definition.
        fields = dict(struct.fields)
        for identifier, expression in self.fields:
            if identifier.name not in struct.fields:
                return Error(
                    identifier.location,
                    f"struct {quote(struct.name)} has no field {quote(identifier.name)}",
                    ErrorKind.UNDEFINED_FIELD,
                )
            result = expression.eval(env)
            if not isinstance(result, Value):
                return result
            fields[identifier.name] = result
        return Instance(struct, fields)


@final
@dataclass
class AstExpressionThis(AstExpression):
    location: Optional[SourceLocation]

    def eval(self, env: Environment) -> Union[Value, ControlFlow]:
        value = env.get(str(TokenKind.THIS))
        if value is None:
            return Error(
                self.location,
                f"{quote(TokenKind.THIS)} used outside of a method",
                ErrorKind.INVALID_OPERATION,
            )
        return value


@final
@dataclass
class AstExpressionUnary(AstExpression):
    location: Optional[SourceLocation]
    operator: TokenKind
    expression: AstExpression

    def eval(self, env: Environment) -> Union[Value, ControlFlow]:
        result = self.expression.eval(env)
        if not isinstance(result, Value):
            return result
        if self.operator == TokenKind.NOT and isinstance(result, Boolean):
            return Boolean(not result.data)
        if self.operator == TokenKind.SUB and isinstance(result, Integer):
            return integer(-result.data)
        if self.operator == TokenKind.SUB and isinstance(result, BigInteger):
            return BigInteger(-result.data)
        if self.operator == TokenKind.ADD and isinstance(result, INTEGERS):
            return result
        return Error(
            self.location,
            f"attempted unary {self.operator} operation with type {quote(typename(result))}",
            ErrorKind.TYPE_MISMATCH,
        )


@final
@dataclass
class AstExpressionBinary(AstExpression):
    location: Optional[SourceLocation]
    operator: TokenKind
    lhs: AstExpression
    rhs: AstExpression

    def eval(self, env: Environment) -> Union[Value, ControlFlow]:
        lhs = self.lhs.eval(env)
        if not isinstance(lhs, Value):
            return lhs
        rhs = self.rhs.eval(env)
        if not isinstance(rhs, Value):
            return rhs
        return BINARY_OPERATIONS[self.operator](self.location, lhs, rhs)


@final
@dataclass
class AstExpressionAnd(AstExpression):
    location: Optional[SourceLocation]
    lhs: AstExpression
    rhs: AstExpression

    def eval(self, env: Environment) -> Union[Value, ControlFlow]:
        lhs = self.lhs.eval(env)
        if not isinstance(lhs, Value):
            return lhs
        if not isinstance(lhs, Boolean):
            return Error(
                self.location,
                f"attempted && operation with type {quote(typename(lhs))}",
                ErrorKind.TYPE_MISMATCH,
            )
        if not lhs.data:
            return Boolean(False)  # short circuit
        rhs = self.rhs.eval(env)
        if not isinstance(rhs, Value):
            return rhs
        if not isinstance(rhs, Boolean):
            return mismatch(self.location, str(TokenKind.AND), lhs, rhs)
        return Boolean(rhs.data)


@final
@dataclass
class AstExpressionOr(AstExpression):
    location: Optional[SourceLocation]
    lhs: AstExpression
    rhs: AstExpression

    def eval(self, env: Environment) -> Union[Value, ControlFlow]:
        lhs = self.lhs.eval(env)
        if not isinstance(lhs, Value):
            return lhs
        if not isinstance(lhs, Boolean):
            return Error(
                self.location,
                f"attempted || operation with type {quote(typename(lhs))}",
                ErrorKind.TYPE_MISMATCH,
            )
        if lhs.data:
            return Boolean(True)  # short circuit
        rhs = self.rhs.eval(env)
        if not isinstance(rhs, Value):
            return rhs
        if not isinstance(rhs, Boolean):
            return mismatch(self.location, str(TokenKind.OR), lhs, rhs)
        return Boolean(rhs.data)


@final
@dataclass
class AstExpressionFunctionCall(AstExpression):
    location: Optional[SourceLocation]
    function: AstExpression
    arguments: list[AstExpression]

    def eval(self, env: Environment) -> Union[Value, ControlFlow]:
        this: Optional[Instance] = None
        receiver: Optional[Value] = None
        function: Value
        if isinstance(self.function, AstExpressionAccessDot):
            # Special case when dot access is used for a function call. Struct
            # methods are called with `this` bound to the instance, and the
            # methods of builtin types receive the value as their first
            # argument.
            store = self.function.store.eval(env)
            if not isinstance(store, Value):
                return store
            name = self.function.field.name
            if isinstance(store, Instance):
                if name in store.fields:
                    function = store.fields[name]
                elif name in store.struct.methods:
                    function = store.struct.methods[name]
                    this = store
                else:
                    return Error(
                        self.location,
                        f"struct {quote(store.struct.name)} has no method {quote(name)}",
                        ErrorKind.UNDEFINED_METHOD,
                    )
            else:
                assert env.interpreter is not None
                method = env.interpreter.lookup_method(store, name)
                if method is None:
                    return Error(
                        self.location,
                        f"value of type {quote(typename(store))} has no method {quote(name)}",
                        ErrorKind.UNDEFINED_METHOD,
                    )
                function = method
                receiver = store
        else:
            result = self.function.eval(env)
            if not isinstance(result, Value):
                return result
            function = result
        if not isinstance(function, (Function, Builtin)):
            return Error(
                self.location,
                f"attempted to call non-function type {quote(typename(function))}",
                ErrorKind.NOT_CALLABLE,
            )

        arguments: list[Value] = list()
        if receiver is not None:
            arguments.append(receiver)
        for argument in self.arguments:
            result = argument.eval(env)
            if not isinstance(result, Value):
                return result
            arguments.append(result)
        return call(self.location, function, arguments, this)


@final
@dataclass
class AstExpressionAccessIndex(AstExpression):
    location: Optional[SourceLocation]
    store: AstExpression
    field: AstExpression

    def eval(self, env: Environment) -> Union[Value, ControlFlow]:
        store = self.store.eval(env)
        if not isinstance(store, Value):
            return store
        field = self.field.eval(env)
        if not isinstance(field, Value):
            return field
        return index_get(self.location, store, field)


@final
@dataclass
class AstExpressionAccessDot(AstExpression):
    location: Optional[SourceLocation]
    store: AstExpression
    field: AstIdentifier

    def eval(self, env: Environment) -> Union[Value, ControlFlow]:
        store = self.store.eval(env)
        if not isinstance(store, Value):
            return store
        return field_get(self.location, store, self.field.name)


@final
@dataclass
class AstExpressionAssignment(AstExpression):
    location: Optional[SourceLocation]
    operator: Optional[TokenKind]  # None for plain `=` assignment
    target: AstExpression
    expression: AstExpression

    def _combine(
        self, current: Callable[[], Union[Value, Error]], rhs: Value
    ) -> Union[Value, Error]:
        # The current value of the target is only read for compound
        # assignment, e.g. `x += 1`.
        if self.operator is None:
            return rhs
        lhs = current()
        if isinstance(lhs, Error):
            return lhs
        return BINARY_OPERATIONS[self.operator](self.location, lhs, rhs)

    def eval(self, env: Environment) -> Union[Value, ControlFlow]:
        target = self.target
        if isinstance(target, AstExpressionIdentifier):
            current = env.get(target.name)
            if current is None:
                return Error(
                    self.location,
                    f"undefined variable {quote(target.name)}",
                    ErrorKind.UNDEFINED_VARIABLE,
                )
            rhs = self.expression.eval(env)
            if not isinstance(rhs, Value):
                return rhs
            value = self._combine(lambda: current, rhs)
            if isinstance(value, Error):
                return value
            env.set(target.name, value)
            return value

        if isinstance(target, AstExpressionAccessIndex):
            store = target.store.eval(env)
            if not isinstance(store, Value):
                return store
            index = target.field.eval(env)
            if not isinstance(index, Value):
                return index
            rhs = self.expression.eval(env)
            if not isinstance(rhs, Value):
                return rhs
            value = self._combine(lambda: index_get(self.location, store, index), rhs)
            if isinstance(value, Error):
                return value
            error = index_set(self.location, store, index, value)
            return error if error is not None else value

        if isinstance(target, AstExpressionAccessDot):
            store = target.store.eval(env)
            if not isinstance(store, Value):
                return store
            name = target.field.name
            rhs = self.expression.eval(env)
            if not isinstance(rhs, Value):
                return rhs
            value = self._combine(lambda: field_get(self.location, store, name), rhs)
            if isinstance(value, Error):
                return value
            error = field_set(self.location, store, name, value)
            return error if error is not None else value

        return Error(
            self.location, "attempted assignment to non-lvalue", ErrorKind.INVALID_OPERATION
        )


@final
@dataclass
class AstConditional:
    location: Optional[SourceLocation]
    condition: AstExpression
    body: AstBlock

    def exec(self, env: Environment) -> Tuple[Optional[Union[Value, ControlFlow]], bool]:
        test = evaluate_condition(self.location, self.condition, env)
        if not isinstance(test, bool):
            return (test, False)
        if test:
            return (self.body.eval(env), True)
        return (None, False)


@final
@dataclass
class AstExpressionIf(AstExpression):
    location: Optional[SourceLocation]
    conditionals: list[AstConditional]
    else_block: Optional[AstBlock]

    def eval(self, env: Environment) -> Union[Value, ControlFlow]:
        for conditional in self.conditionals:
            (result, executed) = conditional.exec(env)
            if result is not None:
                return result
        if self.else_block is not None:
            return self.else_block.eval(env)
        return Null()


@final
@dataclass
class AstExpressionWhile(AstExpression):
    location: Optional[SourceLocation]
    condition: AstExpression
    block: AstBlock

    def eval(self, env: Environment) -> Union[Value, ControlFlow]:
        while True:
            test = evaluate_condition(self.location, self.condition, env)
            if not isinstance(test, bool):
                return test
            if not test:
                break
            result = self.block.eval(env)
            if isinstance(result, Break):
                break
            if isinstance(result, Continue):
                continue
            if isinstance(result, (Return, Error)):
                return result
        return Null()


@final
@dataclass
class AstExpressionFor(AstExpression):
    location: Optional[SourceLocation]
    identifier: AstIdentifier
    collection: AstExpression
    block: AstBlock

    def eval(self, env: Environment) -> Union[Value, ControlFlow]:
        collection = self.collection.eval(env)
        if not isinstance(collection, Value):
            return collection
        # Iterate over a snapshot of the collection in order to allow
        # modification of the collection during iteration.
        elements: list[Value]
        if isinstance(collection, Array):
            elements = list(collection.data)
        elif isinstance(collection, String):
            elements = [String(c) for c in collection.data]
        elif isinstance(collection, HashMap):
            elements = list(collection.data.keys())
        else:
            return Error(
                self.location,
                f"attempted iteration over type {quote(typename(collection))}",
                ErrorKind.TYPE_MISMATCH,
            )
        for element in elements:
            loop_env = Environment(env)
            loop_env.define(self.identifier.name, element)
            result = self.block.eval(loop_env)
            if isinstance(result, Break):
                break
            if isinstance(result, Continue):
                continue
            if isinstance(result, (Return, Error)):
                return result
        return Null()


@final
@dataclass
class AstExpressionForC(AstExpression):
    location: Optional[SourceLocation]
    initializer: Optional[AstStatement]
    condition: Optional[AstExpression]
    update: Optional[AstExpression]
    block: AstBlock

    def eval(self, env: Environment) -> Union[Value, ControlFlow]:
        loop_env = Environment(env)
        if self.initializer is not None:
            initialized = self.initializer.eval(loop_env)
            if not isinstance(initialized, Value):
                return initialized
        while True:
            if self.condition is not None:
                test = evaluate_condition(self.location, self.condition, loop_env)
                if not isinstance(test, bool):
                    return test
                if not test:
                    break
            result = self.block.eval(loop_env)
            if isinstance(result, Break):
                break
            if isinstance(result, (Return, Error)):
                return result
            # Continue falls through to the update clause.
            if self.update is not None:
                updated = self.update.eval(loop_env)
                if not isinstance(updated, Value):
                    return updated
        return Null()


@final
@dataclass
class AstStatementLet(AstStatement):
    location: Optional[SourceLocation]
    identifier: AstIdentifier
    expression: AstExpression

    def eval(self, env: Environment) -> Union[Value, ControlFlow]:
        result = self.expression.eval(env)
        if not isinstance(result, Value):
            return result
        env.define(self.identifier.name, result)
        return Null()


@final
@dataclass
class AstStatementFunction(AstStatement):
    location: Optional[SourceLocation]
    identifier: AstIdentifier
    function: AstExpressionFunction

    def eval(self, env: Environment) -> Union[Value, ControlFlow]:
        env.define(self.identifier.name, Function(self.function, env))
        return Null()


@final
@dataclass
class AstStatementStruct(AstStatement):
    location: Optional[SourceLocation]
    identifier: AstIdentifier
    fields: list[Tuple[AstIdentifier, AstExpression]]
    methods: list[Tuple[AstIdentifier, AstExpressionFunction]]

    def eval(self, env: Environment) -> Union[Value, ControlFlow]:
        fields: dict[str, Value] = dict()
        for identifier, expression in self.fields:
            result = expression.eval(env)
            if not isinstance(result, Value):
                return result
            fields[identifier.name] = result
        methods = {
            identifier.name: Function(function, env)
            for identifier, function in self.methods
        }
        env.define(self.identifier.name, StructDef(self.identifier.name, fields, methods))
        return Null()


@final
@dataclass
class AstStatementReturn(AstStatement):
    location: Optional[SourceLocation]
    expression: Optional[AstExpression]

    def eval(self, env: Environment) -> Union[Value, ControlFlow]:
        if self.expression is None:
            return Return(Null())
        result = self.expression.eval(env)
        if not isinstance(result, Value):
            return result
        return Return(result)


@final
@dataclass
class AstStatementBreak(AstStatement):
    location: Optional[SourceLocation]

    def eval(self, env: Environment) -> Union[Value, ControlFlow]:
        return Break(self.location)


@final
@dataclass
class AstStatementContinue(AstStatement):
    location: Optional[SourceLocation]

    def eval(self, env: Environment) -> Union[Value, ControlFlow]:
        return Continue(self.location)


@final
@dataclass
class AstStatementImport(AstStatement):
    location: Optional[SourceLocation]
    path: list[AstIdentifier]
    names: Optional[list[AstIdentifier]]  # None imports every export

    def eval(self, env: Environment) -> Union[Value, ControlFlow]:
        assert env.interpreter is not None
        module = env.interpreter.import_module(
            self.location, [identifier.name for identifier in self.path]
        )
        if isinstance(module, Error):
            return module
        if self.names is None:
            for name, value in module.exports.items():
                env.define(name, value)
            return Null()
        for identifier in self.names:
            if identifier.name not in module.exports:
                return Error(
                    identifier.location,
                    f"module {quote(module.name)} has no export {quote(identifier.name)}",
                    ErrorKind.UNDEFINED_VARIABLE,
                )
            env.define(identifier.name, module.exports[identifier.name])
        return Null()


@final
@dataclass
class AstStatementExpression(AstStatement):
    location: Optional[SourceLocation]
    expression: AstExpression

    def eval(self, env: Environment) -> Union[Value, ControlFlow]:
        return self.expression.eval(env)


class Precedence(enum.IntEnum):
    # fmt: off
    LOWEST         = enum.auto()
    ASSIGN         = enum.auto()  # = += -= *= /= %=
    OR             = enum.auto()  # ||
    AND            = enum.auto()  # &&
    EQUALITY       = enum.auto()  # == !=
    RELATIONAL     = enum.auto()  # <= >= < >
    ADDITIVE       = enum.auto()  # + -
    MULTIPLICATIVE = enum.auto()  # * / %
    PREFIX         = enum.auto()  # +x -x !x
    POSTFIX        = enum.auto()  # foo(bar, 123) foo[42] foo.bar
    # fmt: on


def ends_with_block(expression: AstExpression) -> bool:
    """
    Statements whose expression ends with a closing brace may omit the
    terminating semicolon.
    """
    if isinstance(expression, AstExpressionAssignment):
        return ends_with_block(expression.expression)
    return isinstance(
        expression,
        (
            AstExpressionIf,
            AstExpressionWhile,
            AstExpressionFor,
            AstExpressionForC,
            AstExpressionFunction,
        ),
    )


class Parser:
    ParseNud = Callable[["Parser"], AstExpression]
    ParseLed = Callable[["Parser", AstExpression], AstExpression]

    PRECEDENCES: dict[TokenKind, Precedence] = {
        # fmt: off
        TokenKind.ASSIGN:     Precedence.ASSIGN,
        TokenKind.ADD_ASSIGN: Precedence.ASSIGN,
        TokenKind.SUB_ASSIGN: Precedence.ASSIGN,
        TokenKind.MUL_ASSIGN: Precedence.ASSIGN,
        TokenKind.DIV_ASSIGN: Precedence.ASSIGN,
        TokenKind.REM_ASSIGN: Precedence.ASSIGN,
        TokenKind.OR:         Precedence.OR,
        TokenKind.AND:        Precedence.AND,
        TokenKind.EQ:         Precedence.EQUALITY,
        TokenKind.NE:         Precedence.EQUALITY,
        TokenKind.LE:         Precedence.RELATIONAL,
        TokenKind.GE:         Precedence.RELATIONAL,
        TokenKind.LT:         Precedence.RELATIONAL,
        TokenKind.GT:         Precedence.RELATIONAL,
        TokenKind.ADD:        Precedence.ADDITIVE,
        TokenKind.SUB:        Precedence.ADDITIVE,
        TokenKind.MUL:        Precedence.MULTIPLICATIVE,
        TokenKind.DIV:        Precedence.MULTIPLICATIVE,
        TokenKind.REM:        Precedence.MULTIPLICATIVE,
        TokenKind.LPAREN:     Precedence.POSTFIX,
        TokenKind.LBRACKET:   Precedence.POSTFIX,
        TokenKind.DOT:        Precedence.POSTFIX,
        # fmt: on
    }

    def __init__(self, lexer: Lexer):
        self.lexer: Lexer = lexer
        self.lookahead: list[Token] = list()
        self.current_token: Token = Token(TokenKind.EOF, "DEFAULT CURRENT TOKEN")

        self._advance_token()

        self.parse_nud_functions: dict[TokenKind, Parser.ParseNud] = dict()
        self.parse_led_functions: dict[TokenKind, Parser.ParseLed] = dict()

        self._register_nud(TokenKind.IDENTIFIER, Parser.parse_expression_identifier)
        self._register_nud(TokenKind.NULL, Parser.parse_expression_null)
        self._register_nud(TokenKind.TRUE, Parser.parse_expression_boolean)
        self._register_nud(TokenKind.FALSE, Parser.parse_expression_boolean)
        self._register_nud(TokenKind.INTEGER, Parser.parse_expression_integer)
        self._register_nud(TokenKind.STRING, Parser.parse_expression_string)
        self._register_nud(TokenKind.THIS, Parser.parse_expression_this)
        self._register_nud(TokenKind.LBRACKET, Parser.parse_expression_array)
        self._register_nud(TokenKind.LBRACE, Parser.parse_expression_hashmap)
        self._register_nud(TokenKind.FN, Parser.parse_expression_function)
        self._register_nud(TokenKind.IF, Parser.parse_expression_if)
        self._register_nud(TokenKind.WHILE, Parser.parse_expression_while)
        self._register_nud(TokenKind.FOR, Parser.parse_expression_for)
        self._register_nud(TokenKind.LPAREN, Parser.parse_expression_grouped)
        self._register_nud(TokenKind.ADD, Parser.parse_expression_unary)
        self._register_nud(TokenKind.SUB, Parser.parse_expression_unary)
        self._register_nud(TokenKind.NOT, Parser.parse_expression_unary)

        for kind in COMPOUND_ASSIGNMENTS:
            self._register_led(kind, Parser.parse_expression_assignment)
        self._register_led(TokenKind.AND, Parser.parse_expression_and)
        self._register_led(TokenKind.OR, Parser.parse_expression_or)
        for kind in BINARY_OPERATIONS:
            self._register_led(kind, Parser.parse_expression_binary)
        self._register_led(TokenKind.LPAREN, Parser.parse_expression_function_call)
        self._register_led(TokenKind.LBRACKET, Parser.parse_expression_access_index)
        self._register_led(TokenKind.DOT, Parser.parse_expression_access_dot)

    def _register_nud(self, kind: TokenKind, parse: "Parser.ParseNud") -> None:
        self.parse_nud_functions[kind] = parse

    def _register_led(self, kind: TokenKind, parse: "Parser.ParseLed") -> None:
        self.parse_led_functions[kind] = parse

    def _advance_token(self) -> Token:
        current_token = self.current_token
        if len(self.lookahead) != 0:
            self.current_token = self.lookahead.pop(0)
        else:
            self.current_token = self.lexer.next_token()
        return current_token

    def _peek(self, n: int = 1) -> Token:
        """
        Token n positions after the current token.
        """
        while len(self.lookahead) < n:
            if len(self.lookahead) != 0 and self.lookahead[-1].kind == TokenKind.EOF:
                return self.lookahead[-1]
            if len(self.lookahead) == 0 and self.current_token.kind == TokenKind.EOF:
                return self.current_token
            self.lookahead.append(self.lexer.next_token())
        return self.lookahead[n - 1]

    def _check_current(self, kind: TokenKind) -> bool:
        return self.current_token.kind == kind

    def _expect_current(self, kind: TokenKind) -> Token:
        current = self.current_token
        if current.kind != kind:
            raise ParseError(
                current.location, f"expected {quote(kind)}, found {quote(current)}"
            )
        self._advance_token()
        return current

    def _expect_terminator(self, expression: Optional[AstExpression] = None) -> None:
        if self._check_current(TokenKind.SEMICOLON):
            self._advance_token()
            return
        if self._check_current(TokenKind.RBRACE) or self._check_current(TokenKind.EOF):
            return
        if expression is not None and ends_with_block(expression):
            return
        self._expect_current(TokenKind.SEMICOLON)

    def parse_program(self) -> AstProgram:
        location = self.current_token.location
        statements: list[AstStatement] = list()
        while not self._check_current(TokenKind.EOF):
            statements.append(self.parse_statement())
        return AstProgram(location, statements)

    def parse_identifier(self) -> AstIdentifier:
        token = self._expect_current(TokenKind.IDENTIFIER)
        return AstIdentifier(token.location, token.literal)

    def parse_expression(
        self, precedence: Precedence = Precedence.LOWEST
    ) -> AstExpression:
        def get_precedence(kind: TokenKind) -> Precedence:
            return Parser.PRECEDENCES.get(kind, Precedence.LOWEST)

        parse_nud = self.parse_nud_functions.get(self.current_token.kind)
        if parse_nud is None:
            raise ParseError(
                self.current_token.location,
                f"expected expression, found {quote(self.current_token)}",
            )
        expression = parse_nud(self)
        while precedence < get_precedence(self.current_token.kind):
            parse_led = self.parse_led_functions.get(self.current_token.kind, None)
            if parse_led is None:
                return expression
            expression = parse_led(self, expression)
        return expression

    def parse_expression_identifier(self) -> AstExpression:
        # Struct literal: an identifier immediately followed by a brace that is
        # either empty or opens a `field: value` list.
        if self._peek(1).kind == TokenKind.LBRACE and (
            self._peek(2).kind == TokenKind.RBRACE
            or (
                self._peek(2).kind == TokenKind.IDENTIFIER
                and self._peek(3).kind == TokenKind.COLON
            )
        ):
            return self.parse_expression_struct_literal()
        token = self._expect_current(TokenKind.IDENTIFIER)
        return AstExpressionIdentifier(token.location, token.literal)

    def parse_expression_struct_literal(self) -> AstExpressionStructLiteral:
        name = self.parse_identifier()
        self._expect_current(TokenKind.LBRACE)
        fields: list[Tuple[AstIdentifier, AstExpression]] = list()
        while not self._check_current(TokenKind.RBRACE):
            if len(fields) != 0:
                self._expect_current(TokenKind.COMMA)
            if self._check_current(TokenKind.RBRACE):
                break
            identifier = self.parse_identifier()
            self._expect_current(TokenKind.COLON)
            fields.append((identifier, self.parse_expression()))
        self._expect_current(TokenKind.RBRACE)
        return AstExpressionStructLiteral(name.location, name, fields)

    def parse_expression_null(self) -> AstExpressionNull:
        location = self._expect_current(TokenKind.NULL).location
        return AstExpressionNull(location)

    def parse_expression_boolean(self) -> AstExpressionBoolean:
        if self._check_current(TokenKind.TRUE):
            location = self._expect_current(TokenKind.TRUE).location
            return AstExpressionBoolean(location, Boolean(True))
        if self._check_current(TokenKind.FALSE):
            location = self._expect_current(TokenKind.FALSE).location
            return AstExpressionBoolean(location, Boolean(False))
        raise ParseError(
            self.current_token.location,
            f"expected boolean, found {quote(self.current_token)}",
        )

    def parse_expression_integer(self) -> AstExpressionInteger:
        token = self._expect_current(TokenKind.INTEGER)
        assert token.number is not None
        return AstExpressionInteger(token.location, integer(token.number))

    def parse_expression_string(self) -> AstExpressionString:
        token = self._expect_current(TokenKind.STRING)
        assert token.string is not None
        return AstExpressionString(token.location, String(token.string))

    def parse_expression_this(self) -> AstExpressionThis:
        location = self._expect_current(TokenKind.THIS).location
        return AstExpressionThis(location)

    def parse_expression_array(self) -> AstExpressionArray:
        location = self._expect_current(TokenKind.LBRACKET).location
        elements: list[AstExpression] = list()
        while not self._check_current(TokenKind.RBRACKET):
            if len(elements) != 0:
                self._expect_current(TokenKind.COMMA)
            if self._check_current(TokenKind.RBRACKET):
                break
            elements.append(self.parse_expression())
        self._expect_current(TokenKind.RBRACKET)
        return AstExpressionArray(location, elements)

    def parse_expression_hashmap(self) -> AstExpressionHashMap:
        location = self._expect_current(TokenKind.LBRACE).location
        elements: list[Tuple[AstExpression, AstExpression]] = list()
        while not self._check_current(TokenKind.RBRACE):
            if len(elements) != 0:
                self._expect_current(TokenKind.COMMA)
            if self._check_current(TokenKind.RBRACE):
                break
            key = self.parse_expression()
            self._expect_current(TokenKind.COLON)
            value = self.parse_expression()
            elements.append((key, value))
        self._expect_current(TokenKind.RBRACE)
        return AstExpressionHashMap(location, elements)

    def parse_parameters(self) -> list[AstIdentifier]:
        parameters: list[AstIdentifier] = list()
        self._expect_current(TokenKind.LPAREN)
        while not self._check_current(TokenKind.RPAREN):
            if len(parameters) != 0:
                self._expect_current(TokenKind.COMMA)
            parameters.append(self.parse_identifier())
        self._expect_current(TokenKind.RPAREN)
        for i in range(len(parameters)):
            for j in range(i + 1, len(parameters)):
                if parameters[i].name == parameters[j].name:
                    raise ParseError(
                        parameters[j].location,
                        f"duplicate function parameter {quote(parameters[i].name)}",
                    )
        return parameters

    def parse_expression_function(self) -> AstExpressionFunction:
        location = self._expect_current(TokenKind.FN).location
        parameters = self.parse_parameters()
        body = self.parse_block()
        return AstExpressionFunction(location, parameters, body)

    def parse_expression_if(self) -> AstExpressionIf:
        assert self.current_token.kind == TokenKind.IF
        location = self.current_token.location

        def parse_conditional() -> AstConditional:
            location = self._expect_current(TokenKind.IF).location
            self._expect_current(TokenKind.LPAREN)
            condition = self.parse_expression()
            self._expect_current(TokenKind.RPAREN)
            body = self.parse_block()
            return AstConditional(location, condition, body)

        conditionals: list[AstConditional] = [parse_conditional()]
        else_block: Optional[AstBlock] = None
        while self._check_current(TokenKind.ELSE):
            self._expect_current(TokenKind.ELSE)
            if self._check_current(TokenKind.IF):
                conditionals.append(parse_conditional())
                continue
            else_block = self.parse_block()
            break

        return AstExpressionIf(location, conditionals, else_block)

    def parse_expression_while(self) -> AstExpressionWhile:
        location = self._expect_current(TokenKind.WHILE).location
        self._expect_current(TokenKind.LPAREN)
        condition = self.parse_expression()
        self._expect_current(TokenKind.RPAREN)
        block = self.parse_block()
        return AstExpressionWhile(location, condition, block)

    def parse_expression_for(self) -> Union[AstExpressionFor, AstExpressionForC]:
        location = self._expect_current(TokenKind.FOR).location
        self._expect_current(TokenKind.LPAREN)
        if self._check_current(TokenKind.IDENTIFIER) and self._peek(1).kind == TokenKind.IN:
            identifier = self.parse_identifier()
            self._expect_current(TokenKind.IN)
            collection = self.parse_expression()
            self._expect_current(TokenKind.RPAREN)
            block = self.parse_block()
            return AstExpressionFor(location, identifier, collection, block)

        initializer: Optional[AstStatement] = None
        if self._check_current(TokenKind.LET):
            initializer = self.parse_let_clause()
        elif not self._check_current(TokenKind.SEMICOLON):
            expression = self.parse_expression()
            initializer = AstStatementExpression(expression.location, expression)
        self._expect_current(TokenKind.SEMICOLON)
        condition: Optional[AstExpression] = None
        if not self._check_current(TokenKind.SEMICOLON):
            condition = self.parse_expression()
        self._expect_current(TokenKind.SEMICOLON)
        update: Optional[AstExpression] = None
        if not self._check_current(TokenKind.RPAREN):
            update = self.parse_expression()
        self._expect_current(TokenKind.RPAREN)
        block = self.parse_block()
        return AstExpressionForC(location, initializer, condition, update, block)

    def parse_expression_grouped(self) -> AstExpression:
        self._expect_current(TokenKind.LPAREN)
        expression = self.parse_expression()
        self._expect_current(TokenKind.RPAREN)
        return expression

    def parse_expression_unary(self) -> AstExpressionUnary:
        token = self._advance_token()
        expression = self.parse_expression(Precedence.PREFIX)
        return AstExpressionUnary(token.location, token.kind, expression)

    def parse_expression_assignment(
        self, lhs: AstExpression
    ) -> AstExpressionAssignment:
        token = self._advance_token()
        if not isinstance(
            lhs,
            (AstExpressionIdentifier, AstExpressionAccessIndex, AstExpressionAccessDot),
        ):
            raise ParseError(token.location, "invalid assignment target")
        # Right associative: `a = b = c` assigns `c` to `b` then to `a`.
        rhs = self.parse_expression(Precedence.LOWEST)
        if isinstance(lhs, AstExpressionIdentifier) and isinstance(
            rhs, AstExpressionFunction
        ):
            rhs.name = rhs.name or lhs.name
        return AstExpressionAssignment(
            token.location, COMPOUND_ASSIGNMENTS[token.kind], lhs, rhs
        )

    def parse_expression_and(self, lhs: AstExpression) -> AstExpressionAnd:
        location = self._expect_current(TokenKind.AND).location
        rhs = self.parse_expression(Parser.PRECEDENCES[TokenKind.AND])
        return AstExpressionAnd(location, lhs, rhs)

    def parse_expression_or(self, lhs: AstExpression) -> AstExpressionOr:
        location = self._expect_current(TokenKind.OR).location
        rhs = self.parse_expression(Parser.PRECEDENCES[TokenKind.OR])
        return AstExpressionOr(location, lhs, rhs)

    def parse_expression_binary(self, lhs: AstExpression) -> AstExpressionBinary:
        token = self._advance_token()
        rhs = self.parse_expression(Parser.PRECEDENCES[token.kind])
        return AstExpressionBinary(token.location, token.kind, lhs, rhs)

    def parse_expression_function_call(
        self, lhs: AstExpression
    ) -> AstExpressionFunctionCall:
        location = self._expect_current(TokenKind.LPAREN).location
        arguments: list[AstExpression] = list()
        while not self._check_current(TokenKind.RPAREN):
            if len(arguments) != 0:
                self._expect_current(TokenKind.COMMA)
            if self._check_current(TokenKind.RPAREN):
                break
            arguments.append(self.parse_expression())
        self._expect_current(TokenKind.RPAREN)
        return AstExpressionFunctionCall(location, lhs, arguments)

    def parse_expression_access_index(
        self, lhs: AstExpression
    ) -> AstExpressionAccessIndex:
        location = self._expect_current(TokenKind.LBRACKET).location
        field = self.parse_expression()
        self._expect_current(TokenKind.RBRACKET)
        return AstExpressionAccessIndex(location, lhs, field)

    def parse_expression_access_dot(self, lhs: AstExpression) -> AstExpressionAccessDot:
        location = self._expect_current(TokenKind.DOT).location
        field = self.parse_identifier()
        return AstExpressionAccessDot(location, lhs, field)

    def parse_block(self) -> AstBlock:
        location = self._expect_current(TokenKind.LBRACE).location
        statements: list[AstStatement] = list()
        while not self._check_current(TokenKind.RBRACE):
            if self._check_current(TokenKind.EOF):
                raise ParseError(
                    self.current_token.location,
                    f"expected {quote(TokenKind.RBRACE)}, found {quote(self.current_token)}",
                )
            statements.append(self.parse_statement())
        self._expect_current(TokenKind.RBRACE)
        return AstBlock(location, statements)

    def parse_statement(self) -> AstStatement:
        if self._check_current(TokenKind.LET):
            return self.parse_statement_let()
        if self._check_current(TokenKind.FN) and self._peek(1).kind == TokenKind.IDENTIFIER:
            return self.parse_statement_function()
        if self._check_current(TokenKind.STRUCT):
            return self.parse_statement_struct()
        if self._check_current(TokenKind.RETURN):
            return self.parse_statement_return()
        if self._check_current(TokenKind.BREAK):
            return self.parse_statement_break()
        if self._check_current(TokenKind.CONTINUE):
            return self.parse_statement_continue()
        if self._check_current(TokenKind.IMPORT):
            return self.parse_statement_import()
        return self.parse_statement_expression()

    def parse_let_clause(self) -> AstStatementLet:
        location = self._expect_current(TokenKind.LET).location
        identifier = self.parse_identifier()
        self._expect_current(TokenKind.ASSIGN)
        expression = self.parse_expression()
        if isinstance(expression, AstExpressionFunction):
            expression.name = identifier.name
        return AstStatementLet(location, identifier, expression)

    def parse_statement_let(self) -> AstStatementLet:
        statement = self.parse_let_clause()
        self._expect_terminator(statement.expression)
        return statement

    def parse_statement_function(self) -> AstStatementFunction:
        location = self._expect_current(TokenKind.FN).location
        identifier = self.parse_identifier()
        parameters = self.parse_parameters()
        body = self.parse_block()
        function = AstExpressionFunction(location, parameters, body, identifier.name)
        if self._check_current(TokenKind.SEMICOLON):
            self._advance_token()
        return AstStatementFunction(location, identifier, function)

    def parse_statement_struct(self) -> AstStatementStruct:
        location = self._expect_current(TokenKind.STRUCT).location
        identifier = self.parse_identifier()
        self._expect_current(TokenKind.LBRACE)
        fields: list[Tuple[AstIdentifier, AstExpression]] = list()
        methods: list[Tuple[AstIdentifier, AstExpressionFunction]] = list()
        names: set[str] = set()
        while not self._check_current(TokenKind.RBRACE):
            if len(names) != 0:
                self._expect_current(TokenKind.COMMA)
            if self._check_current(TokenKind.RBRACE):
                break
            member = self.parse_identifier()
            if member.name in names:
                raise ParseError(
                    member.location,
                    f"duplicate struct member {quote(member.name)}",
                )
            names.add(member.name)
            self._expect_current(TokenKind.COLON)
            expression = self.parse_expression()
            if isinstance(expression, AstExpressionFunction):
                expression.name = f"{identifier.name}.{member.name}"
                methods.append((member, expression))
            else:
                fields.append((member, expression))
        self._expect_current(TokenKind.RBRACE)
        if self._check_current(TokenKind.SEMICOLON):
            self._advance_token()
        return AstStatementStruct(location, identifier, fields, methods)

    def parse_statement_return(self) -> AstStatementReturn:
        location = self._expect_current(TokenKind.RETURN).location
        expression: Optional[AstExpression] = None
        if not (
            self._check_current(TokenKind.SEMICOLON)
            or self._check_current(TokenKind.RBRACE)
            or self._check_current(TokenKind.EOF)
        ):
            expression = self.parse_expression()
        self._expect_terminator(expression)
        return AstStatementReturn(location, expression)

    def parse_statement_break(self) -> AstStatementBreak:
        location = self._expect_current(TokenKind.BREAK).location
        self._expect_terminator()
        return AstStatementBreak(location)

    def parse_statement_continue(self) -> AstStatementContinue:
        location = self._expect_current(TokenKind.CONTINUE).location
        self._expect_terminator()
        return AstStatementContinue(location)

    def parse_statement_import(self) -> AstStatementImport:
        location = self._expect_current(TokenKind.IMPORT).location
        path: list[AstIdentifier] = [self.parse_identifier()]
        names: Optional[list[AstIdentifier]] = None
        while self._check_current(TokenKind.DOT):
            self._expect_current(TokenKind.DOT)
            if self._check_current(TokenKind.LBRACE):
                self._expect_current(TokenKind.LBRACE)
                names = list()
                while not self._check_current(TokenKind.RBRACE):
                    if len(names) != 0:
                        self._expect_current(TokenKind.COMMA)
                    if self._check_current(TokenKind.RBRACE):
                        break
                    names.append(self.parse_identifier())
                self._expect_current(TokenKind.RBRACE)
                break
            path.append(self.parse_identifier())
        self._expect_terminator()
        return AstStatementImport(location, path, names)

    def parse_statement_expression(self) -> AstStatementExpression:
        if self.current_token.kind in (TokenKind.IF, TokenKind.WHILE, TokenKind.FOR):
            # Control flow in statement position ends at its closing brace.
            expression = self.parse_nud_functions[self.current_token.kind](self)
        else:
            expression = self.parse_expression()
        self._expect_terminator(expression)
        return AstStatementExpression(expression.location, expression)


def call(
    location: Optional[SourceLocation],
    function: Union[Function, Builtin],
    arguments: list[Value],
    this: Optional[Instance] = None,
) -> Union[Value, Error]:
    if isinstance(function, Builtin):
        produced = function.call(arguments)
        if isinstance(produced, Error):
            if produced.location is None:
                produced.location = location
            produced.trace.append(Error.TraceElement(location, function))
        return produced
    assert isinstance(function, Function)
    if len(arguments) != len(function.ast.parameters):
        return Error(
            location,
            f"invalid function argument count (expected {len(function.ast.parameters)}, received {len(arguments)})",
            ErrorKind.WRONG_ARGUMENT_COUNT,
        )
    env = Environment(function.env)
    if this is not None:
        env.define(str(TokenKind.THIS), this)
    for i in range(len(function.ast.parameters)):
        env.define(function.ast.parameters[i].name, arguments[i])
    try:
        result = function.ast.body.eval(env)
    except RecursionError:
        result = Error(
            location, "maximum recursion depth exceeded", ErrorKind.RECURSION_LIMIT
        )
    if isinstance(result, Return):
        return result.value
    if isinstance(result, Break):
        return Error(
            result.location,
            "attempted to break outside of a loop",
            ErrorKind.INVALID_OPERATION,
        )
    if isinstance(result, Continue):
        return Error(
            result.location,
            "attempted to continue outside of a loop",
            ErrorKind.INVALID_OPERATION,
        )
    if isinstance(result, Error):
        result.trace.append(Error.TraceElement(location, function))
        return result
    return result


# @builtin("string::split", [String, String])
# def builtin_string_split(string: String, separator: String) -> Value: ...
#
# Builtins declared without an argument list receive the builtin instance and
# the raw argument list, and are responsible for their own validation.
def builtin(nameof: str, args: Optional[list] = None):
    def decorator(func: Callable) -> Type[Builtin]:
        class GeneratedBuiltin(Builtin):
            name = nameof

            def function(self, arguments: list[Value]) -> Union[Value, Error, None]:
                if args is None:
                    return func(self, arguments)
                self.expect_argument_count(arguments, len(args), len(args))
                processed = [
                    self.typed_argument(arguments, i, arg_type)
                    for i, arg_type in enumerate(args)
                ]
                return func(*processed)

        GeneratedBuiltin.__name__ = f"Builtin_{func.__name__}"
        return GeneratedBuiltin

    return decorator


SEQUENCES = (String, Array, HashMap)


def expect_nonempty(array: Array, operation: str) -> None:
    if len(array.data) == 0:
        raise BuiltinError(
            f"attempted {operation} of empty array", ErrorKind.INDEX_OUT_OF_BOUNDS
        )


def expect_hashable(key: Value) -> Value:
    if not hashable(key):
        raise BuiltinError(f"value of type {quote(typename(key))} is not hashable")
    return key


@builtin("print")
def builtin_print(self: Builtin, arguments: list[Value]) -> None:
    self.expect_argument_count(arguments, 1, sys.maxsize)
    print("".join([display(x) for x in arguments]), end="")


@builtin("println")
def builtin_println(self: Builtin, arguments: list[Value]) -> None:
    self.expect_argument_count(arguments, 1, sys.maxsize)
    print("".join([display(x) for x in arguments]), end="\n")


@builtin("input")
def builtin_input(self: Builtin, arguments: list[Value]) -> Value:
    self.expect_argument_count(arguments, 0, 1)
    if len(arguments) == 1:
        prompt = self.typed_argument(arguments, 0, String)
        print(prompt.data, end="", flush=True)
    line = sys.stdin.readline()
    if len(line) == 0:
        return Null()
    if line.endswith("\n"):
        line = line[:-1]
    if line.endswith("\r"):
        line = line[:-1]
    return String(line)


@builtin("type", [Value])
def builtin_type(value: Value) -> Value:
    return String(typename(value))


def sequence_len(value: Union[String, Array, HashMap]) -> Value:
    return Integer(len(value.data))


def sequence_is_empty(value: Union[String, Array, HashMap]) -> Value:
    return Boolean(len(value.data) == 0)


builtin_len = builtin("len", [SEQUENCES])(sequence_len)
builtin_is_empty = builtin("is_empty", [SEQUENCES])(sequence_is_empty)


def array_head(array: Array) -> Value:
    expect_nonempty(array, "head")
    return array.data[0]


def array_tail(array: Array) -> Value:
    expect_nonempty(array, "tail")
    return Array(array.data[1:])


def array_push(array: Array, value: Value) -> Value:
    array.data.append(value)
    return array


builtin_head = builtin("head", [Array])(array_head)
builtin_tail = builtin("tail", [Array])(array_tail)
builtin_push = builtin("push", [Array, Value])(array_push)


@builtin("cons", [Value, Array])
def builtin_cons(value: Value, array: Array) -> Value:
    return Array([value] + array.data)


def hashmap_keys(map: HashMap) -> Value:
    return Array(list(map.data.keys()))


def hashmap_values(map: HashMap) -> Value:
    return Array(list(map.data.values()))


def hashmap_clear(map: HashMap) -> None:
    map.data.clear()


builtin_keys = builtin("keys", [HashMap])(hashmap_keys)
builtin_values = builtin("values", [HashMap])(hashmap_values)
builtin_clear = builtin("clear", [HashMap])(hashmap_clear)


def string_split(string: String, separator: String) -> Value:
    if len(separator.data) == 0:
        return Array([String(c) for c in string.data])
    return Array([String(x) for x in string.data.split(separator.data)])


def string_replace(string: String, old: String, new: String) -> Value:
    return String(string.data.replace(old.data, new.data))


def string_trim(string: String) -> Value:
    return String(string.data.strip())


def collection_contains(collection: Union[String, Array], item: Value) -> Value:
    if isinstance(collection, String):
        if not isinstance(item, String):
            raise BuiltinError(
                f"attempted to search string for type {quote(typename(item))}"
            )
        return Boolean(item.data in collection.data)
    return Boolean(any(element == item for element in collection.data))


builtin_split = builtin("split", [String, String])(string_split)
builtin_replace = builtin("replace", [String, String, String])(string_replace)
builtin_trim = builtin("trim", [String])(string_trim)
builtin_contains = builtin("contains", [(String, Array), Value])(collection_contains)


@builtin("slice")
def builtin_slice(self: Builtin, arguments: list[Value]) -> Value:
    self.expect_argument_count(arguments, 2, 3)
    collection = self.typed_argument(arguments, 0, (String, Array))
    length = len(collection.data)
    bgn = self.typed_argument(arguments, 1, INTEGERS).data
    end = length
    if len(arguments) == 3:
        end = self.typed_argument(arguments, 2, INTEGERS).data
    # Bounds are clamped to the collection, so an out of range slice is empty
    # rather than an error.
    bgn = max(0, min(bgn, length))
    end = max(bgn, min(end, length))
    if isinstance(collection, String):
        return String(collection.data[bgn:end])
    return Array(collection.data[bgn:end])


def integer_pow(base: Value, exponent: Value) -> Value:
    assert isinstance(base, INTEGERS) and isinstance(exponent, INTEGERS)
    if exponent.data < 0:
        raise BuiltinError(
            f"attempted exponentiation with negative exponent {exponent.data}",
            ErrorKind.INVALID_OPERATION,
        )
    return promote(base, exponent, base.data**exponent.data)


def integer_abs(value: Value) -> Value:
    assert isinstance(value, INTEGERS)
    return promote(value, value, abs(value.data))


def integer_min(lhs: Value, rhs: Value) -> Value:
    assert isinstance(lhs, INTEGERS) and isinstance(rhs, INTEGERS)
    return lhs if lhs.data <= rhs.data else rhs


def integer_max(lhs: Value, rhs: Value) -> Value:
    assert isinstance(lhs, INTEGERS) and isinstance(rhs, INTEGERS)
    return lhs if lhs.data >= rhs.data else rhs


def integer_to_string(value: Value) -> Value:
    return String(str(value))


builtin_pow = builtin("pow", [INTEGERS, INTEGERS])(integer_pow)
builtin_abs = builtin("abs", [INTEGERS])(integer_abs)
builtin_min = builtin("min", [INTEGERS, INTEGERS])(integer_min)
builtin_max = builtin("max", [INTEGERS, INTEGERS])(integer_max)


@builtin("fields", [(Instance, StructDef)])
def builtin_fields(value: Union[Instance, StructDef]) -> Value:
    return Array([String(name) for name in value.fields.keys()])


@builtin("name", [(Instance, StructDef)])
def builtin_name(value: Union[Instance, StructDef]) -> Value:
    if isinstance(value, Instance):
        return String(value.struct.name)
    return String(value.name)


@builtin("get_field", [Instance, String])
def builtin_get_field(instance: Instance, name: String) -> Value:
    if name.data not in instance.fields:
        raise BuiltinError(
            f"struct {quote(instance.struct.name)} has no field {quote(name.data)}",
            ErrorKind.UNDEFINED_FIELD,
        )
    return instance.fields[name.data]


@builtin("set_field", [Instance, String, Value])
def builtin_set_field(instance: Instance, name: String, value: Value) -> None:
    if name.data not in instance.fields:
        raise BuiltinError(
            f"struct {quote(instance.struct.name)} has no field {quote(name.data)}",
            ErrorKind.UNDEFINED_FIELD,
        )
    instance.fields[name.data] = value


GLOBAL_BUILTINS: Tuple[Type[Builtin], ...] = (
    builtin_print,
    builtin_println,
    builtin_input,
    builtin_type,
    builtin_len,
    builtin_is_empty,
    builtin_head,
    builtin_tail,
    builtin_cons,
    builtin_push,
    builtin_keys,
    builtin_values,
    builtin_clear,
    builtin_split,
    builtin_replace,
    builtin_trim,
    builtin_contains,
    builtin_slice,
    builtin_pow,
    builtin_abs,
    builtin_min,
    builtin_max,
    builtin_fields,
    builtin_name,
    builtin_get_field,
    builtin_set_field,
)


RE_INTEGER_TEXT = re.compile(r"^[+-]?\d+$", re.ASCII)


@builtin("string::to_int", [String])
def builtin_string_to_int(string: String) -> Value:
    text = string.data.strip()
    if RE_INTEGER_TEXT.match(text) is None:
        raise BuiltinError(
            f"cannot convert {string} to an integer", ErrorKind.INVALID_OPERATION
        )
    return integer(int(text))


@builtin("string::starts_with", [String, String])
def builtin_string_starts_with(string: String, target: String) -> Value:
    return Boolean(string.data.startswith(target.data))


@builtin("string::ends_with", [String, String])
def builtin_string_ends_with(string: String, target: String) -> Value:
    return Boolean(string.data.endswith(target.data))


@builtin("string::to_upper", [String])
def builtin_string_to_upper(string: String) -> Value:
    return String(string.data.upper())


@builtin("string::to_lower", [String])
def builtin_string_to_lower(string: String) -> Value:
    return String(string.data.lower())


@builtin("array::pop", [Array])
def builtin_array_pop(array: Array) -> Value:
    expect_nonempty(array, "pop")
    return array.data.pop()


@builtin("hashmap::get", [HashMap, Value])
def builtin_hashmap_get(map: HashMap, key: Value) -> Value:
    return map.data.get(expect_hashable(key), Null())


@builtin("hashmap::set", [HashMap, Value, Value])
def builtin_hashmap_set(map: HashMap, key: Value, value: Value) -> None:
    map.data[expect_hashable(key)] = value


@builtin("hashmap::has", [HashMap, Value])
def builtin_hashmap_has(map: HashMap, key: Value) -> Value:
    return Boolean(expect_hashable(key) in map.data)


@builtin("hashmap::remove", [HashMap, Value])
def builtin_hashmap_remove(map: HashMap, key: Value) -> Value:
    return map.data.pop(expect_hashable(key), Null())


INTEGER_METHODS: Tuple[Type[Builtin], ...] = (
    builtin("integer::to_string", [INTEGERS])(integer_to_string),
    builtin("integer::abs", [INTEGERS])(integer_abs),
    builtin("integer::pow", [INTEGERS, INTEGERS])(integer_pow),
    builtin("integer::min", [INTEGERS, INTEGERS])(integer_min),
    builtin("integer::max", [INTEGERS, INTEGERS])(integer_max),
)

# Methods are looked up by the type of the receiver, which is passed to the
# method as its first argument.
METHOD_BUILTINS: dict[Type[Value], Tuple[Type[Builtin], ...]] = {
    String: (
        builtin("string::len", [String])(sequence_len),
        builtin("string::is_empty", [String])(sequence_is_empty),
        builtin_string_to_int,
        builtin_string_starts_with,
        builtin_string_ends_with,
        builtin("string::replace", [String, String, String])(string_replace),
        builtin("string::split", [String, String])(string_split),
        builtin("string::trim", [String])(string_trim),
        builtin("string::contains", [String, String])(collection_contains),
        builtin_string_to_upper,
        builtin_string_to_lower,
    ),
    Array: (
        builtin("array::len", [Array])(sequence_len),
        builtin("array::is_empty", [Array])(sequence_is_empty),
        builtin("array::head", [Array])(array_head),
        builtin("array::tail", [Array])(array_tail),
        builtin("array::push", [Array, Value])(array_push),
        builtin_array_pop,
        builtin("array::contains", [Array, Value])(collection_contains),
    ),
    HashMap: (
        builtin("hashmap::len", [HashMap])(sequence_len),
        builtin("hashmap::is_empty", [HashMap])(sequence_is_empty),
        builtin_hashmap_get,
        builtin_hashmap_set,
        builtin_hashmap_has,
        builtin_hashmap_remove,
        builtin("hashmap::keys", [HashMap])(hashmap_keys),
        builtin("hashmap::values", [HashMap])(hashmap_values),
        builtin("hashmap::clear", [HashMap])(hashmap_clear),
    ),
    Integer: INTEGER_METHODS,
    BigInteger: INTEGER_METHODS,
}


@builtin("string::join", [Array, String])
def builtin_std_string_join(array: Array, separator: String) -> Value:
    strings: list[str] = list()
    for element in array.data:
        if not isinstance(element, String):
            raise BuiltinError(
                f"attempted to join array element of type {quote(typename(element))}"
            )
        strings.append(element.data)
    return String(separator.data.join(strings))


@builtin("string::reverse", [String])
def builtin_std_string_reverse(string: String) -> Value:
    return String(string.data[::-1])


@builtin("string::repeat", [String, INTEGERS])
def builtin_std_string_repeat(string: String, count: Value) -> Value:
    assert isinstance(count, INTEGERS)
    if count.data < 0:
        raise BuiltinError(
            f"attempted to repeat string a negative number of times ({count.data})",
            ErrorKind.INVALID_OPERATION,
        )
    return String(string.data * count.data)


@builtin("math::clamp", [INTEGERS, INTEGERS, INTEGERS])
def builtin_std_math_clamp(value: Value, lo: Value, hi: Value) -> Value:
    assert isinstance(lo, INTEGERS) and isinstance(hi, INTEGERS)
    if lo.data > hi.data:
        raise BuiltinError(
            f"invalid clamp range (lower bound {lo.data} exceeds upper bound {hi.data})",
            ErrorKind.INVALID_OPERATION,
        )
    return integer_min(integer_max(value, lo), hi)


class BuiltinStdMathRandom(Builtin):
    """
    Uniformly distributed integer within the inclusive range [lo, hi], drawn
    from the random number generator of the running interpreter.
    """

    name = "math::random"

    def __init__(self, rng: random.Random):
        self.rng = rng

    def function(self, arguments: list[Value]) -> Union[Value, Error, None]:
        self.expect_argument_count(arguments, 2, 2)
        lo = self.typed_argument(arguments, 0, INTEGERS)
        hi = self.typed_argument(arguments, 1, INTEGERS)
        assert isinstance(lo, INTEGERS) and isinstance(hi, INTEGERS)
        if lo.data > hi.data:
            raise BuiltinError(
                f"invalid random range (lower bound {lo.data} exceeds upper bound {hi.data})",
                ErrorKind.INVALID_OPERATION,
            )
        return promote(lo, hi, self.rng.randint(lo.data, hi.data))


def json_encode(value: Value):
    if isinstance(value, Null):
        return None
    if isinstance(value, Boolean):
        return value.data
    if isinstance(value, INTEGERS):
        return value.data
    if isinstance(value, String):
        return value.data
    if isinstance(value, Array):
        return list(value.data)
    if isinstance(value, HashMap):
        map = dict()
        for k, v in value.data.items():
            if not isinstance(k, String):
                raise BuiltinError(f"cannot serialize map with key {k}")
            map[k.data] = v
        return map
    if isinstance(value, Instance):
        return dict(value.fields)
    raise BuiltinError(
        f"cannot serialize value {value} of type {quote(typename(value))}"
    )


def json_decode(value: Any) -> Value:
    if value is None:
        return Null()
    if isinstance(value, bool):
        return Boolean(value)
    if isinstance(value, int):
        return integer(value)
    if isinstance(value, str):
        return String(value)
    if isinstance(value, list):
        return Array([json_decode(x) for x in value])
    if isinstance(value, dict):
        return HashMap({String(k): json_decode(v) for k, v in value.items()})
    raise BuiltinError(f"cannot deserialize type {type(value).__name__}")


@builtin("json::serialize", [Value])
def builtin_std_json_serialize(value: Value) -> Value:
    return String(json.dumps(value, default=json_encode, ensure_ascii=False))


@builtin("json::deserialize", [String])
def builtin_std_json_deserialize(text: String) -> Value:
    def parse_float(number: str):
        raise ValueError(f"non-integer number {number} is not permitted")

    def parse_constant(constant: str):
        raise ValueError(f"constant {constant} is not permitted")

    try:
        parsed = json.loads(
            text.data, parse_float=parse_float, parse_constant=parse_constant
        )
    except ValueError as e:
        raise BuiltinError(
            f"cannot deserialize string {text} ({e})", ErrorKind.INVALID_OPERATION
        )
    return json_decode(parsed)


@builtin("io::read_file", [String])
def builtin_std_io_read_file(path: String) -> Value:
    with open(path.data, "r", encoding="utf-8") as f:
        return String(f.read())


@builtin("io::write_file", [String, String])
def builtin_std_io_write_file(path: String, data: String) -> None:
    with open(path.data, "w", encoding="utf-8") as f:
        f.write(data.data)


@builtin("io::append_file", [String, String])
def builtin_std_io_append_file(path: String, data: String) -> None:
    with open(path.data, "a", encoding="utf-8") as f:
        f.write(data.data)


@builtin("io::exists", [String])
def builtin_std_io_exists(path: String) -> Value:
    return Boolean(os.path.exists(path.data))


@builtin("io::is_file", [String])
def builtin_std_io_is_file(path: String) -> Value:
    return Boolean(os.path.isfile(path.data))


@builtin("io::is_dir", [String])
def builtin_std_io_is_dir(path: String) -> Value:
    return Boolean(os.path.isdir(path.data))


@builtin("io::list_dir", [String])
def builtin_std_io_list_dir(path: String) -> Value:
    return Array([String(x) for x in sorted(os.listdir(path.data))])


@builtin("time::now", [])
def builtin_std_time_now() -> Value:
    return Integer(time.time_ns() // 1_000_000)


@builtin("time::sleep", [INTEGERS])
def builtin_std_time_sleep(milliseconds: Value) -> None:
    assert isinstance(milliseconds, INTEGERS)
    if milliseconds.data < 0:
        raise BuiltinError(
            f"attempted to sleep for a negative duration ({milliseconds.data})",
            ErrorKind.INVALID_OPERATION,
        )
    time.sleep(milliseconds.data / 1000)


@builtin("env::get", [String])
def builtin_std_env_get(name: String) -> Value:
    value = os.environ.get(name.data)
    return String(value) if value is not None else Null()


class BuiltinStdEnvArgs(Builtin):
    """
    Arguments passed to the running script, not including the script path.
    """

    name = "env::args"

    def __init__(self, argv: list[str]):
        self.argv = argv

    def function(self, arguments: list[Value]) -> Union[Value, Error, None]:
        self.expect_argument_count(arguments, 0, 0)
        return Array([String(x) for x in self.argv])


def compile_pattern(pattern: String):
    try:
        return re2.compile(pattern.data)
    except Exception as e:
        raise BuiltinError(
            f"invalid regular expression {pattern} ({e})", ErrorKind.INVALID_OPERATION
        )


@builtin("regex::is_match", [String, String])
def builtin_std_regex_is_match(pattern: String, string: String) -> Value:
    return Boolean(compile_pattern(pattern).search(string.data) is not None)


@builtin("regex::find_all", [String, String])
def builtin_std_regex_find_all(pattern: String, string: String) -> Value:
    matches = compile_pattern(pattern).finditer(string.data)
    return Array([String(match.group(0)) for match in matches])


@builtin("regex::replace", [String, String, String])
def builtin_std_regex_replace(
    pattern: String, string: String, replacement: String
) -> Value:
    return String(compile_pattern(pattern).sub(replacement.data, string.data))


STANDARD_MODULES: dict[str, Tuple[Type[Builtin], ...]] = {
    "string": (
        builtin_std_string_join,
        builtin_std_string_reverse,
        builtin_std_string_repeat,
    ),
    "math": (
        builtin("math::abs", [INTEGERS])(integer_abs),
        builtin("math::min", [INTEGERS, INTEGERS])(integer_min),
        builtin("math::max", [INTEGERS, INTEGERS])(integer_max),
        builtin("math::pow", [INTEGERS, INTEGERS])(integer_pow),
        builtin_std_math_clamp,
    ),
    "json": (
        builtin_std_json_serialize,
        builtin_std_json_deserialize,
    ),
    "io": (
        builtin_std_io_read_file,
        builtin_std_io_write_file,
        builtin_std_io_append_file,
        builtin_std_io_exists,
        builtin_std_io_is_file,
        builtin_std_io_is_dir,
        builtin_std_io_list_dir,
    ),
    "time": (
        builtin_std_time_now,
        builtin_std_time_sleep,
    ),
    "env": (builtin_std_env_get,),
    "regex": (
        builtin_std_regex_is_match,
        builtin_std_regex_find_all,
        builtin_std_regex_replace,
    ),
}


def member_name(builtin: Builtin) -> str:
    return builtin.name.split("::")[-1]


@dataclass
class Module:
    name: str
    path: Optional[Path]  # None for standard modules
    exports: dict[str, Value]


class Interpreter:
    """
    Interpreter context for a single run: the global environment holding every
    builtin, the builtin method tables, and the module cache.

    Modules are evaluated at most once per interpreter. Each module is keyed by
    its canonical path (or `std.<name>` for standard modules), and a module
    imported again while still on the import stack is an import cycle.
    """

    def __init__(
        self,
        directory: Optional[Union[str, os.PathLike]] = None,
        search_path: Optional[list[Union[str, os.PathLike]]] = None,
        argv: Optional[list[str]] = None,
    ):
        self.directory: Path = Path(directory) if directory is not None else Path.cwd()
        if search_path is None:
            GIU_PATH = os.environ.get("GIU_PATH", "")
            search_path = [x for x in GIU_PATH.split(os.pathsep) if len(x) != 0]
        self.search_path: list[Path] = [Path(x) for x in search_path]
        self.argv: list[str] = list(argv) if argv is not None else list()
        self.rng: random.Random = random.Random()
        self.evaluating: bool = False

        self.globals: Environment = Environment(interpreter=self)
        for builtin_type in GLOBAL_BUILTINS:
            builtin = builtin_type()
            self.globals.define(builtin.name, builtin)
        self.methods: dict[Type[Value], dict[str, Builtin]] = dict()
        for value_type, builtin_types in METHOD_BUILTINS.items():
            methods = self.methods.setdefault(value_type, dict())
            for builtin_type in builtin_types:
                builtin = builtin_type()
                methods[member_name(builtin)] = builtin

        self.modules: dict[str, Module] = dict()
        self.importing: list[Path] = list()
        logger.debug(
            "created interpreter (directory=%s, search_path=%s)",
            self.directory,
            [str(x) for x in self.search_path],
        )

    def environment(self) -> Environment:
        """
        Fresh top-level environment whose outer scope is the global scope.
        """
        return Environment(self.globals)

    def lookup_method(self, value: Value, name: str) -> Optional[Builtin]:
        return self.methods.get(type(value), dict()).get(name)

    def current_directory(self, location: Optional[SourceLocation] = None) -> Path:
        """
        Directory against which imports at the provided location resolve: the
        directory of the file containing the import, or for source without a
        file, the directory of the module being imported (if any) or the
        interpreter directory.
        """
        if location is not None and location.filename is not None:
            return Path(location.filename).resolve().parent
        if len(self.importing) != 0:
            return self.importing[-1].parent
        return self.directory

    def evaluate(self, function: Callable[[], Union[Value, Error]]) -> Union[Value, Error]:
        """
        Run function on the evaluation thread and wait for its result. Work
        started while this interpreter is already evaluating (e.g. importing a
        module) runs in place on the evaluation thread.
        """
        if self.evaluating:
            return function()

        results: list[Union[Value, Error]] = list()
        exceptions: list[BaseException] = list()

        def target() -> None:
            self.evaluating = True
            try:
                results.append(function())
            except RecursionError:
                results.append(
                    Error(
                        None,
                        "maximum recursion depth exceeded",
                        ErrorKind.RECURSION_LIMIT,
                    )
                )
            except BaseException as e:
                exceptions.append(e)
            finally:
                self.evaluating = False

        if sys.getrecursionlimit() < EVALUATION_RECURSION_LIMIT:
            sys.setrecursionlimit(EVALUATION_RECURSION_LIMIT)
        stack_size = threading.stack_size(EVALUATION_STACK_SIZE)
        try:
            thread = threading.Thread(target=target, name="giu", daemon=True)
            thread.start()
        finally:
            threading.stack_size(stack_size)
        thread.join()
        if len(exceptions) != 0:
            raise exceptions[0]
        return results[0]

    def eval_source(
        self,
        source: str,
        env: Optional[Environment] = None,
        filename: Optional[str] = None,
    ) -> Union[Value, Error]:
        def function() -> Union[Value, Error]:
            lexer = Lexer(source, filename)
            parser = Parser(lexer)
            program = parser.parse_program()
            return program.eval(env if env is not None else self.environment())

        return self.evaluate(function)

    def eval_file(
        self,
        path: Union[str, os.PathLike],
        env: Optional[Environment] = None,
    ) -> Union[Value, Error]:
        with open(path, "r", encoding="utf-8") as f:
            source = f.read()
        return self.eval_source(source, env, str(path))

    def run_file(self, path: Union[str, os.PathLike]) -> Union[Value, Error]:
        # The main script occupies the bottom of the import stack so that
        # relative imports resolve against its directory and a module
        # importing the main script is reported as a cycle.
        self.importing.append(Path(path).resolve())
        try:
            return self.eval_file(path)
        finally:
            self.importing.pop()

    def standard_module(
        self, location: Optional[SourceLocation], name: str
    ) -> Union[Module, Error]:
        qualified = f"std.{name}"
        if qualified in self.modules:
            logger.debug("module %s found in cache", qualified)
            return self.modules[qualified]
        if name not in STANDARD_MODULES:
            return Error(
                location,
                f"standard module {quote(qualified)} not found",
                ErrorKind.MODULE_NOT_FOUND,
            )
        exports: dict[str, Value] = dict()
        for builtin_type in STANDARD_MODULES[name]:
            builtin = builtin_type()
            exports[member_name(builtin)] = builtin
        if name == "env":
            args = BuiltinStdEnvArgs(self.argv)
            exports[member_name(args)] = args
        if name == "math":
            randint = BuiltinStdMathRandom(self.rng)
            exports[member_name(randint)] = randint
        module = Module(qualified, None, exports)
        self.modules[qualified] = module
        logger.debug("loaded standard module %s", qualified)
        return module

    def resolve_module(
        self, segments: list[str], location: Optional[SourceLocation] = None
    ) -> Optional[Path]:
        relative = Path(*segments).with_suffix(".giu")
        directories = [self.current_directory(location)] + self.search_path
        for directory in directories:
            candidate = directory / relative
            logger.debug("searching for module %s at %s", ".".join(segments), candidate)
            if candidate.is_file():
                return candidate.resolve()
        return None

    def import_module(
        self, location: Optional[SourceLocation], segments: list[str]
    ) -> Union[Module, Error]:
        name = ".".join(segments)
        if segments[0] == "std":
            if len(segments) != 2:
                return Error(
                    location,
                    f"standard module {quote(name)} not found",
                    ErrorKind.MODULE_NOT_FOUND,
                )
            return self.standard_module(location, segments[1])

        path = self.resolve_module(segments, location)
        if path is None:
            return Error(
                location, f"module {quote(name)} not found", ErrorKind.MODULE_NOT_FOUND
            )
        key = str(path)
        if key in self.modules:
            logger.debug("module %s found in cache (%s)", name, path)
            return self.modules[key]
        if path in self.importing:
            return Error(
                location,
                f"import cycle detected while importing module {quote(name)}",
                ErrorKind.IMPORT_CYCLE,
            )

        logger.debug("evaluating module %s (%s)", name, path)
        env = self.environment()
        self.importing.append(path)
        try:
            result = self.eval_file(path, env)
        except ParseError as e:
            result = Error(e.location, e.why, ErrorKind.SYNTAX)
        finally:
            self.importing.pop()
        if isinstance(result, Error):
            # Failed imports are not cached so that they may be retried.
            logger.debug("failed to import module %s: %s", name, result)
            return result

        module = Module(name, path, env.store)
        self.modules[key] = module
        logger.debug("imported module %s with %d exports", name, len(module.exports))
        return module


class Repl(code.InteractiveConsole):
    def __init__(self, interpreter: Optional[Interpreter] = None):
        super().__init__()
        self.interpreter = interpreter if interpreter is not None else Interpreter()
        self.env = self.interpreter.environment()

    def raw_input(self, prompt=""):
        line = super().raw_input(prompt)
        if line.strip() in ("exit", "quit"):
            raise EOFError()
        return line

    def runsource(self, source, filename="<input>", symbol="single"):
        lexer = Lexer(source)
        parser = Parser(lexer)
        try:
            program = parser.parse_program()
        except ParseError as e:
            if not source.endswith("\n"):
                # Assume the user has not finished entering their program, and
                # wait for an additional newline before producing an error.
                return True
            print(f"error: {e}", file=sys.stderr)
            return False
        # A valid program ending in a closing brace may be continued on the
        # next line, e.g. by the else clause of an if expression.
        if source.rstrip().endswith("}") and not source.endswith("\n"):
            return True
        result = self.interpreter.evaluate(lambda: program.eval(self.env))
        if isinstance(result, Error):
            print_error(result)
        elif not isinstance(result, Null):
            print(result)
        return False


def print_error(error: Error) -> None:
    if error.location is not None:
        print(f"[{error.location}] error: {error}", file=sys.stderr)
    else:
        print(f"error: {error}", file=sys.stderr)
    previous = None
    repeated = 0
    for element in error.trace:
        s = f"...within {element.function}"
        if element.location is not None:
            s += f" called from {element.location}"
        if s == previous:
            repeated += 1
            continue
        if repeated != 0:
            print(f"...previous line repeated {repeated} more times", file=sys.stderr)
        previous = s
        repeated = 0
        print(s, file=sys.stderr)
    if repeated != 0:
        print(f"...previous line repeated {repeated} more times", file=sys.stderr)


def print_parse_error(error: ParseError) -> None:
    if error.location is not None:
        print(f"[{error.location}] error: {error.why}", file=sys.stderr)
    else:
        print(f"error: {error.why}", file=sys.stderr)


def run(path: str, argv: Optional[list[str]] = None) -> int:
    interpreter = Interpreter(argv=argv)
    try:
        result = interpreter.run_file(path)
    except ParseError as e:
        print_parse_error(e)
        return 1
    except OSError as e:
        print(f"error: {e}", file=sys.stderr)
        return 1
    except RecursionError:
        print("error: maximum recursion depth exceeded", file=sys.stderr)
        return 1
    if isinstance(result, Error):
        print_error(result)
        return 1
    return 0


def check(path: str) -> int:
    try:
        with open(path, "r", encoding="utf-8") as f:
            source = f.read()
        Parser(Lexer(source, path)).parse_program()
    except ParseError as e:
        print_parse_error(e)
        return 1
    except OSError as e:
        print(f"error: {e}", file=sys.stderr)
        return 1
    print("check finished: no errors found")
    return 0


def repl() -> None:
    HOME = os.environ.get("GIU_HOME", Path.home())
    HISTFILE = Path(HOME) / ".giu-history"
    HISTFILE_SIZE = 4096
    if readline and os.path.exists(HISTFILE):
        readline.read_history_file(HISTFILE)
    sys.ps1 = ">> "
    sys.ps2 = ".. "
    repl = Repl()
    repl.interact(banner=f"giu {VERSION} (type `exit` or `quit` to leave)", exitmsg="")
    if readline:
        readline.set_history_length(HISTFILE_SIZE)
        readline.write_history_file(HISTFILE)


def configure_logging(verbose: bool = False) -> None:
    level = os.environ.get("GIU_LOG_LEVEL", "WARNING").upper()
    if not isinstance(logging.getLevelName(level), int):
        level = "WARNING"
    if verbose:
        level = "DEBUG"
    logging.basicConfig(
        level=level,
        format="%(levelname)s %(name)s: %(message)s",
        stream=sys.stderr,
    )


def main(argv: Optional[list[str]] = None) -> None:
    description = "The Giu Programming Language"
    parser = ArgumentParser(prog="giu", description=description)
    parser.add_argument("--version", action="version", version=f"%(prog)s {VERSION}")
    parser.add_argument(
        "-v", "--verbose", action="store_true", help="enable debug logging"
    )
    subparsers = parser.add_subparsers(dest="command")
    parser_run = subparsers.add_parser("run", help="run a source file")
    parser_run.add_argument("file", type=str)
    parser_run.add_argument("arguments", nargs=REMAINDER)
    parser_check = subparsers.add_parser("check", help="check a source file for syntax errors")
    parser_check.add_argument("file", type=str)
    args = parser.parse_args(argv)

    configure_logging(args.verbose)
    if args.command == "run":
        sys.exit(run(args.file, args.arguments))
    if args.command == "check":
        sys.exit(check(args.file))
    repl()


if __name__ == "__main__":
    main()
