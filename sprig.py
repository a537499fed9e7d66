#!/usr/bin/env python3

from abc import ABC, abstractmethod
from argparse import ArgumentParser
from dataclasses import dataclass, fields
from pathlib import Path
from reprlib import recursive_repr
from string import digits, printable, whitespace
from types import ModuleType
from typing import (
    Any,
    Callable,
    Iterable,
    Optional,
    Type,
    TypeVar,
    Union,
    final,
)
import code
import enum
import json
import logging
import math
import os
import re
import sys

readline: Optional[ModuleType]
try:
    # REPL readline support.
    import readline
except ImportError:
    readline = None

logger = logging.getLogger("sprig")


def escape(text: str) -> str:
    MAPPING = {
        "\t": "\\t",
        "\n": "\\n",
        '"': '\\"',
        "\\": "\\\\",
    }
    return "".join([MAPPING.get(c, c) for c in text])


def quote(item: Any) -> str:
    text = str(item)
    return f"`{text}`" if "`" not in text else f'"{text}"'


def pretty(text: str) -> str:
    def prettyable(c):
        return c in printable and c not in whitespace

    def prettyrepr(c):
        return c if prettyable(c) else f"{ord(c):#04x}"

    return "".join(map(prettyrepr, text))


@final
@dataclass(frozen=True)
class SourceLocation:
    filename: Optional[str]
    line: int

    def __str__(self):
        if self.filename is None:
            return f"line {self.line}"
        return f"{self.filename}, line {self.line}"


class SprigError(Exception):
    """
    Base class of every error raised while lexing, parsing, or evaluating.
    Errors are never recovered from inside the pipeline; the host decides
    whether to abort or to report and continue.
    """

    location: Optional[SourceLocation]

    def locate(self, why: str) -> str:
        if self.location is None:
            return why
        return f"[{self.location}] {why}"


@dataclass
class LexError(SprigError):
    location: Optional[SourceLocation]
    character: str

    def __str__(self):
        return self.locate(f"unexpected character {quote(pretty(self.character))}")


@dataclass
class ParseError(SprigError):
    location: Optional[SourceLocation]
    expected: str
    found: "Token"

    def __str__(self):
        return self.locate(f"expected {self.expected}, found {quote(self.found)}")


@dataclass
class UndefinedVariableError(SprigError):
    location: Optional[SourceLocation]
    name: str

    def __str__(self):
        return self.locate(f"identifier {quote(self.name)} is not defined")


@dataclass
class RuntimeTypeError(SprigError):
    location: Optional[SourceLocation]
    why: str

    def __str__(self):
        return self.locate(self.why)


@dataclass
class UncaughtControlFlowError(SprigError):
    location: Optional[SourceLocation]
    kind: str

    def __str__(self):
        return self.locate(f"attempted to {self.kind} outside of a loop")


@dataclass
class BuiltinError(SprigError):
    location: Optional[SourceLocation]
    name: str
    why: str

    def __str__(self):
        return self.locate(f"{self.name}: {self.why}")


@dataclass
class RecursionDepthError(SprigError):
    location: Optional[SourceLocation]

    def __str__(self):
        return self.locate("maximum recursion depth exceeded")


ValueType = TypeVar("ValueType", bound="Value")


class Value(ABC):
    @staticmethod
    @abstractmethod
    def typename() -> str:
        raise NotImplementedError()

    @abstractmethod
    def __eq__(self, other):
        raise NotImplementedError()

    @abstractmethod
    def __str__(self):
        raise NotImplementedError()


@final
class Undefined(Value):
    @staticmethod
    def typename() -> str:
        return "undefined"

    @staticmethod
    def new() -> "Undefined":
        return Undefined()

    def __hash__(self):
        return 0

    def __eq__(self, other):
        return type(self) is type(other)

    def __str__(self):
        return "undefined"

    def __repr__(self):
        return "Undefined()"


@final
@dataclass
class Boolean(Value):
    data: bool

    @staticmethod
    def typename() -> str:
        return "boolean"

    @staticmethod
    def new(data: bool) -> "Boolean":
        return Boolean(data)

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
class Number(Value):
    data: float

    @staticmethod
    def typename() -> str:
        return "number"

    @staticmethod
    def new(data: float) -> "Number":
        return Number(data)

    def __init__(self, data: float):
        # The sprig number type is an IEEE-754 double, so integer payloads
        # coming from the host are normalized to Python floats.
        self.data = float(data)

    def __hash__(self):
        return hash(self.data)

    def __eq__(self, other):
        if type(self) is not type(other):
            return False
        return self.data == other.data

    def __str__(self):
        if math.isnan(self.data):
            return "NaN"
        if self.data == +math.inf:
            return "Inf"
        if self.data == -math.inf:
            return "-Inf"
        if self.data.is_integer() and abs(self.data) < 1e16:
            return str(int(self.data))
        return repr(self.data)


@final
@dataclass
class String(Value):
    data: str

    @staticmethod
    def typename() -> str:
        return "string"

    @staticmethod
    def new(data: str) -> "String":
        return String(data)

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
class List(Value):
    # The underlying Python list is shared between every alias of the value.
    # Assignment never copies it, so mutation through one variable is visible
    # through all others.
    data: list[Value]

    @staticmethod
    def typename() -> str:
        return "list"

    @staticmethod
    def new(data: Optional[Iterable[Value]] = None) -> "List":
        return List(data)

    def __init__(self, data: Optional[Iterable[Value]] = None):
        if data is None:
            data = list()
        self.data = data if isinstance(data, list) else list(data)

    def __eq__(self, other):
        if type(self) is not type(other):
            return False
        if self.data is other.data:
            return True
        if len(self.data) != len(other.data):
            return False
        for i in range(len(self.data)):
            if self.data[i] != other.data[i]:
                return False
        return True

    @recursive_repr("[...]")
    def __str__(self):
        elements = ", ".join([str(x) for x in self.data])
        return f"[{elements}]"

    def __contains__(self, item) -> bool:
        return any(item == x for x in self.data)


@final
@dataclass
class Object(Value):
    # Shared between aliases, see List.
    data: dict[str, Value]

    RE_BARE_KEY = re.compile(r"[a-zA-Z_]\w*", re.ASCII)

    @staticmethod
    def typename() -> str:
        return "object"

    @staticmethod
    def new(data: Optional[dict[str, Value]] = None) -> "Object":
        return Object(data)

    def __init__(self, data: Optional[dict[str, Value]] = None):
        self.data = data if data is not None else dict()

    def __eq__(self, other):
        if type(self) is not type(other):
            return False
        if self.data is other.data:
            return True
        if len(self.data) != len(other.data):
            return False
        for k, v in self.data.items():
            if k not in other.data or other.data[k] != v:
                return False
        return True

    @recursive_repr("{...}")
    def __str__(self):
        if len(self.data) == 0:
            return "{:}"

        def key(k: str) -> str:
            bare = Object.RE_BARE_KEY.fullmatch(k) and k not in Token.KEYWORDS
            return k if bare else str(String(k))

        elements = ", ".join([f"{key(k)}: {str(v)}" for k, v in self.data.items()])
        return f"{{{elements}}}"


@final
@dataclass
class Function(Value):
    ast: "AstFunction"
    env: "Environment"
    this: Optional[Value] = None

    @staticmethod
    def typename() -> str:
        return "function"

    @staticmethod
    def new(ast: "AstFunction", env: "Environment") -> "Function":
        return Function(ast, env)

    def bind(self, this: Value) -> "Function":
        return Function(self.ast, self.env, this)

    def __hash__(self):
        return hash(id(self.ast)) + hash(id(self.env))

    def __eq__(self, other):
        if type(self) is not type(other):
            return False
        return self.ast is other.ast and self.env is other.env

    def __str__(self):
        if self.ast.location is not None:
            return f"function@[{self.ast.location}]"
        return "function"

    def __repr__(self):
        return f"Function({self})"


class Builtin(Value):
    @property
    @abstractmethod
    def name(self) -> str:
        """
        Name associated with the builtin.
        Builtin subclasses should add the builtin name as a class property.
        """
        raise NotImplementedError()

    @staticmethod
    def typename() -> str:
        return "function"

    def __hash__(self):
        return hash(type(self))

    def __eq__(self, other):
        return type(self) is type(other)

    def __str__(self):
        return f"{self.name}@builtin"

    def call(self, arguments: list[Value]) -> Value:
        try:
            result = self.function(arguments)
        except SprigError:
            raise
        except Exception as e:
            message = f"{e}"
            if len(message) == 0:
                message = f"encountered exception {type(e).__name__}"
            raise BuiltinError(None, self.name, message) from e
        # A builtin without an explicit return value produces undefined.
        return Undefined.new() if result is None else result

    @staticmethod
    def expect_argument_count(arguments: list[Value], count: int) -> None:
        if len(arguments) != count:
            raise RuntimeTypeError(
                None,
                f"invalid argument count (expected {count}, received {len(arguments)})",
            )

    @staticmethod
    def typed_argument(
        arguments: list[Value], index: int, ty: Type[ValueType]
    ) -> ValueType:
        argument = arguments[index]
        if not isinstance(argument, ty):
            raise RuntimeTypeError(
                None,
                f"expected {ty.typename()} value for argument {index + 1}, received {typename(argument)}",
            )
        return argument

    @abstractmethod
    def function(self, arguments: list[Value]) -> Optional[Value]:
        raise NotImplementedError()


def typename(value: Value) -> str:
    return value.typename()


def render(value: Value) -> str:
    """
    Text of a value as written by print: strings appear without quotes,
    every other value (including strings nested inside lists and objects)
    in its literal-like form.
    """
    if isinstance(value, String):
        return value.data
    return str(value)


def truthy(value: Value) -> bool:
    match value:
        case Undefined():
            return False
        case Boolean():
            return value.data
        case Number():
            return not (value.data == 0.0 or math.isnan(value.data))
        case String():
            return len(value.data) != 0
    return True


class TokenKind(enum.Enum):
    # Meta
    EOF = "end-of-file"
    # Identifiers and Literals
    IDENTIFIER = "identifier"
    NUMBER = "number"
    STRING = "string"
    BOOLEAN = "boolean"
    # Operators
    ADD = "+"
    SUB = "-"
    MUL = "*"
    DIV = "/"
    MOD = "%"
    EQEQ = "=="
    NOTEQ = "!="
    LESSEQ = "<="
    GREATEREQ = ">="
    LESS = "<"
    GREATER = ">"
    AND = "&"
    OR = "|"
    NOT = "!"
    EQ = "="
    # Delimiters
    COMMA = ","
    COLON = ":"
    DOT = "."
    SEMICOLON = ";"
    LPAREN = "("
    RPAREN = ")"
    LBRACE = "{"
    RBRACE = "}"
    LBRACKET = "["
    RBRACKET = "]"
    # Keywords
    RETURN = "return"
    FUNCTION = "function"
    IF = "if"
    ELSE = "else"
    WHILE = "while"
    FOR = "for"
    IN = "in"
    BREAK = "break"
    CONTINUE = "continue"
    THIS = "this"

    def __str__(self):
        return self.value


@final
@dataclass(frozen=True)
class Token:
    KEYWORDS = {
        # fmt: off
        "true":                  TokenKind.BOOLEAN,
        "false":                 TokenKind.BOOLEAN,
        str(TokenKind.RETURN):   TokenKind.RETURN,
        str(TokenKind.FUNCTION): TokenKind.FUNCTION,
        str(TokenKind.IF):       TokenKind.IF,
        str(TokenKind.ELSE):     TokenKind.ELSE,
        str(TokenKind.WHILE):    TokenKind.WHILE,
        str(TokenKind.FOR):      TokenKind.FOR,
        str(TokenKind.IN):       TokenKind.IN,
        str(TokenKind.BREAK):    TokenKind.BREAK,
        str(TokenKind.CONTINUE): TokenKind.CONTINUE,
        str(TokenKind.THIS):     TokenKind.THIS,
        # fmt: on
    }

    kind: TokenKind
    literal: str
    location: Optional[SourceLocation] = None
    value: Union[float, str, bool, None] = None

    def __str__(self):
        if self.kind == TokenKind.EOF:
            return str(TokenKind.EOF)
        return self.literal

    @staticmethod
    def lookup_identifier(identifier: str) -> TokenKind:
        return Token.KEYWORDS.get(identifier, TokenKind.IDENTIFIER)


class Lexer:
    EOF_LITERAL = ""
    RE_IDENTIFIER = re.compile(r"[a-zA-Z_]\w*", re.ASCII)
    RE_NUMBER = re.compile(r"[0-9]+", re.ASCII)

    # Two-character operators are matched before their one-character prefixes.
    OPERATORS_2 = {
        str(kind): kind
        for kind in (
            TokenKind.EQEQ,
            TokenKind.NOTEQ,
            TokenKind.LESSEQ,
            TokenKind.GREATEREQ,
        )
    }
    OPERATORS_1 = {
        str(kind): kind
        for kind in (
            TokenKind.ADD,
            TokenKind.SUB,
            TokenKind.MUL,
            TokenKind.DIV,
            TokenKind.MOD,
            TokenKind.LESS,
            TokenKind.GREATER,
            TokenKind.AND,
            TokenKind.OR,
            TokenKind.NOT,
            TokenKind.EQ,
            TokenKind.COMMA,
            TokenKind.COLON,
            TokenKind.DOT,
            TokenKind.SEMICOLON,
            TokenKind.LPAREN,
            TokenKind.RPAREN,
            TokenKind.LBRACE,
            TokenKind.RBRACE,
            TokenKind.LBRACKET,
            TokenKind.RBRACKET,
        )
    }

    def __init__(self, source: str, location: Optional[SourceLocation] = None):
        self.source: str = source
        self.position: int = 0
        # Where the source "starts" for the purpose of error locations.
        self.filename: Optional[str] = location.filename if location else None
        self.line: int = location.line if location else 1

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

    def _location(self) -> SourceLocation:
        return SourceLocation(self.filename, self.line)

    def _advance_character(self) -> None:
        if self._is_eof():
            return
        self.line += int(self.source[self.position] == "\n")
        self.position += 1

    def _skip_whitespace(self) -> None:
        while not self._is_eof() and self._current_character() in whitespace:
            self._advance_character()

    def _skip_comment(self) -> None:
        # Comments are delimited on both ends by `#`. An unterminated comment
        # runs to the end of the source.
        if self._current_character() != "#":
            return
        self._advance_character()
        while not self._is_eof() and self._current_character() != "#":
            self._advance_character()
        self._advance_character()

    def _skip_whitespace_and_comments(self) -> None:
        while not self._is_eof() and (
            self._current_character() in whitespace or self._current_character() == "#"
        ):
            self._skip_whitespace()
            self._skip_comment()

    def _new_token(
        self, kind: TokenKind, literal: str, location: SourceLocation, **kwargs
    ) -> Token:
        return Token(kind, literal, location, **kwargs)

    def _lex_keyword_or_identifier(self, location: SourceLocation) -> Token:
        assert Lexer._is_letter(self._current_character())
        match = Lexer.RE_IDENTIFIER.match(self.source, self.position)
        assert match is not None  # guaranteed by regexp
        text = match[0]
        self.position += len(text)
        kind = Token.lookup_identifier(text)
        if kind == TokenKind.BOOLEAN:
            return self._new_token(kind, text, location, value=(text == "true"))
        return self._new_token(kind, text, location)

    def _lex_number(self, location: SourceLocation) -> Token:
        assert self._current_character() in digits
        match = Lexer.RE_NUMBER.match(self.source, self.position)
        assert match is not None  # guaranteed by regexp
        text = match[0]
        self.position += len(text)
        return self._new_token(TokenKind.NUMBER, text, location, value=float(text))

    def _lex_string(self, location: SourceLocation) -> Token:
        # String contents are raw: there are no escape sequences, and the
        # literal ends at the next `"` (or at the end of the source).
        start = self.position
        self._advance_character()
        while not self._is_eof() and self._current_character() != '"':
            self._advance_character()
        string = self.source[start + 1 : self.position]
        self._advance_character()
        literal = self.source[start : self.position]
        return self._new_token(TokenKind.STRING, literal, location, value=string)

    def next_token(self) -> Token:
        self._skip_whitespace_and_comments()
        location = self._location()

        if self._is_eof():
            return self._new_token(TokenKind.EOF, Lexer.EOF_LITERAL, location)

        # Literals, Identifiers, and Keywords
        if self._current_character() == '"':
            return self._lex_string(location)
        if Lexer._is_letter(self._current_character()):
            return self._lex_keyword_or_identifier(location)
        if self._current_character() in digits:
            return self._lex_number(location)

        # Operators and Delimiters
        text = self._current_character() + self._peek_character()
        if text in Lexer.OPERATORS_2:
            self._advance_character()
            self._advance_character()
            return self._new_token(Lexer.OPERATORS_2[text], text, location)
        text = self._current_character()
        if text in Lexer.OPERATORS_1:
            self._advance_character()
            return self._new_token(Lexer.OPERATORS_1[text], text, location)

        raise LexError(location, self._current_character())


def tokenize(source: str, location: Optional[SourceLocation] = None) -> list[Token]:
    lexer = Lexer(source, location)
    tokens: list[Token] = list()
    while True:
        token = lexer.next_token()
        tokens.append(token)
        if token.kind == TokenKind.EOF:
            break
    logger.debug("lexed %d token(s)", len(tokens))
    return tokens


def detokenize(tokens: Iterable[Token]) -> str:
    """
    Reconstruct source text from the literal forms of a token sequence.
    Tokens are separated by a single space, so lexing the result produces
    the same token kinds and values.
    """
    return " ".join([t.literal for t in tokens if t.kind != TokenKind.EOF])


class AstNode:
    location: Optional[SourceLocation]


@final
@dataclass(frozen=True)
class AstProgram(AstNode):
    location: Optional[SourceLocation]
    expressions: tuple["AstExpression", ...]


@final
@dataclass(frozen=True)
class AstNumber(AstNode):
    location: Optional[SourceLocation]
    data: Number


@final
@dataclass(frozen=True)
class AstString(AstNode):
    location: Optional[SourceLocation]
    data: String


@final
@dataclass(frozen=True)
class AstBoolean(AstNode):
    location: Optional[SourceLocation]
    data: Boolean


@final
@dataclass(frozen=True)
class AstIdentifier(AstNode):
    location: Optional[SourceLocation]
    name: str


@final
@dataclass(frozen=True)
class AstThis(AstNode):
    location: Optional[SourceLocation]


@final
@dataclass(frozen=True)
class AstList(AstNode):
    location: Optional[SourceLocation]
    elements: tuple["AstExpression", ...]


@final
@dataclass(frozen=True)
class AstObject(AstNode):
    location: Optional[SourceLocation]
    elements: tuple[tuple[str, "AstExpression"], ...]


@final
@dataclass(frozen=True)
class AstIndex(AstNode):
    """
    Indexing expression. Attribute access `a.key` is indexing with a string
    literal index.
    """

    location: Optional[SourceLocation]
    collection: "AstExpression"
    index: "AstExpression"


@final
@dataclass(frozen=True)
class AstAssign(AstNode):
    location: Optional[SourceLocation]
    target: Union[AstIdentifier, AstIndex]
    value: "AstExpression"


@final
@dataclass(frozen=True)
class AstUnary(AstNode):
    location: Optional[SourceLocation]
    op: TokenKind
    operand: "AstExpression"


@final
@dataclass(frozen=True)
class AstBinary(AstNode):
    location: Optional[SourceLocation]
    op: TokenKind
    lhs: "AstExpression"
    rhs: "AstExpression"


@final
@dataclass(frozen=True)
class AstFunction(AstNode):
    location: Optional[SourceLocation]
    parameters: tuple[str, ...]
    body: "AstExpression"


@final
@dataclass(frozen=True)
class AstCall(AstNode):
    location: Optional[SourceLocation]
    callee: "AstExpression"
    arguments: tuple["AstExpression", ...]


@final
@dataclass(frozen=True)
class AstIf(AstNode):
    location: Optional[SourceLocation]
    condition: "AstExpression"
    consequent: "AstExpression"
    alternate: Optional["AstExpression"]


@final
@dataclass(frozen=True)
class AstWhile(AstNode):
    location: Optional[SourceLocation]
    condition: "AstExpression"
    body: "AstExpression"


@final
@dataclass(frozen=True)
class AstFor(AstNode):
    location: Optional[SourceLocation]
    variable: str
    sequence: "AstExpression"
    body: "AstExpression"


@final
@dataclass(frozen=True)
class AstBlock(AstNode):
    location: Optional[SourceLocation]
    expressions: tuple["AstExpression", ...]


@final
@dataclass(frozen=True)
class AstReturn(AstNode):
    location: Optional[SourceLocation]
    value: Optional["AstExpression"]


@final
@dataclass(frozen=True)
class AstBreak(AstNode):
    location: Optional[SourceLocation]
    value: Optional["AstExpression"]


@final
@dataclass(frozen=True)
class AstContinue(AstNode):
    location: Optional[SourceLocation]
    value: Optional["AstExpression"]


AstExpression = Union[
    AstNumber,
    AstString,
    AstBoolean,
    AstIdentifier,
    AstThis,
    AstList,
    AstObject,
    AstIndex,
    AstAssign,
    AstUnary,
    AstBinary,
    AstFunction,
    AstCall,
    AstIf,
    AstWhile,
    AstFor,
    AstBlock,
    AstReturn,
    AstBreak,
    AstContinue,
]


class Precedence(enum.IntEnum):
    # fmt: off
    LOWEST  = enum.auto()
    OR      = enum.auto()  # |
    AND     = enum.auto()  # &
    COMPARE = enum.auto()  # == != <= >= < >
    ADD_SUB = enum.auto()  # + -
    MUL_DIV = enum.auto()  # * / %
    PREFIX  = enum.auto()  # !x -x
    POSTFIX = enum.auto()  # foo(bar, 123) foo[42] foo.bar
    # fmt: on


class Parser:
    ParseNud = Callable[["Parser"], AstExpression]
    ParseLed = Callable[["Parser", AstExpression], AstExpression]

    PRECEDENCES: dict[TokenKind, Precedence] = {
        # fmt: off
        TokenKind.OR:        Precedence.OR,
        TokenKind.AND:       Precedence.AND,
        TokenKind.EQEQ:      Precedence.COMPARE,
        TokenKind.NOTEQ:     Precedence.COMPARE,
        TokenKind.LESSEQ:    Precedence.COMPARE,
        TokenKind.GREATEREQ: Precedence.COMPARE,
        TokenKind.LESS:      Precedence.COMPARE,
        TokenKind.GREATER:   Precedence.COMPARE,
        TokenKind.ADD:       Precedence.ADD_SUB,
        TokenKind.SUB:       Precedence.ADD_SUB,
        TokenKind.MUL:       Precedence.MUL_DIV,
        TokenKind.DIV:       Precedence.MUL_DIV,
        TokenKind.MOD:       Precedence.MUL_DIV,
        TokenKind.LPAREN:    Precedence.POSTFIX,
        TokenKind.LBRACKET:  Precedence.POSTFIX,
        TokenKind.DOT:       Precedence.POSTFIX,
        # fmt: on
    }

    # Forms that sit below the operator layers: they may start an expression,
    # but may not appear as the operand of an operator.
    CONTROL = frozenset([TokenKind.IF, TokenKind.WHILE, TokenKind.FOR])

    def __init__(self, tokens: Iterable[Token]):
        self.tokens: list[Token] = list(tokens)
        if len(self.tokens) == 0 or self.tokens[-1].kind != TokenKind.EOF:
            location = self.tokens[-1].location if len(self.tokens) else None
            self.tokens.append(Token(TokenKind.EOF, Lexer.EOF_LITERAL, location))
        self.position: int = 0
        self.current_token: Token = self.tokens[0]

        self.parse_nud_functions: dict[TokenKind, Parser.ParseNud] = dict()
        self.parse_led_functions: dict[TokenKind, Parser.ParseLed] = dict()

        self._register_nud(TokenKind.IDENTIFIER, Parser.parse_expression_identifier)
        self._register_nud(TokenKind.NUMBER, Parser.parse_expression_number)
        self._register_nud(TokenKind.STRING, Parser.parse_expression_string)
        self._register_nud(TokenKind.BOOLEAN, Parser.parse_expression_boolean)
        self._register_nud(TokenKind.THIS, Parser.parse_expression_this)
        self._register_nud(TokenKind.LBRACKET, Parser.parse_expression_list)
        self._register_nud(TokenKind.LBRACE, Parser.parse_expression_block_or_object)
        self._register_nud(TokenKind.LPAREN, Parser.parse_expression_grouped)
        self._register_nud(TokenKind.FUNCTION, Parser.parse_expression_function)
        self._register_nud(TokenKind.RETURN, Parser.parse_expression_exit)
        self._register_nud(TokenKind.BREAK, Parser.parse_expression_exit)
        self._register_nud(TokenKind.CONTINUE, Parser.parse_expression_exit)
        self._register_nud(TokenKind.NOT, Parser.parse_expression_unary)
        self._register_nud(TokenKind.SUB, Parser.parse_expression_unary)

        self._register_led(TokenKind.OR, Parser.parse_expression_binary)
        self._register_led(TokenKind.AND, Parser.parse_expression_binary)
        self._register_led(TokenKind.EQEQ, Parser.parse_expression_comparison)
        self._register_led(TokenKind.NOTEQ, Parser.parse_expression_comparison)
        self._register_led(TokenKind.LESSEQ, Parser.parse_expression_comparison)
        self._register_led(TokenKind.GREATEREQ, Parser.parse_expression_comparison)
        self._register_led(TokenKind.LESS, Parser.parse_expression_comparison)
        self._register_led(TokenKind.GREATER, Parser.parse_expression_comparison)
        self._register_led(TokenKind.ADD, Parser.parse_expression_binary)
        self._register_led(TokenKind.SUB, Parser.parse_expression_binary)
        self._register_led(TokenKind.MUL, Parser.parse_expression_binary)
        self._register_led(TokenKind.DIV, Parser.parse_expression_binary)
        self._register_led(TokenKind.MOD, Parser.parse_expression_binary)
        self._register_led(TokenKind.LPAREN, Parser.parse_expression_call)
        self._register_led(TokenKind.LBRACKET, Parser.parse_expression_index)
        self._register_led(TokenKind.DOT, Parser.parse_expression_attribute)

    def _register_nud(self, kind: TokenKind, parse: "Parser.ParseNud") -> None:
        self.parse_nud_functions[kind] = parse

    def _register_led(self, kind: TokenKind, parse: "Parser.ParseLed") -> None:
        self.parse_led_functions[kind] = parse

    def _advance_token(self) -> Token:
        current_token = self.current_token
        if self.position + 1 < len(self.tokens):
            self.position += 1
        self.current_token = self.tokens[self.position]
        return current_token

    def _check_current(self, kind: TokenKind) -> bool:
        return self.current_token.kind == kind

    def _expect_current(self, kind: TokenKind) -> Token:
        current = self.current_token
        if current.kind != kind:
            raise ParseError(current.location, quote(kind), current)
        self._advance_token()
        return current

    def _starts_expression(self, kind: TokenKind) -> bool:
        return kind in self.parse_nud_functions or kind in Parser.CONTROL

    def _parse_sequence(
        self,
        closer: TokenKind,
        expressions: Optional[list[AstExpression]] = None,
    ) -> list[AstExpression]:
        # Semicolon separated expressions up to (not including) the closer.
        # Empty statements are skipped.
        expressions = expressions if expressions is not None else list()
        if len(expressions) != 0:
            self._expect_separator(closer)
        while not self._check_current(closer):
            if self._check_current(TokenKind.SEMICOLON):
                self._advance_token()
                continue
            if self._check_current(TokenKind.EOF):
                self._expect_current(closer)
            expressions.append(self.parse_expression())
            self._expect_separator(closer)
        return expressions

    def _expect_separator(self, closer: TokenKind) -> None:
        if self._check_current(closer) or self._check_current(TokenKind.SEMICOLON):
            return
        raise ParseError(
            self.current_token.location,
            f"{quote(TokenKind.SEMICOLON)} or {quote(closer)}",
            self.current_token,
        )

    def parse_program(self) -> AstProgram:
        location = self.current_token.location
        expressions = self._parse_sequence(TokenKind.EOF)
        self._expect_current(TokenKind.EOF)
        return AstProgram(location, tuple(expressions))

    def parse_expression(self) -> AstExpression:
        target = self.parse_expression_control()
        if not self._check_current(TokenKind.EQ):
            return target
        if not isinstance(target, (AstIdentifier, AstIndex)):
            raise ParseError(
                self.current_token.location,
                f"identifier or index expression before {quote(TokenKind.EQ)}",
                self.current_token,
            )
        location = self._expect_current(TokenKind.EQ).location
        value = self.parse_expression()
        return AstAssign(location, target, value)

    def parse_expression_control(self) -> AstExpression:
        if self._check_current(TokenKind.IF):
            return self.parse_expression_if()
        if self._check_current(TokenKind.WHILE):
            return self.parse_expression_while()
        if self._check_current(TokenKind.FOR):
            return self.parse_expression_for()
        return self.parse_operation()

    def parse_operation(self, precedence: Precedence = Precedence.LOWEST) -> AstExpression:
        def get_precedence(kind: TokenKind) -> Precedence:
            return Parser.PRECEDENCES.get(kind, Precedence.LOWEST)

        parse_nud = self.parse_nud_functions.get(self.current_token.kind)
        if parse_nud is None:
            raise ParseError(
                self.current_token.location, "expression", self.current_token
            )
        expression = parse_nud(self)
        while precedence < get_precedence(self.current_token.kind):
            parse_led = self.parse_led_functions.get(self.current_token.kind, None)
            if parse_led is None:
                return expression
            expression = parse_led(self, expression)
        return expression

    def parse_expression_if(self) -> AstIf:
        location = self._expect_current(TokenKind.IF).location
        self._expect_current(TokenKind.LPAREN)
        condition = self.parse_expression()
        self._expect_current(TokenKind.RPAREN)
        consequent = self.parse_expression()
        alternate: Optional[AstExpression] = None
        if self._check_current(TokenKind.ELSE):
            self._expect_current(TokenKind.ELSE)
            alternate = self.parse_expression()
        return AstIf(location, condition, consequent, alternate)

    def parse_expression_while(self) -> AstWhile:
        location = self._expect_current(TokenKind.WHILE).location
        self._expect_current(TokenKind.LPAREN)
        condition = self.parse_expression()
        self._expect_current(TokenKind.RPAREN)
        body = self.parse_expression()
        return AstWhile(location, condition, body)

    def parse_expression_for(self) -> AstFor:
        location = self._expect_current(TokenKind.FOR).location
        self._expect_current(TokenKind.LPAREN)
        variable = self._expect_current(TokenKind.IDENTIFIER).literal
        self._expect_current(TokenKind.IN)
        sequence = self.parse_expression()
        self._expect_current(TokenKind.RPAREN)
        body = self.parse_expression()
        return AstFor(location, variable, sequence, body)

    def parse_expression_identifier(self) -> AstIdentifier:
        token = self._expect_current(TokenKind.IDENTIFIER)
        return AstIdentifier(token.location, token.literal)

    def parse_expression_number(self) -> AstNumber:
        token = self._expect_current(TokenKind.NUMBER)
        assert isinstance(token.value, float)
        return AstNumber(token.location, Number.new(token.value))

    def parse_expression_string(self) -> AstString:
        token = self._expect_current(TokenKind.STRING)
        assert isinstance(token.value, str)
        return AstString(token.location, String.new(token.value))

    def parse_expression_boolean(self) -> AstBoolean:
        token = self._expect_current(TokenKind.BOOLEAN)
        assert isinstance(token.value, bool)
        return AstBoolean(token.location, Boolean.new(token.value))

    def parse_expression_this(self) -> AstThis:
        location = self._expect_current(TokenKind.THIS).location
        return AstThis(location)

    def parse_expression_list(self) -> AstList:
        location = self._expect_current(TokenKind.LBRACKET).location
        elements: list[AstExpression] = list()
        while not self._check_current(TokenKind.RBRACKET):
            if len(elements) != 0:
                self._expect_current(TokenKind.COMMA)
            if self._check_current(TokenKind.RBRACKET):
                break
            elements.append(self.parse_expression())
        self._expect_current(TokenKind.RBRACKET)
        return AstList(location, tuple(elements))

    def parse_expression_block_or_object(self) -> Union[AstBlock, AstObject]:
        location = self._expect_current(TokenKind.LBRACE).location
        if self._check_current(TokenKind.COLON):
            # {:} is the empty object, {} is the empty block.
            self._expect_current(TokenKind.COLON)
            self._expect_current(TokenKind.RBRACE)
            return AstObject(location, tuple())
        if self._check_current(TokenKind.RBRACE) or self._check_current(
            TokenKind.SEMICOLON
        ):
            expressions = self._parse_sequence(TokenKind.RBRACE)
            self._expect_current(TokenKind.RBRACE)
            return AstBlock(location, tuple(expressions))

        # A key followed by `:` as the first item makes this an object.
        first = self.parse_expression()
        if self._check_current(TokenKind.COLON):
            if isinstance(first, AstIdentifier):
                return self.parse_object_elements(location, first.name)
            if isinstance(first, AstString):
                return self.parse_object_elements(location, first.data.data)
        expressions = self._parse_sequence(TokenKind.RBRACE, [first])
        self._expect_current(TokenKind.RBRACE)
        return AstBlock(location, tuple(expressions))

    def parse_object_key(self) -> str:
        token = self.current_token
        if token.kind == TokenKind.IDENTIFIER:
            self._advance_token()
            return token.literal
        if token.kind == TokenKind.STRING:
            self._advance_token()
            assert isinstance(token.value, str)
            return token.value
        raise ParseError(token.location, "object key", token)

    def parse_object_elements(
        self, location: Optional[SourceLocation], key: str
    ) -> AstObject:
        elements: list[tuple[str, AstExpression]] = list()
        while True:
            self._expect_current(TokenKind.COLON)
            elements.append((key, self.parse_expression()))
            if not self._check_current(TokenKind.COMMA):
                break
            self._expect_current(TokenKind.COMMA)
            if self._check_current(TokenKind.RBRACE):
                break
            key = self.parse_object_key()
        self._expect_current(TokenKind.RBRACE)
        return AstObject(location, tuple(elements))

    def parse_expression_grouped(self) -> AstExpression:
        self._expect_current(TokenKind.LPAREN)
        expression = self.parse_expression()
        self._expect_current(TokenKind.RPAREN)
        return expression

    def parse_expression_function(self) -> AstFunction:
        location = self._expect_current(TokenKind.FUNCTION).location
        parameters: list[str] = list()
        self._expect_current(TokenKind.LPAREN)
        while not self._check_current(TokenKind.RPAREN):
            if len(parameters) != 0:
                self._expect_current(TokenKind.COMMA)
            token = self._expect_current(TokenKind.IDENTIFIER)
            if token.literal in parameters:
                raise ParseError(token.location, "unique parameter name", token)
            parameters.append(token.literal)
        self._expect_current(TokenKind.RPAREN)
        body = self.parse_expression()
        return AstFunction(location, tuple(parameters), body)

    def parse_expression_exit(self) -> Union[AstReturn, AstBreak, AstContinue]:
        token = self._advance_token()
        value: Optional[AstExpression] = None
        if self._starts_expression(self.current_token.kind):
            value = self.parse_expression()
        match token.kind:
            case TokenKind.RETURN:
                return AstReturn(token.location, value)
            case TokenKind.BREAK:
                return AstBreak(token.location, value)
            case TokenKind.CONTINUE:
                return AstContinue(token.location, value)
        raise ParseError(token.location, "return, break, or continue", token)

    def parse_expression_unary(self) -> AstUnary:
        token = self._advance_token()
        operand = self.parse_operation(Precedence.PREFIX)
        return AstUnary(token.location, token.kind, operand)

    def parse_expression_binary(self, lhs: AstExpression) -> AstBinary:
        token = self._advance_token()
        rhs = self.parse_operation(Parser.PRECEDENCES[token.kind])
        return AstBinary(token.location, token.kind, lhs, rhs)

    def parse_expression_comparison(self, lhs: AstExpression) -> AstBinary:
        expression = self.parse_expression_binary(lhs)
        # Comparisons are non-associative: `a < b < c` is rejected.
        if Parser.PRECEDENCES.get(self.current_token.kind) == Precedence.COMPARE:
            raise ParseError(
                self.current_token.location,
                "at most one comparison operator per chain",
                self.current_token,
            )
        return expression

    def parse_expression_call(self, lhs: AstExpression) -> AstCall:
        location = self._expect_current(TokenKind.LPAREN).location
        arguments: list[AstExpression] = list()
        while not self._check_current(TokenKind.RPAREN):
            if len(arguments) != 0:
                self._expect_current(TokenKind.COMMA)
            if self._check_current(TokenKind.RPAREN):
                break
            arguments.append(self.parse_expression())
        self._expect_current(TokenKind.RPAREN)
        return AstCall(location, lhs, tuple(arguments))

    def parse_expression_index(self, lhs: AstExpression) -> AstIndex:
        location = self._expect_current(TokenKind.LBRACKET).location
        index = self.parse_expression()
        self._expect_current(TokenKind.RBRACKET)
        return AstIndex(location, lhs, index)

    def parse_expression_attribute(self, lhs: AstExpression) -> AstIndex:
        location = self._expect_current(TokenKind.DOT).location
        token = self._expect_current(TokenKind.IDENTIFIER)
        key = AstString(token.location, String.new(token.literal))
        return AstIndex(location, lhs, key)


def parse(tokens: Iterable[Token]) -> AstProgram:
    program = Parser(tokens).parse_program()
    logger.debug("parsed %d top-level expression(s)", len(program.expressions))
    return program


class Environment:
    def __init__(
        self, outer: Optional["Environment"] = None, this: Optional[Value] = None
    ):
        self.outer: Optional["Environment"] = outer
        self.store: dict[str, Value] = dict()
        self.this: Optional[Value] = this

    def let(self, name: str, value: Value) -> None:
        """Bind a name in this environment, shadowing any outer binding."""
        self.store[name] = value

    def get(self, name: str, location: Optional[SourceLocation] = None) -> Value:
        env: Optional[Environment] = self
        while env is not None:
            if name in env.store:
                return env.store[name]
            env = env.outer
        raise UndefinedVariableError(location, name)

    def set(self, name: str, value: Value) -> None:
        """
        Overwrite the nearest existing binding of name. When no enclosing
        environment defines the name, the binding is created here, in the
        innermost environment, rather than at the root.
        """
        env: Optional[Environment] = self
        while env is not None:
            if name in env.store:
                env.store[name] = value
                return
            env = env.outer
        self.store[name] = value

    def lookup(self, name: str) -> Optional["Environment"]:
        env: Optional[Environment] = self
        while env is not None:
            if name in env.store:
                return env
            env = env.outer
        return None

    def lookup_this(self) -> Value:
        env: Optional[Environment] = self
        while env is not None:
            if env.this is not None:
                return env.this
            env = env.outer
        return Undefined.new()


class ControlFlow:
    """
    Non-local exit produced by `return`, `break`, or `continue`. Every
    evaluation step returns either a plain value or one of these signals,
    and each enclosing step passes a signal upward unchanged until it reaches
    the matching handler.
    """


@dataclass
class Return(ControlFlow):
    value: Value


@dataclass
class Break(ControlFlow):
    location: Optional[SourceLocation]
    value: Value


@dataclass
class Continue(ControlFlow):
    location: Optional[SourceLocation]
    value: Value


Result = Union[Value, ControlFlow]


def eval_node(node: AstExpression, env: Environment) -> Result:
    match node:
        case AstNumber() | AstString() | AstBoolean():
            return node.data
        case AstIdentifier():
            return env.get(node.name, node.location)
        case AstThis():
            return env.lookup_this()
        case AstList():
            return eval_list(node, env)
        case AstObject():
            return eval_object(node, env)
        case AstIndex():
            return eval_index(node, env)
        case AstAssign():
            return eval_assign(node, env)
        case AstUnary():
            return eval_unary(node, env)
        case AstBinary():
            return eval_binary(node, env)
        case AstFunction():
            return Function.new(node, env)
        case AstCall():
            return eval_call(node, env)
        case AstIf():
            return eval_if(node, env)
        case AstWhile():
            return eval_while(node, env)
        case AstFor():
            return eval_for(node, env)
        case AstBlock():
            return eval_block(node, env)
        case AstReturn() | AstBreak() | AstContinue():
            return eval_exit(node, env)
    raise AssertionError(f"unhandled AST node {type(node).__name__}")


def eval_all(
    nodes: Iterable[AstExpression], env: Environment
) -> Union[list[Value], ControlFlow]:
    values: list[Value] = list()
    for node in nodes:
        result = eval_node(node, env)
        if isinstance(result, ControlFlow):
            return result
        values.append(result)
    return values


def eval_list(node: AstList, env: Environment) -> Result:
    values = eval_all(node.elements, env)
    if isinstance(values, ControlFlow):
        return values
    return List.new(values)


def eval_object(node: AstObject, env: Environment) -> Result:
    elements: dict[str, Value] = dict()
    for k, v in node.elements:
        result = eval_node(v, env)
        if isinstance(result, ControlFlow):
            return result
        elements[k] = result
    return Object.new(elements)


def list_position(index: Number) -> Optional[int]:
    """
    Zero-based Python position addressed by a 1-based sprig index, or None
    if the index is not a positive integer.
    """
    position = float(index.data)
    if not position.is_integer() or position < 1:
        return None
    return int(position) - 1


def index_value(
    location: Optional[SourceLocation], collection: Value, index: Value
) -> Value:
    result: Value
    match (collection, index):
        case (List(), Number()):
            position = list_position(index)
            if position is None or position >= len(collection.data):
                return Undefined.new()
            result = collection.data[position]
        case (String(), Number()):
            position = list_position(index)
            if position is None or position >= len(collection.data):
                return Undefined.new()
            return String.new(collection.data[position])
        case (Object(), String()):
            if index.data not in collection.data:
                return Undefined.new()
            result = collection.data[index.data]
        case _:
            raise RuntimeTypeError(
                location,
                f"attempted to index type {quote(typename(collection))} with type {quote(typename(index))}",
            )
    # Method-call syntax: a function fetched out of a collection is bound to
    # that collection as `this`.
    if isinstance(result, Function):
        return result.bind(collection)
    return result


def assign_index(
    location: Optional[SourceLocation], collection: Value, index: Value, value: Value
) -> None:
    match (collection, index):
        case (List(), Number()):
            position = list_position(index)
            if position is None:
                raise RuntimeTypeError(
                    location, f"invalid list assignment with index {index}"
                )
            while len(collection.data) <= position:
                collection.data.append(Undefined.new())
            collection.data[position] = value
        case (Object(), String()):
            collection.data[index.data] = value
        case _:
            raise RuntimeTypeError(
                location,
                f"attempted indexed assignment into type {quote(typename(collection))} with type {quote(typename(index))}",
            )


def eval_index(node: AstIndex, env: Environment) -> Result:
    collection = eval_node(node.collection, env)
    if isinstance(collection, ControlFlow):
        return collection
    index = eval_node(node.index, env)
    if isinstance(index, ControlFlow):
        return index
    return index_value(node.location, collection, index)


def eval_assign(node: AstAssign, env: Environment) -> Result:
    value = eval_node(node.value, env)
    if isinstance(value, ControlFlow):
        return value
    if isinstance(node.target, AstIdentifier):
        env.set(node.target.name, value)
        return value
    collection = eval_node(node.target.collection, env)
    if isinstance(collection, ControlFlow):
        return collection
    index = eval_node(node.target.index, env)
    if isinstance(index, ControlFlow):
        return index
    assign_index(node.location, collection, index, value)
    return value


def eval_unary(node: AstUnary, env: Environment) -> Result:
    operand = eval_node(node.operand, env)
    if isinstance(operand, ControlFlow):
        return operand
    if node.op == TokenKind.NOT:
        return Boolean.new(not truthy(operand))
    if node.op == TokenKind.SUB and isinstance(operand, Number):
        return Number.new(-operand.data)
    raise RuntimeTypeError(
        node.location,
        f"attempted unary {node.op} operation with type {quote(typename(operand))}",
    )


def eval_binary(node: AstBinary, env: Environment) -> Result:
    lhs = eval_node(node.lhs, env)
    if isinstance(lhs, ControlFlow):
        return lhs
    # Logical operators short circuit and produce the deciding operand.
    if node.op == TokenKind.AND and not truthy(lhs):
        return lhs
    if node.op == TokenKind.OR and truthy(lhs):
        return lhs
    rhs = eval_node(node.rhs, env)
    if isinstance(rhs, ControlFlow):
        return rhs
    if node.op in (TokenKind.AND, TokenKind.OR):
        return rhs
    return binary_operation(node.location, node.op, lhs, rhs)


def repetition_count(location: Optional[SourceLocation], count: Number) -> int:
    n = float(count.data)
    if not n.is_integer() or n < 0:
        raise RuntimeTypeError(location, f"invalid repetition count {count}")
    return int(n)


def divide(lhs: float, rhs: float) -> float:
    if rhs == 0.0:
        if lhs == 0.0 or math.isnan(lhs):
            return math.nan
        return math.copysign(math.inf, lhs) * math.copysign(1.0, rhs)
    return lhs / rhs


def remainder(lhs: float, rhs: float) -> float:
    # The remainder has the same sign as the dividend.
    #   +7 % +3 => +1
    #   +7 % -3 => +1
    #   -7 % +3 => -1
    #   -7 % -3 => -1
    if rhs == 0.0 or math.isinf(lhs):
        return math.nan
    return math.fmod(lhs, rhs)


def is_substring(lhs: Value, rhs: Value) -> bool:
    assert isinstance(lhs, String) and isinstance(rhs, String)
    return lhs.data in rhs.data


def is_sublist(lhs: Value, rhs: Value) -> bool:
    assert isinstance(lhs, List) and isinstance(rhs, List)
    return all(x in rhs for x in lhs.data)


def is_subobject(lhs: Value, rhs: Value) -> bool:
    assert isinstance(lhs, Object) and isinstance(rhs, Object)
    return all(k in rhs.data and rhs.data[k] == v for k, v in lhs.data.items())


def contained(
    op: TokenKind, subset: Callable[[Value, Value], bool], lhs: Value, rhs: Value
) -> bool:
    """
    Partial-order comparison for strings, lists, and objects: `<` is a proper
    subset (or substring), `<=` a subset or equal, mirrored for `>` and `>=`.
    """
    match op:
        case TokenKind.LESS:
            return subset(lhs, rhs) and not subset(rhs, lhs)
        case TokenKind.LESSEQ:
            return subset(lhs, rhs)
        case TokenKind.GREATER:
            return subset(rhs, lhs) and not subset(lhs, rhs)
        case TokenKind.GREATEREQ:
            return subset(rhs, lhs)
    raise AssertionError(f"unhandled comparison {op}")


def binary_operation(
    location: Optional[SourceLocation], op: TokenKind, lhs: Value, rhs: Value
) -> Value:
    match op:
        case TokenKind.EQEQ:
            return Boolean.new(lhs == rhs)
        case TokenKind.NOTEQ:
            return Boolean.new(lhs != rhs)
        case TokenKind.ADD:
            match (lhs, rhs):
                case (Number(), Number()):
                    return Number.new(lhs.data + rhs.data)
                case (String(), String()):
                    return String.new(lhs.data + rhs.data)
                case (List(), List()):
                    return List.new(lhs.data + rhs.data)
                case (Object(), Object()):
                    return Object.new({**lhs.data, **rhs.data})
        case TokenKind.SUB:
            match (lhs, rhs):
                case (Number(), Number()):
                    return Number.new(lhs.data - rhs.data)
                case (String(), String()):
                    return String.new(lhs.data.replace(rhs.data, "", 1))
                case (List(), List()):
                    return List.new([x for x in lhs.data if x not in rhs])
                case (Object(), Object()):
                    return Object.new(
                        {
                            k: v
                            for k, v in lhs.data.items()
                            if not (k in rhs.data and rhs.data[k] == v)
                        }
                    )
        case TokenKind.MUL:
            match (lhs, rhs):
                case (Number(), Number()):
                    return Number.new(lhs.data * rhs.data)
                case (String(), Number()):
                    return String.new(lhs.data * repetition_count(location, rhs))
                case (Number(), String()):
                    return String.new(rhs.data * repetition_count(location, lhs))
                case (List(), Number()):
                    return List.new(lhs.data * repetition_count(location, rhs))
                case (Number(), List()):
                    return List.new(rhs.data * repetition_count(location, lhs))
        case TokenKind.DIV:
            if isinstance(lhs, Number) and isinstance(rhs, Number):
                return Number.new(divide(lhs.data, rhs.data))
        case TokenKind.MOD:
            if isinstance(lhs, Number) and isinstance(rhs, Number):
                return Number.new(remainder(lhs.data, rhs.data))
        case TokenKind.LESS | TokenKind.LESSEQ | TokenKind.GREATER | TokenKind.GREATEREQ:
            match (lhs, rhs):
                case (Number(), Number()):
                    return Boolean.new(compare_numbers(op, lhs.data, rhs.data))
                case (String(), String()):
                    return Boolean.new(contained(op, is_substring, lhs, rhs))
                case (List(), List()):
                    return Boolean.new(contained(op, is_sublist, lhs, rhs))
                case (Object(), Object()):
                    return Boolean.new(contained(op, is_subobject, lhs, rhs))
    raise RuntimeTypeError(
        location,
        f"attempted {op} operation with types {quote(typename(lhs))} and {quote(typename(rhs))}",
    )


def compare_numbers(op: TokenKind, lhs: float, rhs: float) -> bool:
    match op:
        case TokenKind.LESS:
            return lhs < rhs
        case TokenKind.LESSEQ:
            return lhs <= rhs
        case TokenKind.GREATER:
            return lhs > rhs
        case TokenKind.GREATEREQ:
            return lhs >= rhs
    raise AssertionError(f"unhandled comparison {op}")


def eval_call(node: AstCall, env: Environment) -> Result:
    function = eval_node(node.callee, env)
    if isinstance(function, ControlFlow):
        return function
    arguments = eval_all(node.arguments, env)
    if isinstance(arguments, ControlFlow):
        return arguments
    return call(node.location, function, arguments)


def call(
    location: Optional[SourceLocation],
    function: Value,
    arguments: list[Value],
) -> Result:
    if isinstance(function, Builtin):
        try:
            return function.call(arguments)
        except SprigError as e:
            if e.location is None:
                e.location = location
            raise
    if not isinstance(function, Function):
        raise RuntimeTypeError(
            location,
            f"attempted to call non-function type {quote(typename(function))} with value {function}",
        )
    logger.debug("calling %s with %d argument(s)", function, len(arguments))
    env = Environment(function.env, function.this)
    for i, parameter in enumerate(function.ast.parameters):
        env.let(parameter, arguments[i] if i < len(arguments) else Undefined.new())
    try:
        result = eval_node(function.ast.body, env)
    except RecursionError:
        raise RecursionDepthError(location) from None
    # Functions catch `return` only. A `break` or `continue` not caught by a
    # loop inside the body unwinds into the loop enclosing the call site.
    if isinstance(result, Return):
        return result.value
    return result


def eval_if(node: AstIf, env: Environment) -> Result:
    condition = eval_node(node.condition, env)
    if isinstance(condition, ControlFlow):
        return condition
    if truthy(condition):
        return eval_node(node.consequent, env)
    if node.alternate is not None:
        return eval_node(node.alternate, env)
    return Undefined.new()


def accumulate(results: list[Value], value: Value) -> None:
    if not isinstance(value, Undefined):
        results.append(value)


def eval_while(node: AstWhile, env: Environment) -> Result:
    results: list[Value] = list()
    while True:
        condition = eval_node(node.condition, env)
        if isinstance(condition, ControlFlow):
            return condition
        if not truthy(condition):
            break
        result = eval_node(node.body, env)
        if isinstance(result, Return):
            return result
        if isinstance(result, Break):
            accumulate(results, result.value)
            break
        if isinstance(result, Continue):
            accumulate(results, result.value)
            continue
        accumulate(results, result)
    return List.new(results)


def eval_for(node: AstFor, env: Environment) -> Result:
    sequence = eval_node(node.sequence, env)
    if isinstance(sequence, ControlFlow):
        return sequence
    elements: list[Value]
    match sequence:
        case List():
            # Iterate over a shallow copy of the list data in order to allow
            # list modification during iteration.
            elements = list(sequence.data)
        case String():
            elements = [String.new(c) for c in sequence.data]
        case _:
            raise RuntimeTypeError(
                node.location,
                f"attempted iteration over type {quote(typename(sequence))}",
            )
    results: list[Value] = list()
    for element in elements:
        loop_env = Environment(env)
        loop_env.let(node.variable, element)
        result = eval_node(node.body, loop_env)
        if isinstance(result, Return):
            return result
        if isinstance(result, Break):
            accumulate(results, result.value)
            break
        if isinstance(result, Continue):
            accumulate(results, result.value)
            continue
        accumulate(results, result)
    return List.new(results)


def eval_block(node: AstBlock, env: Environment) -> Result:
    env = Environment(env)  # Blocks execute with a new lexical scope.
    result: Result = Undefined.new()
    for expression in node.expressions:
        result = eval_node(expression, env)
        if isinstance(result, ControlFlow):
            return result
    return result


def eval_exit(
    node: Union[AstReturn, AstBreak, AstContinue], env: Environment
) -> Result:
    value: Value = Undefined.new()
    if node.value is not None:
        result = eval_node(node.value, env)
        if isinstance(result, ControlFlow):
            return result
        value = result
    match node:
        case AstReturn():
            return Return(value)
        case AstBreak():
            return Break(node.location, value)
        case AstContinue():
            return Continue(node.location, value)
    raise AssertionError(f"unhandled AST node {type(node).__name__}")


def evaluate(program: AstProgram, env: Optional[Environment] = None) -> Value:
    env = env if env is not None else Environment(BASE_ENVIRONMENT)
    logger.debug("evaluating %d top-level expression(s)", len(program.expressions))
    result: Value = Undefined.new()
    for expression in program.expressions:
        try:
            evaluated = eval_node(expression, env)
        except RecursionError:
            raise RecursionDepthError(expression.location) from None
        if isinstance(evaluated, Return):
            return evaluated.value
        if isinstance(evaluated, Break):
            raise UncaughtControlFlowError(evaluated.location, "break")
        if isinstance(evaluated, Continue):
            raise UncaughtControlFlowError(evaluated.location, "continue")
        assert isinstance(evaluated, Value)
        result = evaluated
    return result


# @builtin("len", [Value])
# def builtin_len(value: Value) -> Value: ...
#
# Passing no argument types declares a variadic builtin that receives every
# argument unchecked.
def builtin(nameof: str, args: Optional[list[Type[Value]]] = None):
    def decorator(func: Callable) -> Type[Builtin]:
        class GeneratedBuiltin(Builtin):
            name = nameof

            def function(self, arguments: list[Value]) -> Optional[Value]:
                if args is None:
                    return func(*arguments)
                Builtin.expect_argument_count(arguments, len(args))
                processed_args = [
                    Builtin.typed_argument(arguments, i, arg_type)
                    for i, arg_type in enumerate(args)
                ]
                return func(*processed_args)

        GeneratedBuiltin.__name__ = f"Builtin_{func.__name__}"
        return GeneratedBuiltin

    return decorator


@builtin("print")
def builtin_print(*values: Value) -> Value:
    print(" ".join([render(value) for value in values]))
    return Undefined.new()


RE_NUMERIC = re.compile(r"[+-]?(\d+(\.\d*)?|\.\d+)([eE][+-]?\d+)?", re.ASCII)


@builtin("number", [Value])
def builtin_number(value: Value) -> Value:
    match value:
        case Number():
            return value
        case Boolean():
            return Number.new(1.0 if value.data else 0.0)
        case String():
            text = value.data.strip()
            if len(text) == 0:
                return Number.new(0.0)
            if RE_NUMERIC.fullmatch(text) is None:
                return Number.new(math.nan)
            return Number.new(float(text))
    return Number.new(math.nan)


@builtin("string", [Value])
def builtin_string(value: Value) -> Value:
    return String.new(render(value))


@builtin("range")
def builtin_range(*arguments: Value) -> Value:
    if len(arguments) not in (1, 2):
        raise RuntimeTypeError(
            None,
            f"invalid argument count (expected 1 or 2, received {len(arguments)})",
        )
    bounds: list[int] = list()
    for i in range(len(arguments)):
        bound = Builtin.typed_argument(list(arguments), i, Number)
        if not float(bound.data).is_integer():
            raise RuntimeTypeError(None, f"expected integer range bound, received {bound}")
        bounds.append(int(bound.data))
    bgn, end = (1, bounds[0]) if len(bounds) == 1 else (bounds[0], bounds[1])
    return List.new([Number.new(x) for x in range(bgn, end + 1)])


@builtin("len", [Value])
def builtin_len(value: Value) -> Value:
    if isinstance(value, (List, String, Object)):
        return Number.new(len(value.data))
    raise RuntimeTypeError(
        None, f"attempted to count elements of type {quote(typename(value))}"
    )


@builtin("typeof", [Value])
def builtin_typeof(value: Value) -> Value:
    return String.new(typename(value))


@builtin("keys", [Object])
def builtin_keys(value: Object) -> Value:
    return List.new([String.new(k) for k in value.data.keys()])


@builtin("push", [List, Value])
def builtin_push(target: List, value: Value) -> Value:
    target.data.append(value)
    return target


def new_base_environment() -> Environment:
    """
    Create a root environment populated with the host builtins. The process
    wide root is BASE_ENVIRONMENT; separate roots isolate embedders.
    """
    env = Environment()
    env.let("print", builtin_print())
    env.let("number", builtin_number())
    env.let("string", builtin_string())
    env.let("range", builtin_range())
    env.let("len", builtin_len())
    env.let("typeof", builtin_typeof())
    env.let("keys", builtin_keys())
    env.let("push", builtin_push())
    return env


# Bindings of the base environment persist for the lifetime of the process.
# Programs may shadow or overwrite them, but they are never removed.
BASE_ENVIRONMENT = new_base_environment()


def eval_source(
    source: str,
    env: Optional[Environment] = None,
    loc: Optional[SourceLocation] = None,
) -> Value:
    tokens = tokenize(source, loc)
    program = parse(tokens)
    return evaluate(program, env)


def eval_file(
    path: Union[str, os.PathLike],
    env: Optional[Environment] = None,
) -> Value:
    with open(path, "r", encoding="utf-8") as f:
        source = f.read()
    return eval_source(source, env, SourceLocation(str(path), 1))


def token_to_json(token: Token) -> dict[str, Any]:
    result: dict[str, Any] = {"kind": token.kind.name, "literal": token.literal}
    if token.value is not None:
        result["value"] = token.value
    if token.location is not None:
        result["line"] = token.location.line
    return result


def ast_to_json(node: Any) -> Any:
    if isinstance(node, AstNode):
        result: dict[str, Any] = {"node": type(node).__name__}
        for field in fields(node):  # type: ignore[arg-type]
            if field.name == "location":
                continue
            result[field.name] = ast_to_json(getattr(node, field.name))
        if node.location is not None:
            result["line"] = node.location.line
        return result
    if isinstance(node, tuple):
        return [ast_to_json(x) for x in node]
    if isinstance(node, TokenKind):
        return node.name
    if isinstance(node, (Number, String, Boolean)):
        return node.data
    return node


def dump_json(path: Union[str, os.PathLike], data: Any) -> None:
    with open(path, "w", encoding="utf-8") as f:
        json.dump(data, f, indent=2)
        f.write("\n")
    logger.debug("wrote %s", path)


class Repl(code.InteractiveConsole):
    def __init__(self, env: Optional[Environment] = None):
        super().__init__()
        self.env = env if env is not None else Environment(BASE_ENVIRONMENT)

    def runsource(self, source, filename="<input>", symbol="single"):
        try:
            program = parse(tokenize(source))
        except ParseError as e:
            if e.found.kind == TokenKind.EOF and not source.endswith("\n"):
                # Assume the user has not finished entering their program, and
                # wait for an additional newline before producing an error.
                return True
            print(f"error: {e}")
            return False
        except LexError as e:
            print(f"error: {e}")
            return False
        try:
            result = evaluate(program, self.env)
        except SprigError as e:
            print(f"error: {e}")
            return False
        except RecursionError:
            print("error: maximum recursion depth exceeded")
            return False
        if not isinstance(result, Undefined):
            print(result)
        return False


def main(argv: Optional[list[str]] = None) -> None:
    description = "The Sprig Programming Language"
    parser = ArgumentParser(description=description)
    parser.add_argument("file", type=str, nargs="?", default=None)
    parser.add_argument(
        "--dump-tokens",
        metavar="PATH",
        default=None,
        help="write the token sequence of the file as JSON to PATH",
    )
    parser.add_argument(
        "--dump-ast",
        metavar="PATH",
        default=None,
        help="write the syntax tree of the file as JSON to PATH",
    )
    parser.add_argument(
        "--print-result",
        action="store_true",
        help="print the value of the program when it is not undefined",
    )
    parser.add_argument(
        "-v", "--verbose", action="store_true", help="enable debug logging"
    )
    args, rest = parser.parse_known_args(argv)

    logging.basicConfig(
        level=logging.DEBUG if args.verbose else logging.WARNING,
        format="%(name)s: %(levelname)s: %(message)s",
    )

    if args.file is not None:
        rest.insert(0, args.file)
        env = Environment(BASE_ENVIRONMENT)
        env.let("argv", List.new([String.new(x) for x in rest]))
        try:
            with open(args.file, "r", encoding="utf-8") as f:
                source = f.read()
            tokens = tokenize(source, SourceLocation(args.file, 1))
            if args.dump_tokens is not None:
                dump_json(args.dump_tokens, [token_to_json(t) for t in tokens])
            program = parse(tokens)
            if args.dump_ast is not None:
                dump_json(args.dump_ast, ast_to_json(program))
            result = evaluate(program, env)
        except (SprigError, OSError) as e:
            print(f"error: {e}", file=sys.stderr)
            sys.exit(1)
        except RecursionError:
            print("error: maximum recursion depth exceeded", file=sys.stderr)
            sys.exit(1)
        if args.print_result and not isinstance(result, Undefined):
            print(result)
    else:
        HOME = os.environ.get("SPRIG_HOME", Path.home())
        HISTFILE = Path(HOME) / ".sprig-history"
        HISTFILE_SIZE = 4096
        if readline and os.path.exists(HISTFILE):
            readline.read_history_file(HISTFILE)
        repl = Repl()
        repl.interact(banner="", exitmsg="")
        if readline:
            readline.set_history_length(HISTFILE_SIZE)
            readline.write_history_file(HISTFILE)


if __name__ == "__main__":
    main()
