"""Tokenizer and statement reader for the declarative Jenkinsfile subset.

The reader knows nothing about pipelines: it turns source text into a tree
of ``Statement`` and ``Assignment`` nodes, each carrying its line number.
``pipecheck.parser`` gives that tree its meaning.

Grammar (informal)::

    document   := annotation* statement*
    annotation := '@' IDENT '(' arguments ')' IDENT?
    statement  := IDENT '=' value
                | IDENT ( '(' arguments ')' | bare-arguments )? ( '{' statement* '}' )?
    argument   := IDENT ':' value | value
    value      := STRING | NUMBER | 'true' | 'false' | IDENT | IDENT '(' arguments ')'
                | '[' value (',' value)* ']'

Statements end at a newline, ``;`` or ``}``. Newlines inside parentheses
and brackets are ignored.
"""

from __future__ import annotations

import re
from dataclasses import dataclass, field
from typing import Any


class ParseError(Exception):
    """Raised when the source is not a structurally valid pipeline."""

    def __init__(self, line: int, reason: str) -> None:
        self.line = line
        self.reason = reason
        super().__init__(f"line {line}: {reason}")


# ---------------------------------------------------------------------------
# Tokens
# ---------------------------------------------------------------------------

_TOKEN_RE = re.compile(
    r"""
    (?P<COMMENT>//[^\n]*|/\*.*?\*/)
  | (?P<STRING>'''.*?'''|\"\"\".*?\"\"\"|'(?:\\.|[^'\\\n])*'|"(?:\\.|[^"\\\n])*")
  | (?P<NUMBER>-?\d+(?:\.\d+)?)
  | (?P<IDENT>[A-Za-z_][A-Za-z0-9_]*)
  | (?P<NEWLINE>\n)
  | (?P<SPACE>[ \t\r]+)
  | (?P<PUNCT>[{}()\[\],:=;@])
    """,
    re.VERBOSE | re.DOTALL,
)

_ESCAPES = {"n": "\n", "t": "\t", "r": "\r", "\\": "\\", "'": "'", '"': '"', "$": "$"}


@dataclass(frozen=True)
class Token:
    type: str
    value: str
    line: int


def _unquote(raw: str) -> str:
    if raw[:3] in ("'''", '"""'):
        body = raw[3:-3]
    else:
        body = raw[1:-1]
    return re.sub(r"\\(.)", lambda m: _ESCAPES.get(m.group(1), m.group(0)), body)


def tokenize(source: str) -> list[Token]:
    """Split *source* into tokens. Raises ParseError on unknown characters."""
    tokens: list[Token] = []
    line = 1
    depth = 0
    pos = 0
    while pos < len(source):
        match = _TOKEN_RE.match(source, pos)
        if match is None:
            unterminated = source[pos] in "'\""
            reason = (
                "unterminated string"
                if unterminated
                else f"unexpected character {source[pos]!r}"
            )
            raise ParseError(line, reason)
        kind = match.lastgroup or ""
        text = match.group()
        start_line = line
        line += text.count("\n")
        pos = match.end()

        if kind in ("COMMENT", "SPACE"):
            continue
        if kind == "NEWLINE":
            if depth == 0:
                tokens.append(Token("NEWLINE", "\n", start_line))
            continue
        if kind == "STRING":
            tokens.append(Token("STRING", _unquote(text), start_line))
            continue
        if kind == "PUNCT":
            if text in "([":
                depth += 1
            elif text in ")]":
                depth = max(depth - 1, 0)
            tokens.append(Token(text, text, start_line))
            continue
        tokens.append(Token(kind, text, start_line))

    tokens.append(Token("EOF", "", line))
    return tokens


# ---------------------------------------------------------------------------
# Statement tree
# ---------------------------------------------------------------------------


@dataclass(frozen=True)
class Name:
    """A bare identifier used as a value, e.g. ``any`` in ``agent any``."""

    value: str


@dataclass(frozen=True)
class CallValue:
    """A call used as a value, e.g. ``credentials('id')``."""

    name: str
    arguments: tuple[Argument, ...]
    line: int


@dataclass(frozen=True)
class Argument:
    value: Any
    key: str | None = None


@dataclass
class Statement:
    name: str
    line: int
    arguments: list[Argument] = field(default_factory=list)
    block: list[Node] | None = None

    @property
    def positional(self) -> list[Any]:
        return [a.value for a in self.arguments if a.key is None]

    @property
    def named(self) -> dict[str, Any]:
        return {a.key: a.value for a in self.arguments if a.key is not None}


@dataclass
class Assignment:
    name: str
    value: Any
    line: int


Node = Statement | Assignment

_TERMINATORS = ("NEWLINE", ";", "}", "EOF")


class _Reader:
    def __init__(self, tokens: list[Token]) -> None:
        self._tokens = tokens
        self._pos = 0

    @property
    def current(self) -> Token:
        return self._tokens[self._pos]

    def _peek(self, offset: int = 1) -> Token:
        index = min(self._pos + offset, len(self._tokens) - 1)
        return self._tokens[index]

    def _advance(self) -> Token:
        token = self._tokens[self._pos]
        if token.type != "EOF":
            self._pos += 1
        return token

    def _expect(self, kind: str, what: str | None = None) -> Token:
        token = self.current
        if token.type != kind:
            expected = what or repr(kind)
            raise ParseError(token.line, f"expected {expected}, found {_describe(token)}")
        return self._advance()

    def _skip_separators(self) -> None:
        while self.current.type in ("NEWLINE", ";"):
            self._advance()

    def read_document(self) -> list[Node]:
        nodes: list[Node] = []
        self._skip_separators()
        while self.current.type != "EOF":
            if self.current.type == "@":
                nodes.append(self._read_annotation())
            else:
                nodes.append(self._read_statement())
            self._skip_separators()
        return nodes

    def _read_annotation(self) -> Statement:
        at = self._advance()
        name = self._expect("IDENT", "annotation name")
        statement = Statement(name=f"@{name.value}", line=at.line)
        self._expect("(")
        statement.arguments = self._read_arguments(")")
        # `@Library('x') _` binds the library to a throwaway variable.
        if self.current.type == "IDENT" and self.current.line == at.line:
            self._advance()
        return statement

    def _read_block(self) -> list[Node]:
        self._expect("{")
        nodes: list[Node] = []
        self._skip_separators()
        while self.current.type != "}":
            if self.current.type == "EOF":
                raise ParseError(self.current.line, "unclosed block, expected '}'")
            nodes.append(self._read_statement())
            self._skip_separators()
        self._advance()
        return nodes

    def _read_statement(self) -> Node:
        name = self._expect("IDENT", "a directive or step name")

        if self.current.type == "=":
            self._advance()
            value = self._read_value()
            self._expect_end()
            return Assignment(name=name.value, value=value, line=name.line)

        statement = Statement(name=name.value, line=name.line)
        if self.current.type == "(":
            self._advance()
            statement.arguments = self._read_arguments(")")
        elif self.current.type not in _TERMINATORS and self.current.type != "{":
            statement.arguments = self._read_bare_arguments()

        if self.current.type == "{":
            statement.block = self._read_block()
        self._expect_end()
        return statement

    def _expect_end(self) -> None:
        if self.current.type not in _TERMINATORS:
            raise ParseError(
                self.current.line, f"unexpected {_describe(self.current)}"
            )

    def _read_arguments(self, closer: str) -> list[Argument]:
        arguments: list[Argument] = []
        while self.current.type != closer:
            arguments.append(self._read_argument())
            if self.current.type == ",":
                self._advance()
            elif self.current.type != closer:
                raise ParseError(
                    self.current.line,
                    f"expected ',' or '{closer}', found {_describe(self.current)}",
                )
        self._advance()
        return arguments

    def _read_bare_arguments(self) -> list[Argument]:
        arguments = [self._read_argument()]
        while self.current.type == ",":
            self._advance()
            while self.current.type == "NEWLINE":
                self._advance()
            arguments.append(self._read_argument())
        return arguments

    def _read_argument(self) -> Argument:
        if self.current.type == "IDENT" and self._peek().type == ":":
            key = self._advance().value
            self._advance()
            return Argument(value=self._read_value(), key=key)
        return Argument(value=self._read_value())

    def _read_value(self) -> Any:
        token = self.current
        if token.type == "STRING":
            self._advance()
            return token.value
        if token.type == "NUMBER":
            self._advance()
            return float(token.value) if "." in token.value else int(token.value)
        if token.type == "[":
            self._advance()
            return [a.value for a in self._read_arguments("]")]
        if token.type == "IDENT":
            self._advance()
            if token.value in ("true", "false"):
                return token.value == "true"
            if self.current.type == "(":
                self._advance()
                arguments = self._read_arguments(")")
                return CallValue(token.value, tuple(arguments), token.line)
            return Name(token.value)
        raise ParseError(token.line, f"expected a value, found {_describe(token)}")


def _describe(token: Token) -> str:
    if token.type == "EOF":
        return "end of input"
    if token.type == "NEWLINE":
        return "end of line"
    if token.type == "STRING":
        return f"string {token.value!r}"
    return repr(token.value)


def read_statements(source: str) -> list[Node]:
    """Tokenize and read *source* into a list of top-level nodes."""
    return _Reader(tokenize(source)).read_document()
