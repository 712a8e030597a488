"""Parser for the expressions understood by cohort servers.

The language is the small subset of R the client emits: numbers, strings,
``TRUE``/``FALSE``/``NULL``, identifiers (which may contain ``.`` and ``_``),
``$`` column access, calls with positional arguments, ``+ - * / ^`` and
parentheses.  ``^`` is right-associative and binds tighter than unary minus,
so ``-2^2`` is ``-4``.
"""

from __future__ import annotations

import re
from dataclasses import dataclass
from typing import Any, Union

from dshelper.errors import ExpressionError


# ---------------------------------------------------------------------------
# Nodes
# ---------------------------------------------------------------------------


@dataclass(frozen=True)
class Literal:
    value: Any


@dataclass(frozen=True)
class Name:
    id: str


@dataclass(frozen=True)
class Column:
    obj: "Node"
    column: str


@dataclass(frozen=True)
class Call:
    func: str
    args: tuple["Node", ...]


@dataclass(frozen=True)
class BinOp:
    op: str
    left: "Node"
    right: "Node"


@dataclass(frozen=True)
class Negate:
    operand: "Node"


Node = Union[Literal, Name, Column, Call, BinOp, Negate]


# ---------------------------------------------------------------------------
# Tokenizer
# ---------------------------------------------------------------------------

_TOKEN_RE = re.compile(
    r"""
    (?P<ws>\s+)
  | (?P<number>(?:\d+\.?\d*|\.\d+)(?:[eE][+-]?\d+)?)
  | (?P<string>"(?:[^"\\]|\\.)*")
  | (?P<name>[A-Za-z][A-Za-z0-9._]*|\.[A-Za-z_][A-Za-z0-9._]*)
  | (?P<op>[-+*/^$(),])
    """,
    re.VERBOSE,
)

_KEYWORDS = {"TRUE": True, "FALSE": False, "NULL": None, "NA": float("nan")}


@dataclass(frozen=True)
class Token:
    kind: str
    text: str
    pos: int


def tokenize(text: str) -> list[Token]:
    """Split *text* into tokens.

    Raises:
        ExpressionError: On a character that starts no token.
    """
    tokens: list[Token] = []
    pos = 0
    while pos < len(text):
        match = _TOKEN_RE.match(text, pos)
        if match is None:
            raise ExpressionError(
                f"Unexpected character {text[pos]!r} at position {pos} in {text!r}"
            )
        kind = match.lastgroup
        if kind != "ws":
            tokens.append(Token(kind, match.group(), pos))
        pos = match.end()
    return tokens


def _unquote(text: str) -> str:
    return re.sub(r"\\(.)", r"\1", text[1:-1])


# ---------------------------------------------------------------------------
# Parser
# ---------------------------------------------------------------------------


class _Parser:
    def __init__(self, text: str) -> None:
        self.text = text
        self.tokens = tokenize(text)
        self.index = 0

    def peek(self) -> Token | None:
        if self.index < len(self.tokens):
            return self.tokens[self.index]
        return None

    def next(self) -> Token:
        token = self.peek()
        if token is None:
            raise ExpressionError(f"Unexpected end of expression in {self.text!r}")
        self.index += 1
        return token

    def accept(self, text: str) -> bool:
        token = self.peek()
        if token is not None and token.kind == "op" and token.text == text:
            self.index += 1
            return True
        return False

    def expect(self, text: str) -> None:
        token = self.next()
        if token.kind != "op" or token.text != text:
            raise ExpressionError(
                f"Expected {text!r} at position {token.pos} in {self.text!r}, "
                f"found {token.text!r}"
            )

    def parse(self) -> Node:
        node = self.additive()
        token = self.peek()
        if token is not None:
            raise ExpressionError(
                f"Unexpected {token.text!r} at position {token.pos} in {self.text!r}"
            )
        return node

    def additive(self) -> Node:
        node = self.multiplicative()
        while True:
            if self.accept("+"):
                node = BinOp("+", node, self.multiplicative())
            elif self.accept("-"):
                node = BinOp("-", node, self.multiplicative())
            else:
                return node

    def multiplicative(self) -> Node:
        node = self.unary()
        while True:
            if self.accept("*"):
                node = BinOp("*", node, self.unary())
            elif self.accept("/"):
                node = BinOp("/", node, self.unary())
            else:
                return node

    def unary(self) -> Node:
        if self.accept("-"):
            return Negate(self.unary())
        if self.accept("+"):
            return self.unary()
        return self.power()

    def power(self) -> Node:
        base = self.postfix()
        if self.accept("^"):
            return BinOp("^", base, self.unary())
        return base

    def postfix(self) -> Node:
        node = self.primary()
        while self.accept("$"):
            token = self.next()
            if token.kind == "name":
                node = Column(node, token.text)
            elif token.kind == "string":
                node = Column(node, _unquote(token.text))
            else:
                raise ExpressionError(
                    f"Expected a column name after '$' at position {token.pos} "
                    f"in {self.text!r}"
                )
        return node

    def primary(self) -> Node:
        token = self.next()
        if token.kind == "number":
            if token.text.isdigit():
                return Literal(int(token.text))
            return Literal(float(token.text))
        if token.kind == "string":
            return Literal(_unquote(token.text))
        if token.kind == "name":
            if token.text in _KEYWORDS:
                return Literal(_KEYWORDS[token.text])
            if self.accept("("):
                return Call(token.text, self.arguments())
            return Name(token.text)
        if token.kind == "op" and token.text == "(":
            node = self.additive()
            self.expect(")")
            return node
        raise ExpressionError(
            f"Unexpected {token.text!r} at position {token.pos} in {self.text!r}"
        )

    def arguments(self) -> tuple[Node, ...]:
        args: list[Node] = []
        if self.accept(")"):
            return ()
        while True:
            args.append(self.additive())
            if self.accept(")"):
                return tuple(args)
            self.expect(",")


def parse(text: str) -> Node:
    """Parse *text* into an expression tree.

    Raises:
        ExpressionError: If *text* is not a valid expression.
    """
    return _Parser(text).parse()
