"""Small arithmetic/boolean expression language for free-form string conditions.

Expressions are tokenized and parsed into a closed set of node types and then
interpreted directly; nothing is handed to Python's ``eval``.
"""

from __future__ import annotations

import operator
import re
from dataclasses import dataclass
from typing import Any, Callable, Union

from rulecraft.core.errors import ExpressionError

from .context import stringify

_TOKEN_RE = re.compile(
    r"""
    (?P<ws>\s+)
  | (?P<number>\d+\.\d*|\.\d+|\d+)(?:[eE][+-]?\d+)?
  | (?P<string>"(?:[^"\\]|\\.)*"|'(?:[^'\\]|\\.)*')
  | (?P<op>===|!==|\*\*|==|!=|<=|>=|&&|\|\||[-+*/%<>!()\[\],])
  | (?P<name>[A-Za-z_][A-Za-z0-9_]*)
    """,
    re.VERBOSE,
)

_KEYWORD_LITERALS: dict[str, Any] = {
    "true": True,
    "True": True,
    "false": False,
    "False": False,
    "null": None,
    "None": None,
    "undefined": None,
}
_WORD_OPERATORS = {"and": "&&", "or": "||", "not": "not", "in": "in"}
_MAX_EXPRESSION_LENGTH = 4096
_MAX_EXPONENT = 1024
_MAX_INT_BITS = 16384
_MAX_SEQUENCE_LENGTH = 100_000

_ESCAPE_RE = re.compile(r"\\(u[0-9a-fA-F]{4}|.)")
_ESCAPES = {"n": "\n", "t": "\t", "r": "\r", "b": "\b", "f": "\f"}


@dataclass(frozen=True)
class Token:
    kind: str
    text: str
    position: int


@dataclass(frozen=True)
class Literal:
    value: Any


@dataclass(frozen=True)
class ListLiteral:
    items: tuple[Expr, ...]


@dataclass(frozen=True)
class Unary:
    op: str
    operand: Expr


@dataclass(frozen=True)
class Binary:
    op: str
    left: Expr
    right: Expr


@dataclass(frozen=True)
class Logical:
    op: str
    left: Expr
    right: Expr


@dataclass(frozen=True)
class Compare:
    op: str
    left: Expr
    right: Expr


Expr = Union[Literal, ListLiteral, Unary, Binary, Logical, Compare]


def tokenize(source: str) -> list[Token]:
    if len(source) > _MAX_EXPRESSION_LENGTH:
        raise ExpressionError("Expression too long")
    tokens: list[Token] = []
    position = 0
    while position < len(source):
        match = _TOKEN_RE.match(source, position)
        if match is None:
            raise ExpressionError(f"Unexpected character {source[position]!r} at {position}")
        kind = match.lastgroup or ""
        text = match.group(0)
        if kind == "name" and text in _WORD_OPERATORS:
            tokens.append(Token("op", _WORD_OPERATORS[text], position))
        elif kind != "ws":
            tokens.append(Token(kind, text, position))
        position = match.end()
    tokens.append(Token("end", "", position))
    return tokens


class Parser:
    def __init__(self, source: str) -> None:
        self.source = source
        self.tokens = tokenize(source)
        self.index = 0

    def parse(self) -> Expr:
        node = self._or()
        if self._peek().kind != "end":
            token = self._peek()
            raise ExpressionError(f"Unexpected token {token.text!r} at {token.position}")
        return node

    def _peek(self) -> Token:
        return self.tokens[self.index]

    def _accept(self, *ops: str) -> Token | None:
        token = self._peek()
        if token.kind == "op" and token.text in ops:
            self.index += 1
            return token
        return None

    def _expect(self, op: str) -> None:
        if self._accept(op) is None:
            token = self._peek()
            raise ExpressionError(f"Expected {op!r} at {token.position}, found {token.text or 'end of input'!r}")

    def _or(self) -> Expr:
        node = self._and()
        while self._accept("||"):
            node = Logical("||", node, self._and())
        return node

    def _and(self) -> Expr:
        node = self._not()
        while self._accept("&&"):
            node = Logical("&&", node, self._not())
        return node

    def _not(self) -> Expr:
        if self._accept("not"):
            return Unary("!", self._not())
        return self._comparison()

    def _comparison(self) -> Expr:
        node = self._additive()
        while True:
            token = self._accept("==", "===", "!=", "!==", "<", "<=", ">", ">=", "in")
            if token is None:
                return node
            node = Compare(token.text, node, self._additive())

    def _additive(self) -> Expr:
        node = self._multiplicative()
        while True:
            token = self._accept("+", "-")
            if token is None:
                return node
            node = Binary(token.text, node, self._multiplicative())

    def _multiplicative(self) -> Expr:
        node = self._unary()
        while True:
            token = self._accept("*", "/", "%")
            if token is None:
                return node
            node = Binary(token.text, node, self._unary())

    def _unary(self) -> Expr:
        token = self._accept("!", "-", "+")
        if token is not None:
            return Unary(token.text, self._unary())
        return self._power()

    def _power(self) -> Expr:
        base = self._primary()
        if self._accept("**"):
            return Binary("**", base, self._unary())
        return base

    def _primary(self) -> Expr:
        token = self._peek()
        if token.kind == "number":
            self.index += 1
            text = token.text
            is_float = any(ch in text for ch in ".eE")
            return Literal(float(text) if is_float else int(text))
        if token.kind == "string":
            self.index += 1
            return Literal(_unquote(token.text))
        if token.kind == "name":
            self.index += 1
            if token.text in _KEYWORD_LITERALS:
                return Literal(_KEYWORD_LITERALS[token.text])
            raise ExpressionError(f"Unknown identifier {token.text!r} at {token.position}")
        if self._accept("("):
            node = self._or()
            self._expect(")")
            return node
        if self._accept("["):
            items: list[Expr] = []
            if not self._accept("]"):
                items.append(self._or())
                while self._accept(","):
                    items.append(self._or())
                self._expect("]")
            return ListLiteral(tuple(items))
        raise ExpressionError(f"Unexpected token {token.text or 'end of input'!r} at {token.position}")


def _unquote(text: str) -> str:
    return _ESCAPE_RE.sub(_unescape, text[1:-1])


def _unescape(match: re.Match[str]) -> str:
    escaped = match.group(1)
    if escaped[0] == "u" and len(escaped) == 5:
        return chr(int(escaped[1:], 16))
    return _ESCAPES.get(escaped, escaped)


def parse(source: str) -> Expr:
    return Parser(source).parse()


_ARITHMETIC: dict[str, Callable[[Any, Any], Any]] = {
    "-": operator.sub,
    "*": operator.mul,
    "/": operator.truediv,
    "%": operator.mod,
    "**": operator.pow,
}
_ORDERING: dict[str, Callable[[Any, Any], bool]] = {
    "<": operator.lt,
    "<=": operator.le,
    ">": operator.gt,
    ">=": operator.ge,
}


def strict_equals(left: Any, right: Any) -> bool:
    if isinstance(left, bool) != isinstance(right, bool):
        return False
    return bool(left == right)


def _is_int(value: Any) -> bool:
    return isinstance(value, int) and not isinstance(value, bool)


def _check_operands(op: str, left: Any, right: Any) -> None:
    """Reject arithmetic whose result could not be computed in bounded time and memory."""
    if op == "**" and _is_int(right):
        if abs(right) > _MAX_EXPONENT:
            raise ExpressionError(f"Exponent {right} exceeds the limit of {_MAX_EXPONENT}")
        if _is_int(left) and right > 0 and left.bit_length() * right > _MAX_INT_BITS:
            raise ExpressionError("Result of '**' is too large")
    elif op == "*":
        for sequence, count in ((left, right), (right, left)):
            if isinstance(sequence, (str, list)) and _is_int(count) and len(sequence) * count > _MAX_SEQUENCE_LENGTH:
                raise ExpressionError("Result of '*' is too long")


def interpret(node: Expr) -> Any:
    if isinstance(node, Literal):
        return node.value
    if isinstance(node, ListLiteral):
        return [interpret(item) for item in node.items]
    if isinstance(node, Unary):
        value = interpret(node.operand)
        if node.op == "!":
            return not value
        if not isinstance(value, (int, float)) or isinstance(value, bool):
            raise ExpressionError(f"Unary {node.op!r} requires a number")
        return -value if node.op == "-" else value
    if isinstance(node, Logical):
        left = interpret(node.left)
        if node.op == "&&":
            return interpret(node.right) if left else left
        return left if left else interpret(node.right)
    if isinstance(node, Compare):
        left = interpret(node.left)
        right = interpret(node.right)
        if node.op in ("==", "==="):
            return strict_equals(left, right)
        if node.op in ("!=", "!=="):
            return not strict_equals(left, right)
        if node.op == "in":
            if not isinstance(right, (list, str, dict)):
                raise ExpressionError("Right operand of 'in' must be a list, string or object")
            return left in right
        try:
            return _ORDERING[node.op](left, right)
        except TypeError as exc:
            raise ExpressionError(f"Cannot compare {type(left).__name__} and {type(right).__name__}") from exc
    if isinstance(node, Binary):
        left = interpret(node.left)
        right = interpret(node.right)
        if node.op == "+" and (isinstance(left, str) or isinstance(right, str)):
            return stringify(left) + stringify(right)
        _check_operands(node.op, left, right)
        try:
            if node.op == "+":
                result = left + right
            else:
                result = _ARITHMETIC[node.op](left, right)
        except ZeroDivisionError as exc:
            raise ExpressionError("Division by zero") from exc
        except OverflowError as exc:
            raise ExpressionError(f"Result of {node.op!r} is too large") from exc
        except TypeError as exc:
            raise ExpressionError(f"Unsupported operands for {node.op!r}") from exc
        if _is_int(result) and result.bit_length() > _MAX_INT_BITS:
            raise ExpressionError(f"Result of {node.op!r} is too large")
        return result
    raise ExpressionError(f"Unsupported expression node: {type(node).__name__}")


def evaluate_expression(source: str) -> bool:
    return bool(interpret(parse(source)))
