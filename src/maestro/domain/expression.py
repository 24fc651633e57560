"""Restricted condition language used by conditional steps and step guards.

Expressions are parsed into a small AST of variable references, literals,
comparisons and logical combinators. Nothing in this module executes code:
the only operations available are comparison and boolean logic over values
looked up from the workflow context.

Grammar::

    expr       := or_expr
    or_expr    := and_expr ("or" and_expr)*
    and_expr   := not_expr ("and" not_expr)*
    not_expr   := "not" not_expr | comparison
    comparison := operand (("==" | "!=" | ">" | "<" | ">=" | "<=") operand)?
    operand    := literal | variable | "(" expr ")"
    variable   := "$" namespace "." name ("." name)*
    literal    := string | number | "true" | "false" | "null"
"""

import re
from dataclasses import dataclass
from functools import lru_cache
from typing import Any, Callable, Iterator

from maestro.domain.error import ConditionEvaluationError

Lookup = Callable[[str, tuple[str, ...]], Any]

NAMESPACES = frozenset({"env", "params"})

_TOKEN_SPEC = [
    ("WS", r"\s+"),
    ("STRING", r'"(?:[^"\\]|\\.)*"|\'(?:[^\'\\]|\\.)*\''),
    ("NUMBER", r"-?\d+(?:\.\d+)?"),
    ("VAR", r"\$[A-Za-z_][A-Za-z0-9_]*(?:\.[A-Za-z_][A-Za-z0-9_\-]*)+"),
    ("OP", r"==|!=|>=|<=|>|<"),
    ("LPAREN", r"\("),
    ("RPAREN", r"\)"),
    ("WORD", r"[A-Za-z_][A-Za-z0-9_]*"),
]
_TOKEN_RE = re.compile("|".join(f"(?P<{kind}>{pattern})" for kind, pattern in _TOKEN_SPEC))
_KEYWORDS = {"and", "or", "not", "true", "false", "null"}
_ESCAPES = {"n": "\n", "t": "\t", "\\": "\\", '"': '"', "'": "'"}


@dataclass(frozen=True)
class Token:
    kind: str
    value: str
    position: int


@dataclass(frozen=True)
class Literal:
    value: Any

    def evaluate(self, lookup: Lookup) -> Any:
        return self.value

    def variables(self) -> Iterator["Variable"]:
        return iter(())


@dataclass(frozen=True)
class Variable:
    namespace: str
    path: tuple[str, ...]

    @property
    def reference(self) -> str:
        return "$" + ".".join((self.namespace, *self.path))

    def evaluate(self, lookup: Lookup) -> Any:
        return lookup(self.namespace, self.path)

    def variables(self) -> Iterator["Variable"]:
        yield self


@dataclass(frozen=True)
class Compare:
    op: str
    left: Any
    right: Any

    def evaluate(self, lookup: Lookup) -> bool:
        return compare(self.op, self.left.evaluate(lookup), self.right.evaluate(lookup))

    def variables(self) -> Iterator[Variable]:
        yield from self.left.variables()
        yield from self.right.variables()


@dataclass(frozen=True)
class And:
    operands: tuple[Any, ...]

    def evaluate(self, lookup: Lookup) -> bool:
        return all(truthy(operand.evaluate(lookup)) for operand in self.operands)

    def variables(self) -> Iterator[Variable]:
        for operand in self.operands:
            yield from operand.variables()


@dataclass(frozen=True)
class Or:
    operands: tuple[Any, ...]

    def evaluate(self, lookup: Lookup) -> bool:
        return any(truthy(operand.evaluate(lookup)) for operand in self.operands)

    def variables(self) -> Iterator[Variable]:
        for operand in self.operands:
            yield from operand.variables()


@dataclass(frozen=True)
class Not:
    operand: Any

    def evaluate(self, lookup: Lookup) -> bool:
        return not truthy(self.operand.evaluate(lookup))

    def variables(self) -> Iterator[Variable]:
        return self.operand.variables()


Node = Literal | Variable | Compare | And | Or | Not


def tokenize(expression: str) -> list[Token]:
    tokens = []
    position = 0
    while position < len(expression):
        match = _TOKEN_RE.match(expression, position)
        if match is None:
            raise ConditionEvaluationError(
                f"Unexpected character {expression[position]!r} at position {position}", expression
            )
        kind = match.lastgroup
        value = match.group()
        if kind == "WORD":
            if value.lower() not in _KEYWORDS:
                raise ConditionEvaluationError(
                    f"Unknown identifier '{value}' at position {position}; variables must start with '$'",
                    expression,
                )
            kind = value.lower().upper()
            value = value.lower()
        if kind != "WS":
            tokens.append(Token(kind, value, position))
        position = match.end()
    return tokens


class _Parser:
    def __init__(self, expression: str):
        self.expression = expression
        self.tokens = tokenize(expression)
        self.index = 0

    def parse(self) -> Node:
        if not self.tokens:
            raise ConditionEvaluationError("Condition expression is empty", self.expression)
        node = self._or()
        if self.index < len(self.tokens):
            token = self.tokens[self.index]
            raise ConditionEvaluationError(
                f"Unexpected token '{token.value}' at position {token.position}", self.expression
            )
        return node

    def _peek(self) -> Token | None:
        return self.tokens[self.index] if self.index < len(self.tokens) else None

    def _take(self, kind: str) -> Token | None:
        token = self._peek()
        if token is not None and token.kind == kind:
            self.index += 1
            return token
        return None

    def _or(self) -> Node:
        operands = [self._and()]
        while self._take("OR"):
            operands.append(self._and())
        return operands[0] if len(operands) == 1 else Or(tuple(operands))

    def _and(self) -> Node:
        operands = [self._not()]
        while self._take("AND"):
            operands.append(self._not())
        return operands[0] if len(operands) == 1 else And(tuple(operands))

    def _not(self) -> Node:
        if self._take("NOT"):
            return Not(self._not())
        return self._comparison()

    def _comparison(self) -> Node:
        left = self._operand()
        op = self._take("OP")
        if op is None:
            return left
        return Compare(op.value, left, self._operand())

    def _operand(self) -> Node:
        token = self._peek()
        if token is None:
            raise ConditionEvaluationError("Unexpected end of condition expression", self.expression)
        self.index += 1
        if token.kind == "LPAREN":
            node = self._or()
            if not self._take("RPAREN"):
                raise ConditionEvaluationError(
                    f"Missing ')' for '(' at position {token.position}", self.expression
                )
            return node
        if token.kind == "STRING":
            return Literal(_unquote(token.value))
        if token.kind == "NUMBER":
            return Literal(float(token.value) if "." in token.value else int(token.value))
        if token.kind in ("TRUE", "FALSE"):
            return Literal(token.kind == "TRUE")
        if token.kind == "NULL":
            return Literal(None)
        if token.kind == "VAR":
            namespace, *path = token.value[1:].split(".")
            if namespace not in NAMESPACES:
                raise ConditionEvaluationError(
                    f"Unknown variable namespace '${namespace}' at position {token.position}", self.expression
                )
            return Variable(namespace, tuple(path))
        raise ConditionEvaluationError(
            f"Unexpected token '{token.value}' at position {token.position}", self.expression
        )


def _unquote(raw: str) -> str:
    body = raw[1:-1]
    return re.sub(r"\\(.)", lambda m: _ESCAPES.get(m.group(1), m.group(1)), body)


@lru_cache(maxsize=512)
def parse(expression: str) -> Node:
    """
    Parse a condition expression into an AST.

    :param expression: The condition source text
    :type expression: str
    :returns: The root node of the expression
    :raises ConditionEvaluationError: If the expression is malformed
    """
    return _Parser(expression.strip()).parse()


def referenced_variables(expression: str) -> list[Variable]:
    """All variable references in an expression, in source order."""
    return list(parse(expression).variables())


def truthy(value: Any) -> bool:
    if isinstance(value, str):
        return value.strip().lower() not in {"", "false", "0", "no"}
    return bool(value)


def _is_number(value: Any) -> bool:
    return isinstance(value, (int, float)) and not isinstance(value, bool)


def _as_number(value: str) -> int | float | None:
    try:
        return int(value)
    except ValueError:
        pass
    try:
        return float(value)
    except ValueError:
        return None


def _align(left: Any, right: Any) -> tuple[Any, Any]:
    # Parameters often arrive as strings; compare them numerically against numeric literals.
    if _is_number(left) and isinstance(right, str):
        number = _as_number(right)
        if number is not None:
            return left, number
    if isinstance(left, str) and _is_number(right):
        number = _as_number(left)
        if number is not None:
            return number, right
    if isinstance(left, bool) and isinstance(right, str) and right.lower() in ("true", "false"):
        return left, right.lower() == "true"
    if isinstance(left, str) and isinstance(right, bool) and left.lower() in ("true", "false"):
        return left.lower() == "true", right
    return left, right


def compare(op: str, left: Any, right: Any) -> bool:
    left, right = _align(left, right)
    if op == "==":
        return left == right
    if op == "!=":
        return left != right
    comparable = (_is_number(left) and _is_number(right)) or (isinstance(left, str) and isinstance(right, str))
    if not comparable:
        raise ConditionEvaluationError(
            f"Cannot order {type(left).__name__} and {type(right).__name__} with '{op}'"
        )
    if op == ">":
        return left > right
    if op == "<":
        return left < right
    if op == ">=":
        return left >= right
    if op == "<=":
        return left <= right
    raise ConditionEvaluationError(f"Unsupported comparison operator: {op}")
