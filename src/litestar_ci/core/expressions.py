"""Typed expression language for conditions and templates.

Workflow documents carry expressions such as
``contains(github.event.head_commit.message, '.ipynb') || github.event_name == 'pull_request'``.
They are parsed once, at load time, into a small immutable AST and evaluated
against a read-only scope (event metadata, environment, matrix values, prior job
results) plus a status view answering ``success()``, ``failure()``,
``cancelled()``, ``always()`` and ``approved('gate')``. Nothing is ever spliced
into code; evaluation only walks the tree.

Example:
    >>> expr = parse_expression("github.event_name == 'pull_request'")
    >>> evaluate(expr, {"github": {"event_name": "pull_request"}})
    True
"""

from __future__ import annotations

import json
import math
import re
from collections.abc import Iterator, Mapping, Sequence
from dataclasses import dataclass
from functools import lru_cache
from types import MappingProxyType
from typing import Any, Protocol

from litestar_ci.exceptions import ExpressionError

__all__ = [
    "BinaryOp",
    "EvaluationScope",
    "Expression",
    "FunctionCall",
    "Literal",
    "Not",
    "Property",
    "StatusView",
    "Template",
    "Variable",
    "Wildcard",
    "evaluate",
    "evaluate_condition",
    "parse_expression",
    "parse_template",
    "referenced_contexts",
    "referenced_secrets",
    "render_template",
    "to_string",
    "truthy",
    "uses_status_function",
]

STATUS_FUNCTIONS = frozenset({"success", "failure", "always", "cancelled"})
"""Functions that make a condition opt out of the implicit ``success()``."""

_ARITY: dict[str, tuple[int, int | None]] = {
    "contains": (2, 2),
    "startswith": (2, 2),
    "endswith": (2, 2),
    "format": (1, None),
    "join": (1, 2),
    "tojson": (1, 1),
    "fromjson": (1, 1),
    "success": (0, 0),
    "failure": (0, 0),
    "always": (0, 0),
    "cancelled": (0, 0),
    "approved": (1, 1),
}

_WRAPPED = re.compile(r"^\s*\$\{\{(.*)\}\}\s*$", re.DOTALL)


class StatusView(Protocol):
    """Answers the status functions for the job or step being evaluated."""

    def success(self) -> bool:
        """Return True when every prior dependency (or step) succeeded."""
        ...

    def failure(self) -> bool:
        """Return True when any prior dependency (or step) failed."""
        ...

    def cancelled(self) -> bool:
        """Return True when the enclosing run was cancelled."""
        ...

    def approved(self, gate: str) -> bool:
        """Return True when the named approval gate was approved."""
        ...


@dataclass(frozen=True)
class EvaluationScope:
    """Read-only evaluation input.

    Attributes:
        values: Top-level contexts (``github``, ``env``, ``matrix``, ``needs``, ...).
        status: Status view for the status functions, if any.
    """

    values: Mapping[str, Any]
    status: StatusView | None = None

    def lookup(self, name: str) -> Any:
        return _get_key(self.values, name)


class _Filtered(list):  # type: ignore[type-arg]
    """List produced by a ``.*`` filter; property access maps over it."""


class Expression:
    """Base class of every expression node."""

    def evaluate(self, scope: EvaluationScope) -> Any:
        raise NotImplementedError

    def children(self) -> tuple[Expression, ...]:
        return ()

    def walk(self) -> Iterator[Expression]:
        """Yield this node and all of its descendants, depth first."""
        yield self
        for child in self.children():
            yield from child.walk()


@dataclass(frozen=True)
class Literal(Expression):
    """A string, number, boolean or null literal."""

    value: Any

    def evaluate(self, scope: EvaluationScope) -> Any:
        return self.value


@dataclass(frozen=True)
class Variable(Expression):
    """A top-level context name such as ``github`` or ``matrix``."""

    name: str

    def evaluate(self, scope: EvaluationScope) -> Any:
        return scope.lookup(self.name)


@dataclass(frozen=True)
class Property(Expression):
    """Property or index access: ``target.key`` or ``target[key]``."""

    target: Expression
    key: Expression

    def evaluate(self, scope: EvaluationScope) -> Any:
        container = self.target.evaluate(scope)
        key = self.key.evaluate(scope)
        if isinstance(container, _Filtered):
            return _Filtered(_access(item, key) for item in container)
        return _access(container, key)

    def children(self) -> tuple[Expression, ...]:
        return (self.target, self.key)


@dataclass(frozen=True)
class Wildcard(Expression):
    """Object filter ``target.*``: the values of a mapping or items of a list."""

    target: Expression

    def evaluate(self, scope: EvaluationScope) -> Any:
        container = self.target.evaluate(scope)
        if isinstance(container, Mapping):
            return _Filtered(container.values())
        if isinstance(container, list):
            return _Filtered(container)
        return _Filtered()

    def children(self) -> tuple[Expression, ...]:
        return (self.target,)


@dataclass(frozen=True)
class Not(Expression):
    """Logical negation."""

    operand: Expression

    def evaluate(self, scope: EvaluationScope) -> Any:
        return not truthy(self.operand.evaluate(scope))

    def children(self) -> tuple[Expression, ...]:
        return (self.operand,)


@dataclass(frozen=True)
class BinaryOp(Expression):
    """Logical or comparison operator."""

    op: str
    left: Expression
    right: Expression

    def evaluate(self, scope: EvaluationScope) -> Any:
        left = self.left.evaluate(scope)
        # && and || short-circuit and yield operand values, not booleans
        if self.op == "&&":
            return self.right.evaluate(scope) if truthy(left) else left
        if self.op == "||":
            return left if truthy(left) else self.right.evaluate(scope)

        right = self.right.evaluate(scope)
        if self.op == "==":
            return _loose_equals(left, right)
        if self.op == "!=":
            return not _loose_equals(left, right)
        return _compare(self.op, left, right)

    def children(self) -> tuple[Expression, ...]:
        return (self.left, self.right)


@dataclass(frozen=True)
class FunctionCall(Expression):
    """Call of a built-in function; ``name`` is stored lower-cased."""

    name: str
    args: tuple[Expression, ...]

    def evaluate(self, scope: EvaluationScope) -> Any:
        if self.name in STATUS_FUNCTIONS or self.name == "approved":
            return self._status(scope)

        values = [arg.evaluate(scope) for arg in self.args]
        if self.name == "contains":
            haystack, needle = values
            if isinstance(haystack, list):
                return any(_loose_equals(item, needle) for item in haystack)
            return to_string(needle).casefold() in to_string(haystack).casefold()
        if self.name == "startswith":
            return to_string(values[0]).casefold().startswith(to_string(values[1]).casefold())
        if self.name == "endswith":
            return to_string(values[0]).casefold().endswith(to_string(values[1]).casefold())
        if self.name == "format":
            return _format(to_string(values[0]), [to_string(v) for v in values[1:]])
        if self.name == "join":
            separator = to_string(values[1]) if len(values) > 1 else ","
            if isinstance(values[0], list):
                return separator.join(to_string(v) for v in values[0])
            return to_string(values[0])
        if self.name == "tojson":
            return json.dumps(values[0], indent=2, default=str)
        if self.name == "fromjson":
            try:
                return json.loads(to_string(values[0]))
            except json.JSONDecodeError as e:
                msg = f"fromJSON received invalid JSON: {e}"
                raise ValueError(msg) from e
        msg = f"Unknown function '{self.name}'"  # pragma: no cover
        raise ValueError(msg)  # pragma: no cover

    def _status(self, scope: EvaluationScope) -> bool:
        if self.name == "always":
            return True
        if scope.status is None:
            msg = f"{self.name}() is not available in this context"
            raise ValueError(msg)
        if self.name == "success":
            return scope.status.success()
        if self.name == "failure":
            return scope.status.failure()
        if self.name == "cancelled":
            return scope.status.cancelled()
        return scope.status.approved(to_string(self.args[0].evaluate(scope)))

    def children(self) -> tuple[Expression, ...]:
        return self.args


# ---------------------------------------------------------------------------
# Value semantics
# ---------------------------------------------------------------------------


def truthy(value: Any) -> bool:
    """Return the truthiness of an expression value.

    ``null``, ``false``, ``0``, ``-0``, ``NaN`` and ``''`` are falsy; everything
    else, including empty arrays and objects, is truthy.
    """
    if value is None or value is False:
        return False
    if isinstance(value, (int, float)) and not isinstance(value, bool):
        return not (value == 0 or math.isnan(value))
    if isinstance(value, str):
        return value != ""
    return True


def to_string(value: Any) -> str:
    """Convert an expression value to its string form."""
    if value is None:
        return ""
    if isinstance(value, bool):
        return "true" if value else "false"
    if isinstance(value, float) and value.is_integer():
        return str(int(value))
    if isinstance(value, (Mapping, list)):
        return json.dumps(value, default=str)
    return str(value)


def _to_number(value: Any) -> float:
    if value is None:
        return 0.0
    if isinstance(value, bool):
        return 1.0 if value else 0.0
    if isinstance(value, (int, float)):
        return float(value)
    if isinstance(value, str):
        text = value.strip()
        if not text:
            return 0.0
        try:
            return float(int(text, 16)) if text.lower().startswith("0x") else float(text)
        except ValueError:
            return math.nan
    return math.nan


def _loose_equals(left: Any, right: Any) -> bool:
    if isinstance(left, str) and isinstance(right, str):
        return left.casefold() == right.casefold()
    if isinstance(left, (Mapping, list)) or isinstance(right, (Mapping, list)):
        return left is right
    if left is None and right is None:
        return True
    return _to_number(left) == _to_number(right)


def _compare(op: str, left: Any, right: Any) -> bool:
    a: Any
    b: Any
    if isinstance(left, str) and isinstance(right, str):
        a, b = left.casefold(), right.casefold()
    else:
        a, b = _to_number(left), _to_number(right)
        if math.isnan(a) or math.isnan(b):
            return False
    if op == "<":
        return a < b
    if op == "<=":
        return a <= b
    if op == ">":
        return a > b
    return a >= b


def _get_key(container: Mapping[str, Any], key: str) -> Any:
    if key in container:
        return container[key]
    folded = key.casefold()
    for candidate, value in container.items():
        if isinstance(candidate, str) and candidate.casefold() == folded:
            return value
    return None


def _access(container: Any, key: Any) -> Any:
    if isinstance(container, Mapping):
        return _get_key(container, to_string(key))
    if isinstance(container, list):
        index = _to_number(key)
        if math.isnan(index) or not index.is_integer():
            return None
        position = int(index)
        return container[position] if 0 <= position < len(container) else None
    return None


def _format(template: str, args: list[str]) -> str:
    def replace(match: re.Match[str]) -> str:
        token = match.group(0)
        if token == "{{":
            return "{"
        if token == "}}":
            return "}"
        index = int(match.group(1))
        if index >= len(args):
            msg = f"format() has no argument for '{token}'"
            raise ValueError(msg)
        return args[index]

    return re.sub(r"\{\{|\}\}|\{(\d+)\}", replace, template)


# ---------------------------------------------------------------------------
# Tokenizer and parser
# ---------------------------------------------------------------------------


@dataclass(frozen=True)
class _Token:
    kind: str
    value: Any
    position: int


_PUNCTUATION = ("&&", "||", "==", "!=", "<=", ">=", "<", ">", "!", "(", ")", "[", "]", ".", ",", "*")
_IDENT = re.compile(r"[A-Za-z_][A-Za-z0-9_-]*")
_NUMBER = re.compile(r"-?(0x[0-9A-Fa-f]+|\d+(\.\d+)?([eE][+-]?\d+)?)")


def _tokenize(text: str) -> list[_Token]:
    tokens: list[_Token] = []
    i = 0
    while i < len(text):
        char = text[i]
        if char.isspace():
            i += 1
            continue
        if char == "'":
            j = i + 1
            chunks: list[str] = []
            while True:
                end = text.find("'", j)
                if end == -1:
                    raise ExpressionError(text, "unterminated string literal", i)
                chunks.append(text[j:end])
                if text.startswith("''", end):
                    chunks.append("'")
                    j = end + 2
                    continue
                j = end + 1
                break
            tokens.append(_Token("string", "".join(chunks), i))
            i = j
            continue
        number = _NUMBER.match(text, i)
        if number and (char != "-" or not tokens or tokens[-1].kind == "op"):
            raw = number.group(0)
            if raw.lower().lstrip("-").startswith("0x"):
                value: Any = int(raw, 16)
            elif "." in raw or "e" in raw.lower():
                value = float(raw)
            else:
                value = int(raw)
            tokens.append(_Token("number", value, i))
            i = number.end()
            continue
        ident = _IDENT.match(text, i)
        if ident:
            tokens.append(_Token("ident", ident.group(0), i))
            i = ident.end()
            continue
        for punct in _PUNCTUATION:
            if text.startswith(punct, i):
                tokens.append(_Token("op", punct, i))
                i += len(punct)
                break
        else:
            raise ExpressionError(text, f"unexpected character '{char}'", i)
    tokens.append(_Token("end", None, len(text)))
    return tokens


class _Parser:
    """Recursive-descent parser; precedence low to high: ``||``, ``&&``,
    equality, relational, unary ``!``, postfix access."""

    def __init__(self, text: str) -> None:
        self.text = text
        self.tokens = _tokenize(text)
        self.index = 0

    @property
    def current(self) -> _Token:
        return self.tokens[self.index]

    def _accept(self, *values: str) -> _Token | None:
        token = self.current
        if token.kind == "op" and token.value in values:
            self.index += 1
            return token
        return None

    def _expect(self, value: str) -> _Token:
        token = self._accept(value)
        if token is None:
            found = self.current.value if self.current.kind != "end" else "end of expression"
            raise ExpressionError(self.text, f"expected '{value}' but found '{found}'", self.current.position)
        return token

    def parse(self) -> Expression:
        if self.current.kind == "end":
            raise ExpressionError(self.text, "expression is empty", 0)
        expr = self._or()
        if self.current.kind != "end":
            raise ExpressionError(self.text, f"unexpected '{self.current.value}'", self.current.position)
        return expr

    def _or(self) -> Expression:
        expr = self._and()
        while self._accept("||"):
            expr = BinaryOp("||", expr, self._and())
        return expr

    def _and(self) -> Expression:
        expr = self._equality()
        while self._accept("&&"):
            expr = BinaryOp("&&", expr, self._equality())
        return expr

    def _equality(self) -> Expression:
        expr = self._relational()
        while token := self._accept("==", "!="):
            expr = BinaryOp(token.value, expr, self._relational())
        return expr

    def _relational(self) -> Expression:
        expr = self._unary()
        while token := self._accept("<", "<=", ">", ">="):
            expr = BinaryOp(token.value, expr, self._unary())
        return expr

    def _unary(self) -> Expression:
        if self._accept("!"):
            return Not(self._unary())
        return self._postfix(self._primary())

    def _primary(self) -> Expression:
        token = self.current
        if token.kind in ("string", "number"):
            self.index += 1
            return Literal(token.value)
        if self._accept("("):
            expr = self._or()
            self._expect(")")
            return expr
        if token.kind == "ident":
            self.index += 1
            lowered = token.value.lower()
            if lowered in ("true", "false"):
                return Literal(lowered == "true")
            if lowered == "null":
                return Literal(None)
            if self._accept("("):
                return self._call(token)
            return Variable(token.value)
        found = token.value if token.kind != "end" else "end of expression"
        raise ExpressionError(self.text, f"unexpected '{found}'", token.position)

    def _call(self, name: _Token) -> Expression:
        args: list[Expression] = []
        if not self._accept(")"):
            args.append(self._or())
            while self._accept(","):
                args.append(self._or())
            self._expect(")")
        lowered = name.value.lower()
        if lowered not in _ARITY:
            raise ExpressionError(self.text, f"unknown function '{name.value}'", name.position)
        low, high = _ARITY[lowered]
        if len(args) < low or (high is not None and len(args) > high):
            raise ExpressionError(
                self.text, f"{name.value}() takes {low}{'' if high == low else '+'} argument(s)", name.position
            )
        return FunctionCall(lowered, tuple(args))

    def _postfix(self, expr: Expression) -> Expression:
        while True:
            if self._accept("."):
                if self._accept("*"):
                    expr = Wildcard(expr)
                    continue
                token = self.current
                if token.kind != "ident":
                    raise ExpressionError(self.text, "expected a property name after '.'", token.position)
                self.index += 1
                expr = Property(expr, Literal(token.value))
            elif self._accept("["):
                if self._accept("*"):
                    self._expect("]")
                    expr = Wildcard(expr)
                    continue
                key = self._or()
                self._expect("]")
                expr = Property(expr, key)
            else:
                return expr


def _unwrap(text: str) -> str:
    match = _WRAPPED.match(text)
    if match and "${{" not in match.group(1):
        return match.group(1)
    return text


@lru_cache(maxsize=1024)
def parse_expression(text: str) -> Expression:
    """Parse an expression, with or without its ``${{ }}`` wrapper.

    Args:
        text: Expression source.

    Returns:
        The root of the parsed AST.

    Raises:
        ExpressionError: If the text is not a valid expression.
    """
    return _Parser(_unwrap(text).strip()).parse()


# ---------------------------------------------------------------------------
# Templates
# ---------------------------------------------------------------------------


@dataclass(frozen=True)
class Template:
    """A string with embedded ``${{ expr }}`` placeholders.

    Attributes:
        parts: Literal text chunks and parsed expressions, in order.
    """

    parts: tuple[str | Expression, ...]

    @property
    def expressions(self) -> tuple[Expression, ...]:
        return tuple(part for part in self.parts if isinstance(part, Expression))

    def render(self, scope: EvaluationScope) -> str:
        return "".join(part if isinstance(part, str) else to_string(part.evaluate(scope)) for part in self.parts)


def _closing_braces(text: str, start: int) -> int:
    in_string = False
    i = start
    while i < len(text):
        char = text[i]
        if char == "'":
            in_string = not in_string
        elif not in_string and text.startswith("}}", i):
            return i
        i += 1
    return -1


@lru_cache(maxsize=1024)
def parse_template(text: str) -> Template:
    """Split a string into literal chunks and parsed ``${{ }}`` expressions.

    Raises:
        ExpressionError: If a placeholder is unterminated or invalid.
    """
    parts: list[str | Expression] = []
    cursor = 0
    while True:
        start = text.find("${{", cursor)
        if start == -1:
            break
        end = _closing_braces(text, start + 3)
        if end == -1:
            raise ExpressionError(text, "unterminated '${{'", start)
        if start > cursor:
            parts.append(text[cursor:start])
        parts.append(_Parser(text[start + 3 : end].strip()).parse())
        cursor = end + 2
    if cursor < len(text):
        parts.append(text[cursor:])
    return Template(tuple(parts))


# ---------------------------------------------------------------------------
# Public evaluation helpers
# ---------------------------------------------------------------------------


def _scope(values: Mapping[str, Any], status: StatusView | None) -> EvaluationScope:
    return EvaluationScope(values=MappingProxyType(dict(values)), status=status)


def evaluate(expr: Expression, values: Mapping[str, Any], status: StatusView | None = None) -> Any:
    """Evaluate an expression against read-only contexts.

    Args:
        expr: Parsed expression.
        values: Top-level contexts.
        status: Status view for the status functions.

    Returns:
        The expression value; filter results are plain lists.
    """
    result = expr.evaluate(_scope(values, status))
    return list(result) if isinstance(result, _Filtered) else result


def uses_status_function(expr: Expression) -> bool:
    """Return True when the expression calls a status function."""
    return any(isinstance(node, FunctionCall) and node.name in STATUS_FUNCTIONS for node in expr.walk())


def evaluate_condition(expr: Expression | None, values: Mapping[str, Any], status: StatusView) -> bool:
    """Evaluate an ``if:`` condition.

    A condition without a status function is implicitly ``success() && <expr>``;
    a missing condition is ``success()``.
    """
    if expr is None:
        return status.success()
    if not uses_status_function(expr) and not status.success():
        return False
    return truthy(evaluate(expr, values, status))


def render_template(text: str, values: Mapping[str, Any], status: StatusView | None = None) -> str:
    """Expand every ``${{ }}`` placeholder in ``text``."""
    template = parse_template(text)
    if not template.expressions:
        return text
    return template.render(_scope(values, status))


def referenced_contexts(expressions: Sequence[Expression]) -> set[str]:
    """Collect the top-level contexts the expressions read, casefolded."""
    return {node.name.casefold() for expr in expressions for node in expr.walk() if isinstance(node, Variable)}


def referenced_secrets(expressions: Sequence[Expression]) -> set[str]:
    """Collect the names used as ``secrets.NAME`` or ``secrets['NAME']``."""
    names: set[str] = set()
    for expr in expressions:
        for node in expr.walk():
            if (
                isinstance(node, Property)
                and isinstance(node.target, Variable)
                and node.target.name.casefold() == "secrets"
                and isinstance(node.key, Literal)
            ):
                names.add(to_string(node.key.value))
    return names
