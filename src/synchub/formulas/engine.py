"""Formula engine for calculated fields.

A small, side-effect-free expression language evaluated with Decimal
arithmetic against a mapping of field values. Expressions are tokenized,
parsed by recursive descent into an immutable AST (cached per expression
string) and then evaluated.

Grammar:
    expr       := or_expr
    or_expr    := and_expr (("OR" | "||") and_expr)*
    and_expr   := not_expr (("AND" | "&&") not_expr)*
    not_expr   := ("NOT" | "!") not_expr | comparison
    comparison := additive (("=" | "==" | "!=" | "<>" | "<" | "<=" | ">" | ">=") additive)?
    additive   := term (("+" | "-") term)*
    term       := unary (("*" | "/" | "%") unary)*
    unary      := ("-" | "+") unary | primary
    primary    := NUMBER | STRING | TRUE | FALSE | NULL
                | IDENT "(" [expr ("," expr)*] ")" | IDENT | "(" expr ")"

Semantics:
- A field whose root name is absent from the mapping raises EvalError; a
  field that is present but None propagates None through arithmetic and
  comparisons.
- Failures that depend on the data rather than the syntax (division by
  zero, a non-numeric or non-finite operand, SQRT of a negative number)
  make that sub-expression None, so any expression validate() accepts
  evaluates without raising once every referenced field is supplied.
  test_formula() reports them as warnings.
- Dotted names walk nested mappings; walking through a list maps over its
  elements, so ``SUM(items.amount)`` sums ``amount`` over ``items``.
- Numeric strings in field values are read as numbers.

Exports:
    validate, evaluate, extract_field_references, test_formula, parse
"""

from __future__ import annotations

import math
import re
from collections.abc import Callable, Iterator, Mapping
from dataclasses import dataclass
from datetime import date, datetime
from decimal import (
    ROUND_CEILING,
    ROUND_FLOOR,
    ROUND_HALF_UP,
    Decimal,
    InvalidOperation,
    localcontext,
)
from functools import lru_cache
from typing import Any

from src.synchub.core.errors import EvalError, ValidationError
from src.synchub.formulas.schemas import (
    FormulaEvaluationResult,
    FormulaReturnType,
    ValidationResult,
)

DEFAULT_CURRENCY_PLACES = 2

KEYWORDS = frozenset({"AND", "OR", "NOT", "TRUE", "FALSE", "NULL"})

# name -> (min args, max args or None for variadic)
FUNCTION_ARITY: dict[str, tuple[int, int | None]] = {
    "SUM": (1, None),
    "IF": (3, 3),
    "IFGT": (4, 4),
    "COALESCE": (1, None),
    "ABS": (1, 1),
    "ROUND": (1, 2),
    "CEIL": (1, 1),
    "FLOOR": (1, 1),
    "SQRT": (1, 1),
    "MIN": (1, None),
    "MAX": (1, None),
    "LEN": (1, 1),
    "CONCAT": (1, None),
}


# ── Tokenizer ───────────────────────────────────────────────────────────────


@dataclass(frozen=True, slots=True)
class Token:
    kind: str  # NUMBER | STRING | IDENT | OP | EOF
    value: str
    position: int


_TOKEN_RE = re.compile(
    r"""
    (?P<WS>\s+)
    | (?P<NUMBER>\d+(?:\.\d+)?|\.\d+)
    | (?P<STRING>"(?:[^"\\]|\\.)*"|'(?:[^'\\]|\\.)*')
    | (?P<IDENT>[A-Za-z_][A-Za-z0-9_]*(?:\.[A-Za-z0-9_]+)*)
    | (?P<OP>==|!=|<>|<=|>=|&&|\|\||[=<>+\-*/%!(),])
    """,
    re.VERBOSE,
)

_ESCAPE_RE = re.compile(r"\\(.)")


def tokenize(expression: str) -> list[Token]:
    """Split an expression into tokens.

    Raises:
        ValidationError: On an unterminated string or an unexpected character.
    """
    tokens: list[Token] = []
    pos = 0
    length = len(expression)
    while pos < length:
        match = _TOKEN_RE.match(expression, pos)
        if match is None:
            char = expression[pos]
            if char in "\"'":
                raise ValidationError(f"Unterminated string starting at position {pos}", pos)
            raise ValidationError(f"Unexpected character '{char}' at position {pos}", pos)
        kind = match.lastgroup or ""
        text = match.group()
        if kind == "NUMBER" and match.end() < length and expression[match.end()] == ".":
            raise ValidationError(f"Malformed number at position {pos}", pos)
        if kind == "STRING":
            text = _ESCAPE_RE.sub(r"\1", text[1:-1])
        if kind != "WS":
            tokens.append(Token(kind, text, pos))
        pos = match.end()
    tokens.append(Token("EOF", "", length))
    return tokens


# ── AST ─────────────────────────────────────────────────────────────────────


@dataclass(frozen=True, slots=True)
class Literal:
    value: Any


@dataclass(frozen=True, slots=True)
class FieldRef:
    name: str
    position: int


@dataclass(frozen=True, slots=True)
class Unary:
    op: str
    operand: Node


@dataclass(frozen=True, slots=True)
class Binary:
    op: str
    left: Node
    right: Node


@dataclass(frozen=True, slots=True)
class Call:
    name: str
    args: tuple[Node, ...]
    position: int


Node = Literal | FieldRef | Unary | Binary | Call


# ── Parser ──────────────────────────────────────────────────────────────────


_COMPARISON_OPS = frozenset({"=", "==", "!=", "<>", "<", "<=", ">", ">="})


class _Parser:
    """Recursive-descent parser over a token list."""

    def __init__(self, tokens: list[Token]) -> None:
        self._tokens = tokens
        self._index = 0

    @property
    def _current(self) -> Token:
        return self._tokens[self._index]

    def _advance(self) -> Token:
        token = self._tokens[self._index]
        if token.kind != "EOF":
            self._index += 1
        return token

    def _at_op(self, *ops: str) -> bool:
        token = self._current
        return token.kind == "OP" and token.value in ops

    def _at_keyword(self, *words: str) -> bool:
        token = self._current
        return token.kind == "IDENT" and token.value.upper() in words

    def _unexpected(self) -> ValidationError:
        token = self._current
        if token.kind == "EOF":
            return ValidationError(f"Unexpected end of expression at position {token.position}", token.position)
        if token.kind == "OP" and token.value == ")":
            return ValidationError(
                f"Unbalanced parenthesis: unexpected ')' at position {token.position}", token.position
            )
        return ValidationError(f"Unexpected token '{token.value}' at position {token.position}", token.position)

    def parse(self) -> Node:
        if self._current.kind == "EOF":
            raise ValidationError("Formula expression is empty", 0)
        node = self._or()
        if self._current.kind != "EOF":
            raise self._unexpected()
        return node

    def _or(self) -> Node:
        node = self._and()
        while self._at_op("||") or self._at_keyword("OR"):
            self._advance()
            node = Binary("OR", node, self._and())
        return node

    def _and(self) -> Node:
        node = self._not()
        while self._at_op("&&") or self._at_keyword("AND"):
            self._advance()
            node = Binary("AND", node, self._not())
        return node

    def _not(self) -> Node:
        if self._at_op("!") or self._at_keyword("NOT"):
            self._advance()
            return Unary("NOT", self._not())
        return self._comparison()

    def _comparison(self) -> Node:
        node = self._additive()
        if self._current.kind == "OP" and self._current.value in _COMPARISON_OPS:
            op = self._advance().value
            node = Binary(op, node, self._additive())
        return node

    def _additive(self) -> Node:
        node = self._term()
        while self._at_op("+", "-"):
            op = self._advance().value
            node = Binary(op, node, self._term())
        return node

    def _term(self) -> Node:
        node = self._unary()
        while self._at_op("*", "/", "%"):
            op = self._advance().value
            node = Binary(op, node, self._unary())
        return node

    def _unary(self) -> Node:
        if self._at_op("-", "+"):
            op = self._advance().value
            return Unary(op, self._unary())
        return self._primary()

    def _primary(self) -> Node:
        token = self._current

        if token.kind == "NUMBER":
            self._advance()
            return Literal(Decimal(token.value))
        if token.kind == "STRING":
            self._advance()
            return Literal(token.value)

        if token.kind == "IDENT":
            upper = token.value.upper()
            if upper in ("TRUE", "FALSE"):
                self._advance()
                return Literal(upper == "TRUE")
            if upper == "NULL":
                self._advance()
                return Literal(None)
            if upper in KEYWORDS:
                raise self._unexpected()
            self._advance()
            if self._at_op("("):
                return self._call(token)
            return FieldRef(token.value, token.position)

        if self._at_op("("):
            self._advance()
            node = self._or()
            if not self._at_op(")"):
                if self._current.kind == "EOF":
                    raise ValidationError(
                        f"Unbalanced parenthesis: '(' at position {token.position} is never closed",
                        token.position,
                    )
                raise self._unexpected()
            self._advance()
            return node

        raise self._unexpected()

    def _call(self, name_token: Token) -> Node:
        name = name_token.value.upper()
        open_paren = self._advance()
        if name not in FUNCTION_ARITY:
            raise ValidationError(
                f"Unknown function '{name_token.value}' at position {name_token.position}",
                name_token.position,
            )

        args: list[Node] = []
        if not self._at_op(")"):
            args.append(self._or())
            while self._at_op(","):
                self._advance()
                args.append(self._or())
        if not self._at_op(")"):
            if self._current.kind == "EOF":
                raise ValidationError(
                    f"Unbalanced parenthesis: '(' at position {open_paren.position} is never closed",
                    open_paren.position,
                )
            raise self._unexpected()
        self._advance()

        minimum, maximum = FUNCTION_ARITY[name]
        if len(args) < minimum or (maximum is not None and len(args) > maximum):
            if maximum is None:
                expected = f"at least {minimum}"
            elif minimum == maximum:
                expected = str(minimum)
            else:
                expected = f"{minimum} to {maximum}"
            raise ValidationError(
                f"{name} expects {expected} argument(s), got {len(args)} "
                f"at position {name_token.position}",
                name_token.position,
            )
        return Call(name, tuple(args), name_token.position)


@lru_cache(maxsize=512)
def parse(expression: str) -> Node:
    """Parse an expression into an AST (cached per expression string).

    Raises:
        ValidationError: If the expression is syntactically invalid.
    """
    return _Parser(tokenize(expression)).parse()


# ── Value Helpers ───────────────────────────────────────────────────────────


_NUMERIC_RE = re.compile(r"^\s*[-+]?(\d+(\.\d*)?|\.\d+)\s*$")


class _NullResult(Exception):
    """A data-dependent failure; the enclosing sub-expression evaluates to None."""


def _coerce_input(value: Any) -> Any:
    """Normalize a field value for evaluation (numbers become Decimal)."""
    if isinstance(value, bool) or value is None:
        return value
    if isinstance(value, Decimal):
        return value if value.is_finite() else None
    if isinstance(value, int):
        return Decimal(value)
    if isinstance(value, float):
        if math.isnan(value) or math.isinf(value):
            return None
        return Decimal(str(value))
    if isinstance(value, str) and _NUMERIC_RE.match(value):
        return Decimal(value.strip())
    if isinstance(value, (list, tuple)):
        return [_coerce_input(v) for v in value]
    return value


def _to_number(value: Any, context: str) -> Decimal:
    number: Decimal | None = None
    if isinstance(value, bool):
        number = Decimal(int(value))
    elif isinstance(value, Decimal):
        number = value
    elif isinstance(value, str):
        try:
            number = Decimal(value.strip())
        except InvalidOperation:
            pass
    if number is not None and number.is_finite():
        return number
    raise _NullResult(f"{context} expects a number, got {_describe(value)}")


def _describe(value: Any) -> str:
    if isinstance(value, str):
        return f"text '{value}'"
    if isinstance(value, list):
        return "a list"
    return type(value).__name__


def _truthy(value: Any) -> bool:
    if value is None:
        return False
    if isinstance(value, Decimal):
        return value != 0
    return bool(value)


def _format(value: Any) -> str:
    if value is None:
        return ""
    if isinstance(value, Decimal):
        return format(value, "f")
    return str(value)


def _flatten(values: tuple[Any, ...] | list[Any]) -> Iterator[Any]:
    for value in values:
        if isinstance(value, list):
            yield from _flatten(value)
        else:
            yield value


# ── Evaluator ───────────────────────────────────────────────────────────────


class _Evaluator:
    """Walks an AST against one field-value mapping."""

    def __init__(self, field_values: Mapping[str, Any]) -> None:
        self._values = field_values
        self.warnings: list[str] = []

    def eval(self, node: Node) -> Any:
        try:
            return self._eval_node(node)
        except _NullResult as exc:
            self.warnings.append(str(exc))
        except ArithmeticError:
            self.warnings.append("Arithmetic result out of range")
        return None

    def _eval_node(self, node: Node) -> Any:
        if isinstance(node, Literal):
            return node.value
        if isinstance(node, FieldRef):
            return self._field(node)
        if isinstance(node, Unary):
            return self._unary(node)
        if isinstance(node, Binary):
            return self._binary(node)
        return self._call(node)

    def _field(self, node: FieldRef) -> Any:
        root, *path = node.name.split(".")
        if root not in self._values:
            raise EvalError(f"Field '{root}' not found")
        current: Any = self._values[root]
        for part in path:
            current = self._step(current, part, node.name)
        return _coerce_input(current)

    def _step(self, current: Any, part: str, name: str) -> Any:
        if current is None:
            return None
        if isinstance(current, Mapping):
            return current.get(part)
        if isinstance(current, (list, tuple)):
            return [self._step(item, part, name) for item in current]
        raise _NullResult(f"Cannot read '{part}' of {_describe(current)} in '{name}'")

    def _unary(self, node: Unary) -> Any:
        value = self.eval(node.operand)
        if node.op == "NOT":
            return None if value is None else not _truthy(value)
        if value is None:
            return None
        number = _to_number(value, f"Unary '{node.op}'")
        return -number if node.op == "-" else number

    def _binary(self, node: Binary) -> Any:
        if node.op == "AND":
            return _truthy(self.eval(node.left)) and _truthy(self.eval(node.right))
        if node.op == "OR":
            return _truthy(self.eval(node.left)) or _truthy(self.eval(node.right))

        left = self.eval(node.left)
        right = self.eval(node.right)
        if left is None or right is None:
            return None
        if node.op in _COMPARISON_OPS:
            return self._compare(node.op, left, right)

        if node.op == "+" and (isinstance(left, str) or isinstance(right, str)):
            return _format(left) + _format(right)

        a = _to_number(left, f"Operator '{node.op}'")
        b = _to_number(right, f"Operator '{node.op}'")
        if node.op == "+":
            return a + b
        if node.op == "-":
            return a - b
        if node.op == "*":
            return a * b
        if b == 0:
            raise _NullResult("Division by zero")
        if node.op == "/":
            return a / b
        return a % b

    @staticmethod
    def _compare(op: str, left: Any, right: Any) -> bool:
        numeric = (Decimal, bool)
        if isinstance(left, numeric) and isinstance(right, numeric):
            left, right = _to_number(left, op), _to_number(right, op)
        if op in ("=", "=="):
            return left == right
        if op in ("!=", "<>"):
            return left != right
        if type(left) is not type(right):
            raise _NullResult(f"Cannot compare {_describe(left)} with {_describe(right)}")
        try:
            if op == "<":
                return left < right
            if op == "<=":
                return left <= right
            if op == ">":
                return left > right
            return left >= right
        except TypeError:
            raise _NullResult(f"Cannot compare {_describe(left)} with {_describe(right)}") from None

    def _call(self, node: Call) -> Any:
        # Conditionals only evaluate the branch they return
        if node.name == "IF":
            condition, when_true, when_false = node.args
            return self.eval(when_true if _truthy(self.eval(condition)) else when_false)
        if node.name == "IFGT":
            value, compare, when_true, when_false = node.args
            number = self.eval(value)
            threshold = self.eval(compare)
            if threshold is None:
                return None
            number = Decimal(0) if number is None else _to_number(number, "IFGT")
            greater = number > _to_number(threshold, "IFGT")
            return self.eval(when_true if greater else when_false)
        if node.name == "COALESCE":
            for arg in node.args:
                value = self.eval(arg)
                if value is not None:
                    return value
            return None

        args = [self.eval(arg) for arg in node.args]
        return _FUNCTIONS[node.name](args)


# ── Built-in Functions ──────────────────────────────────────────────────────


def _fn_sum(args: list[Any]) -> Decimal:
    return sum(
        (_to_number(v, "SUM") for v in _flatten(args) if v is not None),
        Decimal(0),
    )


def _fn_extreme(name: str, pick: Callable[..., Decimal]) -> Callable[[list[Any]], Decimal | None]:
    def _fn(args: list[Any]) -> Decimal | None:
        numbers = [_to_number(v, name) for v in _flatten(args) if v is not None]
        return pick(numbers) if numbers else None

    return _fn


def _unary_numeric(name: str, op: Callable[[Decimal], Decimal]) -> Callable[[list[Any]], Decimal | None]:
    def _fn(args: list[Any]) -> Decimal | None:
        if args[0] is None:
            return None
        return op(_to_number(args[0], name))

    return _fn


def _fn_round(args: list[Any]) -> Decimal | None:
    value = args[0]
    places = args[1] if len(args) > 1 else Decimal(0)
    if value is None or places is None:
        return None
    places_number = _to_number(places, "ROUND")
    if places_number != places_number.to_integral_value():
        raise _NullResult("ROUND expects a whole number of decimal places")
    exponent = Decimal(1).scaleb(-int(places_number))
    return _to_number(value, "ROUND").quantize(exponent, rounding=ROUND_HALF_UP)


def _sqrt(value: Decimal) -> Decimal:
    if value < 0:
        raise _NullResult("SQRT of a negative number")
    return value.sqrt()


def _fn_len(args: list[Any]) -> Decimal | None:
    value = args[0]
    if value is None:
        return None
    if isinstance(value, (str, list)):
        return Decimal(len(value))
    return Decimal(len(_format(value)))


def _fn_concat(args: list[Any]) -> str:
    return "".join(_format(v) for v in _flatten(args))


_FUNCTIONS: dict[str, Callable[[list[Any]], Any]] = {
    "SUM": _fn_sum,
    "ABS": _unary_numeric("ABS", abs),
    "ROUND": _fn_round,
    "CEIL": _unary_numeric("CEIL", lambda v: v.to_integral_value(rounding=ROUND_CEILING)),
    "FLOOR": _unary_numeric("FLOOR", lambda v: v.to_integral_value(rounding=ROUND_FLOOR)),
    "SQRT": _unary_numeric("SQRT", _sqrt),
    "MIN": _fn_extreme("MIN", min),
    "MAX": _fn_extreme("MAX", max),
    "LEN": _fn_len,
    "CONCAT": _fn_concat,
}


# ── Return Type Coercion ────────────────────────────────────────────────────


def _coerce_result(
    value: Any, return_type: FormulaReturnType, decimal_places: int | None
) -> Any:
    if value is None:
        return None

    if return_type == FormulaReturnType.CURRENCY:
        places = DEFAULT_CURRENCY_PLACES if decimal_places is None else decimal_places
        number = _to_number(value, "Currency result")
        # quantize needs room for every integer digit plus the places
        with localcontext() as ctx:
            ctx.prec = max(ctx.prec, number.adjusted() + places + 2)
            return number.quantize(Decimal(1).scaleb(-places), rounding=ROUND_HALF_UP)
    if return_type == FormulaReturnType.NUMBER:
        return _to_number(value, "Number result")
    if return_type == FormulaReturnType.TEXT:
        return _format(value)
    if return_type == FormulaReturnType.BOOLEAN:
        return value if isinstance(value, bool) else _truthy(value)

    # DATE
    if isinstance(value, (date, datetime)):
        return value
    if isinstance(value, str):
        try:
            parsed = datetime.fromisoformat(value.replace("Z", "+00:00"))
        except ValueError:
            raise _NullResult(f"Date result is not an ISO date: '{value}'") from None
        return parsed.date() if len(value) <= 10 else parsed
    raise _NullResult(f"Date result expects a date, got {_describe(value)}")


# ── Public API ──────────────────────────────────────────────────────────────


def validate(expression: str) -> ValidationResult:
    """Syntax-only check; never evaluates against data."""
    try:
        parse(expression)
    except ValidationError as exc:
        return ValidationResult(valid=False, error=str(exc))
    return ValidationResult(valid=True)


def evaluate(
    expression: str,
    field_values: Mapping[str, Any],
    return_type: FormulaReturnType | str = FormulaReturnType.NUMBER,
    decimal_places: int | None = None,
) -> Any:
    """Evaluate an expression and coerce the result to ``return_type``.

    Args:
        expression: Formula source.
        field_values: Field name -> value. Missing names are errors; None
            values propagate.
        return_type: Declared result type.
        decimal_places: Currency precision (default 2); ignored otherwise.

    Returns:
        The coerced value, or None when a null propagated to the result or a
        data-dependent failure (such as division by zero) nulled it.

    Raises:
        ValidationError: If the expression is syntactically invalid.
        EvalError: If a referenced field is absent from ``field_values``.
    """
    value, _ = _evaluate(expression, field_values, FormulaReturnType(return_type), decimal_places)
    return value


def _evaluate(
    expression: str,
    field_values: Mapping[str, Any],
    return_type: FormulaReturnType,
    decimal_places: int | None,
) -> tuple[Any, list[str]]:
    node = parse(expression)
    evaluator = _Evaluator(field_values)
    raw = evaluator.eval(node)
    try:
        value = _coerce_result(raw, return_type, decimal_places)
    except _NullResult as exc:
        evaluator.warnings.append(str(exc))
        value = None
    except ArithmeticError:
        evaluator.warnings.append("Arithmetic result out of range")
        value = None
    return value, evaluator.warnings


_REFERENCE_SCAN_RE = re.compile(
    r"""
    (?P<string>"(?:[^"\\]|\\.)*"?|'(?:[^'\\]|\\.)*'?)
    | (?P<number>\d+(?:\.\d+)*)
    | (?P<ident>[A-Za-z_][A-Za-z0-9_]*(?:\.[A-Za-z0-9_]+)*)(?P<call>\s*\()?
    """,
    re.VERBOSE,
)


def extract_field_references(expression: str) -> list[str]:
    """Distinct field names in order of first appearance.

    A token scan, not a parse, so it also works on partially invalid input.
    Function calls and keywords are excluded.
    """
    seen: dict[str, None] = {}
    for match in _REFERENCE_SCAN_RE.finditer(expression):
        name = match.group("ident")
        if not name or match.group("call") or name.upper() in KEYWORDS:
            continue
        seen.setdefault(name, None)
    return list(seen)


def test_formula(
    expression: str,
    field_values: Mapping[str, Any],
    return_type: FormulaReturnType | str = FormulaReturnType.NUMBER,
    decimal_places: int | None = None,
) -> FormulaEvaluationResult:
    """evaluate() that reports failures in the result instead of raising."""
    declared = FormulaReturnType(return_type)
    try:
        value, warnings = _evaluate(expression, field_values, declared, decimal_places)
    except (ValidationError, EvalError) as exc:
        return FormulaEvaluationResult(value=None, error=str(exc), return_type=declared)
    return FormulaEvaluationResult(value=value, warnings=warnings, return_type=declared)


# Not a pytest test
test_formula.__test__ = False  # type: ignore[attr-defined]
