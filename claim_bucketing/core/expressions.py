"""
Grouping expressions for CUSTOM bucketing rules.

A grouping expression is a SQL-style boolean condition over claim fields,
for example:

    payer_id = 'ACME' AND paid_amount >= 100
    bin_number IN ('610014', '004336') OR patient_name LIKE 'SMITH%'

Expressions are parsed with sqlglot and evaluated in-process against a
claim's field values using SQL three-valued logic: a comparison involving a
NULL field is unknown, and only a definite TRUE counts as a match.
"""

import re
from collections.abc import Mapping
from datetime import date, datetime
from decimal import Decimal, InvalidOperation
from functools import lru_cache
from typing import Any

import sqlglot
from sqlglot import exp

from claim_bucketing.core.errors import ClaimBucketingError
from claim_bucketing.domain.claims import Claim

CLAIM_FIELDS = frozenset(Claim.model_fields)

_COMPARISONS = {
    exp.EQ: lambda a, b: a == b,
    exp.NEQ: lambda a, b: a != b,
    exp.GT: lambda a, b: a > b,
    exp.GTE: lambda a, b: a >= b,
    exp.LT: lambda a, b: a < b,
    exp.LTE: lambda a, b: a <= b,
}

_SUPPORTED = (
    exp.And,
    exp.Or,
    exp.Not,
    exp.Paren,
    exp.In,
    exp.Is,
    exp.Like,
    exp.ILike,
    exp.Between,
    exp.Column,
    exp.Identifier,
    exp.Literal,
    exp.Null,
    exp.Boolean,
    exp.Neg,
    exp.Tuple,
    *_COMPARISONS,
)


class ExpressionError(ClaimBucketingError):
    """A grouping expression could not be parsed or uses unsupported syntax."""

    pass


class GroupingExpression:
    """A parsed, validated grouping expression."""

    def __init__(self, text: str, tree: exp.Expression, columns: frozenset[str]):
        self.text = text
        self.columns = columns
        self._tree = tree

    def matches(self, values: Mapping[str, Any]) -> bool:
        """
        True only if the condition evaluates to a definite TRUE.

        Raises:
            ExpressionError: If the claim's values cannot be evaluated, e.g.
                arithmetic on a non-numeric field
        """
        try:
            return _evaluate(self._tree, values) is True
        except ArithmeticError as e:
            raise ExpressionError(f"Cannot evaluate {self.text!r}: {e!r}") from e

    def __repr__(self) -> str:
        return f"GroupingExpression({self.text!r})"


@lru_cache(maxsize=256)
def compile_expression(text: str, allowed_columns: frozenset[str] = CLAIM_FIELDS) -> GroupingExpression:
    """
    Parse and validate a grouping expression.

    Args:
        text: Condition text
        allowed_columns: Field names the expression may reference

    Returns:
        Compiled expression, cached by text

    Raises:
        ExpressionError: If the text does not parse, uses unsupported
            syntax, or references an unknown field
    """
    if not text or not text.strip():
        raise ExpressionError("Grouping expression is empty")

    try:
        tree = sqlglot.parse_one(text)
    except sqlglot.errors.ParseError as e:
        raise ExpressionError(f"Invalid grouping expression {text!r}: {e}") from e

    columns: set[str] = set()
    for node in tree.find_all(exp.Expression):
        if not isinstance(node, _SUPPORTED):
            raise ExpressionError(
                f"Unsupported syntax {type(node).__name__} in grouping expression {text!r}"
            )
        if isinstance(node, exp.Column):
            name = node.name.lower()
            if name not in allowed_columns:
                raise ExpressionError(f"Unknown claim field {node.name!r} in grouping expression {text!r}")
            columns.add(name)
        if isinstance(node, exp.In) and node.args.get("query") is not None:
            raise ExpressionError(f"Subqueries are not supported in grouping expression {text!r}")

    return GroupingExpression(text, tree, frozenset(columns))


def _evaluate(node: exp.Expression, values: Mapping[str, Any]) -> Any:
    if isinstance(node, exp.Paren):
        return _evaluate(node.this, values)

    if isinstance(node, exp.And):
        left = _evaluate(node.this, values)
        if left is False:
            return False
        right = _evaluate(node.expression, values)
        if right is False:
            return False
        if left is None or right is None:
            return None
        return True

    if isinstance(node, exp.Or):
        left = _evaluate(node.this, values)
        if left is True:
            return True
        right = _evaluate(node.expression, values)
        if right is True:
            return True
        if left is None or right is None:
            return None
        return False

    if isinstance(node, exp.Not):
        inner = _evaluate(node.this, values)
        return None if inner is None else not inner

    if isinstance(node, exp.Is):
        left = _evaluate(node.this, values)
        right = _evaluate(node.expression, values)
        if right is None:
            return left is None
        return left is right

    comparison = _COMPARISONS.get(type(node))
    if comparison is not None:
        left, right = _coerce_pair(_evaluate(node.this, values), _evaluate(node.expression, values))
        if left is None or right is None:
            return None
        return _compare(comparison, left, right)

    if isinstance(node, exp.Between):
        value = _evaluate(node.this, values)
        low, value_low = _coerce_pair(_evaluate(node.args["low"], values), value)
        high, value_high = _coerce_pair(_evaluate(node.args["high"], values), value)
        if value_low is None or low is None or high is None:
            return None
        return _compare(lambda a, b: a >= b, value_low, low) and _compare(lambda a, b: a <= b, value_high, high)

    if isinstance(node, exp.In):
        return _evaluate_in(node, values)

    if isinstance(node, (exp.Like, exp.ILike)):
        value = _evaluate(node.this, values)
        pattern = _evaluate(node.expression, values)
        if value is None or pattern is None:
            return None
        flags = re.IGNORECASE if isinstance(node, exp.ILike) else 0
        return _like_regex(str(pattern), flags).fullmatch(str(value)) is not None

    if isinstance(node, exp.Column):
        return values.get(node.name.lower())

    if isinstance(node, exp.Literal):
        if node.is_string:
            return node.this
        return Decimal(node.this)

    if isinstance(node, exp.Boolean):
        return bool(node.this)

    if isinstance(node, exp.Null):
        return None

    if isinstance(node, exp.Neg):
        inner = _evaluate(node.this, values)
        return None if inner is None else -_to_decimal(inner)

    raise ExpressionError(f"Cannot evaluate {type(node).__name__}")


def _evaluate_in(node: exp.In, values: Mapping[str, Any]) -> Any:
    value = _evaluate(node.this, values)
    if value is None:
        return None
    saw_null = False
    for candidate_node in node.expressions:
        candidate = _evaluate(candidate_node, values)
        if candidate is None:
            saw_null = True
            continue
        left, right = _coerce_pair(value, candidate)
        if _compare(lambda a, b: a == b, left, right):
            return True
    return None if saw_null else False


def _compare(op, left: Any, right: Any) -> bool:
    try:
        return bool(op(left, right))
    except TypeError:
        # Mismatched types (e.g. text vs number) compare as text
        return bool(op(str(left), str(right)))


def _coerce_pair(left: Any, right: Any) -> tuple[Any, Any]:
    """Bring a field value and a literal to comparable types."""
    if left is None or right is None:
        return left, right
    if isinstance(left, (int, Decimal)) and not isinstance(left, bool) and isinstance(right, str):
        return left, _maybe_decimal(right)
    if isinstance(right, (int, Decimal)) and not isinstance(right, bool) and isinstance(left, str):
        return _maybe_decimal(left), right
    if isinstance(left, (date, datetime)) and isinstance(right, str):
        return left, _maybe_temporal(right, left)
    if isinstance(right, (date, datetime)) and isinstance(left, str):
        return _maybe_temporal(left, right), right
    if isinstance(left, int) and isinstance(right, Decimal):
        return Decimal(left), right
    if isinstance(right, int) and isinstance(left, Decimal):
        return left, Decimal(right)
    return left, right


def _to_decimal(value: Any) -> Decimal:
    if isinstance(value, Decimal):
        return value
    try:
        return Decimal(str(value))
    except InvalidOperation as e:
        raise ExpressionError(f"Not a number: {value!r}") from e


def _maybe_decimal(text: str) -> Any:
    try:
        return Decimal(text)
    except InvalidOperation:
        return text


def _maybe_temporal(text: str, like: date) -> Any:
    try:
        if isinstance(like, datetime):
            return datetime.fromisoformat(text)
        return date.fromisoformat(text)
    except ValueError:
        return text


@lru_cache(maxsize=256)
def _like_regex(pattern: str, flags: int) -> re.Pattern:
    parts = []
    for char in pattern:
        if char == "%":
            parts.append(".*")
        elif char == "_":
            parts.append(".")
        else:
            parts.append(re.escape(char))
    return re.compile("".join(parts), flags | re.DOTALL)

