"""
Filter Translator -- declarative filters to native store predicates.

Requests describe filters in the loopback dialect the REST layer speaks
(``{"and": [...], "outbreakId": {"inq": [...]}}``). The export pipeline
needs the native Mongo-style dialect the document store understands.
Instead of rewriting keys in a JSON string, the filter is parsed into a
small typed tree and translated structurally:

    where dict  --parse_where-->  Expr  --translate-->  predicate dict

``matches`` evaluates a native predicate against a plain document so the
bundled JSON store can answer queries without a database server.
"""

from __future__ import annotations

import re
from dataclasses import dataclass
from datetime import datetime, timezone
from typing import Any, Optional, Union

from .errors import FilterError


# ---------------------------------------------------------------------------
# Expression tree
# ---------------------------------------------------------------------------


@dataclass(frozen=True)
class And:
    items: tuple


@dataclass(frozen=True)
class Or:
    items: tuple


@dataclass(frozen=True)
class Not:
    item: Any


@dataclass(frozen=True)
class Equals:
    field: str
    value: Any


@dataclass(frozen=True)
class NotEquals:
    field: str
    value: Any


@dataclass(frozen=True)
class In:
    field: str
    values: tuple


@dataclass(frozen=True)
class NotIn:
    field: str
    values: tuple


@dataclass(frozen=True)
class Compare:
    """Ordering comparison; ``op`` is one of lt, lte, gt, gte."""

    field: str
    op: str
    value: Any


@dataclass(frozen=True)
class Between:
    field: str
    low: Any
    high: Any


@dataclass(frozen=True)
class Regex:
    field: str
    pattern: str
    flags: str = ""


@dataclass(frozen=True)
class Exists:
    field: str
    exists: bool = True


Expr = Union[And, Or, Not, Equals, NotEquals, In, NotIn, Compare, Between, Regex, Exists]

COMPARE_OPS = ("lt", "lte", "gt", "gte")

_ISO_DATE = re.compile(r"^\d{4}-\d{2}-\d{2}([T ]\d{2}:\d{2}(:\d{2}(\.\d+)?)?)?(Z|[+-]\d{2}:?\d{2})?$")


# ---------------------------------------------------------------------------
# Timestamps
# ---------------------------------------------------------------------------


def parse_timestamp(value: Any) -> Optional[datetime]:
    """Parse an ISO-8601 string or datetime into an aware UTC datetime.

    Returns None for empty or unparseable values.
    """
    if value is None or value == "":
        return None
    if isinstance(value, datetime):
        dt = value
    elif isinstance(value, str):
        text = value.strip()
        if text.endswith("Z"):
            text = text[:-1] + "+00:00"
        try:
            dt = datetime.fromisoformat(text)
        except ValueError:
            return None
    else:
        return None
    if dt.tzinfo is None:
        dt = dt.replace(tzinfo=timezone.utc)
    return dt.astimezone(timezone.utc)


def format_timestamp(value: datetime) -> str:
    """Render a datetime as ISO-8601 UTC with millisecond precision."""
    if value.tzinfo is None:
        value = value.replace(tzinfo=timezone.utc)
    value = value.astimezone(timezone.utc)
    return value.strftime("%Y-%m-%dT%H:%M:%S.") + f"{value.microsecond // 1000:03d}Z"


def _normalize_value(value: Any) -> Any:
    """Dates become canonical ISO strings so they sort lexically."""
    if isinstance(value, datetime):
        return format_timestamp(value)
    if isinstance(value, str) and _ISO_DATE.match(value):
        parsed = parse_timestamp(value)
        if parsed is not None:
            return format_timestamp(parsed)
    return value


# ---------------------------------------------------------------------------
# Declarative (loopback) filter -> tree
# ---------------------------------------------------------------------------


def _field_name(name: str) -> str:
    return "_id" if name == "id" else name


def _parse_condition(field: str, condition: Any) -> Expr:
    if not isinstance(condition, dict):
        return Equals(field, condition)

    parts: list = []
    for op, operand in condition.items():
        if op == "inq":
            parts.append(In(field, tuple(operand or ())))
        elif op == "nin":
            parts.append(NotIn(field, tuple(operand or ())))
        elif op == "neq":
            parts.append(NotEquals(field, operand))
        elif op == "eq":
            parts.append(Equals(field, operand))
        elif op in COMPARE_OPS:
            parts.append(Compare(field, op, operand))
        elif op == "between":
            if not isinstance(operand, (list, tuple)) or len(operand) != 2:
                raise FilterError(f"'between' on {field} needs exactly two values")
            parts.append(Between(field, operand[0], operand[1]))
        elif op in ("regexp", "like"):
            parts.append(Regex(field, str(operand), str(condition.get("options", ""))))
        elif op == "options":
            continue
        elif op == "exists":
            parts.append(Exists(field, bool(operand)))
        else:
            raise FilterError(f"Unsupported filter operator '{op}' on {field}")

    if len(parts) == 1:
        return parts[0]
    return And(tuple(parts))


def parse_where(where: Optional[dict]) -> Optional[Expr]:
    """Parse a loopback-style where clause into an expression tree.

    Args:
        where: Declarative filter. None or empty means "match all".

    Returns:
        Expression tree, or None when there is nothing to filter on.

    Raises:
        FilterError: On unknown operators or malformed clauses.
    """
    if not where:
        return None
    if not isinstance(where, dict):
        raise FilterError(f"Filter must be an object, got {type(where).__name__}")

    parts: list = []
    for key, value in where.items():
        if key in ("and", "or"):
            if not isinstance(value, list):
                raise FilterError(f"'{key}' expects a list of conditions")
            children = tuple(
                child for child in (parse_where(v) for v in value) if child is not None
            )
            if not children:
                continue
            parts.append(And(children) if key == "and" else Or(children))
        else:
            parts.append(_parse_condition(_field_name(key), value))

    if not parts:
        return None
    if len(parts) == 1:
        return parts[0]
    return And(tuple(parts))


def and_all(*exprs: Optional[Expr]) -> Optional[Expr]:
    """Combine expressions with AND, dropping the empty ones."""
    items = tuple(e for e in exprs if e is not None)
    if not items:
        return None
    if len(items) == 1:
        return items[0]
    return And(items)


# ---------------------------------------------------------------------------
# Tree -> native predicate
# ---------------------------------------------------------------------------


def translate(expr: Optional[Expr]) -> dict:
    """Translate an expression tree into a native store predicate.

    Raises:
        FilterError: If the tree contains an unknown node type.
    """
    if expr is None:
        return {}
    if isinstance(expr, And):
        return {"$and": [translate(item) for item in expr.items]}
    if isinstance(expr, Or):
        return {"$or": [translate(item) for item in expr.items]}
    if isinstance(expr, Not):
        return {"$nor": [translate(expr.item)]}
    if isinstance(expr, Equals):
        return {expr.field: _normalize_value(expr.value)}
    if isinstance(expr, NotEquals):
        return {expr.field: {"$ne": _normalize_value(expr.value)}}
    if isinstance(expr, In):
        return {expr.field: {"$in": [_normalize_value(v) for v in expr.values]}}
    if isinstance(expr, NotIn):
        return {expr.field: {"$nin": [_normalize_value(v) for v in expr.values]}}
    if isinstance(expr, Compare):
        if expr.op not in COMPARE_OPS:
            raise FilterError(f"Unknown comparison '{expr.op}'")
        return {expr.field: {f"${expr.op}": _normalize_value(expr.value)}}
    if isinstance(expr, Between):
        return {
            expr.field: {
                "$gte": _normalize_value(expr.low),
                "$lte": _normalize_value(expr.high),
            }
        }
    if isinstance(expr, Regex):
        clause: dict = {"$regex": expr.pattern}
        if expr.flags:
            clause["$options"] = expr.flags
        return {expr.field: clause}
    if isinstance(expr, Exists):
        return {expr.field: {"$exists": expr.exists}}
    raise FilterError(f"Cannot translate filter node {type(expr).__name__}")


def convert_where(where: Optional[dict]) -> dict:
    """Shortcut: declarative where clause straight to a native predicate."""
    return translate(parse_where(where))


# ---------------------------------------------------------------------------
# Native predicate evaluation
# ---------------------------------------------------------------------------

_MISSING = object()


def _lookup(document: Any, path: str) -> Any:
    """Resolve a dotted path; lists fan out into a list of values."""
    head, _, rest = path.partition(".")
    if isinstance(document, list):
        values = []
        for item in document:
            value = _lookup(item, path)
            if value is _MISSING:
                continue
            if isinstance(value, list):
                values.extend(value)
            else:
                values.append(value)
        return values if values else _MISSING
    if not isinstance(document, dict) or head not in document:
        return _MISSING
    value = document[head]
    return _lookup(value, rest) if rest else value


def _comparable(a: Any, b: Any) -> tuple[Any, Any]:
    if isinstance(a, str) and isinstance(b, str):
        pa, pb = parse_timestamp(a), parse_timestamp(b)
        if pa is not None and pb is not None and _ISO_DATE.match(a) and _ISO_DATE.match(b):
            return pa, pb
    return a, b


def _ordered(op: str, value: Any, operand: Any) -> bool:
    if value is _MISSING or value is None:
        return False
    left, right = _comparable(value, operand)
    try:
        if op == "$lt":
            return left < right
        if op == "$lte":
            return left <= right
        if op == "$gt":
            return left > right
        return left >= right
    except TypeError:
        return False


def _equal(value: Any, operand: Any) -> bool:
    if value is _MISSING:
        return operand is None
    if isinstance(value, list) and not isinstance(operand, list):
        return operand in value
    left, right = _comparable(value, operand)
    return left == right


def _match_condition(value: Any, condition: Any) -> bool:
    if not (isinstance(condition, dict) and condition and all(k.startswith("$") for k in condition)):
        return _equal(value, condition)

    for op, operand in condition.items():
        if op == "$in":
            if not any(_equal(value, item) for item in operand):
                return False
        elif op == "$nin":
            if any(_equal(value, item) for item in operand):
                return False
        elif op == "$ne":
            if _equal(value, operand):
                return False
        elif op in ("$lt", "$lte", "$gt", "$gte"):
            if not _ordered(op, value, operand):
                return False
        elif op == "$regex":
            if not isinstance(value, str):
                return False
            flags = re.IGNORECASE if "i" in condition.get("$options", "") else 0
            if re.search(operand, value, flags) is None:
                return False
        elif op == "$options":
            continue
        elif op == "$exists":
            present = value is not _MISSING
            if present != bool(operand):
                return False
        else:
            raise FilterError(f"Unsupported predicate operator '{op}'")
    return True


def matches(predicate: Optional[dict], document: dict) -> bool:
    """Evaluate a native predicate against a document."""
    if not predicate:
        return True
    for key, condition in predicate.items():
        if key == "$and":
            if not all(matches(p, document) for p in condition):
                return False
        elif key == "$or":
            if not any(matches(p, document) for p in condition):
                return False
        elif key == "$nor":
            if any(matches(p, document) for p in condition):
                return False
        elif not _match_condition(_lookup(document, key), condition):
            return False
    return True
