from __future__ import annotations

from dataclasses import dataclass
from typing import Any, Mapping

from sqlalchemy import and_, true
from sqlalchemy.sql.elements import ColumnElement

from tenantcore.core.errors import ValidationFailed


OPERATORS = frozenset(
    {
        "eq",
        "ne",
        "in",
        "not_in",
        "gt",
        "gte",
        "lt",
        "lte",
        "contains",
        "starts_with",
        "is_null",
    }
)
# JSON sub-keys only support equality-class comparisons across dialects.
_JSON_PATH_OPERATORS = frozenset({"eq", "ne", "in", "not_in", "is_null"})
JSON_PATH_ROOT = "custom_fields"


@dataclass(frozen=True)
class Condition:
    # One structured comparison; values are always bound parameters, never interpolated.
    field: str
    op: str
    value: Any = None


@dataclass(frozen=True)
class AllOf:
    items: tuple[Predicate, ...] = ()


Predicate = Condition | AllOf

# The empty conjunction matches every row.
TRUE: Predicate = AllOf(())


def where(field: str, op: str, value: Any = None) -> Condition:
    if op not in OPERATORS:
        raise ValidationFailed({field: f"unsupported operator: {op}"})
    return Condition(field=field, op=op, value=value)


def all_of(*predicates: Predicate | None) -> Predicate:
    # Flatten nested conjunctions so compiled SQL stays shallow.
    items: list[Predicate] = []
    for predicate in predicates:
        if predicate is None:
            continue
        if isinstance(predicate, AllOf):
            items.extend(predicate.items)
        else:
            items.append(predicate)
    if len(items) == 1:
        return items[0]
    return AllOf(tuple(items))


def from_mapping(query: Mapping[str, Any] | Predicate | None) -> Predicate:
    """Build a predicate from the caller shorthand.

    ``{"stage": "won"}`` means equality, ``{"probability": {"gte": 50}}`` applies
    each listed operator. Predicates pass through unchanged.
    """
    if query is None:
        return TRUE
    if isinstance(query, (Condition, AllOf)):
        return query
    if not isinstance(query, Mapping):
        raise ValidationFailed({"filter": "filter must be a mapping or predicate"})
    conditions: list[Predicate] = []
    for field, spec in query.items():
        if isinstance(spec, Mapping):
            for op, value in spec.items():
                conditions.append(where(str(field), str(op), value))
        else:
            conditions.append(where(str(field), "eq", spec))
    return all_of(*conditions)


def matches(predicate: Predicate, row: Mapping[str, Any]) -> bool:
    # Evaluate against a plain row image; mirrors to_clause semantics for NULLs.
    if isinstance(predicate, AllOf):
        return all(matches(item, row) for item in predicate.items)
    value = _resolve_path(row, predicate.field)
    op = predicate.op
    expected = predicate.value
    if op == "is_null":
        want_null = True if expected is None else bool(expected)
        return (value is None) == want_null
    if op == "eq":
        return value == expected if expected is not None else value is None
    if op == "ne":
        # SQL three-valued logic: NULL never satisfies an inequality.
        if expected is None:
            return value is not None
        return value is not None and value != expected
    if op == "in":
        return _in_operator(value, expected)
    if op == "not_in":
        return value is not None and not _in_operator(value, expected)
    if op in {"gt", "gte", "lt", "lte"}:
        return _compare(value, expected, op=op)
    if op == "contains":
        return isinstance(value, str) and expected is not None and str(expected) in value
    if op == "starts_with":
        return isinstance(value, str) and expected is not None and value.startswith(str(expected))
    raise ValidationFailed({predicate.field: f"unsupported operator: {op}"})


def to_clause(predicate: Predicate, model: Any) -> ColumnElement[bool]:
    if isinstance(predicate, AllOf):
        if not predicate.items:
            return true()
        return and_(*(to_clause(item, model) for item in predicate.items))
    column = _column_for(model, predicate.field, predicate.op)
    op = predicate.op
    value = predicate.value
    if op == "is_null":
        return column.is_(None) if (value is None or value) else column.is_not(None)
    if op == "eq":
        return column.is_(None) if value is None else column == value
    if op == "ne":
        return column.is_not(None) if value is None else column != value
    if op == "in":
        return column.in_(_as_list(value))
    if op == "not_in":
        return column.not_in(_as_list(value))
    if op == "gt":
        return column > value
    if op == "gte":
        return column >= value
    if op == "lt":
        return column < value
    if op == "lte":
        return column <= value
    if op == "contains":
        return column.contains(str(value), autoescape=True)
    if op == "starts_with":
        return column.startswith(str(value), autoescape=True)
    raise ValidationFailed({predicate.field: f"unsupported operator: {op}"})


def _column_for(model: Any, field: str, op: str) -> Any:
    # Only mapped columns and custom_fields.<key> are addressable; anything else is client input error.
    columns = model.__table__.columns
    if "." in field:
        root, _, key = field.partition(".")
        if root != JSON_PATH_ROOT or root not in columns or not key:
            raise ValidationFailed({field: "unknown filter field"})
        if op not in _JSON_PATH_OPERATORS:
            raise ValidationFailed({field: f"operator {op} not supported on custom fields"})
        return getattr(model, root)[key].as_string()
    if field not in columns:
        raise ValidationFailed({field: "unknown filter field"})
    return getattr(model, field)


def _resolve_path(row: Mapping[str, Any], path: str) -> Any:
    node: Any = row
    for part in path.split("."):
        if isinstance(node, Mapping) and part in node:
            node = node[part]
        else:
            return None
    return node


def _as_list(value: Any) -> list[Any]:
    if isinstance(value, (list, tuple, set, frozenset)):
        return list(value)
    return [value]


def _in_operator(left: Any, right: Any) -> bool:
    if left is None or right is None:
        return False
    return left in _as_list(right)


def _compare(left: Any, right: Any, *, op: str) -> bool:
    if left is None or right is None:
        return False
    try:
        if op == "gt":
            return left > right
        if op == "gte":
            return left >= right
        if op == "lt":
            return left < right
        if op == "lte":
            return left <= right
    except TypeError:
        return False
    return False
