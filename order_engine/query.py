"""Typed data-access operations and the filter language they share."""

from __future__ import annotations

from dataclasses import dataclass, field
from typing import Any, Union

TENANT_COLUMN = "tenant_org_id"

TENANT_SCOPED_RESOURCES = frozenset(
    {
        "orders",
        "order_items",
        "order_item_pieces",
        "processing_steps",
        "order_issues",
        "status_history",
        "order_history",
        "workflow_settings",
        "tenant_settings",
        "order_number_counters",
        "outbox_events",
        "idempotency_records",
    }
)

COMBINATORS = ("AND", "OR", "NOT")
OPERATORS = ("in", "ne", "gt", "gte", "lt", "lte", "is_null")

Filter = dict[str, Any]


class ConditionNotMet(Exception):
    """A conditional write matched no row, or an insert collided with an existing key."""

    def __init__(self, resource: str, detail: str = "") -> None:
        super().__init__(f"condition not met on {resource}" + (f": {detail}" if detail else ""))
        self.resource = resource


@dataclass(frozen=True)
class Read:
    resource: str
    where: Filter = field(default_factory=dict)
    order_by: tuple[str, ...] = ()
    limit: int | None = None


@dataclass(frozen=True)
class Count:
    resource: str
    where: Filter = field(default_factory=dict)


@dataclass(frozen=True)
class Insert:
    resource: str
    rows: tuple[dict[str, Any], ...]


@dataclass(frozen=True)
class Upsert:
    resource: str
    row: dict[str, Any]
    key: tuple[str, ...] = ("id",)


@dataclass(frozen=True)
class Update:
    resource: str
    where: Filter
    values: dict[str, Any]
    require_match: bool = False


@dataclass(frozen=True)
class Delete:
    resource: str
    where: Filter


Operation = Union[Read, Count, Insert, Upsert, Update, Delete]


def _sort_key(value: Any) -> tuple[int, Any]:
    if value is None:
        return (0, 0)
    if isinstance(value, bool):
        return (1, int(value))
    if isinstance(value, (int, float)):
        return (1, value)
    return (2, str(value))


def _match_operator(actual: Any, op: str, expected: Any) -> bool:
    if op == "in":
        return actual in list(expected)
    if op == "ne":
        return actual != expected
    if op == "is_null":
        return (actual is None) is bool(expected)
    if actual is None:
        return False
    if op == "gt":
        return actual > expected
    if op == "gte":
        return actual >= expected
    if op == "lt":
        return actual < expected
    if op == "lte":
        return actual <= expected
    raise ValueError(f"unsupported filter operator: {op}")


def matches(row: dict[str, Any], where: Filter) -> bool:
    for key, expected in where.items():
        if key == "AND":
            if not all(matches(row, sub) for sub in expected):
                return False
        elif key == "OR":
            if not any(matches(row, sub) for sub in expected):
                return False
        elif key == "NOT":
            if matches(row, expected):
                return False
        elif isinstance(expected, dict):
            actual = row.get(key)
            for op, operand in expected.items():
                if not _match_operator(actual, op, operand):
                    return False
        elif row.get(key) != expected:
            return False
    return True


def sort_rows(rows: list[dict[str, Any]], order_by: tuple[str, ...]) -> list[dict[str, Any]]:
    result = list(rows)
    for spec in reversed(order_by):
        descending = spec.startswith("-")
        column = spec[1:] if descending else spec
        result.sort(key=lambda row: _sort_key(row.get(column)), reverse=descending)
    return result


def scope_filter(where: Filter, tenant_id: str) -> Filter:
    """Return a copy of ``where`` whose tenant constraint is ``tenant_id`` at every level."""
    scoped: Filter = {}
    for key, value in where.items():
        if key in ("AND", "OR"):
            scoped[key] = [_scope_branch(sub, tenant_id) for sub in value]
        elif key == "NOT":
            scoped[key] = _scope_branch(value, tenant_id)
        elif key == TENANT_COLUMN:
            continue
        else:
            scoped[key] = value
    scoped[TENANT_COLUMN] = tenant_id
    return scoped


def _scope_branch(where: Filter, tenant_id: str) -> Filter:
    branch: Filter = {}
    for key, value in where.items():
        if key in ("AND", "OR"):
            branch[key] = [_scope_branch(sub, tenant_id) for sub in value]
        elif key == "NOT":
            branch[key] = _scope_branch(value, tenant_id)
        elif key == TENANT_COLUMN:
            branch[key] = tenant_id
        else:
            branch[key] = value
    return branch
