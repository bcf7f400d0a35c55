"""Storage-agnostic predicates over feedback fields, compiled to SQLAlchemy per table."""
from __future__ import annotations

from dataclasses import dataclass, field
from enum import Enum
from typing import Any, List

import sqlalchemy as sa


class FilterOperator(str, Enum):
    EQ = "eq"
    NE = "ne"              # missing values count as "not equal"
    CONTAINS = "contains"  # case-insensitive substring
    GTE = "gte"
    LTE = "lte"
    LT = "lt"
    IN = "in"


@dataclass
class FilterCondition:
    field_name: str
    operator: FilterOperator
    value: Any = None


@dataclass
class FilterCriteria:
    """Conditions are AND-ed; each entry of any_of is an OR-group AND-ed with the rest."""

    conditions: List[FilterCondition] = field(default_factory=list)
    any_of: List[List[FilterCondition]] = field(default_factory=list)

    def add(self, field_name: str, operator: FilterOperator, value: Any = None) -> "FilterCriteria":
        self.conditions.append(FilterCondition(field_name, operator, value))
        return self

    def eq(self, field_name: str, value: Any) -> "FilterCriteria":
        return self.add(field_name, FilterOperator.EQ, value)

    def either(self, *conditions: FilterCondition) -> "FilterCriteria":
        self.any_of.append(list(conditions))
        return self

    def is_empty(self) -> bool:
        return not self.conditions and not self.any_of

    def compile(self, table: sa.Table):
        clauses = [_compile_condition(table, c) for c in self.conditions]
        for group in self.any_of:
            if group:
                clauses.append(sa.or_(*[_compile_condition(table, c) for c in group]))
        return sa.and_(sa.true(), *clauses)


def cond(field_name: str, operator: FilterOperator, value: Any = None) -> FilterCondition:
    return FilterCondition(field_name, operator, value)


def _compile_condition(table: sa.Table, c: FilterCondition):
    try:
        col = table.c[c.field_name]
    except KeyError:
        raise ValueError(f"Unknown filter field: {c.field_name}") from None

    op = c.operator
    if op is FilterOperator.EQ:
        return col.is_(None) if c.value is None else col == c.value
    if op is FilterOperator.NE:
        return sa.or_(col.is_(None), col != c.value)
    if op is FilterOperator.CONTAINS:
        text = str(c.value or "").lower()
        # escape LIKE wildcards so user input matches literally
        text = text.replace("\\", "\\\\").replace("%", "\\%").replace("_", "\\_")
        return sa.func.lower(col).like(f"%{text}%", escape="\\")
    if op is FilterOperator.GTE:
        return col >= c.value
    if op is FilterOperator.LTE:
        return col <= c.value
    if op is FilterOperator.LT:
        return col < c.value
    if op is FilterOperator.IN:
        values = list(c.value or [])
        return col.in_(values) if values else sa.false()
    raise ValueError(f"Unsupported operator: {op}")
