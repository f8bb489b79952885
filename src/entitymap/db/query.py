"""Structured query descriptions handed to a query executor.

Where clauses are ``(clause, value)`` pairs with ``?`` placeholders, in the
style of ``"a.id IN (?)", [1, 2]``. A value of ``NO_VALUE`` marks a raw
clause without parameters.
"""
from __future__ import annotations

from dataclasses import dataclass, field
from typing import Any, List, Optional, Sequence, Tuple


class _NoValue:
    def __repr__(self) -> str:
        return "NO_VALUE"


NO_VALUE: Any = _NoValue()

Condition = Tuple[str, Any]


@dataclass(slots=True)
class Join:
    table: str
    alias: str
    condition: str
    columns: List[str] = field(default_factory=list)


@dataclass(slots=True)
class Select:
    table: str
    alias: Optional[str] = None
    columns: List[str] = field(default_factory=lambda: ["*"])
    joins: List[Join] = field(default_factory=list)
    where: List[Condition] = field(default_factory=list)
    group_by: List[str] = field(default_factory=list)
    order_by: List[str] = field(default_factory=list)
    limit: Optional[int] = None

    def join(self, table: str, alias: str, condition: str, columns: Sequence[str] = ()) -> "Select":
        self.joins.append(Join(table, alias, condition, list(columns)))
        return self

    def filter(self, clause: str, value: Any = NO_VALUE) -> "Select":
        self.where.append((clause, value))
        return self

    def order(self, *specs: str) -> "Select":
        self.order_by.extend(spec for spec in specs if spec)
        return self
