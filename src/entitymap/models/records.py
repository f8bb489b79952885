from __future__ import annotations

import hashlib
import json
from dataclasses import dataclass
from typing import Any, Dict, List, Optional, Union


@dataclass(slots=True, frozen=True)
class ColumnInfo:
    name: str
    declared_type: str = ""

    @property
    def affinity(self) -> str:
        """Coercion family of the declared type: temporal, decimal, integer or other."""
        declared = self.declared_type.upper()
        if declared.startswith("DATETIME") or declared.startswith("TIMESTAMP"):
            return "datetime"
        if declared.startswith("DATE"):
            return "date"
        if declared.startswith("TIME"):
            return "time"
        if any(token in declared for token in ("DECIMAL", "NUMERIC", "REAL", "FLOAT", "DOUBLE")):
            return "decimal"
        if "INT" in declared:
            return "integer"
        return "other"


@dataclass(slots=True, frozen=True)
class ForeignKey:
    """A foreign key edge: ``table.column`` references
    ``referenced_table.referenced_column``."""
    table: str
    column: str
    referenced_table: str
    referenced_column: str = "id"

    def to_dict(self) -> Dict[str, str]:
        return {
            "table": self.table,
            "column": self.column,
            "referenced_table": self.referenced_table,
            "referenced_column": self.referenced_column,
        }

    @classmethod
    def from_dict(cls, data: Dict[str, str]) -> "ForeignKey":
        return cls(**data)


@dataclass(slots=True, frozen=True)
class LinkTable:
    """Join table realizing a many-to-many relationship."""
    table: str
    parent_column: str
    dependent_column: str


WhereSpec = Union[Dict[str, Any], List[str], None]


@dataclass(slots=True, frozen=True)
class Dependent:
    """Declared one-to-many or many-to-many relationship.

    ``where`` maps clauses such as ``"active = ?"`` to values, or lists raw
    clauses. ``limit == 1`` makes the relationship single valued and ``count``
    turns it into an aggregate count.
    """
    type_name: str
    where: WhereSpec = None
    order: Optional[str] = None
    limit: Optional[int] = None
    count: bool = False

    @property
    def single(self) -> bool:
        return self.limit == 1 and not self.count


def context_hash(where: WhereSpec, order: Optional[str], limit: Optional[int], count: bool) -> str:
    """Deterministic digest of a dependent query's filters, order, limit and count flag."""
    if isinstance(where, dict):
        where = sorted(where.items())
    payload = json.dumps([where, order, limit, bool(count)], sort_keys=True, default=repr)
    return hashlib.md5(payload.encode("utf-8")).hexdigest()
