"""Schema introspection over a query executor.

The introspector is a pure function of the table name for the lifetime of a
connection. Results are not cached here; see ``entitymap.cache.metadata``.
"""
from __future__ import annotations

from typing import Dict, List

from ..models.records import ColumnInfo, ForeignKey
from .executor import QueryExecutor


class SchemaIntrospector:
    """Discover columns and foreign-key edges of tables."""

    def __init__(self, executor: QueryExecutor) -> None:
        self.executor = executor

    def columns(self, table: str) -> Dict[str, ColumnInfo]:
        """Columns of ``table`` keyed by name, in declaration order."""
        return {
            name: ColumnInfo(name=name, declared_type=declared)
            for name, declared in self.executor.introspect_columns(table).items()
        }

    def inbound_references(self, table: str) -> List[str]:
        """Names of tables declaring a foreign key that references ``table``.

        Each table is listed once, in a deterministic (sorted) order.
        """
        tables = {fk.table for fk in self.executor.introspect_foreign_keys(table, "inbound")}
        return sorted(tables)

    def outbound_references(self, table: str) -> Dict[str, List[ForeignKey]]:
        """Foreign keys declared by ``table`` grouped by referenced table.

        A table referencing the same table through several columns (a
        self-referencing link table, say) keeps every edge, in the order the
        executor reports them.
        """
        references: Dict[str, List[ForeignKey]] = {}
        for fk in self.executor.introspect_foreign_keys(table, "outbound"):
            references.setdefault(fk.referenced_table, []).append(fk)
        return references
