"""Relationship resolution from foreign-key metadata.

Two entity types are related either directly (the dependent table holds a
foreign key to the parent table) or through a link table that references
both. Link tables are inferred from inbound references:

    course              <- course_instructor.course_id
    instructor          <- course_instructor.instructor_id
    => course_instructor links Course and Instructor
"""
from __future__ import annotations

from typing import TYPE_CHECKING, List, Optional, Tuple, Type

from ..cache.metadata import MISS, MetadataCache
from ..errors import AmbiguousLinkError, ConfigurationError
from ..logging_config import get_logger
from ..models.records import ForeignKey, LinkTable

if TYPE_CHECKING:
    from ..models.entity import Entity

logger = get_logger(__name__)


class RelationshipResolver:
    """Infer join tables and join columns between entity types."""

    def __init__(self, metadata: MetadataCache) -> None:
        self.metadata = metadata

    def find_link_table(self, type_a: Type["Entity"], type_b: Type["Entity"]) -> Optional[str]:
        """Name of the table linking ``type_a`` and ``type_b``, or None.

        Raises:
            AmbiguousLinkError: If several candidate tables remain after
                                keeping those named after ``type_b``
        """
        return self.link_table_between(type_a.table_name(), type_b.table_name(), type_b.entity_name())

    def link_table_between(self, table_a: str, table_b: str, name_b: Optional[str] = None) -> Optional[str]:
        """Table-level link inference. ``name_b`` defaults to ``table_b``."""
        cached = self.metadata.link_table(table_a, table_b)
        if cached is not MISS:
            return cached

        link = self._infer(table_a, table_b, name_b or table_b)
        logger.debug("Link table for %s <-> %s: %s", table_a, table_b, link)
        self.metadata.save_link_table(table_a, table_b, link)
        return link

    def _infer(self, table_a: str, table_b: str, name_b: str) -> Optional[str]:
        references_a = self.metadata.inbound(table_a)
        references_b = self.metadata.inbound(table_b)

        if not references_a or not references_b:
            return None

        # one table references the other: a direct relationship, not a link
        if table_b in references_a or table_a in references_b:
            return None

        if table_a == table_b:
            # a self link table references the table through two columns
            matches = [table for table in references_a if len(self.metadata.outbound(table).get(table_a, [])) >= 2]
        else:
            candidates_b = set(references_b)
            matches = [table for table in references_a if table in candidates_b]
        if not matches:
            return None
        if len(matches) == 1:
            return matches[0]

        named = [table for table in matches if name_b.lower() in table]
        if len(named) == 1:
            return named[0]
        raise AmbiguousLinkError(table_a, table_b, named or matches)

    def link_columns(
        self,
        link_table: str,
        parent_cls: Type["Entity"],
        dependent_cls: Type["Entity"],
    ) -> LinkTable:
        """Columns of ``link_table`` pointing at the parent and at the dependent.

        For a self link table (``course_prerequisite(course_id, prerequisite_id)``)
        the column named ``<table>_id`` is the parent side and the other one the
        dependent side.

        Raises:
            ConfigurationError: If either side is missing or cannot be told
                                apart from the other
        """
        parent_table = parent_cls.table_name()
        dependent_table = dependent_cls.table_name()
        references = self.metadata.outbound(link_table)
        parent_fks = references.get(parent_table, [])
        dependent_fks = references.get(dependent_table, [])
        if not parent_fks or not dependent_fks:
            raise ConfigurationError(
                f"Link table '{link_table}' does not reference both "
                f"'{parent_table}' and '{dependent_table}'"
            )

        if parent_table == dependent_table:
            parent_fk, dependent_fk = self._self_link_pair(link_table, parent_table, parent_fks)
        else:
            parent_fk = self._single(link_table, parent_table, parent_fks)
            dependent_fk = self._single(link_table, dependent_table, dependent_fks)
        return LinkTable(
            table=link_table,
            parent_column=parent_fk.column,
            dependent_column=dependent_fk.column,
        )

    @staticmethod
    def _single(table: str, referenced: str, fks: List[ForeignKey]) -> ForeignKey:
        if len(fks) > 1:
            columns = ", ".join(fk.column for fk in fks)
            raise ConfigurationError(
                f"Table '{table}' references '{referenced}' through several columns ({columns})"
            )
        return fks[0]

    @staticmethod
    def _self_link_pair(link_table: str, table: str, fks: List[ForeignKey]) -> Tuple[ForeignKey, ForeignKey]:
        parents = [fk for fk in fks if fk.column == f"{table}_id"]
        if len(fks) != 2 or len(parents) != 1:
            columns = ", ".join(fk.column for fk in fks)
            raise ConfigurationError(
                f"Cannot tell parent and dependent columns of '{link_table}' apart ({columns})"
            )
        dependent = next(fk for fk in fks if fk is not parents[0])
        return parents[0], dependent

    def foreign_key_column(self, child_table: str, parent_table: str) -> str:
        """Column of ``child_table`` referencing ``parent_table``."""
        fks = self.metadata.outbound(child_table).get(parent_table)
        if not fks:
            raise ConfigurationError(
                f"Table '{child_table}' has no foreign key referencing '{parent_table}'"
            )
        return self._single(child_table, parent_table, fks).column
