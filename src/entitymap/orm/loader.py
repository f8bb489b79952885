"""Dependent loading and eager-load traversal.

Dependent sets are cached in the identity map under parent-relative keys:

    Course.10.dependents.Instructor.<hash>        # one parent
    Course.[10,11].dependents.Instructor.<hash>   # the batch as requested

where ``<hash>`` digests the filters, order, limit and count flag. The
per-parent entries let a later single-parent lookup hit the cache even if
the first request was batched.

Eager loading walks dotted paths one segment at a time:

    loader.load(Course, [10, 11], ["instructors.courses", "category", "tutor:Instructor"])
"""
from __future__ import annotations

import re
from typing import TYPE_CHECKING, Any, Dict, Iterable, List, Optional, Sequence, Tuple, Type

from ..cache.identity_map import MISSING
from ..db.executor import quote_identifier
from ..db.query import NO_VALUE, Condition, Select
from ..errors import ConfigurationError
from ..logging_config import get_logger
from ..models.entity import Entity, PropertyKind, entity_class
from ..models.records import Dependent, WhereSpec, context_hash

if TYPE_CHECKING:
    from ..datasource import DataSource

logger = get_logger(__name__)

DEPENDENTS = "dependents"
DEPENDENT_ALIAS = "a"
LINK_ALIAS = "b"

_BARE_COLUMN = re.compile(r"^[A-Za-z_][A-Za-z0-9_]*$")


def _is_collection(value: Any) -> bool:
    return isinstance(value, (list, tuple, set, frozenset))


def normalize_where(where: WhereSpec) -> List[Condition]:
    """Dependent filters as condition pairs.

    Accepts ``{"active = ?": 1}`` mappings and lists of raw clauses.
    """
    if not where:
        return []
    if isinstance(where, dict):
        return [(clause, value) for clause, value in where.items()]
    return [(clause, NO_VALUE) for clause in where]


def qualify_order(order: Optional[str], alias: str) -> List[str]:
    """Prefix bare column names in an ORDER BY clause with ``alias``."""
    if not order:
        return []
    specs: List[str] = []
    for part in order.split(","):
        part = part.strip()
        if not part:
            continue
        column, _, direction = part.partition(" ")
        if _BARE_COLUMN.match(column):
            column = f"{alias}.{quote_identifier(column)}"
        specs.append(f"{column} {direction}".strip())
    return specs


def _empty_value(limit: Optional[int], count: bool) -> Any:
    if count:
        return 0
    if limit == 1:
        return None
    return {}


def _flatten(values: Iterable[Any]) -> Dict[int, Entity]:
    entities: Dict[int, Entity] = {}
    for value in values:
        if isinstance(value, Entity):
            entities[value.id] = value
        elif isinstance(value, dict):
            entities.update(value)
    return entities


class DependentLoader:
    """Load dependents of parents and traverse eager-load paths."""

    def __init__(self, source: "DataSource") -> None:
        self.source = source

    @property
    def identity_map(self):
        return self.source.identity_map

    def get_dependents(
        self,
        parent_cls: Type[Entity],
        parent_ids: Any,
        dependent_cls: Type[Entity],
        where: WhereSpec = None,
        order: Optional[str] = None,
        limit: Optional[int] = None,
        count: bool = False,
    ) -> Any:
        """Dependents of one parent or of a batch of parents.

        Returns:
            For a single parent id: an ``{id: entity}`` mapping, an entity or
            None when ``limit == 1``, or an int when ``count`` is set.
            For a collection of ids: ``{id: entity}`` across all parents, or
            ``{parent_id: count}`` when ``count`` is set.
        """
        if parent_ids is None or (_is_collection(parent_ids) and not parent_ids):
            return None
        segments = self._segments(dependent_cls, where, order, limit, count)
        parent_name = parent_cls.entity_name()

        if not _is_collection(parent_ids):
            parent_id = int(parent_ids)
            values = self.dependents_by_parent(parent_cls, [parent_id], dependent_cls, where, order, limit, count)
            return values[parent_id]

        cached = self.identity_map.get(parent_name, parent_ids, segments, default=MISSING)
        if cached is not MISSING:
            return cached

        ids = sorted({int(i) for i in parent_ids})
        values = self.dependents_by_parent(parent_cls, ids, dependent_cls, where, order, limit, count)
        result = dict(values) if count else _flatten(values[i] for i in ids)
        self.identity_map.put(parent_name, ids, result, segments)
        return result

    def _segments(
        self,
        dependent_cls: Type[Entity],
        where: WhereSpec,
        order: Optional[str],
        limit: Optional[int],
        count: bool,
    ) -> Tuple[str, ...]:
        return (DEPENDENTS, dependent_cls.entity_name(), context_hash(where, order, limit, count))

    def dependents_by_parent(
        self,
        parent_cls: Type[Entity],
        parent_ids: Sequence[int],
        dependent_cls: Type[Entity],
        where: WhereSpec = None,
        order: Optional[str] = None,
        limit: Optional[int] = None,
        count: bool = False,
    ) -> Dict[int, Any]:
        """Per-parent dependent values, querying only parents not cached."""
        segments = self._segments(dependent_cls, where, order, limit, count)
        parent_name = parent_cls.entity_name()

        values: Dict[int, Any] = {}
        missing: List[int] = []
        for parent_id in parent_ids:
            cached = self.identity_map.get(parent_name, parent_id, segments, default=MISSING)
            if cached is MISSING:
                missing.append(int(parent_id))
            else:
                values[int(parent_id)] = cached

        if not missing:
            logger.debug("Dependents %s of %s %s served from cache", segments[1], parent_name, list(parent_ids))
            return values

        if count:
            fetched = self._count(parent_cls, missing, dependent_cls, where)
        else:
            fetched = self._fetch(parent_cls, missing, dependent_cls, where, order, limit)

        for parent_id in missing:
            value = fetched.get(parent_id, _empty_value(limit, count))
            self.identity_map.put(parent_name, parent_id, value, segments)
            values[parent_id] = value
        return values

    def _base_select(
        self,
        parent_cls: Type[Entity],
        parent_ids: List[int],
        dependent_cls: Type[Entity],
        where: WhereSpec,
        project_parent: bool,
    ) -> Tuple[Select, str, str]:
        """Select on the dependent table filtered by parent ids.

        Returns the query, the SQL expression of the parent key and the name
        of the parent key column as it appears in result rows.
        """
        resolver = self.source.resolver
        dependent_table = dependent_cls.table_name()
        query = Select(dependent_table, alias=DEPENDENT_ALIAS)

        link_table = resolver.find_link_table(parent_cls, dependent_cls)
        if link_table:
            link = resolver.link_columns(link_table, parent_cls, dependent_cls)
            parent_key = link.parent_column
            query.join(
                link_table,
                LINK_ALIAS,
                f"{DEPENDENT_ALIAS}.id = {LINK_ALIAS}.{quote_identifier(link.dependent_column)}",
                [parent_key] if project_parent else [],
            )
            parent_ref = f"{LINK_ALIAS}.{quote_identifier(parent_key)}"
        else:
            parent_key = resolver.foreign_key_column(dependent_table, parent_cls.table_name())
            parent_ref = f"{DEPENDENT_ALIAS}.{quote_identifier(parent_key)}"

        query.filter(f"{parent_ref} IN (?)", parent_ids)
        for clause, value in normalize_where(where):
            query.filter(f"{DEPENDENT_ALIAS}.{clause}", value)
        return query, parent_ref, parent_key

    def _fetch(
        self,
        parent_cls: Type[Entity],
        parent_ids: List[int],
        dependent_cls: Type[Entity],
        where: WhereSpec,
        order: Optional[str],
        limit: Optional[int],
    ) -> Dict[int, Any]:
        query, _, parent_key = self._base_select(parent_cls, parent_ids, dependent_cls, where, True)
        query.order(*qualify_order(order, DEPENDENT_ALIAS))
        query.order(f"{DEPENDENT_ALIAS}.id")
        rows = self.source.executor.execute_select(query)

        parent_name = parent_cls.entity_name()
        materializer = self.source.materializer
        groups: Dict[int, List[Entity]] = {}
        for row in rows:
            parent_id = int(row[parent_key])
            group = groups.setdefault(parent_id, [])
            # the limit bounds each parent's group, not the whole result
            if limit and len(group) >= limit:
                continue
            entity = materializer.materialize(row, None, dependent_cls)
            links = entity.links.setdefault(parent_name, [])
            if parent_id not in links:
                links.append(parent_id)
            group.append(entity)

        logger.debug(
            "Loaded %d %s row(s) for %d %s parent(s)",
            len(rows), dependent_cls.entity_name(), len(parent_ids), parent_name,
        )
        values: Dict[int, Any] = {}
        for parent_id, group in groups.items():
            if limit == 1:
                values[parent_id] = group[0] if group else None
            else:
                values[parent_id] = {entity.id: entity for entity in group}
        return values

    def _count(
        self,
        parent_cls: Type[Entity],
        parent_ids: List[int],
        dependent_cls: Type[Entity],
        where: WhereSpec,
    ) -> Dict[int, Any]:
        query, parent_ref, _ = self._base_select(parent_cls, parent_ids, dependent_cls, where, False)
        query.columns = [f"{parent_ref} AS parent_id", "COUNT(*) AS dependent_count"]
        query.group_by = [parent_ref]
        rows = self.source.executor.execute_select(query)
        return {int(row["parent_id"]): int(row["dependent_count"]) for row in rows}

    # --- eager loading ---
    def load(
        self,
        entity_cls: Type[Entity],
        ids: Optional[Iterable[Any]],
        paths: Iterable[str] = (),
        context: Optional[Tuple[Type[Entity], str]] = None,
    ) -> Dict[int, Entity]:
        """Load entities and pre-populate the relationships named by ``paths``.

        Args:
            entity_cls: Type of the entities to load
            ids: Entity ids, or parent ids when ``context`` is given
            paths: Dotted relationship paths; a segment may carry a type hint
                   as ``segment:TypeName``
            context: ``(parent type, dependent name)`` when loading the
                     dependents of those parents

        Raises:
            ConfigurationError: If a path segment is neither a reference nor
                                a declared dependent
        """
        ids = list(ids) if ids is not None else None
        if context is not None:
            parent_cls, name = context
            config = parent_cls.dependent_config(name)
            if config.count:
                raise ConfigurationError(f"Cannot eager load count dependent '{name}'")
            values = self.dependents_by_parent(
                parent_cls, sorted({int(i) for i in ids or []}), entity_cls,
                config.where, config.order, config.limit, config.count,
            )
            entities = _flatten(values.values())
        elif ids is None:
            entities = self.source.get_entities(entity_cls)
        else:
            entities = self.source.get_entities(entity_cls, ids)

        if entities:
            for path in paths:
                if path:
                    self._walk(entity_cls, entities, path)
        return entities

    def _walk(self, entity_cls: Type[Entity], entities: Dict[int, Entity], path: str) -> None:
        head, _, rest = path.partition(".")
        name, _, hint = head.partition(":")
        descriptor = entity_cls.describe()
        remaining = [rest] if rest else []

        if name in descriptor.references and descriptor.kind_of(name) is not PropertyKind.ACCESSOR:
            target = entity_class(hint or descriptor.references[name])
            shadow = descriptor.shadow_field(name)
            ref_ids = sorted({e.__dict__[shadow] for e in entities.values() if e.__dict__.get(shadow) is not None})
            children = self.load(target, ref_ids, remaining) if ref_ids else {}
            for entity in entities.values():
                child = children.get(entity.__dict__.get(shadow))
                if child is not None:
                    entity.set_related(name, child)
            return

        if name in descriptor.dependents:
            config: Dependent = descriptor.dependents[name]
            target = entity_class(hint or config.type_name)
            parent_ids = sorted(entities)
            values = self.dependents_by_parent(
                entity_cls, parent_ids, target, config.where, config.order, config.limit, config.count,
            )
            if remaining and not config.count:
                children = _flatten(values.values())
                if children:
                    for child_path in remaining:
                        self._walk(target, children, child_path)
            for parent_id, entity in entities.items():
                entity.set_related(name, values.get(parent_id, _empty_value(config.limit, config.count)))
            return

        raise ConfigurationError(
            f"Invalid eager loading configuration. Path '{name}' is not configured for {entity_cls.entity_name()}"
        )
