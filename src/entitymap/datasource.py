"""Data source: the caller-facing entry point of the entity layer.

A data source wires a query executor to the caches and ORM components:

    source = DataSource.from_settings(load_settings())
    course = source.get_entity(Course, 10)
    source.load(Course, [10, 11], ["instructors.courses", "category"])

Every write invalidates the identity map before the fresh state is read
back, so callers never observe stale entities or dependent sets.
"""
from __future__ import annotations

from typing import Any, Dict, Iterable, List, Optional, Sequence, Type

from .cache.identity_map import IdentityMap, Wildcard, get_global_identity_map
from .cache.metadata import MetadataCache, PersistentCache, SQLitePersistentCache
from .config import Settings
from .db.executor import QueryExecutor, SQLiteExecutor, quote_identifier
from .db.query import Select
from .db.schema import SchemaIntrospector
from .errors import ConfigurationError, ConflictError
from .logging_config import get_logger
from .models.entity import Entity
from .models.records import LinkTable, WhereSpec
from .orm.loader import DEPENDENTS, DependentLoader
from .orm.mapper import PropertyMapper
from .orm.materializer import Materializer
from .orm.resolver import RelationshipResolver

logger = get_logger(__name__)


class DataSource:
    """Load, save and relate entities through a query executor.

    Attributes:
        executor: Query executor talking to the store
        metadata: Two-tier schema metadata cache
        identity_map: Identity map (the process-wide one unless given)
        mapper: Property <-> column naming rules
    """

    def __init__(
        self,
        executor: QueryExecutor,
        metadata: Optional[MetadataCache] = None,
        identity_map: Optional[IdentityMap] = None,
        mapper: Optional[PropertyMapper] = None,
        persistent: Optional[PersistentCache] = None,
    ) -> None:
        self.executor = executor
        self.metadata = metadata or MetadataCache(SchemaIntrospector(executor), persistent=persistent)
        self.identity_map = identity_map if identity_map is not None else get_global_identity_map()
        self.mapper = mapper or PropertyMapper()
        self.resolver = RelationshipResolver(self.metadata)
        self.materializer = Materializer(self)
        self.loader = DependentLoader(self)

    @classmethod
    def from_settings(
        cls,
        settings: Settings,
        identity_map: Optional[IdentityMap] = None,
    ) -> "DataSource":
        executor = SQLiteExecutor.open(settings.db_path)
        persistent = (
            SQLitePersistentCache(settings.metadata_cache_path)
            if settings.metadata_cache_path is not None
            else None
        )
        identity_map = identity_map if identity_map is not None else get_global_identity_map()
        if not settings.cache_enabled:
            identity_map.disable()
        return cls(
            executor,
            identity_map=identity_map,
            mapper=PropertyMapper(settings.column_prefix),
            persistent=persistent,
        )

    def create(self, entity_cls: Type[Entity], **data: Any) -> Entity:
        """Instantiate an unsaved entity bound to this data source."""
        return entity_cls(**data).bind(self)

    # --- entities ---
    def get_entity(
        self,
        entity_cls: Type[Entity],
        entity_id: Any,
        existing: Optional[Entity] = None,
        ignore_columns: Sequence[str] = (),
    ) -> Optional[Entity]:
        """Load one entity, or None if no row has that id.

        Args:
            entity_cls: Entity type
            entity_id: Id to load
            existing: Instance to refresh in place (bypasses the identity map)
            ignore_columns: Columns left out of the projection
        """
        if entity_id is None or entity_id == "" or entity_id == 0:
            return None
        if existing is None:
            cached = self.identity_map.get(entity_cls.entity_name(), entity_id)
            if cached is not None:
                return cached

        columns = ["*"]
        if ignore_columns:
            columns = [
                quote_identifier(name)
                for name in self.metadata.columns(entity_cls.table_name())
                if name not in set(ignore_columns)
            ]
        rows = self.executor.execute_select(
            Select(entity_cls.table_name(), columns=columns, where=[("id = ?", int(entity_id))], limit=1)
        )
        if not rows:
            return None
        return self.materializer.materialize(rows[0], existing, entity_cls)

    def get_entities(self, entity_cls: Type[Entity], ids: Optional[Iterable[Any]] = None) -> Dict[int, Entity]:
        """Load entities keyed by id; only ids missing from the identity map are queried.

        With ``ids`` omitted every row of the table is loaded.
        """
        table = entity_cls.table_name()
        if ids is None:
            rows = self.executor.execute_select(Select(table, order_by=["id"]))
            return self.materializer.materialize_many(rows, entity_cls)

        requested: List[int] = []
        for entity_id in ids:
            if entity_id is None or entity_id == "":
                continue
            if int(entity_id) not in requested:
                requested.append(int(entity_id))

        found: Dict[int, Entity] = {}
        missing: List[int] = []
        for entity_id in requested:
            cached = self.identity_map.get(entity_cls.entity_name(), entity_id)
            if cached is not None:
                found[entity_id] = cached
            else:
                missing.append(entity_id)

        if missing:
            rows = self.executor.execute_select(Select(table, where=[("id IN (?)", missing)]))
            found.update(self.materializer.materialize_many(rows, entity_cls))

        return {entity_id: found[entity_id] for entity_id in requested if entity_id in found}

    def update_entities(self, entities: Sequence[Entity], data: Dict[str, Any]) -> None:
        """Apply the same column values to several entities of one type."""
        if not entities:
            return
        entity_cls = type(entities[0])
        ids = [entity.id for entity in entities if entity.id is not None]
        if not ids:
            return
        self.executor.execute_update(entity_cls.table_name(), ids, data)
        for entity_id in ids:
            self.identity_map.invalidate(entity_cls.entity_name(), entity_id, wildcard=Wildcard.FULL)

        by_id = {entity.id: entity for entity in entities}
        rows = self.executor.execute_select(Select(entity_cls.table_name(), where=[("id IN (?)", ids)]))
        for row in rows:
            self.materializer.materialize(row, by_id.get(row["id"]), entity_cls)

    def save_entity(self, entity: Entity) -> Entity:
        """Insert an entity without id, update one with an id.

        The saved state is read back into the same instance.
        """
        entity_cls = type(entity)
        entity.bind(self)
        columns = self.metadata.columns(entity_cls.table_name())
        data = self.mapper.entity_to_row(entity, columns)

        if entity.id is None:
            entity.id = self.executor.execute_insert(entity_cls.table_name(), data)
            logger.debug("Inserted %s %s", entity_cls.entity_name(), entity.id)
        elif data:
            self.executor.execute_update(entity_cls.table_name(), entity.id, data)
            logger.debug("Updated %s %s", entity_cls.entity_name(), entity.id)
        else:
            return entity

        self.identity_map.invalidate(entity_cls.entity_name(), entity.id, wildcard=Wildcard.FULL)
        return self.get_entity(entity_cls, entity.id, existing=entity) or entity

    def delete_entity(self, entity: Entity) -> None:
        if entity.id is None:
            raise ValueError(f"Cannot delete unsaved {entity.entity_name()}")
        entity_cls = type(entity)
        self.executor.execute_delete(entity_cls.table_name(), [("id = ?", entity.id)])
        self.identity_map.invalidate(entity_cls.entity_name(), entity.id, wildcard=Wildcard.FULL)
        logger.debug("Deleted %s %s", entity_cls.entity_name(), entity.id)

    # --- relationships ---
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
        return self.loader.get_dependents(parent_cls, parent_ids, dependent_cls, where, order, limit, count)

    def load(
        self,
        entity_cls: Type[Entity],
        ids: Optional[Iterable[Any]],
        paths: Iterable[str] = (),
    ) -> Dict[int, Entity]:
        """Load entities and eagerly populate dotted relationship paths."""
        return self.loader.load(entity_cls, ids, paths)

    def _link(self, parent: Entity, dependent: Entity, action: str) -> LinkTable:
        if parent.id is None or dependent.id is None:
            raise ValueError("Both entities must be saved before they can be linked")
        link_table = self.resolver.find_link_table(type(parent), type(dependent))
        if not link_table:
            raise ConfigurationError(
                f"Cannot determine link table to {action} "
                f"{dependent.entity_name()} {'to' if action == 'add' else 'from'} {parent.entity_name()}"
            )
        return self.resolver.link_columns(link_table, type(parent), type(dependent))

    def _is_linked(self, link: LinkTable, parent: Entity, dependent: Entity) -> bool:
        rows = self.executor.execute_select(
            Select(
                link.table,
                where=[
                    (f"{quote_identifier(link.dependent_column)} = ?", dependent.id),
                    (f"{quote_identifier(link.parent_column)} = ?", parent.id),
                ],
                limit=1,
            )
        )
        return bool(rows)

    def _invalidate_link(self, parent: Entity, dependent: Entity) -> None:
        self.identity_map.invalidate(parent.entity_name(), parent.id, (DEPENDENTS,), wildcard=Wildcard.SCOPED)
        self.identity_map.invalidate(dependent.entity_name(), dependent.id, (DEPENDENTS,), wildcard=Wildcard.SCOPED)

    def add_link(self, parent: Entity, dependent: Entity) -> None:
        """Attach ``dependent`` to ``parent`` through their link table.

        Raises:
            ConfigurationError: If no link table relates the two types
            ConflictError: If the link already exists
        """
        link = self._link(parent, dependent, "add")
        if self._is_linked(link, parent, dependent):
            raise ConflictError("Cannot add dependent. Dependent already attached.")
        self.executor.execute_insert(
            link.table,
            {link.dependent_column: dependent.id, link.parent_column: parent.id},
        )
        self._invalidate_link(parent, dependent)

    def remove_link(self, parent: Entity, dependent: Entity) -> None:
        """Detach ``dependent`` from ``parent``.

        Raises:
            ConfigurationError: If no link table relates the two types
            ConflictError: If the link does not exist
        """
        link = self._link(parent, dependent, "remove")
        if not self._is_linked(link, parent, dependent):
            raise ConflictError("Cannot remove dependent. Dependent is not attached.")
        self.executor.execute_delete(
            link.table,
            [
                (f"{quote_identifier(link.dependent_column)} = ?", dependent.id),
                (f"{quote_identifier(link.parent_column)} = ?", parent.id),
            ],
        )
        self._invalidate_link(parent, dependent)
        links = dependent.links.get(parent.entity_name())
        if links and parent.id in links:
            links.remove(parent.id)

    # --- administration ---
    def clear_cache(self) -> None:
        self.identity_map.clear()

    def disable_cache(self) -> None:
        self.identity_map.disable()
