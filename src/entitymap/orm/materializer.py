"""Rows to entities.

Materialization consults the identity map first, so repeated loads of the
same id return the same instance for as long as the entry is cached.
"""
from __future__ import annotations

import threading
from typing import TYPE_CHECKING, Any, Dict, Iterable, Mapping, Optional, Tuple, Type

from ..models.records import ColumnInfo
from .mapper import is_empty

if TYPE_CHECKING:
    from ..datasource import DataSource
    from ..models.entity import Entity


class Materializer:
    """Build entities from rows using the data source's mapper and caches."""

    def __init__(self, source: "DataSource") -> None:
        self.source = source
        self._bindings: Dict[Tuple[type, str], Dict[str, str]] = {}
        self._lock = threading.Lock()

    def _bindings_for(self, entity_cls: Type["Entity"], columns: Mapping[str, ColumnInfo]) -> Dict[str, str]:
        key = (entity_cls, self.source.metadata.cache_id(entity_cls.table_name(), "columns"))
        with self._lock:
            bindings = self._bindings.get(key)
        if bindings is None:
            bindings = self.source.mapper.bindings(entity_cls, columns)
            with self._lock:
                self._bindings[key] = bindings
        return bindings

    def materialize(
        self,
        row: Optional[Mapping[str, Any]],
        existing: Optional["Entity"] = None,
        entity_cls: Optional[Type["Entity"]] = None,
    ) -> Optional["Entity"]:
        """Map a row onto an entity.

        Args:
            row: Raw row; empty rows yield None
            existing: Instance to map onto instead of the cached or a new one
            entity_cls: Entity type (defaults to the type of ``existing``)
        """
        if not row:
            return None
        if entity_cls is None:
            if existing is None:
                raise ValueError("materialize needs an entity type or an existing entity")
            entity_cls = type(existing)

        data = dict(row)
        identity_map = self.source.identity_map
        row_id = data.get("id")
        if existing is None and not is_empty(row_id):
            cached = identity_map.get(entity_cls.entity_name(), row_id)
            if cached is not None:
                return cached

        entity = existing if existing is not None else entity_cls()
        columns = self.source.metadata.columns(entity_cls.table_name())
        self.source.mapper.row_to_entity(entity, data, columns, self._bindings_for(entity_cls, columns))

        entity.on_map(data)
        entity.bind(self.source)
        entity._take_snapshot()
        identity_map.put(entity_cls.entity_name(), entity.id, entity)
        return entity

    def materialize_many(
        self,
        rows: Iterable[Mapping[str, Any]],
        entity_cls: Type["Entity"],
    ) -> Dict[int, "Entity"]:
        """Materialize rows keyed by id, skipping rows without one."""
        entities: Dict[int, "Entity"] = {}
        for row in rows:
            if not row or is_empty(row.get("id")):
                continue
            entity = self.materialize(row, None, entity_cls)
            if entity is not None:
                entities[entity.id] = entity
        return entities
