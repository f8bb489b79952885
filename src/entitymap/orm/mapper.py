"""Naming-convention mapping between entity properties and columns.

A property binds to the first column found among, in order:

1. the property name itself            (``id`` -> ``id``)
2. its snake_case form                 (``allowSyndication`` -> ``allow_syndication``)
3. the prefixed form                   (``domain_allow_syndication``)
4. the entity-scoped prefixed form     (``type_id`` on Category -> ``domain_category_type_id``)

The order matters: a table carrying both ``allow_syndication`` and
``domain_allow_syndication`` binds the plain column.
"""
from __future__ import annotations

import datetime as dt
import re
from typing import TYPE_CHECKING, Any, Dict, List, Mapping, Optional, Type

from ..models.records import ColumnInfo

if TYPE_CHECKING:
    from ..models.entity import Entity

_UPPER = re.compile(r"([A-Z])")


def camel_to_snake(name: str) -> str:
    """``allowSyndication`` -> ``allow_syndication``; snake_case is unchanged."""
    if not name:
        return name
    name = name[0].lower() + name[1:]
    return _UPPER.sub(lambda match: "_" + match.group(1).lower(), name)


def format_value(value: Any) -> Any:
    """Render temporal values the way they are stored."""
    if isinstance(value, dt.datetime):
        return value.isoformat(sep=" ")
    if isinstance(value, (dt.date, dt.time)):
        return value.isoformat()
    return value


def is_empty(value: Any) -> bool:
    return value is None or value == ""


def _zero_date(value: Any) -> bool:
    return isinstance(value, str) and value.startswith("0000-00-00")


def coerce(value: Any, column: Optional[ColumnInfo]) -> Any:
    """Coerce a raw column value according to its declared type."""
    if column is None:
        return value
    affinity = column.affinity
    if affinity == "other":
        return value
    if is_empty(value) or _zero_date(value):
        return None
    if affinity == "datetime":
        if isinstance(value, dt.datetime):
            return value
        if isinstance(value, dt.date):
            return dt.datetime.combine(value, dt.time())
        return dt.datetime.fromisoformat(str(value))
    if affinity == "date":
        if isinstance(value, dt.datetime):
            return value.date()
        if isinstance(value, dt.date):
            return value
        return dt.date.fromisoformat(str(value)[:10])
    if affinity == "time":
        if isinstance(value, dt.time):
            return value
        return dt.time.fromisoformat(str(value))
    if affinity == "decimal":
        return float(value)
    return int(value)


class PropertyMapper:
    """Resolve property <-> column names for entity types."""

    def __init__(self, prefix: str = "domain") -> None:
        self.prefix = prefix

    def _candidates(self, entity_name: str, prop: str) -> List[str]:
        snake = camel_to_snake(prop)
        return [
            prop,
            snake,
            f"{self.prefix}_{snake}",
            f"{self.prefix}_{entity_name.lower()}_{snake}",
        ]

    def column_variants(self, entity_name: str, prop: str) -> List[str]:
        variants: List[str] = []
        for candidate in self._candidates(entity_name, prop):
            if candidate not in variants:
                variants.append(candidate)
        return variants

    def column_for_property(
        self,
        entity_cls: Type["Entity"],
        prop: str,
        columns: Mapping[str, Any],
    ) -> Optional[str]:
        for variant in self.column_variants(entity_cls.entity_name(), prop):
            if variant in columns:
                return variant
        return None

    def property_for_column(
        self,
        entity_cls: Type["Entity"],
        column: str,
        columns: Optional[Mapping[str, Any]] = None,
    ) -> Optional[str]:
        """Inverse lookup. Rules are tried in order across all properties.

        With ``columns`` given, a property only claims ``column`` if no
        higher-priority variant of it exists in the table.
        """
        entity_name = entity_cls.entity_name()
        properties = entity_cls.describe().persisted
        for rule in range(4):
            for prop in properties:
                if self._candidates(entity_name, prop)[rule] != column:
                    continue
                if columns is not None and self.column_for_property(entity_cls, prop, columns) != column:
                    continue
                return prop
        return None

    def bindings(self, entity_cls: Type["Entity"], columns: Mapping[str, ColumnInfo]) -> Dict[str, str]:
        """``{column: property}`` for every column of the table that maps."""
        result: Dict[str, str] = {}
        for prop in entity_cls.describe().persisted:
            column = self.column_for_property(entity_cls, prop, columns)
            if column is not None:
                result[column] = prop
        return result

    def row_to_entity(
        self,
        entity: "Entity",
        row: Mapping[str, Any],
        columns: Mapping[str, ColumnInfo],
        bindings: Optional[Dict[str, str]] = None,
    ) -> None:
        """Assign coerced row values to the entity's persisted properties.

        For each property the first naming variant present in the row wins,
        so a projection leaving out the preferred column falls back to the
        next variant.
        """
        entity_cls = type(entity)
        if bindings is None:
            bindings = self.bindings(entity_cls, columns)

        assigned = set()
        for column, prop in bindings.items():
            if column in row:
                setattr(entity, prop, coerce(row[column], columns.get(column)))
                assigned.add(prop)

        for prop in entity_cls.describe().persisted:
            if prop in assigned:
                continue
            column = self.column_for_property(entity_cls, prop, row)
            if column is not None:
                setattr(entity, prop, coerce(row[column], columns.get(column)))

    def entity_to_row(self, entity: "Entity", columns: Mapping[str, ColumnInfo]) -> Dict[str, Any]:
        """Map an entity to column values of its table.

        Reference id fields are written under the plain, prefixed and
        entity-scoped names so join tables with inconsistent naming still
        receive the value. ``id`` is never included.
        """
        descriptor = entity.describe()
        entity_name = entity.entity_name()
        data: Dict[str, Any] = {}

        for prop in descriptor.fields:
            column = self.column_for_property(type(entity), prop, columns) or camel_to_snake(prop)
            data[column] = format_value(getattr(entity, prop))

        for reference in descriptor.references:
            shadow = descriptor.shadow_field(reference)
            value = entity.__dict__.get(shadow)
            if value is None:
                related = entity.related(reference)
                value = related.id if related is not None else None
            snake = camel_to_snake(shadow)
            data[snake] = value
            data[f"{self.prefix}_{snake}"] = value
            data[f"{self.prefix}_{entity_name.lower()}_{snake}"] = value

        extra = entity.map_data(dict(data)) or {}
        data = {**data, **extra}
        data.pop("id", None)
        return {column: value for column, value in data.items() if column in columns}
