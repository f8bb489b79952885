"""Entity base class and per-type descriptors.

Entity types declare their shape statically:

    class Course(Entity):
        fields = ("name", "allowSyndication", "startDate")
        references = {"category": "Category"}          # shadow field category_id
        dependents = {
            "instructors": Dependent("Instructor"),
            "latestReview": Dependent("Review", order="created_at DESC", limit=1),
            "reviewCount": Dependent("Review", count=True),
        }

Property access is dispatched through descriptors installed once, when the
class is created, in precedence order: explicit accessor (a ``property``
defined on the class), reference, dependent, plain field.
"""
from __future__ import annotations

import datetime as dt
import threading
from dataclasses import dataclass, field
from enum import Enum
from typing import TYPE_CHECKING, Any, ClassVar, Dict, List, Optional, Tuple, Type

from ..db.query import NO_VALUE
from ..errors import ConfigurationError
from ..logging_config import get_logger
from ..orm.mapper import camel_to_snake, format_value
from .records import Dependent

if TYPE_CHECKING:
    from ..datasource import DataSource

logger = get_logger(__name__)


class PropertyKind(str, Enum):
    ACCESSOR = "accessor"
    REFERENCE = "reference"
    REFERENCE_ID = "reference_id"
    DEPENDENT = "dependent"
    FIELD = "field"


@dataclass(slots=True)
class EntityDescriptor:
    """Static description of an entity type, built at class creation."""
    name: str
    table: str
    fields: Tuple[str, ...] = ()
    references: Dict[str, str] = field(default_factory=dict)
    dependents: Dict[str, Dependent] = field(default_factory=dict)
    kinds: Dict[str, PropertyKind] = field(default_factory=dict)

    @staticmethod
    def shadow_field(reference: str) -> str:
        return f"{reference}_id"

    @property
    def shadow_fields(self) -> Tuple[str, ...]:
        return tuple(self.shadow_field(ref) for ref in self.references)

    @property
    def persisted(self) -> Tuple[str, ...]:
        """Properties backed by columns: id, fields, reference id fields."""
        return ("id",) + self.fields + self.shadow_fields

    def kind_of(self, name: str) -> Optional[PropertyKind]:
        return self.kinds.get(name)


_registry: Dict[str, Type["Entity"]] = {}
_registry_lock = threading.Lock()


def register_entity(cls: Type["Entity"]) -> None:
    with _registry_lock:
        previous = _registry.get(cls.entity_name())
        if previous is not None and previous is not cls:
            logger.debug("Entity type %s re-registered", cls.entity_name())
        _registry[cls.entity_name()] = cls


def entity_class(name: str) -> Type["Entity"]:
    """Resolve an entity type by name."""
    with _registry_lock:
        cls = _registry.get(name) or _registry.get(name[:1].upper() + name[1:])
    if cls is None:
        raise ConfigurationError(f"Unknown entity type '{name}'")
    return cls


class ReferenceIdProperty:
    """Shadow foreign-key field. Changing it drops a stale resolved reference."""

    def __init__(self, reference: str) -> None:
        self.reference = reference
        self.name = EntityDescriptor.shadow_field(reference)

    def __get__(self, obj: Optional["Entity"], owner: type) -> Any:
        if obj is None:
            return self
        return obj.__dict__.get(self.name)

    def __set__(self, obj: "Entity", value: Any) -> None:
        value = None if value is None or value == "" else int(value)
        obj.__dict__[self.name] = value
        related = obj._related.get(self.reference)
        if related is not None and related.id != value:
            del obj._related[self.reference]


class ReferenceProperty:
    """One-to-one reference resolved lazily from its shadow id field."""

    def __init__(self, name: str, type_name: str) -> None:
        self.name = name
        self.type_name = type_name
        self.shadow = EntityDescriptor.shadow_field(name)

    def __get__(self, obj: Optional["Entity"], owner: type) -> Any:
        if obj is None:
            return self
        ref_id = obj.__dict__.get(self.shadow)
        related = obj._related.get(self.name)
        if ref_id is None:
            return related
        if related is None or related.id != ref_id:
            related = obj.data_source().get_entity(entity_class(self.type_name), ref_id)
            if related is None:
                obj._related.pop(self.name, None)
            else:
                obj._related[self.name] = related
        return related

    def __set__(self, obj: "Entity", value: Any) -> None:
        if isinstance(value, Entity):
            obj._related[self.name] = value
            obj.__dict__[self.shadow] = value.id
        elif value is None or isinstance(value, (int, str)):
            obj._related.pop(self.name, None)
            obj.__dict__[self.shadow] = None if value is None or value == "" else int(value)
        else:
            raise TypeError(f"Cannot assign {type(value).__name__} to reference '{self.name}'")


class DependentProperty:
    """Declared dependent relationship, loaded on first access."""

    def __init__(self, name: str) -> None:
        self.name = name

    def __get__(self, obj: Optional["Entity"], owner: type) -> Any:
        if obj is None:
            return self
        return obj.dependent(self.name)

    def __set__(self, obj: "Entity", value: Any) -> None:
        raise AttributeError(f"Dependent '{self.name}' is loaded from the store and cannot be assigned")


def _merge_declarations(cls: type) -> Tuple[Tuple[str, ...], Dict[str, str], Dict[str, Dependent]]:
    fields: List[str] = []
    references: Dict[str, str] = {}
    dependents: Dict[str, Dependent] = {}
    for klass in reversed(cls.__mro__):
        declared = vars(klass)
        for name in declared.get("fields", ()):
            if name not in fields:
                fields.append(name)
        references.update(declared.get("references", {}) or {})
        dependents.update(declared.get("dependents", {}) or {})
    return tuple(fields), references, dependents


def _is_accessor(cls: type, name: str) -> bool:
    for klass in cls.__mro__:
        attr = vars(klass).get(name)
        if isinstance(attr, property):
            return True
    return False


class Entity:
    """Base class for all entities.

    Subclasses pass ``abstract=True`` to stay out of the registry.
    """

    fields: ClassVar[Tuple[str, ...]] = ()
    references: ClassVar[Dict[str, str]] = {}
    dependents: ClassVar[Dict[str, Dependent]] = {}
    table: ClassVar[Optional[str]] = None
    __entity_name__: ClassVar[Optional[str]] = None
    __descriptor__: ClassVar[EntityDescriptor]

    def __init_subclass__(cls, abstract: bool = False, **kwargs: Any) -> None:
        super().__init_subclass__(**kwargs)
        fields, references, dependents = _merge_declarations(cls)
        name = vars(cls).get("__entity_name__") or cls.__name__
        table = vars(cls).get("table") or camel_to_snake(name)
        descriptor = EntityDescriptor(
            name=name,
            table=table,
            fields=fields,
            references=references,
            dependents=dependents,
        )

        for ref_name, type_name in references.items():
            shadow = descriptor.shadow_field(ref_name)
            if _is_accessor(cls, ref_name):
                descriptor.kinds[ref_name] = PropertyKind.ACCESSOR
            else:
                setattr(cls, ref_name, ReferenceProperty(ref_name, type_name))
                descriptor.kinds[ref_name] = PropertyKind.REFERENCE
            setattr(cls, shadow, ReferenceIdProperty(ref_name))
            descriptor.kinds[shadow] = PropertyKind.REFERENCE_ID

        for dep_name in dependents:
            if dep_name in descriptor.kinds:
                continue
            if _is_accessor(cls, dep_name):
                descriptor.kinds[dep_name] = PropertyKind.ACCESSOR
                continue
            setattr(cls, dep_name, DependentProperty(dep_name))
            descriptor.kinds[dep_name] = PropertyKind.DEPENDENT

        for field_name in fields:
            if field_name in descriptor.kinds:
                raise ConfigurationError(f"{name}.{field_name} is declared twice")
            descriptor.kinds[field_name] = (
                PropertyKind.ACCESSOR if _is_accessor(cls, field_name) else PropertyKind.FIELD
            )

        cls.__descriptor__ = descriptor
        if not abstract:
            register_entity(cls)

    def __init__(self, **data: Any) -> None:
        self.__dict__["id"] = None
        self.__dict__["_related"] = {}
        self.__dict__["_source"] = None
        self.__dict__["_snapshot"] = {}
        self.links: Dict[str, List[int]] = {}
        descriptor = self.describe()
        for field_name in descriptor.fields:
            if descriptor.kinds[field_name] is PropertyKind.FIELD:
                self.__dict__[field_name] = None
        for shadow in descriptor.shadow_fields:
            self.__dict__[shadow] = None
        self.set(**data)
        self._take_snapshot()

    def __repr__(self) -> str:
        return f"<{self.entity_name()} id={self.id}>"

    def __str__(self) -> str:
        for attr in ("name", "caption", "uri"):
            value = self.__dict__.get(attr)
            if value:
                return str(value)
        return ""

    # --- type information ---
    @classmethod
    def describe(cls) -> EntityDescriptor:
        return cls.__descriptor__

    @classmethod
    def entity_name(cls) -> str:
        return cls.__descriptor__.name

    @classmethod
    def table_name(cls) -> str:
        return cls.__descriptor__.table

    @classmethod
    def dependent_config(cls, name: str) -> Dependent:
        config = cls.__descriptor__.dependents.get(name)
        if config is None:
            raise ConfigurationError(f"Dependent '{name}' is not configured for {cls.entity_name()}")
        return config

    # --- data source binding ---
    def bind(self, source: "DataSource") -> "Entity":
        self.__dict__["_source"] = source
        return self

    def data_source(self) -> "DataSource":
        source = self.__dict__.get("_source")
        if source is None:
            raise ConfigurationError(f"{self!r} is not bound to a data source")
        return source

    # --- property access ---
    def set(self, **data: Any) -> "Entity":
        descriptor = self.describe()
        for name, value in data.items():
            if name != "id" and descriptor.kind_of(name) is None:
                raise AttributeError(f"Unknown property '{name}' on {self.entity_name()}")
            setattr(self, name, value)
        return self

    def related(self, name: str) -> Any:
        """Return an already resolved reference or dependent without loading."""
        return self._related.get(name)

    def set_related(self, name: str, value: Any) -> None:
        descriptor = self.describe()
        if descriptor.kind_of(name) is PropertyKind.REFERENCE:
            setattr(self, name, value)
        else:
            self._related[name] = value

    def dependent(self, name: str, where: Optional[Dict[str, Any]] = None) -> Any:
        """Load a declared dependent, with ``where`` merged over its declared filter.

        Nothing is kept on the instance: every access goes through the data
        source, whose identity map caches the set and drops it when a member
        is saved, inserted, deleted or linked.
        """
        config = self.dependent_config(name)
        if self.id is None:
            return 0 if config.count else (None if config.single else {})

        return self.data_source().get_dependents(
            type(self),
            self.id,
            entity_class(config.type_name),
            _merge_where(config.where, where),
            config.order,
            config.limit,
            config.count,
        )

    # --- persistence ---
    def save(self, **data: Any) -> "Entity":
        self.set(**data)
        is_new = self.id is None
        self.pre_save()
        self.data_source().save_entity(self)
        if is_new:
            self.post_insert()
            self._notify_references("dependent_added")
        else:
            self.post_update()
            self._notify_references("dependent_updated")
        self._take_snapshot()
        return self

    def drop(self) -> None:
        self.pre_delete()
        self.data_source().delete_entity(self)
        self.post_delete()
        self._notify_references("dependent_removed")

    def reload(self) -> Optional["Entity"]:
        return self.data_source().get_entity(type(self), self.id, existing=self)

    def add_dependent(self, dependent: "Entity") -> None:
        self.data_source().add_link(self, dependent)
        type(self).dependent_added(self.id, dependent)
        type(dependent).dependent_added(dependent.id, self)

    def remove_dependent(self, dependent: "Entity") -> None:
        self.data_source().remove_link(self, dependent)
        type(self).dependent_removed(self.id, dependent)
        type(dependent).dependent_removed(dependent.id, self)

    # --- snapshots ---
    def persisted_values(self) -> Dict[str, Any]:
        return {name: format_value(getattr(self, name)) for name in self.describe().persisted}

    def _take_snapshot(self) -> None:
        self.__dict__["_snapshot"] = self.persisted_values()

    def dirty(self) -> Dict[str, Any]:
        """Current values of properties changed since the last load or save.

        For an entity without an id, every non-null property is dirty.
        """
        current = self.persisted_values()
        if self.id is None:
            values = {name: value for name, value in current.items() if value is not None}
        else:
            values = {name: value for name, value in current.items() if self._snapshot.get(name) != value}
        values.pop("id", None)
        return values

    def changes(self) -> Dict[str, Any]:
        """Snapshot values of properties changed since the last load or save."""
        current = self.persisted_values()
        if self.id is None:
            values = dict(self._snapshot)
        else:
            values = {name: value for name, value in self._snapshot.items() if current.get(name) != value}
        values.pop("id", None)
        return values

    def to_dict(self, date_format: Optional[str] = None) -> Dict[str, Any]:
        values: Dict[str, Any] = {}
        for name in self.describe().persisted:
            value = getattr(self, name)
            if date_format and isinstance(value, (dt.date, dt.datetime, dt.time)):
                values[camel_to_snake(name)] = value.strftime(date_format)
            else:
                values[camel_to_snake(name)] = format_value(value)
        return values

    def _notify_references(self, hook: str) -> None:
        descriptor = self.describe()
        for ref_name, type_name in descriptor.references.items():
            ref_id = self.__dict__.get(descriptor.shadow_field(ref_name))
            if ref_id is not None:
                getattr(entity_class(type_name), hook)(ref_id, self)
        for dep_name, config in descriptor.dependents.items():
            loaded = self._related.get(dep_name)
            if isinstance(loaded, dict):
                for dependent in loaded.values():
                    getattr(entity_class(config.type_name), hook)(dependent.id, self)
            elif isinstance(loaded, Entity):
                getattr(entity_class(config.type_name), hook)(loaded.id, self)

    # --- hooks ---
    def on_map(self, row: Dict[str, Any]) -> None:
        """Derive entity-specific values from the raw row after mapping."""

    def map_data(self, data: Dict[str, Any]) -> Optional[Dict[str, Any]]:
        """Return extra or overriding column values before a save."""
        return None

    def pre_save(self) -> None:
        pass

    def post_insert(self) -> None:
        pass

    def post_update(self) -> None:
        pass

    def pre_delete(self) -> None:
        pass

    def post_delete(self) -> None:
        pass

    @classmethod
    def dependent_added(cls, entity_id: Optional[int], dependent: "Entity") -> None:
        pass

    @classmethod
    def dependent_updated(cls, entity_id: Optional[int], dependent: "Entity") -> None:
        pass

    @classmethod
    def dependent_removed(cls, entity_id: Optional[int], dependent: "Entity") -> None:
        pass


def _merge_where(base: Any, extra: Optional[Dict[str, Any]]) -> Any:
    if not extra:
        return base
    if base is None:
        return dict(extra)
    if isinstance(base, dict):
        return {**base, **extra}
    merged: Dict[str, Any] = {clause: NO_VALUE for clause in base}
    merged.update(extra)
    return merged
