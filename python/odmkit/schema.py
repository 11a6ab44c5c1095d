"""Entity schemas and the registry that builds them."""

from __future__ import annotations

from collections.abc import Callable, Iterator
from dataclasses import dataclass, field
from enum import Enum, StrEnum
from types import MappingProxyType
from typing import TYPE_CHECKING, Any

from odmkit.errors import SchemaError

if TYPE_CHECKING:
    from odmkit.base import Entity


class _Missing:
    def __repr__(self) -> str:
        return "MISSING"


MISSING: Any = _Missing()


class FieldType(StrEnum):
    """Semantic value type of a property."""

    STRING = "string"
    NUMBER = "number"
    BOOLEAN = "boolean"
    DATE = "date"
    UUID = "uuid"
    OBJECT_ID = "objectId"
    ENUM = "enum"
    BINARY = "binary"
    ANY = "any"
    CLASS = "class"


@dataclass(frozen=True)
class PropertySchema:
    """Immutable description of one entity field."""

    name: str
    type: FieldType = FieldType.STRING
    array: bool = False
    map: bool = False
    optional: bool = False
    primary: bool = False
    index: bool = False
    is_reference: bool = False
    is_back_reference: bool = False
    mapped_by: str | None = None
    via: Any = field(default=None, repr=False, compare=False)
    target: Any = field(default=None, repr=False, compare=False)
    enum: type[Enum] | None = field(default=None, repr=False)
    default: Any = field(default=MISSING, repr=False, compare=False)

    @property
    def is_relation(self) -> bool:
        return self.is_reference or self.is_back_reference

    @property
    def is_embedded(self) -> bool:
        return self.type is FieldType.CLASS and not self.is_relation

    @property
    def is_collection(self) -> bool:
        return self.array or self.map

    def resolved_type(self) -> type[Entity]:
        """Resolve the class this property points to (forward declarations included)."""
        if self.type is not FieldType.CLASS or self.target is None:
            raise SchemaError(f"Property '{self.name}' has no class type")
        return _resolve(self.target)

    def resolved_via(self) -> type[Entity] | None:
        if self.via is None:
            return None
        return _resolve(self.via)

    def get_resolved_schema(self) -> Schema:
        return get_schema(self.resolved_type())

    def default_value(self) -> Any:
        """Value used when an instance is built without this field."""
        if self.default is not MISSING:
            return self.default() if callable(self.default) else self.default
        if self.array:
            return []
        if self.map:
            return {}
        if self.optional:
            return None
        return MISSING


def _resolve(target: Any) -> Any:
    if isinstance(target, type):
        return target
    if callable(target):
        return target()
    raise SchemaError(f"Cannot resolve class type from {target!r}")


@dataclass(frozen=True, eq=False)
class Schema:
    """Registered schema of one entity type.

    Compared by identity so it can key the identity map.
    """

    cls: type
    name: str
    properties: MappingProxyType[str, PropertySchema]
    primary_key: str | None = None

    @property
    def collection(self) -> str:
        return self.name

    @property
    def class_name(self) -> str:
        return self.cls.__name__

    def has_property(self, name: str) -> bool:
        return name in self.properties

    def get_property(self, name: str) -> PropertySchema:
        try:
            return self.properties[name]
        except KeyError:
            raise SchemaError(f"Property '{name}' not found in {self.class_name}") from None

    def get_primary(self) -> PropertySchema:
        if self.primary_key is None:
            raise SchemaError(f"{self.class_name} has no primary key")
        return self.properties[self.primary_key]

    @property
    def relations(self) -> list[PropertySchema]:
        """Forward and back references in declaration order."""
        return [prop for prop in self.properties.values() if prop.is_relation]

    @property
    def back_references(self) -> list[PropertySchema]:
        return [prop for prop in self.properties.values() if prop.is_back_reference]

    def find_reverse_reference(
        self,
        to_type: type,
        from_property: PropertySchema,
        exclude: PropertySchema | None = None,
    ) -> PropertySchema:
        """Find the property of this schema pairing with ``from_property``.

        See :func:`odmkit.relationships.find_reverse_reference`.
        """
        from odmkit.relationships import find_reverse_reference

        return find_reverse_reference(self, to_type, from_property, exclude)

    def __repr__(self) -> str:
        return f"<Schema {self.name} ({self.class_name})>"


def get_schema(cls: type) -> Schema:
    """Get the registered schema of an entity class."""
    schema = cls.__dict__.get("__schema__") if isinstance(cls, type) else None
    if schema is None:
        name = getattr(cls, "__name__", repr(cls))
        raise SchemaError(f"{name} is not a registered entity. Decorate it with registry.entity()")
    return schema


class SchemaRegistry:
    """Builds and indexes entity schemas.

    The registry is created by the caller and passed around explicitly; there
    is no module-level registry.

    Example:
        >>> registry = SchemaRegistry()
        >>> @registry.entity("users")
        ... class User(Entity):
        ...     id: str = field(FieldType.UUID, primary=True, default=uuid4)
        ...     name: str = field(str)
    """

    def __init__(self) -> None:
        self._schemas: dict[str, Schema] = {}

    def entity(self, name: str | None = None) -> Callable[[type[Entity]], type[Entity]]:
        """Class decorator registering an entity (or embeddable) type."""

        def decorator(cls: type[Entity]) -> type[Entity]:
            self.register(cls, name)
            return cls

        return decorator

    def register(self, cls: type[Entity], name: str | None = None) -> Schema:
        if "__schema__" in cls.__dict__:
            raise SchemaError(f"{cls.__name__} is already registered")

        fields = getattr(cls, "__fields__", None)
        if fields is None:
            raise SchemaError(f"{cls.__name__} must subclass Entity")

        if name is None:
            name = cls.__name__.lower() + "s"
        if name in self._schemas:
            raise SchemaError(f"Entity name '{name}' is already used by {self._schemas[name].class_name}")

        properties = {field_name: info.property for field_name, info in fields.items()}
        primaries = [prop.name for prop in properties.values() if prop.primary]
        if len(primaries) > 1:
            raise SchemaError(f"{cls.__name__} declares more than one primary key: {primaries}")

        for prop in properties.values():
            if prop.primary and (prop.is_relation or prop.is_collection):
                raise SchemaError(f"Primary key {cls.__name__}.{prop.name} must be a scalar field")
            if prop.via is not None and not prop.is_back_reference:
                raise SchemaError(f"{cls.__name__}.{prop.name}: 'via' is only valid on back references")

        schema = Schema(
            cls=cls,
            name=name,
            properties=MappingProxyType(properties),
            primary_key=primaries[0] if primaries else None,
        )
        cls.__schema__ = schema  # type: ignore[attr-defined]
        self._schemas[name] = schema
        return schema

    def get(self, name: str) -> Schema:
        try:
            return self._schemas[name]
        except KeyError:
            raise SchemaError(f"No entity registered as '{name}'") from None

    def validate(self) -> None:
        """Resolve every relation of every registered schema.

        Raises:
            SchemaError: On the first relation that does not resolve.
        """
        from odmkit.relationships import resolve_relation

        for schema in self._schemas.values():
            for prop in schema.relations:
                resolve_relation(schema, prop)

    def __contains__(self, item: object) -> bool:
        if isinstance(item, str):
            return item in self._schemas
        return isinstance(item, type) and item.__dict__.get("__schema__") in self._schemas.values()

    def __iter__(self) -> Iterator[Schema]:
        return iter(self._schemas.values())

    def __len__(self) -> int:
        return len(self._schemas)
