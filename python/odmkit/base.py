"""Base class for entity and embeddable types."""

from __future__ import annotations

from typing import Any, ClassVar, Self

from odmkit.fields import FieldInfo
from odmkit.schema import MISSING, Schema, get_schema
from odmkit.state import STATE_KEY, Loaded, Unloaded, get_state


class Entity:
    """Base class for all mapped types.

    Fields are collected in declaration order, parents first. A subclass
    becomes queryable once registered with ``SchemaRegistry.entity()``.

    Example:
        >>> @registry.entity("users")
        ... class User(Entity):
        ...     id: str = field(FieldType.UUID, primary=True, default=uuid4)
        ...     name: str = field(str)
        ...     manager: User | None = reference(lambda: User, optional=True)
    """

    __fields__: ClassVar[dict[str, FieldInfo]]
    __schema__: ClassVar[Schema]

    def __init_subclass__(cls, **kwargs: Any) -> None:
        super().__init_subclass__(**kwargs)
        fields: dict[str, FieldInfo] = {}
        for klass in reversed(cls.__mro__):
            for attr_name, attr_value in vars(klass).items():
                if isinstance(attr_value, FieldInfo):
                    fields[attr_name] = attr_value
        cls.__fields__ = fields

    def __init__(self, **kwargs: Any) -> None:
        """Initialize an instance with the given field values."""
        fields = self.__fields__
        for key, value in kwargs.items():
            if key not in fields:
                raise TypeError(f"Unknown field: {key}")
            setattr(self, key, value)

        for field_name, info in fields.items():
            if field_name in kwargs:
                continue
            default = info.property.default_value()
            if default is not MISSING:
                setattr(self, field_name, default)

    def __repr__(self) -> str:
        cls = type(self)
        state = get_state(self)
        schema = cls.__dict__.get("__schema__")
        pk = schema.primary_key if schema is not None else None
        if pk and pk in self.__dict__:
            suffix = " unpopulated" if isinstance(state, Unloaded) else ""
            return f"<{cls.__name__} {pk}={self.__dict__[pk]!r}{suffix}>"
        return f"<{cls.__name__}>"

    def to_dict(self) -> dict[str, Any]:
        """Convert to the plain (JSON-compatible) representation."""
        from odmkit.mapping import class_to_plain

        return class_to_plain(type(self), self)

    @classmethod
    def from_dict(cls, data: dict[str, Any]) -> Self:
        """Create an instance from the plain representation."""
        from odmkit.mapping import plain_to_class

        return plain_to_class(cls, data)

    @classmethod
    def _from_values(cls, values: dict[str, Any], state: Loaded | Unloaded | None = None) -> Self:
        """Build an instance from already converted values, skipping __init__.

        Fields missing from ``values`` receive their defaults.
        """
        instance = object.__new__(cls)
        data = instance.__dict__
        for field_name, info in cls.__fields__.items():
            if field_name in values:
                data[field_name] = values[field_name]
            elif state is None or isinstance(state, Loaded):
                default = info.property.default_value()
                if default is not MISSING:
                    data[field_name] = default
        if state is not None:
            data[STATE_KEY] = state
        return instance


def primary_key_of(instance: Any) -> Any:
    """Read the primary key of an instance without hydration checks."""
    schema = get_schema(type(instance))
    if schema.primary_key is None:
        return None
    return instance.__dict__.get(schema.primary_key)


def raw_values(instance: Any) -> dict[str, Any]:
    """Field values stored on an instance, bypassing hydration checks."""
    return {key: value for key, value in instance.__dict__.items() if key != STATE_KEY}
