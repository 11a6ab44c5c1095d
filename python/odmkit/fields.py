"""Field declarations for entity classes."""

from __future__ import annotations

import uuid
from datetime import datetime
from enum import Enum
from typing import Any

from odmkit.errors import SchemaError, UnpopulatedReferenceError, UnpopulatedRelationError
from odmkit.schema import MISSING, FieldType, PropertySchema
from odmkit.state import STATE_KEY, Loaded, Unloaded

_PRIMITIVES: dict[Any, FieldType] = {
    str: FieldType.STRING,
    int: FieldType.NUMBER,
    float: FieldType.NUMBER,
    bool: FieldType.BOOLEAN,
    datetime: FieldType.DATE,
    bytes: FieldType.BINARY,
    dict: FieldType.ANY,
    list: FieldType.ANY,
    object: FieldType.ANY,
    Any: FieldType.ANY,
}


def uuid4() -> str:
    """Generate a random UUID v4 string, the class form of UUID fields."""
    return str(uuid.uuid4())


def _normalize_type(type_: Any) -> tuple[FieldType, Any, type[Enum] | None]:
    """Split a declared type into (field type, class target, enum type)."""
    if isinstance(type_, FieldType):
        return type_, None, None
    if type_ in _PRIMITIVES:
        return _PRIMITIVES[type_], None, None
    if isinstance(type_, type):
        if issubclass(type_, Enum):
            return FieldType.ENUM, None, type_
        return FieldType.CLASS, type_, None
    if callable(type_):
        # Forward declaration, e.g. ``lambda: Organisation``
        return FieldType.CLASS, type_, None
    raise SchemaError(f"Unsupported field type: {type_!r}")


class FieldInfo:
    """Declares an entity field and guards reads on loaded instances.

    Acts as a data descriptor: values live in the instance ``__dict__`` and
    reads are checked against the instance's hydration state.
    """

    def __init__(
        self,
        type_: Any = str,
        *,
        primary: bool = False,
        optional: bool = False,
        index: bool = False,
        default: Any = MISSING,
        array: bool = False,
        map: bool = False,
        reference: bool = False,
        back_reference: bool = False,
        mapped_by: str | None = None,
        via: Any = None,
    ) -> None:
        field_type, target, enum_type = _normalize_type(type_)
        if (reference or back_reference) and field_type is not FieldType.CLASS:
            raise SchemaError("References must point to an entity class")
        if array and map:
            raise SchemaError("A field cannot be both array and map")

        self.name: str | None = None
        self.type = field_type
        self.target = target
        self.enum_type = enum_type
        self.primary = primary
        self.optional = optional and not primary
        self.index = index or primary
        self.default = default
        self.array = array
        self.map = map
        self.reference = reference
        self.back_reference = back_reference
        self.mapped_by = mapped_by
        self.via = via
        self.property: PropertySchema | None = None

    def __set_name__(self, owner: type, name: str) -> None:
        self.name = name
        self.property = PropertySchema(
            name=name,
            type=self.type,
            array=self.array,
            map=self.map,
            optional=self.optional,
            primary=self.primary,
            index=self.index,
            is_reference=self.reference,
            is_back_reference=self.back_reference,
            mapped_by=self.mapped_by,
            via=self.via,
            target=self.target,
            enum=self.enum_type,
            default=self.default,
        )

    def __get__(self, instance: Any, owner: type | None = None) -> Any:
        if instance is None:
            return self

        values = instance.__dict__
        state = values.get(STATE_KEY)
        if state is not None:
            if isinstance(state, Unloaded):
                if not self.primary:
                    raise UnpopulatedReferenceError(type(instance).__name__, self.name)
            elif isinstance(state, Loaded) and self.name in state.unpopulated:
                raise UnpopulatedRelationError(type(instance).__name__, self.name)

        try:
            return values[self.name]
        except KeyError:
            if self.optional or self.reference:
                return None
            raise AttributeError(
                f"'{type(instance).__name__}' object has no value for field '{self.name}'"
            ) from None

    def __set__(self, instance: Any, value: Any) -> None:
        instance.__dict__[self.name] = value
        state = instance.__dict__.get(STATE_KEY)
        if isinstance(state, Loaded):
            state.unpopulated.discard(self.name)

    def __repr__(self) -> str:
        return f"<FieldInfo {self.name} {self.type}>"


def field(
    type_: Any = str,
    /,
    *,
    primary: bool = False,
    optional: bool = False,
    index: bool = False,
    default: Any = MISSING,
    array: bool = False,
    map: bool = False,
) -> Any:
    """Declare a data field.

    Args:
        type_: Python type, ``FieldType`` member, ``Enum`` subclass or
            embedded entity class (or a callable returning one).
        primary: Whether this is the primary key.
        optional: Whether ``None``/absence is allowed.
        index: Whether the field is indexed.
        default: Default value; callables are called per instance.
        array: The field holds a list of ``type_`` values.
        map: The field holds a dict of ``type_`` values.

    Example:
        >>> id: str = field(FieldType.UUID, primary=True, default=uuid4)
        >>> tags: list[str] = field(str, array=True)
        >>> children: list[SubModel] = field(SubModel, array=True)
    """
    return FieldInfo(
        type_,
        primary=primary,
        optional=optional,
        index=index,
        default=default,
        array=array,
        map=map,
    )


def reference(target: Any, /, *, optional: bool = False, index: bool = False) -> Any:
    """Declare a forward reference; the store keeps only the target's primary key.

    Example:
        >>> owner: User = reference(lambda: User)
        >>> manager: User | None = reference(lambda: User, optional=True)
    """
    return FieldInfo(target, optional=optional, index=index, reference=True)


def back_reference(
    target: Any,
    /,
    *,
    mapped_by: str | None = None,
    via: Any = None,
    array: bool = True,
) -> Any:
    """Declare the inverse side of a relation. Never stored.

    Args:
        target: The related entity class (or a callable returning it).
        mapped_by: Name of the pairing property on the other side.
        via: Pivot entity mediating a many-to-many relation.
        array: False for a single-valued inverse (one-to-one).

    Example:
        >>> managed_users: list[User] = back_reference(lambda: User)
        >>> users: list[User] = back_reference(
        ...     lambda: User, mapped_by="organisations", via=lambda: Membership
        ... )
    """
    return FieldInfo(
        target,
        optional=not array,
        array=array,
        back_reference=True,
        mapped_by=mapped_by,
        via=via,
    )
