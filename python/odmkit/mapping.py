"""Conversion between the class, plain and mongo representations.

* class: entity instances, ``str`` uuids and object ids, ``bytes``,
  ``datetime`` and ``Enum`` members.
* plain: JSON-safe values. Binary is base64, dates are ISO-8601 strings and
  enums are their values.
* mongo: BSON values. Uuids are ``Binary`` subtype 4, object ids are
  ``ObjectId``.

Full converters walk every declared property of a schema. Partial converters
take a mapping of dot paths to values and convert each value with the
property the path resolves to.
"""

from __future__ import annotations

import base64
import binascii
import uuid
from collections.abc import Callable, Mapping
from datetime import datetime
from enum import Enum, StrEnum
from typing import Any, TypeVar

from bson import Binary, ObjectId

from odmkit.base import Entity, primary_key_of, raw_values
from odmkit.errors import ConversionError
from odmkit.schema import FieldType, PropertySchema, Schema, get_schema
from odmkit.state import Unloaded

T = TypeVar("T")

ReferenceFactory = Callable[[Schema, Any], Any]

_LOGICAL_OPERATORS = frozenset({"$and", "$or", "$nor"})
_LIST_OPERATORS = frozenset({"$in", "$nin", "$all"})
_VALUE_OPERATORS = frozenset({"$eq", "$ne", "$gt", "$gte", "$lt", "$lte"})


class Format(StrEnum):
    CLASS = "class"
    PLAIN = "plain"
    MONGO = "mongo"


def detached_reference(schema: Schema, primary_key: Any) -> Any:
    """Build a placeholder that knows only its primary key and has no session."""
    return schema.cls._from_values({schema.primary_key: primary_key}, Unloaded(primary_key))


def _schema_of(cls: type | Schema) -> Schema:
    return cls if isinstance(cls, Schema) else get_schema(cls)


# ========== Scalar values ==========


def _uuid4(prop: PropertySchema, value: Any) -> uuid.UUID:
    if isinstance(value, uuid.UUID):
        parsed = value
    else:
        try:
            parsed = uuid.UUID(str(value))
        except ValueError:
            raise ConversionError(f"Invalid UUID v4 given in property {prop.name}", prop.name) from None
    if parsed.version != 4:
        raise ConversionError(f"Invalid UUID v4 given in property {prop.name}", prop.name)
    return parsed


def _enum_member(prop: PropertySchema, value: Any) -> Enum:
    if isinstance(value, prop.enum):
        return value
    try:
        return prop.enum(value)
    except ValueError:
        allowed = ", ".join(repr(member.value) for member in prop.enum)
        raise ConversionError(
            f"Invalid enum value {value!r} given in property {prop.name}. Allowed: {allowed}",
            prop.name,
        ) from None


def _to_class(prop: PropertySchema, value: Any, source: Format) -> Any:
    """Convert a scalar from ``source`` to its class form."""
    match prop.type:
        case FieldType.STRING:
            if isinstance(value, bool):
                return "true" if value else "false"
            if isinstance(value, int | float):
                return str(value)
        case FieldType.NUMBER:
            if isinstance(value, bool):
                return int(value)
            if isinstance(value, str):
                try:
                    return int(value)
                except ValueError:
                    pass
                try:
                    return float(value)
                except ValueError:
                    raise ConversionError(f"Invalid number given in property {prop.name}", prop.name) from None
        case FieldType.BOOLEAN:
            if isinstance(value, str):
                return value.lower() in ("true", "1")
            if isinstance(value, int | float):
                return bool(value)
        case FieldType.DATE:
            if isinstance(value, str):
                try:
                    return datetime.fromisoformat(value)
                except ValueError:
                    raise ConversionError(f"Invalid date given in property {prop.name}", prop.name) from None
        case FieldType.UUID:
            if isinstance(value, Binary):
                try:
                    return str(value.as_uuid())
                except ValueError:
                    raise ConversionError(f"Invalid UUID v4 given in property {prop.name}", prop.name) from None
            if isinstance(value, uuid.UUID):
                return str(value)
        case FieldType.OBJECT_ID:
            if isinstance(value, ObjectId):
                return str(value)
        case FieldType.ENUM:
            return _enum_member(prop, value)
        case FieldType.BINARY:
            if isinstance(value, str) and source is Format.PLAIN:
                try:
                    return base64.b64decode(value, validate=True)
                except binascii.Error:
                    raise ConversionError(f"Invalid base64 given in property {prop.name}", prop.name) from None
            if isinstance(value, bytes | bytearray):
                return bytes(value)
    return value


def _from_class(prop: PropertySchema, value: Any, target: Format) -> Any:
    """Convert a scalar from its class form to ``target``."""
    if target is Format.CLASS:
        return value
    match prop.type:
        case FieldType.DATE:
            if target is Format.PLAIN and isinstance(value, datetime):
                return value.isoformat()
        case FieldType.UUID:
            if target is Format.MONGO:
                return Binary.from_uuid(_uuid4(prop, value))
            return str(value)
        case FieldType.OBJECT_ID:
            if target is Format.MONGO:
                if isinstance(value, ObjectId):
                    return value
                if isinstance(value, str) and ObjectId.is_valid(value):
                    return ObjectId(value)
                raise ConversionError(f"Invalid ObjectID given in property {prop.name}", prop.name)
            return str(value)
        case FieldType.ENUM:
            return _enum_member(prop, value).value
        case FieldType.BINARY:
            if isinstance(value, bytes | bytearray):
                if target is Format.PLAIN:
                    return base64.b64encode(value).decode("ascii")
                return Binary(bytes(value))
    return value


# ========== Properties ==========


def _convert_reference(
    prop: PropertySchema,
    value: Any,
    source: Format,
    target: Format,
    reference_factory: ReferenceFactory | None,
) -> Any:
    schema = prop.get_resolved_schema()
    primary = schema.get_primary()
    if isinstance(value, Entity):
        value = primary_key_of(value)
    elif isinstance(value, Mapping):
        value = value.get(primary.name)

    primary_key = convert_value(primary, value, source, target)
    if target is Format.CLASS and primary_key is not None:
        return (reference_factory or detached_reference)(schema, primary_key)
    return primary_key


def _convert_embedded(
    prop: PropertySchema,
    value: Any,
    source: Format,
    target: Format,
    reference_factory: ReferenceFactory | None,
) -> Any:
    schema = prop.get_resolved_schema()
    if isinstance(value, Entity):
        values = raw_values(value)
    elif isinstance(value, Mapping):
        values = value
    else:
        raise ConversionError(
            f"Expected {schema.class_name} or mapping in property {prop.name}, got {type(value).__name__}",
            prop.name,
        )
    converted = convert_document(schema, values, source, target, reference_factory)
    if target is Format.CLASS:
        return schema.cls._from_values(converted)
    return converted


def convert_value(
    prop: PropertySchema,
    value: Any,
    source: Format,
    target: Format,
    reference_factory: ReferenceFactory | None = None,
) -> Any:
    """Convert a single (non-collection) value of ``prop``."""
    if value is None or prop.type is FieldType.ANY:
        return value
    if source is target and not isinstance(value, Mapping):
        return value
    if prop.is_reference:
        return _convert_reference(prop, value, source, target, reference_factory)
    if prop.type is FieldType.CLASS:
        return _convert_embedded(prop, value, source, target, reference_factory)
    return _from_class(prop, _to_class(prop, value, source), target)


def convert_property(
    prop: PropertySchema,
    value: Any,
    source: Format,
    target: Format,
    reference_factory: ReferenceFactory | None = None,
    *,
    element: bool = False,
) -> Any:
    """Convert the value of ``prop``, honouring array and map properties.

    With ``element=True`` the value is one item of an array or map property.
    """
    if value is None or prop.type is FieldType.ANY:
        return value
    if element or not prop.is_collection:
        return convert_value(prop, value, source, target, reference_factory)
    if prop.array:
        if not isinstance(value, list | tuple):
            return []
        return [convert_value(prop, item, source, target, reference_factory) for item in value]
    if not isinstance(value, Mapping):
        return {}
    return {key: convert_value(prop, item, source, target, reference_factory) for key, item in value.items()}


def convert_document(
    schema: Schema,
    values: Mapping[str, Any],
    source: Format,
    target: Format,
    reference_factory: ReferenceFactory | None = None,
) -> dict[str, Any]:
    """Convert every declared property present in ``values``.

    Back references are never converted; unknown keys are dropped.
    """
    result: dict[str, Any] = {}
    for prop in schema.properties.values():
        if prop.is_back_reference or prop.name not in values:
            continue
        result[prop.name] = convert_property(prop, values[prop.name], source, target, reference_factory)
    return result


# ========== Paths ==========


def resolve_path(schema: Schema, path: str) -> tuple[PropertySchema, bool] | None:
    """Find the property governing a dot path.

    Returns ``(property, element)`` where ``element`` tells that the path
    addresses one item of an array or map property, or None when the path
    does not resolve.

    Example:
        >>> resolve_path(schema, "children.0.label")  # (<label of SubModel>, False)
        >>> resolve_path(schema, "types.1")  # (<types>, True)
    """
    segments = path.split(".")
    current: Schema | None = schema
    index = 0
    while current is not None:
        name = segments[index]
        if not current.has_property(name):
            return None
        prop = current.get_property(name)
        index += 1
        element = False
        if prop.is_collection and index < len(segments):
            index += 1
            element = True
        if index == len(segments):
            return prop, element
        current = prop.get_resolved_schema() if prop.is_embedded else None
    return None


def convert_partial(
    schema: Schema,
    data: Mapping[str, Any],
    source: Format,
    target: Format,
    reference_factory: ReferenceFactory | None = None,
) -> dict[str, Any]:
    """Convert a mapping of dot paths to values.

    Paths that do not resolve pass through unchanged. Paths ending on a back
    reference are dropped.
    """
    result: dict[str, Any] = {}
    for path, value in data.items():
        resolved = resolve_path(schema, path)
        if resolved is None:
            result[path] = value
            continue
        prop, element = resolved
        if prop.is_back_reference:
            continue
        result[path] = convert_property(prop, value, source, target, reference_factory, element=element)
    return result


# ========== Filters ==========


def _convert_operand(prop: PropertySchema, element: bool, value: Any, source: Format, target: Format) -> Any:
    if isinstance(value, list | tuple) and (element or not prop.is_collection):
        return [convert_value(prop, item, source, target) for item in value]
    if prop.is_collection and not element and not isinstance(value, list | tuple | Mapping):
        return convert_value(prop, value, source, target)
    return convert_property(prop, value, source, target, element=element)


def _convert_condition(prop: PropertySchema, element: bool, condition: Any, source: Format, target: Format) -> Any:
    if not (isinstance(condition, Mapping) and condition and all(key.startswith("$") for key in condition)):
        return _convert_operand(prop, element, condition, source, target)

    result: dict[str, Any] = {}
    for operator, operand in condition.items():
        if operator in _LIST_OPERATORS and isinstance(operand, list | tuple):
            result[operator] = [
                item if isinstance(item, list | tuple) else convert_value(prop, item, source, target)
                for item in operand
            ]
        elif operator in _VALUE_OPERATORS:
            result[operator] = _convert_operand(prop, element, operand, source, target)
        elif operator == "$not" and isinstance(operand, Mapping):
            result[operator] = _convert_condition(prop, element, operand, source, target)
        else:
            result[operator] = operand
    return result


def convert_filter(
    cls: type | Schema,
    query: Mapping[str, Any],
    source: Format = Format.CLASS,
    target: Format = Format.MONGO,
) -> dict[str, Any]:
    """Convert the values of a Mongo-style filter document.

    Entity instances given for reference fields become their primary key.
    Operators without a typed operand (``$exists``, ``$regex``, ``$size``
    and so on) are kept as given.

    Example:
        >>> convert_filter(User, {"id": {"$in": [uid]}, "manager": marc})
        {'id': {'$in': [Binary(...)]}, 'manager': Binary(...)}
    """
    schema = _schema_of(cls)
    result: dict[str, Any] = {}
    for key, value in query.items():
        if key in _LOGICAL_OPERATORS:
            result[key] = [convert_filter(schema, item, source, target) for item in value]
        elif key.startswith("$"):
            result[key] = value
        else:
            resolved = resolve_path(schema, key)
            if resolved is None or resolved[0].is_back_reference:
                result[key] = value
            else:
                result[key] = _convert_condition(resolved[0], resolved[1], value, source, target)
    return result


# ========== Public converters ==========


def _values_of(item: Any) -> Mapping[str, Any]:
    return raw_values(item) if isinstance(item, Entity) else item


def _full(cls: type | Schema, item: Any, source: Format, target: Format, reference_factory: ReferenceFactory | None) -> Any:
    schema = _schema_of(cls)
    values = convert_document(schema, _values_of(item), source, target, reference_factory)
    if target is Format.CLASS:
        return schema.cls._from_values(values)
    return values


def class_to_plain(cls: type, instance: Any) -> dict[str, Any]:
    return _full(cls, instance, Format.CLASS, Format.PLAIN, None)


def plain_to_class(cls: type[T], data: Mapping[str, Any], reference_factory: ReferenceFactory | None = None) -> T:
    return _full(cls, data, Format.PLAIN, Format.CLASS, reference_factory)


def class_to_mongo(cls: type, instance: Any) -> dict[str, Any]:
    return _full(cls, instance, Format.CLASS, Format.MONGO, None)


def mongo_to_class(cls: type[T], document: Mapping[str, Any], reference_factory: ReferenceFactory | None = None) -> T:
    return _full(cls, document, Format.MONGO, Format.CLASS, reference_factory)


def plain_to_mongo(cls: type, data: Mapping[str, Any]) -> dict[str, Any]:
    return _full(cls, data, Format.PLAIN, Format.MONGO, None)


def mongo_to_plain(cls: type, document: Mapping[str, Any]) -> dict[str, Any]:
    return _full(cls, document, Format.MONGO, Format.PLAIN, None)


def partial_class_to_plain(cls: type, data: Mapping[str, Any]) -> dict[str, Any]:
    return convert_partial(_schema_of(cls), data, Format.CLASS, Format.PLAIN)


def partial_plain_to_class(
    cls: type, data: Mapping[str, Any], reference_factory: ReferenceFactory | None = None
) -> dict[str, Any]:
    return convert_partial(_schema_of(cls), data, Format.PLAIN, Format.CLASS, reference_factory)


def partial_class_to_mongo(cls: type, data: Mapping[str, Any]) -> dict[str, Any]:
    """Convert dot-path changes to their mongo form.

    Example:
        >>> partial_class_to_mongo(Model, {"children.0.label": 2})
        {'children.0.label': '2'}
    """
    return convert_partial(_schema_of(cls), data, Format.CLASS, Format.MONGO)


def partial_mongo_to_class(
    cls: type, data: Mapping[str, Any], reference_factory: ReferenceFactory | None = None
) -> dict[str, Any]:
    return convert_partial(_schema_of(cls), data, Format.MONGO, Format.CLASS, reference_factory)


def partial_plain_to_mongo(cls: type, data: Mapping[str, Any]) -> dict[str, Any]:
    return convert_partial(_schema_of(cls), data, Format.PLAIN, Format.MONGO)


def partial_mongo_to_plain(cls: type, data: Mapping[str, Any]) -> dict[str, Any]:
    return convert_partial(_schema_of(cls), data, Format.MONGO, Format.PLAIN)
