"""Session-scoped identity map."""

from __future__ import annotations

from typing import Any

from odmkit.base import primary_key_of
from odmkit.errors import SchemaError
from odmkit.schema import Schema, get_schema


class EntityRegistry:
    """Maps (schema, primary key) to the one instance a session hands out.

    Keys are class-form primary keys (``str`` for uuids and object ids).
    """

    def __init__(self) -> None:
        self._registry: dict[tuple[Schema, Any], Any] = {}
        self._last_known: dict[int, Any] = {}

    def get(self, schema: Schema, primary_key: Any) -> Any | None:
        return self._registry.get((schema, primary_key))

    def store(self, schema: Schema, instance: Any) -> None:
        primary_key = primary_key_of(instance)
        if primary_key is None:
            raise ValueError(f"Cannot store {schema.class_name} without primary key")
        previous = self._registry.get((schema, primary_key))
        if previous is not None and previous is not instance:
            self._last_known.pop(id(previous), None)
        self._registry[(schema, primary_key)] = instance
        self._last_known[id(instance)] = primary_key

    def is_known(self, schema: Schema, instance: Any) -> bool:
        """Whether this exact instance is the interned one for its primary key."""
        primary_key = self._last_known.get(id(instance))
        if primary_key is None:
            primary_key = primary_key_of(instance)
        return self._registry.get((schema, primary_key)) is instance

    def is_known_by_pk(self, schema: Schema, primary_key: Any) -> bool:
        return (schema, primary_key) in self._registry

    def get_last_known_pk(self, instance: Any) -> Any | None:
        """Primary key the instance had when it was stored, even if changed since."""
        return self._last_known.get(id(instance))

    def delete(self, schema: Schema, instance: Any) -> None:
        primary_key = self._last_known.pop(id(instance), None)
        if primary_key is None:
            primary_key = primary_key_of(instance)
        if self._registry.get((schema, primary_key)) is instance:
            del self._registry[(schema, primary_key)]

    def clear(self) -> None:
        self._registry.clear()
        self._last_known.clear()

    def __len__(self) -> int:
        return len(self._registry)

    def __contains__(self, instance: object) -> bool:
        try:
            schema = get_schema(type(instance))
        except SchemaError:
            return False
        return self.is_known(schema, instance)
