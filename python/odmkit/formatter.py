"""Turn fetched rows into class instances, plain dicts or raw documents."""

from __future__ import annotations

from typing import TYPE_CHECKING, Any

from bson import ObjectId

from odmkit.identity import EntityRegistry
from odmkit.joins import Row
from odmkit.mapping import Format, convert_document, mongo_to_plain
from odmkit.query import QueryModel
from odmkit.schema import MISSING, Schema
from odmkit.state import Loaded, Unloaded, get_state, set_state

if TYPE_CHECKING:
    from odmkit.session import Session


def _selected_roots(model: QueryModel) -> tuple[str, ...]:
    """Top-level keys of the selected paths: ``address.city`` keeps ``address``."""
    return tuple(dict.fromkeys(path.split(".", 1)[0] for path in model.select))


class Formatter:
    """Formats rows for one query execution.

    Class-form rows are interned in ``registry``: an already known instance
    is upgraded in place instead of being replaced. Without a registry
    (instance pooling disabled) a fresh one is used per call, so instances
    are only shared within a single result.
    """

    def __init__(self, session: Session, registry: EntityRegistry | None = None) -> None:
        self.session = session
        self.registry = registry if registry is not None else EntityRegistry()

    def format(self, model: QueryModel, rows: list[Row]) -> list[Any]:
        return [self.format_row(model, row, model.format) for row in rows]

    def format_row(self, model: QueryModel, row: Row, mode: str) -> Any:
        if mode == "raw":
            result = self._raw(model, row)
        elif mode == "json" or model.select:
            result = self._plain(model, row)
        else:
            return self._instance(model, row)

        for join in model.populated_joins:
            result[join.property] = self._related(join.query, row.relations.get(join.property), mode)
        return result

    def _related(self, model: QueryModel, related: Any, mode: str) -> Any:
        if related is None:
            return None
        if isinstance(related, list):
            return [self.format_row(model, row, mode) for row in related]
        return self.format_row(model, related, mode)

    # ========== Plain and raw ==========

    def _raw(self, model: QueryModel, row: Row) -> dict[str, Any]:
        document = dict(row.document)
        if model.select:
            selected = _selected_roots(model)
            return {key: value for key, value in document.items() if key in selected}
        if not model.schema.has_property("_id"):
            document.pop("_id", None)
        return document

    def _plain(self, model: QueryModel, row: Row) -> dict[str, Any]:
        data = mongo_to_plain(model.schema, row.document)
        if not model.select:
            return data

        result = {}
        for key in _selected_roots(model):
            if key in data:
                result[key] = data[key]
            elif not model.schema.has_property(key) and key in row.document:
                # Store-native fields such as _id are not part of the schema.
                value = row.document[key]
                result[key] = str(value) if isinstance(value, ObjectId) else value
        return result

    # ========== Class instances ==========

    def reference(self, schema: Schema, primary_key: Any) -> Any:
        """Interned instance for ``primary_key``, or a new placeholder owned by the session."""
        instance = self.registry.get(schema, primary_key)
        if instance is None:
            instance = schema.cls._from_values(
                {schema.primary_key: primary_key}, Unloaded(primary_key, self.session)
            )
            self.registry.store(schema, instance)
        return instance

    def _instance(self, model: QueryModel, row: Row) -> Any:
        schema = model.schema
        values = convert_document(schema, row.document, Format.MONGO, Format.CLASS, self.reference)
        relations = {
            join.property: self._related(join.query, row.relations.get(join.property), "class")
            for join in model.populated_joins
        }

        primary_key = values.get(schema.primary_key) if schema.primary_key else None
        instance = self.registry.get(schema, primary_key) if primary_key is not None else None
        if instance is None:
            unpopulated = {prop.name for prop in schema.back_references} - relations.keys()
            instance = schema.cls._from_values({**values, **relations}, Loaded(self.session, unpopulated))
            if primary_key is not None:
                self.registry.store(schema, instance)
            return instance

        self.merge(instance, schema, values, relations)
        return instance

    def merge(self, instance: Any, schema: Schema, values: dict[str, Any], relations: dict[str, Any]) -> None:
        """Upgrade ``instance`` in place with freshly loaded values.

        Relations populated earlier stay populated. Concurrent merges of the
        same instance are last-write-wins per field.
        """
        state = get_state(instance)
        if isinstance(state, Loaded):
            unpopulated = set(state.unpopulated)
        else:
            unpopulated = {prop.name for prop in schema.back_references}
            if state is None:
                unpopulated.clear()
        unpopulated -= relations.keys()

        data = instance.__dict__
        for prop in schema.properties.values():
            if prop.name in relations:
                data[prop.name] = relations[prop.name]
            elif prop.name in values:
                data[prop.name] = values[prop.name]
            elif prop.name not in data and not prop.is_back_reference:
                default = prop.default_value()
                if default is not MISSING:
                    data[prop.name] = default
        set_state(instance, Loaded(self.session, unpopulated))
