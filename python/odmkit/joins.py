"""Join planning: compile a query tree into storage reads and merge the results."""

from __future__ import annotations

import logging
from collections.abc import Hashable, Iterable, Mapping
from dataclasses import dataclass, field
from typing import Any

from odmkit.mapping import convert_filter
from odmkit.query import Join, QueryModel, and_
from odmkit.relationships import RelationKind
from odmkit.schema import Schema
from odmkit.storage import CompiledQuery, Storage

logger = logging.getLogger(__name__)


@dataclass
class Row:
    """A fetched document (mongo form) plus its merged relations.

    ``relations`` maps a joined property to a ``Row``, a list of rows or None.
    """

    document: dict[str, Any]
    relations: dict[str, Any] = field(default_factory=dict)


def _unique(values: Iterable[Any]) -> list[Any]:
    """Distinct non-None values in first-seen order."""
    seen: set[Any] = set()
    result = []
    for value in values:
        if value is None:
            continue
        key = value if isinstance(value, Hashable) else repr(value)
        if key in seen:
            continue
        seen.add(key)
        result.append(value)
    return result


def _paginate(items: list[Any], skip: int | None, limit: int | None) -> list[Any]:
    start = skip or 0
    end = start + limit if limit is not None else None
    return items[start:end]


class JoinPlanner:
    """Runs a ``QueryModel`` against a storage.

    * Inner joins become existence filters on the parent, built from key-only
      reads of the joined side (recursively honouring its filters and its own
      inner joins).
    * Populated joins fetch the related documents in one read per join level
      and group them per parent in fetch order. Skip and limit of the joined
      query apply per parent.
    * Left joins without populate are ignored.
    """

    def __init__(self, storage: Storage) -> None:
        self.storage = storage

    async def build_filter(self, model: QueryModel, parameters: Mapping[str, Any] | None = None) -> dict[str, Any]:
        """Mongo-form filter of ``model``, including inner join existence filters."""
        schema = model.schema
        bound = model.bound_parameters(parameters)
        parts = [convert_filter(schema, model.compile_filter(parameters))]
        for join in model.inner_joins:
            parts.append(await self._existence_filter(schema, join, bound))
        return and_(*parts)

    async def _keys(self, schema: Schema, filter: Mapping[str, Any], name: str) -> list[Any]:
        documents = await self.storage.execute(CompiledQuery(schema.collection, filter, projection=(name,)))
        return _unique(document.get(name) for document in documents)

    async def _existence_filter(self, owner: Schema, join: Join, parameters: Mapping[str, Any]) -> dict[str, Any]:
        relation = join.relation
        target = relation.target
        target_filter = await self.build_filter(join.query, parameters)

        if relation.kind is RelationKind.FORWARD:
            keys = await self._keys(target, target_filter, target.primary_key)
            result = {relation.property.name: {"$in": keys}}

        elif relation.kind is RelationKind.INVERSE:
            keys = await self._keys(target, target_filter, relation.reverse.name)
            result = {owner.primary_key: {"$in": keys}}

        else:
            target_keys = await self._keys(target, target_filter, target.primary_key)
            keys = await self._keys(
                relation.pivot,
                {relation.right.name: {"$in": target_keys}},
                relation.left.name,
            )
            result = {owner.primary_key: {"$in": keys}}

        logger.debug("inner join %s.%s (%s) -> %s", owner.class_name, join.property, relation.kind, result)
        return result

    async def fetch(
        self,
        model: QueryModel,
        parameters: Mapping[str, Any] | None = None,
        extra_filter: Mapping[str, Any] | None = None,
        *,
        paginate: bool = True,
        required: tuple[str, ...] = (),
    ) -> list[Row]:
        """Fetch the rows of ``model`` with all populated joins merged.

        Args:
            model: Query to run.
            parameters: Parameters inherited from a parent query.
            extra_filter: Mongo-form filter AND-ed to the query's own.
            paginate: Apply skip/limit in storage. Joined queries paginate
                per parent instead.
            required: Fields to fetch even when ``model`` selects others.
        """
        schema = model.schema
        bound = model.bound_parameters(parameters)
        filter = and_(await self.build_filter(model, parameters), extra_filter or {})

        projection = None
        if model.select:
            needed = list(model.select) + list(required)
            if schema.primary_key:
                needed.append(schema.primary_key)
            needed.extend(
                join.property for join in model.populated_joins if join.relation.kind is RelationKind.FORWARD
            )
            projection = tuple(dict.fromkeys(needed))

        query = CompiledQuery(
            collection=schema.collection,
            filter=filter,
            sort=model.sort,
            skip=model.skip if paginate else None,
            limit=model.limit if paginate else None,
            projection=projection,
        )
        documents = await self.storage.execute(query)
        rows = [Row(document) for document in documents]

        for join in model.populated_joins:
            if rows:
                await self._populate(schema, join, rows, bound)
        return rows

    async def count(self, model: QueryModel, parameters: Mapping[str, Any] | None = None) -> int:
        filter = await self.build_filter(model, parameters)
        query = CompiledQuery(model.schema.collection, filter, skip=model.skip, limit=model.limit)
        return await self.storage.count(query)

    async def _populate(self, owner: Schema, join: Join, rows: list[Row], parameters: Mapping[str, Any]) -> None:
        relation = join.relation
        target = relation.target
        child = join.query
        name = join.property
        logger.debug("populate %s.%s (%s) for %d rows", owner.class_name, name, relation.kind, len(rows))

        if relation.kind is RelationKind.FORWARD:
            keys = _unique(row.document.get(name) for row in rows)
            children = await self.fetch(child, parameters, {target.primary_key: {"$in": keys}}, paginate=False)
            by_key = {}
            for row in children:
                by_key.setdefault(row.document.get(target.primary_key), row)
            for row in rows:
                key = row.document.get(name)
                row.relations[name] = by_key.get(key) if key is not None else None
            return

        owner_keys = _unique(row.document.get(owner.primary_key) for row in rows)
        groups: dict[Any, list[Row]] = {}

        if relation.kind is RelationKind.INVERSE:
            reverse = relation.reverse.name
            children = await self.fetch(
                child, parameters, {reverse: {"$in": owner_keys}}, paginate=False, required=(reverse,)
            )
            for row in children:
                groups.setdefault(row.document.get(reverse), []).append(row)

        else:
            left, right = relation.left.name, relation.right.name
            pivot_rows = await self.storage.execute(
                CompiledQuery(relation.pivot.collection, {left: {"$in": owner_keys}}, projection=(left, right))
            )
            targets_of: dict[Any, set[Any]] = {}
            for pivot_row in pivot_rows:
                if pivot_row.get(right) is not None:
                    targets_of.setdefault(pivot_row.get(left), set()).add(pivot_row[right])
            target_keys = _unique(pivot_row.get(right) for pivot_row in pivot_rows)
            children = await self.fetch(child, parameters, {target.primary_key: {"$in": target_keys}}, paginate=False)
            for owner_key, keys in targets_of.items():
                groups[owner_key] = [row for row in children if row.document.get(target.primary_key) in keys]

        for row in rows:
            related = _paginate(groups.get(row.document.get(owner.primary_key), []), child.skip, child.limit)
            if relation.is_collection:
                row.relations[name] = related
            else:
                row.relations[name] = related[0] if related else None
