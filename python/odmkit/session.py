"""Database, sessions and the fluent query API."""

from __future__ import annotations

import logging
from collections.abc import AsyncIterator, Mapping
from contextlib import asynccontextmanager
from dataclasses import replace
from typing import TYPE_CHECKING, Any, Generic, Self, TypeVar

from bson import ObjectId

from odmkit.base import primary_key_of
from odmkit.errors import HydrationError, NotFoundError, SchemaError
from odmkit.fields import uuid4
from odmkit.formatter import Formatter
from odmkit.identity import EntityRegistry
from odmkit.joins import JoinPlanner
from odmkit.mapping import Format, class_to_mongo, convert_document, convert_property, partial_class_to_mongo
from odmkit.query import Join, Q, QueryModel, parse_sort
from odmkit.relationships import resolve_relation
from odmkit.schema import FieldType, Schema, get_schema
from odmkit.state import Loaded, Unloaded, get_state, is_populated, set_state

if TYPE_CHECKING:
    from odmkit.storage import Storage

logger = logging.getLogger(__name__)

T = TypeVar("T")


# ========== Query Builders ==========


class _QueryBuilder:
    """Copy-on-write builder methods shared by queries and join queries.

    Every method returns a new builder; the receiver is never modified, so a
    builder can be shared between branches safely.
    """

    _model: QueryModel

    def _replace(self, model: QueryModel) -> Self:
        raise NotImplementedError

    @property
    def model(self) -> QueryModel:
        return self._model

    def filter(self, *conditions: Q | Mapping[str, Any], **kwargs: Any) -> Self:
        """Add filter conditions using Django-style kwargs, Q objects or filter documents.

        Supported kwargs operators:
            - field=value: Exact match (also matches an element of an array field)
            - field__gt / __gte / __lt / __lte / __ne=value: Comparisons
            - field__in=[values] / field__notin=[values]
            - field__isnull=True/False, field__isnotnull=True/False
            - field__exists=True/False
            - field__like / __ilike=pattern: SQL LIKE pattern
            - field__contains / __icontains / __startswith / __endswith=value
            - parent__child=value: Nested path ``parent.child``

        Example:
            >>> query.filter(name="marc", age__gt=18)
            >>> query.filter(Q(age__gt=18) | Q(vip=True))
            >>> query.filter({"tags": {"$all": ["a", "b"]}})
            >>> query.filter(name=Param("name"))
        """
        filters = list(conditions)
        if kwargs:
            filters.append(Q(**kwargs))
        return self._replace(self._model.change(filters=self._model.filters + tuple(filters)))

    def sort(self, *fields: str | Mapping[str, Any]) -> Self:
        """Replace the sort order. ``-name`` sorts descending.

        Example:
            >>> query.sort("-created", "name")
            >>> query.sort({"name": "asc"})
        """
        return self._replace(self._model.change(sort=parse_sort(*fields)))

    def skip(self, n: int | None) -> Self:
        return self._replace(self._model.change(skip=n))

    def limit(self, n: int | None) -> Self:
        return self._replace(self._model.change(limit=n))

    def select(self, *fields: str | list[str] | tuple[str, ...]) -> Self:
        """Restrict results to the given fields.

        Selected results are plain dicts, never entity instances.
        """
        names: list[str] = []
        for item in fields:
            names.extend([item] if isinstance(item, str) else item)
        return self._replace(self._model.change(select=tuple(names)))

    def parameter(self, name: str, value: Any) -> Self:
        return self._replace(self._model.change(parameters={**self._model.parameters, name: value}))

    def parameters(self, values: Mapping[str, Any]) -> Self:
        return self._replace(self._model.change(parameters={**self._model.parameters, **values}))

    def clone(self) -> Self:
        return self._replace(self._model)

    # ========== Joins ==========

    def _make_join(self, name: str, *, inner: bool, populate: bool) -> Join:
        """Resolve the relation now, so misconfiguration fails before any storage call."""
        relation = resolve_relation(self._model.schema, name)
        existing = self._model.get_join(name)
        query = existing.query if existing is not None else QueryModel(relation.target.cls)
        return Join(name, relation, query, inner=inner, populate=populate)

    def _with_join(self, name: str, *, inner: bool, populate: bool) -> Self:
        join = self._make_join(name, inner=inner, populate=populate)
        return self._replace(self._model.with_join(join))

    def join(self, name: str) -> Self:
        """Left join without merging. Has no effect on the result on its own."""
        return self._with_join(name, inner=False, populate=False)

    def join_with(self, name: str) -> Self:
        """Left join and merge the related data into each result."""
        return self._with_join(name, inner=False, populate=True)

    def inner_join(self, name: str) -> Self:
        """Keep only results that have a matching related entity, without merging it."""
        return self._with_join(name, inner=True, populate=False)

    def inner_join_with(self, name: str) -> Self:
        """Keep only results with a matching related entity and merge it."""
        return self._with_join(name, inner=True, populate=True)

    def _use(self, name: str, *, inner: bool, populate: bool) -> JoinQuery:
        join = self._make_join(name, inner=inner, populate=populate)
        parent = self._replace(self._model.with_join(join))
        return JoinQuery(parent, name, join.query)

    def use_join(self, name: str) -> JoinQuery:
        """Open a scoped builder for a left join without merge. Close with ``end()``."""
        return self._use(name, inner=False, populate=False)

    def use_join_with(self, name: str) -> JoinQuery:
        """Open a scoped builder for a merged left join. Close with ``end()``.

        Example:
            >>> await (
            ...     db.query(User)
            ...     .use_join_with("organisations").filter(name="Microsoft").end()
            ...     .find()
            ... )
        """
        return self._use(name, inner=False, populate=True)

    def use_inner_join(self, name: str) -> JoinQuery:
        return self._use(name, inner=True, populate=False)

    def use_inner_join_with(self, name: str) -> JoinQuery:
        return self._use(name, inner=True, populate=True)

    def get_join(self, name: str) -> JoinQuery:
        """Reopen the scoped builder of an existing join.

        Raises:
            SchemaError: If ``name`` is not joined.
        """
        join = self._model.get_join(name)
        if join is None:
            raise SchemaError(f"No join on {name} in query of {self._model.schema.class_name}")
        return JoinQuery(self, name, join.query)


class JoinQuery(_QueryBuilder):
    """Scoped builder of a joined query. ``end()`` returns the parent builder."""

    def __init__(self, parent: _QueryBuilder, name: str, model: QueryModel) -> None:
        self._parent = parent
        self._name = name
        self._model = model

    def _replace(self, model: QueryModel) -> Self:
        return type(self)(self._parent, self._name, model)

    def end(self) -> Any:
        join = self._parent.model.get_join(self._name)
        return self._parent._replace(self._parent.model.with_join(replace(join, query=self._model)))

    def __repr__(self) -> str:
        return f"<JoinQuery {self._name} of {self._parent.model.schema.class_name}>"


class Query(_QueryBuilder, Generic[T]):
    """Fluent query for an entity type.

    Builders return new queries; terminal operations are coroutines. A query
    built from ``Database.query()`` runs each execution in a fresh session,
    one built from ``Session.query()`` interns results in that session.

    Example:
        >>> users = await db.query(User).filter(name__startswith="m").sort("name").find()
        >>> marc = await session.query(User).filter(name="marc").join_with("manager").find_one()
    """

    def __init__(self, database: Database, model: QueryModel, session: Session | None = None) -> None:
        self._database = database
        self._model = model
        self._session = session

    def _replace(self, model: QueryModel) -> Self:
        return type(self)(self._database, model, self._session)

    def as_json(self) -> Self:
        """Return plain (JSON-compatible) dicts instead of instances."""
        return self._replace(self._model.change(format="json"))

    def as_raw(self) -> Self:
        """Return storage documents. ``_id`` is only kept when selected."""
        return self._replace(self._model.change(format="raw"))

    def _get_session(self) -> Session:
        if self._session is not None:
            return self._session
        return self._database.create_session()

    async def _execute(self, model: QueryModel) -> list[Any]:
        session = self._get_session()
        rows = await session.planner.fetch(model)
        return session.formatter().format(model, rows)

    async def find(self) -> list[T]:
        """Execute the query and return all results."""
        return await self._execute(self._model)

    async def find_one_or_none(self) -> T | None:
        limit = 1 if self._model.limit is None else min(self._model.limit, 1)
        results = await self._execute(self._model.change(limit=limit))
        return results[0] if results else None

    async def find_one(self) -> T:
        """Return the first result.

        Raises:
            NotFoundError: If nothing matches.
        """
        result = await self.find_one_or_none()
        if result is None:
            raise NotFoundError(f"{self._model.schema.class_name} item not found")
        return result

    async def _field_values(self, name: str, limit: int | None) -> list[Any]:
        schema = self._model.schema
        prop = schema.get_property(name)
        if prop.is_back_reference:
            raise SchemaError(f"Cannot select back reference {schema.class_name}.{name}")
        joins = tuple(replace(join, populate=False) for join in self._model.joins if join.inner)
        model = self._model.change(select=(name,), joins=joins)
        if limit is not None:
            model = model.change(limit=limit if model.limit is None else min(model.limit, limit))

        session = self._get_session()
        rows = await session.planner.fetch(model)
        formatter = session.formatter()
        return [
            convert_property(prop, row.document.get(name), Format.MONGO, Format.CLASS, formatter.reference)
            for row in rows
        ]

    async def find_field(self, name: str) -> list[Any]:
        """Return the value of one field for every result."""
        return await self._field_values(name, None)

    async def find_one_field_or_none(self, name: str) -> Any:
        values = await self._field_values(name, 1)
        return values[0] if values else None

    async def find_one_field(self, name: str) -> Any:
        """Return one field of the first result.

        Raises:
            NotFoundError: If nothing matches.
        """
        values = await self._field_values(name, 1)
        if not values:
            raise NotFoundError(f"{self._model.schema.class_name} item not found")
        return values[0]

    async def count(self) -> int:
        return await self._get_session().planner.count(self._model)

    async def has(self) -> bool:
        return await self._get_session().planner.count(self._model.change(limit=1)) > 0

    async def _patch(self, changes: Mapping[str, Any], multi: bool) -> int:
        schema = self._model.schema
        planner = self._get_session().planner
        filter = await planner.build_filter(self._model)
        return await planner.storage.patch(
            schema.collection, filter, partial_class_to_mongo(schema, changes), multi=multi
        )

    async def patch_one(self, changes: Mapping[str, Any]) -> int:
        """Set dot-path ``changes`` on the first match. Returns the number modified.

        Example:
            >>> await db.query(User).filter(name="marc").patch_one({"address.city": "Berlin"})
        """
        return await self._patch(changes, multi=False)

    async def patch_many(self, changes: Mapping[str, Any]) -> int:
        return await self._patch(changes, multi=True)

    async def _delete(self, multi: bool) -> int:
        planner = self._get_session().planner
        filter = await planner.build_filter(self._model)
        return await planner.storage.delete(self._model.schema.collection, filter, multi=multi)

    async def delete_one(self) -> int:
        return await self._delete(multi=False)

    async def delete_many(self) -> int:
        return await self._delete(multi=True)

    def __aiter__(self) -> AsyncIterator[T]:
        """Allow using the query directly as an async iterator.

        Example:
            >>> async for user in db.query(User).filter(name__startswith="m"):
            ...     print(user.name)
        """
        return self._iterate()

    async def _iterate(self) -> AsyncIterator[T]:
        for item in await self.find():
            yield item

    def __repr__(self) -> str:
        return f"<Query {self._model.schema.class_name}>"


# ========== Database & Session ==========


def _primary_filter(schema: Schema, primary_key: Any) -> dict[str, Any]:
    prop = schema.get_primary()
    return {prop.name: convert_property(prop, primary_key, Format.CLASS, Format.MONGO)}


class Database:
    """Entry point binding a storage to the query API.

    Example:
        >>> db = Database(MemoryStorage())
        >>> await db.add(User(name="marc"))
        >>> users = await db.query(User).find()
    """

    def __init__(self, storage: Storage, *, disabled_instance_pooling: bool = False) -> None:
        self.storage = storage
        self.disabled_instance_pooling = disabled_instance_pooling

    def create_session(self, *, disabled_instance_pooling: bool | None = None) -> Session:
        """Create a new identity-map scope.

        Example:
            >>> session = db.create_session()
        """
        if disabled_instance_pooling is None:
            disabled_instance_pooling = self.disabled_instance_pooling
        return Session(self, disabled_instance_pooling=disabled_instance_pooling)

    def query(self, cls: type[T]) -> Query[T]:
        """Create a query that runs every execution in a fresh session."""
        return Query(self, QueryModel(cls))

    async def add(self, instance: Any) -> Any:
        """Insert an instance. A missing uuid or object id primary key is generated."""
        schema = get_schema(type(instance))
        primary = schema.get_primary()
        if instance.__dict__.get(primary.name) is None:
            if primary.type is FieldType.OBJECT_ID:
                instance.__dict__[primary.name] = str(ObjectId())
            elif primary.type is FieldType.UUID:
                instance.__dict__[primary.name] = uuid4()
            else:
                raise SchemaError(f"{schema.class_name}.{primary.name} must be set before adding")
        await self.storage.insert(schema.collection, class_to_mongo(schema, instance))
        logger.debug("added %r", instance)
        return instance

    async def update(self, instance: Any) -> Any:
        """Replace the stored record of ``instance`` with its current values.

        Raises:
            HydrationError: If ``instance`` is an unpopulated reference.
            NotFoundError: If no record has its primary key.
        """
        schema = get_schema(type(instance))
        if not is_populated(instance):
            raise HydrationError(f"Cannot update unpopulated reference {instance!r}")
        primary_key = primary_key_of(instance)
        replaced = await self.storage.replace(
            schema.collection, _primary_filter(schema, primary_key), class_to_mongo(schema, instance)
        )
        if not replaced:
            raise NotFoundError(f"{schema.class_name} item not found")
        return instance

    async def remove(self, instance: Any) -> int:
        schema = get_schema(type(instance))
        return await self.storage.delete(schema.collection, _primary_filter(schema, primary_key_of(instance)))

    async def close(self) -> None:
        await self.storage.close()

    async def __aenter__(self) -> Database:
        return self

    async def __aexit__(
        self,
        exc_type: type[BaseException] | None,
        exc_val: BaseException | None,
        exc_tb: Any,
    ) -> None:
        await self.close()


class Session:
    """Identity-map scope over a database.

    Every instance a session returns is interned by (schema, primary key):
    two queries yielding the same record return the same object, upgraded in
    place when the later query loaded more. Sessions share nothing with each
    other; concurrent queries in one session are last-write-wins per field.

    Example:
        >>> async with db.create_session() as session:
        ...     marc = await session.query(User).filter(name="marc").find_one()
        ...     same = await session.query(User).filter(id=marc.id).find_one()
        ...     assert marc is same
    """

    def __init__(self, database: Database, *, disabled_instance_pooling: bool = False) -> None:
        self.database = database
        self.disabled_instance_pooling = disabled_instance_pooling
        self.entity_registry = EntityRegistry()
        self.planner = JoinPlanner(database.storage)

    def formatter(self) -> Formatter:
        if self.disabled_instance_pooling:
            return Formatter(self)
        return Formatter(self, self.entity_registry)

    def query(self, cls: type[T]) -> Query[T]:
        """Create a query whose results are interned in this session.

        Example:
            >>> users = await session.query(User).filter(name__ne="admin").find()
        """
        return Query(self.database, QueryModel(cls), self)

    async def get(self, cls: type[T], primary_key: Any) -> T | None:
        """Get an instance by primary key, from the identity map when loaded."""
        schema = get_schema(cls)
        instance = self.entity_registry.get(schema, primary_key)
        if instance is not None and is_populated(instance):
            return instance
        return await self.query(cls).filter({schema.primary_key: primary_key}).find_one_or_none()

    async def hydrate(self, instance: Any) -> Any:
        """Load the full record of a reference placeholder and upgrade it in place.

        Raises:
            NotFoundError: If the record no longer exists.
        """
        state = get_state(instance)
        if not isinstance(state, Unloaded):
            return instance
        schema = get_schema(type(instance))
        rows = await self.planner.fetch(QueryModel(schema.cls, filters=({schema.primary_key: state.primary_key},)))
        if not rows:
            raise NotFoundError(f"{schema.class_name} item not found")

        formatter = self.formatter()
        values = convert_document(schema, rows[0].document, Format.MONGO, Format.CLASS, formatter.reference)
        formatter.merge(instance, schema, values, {})
        if not self.disabled_instance_pooling and self.entity_registry.get(schema, state.primary_key) is None:
            self.entity_registry.store(schema, instance)
        logger.debug("hydrated %r", instance)
        return instance

    async def add(self, instance: Any) -> Any:
        await self.database.add(instance)
        if get_state(instance) is None:
            set_state(instance, Loaded(self))
        if not self.disabled_instance_pooling:
            self.entity_registry.store(get_schema(type(instance)), instance)
        return instance

    async def update(self, instance: Any) -> Any:
        return await self.database.update(instance)

    async def remove(self, instance: Any) -> int:
        deleted = await self.database.remove(instance)
        self.entity_registry.delete(get_schema(type(instance)), instance)
        return deleted

    async def __aenter__(self) -> Session:
        return self

    async def __aexit__(
        self,
        exc_type: type[BaseException] | None,
        exc_val: BaseException | None,
        exc_tb: Any,
    ) -> None:
        self.entity_registry.clear()


# ========== Convenience Functions ==========


async def hydrate_entity(instance: T) -> T:
    """Fetch the full record of a reference placeholder through its session.

    Example:
        >>> marc = await session.query(User).filter(name="marc").find_one()
        >>> await hydrate_entity(marc.manager)
        >>> marc.manager.name
        'admin'

    Raises:
        HydrationError: If the placeholder was not loaded through a session.
        NotFoundError: If the record no longer exists.
    """
    state = get_state(instance)
    if not isinstance(state, Unloaded):
        return instance
    if state.session is None:
        raise HydrationError(
            f"Cannot hydrate {type(instance).__name__} {state.primary_key!r}: reference is not bound to a session"
        )
    return await state.session.hydrate(instance)


def get_last_known_pk(instance: Any) -> Any:
    """Primary key an instance was interned with, falling back to its current one."""
    state = get_state(instance)
    if isinstance(state, Unloaded):
        return state.primary_key
    session = state.session if isinstance(state, Loaded) else None
    if session is not None:
        primary_key = session.entity_registry.get_last_known_pk(instance)
        if primary_key is not None:
            return primary_key
    return primary_key_of(instance)


@asynccontextmanager
async def session_context(database: Database, **kwargs: Any) -> AsyncIterator[Session]:
    """Create a session that drops its identity map on exit.

    Example:
        >>> async with session_context(db) as session:
        ...     users = await session.query(User).find()
    """
    session = database.create_session(**kwargs)
    async with session:
        yield session
