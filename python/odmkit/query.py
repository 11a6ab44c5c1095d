"""Query description: filters, parameters, sorting and joins."""

from __future__ import annotations

import re
from collections.abc import Mapping
from dataclasses import dataclass, field, replace
from typing import TYPE_CHECKING, Any, Literal

from odmkit.errors import ParameterError
from odmkit.schema import Schema, get_schema

if TYPE_CHECKING:
    from odmkit.relationships import Relation

ResultFormat = Literal["class", "json", "raw"]

_OPERATORS = frozenset(
    {
        "gt",
        "gte",
        "lt",
        "lte",
        "ne",
        "like",
        "ilike",
        "in",
        "notin",
        "isnull",
        "isnotnull",
        "contains",
        "icontains",
        "startswith",
        "istartswith",
        "endswith",
        "iendswith",
        "exists",
    }
)

_COMPARISONS = {"gt": "$gt", "gte": "$gte", "lt": "$lt", "lte": "$lte", "ne": "$ne"}


@dataclass(frozen=True)
class Param:
    """Named placeholder for a filter value, bound with ``parameter()``.

    Example:
        >>> query.filter(name=Param("name")).parameter("name", "marc")
    """

    name: str


# ========== Q Objects for Complex Conditions ==========


@dataclass
class Q:
    """Django-style Q object for complex filter conditions.

    Supports AND (&), OR (|) and negation (~), compiled to a Mongo-style
    filter document.

    Example:
        >>> # OR condition
        >>> query.filter(Q(age__gt=18) | Q(vip=True))

        >>> # Nested path
        >>> query.filter(Q(address__city="Berlin"))

        >>> # Negation
        >>> query.filter(~Q(banned=True))
    """

    _filters: list[tuple[str, str, Any]] = field(default_factory=list)
    _children: list[tuple[str, Q]] = field(default_factory=list)  # ("AND"/"OR", child_q)
    _negated: bool = False

    def __init__(self, **kwargs: Any) -> None:
        self._filters = []
        self._children = []
        self._negated = False

        for key, value in kwargs.items():
            col, op = _parse_filter_key(key)
            self._filters.append((col, op, value))

    def __or__(self, other: Q) -> Q:
        """Combine with OR."""
        result = Q()
        result._children = [("OR", self), ("OR", other)]
        return result

    def __and__(self, other: Q) -> Q:
        """Combine with AND."""
        result = Q()
        result._children = [("AND", self), ("AND", other)]
        return result

    def __invert__(self) -> Q:
        """Negate the condition."""
        result = Q()
        result._filters = self._filters.copy()
        result._children = self._children.copy()
        result._negated = not self._negated
        return result

    def to_filter(self, parameters: Mapping[str, Any] | None = None) -> dict[str, Any]:
        """Compile to a filter document, binding ``Param`` values."""
        if self._children:
            parts = [child.to_filter(parameters) for _join_type, child in self._children]
            parts = [part for part in parts if part]
            if not parts:
                return {}
            connector = "$or" if self._children[0][0] == "OR" else "$and"
            result = parts[0] if len(parts) == 1 else {connector: parts}

        elif self._filters:
            parts = [
                _build_condition(col, op, resolve_parameters(value, parameters or {}))
                for col, op, value in self._filters
            ]
            result = parts[0] if len(parts) == 1 else {"$and": parts}
        else:
            return {}

        if self._negated:
            result = {"$nor": [result]}

        return result


def _parse_filter_key(key: str) -> tuple[str, str]:
    """Parse a Django-style filter key into field path and operator.

    ``a__b__gt`` yields ``("a.b", "gt")``; keys without a known operator
    suffix are equality checks.
    """
    op = "eq"
    if "__" in key:
        parts = key.rsplit("__", 1)
        if parts[1] in _OPERATORS:
            key, op = parts
    return key.replace("__", "."), op


def _like_to_regex(pattern: str) -> str:
    """Translate a SQL LIKE pattern (``%`` and ``_`` wildcards) to an anchored regex."""
    out = []
    for char in pattern:
        if char == "%":
            out.append(".*")
        elif char == "_":
            out.append(".")
        else:
            out.append(re.escape(char))
    return "^" + "".join(out) + "$"


def _build_condition(path: str, op: str, value: Any) -> dict[str, Any]:
    """Build the filter document for a single condition."""
    if op == "eq":
        return {path: value}

    elif op in _COMPARISONS:
        return {path: {_COMPARISONS[op]: value}}

    elif op == "in":
        return {path: {"$in": list(value)}}

    elif op == "notin":
        return {path: {"$nin": list(value)}}

    elif op == "isnull":
        return {path: None} if value else {path: {"$ne": None}}

    elif op == "isnotnull":
        return {path: {"$ne": None}} if value else {path: None}

    elif op == "exists":
        return {path: {"$exists": bool(value)}}

    elif op in ("like", "ilike"):
        condition = {"$regex": _like_to_regex(str(value))}

    elif op in ("contains", "icontains"):
        condition = {"$regex": re.escape(str(value))}

    elif op in ("startswith", "istartswith"):
        condition = {"$regex": "^" + re.escape(str(value))}

    else:  # endswith, iendswith
        condition = {"$regex": re.escape(str(value)) + "$"}

    if op.startswith("i"):
        condition["$options"] = "i"
    return {path: condition}


def resolve_parameters(value: Any, parameters: Mapping[str, Any]) -> Any:
    """Replace every ``Param`` inside ``value``.

    ``{"$parameter": name}`` inside filter documents is the same as ``Param(name)``.

    Raises:
        ParameterError: If a parameter is not bound.
    """
    if isinstance(value, Mapping) and len(value) == 1 and "$parameter" in value:
        value = Param(value["$parameter"])
    if isinstance(value, Param):
        if value.name not in parameters:
            raise ParameterError(value.name)
        return parameters[value.name]
    if isinstance(value, Mapping):
        return {key: resolve_parameters(item, parameters) for key, item in value.items()}
    if isinstance(value, list | tuple):
        return [resolve_parameters(item, parameters) for item in value]
    return value


def and_(*filters: Mapping[str, Any]) -> dict[str, Any]:
    """Combine filter documents with AND, dropping empty ones."""
    parts = [dict(part) for part in filters if part]
    if not parts:
        return {}
    if len(parts) == 1:
        return parts[0]
    return {"$and": parts}


def parse_sort(*fields: str | Mapping[str, Any]) -> tuple[tuple[str, int], ...]:
    """Normalize sort arguments to ``(path, 1 | -1)`` pairs.

    Example:
        >>> parse_sort("-created", "name")
        (('created', -1), ('name', 1))
        >>> parse_sort({"name": "desc"})
        (('name', -1),)
    """
    result: list[tuple[str, int]] = []
    for item in fields:
        if isinstance(item, Mapping):
            for path, direction in item.items():
                if isinstance(direction, str):
                    descending = direction.lower() in ("desc", "descending", "-1")
                else:
                    descending = direction < 0
                result.append((path, -1 if descending else 1))
        elif item.startswith("-"):
            result.append((item[1:], -1))
        else:
            result.append((item, 1))
    return tuple(result)


@dataclass(frozen=True)
class Join:
    """A join of one relation property, with its own nested query."""

    property: str
    relation: Relation
    query: QueryModel
    inner: bool = False
    populate: bool = False


@dataclass(frozen=True)
class QueryModel:
    """Immutable description of a query. Builders return modified copies."""

    entity: type
    filters: tuple[Q | Mapping[str, Any], ...] = ()
    sort: tuple[tuple[str, int], ...] = ()
    skip: int | None = None
    limit: int | None = None
    select: tuple[str, ...] = ()
    parameters: Mapping[str, Any] = field(default_factory=dict)
    joins: tuple[Join, ...] = ()
    format: ResultFormat = "class"

    @property
    def schema(self) -> Schema:
        return get_schema(self.entity)

    def change(self, **changes: Any) -> QueryModel:
        return replace(self, **changes)

    def with_join(self, join: Join) -> QueryModel:
        """Add a join, replacing an existing join on the same property."""
        joins = list(self.joins)
        for index, existing in enumerate(joins):
            if existing.property == join.property:
                joins[index] = join
                break
        else:
            joins.append(join)
        return replace(self, joins=tuple(joins))

    def get_join(self, name: str) -> Join | None:
        for join in self.joins:
            if join.property == name:
                return join
        return None

    def compile_filter(self, parameters: Mapping[str, Any] | None = None) -> dict[str, Any]:
        """Compile all filters into one class-form filter document.

        ``parameters`` are inherited values, overridden by this query's own.
        """
        bound = self.bound_parameters(parameters)
        parts = []
        for item in self.filters:
            if isinstance(item, Q):
                parts.append(item.to_filter(bound))
            else:
                parts.append(resolve_parameters(item, bound))
        return and_(*parts)

    def bound_parameters(self, parameters: Mapping[str, Any] | None = None) -> dict[str, Any]:
        return {**(parameters or {}), **self.parameters}

    @property
    def populated_joins(self) -> tuple[Join, ...]:
        return tuple(join for join in self.joins if join.populate)

    @property
    def inner_joins(self) -> tuple[Join, ...]:
        return tuple(join for join in self.joins if join.inner)
