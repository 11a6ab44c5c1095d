"""Storage protocol and the in-memory storage implementation."""

from __future__ import annotations

import logging
import re
from collections.abc import Mapping
from dataclasses import dataclass, field
from datetime import datetime
from typing import Any, Protocol, runtime_checkable

from bson import ObjectId

logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class CompiledQuery:
    """One storage read: a mongo-form filter plus sort, pagination and projection."""

    collection: str
    filter: Mapping[str, Any] = field(default_factory=dict)
    sort: tuple[tuple[str, int], ...] = ()
    skip: int | None = None
    limit: int | None = None
    projection: tuple[str, ...] | None = None


@runtime_checkable
class Storage(Protocol):
    """Document store used by a Database. Documents are in mongo form."""

    async def execute(self, query: CompiledQuery) -> list[dict[str, Any]]:
        """Return the documents matching ``query``."""
        ...

    async def count(self, query: CompiledQuery) -> int:
        """Count the documents matching ``query``, honouring skip and limit."""
        ...

    async def insert(self, collection: str, document: Mapping[str, Any]) -> Any:
        """Insert a document and return its ``_id``."""
        ...

    async def replace(self, collection: str, filter: Mapping[str, Any], document: Mapping[str, Any]) -> int:
        """Replace the first matching document. Returns the number replaced."""
        ...

    async def patch(
        self,
        collection: str,
        filter: Mapping[str, Any],
        changes: Mapping[str, Any],
        *,
        multi: bool = False,
    ) -> int:
        """Set dot-path ``changes`` on matching documents. Returns the number modified."""
        ...

    async def delete(self, collection: str, filter: Mapping[str, Any], *, multi: bool = False) -> int:
        """Delete matching documents. Returns the number deleted."""
        ...

    async def close(self) -> None:
        """Release resources held by the storage."""
        ...


# ========== Filter matching ==========

_MISSING = object()


def _lookup(value: Any, segments: list[str]) -> list[Any]:
    """Collect the values a dot path reaches, traversing arrays like MongoDB."""
    if not segments:
        return [value]
    head, rest = segments[0], segments[1:]
    if isinstance(value, Mapping):
        if head in value:
            return _lookup(value[head], rest)
        return []
    if isinstance(value, list):
        found: list[Any] = []
        if head.isdigit():
            index = int(head)
            if index < len(value):
                found.extend(_lookup(value[index], rest))
        for item in value:
            if isinstance(item, Mapping):
                found.extend(_lookup(item, segments))
        return found
    return []


def _expand(values: list[Any]) -> list[Any]:
    """Values plus the elements of array values (implicit array matching)."""
    result = []
    for value in values:
        result.append(value)
        if isinstance(value, list):
            result.extend(value)
    return result


def _type_rank(value: Any) -> int:
    if value is None or value is _MISSING:
        return 1
    if isinstance(value, bool):
        return 8
    if isinstance(value, int | float):
        return 2
    if isinstance(value, str):
        return 3
    if isinstance(value, Mapping):
        return 4
    if isinstance(value, list):
        return 5
    if isinstance(value, bytes):
        return 6
    if isinstance(value, ObjectId):
        return 7
    if isinstance(value, datetime):
        return 9
    return 10


def sort_key(value: Any) -> tuple[int, Any]:
    """BSON-like ordering key: type rank first, then value."""
    rank = _type_rank(value)
    if rank == 1:
        return rank, 0
    if rank == 4:
        return rank, tuple((key, sort_key(item)) for key, item in value.items())
    if rank == 5:
        return rank, tuple(sort_key(item) for item in value)
    if rank == 10:
        return rank, repr(value)
    return rank, value


def _equals(value: Any, expected: Any) -> bool:
    if isinstance(value, bool) != isinstance(expected, bool):
        return False
    return value == expected


def _compare(value: Any, expected: Any) -> int | None:
    """Three-way comparison for values of the same type rank, else None."""
    if value is _MISSING or _type_rank(value) != _type_rank(expected) or value is None:
        return None
    left, right = sort_key(value), sort_key(expected)
    return (left > right) - (left < right)


def _matches_value(values: list[Any], expected: Any) -> bool:
    if isinstance(expected, re.Pattern):
        return any(isinstance(value, str) and expected.search(value) for value in _expand(values))
    if expected is None:
        return not values or any(value is None for value in _expand(values))
    return any(_equals(value, expected) for value in _expand(values))


def _matches_operators(values: list[Any], operators: Mapping[str, Any]) -> bool:
    for operator, operand in operators.items():
        if operator == "$eq":
            matched = _matches_value(values, operand)
        elif operator == "$ne":
            matched = not _matches_value(values, operand)
        elif operator in ("$gt", "$gte", "$lt", "$lte"):
            results = [_compare(value, operand) for value in _expand(values)]
            results = [result for result in results if result is not None]
            if operator == "$gt":
                matched = any(result > 0 for result in results)
            elif operator == "$gte":
                matched = any(result >= 0 for result in results)
            elif operator == "$lt":
                matched = any(result < 0 for result in results)
            else:
                matched = any(result <= 0 for result in results)
        elif operator == "$in":
            matched = any(_matches_value(values, item) for item in operand)
        elif operator == "$nin":
            matched = not any(_matches_value(values, item) for item in operand)
        elif operator == "$all":
            matched = bool(operand) and all(_matches_value(values, item) for item in operand)
        elif operator == "$exists":
            matched = bool(values) == bool(operand)
        elif operator == "$size":
            matched = any(isinstance(value, list) and len(value) == operand for value in values)
        elif operator == "$regex":
            flags = 0
            for option in operators.get("$options", ""):
                flags |= {"i": re.IGNORECASE, "m": re.MULTILINE, "s": re.DOTALL, "x": re.VERBOSE}.get(option, 0)
            pattern = operand if isinstance(operand, re.Pattern) else re.compile(operand, flags)
            matched = any(isinstance(value, str) and pattern.search(value) for value in _expand(values))
        elif operator == "$options":
            continue
        elif operator == "$not":
            if isinstance(operand, Mapping):
                matched = not _matches_operators(values, operand)
            else:
                matched = not _matches_value(values, operand)
        elif operator == "$elemMatch":
            matched = any(
                isinstance(value, list) and any(_matches_element(item, operand) for item in value)
                for value in values
            )
        else:
            raise ValueError(f"Unsupported filter operator: {operator}")
        if not matched:
            return False
    return True


def _matches_element(item: Any, condition: Mapping[str, Any]) -> bool:
    if _is_operator_document(condition):
        return _matches_operators([item], condition)
    return isinstance(item, Mapping) and matches(item, condition)


def _is_operator_document(value: Any) -> bool:
    return isinstance(value, Mapping) and bool(value) and all(str(key).startswith("$") for key in value)


def matches(document: Mapping[str, Any], filter: Mapping[str, Any]) -> bool:
    """Evaluate a Mongo-style filter against a document."""
    for key, condition in filter.items():
        if key == "$and":
            if not all(matches(document, part) for part in condition):
                return False
        elif key == "$or":
            if not any(matches(document, part) for part in condition):
                return False
        elif key == "$nor":
            if any(matches(document, part) for part in condition):
                return False
        elif key.startswith("$"):
            raise ValueError(f"Unsupported top-level filter operator: {key}")
        else:
            values = _lookup(document, key.split("."))
            if _is_operator_document(condition):
                if not _matches_operators(values, condition):
                    return False
            elif not _matches_value(values, condition):
                return False
    return True


# ========== Documents ==========


def _copy(value: Any) -> Any:
    if isinstance(value, Mapping):
        return {key: _copy(item) for key, item in value.items()}
    if isinstance(value, list):
        return [_copy(item) for item in value]
    return value


def _project(document: Mapping[str, Any], fields: tuple[str, ...]) -> dict[str, Any]:
    """Keep ``_id`` and the given dot paths, like an inclusion projection."""
    result: dict[str, Any] = {}
    if "_id" in document:
        result["_id"] = _copy(document["_id"])
    for path in fields:
        source: Any = document
        target = result
        segments = path.split(".")
        for segment in segments[:-1]:
            if not isinstance(source, Mapping) or not isinstance(source.get(segment), Mapping):
                break
            source = source[segment]
            target = target.setdefault(segment, {})
        else:
            last = segments[-1]
            if isinstance(source, Mapping) and last in source:
                target[last] = _copy(source[last])
    return result


def _set_path(document: dict[str, Any], path: str, value: Any) -> None:
    segments = path.split(".")
    target: Any = document
    for segment in segments[:-1]:
        if isinstance(target, list):
            target = target[int(segment)]
        else:
            target = target.setdefault(segment, {})
    last = segments[-1]
    if isinstance(target, list):
        target[int(last)] = _copy(value)
    else:
        target[last] = _copy(value)


def _sort(documents: list[dict[str, Any]], sort: tuple[tuple[str, int], ...]) -> None:
    for path, direction in reversed(sort):
        segments = path.split(".")

        def key(document: dict[str, Any], segments: list[str] = segments) -> tuple[int, Any]:
            found = _lookup(document, segments)
            return sort_key(found[0] if found else None)

        documents.sort(key=key, reverse=direction < 0)


class MemoryStorage:
    """In-process document storage with MongoDB-like query semantics.

    Documents are copied on the way in and out; callers never share state
    with the stored documents.

    Example:
        >>> storage = MemoryStorage()
        >>> await storage.insert("users", {"name": "marc"})
        >>> await storage.execute(CompiledQuery("users", {"name": "marc"}))
    """

    def __init__(self) -> None:
        self._collections: dict[str, list[dict[str, Any]]] = {}

    def _documents(self, collection: str) -> list[dict[str, Any]]:
        return self._collections.setdefault(collection, [])

    def _match(self, query: CompiledQuery) -> list[dict[str, Any]]:
        documents = [doc for doc in self._documents(query.collection) if matches(doc, query.filter)]
        if query.sort:
            _sort(documents, query.sort)
        start = query.skip or 0
        end = start + query.limit if query.limit is not None else None
        return documents[start:end]

    async def execute(self, query: CompiledQuery) -> list[dict[str, Any]]:
        documents = self._match(query)
        logger.debug("find %s %s -> %d documents", query.collection, query.filter, len(documents))
        if query.projection is not None:
            return [_project(doc, query.projection) for doc in documents]
        return [_copy(doc) for doc in documents]

    async def count(self, query: CompiledQuery) -> int:
        count = len(self._match(query))
        logger.debug("count %s %s -> %d", query.collection, query.filter, count)
        return count

    async def insert(self, collection: str, document: Mapping[str, Any]) -> Any:
        stored = _copy(document)
        if "_id" not in stored:
            stored = {"_id": ObjectId(), **stored}
        self._documents(collection).append(stored)
        logger.debug("insert %s _id=%s", collection, stored["_id"])
        return stored["_id"]

    async def replace(self, collection: str, filter: Mapping[str, Any], document: Mapping[str, Any]) -> int:
        documents = self._documents(collection)
        for index, existing in enumerate(documents):
            if matches(existing, filter):
                stored = _copy(document)
                if "_id" in existing:
                    stored = {"_id": existing["_id"], **{k: v for k, v in stored.items() if k != "_id"}}
                documents[index] = stored
                logger.debug("replace %s %s", collection, filter)
                return 1
        return 0

    async def patch(
        self,
        collection: str,
        filter: Mapping[str, Any],
        changes: Mapping[str, Any],
        *,
        multi: bool = False,
    ) -> int:
        modified = 0
        for document in self._documents(collection):
            if not matches(document, filter):
                continue
            for path, value in changes.items():
                _set_path(document, path, value)
            modified += 1
            if not multi:
                break
        logger.debug("patch %s %s -> %d documents", collection, filter, modified)
        return modified

    async def delete(self, collection: str, filter: Mapping[str, Any], *, multi: bool = False) -> int:
        documents = self._documents(collection)
        kept: list[dict[str, Any]] = []
        deleted = 0
        for document in documents:
            if (multi or not deleted) and matches(document, filter):
                deleted += 1
                continue
            kept.append(document)
        documents[:] = kept
        logger.debug("delete %s %s -> %d documents", collection, filter, deleted)
        return deleted

    async def close(self) -> None:
        logger.debug("close memory storage (%d collections)", len(self._collections))
