"""MongoDB storage over pymongo's asyncio client."""

from __future__ import annotations

import logging
from collections.abc import Mapping
from typing import Any

from pymongo import AsyncMongoClient

from odmkit.storage import CompiledQuery

logger = logging.getLogger(__name__)


class MongoStorage:
    """Storage backed by a MongoDB database.

    Driver errors propagate unchanged. Nothing is retried here; configure
    retries on the client (``retryReads``/``retryWrites`` URL options).

    Example:
        >>> storage = MongoStorage("mongodb://localhost:27017/app")
        >>> db = Database(storage)
    """

    def __init__(self, url: str, database: str | None = None, **client_options: Any) -> None:
        self._client: AsyncMongoClient = AsyncMongoClient(url, **client_options)
        if database is None:
            self._db = self._client.get_default_database(default="odmkit")
        else:
            self._db = self._client[database]

    @property
    def database_name(self) -> str:
        return self._db.name

    async def execute(self, query: CompiledQuery) -> list[dict[str, Any]]:
        # pymongo treats limit(0) as "no limit"
        if query.limit == 0:
            return []
        projection = {path: 1 for path in query.projection} if query.projection is not None else None
        cursor = self._db[query.collection].find(dict(query.filter), projection)
        if query.sort:
            cursor = cursor.sort(list(query.sort))
        if query.skip:
            cursor = cursor.skip(query.skip)
        if query.limit is not None:
            cursor = cursor.limit(query.limit)
        documents = await cursor.to_list(None)
        logger.debug("find %s %s -> %d documents", query.collection, query.filter, len(documents))
        return documents

    async def count(self, query: CompiledQuery) -> int:
        options: dict[str, Any] = {}
        if query.skip:
            options["skip"] = query.skip
        if query.limit is not None:
            if query.limit == 0:
                return 0
            options["limit"] = query.limit
        count = await self._db[query.collection].count_documents(dict(query.filter), **options)
        logger.debug("count %s %s -> %d", query.collection, query.filter, count)
        return count

    async def insert(self, collection: str, document: Mapping[str, Any]) -> Any:
        result = await self._db[collection].insert_one(dict(document))
        logger.debug("insert %s _id=%s", collection, result.inserted_id)
        return result.inserted_id

    async def replace(self, collection: str, filter: Mapping[str, Any], document: Mapping[str, Any]) -> int:
        replacement = {key: value for key, value in document.items() if key != "_id"}
        result = await self._db[collection].replace_one(dict(filter), replacement)
        logger.debug("replace %s %s -> %d", collection, filter, result.matched_count)
        return result.matched_count

    async def patch(
        self,
        collection: str,
        filter: Mapping[str, Any],
        changes: Mapping[str, Any],
        *,
        multi: bool = False,
    ) -> int:
        if multi:
            result = await self._db[collection].update_many(dict(filter), {"$set": dict(changes)})
        else:
            result = await self._db[collection].update_one(dict(filter), {"$set": dict(changes)})
        logger.debug("patch %s %s -> %d", collection, filter, result.matched_count)
        return result.matched_count

    async def delete(self, collection: str, filter: Mapping[str, Any], *, multi: bool = False) -> int:
        if multi:
            result = await self._db[collection].delete_many(dict(filter))
        else:
            result = await self._db[collection].delete_one(dict(filter))
        logger.debug("delete %s %s -> %d", collection, filter, result.deleted_count)
        return result.deleted_count

    async def drop(self) -> None:
        """Drop the whole database. Used to reset test databases."""
        await self._client.drop_database(self._db.name)

    async def close(self) -> None:
        await self._client.close()
