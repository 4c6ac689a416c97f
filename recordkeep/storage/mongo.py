"""MongoDB-backed collection using pymongo's asyncio client."""

from __future__ import annotations

import threading
from typing import Any, Dict, List, Optional, Sequence, Tuple

from bson import ObjectId
from pymongo import AsyncMongoClient, IndexModel, ReturnDocument
from pymongo.asynchronous.collection import AsyncCollection
from pymongo.asynchronous.database import AsyncDatabase
from pymongo.errors import DuplicateKeyError, PyMongoError

from recordkeep.config import Settings
from recordkeep.logging import get_logger
from recordkeep.storage.collection import Document, Query, SortSpec
from recordkeep.storage.errors import ConstraintViolation, StorageUnavailable

logger = get_logger(__name__)

_clients: Dict[Tuple[str, frozenset], AsyncMongoClient] = {}
_clients_lock = threading.Lock()


def get_client(uri: str, **kwargs: Any) -> AsyncMongoClient:
    """Return a cached client keyed by URI and options.

    The client owns the connection pool and is safe for concurrent use, so
    one per URI is shared by every collection. Uses double-checked locking
    so concurrent first callers build a single client.
    """
    key = (uri, frozenset(kwargs.items()))
    client = _clients.get(key)
    if client is not None:
        return client
    with _clients_lock:
        if key not in _clients:
            _clients[key] = AsyncMongoClient(uri, **kwargs)
        return _clients[key]


def get_database(settings: Settings) -> AsyncDatabase:
    client = get_client(
        settings.mongo_uri,
        tz_aware=True,
        serverSelectionTimeoutMS=settings.mongo_timeout_ms,
        socketTimeoutMS=settings.mongo_timeout_ms,
    )
    return client[settings.mongo_database]


async def close_clients() -> None:
    with _clients_lock:
        clients = list(_clients.values())
        _clients.clear()
    for client in clients:
        await client.close()


def _to_object_id(value: Any) -> Any:
    """Convert a 24-hex id string to ``ObjectId``; anything else passes through."""
    if isinstance(value, str) and ObjectId.is_valid(value):
        return ObjectId(value)
    return value


def _encode_id_condition(condition: Any) -> Any:
    if isinstance(condition, dict):
        encoded = {}
        for op, operand in condition.items():
            if isinstance(operand, (list, tuple)):
                encoded[op] = [_to_object_id(item) for item in operand]
            else:
                encoded[op] = _to_object_id(operand)
        return encoded
    return _to_object_id(condition)


def _encode_query(query: Query) -> Query:
    """Rewrite ``_id`` conditions, including nested ``$and``/``$or``, to ObjectIds."""
    encoded: Query = {}
    for key, condition in query.items():
        if key in ("$and", "$or"):
            encoded[key] = [_encode_query(sub) for sub in condition]
        elif key == "_id":
            encoded[key] = _encode_id_condition(condition)
        else:
            encoded[key] = condition
    return encoded


def _encode_document(document: Document) -> Document:
    encoded = dict(document)
    if "_id" in encoded:
        encoded["_id"] = _to_object_id(encoded["_id"])
    return encoded


def _decode_document(document: Optional[Document]) -> Optional[Document]:
    # Entities carry ids as hex strings; the store keeps real ObjectIds
    if document is not None and isinstance(document.get("_id"), ObjectId):
        document["_id"] = str(document["_id"])
    return document


class MongoCollection:
    """Adapts an ``AsyncCollection`` to the ``Collection`` capability.

    Driver failures are translated at this boundary: duplicate keys become
    ``ConstraintViolation`` and every other driver error becomes
    ``StorageUnavailable``. Cancellation propagates untouched.
    """

    def __init__(
        self, collection: AsyncCollection, *, indexes: Sequence[IndexModel] = ()
    ) -> None:
        self._collection = collection
        self.name = collection.name
        self.indexes = list(indexes)

    def _translate(self, exc: PyMongoError, operation: str) -> Exception:
        if isinstance(exc, DuplicateKeyError):
            return ConstraintViolation(
                f"duplicate key in {self.name}",
                {"collection": self.name, "key": exc.details.get("keyValue") if exc.details else None},
            )
        logger.error(
            "mongo_operation_failed",
            collection=self.name,
            operation=operation,
            error_type=type(exc).__name__,
            error=str(exc),
        )
        return StorageUnavailable(
            f"{operation} on {self.name} failed",
            {"collection": self.name, "operation": operation},
        )

    async def ensure_indexes(self) -> None:
        if not self.indexes:
            return
        try:
            await self._collection.create_indexes(self.indexes)
        except PyMongoError as exc:
            raise self._translate(exc, "create_indexes") from exc

    async def find_one(self, query: Query) -> Optional[Document]:
        try:
            return _decode_document(await self._collection.find_one(_encode_query(query)))
        except PyMongoError as exc:
            raise self._translate(exc, "find_one") from exc

    async def find(
        self,
        query: Query,
        *,
        sort: Optional[SortSpec] = None,
        skip: int = 0,
        limit: int = 0,
    ) -> List[Document]:
        cursor = self._collection.find(_encode_query(query))
        if sort:
            cursor = cursor.sort(list(sort))
        if skip:
            cursor = cursor.skip(skip)
        if limit:
            cursor = cursor.limit(limit)
        try:
            docs = await cursor.to_list(None)
        except PyMongoError as exc:
            raise self._translate(exc, "find") from exc
        return [_decode_document(doc) for doc in docs]

    async def count_documents(self, query: Query) -> int:
        try:
            return await self._collection.count_documents(_encode_query(query))
        except PyMongoError as exc:
            raise self._translate(exc, "count_documents") from exc

    async def insert_one(self, document: Document) -> None:
        try:
            await self._collection.insert_one(_encode_document(document))
        except PyMongoError as exc:
            raise self._translate(exc, "insert_one") from exc

    async def replace_one(self, query: Query, document: Document) -> bool:
        try:
            result = await self._collection.replace_one(
                _encode_query(query), _encode_document(document)
            )
        except PyMongoError as exc:
            raise self._translate(exc, "replace_one") from exc
        return result.matched_count > 0

    async def find_one_and_update(
        self, query: Query, updates: Dict[str, Any]
    ) -> Optional[Document]:
        try:
            doc = await self._collection.find_one_and_update(
                _encode_query(query), {"$set": updates}, return_document=ReturnDocument.AFTER
            )
        except PyMongoError as exc:
            raise self._translate(exc, "find_one_and_update") from exc
        return _decode_document(doc)


__all__ = ["MongoCollection", "close_clients", "get_client", "get_database"]
