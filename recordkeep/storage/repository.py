"""Generic soft-delete repository over a document collection."""

from __future__ import annotations

from typing import Any, Dict, Generic, List, Optional, Type, TypeVar

from recordkeep.identity import get_current_user_id
from recordkeep.logging import get_logger
from recordkeep.storage.collection import ASCENDING, Collection, Query, SortSpec
from recordkeep.storage.models import (
    EntityBase,
    Page,
    is_valid_object_id,
    new_object_id,
    utcnow,
)

T = TypeVar("T", bound=EntityBase)

LIVE: Dict[str, Any] = {"is_deleted": False}


class SoftDeleteStore(Generic[T]):
    """Persistence primitive for one entity kind with tombstone deletes.

    Every read except the ``*_including_deleted`` escape hatches is ANDed
    with ``is_deleted == False``. Records are never physically removed.
    """

    # Natural order for listings and paging; ids are ObjectIds, so this is
    # creation order for generated ids.
    default_sort: SortSpec = (("_id", ASCENDING),)

    def __init__(self, collection: Collection, model_cls: Type[T]) -> None:
        self.collection = collection
        self.model_cls = model_cls
        self.logger = get_logger(__name__)

    @staticmethod
    def _scoped(query: Optional[Query], *, include_deleted: bool = False) -> Query:
        if include_deleted:
            return dict(query or {})
        if not query:
            return dict(LIVE)
        return {"$and": [dict(query), dict(LIVE)]}

    def _to_model(self, doc: Optional[Dict[str, Any]]) -> Optional[T]:
        if not doc:
            return None
        return self.model_cls.from_document(doc)

    async def find_by_id(self, entity_id: Optional[str]) -> Optional[T]:
        if not is_valid_object_id(entity_id):
            return None
        doc = await self.collection.find_one(self._scoped({"_id": entity_id}))
        return self._to_model(doc)

    async def find_by_id_including_deleted(self, entity_id: Optional[str]) -> Optional[T]:
        if not is_valid_object_id(entity_id):
            return None
        doc = await self.collection.find_one({"_id": entity_id})
        return self._to_model(doc)

    async def find_one(self, query: Query) -> Optional[T]:
        doc = await self.collection.find_one(self._scoped(query))
        return self._to_model(doc)

    async def find_all(self, query: Optional[Query] = None) -> List[T]:
        docs = await self.collection.find(self._scoped(query), sort=self.default_sort)
        return [self._to_model(doc) for doc in docs]

    async def page(
        self,
        page_number: int,
        page_size: int,
        query: Optional[Query] = None,
        *,
        include_deleted: bool = False,
    ) -> Page[T]:
        """Return a 1-indexed page and the total it was cut from.

        Items and ``total_count`` use one filter, so the totals always agree
        with the page contents. Non-positive page numbers or sizes yield an
        empty page rather than an error.
        """
        scoped = self._scoped(query, include_deleted=include_deleted)
        total = await self.collection.count_documents(scoped)
        if page_number < 1 or page_size < 1:
            return Page(items=[], page_number=page_number, page_size=page_size, total_count=total)
        docs = await self.collection.find(
            scoped,
            sort=self.default_sort,
            skip=(page_number - 1) * page_size,
            limit=page_size,
        )
        return Page(
            items=[self._to_model(doc) for doc in docs],
            page_number=page_number,
            page_size=page_size,
            total_count=total,
        )

    async def page_including_deleted(self, page_number: int, page_size: int) -> Page[T]:
        """Administrative listing that also shows tombstones."""
        return await self.page(page_number, page_size, include_deleted=True)

    async def count(self, query: Optional[Query] = None, *, include_deleted: bool = False) -> int:
        return await self.collection.count_documents(
            self._scoped(query, include_deleted=include_deleted)
        )

    async def exists(self, query: Query) -> bool:
        return await self.collection.find_one(self._scoped(query)) is not None

    async def insert(self, entity: T) -> T:
        now = utcnow()
        actor = get_current_user_id()
        if entity.id is None:
            entity.id = new_object_id()
        if entity.created_date_utc is None:
            entity.created_date_utc = now
        if entity.created_by_id is None:
            entity.created_by_id = actor
        entity.last_modified_date_utc = entity.last_modified_date_utc or entity.created_date_utc
        entity.last_modified_by_id = entity.last_modified_by_id or entity.created_by_id
        await self.collection.insert_one(entity.to_document())
        return entity

    def _write_guard(self, entity: T) -> Query:
        """Conditions the stored document must still meet for ``update`` to apply."""
        return {"is_deleted": entity.is_deleted}

    async def update(self, entity: T) -> Optional[T]:
        """Replace the stored document sharing ``entity.id``.

        The replace only applies while the stored ``is_deleted`` still equals
        the one ``entity`` was read with, so the flag is never changed here:
        ``soft_delete`` and ``restore`` own it. Returns None when no record
        has that id or when it was deleted or restored since it was read.
        """
        if not is_valid_object_id(entity.id):
            return None
        entity.last_modified_date_utc = utcnow()
        entity.last_modified_by_id = get_current_user_id() or entity.last_modified_by_id
        query: Query = {"_id": entity.id, **self._write_guard(entity)}
        replaced = await self.collection.replace_one(query, entity.to_document())
        if not replaced:
            self.logger.info(
                "entity_update_skipped",
                collection=self.collection.name,
                entity_id=entity.id,
            )
            return None
        return await self.find_by_id_including_deleted(entity.id)

    async def soft_delete(self, entity: T) -> Optional[T]:
        """Tombstone ``entity``; repeated calls leave the first tombstone untouched."""
        if not is_valid_object_id(entity.id):
            return None
        now = utcnow()
        actor = get_current_user_id() or entity.last_modified_by_id
        doc = await self.collection.find_one_and_update(
            {"_id": entity.id, "is_deleted": False},
            {
                "is_deleted": True,
                "last_modified_date_utc": now,
                "last_modified_by_id": actor,
            },
        )
        if doc is None:
            return await self.find_by_id_including_deleted(entity.id)
        self.logger.info(
            "entity_soft_deleted",
            collection=self.collection.name,
            entity_id=entity.id,
        )
        return self._to_model(doc)

    async def restore(self, entity_id: Optional[str]) -> Optional[T]:
        """Clear the tombstone on ``entity_id``; a live record is returned unchanged."""
        if not is_valid_object_id(entity_id):
            return None
        doc = await self.collection.find_one_and_update(
            {"_id": entity_id, "is_deleted": True},
            {
                "is_deleted": False,
                "last_modified_date_utc": utcnow(),
                "last_modified_by_id": get_current_user_id(),
            },
        )
        if doc is None:
            return await self.find_by_id_including_deleted(entity_id)
        self.logger.info(
            "entity_restored",
            collection=self.collection.name,
            entity_id=entity_id,
        )
        return self._to_model(doc)


__all__ = ["LIVE", "SoftDeleteStore"]
