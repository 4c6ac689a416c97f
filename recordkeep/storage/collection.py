"""Document-store collection capability and its in-memory implementation.

Queries are mongo-style filter mappings so the same repository code runs
against ``MemoryCollection`` in tests and ``MongoCollection`` in production.
"""

from __future__ import annotations

import copy
import threading
from datetime import datetime
from typing import Any, Dict, Iterable, List, Optional, Protocol, Sequence, Tuple

from recordkeep.storage.errors import ConstraintViolation

Document = Dict[str, Any]
Query = Dict[str, Any]
SortSpec = Sequence[Tuple[str, int]]

ASCENDING = 1
DESCENDING = -1

_MISSING = object()


class Collection(Protocol):
    name: str

    async def find_one(self, query: Query) -> Optional[Document]: ...

    async def find(
        self,
        query: Query,
        *,
        sort: Optional[SortSpec] = None,
        skip: int = 0,
        limit: int = 0,
    ) -> List[Document]: ...

    async def count_documents(self, query: Query) -> int: ...

    async def insert_one(self, document: Document) -> None: ...

    async def replace_one(self, query: Query, document: Document) -> bool: ...

    async def find_one_and_update(
        self, query: Query, updates: Dict[str, Any]
    ) -> Optional[Document]: ...


def _resolve(doc: Any, path: str) -> List[Any]:
    """Return every value reachable by a dotted path, descending into lists."""
    values: List[Any] = [doc]
    for part in path.split("."):
        next_values: List[Any] = []
        for value in values:
            if isinstance(value, dict):
                if part in value:
                    next_values.append(value[part])
            elif isinstance(value, list):
                for item in value:
                    if isinstance(item, dict) and part in item:
                        next_values.append(item[part])
        values = next_values
    return values


def _comparable(a: Any, b: Any) -> bool:
    if isinstance(a, datetime) and isinstance(b, datetime):
        return True
    if isinstance(a, bool) or isinstance(b, bool):
        return False
    numeric = (int, float)
    if isinstance(a, numeric) and isinstance(b, numeric):
        return True
    return type(a) is type(b)


def _match_operator(values: List[Any], op: str, operand: Any) -> bool:
    if op == "$exists":
        return bool(values) == bool(operand)
    if op == "$ne":
        return not _match_equal(values, operand)
    if op == "$in":
        return any(_match_equal(values, candidate) for candidate in operand)
    if op == "$nin":
        return not any(_match_equal(values, candidate) for candidate in operand)
    if op in {"$lt", "$lte", "$gt", "$gte"}:
        for value in values:
            if value is None or not _comparable(value, operand):
                continue
            if op == "$lt" and value < operand:
                return True
            if op == "$lte" and value <= operand:
                return True
            if op == "$gt" and value > operand:
                return True
            if op == "$gte" and value >= operand:
                return True
        return False
    raise ValueError(f"unsupported query operator: {op}")


def _match_equal(values: List[Any], expected: Any) -> bool:
    if not values:
        # Missing fields match equality against None, as in mongo
        return expected is None
    for value in values:
        if value == expected:
            return True
        if isinstance(value, list) and expected in value:
            return True
    return False


def matches(doc: Document, query: Query) -> bool:
    """Evaluate a mongo-style filter against a plain document."""
    for key, condition in query.items():
        if key == "$and":
            if not all(matches(doc, sub) for sub in condition):
                return False
            continue
        if key == "$or":
            if not any(matches(doc, sub) for sub in condition):
                return False
            continue
        values = _resolve(doc, key)
        if isinstance(condition, dict) and any(k.startswith("$") for k in condition):
            for op, operand in condition.items():
                if not _match_operator(values, op, operand):
                    return False
        elif not _match_equal(values, condition):
            return False
    return True


def _sort_key(value: Any) -> Tuple[int, Any]:
    # None sorts first, like mongo's null ordering
    if value is None:
        return (0, 0)
    return (1, value)


class MemoryCollection:
    """Thread-safe in-process collection for tests and single-node development."""

    def __init__(self, name: str, *, unique_fields: Iterable[str] = ()) -> None:
        self.name = name
        self.unique_fields = tuple(unique_fields)
        self.documents: Dict[str, Document] = {}
        # RLock so helpers can re-acquire inside a locked section
        self._data_lock = threading.RLock()

    def _check_unique(self, document: Document, *, ignore_id: Any = _MISSING) -> None:
        for field_name in self.unique_fields:
            value = document.get(field_name)
            if value is None:
                continue
            for doc_id, existing in self.documents.items():
                if doc_id == ignore_id:
                    continue
                if existing.get(field_name) == value:
                    raise ConstraintViolation(
                        f"duplicate value for {self.name}.{field_name}",
                        {"collection": self.name, "field": field_name},
                    )

    def _select(self, query: Query) -> List[Document]:
        # Dicts keep insertion order, which stands in for natural order
        return [doc for doc in self.documents.values() if matches(doc, query)]

    async def find_one(self, query: Query) -> Optional[Document]:
        with self._data_lock:
            for doc in self.documents.values():
                if matches(doc, query):
                    return copy.deepcopy(doc)
        return None

    async def find(
        self,
        query: Query,
        *,
        sort: Optional[SortSpec] = None,
        skip: int = 0,
        limit: int = 0,
    ) -> List[Document]:
        with self._data_lock:
            selected = self._select(query)
            for field_name, direction in reversed(list(sort or [])):
                selected.sort(
                    key=lambda doc: _sort_key(doc.get(field_name)),
                    reverse=direction == DESCENDING,
                )
            if skip:
                selected = selected[skip:]
            if limit:
                selected = selected[:limit]
            return copy.deepcopy(selected)

    async def count_documents(self, query: Query) -> int:
        with self._data_lock:
            return len(self._select(query))

    async def insert_one(self, document: Document) -> None:
        doc_id = document.get("_id")
        if doc_id is None:
            raise ValueError("documents must carry an _id before insert")
        with self._data_lock:
            if doc_id in self.documents:
                raise ConstraintViolation(
                    f"duplicate _id in {self.name}",
                    {"collection": self.name, "field": "_id"},
                )
            self._check_unique(document)
            self.documents[doc_id] = copy.deepcopy(document)

    async def replace_one(self, query: Query, document: Document) -> bool:
        with self._data_lock:
            for doc_id, existing in self.documents.items():
                if matches(existing, query):
                    replacement = copy.deepcopy(document)
                    replacement["_id"] = doc_id
                    self._check_unique(replacement, ignore_id=doc_id)
                    self.documents[doc_id] = replacement
                    return True
        return False

    async def find_one_and_update(
        self, query: Query, updates: Dict[str, Any]
    ) -> Optional[Document]:
        """Apply ``$set``-style updates to the first match and return it post-update.

        Match and write happen under one lock acquisition, so concurrent
        callers racing on the same filter see exactly one winner.
        """
        with self._data_lock:
            for doc_id, existing in self.documents.items():
                if matches(existing, query):
                    updated = dict(existing)
                    updated.update(copy.deepcopy(updates))
                    self._check_unique(updated, ignore_id=doc_id)
                    self.documents[doc_id] = updated
                    return copy.deepcopy(updated)
        return None


__all__ = [
    "ASCENDING",
    "DESCENDING",
    "Collection",
    "Document",
    "MemoryCollection",
    "Query",
    "SortSpec",
    "matches",
]
