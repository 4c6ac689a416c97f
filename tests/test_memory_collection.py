"""Tests for the in-memory document collection and its query matcher."""

from datetime import datetime, timedelta, timezone

import pytest

from recordkeep.storage.collection import DESCENDING, MemoryCollection, matches
from recordkeep.storage.errors import ConstraintViolation


class TestMatcher:
    def test_equality_and_missing_fields(self):
        doc = {"_id": "a", "email": "a@x.com", "is_deleted": False}

        assert matches(doc, {"email": "a@x.com", "is_deleted": False})
        assert not matches(doc, {"email": "b@x.com"})
        # Missing fields compare equal to None
        assert matches(doc, {"phone": None})

    def test_operators(self):
        now = datetime.now(timezone.utc)
        doc = {"_id": "a", "count": 5, "expiry": now}

        assert matches(doc, {"count": {"$gt": 4, "$lte": 5}})
        assert not matches(doc, {"count": {"$lt": 5}})
        assert matches(doc, {"expiry": {"$gte": now - timedelta(days=1)}})
        assert matches(doc, {"_id": {"$ne": "b"}})
        assert matches(doc, {"_id": {"$in": ["a", "b"]}})
        assert matches(doc, {"_id": {"$nin": ["b"]}})
        assert matches(doc, {"phone": {"$exists": False}})

    def test_logical_operators(self):
        doc = {"_id": "a", "email": "a@x.com", "is_deleted": False}

        assert matches(doc, {"$and": [{"email": "a@x.com"}, {"is_deleted": False}]})
        assert matches(doc, {"$or": [{"email": "nope"}, {"_id": "a"}]})
        assert not matches(doc, {"$and": [{"email": "a@x.com"}, {"is_deleted": True}]})

    def test_dotted_path_into_embedded_list(self):
        doc = {"_id": "u", "roles": [{"name": "User"}, {"name": "Admin"}]}

        assert matches(doc, {"roles.name": "Admin"})
        assert not matches(doc, {"roles.name": "Auditor"})

    def test_unknown_operator_raises(self):
        with pytest.raises(ValueError):
            matches({"_id": "a"}, {"_id": {"$regex": "a"}})


class TestMemoryCollection:
    @pytest.mark.asyncio
    async def test_insert_requires_id_and_rejects_duplicates(self):
        collection = MemoryCollection("things")

        with pytest.raises(ValueError):
            await collection.insert_one({"name": "no id"})

        await collection.insert_one({"_id": "1", "name": "one"})
        with pytest.raises(ConstraintViolation):
            await collection.insert_one({"_id": "1", "name": "again"})

    @pytest.mark.asyncio
    async def test_unique_fields_checked_on_insert_and_replace(self):
        collection = MemoryCollection("roles", unique_fields=("name",))
        await collection.insert_one({"_id": "1", "name": "User"})
        await collection.insert_one({"_id": "2", "name": "Admin"})

        with pytest.raises(ConstraintViolation):
            await collection.insert_one({"_id": "3", "name": "User"})
        with pytest.raises(ConstraintViolation):
            await collection.replace_one({"_id": "2"}, {"name": "User"})
        # Replacing a document with its own value is not a conflict
        assert await collection.replace_one({"_id": "1"}, {"name": "User"})

    @pytest.mark.asyncio
    async def test_returned_documents_are_copies(self):
        collection = MemoryCollection("things")
        await collection.insert_one({"_id": "1", "tags": ["a"]})

        found = await collection.find_one({"_id": "1"})
        found["tags"].append("b")

        assert (await collection.find_one({"_id": "1"}))["tags"] == ["a"]

    @pytest.mark.asyncio
    async def test_find_sort_skip_limit(self):
        collection = MemoryCollection("things")
        for index in range(6):
            await collection.insert_one({"_id": str(index), "rank": index % 3})

        docs = await collection.find(
            {}, sort=[("rank", DESCENDING), ("_id", 1)], skip=1, limit=3
        )

        assert [doc["_id"] for doc in docs] == ["5", "1", "4"]
        assert await collection.count_documents({"rank": 0}) == 2

    @pytest.mark.asyncio
    async def test_find_one_and_update_only_first_matching_caller_wins(self):
        collection = MemoryCollection("sessions")
        await collection.insert_one({"_id": "s", "is_deleted": False})

        first = await collection.find_one_and_update(
            {"_id": "s", "is_deleted": False}, {"is_deleted": True, "replaced_by_token": "a"}
        )
        second = await collection.find_one_and_update(
            {"_id": "s", "is_deleted": False}, {"is_deleted": True, "replaced_by_token": "b"}
        )

        assert first["replaced_by_token"] == "a"
        assert second is None
        assert (await collection.find_one({"_id": "s"}))["replaced_by_token"] == "a"

    @pytest.mark.asyncio
    async def test_replace_one_reports_missing_target(self):
        collection = MemoryCollection("things")

        assert await collection.replace_one({"_id": "missing"}, {"name": "x"}) is False
