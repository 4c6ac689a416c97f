"""Tests for the generic soft-delete repository.

Covers:
- Live-only reads and the include-deleted escape hatches
- Idempotent tombstones and restore
- Paging boundaries and count consistency
- Audit stamping from the request identity
"""

import pytest

from recordkeep.identity import identity_scope
from recordkeep.storage.collection import MemoryCollection
from recordkeep.storage.models import Role, new_object_id
from recordkeep.storage.repository import SoftDeleteStore


@pytest.fixture
def store():
    return SoftDeleteStore(MemoryCollection("roles"), Role)


async def _insert_many(store, count):
    inserted = []
    for index in range(1, count + 1):
        inserted.append(await store.insert(Role(name=f"role-{index:02d}")))
    return inserted


class TestInsertAndLookup:
    @pytest.mark.asyncio
    async def test_insert_assigns_id_and_audit_fields(self, store):
        actor = new_object_id()
        with identity_scope(actor):
            role = await store.insert(Role(name="Auditor"))

        assert role.id is not None
        assert role.is_deleted is False
        assert role.created_by_id == actor
        assert role.last_modified_by_id == actor
        assert role.created_date_utc is not None
        assert role.created_date_utc.tzinfo is not None

        found = await store.find_by_id(role.id)
        assert found == role

    @pytest.mark.asyncio
    async def test_insert_without_identity_leaves_actor_empty(self, store):
        role = await store.insert(Role(name="System"))

        assert role.created_by_id is None

    @pytest.mark.asyncio
    async def test_malformed_or_unknown_ids_yield_none(self, store):
        await store.insert(Role(name="User"))

        assert await store.find_by_id("not-an-object-id") is None
        assert await store.find_by_id(None) is None
        assert await store.find_by_id(new_object_id()) is None

    @pytest.mark.asyncio
    async def test_find_one_exists_and_find_all(self, store):
        await _insert_many(store, 3)

        assert (await store.find_one({"name": "role-02"})).name == "role-02"
        assert await store.exists({"name": "role-03"})
        assert not await store.exists({"name": "role-99"})
        names = [role.name for role in await store.find_all()]
        assert names == ["role-01", "role-02", "role-03"]
        assert len(await store.find_all({"name": {"$in": ["role-01", "role-03"]}})) == 2


class TestSoftDelete:
    @pytest.mark.asyncio
    async def test_tombstone_hidden_from_live_reads(self, store):
        role, other = await _insert_many(store, 2)

        deleted = await store.soft_delete(role)

        assert deleted.is_deleted is True
        assert await store.find_by_id(role.id) is None
        assert await store.find_one({"name": role.name}) is None
        assert not await store.exists({"name": role.name})
        assert [r.id for r in await store.find_all()] == [other.id]
        assert await store.count() == 1

        everything = await store.page_including_deleted(1, 10)
        assert role.id in [r.id for r in everything]
        assert (await store.find_by_id_including_deleted(role.id)).is_deleted is True

    @pytest.mark.asyncio
    async def test_soft_delete_twice_is_a_no_op(self, store):
        (role,) = await _insert_many(store, 1)

        first = await store.soft_delete(role)
        second = await store.soft_delete(role)

        assert second == first
        assert second.last_modified_date_utc == first.last_modified_date_utc

    @pytest.mark.asyncio
    async def test_soft_delete_stamps_actor(self, store):
        (role,) = await _insert_many(store, 1)
        actor = new_object_id()

        with identity_scope(actor):
            deleted = await store.soft_delete(role)

        assert deleted.last_modified_by_id == actor
        assert deleted.last_modified_date_utc >= role.created_date_utc

    @pytest.mark.asyncio
    async def test_restore_brings_record_back(self, store):
        (role,) = await _insert_many(store, 1)
        await store.soft_delete(role)

        restored = await store.restore(role.id)

        assert restored.is_deleted is False
        assert await store.find_by_id(role.id) is not None
        # Restoring a live record changes nothing
        assert await store.restore(role.id) == restored


class TestUpdate:
    @pytest.mark.asyncio
    async def test_update_replaces_document_and_keeps_it_live(self, store):
        (role,) = await _insert_many(store, 1)
        role.claims = [("perm", "read")]

        updated = await store.update(role)

        assert updated.claims == [("perm", "read")]
        assert updated.is_deleted is False
        assert updated.created_date_utc == role.created_date_utc
        assert (await store.find_by_id(role.id)).claims == [("perm", "read")]

    @pytest.mark.asyncio
    async def test_update_of_unknown_record_returns_none(self, store):
        assert await store.update(Role(id=new_object_id(), name="ghost")) is None
        assert await store.update(Role(name="no id")) is None

    @pytest.mark.asyncio
    async def test_stale_live_copy_cannot_undo_a_delete(self, store):
        (role,) = await _insert_many(store, 1)
        stale = await store.find_by_id(role.id)
        await store.soft_delete(role)
        stale.claims = [("perm", "write")]

        assert await store.update(stale) is None

        assert await store.find_by_id(role.id) is None
        tombstone = await store.find_by_id_including_deleted(role.id)
        assert tombstone.is_deleted is True
        assert tombstone.claims == []

    @pytest.mark.asyncio
    async def test_update_of_tombstone_keeps_it_deleted(self, store):
        (role,) = await _insert_many(store, 1)
        tombstone = await store.soft_delete(role)
        tombstone.claims = [("perm", "audit")]

        updated = await store.update(tombstone)

        assert updated.is_deleted is True
        assert updated.claims == [("perm", "audit")]
        assert await store.find_by_id(role.id) is None

    @pytest.mark.asyncio
    async def test_stale_tombstone_cannot_delete_restored_record(self, store):
        (role,) = await _insert_many(store, 1)
        tombstone = await store.soft_delete(role)
        await store.restore(role.id)

        assert await store.update(tombstone) is None
        assert (await store.find_by_id(role.id)).is_deleted is False


class TestPaging:
    @pytest.mark.asyncio
    async def test_second_and_last_page_of_twenty_five(self, store):
        await _insert_many(store, 25)

        second = await store.page(2, 10)
        third = await store.page(3, 10)

        assert [role.name for role in second] == [f"role-{i:02d}" for i in range(11, 21)]
        assert [role.name for role in third] == [f"role-{i:02d}" for i in range(21, 26)]
        assert second.total_count == 25
        assert second.total_pages == 3
        assert second.has_previous and second.has_next
        assert not third.has_next

    @pytest.mark.asyncio
    async def test_non_positive_inputs_return_empty_page(self, store):
        await _insert_many(store, 3)

        for page_number, page_size in [(0, 10), (-1, 10), (1, 0), (1, -5)]:
            page = await store.page(page_number, page_size)
            assert len(page) == 0
            assert page.total_count == 3

    @pytest.mark.asyncio
    async def test_total_count_uses_the_same_filter_as_items(self, store):
        roles = await _insert_many(store, 5)
        await store.soft_delete(roles[0])
        await store.soft_delete(roles[1])

        live = await store.page(1, 10)
        everything = await store.page(1, 10, include_deleted=True)

        assert live.total_count == len(live) == 3
        assert everything.total_count == len(everything) == 5
        assert await store.count(include_deleted=True) == 5

    @pytest.mark.asyncio
    async def test_page_with_query(self, store):
        await _insert_many(store, 12)

        page = await store.page(1, 5, {"name": {"$gte": "role-10"}})

        assert [role.name for role in page] == ["role-10", "role-11", "role-12"]
        assert page.total_count == 3
