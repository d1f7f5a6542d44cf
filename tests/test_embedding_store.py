"""
Tests for the EmbeddingStore.
"""
import asyncio

import numpy as np
import pytest
from sqlalchemy import text

from facegate.errors import DimensionMismatch, NotFound, StorageError, ValidationError

from conftest import E1, E2, E3


class TestEmbeddingStore:
    async def test_insert_assigns_id_and_timestamp(self, store):
        identity = await store.insert("Alice", E1)
        assert identity.id >= 1
        assert identity.name == "Alice"
        assert identity.created_at is not None
        assert identity.embedding.tolist() == E1

    async def test_ids_are_monotonic(self, store):
        first = await store.insert("A", E1)
        second = await store.insert("B", E2)
        third = await store.insert("C", E3)
        assert first.id < second.id < third.id

    async def test_name_is_stripped(self, store):
        identity = await store.insert("  Bob  ", E2)
        assert identity.name == "Bob"

    @pytest.mark.parametrize("name", ["", "   ", None, "x" * 256])
    async def test_invalid_name_rejected(self, store, name):
        with pytest.raises(ValidationError):
            await store.insert(name, E1)
        assert await store.count() == 0

    async def test_wrong_dimension_rejected_at_insert(self, store):
        with pytest.raises(DimensionMismatch):
            await store.insert("Short", [1.0, 0.0, 0.0])
        with pytest.raises(DimensionMismatch):
            await store.insert("Long", [1.0] * 5)
        assert await store.count() == 0

    async def test_list_all_most_recent_first(self, store):
        await store.insert("A", E1)
        await store.insert("B", E2)
        await store.insert("C", E3)

        names = [i.name for i in await store.list_all()]
        assert names == ["C", "B", "A"]

    async def test_list_all_is_repeatable(self, store):
        await store.insert("A", E1)
        await store.insert("B", E2)

        first = [(i.id, i.name) for i in await store.list_all()]
        second = [(i.id, i.name) for i in await store.list_all()]
        assert first == second

    async def test_list_all_pagination(self, store):
        for i in range(5):
            await store.insert(f"P{i}", E1)

        page = await store.list_all(skip=1, limit=2)
        assert [i.name for i in page] == ["P3", "P2"]

    async def test_list_all_empty(self, store):
        assert await store.list_all() == []

    async def test_identity_embedding_is_read_only(self, store):
        identity = await store.insert("A", E1)
        with pytest.raises(ValueError):
            identity.embedding[0] = 5.0

    async def test_get_and_get_many(self, store):
        a = await store.insert("A", E1)
        b = await store.insert("B", E2)

        assert (await store.get(a.id)).name == "A"
        found = await store.get_many([a.id, b.id, 999])
        assert set(found) == {a.id, b.id}
        assert await store.get_many([]) == {}

    async def test_get_missing_raises_not_found(self, store):
        with pytest.raises(NotFound):
            await store.get(12345)

    async def test_remove(self, store):
        a = await store.insert("A", E1)
        await store.insert("B", E2)

        await store.remove(a.id)
        assert [i.name for i in await store.list_all()] == ["B"]
        with pytest.raises(NotFound):
            await store.remove(a.id)

    async def test_concurrent_inserts_get_unique_ids(self, store):
        identities = await asyncio.gather(*[
            store.insert(f"N{i}", np.random.randn(4)) for i in range(10)
        ])
        ids = [i.id for i in identities]
        assert len(set(ids)) == 10
        assert await store.count() == 10

    async def test_storage_failure_raises_storage_error(self, store, database):
        async with database.engine.begin() as conn:
            await conn.execute(text("DROP TABLE identities"))

        with pytest.raises(StorageError) as exc_info:
            await store.insert("A", E1)
        assert exc_info.value.retryable is True

        with pytest.raises(StorageError):
            await store.list_all()
