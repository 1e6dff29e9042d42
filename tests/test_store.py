"""Tests for the in-memory KeyValueStore."""

import pytest

from backtrack_reason.domain.errors import NotFoundError
from backtrack_reason.store.kv_store import InMemoryKeyValueStore, KeyValueStore


@pytest.fixture
def store() -> InMemoryKeyValueStore:
    return InMemoryKeyValueStore()


class TestInMemoryKeyValueStore:
    def test_satisfies_protocol(self, store: InMemoryKeyValueStore) -> None:
        assert isinstance(store, KeyValueStore)

    @pytest.mark.asyncio
    async def test_put_then_get(self, store: InMemoryKeyValueStore) -> None:
        await store.put("a", b"payload")
        assert await store.get("a") == b"payload"

    @pytest.mark.asyncio
    async def test_put_overwrites(self, store: InMemoryKeyValueStore) -> None:
        await store.put("a", b"one")
        await store.put("a", b"two")
        assert await store.get("a") == b"two"
        assert await store.count() == 1

    @pytest.mark.asyncio
    async def test_get_unknown_raises_not_found(self, store: InMemoryKeyValueStore) -> None:
        with pytest.raises(NotFoundError) as info:
            await store.get("missing")
        assert info.value.key == "missing"

    @pytest.mark.asyncio
    async def test_not_found_is_a_key_error(self, store: InMemoryKeyValueStore) -> None:
        with pytest.raises(KeyError):
            await store.get("missing")

    @pytest.mark.asyncio
    async def test_delete_removes_and_is_idempotent(self, store: InMemoryKeyValueStore) -> None:
        await store.put("a", b"x")
        await store.delete("a")
        await store.delete("a")
        assert await store.keys() == []

    @pytest.mark.asyncio
    async def test_keys_sorted(self, store: InMemoryKeyValueStore) -> None:
        await store.put("b", b"")
        await store.put("a", b"")
        assert await store.keys() == ["a", "b"]
