from typing import get_type_hints

import pytest

from spin_agent.services.errors import StoreUnavailableError
from spin_agent.services.state_store import SessionKeys, StateStore


class TestSessionKeys:
    def test_key_layout(self):
        keys = SessionKeys("abc")
        assert keys.lock == "sess:abc:lock"
        assert keys.pending_msgs == "sess:abc:pending_msgs"
        assert keys.batch_until in keys.all()
        assert len(set(keys.all())) == len(keys.all())


class TestSetIfAbsent:
    @pytest.mark.asyncio
    async def test_only_first_caller_wins(self, store):
        assert await store.set_if_absent("k", "a", ttl_ms=1000) is True
        assert await store.set_if_absent("k", "b", ttl_ms=1000) is False
        assert await store.get("k") == "a"

    @pytest.mark.asyncio
    async def test_expires_after_ttl(self, store, clock):
        await store.set_if_absent("k", "a", ttl_ms=1000)
        clock.advance(1.0)
        assert await store.get("k") is None
        assert await store.set_if_absent("k", "b", ttl_ms=1000) is True

    @pytest.mark.asyncio
    async def test_keys_are_prefixed(self, fake_redis):
        store = StateStore(fake_redis, key_prefix="tenant")
        await store.set("k", "v")
        assert "tenant:k" in fake_redis.data


class TestLists:
    @pytest.mark.asyncio
    async def test_drain_returns_everything_and_clears(self, store):
        await store.push("q", "1", "2")
        await store.push("q", "3")
        assert await store.drain("q") == ["1", "2", "3"]
        assert await store.length("q") == 0
        assert await store.drain("q") == []

    @pytest.mark.asyncio
    async def test_push_front_keeps_order(self, store):
        await store.push("q", "3")
        await store.push_front("q", "1", "2")
        assert await store.drain("q") == ["1", "2", "3"]


class TestSets:
    @pytest.mark.asyncio
    async def test_members_returns_builtin_set(self, store):
        assert await store.add_to_set("topics", "name", "business") == 2
        assert await store.add_to_set("topics", "name") == 0
        assert await store.members("topics") == {"name", "business"}

    def test_members_annotation_resolves_to_builtin_set(self):
        assert get_type_hints(StateStore.members)["return"] == set[str]


class TestDeleteIfEquals:
    @pytest.mark.asyncio
    async def test_only_matching_value_is_deleted(self, store):
        await store.set("k", "mine")
        assert await store.delete_if_equals("k", "theirs") is False
        assert await store.get("k") == "mine"
        assert await store.delete_if_equals("k", "mine") is True
        assert await store.get("k") is None


class TestUnavailable:
    @pytest.mark.asyncio
    async def test_errors_become_store_unavailable(self, store, fake_redis):
        fake_redis.fail = True
        with pytest.raises(StoreUnavailableError):
            await store.set_if_absent("k", "v", ttl_ms=10)
        with pytest.raises(StoreUnavailableError):
            await store.drain("q")

    @pytest.mark.asyncio
    async def test_ping_reports_false(self, store, fake_redis):
        assert await store.ping() is True
        fake_redis.fail = True
        assert await store.ping() is False
