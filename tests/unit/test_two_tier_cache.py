from __future__ import annotations

import pytest

from conftest import FakeRedis
from voxnote.app.infra.cache.two_tier import (
    STRATEGY_API_RESPONSE,
    STRATEGY_PAIRING,
    STRATEGY_PROFILE,
    STRATEGY_SESSION,
    TwoTierCache,
    decode_value,
    encode_value,
)


class TestCodec:
    def test_small_values_stay_plain(self) -> None:
        raw = encode_value({"state": "READY"})
        assert raw.startswith(b"j:")
        assert decode_value(raw) == {"state": "READY"}

    def test_large_values_are_compressed(self) -> None:
        value = {"artifact": "x" * 5000}
        raw = encode_value(value)
        assert raw.startswith(b"z:")
        assert len(raw) < 1000
        assert decode_value(raw) == value

    def test_foreign_json_is_read_as_is(self) -> None:
        assert decode_value('{"a": 1}') == {"a": 1}


class TestStrategies:
    def test_api_responses_expire_before_sessions(self) -> None:
        cache = TwoTierCache()
        api = cache.strategy(STRATEGY_API_RESPONSE)
        session = cache.strategy(STRATEGY_SESSION)

        assert api.remote_ttl < session.remote_ttl
        assert api.key_prefix != session.key_prefix


class TestLocalOnlyCache:
    @pytest.mark.asyncio
    async def test_set_then_get(self) -> None:
        cache = TwoTierCache()

        assert await cache.set(STRATEGY_SESSION, "user-1", {"state": "READY"}) is True
        assert await cache.get(STRATEGY_SESSION, "user-1") == {"state": "READY"}
        assert cache.has_remote is False

    @pytest.mark.asyncio
    async def test_strategies_do_not_share_keys(self) -> None:
        cache = TwoTierCache()
        await cache.set(STRATEGY_SESSION, "user-1", "session")

        assert await cache.get(STRATEGY_PAIRING, "user-1") is None

    @pytest.mark.asyncio
    async def test_get_or_load_calls_loader_once(self) -> None:
        cache = TwoTierCache()
        calls: list[int] = []

        async def loader():
            calls.append(1)
            return {"summary_level": "concise"}

        first = await cache.get_or_load(STRATEGY_PROFILE, "user-1", loader)
        second = await cache.get_or_load(STRATEGY_PROFILE, "user-1", loader)

        assert first == second == {"summary_level": "concise"}
        assert calls == [1]

    @pytest.mark.asyncio
    async def test_none_results_are_not_cached(self) -> None:
        cache = TwoTierCache()
        calls: list[int] = []

        async def loader():
            calls.append(1)
            return None

        await cache.get_or_load(STRATEGY_PROFILE, "user-1", loader)
        await cache.get_or_load(STRATEGY_PROFILE, "user-1", loader)

        assert calls == [1, 1]

    @pytest.mark.asyncio
    async def test_invalidate_prefix_drops_matching_keys(self) -> None:
        cache = TwoTierCache()
        await cache.set(STRATEGY_SESSION, "user-1", 1)
        await cache.set(STRATEGY_SESSION, "user-12", 2)
        await cache.set(STRATEGY_SESSION, "other", 3)

        removed = await cache.invalidate_prefix(STRATEGY_SESSION, "user-1")

        assert removed == 2
        assert await cache.get(STRATEGY_SESSION, "other") == 3
        assert await cache.get(STRATEGY_SESSION, "user-12") is None

    @pytest.mark.asyncio
    async def test_unknown_strategy_raises(self) -> None:
        with pytest.raises(ValueError):
            await TwoTierCache().get("nope", "key")


class TestRemoteTier:
    @pytest.mark.asyncio
    async def test_set_writes_both_tiers_with_strategy_ttl(self, fake_redis: FakeRedis) -> None:
        cache = TwoTierCache(redis=fake_redis)

        await cache.set(STRATEGY_PAIRING, "user-1", "data:image/png;base64,abc")

        assert decode_value(fake_redis.store["pairing:user-1"]) == "data:image/png;base64,abc"
        assert fake_redis.expiries["pairing:user-1"] == 300

    @pytest.mark.asyncio
    async def test_remote_hit_fills_local_tier(self, fake_redis: FakeRedis) -> None:
        fake_redis.store["session:user-1"] = encode_value({"state": "READY"})
        cache = TwoTierCache(redis=fake_redis)

        assert await cache.get(STRATEGY_SESSION, "user-1") == {"state": "READY"}

        fake_redis.store.clear()
        assert await cache.get(STRATEGY_SESSION, "user-1") == {"state": "READY"}

    @pytest.mark.asyncio
    async def test_other_process_writes_are_visible_after_local_clear(self, fake_redis: FakeRedis) -> None:
        writer = TwoTierCache(redis=fake_redis)
        reader = TwoTierCache(redis=fake_redis)
        await reader.set(STRATEGY_PAIRING, "user-1", "old")

        await writer.set(STRATEGY_PAIRING, "user-1", "new")
        reader.clear_local()

        assert await reader.get(STRATEGY_PAIRING, "user-1") == "new"

    @pytest.mark.asyncio
    async def test_redis_failure_degrades_to_local(self, fake_redis: FakeRedis) -> None:
        cache = TwoTierCache(redis=fake_redis)
        fake_redis.fail = True

        assert await cache.set(STRATEGY_SESSION, "user-1", "value") is False
        assert await cache.get(STRATEGY_SESSION, "user-1") == "value"
        assert await cache.get(STRATEGY_SESSION, "missing") is None
        assert await cache.delete(STRATEGY_SESSION, "user-1") is False

    @pytest.mark.asyncio
    async def test_undecodable_remote_value_is_a_miss(self, fake_redis: FakeRedis) -> None:
        fake_redis.store["session:user-1"] = b"z:not-zlib"
        cache = TwoTierCache(redis=fake_redis)

        assert await cache.get(STRATEGY_SESSION, "user-1") is None

    @pytest.mark.asyncio
    async def test_delete_removes_both_tiers(self, fake_redis: FakeRedis) -> None:
        cache = TwoTierCache(redis=fake_redis)
        await cache.set(STRATEGY_SESSION, "user-1", "value")

        await cache.delete(STRATEGY_SESSION, "user-1")

        assert "session:user-1" not in fake_redis.store
        assert await cache.get(STRATEGY_SESSION, "user-1") is None

    @pytest.mark.asyncio
    async def test_invalidate_prefix_scans_remote(self, fake_redis: FakeRedis) -> None:
        fake_redis.store["profile:user-1"] = encode_value({"a": 1})
        fake_redis.store["profile:user-2"] = encode_value({"a": 2})
        fake_redis.store["session:user-1"] = encode_value("keep")
        cache = TwoTierCache(redis=fake_redis)

        await cache.invalidate_prefix(STRATEGY_PROFILE)

        assert list(fake_redis.store) == ["session:user-1"]

    @pytest.mark.asyncio
    async def test_close_closes_client(self, fake_redis: FakeRedis) -> None:
        cache = TwoTierCache(redis=fake_redis)

        await cache.close()

        assert fake_redis.closed is True
