"""Tests for the Redis stats cache and the balance-ledger mirror.

A small in-memory stand-in replaces the Redis client so these run without a
server; one variant raises RedisError on every call to exercise fallbacks.
"""

import fnmatch
import json

import pytest
import pytest_asyncio
import redis.asyncio as redis

from coldroom.config import settings
from coldroom.models.counting_record import CountingRecord
from coldroom.schemas.loading import SizeGroupLoad
from coldroom.services import balance_store, loading
from coldroom.services.balance_store import BalanceStore
from coldroom.services.loading import commit_loads
from coldroom.services.size_groups import derive_for_records
from coldroom.utils import cache
from coldroom.utils.cache import (
    BALANCE_EPOCH_KEY,
    cache_key,
    cached,
    invalidate_cache,
    mirror_fill,
    mirror_get_many,
    mirror_invalidate,
)

FIELD = "fuerte_4kg_class1_size24"
KEY = "R1|fuerte|4kg|class1|size24"


class FakeRedis:
    def __init__(self):
        self.data: dict[str, str] = {}

    async def get(self, key):
        return self.data.get(key)

    async def setex(self, key, ttl, value):
        self.data[key] = value
        return True

    async def mget(self, keys):
        return [self.data.get(k) for k in keys]

    async def delete(self, *keys):
        return sum(1 for key in keys if self.data.pop(key, None) is not None)

    async def incr(self, key):
        value = int(self.data.get(key, "0")) + 1
        self.data[key] = str(value)
        return value

    async def expire(self, key, ttl):
        return key in self.data

    async def eval(self, script, numkeys, *args):
        # Only the mirror's compare-and-set fill is ever evaluated
        epoch_key, generation_key, entry_key, epoch, generation, ttl, payload = args
        if self.data.get(epoch_key, "0") != str(epoch):
            return 0
        if self.data.get(generation_key, "0") != str(generation):
            return 0
        self.data[entry_key] = payload
        return 1

    async def scan_iter(self, match="*"):
        for key in list(self.data):
            if fnmatch.fnmatch(key, match):
                yield key

    def pipeline(self, transaction=True):
        return FakePipeline(self)


class FakePipeline:
    def __init__(self, client):
        self.client = client
        self.ops = []

    async def __aenter__(self):
        return self

    async def __aexit__(self, *exc):
        return False

    def _queue(self, name, *args):
        self.ops.append((name, args))
        return self

    def setex(self, *args):
        return self._queue("setex", *args)

    def delete(self, *args):
        return self._queue("delete", *args)

    def incr(self, *args):
        return self._queue("incr", *args)

    def expire(self, *args):
        return self._queue("expire", *args)

    def eval(self, *args):
        return self._queue("eval", *args)

    async def execute(self):
        results = []
        for name, args in self.ops:
            results.append(await getattr(self.client, name)(*args))
        self.ops = []
        return results


class BrokenRedis(FakeRedis):
    async def get(self, key):
        raise redis.ConnectionError("redis unavailable")

    async def setex(self, key, ttl, value):
        raise redis.ConnectionError("redis unavailable")

    async def mget(self, keys):
        raise redis.ConnectionError("redis unavailable")

    async def delete(self, *keys):
        raise redis.ConnectionError("redis unavailable")

    async def scan_iter(self, match="*"):
        raise redis.ConnectionError("redis unavailable")
        yield

    def pipeline(self, transaction=True):
        return BrokenPipeline(self)


class BrokenPipeline(FakePipeline):
    async def execute(self):
        raise redis.ConnectionError("redis unavailable")


@pytest_asyncio.fixture
async def fake_redis(monkeypatch):
    client = FakeRedis()

    async def _get_redis():
        return client

    monkeypatch.setattr(settings, "cache_enabled", True)
    monkeypatch.setattr(cache, "get_redis", _get_redis)
    return client


@pytest_asyncio.fixture
async def broken_redis(monkeypatch):
    async def _get_redis():
        return BrokenRedis()

    monkeypatch.setattr(settings, "cache_enabled", True)
    monkeypatch.setattr(cache, "get_redis", _get_redis)


@pytest.mark.cache
@pytest.mark.asyncio
class TestCacheUtility:
    """Test cache utility functions."""

    async def test_cache_key_generation(self):
        """Same arguments give the same key."""
        key1 = cache_key(cold_room_id="coldroom1")
        key2 = cache_key(cold_room_id="coldroom1")
        key3 = cache_key(cold_room_id="coldroom2")

        assert key1 == key2
        assert key1 != key3
        assert cache_key() == "default"

    async def test_cached_decorator(self, fake_redis):
        """Second call with the same kwargs is served from the cache."""
        call_count = 0

        @cached(ttl=10, prefix="test")
        async def expensive(db=None, room: str = "coldroom1"):
            nonlocal call_count
            call_count += 1
            return {"room": room}

        assert await expensive(db=object(), room="coldroom1") == {"room": "coldroom1"}
        assert await expensive(db=object(), room="coldroom1") == {"room": "coldroom1"}
        assert call_count == 1

        await expensive(db=object(), room="coldroom2")
        assert call_count == 2

    async def test_cache_invalidation(self, fake_redis):
        """Invalidation drops matching keys only."""
        fake_redis.data.update({"stats:a": "1", "stats:b": "2", "balance:x": "3"})
        await invalidate_cache("stats:*")
        assert list(fake_redis.data) == ["balance:x"]

    async def test_redis_error_falls_back(self, broken_redis):
        """A failing Redis never breaks the wrapped call."""

        @cached(ttl=10, prefix="test")
        async def compute(value: int = 1):
            return {"value": value}

        assert await compute(value=3) == {"value": 3}
        await invalidate_cache("stats:*")

    async def test_disabled_cache_bypasses_redis(self, monkeypatch):
        """With caching disabled Redis is never contacted."""

        async def _explode():
            raise AssertionError("Redis should not be used")

        monkeypatch.setattr(settings, "cache_enabled", False)
        monkeypatch.setattr(cache, "get_redis", _explode)
        read = await mirror_get_many(["k"])
        assert read.hits == {} and read.epoch is None
        await mirror_fill({"k": {"a": 1}}, read)
        await mirror_invalidate(["k"])




def load(quantity, room):
    return SizeGroupLoad(
        counting_record_id="R1",
        variety="fuerte",
        box_type="4kg",
        grade="class1",
        size="size24",
        quantity=quantity,
        target_cold_room=room,
    )


@pytest.mark.cache
@pytest.mark.asyncio
class TestBalanceMirror:
    """The ledger mirror is read-through and invalidated on commit."""

    async def test_fill_and_get(self, fake_redis):
        read = await mirror_get_many(["k1", "k2"])
        await mirror_fill({"k1": {"loaded_quantity": 5}}, read)
        assert (await mirror_get_many(["k1", "k2"])).hits == {"k1": {"loaded_quantity": 5}}

        await mirror_invalidate(["k1"])
        assert (await mirror_get_many(["k1"])).hits == {}

    async def test_invalidate_all(self, fake_redis):
        read = await mirror_get_many(["k1", "k2"])
        await mirror_fill({"k1": {}, "k2": {}}, read)
        fake_redis.data["stats:x"] = "1"

        await mirror_invalidate(None)

        assert "balance:k1" not in fake_redis.data
        assert "balance:k2" not in fake_redis.data
        assert fake_redis.data["stats:x"] == "1"
        assert fake_redis.data[BALANCE_EPOCH_KEY] == "1"

    async def test_fill_after_invalidation_is_dropped(self, fake_redis):
        """A fill based on a read taken before an invalidation writes nothing."""
        read = await mirror_get_many(["k1", "k2"])
        await mirror_invalidate(["k1"])
        await mirror_fill({"k1": {"loaded_quantity": 1}, "k2": {"loaded_quantity": 2}}, read)
        assert (await mirror_get_many(["k1", "k2"])).hits == {"k2": {"loaded_quantity": 2}}

        read = await mirror_get_many(["k3"])
        await mirror_invalidate(None)
        await mirror_fill({"k3": {"loaded_quantity": 3}}, read)
        assert (await mirror_get_many(["k3"])).hits == {}

    async def test_read_fills_and_commit_invalidates(
        self, fake_redis, db_session, make_record
    ):
        """Reads populate the mirror; a committed load removes the stale copy."""
        await make_record({FIELD: 500}, record_id="R1")
        store = BalanceStore(db_session)
        await store.record_load(
            unique_key=KEY, counting_record_id="R1", total_quantity=500,
            quantity=100, target_cold_room="coldroom1",
        )
        await store.commit()

        assert (await store.get(KEY)).loaded_quantity == 100
        assert f"balance:{KEY}" in fake_redis.data

        await store.record_load(
            unique_key=KEY, counting_record_id="R1", total_quantity=500,
            quantity=50, target_cold_room="coldroom1",
        )
        await store.commit()
        assert f"balance:{KEY}" not in fake_redis.data
        assert (await store.get(KEY)).loaded_quantity == 150

    async def test_commit_during_read_does_not_restore_old_balance(
        self, fake_redis, db_session, make_record, monkeypatch
    ):
        """A load committed between the database read and the fill wins."""
        await make_record({FIELD: 500}, record_id="R1")
        assert (await commit_loads(db_session, [load(200, "coldroom1")])).status == "success"

        real_fill = balance_store.mirror_fill
        raced = []

        async def fill_after_concurrent_commit(payloads, read):
            if not raced:
                raced.append(True)
                result = await commit_loads(db_session, [load(300, "coldroom2")])
                assert result.status == "success"
            await real_fill(payloads, read)

        monkeypatch.setattr(balance_store, "mirror_fill", fill_after_concurrent_commit)

        # This read started before the second load committed
        groups = await derive_for_records(db_session, ["R1"])
        assert groups[0].remaining_quantity == 300
        assert raced

        groups = await derive_for_records(db_session, ["R1"])
        assert groups[0].loaded_quantity == 500
        assert groups[0].remaining_quantity == 0
        assert not groups[0].loadable

        record = await db_session.get(CountingRecord, "R1")
        assert record.has_remaining_boxes is False

    async def test_flag_refresh_ignores_mirror(
        self, fake_redis, db_session, make_record
    ):
        """A stale mirror entry cannot keep an exhausted record loadable."""
        await make_record({FIELD: 500}, record_id="R1")
        result = await commit_loads(db_session, [load(500, "coldroom1")])
        assert result.exhausted_record_ids == ["R1"]

        # Plant a stale copy as if a racing fill had slipped through
        fake_redis.data[f"balance:{KEY}"] = json.dumps({
            "unique_key": KEY,
            "counting_record_id": "R1",
            "total_quantity": 500,
            "loaded_quantity": 0,
            "remaining_quantity": 500,
            "loading_history": [],
            "version": 1,
        })
        exhausted = await loading.refresh_remaining_flags(db_session, ["R1"])
        assert exhausted == ["R1"]

    async def test_mirror_outage_reads_database(
        self, broken_redis, db_session, make_record
    ):
        """With Redis down, balances still come from the database."""
        await make_record({FIELD: 500}, record_id="R1")
        store = BalanceStore(db_session)
        await store.record_load(
            unique_key=KEY, counting_record_id="R1", total_quantity=500,
            quantity=100, target_cold_room="coldroom1",
        )
        await store.commit()

        assert (await store.get(KEY)).loaded_quantity == 100
