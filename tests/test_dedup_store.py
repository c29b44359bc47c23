"""
Tests for the deduplication store backends.

Covers:
  - InMemoryDeduplicationStore decisions and bookkeeping
  - RedisDeduplicationStore against a mocked redis client
  - The RedisDeduplicationStore Lua scripts on fakeredis
  - Store factory
"""
import time
from unittest.mock import AsyncMock, MagicMock

import pytest
from fakeredis import FakeAsyncRedis
from redis import exceptions as redis_errors

from config.settings import DedupConfig
from dedup import InMemoryDeduplicationStore, RedisDeduplicationStore, create_store
from models.errors import NoMasterError, StoreConnectionError
from models.schemas import DeliveryStatus, ProcessDecision


def later(seconds=60):
    return time.time() + seconds


# ──────────────────────────────────────────────────────────────
#  InMemoryDeduplicationStore
# ──────────────────────────────────────────────────────────────

class TestInMemoryDeduplicationStore:
    @pytest.mark.asyncio
    async def test_first_sight_proceeds_and_takes_mutex(self, store):
        decision = await store.should_process("q", "m1", later(), lease=10)
        assert decision == ProcessDecision.PROCEED
        record = await store.get_record("q", "m1")
        assert record.status == DeliveryStatus.IN_PROGRESS
        assert record.attempt_count == 1
        assert record.mutex is True

    @pytest.mark.asyncio
    async def test_mutex_blocks_concurrent_copy(self, store):
        await store.should_process("q", "m1", later(), lease=10)
        assert await store.should_process("q", "m1", later(), lease=10) == ProcessDecision.DUPLICATE_IN_PROGRESS

    @pytest.mark.asyncio
    async def test_released_mutex_allows_next_attempt(self, store):
        await store.should_process("q", "m1", later(), lease=10)
        await store.release_mutex("q", "m1")
        assert await store.should_process("q", "m1", later(), lease=10) == ProcessDecision.PROCEED
        assert (await store.get_record("q", "m1")).attempt_count == 2

    @pytest.mark.asyncio
    async def test_expired_lease_allows_next_attempt(self, store):
        await store.should_process("q", "m1", later(), lease=-1)
        assert await store.should_process("q", "m1", later(), lease=10) == ProcessDecision.PROCEED

    @pytest.mark.asyncio
    async def test_terminal_states(self, store):
        await store.should_process("q", "done", later(), lease=10)
        await store.mark_completed("q", "done")
        await store.should_process("q", "dead", later(), lease=10)
        await store.mark_failed("q", "dead")

        assert await store.should_process("q", "done", later(), lease=10) == ProcessDecision.ALREADY_COMPLETED
        assert await store.should_process("q", "dead", later(), lease=10) == ProcessDecision.ALREADY_FAILED

    @pytest.mark.asyncio
    async def test_delay(self, store):
        await store.should_process("q", "m1", later(), lease=10)
        await store.release_mutex("q", "m1")
        await store.delay("q", "m1", time.time() + 30)
        assert await store.should_process("q", "m1", later(), lease=10) == ProcessDecision.DELAYED

    @pytest.mark.asyncio
    async def test_counters(self, store):
        await store.should_process("q", "m1", later(), lease=10)
        assert await store.increment_exceptions("q", "m1") == 1
        assert await store.increment_exceptions("q", "m1") == 2
        assert await store.increment_ack_count("q", "m1") == 1

    @pytest.mark.asyncio
    async def test_counters_do_not_create_records(self, store):
        assert await store.increment_ack_count("q", "unknown") == 0
        assert await store.get_record("q", "unknown") is None

    @pytest.mark.asyncio
    async def test_records_are_per_queue(self, store):
        await store.should_process("invoices", "m1", later(), lease=10)
        assert await store.should_process("audit", "m1", later(), lease=10) == ProcessDecision.PROCEED

    @pytest.mark.asyncio
    async def test_expired_record_is_forgotten(self, store):
        await store.should_process("q", "old", time.time() - 1, lease=10)
        await store.should_process("q", "new", later(), lease=10)
        assert await store.garbage_collect() == 1
        assert await store.get_record("q", "old") is None
        assert await store.get_record("q", "new") is not None


# ──────────────────────────────────────────────────────────────
#  RedisDeduplicationStore
# ──────────────────────────────────────────────────────────────

class TestRedisDeduplicationStore:
    @pytest.fixture
    def redis_client(self):
        client = MagicMock()
        client.eval = AsyncMock(return_value="proceed")
        client.delete = AsyncMock(return_value=1)
        client.aclose = AsyncMock()
        return client

    @pytest.fixture
    def redis_store(self, redis_client):
        store = RedisDeduplicationStore(DedupConfig(backend="redis", key_prefix="msgid"), address="r1:6379")
        store._redis = redis_client
        return store

    @pytest.mark.asyncio
    async def test_should_process_runs_one_script(self, redis_store, redis_client):
        expires_at = int(later())
        decision = await redis_store.should_process("orders", "42", expires_at, lease=2.5)

        assert decision == ProcessDecision.PROCEED
        redis_client.eval.assert_awaited_once()
        args = redis_client.eval.await_args.args
        assert args[1] == 2
        assert args[2:4] == ("msgid:orders:42", "msgid:orders:42:mutex")
        assert args[5] == expires_at
        assert args[6] == 2500

    @pytest.mark.asyncio
    async def test_decisions_map_to_enum(self, redis_store, redis_client):
        redis_client.eval.return_value = "already_completed"
        assert await redis_store.should_process("q", "m", later(), lease=1) == ProcessDecision.ALREADY_COMPLETED

    @pytest.mark.asyncio
    async def test_mark_completed_drops_mutex(self, redis_store, redis_client):
        redis_client.eval.return_value = 1
        await redis_store.mark_completed("q", "m")
        args = redis_client.eval.await_args.args
        assert args[2:] == ("msgid:q:m", "msgid:q:m:mutex", "status", "completed", "1")

    @pytest.mark.asyncio
    async def test_increment(self, redis_store, redis_client):
        redis_client.eval.return_value = 3
        assert await redis_store.increment_exceptions("q", "m") == 3

    @pytest.mark.asyncio
    async def test_transient_errors_are_retried(self, redis_store, redis_client):
        redis_client.eval.side_effect = [redis_errors.ConnectionError("reset"), "proceed"]
        assert await redis_store.should_process("q", "m", later(), lease=1) == ProcessDecision.PROCEED
        assert redis_client.eval.await_count == 2

    @pytest.mark.asyncio
    async def test_persistent_errors_raise_store_connection_error(self, redis_store, redis_client):
        redis_client.eval.side_effect = redis_errors.ConnectionError("refused")
        with pytest.raises(StoreConnectionError):
            await redis_store.should_process("q", "m", later(), lease=1)
        assert redis_client.eval.await_count == 3

    @pytest.mark.asyncio
    async def test_read_only_replica_raises_store_connection_error(self, redis_store, redis_client):
        redis_client.eval.side_effect = redis_errors.ReadOnlyError("You can't write against a read only replica.")
        with pytest.raises(StoreConnectionError):
            await redis_store.should_process("q", "m", later(), lease=1)
        assert redis_client.eval.await_count == 1

    @pytest.mark.asyncio
    async def test_no_master_known(self):
        store = RedisDeduplicationStore(DedupConfig(backend="redis"), address=None)
        with pytest.raises(NoMasterError):
            await store.should_process("q", "m", later(), lease=1)

    @pytest.mark.asyncio
    async def test_reconnect_switches_master(self, redis_store, redis_client):
        await redis_store.reconnect("r2:6379")
        assert redis_store.address == "r2:6379"
        assert redis_store._redis is None
        redis_client.aclose.assert_awaited_once()

    @pytest.mark.asyncio
    async def test_get_record(self, redis_store, redis_client):
        pipe = MagicMock()
        pipe.execute = AsyncMock(return_value=[
            {"status": "failed", "attempts": "2", "exceptions": "2", "ack_count": "1",
             "created_at": "100.0", "expires_at": "200", "delay": "0"},
            0,
        ])
        redis_client.pipeline = MagicMock(return_value=pipe)

        record = await redis_store.get_record("q", "m")
        assert record.status == DeliveryStatus.FAILED
        assert record.attempt_count == 2
        assert record.handler_exception_count == 2
        assert record.mutex is False


class TestStoreFactory:
    def test_memory(self):
        assert isinstance(create_store(DedupConfig(backend="memory")), InMemoryDeduplicationStore)

    def test_redis_single_server_connects_directly(self):
        store = create_store(DedupConfig(backend="redis", redis_servers="r1:6379"))
        assert isinstance(store, RedisDeduplicationStore)
        assert store.address == "r1:6379"

    def test_redis_replicated_waits_for_master(self):
        store = create_store(DedupConfig(backend="redis", redis_servers="r1:6379,r2:6379"))
        assert store.address is None


# ──────────────────────────────────────────────────────────────
#  RedisDeduplicationStore scripts on an in-process redis
# ──────────────────────────────────────────────────────────────

class TestRedisScripts:
    @pytest.fixture
    def fake_redis(self):
        return FakeAsyncRedis(decode_responses=True)

    @pytest.fixture
    def redis_store(self, fake_redis):
        store = RedisDeduplicationStore(DedupConfig(backend="redis", key_prefix="msgid"), address="r1:6379")
        store._redis = fake_redis
        return store

    @pytest.mark.asyncio
    async def test_first_sight_proceeds(self, redis_store, fake_redis):
        expires_at = int(later(60))
        assert await redis_store.should_process("q", "m", expires_at, lease=10) == ProcessDecision.PROCEED

        record = await redis_store.get_record("q", "m")
        assert record.status == DeliveryStatus.IN_PROGRESS
        assert record.attempt_count == 1
        assert record.mutex is True
        assert 0 < await fake_redis.ttl("msgid:q:m") <= 60

    @pytest.mark.asyncio
    async def test_held_mutex_is_a_duplicate(self, redis_store):
        await redis_store.should_process("q", "m", later(), lease=10)
        assert await redis_store.should_process("q", "m", later(), lease=10) == ProcessDecision.DUPLICATE_IN_PROGRESS

    @pytest.mark.asyncio
    async def test_expired_lease_lets_next_attempt_proceed(self, redis_store, fake_redis):
        await redis_store.should_process("q", "m", later(), lease=10)
        await fake_redis.delete("msgid:q:m:mutex")

        assert await redis_store.should_process("q", "m", later(), lease=10) == ProcessDecision.PROCEED
        record = await redis_store.get_record("q", "m")
        assert record.attempt_count == 2

    @pytest.mark.asyncio
    async def test_completed_and_failed_are_terminal(self, redis_store):
        await redis_store.should_process("q", "done", later(), lease=10)
        await redis_store.mark_completed("q", "done")
        await redis_store.should_process("q", "lost", later(), lease=10)
        await redis_store.mark_failed("q", "lost")

        assert await redis_store.should_process("q", "done", later(), lease=10) == ProcessDecision.ALREADY_COMPLETED
        assert await redis_store.should_process("q", "lost", later(), lease=10) == ProcessDecision.ALREADY_FAILED
        assert (await redis_store.get_record("q", "done")).mutex is False

    @pytest.mark.asyncio
    async def test_delay_postpones_next_attempt(self, redis_store):
        await redis_store.should_process("q", "m", later(), lease=10)
        await redis_store.delay("q", "m", time.time() + 60)
        await redis_store.release_mutex("q", "m")

        assert await redis_store.should_process("q", "m", later(), lease=10) == ProcessDecision.DELAYED

    @pytest.mark.asyncio
    async def test_key_expires_with_message(self, redis_store, fake_redis):
        await redis_store.should_process("q", "m", int(later(5)), lease=600)
        assert 0 < await fake_redis.ttl("msgid:q:m") <= 5

    @pytest.mark.asyncio
    async def test_counters_do_not_recreate_missing_records(self, redis_store, fake_redis):
        assert await redis_store.increment_exceptions("q", "gone") == 0
        assert await redis_store.increment_ack_count("q", "gone") == 0
        await redis_store.mark_completed("q", "gone")

        assert await fake_redis.exists("msgid:q:gone") == 0
        assert await redis_store.get_record("q", "gone") is None

    @pytest.mark.asyncio
    async def test_counters_count(self, redis_store):
        await redis_store.should_process("q", "m", later(), lease=10)
        assert await redis_store.increment_exceptions("q", "m") == 1
        assert await redis_store.increment_exceptions("q", "m") == 2
        assert (await redis_store.get_record("q", "m")).handler_exception_count == 2
