"""Tests for IP block records."""

from datetime import UTC, datetime, timedelta

import pytest

from app.core.counter_store import CounterStoreError
from app.services.block_store import (
    BLOCKED_IP_INDEX,
    BlockRecord,
    BlockStore,
    blocked_ip_key,
    ip_attempts_key,
)

from tests.conftest import FailingCounterStore

DAY = 24 * 60 * 60


class TestBlockExpiry:
    @pytest.mark.asyncio
    async def test_permanent_block_outlives_default_duration(self, block_store, clock):
        record = await block_store.block("10.0.0.1", "manual", permanent=True)

        clock.advance(DAY * 30)

        assert record.permanent
        assert record.expires_at is None
        assert await block_store.is_blocked("10.0.0.1")

    @pytest.mark.asyncio
    async def test_temporary_block_gone_after_duration(self, block_store, clock):
        record = await block_store.block("10.0.0.1", "manual", permanent=False)
        assert record.expires_at == record.blocked_at + timedelta(seconds=DAY)

        clock.advance(DAY - 1)
        assert await block_store.is_blocked("10.0.0.1")

        clock.advance(1)
        assert not await block_store.is_blocked("10.0.0.1")
        assert await block_store.get("10.0.0.1") is None

    @pytest.mark.asyncio
    async def test_zero_duration_makes_every_block_permanent(self, store, clock):
        blocks = BlockStore(store, 0, clock=clock)

        record = await blocks.block("10.0.0.1", "manual", permanent=False)

        assert record.permanent


class TestBlockRecords:
    @pytest.mark.asyncio
    async def test_snapshot_of_attempt_count(self, block_store, store, clock):
        for i in range(3):
            await store.append(ip_attempts_key("10.0.0.1"), f"m{i}", clock(), 300)

        record = await block_store.block("10.0.0.1", "manual")

        assert record.attempt_count == 3

    @pytest.mark.asyncio
    async def test_new_block_overwrites(self, block_store):
        await block_store.block("10.0.0.1", "first")
        await block_store.block("10.0.0.1", "second", permanent=True)

        record = await block_store.get("10.0.0.1")

        assert record.reason == "second"
        assert record.permanent

    @pytest.mark.asyncio
    async def test_unblock_missing_ip_is_noop(self, block_store):
        await block_store.unblock("10.9.9.9")

        assert not await block_store.is_blocked("10.9.9.9")

    @pytest.mark.asyncio
    async def test_unreadable_record_still_blocks(self, block_store, store):
        await store.put(blocked_ip_key("10.0.0.1"), "not json")

        record = await block_store.get("10.0.0.1")

        assert record is not None
        assert record.ip == "10.0.0.1"

    def test_json_round_trip(self, clock):
        record = BlockRecord(
            ip="10.0.0.1",
            reason="r",
            blocked_at=datetime.fromtimestamp(clock(), tz=UTC),
            attempt_count=2,
        )

        assert BlockRecord.from_json(record.to_json()) == record


class TestListBlocked:
    @pytest.mark.asyncio
    async def test_lists_newest_first(self, block_store, clock):
        await block_store.block("10.0.0.1", "a")
        clock.advance(60)
        await block_store.block("10.0.0.2", "b", permanent=True)

        records = await block_store.list_blocked()

        assert [r.ip for r in records] == ["10.0.0.2", "10.0.0.1"]

    @pytest.mark.asyncio
    async def test_unblocked_ip_leaves_index(self, block_store, store):
        await block_store.block("10.0.0.1", "a")
        await block_store.unblock("10.0.0.1")

        assert await block_store.list_blocked() == []
        assert await store.members(BLOCKED_IP_INDEX) == set()

    @pytest.mark.asyncio
    async def test_expired_records_pruned_from_index(self, block_store, store, clock):
        await block_store.block("10.0.0.1", "temporary")
        await block_store.block("10.0.0.2", "forever", permanent=True)

        clock.advance(DAY + 1)
        records = await block_store.list_blocked()

        assert [r.ip for r in records] == ["10.0.0.2"]
        assert await store.members(BLOCKED_IP_INDEX) == {"10.0.0.2"}


class TestStats:
    @pytest.mark.asyncio
    async def test_counts(self, block_store, clock):
        await block_store.block("10.0.0.1", "a")
        await block_store.block("10.0.0.2", "b", permanent=True)
        clock.advance(DAY + 60)
        await block_store.block("10.0.0.3", "c", permanent=True)

        stats = await block_store.stats()

        # 10.0.0.1 expired; 10.0.0.2 is older than 24h
        assert stats["total_blocked_ips"] == 2
        assert stats["active_blocks"] == 2
        assert stats["permanent_blocks"] == 2
        assert stats["temporary_blocks"] == 0
        assert stats["recent_blocks_24h"] == 1


class TestStoreUnavailable:
    @pytest.mark.asyncio
    async def test_block_write_failure_propagates(self, clock):
        blocks = BlockStore(FailingCounterStore(), DAY, clock=clock)

        with pytest.raises(CounterStoreError):
            await blocks.block("10.0.0.1", "manual")
