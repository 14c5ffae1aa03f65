"""Unit tests for the batching aggregator."""

import asyncio
import sqlite3
import threading

import pytest

from pbscraper.aggregator import Aggregator
from pbscraper.ranking import WE_LEAD


class RecordingStore:
    def __init__(self, fail_times=0):
        self.batches = []
        self.fail_times = fail_times

    def upsert_batch(self, rows):
        if self.fail_times:
            self.fail_times -= 1
            raise sqlite3.OperationalError("disk I/O error")
        self.batches.append([(r["brand_name"], r["part_number"]) for r in rows])
        return len(rows)


class StalledStore:
    """upsert_batch blocks until released."""

    def __init__(self):
        self.release = threading.Event()
        self.rows = 0

    def upsert_batch(self, rows):
        self.release.wait(timeout=5)
        self.rows += len(rows)
        return len(rows)


class TestAggregator:
    @pytest.mark.asyncio
    async def test_flushes_on_batch_size(self):
        store = RecordingStore()
        agg = Aggregator(store, our_code="1269", batch_size=2, idle_seconds=5)
        agg.start()
        for i in range(4):
            await agg.put([("1269", 10 + i)], f"P{i}", "CLAAS")
        await agg.stop()

        assert store.batches == [[("CLAAS", "P0"), ("CLAAS", "P1")], [("CLAAS", "P2"), ("CLAAS", "P3")]]
        assert agg.written == 4

    @pytest.mark.asyncio
    async def test_flushes_when_idle(self):
        store = RecordingStore()
        agg = Aggregator(store, our_code="1269", batch_size=100, idle_seconds=0.05)
        agg.start()
        await agg.put([("1269", 10)], "P1", "CLAAS")
        await asyncio.sleep(0.2)

        assert store.batches == [[("CLAAS", "P1")]]
        await agg.stop()

    @pytest.mark.asyncio
    async def test_stop_drains_everything_queued(self):
        store = RecordingStore()
        agg = Aggregator(store, our_code="1269", batch_size=3, idle_seconds=5)
        for i in range(7):
            await agg.put([], f"P{i}", "CLAAS")
        agg.start()
        await agg.stop()

        assert sum(len(b) for b in store.batches) == 7
        assert agg.queue.empty()

    @pytest.mark.asyncio
    async def test_write_failure_drops_batch_and_continues(self):
        store = RecordingStore(fail_times=1)
        flushed = []
        agg = Aggregator(store, our_code="1269", batch_size=1, idle_seconds=5, on_flush=flushed.append)
        agg.start()
        await agg.put([], "P1", "CLAAS")
        await agg.put([], "P2", "CLAAS")
        await agg.stop()

        assert store.batches == [[("CLAAS", "P2")]]
        assert agg.dropped == 1
        assert agg.written == 1
        assert flushed == [1]

    @pytest.mark.asyncio
    async def test_rows_are_ranked_and_idempotent_in_storage(self, store):
        agg = Aggregator(store, our_code="1269", batch_size=10, idle_seconds=5)
        agg.start()
        await agg.put([("1269", 50), ("7", 60)], "P1", "CLAAS")
        await agg.put([("1269", 50), ("7", 60)], "P1", "CLAAS")
        await agg.stop()

        rows = store.fetch_all()
        assert len(rows) == 1
        assert rows[0]["rank_pos"] == 1
        assert rows[0]["over_price"] == WE_LEAD
        assert rows[0]["under_code"] == "7"

    @pytest.mark.asyncio
    async def test_put_waits_while_writer_is_stalled(self):
        store = StalledStore()
        agg = Aggregator(store, our_code="1269", batch_size=1, idle_seconds=5, max_queued=2)
        agg.start()
        await agg.put([], "P1", "CLAAS")
        await asyncio.sleep(0.05)
        # P1 is being written; two more fill the channel
        await agg.put([], "P2", "CLAAS")
        await agg.put([], "P3", "CLAAS")
        assert agg.queue.full()

        with pytest.raises(asyncio.TimeoutError):
            await asyncio.wait_for(agg.put([], "P4", "CLAAS"), timeout=0.2)

        store.release.set()
        await agg.put([], "P4", "CLAAS")
        await agg.stop()
        assert store.rows == 4
