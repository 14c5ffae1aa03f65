"""
Single consumer between workers and storage: ranks captured quotes and upserts
them in batches so a slow write never holds up page navigation.
"""
import asyncio
import logging

from pbscraper.config import AGGREGATOR_QUEUE_SIZE, FLUSH_BATCH_SIZE, FLUSH_IDLE_SECONDS, OUR_SITE_CODE
from pbscraper.models import PriceStore
from pbscraper.ranking import rank_price

logger = logging.getLogger("pbscraper.aggregator")


class Aggregator:
    def __init__(
        self,
        store: PriceStore,
        our_code: str = OUR_SITE_CODE,
        batch_size: int = FLUSH_BATCH_SIZE,
        idle_seconds: float = FLUSH_IDLE_SECONDS,
        on_flush=None,
        max_queued: int = AGGREGATOR_QUEUE_SIZE,
    ):
        self.store = store
        self.our_code = our_code
        self.batch_size = batch_size
        self.idle_seconds = idle_seconds
        self.on_flush = on_flush
        self.queue: asyncio.Queue = asyncio.Queue(maxsize=max_queued)
        self.batch: list[dict] = []
        self.written = 0
        self.dropped = 0
        self._stopping = asyncio.Event()
        self._task: asyncio.Task | None = None

    async def put(self, quotes: list, part_number: str, brand_name: str) -> None:
        """Waits while the channel is full."""
        await self.queue.put({"quotes": quotes, "part_number": part_number, "brand_name": brand_name})

    def start(self) -> asyncio.Task:
        self._task = asyncio.create_task(self.run(), name="aggregator")
        return self._task

    async def stop(self) -> None:
        """Stop after draining: consume everything queued, flush once more, exit."""
        self._stopping.set()
        if self._task is not None:
            await self._task

    async def run(self) -> None:
        while True:
            try:
                item = await asyncio.wait_for(self.queue.get(), timeout=self.idle_seconds)
            except asyncio.TimeoutError:
                if self.batch:
                    await self.flush()
                if self._stopping.is_set() and self.queue.empty():
                    break
                continue
            self.batch.append(rank_price(item["quotes"], self.our_code, item["part_number"], item["brand_name"]))
            self.queue.task_done()
            if len(self.batch) >= self.batch_size:
                await self.flush()
            if self._stopping.is_set() and self.queue.empty():
                break
        await self.flush()
        logger.info("Aggregator stopped: %d rows written, %d dropped", self.written, self.dropped)

    async def flush(self) -> int:
        """Upsert the current batch in one transaction off the event loop. A failed batch is dropped."""
        if not self.batch:
            return 0
        rows, self.batch = self.batch, []
        try:
            count = await asyncio.to_thread(self.store.upsert_batch, rows)
        except Exception:
            self.dropped += len(rows)
            logger.exception("Batch write failed; dropping %d rows", len(rows))
            return 0
        self.written += count
        logger.info("Flushed %d rows to prices", count)
        if self.on_flush:
            self.on_flush(count)
        return count
