"""
Worker loop: one page, tasks pulled from the shared QueueManager until it runs dry.
NAVIGATE -> AWAIT_RESPONSE -> (RETRY_AWAIT) -> EXTRACT -> ENQUEUE_RESULT
"""
import asyncio
import logging
import random
import re
import sqlite3
from urllib.parse import quote

import httpx
from playwright.async_api import Page, TimeoutError as PlaywrightTimeoutError

from pbscraper.aggregator import Aggregator
from pbscraper.browser import navigate_with_retries
from pbscraper.capture import PriceCapture, extract_quotes, save_product_image
from pbscraper.config import API_WAIT_MS, IMAGES_DIR, PRODUCT_URL_TEMPLATE, REQUEST_THROTTLE_MS, get_proxy_url
from pbscraper.exceptions import InfrastructureError, RetryableError, UnsupportedBrandError
from pbscraper.inputs import resolve_brand_code
from pbscraper.models import PriceStore
from pbscraper.task_queue import QueueManager, Task

logger = logging.getLogger("pbscraper.worker")

RETRYABLE_PATTERNS = re.compile(
    r"timeout|timed out|econnreset|connection reset|socket hang up|net::err_|"
    r"\b429\b|\b5\d\d\b|bad nav status|no price_items|no data",
    re.IGNORECASE,
)

RETRYABLE, TERMINAL, FATAL = "retryable", "terminal", "fatal"


def classify_error(exc: BaseException) -> str:
    """retryable: transient network/timeout/5xx/429/no data; fatal: infrastructure; else terminal."""
    if isinstance(exc, InfrastructureError):
        return FATAL
    if isinstance(exc, UnsupportedBrandError):
        return TERMINAL
    if isinstance(exc, (RetryableError, PlaywrightTimeoutError, asyncio.TimeoutError, OSError, httpx.TransportError)):
        return RETRYABLE
    if RETRYABLE_PATTERNS.search(str(exc)):
        return RETRYABLE
    return TERMINAL


def build_product_url(brand_name: str, part_number: str) -> str:
    brand_code = resolve_brand_code(brand_name)
    if not brand_code:
        raise UnsupportedBrandError(f"Unsupported brand {brand_name!r}")
    return PRODUCT_URL_TEMPLATE.format(brand_code=brand_code, part=quote(str(part_number).strip(), safe=""))


async def throttle(window_ms: tuple[int, int] = REQUEST_THROTTLE_MS) -> None:
    low, high = window_ms
    if high <= 0:
        return
    await asyncio.sleep(random.randint(low, high) / 1000)


class Worker:
    def __init__(
        self,
        worker_id: int,
        page: Page,
        queue: QueueManager,
        aggregator: Aggregator,
        store: PriceStore,
        throttle_ms: tuple[int, int] = REQUEST_THROTTLE_MS,
        api_wait_ms: int = API_WAIT_MS,
        images_dir=IMAGES_DIR,
        download_images: bool = True,
        add_page_fn=None,
    ):
        self.worker_id = worker_id
        self.page = page
        self.queue = queue
        self.aggregator = aggregator
        self.store = store
        self.throttle_ms = throttle_ms
        self.api_wait_ms = api_wait_ms
        self.images_dir = images_dir
        self.download_images = download_images
        self.add_page_fn = add_page_fn or (lambda: None)
        self.counts = {"ok": 0, "skipped": 0, "retry": 0, "dead": 0}

    @property
    def tag(self) -> str:
        return f"[worker {self.worker_id}]"

    def _already_stored(self, task: Task) -> bool:
        try:
            return self.store.exists(task.part_number, task.brand_name)
        except sqlite3.Error as e:
            logger.warning("%s exists check failed for %s %s: %s", self.tag, task.brand_name, task.part_number, e)
            return False

    async def fetch_price_items(self, task: Task, url: str) -> list:
        """Navigate to the product page and wait for the price_search payload it triggers."""
        label = f"{self.tag} {task.brand_name} {task.part_number}"
        async with PriceCapture(self.page, label=label) as capture:
            await navigate_with_retries(self.page, url)
            self.add_page_fn()
            items = await capture.wait(self.api_wait_ms)
        logger.debug("%s bandwidth: %d bytes", label, capture.bytes_in)
        return items

    async def process_task(self, task: Task) -> str:
        """
        Run one task to a terminal decision: "ok", "skipped", "retry" or "dead".
        Only InfrastructureError escapes; the task is returned to retry first.
        """
        if self._already_stored(task):
            logger.info("%s SKIP existing %s %s", self.tag, task.brand_name, task.part_number)
            self.queue.complete(task)
            return "skipped"
        try:
            url = build_product_url(task.brand_name, task.part_number)
            logger.info("%s Navigating to: %s", self.tag, url)
            items = await self.fetch_price_items(task, url)
            quotes = extract_quotes(items)
            logger.info("%s %s %s: %d quotes picked from %d items", self.tag, task.brand_name, task.part_number, len(quotes), len(items))
            await self.aggregator.put(quotes, task.part_number, task.brand_name)
            if self.download_images:
                await save_product_image(items, task.brand_name, task.part_number, referer=url,
                                         images_dir=self.images_dir, proxy_url=get_proxy_url())
        except Exception as e:
            kind = classify_error(e)
            message = f"{type(e).__name__}: {e}"
            if kind == FATAL:
                self.queue.release(task)
                raise
            if kind == RETRYABLE:
                outcome = self.queue.requeue(task, message)
                logger.warning("%s %s %s failed (%s), attempt %d: %s", self.tag, task.brand_name, task.part_number, outcome, task.attempts, e)
                return outcome
            self.queue.dead_letter(task, message)
            return "dead"
        self.queue.complete(task)
        return "ok"

    async def run(self, should_stop=None, on_task_done=None) -> dict:
        """Pull tasks until the queue is empty or should_stop() says so; throttle between tasks."""
        should_stop = should_stop or (lambda: False)
        while not should_stop():
            task = self.queue.pop()
            if task is None:
                break
            outcome = await self.process_task(task)
            self.counts[outcome] += 1
            self.queue.persist()
            if on_task_done:
                on_task_done(outcome)
            await throttle(self.throttle_ms)
        logger.info("%s finished: %s", self.tag, self.counts)
        return self.counts
