"""
partsbooking price scraper – run controller and CLI.
Loads (part, brand) rows, seeds the checkpointed queue, drives N worker pages on one
shared Chromium, ranks results through the aggregator, reports progress.
"""
import argparse
import asyncio
import logging
import signal
import sqlite3
import sys
import time
from pathlib import Path

from playwright.async_api import Error as PlaywrightError, async_playwright
from tqdm import tqdm

from pbscraper.aggregator import Aggregator
from pbscraper.browser import close_quietly, create_request_filter, launch_browser, new_worker_page
from pbscraper.config import (
    CHECKPOINT_PATH,
    DB_PATH,
    INPUT_FILE,
    MAX_PARTS,
    MAX_WORKERS,
    OUR_SITE_CODE,
)
from pbscraper.exceptions import InfrastructureError
from pbscraper.inputs import load_input_tasks
from pbscraper.models import PriceStore
from pbscraper.task_queue import QueueManager
from pbscraper.worker import Worker

logger = logging.getLogger("pbscraper")

_shutdown = False
_is_scraping = False


def request_shutdown(*_):
    """Stop workers from pulling new tasks; in-flight tasks finish, then drain/flush/close."""
    global _shutdown
    _shutdown = True
    logger.info("Shutdown requested; finishing in-flight tasks and saving checkpoint.")


def _fmt_duration(seconds: float) -> str:
    seconds = int(max(seconds, 0))
    h, rem = divmod(seconds, 3600)
    m, s = divmod(rem, 60)
    return f"{h}:{m:02d}:{s:02d}" if h else f"{m:02d}:{s:02d}"


class RunProgress:
    """
    Finished/total counters with elapsed time and an ETA from mean time per finished task.
    A retried task is not finished; it is counted once it ends ok, skipped or dead.
    """

    def __init__(self, total: int | None):
        self.total = total
        self.processed = 0
        self.retries = 0
        self.started = time.monotonic()

    @property
    def percent(self) -> float | None:
        if not self.total:
            return None
        return min(100.0, self.processed * 100.0 / self.total)

    def tick(self, outcome: str = "ok") -> tuple[float | None, str]:
        if outcome == "retry":
            self.retries += 1
        else:
            self.processed += 1
        elapsed = time.monotonic() - self.started
        retried = f", {self.retries} retries" if self.retries else ""
        if not self.total:
            return None, f"Processed {self.processed}{retried} (elapsed {_fmt_duration(elapsed)})"
        percent = self.percent
        remaining = max(self.total - self.processed, 0)
        eta = _fmt_duration(elapsed / self.processed * remaining) if self.processed else "--:--"
        return percent, (
            f"Processed {self.processed}/{self.total} ({percent:.1f}%){retried} "
            f"elapsed {_fmt_duration(elapsed)} ETA {eta}"
        )


def prepare_queue(
    input_path: Path | str,
    store: PriceStore,
    checkpoint_path: Path | str | None = None,
    max_parts: int = MAX_PARTS,
    requeue_dead: bool = False,
) -> QueueManager:
    """
    Resume the checkpoint if present, then add input rows not already stored.
    The storage prefilter fails open: if the lookup breaks, every row is queued.
    """
    queue = QueueManager(checkpoint_path)
    queue.load()
    if requeue_dead:
        moved = queue.requeue_dead()
        if moved:
            logger.info("Moved %d dead-lettered tasks back to pending", moved)

    tasks = load_input_tasks(input_path)
    try:
        fresh = [t for t in tasks if not store.exists(t.part_number, t.brand_name)]
    except sqlite3.Error as e:
        logger.warning("Existing-row prefilter disabled: %s", e)
        fresh = tasks
    logger.info("Existing rows skipped: %d / %d", len(tasks) - len(fresh), len(tasks))
    if max_parts and max_parts > 0:
        fresh = fresh[:max_parts]
    added = queue.seed(fresh)
    logger.info("Queue seeded with %d new tasks; %s", added, queue.stats())
    queue.persist()
    return queue


async def run_with_progress(
    progress_callback=None,
    on_data_changed=None,
    input_path: Path | str | None = None,
    workers: int = MAX_WORKERS,
    db_path: Path | str | None = None,
    checkpoint_path: Path | str | None = None,
    requeue_dead: bool = False,
    headless: bool | None = None,
) -> dict:
    """
    One full scrape run. Returns a result dict; run-level failures come back as
    {"ok": False, "error": ...} instead of raising. A second concurrent call is refused.
    """
    global _is_scraping, _shutdown
    if _is_scraping:
        return {"ok": False, "error": "Scraping is already in progress."}
    _is_scraping = True
    _shutdown = False
    progress_callback = progress_callback or (lambda percent, message: None)

    store = PriceStore(db_path or DB_PATH)
    result = {"ok": True, "processed": 0, "succeeded": 0, "skipped": 0, "retry": 0, "dead": 0, "written": 0}
    try:
        store.init()
        queue = prepare_queue(
            input_path or INPUT_FILE,
            store,
            checkpoint_path or CHECKPOINT_PATH,
            requeue_dead=requeue_dead,
        )
        if len(queue) == 0:
            logger.info("Nothing to scrape.")
            progress_callback(100.0, "Nothing to scrape")
            return result
        await _run_browser(queue, store, workers, headless, progress_callback, on_data_changed, result)
        return result
    except (InfrastructureError, FileNotFoundError) as e:
        logger.error("FATAL in run_with_progress: %s", e)
        result.update(ok=False, error=str(e))
        return result
    except Exception as e:
        logger.exception("FATAL in run_with_progress")
        result.update(ok=False, error=f"{type(e).__name__}: {e}")
        return result
    finally:
        _is_scraping = False


async def _run_browser(queue: QueueManager, store: PriceStore, workers: int, headless, progress_callback, on_data_changed, result: dict) -> None:
    """Shared browser + one page per worker around run_pipeline; everything is closed on the way out."""
    on_route, add_page_fn, filter_stats = create_request_filter()
    contexts = []
    async with async_playwright() as p:
        browser = await launch_browser(p, headless)
        try:
            try:
                for _ in range(max(1, min(workers, len(queue)))):
                    contexts.append(await new_worker_page(browser, on_route))
            except PlaywrightError as e:
                raise InfrastructureError(f"Worker page setup failed: {e}") from e
            logger.info("Started %d worker pages", len(contexts))
            await run_pipeline(
                queue,
                store,
                [page for _ctx, page in contexts],
                progress_callback,
                result,
                worker_kwargs={"add_page_fn": add_page_fn},
            )
        finally:
            for ctx, page in contexts:
                await close_quietly(page, ctx)
            await close_quietly(browser)
            logger.info("Browser closed. Request filter: %s", filter_stats)
            if on_data_changed:
                on_data_changed()


async def run_pipeline(
    queue: QueueManager,
    store: PriceStore,
    pages: list,
    progress_callback,
    result: dict,
    worker_cls=Worker,
    worker_kwargs: dict | None = None,
) -> dict:
    """
    Run one worker per page against the shared queue with the aggregator alongside.
    On the way out the aggregator drains and flushes and the checkpoint is written.
    An escaping worker error stops the other workers from pulling and is re-raised.
    """
    progress = RunProgress(len(queue))

    def on_flush(count: int):
        progress_callback(progress.percent, f"Saved {count} rows ({aggregator.written} this run)")

    aggregator = Aggregator(store, our_code=OUR_SITE_CODE, on_flush=on_flush)

    def on_task_done(outcome: str):
        result["processed"] += 1
        result["succeeded" if outcome == "ok" else outcome] += 1
        progress_callback(*progress.tick(outcome))

    aggregator.start()
    loops = [
        asyncio.create_task(
            worker_cls(i + 1, page, queue, aggregator, store, **(worker_kwargs or {})).run(
                should_stop=lambda: _shutdown, on_task_done=on_task_done,
            ),
            name=f"worker-{i + 1}",
        )
        for i, page in enumerate(pages)
    ]
    try:
        await asyncio.gather(*loops)
    except Exception:
        request_shutdown()
        await asyncio.gather(*loops, return_exceptions=True)
        raise
    finally:
        await aggregator.stop()
        result["written"] = aggregator.written
        queue.persist()
        result["queue"] = queue.stats()
    return result


# --------------- CLI ---------------
def _cmd_run(args) -> int:
    pbar = None
    if not args.no_progress:
        pbar = tqdm(total=100, desc="Parts", unit="%", ncols=100, bar_format="{l_bar}{bar}| {postfix}")

    def on_progress(percent, message):
        if pbar is None:
            logger.info("Progress: %s", message)
            return
        if percent is not None:
            pbar.n = round(percent, 1)
        pbar.set_postfix_str(message)
        pbar.refresh()

    signal.signal(signal.SIGTERM, request_shutdown)
    signal.signal(signal.SIGINT, request_shutdown)
    try:
        result = asyncio.run(run_with_progress(
            progress_callback=on_progress,
            input_path=args.input,
            workers=args.workers,
            requeue_dead=args.requeue_dead,
            headless=False if args.show_browser else None,
        ))
    finally:
        if pbar is not None:
            pbar.close()
    if not result.get("ok"):
        logger.error("Run failed: %s", result.get("error"))
        return 1
    logger.info(
        "Done. processed=%d succeeded=%d skipped=%d retry=%d dead=%d written=%d",
        result["processed"], result["succeeded"], result["skipped"], result["retry"], result["dead"], result["written"],
    )
    return 0


def _cmd_status(args) -> int:
    from pbscraper.checkpoint_viewer import show_status

    show_status(show_dead=args.dead)
    return 0


def _cmd_wipe(args) -> int:
    if not args.yes:
        logger.error("Refusing to wipe %s without --yes", DB_PATH)
        return 1
    store = PriceStore()
    store.init()
    logger.info("Deleted %d rows from prices", store.wipe())
    return 0


def main(argv=None) -> int:
    logging.basicConfig(
        level=logging.INFO,
        format="%(asctime)s [%(levelname)s] %(message)s",
        datefmt="%Y-%m-%d %H:%M:%S",
    )
    ap = argparse.ArgumentParser(description="partsbooking competitor price scraper")
    sub = ap.add_subparsers(dest="command")

    run = sub.add_parser("run", help="Scrape prices for every (part, brand) row in the input file")
    run.add_argument("input", nargs="?", default=None, help=f"Input .xlsx/.csv file. Default: {INPUT_FILE}")
    run.add_argument("--workers", type=int, default=MAX_WORKERS, help="Concurrent worker pages")
    run.add_argument("--requeue-dead", action="store_true", help="Give dead-lettered tasks a fresh retry budget")
    run.add_argument("--no-progress", action="store_true", help="Log progress lines instead of a progress bar")
    run.add_argument("--show-browser", action="store_true", help="Run Chromium with a visible window")
    run.set_defaults(func=_cmd_run)

    status = sub.add_parser("status", help="Show checkpoint queues and stored row count")
    status.add_argument("--dead", action="store_true", help="List dead-lettered tasks with their last error")
    status.set_defaults(func=_cmd_status)

    wipe = sub.add_parser("wipe", help="Delete all rows from the prices table")
    wipe.add_argument("--yes", action="store_true", help="Confirm deletion")
    wipe.set_defaults(func=_cmd_wipe)

    args = ap.parse_args(argv)
    if not getattr(args, "func", None):
        ap.print_help()
        return 2
    return args.func(args)


if __name__ == "__main__":
    sys.exit(main())
