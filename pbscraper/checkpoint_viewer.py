"""
Quick status of the partsbooking scraper: checkpoint queues, dead letters, stored row count.
Usage: pbscraper status [--dead]
"""
from pathlib import Path

from pbscraper.config import CHECKPOINT_PATH, DB_PATH
from pbscraper.models import PriceStore
from pbscraper.task_queue import QueueManager


def show_status(show_dead: bool = False, checkpoint_path: Path | str | None = None, db_path: Path | str | None = None) -> dict:
    queue = QueueManager(checkpoint_path or CHECKPOINT_PATH)
    if queue.load():
        stats = queue.stats()
        print(f"Checkpoint: {queue.checkpoint_path}")
        for k in ("pending", "retry", "dead"):
            print(f"  {k}: {stats[k]}")
        if show_dead:
            for task in queue.snapshot()["dead"]:
                print(f"  DEAD {task['brand_name']} {task['part_number']} (attempts {task['attempts']}): {task['last_error']}")
    else:
        stats = {}
        print(f"No checkpoint at {queue.checkpoint_path}")
    store = PriceStore(db_path or DB_PATH)
    store.init()
    count = store.count()
    print(f"Total rows in prices: {count}")
    return {**stats, "rows": count}


def main():
    show_status(show_dead=True)


if __name__ == "__main__":
    main()
