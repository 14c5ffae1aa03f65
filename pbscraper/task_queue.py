"""
Task model and the shared tri-queue (pending / retry / dead) with a JSON checkpoint.
All access goes through QueueManager methods; the containers are never handed out.
"""
import json
import logging
import os
import threading
from dataclasses import dataclass
from pathlib import Path

from pbscraper.config import CHECKPOINT_PATH, MAX_ATTEMPTS

logger = logging.getLogger("pbscraper.queue")


@dataclass
class Task:
    brand_name: str
    part_number: str
    attempts: int = 0
    last_error: str | None = None

    @property
    def key(self) -> tuple[str, str]:
        return (self.brand_name, self.part_number)

    def to_dict(self) -> dict:
        return {
            "brand_name": self.brand_name,
            "part_number": self.part_number,
            "attempts": self.attempts,
            "last_error": self.last_error,
        }

    @classmethod
    def from_dict(cls, data: dict) -> "Task":
        return cls(
            brand_name=str(data.get("brand_name") or "").strip(),
            part_number=str(data.get("part_number") or "").strip(),
            attempts=int(data.get("attempts") or 0),
            last_error=data.get("last_error"),
        )


class QueueManager:
    def __init__(self, checkpoint_path: Path | str | None = None, max_attempts: int = MAX_ATTEMPTS):
        self.checkpoint_path = Path(checkpoint_path or CHECKPOINT_PATH)
        self.max_attempts = max_attempts
        self._pending: dict[tuple[str, str], Task] = {}
        self._retry: dict[tuple[str, str], Task] = {}
        self._dead: dict[tuple[str, str], Task] = {}
        self._in_flight: dict[tuple[str, str], Task] = {}
        self._lock = threading.Lock()

    def _tracked(self, key: tuple[str, str]) -> bool:
        return key in self._pending or key in self._retry or key in self._dead or key in self._in_flight

    def seed(self, tasks) -> int:
        """Append new tasks to pending; pairs already tracked anywhere are skipped."""
        added = 0
        with self._lock:
            for task in tasks:
                if not task.brand_name or not task.part_number or self._tracked(task.key):
                    continue
                self._pending[task.key] = task
                added += 1
        return added

    def pop(self) -> Task | None:
        """Next task, pending before retry. None once both are empty."""
        with self._lock:
            for source in (self._pending, self._retry):
                if source:
                    key = next(iter(source))
                    task = source.pop(key)
                    self._in_flight[key] = task
                    return task
        return None

    def complete(self, task: Task) -> None:
        with self._lock:
            self._in_flight.pop(task.key, None)

    def requeue(self, task: Task, reason: str | None = None) -> str:
        """
        Retryable failure: attempts + 1. While that stays under the cap the task goes to
        retry; the failure that reaches the cap dead-letters it. Returns "retry" or "dead".
        """
        task.attempts += 1
        if task.attempts >= self.max_attempts:
            self.dead_letter(task, reason or "retry budget exhausted")
            return "dead"
        with self._lock:
            self._in_flight.pop(task.key, None)
            task.last_error = reason
            self._pending.pop(task.key, None)
            self._retry[task.key] = task
        return "retry"

    def release(self, task: Task) -> None:
        """Return an in-flight task to retry without spending an attempt (run aborted under it)."""
        with self._lock:
            self._in_flight.pop(task.key, None)
            self._retry[task.key] = task

    def dead_letter(self, task: Task, reason: str) -> None:
        with self._lock:
            self._in_flight.pop(task.key, None)
            self._pending.pop(task.key, None)
            self._retry.pop(task.key, None)
            task.last_error = reason
            self._dead[task.key] = task
        logger.warning("Dead-lettered %s %s after %d attempts: %s", task.brand_name, task.part_number, task.attempts, reason)

    def requeue_dead(self) -> int:
        """Move every dead task back to pending with a fresh retry budget."""
        with self._lock:
            moved = list(self._dead.values())
            self._dead.clear()
            for task in moved:
                task.attempts = 0
                task.last_error = None
                self._pending[task.key] = task
        return len(moved)

    def __len__(self) -> int:
        with self._lock:
            return len(self._pending) + len(self._retry)

    def stats(self) -> dict:
        with self._lock:
            return {
                "pending": len(self._pending),
                "retry": len(self._retry),
                "dead": len(self._dead),
                "in_flight": len(self._in_flight),
            }

    def snapshot(self) -> dict:
        """Checkpoint document. In-flight tasks are written back into the pending queue."""
        with self._lock:
            return {
                "queue": [t.to_dict() for t in list(self._in_flight.values()) + list(self._pending.values())],
                "retry": [t.to_dict() for t in self._retry.values()],
                "dead": [t.to_dict() for t in self._dead.values()],
            }

    def persist(self) -> None:
        """Overwrite the checkpoint atomically (temp file, then rename)."""
        state = self.snapshot()
        self.checkpoint_path.parent.mkdir(parents=True, exist_ok=True)
        tmp_path = self.checkpoint_path.with_name(self.checkpoint_path.name + ".tmp")
        with open(tmp_path, "w", encoding="utf-8") as f:
            json.dump(state, f, ensure_ascii=False, indent=2)
        os.replace(tmp_path, self.checkpoint_path)

    def load(self) -> bool:
        """Restore queue state from the checkpoint if present. Returns True when something was loaded."""
        if not self.checkpoint_path.exists():
            return False
        with open(self.checkpoint_path, encoding="utf-8") as f:
            state = json.load(f)
        with self._lock:
            for name, target in (("dead", self._dead), ("retry", self._retry), ("queue", self._pending)):
                for entry in state.get(name) or []:
                    task = Task.from_dict(entry)
                    if task.brand_name and task.part_number and not self._tracked(task.key):
                        target[task.key] = task
        logger.info(
            "Resumed checkpoint %s: %d pending, %d retry, %d dead",
            self.checkpoint_path, len(self._pending), len(self._retry), len(self._dead),
        )
        return True
