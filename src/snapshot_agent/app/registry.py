"""In-memory, thread-safe registries for snapshot tasks and open freezes.

Terms:
- Lock striping: each key hashes to one of a fixed set of locks, so writers to
  unrelated keys rarely contend and readers never take a lock.
- Weakly consistent listing: ``list_all`` copies the current mapping; concurrent
  writes may or may not show up, but no entry is duplicated or torn.

Nothing here is persisted. A process restart starts with empty registries.
"""

from __future__ import annotations

import threading
from collections.abc import Callable, Hashable
from datetime import datetime
from typing import Generic, TypeVar

from .models import CorrelationEntry, SnapshotTask, TaskStatus, utcnow

K = TypeVar("K", bound=Hashable)
V = TypeVar("V")

_STRIPES = 16


class _KeyedStore(Generic[K, V]):
    """Concurrent key-value store with per-key serialized writes."""

    def __init__(self, stripes: int = _STRIPES) -> None:
        self._items: dict[K, V] = {}
        self._locks = [threading.Lock() for _ in range(max(1, stripes))]

    def _lock_for(self, key: K) -> threading.Lock:
        return self._locks[hash(key) % len(self._locks)]

    def put(self, key: K, value: V) -> None:
        with self._lock_for(key):
            self._items[key] = value

    def get(self, key: K) -> V | None:
        return self._items.get(key)

    def remove(self, key: K) -> V | None:
        """Remove ``key`` and return the value it held, or None when absent."""
        with self._lock_for(key):
            return self._items.pop(key, None)

    def list_all(self) -> list[V]:
        return list(self._items.copy().values())

    def items(self) -> list[tuple[K, V]]:
        return list(self._items.copy().items())

    def __contains__(self, key: object) -> bool:
        return key in self._items

    def __len__(self) -> int:
        return len(self._items)


class TaskRegistry(_KeyedStore[str, SnapshotTask]):
    """Snapshot tasks keyed by generated task id.

    Stored tasks are never mutated in place: updates replace the entry with a
    copy, so callers holding an earlier task object see a stable snapshot.
    """

    def __init__(self, stripes: int = _STRIPES, clock: Callable[[], datetime] = utcnow) -> None:
        super().__init__(stripes)
        self._clock = clock

    def add(self, task: SnapshotTask) -> SnapshotTask:
        self.put(task.id, task)
        return task

    def complete(
        self,
        task_id: str,
        status: TaskStatus,
        message: str | None = None,
    ) -> SnapshotTask | None:
        """Move an ACTIVE task to a terminal status.

        Returns the updated task, or None when the task no longer exists or has
        already left ACTIVE (the first transition wins).
        """
        if status == "ACTIVE":
            raise ValueError("complete() requires a terminal status")
        with self._lock_for(task_id):
            current = self._items.get(task_id)
            if current is None or current.is_terminal:
                return None
            updated = current.model_copy(
                update={
                    "status": status,
                    "message": message if status == "FAILED" else None,
                    "updated_at": self._clock(),
                }
            )
            self._items[task_id] = updated
            return updated

    def remove_matching(self, predicate: Callable[[SnapshotTask], bool]) -> list[SnapshotTask]:
        """Remove every task the predicate accepts; returns the removed tasks."""
        removed: list[SnapshotTask] = []
        for task_id, task in self.items():
            if not predicate(task):
                continue
            with self._lock_for(task_id):
                # Re-check under the lock: the entry may have been replaced.
                current = self._items.get(task_id)
                if current is not None and predicate(current):
                    del self._items[task_id]
                    removed.append(current)
        return removed


class CorrelationStore(_KeyedStore[str, CorrelationEntry]):
    """Open freeze windows keyed by snapshot name."""

    def stale(self, now: datetime, timeout_s: float) -> list[tuple[str, CorrelationEntry]]:
        """Entries whose age strictly exceeds ``timeout_s`` at ``now``."""
        return [(name, entry) for name, entry in self.items() if entry.age_s(now) > timeout_s]
