"""Freeze/thaw protocol engine.

Per snapshot name the coordinator moves between two states:

    IDLE (no correlation entry) -> FROZEN (entry present, freeze open) -> IDLE

Every protocol step runs while holding the exclusive database session, so the
correlation lookup, the database statements, and the correlation update for a
step are atomic with respect to every other step. Database failures never
escape: they are logged and recorded on the task as FAILED.
"""

from __future__ import annotations

import logging
import threading
import time
from collections.abc import Callable
from datetime import datetime

from .database import DatabaseSession, ExclusiveSession
from .errors import DatabaseFailure, InternalState
from .models import DEFAULT_TASK_TIMEOUT_S, CorrelationEntry, SnapshotTask, TaskStatus, utcnow
from .registry import CorrelationStore, TaskRegistry

logger = logging.getLogger(__name__)

DEFAULT_SETTLE_INTERVAL_S = 60.0

PREPARE_FAILED_MESSAGE = "Failed to execute command to prepare for database backup"
COMMIT_FAILED_MESSAGE = "Failed to execute command to close database backup"
SHUTDOWN_MESSAGE = "Agent is shutting down"


class SnapshotCoordinator:
    """Drives prepare (freeze), commit (thaw), and timeout reconciliation."""

    def __init__(
        self,
        *,
        session: ExclusiveSession,
        correlations: CorrelationStore,
        tasks: TaskRegistry,
        timeout_s: float = DEFAULT_TASK_TIMEOUT_S,
        settle_interval_s: float = DEFAULT_SETTLE_INTERVAL_S,
        clock: Callable[[], datetime] = utcnow,
        sleep: Callable[[float], None] = time.sleep,
    ) -> None:
        self.session = session
        self.correlations = correlations
        self.tasks = tasks
        self.timeout_s = timeout_s
        self.settle_interval_s = max(0.0, settle_interval_s)
        self._clock = clock
        self._sleep = sleep
        # Snapshot names with a prepare queued or running.
        self._in_flight: set[str] = set()
        self._in_flight_lock = threading.Lock()
        # Set by release_all; no freeze may open after shutdown has begun.
        self._closing = False

    def now(self) -> datetime:
        return self._clock()

    def claim(self, snapshot_name: str) -> bool:
        """Reserve ``snapshot_name`` for one prepare. False if already reserved."""
        with self._in_flight_lock:
            if snapshot_name in self._in_flight:
                return False
            self._in_flight.add(snapshot_name)
            return True

    def release(self, snapshot_name: str) -> None:
        with self._in_flight_lock:
            self._in_flight.discard(snapshot_name)

    def reject(self, task: SnapshotTask, reason: str) -> SnapshotTask:
        """Fail ``task`` without touching the database."""
        logger.warning(
            "snapshot_task event=rejected task_id=%s snapshot_name=%s reason=%s",
            task.id,
            task.snapshot_name,
            reason,
        )
        return self._finish(task, "FAILED", reason)

    def prepare_freeze(self, task: SnapshotTask) -> SnapshotTask:
        """Freeze the database for ``task.snapshot_name`` and record the window.

        Releases the in-flight claim on exit, whether or not one was taken.
        """
        name = task.snapshot_name
        logger.info("prepare_freeze event=start task_id=%s snapshot_name=%s", task.id, name)
        try:
            self.reconcile_timeouts()
            with self.session.exclusive() as db:
                if self._closing:
                    return self.reject(task, SHUTDOWN_MESSAGE)
                if self.correlations.get(name) is not None:
                    return self.reject(task, f"A freeze is already open for snapshot {name}")
                return self._run_prepare(db, task)
        except (DatabaseFailure, InternalState) as exc:
            logger.error(
                "prepare_freeze event=failed task_id=%s snapshot_name=%s error=%s",
                task.id,
                name,
                exc,
            )
            return self._finish(task, "FAILED", f"{PREPARE_FAILED_MESSAGE}: {exc}")
        finally:
            self.release(name)

    def _run_prepare(self, db: DatabaseSession, task: SnapshotTask) -> SnapshotTask:
        name = task.snapshot_name
        freeze_id: str | None = None
        try:
            freeze_id = db.execute_freeze()
            started_at = self._clock()
            logger.info(
                "prepare_freeze event=frozen task_id=%s snapshot_name=%s freeze_id=%s "
                "settle_s=%s",
                task.id,
                name,
                freeze_id,
                self.settle_interval_s,
            )
            if self.settle_interval_s:
                self._sleep(self.settle_interval_s)
            db.commit()
            entry = CorrelationEntry(freeze_id=freeze_id, started_at=started_at)
            self.correlations.put(name, entry)
        except DatabaseFailure as exc:
            logger.error(
                "prepare_freeze event=failed task_id=%s snapshot_name=%s freeze_id=%s error=%s",
                task.id,
                name,
                freeze_id,
                exc,
            )
            if freeze_id is not None:
                self._abort_freeze(db, freeze_id, name)
            return self._finish(task, "FAILED", f"{PREPARE_FAILED_MESSAGE}: {exc}")
        finally:
            self._reset(db, "prepare_freeze")

        logger.info(
            "prepare_freeze event=completed task_id=%s snapshot_name=%s freeze_id=%s",
            task.id,
            name,
            freeze_id,
        )
        return self._finish(task, "SUCCESS")

    def commit_freeze(self, task: SnapshotTask, success: bool = True) -> SnapshotTask:
        """Thaw the freeze recorded for ``task.snapshot_name``.

        With no recorded freeze this is a no-op and the task succeeds: the window
        is already closed.
        """
        name = task.snapshot_name
        try:
            with self.session.exclusive() as db:
                entry = self.correlations.get(name)
                if entry is None:
                    logger.info(
                        "commit_freeze event=noop task_id=%s snapshot_name=%s "
                        "reason=no_open_freeze",
                        task.id,
                        name,
                    )
                    return self._finish(task, "SUCCESS")

                logger.info(
                    "commit_freeze event=start task_id=%s snapshot_name=%s freeze_id=%s "
                    "success=%s",
                    task.id,
                    name,
                    entry.freeze_id,
                    success,
                )
                error = self._thaw(db, entry.freeze_id, success, name)
                # The window is forgotten even when the thaw failed; the agent
                # cannot act on it any further.
                self.correlations.remove(name)
        except InternalState as exc:
            logger.error(
                "commit_freeze event=failed task_id=%s snapshot_name=%s error=%s",
                task.id,
                name,
                exc,
            )
            return self._finish(task, "FAILED", f"{COMMIT_FAILED_MESSAGE}: {exc}")

        if error is not None:
            return self._finish(task, "FAILED", f"{COMMIT_FAILED_MESSAGE}: {error}")
        logger.info("commit_freeze event=completed task_id=%s snapshot_name=%s", task.id, name)
        return self._finish(task, "SUCCESS")

    def reconcile_timeouts(self, now: datetime | None = None) -> list[str]:
        """Force-close every freeze older than the timeout.

        Each stale window is thawed as unsuccessful, its correlation entry is
        dropped, and the tasks issued for it are removed from the registry.
        Returns the snapshot names that were closed.
        """
        now = now or self._clock()
        if not self.correlations.stale(now, self.timeout_s):
            return []

        closed: list[str] = []
        try:
            with self.session.exclusive() as db:
                # Re-read under the session lock; a commit may have won the race.
                for name, entry in self.correlations.stale(now, self.timeout_s):
                    logger.info(
                        "reconcile event=stale snapshot_name=%s freeze_id=%s age_s=%.0f",
                        name,
                        entry.freeze_id,
                        entry.age_s(now),
                    )
                    error = self._thaw(db, entry.freeze_id, False, name)
                    if error is not None:
                        logger.error(
                            "reconcile event=thaw_failed snapshot_name=%s freeze_id=%s error=%s",
                            name,
                            entry.freeze_id,
                            error,
                        )
                    self.correlations.remove(name)
                    removed = self.tasks.remove_matching(
                        lambda t, n=name, e=entry: t.snapshot_name == n
                        and t.created_at <= e.started_at
                    )
                    for removed_task in removed:
                        logger.info(
                            "reconcile event=removed_task snapshot_name=%s task_id=%s",
                            name,
                            removed_task.id,
                        )
                    closed.append(name)
        except InternalState as exc:
            logger.error("reconcile event=skipped error=%s", exc)
        return closed

    def release_all(self) -> list[str]:
        """Thaw every open freeze as unsuccessful and refuse further prepares.

        Runs on shutdown: correlation entries live only in memory, so a window
        left open here could not be closed by the next process.
        """
        released: list[str] = []
        try:
            with self.session.exclusive() as db:
                self._closing = True
                for name, entry in self.correlations.items():
                    logger.info(
                        "release_all event=thaw snapshot_name=%s freeze_id=%s",
                        name,
                        entry.freeze_id,
                    )
                    error = self._thaw(db, entry.freeze_id, False, name)
                    if error is not None:
                        logger.error(
                            "release_all event=thaw_failed snapshot_name=%s freeze_id=%s "
                            "error=%s",
                            name,
                            entry.freeze_id,
                            error,
                        )
                    self.correlations.remove(name)
                    released.append(name)
        except InternalState as exc:
            self._closing = True
            logger.info("release_all event=skipped error=%s", exc)
        return released

    def release_orphaned_freezes(self) -> list[str]:
        """Close prepared windows the database reports but no entry tracks.

        A previous agent process that died while frozen leaves such windows in
        the vendor catalog, where they block the next freeze.
        """
        with self.session.exclusive() as db:
            tracked = {entry.freeze_id for entry in self.correlations.list_all()}
            try:
                pending = db.pending_freeze_ids()
            except DatabaseFailure as exc:
                logger.error("release_orphans event=lookup_failed error=%s", exc)
                return []
            finally:
                self._reset(db, "release_orphans")

            orphans = [freeze_id for freeze_id in pending if freeze_id not in tracked]
            for freeze_id in orphans:
                logger.warning("release_orphans event=thaw freeze_id=%s", freeze_id)
                error = self._thaw(db, freeze_id, False, f"orphaned-{freeze_id}")
                if error is not None:
                    logger.error(
                        "release_orphans event=thaw_failed freeze_id=%s error=%s", freeze_id, error
                    )
        return orphans

    def _thaw(
        self, db: DatabaseSession, freeze_id: str, success: bool, label: str
    ) -> DatabaseFailure | None:
        """Run one thaw sequence; returns the failure instead of raising it."""
        try:
            db.execute_thaw(freeze_id, success, label)
            db.commit()
        except DatabaseFailure as exc:
            return exc
        finally:
            self._reset(db, "thaw")
        return None

    def _abort_freeze(self, db: DatabaseSession, freeze_id: str, label: str) -> None:
        # Best effort: a freeze the agent failed to record must not stay open.
        error = self._thaw(db, freeze_id, False, label)
        if error is not None:
            logger.error(
                "prepare_freeze event=abort_failed snapshot_name=%s freeze_id=%s error=%s",
                label,
                freeze_id,
                error,
            )

    @staticmethod
    def _reset(db: DatabaseSession, step: str) -> None:
        # The driver needs an explicit transaction boundary between cycles.
        try:
            db.rollback()
        except DatabaseFailure as exc:
            logger.error("%s event=rollback_failed error=%s", step, exc)

    def _finish(
        self, task: SnapshotTask, status: TaskStatus, message: str | None = None
    ) -> SnapshotTask:
        updated = self.tasks.complete(task.id, status, message)
        if updated is not None:
            return updated
        current = self.tasks.get(task.id)
        if current is not None:
            # Already terminal: the first transition stands.
            return current
        # Deleted or force-closed while running; report the outcome anyway.
        logger.info("snapshot_task event=untracked task_id=%s status=%s", task.id, status)
        return task.model_copy(
            update={
                "status": status,
                "message": message if status == "FAILED" else None,
                "updated_at": self._clock(),
            }
        )
