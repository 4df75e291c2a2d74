"""Authenticated request boundary for snapshot tasks.

Begin requests are accepted immediately and prepared on a worker thread; the
caller polls the task. End requests run the thaw inline and answer with the
final status.
"""

from __future__ import annotations

import logging
import threading
import uuid
from collections.abc import Callable
from concurrent.futures import Future, ThreadPoolExecutor
from concurrent.futures import wait as wait_for_futures
from datetime import datetime
from typing import Any

from pydantic import ValidationError

from .auth import CredentialGate
from .coordinator import SnapshotCoordinator
from .errors import BadRequest, NotFound
from .models import DEFAULT_TASK_TIMEOUT_S, SnapshotTask, SnapshotTaskRequest, utcnow
from .registry import TaskRegistry

logger = logging.getLogger(__name__)


class AgentFacade:
    def __init__(
        self,
        *,
        tasks: TaskRegistry,
        coordinator: SnapshotCoordinator,
        gate: CredentialGate,
        max_workers: int = 4,
        task_timeout_s: int = DEFAULT_TASK_TIMEOUT_S,
        clock: Callable[[], datetime] = utcnow,
    ) -> None:
        self.tasks = tasks
        self.coordinator = coordinator
        self.gate = gate
        self.task_timeout_s = task_timeout_s
        self._clock = clock
        self._executor = ThreadPoolExecutor(
            max_workers=max_workers, thread_name_prefix="snapshot-prepare"
        )
        self._pending: set[Future[SnapshotTask]] = set()
        self._pending_lock = threading.Lock()

    def begin_freeze(
        self, payload: SnapshotTaskRequest | dict[str, Any] | None, authorization: str | None
    ) -> SnapshotTask:
        logger.info("begin_freeze event=received")
        self.gate.authenticate(authorization)
        request = self._parse_request(payload)

        task = self._register(request)
        if not self.coordinator.claim(task.snapshot_name):
            # Reported on poll, like every other prepare failure.
            self.coordinator.reject(
                task, f"A prepare is already in progress for snapshot {task.snapshot_name}"
            )
            return task

        try:
            future = self._executor.submit(self._prepare, task)
        except RuntimeError:
            # Pool already shut down.
            self.coordinator.release(task.snapshot_name)
            raise
        with self._pending_lock:
            self._pending.add(future)
        future.add_done_callback(self._forget)
        logger.info(
            "begin_freeze event=queued task_id=%s snapshot_name=%s", task.id, task.snapshot_name
        )
        return task

    def end_freeze(
        self, payload: SnapshotTaskRequest | dict[str, Any] | None, authorization: str | None
    ) -> SnapshotTask:
        logger.info("end_freeze event=received")
        self.gate.authenticate(authorization)
        request = self._parse_request(payload)

        task = self._register(request)
        return self.coordinator.commit_freeze(task, success=True)

    def list_tasks(self) -> list[SnapshotTask]:
        return self.tasks.list_all()

    def get_task(self, task_id: str | None, authorization: str | None) -> SnapshotTask:
        self.gate.authenticate(authorization)
        if not task_id:
            raise BadRequest("task id is required")
        task = self.tasks.get(task_id)
        if task is None:
            raise NotFound(f"task {task_id} not found")
        return task

    def delete_task(self, task_id: str | None, authorization: str | None) -> None:
        self.gate.authenticate(authorization)
        if not task_id:
            raise BadRequest("task id is required")
        if self.tasks.remove(task_id) is None:
            logger.info("delete_task event=not_found task_id=%s", task_id)
            raise NotFound(f"task {task_id} not found")
        logger.info("delete_task event=deleted task_id=%s", task_id)

    def join(self, timeout: float | None = None) -> bool:
        """Wait for queued prepares. True when none are left outstanding."""
        with self._pending_lock:
            pending = set(self._pending)
        if not pending:
            return True
        _, not_done = wait_for_futures(pending, timeout=timeout)
        return not not_done

    def shutdown(self, wait: bool = True) -> None:
        self._executor.shutdown(wait=wait, cancel_futures=not wait)

    @staticmethod
    def _parse_request(
        payload: SnapshotTaskRequest | dict[str, Any] | None,
    ) -> SnapshotTaskRequest:
        if payload is None:
            raise BadRequest("snapshot task request body is required")
        if isinstance(payload, SnapshotTaskRequest):
            return payload
        try:
            return SnapshotTaskRequest.model_validate(payload)
        except ValidationError as exc:
            raise BadRequest(
                f"invalid snapshot task request: {exc.error_count()} error(s)"
            ) from exc

    def _register(self, request: SnapshotTaskRequest) -> SnapshotTask:
        now = self._clock()
        task = SnapshotTask(
            id=str(uuid.uuid4()),
            snapshot_name=request.snapshot_name,
            status="ACTIVE",
            timeout=self.task_timeout_s,
            created_at=now,
            updated_at=now,
        )
        return self.tasks.add(task)

    def _prepare(self, task: SnapshotTask) -> SnapshotTask:
        try:
            return self.coordinator.prepare_freeze(task)
        except Exception as exc:  # noqa: BLE001
            logger.exception("prepare_freeze event=crashed task_id=%s", task.id)
            self.coordinator.release(task.snapshot_name)
            return self.coordinator.reject(task, f"Unexpected prepare failure: {exc}")

    def _forget(self, future: Future[SnapshotTask]) -> None:
        with self._pending_lock:
            self._pending.discard(future)
