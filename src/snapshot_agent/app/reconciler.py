"""Background timer that releases stale freezes even when no request arrives."""

from __future__ import annotations

import logging
import threading

from .coordinator import SnapshotCoordinator

logger = logging.getLogger(__name__)


class ReconciliationTimer:
    """Runs ``coordinator.reconcile_timeouts()`` every ``interval_s`` seconds."""

    def __init__(self, coordinator: SnapshotCoordinator, interval_s: float = 30.0) -> None:
        if interval_s <= 0:
            raise ValueError("interval_s must be positive")
        self.coordinator = coordinator
        self.interval_s = interval_s
        self._stop = threading.Event()
        self._thread: threading.Thread | None = None

    @property
    def running(self) -> bool:
        return self._thread is not None and self._thread.is_alive()

    def start(self) -> None:
        if self.running:
            return
        self._stop.clear()
        self._thread = threading.Thread(
            target=self._run, name="snapshot-reconciler", daemon=True
        )
        self._thread.start()
        logger.info("reconciler event=started interval_s=%s", self.interval_s)

    def stop(self, timeout_s: float = 5.0) -> None:
        self._stop.set()
        if self._thread is not None:
            self._thread.join(timeout=timeout_s)
            self._thread = None
        logger.info("reconciler event=stopped")

    def run_once(self) -> list[str]:
        try:
            return self.coordinator.reconcile_timeouts()
        except Exception:  # noqa: BLE001
            logger.exception("reconciler event=sweep_failed")
            return []

    def _run(self) -> None:
        while not self._stop.wait(self.interval_s):
            closed = self.run_once()
            if closed:
                logger.info("reconciler event=closed snapshot_names=%s", closed)
