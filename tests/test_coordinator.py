from __future__ import annotations

import threading

from snapshot_agent.app.coordinator import (
    COMMIT_FAILED_MESSAGE,
    PREPARE_FAILED_MESSAGE,
    SHUTDOWN_MESSAGE,
    SnapshotCoordinator,
)
from snapshot_agent.app.database import ExclusiveSession
from snapshot_agent.app.models import SnapshotTask
from snapshot_agent.app.registry import CorrelationStore, TaskRegistry


def _new_task(coordinator: SnapshotCoordinator, task_id: str, name: str) -> SnapshotTask:
    now = coordinator.now()
    task = SnapshotTask(id=task_id, snapshot_name=name, created_at=now, updated_at=now)
    return coordinator.tasks.add(task)


def test_prepare_freeze_records_correlation_and_succeeds(coordinator, fake_db, clock) -> None:
    task = _new_task(coordinator, "t1", "snap-1")

    result = coordinator.prepare_freeze(task)

    assert result.status == "SUCCESS"
    assert coordinator.tasks.get("t1").status == "SUCCESS"
    entry = coordinator.correlations.get("snap-1")
    assert entry is not None
    assert entry.freeze_id == "1001"
    assert entry.started_at == clock()
    assert fake_db.calls == [("freeze",), ("commit",), ("rollback",)]


def test_prepare_freeze_failure_leaves_no_correlation(coordinator, fake_db) -> None:
    fake_db.fail_on.add("freeze")
    task = _new_task(coordinator, "t1", "snap-1")

    result = coordinator.prepare_freeze(task)

    assert result.status == "FAILED"
    assert result.message.startswith(PREPARE_FAILED_MESSAGE)
    assert coordinator.correlations.get("snap-1") is None
    assert fake_db.calls == [("freeze",), ("rollback",)]


def test_prepare_commit_failure_aborts_the_open_freeze(coordinator, fake_db) -> None:
    fake_db.fail_on.add("commit")
    task = _new_task(coordinator, "t1", "snap-1")

    result = coordinator.prepare_freeze(task)

    assert result.status == "FAILED"
    assert coordinator.correlations.get("snap-1") is None
    assert fake_db.thaws() == [("thaw", "1001", False, "snap-1")]
    assert fake_db.calls[-1] == ("rollback",)


def test_prepare_rejected_while_freeze_open(coordinator, fake_db) -> None:
    coordinator.prepare_freeze(_new_task(coordinator, "t1", "snap-1"))
    fake_db.calls.clear()

    second = coordinator.prepare_freeze(_new_task(coordinator, "t2", "snap-1"))

    assert second.status == "FAILED"
    assert "already open" in second.message
    assert fake_db.calls == []
    assert coordinator.correlations.get("snap-1").freeze_id == "1001"


def test_prepare_waits_for_settle_interval(fake_db, clock) -> None:
    session = ExclusiveSession(fake_db)
    session.establish("SYSTEM", "manager:1")
    naps: list[float] = []
    coordinator = SnapshotCoordinator(
        session=session,
        correlations=CorrelationStore(),
        tasks=TaskRegistry(clock=clock),
        settle_interval_s=60.0,
        clock=clock,
        sleep=naps.append,
    )

    coordinator.prepare_freeze(_new_task(coordinator, "t1", "snap-1"))

    assert naps == [60.0]


def test_prepare_without_session_fails_task(fake_db, clock) -> None:
    coordinator = SnapshotCoordinator(
        session=ExclusiveSession(fake_db),
        correlations=CorrelationStore(),
        tasks=TaskRegistry(clock=clock),
        settle_interval_s=0.0,
        clock=clock,
    )

    result = coordinator.prepare_freeze(_new_task(coordinator, "t1", "snap-1"))

    assert result.status == "FAILED"
    assert "not established" in result.message
    assert fake_db.calls == []


def test_prepare_releases_claim(coordinator) -> None:
    assert coordinator.claim("snap-1") is True
    assert coordinator.claim("snap-1") is False

    coordinator.prepare_freeze(_new_task(coordinator, "t1", "snap-1"))

    assert coordinator.claim("snap-1") is True


def test_commit_unknown_snapshot_is_noop(coordinator, fake_db) -> None:
    task = _new_task(coordinator, "t1", "never-frozen")

    result = coordinator.commit_freeze(task)

    assert result.status == "SUCCESS"
    assert fake_db.calls == []
    assert coordinator.correlations.get("never-frozen") is None
    assert len(coordinator.correlations) == 0


def test_commit_thaws_and_removes_correlation(coordinator, fake_db) -> None:
    coordinator.prepare_freeze(_new_task(coordinator, "t1", "snap-1"))
    fake_db.calls.clear()

    result = coordinator.commit_freeze(_new_task(coordinator, "t2", "snap-1"), success=True)

    assert result.status == "SUCCESS"
    assert fake_db.calls == [("thaw", "1001", True, "snap-1"), ("commit",), ("rollback",)]
    assert coordinator.correlations.get("snap-1") is None
    assert fake_db.open_freezes == []


def test_commit_reports_storage_failure_to_database(coordinator, fake_db) -> None:
    coordinator.prepare_freeze(_new_task(coordinator, "t1", "snap-1"))

    coordinator.commit_freeze(_new_task(coordinator, "t2", "snap-1"), success=False)

    assert fake_db.thaws() == [("thaw", "1001", False, "snap-1")]


def test_commit_failure_still_forgets_the_window(coordinator, fake_db) -> None:
    coordinator.prepare_freeze(_new_task(coordinator, "t1", "snap-1"))
    fake_db.fail_on.add("thaw")

    result = coordinator.commit_freeze(_new_task(coordinator, "t2", "snap-1"))

    assert result.status == "FAILED"
    assert result.message.startswith(COMMIT_FAILED_MESSAGE)
    assert coordinator.correlations.get("snap-1") is None
    assert fake_db.calls[-1] == ("rollback",)


def test_reconcile_force_closes_stale_freeze_and_drops_tasks(coordinator, fake_db, clock) -> None:
    coordinator.prepare_freeze(_new_task(coordinator, "t1", "snap-2"))
    coordinator.prepare_freeze(_new_task(coordinator, "t2", "snap-3"))
    clock.advance(601)
    fake_db.calls.clear()

    closed = coordinator.reconcile_timeouts()

    assert sorted(closed) == ["snap-2", "snap-3"]
    assert sorted(fake_db.thaws()) == [
        ("thaw", "1001", False, "snap-2"),
        ("thaw", "1002", False, "snap-3"),
    ]
    assert len(coordinator.correlations) == 0
    assert coordinator.tasks.get("t1") is None
    assert coordinator.tasks.get("t2") is None


def test_reconcile_keeps_fresh_entries(coordinator, fake_db, clock) -> None:
    coordinator.prepare_freeze(_new_task(coordinator, "t1", "snap-old"))
    clock.advance(400)
    coordinator.prepare_freeze(_new_task(coordinator, "t2", "snap-new"))
    clock.advance(201)

    closed = coordinator.reconcile_timeouts()

    assert closed == ["snap-old"]
    assert coordinator.correlations.get("snap-new") is not None
    assert coordinator.tasks.get("t2").status == "SUCCESS"
    now = clock()
    assert all(
        entry.age_s(now) <= coordinator.timeout_s for entry in coordinator.correlations.list_all()
    )


def test_reconcile_thaw_failure_still_removes_entry(coordinator, fake_db, clock) -> None:
    coordinator.prepare_freeze(_new_task(coordinator, "t1", "snap-2"))
    clock.advance(601)
    fake_db.fail_on.add("thaw")

    assert coordinator.reconcile_timeouts() == ["snap-2"]
    assert coordinator.correlations.get("snap-2") is None


def test_prepare_reconciles_before_freezing(coordinator, fake_db, clock) -> None:
    coordinator.prepare_freeze(_new_task(coordinator, "t1", "snap-2"))
    clock.advance(601)
    retry = _new_task(coordinator, "t2", "snap-2")

    result = coordinator.prepare_freeze(retry)

    assert result.status == "SUCCESS"
    assert ("thaw", "1001", False, "snap-2") in fake_db.thaws()
    # The stale task is gone; the task that triggered the sweep survives.
    assert coordinator.tasks.get("t1") is None
    assert coordinator.tasks.get("t2").status == "SUCCESS"
    assert coordinator.correlations.get("snap-2").freeze_id == "1002"


def test_reconcile_without_stale_entries_touches_nothing(coordinator, fake_db) -> None:
    assert coordinator.reconcile_timeouts() == []
    assert fake_db.calls == []


def test_commit_during_settle_waits_for_prepare_then_thaws(fake_db, clock) -> None:
    session = ExclusiveSession(fake_db)
    session.establish("SYSTEM", "manager:1")
    settling = threading.Event()
    storage_done = threading.Event()

    def settle(_seconds: float) -> None:
        settling.set()
        assert storage_done.wait(timeout=5)

    coordinator = SnapshotCoordinator(
        session=session,
        correlations=CorrelationStore(),
        tasks=TaskRegistry(clock=clock),
        settle_interval_s=60.0,
        clock=clock,
        sleep=settle,
    )
    results: dict[str, SnapshotTask] = {}

    prepare = threading.Thread(
        target=lambda: results.update(
            prepare=coordinator.prepare_freeze(_new_task(coordinator, "t1", "snap-1"))
        )
    )
    prepare.start()
    assert settling.wait(timeout=5)

    commit = threading.Thread(
        target=lambda: results.update(
            commit=coordinator.commit_freeze(_new_task(coordinator, "t2", "snap-1"))
        )
    )
    commit.start()
    commit.join(timeout=0.1)
    # Blocked on the session while the freeze settles.
    assert commit.is_alive()
    assert fake_db.thaws() == []

    storage_done.set()
    prepare.join(timeout=5)
    commit.join(timeout=5)

    assert results["prepare"].status == "SUCCESS"
    assert results["commit"].status == "SUCCESS"
    assert fake_db.thaws() == [("thaw", "1001", True, "snap-1")]
    assert coordinator.correlations.get("snap-1") is None


def test_release_all_thaws_open_freezes_and_blocks_prepare(coordinator, fake_db) -> None:
    coordinator.prepare_freeze(_new_task(coordinator, "t1", "snap-1"))
    coordinator.prepare_freeze(_new_task(coordinator, "t2", "snap-2"))
    fake_db.calls.clear()

    released = coordinator.release_all()

    assert sorted(released) == ["snap-1", "snap-2"]
    assert sorted(fake_db.thaws()) == [
        ("thaw", "1001", False, "snap-1"),
        ("thaw", "1002", False, "snap-2"),
    ]
    assert len(coordinator.correlations) == 0
    assert fake_db.open_freezes == []

    late = coordinator.prepare_freeze(_new_task(coordinator, "t3", "snap-3"))
    assert late.status == "FAILED"
    assert late.message == SHUTDOWN_MESSAGE
    assert ("freeze",) not in fake_db.calls


def test_release_all_without_session_is_noop(fake_db, clock) -> None:
    coordinator = SnapshotCoordinator(
        session=ExclusiveSession(fake_db),
        correlations=CorrelationStore(),
        tasks=TaskRegistry(clock=clock),
        clock=clock,
    )

    assert coordinator.release_all() == []
    assert fake_db.calls == []


def test_release_orphaned_freezes_closes_untracked_windows(coordinator, fake_db) -> None:
    coordinator.prepare_freeze(_new_task(coordinator, "t1", "snap-1"))
    # Left prepared by an earlier agent process.
    fake_db.open_freezes.append("900")
    fake_db.calls.clear()

    orphans = coordinator.release_orphaned_freezes()

    assert orphans == ["900"]
    assert fake_db.thaws() == [("thaw", "900", False, "orphaned-900")]
    assert fake_db.open_freezes == ["1001"]
    assert coordinator.correlations.get("snap-1").freeze_id == "1001"
