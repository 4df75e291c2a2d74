from __future__ import annotations

import base64
from collections.abc import Iterator
from datetime import UTC, datetime, timedelta
from typing import Any

import pytest
from fastapi.testclient import TestClient

from snapshot_agent.app.coordinator import SnapshotCoordinator
from snapshot_agent.app.database import ExclusiveSession
from snapshot_agent.app.errors import DatabaseFailure
from snapshot_agent.app.registry import CorrelationStore, TaskRegistry
from snapshot_agent.app.settings import Settings
from snapshot_agent.main import create_app

DB_USER = "SYSTEM"
DB_PASSWORD = "manager:1"


def basic_header(user: str, password: str) -> str:
    token = base64.b64encode(f"{user}:{password}".encode()).decode("ascii")
    return f"Basic {token}"


class FakeClock:
    """Manually advanced clock shared by the registry, coordinator, and facade."""

    def __init__(self, start: datetime | None = None) -> None:
        self.current = start or datetime(2026, 1, 5, 12, 0, tzinfo=UTC)

    def __call__(self) -> datetime:
        return self.current

    def advance(self, seconds: float) -> None:
        self.current = self.current + timedelta(seconds=seconds)


class FakeDatabaseSession:
    """Test-only DatabaseSession double that records every statement."""

    def __init__(self, user: str = DB_USER, password: str = DB_PASSWORD) -> None:
        self._credentials = (user, password)
        self.connected = False
        self.calls: list[tuple[Any, ...]] = []
        self.fail_on: set[str] = set()
        self.open_freezes: list[str] = []
        self.logins: list[str] = []
        self._next_id = 1000

    @property
    def is_connected(self) -> bool:
        return self.connected

    def begin_session(self, user: str, password: str) -> None:
        self.logins.append(user)
        if (user, password) != self._credentials:
            raise DatabaseFailure("invalid credentials")
        self.connected = True

    def execute_freeze(self) -> str:
        self.calls.append(("freeze",))
        if "freeze" in self.fail_on:
            raise DatabaseFailure("freeze rejected")
        self._next_id += 1
        freeze_id = str(self._next_id)
        self.open_freezes.append(freeze_id)
        return freeze_id

    def pending_freeze_ids(self) -> list[str]:
        return list(self.open_freezes)

    def execute_thaw(self, freeze_id: str, success: bool, label: str) -> None:
        self.calls.append(("thaw", freeze_id, success, label))
        if "thaw" in self.fail_on:
            raise DatabaseFailure("thaw rejected")
        if freeze_id in self.open_freezes:
            self.open_freezes.remove(freeze_id)

    def commit(self) -> None:
        self.calls.append(("commit",))
        if "commit" in self.fail_on:
            raise DatabaseFailure("commit rejected")

    def rollback(self) -> None:
        self.calls.append(("rollback",))

    def close_session(self) -> None:
        self.connected = False

    def thaws(self) -> list[tuple[Any, ...]]:
        return [call for call in self.calls if call[0] == "thaw"]


@pytest.fixture
def fake_db() -> FakeDatabaseSession:
    return FakeDatabaseSession()


@pytest.fixture
def clock() -> FakeClock:
    return FakeClock()


@pytest.fixture
def auth_header() -> dict[str, str]:
    return {"Authorization": basic_header(DB_USER, DB_PASSWORD)}


@pytest.fixture
def settings() -> Settings:
    return Settings(
        db_vendor="hana",
        settle_interval_s=0.0,
        reconcile_interval_s=3600.0,
        max_workers=2,
    )


@pytest.fixture
def client(
    settings: Settings, fake_db: FakeDatabaseSession, clock: FakeClock
) -> Iterator[TestClient]:
    app = create_app(
        settings_override=settings,
        database_session=fake_db,
        clock=clock,
        sleep=lambda _seconds: None,
    )
    with TestClient(app) as test_client:
        yield test_client


@pytest.fixture
def coordinator(fake_db: FakeDatabaseSession, clock: FakeClock) -> SnapshotCoordinator:
    session = ExclusiveSession(fake_db)
    session.establish(DB_USER, DB_PASSWORD)
    return SnapshotCoordinator(
        session=session,
        correlations=CorrelationStore(),
        tasks=TaskRegistry(clock=clock),
        timeout_s=600,
        settle_interval_s=0.0,
        clock=clock,
    )


@pytest.fixture
def make_auth_header():
    return basic_header
