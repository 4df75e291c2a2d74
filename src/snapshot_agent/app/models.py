"""Pydantic models shared across the API, facade, coordinator, and registries.

Terms used in this file:
- Snapshot task: one orchestrator-visible begin or end operation.
- Correlation entry: one freeze window the database currently holds open.
- Alias: the camelCase name a field uses on the wire (``snapshotName``).
"""

from __future__ import annotations

from dataclasses import dataclass
from datetime import UTC, datetime
from typing import Literal

from pydantic import BaseModel, ConfigDict, Field

# Task lifecycle states. ACTIVE moves exactly once to SUCCESS or FAILED.
TaskStatus = Literal["ACTIVE", "SUCCESS", "FAILED"]
TERMINAL_STATUSES: frozenset[str] = frozenset({"SUCCESS", "FAILED"})

DEFAULT_TASK_TIMEOUT_S = 600
AGENT_VERSION = "1.0"
API_VERSION = "v1"


def utcnow() -> datetime:
    return datetime.now(tz=UTC)


class CamelModel(BaseModel):
    # Accept both snake_case and camelCase input; FastAPI emits aliases.
    model_config = ConfigDict(populate_by_name=True)


class SnapshotTask(CamelModel):
    """Canonical task record returned by the API and kept in the registry."""

    id: str
    snapshot_name: str = Field(alias="snapshotName")
    status: TaskStatus = "ACTIVE"
    # Seconds after which an outstanding freeze for this task may be force-closed.
    timeout: int = DEFAULT_TASK_TIMEOUT_S
    # Human-readable failure detail, only set on FAILED.
    message: str | None = None
    created_at: datetime = Field(alias="createdAt", default_factory=utcnow)
    updated_at: datetime = Field(alias="updatedAt", default_factory=utcnow)

    @property
    def is_terminal(self) -> bool:
        return self.status in TERMINAL_STATUSES


class SnapshotTaskRequest(CamelModel):
    """Request body for the pre/post snapshot endpoints."""

    model_config = ConfigDict(populate_by_name=True, extra="ignore")

    # min_length enforces a usable correlation key at the API boundary.
    snapshot_name: str = Field(alias="snapshotName", min_length=1)


class AgentInfo(BaseModel):
    """Static descriptor returned by GET /agent."""

    description: str
    version: str = AGENT_VERSION


@dataclass(frozen=True)
class CorrelationEntry:
    """Outstanding freeze: database freeze id plus the instant it was acquired."""

    freeze_id: str
    started_at: datetime

    def age_s(self, now: datetime) -> float:
        return (now - self.started_at).total_seconds()
