"""FastAPI application wiring for the snapshot agent.

Terms used in this file:
- Pre-snapshot task: freeze the database before the storage snapshot (begin).
- Post-snapshot task: thaw the database after the storage snapshot (end).
- app.state: holds the shared registries, session, coordinator, and facade so
  route handlers and tests reach the same objects.
- Lifespan: startup/shutdown hook that runs the reconciliation timer and closes
  the database session.
"""

from __future__ import annotations

import logging
import time
from collections.abc import Callable
from contextlib import asynccontextmanager
from datetime import datetime
from typing import Any

from fastapi import Body, FastAPI, Header, Request
from fastapi.exceptions import RequestValidationError
from fastapi.responses import Response

from .app.auth import CredentialGate
from .app.coordinator import SnapshotCoordinator
from .app.database import DatabaseSession, ExclusiveSession, build_database_session
from .app.errors import AgentError
from .app.facade import AgentFacade
from .app.models import API_VERSION, AgentInfo, SnapshotTask, utcnow
from .app.reconciler import ReconciliationTimer
from .app.registry import CorrelationStore, TaskRegistry
from .app.settings import Settings, get_settings

logger = logging.getLogger(__name__)


def create_app(
    *,
    settings_override: Settings | None = None,
    database_session: DatabaseSession | None = None,
    clock: Callable[[], datetime] = utcnow,
    sleep: Callable[[float], None] = time.sleep,
) -> FastAPI:
    """Application factory.

    ``database_session`` replaces the vendor backend chosen by settings; tests
    pass an in-memory double here.
    """
    settings = settings_override or get_settings()
    session = ExclusiveSession(
        database_session
        or build_database_session(
            settings.db_vendor,
            host=settings.db_host,
            port=settings.db_port,
            database_name=settings.db_name,
            label_dir=settings.pg_label_dir,
        )
    )
    tasks = TaskRegistry(clock=clock)
    correlations = CorrelationStore()
    coordinator = SnapshotCoordinator(
        session=session,
        correlations=correlations,
        tasks=tasks,
        timeout_s=settings.task_timeout_s,
        settle_interval_s=settings.settle_interval_s,
        clock=clock,
        sleep=sleep,
    )
    facade = AgentFacade(
        tasks=tasks,
        coordinator=coordinator,
        gate=CredentialGate(session, on_established=coordinator.release_orphaned_freezes),
        max_workers=settings.max_workers,
        task_timeout_s=settings.task_timeout_s,
        clock=clock,
    )
    reconciler = ReconciliationTimer(coordinator, interval_s=settings.reconcile_interval_s)

    @asynccontextmanager
    async def lifespan(app: FastAPI):
        reconciler.start()
        try:
            yield
        finally:
            reconciler.stop()
            facade.shutdown(wait=False)
            released = coordinator.release_all()
            if released:
                logger.info("agent event=released_freezes snapshot_names=%s", released)
            session.close()
            logger.info("agent event=stopped")

    app = FastAPI(title=settings.app_name, version=API_VERSION, lifespan=lifespan)
    app.state.settings = settings
    app.state.tasks = tasks
    app.state.correlations = correlations
    app.state.session = session
    app.state.coordinator = coordinator
    app.state.facade = facade
    app.state.reconciler = reconciler

    # Errors surface as bare status codes; the orchestrator reads nothing else.
    @app.exception_handler(AgentError)
    async def agent_error_handler(_: Request, exc: AgentError) -> Response:
        return Response(status_code=exc.status_code)

    @app.exception_handler(RequestValidationError)
    async def validation_error_handler(_: Request, exc: RequestValidationError) -> Response:
        logger.info("request event=invalid errors=%s", exc.errors())
        return Response(status_code=400)

    # Task bodies arrive as plain JSON objects and are validated by the facade
    # after authentication, so a bad credential always answers 401.
    prefix = settings.api_prefix.rstrip("/")
    tasks_path = f"{prefix}/snapshot-tasks"

    @app.get("/health")
    def health() -> dict[str, object]:
        return {"status": "ok", "connected": session.is_established}

    @app.get("/rest/version")
    def version() -> str:
        return API_VERSION

    @app.get(f"{prefix}/agent", response_model=AgentInfo)
    def agent_info() -> AgentInfo:
        return AgentInfo(description=settings.agent_description())

    @app.post(
        f"{tasks_path}/preSnapshotTask",
        response_model=SnapshotTask,
        response_model_exclude_none=True,
    )
    def pre_snapshot_task(
        payload: dict[str, Any] | None = Body(default=None),
        authorization: str | None = Header(default=None),
    ) -> SnapshotTask:
        return facade.begin_freeze(payload, authorization)

    @app.post(
        f"{tasks_path}/postSnapshotTask",
        response_model=SnapshotTask,
        response_model_exclude_none=True,
    )
    def post_snapshot_task(
        payload: dict[str, Any] | None = Body(default=None),
        authorization: str | None = Header(default=None),
    ) -> SnapshotTask:
        return facade.end_freeze(payload, authorization)

    @app.get(tasks_path, response_model=list[SnapshotTask], response_model_exclude_none=True)
    def list_tasks() -> list[SnapshotTask]:
        return facade.list_tasks()

    @app.get(
        f"{tasks_path}/{{task_id}}",
        response_model=SnapshotTask,
        response_model_exclude_none=True,
    )
    def get_task(task_id: str, authorization: str | None = Header(default=None)) -> SnapshotTask:
        return facade.get_task(task_id, authorization)

    @app.delete(f"{tasks_path}/{{task_id}}")
    def delete_task(task_id: str, authorization: str | None = Header(default=None)) -> Response:
        facade.delete_task(task_id, authorization)
        return Response(status_code=200)

    return app


# Module-level app for `uvicorn snapshot_agent.main:app`.
app = create_app()
