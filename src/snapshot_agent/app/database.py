"""Database sessions that can freeze and thaw a database for storage snapshots.

Terms:
- Freeze: put the database in a crash-consistent, backup-ready state and open a
  backup window. Returns a freeze id.
- Thaw: close that window and record success/failure in the vendor catalog.
- Exclusive session: the single process-wide connection plus the mutex that keeps
  two freeze/thaw statement sequences from overlapping on it.

Vendor drivers are imported lazily so the agent can start (and tests can run)
without the driver of the vendor it is not configured for.
"""

from __future__ import annotations

import logging
import re
import threading
from collections.abc import Iterator
from contextlib import contextmanager
from pathlib import Path
from typing import Any, Protocol

from .errors import DatabaseFailure, InternalState

logger = logging.getLogger(__name__)


class DatabaseSession(Protocol):
    """Interface the coordinator drives. Implementations raise DatabaseFailure."""

    @property
    def is_connected(self) -> bool: ...

    def begin_session(self, user: str, password: str) -> None: ...

    def execute_freeze(self) -> str: ...

    def pending_freeze_ids(self) -> list[str]: ...

    def execute_thaw(self, freeze_id: str, success: bool, label: str) -> None: ...

    def commit(self) -> None: ...

    def rollback(self) -> None: ...

    def close_session(self) -> None: ...


def _safe_file_stem(name: str) -> str:
    """Map a snapshot name onto a single path component."""
    return re.sub(r"[^A-Za-z0-9._-]", "_", name).lstrip(".") or "snapshot"


def _quote_literal(value: str) -> str:
    """Render ``value`` as a single-quoted SQL string literal."""
    return "'" + value.replace("'", "''") + "'"


class HanaSession:
    """SAP HANA backend using storage snapshots from the backup catalog."""

    FREEZE_SQL = "BACKUP DATA FOR FULL SYSTEM CREATE SNAPSHOT"
    PENDING_IDS_SQL = (
        "SELECT BACKUP_ID FROM M_BACKUP_CATALOG "
        "WHERE STATE_NAME = 'prepared' ORDER BY BACKUP_ID"
    )
    THAW_SQL = "BACKUP DATA FOR FULL SYSTEM CLOSE SNAPSHOT BACKUP_ID {backup_id}"

    def __init__(self, *, host: str, port: int, database_name: str = "") -> None:
        self.host = host
        self.port = port
        self.database_name = database_name
        self._conn: Any = None
        self._dbapi: Any = None

    @property
    def is_connected(self) -> bool:
        return self._conn is not None

    def begin_session(self, user: str, password: str) -> None:
        if self._dbapi is None:
            self._dbapi = self._load_hdbcli()
        kwargs: dict[str, Any] = {
            "address": self.host,
            "port": self.port,
            "user": user,
            "password": password,
        }
        if self.database_name:
            kwargs["databaseName"] = self.database_name
        try:
            conn = self._dbapi.connect(**kwargs)
            conn.setautocommit(False)
        except self._dbapi.Error as exc:
            raise DatabaseFailure(f"HANA connect to {self.host}:{self.port} failed: {exc}") from exc
        self._conn = conn
        logger.info("hana_session event=connected host=%s port=%s", self.host, self.port)

    def execute_freeze(self) -> str:
        self._execute(self.FREEZE_SQL)
        pending = self.pending_freeze_ids()
        if not pending:
            raise DatabaseFailure("HANA reported no prepared backup after CREATE SNAPSHOT")
        # Rows ascend by BACKUP_ID; older prepared snapshots sort first.
        freeze_id = pending[-1]
        logger.info("hana_session event=frozen backup_id=%s", freeze_id)
        return freeze_id

    def pending_freeze_ids(self) -> list[str]:
        rows = self._execute(self.PENDING_IDS_SQL, fetch=True)
        return [str(row[0]) for row in rows]

    def execute_thaw(self, freeze_id: str, success: bool, label: str) -> None:
        if not str(freeze_id).isdigit():
            raise DatabaseFailure(f"HANA backup id must be numeric, got {freeze_id!r}")
        statement = self.THAW_SQL.format(backup_id=freeze_id)
        if success:
            statement += f" SUCCESSFUL {_quote_literal(label)}"
        else:
            statement += f" UNSUCCESSFUL {_quote_literal(f'storage snapshot {label} failed')}"
        logger.info("hana_session event=thaw backup_id=%s success=%s", freeze_id, success)
        self._execute(statement)

    def commit(self) -> None:
        self._call("commit")

    def rollback(self) -> None:
        self._call("rollback")

    def close_session(self) -> None:
        if self._conn is None:
            return
        try:
            self._conn.close()
        except self._dbapi.Error as exc:
            logger.error("hana_session event=close_failed error=%s", exc)
        finally:
            self._conn = None

    def _execute(self, statement: str, *, fetch: bool = False) -> list[Any]:
        conn = self._require_conn()
        try:
            cursor = conn.cursor()
            try:
                cursor.execute(statement)
                return list(cursor.fetchall()) if fetch else []
            finally:
                cursor.close()
        except self._dbapi.Error as exc:
            raise DatabaseFailure(f"HANA statement failed: {exc}") from exc

    def _call(self, method: str) -> None:
        conn = self._require_conn()
        try:
            getattr(conn, method)()
        except self._dbapi.Error as exc:
            raise DatabaseFailure(f"HANA {method} failed: {exc}") from exc

    def _require_conn(self) -> Any:
        if self._conn is None:
            raise InternalState("HANA session is not established")
        return self._conn

    @staticmethod
    def _load_hdbcli() -> Any:
        """Import the HANA client with a friendly install hint on failure."""
        try:
            from hdbcli import dbapi
        except ImportError as exc:  # pragma: no cover - exercised only without dependency
            raise RuntimeError(
                "SAP HANA backend requires hdbcli. Install with: python -m pip install hdbcli"
            ) from exc
        return dbapi


class PostgresSession:
    """PostgreSQL backend using non-exclusive low-level base backups.

    A non-exclusive backup belongs to the session that started it, so the
    connection must stay open between freeze and thaw. PostgreSQL allows one
    such backup per session: while a window is open, a freeze for another
    snapshot name fails.

    ``pg_backup_stop`` hands back the ``backup_label`` (and, with tablespaces,
    ``tablespace_map``) contents that a restore of the snapshot needs. After a
    successful thaw they are written to ``label_dir`` as
    ``<snapshot>.backup_label`` / ``<snapshot>.tablespace_map`` and kept on
    ``last_backup_files``.
    """

    FREEZE_SQL = "SELECT pg_backup_start(%s, true) AS lsn"
    THAW_SQL = "SELECT lsn, labelfile, spcmapfile FROM pg_backup_stop(%s)"

    def __init__(
        self,
        *,
        host: str,
        port: int,
        database_name: str = "",
        label_dir: str | Path = "backup_labels",
    ) -> None:
        self.host = host
        self.port = port
        self.database_name = database_name
        self.label_dir = Path(label_dir)
        self.last_backup_files: dict[str, str] = {}
        self._conn: Any = None
        self._psycopg: Any = None
        self._open_lsn: str | None = None

    @property
    def is_connected(self) -> bool:
        return self._conn is not None

    def begin_session(self, user: str, password: str) -> None:
        if self._psycopg is None:
            self._psycopg = self._load_psycopg()
        try:
            self._conn = self._psycopg.connect(
                host=self.host,
                port=self.port,
                dbname=self.database_name or None,
                user=user,
                password=password,
                autocommit=False,
            )
        except self._psycopg.Error as exc:
            raise DatabaseFailure(
                f"PostgreSQL connect to {self.host}:{self.port} failed: {exc}"
            ) from exc
        logger.info("postgres_session event=connected host=%s port=%s", self.host, self.port)

    def execute_freeze(self) -> str:
        if self._open_lsn is not None:
            raise DatabaseFailure(
                f"a PostgreSQL backup is already open on this session (lsn {self._open_lsn})"
            )
        row = self._execute(self.FREEZE_SQL, ("snapshot-agent",))
        if row is None:
            raise DatabaseFailure("pg_backup_start returned no LSN")
        self._open_lsn = str(row[0])
        logger.info("postgres_session event=frozen lsn=%s", self._open_lsn)
        return self._open_lsn

    def pending_freeze_ids(self) -> list[str]:
        # PostgreSQL keeps no backup catalog; only this session's open backup counts.
        return [self._open_lsn] if self._open_lsn else []

    def execute_thaw(self, freeze_id: str, success: bool, label: str) -> None:
        if self._open_lsn is not None and freeze_id != self._open_lsn:
            logger.warning(
                "postgres_session event=thaw_id_mismatch expected=%s got=%s",
                self._open_lsn,
                freeze_id,
            )
        logger.info(
            "postgres_session event=thaw lsn=%s success=%s label=%s", freeze_id, success, label
        )
        # Waiting for WAL archiving only makes sense when the snapshot is kept.
        row = self._execute(self.THAW_SQL, (success,))
        self._open_lsn = None
        self.last_backup_files = {}
        if success and row is not None:
            self._store_backup_files(label, row[1], row[2])

    def _store_backup_files(
        self, label: str, labelfile: str | None, spcmapfile: str | None
    ) -> None:
        files = {"backup_label": labelfile or "", "tablespace_map": spcmapfile or ""}
        stem = _safe_file_stem(label)
        try:
            self.label_dir.mkdir(parents=True, exist_ok=True)
            for suffix, content in files.items():
                if content:
                    (self.label_dir / f"{stem}.{suffix}").write_text(content, encoding="utf-8")
        except OSError as exc:
            raise DatabaseFailure(f"could not store backup label for {label}: {exc}") from exc
        self.last_backup_files = {name: content for name, content in files.items() if content}
        logger.info(
            "postgres_session event=backup_label_stored snapshot_name=%s dir=%s files=%s",
            label,
            self.label_dir,
            sorted(self.last_backup_files),
        )

    def commit(self) -> None:
        self._call("commit")

    def rollback(self) -> None:
        self._call("rollback")

    def close_session(self) -> None:
        if self._conn is None:
            return
        try:
            self._conn.close()
        except self._psycopg.Error as exc:
            logger.error("postgres_session event=close_failed error=%s", exc)
        finally:
            self._conn = None
            self._open_lsn = None

    def _execute(self, statement: str, params: tuple[Any, ...]) -> Any:
        conn = self._require_conn()
        try:
            return conn.execute(statement, params).fetchone()
        except self._psycopg.Error as exc:
            raise DatabaseFailure(f"PostgreSQL statement failed: {exc}") from exc

    def _call(self, method: str) -> None:
        conn = self._require_conn()
        try:
            getattr(conn, method)()
        except self._psycopg.Error as exc:
            raise DatabaseFailure(f"PostgreSQL {method} failed: {exc}") from exc

    def _require_conn(self) -> Any:
        if self._conn is None:
            raise InternalState("PostgreSQL session is not established")
        return self._conn

    @staticmethod
    def _load_psycopg() -> Any:
        """Import psycopg with a friendly install hint on failure."""
        try:
            import psycopg
        except ImportError as exc:  # pragma: no cover - exercised only without dependency
            raise RuntimeError(
                "PostgreSQL backend requires psycopg. Install with: "
                'python -m pip install "psycopg[binary]>=3.2,<4.0"'
            ) from exc
        return psycopg


def build_database_session(
    vendor: str,
    *,
    host: str,
    port: int,
    database_name: str = "",
    label_dir: str | Path = "backup_labels",
) -> DatabaseSession:
    """Create the backend for ``vendor`` (``hana`` or ``postgres``)."""
    normalized = vendor.strip().lower()
    if normalized == "hana":
        return HanaSession(host=host, port=port, database_name=database_name)
    if normalized in {"postgres", "postgresql"}:
        return PostgresSession(
            host=host, port=port, database_name=database_name, label_dir=label_dir
        )
    raise ValueError(f"Unsupported database vendor: {vendor!r}")


class ExclusiveSession:
    """Single owner of the process-wide database session.

    The session is established once (first successful login) and then reused
    for the life of the process. ``exclusive()`` serializes statement sequences.
    """

    def __init__(self, session: DatabaseSession) -> None:
        self._session = session
        self._lock = threading.Lock()

    @property
    def is_established(self) -> bool:
        return self._session.is_connected

    def establish(self, user: str, password: str) -> bool:
        """Connect with the given credentials unless already connected.

        Returns True when this call established the session, False when another
        caller already had. Raises DatabaseFailure when the connect fails.
        """
        with self._lock:
            if self._session.is_connected:
                return False
            self._session.begin_session(user, password)
            return True

    @contextmanager
    def exclusive(self) -> Iterator[DatabaseSession]:
        with self._lock:
            if not self._session.is_connected:
                raise InternalState("database session is not established")
            yield self._session

    def close(self) -> None:
        with self._lock:
            self._session.close_session()
