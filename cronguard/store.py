"""Lock store: the persisted lease table and execution audit log.

Two tables are the only state shared between scheduler processes:

- ``cron_locks``: one row per job name, the current lease.
- ``cron_execution_log``: append-only record of every acquired lease.

All functions here are synchronous and take an :class:`~sqlalchemy.Engine`;
the async :class:`cronguard.locks.LockManager` runs them in worker threads.
Every mutating operation is a single conditional statement so that
concurrent callers in different processes cannot interleave a read and a
write.

Timestamps are stored as ISO-8601 UTC strings with microsecond precision.
They sort lexicographically in the same order as the instants they encode,
which keeps the expiry predicates identical on SQLite and PostgreSQL.
"""

from __future__ import annotations

import logging
import os
import socket
import uuid
from dataclasses import dataclass
from datetime import datetime
from datetime import timedelta
from datetime import timezone
from enum import Enum
from typing import Any

from sqlalchemy import Engine
from sqlalchemy import create_engine
from sqlalchemy import event
from sqlalchemy import text
from sqlalchemy.engine import Connection
from sqlalchemy.engine.url import make_url
from sqlalchemy.pool import StaticPool

logger = logging.getLogger(__name__)

LEASES_TABLE = "cron_locks"
EXECUTIONS_TABLE = "cron_execution_log"

MAX_ERROR_LENGTH = 5000


class LeaseStatus(str, Enum):
    HELD = "held"
    RELEASED = "released"


class ExecutionStatus(str, Enum):
    RUNNING = "running"
    COMPLETED = "completed"
    FAILED = "failed"


@dataclass(frozen=True)
class Lease:
    """A row of ``cron_locks``."""

    job_name: str
    holder_id: str
    acquired_at: datetime
    expires_at: datetime
    status: str

    @property
    def ttl(self) -> timedelta:
        return self.expires_at - self.acquired_at

    def is_active(self, now: datetime) -> bool:
        """Held and not yet expired."""
        return self.status == LeaseStatus.HELD and self.expires_at > now

    def age(self, now: datetime) -> timedelta:
        return now - self.acquired_at

    def to_dict(self) -> dict[str, Any]:
        return {
            "job_name": self.job_name,
            "holder_id": self.holder_id,
            "acquired_at": self.acquired_at.isoformat(),
            "expires_at": self.expires_at.isoformat(),
            "status": LeaseStatus(self.status).value,
        }


@dataclass(frozen=True)
class ExecutionRecord:
    """A row of ``cron_execution_log``."""

    execution_id: str
    job_name: str
    started_at: datetime
    finished_at: datetime | None
    status: str
    error_message: str | None = None

    @property
    def duration_ms(self) -> int | None:
        if self.finished_at is None:
            return None
        return int((self.finished_at - self.started_at).total_seconds() * 1000)

    def to_dict(self) -> dict[str, Any]:
        return {
            "execution_id": self.execution_id,
            "job_name": self.job_name,
            "started_at": self.started_at.isoformat(),
            "finished_at": self.finished_at.isoformat() if self.finished_at else None,
            "status": ExecutionStatus(self.status).value,
            "error_message": self.error_message,
            "duration_ms": self.duration_ms,
        }


# ---------------------------------------------------------------------------
# Engine
# ---------------------------------------------------------------------------


def _apply_sqlite_pragmas(dbapi_conn, connection_record) -> None:
    cursor = dbapi_conn.cursor()
    cursor.execute("PRAGMA journal_mode=WAL")
    cursor.execute("PRAGMA synchronous=NORMAL")
    cursor.execute("PRAGMA busy_timeout=5000")
    cursor.close()


def make_engine(db_url: str, **kwargs) -> Engine:
    """Create a SQLAlchemy engine for the lock store.

    Accepts SQLite and PostgreSQL URLs. Surrounding quotes (common in
    ``.env`` files) and the ``postgres://`` scheme alias are tolerated.

    Args:
        db_url: Database connection URL
        **kwargs: Additional arguments for create_engine

    Returns:
        A SQLAlchemy Engine instance
    """
    db_url = (db_url or "").strip()
    if (db_url.startswith('"') and db_url.endswith('"')) or (db_url.startswith("'") and db_url.endswith("'")):
        db_url = db_url[1:-1].strip()
    if not db_url:
        raise ValueError("DATABASE_URL is not set (empty)")

    # Bare postgres URLs use psycopg 3 (the "postgres" extra)
    for prefix in ("postgres://", "postgresql://"):
        if db_url.startswith(prefix):
            db_url = "postgresql+psycopg://" + db_url[len(prefix) :]
            break

    try:
        parsed = make_url(db_url)
    except Exception as e:
        raise ValueError(f"Invalid DATABASE_URL: {e}") from e

    if parsed.drivername.startswith("sqlite"):
        connect_args = kwargs.pop("connect_args", {})
        connect_args.setdefault("check_same_thread", False)
        connect_args.setdefault("timeout", 30)
        if parsed.database in (None, "", ":memory:"):
            kwargs.setdefault("poolclass", StaticPool)
        engine = create_engine(db_url, connect_args=connect_args, **kwargs)
        event.listen(engine, "connect", _apply_sqlite_pragmas)
        return engine

    if not parsed.drivername.startswith("postgresql"):
        raise ValueError(f"Unsupported DATABASE_URL driver '{parsed.drivername}' (use sqlite or postgresql)")

    # pre_ping + recycle keep pooled connections valid across DB restarts
    kwargs.setdefault("pool_pre_ping", True)
    kwargs.setdefault("pool_recycle", 300)
    return create_engine(db_url, **kwargs)


# ---------------------------------------------------------------------------
# Encoding helpers
# ---------------------------------------------------------------------------


def generate_holder_id() -> str:
    """Generate a globally unique holder / execution id.

    Hostname and PID identify the process for operators reading the audit
    log; the UUID makes every acquisition distinct.
    """
    hostname = socket.gethostname()[:32]
    return f"{hostname}:{os.getpid()}:{uuid.uuid4().hex}"


def dt_to_str(value: datetime) -> str:
    if value.tzinfo is None:
        value = value.replace(tzinfo=timezone.utc)
    return value.astimezone(timezone.utc).isoformat(timespec="microseconds")


def str_to_dt(value: str | None) -> datetime | None:
    if not value:
        return None
    parsed = datetime.fromisoformat(value)
    if parsed.tzinfo is None:
        parsed = parsed.replace(tzinfo=timezone.utc)
    return parsed


def _row_to_lease(row) -> Lease | None:
    if row is None:
        return None
    m = row._mapping
    return Lease(
        job_name=m["job_name"],
        holder_id=m["holder_id"],
        acquired_at=str_to_dt(m["acquired_at"]),
        expires_at=str_to_dt(m["expires_at"]),
        status=LeaseStatus(m["status"]),
    )


def _row_to_record(row) -> ExecutionRecord | None:
    if row is None:
        return None
    m = row._mapping
    return ExecutionRecord(
        execution_id=m["execution_id"],
        job_name=m["job_name"],
        started_at=str_to_dt(m["started_at"]),
        finished_at=str_to_dt(m["finished_at"]),
        status=ExecutionStatus(m["status"]),
        error_message=m["error_message"],
    )


# ---------------------------------------------------------------------------
# Schema
# ---------------------------------------------------------------------------

_SCHEMA_STATEMENTS = (
    f"""
    CREATE TABLE IF NOT EXISTS {LEASES_TABLE} (
        job_name TEXT PRIMARY KEY,
        holder_id TEXT NOT NULL,
        acquired_at TEXT NOT NULL,
        expires_at TEXT NOT NULL,
        status TEXT NOT NULL CHECK (status IN ('held', 'released')),
        updated_at TEXT NOT NULL
    )
    """,
    f"""
    CREATE TABLE IF NOT EXISTS {EXECUTIONS_TABLE} (
        execution_id TEXT PRIMARY KEY,
        job_name TEXT NOT NULL,
        started_at TEXT NOT NULL,
        finished_at TEXT,
        status TEXT NOT NULL CHECK (status IN ('running', 'completed', 'failed')),
        error_message TEXT
    )
    """,
    f"""
    CREATE INDEX IF NOT EXISTS idx_{EXECUTIONS_TABLE}_job
    ON {EXECUTIONS_TABLE} (job_name, started_at)
    """,
    f"""
    CREATE INDEX IF NOT EXISTS idx_{EXECUTIONS_TABLE}_status
    ON {EXECUTIONS_TABLE} (status)
    """,
)


def ensure_schema(engine: Engine) -> None:
    """Create both tables and their indexes if they do not exist."""
    with engine.begin() as conn:
        for statement in _SCHEMA_STATEMENTS:
            conn.execute(text(statement))


# ---------------------------------------------------------------------------
# Lease operations
# ---------------------------------------------------------------------------


def acquire_lease(engine: Engine, job_name: str, ttl: timedelta, now: datetime) -> str | None:
    """Atomically claim the lease for *job_name*.

    The upsert only overwrites an existing row whose lease was released or
    has expired; ``RETURNING`` yields a row only when this call wrote it.
    In the same transaction, records left running by a superseded holder
    are closed as failed and the new holder's record is opened.

    Returns:
        The new holder id, or None when another holder's lease is live.
    """
    holder_id = generate_holder_id()
    now_str = dt_to_str(now)

    with engine.begin() as conn:
        row = conn.execute(
            text(f"""
                INSERT INTO {LEASES_TABLE} (job_name, holder_id, acquired_at, expires_at, status, updated_at)
                VALUES (:job_name, :holder_id, :now, :expires_at, 'held', :now)
                ON CONFLICT (job_name) DO UPDATE SET
                    holder_id = excluded.holder_id,
                    acquired_at = excluded.acquired_at,
                    expires_at = excluded.expires_at,
                    status = 'held',
                    updated_at = excluded.updated_at
                WHERE {LEASES_TABLE}.status = 'released'
                   OR {LEASES_TABLE}.expires_at <= :now
                RETURNING holder_id
            """),
            {
                "job_name": job_name,
                "holder_id": holder_id,
                "now": now_str,
                "expires_at": dt_to_str(now + ttl),
            },
        ).first()

        if row is None:
            return None

        # Any record still running belongs to a holder whose lease expired
        conn.execute(
            text(f"""
                UPDATE {EXECUTIONS_TABLE}
                SET status = 'failed',
                    finished_at = :now,
                    error_message = 'lease expired'
                WHERE job_name = :job_name
                  AND status = 'running'
            """),
            {"job_name": job_name, "now": now_str},
        )
        conn.execute(
            text(f"""
                INSERT INTO {EXECUTIONS_TABLE} (execution_id, job_name, started_at, status)
                VALUES (:execution_id, :job_name, :started_at, 'running')
            """),
            {"execution_id": holder_id, "job_name": job_name, "started_at": now_str},
        )

    return holder_id


def release_lease(
    engine: Engine,
    job_name: str,
    holder_id: str,
    final_status: ExecutionStatus,
    error_message: str | None,
    now: datetime,
) -> bool:
    """Release the lease if *holder_id* still owns it and close its execution record.

    The execution record is closed even when the lease has expired, as long
    as no other holder has reclaimed it yet. After a reclaim the record was
    already closed as failed with ``lease expired``.

    Returns:
        True if the lease row was transitioned to released.
    """
    now_str = dt_to_str(now)
    if error_message:
        error_message = error_message[:MAX_ERROR_LENGTH]

    with engine.begin() as conn:
        released = conn.execute(
            text(f"""
                UPDATE {LEASES_TABLE}
                SET status = 'released',
                    updated_at = :now
                WHERE job_name = :job_name
                  AND holder_id = :holder_id
                  AND status = 'held'
            """),
            {"job_name": job_name, "holder_id": holder_id, "now": now_str},
        ).rowcount

        _close_execution(conn, holder_id, ExecutionStatus(final_status), error_message, now_str)

    return released > 0


def force_release_lease(engine: Engine, job_name: str, now: datetime) -> Lease | None:
    """Unconditionally release the lease for *job_name*, whoever holds it.

    The evicted holder's execution record, if still open, is closed as failed.

    Returns:
        The lease as it was before eviction, or None if nothing was held.
    """
    now_str = dt_to_str(now)

    with engine.begin() as conn:
        row = conn.execute(
            text(f"""
                UPDATE {LEASES_TABLE}
                SET status = 'released',
                    updated_at = :now
                WHERE job_name = :job_name
                  AND status = 'held'
                RETURNING job_name, holder_id, acquired_at, expires_at, 'held' AS status
            """),
            {"job_name": job_name, "now": now_str},
        ).first()

        evicted = _row_to_lease(row)
        if evicted is not None:
            _close_execution(conn, evicted.holder_id, ExecutionStatus.FAILED, "lease force-released", now_str)

    return evicted


def _close_execution(
    conn: Connection,
    execution_id: str,
    status: ExecutionStatus,
    error_message: str | None,
    now_str: str,
) -> int:
    return conn.execute(
        text(f"""
            UPDATE {EXECUTIONS_TABLE}
            SET status = :status,
                finished_at = :now,
                error_message = :error_message
            WHERE execution_id = :execution_id
              AND status = 'running'
        """),
        {
            "status": status.value,
            "now": now_str,
            "error_message": error_message,
            "execution_id": execution_id,
        },
    ).rowcount


# ---------------------------------------------------------------------------
# Queries
# ---------------------------------------------------------------------------

_LEASE_COLUMNS = "job_name, holder_id, acquired_at, expires_at, status"
_RECORD_COLUMNS = "execution_id, job_name, started_at, finished_at, status, error_message"


def is_locked(engine: Engine, job_name: str, now: datetime) -> bool:
    with engine.connect() as conn:
        row = conn.execute(
            text(f"""
                SELECT 1 FROM {LEASES_TABLE}
                WHERE job_name = :job_name
                  AND status = 'held'
                  AND expires_at > :now
            """),
            {"job_name": job_name, "now": dt_to_str(now)},
        ).fetchone()
    return row is not None


def get_lease(engine: Engine, job_name: str) -> Lease | None:
    with engine.connect() as conn:
        row = conn.execute(
            text(f"SELECT {_LEASE_COLUMNS} FROM {LEASES_TABLE} WHERE job_name = :job_name"),
            {"job_name": job_name},
        ).fetchone()
    return _row_to_lease(row)


def list_held_leases(engine: Engine, now: datetime | None = None) -> list[Lease]:
    """List leases in the held state.

    With *now*, only leases that have not expired are returned. Without it,
    expired-but-never-released rows are included too (used for stuck-run
    detection).
    """
    query = f"SELECT {_LEASE_COLUMNS} FROM {LEASES_TABLE} WHERE status = 'held'"
    params: dict[str, Any] = {}
    if now is not None:
        query += " AND expires_at > :now"
        params["now"] = dt_to_str(now)
    query += " ORDER BY acquired_at"

    with engine.connect() as conn:
        rows = conn.execute(text(query), params).fetchall()
    return [_row_to_lease(row) for row in rows]


def get_execution_record(engine: Engine, execution_id: str) -> ExecutionRecord | None:
    with engine.connect() as conn:
        row = conn.execute(
            text(f"SELECT {_RECORD_COLUMNS} FROM {EXECUTIONS_TABLE} WHERE execution_id = :execution_id"),
            {"execution_id": execution_id},
        ).fetchone()
    return _row_to_record(row)


def get_execution_history(engine: Engine, job_name: str | None = None, limit: int = 50) -> list[ExecutionRecord]:
    """Most recent execution records first, optionally for one job."""
    query = f"SELECT {_RECORD_COLUMNS} FROM {EXECUTIONS_TABLE}"
    params: dict[str, Any] = {"limit": limit}
    if job_name is not None:
        query += " WHERE job_name = :job_name"
        params["job_name"] = job_name
    query += " ORDER BY started_at DESC LIMIT :limit"

    with engine.connect() as conn:
        rows = conn.execute(text(query), params).fetchall()
    return [_row_to_record(row) for row in rows]


__all__ = [
    "EXECUTIONS_TABLE",
    "LEASES_TABLE",
    "ExecutionRecord",
    "ExecutionStatus",
    "Lease",
    "LeaseStatus",
    "acquire_lease",
    "dt_to_str",
    "ensure_schema",
    "force_release_lease",
    "generate_holder_id",
    "get_execution_history",
    "get_execution_record",
    "get_lease",
    "is_locked",
    "list_held_leases",
    "make_engine",
    "release_lease",
    "str_to_dt",
]
