"""SQLite persistence for replay jobs."""

from __future__ import annotations

import contextlib
import os
import sqlite3
import threading
from datetime import datetime, timezone
from typing import Any

from tapadmin.jobs import (
    ZERO_TIME_TEXT,
    JobStatus,
    ReplayJob,
    ReplayJobSnapshot,
    format_rfc3339,
    parse_rfc3339,
)

SCHEMA_VERSION = 2

_MIGRATIONS: dict[int, tuple[str, ...]] = {
    1: (
        """CREATE TABLE IF NOT EXISTS admin_replay_jobs (
            job_id TEXT PRIMARY KEY,
            status TEXT NOT NULL,
            requested_limit INTEGER NOT NULL,
            effective_limit INTEGER NOT NULL,
            max_limit INTEGER NOT NULL,
            capped INTEGER NOT NULL,
            dry_run INTEGER NOT NULL,
            created_at TEXT NOT NULL,
            started_at TEXT,
            completed_at TEXT,
            replayed INTEGER NOT NULL,
            operator_reason TEXT,
            cancel_reason TEXT,
            error TEXT,
            idempotency_key TEXT,
            creator_ip TEXT,
            creator_token_fingerprint TEXT,
            updated_at TEXT NOT NULL
        )""",
        "CREATE INDEX IF NOT EXISTS idx_admin_replay_jobs_status ON admin_replay_jobs(status)",
        "CREATE INDEX IF NOT EXISTS idx_admin_replay_jobs_updated_at ON admin_replay_jobs(updated_at)",
        "CREATE INDEX IF NOT EXISTS idx_admin_replay_jobs_idempotency ON admin_replay_jobs(idempotency_key)",
    ),
    2: ("ALTER TABLE admin_replay_jobs ADD COLUMN request_id TEXT",),
}

_PRAGMAS = (
    "PRAGMA journal_mode = WAL",
    "PRAGMA synchronous = NORMAL",
    "PRAGMA busy_timeout = 5000",
    "PRAGMA foreign_keys = ON",
)

_COLUMNS = (
    "job_id",
    "status",
    "requested_limit",
    "effective_limit",
    "max_limit",
    "capped",
    "dry_run",
    "created_at",
    "started_at",
    "completed_at",
    "replayed",
    "request_id",
    "operator_reason",
    "cancel_reason",
    "error",
    "idempotency_key",
    "creator_ip",
    "creator_token_fingerprint",
    "updated_at",
)

_SELECT = f"SELECT {', '.join(_COLUMNS)} FROM admin_replay_jobs"
_UPSERT = (
    f"INSERT INTO admin_replay_jobs ({', '.join(_COLUMNS)}) "
    f"VALUES ({', '.join('?' for _ in _COLUMNS)}) "
    "ON CONFLICT(job_id) DO UPDATE SET "
    + ", ".join(f"{column}=excluded.{column}" for column in _COLUMNS[1:])
)

_ZERO_TIME = datetime(1, 1, 1, tzinfo=timezone.utc)


def _text(value: Any) -> str:
    return "" if value is None else str(value).strip()


def _nullable(value: str) -> str | None:
    return (value or "").strip() or None


def _parse_timestamp(raw: Any) -> datetime | None:
    text = _text(raw)
    if not text:
        return None
    parsed = parse_rfc3339(text)
    return None if parsed == _ZERO_TIME else parsed


def _format_optional(value: datetime | None) -> str | None:
    return None if value is None else format_rfc3339(value)


def _status(raw: str) -> JobStatus | str:
    try:
        return JobStatus(raw)
    except ValueError:
        return raw


class ReplayJobStore:
    """Replay jobs kept in a SQLite database file."""

    def __init__(self, path: str | os.PathLike[str]) -> None:
        text = str(os.fspath(path)).strip() if path is not None else ""
        if not text:
            raise ValueError("admin replay sqlite path is required")
        directory = os.path.dirname(text)
        if directory and directory != ".":
            os.makedirs(directory, mode=0o750, exist_ok=True)
        self._lock = threading.Lock()
        self._conn: sqlite3.Connection | None = sqlite3.connect(
            text, check_same_thread=False, isolation_level=None
        )
        try:
            self._apply_pragmas()
            self._apply_migrations()
        except BaseException:
            self._conn.close()
            self._conn = None
            raise

    def _connection(self) -> sqlite3.Connection:
        if self._conn is None:
            raise RuntimeError("admin replay sqlite store is not initialized")
        return self._conn

    def _apply_pragmas(self) -> None:
        conn = self._connection()
        for statement in _PRAGMAS:
            conn.execute(statement).fetchall()

    def _apply_migrations(self) -> None:
        conn = self._connection()
        current = conn.execute("PRAGMA user_version").fetchone()[0]
        for version in range(current + 1, SCHEMA_VERSION + 1):
            statements = _MIGRATIONS.get(version)
            if statements is None:
                raise RuntimeError(f"missing admin replay sqlite migration for version {version}")
            conn.execute("BEGIN")
            try:
                for statement in statements:
                    try:
                        conn.execute(statement)
                    except sqlite3.OperationalError as exc:
                        if version == 2 and "duplicate column name" in str(exc).lower():
                            continue
                        raise
                conn.execute(f"PRAGMA user_version = {version}")
                conn.execute("COMMIT")
            except BaseException:
                with contextlib.suppress(sqlite3.Error):
                    conn.execute("ROLLBACK")
                raise

    def load(self) -> list[ReplayJob]:
        """Read every stored replay job."""
        with self._lock:
            rows = self._connection().execute(_SELECT).fetchall()
        return [self._row_to_job(row) for row in rows]

    @staticmethod
    def _row_to_job(row: tuple[Any, ...]) -> ReplayJob:
        record = dict(zip(_COLUMNS, row))
        job_id = _text(record["job_id"])
        parsed: dict[str, datetime | None] = {}
        for column in ("created_at", "updated_at", "started_at", "completed_at"):
            try:
                parsed[column] = _parse_timestamp(record[column])
            except ValueError as exc:
                raise ValueError(f"parse {column} for replay job {job_id!r}: {exc}") from exc
        snapshot = ReplayJobSnapshot(
            job_id=job_id,
            status=_status(_text(record["status"])),
            requested_limit=int(record["requested_limit"]),
            effective_limit=int(record["effective_limit"]),
            max_limit=int(record["max_limit"]),
            capped=int(record["capped"]) != 0,
            dry_run=int(record["dry_run"]) != 0,
            created_at=parsed["created_at"],
            started_at=parsed["started_at"],
            completed_at=parsed["completed_at"],
            replayed=int(record["replayed"]),
            request_id=_text(record["request_id"]),
            operator_reason=_text(record["operator_reason"]),
            cancel_reason=_text(record["cancel_reason"]),
            error=_text(record["error"]),
        )
        return ReplayJob(
            snapshot=snapshot,
            idempotency_key=_text(record["idempotency_key"]),
            creator_ip=_text(record["creator_ip"]),
            creator_token_fingerprint=_text(record["creator_token_fingerprint"]),
            updated_at=parsed["updated_at"],
        )

    def upsert(self, job: ReplayJob | None) -> None:
        """Insert the job or replace the stored row with the same id."""
        if job is None:
            return
        snapshot = job.snapshot
        status = snapshot.status.value if isinstance(snapshot.status, JobStatus) else str(snapshot.status)
        values = (
            snapshot.job_id.strip(),
            status.strip(),
            snapshot.requested_limit,
            snapshot.effective_limit,
            snapshot.max_limit,
            int(snapshot.capped),
            int(snapshot.dry_run),
            _format_optional(snapshot.created_at) or ZERO_TIME_TEXT,
            _format_optional(snapshot.started_at),
            _format_optional(snapshot.completed_at),
            snapshot.replayed,
            _nullable(snapshot.request_id),
            _nullable(snapshot.operator_reason),
            _nullable(snapshot.cancel_reason),
            _nullable(snapshot.error),
            _nullable(job.idempotency_key),
            _nullable(job.creator_ip),
            _nullable(job.creator_token_fingerprint),
            _format_optional(job.updated_at) or ZERO_TIME_TEXT,
        )
        with self._lock:
            self._connection().execute(_UPSERT, values)

    def delete(self, job_id: str) -> None:
        """Remove a stored job; blank ids are ignored."""
        job_id = (job_id or "").strip()
        if not job_id:
            return
        with self._lock:
            self._connection().execute("DELETE FROM admin_replay_jobs WHERE job_id = ?", (job_id,))

    def close(self) -> None:
        """Close the database; further calls do nothing."""
        with self._lock:
            if self._conn is not None:
                self._conn.close()
                self._conn = None

    def __enter__(self) -> ReplayJobStore:
        return self

    def __exit__(self, *args: object) -> None:
        self.close()