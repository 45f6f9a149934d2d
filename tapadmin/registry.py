"""Replay job registry held in memory, optionally backed by SQLite."""

from __future__ import annotations

import dataclasses
import logging
import re
import threading
from collections.abc import Callable
from dataclasses import dataclass, field
from datetime import datetime, timedelta, timezone

from tapadmin.jobs import JobStatus, ReplayJob, ReplayJobSnapshot
from tapadmin.params import DEFAULT_REPLAY_LIST_LIMIT, MAX_REPLAY_LIST_LIMIT, encode_cursor
from tapadmin.sqlite_store import ReplayJobStore

DEFAULT_MAX_JOBS = 512
DEFAULT_TTL = timedelta(hours=24)

Clock = Callable[[], datetime]

_EPOCH = datetime(1970, 1, 1, tzinfo=timezone.utc)
_MIN_TIME = datetime.min.replace(tzinfo=timezone.utc)
_UINT64_MAX = 2**64 - 1
_DIGITS = re.compile(r"[0-9]+\Z")


def _utcnow() -> datetime:
    return datetime.now(timezone.utc)


def _status_text(status: JobStatus | str) -> str:
    return status.value if isinstance(status, JobStatus) else str(status).strip()


def _as_ttl(ttl: timedelta | float | None) -> timedelta:
    if ttl is None:
        return DEFAULT_TTL
    value = ttl if isinstance(ttl, timedelta) else timedelta(seconds=float(ttl))
    return value if value > timedelta(0) else DEFAULT_TTL


def _unix_nanos(value: datetime) -> int:
    return ((value - _EPOCH) // timedelta(microseconds=1)) * 1000


def sequence_from_job_id(job_id: str) -> int:
    """Extract the trailing sequence number of a ``replay_<nanos>_<seq>`` id."""
    parts = (job_id or "").strip().split("_")
    if len(parts) < 3:
        return 0
    last = parts[-1].strip()
    if not _DIGITS.match(last):
        return 0
    value = int(last)
    return value if value <= _UINT64_MAX else 0


@dataclass(frozen=True)
class CreateMeta:
    """Who asked for a replay job and why."""

    operator_reason: str = ""
    creator_ip: str = ""
    creator_token_fingerprint: str = ""
    request_id: str = ""


@dataclass
class CreateOutcome:
    """Result of a guarded create: the job, or why none was created."""

    job: ReplayJobSnapshot | None
    reused: bool = False
    conflict: bool = False
    queue_conflict: bool = False
    queue_scope: str = ""
    queue_count: int = 0


@dataclass
class CancelOutcome:
    """Result of a cancellation attempt."""

    job: ReplayJobSnapshot | None
    found: bool
    cancelled: bool


@dataclass
class JobPage:
    """One page of listed jobs, per-status totals and the next page's cursor."""

    jobs: list[ReplayJobSnapshot] = field(default_factory=list)
    summary: dict[str, int] = field(default_factory=dict)
    next_cursor: str = ""


def _empty_summary() -> dict[str, int]:
    return {status.value: 0 for status in JobStatus}


def _comes_after_cursor(candidate: ReplayJobSnapshot, created_at: datetime, job_id: str) -> bool:
    candidate_time = candidate.created_at or _MIN_TIME
    if candidate_time < created_at:
        return True
    if candidate_time > created_at:
        return False
    return candidate.job_id.strip() < job_id.strip()


class ReplayJobRegistry:
    """Replay jobs indexed by id and idempotency key, expired by age and count."""

    def __init__(
        self,
        max_jobs: int = DEFAULT_MAX_JOBS,
        ttl: timedelta | float | None = DEFAULT_TTL,
        *,
        store: ReplayJobStore | None = None,
        logger: logging.Logger | None = None,
        clock: Clock = _utcnow,
    ) -> None:
        self.max_jobs = max_jobs if max_jobs > 0 else DEFAULT_MAX_JOBS
        self.ttl = _as_ttl(ttl)
        self._logger = logger or logging.getLogger(__name__)
        self._clock = clock
        self._store = store
        self._jobs: dict[str, ReplayJob] = {}
        self._by_idempotency: dict[str, str] = {}
        self._sequence = 0
        self._lock = threading.Lock()
        if store is not None:
            self._load_from_store(store)

    def _load_from_store(self, store: ReplayJobStore) -> None:
        try:
            loaded = store.load()
        except BaseException:
            store.close()
            raise
        for job in loaded:
            job_id = job.snapshot.job_id.strip()
            if not job_id:
                continue
            self._jobs[job_id] = job
            if job.idempotency_key:
                self._by_idempotency[job.idempotency_key] = job_id
            self._sequence = max(self._sequence, sequence_from_job_id(job_id))
        with self._lock:
            self._cleanup(self._now())

    def __enter__(self) -> ReplayJobRegistry:
        return self

    def __exit__(self, *args: object) -> None:
        self.close()

    def __len__(self) -> int:
        with self._lock:
            return len(self._jobs)

    def _now(self) -> datetime:
        now = self._clock()
        if now.tzinfo is None:
            now = now.replace(tzinfo=timezone.utc)
        return now.astimezone(timezone.utc)

    def close(self) -> None:
        """Close the backing store, if any."""
        if self._store is not None:
            self._store.close()

    def create(self, base: ReplayJobSnapshot, idempotency_key: str = "") -> ReplayJobSnapshot | None:
        """Create a job (or return the one bound to the idempotency key)."""
        return self.get_or_create_with_guards(base, CreateMeta(), idempotency_key, 0, 0).job

    def get_or_create(self, base: ReplayJobSnapshot, idempotency_key: str = "") -> CreateOutcome:
        """Create a job unless the idempotency key already names one."""
        return self.get_or_create_with_guards(base, CreateMeta(), idempotency_key, 0, 0)

    def get_or_create_with_guards(
        self,
        base: ReplayJobSnapshot,
        meta: CreateMeta | None = None,
        idempotency_key: str = "",
        max_queued_per_ip: int = 0,
        max_queued_per_token: int = 0,
    ) -> CreateOutcome:
        """Create a queued job, honouring idempotency and per-caller queue limits."""
        meta = meta or CreateMeta()
        operator_reason = meta.operator_reason.strip()
        creator_ip = meta.creator_ip.strip()
        creator_token = meta.creator_token_fingerprint.strip()
        request_id = meta.request_id.strip()
        idempotency_key = (idempotency_key or "").strip()
        now = self._now()
        with self._lock:
            self._cleanup(now)
            if idempotency_key:
                existing = self._find_by_idempotency(idempotency_key)
                if existing is not None:
                    snapshot = dataclasses.replace(existing.snapshot)
                    if snapshot.same_request(base):
                        return CreateOutcome(snapshot, reused=True)
                    return CreateOutcome(snapshot, conflict=True)
            if max_queued_per_ip > 0:
                count = self._count_queued(lambda job: bool(creator_ip) and job.creator_ip == creator_ip)
                if count >= max_queued_per_ip:
                    return CreateOutcome(None, queue_conflict=True, queue_scope="ip", queue_count=count)
            if max_queued_per_token > 0 and creator_token:
                count = self._count_queued(lambda job: job.creator_token_fingerprint == creator_token)
                if count >= max_queued_per_token:
                    return CreateOutcome(None, queue_conflict=True, queue_scope="token", queue_count=count)
            self._sequence += 1
            job_id = f"replay_{_unix_nanos(now)}_{self._sequence}"
            snapshot = dataclasses.replace(
                base,
                job_id=job_id,
                status=JobStatus.QUEUED,
                created_at=now,
                operator_reason=operator_reason,
                request_id=request_id,
            )
            job = ReplayJob(
                snapshot=snapshot,
                idempotency_key=idempotency_key,
                creator_ip=creator_ip,
                creator_token_fingerprint=creator_token,
                updated_at=now,
            )
            self._jobs[job_id] = job
            if idempotency_key:
                self._by_idempotency[idempotency_key] = job_id
            self._persist(job)
            return CreateOutcome(dataclasses.replace(snapshot))

    def get(self, job_id: str) -> ReplayJobSnapshot | None:
        """Return a copy of the job's snapshot, or ``None`` if unknown."""
        job_id = (job_id or "").strip()
        if not job_id:
            return None
        now = self._now()
        with self._lock:
            self._cleanup(now)
            job = self._jobs.get(job_id)
            return None if job is None else dataclasses.replace(job.snapshot)

    def get_by_idempotency_key(self, key: str) -> ReplayJobSnapshot | None:
        """Return the job bound to an idempotency key, or ``None``."""
        key = (key or "").strip()
        if not key:
            return None
        now = self._now()
        with self._lock:
            self._cleanup(now)
            job = self._find_by_idempotency(key)
            return None if job is None else dataclasses.replace(job.snapshot)

    def list_jobs(
        self,
        status_filter: JobStatus | str | None = None,
        limit: int = DEFAULT_REPLAY_LIST_LIMIT,
        cursor_created_at: datetime | None = None,
        cursor_job_id: str = "",
    ) -> JobPage:
        """List jobs newest first, optionally filtered by status and paged by cursor."""
        wanted = "" if status_filter is None else _status_text(status_filter).lower()
        cursor_job_id = (cursor_job_id or "").strip()
        if limit <= 0:
            limit = DEFAULT_REPLAY_LIST_LIMIT
        limit = min(limit, MAX_REPLAY_LIST_LIMIT)
        summary = _empty_summary()
        now = self._now()
        with self._lock:
            self._cleanup(now)
            snapshots: list[ReplayJobSnapshot] = []
            for job in self._jobs.values():
                status = _status_text(job.snapshot.status)
                if status in summary:
                    summary[status] += 1
                if wanted and status != wanted:
                    continue
                snapshots.append(dataclasses.replace(job.snapshot))
        snapshots.sort(key=lambda snap: (snap.created_at or _MIN_TIME, snap.job_id), reverse=True)
        if cursor_created_at is not None and cursor_job_id:
            snapshots = [
                snap for snap in snapshots if _comes_after_cursor(snap, cursor_created_at, cursor_job_id)
            ]
        next_cursor = ""
        if len(snapshots) > limit:
            snapshots = snapshots[:limit]
            last = snapshots[-1]
            next_cursor = encode_cursor(last.created_at, last.job_id)
        return JobPage(snapshots, summary, next_cursor)

    def mark_running(self, job_id: str) -> bool:
        """Move a queued job to running; report whether it moved."""
        job_id = (job_id or "").strip()
        if not job_id:
            return False
        now = self._now()
        with self._lock:
            self._cleanup(now)
            job = self._jobs.get(job_id)
            if job is None or job.snapshot.status != JobStatus.QUEUED:
                return False
            job.snapshot.status = JobStatus.RUNNING
            job.snapshot.started_at = now
            job.updated_at = now
            self._persist(job)
            return True

    def mark_succeeded(self, job_id: str, replayed: int) -> None:
        """Record a successful run and how many messages it replayed."""

        def mutate(snapshot: ReplayJobSnapshot, now: datetime) -> None:
            snapshot.status = JobStatus.SUCCEEDED
            snapshot.replayed = replayed
            snapshot.completed_at = now
            snapshot.error = ""

        self._update(job_id, mutate)

    def mark_failed(self, job_id: str, message: str) -> None:
        """Record a failed run with its error message."""

        def mutate(snapshot: ReplayJobSnapshot, now: datetime) -> None:
            snapshot.status = JobStatus.FAILED
            snapshot.completed_at = now
            snapshot.error = (message or "").strip()

        self._update(job_id, mutate)

    def cancel_queued(self, job_id: str, reason: str = "") -> CancelOutcome:
        """Cancel a job that has not started yet."""
        job_id = (job_id or "").strip()
        reason = (reason or "").strip()
        if not job_id:
            return CancelOutcome(None, False, False)
        now = self._now()
        with self._lock:
            self._cleanup(now)
            job = self._jobs.get(job_id)
            if job is None:
                return CancelOutcome(None, False, False)
            if job.snapshot.status != JobStatus.QUEUED:
                return CancelOutcome(dataclasses.replace(job.snapshot), True, False)
            job.snapshot.status = JobStatus.CANCELLED
            job.snapshot.completed_at = now
            job.snapshot.cancel_reason = reason
            job.snapshot.error = (
                f"cancelled by operator: {reason}" if reason else "cancelled by operator"
            )
            job.updated_at = now
            self._persist(job)
            return CancelOutcome(dataclasses.replace(job.snapshot), True, True)

    def _update(self, job_id: str, mutate: Callable[[ReplayJobSnapshot, datetime], None]) -> None:
        job_id = (job_id or "").strip()
        if not job_id:
            return
        now = self._now()
        with self._lock:
            self._cleanup(now)
            job = self._jobs.get(job_id)
            if job is None:
                return
            mutate(job.snapshot, now)
            job.updated_at = now
            self._persist(job)

    def _find_by_idempotency(self, key: str) -> ReplayJob | None:
        job_id = self._by_idempotency.get(key)
        return None if job_id is None else self._jobs.get(job_id)

    def _count_queued(self, predicate: Callable[[ReplayJob], bool]) -> int:
        return sum(
            1 for job in self._jobs.values() if job.snapshot.status == JobStatus.QUEUED and predicate(job)
        )

    def _persist(self, job: ReplayJob) -> None:
        if self._store is None:
            return
        try:
            self._store.upsert(job)
        except Exception as exc:  # persistence failures must not break the registry
            self._logger.warning("persist admin replay job %s: %s", job.snapshot.job_id, exc)

    def _forget(self, job_id: str) -> None:
        job = self._jobs.pop(job_id, None)
        if job is not None and job.idempotency_key:
            self._by_idempotency.pop(job.idempotency_key, None)
        if self._store is None:
            return
        try:
            self._store.delete(job_id)
        except Exception as exc:  # persistence failures must not break the registry
            self._logger.warning("delete persisted admin replay job %s: %s", job_id, exc)

    def _cleanup(self, now: datetime) -> None:
        cutoff = now - self.ttl
        expired = [
            job_id
            for job_id, job in self._jobs.items()
            if job.updated_at is None or job.updated_at < cutoff
        ]
        for job_id in expired:
            self._forget(job_id)
        while len(self._jobs) > self.max_jobs:
            oldest = min(self._jobs, key=lambda job_id: self._jobs[job_id].updated_at or _MIN_TIME)
            self._forget(oldest)


def open_registry(
    max_jobs: int = DEFAULT_MAX_JOBS,
    ttl: timedelta | float | None = DEFAULT_TTL,
    backend: str = "memory",
    sqlite_path: str = "",
    logger: logging.Logger | None = None,
) -> ReplayJobRegistry:
    """Build a registry for the named backend: ``memory`` or ``sqlite``."""
    kind = (backend or "").strip().lower()
    if kind in ("", "memory"):
        return ReplayJobRegistry(max_jobs, ttl, logger=logger)
    if kind == "sqlite":
        store = ReplayJobStore(sqlite_path)
        return ReplayJobRegistry(max_jobs, ttl, store=store, logger=logger)
    raise ValueError(f"unsupported admin replay registry backend {backend!r}")