"""Background execution of accepted replay jobs."""

from __future__ import annotations

import logging
import threading
import time
from collections.abc import Callable
from typing import Protocol

from tapadmin.registry import ReplayJobRegistry

DEFAULT_JOB_TIMEOUT = 5 * 60.0

PublishFn = Callable[[str, bytes, str, str], None]


class RawPublisher(Protocol):
    """Publishes an already-encoded message."""

    def publish_raw(self, subject: str, payload: bytes, dedup_id: str, request_id: str) -> None: ...


class DlqReplayer(Protocol):
    """A dead-letter queue that can count and replay its messages."""

    def pending(self) -> int: ...

    def replay(self, limit: int, publish: PublishFn, timeout: float) -> int: ...


class ReplayRunner:
    """Runs replay jobs on background threads, a bounded number at a time."""

    def __init__(
        self,
        registry: ReplayJobRegistry,
        dlq: DlqReplayer,
        publisher: RawPublisher,
        *,
        max_concurrent: int = 1,
        job_timeout: float = DEFAULT_JOB_TIMEOUT,
        logger: logging.Logger | None = None,
        observe: Callable[[str], None] | None = None,
    ) -> None:
        self.registry = registry
        self.dlq = dlq
        self.publisher = publisher
        self.max_concurrent = max_concurrent if max_concurrent > 0 else 1
        self.job_timeout = job_timeout if job_timeout > 0 else DEFAULT_JOB_TIMEOUT
        self._logger = logger or logging.getLogger(__name__)
        self._observe = observe
        self._slots = threading.BoundedSemaphore(self.max_concurrent)
        self._threads: list[threading.Thread] = []
        self._lock = threading.Lock()
        self._in_flight = 0

    @property
    def in_flight(self) -> int:
        """Number of jobs currently holding a run slot."""
        with self._lock:
            return self._in_flight

    def submit(
        self,
        job_id: str,
        limit: int,
        dry_run: bool,
        token_slot: str = "",
        request_ip: str = "",
    ) -> threading.Thread:
        """Start running a queued job in the background."""
        thread = threading.Thread(
            target=self._run,
            args=(job_id, limit, dry_run, token_slot, request_ip),
            name=f"replay-{job_id}",
            daemon=True,
        )
        with self._lock:
            self._threads = [t for t in self._threads if t.is_alive()]
            self._threads.append(thread)
        thread.start()
        return thread

    def join(self, timeout: float | None = None) -> bool:
        """Wait for submitted jobs; report whether all of them finished."""
        deadline = None if timeout is None else time.monotonic() + timeout
        with self._lock:
            threads = list(self._threads)
        for thread in threads:
            remaining = None if deadline is None else max(0.0, deadline - time.monotonic())
            thread.join(remaining)
        return not any(thread.is_alive() for thread in threads)

    def _stage(self, stage: str) -> None:
        if self._observe is not None:
            self._observe(stage)

    def _run(self, job_id: str, limit: int, dry_run: bool, token_slot: str, request_ip: str) -> None:
        with self._slots:
            with self._lock:
                self._in_flight += 1
            try:
                self._execute(job_id, limit, dry_run, token_slot, request_ip)
            finally:
                with self._lock:
                    self._in_flight -= 1

    def _execute(self, job_id: str, limit: int, dry_run: bool, token_slot: str, request_ip: str) -> None:
        if not self.registry.mark_running(job_id):
            return
        label = "dry-run" if dry_run else "job"
        try:
            if dry_run:
                replayed = min(self.dlq.pending(), limit)
            else:
                replayed = self.dlq.replay(limit, self.publisher.publish_raw, self.job_timeout)
        except Exception as exc:
            self.registry.mark_failed(job_id, str(exc))
            self._stage("failed")
            self._logger.error(
                "admin replay dlq %s failed job_id=%s token_slot=%s requester_ip=%s error=%s",
                label, job_id, token_slot, request_ip, exc,
            )
            return
        self.registry.mark_succeeded(job_id, replayed)
        self._stage("succeeded")
        self._logger.info(
            "admin replay dlq %s completed job_id=%s token_slot=%s requester_ip=%s replayed=%d",
            label, job_id, token_slot, request_ip, replayed,
        )