import logging
import threading
from datetime import datetime, timedelta, timezone

import pytest

from tapadmin.jobs import JobStatus, ReplayJobSnapshot
from tapadmin.params import parse_cursor
from tapadmin.registry import (
    CreateMeta,
    ReplayJobRegistry,
    open_registry,
    sequence_from_job_id,
)


class FakeClock:
    def __init__(self) -> None:
        self.now = datetime(2024, 5, 1, 12, 0, 0, tzinfo=timezone.utc)

    def __call__(self) -> datetime:
        return self.now

    def advance(self, delta: timedelta) -> None:
        self.now += delta


def _base(limit=10, dry_run=False):
    return ReplayJobSnapshot(
        requested_limit=limit, effective_limit=limit, max_limit=2000, capped=False, dry_run=dry_run
    )


def test_get_or_create_idempotent_under_concurrency():
    registry = ReplayJobRegistry(128, timedelta(hours=1))
    base = _base(10, dry_run=True)
    workers = 24
    results = [None] * workers
    barrier = threading.Barrier(workers)

    def work(index):
        barrier.wait()
        results[index] = registry.get_or_create(base, "idem-replay-atomic")

    threads = [threading.Thread(target=work, args=(i,)) for i in range(workers)]
    for thread in threads:
        thread.start()
    for thread in threads:
        thread.join()

    first_id = results[0].job.job_id
    assert first_id
    assert all(not outcome.conflict for outcome in results)
    assert {outcome.job.job_id for outcome in results} == {first_id}
    assert sum(1 for outcome in results if not outcome.reused) == 1
    assert sum(1 for outcome in results if outcome.reused) == workers - 1
    assert registry.get_by_idempotency_key("idem-replay-atomic").job_id == first_id


def test_get_or_create_conflict_keeps_original():
    registry = ReplayJobRegistry(128, timedelta(hours=1))
    initial = registry.get_or_create(_base(10, dry_run=True), "idem-replay-conflict")
    assert not initial.reused and not initial.conflict

    nxt = registry.get_or_create(_base(10, dry_run=False), "idem-replay-conflict")
    assert nxt.conflict and not nxt.reused
    assert nxt.job.job_id == initial.job.job_id

    stored = registry.get(initial.job.job_id)
    assert stored is not None and stored.dry_run is True


def test_expired_jobs_are_pruned_on_read():
    clock = FakeClock()
    registry = ReplayJobRegistry(32, timedelta(milliseconds=20), clock=clock)
    base = _base(1, dry_run=True)
    old = registry.get_or_create(base, "idem-replay-expired")
    assert not old.reused and not old.conflict

    clock.advance(timedelta(milliseconds=80))
    assert registry.get(old.job.job_id) is None
    assert registry.get_by_idempotency_key("idem-replay-expired") is None

    new = registry.get_or_create(base, "idem-replay-expired")
    assert not new.reused and not new.conflict
    assert new.job.job_id != old.job.job_id


def test_max_jobs_evicts_oldest():
    clock = FakeClock()
    registry = ReplayJobRegistry(2, timedelta(hours=1), clock=clock)
    ids = []
    for _ in range(3):
        ids.append(registry.create(_base(), "").job_id)
        clock.advance(timedelta(seconds=1))
    assert registry.get(ids[0]) is None
    assert registry.get(ids[1]) is not None
    assert registry.get(ids[2]) is not None
    assert len(registry) == 2


def test_list_filters_summarises_and_pages():
    clock = FakeClock()
    registry = ReplayJobRegistry(128, timedelta(hours=1), clock=clock)
    first = registry.get_or_create(_base(5), "idem-list-1").job
    clock.advance(timedelta(milliseconds=5))
    second = registry.get_or_create(_base(5), "idem-list-2").job
    registry.mark_succeeded(first.job_id, 3)
    registry.mark_failed(second.job_id, "replay error")

    page = registry.list_jobs(None, 10)
    assert len(page.jobs) == 2
    assert page.next_cursor == ""
    assert page.summary["succeeded"] == 1 and page.summary["failed"] == 1

    succeeded = registry.list_jobs(JobStatus.SUCCEEDED, 10)
    assert [job.job_id for job in succeeded.jobs] == [first.job_id]
    assert succeeded.summary["succeeded"] == 1 and succeeded.summary["failed"] == 1

    limited = registry.list_jobs(None, 1)
    assert len(limited.jobs) == 1
    assert limited.jobs[0].job_id == second.job_id
    assert limited.next_cursor.strip()

    cursor_time, cursor_id = parse_cursor(limited.next_cursor)
    second_page = registry.list_jobs(None, 1, cursor_time, cursor_id)
    assert len(second_page.jobs) == 1
    assert second_page.jobs[0].job_id == first.job_id
    assert second_page.next_cursor == ""


def test_list_rejects_nothing_for_string_filter():
    registry = ReplayJobRegistry(128, timedelta(hours=1))
    job = registry.create(_base(), "")
    page = registry.list_jobs(" QUEUED ", 10)
    assert [snap.job_id for snap in page.jobs] == [job.job_id]


def test_cancel_queued():
    registry = ReplayJobRegistry(128, timedelta(hours=1))
    queued = registry.get_or_create(_base(2), "idem-cancel-queued").job
    outcome = registry.cancel_queued(queued.job_id, "manual abort")
    assert outcome.found and outcome.cancelled
    assert outcome.job.status == JobStatus.CANCELLED
    assert outcome.job.error == "cancelled by operator: manual abort"
    assert outcome.job.cancel_reason == "manual abort"
    assert registry.mark_running(queued.job_id) is False

    running = registry.get_or_create(_base(2), "idem-cancel-running").job
    assert registry.mark_running(running.job_id) is True
    outcome = registry.cancel_queued(running.job_id, "manual abort")
    assert outcome.found and not outcome.cancelled
    assert outcome.job.status == JobStatus.RUNNING

    missing = registry.cancel_queued("missing-job-id", "manual abort")
    assert not missing.found and not missing.cancelled


def test_cancel_without_reason():
    registry = ReplayJobRegistry(128, timedelta(hours=1))
    job = registry.create(_base(), "")
    outcome = registry.cancel_queued(job.job_id, "  ")
    assert outcome.job.error == "cancelled by operator"
    assert outcome.job.cancel_reason == ""


def test_queue_guards_by_ip_and_token():
    base = _base(5)
    registry_ip = ReplayJobRegistry(128, timedelta(hours=1))
    first = registry_ip.get_or_create_with_guards(
        base, CreateMeta(creator_ip="203.0.113.10", creator_token_fingerprint="tok-a"), "", 1, 0
    )
    assert not first.reused and not first.conflict and not first.queue_conflict
    blocked = registry_ip.get_or_create_with_guards(
        base, CreateMeta(creator_ip="203.0.113.10", creator_token_fingerprint="tok-b"), "", 1, 0
    )
    assert blocked.queue_conflict
    assert blocked.queue_scope == "ip"
    assert blocked.queue_count == 1
    assert blocked.job is None

    registry_token = ReplayJobRegistry(128, timedelta(hours=1))
    first = registry_token.get_or_create_with_guards(
        base, CreateMeta(creator_ip="198.51.100.20", creator_token_fingerprint="tok-z"), "", 0, 1
    )
    assert not first.reused and not first.conflict and not first.queue_conflict
    blocked = registry_token.get_or_create_with_guards(
        base, CreateMeta(creator_ip="198.51.100.21", creator_token_fingerprint="tok-z"), "", 0, 1
    )
    assert blocked.queue_conflict
    assert blocked.queue_scope == "token"
    assert blocked.queue_count == 1


def test_mark_running_transitions_only_once():
    registry = ReplayJobRegistry(128, timedelta(hours=1))
    job = registry.create(_base(), "")
    assert registry.mark_running(job.job_id) is True
    assert registry.mark_running(job.job_id) is False
    stored = registry.get(job.job_id)
    assert stored.status == JobStatus.RUNNING
    assert stored.started_at is not None


def test_returned_snapshot_is_a_copy():
    registry = ReplayJobRegistry(128, timedelta(hours=1))
    job = registry.create(_base(), "")
    job.status = JobStatus.FAILED
    assert registry.get(job.job_id).status == JobStatus.QUEUED


@pytest.mark.parametrize(
    ("job_id", "expected"),
    [
        ("replay_1730800000000000000_1", 1),
        ("replay_1730800000000000000_42", 42),
        ("replay", 0),
        ("replay_1", 0),
        ("replay_1_x", 0),
        ("replay_1_-3", 0),
        ("", 0),
    ],
)
def test_sequence_from_job_id(job_id, expected):
    assert sequence_from_job_id(job_id) == expected


def test_open_registry_rejects_unknown_backend():
    with pytest.raises(ValueError, match="unsupported"):
        open_registry(10, timedelta(hours=1), "redis", "", None)


def test_sqlite_registry_persists_across_restart(tmp_path):
    db_path = str(tmp_path / "admin-replay.db")
    logger = logging.getLogger("test-registry")

    registry = open_registry(128, timedelta(hours=1), "sqlite", db_path, logger)
    base = _base(3)
    queued = registry.get_or_create_with_guards(
        base,
        CreateMeta(
            operator_reason="replay after incident review",
            creator_ip="203.0.113.15",
            creator_token_fingerprint="token-fp-a",
        ),
        "sqlite-idem-1",
        0,
        0,
    )
    assert not queued.reused and not queued.conflict and not queued.queue_conflict
    assert registry.mark_running(queued.job.job_id)
    registry.mark_succeeded(queued.job.job_id, 3)

    cancel_queued = registry.get_or_create_with_guards(
        _base(2, dry_run=True),
        CreateMeta(
            operator_reason="queue sanity check",
            creator_ip="203.0.113.16",
            creator_token_fingerprint="token-fp-b",
        ),
        "sqlite-idem-2",
        0,
        0,
    )
    assert not cancel_queued.reused and not cancel_queued.conflict
    cancelled = registry.cancel_queued(cancel_queued.job.job_id, "operator aborted queue")
    assert cancelled.found and cancelled.cancelled
    assert cancelled.job.cancel_reason == "operator aborted queue"
    registry.close()

    with open_registry(128, timedelta(hours=1), "sqlite", db_path, logger) as restored:
        loaded = restored.get(queued.job.job_id)
        assert loaded is not None
        assert loaded.status == JobStatus.SUCCEEDED and loaded.replayed == 3
        assert loaded.operator_reason == "replay after incident review"
        assert restored.get_by_idempotency_key("sqlite-idem-1").job_id == queued.job.job_id

        cancelled_loaded = restored.get(cancel_queued.job.job_id)
        assert cancelled_loaded.status == JobStatus.CANCELLED
        assert cancelled_loaded.cancel_reason == "operator aborted queue"
        assert "cancelled" in cancelled_loaded.error

        nxt = restored.get_or_create_with_guards(
            base,
            CreateMeta(
                operator_reason="follow-up replay",
                creator_ip="203.0.113.17",
                creator_token_fingerprint="token-fp-c",
            ),
            "sqlite-idem-3",
            0,
            0,
        )
        assert not nxt.reused and not nxt.conflict and not nxt.queue_conflict
        assert nxt.job.job_id not in (queued.job.job_id, cancel_queued.job.job_id)
        assert sequence_from_job_id(nxt.job.job_id) > sequence_from_job_id(cancel_queued.job.job_id)