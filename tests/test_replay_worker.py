import threading
from datetime import timedelta

from tapadmin.jobs import JobStatus, ReplayJobSnapshot
from tapadmin.registry import ReplayJobRegistry
from tapadmin.replay_worker import DEFAULT_JOB_TIMEOUT, ReplayRunner


class FakePublisher:
    def __init__(self) -> None:
        self.messages = []
        self.lock = threading.Lock()

    def publish_raw(self, subject, payload, dedup_id, request_id):
        with self.lock:
            self.messages.append((subject, payload, dedup_id, request_id))


class FakeDlq:
    def __init__(self, messages=(), error=None) -> None:
        self.messages = list(messages)
        self.error = error
        self.pending_calls = 0
        self.replay_calls = []

    def pending(self):
        self.pending_calls += 1
        if self.error is not None:
            raise self.error
        return len(self.messages)

    def replay(self, limit, publish, timeout):
        self.replay_calls.append((limit, timeout))
        if self.error is not None:
            raise self.error
        batch = self.messages[:limit]
        for subject, payload, dedup_id, request_id in batch:
            publish(subject, payload, dedup_id, request_id)
        return len(batch)


def _messages(count):
    return [(f"tap.events.{i}", f"payload-{i}".encode(), f"dedup-{i}", f"req-{i}") for i in range(count)]


def _queued(registry, limit, dry_run=False):
    base = ReplayJobSnapshot(requested_limit=limit, effective_limit=limit, max_limit=2000, dry_run=dry_run)
    return registry.create(base, "")


def test_dry_run_caps_pending_at_limit():
    registry = ReplayJobRegistry(16, timedelta(hours=1))
    dlq = FakeDlq(_messages(7))
    publisher = FakePublisher()
    runner = ReplayRunner(registry, dlq, publisher)
    job = _queued(registry, 5, dry_run=True)
    runner.submit(job.job_id, 5, True)
    assert runner.join(5.0)
    stored = registry.get(job.job_id)
    assert stored.status == JobStatus.SUCCEEDED
    assert stored.replayed == 5
    assert publisher.messages == []
    assert dlq.replay_calls == []


def test_dry_run_reports_pending_when_below_limit():
    registry = ReplayJobRegistry(16, timedelta(hours=1))
    dlq = FakeDlq(_messages(3))
    runner = ReplayRunner(registry, dlq, FakePublisher())
    job = _queued(registry, 10, dry_run=True)
    runner.submit(job.job_id, 10, True)
    assert runner.join(5.0)
    assert registry.get(job.job_id).replayed == len(dlq.messages)


def test_replay_publishes_through_publisher():
    registry = ReplayJobRegistry(16, timedelta(hours=1))
    messages = _messages(4)
    dlq = FakeDlq(messages)
    publisher = FakePublisher()
    stages = []
    runner = ReplayRunner(registry, dlq, publisher, job_timeout=12.5, observe=stages.append)
    job = _queued(registry, 10)
    runner.submit(job.job_id, 10, False, "primary", "203.0.113.10")
    assert runner.join(5.0)
    stored = registry.get(job.job_id)
    assert stored.status == JobStatus.SUCCEEDED
    assert stored.replayed == len(messages)
    assert publisher.messages == messages
    assert dlq.replay_calls == [(10, 12.5)]
    assert stages == ["succeeded"]


def test_default_timeout_when_not_positive():
    registry = ReplayJobRegistry(16, timedelta(hours=1))
    dlq = FakeDlq()
    runner = ReplayRunner(registry, dlq, FakePublisher(), job_timeout=0)
    job = _queued(registry, 1)
    runner.submit(job.job_id, 1, False)
    assert runner.join(5.0)
    assert dlq.replay_calls == [(1, DEFAULT_JOB_TIMEOUT)]
    assert runner.job_timeout == 300.0


def test_failure_marks_job_failed():
    registry = ReplayJobRegistry(16, timedelta(hours=1))
    dlq = FakeDlq(error=RuntimeError("nats unavailable"))
    stages = []
    runner = ReplayRunner(registry, dlq, FakePublisher(), observe=stages.append)
    job = _queued(registry, 5)
    runner.submit(job.job_id, 5, False)
    assert runner.join(5.0)
    stored = registry.get(job.job_id)
    assert stored.status == JobStatus.FAILED
    assert stored.error == "nats unavailable"
    assert stages == ["failed"]


def test_dry_run_failure_marks_job_failed():
    registry = ReplayJobRegistry(16, timedelta(hours=1))
    dlq = FakeDlq(error=RuntimeError("pending lookup failed"))
    runner = ReplayRunner(registry, dlq, FakePublisher())
    job = _queued(registry, 5, dry_run=True)
    runner.submit(job.job_id, 5, True)
    assert runner.join(5.0)
    stored = registry.get(job.job_id)
    assert stored.status == JobStatus.FAILED
    assert stored.error == "pending lookup failed"


def test_cancelled_job_is_not_run():
    registry = ReplayJobRegistry(16, timedelta(hours=1))
    dlq = FakeDlq(_messages(2))
    stages = []
    runner = ReplayRunner(registry, dlq, FakePublisher(), observe=stages.append)
    job = _queued(registry, 5)
    assert registry.cancel_queued(job.job_id, "abort").cancelled
    runner.submit(job.job_id, 5, False)
    assert runner.join(5.0)
    assert dlq.replay_calls == []
    assert registry.get(job.job_id).status == JobStatus.CANCELLED
    assert stages == []


class BlockingDlq:
    def __init__(self) -> None:
        self.release = threading.Event()
        self.started = threading.Event()
        self.active = 0
        self.peak = 0
        self.lock = threading.Lock()

    def pending(self):
        return 0

    def replay(self, limit, publish, timeout):
        with self.lock:
            self.active += 1
            self.peak = max(self.peak, self.active)
        self.started.set()
        self.release.wait(5.0)
        with self.lock:
            self.active -= 1
        return 0


def test_concurrency_is_bounded():
    registry = ReplayJobRegistry(16, timedelta(hours=1))
    dlq = BlockingDlq()
    runner = ReplayRunner(registry, dlq, FakePublisher(), max_concurrent=1)
    first = _queued(registry, 1)
    second = _queued(registry, 1)
    runner.submit(first.job_id, 1, False)
    runner.submit(second.job_id, 1, False)
    assert dlq.started.wait(5.0)
    assert runner.join(0.1) is False
    assert runner.in_flight == 1
    dlq.release.set()
    assert runner.join(5.0) is True
    assert dlq.peak == 1
    assert runner.in_flight == 0
    assert registry.get(first.job_id).status == JobStatus.SUCCEEDED
    assert registry.get(second.job_id).status == JobStatus.SUCCEEDED