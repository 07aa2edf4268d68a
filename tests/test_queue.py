import threading
import time

import pytest

from judgebox.core.errors import QueueNotFound, ServiceUnavailable, StoreUnavailable
from judgebox.core.models import JobState
from judgebox.services.job_store import InMemoryJobStore
from judgebox.services.queue import JobQueue, QueueManager
from judgebox.settings import QueueConfig, Settings


def make_queue(processor, clock=None, name="execution", **config):
    kw = {"poll_interval_ms": 10}
    if clock is not None:
        kw["clock"] = clock
    return JobQueue(name, InMemoryJobStore(), processor, QueueConfig(**config), **kw)


def run_next(q):
    entry = q.store.claim_next(q.name, q.clock())
    assert entry is not None
    q.process(entry)
    return q.get(entry.job_id)


def wait_for(predicate, timeout=5.0):
    deadline = time.monotonic() + timeout
    while time.monotonic() < deadline:
        if predicate():
            return True
        time.sleep(0.01)
    return False


def test_higher_priority_dispatched_first():
    order = []

    def proc(ctx):
        order.append(ctx.job_id)
        return {}

    q = make_queue(proc, concurrency=1)
    q.add({}, priority=0, job_id="low-1")
    q.add({}, priority=10, job_id="high")
    q.add({}, priority=0, job_id="low-2")
    q.start()
    try:
        assert wait_for(lambda: len(order) == 3)
    finally:
        q.stop(5)
    assert order == ["high", "low-1", "low-2"]


def test_concurrency_is_bounded():
    running = []
    peak = []
    lock = threading.Lock()
    release = threading.Event()

    def proc(ctx):
        with lock:
            running.append(ctx.job_id)
            peak.append(len(running))
        release.wait(5)
        with lock:
            running.remove(ctx.job_id)
        return {}

    q = make_queue(proc, concurrency=2)
    for i in range(5):
        q.add({}, job_id=f"j{i}")
    q.start()
    try:
        assert wait_for(lambda: len(peak) >= 2)
        time.sleep(0.1)
        assert q.stats()["active"] == 2
        assert q.stats()["waiting"] == 3
        release.set()
        assert wait_for(lambda: q.stats()["completed"] == 5)
    finally:
        release.set()
        q.stop(5)
    assert max(peak) == 2


def test_paused_queue_holds_jobs_until_resumed():
    done = threading.Event()
    q = make_queue(lambda ctx: done.set() or {})
    q.pause()
    q.start()
    try:
        q.add({}, job_id="j")
        time.sleep(0.1)
        assert q.get("j").state is JobState.WAITING
        q.resume()
        assert done.wait(5)
    finally:
        q.stop(5)


def test_stop_lets_inflight_job_finish():
    started = threading.Event()

    def proc(ctx):
        started.set()
        time.sleep(0.2)
        return {"ok": True}

    q = make_queue(proc)
    q.start()
    q.add({}, job_id="j")
    assert started.wait(5)
    assert q.stop(5)
    assert q.get("j").state is JobState.COMPLETED
    with pytest.raises(ServiceUnavailable):
        q.add({})


def test_failed_job_retries_with_exponential_backoff(clock):
    def proc(ctx):
        raise RuntimeError("boom")

    q = make_queue(proc, clock=clock, attempts=3, backoff_ms=2000)
    q.add({}, job_id="j")

    e = run_next(q)
    assert e.state is JobState.DELAYED
    assert e.attempts_made == 1
    assert e.available_at == clock() + 2000
    assert q.store.claim_next(q.name, clock()) is None

    clock.advance(2000)
    e = run_next(q)
    assert e.state is JobState.DELAYED
    assert e.available_at == clock() + 4000

    clock.advance(4000)
    e = run_next(q)
    assert e.state is JobState.FAILED
    assert e.attempts_made == 3
    assert e.failed_reason == "boom"


def test_single_attempt_queue_fails_immediately(clock):
    def proc(ctx):
        raise ValueError("bad payload")

    q = make_queue(proc, clock=clock, name="priority", attempts=1)
    q.add({}, job_id="j")
    e = run_next(q)
    assert e.state is JobState.FAILED
    assert e.failed_reason == "bad payload"


def test_abandoned_active_job_is_stalled_then_failed(clock):
    q = JobQueue("execution", InMemoryJobStore(), lambda ctx: {"ok": True}, QueueConfig(),
                 stalled_interval_ms=30_000, max_stalled_count=1, clock=clock)
    q.add({}, job_id="j")
    # claimed by a worker that then disappears
    q.store.claim_next(q.name, clock())
    assert q.check_stalled() == 0

    clock.advance(30_000)
    assert q.check_stalled() == 1
    e = q.get("j")
    assert e.state is JobState.STALLED
    assert e.stalled_count == 1

    q.store.claim_next(q.name, clock())
    clock.advance(30_000)
    assert q.check_stalled() == 1
    e = q.get("j")
    assert e.state is JobState.FAILED
    assert "stalled" in e.failed_reason


def test_stalled_job_is_picked_up_again(clock):
    q = JobQueue("execution", InMemoryJobStore(), lambda ctx: {"ok": True}, QueueConfig(),
                 stalled_interval_ms=1000, clock=clock)
    q.add({}, job_id="j")
    q.store.claim_next(q.name, clock())
    clock.advance(1000)
    q.check_stalled()
    e = run_next(q)
    assert e.state is JobState.COMPLETED
    assert e.result == {"ok": True}


def test_progress_is_visible_while_running(clock):
    seen = []

    def proc(ctx):
        ctx.progress(40)
        seen.append(ctx.queue.get(ctx.job_id).progress)
        return {}

    q = make_queue(proc, clock=clock)
    q.add({}, job_id="j")
    e = run_next(q)
    assert seen == [40]
    assert e.progress == 100


def test_forced_result_is_not_overwritten(clock):
    q = make_queue(lambda ctx: {"verdict": "Accepted"}, clock=clock)
    q.add({}, job_id="j")
    entry = q.store.claim_next(q.name, clock())
    assert q.force_complete("j", {"verdict": "System Error"})
    q.process(entry)
    assert q.get("j").result == {"verdict": "System Error"}
    assert not q.force_complete("j", {"verdict": "Accepted"})


def test_retention_keeps_newest_completed(clock):
    q = make_queue(lambda ctx: {}, clock=clock, remove_on_complete=2)
    for i in range(3):
        q.add({}, job_id=f"j{i}")
    for _ in range(3):
        run_next(q)
        clock.advance(10)
    assert q.get("j0") is None
    assert q.stats()["completed"] == 2


def test_clean_removes_finished_jobs_past_grace(clock):
    def proc(ctx):
        if ctx.data.get("fail"):
            raise RuntimeError("x")
        return {}

    q = make_queue(proc, clock=clock)
    q.add({}, job_id="ok")
    q.add({"fail": True}, job_id="bad")
    q.add({}, job_id="pending")
    run_next(q)
    run_next(q)
    assert q.clean(5000) == 0
    clock.advance(6000)
    assert q.clean(5000) == 2
    stats = q.stats()
    assert stats["total"] == 1
    assert stats["waiting"] == 1


def test_manager_routes_priority_submissions(clock):
    m = QueueManager(InMemoryJobStore(), Settings().queues, execute=lambda ctx: {}, batch=lambda ctx: {}, clock=clock)
    plain = m.add_execution_job({"test_cases": [{}, {}], "time_limit_ms": 1000})
    assert plain["queue"] == "execution"
    assert plain["estimated_time"] == 4

    urgent = m.add_execution_job({"test_cases": [{}]}, priority=5)
    assert urgent["queue"] == "priority"
    assert m.get_job_status(urgent["job_id"], "priority")["priority"] == 5
    assert m.get_job_status(urgent["job_id"], "execution") is None

    batch = m.add_batch_job([{"submission_id": "a"}, {"submission_id": "b"}])
    assert batch == {"job_id": batch["job_id"], "queue": "batch", "total_submissions": 2}

    stats = m.get_queue_stats()
    assert {name: s["waiting"] for name, s in stats.items()} == {"execution": 1, "priority": 1, "batch": 1}


def test_manager_rejects_unknown_queue():
    m = QueueManager(InMemoryJobStore(), Settings().queues, execute=lambda ctx: {}, batch=lambda ctx: {})
    with pytest.raises(QueueNotFound):
        m.get_job_status("x", "nope")
    with pytest.raises(QueueNotFound):
        m.pause("nope")


def test_priority_queue_defaults_to_configured_priority():
    m = QueueManager(InMemoryJobStore(), Settings().queues, execute=lambda ctx: {}, batch=lambda ctx: {})
    entry = m.queue("priority").add({})
    assert entry.priority == 10
    assert entry.max_attempts == 1
    assert m.queue("execution").add({}).max_attempts == 3


class FlakyStore(InMemoryJobStore):
    def __init__(self):
        super().__init__()
        self.failures = 1

    def update(self, entry, expect_state=None):
        if entry.state == JobState.COMPLETED and self.failures:
            self.failures -= 1
            raise StoreUnavailable("db hiccup")
        return super().update(entry, expect_state)


def test_worker_survives_store_error_on_finalize():
    processed = []

    def proc(ctx):
        processed.append(ctx.job_id)
        return {}

    q = JobQueue("execution", FlakyStore(), proc, QueueConfig(concurrency=1), poll_interval_ms=10)
    q.start()
    try:
        q.add({}, job_id="a")
        assert wait_for(lambda: processed == ["a"])
        q.add({}, job_id="b")
        assert wait_for(lambda: q.get("b").state == JobState.COMPLETED)
        assert all(t.is_alive() for t in q._workers)
    finally:
        q.stop(5)
    assert q.get("a").state == JobState.ACTIVE
