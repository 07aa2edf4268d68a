import pytest

from judgebox.core.models import JobState, QueueEntry
from judgebox.services.job_store import InMemoryJobStore, SqlJobStore


@pytest.fixture(params=["memory", "sql"])
def store(request, tmp_path):
    if request.param == "memory":
        return InMemoryJobStore()
    return SqlJobStore(f"sqlite:///{tmp_path / 'jobs.db'}")


def entry(store, job_id, priority=0, queue="execution", **kw):
    e = QueueEntry(
        job_id=job_id,
        queue=queue,
        name="execute",
        data={"submission_id": job_id, "test_cases": [{"input": "1", "expected_output": "1"}]},
        priority=priority,
        seq=store.next_seq(queue),
        **kw,
    )
    store.add(e)
    return e


def test_claims_by_priority_then_fifo(store):
    entry(store, "a", 0)
    entry(store, "b", 10)
    entry(store, "c", 0)
    entry(store, "d", 10)
    order = [store.claim_next("execution", 0).job_id for _ in range(4)]
    assert order == ["b", "d", "a", "c"]
    assert store.claim_next("execution", 0) is None


def test_claim_marks_active(store):
    entry(store, "a")
    claimed = store.claim_next("execution", 1234)
    assert claimed.state is JobState.ACTIVE
    assert claimed.processed_at == 1234
    assert store.get("execution", "a").state is JobState.ACTIVE
    assert claimed.data["test_cases"][0]["expected_output"] == "1"


def test_delayed_job_waits_for_its_time(store):
    entry(store, "a", state=JobState.DELAYED, available_at=5000)
    assert store.claim_next("execution", 4999) is None
    assert store.claim_next("execution", 5000).job_id == "a"


def test_queues_do_not_mix(store):
    entry(store, "a", queue="batch")
    assert store.claim_next("execution", 0) is None
    assert store.get("execution", "a") is None
    assert store.get("batch", "a") is not None


def test_update_compare_and_set(store):
    entry(store, "a")
    claimed = store.claim_next("execution", 0)
    claimed.state = JobState.COMPLETED
    claimed.result = {"verdict": "Accepted"}
    assert store.update(claimed, expect_state=JobState.ACTIVE)
    claimed.state = JobState.FAILED
    assert not store.update(claimed, expect_state=JobState.ACTIVE)
    got = store.get("execution", "a")
    assert got.state is JobState.COMPLETED
    assert got.result == {"verdict": "Accepted"}


def test_counts_list_and_remove(store):
    entry(store, "a")
    entry(store, "b")
    store.claim_next("execution", 0)
    counts = store.counts("execution")
    assert counts["waiting"] == 1
    assert counts["active"] == 1
    assert [e.job_id for e in store.list_by_state("execution", JobState.WAITING)] == ["b"]
    store.remove("execution", "b")
    assert store.get("execution", "b") is None


def test_sequence_is_monotonic(store):
    seqs = [store.next_seq("execution") for _ in range(5)]
    assert seqs == sorted(seqs)
    assert len(set(seqs)) == 5


def test_sql_store_survives_restart(tmp_path):
    url = f"sqlite:///{tmp_path / 'jobs.db'}"
    first = SqlJobStore(url)
    entry(first, "a")
    entry(first, "b")
    first.claim_next("execution", 0)

    second = SqlJobStore(url)
    assert second.get("execution", "a").state is JobState.ACTIVE
    assert second.get("execution", "b").state is JobState.WAITING
    assert second.next_seq("execution") == 3
