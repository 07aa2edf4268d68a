"""Prioritized job queues with bounded worker threads.

Each named queue owns a fixed pool of worker threads that claim jobs from a
shared JobStore. Job lifecycle:

    waiting -> active -> completed | failed
    active  -> delayed -> active       (retry with exponential backoff)
    active  -> stalled -> active       (worker vanished, up to the stall limit)
"""
from __future__ import annotations

import threading
import time
from typing import Any, Callable, Dict, List, Optional

import structlog

from ..core.errors import QueueNotFound, ServiceUnavailable, StoreUnavailable
from ..core.models import JobState, QueueEntry
from ..core.utils import estimate_execution_seconds, new_job_id, now_ms
from ..settings import QueueConfig
from .job_store import JobStore

log = structlog.get_logger(__name__)

Listener = Callable[[str, QueueEntry], None]


class JobContext:
    """Handle a processor gets for the job it is working on."""

    def __init__(self, queue: "JobQueue", entry: QueueEntry):
        self.queue = queue
        self.entry = entry

    @property
    def job_id(self) -> str:
        return self.entry.job_id

    @property
    def data(self) -> Dict[str, Any]:
        return self.entry.data

    def progress(self, pct: float) -> None:
        self.entry.progress = max(0, min(100, int(pct)))
        self.entry.heartbeat_at = self.queue.clock()
        # a job forced terminal by the sweeper keeps its forced result
        if self.queue.store.update(self.entry, expect_state=JobState.ACTIVE):
            self.queue.emit("progress", self.entry)


Processor = Callable[[JobContext], Dict[str, Any]]


class JobQueue:
    def __init__(
        self,
        name: str,
        store: JobStore,
        processor: Processor,
        config: QueueConfig,
        *,
        job_name: str = "execute",
        stalled_interval_ms: int = 30_000,
        max_stalled_count: int = 1,
        poll_interval_ms: int = 250,
        clock: Callable[[], int] = now_ms,
    ):
        self.name = name
        self.store = store
        self.processor = processor
        self.config = config
        self.job_name = job_name
        self.stalled_interval_ms = stalled_interval_ms
        self.max_stalled_count = max_stalled_count
        self.poll_s = poll_interval_ms / 1000.0
        self.clock = clock

        self._cond = threading.Condition()
        self._lock = threading.Lock()
        self._inflight: Dict[str, threading.Thread] = {}
        self._workers: List[threading.Thread] = []
        self._checker: Optional[threading.Thread] = None
        self._stop = threading.Event()
        self._paused = False
        self._closed = False
        self._listeners: List[Listener] = []

    # ------------ producers ------------

    def add(self, data: Dict[str, Any], priority: Optional[int] = None, job_id: Optional[str] = None) -> QueueEntry:
        if self._closed:
            raise ServiceUnavailable(f"queue {self.name} is closed")
        now = self.clock()
        entry = QueueEntry(
            job_id=job_id or new_job_id(),
            queue=self.name,
            name=self.job_name,
            data=data,
            priority=self.config.priority if priority is None else int(priority),
            seq=self.store.next_seq(self.name),
            max_attempts=max(1, self.config.attempts),
            backoff_ms=self.config.backoff_ms,
            created_at=now,
            available_at=now,
        )
        self.store.add(entry)
        log.info("job_added", queue=self.name, job_id=entry.job_id, priority=entry.priority)
        self.emit("waiting", entry)
        with self._cond:
            self._cond.notify()
        return entry

    # ------------ events ------------

    def add_listener(self, fn: Listener) -> None:
        self._listeners.append(fn)

    def emit(self, event: str, entry: QueueEntry) -> None:
        for fn in self._listeners:
            try:
                fn(event, entry)
            except Exception:
                log.exception("queue_listener_failed", queue=self.name, job_event=event, job_id=entry.job_id)

    # ------------ lifecycle ------------

    def start(self) -> None:
        self._stop.clear()
        self._closed = False
        for i in range(max(1, self.config.concurrency)):
            t = threading.Thread(target=self._work, name=f"{self.name}-worker-{i}", daemon=True)
            t.start()
            self._workers.append(t)
        self._checker = threading.Thread(target=self._check_loop, name=f"{self.name}-stalled", daemon=True)
        self._checker.start()
        log.info("queue_started", queue=self.name, concurrency=len(self._workers))

    def close(self) -> None:
        """Stop accepting new jobs."""
        self._closed = True

    def stop(self, timeout: Optional[float] = None) -> bool:
        """Close, then let in-flight jobs finish. Returns False on timeout."""
        self.close()
        self._stop.set()
        with self._cond:
            self._cond.notify_all()
        deadline = None if timeout is None else time.monotonic() + timeout
        for t in self._workers:
            remaining = None if deadline is None else max(0.0, deadline - time.monotonic())
            t.join(remaining)
        if self._checker is not None:
            self._checker.join(self.poll_s + 1)
        drained = not any(t.is_alive() for t in self._workers)
        if drained:
            self._workers = []
        else:
            log.warning("queue_drain_timeout", queue=self.name, inflight=len(self._inflight))
        log.info("queue_stopped", queue=self.name, drained=drained)
        return drained

    @property
    def paused(self) -> bool:
        return self._paused

    def pause(self) -> None:
        self._paused = True
        log.info("queue_paused", queue=self.name)

    def resume(self) -> None:
        self._paused = False
        with self._cond:
            self._cond.notify_all()
        log.info("queue_resumed", queue=self.name)

    # ------------ workers ------------

    def _claim(self) -> Optional[QueueEntry]:
        # claim and registration happen together so the stalled checker
        # never sees an active job without its worker
        with self._lock:
            entry = self.store.claim_next(self.name, self.clock())
            if entry is not None:
                self._inflight[entry.job_id] = threading.current_thread()
            return entry

    def _work(self) -> None:
        while not self._stop.is_set():
            try:
                entry = None if self._paused else self._claim()
            except StoreUnavailable as e:
                log.error("job_claim_failed", queue=self.name, error=str(e))
                entry = None
            if entry is None:
                with self._cond:
                    self._cond.wait(self.poll_s)
                continue
            try:
                self.process(entry)
            except StoreUnavailable as e:
                # job stays active; the stalled checker hands it out again
                log.error("job_finalize_failed", queue=self.name, job_id=entry.job_id, error=str(e))
            finally:
                with self._lock:
                    self._inflight.pop(entry.job_id, None)

    def process(self, entry: QueueEntry) -> None:
        log.info("job_active", queue=self.name, job_id=entry.job_id, attempt=entry.attempts_made + 1)
        self.emit("active", entry)
        ctx = JobContext(self, entry)
        try:
            result = self.processor(ctx)
        except Exception as e:
            log.exception("job_processor_failed", queue=self.name, job_id=entry.job_id)
            self._failed(entry, str(e) or type(e).__name__)
        else:
            self._completed(entry, result)

    def _completed(self, entry: QueueEntry, result: Dict[str, Any]) -> None:
        entry.attempts_made += 1
        entry.state = JobState.COMPLETED
        entry.progress = 100
        entry.result = result
        entry.finished_at = self.clock()
        if not self.store.update(entry, expect_state=JobState.ACTIVE):
            log.warning("job_already_finalized", queue=self.name, job_id=entry.job_id)
            return
        log.info("job_completed", queue=self.name, job_id=entry.job_id)
        self.emit("completed", entry)
        self._trim(JobState.COMPLETED, self.config.remove_on_complete)

    def _failed(self, entry: QueueEntry, reason: str) -> None:
        entry.attempts_made += 1
        entry.failed_reason = reason
        now = self.clock()
        if entry.attempts_made < entry.max_attempts:
            delay = entry.backoff_ms * 2 ** (entry.attempts_made - 1)
            entry.state = JobState.DELAYED
            entry.available_at = now + delay
            event = "retry"
        else:
            entry.state = JobState.FAILED
            entry.finished_at = now
            event = "failed"
        if not self.store.update(entry, expect_state=JobState.ACTIVE):
            log.warning("job_already_finalized", queue=self.name, job_id=entry.job_id)
            return
        if event == "retry":
            log.warning("job_retry_scheduled", queue=self.name, job_id=entry.job_id,
                        attempt=entry.attempts_made, delay_ms=entry.available_at - now)
        else:
            log.error("job_failed", queue=self.name, job_id=entry.job_id, reason=reason)
            self._trim(JobState.FAILED, self.config.remove_on_fail)
        self.emit(event, entry)

    def force_complete(self, job_id: str, result: Dict[str, Any]) -> bool:
        """Finish a non-terminal job with the given result; False if it already finished."""
        entry = self.store.get(self.name, job_id)
        if entry is None or entry.is_terminal:
            return False
        previous = entry.state
        entry.state = JobState.COMPLETED
        entry.progress = 100
        entry.result = result
        entry.finished_at = self.clock()
        if not self.store.update(entry, expect_state=previous):
            return False
        log.warning("job_force_completed", queue=self.name, job_id=job_id, previous=previous.value)
        self.emit("completed", entry)
        return True

    # ------------ stalled jobs ------------

    def _check_loop(self) -> None:
        interval = self.stalled_interval_ms / 1000.0
        while True:
            try:
                self.check_stalled()
            except StoreUnavailable as e:
                log.error("stalled_check_failed", queue=self.name, error=str(e))
            if self._stop.wait(interval):
                return

    def check_stalled(self) -> int:
        """Requeue active jobs that have no live worker. Returns how many were found."""
        now = self.clock()
        found = 0
        with self._lock:
            for entry in self.store.list_by_state(self.name, JobState.ACTIVE):
                worker = self._inflight.get(entry.job_id)
                if worker is not None and worker.is_alive():
                    continue
                if worker is None and now - (entry.heartbeat_at or 0) < self.stalled_interval_ms:
                    # may belong to a worker in another process
                    continue
                self._inflight.pop(entry.job_id, None)
                found += 1
                entry.stalled_count += 1
                if entry.stalled_count > self.max_stalled_count:
                    entry.state = JobState.FAILED
                    entry.failed_reason = "job stalled more than allowable limit"
                    entry.finished_at = now
                    event = "failed"
                else:
                    entry.state = JobState.STALLED
                    event = "stalled"
                if self.store.update(entry, expect_state=JobState.ACTIVE):
                    log.warning("job_stalled", queue=self.name, job_id=entry.job_id,
                                stalled_count=entry.stalled_count, state=entry.state.value)
                    self.emit(event, entry)
        if found:
            with self._cond:
                self._cond.notify_all()
        return found

    # ------------ housekeeping ------------

    def _trim(self, state: JobState, keep: int) -> None:
        if keep < 0:
            return
        entries = sorted(self.store.list_by_state(self.name, state), key=lambda e: e.finished_at or 0)
        for entry in entries[: max(0, len(entries) - keep)]:
            self.store.remove(self.name, entry.job_id)

    def clean(self, grace_ms: int) -> int:
        """Drop completed and failed jobs that finished more than ``grace_ms`` ago."""
        cutoff = self.clock() - grace_ms
        removed = 0
        for state in (JobState.COMPLETED, JobState.FAILED):
            for entry in self.store.list_by_state(self.name, state):
                if (entry.finished_at or 0) < cutoff:
                    self.store.remove(self.name, entry.job_id)
                    removed += 1
        log.info("queue_cleaned", queue=self.name, removed=removed)
        return removed

    def get(self, job_id: str) -> Optional[QueueEntry]:
        return self.store.get(self.name, job_id)

    def stats(self) -> Dict[str, int]:
        counts = self.store.counts(self.name)
        counts["total"] = sum(counts.values())
        return counts


class QueueManager:
    """The execution, priority and batch queues behind one facade."""

    def __init__(
        self,
        store: JobStore,
        queues: Dict[str, QueueConfig],
        execute: Processor,
        batch: Processor,
        *,
        stalled_interval_ms: int = 30_000,
        max_stalled_count: int = 1,
        poll_interval_ms: int = 250,
        clock: Callable[[], int] = now_ms,
    ):
        self.store = store
        self.clock = clock
        self.queues: Dict[str, JobQueue] = {}
        for name, config in queues.items():
            is_batch = name == "batch"
            self.queues[name] = JobQueue(
                name,
                store,
                batch if is_batch else execute,
                config,
                job_name="batch-execute" if is_batch else "execute",
                stalled_interval_ms=stalled_interval_ms,
                max_stalled_count=max_stalled_count,
                poll_interval_ms=poll_interval_ms,
                clock=clock,
            )

    def queue(self, name: str) -> JobQueue:
        try:
            return self.queues[name]
        except KeyError:
            raise QueueNotFound(name) from None

    def add_listener(self, fn: Listener) -> None:
        for q in self.queues.values():
            q.add_listener(fn)

    def start(self) -> None:
        for q in self.queues.values():
            q.start()

    def shutdown(self, timeout: Optional[float] = None) -> bool:
        log.info("queue_manager_shutdown")
        for q in self.queues.values():
            q.close()
        return all([q.stop(timeout) for q in self.queues.values()])

    def add_execution_job(self, data: Dict[str, Any], priority: int = 0) -> Dict[str, Any]:
        queue_name = "priority" if priority else "execution"
        entry = self.queue(queue_name).add(data, priority=priority or None)
        return {
            "job_id": entry.job_id,
            "queue": queue_name,
            "estimated_time": estimate_execution_seconds(
                len(data.get("test_cases") or []), data.get("time_limit_ms") or 0
            ),
        }

    def add_batch_job(self, submissions: List[Dict[str, Any]]) -> Dict[str, Any]:
        entry = self.queue("batch").add({"submissions": submissions})
        return {"job_id": entry.job_id, "queue": "batch", "total_submissions": len(submissions)}

    def get_job_status(self, job_id: str, queue_name: str = "execution") -> Optional[Dict[str, Any]]:
        entry = self.queue(queue_name).get(job_id)
        if entry is None:
            return None
        return {
            "job_id": entry.job_id,
            "state": entry.state.value,
            "progress": entry.progress,
            "data": entry.data,
            "result": entry.result,
            "failed_reason": entry.failed_reason,
            "processed_on": entry.processed_at,
            "finished_on": entry.finished_at,
            "timestamp": entry.created_at,
            "attempts_made": entry.attempts_made,
            "priority": entry.priority,
        }

    def get_queue_stats(self) -> Dict[str, Dict[str, int]]:
        return {name: q.stats() for name, q in self.queues.items()}

    def pause(self, name: str) -> None:
        self.queue(name).pause()

    def resume(self, name: str) -> None:
        self.queue(name).resume()

    def clean(self, name: str, grace_ms: int = 5000) -> int:
        return self.queue(name).clean(grace_ms)

    def force_complete(self, name: str, job_id: str, result: Dict[str, Any]) -> bool:
        return self.queue(name).force_complete(job_id, result)
