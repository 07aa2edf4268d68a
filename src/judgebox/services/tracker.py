from __future__ import annotations

import threading
from dataclasses import dataclass
from typing import Callable, Dict, List, Optional

import structlog

from ..core.errors import StoreUnavailable
from ..core.models import QueueEntry
from ..core.utils import now_ms
from .coordinator import system_error_verdict
from .queue import QueueManager

log = structlog.get_logger(__name__)

STALE_MESSAGE = "Execution made no progress and was abandoned"


@dataclass
class Tracked:
    job_id: str
    queue: str
    submission_id: str
    last_progress_ms: int


class SubmissionTracker:
    """Remembers which queued job belongs to which submission.

    A background sweep forces a System Error verdict on jobs whose last sign
    of life is older than ``stale_after_s`` and forgets them, so no
    submission is left pending forever.
    """

    def __init__(
        self,
        queues: QueueManager,
        sweep_interval_s: float = 300.0,
        stale_after_s: float = 600.0,
        clock: Callable[[], int] = now_ms,
    ):
        self.queues = queues
        self.sweep_interval_s = sweep_interval_s
        self.stale_after_ms = int(stale_after_s * 1000)
        self.clock = clock
        self._lock = threading.Lock()
        self._tracked: Dict[str, Tracked] = {}
        self._stop = threading.Event()
        self._thread: Optional[threading.Thread] = None

    def track(self, entry: QueueEntry) -> None:
        submission_id = str(entry.data.get("submission_id") or "")
        with self._lock:
            self._tracked[entry.job_id] = Tracked(entry.job_id, entry.queue, submission_id, self.clock())

    def touch(self, job_id: str) -> None:
        with self._lock:
            item = self._tracked.get(job_id)
            if item is not None:
                item.last_progress_ms = self.clock()

    def untrack(self, job_id: str) -> None:
        with self._lock:
            self._tracked.pop(job_id, None)

    def __len__(self) -> int:
        with self._lock:
            return len(self._tracked)

    def on_event(self, event: str, entry: QueueEntry) -> None:
        """QueueManager listener."""
        if event == "waiting":
            self.track(entry)
        elif event in ("active", "progress", "retry", "stalled"):
            self.touch(entry.job_id)
        elif event in ("completed", "failed"):
            self.untrack(entry.job_id)

    def sweep(self) -> List[str]:
        """Force a System Error on stale jobs; returns the evicted job ids."""
        cutoff = self.clock() - self.stale_after_ms
        with self._lock:
            stale = [t for t in self._tracked.values() if t.last_progress_ms < cutoff]
        evicted = []
        for item in stale:
            entry = self.queues.queue(item.queue).get(item.job_id)
            total = len((entry.data.get("test_cases") or []) if entry else [])
            verdict = system_error_verdict(STALE_MESSAGE, total, item.submission_id or None)
            if self.queues.force_complete(item.queue, item.job_id, verdict.to_dict()):
                log.warning("stale_submission_failed", job_id=item.job_id, queue=item.queue,
                            submission_id=item.submission_id)
            self.untrack(item.job_id)
            evicted.append(item.job_id)
        if evicted:
            log.info("tracker_swept", evicted=len(evicted))
        return evicted

    def _loop(self) -> None:
        while not self._stop.wait(self.sweep_interval_s):
            try:
                self.sweep()
            except StoreUnavailable as e:
                log.error("tracker_sweep_failed", error=str(e))

    def start(self) -> None:
        self._stop.clear()
        self._thread = threading.Thread(target=self._loop, name="submission-sweeper", daemon=True)
        self._thread.start()

    def stop(self) -> None:
        self._stop.set()
        if self._thread is not None:
            self._thread.join(timeout=5)
            self._thread = None
