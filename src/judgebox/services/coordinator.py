from __future__ import annotations

import threading
from typing import Any, Callable, Dict, List, Optional, Union

import structlog

from ..core.models import ExecutionJob, SubmissionVerdict, Verdict
from ..core.utils import new_execution_id, now_ms, utc_iso
from .verdict_engine import VerdictEngine

log = structlog.get_logger(__name__)


def system_error_verdict(
    message: str,
    total_test_cases: int = 0,
    submission_id: Optional[str] = None,
    language: Optional[str] = None,
) -> SubmissionVerdict:
    return SubmissionVerdict(
        verdict=Verdict.SYSTEM_ERROR,
        total_test_cases=total_test_cases,
        system_error=message,
        submission_id=submission_id,
        language=language,
        timestamp=utc_iso(),
    )


class ExecutionCoordinator:
    """Front door of the verdict engine for queue workers.

    Keeps a registry of executions in flight and running totals; whatever
    goes wrong inside an execution comes back as a System Error verdict.
    """

    def __init__(self, engine: VerdictEngine, clock: Callable[[], int] = now_ms):
        self.engine = engine
        self.clock = clock
        self._lock = threading.Lock()
        self._active: Dict[str, Dict[str, Any]] = {}
        self._finished = 0
        self._succeeded = 0
        self._total_time_ms = 0

    def validate(self, job: ExecutionJob) -> None:
        self.engine.validate(
            job.code, job.language, job.test_cases, job.time_limit_ms, job.memory_limit_mb
        )

    def execute_submission(self, job: Union[ExecutionJob, Dict[str, Any]]) -> SubmissionVerdict:
        if isinstance(job, dict):
            job = ExecutionJob.from_dict(job)
        execution_id = new_execution_id()
        start = self.clock()
        with self._lock:
            self._active[execution_id] = {
                "submission_id": job.submission_id,
                "start_time": start,
                "status": "running",
            }
        log.info("execution_started", execution_id=execution_id, submission_id=job.submission_id,
                 language=job.language, cases=len(job.test_cases))
        try:
            result = self.engine.evaluate(
                job.code, job.language, job.test_cases, job.time_limit_ms, job.memory_limit_mb
            )
        except Exception as e:
            log.exception("execution_crashed", execution_id=execution_id, submission_id=job.submission_id)
            result = system_error_verdict(
                f"Execution failed: {e}", len(job.test_cases), job.submission_id, job.language
            )
        finally:
            with self._lock:
                self._active.pop(execution_id, None)

        elapsed = self.clock() - start
        result.submission_id = job.submission_id
        result.execution_id = execution_id
        result.language = job.language
        result.total_execution_time_ms = elapsed
        result.timestamp = utc_iso()

        with self._lock:
            self._finished += 1
            self._total_time_ms += elapsed
            if result.verdict is not Verdict.SYSTEM_ERROR:
                self._succeeded += 1
        log.info("execution_finished", execution_id=execution_id, submission_id=job.submission_id,
                 verdict=result.verdict.value, elapsed_ms=elapsed)
        return result

    def active_executions(self) -> List[Dict[str, Any]]:
        now = self.clock()
        with self._lock:
            return [
                {"execution_id": eid, **info, "running_time_ms": now - info["start_time"]}
                for eid, info in self._active.items()
            ]

    def stats(self) -> Dict[str, Any]:
        with self._lock:
            finished = self._finished
            return {
                "active_executions": len(self._active),
                "total_executions": finished,
                "average_execution_time_ms": round(self._total_time_ms / finished) if finished else 0,
                "success_rate": round(self._succeeded / finished * 100, 2) if finished else 0.0,
            }
