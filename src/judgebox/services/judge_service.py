from __future__ import annotations

from typing import Any, Dict, List, Optional

import structlog

from ..core.errors import RateLimitExceeded, ServiceUnavailable, ValidationFailed
from ..core.models import TestCase
from ..core.utils import now_ms, utc_iso
from ..executor import ContainerRunner, DockerRunner, LocalProcessRunner, SandboxedExecutor, WorkspaceManager
from ..settings import Settings
from .coordinator import ExecutionCoordinator
from .job_store import InMemoryJobStore, JobStore, SqlJobStore
from .queue import JobContext, QueueManager
from .rate_limiter import InMemoryRateLimitStore, RateLimiter, RateLimitStore, RedisRateLimitStore
from .tracker import SubmissionTracker
from .verdict_engine import VerdictEngine

log = structlog.get_logger(__name__)

ADMIN_ACTIONS = ("pause", "resume", "clean")


def build_runner(settings: Settings) -> ContainerRunner:
    if settings.runner == "docker":
        return DockerRunner(settings.limits, docker_bin=settings.docker_bin)
    if settings.runner == "local":
        return LocalProcessRunner(
            settings.limits,
            runtimes=settings.runtimes,
            iso_strategy=settings.iso_strategy,
            allow_network=settings.allow_network,
        )
    raise ValueError(f"unknown runner: {settings.runner}")


def build_job_store(settings: Settings) -> JobStore:
    if settings.database_url:
        return SqlJobStore(settings.database_url)
    return InMemoryJobStore()


def build_rate_store(settings: Settings) -> RateLimitStore:
    if settings.redis_url:
        return RedisRateLimitStore(settings.redis_url)
    return InMemoryRateLimitStore()


class JudgeService:
    """
    Wires the judge together from Settings:
      rate limiter -> queues -> coordinator -> verdict engine -> sandbox
    Collaborators can be passed in (tests use fakes); otherwise they are
    built from the settings.
    """

    def __init__(
        self,
        settings: Settings,
        runner: Optional[ContainerRunner] = None,
        job_store: Optional[JobStore] = None,
        rate_store: Optional[RateLimitStore] = None,
        clock=now_ms,
    ):
        self.settings = settings
        self.clock = clock
        self.runner = runner or build_runner(settings)
        self.workspaces = WorkspaceManager(settings.workspace_dir)
        self.executor = SandboxedExecutor(self.runner, self.workspaces, settings.limits)
        self.engine = VerdictEngine(self.executor, settings.limits)
        self.coordinator = ExecutionCoordinator(self.engine, clock=clock)
        self.limiter = RateLimiter(rate_store or build_rate_store(settings), settings.rate_limits, clock=clock)
        self.queues = QueueManager(
            job_store or build_job_store(settings),
            settings.queues,
            execute=self._process_execution,
            batch=self._process_batch,
            stalled_interval_ms=settings.stalled_interval_ms,
            max_stalled_count=settings.max_stalled_count,
            poll_interval_ms=settings.poll_interval_ms,
            clock=clock,
        )
        self.tracker = SubmissionTracker(
            self.queues,
            sweep_interval_s=settings.sweep_interval_s,
            stale_after_s=settings.stale_after_s,
            clock=clock,
        )
        self.queues.add_listener(self.tracker.on_event)
        self.runtime_info: Dict[str, Any] = {}
        self._accepting = False

    # ------------ lifecycle ------------

    def start(self) -> None:
        self.runtime_info = self.executor.probe()
        log.info("runtime_probe", **self.runtime_info)
        self.queues.start()
        self.tracker.start()
        self._accepting = True
        log.info("judge_started", runner=self.runner.name)

    def stop(self) -> bool:
        self._accepting = False
        self.tracker.stop()
        drained = self.queues.shutdown(self.settings.shutdown_timeout_s)
        log.info("judge_stopped", drained=drained)
        return drained

    @property
    def accepting(self) -> bool:
        return self._accepting

    # ------------ submission ------------

    def _admit(self, user_id: str, action: str) -> Dict[str, Any]:
        if not self._accepting:
            raise ServiceUnavailable("Judge is not accepting submissions")
        decision = self.limiter.admit(user_id, action)
        if not decision.allowed:
            raise RateLimitExceeded(decision.to_dict())
        return decision.to_dict()

    def _job_data(self, payload: Dict[str, Any], user_id: str) -> Dict[str, Any]:
        lim = self.settings.limits
        cases = []
        for tc in payload.get("test_cases") or []:
            if isinstance(tc, TestCase):
                tc = {"input": tc.input, "expected_output": tc.expected_output,
                      "is_hidden": tc.is_hidden, "points": tc.points}
            cases.append(tc)
        return {
            "submission_id": str(payload.get("submission_id") or f"temp_{self.clock()}"),
            "code": payload.get("code"),
            "language": payload.get("language"),
            "test_cases": cases,
            "time_limit_ms": payload.get("time_limit_ms") or lim.default_time_limit_ms,
            "memory_limit_mb": payload.get("memory_limit_mb") or lim.default_memory_limit_mb,
            "user_id": user_id,
            "priority": int(payload.get("priority") or 0),
        }

    def submit(self, payload: Dict[str, Any]) -> Dict[str, Any]:
        user_id = str(payload.get("user_id") or "anonymous")
        priority = int(payload.get("priority") or 0)
        rate_limit = self._admit(user_id, "priority" if priority else "execute")

        if not payload.get("code") or not payload.get("language") or not payload.get("test_cases"):
            raise ValidationFailed("Code, language, and testCases are required")

        data = self._job_data(payload, user_id)
        job = self.queues.add_execution_job(data, priority=priority)
        return {
            "job_id": job["job_id"],
            "queue": job["queue"],
            "estimated_time_seconds": job["estimated_time"],
            "rate_limit": rate_limit,
        }

    def submit_batch(self, submissions: List[Dict[str, Any]], user_id: str = "anonymous") -> Dict[str, Any]:
        rate_limit = self._admit(user_id or "anonymous", "batch")

        if not submissions or not isinstance(submissions, list):
            raise ValidationFailed("Submissions array is required and must not be empty")
        limit = self.settings.batch_max_submissions
        if len(submissions) > limit:
            raise ValidationFailed(f"Maximum {limit} submissions allowed per batch")

        items = [self._job_data(sub, str(sub.get("user_id") or user_id or "anonymous")) for sub in submissions]
        job = self.queues.add_batch_job(items)
        return {
            "job_id": job["job_id"],
            "queue": job["queue"],
            "total_submissions": job["total_submissions"],
            "rate_limit": rate_limit,
        }

    # ------------ queries ------------

    def get_result(self, job_id: str, queue: str = "execution") -> Optional[Dict[str, Any]]:
        status = self.queues.get_job_status(job_id, queue)
        if status is None:
            return None
        state = status["state"]
        if state == "completed":
            return {
                "status": "completed",
                "result": status["result"],
                "job_info": {
                    "processed_on": status["processed_on"],
                    "finished_on": status["finished_on"],
                    "attempts_made": status["attempts_made"],
                },
            }
        if state == "failed":
            return {
                "status": "failed",
                "error": status["failed_reason"],
                "job_info": {
                    "attempts_made": status["attempts_made"],
                    "failed_on": status["finished_on"],
                },
            }
        return {"status": state, "progress": status["progress"], "message": "Job is still processing"}

    def stats(self) -> Dict[str, Any]:
        return {
            "queues": self.queues.get_queue_stats(),
            "execution": {
                **self.coordinator.stats(),
                "active_execution_details": self.coordinator.active_executions(),
            },
            "tracked_submissions": len(self.tracker),
        }

    def health(self) -> Dict[str, Any]:
        return {
            "status": "OK" if self._accepting else "STOPPING",
            "service": "judgebox",
            "timestamp": utc_iso(),
            "runtime": self.runtime_info,
        }

    def rate_limit_status(self, user_id: str) -> Dict[str, dict]:
        return self.limiter.user_stats(user_id)

    def reset_rate_limits(self, user_id: str) -> None:
        self.limiter.reset_user(user_id)

    def admin(self, action: str, queue: str) -> Dict[str, Any]:
        if action not in ADMIN_ACTIONS:
            raise ValidationFailed("Invalid action. Use: pause, resume, clean")
        out: Dict[str, Any] = {"action": action, "queue": queue}
        if action == "pause":
            self.queues.pause(queue)
        elif action == "resume":
            self.queues.resume(queue)
        else:
            out["removed"] = self.queues.clean(queue, self.settings.clean_grace_ms)
        return out

    # ------------ processors (run on queue worker threads) ------------

    def _process_execution(self, ctx: JobContext) -> Dict[str, Any]:
        ctx.progress(10)
        verdict = self.coordinator.execute_submission(ctx.data)
        result = verdict.to_dict()
        entry = ctx.entry
        result.update(
            job_id=entry.job_id,
            user_id=ctx.data.get("user_id"),
            queue_wait_time_ms=(entry.processed_at or entry.created_at) - entry.created_at,
            processed_at=utc_iso(),
        )
        log.info("job_verdict", job_id=entry.job_id, verdict=result["verdict"],
                 passed=result["passed_test_cases"], total=result["total_test_cases"])
        return result

    def _process_batch(self, ctx: JobContext) -> Dict[str, Any]:
        submissions = ctx.data.get("submissions") or []
        total = len(submissions)
        results = []
        for i, sub in enumerate(submissions):
            ctx.progress(i / total * 100)
            submission_id = sub.get("submission_id")
            try:
                verdict = self.coordinator.execute_submission(sub)
            except Exception as e:
                # one broken item must not sink the rest of the batch
                log.exception("batch_item_failed", job_id=ctx.job_id, submission_id=submission_id)
                results.append({"submission_id": submission_id, "success": False, "error": str(e)})
            else:
                results.append({"submission_id": submission_id, "success": True, "result": verdict.to_dict()})
        ok = sum(1 for r in results if r["success"])
        return {
            "total_submissions": total,
            "successful_submissions": ok,
            "failed_submissions": total - ok,
            "results": results,
        }
