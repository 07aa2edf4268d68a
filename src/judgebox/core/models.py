from __future__ import annotations

from dataclasses import asdict, dataclass, field
from enum import Enum
from typing import Any, Dict, List, Optional


class Verdict(str, Enum):
    ACCEPTED = "Accepted"
    WRONG_ANSWER = "Wrong Answer"
    TIME_LIMIT_EXCEEDED = "Time Limit Exceeded"
    MEMORY_LIMIT_EXCEEDED = "Memory Limit Exceeded"
    RUNTIME_ERROR = "Runtime Error"
    COMPILATION_ERROR = "Compilation Error"
    SYSTEM_ERROR = "System Error"
    PENDING = "Pending"


class JobState(str, Enum):
    WAITING = "waiting"
    ACTIVE = "active"
    COMPLETED = "completed"
    FAILED = "failed"
    DELAYED = "delayed"
    STALLED = "stalled"


TERMINAL_STATES = (JobState.COMPLETED, JobState.FAILED)


@dataclass(frozen=True)
class TestCase:
    __test__ = False  # keep pytest from collecting this

    input: Optional[str]
    expected_output: Optional[str]
    is_hidden: bool = False
    points: int = 0

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> "TestCase":
        expected = data.get("expected_output", data.get("expectedOutput"))
        return cls(
            input=data.get("input"),
            expected_output=expected,
            is_hidden=bool(data.get("is_hidden", data.get("isHidden", False))),
            points=int(data.get("points") or 0),
        )


@dataclass(frozen=True)
class ExecutionJob:
    submission_id: str
    code: str
    language: str
    test_cases: List[TestCase]
    time_limit_ms: int
    memory_limit_mb: int
    user_id: str = "anonymous"
    priority: int = 0
    job_id: Optional[str] = None

    def to_dict(self) -> Dict[str, Any]:
        return asdict(self)

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> "ExecutionJob":
        cases = [
            tc if isinstance(tc, TestCase) else TestCase.from_dict(tc)
            for tc in (data.get("test_cases") or [])
        ]
        return cls(
            submission_id=str(data.get("submission_id") or ""),
            code=data.get("code"),
            language=data.get("language"),
            test_cases=cases,
            time_limit_ms=data.get("time_limit_ms"),
            memory_limit_mb=data.get("memory_limit_mb"),
            user_id=str(data.get("user_id") or "anonymous"),
            priority=int(data.get("priority") or 0),
            job_id=data.get("job_id"),
        )


@dataclass(frozen=True)
class RunOutcome:
    """Raw result of one sandboxed process."""

    exit_code: int
    stdout: str
    stderr: str
    elapsed_ms: int
    timed_out: bool = False
    memory_exceeded: bool = False
    memory_used_mb: float = 0.0


@dataclass(frozen=True)
class ExecutionResult:
    test_case_number: int
    verdict: Verdict
    actual_output: str
    execution_time_ms: int
    memory_used_mb: float
    stderr: str = ""
    input: Optional[str] = None
    expected_output: Optional[str] = None
    output_difference: Optional[Dict[str, Any]] = None


@dataclass
class SubmissionVerdict:
    verdict: Verdict
    total_test_cases: int
    passed_test_cases: int = 0
    failed_test_cases: int = 0
    execution_time_ms: int = 0
    memory_used_mb: float = 0.0
    compilation_error: Optional[str] = None
    system_error: Optional[str] = None
    test_case_results: List[ExecutionResult] = field(default_factory=list)
    score: int = 0
    points_earned: int = 0
    submission_id: Optional[str] = None
    execution_id: Optional[str] = None
    language: Optional[str] = None
    total_execution_time_ms: int = 0
    timestamp: Optional[str] = None

    def to_dict(self) -> Dict[str, Any]:
        data = asdict(self)
        data["verdict"] = self.verdict.value
        for tc in data["test_case_results"]:
            tc["verdict"] = Verdict(tc["verdict"]).value
        return data


@dataclass
class QueueEntry:
    job_id: str
    queue: str
    name: str
    data: Dict[str, Any]
    priority: int = 0
    seq: int = 0
    state: JobState = JobState.WAITING
    attempts_made: int = 0
    max_attempts: int = 1
    backoff_ms: int = 0
    progress: int = 0
    result: Optional[Dict[str, Any]] = None
    failed_reason: Optional[str] = None
    stalled_count: int = 0
    created_at: int = 0
    available_at: int = 0
    processed_at: Optional[int] = None
    finished_at: Optional[int] = None
    heartbeat_at: Optional[int] = None

    @property
    def is_terminal(self) -> bool:
        return self.state in TERMINAL_STATES
