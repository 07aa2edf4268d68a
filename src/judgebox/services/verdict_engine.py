"""Folds per-test-case executions into one submission verdict.

Test cases run strictly in order. The evaluation is a small state machine:

    RUNNING --compile error--> COMPILATION_ERROR
    RUNNING --sandbox error--> SYSTEM_ERROR
    RUNNING --cases done-----> COMPLETED

The two error states are terminal and stop iteration; cases after the
failing one are neither run nor counted.
"""
from __future__ import annotations

import numbers
from enum import Enum
from typing import Any, Dict, List, Optional, Sequence, Tuple, Union

import structlog

from ..core.errors import CompilationFailed, SandboxError, ValidationFailed
from ..core.languages import get_language
from ..core.models import ExecutionResult, RunOutcome, SubmissionVerdict, TestCase, Verdict
from ..executor.sandbox import SandboxedExecutor
from ..settings import LimitsConfig

log = structlog.get_logger(__name__)

CaseLike = Union[TestCase, Dict[str, Any]]


def normalize_output(text: str) -> List[str]:
    """Unify line endings, trim every line, drop blank lines at both ends."""
    lines = [line.strip() for line in text.replace("\r\n", "\n").replace("\r", "\n").split("\n")]
    start, end = 0, len(lines)
    while start < end and not lines[start]:
        start += 1
    while end > start and not lines[end - 1]:
        end -= 1
    return lines[start:end]


def compare_outputs(actual: str, expected: str) -> Tuple[bool, Optional[Dict[str, Any]]]:
    actual_lines = normalize_output(actual or "")
    expected_lines = normalize_output(expected or "")
    if actual_lines == expected_lines:
        return True, None
    return False, {
        "expected": "\n".join(expected_lines),
        "actual": "\n".join(actual_lines),
        "expectedLines": expected_lines,
        "actualLines": actual_lines,
    }


class EvalState(str, Enum):
    RUNNING = "running"
    COMPILATION_ERROR = "compilation_error"
    SYSTEM_ERROR = "system_error"
    COMPLETED = "completed"


class _Evaluation:
    def __init__(self, total: int):
        self.state = EvalState.RUNNING
        self.total = total
        self.results: List[ExecutionResult] = []
        self.passed = 0
        self.failed = 0
        self.points = 0
        self.max_time_ms = 0
        self.max_memory_mb = 0.0
        self.first_failure: Optional[Verdict] = None
        self.error: Optional[str] = None

    def _leave_running(self, state: EvalState) -> None:
        if self.state is not EvalState.RUNNING:
            raise RuntimeError(f"evaluation already {self.state.value}")
        self.state = state

    def record(self, result: ExecutionResult, points: int) -> None:
        if self.state is not EvalState.RUNNING:
            raise RuntimeError(f"evaluation already {self.state.value}")
        self.results.append(result)
        self.max_time_ms = max(self.max_time_ms, result.execution_time_ms)
        self.max_memory_mb = max(self.max_memory_mb, result.memory_used_mb)
        if result.verdict is Verdict.ACCEPTED:
            self.passed += 1
            self.points += points
        else:
            self.failed += 1
            if self.first_failure is None:
                self.first_failure = result.verdict

    def compilation_error(self, result: ExecutionResult, message: str) -> None:
        self._leave_running(EvalState.COMPILATION_ERROR)
        self.results.append(result)
        self.error = message

    def system_error(self, result: Optional[ExecutionResult], message: str) -> None:
        self._leave_running(EvalState.SYSTEM_ERROR)
        if result is not None:
            self.results.append(result)
        self.error = message

    def complete(self) -> None:
        self._leave_running(EvalState.COMPLETED)

    def to_verdict(self) -> SubmissionVerdict:
        if self.state is EvalState.COMPILATION_ERROR:
            verdict = Verdict.COMPILATION_ERROR
        elif self.state is EvalState.SYSTEM_ERROR:
            verdict = Verdict.SYSTEM_ERROR
        elif self.state is EvalState.COMPLETED:
            verdict = self.first_failure or Verdict.ACCEPTED
        else:
            raise RuntimeError("evaluation has not finished")
        return SubmissionVerdict(
            verdict=verdict,
            total_test_cases=self.total,
            passed_test_cases=self.passed,
            failed_test_cases=self.failed,
            execution_time_ms=self.max_time_ms,
            memory_used_mb=self.max_memory_mb,
            compilation_error=self.error if self.state is EvalState.COMPILATION_ERROR else None,
            system_error=self.error if self.state is EvalState.SYSTEM_ERROR else None,
            test_case_results=list(self.results),
            score=round(self.passed / self.total * 100) if self.total else 0,
            points_earned=self.points,
        )


def _is_number(value: Any) -> bool:
    return isinstance(value, numbers.Real) and not isinstance(value, bool)


class VerdictEngine:
    def __init__(self, executor: SandboxedExecutor, limits: LimitsConfig):
        self.executor = executor
        self.limits = limits

    # ------------ validation ------------

    def validate(
        self,
        code: Any,
        language: Any,
        test_cases: Any,
        time_limit_ms: Any = None,
        memory_limit_mb: Any = None,
    ) -> None:
        """Raise ValidationFailed describing the first problem found."""
        lim = self.limits
        if not code or not isinstance(code, str):
            raise ValidationFailed("Code is required and must be a string")
        if not language or not isinstance(language, str):
            raise ValidationFailed("Language is required and must be a string")
        if not test_cases or not isinstance(test_cases, (list, tuple)):
            raise ValidationFailed("Test cases are required and must be a non-empty array")

        for i, case in enumerate(test_cases, 1):
            if isinstance(case, dict):
                case = TestCase.from_dict(case)
            if not isinstance(case, TestCase) or case.input is None or case.expected_output is None:
                raise ValidationFailed(
                    f"Test case {i} must have 'input' and 'expectedOutput' properties"
                )

        if time_limit_ms is not None and (
            not _is_number(time_limit_ms) or not 0 < time_limit_ms <= lim.max_time_limit_ms
        ):
            raise ValidationFailed(
                f"Time limit must be a positive number <= {lim.max_time_limit_ms}ms"
            )
        if memory_limit_mb is not None and (
            not _is_number(memory_limit_mb) or not 0 < memory_limit_mb <= lim.max_memory_limit_mb
        ):
            raise ValidationFailed(
                f"Memory limit must be a positive number <= {lim.max_memory_limit_mb}MB"
            )
        if len(code) > lim.max_code_length:
            raise ValidationFailed(
                f"Code length cannot exceed {lim.max_code_length:,} characters"
            )
        # raises UnsupportedLanguage (a ValidationFailed)
        get_language(language)

    # ------------ judging ------------

    @staticmethod
    def _case_fields(case: TestCase) -> Dict[str, Any]:
        if case.is_hidden:
            return {"input": None, "expected_output": None}
        return {"input": case.input, "expected_output": case.expected_output}

    def judge_case(self, number: int, case: TestCase, outcome: RunOutcome) -> ExecutionResult:
        difference = None
        if outcome.timed_out:
            verdict = Verdict.TIME_LIMIT_EXCEEDED
        elif outcome.memory_exceeded:
            verdict = Verdict.MEMORY_LIMIT_EXCEEDED
        elif outcome.exit_code != 0:
            verdict = Verdict.RUNTIME_ERROR
        else:
            ok, difference = compare_outputs(outcome.stdout, case.expected_output)
            verdict = Verdict.ACCEPTED if ok else Verdict.WRONG_ANSWER
        return ExecutionResult(
            test_case_number=number,
            verdict=verdict,
            actual_output=outcome.stdout,
            execution_time_ms=outcome.elapsed_ms,
            memory_used_mb=outcome.memory_used_mb,
            stderr=outcome.stderr,
            output_difference=None if case.is_hidden else difference,
            **self._case_fields(case),
        )

    def _error_result(self, number: int, case: TestCase, verdict: Verdict, message: str) -> ExecutionResult:
        return ExecutionResult(
            test_case_number=number,
            verdict=verdict,
            actual_output="",
            execution_time_ms=0,
            memory_used_mb=0.0,
            stderr=message,
            **self._case_fields(case),
        )

    def evaluate(
        self,
        code: str,
        language: str,
        test_cases: Sequence[CaseLike],
        time_limit_ms: Optional[int] = None,
        memory_limit_mb: Optional[int] = None,
    ) -> SubmissionVerdict:
        total = len(test_cases) if isinstance(test_cases, (list, tuple)) else 0
        ev = _Evaluation(total)
        try:
            self.validate(code, language, test_cases, time_limit_ms, memory_limit_mb)
        except ValidationFailed as e:
            log.info("submission_rejected", reason=str(e))
            ev.system_error(None, str(e))
            return ev.to_verdict()

        cases = [c if isinstance(c, TestCase) else TestCase.from_dict(c) for c in test_cases]
        time_limit_ms = int(time_limit_ms or self.limits.default_time_limit_ms)
        memory_limit_mb = int(memory_limit_mb or self.limits.default_memory_limit_mb)

        try:
            with self.executor.prepare(language, code) as program:
                for number, case in enumerate(cases, 1):
                    try:
                        outcome = program.run(case.input, time_limit_ms, memory_limit_mb)
                    except (SandboxError, OSError) as e:
                        log.error("sandbox_failed", case=number, error=str(e))
                        ev.system_error(
                            self._error_result(number, case, Verdict.SYSTEM_ERROR, str(e)), str(e)
                        )
                        break
                    ev.record(self.judge_case(number, case, outcome), case.points)
                else:
                    ev.complete()
        except CompilationFailed as e:
            ev.compilation_error(
                self._error_result(1, cases[0], Verdict.COMPILATION_ERROR, e.message), e.message
            )
        except (SandboxError, OSError) as e:
            # compile/launch failure before any case could run
            log.error("sandbox_prepare_failed", language=language, error=str(e))
            ev.system_error(
                self._error_result(1, cases[0], Verdict.SYSTEM_ERROR, str(e)), str(e)
            )

        result = ev.to_verdict()
        log.info(
            "evaluation_finished",
            verdict=result.verdict.value,
            passed=result.passed_test_cases,
            total=result.total_test_cases,
        )
        return result
