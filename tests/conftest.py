import threading
from typing import Callable, List, Optional

import pytest

from judgebox.core.models import RunOutcome
from judgebox.executor import ContainerRunner, ExecSpec, SandboxedExecutor, WorkspaceManager
from judgebox.services.verdict_engine import VerdictEngine
from judgebox.settings import LimitsConfig


def echo_run(spec: ExecSpec) -> RunOutcome:
    return RunOutcome(exit_code=0, stdout=spec.stdin or "", stderr="", elapsed_ms=5, memory_used_mb=1.5)


def ok_compile(spec: ExecSpec) -> RunOutcome:
    return RunOutcome(exit_code=0, stdout="", stderr="", elapsed_ms=20)


class ScriptedRunner(ContainerRunner):
    """In-process stand-in for docker: each step is answered by a callback."""

    name = "scripted"

    def __init__(
        self,
        on_run: Callable[[ExecSpec], RunOutcome] = echo_run,
        on_compile: Callable[[ExecSpec], RunOutcome] = ok_compile,
    ):
        self.on_run = on_run
        self.on_compile = on_compile
        self.calls: List[ExecSpec] = []
        self._lock = threading.Lock()

    def _execute(self, spec, token):
        with self._lock:
            self.calls.append(spec)
        if spec.stage == "compile":
            return self.on_compile(spec)
        return self.on_run(spec)

    def stage_calls(self, stage: str) -> List[ExecSpec]:
        return [c for c in self.calls if c.stage == stage]


class FakeClock:
    def __init__(self, start: int = 1_700_000_000_000):
        self.now = start

    def __call__(self) -> int:
        return self.now

    def advance(self, ms: int) -> None:
        self.now += ms


@pytest.fixture
def runner():
    return ScriptedRunner()


@pytest.fixture
def limits():
    return LimitsConfig()


@pytest.fixture
def make_engine(tmp_path, limits):
    def _make(runner: Optional[ContainerRunner] = None) -> VerdictEngine:
        executor = SandboxedExecutor(runner or ScriptedRunner(), WorkspaceManager(tmp_path / "work"), limits)
        return VerdictEngine(executor, limits)

    return _make


@pytest.fixture
def clock():
    return FakeClock()
