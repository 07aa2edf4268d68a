from __future__ import annotations

import threading
from contextlib import contextmanager
from dataclasses import replace
from pathlib import Path
from typing import Iterator

import structlog

from ..core.errors import CompilationFailed
from ..core.languages import LanguageSpec, get_language
from ..core.models import RunOutcome
from ..settings import LimitsConfig
from .base import ContainerRunner, ExecSpec
from .workspace import WorkspaceManager

log = structlog.get_logger(__name__)


class PreparedProgram:
    """Source written (and compiled, if the language needs it) once per submission."""

    def __init__(self, executor: "SandboxedExecutor", language: LanguageSpec, build_dir: Path):
        self.executor = executor
        self.language = language
        self.build_dir = build_dir
        self._lock = threading.Lock()
        self.runs = 0

    def run(self, input_text: str, time_limit_ms: int, memory_limit_mb: int) -> RunOutcome:
        with self._lock:
            self.runs += 1
        return self.executor.run(self, input_text, time_limit_ms, memory_limit_mb)

    def __str__(self) -> str:
        return f"{self.language.lang_id}:{self.build_dir.name}"


class SandboxedExecutor:
    """Compile-once, run-many front end over a ContainerRunner.

    Every run gets its own freshly created working directory holding a copy
    of the build; it is removed when the run ends, whatever happened.
    """

    def __init__(self, runner: ContainerRunner, workspaces: WorkspaceManager, limits: LimitsConfig):
        self.runner = runner
        self.workspaces = workspaces
        self.limits = limits

    @contextmanager
    def prepare(self, language: str, code: str) -> Iterator[PreparedProgram]:
        """Write the source and compile it; raises CompilationFailed."""
        spec = get_language(language)
        build_dir = self.workspaces.create("build")
        try:
            (build_dir / spec.source_file).write_text(code, encoding="utf-8")
            if spec.is_compiled:
                self._compile(spec, build_dir)
            yield PreparedProgram(self, spec, build_dir)
        finally:
            self.workspaces.remove(build_dir)

    def _compile(self, spec: LanguageSpec, build_dir: Path) -> None:
        lim = self.limits
        outcome = self.runner.run(
            ExecSpec(
                cmd=list(spec.compile_cmd),
                workdir=build_dir,
                image=spec.image,
                timeout_ms=lim.compile_time_limit_ms,
                memory_mb=lim.compile_memory_limit_mb,
                writable=True,
                skip_memory_rlimit=spec.skip_memory_rlimit,
                stage="compile",
            )
        )
        stderr = outcome.stderr.strip()
        if outcome.timed_out:
            raise CompilationFailed(
                f"Compilation timed out after {lim.compile_time_limit_ms}ms",
                outcome.elapsed_ms,
            )
        if outcome.exit_code != 0 or stderr:
            message = stderr or outcome.stdout.strip() or f"compiler exited with status {outcome.exit_code}"
            raise CompilationFailed(message, outcome.elapsed_ms)
        log.debug("compiled", language=spec.lang_id, elapsed_ms=outcome.elapsed_ms)

    def run(self, program: PreparedProgram, input_text: str, time_limit_ms: int, memory_limit_mb: int) -> RunOutcome:
        spec = program.language
        run_dir = self.workspaces.create("run")
        try:
            self.workspaces.populate(run_dir, program.build_dir)
            outcome = self.runner.run(
                ExecSpec(
                    cmd=list(spec.run_cmd),
                    workdir=run_dir,
                    image=spec.image,
                    timeout_ms=time_limit_ms,
                    memory_mb=memory_limit_mb,
                    stdin=input_text,
                    skip_memory_rlimit=spec.skip_memory_rlimit,
                    stage="run",
                )
            )
        finally:
            self.workspaces.remove(run_dir)
        return replace(outcome, stdout=outcome.stdout.strip(), stderr=outcome.stderr.strip())

    def run_source(self, language: str, code: str, input_text: str, time_limit_ms: int, memory_limit_mb: int) -> RunOutcome:
        """One-shot compile and run of a single input."""
        with self.prepare(language, code) as program:
            return program.run(input_text, time_limit_ms, memory_limit_mb)

    def probe(self) -> dict:
        return self.runner.probe()
