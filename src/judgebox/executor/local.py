from __future__ import annotations

import math
import os
import signal
from typing import Dict, Optional

import structlog

from ..core.models import RunOutcome
from ..settings import LimitsConfig
from .base import CancelToken, ContainerRunner, ExecSpec
from .isolation import IsolationPipeline, probe_capabilities
from .process import run_process
from .rlimits import make_preexec

log = structlog.get_logger(__name__)


class LocalProcessRunner(ContainerRunner):
    """Runs programs directly on the host under rlimits.

    Meant for development hosts and tests where docker is unavailable.
    Namespace and cgroup isolation are opt-in through ``iso_strategy``;
    without them this is a resource-bounded runner, not a security boundary.
    """

    name = "local"

    def __init__(
        self,
        limits: LimitsConfig,
        runtimes: Optional[Dict[str, str]] = None,
        iso_strategy: str = "none",
        allow_network: bool = False,
    ):
        self.limits = limits
        self.runtimes = dict(runtimes or {})
        self.iso = IsolationPipeline(
            strategy=iso_strategy,
            allow_network=allow_network,
            cpus=limits.cpus,
            pids=limits.pids,
        )

    def _env(self, spec: ExecSpec) -> Dict[str, str]:
        return {
            "PATH": os.environ.get("PATH", "/usr/local/bin:/usr/bin:/bin"),
            "HOME": str(spec.workdir),
            "LANG": "C.UTF-8",
            "PYTHONUNBUFFERED": "1",
            **spec.env,
        }

    def _command(self, spec: ExecSpec):
        cmd = list(spec.cmd)
        cmd[0] = self.runtimes.get(cmd[0], cmd[0])
        return self.iso.build(spec)(cmd)

    def _execute(self, spec: ExecSpec, token: CancelToken) -> RunOutcome:
        memory_bytes = None
        if not spec.skip_memory_rlimit:
            memory_bytes = spec.memory_mb * 1024 * 1024
        preexec = make_preexec(
            cpu_seconds=max(1, math.ceil(spec.timeout_ms / 1000)) + 1,
            memory_bytes=memory_bytes,
            file_size_bytes=self.limits.file_size_bytes,
            nofile=self.limits.nofile,
        )

        argv = self._command(spec)
        log.debug("local_run", stage=spec.stage, argv=argv, workdir=str(spec.workdir))
        res = run_process(
            argv,
            cwd=spec.workdir,
            env=self._env(spec),
            stdin=spec.stdin,
            token=token,
            preexec_fn=preexec,
        )

        memory_used_mb = res.max_rss_kb / 1024.0
        timed_out = token.cancelled
        # SIGKILL we did not send ourselves comes from the cgroup OOM killer
        oom_killed = (
            self.iso.uses_cgroups
            and not timed_out
            and res.returncode == -signal.SIGKILL
        )
        memory_exceeded = not timed_out and (
            oom_killed or memory_used_mb > spec.memory_mb
        )
        return RunOutcome(
            exit_code=res.returncode,
            stdout=res.stdout,
            stderr=res.stderr,
            elapsed_ms=res.elapsed_ms,
            timed_out=timed_out,
            memory_exceeded=memory_exceeded,
            memory_used_mb=round(memory_used_mb, 2),
        )

    def probe(self) -> dict:
        caps = probe_capabilities(self.iso.strategy, self.iso.allow_network)
        return {"runner": self.name, "capabilities": caps, "runtimes": self.runtimes}
