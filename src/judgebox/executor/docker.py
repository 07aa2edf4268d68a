from __future__ import annotations

import os
import shlex
import subprocess
import uuid
from typing import Dict, Iterable, List

import structlog

from ..core.errors import SandboxError
from ..core.languages import LANGUAGES
from ..core.models import RunOutcome
from ..settings import LimitsConfig
from .base import CancelToken, ContainerRunner, ExecSpec
from .process import run_process

log = structlog.get_logger(__name__)

# `docker run` itself failed (daemon down, image missing, bad flag)
DOCKER_RUN_ERROR = 125
_CLI_TIMEOUT_S = 15


class DockerRunner(ContainerRunner):
    """Runs each step in a throwaway container.

    Run steps see the prepared workspace read-only at /host-workspace and
    copy it into a small tmpfs at /workspace; compile steps mount the build
    directory read-write so the artifact lands on the host.
    """

    name = "docker"

    def __init__(self, limits: LimitsConfig, docker_bin: str = "docker"):
        self.limits = limits
        self.docker_bin = docker_bin

    def _user(self) -> List[str]:
        if hasattr(os, "getuid"):
            return ["--user", f"{os.getuid()}:{os.getgid()}"]
        return []

    def build_args(self, spec: ExecSpec, container: str) -> List[str]:
        lim = self.limits
        args = [
            self.docker_bin, "run",
            "--name", container,
            "-i",
            "--network=none",
            f"--memory={spec.memory_mb}m",
            f"--memory-swap={spec.memory_mb}m",  # no swap
            f"--cpus={lim.cpus}",
            f"--pids-limit={lim.pids}",
            "--ulimit", f"nproc={lim.pids}:{lim.pids}",
            "--ulimit", f"fsize={lim.file_size_bytes}:{lim.file_size_bytes}",
            "--ulimit", f"nofile={lim.nofile}:{lim.nofile}",
            "--read-only",
            "--tmpfs", f"/tmp:rw,size={lim.tmp_size},noexec",
            "--security-opt", "no-new-privileges",
            "--cap-drop=ALL",
            *self._user(),
        ]
        for key, value in sorted(spec.env.items()):
            args += ["-e", f"{key}={value}"]

        if spec.writable:
            args += ["-v", f"{spec.workdir}:/workspace:rw", "-w", "/workspace", spec.image, *spec.cmd]
            return args

        cpu = lim.cpu_seconds
        args += [
            "--ulimit", f"cpu={cpu}:{cpu}",
            "--tmpfs", f"/workspace:rw,exec,size={lim.workspace_size}",
            "-v", f"{spec.workdir}:/host-workspace:ro",
            "-w", "/workspace",
            spec.image,
            "sh", "-c",
            f"cp -r /host-workspace/. /workspace/ && exec {shlex.join(spec.cmd)}",
        ]
        return args

    def _cli(self, args: Iterable[str]) -> subprocess.CompletedProcess:
        return subprocess.run(
            [self.docker_bin, *args],
            capture_output=True,
            text=True,
            timeout=_CLI_TIMEOUT_S,
        )

    def _kill_container(self, container: str) -> None:
        try:
            self._cli(["kill", "--signal", "KILL", container])
        except (OSError, subprocess.TimeoutExpired) as e:
            log.warning("docker_kill_failed", container=container, error=str(e))

    def _oom_killed(self, container: str) -> bool:
        try:
            res = self._cli(["inspect", "--format", "{{.State.OOMKilled}}", container])
        except (OSError, subprocess.TimeoutExpired) as e:
            log.warning("docker_inspect_failed", container=container, error=str(e))
            return False
        return res.returncode == 0 and res.stdout.strip() == "true"

    def _remove(self, container: str) -> None:
        try:
            self._cli(["rm", "-f", container])
        except (OSError, subprocess.TimeoutExpired) as e:
            log.warning("docker_rm_failed", container=container, error=str(e))

    def _execute(self, spec: ExecSpec, token: CancelToken) -> RunOutcome:
        container = f"judgebox-{spec.stage}-{uuid.uuid4().hex[:16]}"
        argv = self.build_args(spec, container)
        log.debug("docker_run", stage=spec.stage, container=container, image=spec.image)
        try:
            res = run_process(
                argv,
                cwd=spec.workdir,
                env=dict(os.environ),
                stdin=spec.stdin,
                token=token,
                extra_kill=lambda: self._kill_container(container),
            )
            timed_out = token.cancelled
            if res.returncode == DOCKER_RUN_ERROR and not timed_out and res.stderr.startswith("docker:"):
                raise SandboxError(res.stderr.strip())
            oom = False if timed_out else self._oom_killed(container)
        finally:
            self._remove(container)

        return RunOutcome(
            exit_code=res.returncode,
            stdout=res.stdout,
            stderr=res.stderr,
            elapsed_ms=res.elapsed_ms,
            timed_out=timed_out,
            memory_exceeded=oom,
            # docker does not report peak usage once the container is gone
            memory_used_mb=0.0,
        )

    def probe(self) -> dict:
        info: Dict[str, object] = {"runner": self.name}
        try:
            res = self._cli(["--version"])
            info["docker"] = res.stdout.strip() if res.returncode == 0 else None
        except (OSError, subprocess.TimeoutExpired):
            info["docker"] = None
        if info["docker"]:
            info["images"] = {
                lang.image: self.image_exists(lang.image) for lang in LANGUAGES.values()
            }
        return info

    def image_exists(self, image: str) -> bool:
        try:
            return self._cli(["image", "inspect", image]).returncode == 0
        except (OSError, subprocess.TimeoutExpired):
            return False
