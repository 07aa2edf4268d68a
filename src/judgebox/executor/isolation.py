"""Command wrappers that add namespace and cgroup isolation on the host.

Only the local runner uses these; the docker runner gets the same
guarantees from the container runtime.
"""
from __future__ import annotations

import os
import shlex
import shutil
from pathlib import Path
from typing import Callable, List

from .base import ExecSpec


def wrap_with_ns(cmd: List[str], workdir: Path, allow_network: bool) -> List[str]:
    """Run inside fresh user/mount/pid (and net) namespaces.

    Falls back to the bare command when ``unshare`` is not installed.
    """
    unshare = shutil.which("unshare")
    if not unshare:
        return cmd

    sh = shutil.which("sh") or "/bin/sh"
    flags = ["--user", "--map-root-user", "--mount", "--pid", "--fork", "--ipc", "--uts"]
    if not allow_network:
        flags.append("--net")

    inner = f"cd {shlex.quote(str(workdir.resolve()))} && exec {shlex.join(cmd)}"
    return [unshare, *flags, sh, "-c", inner]


def wrap_with_cgroups(cmd: List[str], spec: ExecSpec, cpus: float, pids: int) -> List[str]:
    """Put the command in a transient systemd scope with memory/CPU/task caps.

    Without systemd-run (minimal containers, WSL) the command is returned as is.
    """
    sdrun = shutil.which("systemd-run")
    if not sdrun:
        return cmd

    props = [
        f"MemoryMax={spec.memory_mb * 1024 * 1024}",
        "MemorySwapMax=0",
        f"CPUQuota={int(cpus * 100)}%",
        f"TasksMax={pids}",
    ]
    argv = [sdrun, "--scope", "--quiet", "--collect"]
    if os.geteuid() != 0:
        argv.append("--user")
    for p in props:
        argv += ["-p", p]
    return argv + ["--"] + cmd


class IsolationPipeline:
    def __init__(self, strategy: str, allow_network: bool, cpus: float, pids: int):
        self.strategy = (strategy or "none").lower()
        self.allow_network = allow_network
        self.cpus = cpus
        self.pids = pids

    @property
    def uses_cgroups(self) -> bool:
        return "cgroups" in self.strategy

    def build(self, spec: ExecSpec) -> Callable[[List[str]], List[str]]:
        def composer(cmd: List[str]) -> List[str]:
            out = cmd
            if "ns" in self.strategy.split("+"):
                out = wrap_with_ns(out, spec.workdir, self.allow_network)
            if self.uses_cgroups:
                out = wrap_with_cgroups(out, spec, self.cpus, self.pids)
            return out

        return composer


def probe_capabilities(strategy: str, allow_network: bool) -> dict:
    """Environment facts that decide how much isolation the host can give."""
    return {
        "strategy": strategy,
        "allow_network": allow_network,
        "euid": os.geteuid() if hasattr(os, "geteuid") else None,
        "has_unshare": bool(shutil.which("unshare")),
        "has_systemd_run": bool(shutil.which("systemd-run")),
        "has_sh": bool(shutil.which("sh") or shutil.which("bash")),
    }
