from __future__ import annotations

import resource
import signal
from typing import Callable, Optional


def _limit_less(lim1: int, lim2: int) -> bool:
    """True if lim1 <= lim2, treating RLIM_INFINITY as the largest value."""
    if lim2 == resource.RLIM_INFINITY:
        return True
    if lim1 == resource.RLIM_INFINITY:
        return False
    return lim1 <= lim2


def try_limit(limit: int, soft: int, hard: int) -> None:
    """Set an rlimit, capped at the current hard limit instead of failing."""
    _, cur_hard = resource.getrlimit(limit)
    if not _limit_less(soft, cur_hard):
        soft = cur_hard
    if not _limit_less(hard, cur_hard):
        hard = cur_hard
    resource.setrlimit(limit, (soft, hard))


def make_preexec(
    cpu_seconds: int,
    memory_bytes: Optional[int],
    file_size_bytes: int,
    nofile: int,
) -> Callable[[], None]:
    """Return a preexec_fn that applies process-level limits in the child."""

    def _preexec() -> None:
        # Python leaves SIGPIPE/SIGXFSZ ignored; user programs should die on them.
        for name in ("SIGPIPE", "SIGXFSZ"):
            if hasattr(signal, name):
                signal.signal(getattr(signal, name), signal.SIG_DFL)

        try_limit(resource.RLIMIT_CPU, cpu_seconds, cpu_seconds + 1)
        if memory_bytes is not None:
            try_limit(resource.RLIMIT_AS, memory_bytes, memory_bytes)
        try_limit(resource.RLIMIT_FSIZE, file_size_bytes, file_size_bytes)
        try_limit(resource.RLIMIT_NOFILE, nofile, nofile)
        try_limit(resource.RLIMIT_CORE, 0, 0)
        try_limit(resource.RLIMIT_STACK, resource.RLIM_INFINITY, resource.RLIM_INFINITY)

    return _preexec
