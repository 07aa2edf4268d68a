"""Spawn a child, feed stdin, drain stdout/stderr and reap it with rusage."""
from __future__ import annotations

import os
import signal
import subprocess
import threading
import time
from dataclasses import dataclass
from pathlib import Path
from typing import Callable, Dict, List, Optional

import structlog

from ..core.errors import SandboxError
from .base import CancelToken

log = structlog.get_logger(__name__)

MAX_CAPTURE_BYTES = 16 * 1024 * 1024
_CHUNK = 64 * 1024


@dataclass
class ProcessResult:
    returncode: int
    stdout: str
    stderr: str
    elapsed_ms: int
    max_rss_kb: int


def _drain(stream, sink: List[bytes], limit: int) -> None:
    kept = 0
    with stream:
        for chunk in iter(lambda: stream.read(_CHUNK), b""):
            # keep reading past the cap so the child never blocks on a full pipe
            if kept < limit:
                sink.append(chunk[: limit - kept])
                kept += len(chunk)


def _feed(stream, data: Optional[str]) -> None:
    try:
        if data:
            stream.write(data.encode("utf-8"))
    except BrokenPipeError:
        # the program exited without consuming its input
        pass
    finally:
        try:
            stream.close()
        except BrokenPipeError:
            pass


def kill_group(pid: int) -> None:
    try:
        os.killpg(pid, signal.SIGKILL)
    except ProcessLookupError:
        pass


def run_process(
    argv: List[str],
    *,
    cwd: Path,
    env: Dict[str, str],
    stdin: Optional[str],
    token: CancelToken,
    preexec_fn: Optional[Callable[[], None]] = None,
    extra_kill: Optional[Callable[[], None]] = None,
    capture_limit: int = MAX_CAPTURE_BYTES,
) -> ProcessResult:
    """Run ``argv`` in its own session and wait for it.

    Cancelling ``token`` SIGKILLs the whole process group (and calls
    ``extra_kill`` for runners that own out-of-process state such as a
    container). The child stays unreaped until the group has been killed so
    the group id can never be recycled under us.
    """
    start = time.monotonic()
    try:
        proc = subprocess.Popen(
            argv,
            stdin=subprocess.PIPE,
            stdout=subprocess.PIPE,
            stderr=subprocess.PIPE,
            cwd=str(cwd),
            env=env,
            preexec_fn=preexec_fn,
            start_new_session=True,
        )
    except OSError as e:
        raise SandboxError(f"failed to launch {argv[0]}: {e}") from e

    reaped = threading.Event()
    guard = threading.Lock()

    def _kill() -> None:
        with guard:
            if not reaped.is_set():
                kill_group(proc.pid)
        if extra_kill is not None:
            extra_kill()

    token.on_cancel(_kill)

    out_chunks: List[bytes] = []
    err_chunks: List[bytes] = []
    threads = [
        threading.Thread(target=_feed, args=(proc.stdin, stdin), daemon=True),
        threading.Thread(target=_drain, args=(proc.stdout, out_chunks, capture_limit), daemon=True),
        threading.Thread(target=_drain, args=(proc.stderr, err_chunks, capture_limit), daemon=True),
    ]
    for t in threads:
        t.start()

    # wait for exit without reaping, then sweep stragglers left in the group
    os.waitid(os.P_PID, proc.pid, os.WEXITED | os.WNOWAIT)
    with guard:
        kill_group(proc.pid)
        _, status, rusage = os.wait4(proc.pid, 0)
        reaped.set()
    proc.returncode = os.waitstatus_to_exitcode(status)
    elapsed_ms = int((time.monotonic() - start) * 1000)

    for t in threads:
        # a child that escaped the session may still hold the pipes open
        t.join(timeout=2.0)
        if t.is_alive():
            log.warning("pipe_drain_abandoned", pid=proc.pid)

    return ProcessResult(
        returncode=proc.returncode,
        stdout=b"".join(out_chunks).decode("utf-8", errors="replace"),
        stderr=b"".join(err_chunks).decode("utf-8", errors="replace"),
        elapsed_ms=elapsed_ms,
        max_rss_kb=int(rusage.ru_maxrss),
    )
