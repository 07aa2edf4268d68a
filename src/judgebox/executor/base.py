from __future__ import annotations

import threading
from dataclasses import dataclass, field
from pathlib import Path
from typing import Callable, Dict, List, Optional

import structlog

from ..core.models import RunOutcome

log = structlog.get_logger(__name__)


@dataclass
class ExecSpec:
    cmd: List[str]
    workdir: Path
    image: str
    timeout_ms: int
    memory_mb: int
    stdin: Optional[str] = None
    # compile steps write their artifact back into workdir
    writable: bool = False
    skip_memory_rlimit: bool = False
    stage: str = "run"
    env: Dict[str, str] = field(default_factory=dict)


class CancelToken:
    """One-shot cancellation flag with kill callbacks.

    The wall-clock timer calls ``cancel()``; runners register the callbacks
    that tear the process tree down.
    """

    def __init__(self) -> None:
        self._event = threading.Event()
        self._lock = threading.Lock()
        self._callbacks: List[Callable[[], None]] = []

    @property
    def cancelled(self) -> bool:
        return self._event.is_set()

    def on_cancel(self, fn: Callable[[], None]) -> None:
        with self._lock:
            if not self._event.is_set():
                self._callbacks.append(fn)
                return
        fn()

    def cancel(self) -> None:
        with self._lock:
            if self._event.is_set():
                return
            self._event.set()
            callbacks = list(self._callbacks)
        for fn in callbacks:
            try:
                fn()
            except OSError as e:
                log.warning("cancel_callback_failed", error=str(e))


class ContainerRunner:
    """Runs one command in an isolated environment.

    ``run`` arms a wall-clock timer that is independent of any limit the
    sandbox enforces itself; subclasses implement ``_execute`` and must
    report ``timed_out`` from the token they are handed.
    """

    name = "base"

    def run(self, spec: ExecSpec) -> RunOutcome:
        token = CancelToken()
        timer = threading.Timer(spec.timeout_ms / 1000.0, token.cancel)
        timer.daemon = True
        timer.start()
        try:
            return self._execute(spec, token)
        finally:
            timer.cancel()

    def _execute(self, spec: ExecSpec, token: CancelToken) -> RunOutcome:
        raise NotImplementedError

    def probe(self) -> dict:
        return {"runner": self.name}
