from __future__ import annotations

import shutil
import uuid
from pathlib import Path

import structlog

log = structlog.get_logger(__name__)


class WorkspaceManager:
    """
    Per-run scratch directories under one root:
      <root>/
        ├─ build-<hex>/   source + compiled artifact, lives for one submission
        └─ run-<hex>/     fresh copy of the build for exactly one test case
    """

    def __init__(self, root: Path):
        # always absolute: docker bind mounts need it
        self.root = root if root.is_absolute() else root.resolve()
        self.root.mkdir(parents=True, exist_ok=True)

    def create(self, kind: str) -> Path:
        p = self.root / f"{kind}-{uuid.uuid4().hex}"
        p.mkdir(mode=0o755)
        return p

    def populate(self, target: Path, source: Path) -> None:
        shutil.copytree(source, target, dirs_exist_ok=True)

    def remove(self, path: Path) -> None:
        shutil.rmtree(path, ignore_errors=True)
        if path.exists():
            log.warning("workspace_not_removed", path=str(path))
