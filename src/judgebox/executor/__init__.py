from .base import CancelToken, ContainerRunner, ExecSpec
from .docker import DockerRunner
from .local import LocalProcessRunner
from .sandbox import PreparedProgram, SandboxedExecutor
from .workspace import WorkspaceManager

__all__ = [
    "CancelToken",
    "ContainerRunner",
    "DockerRunner",
    "ExecSpec",
    "LocalProcessRunner",
    "PreparedProgram",
    "SandboxedExecutor",
    "WorkspaceManager",
]
