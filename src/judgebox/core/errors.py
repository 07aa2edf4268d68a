"""Typed failures raised inside the judge.

Per-case problems (wrong output, crashes, timeouts) are verdicts, not
exceptions. These classes cover everything that has to travel up a call
stack before being folded into a verdict or an HTTP response.
"""
from __future__ import annotations

from typing import Any, Dict, Optional


class JudgeError(Exception):
    """Base class for judge failures."""


class ValidationFailed(JudgeError):
    pass


class UnsupportedLanguage(ValidationFailed):
    def __init__(self, language: str, supported):
        self.language = language
        super().__init__(
            f"Unsupported language: {language}. Supported: {', '.join(supported)}"
        )


class CompilationFailed(JudgeError):
    def __init__(self, message: str, elapsed_ms: int = 0):
        self.message = message
        self.elapsed_ms = elapsed_ms
        super().__init__(message)


class SandboxError(JudgeError):
    """The sandbox could not be launched or torn down."""


class StoreUnavailable(JudgeError):
    """A backing store (redis, database) did not answer."""


class QueueNotFound(JudgeError):
    def __init__(self, name: str):
        self.name = name
        super().__init__(f"Queue {name} not found")


class ServiceUnavailable(JudgeError):
    """Raised when the service is not accepting work (e.g. shutting down)."""


class RateLimitExceeded(JudgeError):
    def __init__(self, decision: Dict[str, Any], message: Optional[str] = None):
        self.decision = decision
        super().__init__(message or "Rate limit exceeded")
