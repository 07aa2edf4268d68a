from __future__ import annotations

import math
import time
import uuid
from datetime import datetime, timezone


def now_ms() -> int:
    return int(time.time() * 1000)


def utc_iso() -> str:
    return datetime.now(timezone.utc).isoformat()


def new_job_id() -> str:
    return uuid.uuid4().hex[:12]


def new_execution_id() -> str:
    return str(uuid.uuid4())


def estimate_execution_seconds(case_count: int, time_limit_ms: int) -> int:
    """Rough queue+run estimate shown to the submitter."""
    base = case_count * (time_limit_ms or 5000) if case_count else 5000
    queue_delay = 2000
    return math.ceil((base + queue_delay) / 1000)
