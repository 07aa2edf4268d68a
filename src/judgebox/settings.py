from __future__ import annotations

import os
import tempfile
from pathlib import Path
from typing import Any, Dict, Optional

import yaml
from pydantic import BaseModel, Field
from pydantic_settings import BaseSettings, SettingsConfigDict


class LimitsConfig(BaseModel):
    default_time_limit_ms: int = 5000
    default_memory_limit_mb: int = 256
    max_time_limit_ms: int = 30000
    max_memory_limit_mb: int = 1024
    max_code_length: int = 100_000

    # compile step is judged independently of per-case limits
    compile_time_limit_ms: int = 15000
    compile_memory_limit_mb: int = 512

    cpus: float = 0.5
    pids: int = 50
    file_size_bytes: int = 10 * 1024 * 1024
    cpu_seconds: int = 10
    nofile: int = 64
    tmp_size: str = "100m"
    workspace_size: str = "50m"


class QueueConfig(BaseModel):
    concurrency: int = 1
    attempts: int = 1
    backoff_ms: int = 2000
    priority: int = 0
    remove_on_complete: int = 100
    remove_on_fail: int = 50


def _default_queues() -> Dict[str, QueueConfig]:
    return {
        "execution": QueueConfig(concurrency=5, attempts=3),
        "priority": QueueConfig(concurrency=3, attempts=1, priority=10),
        "batch": QueueConfig(concurrency=2, attempts=1),
    }


class RateLimitRule(BaseModel):
    limit: int
    window_ms: int


def _default_rate_limits() -> Dict[str, RateLimitRule]:
    return {
        "execute": RateLimitRule(limit=10, window_ms=60_000),
        "priority": RateLimitRule(limit=5, window_ms=30_000),
        "batch": RateLimitRule(limit=2, window_ms=300_000),
    }


class Settings(BaseSettings):
    # ---- runner ----
    runner: str = "docker"  # docker | local
    docker_bin: str = "docker"
    workspace_dir: Path = Path(tempfile.gettempdir()) / "judgebox"
    # argv[0] overrides for the local runner, e.g. {"python3": "/usr/bin/python3.12"}
    runtimes: Dict[str, str] = {}
    iso_strategy: str = "none"  # local runner: "none" | "ns" | "cgroups" | "ns+cgroups"
    allow_network: bool = False

    limits: LimitsConfig = Field(default_factory=LimitsConfig)

    # ---- scheduler ----
    queues: Dict[str, QueueConfig] = Field(default_factory=_default_queues)
    stalled_interval_ms: int = 30_000
    max_stalled_count: int = 1
    poll_interval_ms: int = 250
    batch_max_submissions: int = 10
    clean_grace_ms: int = 5000
    shutdown_timeout_s: float = 30.0

    # ---- rate limiting ----
    rate_limits: Dict[str, RateLimitRule] = Field(default_factory=_default_rate_limits)

    # ---- stale submission sweep ----
    sweep_interval_s: float = 300.0
    stale_after_s: float = 600.0

    # ---- backing stores (None -> in-memory) ----
    redis_url: Optional[str] = None
    database_url: Optional[str] = None

    # ---- http ----
    host: str = "0.0.0.0"
    port: int = 3001

    # ---- logging ----
    log_level: str = "INFO"
    log_format: str = "json"

    # env prefix JUDGE_*
    model_config = SettingsConfigDict(env_prefix="JUDGE_", extra="ignore")


def _read_yaml(path: str) -> Dict[str, Any]:
    try:
        with open(path, "r", encoding="utf-8") as f:
            data = yaml.safe_load(f) or {}
    except FileNotFoundError:
        return {}
    except yaml.YAMLError:
        # A broken config file must not take the judge down; defaults apply.
        return {}
    return data if isinstance(data, dict) else {}


def load_settings(path: Optional[str] = None) -> Settings:
    # 0) base from JUDGE_* env
    s = Settings()

    # 1) conf/judge.yaml (or JUDGE_CONF)
    data = _read_yaml(path or os.environ.get("JUDGE_CONF", "conf/judge.yaml"))
    if not data:
        return s

    # 2) YAML overrides field by field; nested sections are validated again
    merged = s.model_dump()
    for key, value in data.items():
        if key not in Settings.model_fields:
            continue
        if isinstance(value, dict) and isinstance(merged.get(key), dict):
            section = dict(merged[key])
            for sub_key, sub_value in value.items():
                if isinstance(sub_value, dict) and isinstance(section.get(sub_key), dict):
                    section[sub_key] = {**section[sub_key], **sub_value}
                else:
                    section[sub_key] = sub_value
            merged[key] = section
        else:
            merged[key] = value
    return Settings.model_validate(merged)
