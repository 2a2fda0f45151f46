# src/engine/config.py
"""
Settings for the job orchestrator.

Values come from built-in defaults, then an optional YAML file
(JOBS_CONFIG_FILE), then environment variables.
"""
import os
from dataclasses import dataclass, fields

import yaml

INT_KEYS = {"max_concurrent_jobs", "redis_ttl_seconds", "schedule_poll_seconds"}


@dataclass
class Settings:
    database_url: str = "sqlite:///./ctem_jobs.db"
    max_concurrent_jobs: int = 3
    scan_results_dir: str = "scans"
    reports_dir: str = "reports"
    log_level: str = "INFO"
    runtime_backend: str = "memory"  # memory | redis
    redis_url: str = None
    redis_prefix: str = "ctem:"
    redis_ttl_seconds: int = 86400
    schedule_poll_seconds: int = 60  # 0 disables the scheduler thread


def _coerce(key, value):
    if key in INT_KEYS:
        try:
            return int(value)
        except (TypeError, ValueError):
            raise ValueError(f"Setting {key} must be an integer, got {value!r}")
    return value


def load_settings(path: str = None, environ=None) -> Settings:
    environ = os.environ if environ is None else environ
    values = {}

    path = path or environ.get("JOBS_CONFIG_FILE")
    if path:
        with open(path, "r") as f:
            data = yaml.safe_load(f) or {}
        if not isinstance(data, dict):
            raise ValueError(f"Config file {path} must contain a mapping")
        for key, value in data.items():
            values[key.lower()] = value

    for field in fields(Settings):
        env_value = environ.get(field.name.upper())
        if env_value is not None:
            values[field.name] = env_value

    known = {field.name for field in fields(Settings)}
    settings = Settings(**{k: _coerce(k, v) for k, v in values.items() if k in known})
    if settings.max_concurrent_jobs < 1:
        raise ValueError("Setting max_concurrent_jobs must be at least 1")
    if settings.redis_ttl_seconds < 1:
        raise ValueError("Setting redis_ttl_seconds must be at least 1")
    if settings.schedule_poll_seconds < 0:
        raise ValueError("Setting schedule_poll_seconds must not be negative")
    if settings.runtime_backend not in ("memory", "redis"):
        raise ValueError(f"Unsupported runtime backend: {settings.runtime_backend}")
    return settings


settings = load_settings()
