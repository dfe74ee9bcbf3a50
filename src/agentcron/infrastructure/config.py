"""Configuration constants, .env parsing, and scheduler/queue settings."""

from __future__ import annotations

import os
from dataclasses import dataclass
from pathlib import Path


def read_env_file(keys: list[str]) -> dict[str, str]:
    """Parse .env file and return values for requested keys.

    Does NOT load into os.environ; callers decide what to do with values.
    This keeps the internal API secret out of the process environment.
    """
    env_file = Path.cwd() / ".env"
    try:
        content = env_file.read_text()
    except OSError:
        return {}

    result: dict[str, str] = {}
    wanted = set(keys)

    for line in content.splitlines():
        trimmed = line.strip()
        if not trimmed or trimmed.startswith("#"):
            continue
        eq_idx = trimmed.find("=")
        if eq_idx == -1:
            continue
        key = trimmed[:eq_idx].strip()
        if key not in wanted:
            continue
        value = trimmed[eq_idx + 1 :].strip()
        if (value.startswith('"') and value.endswith('"')) or (value.startswith("'") and value.endswith("'")):
            value = value[1:-1]
        if value:
            result[key] = value

    return result


_ENV_KEYS = [
    "SCHEDULER_ENABLED",
    "SCHEDULER_CHECK_INTERVAL",
    "QUEUE_POLL_INTERVAL",
    "MAX_CONCURRENT_TASKS",
    "RETRY_DELAY_MS",
    "DEFAULT_TIMEOUT_MS",
    "INTERNAL_BASE_URL",
    "INTERNAL_API_SECRET",
    "CONTEXT_ROOT",
    "STORE_DIR",
]

# Read config values from .env (os.environ wins).
_env_config = read_env_file(_ENV_KEYS)


def _get(key: str, default: str) -> str:
    return os.environ.get(key) or _env_config.get(key, default)


def parse_bool(value: str) -> bool:
    return value.strip().lower() in ("1", "true", "yes", "on")


SCHEDULER_ENABLED: bool = parse_bool(_get("SCHEDULER_ENABLED", "true"))
SCHEDULER_CHECK_INTERVAL: float = float(_get("SCHEDULER_CHECK_INTERVAL", "60"))  # seconds
QUEUE_POLL_INTERVAL: float = float(_get("QUEUE_POLL_INTERVAL", "1.0"))  # seconds
MAX_CONCURRENT_TASKS: int = max(1, int(_get("MAX_CONCURRENT_TASKS", "1")))
RETRY_DELAY_MS: int = int(_get("RETRY_DELAY_MS", "5000"))
DEFAULT_TIMEOUT_MS: int = int(_get("DEFAULT_TIMEOUT_MS", "300000"))  # 5min

INTERNAL_BASE_URL: str = _get("INTERNAL_BASE_URL", "http://localhost:3000").rstrip("/")
INTERNAL_API_SECRET: str = _get("INTERNAL_API_SECRET", "")

# Absolute paths
PROJECT_ROOT: Path = Path.cwd()
STORE_DIR: Path = Path(_get("STORE_DIR", str(PROJECT_ROOT / "store"))).resolve()
CONTEXT_ROOT: Path = Path(_get("CONTEXT_ROOT", str(PROJECT_ROOT))).resolve()

SUMMARY_MAX_CHARS = 500


@dataclass
class QueueConfig:
    """Task queue tuning, defaulting to the environment-derived constants."""

    max_concurrent: int = MAX_CONCURRENT_TASKS
    retry_delay_ms: int = RETRY_DELAY_MS
    poll_interval_s: float = QUEUE_POLL_INTERVAL
    drain_poll_s: float = 0.1

    def retry_delay_for(self, attempt_number: int) -> float:
        """Backoff in seconds after attempt `attempt_number` (1-indexed) fails."""
        return self.retry_delay_ms * (2 ** (attempt_number - 1)) / 1000


@dataclass
class SchedulerConfig:
    enabled: bool = SCHEDULER_ENABLED
    check_interval_s: float = SCHEDULER_CHECK_INTERVAL
