"""Shared stepflow configuration utilities.

Centralises reading of ~/.stepflow/configuration.json and the STEPFLOW_*
environment variables so the engine, the Workflow handle and the logging
setup share one implementation.
"""

import json
import os
from dataclasses import dataclass, field
from pathlib import Path
from typing import Any

# ---------------------------------------------------------------------------
# Low-level config file access
# ---------------------------------------------------------------------------

STEPFLOW_CONFIG_FILE = Path.home() / ".stepflow" / "configuration.json"


def get_stepflow_config() -> dict[str, Any]:
    """Load stepflow configuration from ~/.stepflow/configuration.json."""
    if not STEPFLOW_CONFIG_FILE.exists():
        return {}
    try:
        with open(STEPFLOW_CONFIG_FILE, encoding="utf-8-sig") as f:
            data = json.load(f)
    except (json.JSONDecodeError, OSError):
        return {}
    return data if isinstance(data, dict) else {}


def _env_int(name: str) -> int | None:
    raw = os.environ.get(name)
    if raw is None or raw.strip() == "":
        return None
    try:
        return int(raw)
    except ValueError:
        return None


# ---------------------------------------------------------------------------
# Derived helpers
# ---------------------------------------------------------------------------


def get_retry_attempts() -> int:
    """Return the default number of retries per step (0 = a single attempt)."""
    env = _env_int("STEPFLOW_RETRY_ATTEMPTS")
    if env is not None:
        return max(0, env)
    return max(0, int(get_stepflow_config().get("retry", {}).get("attempts", 0)))


def get_retry_delay_ms() -> int:
    """Return the default pause between step attempts, in milliseconds."""
    env = _env_int("STEPFLOW_RETRY_DELAY_MS")
    if env is not None:
        return max(0, env)
    return max(0, int(get_stepflow_config().get("retry", {}).get("delay_ms", 0)))


def get_snapshot_dir() -> Path | None:
    """Return the directory for file-backed snapshots, if one is configured."""
    raw = os.environ.get("STEPFLOW_SNAPSHOT_DIR") or get_stepflow_config().get("snapshot_dir")
    return Path(raw).expanduser() if raw else None


def get_log_level() -> str:
    return os.environ.get("LOG_LEVEL") or get_stepflow_config().get("log_level", "INFO")


def get_log_format() -> str:
    return os.environ.get("LOG_FORMAT") or get_stepflow_config().get("log_format", "auto")


# ---------------------------------------------------------------------------
# EngineConfig
# ---------------------------------------------------------------------------


@dataclass
class EngineConfig:
    """Engine defaults loaded from ~/.stepflow/configuration.json and the environment."""

    retry_attempts: int = field(default_factory=get_retry_attempts)
    retry_delay_ms: int = field(default_factory=get_retry_delay_ms)
    default_foreach_concurrency: int = 1
    snapshot_dir: Path | None = field(default_factory=get_snapshot_dir)
    emitter_history: int = 1000
