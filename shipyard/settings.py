from __future__ import annotations

import os
from dataclasses import dataclass
from pathlib import Path
from typing import Optional


PROJECT_ROOT = Path(__file__).resolve().parents[1]

_DEFAULT_IMAGE = "registry.local/shipyard/app"
_DEFAULT_APPROVAL_TTL_SECONDS = 3600.0
_DEFAULT_STEP_TIMEOUT_SECONDS = 900.0
_DEFAULT_HISTORY_LIMIT = 50


def _env_str(key: str, default: str = "") -> str:
    return (os.getenv(key) or default).strip()


def _env_float(key: str, default: float) -> float:
    try:
        return float(os.getenv(key, str(default)))
    except (TypeError, ValueError):
        return default


def _env_int(key: str, default: int) -> int:
    try:
        return int(os.getenv(key, str(default)))
    except (TypeError, ValueError):
        return default


_LOG_LEVELS = ("CRITICAL", "ERROR", "WARNING", "INFO", "DEBUG")


def _env_log_level(key: str, default: str = "INFO") -> str:
    v = _env_str(key, default).upper()
    return v if v in _LOG_LEVELS else default


@dataclass(frozen=True)
class Settings:
    env: str
    workspace_root: Path
    pipeline_file: Optional[Path]
    image: str
    webhook_secret: Optional[str]
    approval_ttl_seconds: float
    step_timeout_seconds: float
    log_level: str
    history_limit: int

    @property
    def state_dir(self) -> Path:
        return self.workspace_root / ".shipyard"

    @staticmethod
    def from_env() -> "Settings":
        ws = _env_str("SHIPYARD_WORKSPACE_ROOT")
        pipeline_file = _env_str("SHIPYARD_PIPELINE_FILE")
        secret = _env_str("SHIPYARD_WEBHOOK_SECRET")
        return Settings(
            env=_env_str("SHIPYARD_ENV", "dev").lower(),
            workspace_root=Path(ws).resolve() if ws else PROJECT_ROOT / "workspace",
            pipeline_file=Path(pipeline_file) if pipeline_file else None,
            image=_env_str("SHIPYARD_IMAGE", _DEFAULT_IMAGE),
            webhook_secret=secret or None,
            approval_ttl_seconds=max(0.0, _env_float("SHIPYARD_APPROVAL_TTL_SECONDS", _DEFAULT_APPROVAL_TTL_SECONDS)),
            step_timeout_seconds=max(1.0, _env_float("SHIPYARD_STEP_TIMEOUT_SECONDS", _DEFAULT_STEP_TIMEOUT_SECONDS)),
            log_level=_env_log_level("SHIPYARD_LOG_LEVEL"),
            history_limit=max(1, _env_int("SHIPYARD_HISTORY_LIMIT", _DEFAULT_HISTORY_LIMIT)),
        )


def get_settings() -> Settings:
    # Not cached: env vars may change between calls.
    return Settings.from_env()
