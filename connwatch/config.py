"""Environment driven settings."""
from __future__ import annotations

import os
import socket
from dataclasses import dataclass, field, replace
from typing import Any, Mapping, Optional

DEFAULT_DATABASE_URL = "sqlite:///connwatch.sqlite3"
DEFAULT_API_BASE = "http://127.0.0.1:8000"


def _env_float(env: Mapping[str, str], key: str, default: float) -> float:
    raw = env.get(key)
    if raw is None or not raw.strip():
        return default
    try:
        return float(raw)
    except ValueError as exc:
        raise ValueError(f"{key} must be a number, got {raw!r}") from exc


def _env_int(env: Mapping[str, str], key: str, default: int) -> int:
    raw = env.get(key)
    if raw is None or not raw.strip():
        return default
    try:
        return int(raw)
    except ValueError as exc:
        raise ValueError(f"{key} must be an integer, got {raw!r}") from exc


@dataclass(frozen=True)
class Settings:
    database_url: str = DEFAULT_DATABASE_URL
    storage_timeout: Optional[float] = 5.0
    default_page_size: int = 100
    max_page_size: int = 1000
    api_base: str = DEFAULT_API_BASE
    agent_name: str = field(default_factory=socket.gethostname)
    log_level: str = "INFO"

    def __post_init__(self) -> None:
        if self.max_page_size < 1:
            raise ValueError("max_page_size must be at least 1")
        if not 1 <= self.default_page_size <= self.max_page_size:
            raise ValueError("default_page_size must be between 1 and max_page_size")

    @classmethod
    def from_env(cls, env: Optional[Mapping[str, str]] = None) -> "Settings":
        env = os.environ if env is None else env
        timeout = _env_float(env, "CONNWATCH_STORAGE_TIMEOUT", 5.0)
        return cls(
            database_url=env.get("CONNWATCH_DATABASE_URL") or DEFAULT_DATABASE_URL,
            storage_timeout=timeout if timeout > 0 else None,
            default_page_size=_env_int(env, "CONNWATCH_DEFAULT_PAGE_SIZE", 100),
            max_page_size=_env_int(env, "CONNWATCH_MAX_PAGE_SIZE", 1000),
            api_base=(env.get("CONNWATCH_API_BASE") or DEFAULT_API_BASE).rstrip("/"),
            agent_name=env.get("CONNWATCH_AGENT_NAME") or socket.gethostname(),
            log_level=(env.get("CONNWATCH_LOG_LEVEL") or "INFO").upper(),
        )

    def override(self, **changes: Any) -> "Settings":
        """Return a copy with every non-None keyword applied."""
        return replace(self, **{key: value for key, value in changes.items() if value is not None})


__all__ = ["Settings", "DEFAULT_DATABASE_URL", "DEFAULT_API_BASE"]
