"""Configuration loader.

The server reads its configuration from environment variables so the same
image can run locally and behind a reverse proxy.  Every value has a default
that works for local development.

Environment variables:

``CODESYNC_HOST`` / ``PORT``
    Interface and port uvicorn binds to.  Defaults to ``0.0.0.0:3001``.

``CODESYNC_ALLOWED_ORIGINS``
    Comma-separated list of origins allowed to open the WebSocket and call
    the HTTP API.  ``*`` allows any origin.

``CODESYNC_EXEC_TIMEOUT_MS``
    Wall-clock limit for a single compile or run step.  Default 5000.

``CODESYNC_MAX_OUTPUT_BYTES``
    Cap applied independently to stdout and stderr.  Default 65536.

``CODESYNC_MAX_FILE_BYTES``
    Largest file a child process may write (RLIMIT_FSIZE).  Default 16 MiB.

``CODESYNC_ROOM_MAX_IDLE_SECONDS``
    Empty rooms idle for longer than this are evicted.  Default 24 hours.

``CODESYNC_SWEEP_INTERVAL_SECONDS``
    How often the reaper looks for idle rooms.  Default 1 hour.

``CODESYNC_MAX_CONCURRENT_RUNS``
    Upper bound on simultaneously running executions.  ``0`` (the default)
    means unlimited.

``CODESYNC_WORKSPACE_ROOT``
    Parent directory for per-run temporary workspaces.  Defaults to the
    system temp directory.

``LOG_LEVEL``
    Root log level used by ``python -m codesync``.  Default ``INFO``.
"""

from __future__ import annotations

import os
from dataclasses import dataclass, field

DEFAULT_ALLOWED_ORIGINS = ["http://localhost:5173", "http://localhost:4173"]


def _int_var(name: str, default: int) -> int:
    val = os.getenv(name)
    if val is None or not val.strip():
        return default
    try:
        return int(val)
    except ValueError:
        raise ValueError(f"Invalid integer for {name}: {val}")


def _list_var(name: str, default: list[str]) -> list[str]:
    val = os.getenv(name)
    if val is None:
        return list(default)
    return [item.strip() for item in val.split(",") if item.strip()]


@dataclass
class Settings:
    """Centralised configuration object."""

    host: str = "0.0.0.0"
    port: int = 3001
    allowed_origins: list[str] = field(
        default_factory=lambda: list(DEFAULT_ALLOWED_ORIGINS)
    )
    exec_timeout_ms: int = 5000
    max_output_bytes: int = 64 * 1024
    max_file_bytes: int = 16 * 1024 * 1024
    room_max_idle_seconds: int = 24 * 60 * 60
    sweep_interval_seconds: int = 60 * 60
    max_concurrent_runs: int = 0
    workspace_root: str | None = None
    log_level: str = "INFO"

    def __post_init__(self) -> None:
        if self.exec_timeout_ms <= 0:
            raise ValueError("exec_timeout_ms must be positive")
        if self.max_output_bytes <= 0:
            raise ValueError("max_output_bytes must be positive")
        if self.max_file_bytes <= 0:
            raise ValueError("max_file_bytes must be positive")
        if self.sweep_interval_seconds <= 0:
            raise ValueError("sweep_interval_seconds must be positive")
        if self.max_concurrent_runs < 0:
            raise ValueError("max_concurrent_runs cannot be negative")

    @property
    def allow_any_origin(self) -> bool:
        return "*" in self.allowed_origins

    def origin_allowed(self, origin: str | None) -> bool:
        """Return True if a WebSocket handshake from ``origin`` may proceed.

        Non-browser clients send no ``Origin`` header and are always let in.
        """
        if origin is None or self.allow_any_origin:
            return True
        return origin in self.allowed_origins

    @classmethod
    def from_env(cls) -> "Settings":
        return cls(
            host=os.getenv("CODESYNC_HOST", "0.0.0.0"),
            port=_int_var("PORT", 3001),
            allowed_origins=_list_var(
                "CODESYNC_ALLOWED_ORIGINS", DEFAULT_ALLOWED_ORIGINS
            ),
            exec_timeout_ms=_int_var("CODESYNC_EXEC_TIMEOUT_MS", 5000),
            max_output_bytes=_int_var("CODESYNC_MAX_OUTPUT_BYTES", 64 * 1024),
            max_file_bytes=_int_var("CODESYNC_MAX_FILE_BYTES", 16 * 1024 * 1024),
            room_max_idle_seconds=_int_var(
                "CODESYNC_ROOM_MAX_IDLE_SECONDS", 24 * 60 * 60
            ),
            sweep_interval_seconds=_int_var(
                "CODESYNC_SWEEP_INTERVAL_SECONDS", 60 * 60
            ),
            max_concurrent_runs=_int_var("CODESYNC_MAX_CONCURRENT_RUNS", 0),
            workspace_root=os.getenv("CODESYNC_WORKSPACE_ROOT") or None,
            log_level=os.getenv("LOG_LEVEL", "INFO").upper(),
        )
