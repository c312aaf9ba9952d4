"""Configuration layer: load runtime settings from environment variables."""

from __future__ import annotations

import os
from dataclasses import dataclass
from pathlib import Path
from typing import Literal

QueuePolicy = Literal["queue", "reject"]


def _resolve_path(path_like: str) -> Path:
    candidate = Path(path_like)
    if candidate.is_absolute():
        return candidate
    if candidate.exists():
        return candidate
    project_root = Path(__file__).resolve().parents[2]
    rooted = project_root / candidate
    if rooted.exists():
        return rooted
    return candidate


def _env_bool(name: str, default: bool) -> bool:
    raw = os.getenv(name)
    if raw is None:
        return default
    return raw.strip().lower() in {"1", "true", "yes", "on"}


def _queue_policy(raw: str, default: QueuePolicy) -> QueuePolicy:
    normalized = raw.strip().lower()
    if normalized == "reject":
        return "reject"
    if normalized == "queue":
        return "queue"
    return default


@dataclass(frozen=True)
class Settings:
    """Immutable relay settings used by the API shell and every session relay."""

    app_name: str = "ccrelay"
    app_version: str = "0.1.0"
    env: str = "dev"
    log_level: str = "INFO"
    host: str = "127.0.0.1"
    port: int = 3457
    cors_allow_origins: str = "http://localhost:5173,http://127.0.0.1:5173"
    access_log_enabled: bool = True
    backlog_size: int = 1000
    subscriber_queue_size: int = 2000
    max_frame_bytes: int = 4 * 1024 * 1024
    permission_timeout_seconds: float = 300.0
    permission_policy_file: Path = Path("config/permission_policy.yaml")
    upstream_keepalive_seconds: float = 45.0
    command_queue_policy: QueuePolicy = "queue"
    command_queue_limit: int = 256
    sse_keepalive_seconds: float = 15.0

    @classmethod
    def from_env(cls) -> "Settings":
        """Create settings from process env with deterministic defaults."""
        return cls(
            app_name=os.getenv("APP_NAME", cls.app_name),
            app_version=os.getenv("APP_VERSION", cls.app_version),
            env=os.getenv("APP_ENV", cls.env),
            log_level=os.getenv("LOG_LEVEL", cls.log_level),
            host=os.getenv("HOST", cls.host),
            port=int(os.getenv("PORT", str(cls.port))),
            cors_allow_origins=os.getenv("CORS_ALLOW_ORIGINS", cls.cors_allow_origins),
            access_log_enabled=_env_bool("ACCESS_LOG_ENABLED", cls.access_log_enabled),
            backlog_size=int(os.getenv("RELAY_BACKLOG_SIZE", str(cls.backlog_size))),
            subscriber_queue_size=int(
                os.getenv("RELAY_SUBSCRIBER_QUEUE_SIZE", str(cls.subscriber_queue_size))
            ),
            max_frame_bytes=int(os.getenv("RELAY_MAX_FRAME_BYTES", str(cls.max_frame_bytes))),
            permission_timeout_seconds=float(
                os.getenv("PERMISSION_TIMEOUT_SECONDS", str(cls.permission_timeout_seconds))
            ),
            permission_policy_file=_resolve_path(
                os.getenv("PERMISSION_POLICY_FILE", str(cls.permission_policy_file))
            ),
            upstream_keepalive_seconds=float(
                os.getenv("UPSTREAM_KEEPALIVE_SECONDS", str(cls.upstream_keepalive_seconds))
            ),
            command_queue_policy=_queue_policy(
                os.getenv("COMMAND_QUEUE_POLICY", cls.command_queue_policy),
                cls.command_queue_policy,
            ),
            command_queue_limit=int(
                os.getenv("COMMAND_QUEUE_LIMIT", str(cls.command_queue_limit))
            ),
            sse_keepalive_seconds=float(
                os.getenv("SSE_KEEPALIVE_SECONDS", str(cls.sse_keepalive_seconds))
            ),
        )
