"""Lifecycle hooks for startup diagnostics and relay shutdown."""

from __future__ import annotations

from ccrelay.core.container import AppContainer
from ccrelay.infra.observability.logger import get_logger

logger = get_logger(__name__)


def on_startup(container: AppContainer) -> None:
    settings = container.settings
    logger.info(
        "Relay ready: backlog=%s queue=%s permission_timeout=%.0fs keepalive=%.0fs policy=%s",
        settings.backlog_size,
        settings.subscriber_queue_size,
        container.permission_policy.default_timeout_seconds,
        settings.upstream_keepalive_seconds,
        settings.command_queue_policy,
    )


async def on_shutdown(container: AppContainer) -> None:
    await container.hub.shutdown()
    logger.info("ccrelay shutdown complete.")
