"""Composition layer: build and hold long-lived relay objects for dependency injection."""

from __future__ import annotations

from dataclasses import dataclass

from ccrelay.core.config import Settings
from ccrelay.relay.permissions.policy import PermissionTimeoutPolicy
from ccrelay.relay.runtime.hub import RelayHub
from ccrelay.relay.runtime.session_relay import RelayOptions


@dataclass
class AppContainer:
    """Container object attached to FastAPI app state."""

    settings: Settings
    permission_policy: PermissionTimeoutPolicy
    hub: RelayHub


def build_container(settings: Settings) -> AppContainer:
    """Construct runtime dependencies in one place."""
    permission_policy = PermissionTimeoutPolicy(
        default_timeout_seconds=settings.permission_timeout_seconds,
        policy_file=settings.permission_policy_file,
    )
    options = RelayOptions(
        backlog_size=settings.backlog_size,
        subscriber_queue_size=settings.subscriber_queue_size,
        max_frame_bytes=settings.max_frame_bytes,
        keepalive_seconds=settings.upstream_keepalive_seconds,
        command_queue_policy=settings.command_queue_policy,
        command_queue_limit=settings.command_queue_limit,
    )
    hub = RelayHub(options=options, permission_policy=permission_policy)
    return AppContainer(
        settings=settings,
        permission_policy=permission_policy,
        hub=hub,
    )
