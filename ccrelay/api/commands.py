"""API layer: apply downstream commands to a session relay and classify relay errors."""

from __future__ import annotations

from fastapi import status

from ccrelay.protocol.messages import (
    CommandResponse,
    InterruptMessage,
    McpGetStatusMessage,
    McpReconnectMessage,
    McpToggleMessage,
    PermissionResponseMessage,
    SetModelMessage,
    SetPermissionModeMessage,
    UserMessageCommand,
)
from ccrelay.relay.errors import (
    DuplicateResolution,
    RelayError,
    RequestTimeout,
    UnknownRequest,
    UpstreamDisconnected,
)
from ccrelay.relay.runtime.session_relay import SessionRelay
from ccrelay.relay.upstream.commands import ImageAttachment

Command = (
    UserMessageCommand
    | PermissionResponseMessage
    | InterruptMessage
    | SetModelMessage
    | SetPermissionModeMessage
    | McpGetStatusMessage
    | McpToggleMessage
    | McpReconnectMessage
)


def apply_command(relay: SessionRelay, command: Command, *, client_id: str | None = None) -> CommandResponse:
    """Run one downstream command; relay errors propagate to the caller."""
    request_id: str | None = None
    if isinstance(command, UserMessageCommand):
        relay.send_user_message(
            command.content,
            images=[ImageAttachment(media_type=image.media_type, data=image.data) for image in command.images],
            client_id=client_id,
            client_msg_id=command.client_msg_id,
        )
    elif isinstance(command, PermissionResponseMessage):
        resolution = relay.respond_permission(
            command.request_id,
            behavior=command.behavior,
            updated_input=command.updated_input,
            message=command.message,
            client_id=client_id,
        )
        request_id = resolution.request_id
    elif isinstance(command, InterruptMessage):
        relay.interrupt(client_id=client_id)
    elif isinstance(command, SetModelMessage):
        relay.set_model(command.model)
    elif isinstance(command, SetPermissionModeMessage):
        relay.set_permission_mode(command.mode)
    elif isinstance(command, McpGetStatusMessage):
        relay.mcp_get_status()
    elif isinstance(command, McpToggleMessage):
        relay.mcp_toggle(command.server_name, command.enabled)
    elif isinstance(command, McpReconnectMessage):
        relay.mcp_reconnect(command.server_name)
    return CommandResponse(command=command.type, request_id=request_id)


def rejection_reason(exc: RelayError) -> str:
    if isinstance(exc, UnknownRequest):
        return "unknown_request"
    if isinstance(exc, DuplicateResolution):
        return "duplicate_resolution"
    if isinstance(exc, RequestTimeout):
        return "request_timeout"
    if isinstance(exc, UpstreamDisconnected):
        return "upstream_disconnected"
    return "relay_error"


def http_status_for(exc: RelayError) -> int:
    if isinstance(exc, UnknownRequest):
        return status.HTTP_404_NOT_FOUND
    if isinstance(exc, (DuplicateResolution, RequestTimeout)):
        return status.HTTP_409_CONFLICT
    if isinstance(exc, UpstreamDisconnected):
        return status.HTTP_503_SERVICE_UNAVAILABLE
    return status.HTTP_400_BAD_REQUEST
