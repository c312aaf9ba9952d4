"""Protocol layer: downstream client messages, relay control messages and HTTP DTOs."""

from __future__ import annotations

from typing import Annotated, Any, Literal, Union

from pydantic import BaseModel, ConfigDict, Field, TypeAdapter

from ccrelay.relay.events.event_types import PermissionBehavior, SessionSnapshot


class _ClientMessage(BaseModel):
    pass


class SessionSubscribeMessage(_ClientMessage):
    """Start (or restart) delivery; last_seq=-1 asks for a snapshot instead of a replay."""

    type: Literal["session_subscribe"] = "session_subscribe"
    last_seq: int = Field(default=-1, ge=-1)
    client_id: str | None = None


class SessionAckMessage(_ClientMessage):
    type: Literal["session_ack"] = "session_ack"
    last_seq: int = Field(..., ge=0)


class ImagePayload(BaseModel):
    media_type: str = Field(..., min_length=1)
    data: str = Field(..., min_length=1)


class UserMessageCommand(_ClientMessage):
    type: Literal["user_message"] = "user_message"
    content: str = Field(..., min_length=1)
    images: list[ImagePayload] = Field(default_factory=list)
    client_msg_id: str | None = None


class PermissionResponseMessage(_ClientMessage):
    type: Literal["permission_response"] = "permission_response"
    request_id: str = Field(..., min_length=1)
    behavior: PermissionBehavior
    updated_input: dict[str, Any] | None = None
    message: str | None = None


class InterruptMessage(_ClientMessage):
    type: Literal["interrupt"] = "interrupt"


class SetModelMessage(_ClientMessage):
    type: Literal["set_model"] = "set_model"
    model: str = Field(..., min_length=1)


class SetPermissionModeMessage(_ClientMessage):
    type: Literal["set_permission_mode"] = "set_permission_mode"
    mode: str = Field(..., min_length=1)


class McpGetStatusMessage(_ClientMessage):
    type: Literal["mcp_get_status"] = "mcp_get_status"


class McpToggleMessage(_ClientMessage):
    model_config = ConfigDict(populate_by_name=True)

    type: Literal["mcp_toggle"] = "mcp_toggle"
    server_name: str = Field(..., min_length=1, alias="serverName")
    enabled: bool


class McpReconnectMessage(_ClientMessage):
    model_config = ConfigDict(populate_by_name=True)

    type: Literal["mcp_reconnect"] = "mcp_reconnect"
    server_name: str = Field(..., min_length=1, alias="serverName")


ClientMessage = Annotated[
    Union[
        SessionSubscribeMessage,
        SessionAckMessage,
        UserMessageCommand,
        PermissionResponseMessage,
        InterruptMessage,
        SetModelMessage,
        SetPermissionModeMessage,
        McpGetStatusMessage,
        McpToggleMessage,
        McpReconnectMessage,
    ],
    Field(discriminator="type"),
]

CLIENT_MESSAGE_ADAPTER: TypeAdapter[ClientMessage] = TypeAdapter(ClientMessage)

# Commands accepted over HTTP; subscription messages only make sense on a socket.
SessionCommand = Annotated[
    Union[
        UserMessageCommand,
        PermissionResponseMessage,
        InterruptMessage,
        SetModelMessage,
        SetPermissionModeMessage,
        McpGetStatusMessage,
        McpToggleMessage,
        McpReconnectMessage,
    ],
    Field(discriminator="type"),
]


class ResyncRequiredMessage(BaseModel):
    type: Literal["resync_required"] = "resync_required"
    oldest_seq: int
    current_seq: int


class SessionSnapshotMessage(BaseModel):
    type: Literal["session_snapshot"] = "session_snapshot"
    seq: int
    session: SessionSnapshot


class CommandRejectedMessage(BaseModel):
    type: Literal["command_rejected"] = "command_rejected"
    reason: str
    detail: str | None = None
    command: str | None = None


class SnapshotResponse(BaseModel):
    """Point-in-time session state with the seq it reflects."""

    session_id: str
    seq: int
    oldest_seq: int
    upstream: str
    session: SessionSnapshot


class CommandResponse(BaseModel):
    accepted: bool = True
    command: str
    request_id: str | None = None
