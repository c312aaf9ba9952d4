"""Outbound commands and their NDJSON frames for the upstream agent connection."""

from __future__ import annotations

import json
from dataclasses import dataclass, field
from typing import Any, Union
from uuid import uuid4

from ccrelay.relay.permissions.correlator import PermissionResolution

DEFAULT_DENY_MESSAGE = "Denied by user"


def _control_request_id() -> str:
    return f"req_{uuid4().hex[:16]}"


@dataclass(frozen=True)
class ImageAttachment:
    media_type: str
    data: str

    def to_block(self) -> dict[str, Any]:
        return {
            "type": "image",
            "source": {"type": "base64", "media_type": self.media_type, "data": self.data},
        }


@dataclass(frozen=True)
class UserInputCommand:
    content: str
    images: tuple[ImageAttachment, ...] = ()
    priority = False
    connection_bound = False

    def to_frame(self, *, session_id: str) -> dict[str, Any]:
        content: str | list[dict[str, Any]] = self.content
        if self.images:
            content = [*(image.to_block() for image in self.images), {"type": "text", "text": self.content}]
        return {
            "type": "user",
            "message": {"role": "user", "content": content},
            "parent_tool_use_id": None,
            "session_id": session_id,
        }


@dataclass(frozen=True)
class PermissionAnswerCommand:
    resolution: PermissionResolution
    priority = False
    connection_bound = True

    def to_frame(self, *, session_id: str) -> dict[str, Any]:
        if self.resolution.behavior == "allow":
            answer: dict[str, Any] = {"behavior": "allow", "updatedInput": self.resolution.updated_input}
        else:
            answer = {"behavior": "deny", "message": self.resolution.message or DEFAULT_DENY_MESSAGE}
        return {
            "type": "control_response",
            "response": {
                "subtype": "success",
                "request_id": self.resolution.request_id,
                "response": answer,
            },
        }


@dataclass(frozen=True)
class InterruptCommand:
    request_id: str = field(default_factory=_control_request_id)
    priority = True
    connection_bound = False

    def to_frame(self, *, session_id: str) -> dict[str, Any]:
        return {
            "type": "control_request",
            "request_id": self.request_id,
            "request": {"subtype": "interrupt"},
        }


@dataclass(frozen=True)
class ControlCommand:
    """Model switch, permission-mode switch and MCP management requests."""

    subtype: str
    params: dict[str, Any] = field(default_factory=dict)
    request_id: str = field(default_factory=_control_request_id)
    priority = False
    connection_bound = False

    def to_frame(self, *, session_id: str) -> dict[str, Any]:
        return {
            "type": "control_request",
            "request_id": self.request_id,
            "request": {"subtype": self.subtype, **self.params},
        }


OutboundCommand = Union[UserInputCommand, PermissionAnswerCommand, InterruptCommand, ControlCommand]


def encode_frame(command: OutboundCommand, *, session_id: str) -> str:
    """Serialize one command as a single newline-terminated JSON line."""
    return json.dumps(command.to_frame(session_id=session_id), ensure_ascii=False) + "\n"
