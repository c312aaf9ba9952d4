"""Upstream frame builders and fakes shared by unit and integration tests."""

from __future__ import annotations

import json
from typing import Any


def ndjson(*frames: dict[str, Any]) -> str:
    return "".join(json.dumps(frame) + "\n" for frame in frames)


def init_frame(session_id: str = "cli-session-1", model: str = "claude-sonnet") -> dict[str, Any]:
    return {
        "type": "system",
        "subtype": "init",
        "session_id": session_id,
        "model": model,
        "cwd": "/work",
        "tools": ["Bash", "Read"],
        "permissionMode": "default",
        "claude_code_version": "2.1.0",
        "mcp_servers": [{"name": "files", "status": "connected"}],
    }


def stream_frame(event: dict[str, Any], parent: str | None = None) -> dict[str, Any]:
    return {"type": "stream_event", "event": event, "parent_tool_use_id": parent}


def hi_there_frames(message_id: str = "msg_1") -> list[dict[str, Any]]:
    """One streamed assistant message whose text is "Hi there"."""
    return [
        stream_frame({"type": "message_start", "message": {"id": message_id, "model": "claude-sonnet"}}),
        stream_frame({"type": "content_block_start", "index": 0, "content_block": {"type": "text", "text": ""}}),
        stream_frame({"type": "content_block_delta", "index": 0, "delta": {"type": "text_delta", "text": "Hi "}}),
        stream_frame({"type": "content_block_delta", "index": 0, "delta": {"type": "text_delta", "text": "there"}}),
        stream_frame({"type": "content_block_stop", "index": 0}),
        stream_frame({"type": "message_delta", "delta": {"stop_reason": "end_turn"}, "usage": {"output_tokens": 2}}),
        stream_frame({"type": "message_stop"}),
    ]


def permission_frame(request_id: str = "perm-1", tool_name: str = "Bash") -> dict[str, Any]:
    return {
        "type": "control_request",
        "request_id": request_id,
        "request": {
            "subtype": "can_use_tool",
            "tool_name": tool_name,
            "input": {"command": "ls"},
            "tool_use_id": "toolu_1",
        },
    }


class RecordingTransport:
    """In-memory upstream transport capturing every written frame."""

    def __init__(self, *, fail_after: int | None = None) -> None:
        self.sent: list[str] = []
        self.closed = False
        self._fail_after = fail_after

    async def send_text(self, data: str) -> None:
        if self._fail_after is not None and len(self.sent) >= self._fail_after:
            raise ConnectionError("transport_broken")
        self.sent.append(data)

    async def close(self) -> None:
        self.closed = True

    def frames(self) -> list[dict[str, Any]]:
        return [json.loads(item) for item in self.sent]
