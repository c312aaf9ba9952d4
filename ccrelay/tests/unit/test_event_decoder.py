"""Unit tests for NDJSON frame decoding into logical events."""

from __future__ import annotations

import json

import pytest

from ccrelay.protocol.upstream import KeepAliveFrame, StreamEventFrame
from ccrelay.relay.errors import DecodeError
from ccrelay.relay.events.decoder import EventDecoder, split_frames
from ccrelay.relay.events.event_types import (
    MessageComplete,
    OpaqueEvent,
    PermissionCancelled,
    PermissionRequest,
    ResultSummary,
    SessionInit,
    StatusChange,
)
from frames import init_frame, permission_frame


def _decode(frame: dict) -> object:
    return EventDecoder().decode(json.dumps(frame))


def test_split_frames_skips_blank_lines() -> None:
    raw = '{"type":"keep_alive"}\n\n  \n{"type":"keep_alive"}\n'
    assert split_frames(raw) == ['{"type":"keep_alive"}', '{"type":"keep_alive"}']


def test_system_init_becomes_session_init() -> None:
    event = _decode(init_frame(session_id="abc", model="claude-opus"))

    assert isinstance(event, SessionInit)
    assert event.session.session_id == "abc"
    assert event.session.model == "claude-opus"
    assert event.session.permission_mode == "default"
    assert event.session.agent_version == "2.1.0"
    assert event.session.mcp_servers[0].name == "files"
    assert event.session.status == "idle"


def test_system_status_and_unknown_subtype() -> None:
    status = _decode({"type": "system", "subtype": "status", "status": "compacting"})
    assert isinstance(status, StatusChange)
    assert status.status == "compacting"

    other = _decode({"type": "system", "subtype": "compact_boundary", "trigger": "auto"})
    assert isinstance(other, OpaqueEvent)
    assert other.tag == "system.compact_boundary"
    assert other.payload["trigger"] == "auto"


def test_assistant_and_user_frames_become_complete_messages() -> None:
    assistant = _decode(
        {
            "type": "assistant",
            "message": {
                "id": "msg_9",
                "model": "claude-sonnet",
                "content": [{"type": "text", "text": "done"}],
                "stop_reason": "end_turn",
            },
        }
    )
    assert isinstance(assistant, MessageComplete)
    assert assistant.message_id == "msg_9"
    assert assistant.text == "done"
    assert assistant.streamed is False

    user = _decode({"type": "user", "message": {"role": "user", "content": "hello"}})
    assert isinstance(user, MessageComplete)
    assert user.role == "user"
    assert user.content == [{"type": "text", "text": "hello"}]


def test_result_permission_and_cancel_frames() -> None:
    result = _decode({"type": "result", "subtype": "success", "num_turns": 3, "total_cost_usd": 0.25})
    assert isinstance(result, ResultSummary)
    assert result.num_turns == 3

    request = _decode(permission_frame(request_id="perm-7"))
    assert isinstance(request, PermissionRequest)
    assert request.request_id == "perm-7"
    assert request.tool_name == "Bash"
    assert request.input == {"command": "ls"}

    cancelled = _decode({"type": "control_cancel_request", "request_id": "perm-7"})
    assert isinstance(cancelled, PermissionCancelled)
    assert cancelled.reason == "upstream_cancelled"


def test_stream_and_keep_alive_frames_are_passed_through() -> None:
    fragment = _decode({"type": "stream_event", "event": {"type": "message_stop"}})
    assert isinstance(fragment, StreamEventFrame)
    assert isinstance(_decode({"type": "keep_alive"}), KeepAliveFrame)


def test_unknown_tag_is_preserved_as_opaque() -> None:
    event = _decode({"type": "auth_status", "isAuthenticating": False})
    assert isinstance(event, OpaqueEvent)
    assert event.tag == "auth_status"
    assert event.payload == {"type": "auth_status", "isAuthenticating": False}


@pytest.mark.parametrize(
    ("line", "reason"),
    [
        ("{not json", "invalid_json"),
        ("[1, 2]", "frame_not_object"),
        ('{"subtype": "init"}', "frame_missing_type"),
        ('{"type": "tool_progress", "tool_name": "Bash"}', "invalid_tool_progress_frame"),
    ],
)
def test_malformed_frames_raise_decode_error(line: str, reason: str) -> None:
    with pytest.raises(DecodeError) as excinfo:
        EventDecoder().decode(line)
    assert str(excinfo.value).startswith(reason)
    assert excinfo.value.raw == line


def test_oversized_frame_is_rejected() -> None:
    decoder = EventDecoder(max_frame_bytes=1024)
    line = json.dumps({"type": "user", "message": {"content": "x" * 2000}})

    with pytest.raises(DecodeError) as excinfo:
        decoder.decode(line)

    assert str(excinfo.value).startswith("frame_too_large")
    assert len(excinfo.value.raw) <= 200
