"""Unit tests for the single-writer upstream command sink."""

from __future__ import annotations

import asyncio
import json

import pytest

from ccrelay.relay.errors import UpstreamDisconnected
from ccrelay.relay.permissions.correlator import PermissionResolution
from ccrelay.relay.upstream.command_sink import UpstreamCommandSink
from ccrelay.relay.upstream.commands import (
    ControlCommand,
    ImageAttachment,
    InterruptCommand,
    PermissionAnswerCommand,
    UserInputCommand,
    encode_frame,
)
from frames import RecordingTransport


def _build_sink(**kwargs) -> UpstreamCommandSink:
    return UpstreamCommandSink(session_id=lambda: "cli-1", **kwargs)


def test_frames_are_single_json_lines() -> None:
    frame = encode_frame(UserInputCommand(content="multi\nline"), session_id="cli-1")

    assert frame.endswith("\n")
    assert frame.count("\n") == 1
    assert json.loads(frame) == {
        "type": "user",
        "message": {"role": "user", "content": "multi\nline"},
        "parent_tool_use_id": None,
        "session_id": "cli-1",
    }


def test_permission_answer_frames() -> None:
    allow = PermissionResolution(
        request_id="perm-1", behavior="allow", updated_input={"command": "ls"}, message=None, client_id="a"
    )
    deny = PermissionResolution(request_id="perm-2", behavior="deny", updated_input={}, message=None, client_id="b")

    assert PermissionAnswerCommand(resolution=allow).to_frame(session_id="x")["response"] == {
        "subtype": "success",
        "request_id": "perm-1",
        "response": {"behavior": "allow", "updatedInput": {"command": "ls"}},
    }
    assert PermissionAnswerCommand(resolution=deny).to_frame(session_id="x")["response"]["response"] == {
        "behavior": "deny",
        "message": "Denied by user",
    }


def test_control_command_frame() -> None:
    frame = ControlCommand(subtype="set_model", params={"model": "claude-opus"}, request_id="req_1").to_frame(
        session_id="x"
    )

    assert frame == {
        "type": "control_request",
        "request_id": "req_1",
        "request": {"subtype": "set_model", "model": "claude-opus"},
    }


def test_interrupt_overtakes_queued_input() -> None:
    async def scenario() -> list[dict]:
        sink = _build_sink()
        sink.start()
        sink.submit(UserInputCommand(content="one"))
        sink.submit(UserInputCommand(content="two"))
        transport = RecordingTransport()
        sink.attach(transport)
        sink.submit(InterruptCommand())
        await asyncio.wait_for(sink.drain(), timeout=1)
        await sink.stop()
        return transport.frames()

    frames = asyncio.run(scenario())

    assert [frame["type"] for frame in frames] == ["control_request", "user", "user"]
    assert [frame["message"]["content"] for frame in frames[1:]] == ["one", "two"]


def test_concurrent_submitters_never_interleave() -> None:
    async def submitter(sink: UpstreamCommandSink, name: str) -> None:
        for index in range(20):
            sink.submit(UserInputCommand(content=f"{name}-{index}"))
            await asyncio.sleep(0)

    async def scenario() -> list[str]:
        sink = _build_sink()
        transport = RecordingTransport()
        sink.attach(transport)
        sink.start()
        await asyncio.gather(submitter(sink, "a"), submitter(sink, "b"))
        await asyncio.wait_for(sink.drain(), timeout=1)
        await sink.stop()
        return transport.sent

    sent = asyncio.run(scenario())

    assert len(sent) == 40
    assert all(item.count("\n") == 1 and item.endswith("\n") for item in sent)
    contents = [json.loads(item)["message"]["content"] for item in sent]
    assert [item for item in contents if item.startswith("a-")] == [f"a-{index}" for index in range(20)]


def test_interrupt_is_rejected_while_disconnected() -> None:
    sink = _build_sink()

    with pytest.raises(UpstreamDisconnected):
        sink.submit(InterruptCommand())


def test_reject_policy_refuses_commands_while_disconnected() -> None:
    sink = _build_sink(queue_policy="reject")

    with pytest.raises(UpstreamDisconnected):
        sink.submit(UserInputCommand(content="hello"))
    assert sink.queued == 0


def test_queue_limit_is_enforced() -> None:
    sink = _build_sink(queue_limit=2)
    sink.submit(UserInputCommand(content="1"))
    sink.submit(UserInputCommand(content="2"))

    with pytest.raises(UpstreamDisconnected, match="command_queue_full"):
        sink.submit(UserInputCommand(content="3"))


def test_send_failure_detaches_and_keeps_unsent_frames() -> None:
    async def scenario() -> tuple[UpstreamCommandSink, RecordingTransport]:
        sink = _build_sink()
        broken = RecordingTransport(fail_after=1)
        sink.attach(broken)
        sink.start()
        sink.submit(UserInputCommand(content="first"))
        sink.submit(UserInputCommand(content="second"))
        for _ in range(10):
            await asyncio.sleep(0)
        assert sink.connected is False
        assert sink.queued == 1

        healthy = RecordingTransport()
        sink.attach(healthy)
        await asyncio.wait_for(sink.drain(), timeout=1)
        await sink.stop()
        return sink, healthy

    sink, healthy = asyncio.run(scenario())

    assert [frame["message"]["content"] for frame in healthy.frames()] == ["second"]
    assert sink.sent_frames == 2


def _answer(request_id: str) -> PermissionAnswerCommand:
    resolution = PermissionResolution(
        request_id=request_id, behavior="allow", updated_input={}, message=None, client_id="a"
    )
    return PermissionAnswerCommand(resolution=resolution)


def test_user_input_with_images_puts_image_blocks_before_text() -> None:
    command = UserInputCommand(content="look", images=(ImageAttachment(media_type="image/png", data="AAAA"),))

    assert command.to_frame(session_id="x")["message"]["content"] == [
        {"type": "image", "source": {"type": "base64", "media_type": "image/png", "data": "AAAA"}},
        {"type": "text", "text": "look"},
    ]


def test_permission_answers_are_dropped_on_detach_but_input_is_kept() -> None:
    async def scenario() -> tuple[UpstreamCommandSink, RecordingTransport]:
        sink = _build_sink()
        first = RecordingTransport()
        sink.attach(first)
        sink.submit(_answer("perm-1"))
        sink.submit(UserInputCommand(content="kept"))
        assert sink.detach(first) is True
        assert sink.queued == 1

        second = RecordingTransport()
        sink.attach(second)
        sink.start()
        await asyncio.wait_for(sink.drain(), timeout=1)
        await sink.stop()
        return sink, second

    sink, second = asyncio.run(scenario())

    assert [frame["type"] for frame in second.frames()] == ["user"]
    assert sink.sent_frames == 1


def test_permission_answer_is_refused_while_disconnected_even_when_queueing() -> None:
    sink = _build_sink()

    with pytest.raises(UpstreamDisconnected, match="command_rejected"):
        sink.submit(_answer("perm-1"))
    with pytest.raises(UpstreamDisconnected):
        sink.check_accepts(connection_bound=True)
    sink.check_accepts()
    assert sink.queued == 0


class _ExplodingTransport(RecordingTransport):
    async def send_text(self, data: str) -> None:
        raise ValueError("codec_bug")


def test_unexpected_transport_error_detaches_and_writer_survives() -> None:
    async def scenario() -> tuple[UpstreamCommandSink, RecordingTransport]:
        sink = _build_sink()
        sink.attach(_ExplodingTransport())
        sink.start()
        sink.submit(UserInputCommand(content="retry me"))
        for _ in range(10):
            await asyncio.sleep(0)
        assert sink.connected is False
        assert sink.queued == 1

        healthy = RecordingTransport()
        sink.attach(healthy)
        await asyncio.wait_for(sink.drain(), timeout=1)
        await sink.stop()
        return sink, healthy

    sink, healthy = asyncio.run(scenario())

    assert [frame["message"]["content"] for frame in healthy.frames()] == ["retry me"]
