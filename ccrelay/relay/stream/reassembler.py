"""Stream layer: fold block-start/delta/stop fragments into complete logical messages.

Each content block moves through ``absent -> open -> closed``. Deltas are only
accepted while a block is open; anything else is a protocol violation that the
caller logs and drops. A message is finalized into exactly one
``MessageComplete`` by the first terminal fragment (``message_delta`` with a
stop reason, or ``message_stop``). Accumulators are keyed by
``parent_tool_use_id`` so sub-agent streams do not mix with the main stream.
"""

from __future__ import annotations

import json
from collections import deque
from collections.abc import Callable
from dataclasses import dataclass, field
from typing import Any, Literal

from ccrelay.infra.observability.logger import get_logger
from ccrelay.protocol.upstream import StreamEventBody, StreamEventFrame
from ccrelay.relay.errors import ProtocolViolation
from ccrelay.relay.events.event_types import BlockKind, MessageComplete, StreamDelta

logger = get_logger(__name__)

_BLOCK_KINDS: dict[str, BlockKind] = {
    "text": "text",
    "thinking": "thinking",
    "redacted_thinking": "thinking",
    "tool_use": "tool_use",
    "server_tool_use": "tool_use",
}

# delta type -> (payload field, block kind it may extend)
_DELTA_FIELDS: dict[str, tuple[str, BlockKind]] = {
    "text_delta": ("text", "text"),
    "thinking_delta": ("thinking", "thinking"),
    "input_json_delta": ("partial_json", "tool_use"),
}


@dataclass
class BlockAccumulator:
    index: int
    kind: BlockKind
    start: dict[str, Any]
    parts: list[str] = field(default_factory=list)
    state: Literal["open", "closed"] = "open"

    def assemble(self) -> dict[str, Any]:
        joined = "".join(self.parts)
        if self.kind == "text":
            return {"type": "text", "text": joined}
        if self.kind == "thinking":
            block = dict(self.start)
            block.setdefault("type", "thinking")
            if block["type"] == "thinking":
                block["thinking"] = joined
            return block
        block = {
            "type": "tool_use",
            "id": str(self.start.get("id") or ""),
            "name": str(self.start.get("name") or ""),
            "input": self.start.get("input") if isinstance(self.start.get("input"), dict) else {},
        }
        if joined:
            try:
                parsed = json.loads(joined)
            except json.JSONDecodeError:
                parsed = None
            if isinstance(parsed, dict):
                block["input"] = parsed
            else:
                block["input_json"] = joined
        return block


@dataclass
class _MessageAccumulator:
    parent_tool_use_id: str | None
    message_id: str = ""
    model: str = ""
    stop_reason: str | None = None
    usage: dict[str, Any] = field(default_factory=dict)
    blocks: dict[int, BlockAccumulator] = field(default_factory=dict)


class StreamReassembler:
    """Per-session reassembly state; owned by the relay worker, not thread-safe."""

    def __init__(self, *, remembered_messages: int = 256) -> None:
        self._messages: dict[str | None, _MessageAccumulator] = {}
        self._assembled_ids: deque[str] = deque(maxlen=max(16, remembered_messages))
        self._handlers: dict[
            str, Callable[[StreamEventBody, str | None], list[MessageComplete | StreamDelta]]
        ] = {
            "message_start": self._on_message_start,
            "content_block_start": self._on_block_start,
            "content_block_delta": self._on_block_delta,
            "content_block_stop": self._on_block_stop,
            "message_delta": self._on_message_delta,
            "message_stop": self._on_message_stop,
        }

    @property
    def in_flight(self) -> int:
        return len(self._messages)

    def feed(self, frame: StreamEventFrame) -> list[MessageComplete | StreamDelta]:
        """Apply one fragment; return events to sequence, or raise ProtocolViolation."""
        handler = self._handlers.get(frame.event.type)
        if handler is None:
            logger.debug("relay.reassembler.ignored fragment=%s", frame.event.type)
            return []
        return handler(frame.event, frame.parent_tool_use_id)

    def covers(self, message_id: str) -> bool:
        """True when a complete message with this id is, or was, assembled from the stream."""
        if not message_id:
            return False
        if message_id in self._assembled_ids:
            return True
        return any(acc.message_id == message_id for acc in self._messages.values())

    def reset(self) -> int:
        """Discard every in-flight message; return how many were dropped."""
        dropped = len(self._messages)
        self._messages.clear()
        return dropped

    def _on_message_start(
        self, event: StreamEventBody, parent: str | None
    ) -> list[MessageComplete | StreamDelta]:
        emitted: list[MessageComplete | StreamDelta] = []
        previous = self._messages.get(parent)
        if previous is not None and previous.blocks:
            logger.warning(
                "relay.reassembler.unterminated_message message_id=%s parent=%s blocks=%s",
                previous.message_id or "-",
                parent or "-",
                len(previous.blocks),
            )
            emitted.append(self._finalize(parent))
        message = event.message or {}
        self._messages[parent] = _MessageAccumulator(
            parent_tool_use_id=parent,
            message_id=str(message.get("id") or ""),
            model=str(message.get("model") or ""),
            usage=dict(message.get("usage") or {}),
        )
        return emitted

    def _on_block_start(
        self, event: StreamEventBody, parent: str | None
    ) -> list[MessageComplete | StreamDelta]:
        if event.index is None:
            raise ProtocolViolation("block_start_without_index")
        content_block = dict(event.content_block or {})
        kind = _BLOCK_KINDS.get(str(content_block.get("type") or ""))
        if kind is None:
            raise ProtocolViolation(f"unknown_block_kind:{content_block.get('type')}:index={event.index}")
        message = self._messages.get(parent)
        if message is None:
            message = _MessageAccumulator(parent_tool_use_id=parent)
            self._messages[parent] = message
        if event.index in message.blocks:
            raise ProtocolViolation(f"duplicate_block_start:index={event.index}")

        block = BlockAccumulator(index=event.index, kind=kind, start=content_block)
        initial = content_block.get("text") if kind == "text" else content_block.get("thinking")
        if isinstance(initial, str) and initial:
            block.parts.append(initial)
        message.blocks[event.index] = block
        return [
            StreamDelta(
                index=event.index,
                kind="block_start",
                block_kind=kind,
                content_block=content_block,
                parent_tool_use_id=parent,
            )
        ]

    def _on_block_delta(
        self, event: StreamEventBody, parent: str | None
    ) -> list[MessageComplete | StreamDelta]:
        block = self._open_block(event, parent, action="delta")
        delta = event.delta or {}
        delta_type = str(delta.get("type") or "")
        delta_field = _DELTA_FIELDS.get(delta_type)
        if delta_field is None:
            raise ProtocolViolation(f"unknown_delta_type:{delta_type}:index={block.index}")
        field_name, expected_kind = delta_field
        if block.kind != expected_kind:
            raise ProtocolViolation(
                f"delta_kind_mismatch:{delta_type}:block={block.kind}:index={block.index}"
            )
        fragment = delta.get(field_name)
        text = fragment if isinstance(fragment, str) else ""
        block.parts.append(text)
        return [
            StreamDelta(
                index=block.index,
                kind=delta_type,  # type: ignore[arg-type]
                block_kind=block.kind,
                text=text,
                parent_tool_use_id=parent,
            )
        ]

    def _on_block_stop(
        self, event: StreamEventBody, parent: str | None
    ) -> list[MessageComplete | StreamDelta]:
        block = self._open_block(event, parent, action="stop")
        block.state = "closed"
        return []

    def _on_message_delta(
        self, event: StreamEventBody, parent: str | None
    ) -> list[MessageComplete | StreamDelta]:
        message = self._messages.get(parent)
        if message is None:
            logger.debug("relay.reassembler.message_delta_without_message parent=%s", parent or "-")
            return []
        delta = event.delta or {}
        if event.usage:
            message.usage.update(event.usage)
        stop_reason = delta.get("stop_reason")
        if not isinstance(stop_reason, str) or not stop_reason:
            return []
        message.stop_reason = stop_reason
        return [self._finalize(parent)]

    def _on_message_stop(
        self, _event: StreamEventBody, parent: str | None
    ) -> list[MessageComplete | StreamDelta]:
        if parent not in self._messages:
            logger.debug("relay.reassembler.message_stop_after_finalize parent=%s", parent or "-")
            return []
        return [self._finalize(parent)]

    def _open_block(self, event: StreamEventBody, parent: str | None, *, action: str) -> BlockAccumulator:
        if event.index is None:
            raise ProtocolViolation(f"{action}_without_index")
        message = self._messages.get(parent)
        block = message.blocks.get(event.index) if message is not None else None
        if block is None:
            raise ProtocolViolation(f"{action}_for_absent_block:index={event.index}")
        if block.state != "open":
            raise ProtocolViolation(f"{action}_for_closed_block:index={event.index}")
        return block

    def _finalize(self, parent: str | None) -> MessageComplete:
        message = self._messages.pop(parent)
        still_open = [index for index, block in message.blocks.items() if block.state == "open"]
        if still_open:
            logger.warning(
                "relay.reassembler.finalize_open_blocks message_id=%s indexes=%s",
                message.message_id or "-",
                still_open,
            )
        if message.message_id:
            self._assembled_ids.append(message.message_id)
        return MessageComplete(
            message_id=message.message_id,
            role="assistant",
            model=message.model,
            content=[message.blocks[index].assemble() for index in sorted(message.blocks)],
            stop_reason=message.stop_reason,
            usage=dict(message.usage),
            parent_tool_use_id=parent,
            streamed=True,
        )
