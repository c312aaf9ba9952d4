"""Session relay: composes decoder, reassembler, store, bus, correlator and command sink.

One worker task per session drains the ingress queue and is the only caller of
``SessionStateStore.apply``. Upstream lines, timer-driven events and events
raised by downstream commands all enter through that queue, so sequence
numbers follow upstream arrival order and no component mutates state on its
own.
"""

from __future__ import annotations

import asyncio
from collections.abc import Sequence
from dataclasses import dataclass
from typing import Any, Union

from ccrelay.infra.observability.logger import get_logger
from ccrelay.protocol.upstream import KeepAliveFrame, StreamEventFrame
from ccrelay.relay.errors import DecodeError, ProtocolViolation
from ccrelay.relay.events.decoder import Decoded, EventDecoder, split_frames
from ccrelay.relay.events.event_types import (
    ConnectionNotice,
    ErrorEvent,
    LogicalEvent,
    MessageComplete,
    PermissionBehavior,
    PermissionCancelled,
    PermissionRequest,
    SequencedEvent,
    SessionPatch,
    StatusChange,
    UserMessage,
)
from ccrelay.relay.events.replay_buffer import ReplayBuffer
from ccrelay.relay.permissions.correlator import PendingRequestCorrelator, PermissionResolution
from ccrelay.relay.permissions.policy import PermissionTimeoutPolicy
from ccrelay.relay.runtime.fanout import SubscriberRegistry, Subscription
from ccrelay.relay.runtime.session_state import SessionStateStore, SnapshotView
from ccrelay.relay.stream.reassembler import StreamReassembler
from ccrelay.relay.upstream.command_sink import QueuePolicy, UpstreamCommandSink, UpstreamTransport
from ccrelay.relay.upstream.commands import (
    ControlCommand,
    ImageAttachment,
    InterruptCommand,
    PermissionAnswerCommand,
    UserInputCommand,
)
from ccrelay.relay.upstream.connection_state import ConnectionStateMachine

logger = get_logger(__name__)


@dataclass(frozen=True)
class RelayOptions:
    backlog_size: int = 1000
    subscriber_queue_size: int = 2000
    max_frame_bytes: int = 4 * 1024 * 1024
    keepalive_seconds: float = 45.0
    command_queue_policy: QueuePolicy = "queue"
    command_queue_limit: int = 256


class _UpstreamLost:
    pass


class _StallCheck:
    pass


_Ingress = Union[str, LogicalEvent, _UpstreamLost, _StallCheck, None]


class SessionRelay:
    """Event relay for one logical session; survives upstream reconnects."""

    def __init__(
        self,
        *,
        session_id: str,
        options: RelayOptions | None = None,
        permission_policy: PermissionTimeoutPolicy | None = None,
    ) -> None:
        self.session_id = session_id
        self._options = options or RelayOptions()
        self._backlog = ReplayBuffer(max_events=self._options.backlog_size)
        self.store = SessionStateStore(session_id=session_id, backlog=self._backlog)
        self.bus = SubscriberRegistry(
            store=self.store,
            backlog=self._backlog,
            max_queue=self._options.subscriber_queue_size,
        )
        self.correlator = PendingRequestCorrelator(
            policy=permission_policy or PermissionTimeoutPolicy(default_timeout_seconds=300.0),
            emit=self._dispatch,
        )
        self.upstream_state = ConnectionStateMachine(name=f"upstream:{session_id}")
        self._decoder = EventDecoder(max_frame_bytes=self._options.max_frame_bytes)
        self._reassembler = StreamReassembler()
        self._sink = UpstreamCommandSink(
            session_id=self._upstream_session_id,
            queue_policy=self._options.command_queue_policy,
            queue_limit=self._options.command_queue_limit,
        )
        self._ingress: asyncio.Queue[_Ingress] = asyncio.Queue()
        self._worker: asyncio.Task[None] | None = None
        self._watchdog: asyncio.Task[None] | None = None
        self._upstream: UpstreamTransport | None = None
        self._in_worker = False
        self._stalled = False
        self._last_frame_at = 0.0
        self.failed = False
        self.frames_in = 0
        self.decode_errors = 0
        self.protocol_violations = 0

    # -- lifecycle -------------------------------------------------------------

    def start(self) -> None:
        """Start the worker, the upstream writer and the keep-alive watchdog."""
        if self._worker is not None:
            return
        self._worker = asyncio.create_task(self._run(), name=f"ccrelay-relay-{self.session_id}")
        self._watchdog = asyncio.create_task(
            self._watch_upstream(), name=f"ccrelay-watchdog-{self.session_id}"
        )
        self._sink.start()
        logger.info("relay.session.started session_id=%s", self.session_id)

    async def stop(self) -> None:
        if self._worker is not None:
            self._ingress.put_nowait(None)
            await self._worker
            self._worker = None
        if self._watchdog is not None:
            self._watchdog.cancel()
            try:
                await self._watchdog
            except asyncio.CancelledError:
                pass
            self._watchdog = None
        await self._sink.stop()
        self.correlator.close()
        self.bus.close_all()
        logger.info("relay.session.stopped session_id=%s seq=%s", self.session_id, self.store.current_seq)

    async def wait_idle(self) -> None:
        """Wait until every ingress item submitted so far has been processed."""
        await self._ingress.join()

    # -- upstream side ---------------------------------------------------------

    def upstream_connecting(self) -> None:
        """Process collaborator announces that a new upstream connection is being made."""
        if self.upstream_state.state == "disconnected":
            self.upstream_state.begin_connect()

    def attach_upstream(self, transport: UpstreamTransport) -> None:
        if self._upstream is not None and self._upstream is not transport:
            logger.warning("relay.upstream.replaced session_id=%s", self.session_id)
            self._sink.detach(self._upstream)
            self.upstream_state.mark_disconnected()
        self.upstream_connecting()
        if self.upstream_state.state == "connecting":
            self.upstream_state.mark_connected()
        self._upstream = transport
        self._sink.attach(transport)
        self._last_frame_at = asyncio.get_running_loop().time()
        logger.info("relay.upstream.attached session_id=%s", self.session_id)
        self.submit(ConnectionNotice(state="connected"))

    def detach_upstream(self, transport: UpstreamTransport | None = None) -> bool:
        if self._upstream is None or (transport is not None and transport is not self._upstream):
            return False
        self._sink.detach(self._upstream)
        self._upstream = None
        self.upstream_state.mark_disconnected()
        logger.warning("relay.upstream.detached session_id=%s", self.session_id)
        # prompts die with the connection that issued them
        self.correlator.cancel_all("upstream_disconnected")
        self._ingress.put_nowait(_UpstreamLost())
        return True

    def feed(self, raw: str) -> int:
        """Queue every NDJSON line in one upstream transport message, in arrival order."""
        lines = split_frames(raw)
        for line in lines:
            self._ingress.put_nowait(line)
        return len(lines)

    def submit(self, event: LogicalEvent) -> None:
        """Hand an event to the worker for sequencing."""
        self._ingress.put_nowait(event)

    # -- downstream side -------------------------------------------------------

    def subscribe(self, subscriber_id: str, last_seq: int) -> Subscription:
        return self.bus.subscribe(subscriber_id, last_seq)

    def subscribe_from_snapshot(self, subscriber_id: str) -> tuple[SnapshotView, Subscription]:
        return self.bus.subscribe_from_snapshot(subscriber_id)

    def unsubscribe(self, subscriber_id: str, subscription: Subscription | None = None) -> bool:
        return self.bus.unsubscribe(subscriber_id, subscription)

    def acknowledge(self, subscriber_id: str, seq: int) -> None:
        self.bus.acknowledge(subscriber_id, seq)

    def snapshot(self) -> SnapshotView:
        return self.store.snapshot()

    def send_user_message(
        self,
        content: str,
        *,
        images: Sequence[ImageAttachment] = (),
        client_id: str | None = None,
        client_msg_id: str | None = None,
    ) -> None:
        self._sink.submit(UserInputCommand(content=content, images=tuple(images)))
        logger.info(
            "relay.command.user_message session_id=%s client_id=%s chars=%s images=%s",
            self.session_id,
            client_id or "-",
            len(content),
            len(images),
        )
        self.submit(
            UserMessage(
                content=content,
                image_count=len(images),
                client_id=client_id,
                client_msg_id=client_msg_id,
            )
        )
        self.submit(StatusChange(status="running"))

    def respond_permission(
        self,
        request_id: str,
        *,
        behavior: PermissionBehavior,
        updated_input: dict[str, Any] | None = None,
        message: str | None = None,
        client_id: str | None = None,
    ) -> PermissionResolution:
        self.correlator.ensure_pending(request_id, client_id=client_id)
        self._sink.check_accepts(connection_bound=True)
        resolution = self.correlator.resolve(
            request_id,
            behavior=behavior,
            updated_input=updated_input,
            message=message,
            client_id=client_id,
        )
        self._sink.submit(PermissionAnswerCommand(resolution=resolution))
        return resolution

    def interrupt(self, *, client_id: str | None = None) -> None:
        self._sink.submit(InterruptCommand())
        logger.info("relay.command.interrupt session_id=%s client_id=%s", self.session_id, client_id or "-")

    def set_model(self, model: str) -> None:
        self._sink.submit(ControlCommand(subtype="set_model", params={"model": model}))
        self.submit(SessionPatch(changes={"model": model}))

    def set_permission_mode(self, mode: str) -> None:
        self._sink.submit(ControlCommand(subtype="set_permission_mode", params={"mode": mode}))
        self.submit(SessionPatch(changes={"permission_mode": mode}))

    def mcp_get_status(self) -> None:
        self._sink.submit(ControlCommand(subtype="mcp_status"))

    def mcp_toggle(self, server_name: str, enabled: bool) -> None:
        self._sink.submit(
            ControlCommand(subtype="mcp_toggle", params={"serverName": server_name, "enabled": enabled})
        )

    def mcp_reconnect(self, server_name: str) -> None:
        self._sink.submit(ControlCommand(subtype="mcp_reconnect", params={"serverName": server_name}))

    async def drain_upstream(self) -> None:
        await self._sink.drain()

    def backlog_bounds(self) -> tuple[int, int]:
        return self._backlog.bounds()

    def describe(self) -> dict[str, Any]:
        oldest, newest = self._backlog.bounds()
        return {
            "session_id": self.session_id,
            "seq": newest,
            "oldest_seq": oldest,
            "upstream": self.upstream_state.state,
            "stalled": self._stalled,
            "failed": self.failed,
            "subscribers": self.bus.describe(),
            "pending_permissions": len(self.correlator.pending_ids),
            "queued_commands": self._sink.queued,
            "frames_in": self.frames_in,
            "decode_errors": self.decode_errors,
            "protocol_violations": self.protocol_violations,
        }

    # -- worker ----------------------------------------------------------------

    def _dispatch(self, event: LogicalEvent) -> None:
        if self._in_worker:
            self._emit(event)
        else:
            self.submit(event)

    def _emit(self, event: LogicalEvent) -> SequencedEvent:
        sequenced = self.store.apply(event)
        self.bus.publish(sequenced)
        return sequenced

    async def _run(self) -> None:
        while True:
            item = await self._ingress.get()
            try:
                if item is None:
                    return
                self._in_worker = True
                self._process(item)
            except MemoryError:
                self.failed = True
                logger.critical("relay.session.resource_exhausted session_id=%s", self.session_id)
                self.bus.close_all()
                return
            except Exception:
                logger.exception("relay.session.process_failed session_id=%s", self.session_id)
            finally:
                self._in_worker = False
                self._ingress.task_done()

    def _process(self, item: _Ingress) -> None:
        if isinstance(item, str):
            self._handle_line(item)
        elif isinstance(item, _UpstreamLost):
            self._handle_upstream_lost()
        elif isinstance(item, _StallCheck):
            self._handle_stall_check()
        elif item is not None:
            self._emit(item)

    def _handle_line(self, line: str) -> None:
        self.frames_in += 1
        self._last_frame_at = asyncio.get_running_loop().time()
        if self._stalled:
            self._stalled = False
            self._emit(ConnectionNotice(state="resumed"))
        try:
            decoded = self._decoder.decode(line)
        except DecodeError as exc:
            self.decode_errors += 1
            logger.warning(
                "relay.frame.decode_error session_id=%s error=%s raw=%s",
                self.session_id,
                exc,
                exc.raw[:80],
            )
            self._emit(ErrorEvent(kind="decode_error", message=str(exc), raw=exc.raw))
            return
        try:
            self._route(decoded)
        except ProtocolViolation as exc:
            self.protocol_violations += 1
            logger.warning("relay.frame.protocol_violation session_id=%s error=%s", self.session_id, exc)
            self._emit(ErrorEvent(kind="protocol_violation", message=str(exc)))

    def _route(self, decoded: Decoded) -> None:
        if isinstance(decoded, KeepAliveFrame):
            return
        if isinstance(decoded, StreamEventFrame):
            for event in self._reassembler.feed(decoded):
                self._emit(event)
            return
        if isinstance(decoded, MessageComplete) and decoded.role == "assistant":
            if self._reassembler.covers(decoded.message_id):
                logger.debug(
                    "relay.frame.assistant_already_streamed session_id=%s message_id=%s",
                    self.session_id,
                    decoded.message_id,
                )
                return
        if isinstance(decoded, PermissionRequest):
            self._emit(self.correlator.open(decoded))
            return
        if isinstance(decoded, PermissionCancelled):
            self.correlator.cancel(decoded.request_id, decoded.reason)
            return
        self._emit(decoded)

    def _handle_upstream_lost(self) -> None:
        dropped = self._reassembler.reset()
        if dropped:
            logger.warning(
                "relay.upstream.partial_messages_dropped session_id=%s count=%s",
                self.session_id,
                dropped,
            )
        self.correlator.cancel_all("upstream_disconnected")
        self._stalled = False
        self._emit(ConnectionNotice(state="disconnected"))

    def _handle_stall_check(self) -> None:
        if self._upstream is None or self._stalled:
            return
        silent_for = asyncio.get_running_loop().time() - self._last_frame_at
        if silent_for <= self._options.keepalive_seconds:
            return
        self._stalled = True
        logger.warning(
            "relay.upstream.stalled session_id=%s silent_seconds=%.1f",
            self.session_id,
            silent_for,
        )
        self._emit(ConnectionNotice(state="stalled", detail=f"no upstream frames for {silent_for:.0f}s"))

    async def _watch_upstream(self) -> None:
        interval = max(0.05, self._options.keepalive_seconds / 3)
        while True:
            await asyncio.sleep(interval)
            if self._upstream is not None and not self._stalled:
                self._ingress.put_nowait(_StallCheck())

    def _upstream_session_id(self) -> str:
        return self.store.snapshot().session.session_id or self.session_id
