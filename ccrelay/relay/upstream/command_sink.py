"""Upstream command sink: the single writer onto the upstream connection.

Commands from every subscriber land in one of two channels. A dedicated
writer task drains the priority channel (interrupts) before the normal
channel, one whole frame at a time, so concurrent callers never interleave
partial frames and an interrupt always overtakes queued input.
"""

from __future__ import annotations

import asyncio
from collections import deque
from collections.abc import Callable
from typing import Literal, NamedTuple, Protocol

from ccrelay.infra.observability.logger import get_logger
from ccrelay.relay.errors import UpstreamDisconnected
from ccrelay.relay.upstream.commands import OutboundCommand, encode_frame

logger = get_logger(__name__)

QueuePolicy = Literal["queue", "reject"]


class UpstreamTransport(Protocol):
    """Send primitive supplied by whatever owns the upstream connection."""

    async def send_text(self, data: str) -> None: ...

    async def close(self) -> None: ...


class _Queued(NamedTuple):
    frame: str
    # answers to prompts issued by one connection are meaningless to the next
    connection_bound: bool


class UpstreamCommandSink:
    def __init__(
        self,
        *,
        session_id: Callable[[], str],
        queue_policy: QueuePolicy = "queue",
        queue_limit: int = 256,
    ) -> None:
        self._session_id = session_id
        self._queue_policy = queue_policy
        self._queue_limit = max(1, queue_limit)
        self._priority: deque[_Queued] = deque()
        self._normal: deque[_Queued] = deque()
        self._transport: UpstreamTransport | None = None
        self._wakeup = asyncio.Event()
        self._idle = asyncio.Event()
        self._idle.set()
        self._writer: asyncio.Task[None] | None = None
        self.sent_frames = 0

    @property
    def connected(self) -> bool:
        return self._transport is not None

    @property
    def queued(self) -> int:
        return len(self._priority) + len(self._normal)

    def start(self) -> None:
        if self._writer is None:
            self._writer = asyncio.create_task(self._run(), name="ccrelay-upstream-writer")

    async def stop(self) -> None:
        if self._writer is None:
            return
        self._writer.cancel()
        try:
            await self._writer
        except asyncio.CancelledError:
            pass
        self._writer = None

    def attach(self, transport: UpstreamTransport) -> None:
        self._transport = transport
        logger.info("relay.sink.attached queued=%s", self.queued)
        self._wakeup.set()

    def detach(self, transport: UpstreamTransport | None = None) -> bool:
        """Forget the transport; a stale handle never detaches its replacement."""
        if self._transport is None or (transport is not None and transport is not self._transport):
            return False
        self._transport = None
        self._priority.clear()
        if self._queue_policy == "reject" and self._normal:
            logger.warning("relay.sink.dropped_on_detach frames=%s", len(self._normal))
            self._normal.clear()
        bound = sum(1 for item in self._normal if item.connection_bound)
        if bound:
            logger.warning("relay.sink.dropped_connection_bound frames=%s", bound)
            kept = [item for item in self._normal if not item.connection_bound]
            self._normal.clear()
            self._normal.extend(kept)
        if not self._normal:
            self._idle.set()
        logger.info("relay.sink.detached queued=%s", self.queued)
        return True

    def check_accepts(self, *, priority: bool = False, connection_bound: bool = False) -> None:
        """Raise UpstreamDisconnected if a command with these traits would be refused right now."""
        if priority:
            if self._transport is None:
                raise UpstreamDisconnected("upstream_disconnected:interrupt_not_queued")
            return
        if self._transport is None and (self._queue_policy == "reject" or connection_bound):
            raise UpstreamDisconnected("upstream_disconnected:command_rejected")
        if len(self._normal) >= self._queue_limit:
            raise UpstreamDisconnected(f"command_queue_full:{self._queue_limit}")

    def submit(self, command: OutboundCommand) -> None:
        """Queue one command without waiting for it to be written."""
        self.check_accepts(priority=command.priority, connection_bound=command.connection_bound)
        item = _Queued(
            frame=encode_frame(command, session_id=self._session_id()),
            connection_bound=command.connection_bound,
        )
        if command.priority:
            self._priority.append(item)
        else:
            self._normal.append(item)
        self._idle.clear()
        self._wakeup.set()

    async def drain(self) -> None:
        """Wait until every queued frame has been written."""
        await self._idle.wait()

    async def _run(self) -> None:
        while True:
            await self._wakeup.wait()
            self._wakeup.clear()
            while self._transport is not None and (self._priority or self._normal):
                channel = self._priority if self._priority else self._normal
                item = channel[0]
                transport = self._transport
                try:
                    await transport.send_text(item.frame)
                except (OSError, RuntimeError) as exc:
                    logger.warning("relay.sink.send_failed error=%s", exc)
                    self.detach(transport)
                    break
                except Exception:
                    logger.exception("relay.sink.transport_error")
                    self.detach(transport)
                    break
                if channel and channel[0] is item:
                    channel.popleft()
                self.sent_frames += 1
            if not self._priority and not self._normal:
                self._idle.set()
