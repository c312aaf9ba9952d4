"""Relay error taxonomy shared by decoder, reassembler, bus, correlator and sink."""

from __future__ import annotations


class RelayError(RuntimeError):
    """Base class for recoverable relay failures."""


class DecodeError(RelayError):
    """Raised when an upstream frame is not valid JSON or fails shape validation."""

    def __init__(self, message: str, *, raw: str = "") -> None:
        super().__init__(message)
        self.raw = raw


class ProtocolViolation(RelayError):
    """Raised when a well-formed frame breaks the stream reassembly state machine."""


class ResyncRequired(RelayError):
    """Raised when a replay cursor cannot be served from the retained backlog."""

    def __init__(self, *, requested_seq: int, oldest_seq: int, current_seq: int) -> None:
        super().__init__(
            f"resync_required:requested={requested_seq},oldest={oldest_seq},current={current_seq}"
        )
        self.requested_seq = requested_seq
        self.oldest_seq = oldest_seq
        self.current_seq = current_seq


class RequestTimeout(RelayError):
    """Raised when a permission response arrives after the request was cancelled."""


class DuplicateResolution(RelayError):
    """Raised when a permission request has already been answered."""


class UnknownRequest(RelayError):
    """Raised when a permission response names a request the relay never opened."""


class UpstreamDisconnected(RelayError):
    """Raised when a command cannot be written because no upstream is attached."""
