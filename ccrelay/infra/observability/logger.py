"""Observability layer: one-line console logging shared by the relay and the HTTP shell."""

from __future__ import annotations

import logging

_LOG_FORMAT = "%(asctime)s | %(levelname)s | %(name)s | %(message)s"
_SERVER_LOGGERS = ("uvicorn", "uvicorn.error", "uvicorn.access")


def setup_logging(level: str = "INFO", *, quiet_loggers: tuple[str, ...] = ("websockets",)) -> None:
    """Configure the root logger once; server loggers propagate into the same handler."""
    normalized = level.upper()
    logging.basicConfig(level=normalized, format=_LOG_FORMAT, force=True)
    for name in _SERVER_LOGGERS:
        server_logger = logging.getLogger(name)
        server_logger.handlers.clear()
        server_logger.setLevel(normalized)
        server_logger.propagate = True
    # Frame-level chatter from transport libraries stays out of relay logs.
    for name in quiet_loggers:
        logging.getLogger(name).setLevel(max(getattr(logging, normalized, logging.INFO), logging.WARNING))


def get_logger(name: str) -> logging.Logger:
    return logging.getLogger(name)
