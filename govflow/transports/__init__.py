"""Event source factory and initialization."""

from __future__ import annotations

import os
from typing import Optional

from ..config import GovflowConfig, load_config
from .base import BaseEventSource, ServerSentEvent, SSEConnectionError, StreamClosedError
from .connection import ConnectionState, SSEConnection, connect
from .inmemory import HOLD, InMemoryEventSource
from .sse import HttpxEventSource, SSEDecoder


def get_event_source(
    backend: Optional[str] = None, config: Optional[GovflowConfig] = None
) -> BaseEventSource:
    """Factory function to get the configured event source."""

    config = config or load_config()
    backend = (
        backend
        or os.getenv("GOVFLOW_TRANSPORT")
        or config.transport.backend
    ).lower()

    if backend == "inmemory":
        return InMemoryEventSource()
    elif backend == "sse":
        return HttpxEventSource(timeout=config.sse.connect_timeout)
    else:
        raise ValueError(f"Unsupported transport backend: {backend}")


__all__ = [
    "BaseEventSource",
    "ConnectionState",
    "HOLD",
    "HttpxEventSource",
    "InMemoryEventSource",
    "SSEConnection",
    "SSEConnectionError",
    "SSEDecoder",
    "ServerSentEvent",
    "StreamClosedError",
    "connect",
    "get_event_source",
]
