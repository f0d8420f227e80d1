"""Base event-source interface for workflow execution streams."""

from __future__ import annotations

import abc
from typing import Any, AsyncContextManager, AsyncIterator, Dict, Optional

from pydantic import BaseModel, ConfigDict


class SSEConnectionError(Exception):
    """Raised when an event stream cannot be opened or breaks mid-stream."""

    pass


class StreamClosedError(SSEConnectionError):
    """Raised when the server ends an event stream."""

    pass


class ServerSentEvent(BaseModel):
    """One dispatched server-sent event."""

    model_config = ConfigDict(frozen=True)

    event: str = "message"
    data: str = ""
    id: Optional[str] = None
    retry: Optional[int] = None


class StreamRequest(BaseModel):
    """Description of one stream-opening request."""

    method: str = "GET"
    url: str
    headers: Dict[str, str] = {}
    body: Optional[Any] = None


class BaseEventSource(metaclass=abc.ABCMeta):
    """Abstract source of server-sent event streams."""

    @abc.abstractmethod
    def stream(
        self,
        method: str,
        url: str,
        *,
        headers: Optional[Dict[str, str]] = None,
        body: Optional[Any] = None,
    ) -> AsyncContextManager[AsyncIterator[ServerSentEvent]]:
        """Open one stream.

        Entering the context completes the handshake; the yielded iterator
        produces events until the server closes the stream. Failures are
        raised as :class:`SSEConnectionError`.
        """
        raise NotImplementedError

    async def aclose(self) -> None:
        """Release pooled resources (no-op by default)."""
        pass
