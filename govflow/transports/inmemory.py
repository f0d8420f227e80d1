"""In-memory event source for testing."""

from __future__ import annotations

import asyncio
import json
from collections import deque
from contextlib import asynccontextmanager
from typing import Any, AsyncIterator, Deque, Dict, Iterable, List, Optional, Union

from .base import BaseEventSource, ServerSentEvent, SSEConnectionError, StreamRequest

HOLD = object()
"""Script item that keeps a stream open until it is disconnected."""

ScriptItem = Union[ServerSentEvent, Dict[str, Any], str, Exception, object]
Attempt = Union[Exception, Iterable[ScriptItem]]


class InMemoryEventSource(BaseEventSource):
    """Replay scripted connection attempts.

    Each attempt is either an exception, raised while opening the stream, or
    an iterable of items: events, dicts (sent as JSON data), strings (sent as
    raw data), exceptions (raised mid-stream) or :data:`HOLD`. A stream whose
    items run out is closed by the "server".
    """

    def __init__(self, attempts: Iterable[Attempt] = ()) -> None:
        self._attempts: Deque[Attempt] = deque(attempts)
        self.requests: List[StreamRequest] = []

    def add_attempt(self, attempt: Attempt) -> None:
        self._attempts.append(attempt)

    @property
    def open_count(self) -> int:
        return len(self.requests)

    @asynccontextmanager
    async def stream(
        self,
        method: str,
        url: str,
        *,
        headers: Optional[Dict[str, str]] = None,
        body: Optional[Any] = None,
    ) -> AsyncIterator[AsyncIterator[ServerSentEvent]]:
        self.requests.append(
            StreamRequest(method=method.upper(), url=url, headers=headers or {}, body=body)
        )
        await asyncio.sleep(0)
        if not self._attempts:
            raise SSEConnectionError(f"No scripted response for {method.upper()} {url}")
        attempt = self._attempts.popleft()
        if isinstance(attempt, Exception):
            raise attempt
        yield self._replay(list(attempt))

    async def _replay(self, items: List[ScriptItem]) -> AsyncIterator[ServerSentEvent]:
        for item in items:
            await asyncio.sleep(0)
            if item is HOLD:
                await asyncio.Event().wait()
            elif isinstance(item, Exception):
                raise item
            elif isinstance(item, ServerSentEvent):
                yield item
            elif isinstance(item, dict):
                yield ServerSentEvent(data=json.dumps(item))
            else:
                yield ServerSentEvent(data=str(item))
