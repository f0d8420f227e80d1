"""HTTP server-sent events source built on httpx."""

from __future__ import annotations

import logging
from contextlib import asynccontextmanager
from typing import Any, AsyncIterator, Dict, List, Optional

import httpx

from .base import BaseEventSource, ServerSentEvent, SSEConnectionError

logger = logging.getLogger(__name__)


class SSEDecoder:
    """Incremental decoder for the ``text/event-stream`` line format."""

    def __init__(self) -> None:
        self._event = ""
        self._data: List[str] = []
        self._retry: Optional[int] = None
        self.last_event_id: Optional[str] = None

    def decode(self, line: str) -> Optional[ServerSentEvent]:
        """Feed one line; return an event when a blank line dispatches it."""
        line = line.rstrip("\r\n")

        if not line:
            if not self._data and not self._event and self._retry is None:
                return None
            event = ServerSentEvent(
                event=self._event or "message",
                data="\n".join(self._data),
                id=self.last_event_id,
                retry=self._retry,
            )
            self._event = ""
            self._data = []
            self._retry = None
            return event

        if line.startswith(":"):
            return None

        field, _, value = line.partition(":")
        if value.startswith(" "):
            value = value[1:]

        if field == "data":
            self._data.append(value)
        elif field == "event":
            self._event = value
        elif field == "id":
            if "\0" not in value:
                self.last_event_id = value
        elif field == "retry":
            try:
                self._retry = int(value)
            except ValueError:
                pass
        return None


class HttpxEventSource(BaseEventSource):
    """Open event streams with an ``httpx.AsyncClient``."""

    def __init__(
        self,
        timeout: float = 10.0,
        headers: Optional[Dict[str, str]] = None,
        client: Optional[httpx.AsyncClient] = None,
    ) -> None:
        if timeout <= 0:
            raise ValueError("timeout must be positive")
        self._timeout = timeout
        self._headers = dict(headers or {})
        self._client = client
        self._owns_client = client is None

    def _get_client(self) -> httpx.AsyncClient:
        if self._client is None:
            # No read timeout: streams stay idle between events.
            self._client = httpx.AsyncClient(
                timeout=httpx.Timeout(self._timeout, read=None)
            )
        return self._client

    @asynccontextmanager
    async def stream(
        self,
        method: str,
        url: str,
        *,
        headers: Optional[Dict[str, str]] = None,
        body: Optional[Any] = None,
    ) -> AsyncIterator[AsyncIterator[ServerSentEvent]]:
        request_headers = {
            "Accept": "text/event-stream",
            "Cache-Control": "no-cache",
            **self._headers,
            **(headers or {}),
        }
        client = self._get_client()
        try:
            async with client.stream(
                method.upper(), url, headers=request_headers, json=body
            ) as response:
                if response.status_code >= 400:
                    await response.aread()
                    raise SSEConnectionError(
                        f"HTTP {response.status_code}: {response.text}"
                    )
                logger.debug(f"Event stream opened: {method.upper()} {url}")
                yield self._iter_events(response)
        except httpx.ConnectError as e:
            raise SSEConnectionError(f"Connection failed: {e}") from e
        except httpx.TimeoutException as e:
            raise SSEConnectionError(f"Request timed out: {e}") from e
        except httpx.RequestError as e:
            raise SSEConnectionError(f"Request failed: {e}") from e

    async def _iter_events(self, response: httpx.Response) -> AsyncIterator[ServerSentEvent]:
        decoder = SSEDecoder()
        async for line in response.aiter_lines():
            event = decoder.decode(line)
            if event is not None:
                yield event

    async def aclose(self) -> None:
        if self._client is not None and self._owns_client:
            await self._client.aclose()
            self._client = None
