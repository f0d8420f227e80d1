"""Long-lived event-stream connection with bounded reconnection."""

from __future__ import annotations

import asyncio
import inspect
import logging
from enum import Enum
from typing import Any, Callable, Dict, Optional

from .base import BaseEventSource, ServerSentEvent, StreamClosedError

logger = logging.getLogger(__name__)

DEFAULT_RECONNECT_INTERVAL = 3.0
DEFAULT_MAX_RECONNECT_ATTEMPTS = 5

Callback = Callable[..., Any]


class ConnectionState(str, Enum):
    DISCONNECTED = "disconnected"
    CONNECTING = "connecting"
    CONNECTED = "connected"
    ERROR = "error"
    MAX_RECONNECT_REACHED = "max_reconnect_reached"


class SSEConnection:
    """Keep an event stream open, retrying on failure at a fixed interval.

    Callbacks may be plain functions or coroutine functions. They run in
    stream order, and anything they raise is logged rather than propagated.
    """

    def __init__(
        self,
        source: BaseEventSource,
        url: str,
        method: str = "GET",
        *,
        headers: Optional[Dict[str, str]] = None,
        body: Optional[Any] = None,
        on_open: Optional[Callback] = None,
        on_message: Optional[Callable[[ServerSentEvent], Any]] = None,
        on_error: Optional[Callable[[Exception], Any]] = None,
        on_close: Optional[Callback] = None,
        on_max_reconnect_attempts_reached: Optional[Callback] = None,
        max_reconnect_attempts: int = DEFAULT_MAX_RECONNECT_ATTEMPTS,
        reconnect_interval: float = DEFAULT_RECONNECT_INTERVAL,
    ) -> None:
        if not url:
            raise ValueError("url is required")
        if max_reconnect_attempts < 0:
            raise ValueError("max_reconnect_attempts must be non-negative")
        if reconnect_interval < 0:
            raise ValueError("reconnect_interval must be non-negative")

        self._source = source
        self._url = url
        self._method = method.upper()
        self._headers = dict(headers or {})
        self._body = body
        self._on_open = on_open
        self._on_message = on_message
        self._on_error = on_error
        self._on_close = on_close
        self._on_max_reconnect = on_max_reconnect_attempts_reached
        self.max_reconnect_attempts = max_reconnect_attempts
        self.reconnect_interval = reconnect_interval

        self._state = ConnectionState.DISCONNECTED
        self._reconnect_attempts = 0
        self._last_event_id: Optional[str] = None
        self._closing = False
        self._close_emitted = False
        self._task: Optional[asyncio.Task] = None

    # ------------------------------------------------------------------
    @property
    def state(self) -> ConnectionState:
        return self._state

    @property
    def reconnect_attempts(self) -> int:
        return self._reconnect_attempts

    @property
    def url(self) -> str:
        return self._url

    @property
    def method(self) -> str:
        return self._method

    @property
    def is_connected(self) -> bool:
        return self._state is ConnectionState.CONNECTED

    @property
    def is_running(self) -> bool:
        return self._task is not None and not self._task.done()

    def retarget(self, url: str, method: str = "GET", body: Optional[Any] = None) -> None:
        """Use a different request for subsequent reconnects."""
        self._url = url
        self._method = method.upper()
        self._body = body

    # ------------------------------------------------------------------
    def start(self) -> "SSEConnection":
        """Begin connecting in the background and return ``self``."""
        if self.is_running:
            return self
        if self._state is ConnectionState.MAX_RECONNECT_REACHED:
            logger.warning(
                f"Reconnect limit reached for {self._url}; call reset() before reconnecting"
            )
            return self
        self._closing = False
        self._close_emitted = False
        self._task = asyncio.create_task(self._run())
        return self

    def reset(self) -> None:
        """Clear a reached reconnect limit so :meth:`start` can be used again."""
        if self.is_running:
            return
        self._state = ConnectionState.DISCONNECTED
        self._reconnect_attempts = 0
        logger.info(f"Connection state reset for {self._url}")

    async def disconnect(self) -> None:
        """Close the stream and stop reconnecting. Safe to call repeatedly."""
        self._closing = True
        task = self._task
        if task is not None and not task.done() and task is not asyncio.current_task():
            task.cancel()
            try:
                await task
            except asyncio.CancelledError:
                pass
        if self._state is not ConnectionState.DISCONNECTED:
            logger.info(f"Event stream disconnected: {self._url}")
        self._state = ConnectionState.DISCONNECTED
        self._reconnect_attempts = 0

    async def wait_closed(self) -> None:
        """Wait until the background loop has finished."""
        task = self._task
        if task is not None and task is not asyncio.current_task():
            await asyncio.wait({task})

    # ------------------------------------------------------------------
    async def _emit(self, callback: Optional[Callback], *args: Any) -> None:
        if callback is None:
            return
        try:
            result = callback(*args)
            if inspect.isawaitable(result):
                await result
        except asyncio.CancelledError:
            raise
        except Exception:
            logger.exception(f"Event stream callback failed for {self._url}")

    async def _emit_close(self) -> None:
        if self._close_emitted:
            return
        self._close_emitted = True
        await self._emit(self._on_close)

    async def _run(self) -> None:
        try:
            while not self._closing:
                self._state = ConnectionState.CONNECTING
                try:
                    await self._stream_once()
                except asyncio.CancelledError:
                    raise
                except Exception as exc:
                    if self._closing or not await self._handle_error(exc):
                        break
        finally:
            if self._state is not ConnectionState.MAX_RECONNECT_REACHED:
                self._state = ConnectionState.DISCONNECTED
            await self._emit_close()

    async def _stream_once(self) -> None:
        headers = dict(self._headers)
        if self._last_event_id:
            headers["Last-Event-ID"] = self._last_event_id

        async with self._source.stream(
            self._method, self._url, headers=headers, body=self._body
        ) as events:
            self._state = ConnectionState.CONNECTED
            self._reconnect_attempts = 0
            logger.info(f"Event stream connected: {self._method} {self._url}")
            await self._emit(self._on_open)
            if self._closing:
                return
            try:
                async for event in events:
                    if event.id:
                        self._last_event_id = event.id
                    logger.debug(f"Received event from {self._url}: {event.data}")
                    await self._emit(self._on_message, event)
                    if self._closing:
                        return
            finally:
                aclose = getattr(events, "aclose", None)
                if aclose is not None:
                    await aclose()

        if not self._closing:
            raise StreamClosedError(f"Event stream closed by server: {self._url}")

    async def _handle_error(self, exc: Exception) -> bool:
        """Report ``exc`` and wait before the next attempt; ``False`` stops the loop."""
        self._state = ConnectionState.ERROR
        logger.error(f"Event stream error for {self._url}: {exc}")
        await self._emit(self._on_error, exc)
        if self._closing:
            return False

        if self._reconnect_attempts >= self.max_reconnect_attempts:
            self._state = ConnectionState.MAX_RECONNECT_REACHED
            logger.error(
                f"Reconnect limit of {self.max_reconnect_attempts} reached for {self._url}"
            )
            await self._emit(self._on_max_reconnect)
            return False

        self._reconnect_attempts += 1
        logger.warning(
            f"Reconnecting to {self._url} in {self.reconnect_interval}s "
            f"(attempt {self._reconnect_attempts}/{self.max_reconnect_attempts})"
        )
        await asyncio.sleep(self.reconnect_interval)
        return not self._closing


def connect(
    source: BaseEventSource,
    url: str,
    method: str = "GET",
    on_open: Optional[Callback] = None,
    on_message: Optional[Callable[[ServerSentEvent], Any]] = None,
    on_error: Optional[Callable[[Exception], Any]] = None,
    on_close: Optional[Callback] = None,
    max_reconnect_attempts: int = DEFAULT_MAX_RECONNECT_ATTEMPTS,
    reconnect_interval: float = DEFAULT_RECONNECT_INTERVAL,
    **kwargs: Any,
) -> SSEConnection:
    """Open a persistent event stream and return its handle.

    Must be called from a running event loop.
    """
    return SSEConnection(
        source,
        url,
        method,
        on_open=on_open,
        on_message=on_message,
        on_error=on_error,
        on_close=on_close,
        max_reconnect_attempts=max_reconnect_attempts,
        reconnect_interval=reconnect_interval,
        **kwargs,
    ).start()
