"""Resumable label stream connection.

Owns the websocket, replays from the committed cursor, and reconnects with
capped exponential backoff until `stop()` is called. A frame's sequence is
committed only after every label in it was handed to the label handler.
"""

from __future__ import annotations

import asyncio
import logging
from enum import Enum
from typing import Any, AsyncContextManager, AsyncIterator, Awaitable, Callable, Optional, Protocol, Union
from urllib.parse import parse_qsl, urlencode, urlsplit, urlunsplit

import aiohttp

from ingestion.core.cursor_store import CursorStore
from ingestion.core.decoder import LabelEvent, StreamDecoder
from ingestion.core.errors import DecodeError, IngestionError
from ingestion.core.label_filter import LabelFilter
from ingestion.core.observer import Observer, PipelineEvent, notify

logger = logging.getLogger(__name__)

DEFAULT_BASE_DELAY_SECONDS = 1.0
DEFAULT_MAX_DELAY_SECONDS = 30.0
DEFAULT_HEARTBEAT_SECONDS = 30.0

LabelHandler = Callable[[LabelEvent], Awaitable[None]]


class ConnectionState(str, Enum):
    DISCONNECTED = "disconnected"
    CONNECTING = "connecting"
    OPEN = "open"
    CLOSING = "closing"


class WebSocketLike(Protocol):
    def __aiter__(self) -> AsyncIterator[aiohttp.WSMessage]: ...

    async def close(self) -> Any: ...

    def exception(self) -> Optional[BaseException]: ...


Connect = Callable[[str], AsyncContextManager[WebSocketLike]]


class HandlerFailed(IngestionError):
    """The label handler raised; the frame will be replayed after reconnect."""


def backoff_delay(attempts: int, base: float = DEFAULT_BASE_DELAY_SECONDS, cap: float = DEFAULT_MAX_DELAY_SECONDS) -> float:
    return min(base * (2**attempts), cap)


def with_cursor(url: str, cursor: Optional[int]) -> str:
    if cursor is None:
        return url
    parts = urlsplit(url)
    query = [(k, v) for k, v in parse_qsl(parts.query, keep_blank_values=True) if k != "cursor"]
    query.append(("cursor", str(cursor)))
    return urlunsplit(parts._replace(query=urlencode(query)))


class StreamConnector:
    def __init__(
        self,
        url: str,
        *,
        handler: LabelHandler,
        cursor_store: CursorStore,
        decoder: Optional[StreamDecoder] = None,
        label_filter: Optional[LabelFilter] = None,
        observer: Optional[Observer] = None,
        base_delay: float = DEFAULT_BASE_DELAY_SECONDS,
        max_delay: float = DEFAULT_MAX_DELAY_SECONDS,
        heartbeat: float = DEFAULT_HEARTBEAT_SECONDS,
        connect: Optional[Connect] = None,
    ) -> None:
        self._url = url
        self._handler = handler
        self._cursor_store = cursor_store
        self._decoder = decoder or StreamDecoder()
        self._filter = label_filter or LabelFilter()
        self._observer = observer
        self._base_delay = base_delay
        self._max_delay = max_delay
        self._heartbeat = heartbeat
        self._connect = connect

        self._state = ConnectionState.DISCONNECTED
        self._attempts = 0
        self._cursor: Optional[int] = None
        self._stopping = False
        self._stop_event = asyncio.Event()
        self._task: Optional[asyncio.Task[None]] = None
        self._ws: Optional[WebSocketLike] = None
        self._http: Optional[aiohttp.ClientSession] = None

    @property
    def state(self) -> ConnectionState:
        return self._state

    @property
    def reconnect_attempts(self) -> int:
        return self._attempts

    @property
    def cursor(self) -> Optional[int]:
        return self._cursor

    def connect_url(self) -> str:
        return with_cursor(self._url, self._cursor)

    async def start(self) -> None:
        if self._task is not None and not self._task.done():
            return
        self._stopping = False
        self._stop_event.clear()
        self._cursor = self._cursor_store.load()
        self._task = asyncio.create_task(self._run(), name="label-stream")

    async def stop(self) -> None:
        """Close the connection and suppress reconnection."""
        self._stopping = True
        self._stop_event.set()
        ws = self._ws
        if ws is not None:
            self._state = ConnectionState.CLOSING
            await ws.close()
        if self._task is not None:
            await self._task
            self._task = None
        self._state = ConnectionState.DISCONNECTED

    async def wait_closed(self) -> None:
        if self._task is not None:
            await self._task

    def _open(self, url: str) -> AsyncContextManager[WebSocketLike]:
        if self._connect is not None:
            return self._connect(url)
        if self._http is None:
            self._http = aiohttp.ClientSession()
        return self._http.ws_connect(url, heartbeat=self._heartbeat, max_msg_size=0)

    async def _run(self) -> None:
        try:
            while not self._stopping:
                await self._connect_once()
                if self._stopping:
                    break
                delay = backoff_delay(self._attempts, self._base_delay, self._max_delay)
                self._attempts += 1
                logger.info(f"Reconnecting in {delay:.1f}s (attempt {self._attempts})")
                try:
                    await asyncio.wait_for(self._stop_event.wait(), timeout=delay)
                except asyncio.TimeoutError:
                    pass
        finally:
            if self._http is not None:
                await self._http.close()
                self._http = None
            self._state = ConnectionState.DISCONNECTED

    async def _connect_once(self) -> None:
        url = self.connect_url()
        self._state = ConnectionState.CONNECTING
        logger.info(f"Connecting to {url}")
        try:
            async with self._open(url) as ws:
                self._ws = ws
                self._state = ConnectionState.OPEN
                self._attempts = 0
                notify(self._observer, PipelineEvent.CONNECTED, url=url, cursor=self._cursor)
                if self._stopping:
                    return
                await self._receive(ws)
        except HandlerFailed as e:
            logger.error(f"Recycling connection at cursor {self._cursor}: {e}")
        except (aiohttp.ClientError, asyncio.TimeoutError, OSError) as e:
            logger.warning(f"Stream connection error: {e!r}")
        except Exception as e:
            # The cursor was not advanced, so the failed frame is replayed.
            logger.exception(f"Stream loop error at cursor {self._cursor}: {e!r}")
        finally:
            was_open = self._ws is not None
            self._ws = None
            if self._state is not ConnectionState.CLOSING:
                self._state = ConnectionState.DISCONNECTED
            if was_open:
                notify(self._observer, PipelineEvent.DISCONNECTED, cursor=self._cursor, stopping=self._stopping)

    async def _receive(self, ws: WebSocketLike) -> None:
        async for msg in ws:
            if msg.type in (aiohttp.WSMsgType.BINARY, aiohttp.WSMsgType.TEXT):
                await self.handle_frame(msg.data)
            elif msg.type == aiohttp.WSMsgType.ERROR:
                error = ws.exception()
                logger.warning(f"Websocket error: {error!r}")
                return
            elif msg.type in (aiohttp.WSMsgType.CLOSE, aiohttp.WSMsgType.CLOSING, aiohttp.WSMsgType.CLOSED):
                return
        if not self._stopping:
            logger.warning("Stream closed by server")

    async def handle_frame(self, frame: Union[bytes, str]) -> int:
        """Decode one frame, hand its labels downstream, then commit its cursor.

        Returns the number of labels handed to the handler.
        """
        try:
            message = self._decoder.decode(frame)
        except DecodeError as e:
            logger.warning(f"Dropping undecodable frame: {e}")
            return 0

        labels = self._filter.apply(message.labels)
        for label in labels:
            notify(self._observer, PipelineEvent.LABEL_RECEIVED, uri=label.uri, val=label.val)
            try:
                await self._handler(label)
            except Exception as e:
                raise HandlerFailed(f"Label handler failed for {label.uri} ({label.val}): {e!r}") from e

        if message.seq is not None and self._cursor_store.save(message.seq):
            self._cursor = message.seq
        return len(labels)
