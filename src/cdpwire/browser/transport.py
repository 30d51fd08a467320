"""Physical message channels to the browser.

A transport moves whole protocol frames (JSON text) and nothing else: it does
not parse, retry or reorder. Whatever goes wrong below it surfaces exactly once
through ``on_close``.
"""

import asyncio
import logging
from abc import ABC, abstractmethod
from collections.abc import Callable

import websockets
from websockets.exceptions import ConnectionClosed, WebSocketException

from cdpwire.browser.views import TransportError

logger = logging.getLogger(__name__)

MessageHandler = Callable[[str], None]
CloseHandler = Callable[[Exception | None], None]


class Transport(ABC):
    """Bidirectional frame channel.

    The owner sets ``on_message`` and ``on_close`` and then calls
    :meth:`start`; no frame is delivered before that.
    """

    def __init__(self) -> None:
        self.on_message: MessageHandler | None = None
        self.on_close: CloseHandler | None = None
        self._closed = False

    @property
    def closed(self) -> bool:
        return self._closed

    def start(self) -> None:
        """Begin delivering incoming frames."""

    @abstractmethod
    async def send(self, message: str) -> None:
        """Write one frame; raises TransportError when the channel is closed."""

    @abstractmethod
    async def close(self) -> None:
        """Close the channel. Safe to call more than once."""

    def _deliver(self, message: str) -> None:
        if self.on_message is not None:
            self.on_message(message)

    def _notify_close(self, error: Exception | None = None) -> None:
        if self._closed:
            return
        self._closed = True
        if self.on_close is not None:
            self.on_close(error)


class WebSocketTransport(Transport):
    """Transport over a DevTools WebSocket (one frame per websocket message)."""

    def __init__(self, websocket: 'websockets.ClientConnection', url: str):
        super().__init__()
        self._websocket = websocket
        self._url = url
        self._reader: asyncio.Task[None] | None = None

    @classmethod
    async def create(cls, url: str, open_timeout: float | None = 30) -> 'WebSocketTransport':
        try:
            websocket = await websockets.connect(
                url,
                max_size=None,
                ping_interval=None,
                open_timeout=open_timeout,
            )
        except (OSError, WebSocketException, asyncio.TimeoutError) as e:
            raise TransportError(f'Failed to open WebSocket to {url}: {type(e).__name__}: {e}') from e
        logger.debug(f'WebSocket transport opened: {url}')
        return cls(websocket, url)

    @property
    def url(self) -> str:
        return self._url

    def start(self) -> None:
        if self._reader is None:
            self._reader = asyncio.get_running_loop().create_task(self._read_loop(), name='cdpwire-ws-reader')

    async def _read_loop(self) -> None:
        error: Exception | None = None
        try:
            async for message in self._websocket:
                if isinstance(message, bytes):
                    message = message.decode('utf-8')
                self._deliver(message)
        except ConnectionClosed as e:
            error = TransportError(f'WebSocket closed: {e}')
        except UnicodeDecodeError as e:
            error = TransportError(f'Malformed protocol frame: {e}')
            try:
                await self._websocket.close()
            except WebSocketException as close_error:
                logger.debug(f'Ignoring error while closing WebSocket: {close_error}')
        except asyncio.CancelledError:
            raise
        finally:
            logger.debug(f'WebSocket transport closed: {self._url}')
            self._notify_close(error)

    async def send(self, message: str) -> None:
        if self._closed:
            raise TransportError('Cannot send on a closed WebSocket transport')
        try:
            await self._websocket.send(message)
        except ConnectionClosed as e:
            raise TransportError(f'WebSocket closed while sending: {e}') from e

    async def close(self) -> None:
        try:
            await self._websocket.close()
        except WebSocketException as e:
            logger.debug(f'Ignoring error while closing WebSocket: {e}')
        if self._reader is not None and self._reader is not asyncio.current_task():
            await asyncio.gather(self._reader, return_exceptions=True)
        self._notify_close(None)


class PipeTransport(Transport):
    """Transport over a pair of byte streams using NUL-terminated frames.

    This is the framing used by ``--remote-debugging-pipe``; a frame may be
    split across reads and several frames may arrive in one read.
    """

    DELIMITER = b'\0'
    READ_CHUNK = 64 * 1024

    def __init__(self, reader: asyncio.StreamReader, writer: asyncio.StreamWriter):
        super().__init__()
        self._reader = reader
        self._writer = writer
        self._pending = bytearray()
        self._read_task: asyncio.Task[None] | None = None

    def start(self) -> None:
        if self._read_task is None:
            self._read_task = asyncio.get_running_loop().create_task(self._read_loop(), name='cdpwire-pipe-reader')

    async def _read_loop(self) -> None:
        error: Exception | None = None
        try:
            while True:
                chunk = await self._reader.read(self.READ_CHUNK)
                if not chunk:
                    break
                self._dispatch_chunk(chunk)
        except (ConnectionError, OSError) as e:
            error = TransportError(f'Pipe read failed: {e}')
        except UnicodeDecodeError as e:
            error = TransportError(f'Malformed protocol frame: {e}')
            self._writer.close()
        finally:
            self._notify_close(error)

    def _dispatch_chunk(self, chunk: bytes) -> None:
        self._pending.extend(chunk)
        while True:
            end = self._pending.find(self.DELIMITER)
            if end == -1:
                return
            frame = bytes(self._pending[:end])
            del self._pending[: end + 1]
            self._deliver(frame.decode('utf-8'))
            if self._closed:
                return

    async def send(self, message: str) -> None:
        if self._closed:
            raise TransportError('Cannot send on a closed pipe transport')
        try:
            self._writer.write(message.encode('utf-8') + self.DELIMITER)
            await self._writer.drain()
        except (ConnectionError, OSError) as e:
            raise TransportError(f'Pipe write failed: {e}') from e

    async def close(self) -> None:
        if not self._writer.is_closing():
            self._writer.close()
        try:
            await self._writer.wait_closed()
        except (ConnectionError, OSError) as e:
            logger.debug(f'Ignoring error while closing pipe: {e}')
        if self._read_task is not None and self._read_task is not asyncio.current_task():
            self._read_task.cancel()
            await asyncio.gather(self._read_task, return_exceptions=True)
        self._notify_close(None)
