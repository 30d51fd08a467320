"""Tests for the WebSocket and pipe transports, without a browser."""

import asyncio

import pytest
from websockets.exceptions import ConnectionClosedError, ConnectionClosedOK

from cdpwire.browser.transport import PipeTransport, WebSocketTransport
from cdpwire.browser.views import TransportError


class FakeWebSocket:
    """Just enough of websockets.ClientConnection for the transport."""

    def __init__(self):
        self.incoming: asyncio.Queue = asyncio.Queue()
        self.sent: list[str] = []
        self.closed = False

    def __aiter__(self):
        return self

    async def __anext__(self):
        item = await self.incoming.get()
        if item is None:
            raise StopAsyncIteration
        if isinstance(item, Exception):
            raise item
        return item

    async def send(self, message):
        if self.closed:
            raise ConnectionClosedOK(None, None)
        self.sent.append(message)

    async def close(self):
        self.closed = True
        self.incoming.put_nowait(None)


class FakeWriter:
    def __init__(self):
        self.buffer = bytearray()
        self.closing = False
        self.fail_with: Exception | None = None

    def write(self, data):
        if self.fail_with is not None:
            raise self.fail_with
        self.buffer.extend(data)

    async def drain(self):
        pass

    def is_closing(self):
        return self.closing

    def close(self):
        self.closing = True

    async def wait_closed(self):
        pass


def wire(transport):
    """Attach recording handlers and start the transport."""
    received, closed = [], []
    transport.on_message = received.append
    transport.on_close = closed.append
    transport.start()
    return received, closed


class TestWebSocketTransport:
    """Frame delivery and close propagation over a websocket."""

    @pytest.mark.asyncio
    async def test_delivers_text_and_binary_frames(self):
        websocket = FakeWebSocket()
        transport = WebSocketTransport(websocket, "ws://fake")
        received, closed = wire(transport)

        websocket.incoming.put_nowait('{"id": 1, "result": {}}')
        websocket.incoming.put_nowait(b'{"method": "Page.loadEventFired", "params": {}}')
        await asyncio.sleep(0.01)
        assert received == ['{"id": 1, "result": {}}', '{"method": "Page.loadEventFired", "params": {}}']

        await transport.send('{"id": 2, "method": "Browser.getVersion"}')
        assert websocket.sent == ['{"id": 2, "method": "Browser.getVersion"}']
        assert closed == []
        assert transport.url == "ws://fake"
        await transport.close()

    @pytest.mark.asyncio
    async def test_remote_close_notifies_once(self):
        websocket = FakeWebSocket()
        transport = WebSocketTransport(websocket, "ws://fake")
        _received, closed = wire(transport)

        websocket.incoming.put_nowait(ConnectionClosedError(None, None))
        await asyncio.sleep(0.01)
        assert len(closed) == 1
        assert isinstance(closed[0], TransportError)
        assert transport.closed

        await transport.close()
        assert len(closed) == 1
        with pytest.raises(TransportError):
            await transport.send("{}")

    @pytest.mark.asyncio
    async def test_undecodable_binary_frame_is_transport_error(self):
        websocket = FakeWebSocket()
        transport = WebSocketTransport(websocket, "ws://fake")
        received, closed = wire(transport)

        websocket.incoming.put_nowait(b'{"method": "X", "params": {"a": "\xff"}}')
        await asyncio.sleep(0.01)
        assert received == []
        assert len(closed) == 1
        assert isinstance(closed[0], TransportError)
        assert "Malformed protocol frame" in str(closed[0])
        assert websocket.closed
        assert transport._reader.done() and transport._reader.exception() is None

    @pytest.mark.asyncio
    async def test_local_close(self):
        websocket = FakeWebSocket()
        transport = WebSocketTransport(websocket, "ws://fake")
        _received, closed = wire(transport)

        await transport.close()
        assert websocket.closed
        assert closed == [None]

    @pytest.mark.asyncio
    async def test_open_failure_is_transport_error(self):
        with pytest.raises(TransportError, match="Failed to open WebSocket"):
            await WebSocketTransport.create("ws://127.0.0.1:1/devtools/browser/x", open_timeout=2)


class TestPipeTransport:
    """NUL-delimited framing over byte streams."""

    @pytest.mark.asyncio
    async def test_split_and_coalesced_frames(self):
        reader = asyncio.StreamReader()
        transport = PipeTransport(reader, FakeWriter())
        received, _closed = wire(transport)

        reader.feed_data(b'{"id": 1, "res')
        reader.feed_data(b'ult": {}}\0{"id": 2, "result": {}}\0{"id"')
        await asyncio.sleep(0.01)
        assert received == ['{"id": 1, "result": {}}', '{"id": 2, "result": {}}']

        reader.feed_data(": 3, \"result\": {\"text\": \"café\"}}\0".encode())
        await asyncio.sleep(0.01)
        assert received[-1] == '{"id": 3, "result": {"text": "café"}}'
        await transport.close()

    @pytest.mark.asyncio
    async def test_undecodable_frame_is_transport_error(self):
        reader = asyncio.StreamReader()
        writer = FakeWriter()
        transport = PipeTransport(reader, writer)
        received, closed = wire(transport)

        reader.feed_data(b'{"id": 1, "result": {}}\0{"method": "X", "params": {"a": "\xff"}}\0')
        await asyncio.sleep(0.01)
        assert received == ['{"id": 1, "result": {}}']
        assert len(closed) == 1
        assert isinstance(closed[0], TransportError)
        assert "Malformed protocol frame" in str(closed[0])
        assert writer.closing
        assert transport._read_task.done() and transport._read_task.exception() is None

    @pytest.mark.asyncio
    async def test_send_appends_delimiter(self):
        writer = FakeWriter()
        transport = PipeTransport(asyncio.StreamReader(), writer)
        wire(transport)
        await transport.send('{"id": 1, "method": "Browser.getVersion"}')
        assert bytes(writer.buffer) == b'{"id": 1, "method": "Browser.getVersion"}\0'
        await transport.close()

    @pytest.mark.asyncio
    async def test_eof_closes(self):
        reader = asyncio.StreamReader()
        transport = PipeTransport(reader, FakeWriter())
        _received, closed = wire(transport)
        reader.feed_eof()
        await asyncio.sleep(0.01)
        assert closed == [None]
        with pytest.raises(TransportError):
            await transport.send("{}")

    @pytest.mark.asyncio
    async def test_write_failure_is_transport_error(self):
        writer = FakeWriter()
        writer.fail_with = BrokenPipeError("gone")
        transport = PipeTransport(asyncio.StreamReader(), writer)
        wire(transport)
        with pytest.raises(TransportError, match="Pipe write failed"):
            await transport.send("{}")
        await transport.close()

    @pytest.mark.asyncio
    async def test_close_is_idempotent(self):
        writer = FakeWriter()
        transport = PipeTransport(asyncio.StreamReader(), writer)
        _received, closed = wire(transport)
        await transport.close()
        await transport.close()
        assert writer.closing
        assert closed == [None]
