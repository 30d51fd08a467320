"""Tests for Browser orchestration and WebSocket URL resolution."""

import asyncio

import httpx
import pytest

from cdpwire.browser.browser import Browser, resolve_websocket_url
from cdpwire.browser.emitter import handler_count
from cdpwire.browser.events import ConnectionClosedEvent, TargetAvailableEvent, TargetChangedEvent, TargetGoneEvent
from cdpwire.browser.profile import ConnectionProfile
from cdpwire.browser.views import (
    BrowserTimeoutError,
    CDPWireError,
    ConnectionClosedError,
    ProtocolError,
    TransportError,
)


@pytest.fixture
def profile():
    return ConnectionProfile(cdp_url="ws://fake/devtools/browser", protocol_timeout_ms=5000)


@pytest.fixture
def remote(transport):
    """Script a browser with one page (T1/S1); each page session has main frame F-<session>."""

    def discover(frame):
        created = transport.event("Target.targetCreated", {"targetInfo": transport.target_info("T1", attached=False)})
        return [created, transport.reply(frame)]

    def auto_attach(frame):
        if "sessionId" in frame:
            return [transport.reply(frame)]
        return [transport.attached_event("T1", "S1"), transport.reply(frame)]

    def frame_tree(frame):
        main = {"id": f"F-{frame['sessionId']}", "loaderId": "L0", "url": "about:blank"}
        return [transport.reply(frame, {"frameTree": {"frame": main}})]

    def create_target(frame):
        url = frame["params"]["url"]
        info = transport.target_info("T2", url=url, attached=False)
        return [
            transport.event("Target.targetCreated", {"targetInfo": info}),
            transport.attached_event("T2", "S2", url=url),
            transport.reply(frame, {"targetId": "T2"}),
        ]

    transport.script["Target.setDiscoverTargets"] = discover
    transport.script["Target.setAutoAttach"] = auto_attach
    transport.script["Page.getFrameTree"] = frame_tree
    transport.script["Target.createTarget"] = create_target
    return transport


class TestResolveWebSocketUrl:
    """Endpoint discovery through /json/version."""

    @pytest.mark.asyncio
    async def test_ws_url_passes_through(self):
        assert await resolve_websocket_url("ws://127.0.0.1:9222/devtools/browser/abc") == (
            "ws://127.0.0.1:9222/devtools/browser/abc"
        )

    @pytest.mark.asyncio
    async def test_http_url_is_resolved(self):
        requested = []

        def handler(request):
            requested.append(str(request.url))
            return httpx.Response(200, json={"webSocketDebuggerUrl": "ws://127.0.0.1:9222/devtools/browser/xyz"})

        async with httpx.AsyncClient(transport=httpx.MockTransport(handler)) as client:
            url = await resolve_websocket_url("http://127.0.0.1:9222/", client=client)
        assert url == "ws://127.0.0.1:9222/devtools/browser/xyz"
        assert requested == ["http://127.0.0.1:9222/json/version"]

    @pytest.mark.asyncio
    async def test_missing_field(self):
        client = httpx.AsyncClient(transport=httpx.MockTransport(lambda request: httpx.Response(200, json={})))
        with pytest.raises(TransportError, match="KeyError"):
            await resolve_websocket_url("http://127.0.0.1:9222", client=client)
        await client.aclose()

    @pytest.mark.asyncio
    async def test_http_error(self):
        client = httpx.AsyncClient(transport=httpx.MockTransport(lambda request: httpx.Response(500)))
        with pytest.raises(TransportError, match="Could not resolve"):
            await resolve_websocket_url("http://127.0.0.1:9222/json/version", client=client)
        await client.aclose()


class TestConnect:
    """Browser.connect and the page bookkeeping it sets up."""

    @pytest.mark.asyncio
    async def test_connect_tracks_pages_and_frames(self, remote, profile, settle):
        browser = await Browser.connect(profile, transport=remote)
        await settle(browser.event_bus)

        assert browser.is_connected
        assert [page.target_id for page in browser.pages()] == ["T1"]
        frame_manager = browser.frame_manager("T1")
        assert frame_manager.frame_tree.main_frame.frame_id == "F-S1"
        assert browser.connection.url == "ws://fake/devtools/browser"
        await browser.disconnect()

    @pytest.mark.asyncio
    async def test_connect_requires_url_or_transport(self):
        with pytest.raises(CDPWireError, match="without a CDP URL"):
            await Browser.connect(ConnectionProfile())

    @pytest.mark.asyncio
    async def test_failed_initialize_disconnects(self, transport, profile):
        transport.script["Target.setDiscoverTargets"] = lambda f: [transport.error(f, "Not allowed")]
        with pytest.raises(ProtocolError, match="Not allowed"):
            await Browser.connect(profile, transport=transport)
        assert transport.close_calls == 1

    @pytest.mark.asyncio
    async def test_version(self, remote, profile):
        remote.script["Browser.getVersion"] = lambda f: [remote.reply(f, {"product": "HeadlessChrome/126.0"})]
        async with await Browser.connect(profile, transport=remote) as browser:
            assert (await browser.version())["product"] == "HeadlessChrome/126.0"
        assert not browser.is_connected


class TestTargets:
    """Waiting for, opening and losing targets."""

    @pytest.mark.asyncio
    async def test_new_page(self, remote, profile, settle):
        browser = await Browser.connect(profile, transport=remote)
        page = await browser.new_page("https://example.com/")
        assert page.target_id == "T2"
        assert page.initialized
        assert remote.find("Target.createTarget")[0]["params"] == {"url": "https://example.com/"}
        await settle(browser.event_bus)
        assert browser.frame_manager("T2").frame_tree.main_frame.frame_id == "F-S2"
        await browser.disconnect()

    @pytest.mark.asyncio
    async def test_wait_for_target_sees_url_changes(self, remote, profile, settle):
        browser = await Browser.connect(profile, transport=remote)
        waiting = asyncio.ensure_future(browser.wait_for_target(lambda t: t.url.startswith("https://")))
        await settle(browser.event_bus)
        assert not waiting.done()

        info = remote.target_info("T1", url="https://example.com/")
        remote.receive(remote.event("Target.targetInfoChanged", {"targetInfo": info}))
        target = await waiting
        assert target.target_id == "T1"
        await browser.disconnect()

    @pytest.mark.asyncio
    async def test_wait_for_target_timeout(self, remote, profile):
        browser = await Browser.connect(profile, transport=remote)
        with pytest.raises(BrowserTimeoutError, match="timeout 20ms exceeded"):
            await browser.wait_for_target(lambda t: False, timeout_ms=20)
        assert handler_count(browser.event_bus, TargetAvailableEvent) == 1
        assert handler_count(browser.event_bus, TargetChangedEvent) == 0
        await browser.disconnect()

    @pytest.mark.asyncio
    async def test_wait_for_target_fails_when_connection_drops(self, remote, profile, settle, record):
        browser = await Browser.connect(profile, transport=remote)
        closed = record(browser.event_bus, ConnectionClosedEvent)
        waiting = asyncio.ensure_future(browser.wait_for_target(lambda t: False))
        await settle(browser.event_bus)

        remote.drop(TransportError("socket reset"))
        with pytest.raises(ConnectionClosedError):
            await waiting
        await settle(browser.event_bus)
        assert [event.reason for event in closed] == ["socket reset"]
        assert not browser.is_connected

    @pytest.mark.asyncio
    async def test_gone_target_drops_frame_manager(self, remote, profile, settle, record):
        browser = await Browser.connect(profile, transport=remote)
        await settle(browser.event_bus)
        gone = record(browser.event_bus, TargetGoneEvent)

        remote.receive(remote.detached_event("S1", "T1"))
        await settle(browser.event_bus)
        assert [event.target.target_id for event in gone] == ["T1"]
        assert browser.frame_manager("T1") is None
        assert browser.pages() == []
        await browser.disconnect()


class TestShutdown:
    """disconnect() and close()."""

    @pytest.mark.asyncio
    async def test_disconnect_is_idempotent(self, remote, profile):
        browser = await Browser.connect(profile, transport=remote)
        await asyncio.gather(browser.disconnect(), browser.disconnect())
        await browser.close()
        assert remote.find("Browser.close") == []
        assert remote.close_calls == 1
        assert browser.connection.closed

    @pytest.mark.asyncio
    async def test_close_asks_browser_to_exit(self, remote, profile):
        browser = await Browser.connect(profile, transport=remote)
        await browser.close()
        await browser.close()
        assert len(remote.find("Browser.close")) == 1
        assert not browser.is_connected

    @pytest.mark.asyncio
    async def test_close_after_connection_loss(self, remote, profile):
        browser = await Browser.connect(profile, transport=remote)
        remote.drop()
        await browser.close()
        assert remote.find("Browser.close") == []
