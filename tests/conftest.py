"""Pytest configuration and fixtures for the cdpwire test suite.

This module provides shared configuration and fixtures used across the entire
test suite. Nothing here needs a browser or the network: the protocol core is
driven through :class:`FakeTransport`, an in-memory transport that records
every frame written to it and lets a test play the remote end.

Configuration:
    - Adds src/ directory to Python path for test imports
    - Async tests are marked with ``@pytest.mark.asyncio``

Scripting the remote end:
    ``transport.script[method] = handler`` where ``handler(frame)`` returns the
    list of frames (events and replies) to deliver, in order. Methods without a
    script get an empty ``{}`` result. Methods listed in
    ``transport.hold_methods`` are recorded but not answered until
    ``transport.release(method)`` is called.
"""

import asyncio
import json
import sys
from collections.abc import Callable
from pathlib import Path
from typing import Any

import pytest
from bubus import BaseEvent, EventBus

# Add the src directory to the path so tests can import cdpwire without installing it
src_path = Path(__file__).parent.parent / "src"
if str(src_path) not in sys.path:
    sys.path.insert(0, str(src_path))

from cdpwire.browser.connection import Connection  # noqa: E402
from cdpwire.browser.transport import Transport  # noqa: E402
from cdpwire.browser.views import TransportError  # noqa: E402

Frame = dict[str, Any]
ScriptHandler = Callable[[Frame], list[Frame]]


class FakeTransport(Transport):
    """In-memory transport standing in for a browser."""

    def __init__(self):
        super().__init__()
        self.sent: list[Frame] = []
        self.script: dict[str, ScriptHandler] = {}
        self.hold_methods: set[str] = set()
        self.held: list[Frame] = []
        self.auto_reply = True
        self.started = False
        self.close_calls = 0

    # -- Transport contract -------------------------------------------------

    def start(self) -> None:
        self.started = True

    async def send(self, message: str) -> None:
        if self._closed:
            raise TransportError("fake transport closed")
        frame = json.loads(message)
        self.sent.append(frame)
        if frame["method"] in self.hold_methods:
            self.held.append(frame)
            return
        self._respond(frame)

    async def close(self) -> None:
        self.close_calls += 1
        self._notify_close(None)

    # -- Test controls ------------------------------------------------------

    def receive(self, message: Frame | str) -> None:
        """Deliver a frame from the 'browser' right now."""
        if self._closed:
            return
        self._deliver(message if isinstance(message, str) else json.dumps(message))

    def release(self, method: str | None = None) -> None:
        frames = [frame for frame in self.held if method is None or frame["method"] == method]
        self.held = [frame for frame in self.held if frame not in frames]
        for frame in frames:
            self._respond(frame)

    def drop(self, error: Exception | None = None) -> None:
        """Simulate the browser going away."""
        self._notify_close(error)

    def sent_methods(self, session_id: str | None = None) -> list[str]:
        return [frame["method"] for frame in self.sent if frame.get("sessionId") == session_id]

    def find(self, method: str, session_id: str | None = None) -> list[Frame]:
        return [frame for frame in self.sent if frame["method"] == method and frame.get("sessionId") == session_id]

    def _respond(self, frame: Frame) -> None:
        handler = self.script.get(frame["method"])
        if handler is None:
            if not self.auto_reply:
                return
            replies = [self.reply(frame)]
        else:
            replies = handler(frame)
        loop = asyncio.get_running_loop()
        for reply in replies:
            loop.call_soon(self.receive, reply)

    # -- Frame builders -----------------------------------------------------

    @staticmethod
    def reply(frame: Frame, result: Any = None) -> Frame:
        message: Frame = {"id": frame["id"], "result": {} if result is None else result}
        if "sessionId" in frame:
            message["sessionId"] = frame["sessionId"]
        return message

    @staticmethod
    def error(frame: Frame, message: str = "Something failed", code: int = -32000) -> Frame:
        reply: Frame = {"id": frame["id"], "error": {"code": code, "message": message}}
        if "sessionId" in frame:
            reply["sessionId"] = frame["sessionId"]
        return reply

    @staticmethod
    def event(method: str, params: Frame | None = None, session_id: str | None = None) -> Frame:
        message: Frame = {"method": method, "params": params or {}}
        if session_id:
            message["sessionId"] = session_id
        return message

    @staticmethod
    def target_info(
        target_id: str,
        type: str = "page",
        url: str = "about:blank",
        attached: bool = True,
        subtype: str | None = None,
    ) -> Frame:
        info: Frame = {
            "targetId": target_id,
            "type": type,
            "title": "",
            "url": url,
            "attached": attached,
            "canAccessOpener": False,
        }
        if subtype:
            info["subtype"] = subtype
        return info

    def attached_event(self, target_id: str, session_id: str, parent_session_id: str | None = None, **info: Any) -> Frame:
        return self.event(
            "Target.attachedToTarget",
            {
                "sessionId": session_id,
                "targetInfo": self.target_info(target_id, **info),
                "waitingForDebugger": True,
            },
            session_id=parent_session_id,
        )

    def detached_event(self, session_id: str, target_id: str, parent_session_id: str | None = None) -> Frame:
        return self.event(
            "Target.detachedFromTarget",
            {"sessionId": session_id, "targetId": target_id},
            session_id=parent_session_id,
        )


@pytest.fixture
def transport() -> FakeTransport:
    return FakeTransport()


@pytest.fixture
def connection(transport: FakeTransport) -> Connection:
    return Connection("ws://fake/devtools/browser", transport, protocol_timeout_ms=5000)


@pytest.fixture
def settle():
    """Let the event loop run until scheduled callbacks, tasks and the given buses are drained.

    Handlers on an event bus may dispatch further events or spawn tasks, so the
    loop and the buses are drained alternately a few times.
    """

    async def _settle(*event_buses: EventBus, rounds: int = 50) -> None:
        for _ in range(3):
            for _ in range(rounds):
                await asyncio.sleep(0)
            for event_bus in event_buses:
                await event_bus.wait_until_idle(timeout=5)
        for _ in range(rounds):
            await asyncio.sleep(0)

    return _settle


@pytest.fixture
def record():
    """Collect the events of the given types dispatched on a bus, in dispatch order."""

    def _record(event_bus: EventBus, *event_types: type[BaseEvent]) -> list[BaseEvent]:
        seen: list[BaseEvent] = []

        def on_event(event: BaseEvent) -> None:
            seen.append(event)

        for event_type in event_types:
            event_bus.on(event_type, on_event)
        return seen

    return _record
