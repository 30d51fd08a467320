"""cdpwire - an asyncio client core for the Chrome DevTools Protocol."""

__version__ = "0.1.0"

from cdpwire.browser import (
    Browser,
    CDPSession,
    Connection,
    ConnectionProfile,
    Frame,
    FrameManager,
    FrameTree,
    PipeTransport,
    Target,
    TargetManager,
    TargetState,
    Transport,
    WebSocketTransport,
)
from cdpwire.browser.deferred import Deferred, race, wait_for_event, wait_with_timeout
from cdpwire.browser.views import (
    BrowserTimeoutError,
    CDPWireError,
    ConnectionClosedError,
    ProtocolError,
    TargetCloseError,
    TargetInfo,
    TargetType,
    TransportError,
)
from cdpwire.config import CONFIG
from cdpwire.logging_config import setup_logging

__all__ = [
    "Browser",
    "BrowserTimeoutError",
    "CDPSession",
    "CDPWireError",
    "CONFIG",
    "Connection",
    "ConnectionClosedError",
    "ConnectionProfile",
    "Deferred",
    "Frame",
    "FrameManager",
    "FrameTree",
    "PipeTransport",
    "ProtocolError",
    "Target",
    "TargetCloseError",
    "TargetInfo",
    "TargetManager",
    "TargetState",
    "TargetType",
    "Transport",
    "TransportError",
    "WebSocketTransport",
    "race",
    "setup_logging",
    "wait_for_event",
    "wait_with_timeout",
]
