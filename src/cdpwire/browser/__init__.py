"""Browser module for the CDP protocol core."""

from cdpwire.browser.browser import Browser, resolve_websocket_url
from cdpwire.browser.connection import Connection
from cdpwire.browser.frame_manager import FrameManager
from cdpwire.browser.frame_tree import Frame, FrameTree
from cdpwire.browser.profile import ConnectionProfile
from cdpwire.browser.session import CDPSession
from cdpwire.browser.target import Target, TargetState
from cdpwire.browser.target_manager import TargetManager
from cdpwire.browser.transport import PipeTransport, Transport, WebSocketTransport

__all__ = [
    "Browser",
    "CDPSession",
    "Connection",
    "ConnectionProfile",
    "Frame",
    "FrameManager",
    "FrameTree",
    "PipeTransport",
    "Target",
    "TargetManager",
    "TargetState",
    "Transport",
    "WebSocketTransport",
    "resolve_websocket_url",
]
