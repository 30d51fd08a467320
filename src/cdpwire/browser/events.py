"""Event definitions for connection, session, target and frame lifecycles.

Every component dispatches onto the event bus of the connection it belongs
to; listeners register by class, e.g.
``connection.event_bus.on(TargetAvailableEvent, handler)``. Events carry the
ids needed to tell apart sessions, targets and frame trees sharing one bus.
"""

import os
from typing import Any, Literal

from bubus import BaseEvent
from pydantic import Field

from cdpwire.browser.views import FrameID, SessionID, TargetID, TargetInfo


def _get_timeout(env_var: str, default: float) -> float | None:
    """Read a handler timeout in seconds from the environment, falling back to ``default``."""
    env_value = os.getenv(env_var)
    if env_value:
        try:
            parsed = float(env_value)
            if parsed < 0:
                return default
            return parsed
        except (ValueError, TypeError):
            pass

    return default


# ============================================================================
# Connection Events
# ============================================================================


class ConnectionClosedEvent(BaseEvent[None]):
    """The transport closed; every pending request has been rejected."""

    url: str = ''
    reason: str

    event_timeout: float | None = _get_timeout('TIMEOUT_ConnectionClosedEvent', 30.0)


# ============================================================================
# Session Events
# ============================================================================


class SessionAttachedEvent(BaseEvent[None]):
    """A child session was created under ``parent_session_id`` (None for the connection)."""

    session: Any  # CDPSession
    parent_session_id: SessionID | None = None


class SessionDetachedEvent(BaseEvent[None]):
    """A child session of ``parent_session_id`` went away."""

    session: Any  # CDPSession
    parent_session_id: SessionID | None = None


class SessionReadyEvent(BaseEvent[None]):
    """A child session finished attaching and its target is registered."""

    session: Any  # CDPSession
    parent_session_id: SessionID | None = None


class SessionSwappedEvent(BaseEvent[None]):
    """A child session replaced an earlier one for the same target."""

    old_session_id: SessionID | None = None
    session: Any  # CDPSession
    parent_session_id: SessionID | None = None


class SessionDisconnectedEvent(BaseEvent[None]):
    """Session ``session_id`` was detached or lost its connection."""

    session_id: SessionID
    reason: str


SessionEvent = (
    SessionAttachedEvent | SessionDetachedEvent | SessionReadyEvent | SessionSwappedEvent | SessionDisconnectedEvent
)


# ============================================================================
# Target Events
# ============================================================================


class TargetDiscoveredEvent(BaseEvent[None]):
    """The remote end reported a new target (attached or not)."""

    target_info: TargetInfo


class TargetAvailableEvent(BaseEvent[None]):
    """A target passed the filter and is attached; fires once per target."""

    target: Any  # Target


class TargetChangedEvent(BaseEvent[None]):
    """An initialized target changed its URL."""

    target: Any  # Target
    previous_url: str
    was_initialized: bool = True


class TargetSwappedEvent(BaseEvent[None]):
    """A target is now served by a different session (activation/prerender)."""

    target: Any  # Target
    old_session_id: SessionID | None = None
    new_session_id: SessionID | None = None

    event_timeout: float | None = _get_timeout('TIMEOUT_TargetSwappedEvent', 60.0)


class TargetGoneEvent(BaseEvent[None]):
    """An exposed target was detached or destroyed; fires once per target."""

    target: Any  # Target


TargetEvent = TargetDiscoveredEvent | TargetAvailableEvent | TargetChangedEvent | TargetSwappedEvent | TargetGoneEvent


# ============================================================================
# Frame Events
# ============================================================================


class FrameAttachedEvent(BaseEvent[None]):
    frame: Any  # Frame
    frame_id: FrameID
    parent_id: FrameID | None = None
    target_id: TargetID | None = None


class FrameDetachedEvent(BaseEvent[None]):
    frame_id: FrameID
    parent_id: FrameID | None = None
    reason: Literal['remove', 'swap', 'disconnect'] = 'remove'
    target_id: TargetID | None = None


class FrameNavigatedEvent(BaseEvent[None]):
    frame_id: FrameID
    url: str
    same_document: bool = False
    target_id: TargetID | None = None


class FrameLoadingStateEvent(BaseEvent[None]):
    frame_id: FrameID
    is_loading: bool
    target_id: TargetID | None = None


class FrameLifecycleEvent(BaseEvent[None]):
    frame_id: FrameID
    name: str
    loader_id: str | None = None
    lifecycle_events: frozenset[str] = Field(default_factory=frozenset)
    target_id: TargetID | None = None


FrameEvent = FrameAttachedEvent | FrameDetachedEvent | FrameNavigatedEvent | FrameLoadingStateEvent | FrameLifecycleEvent
