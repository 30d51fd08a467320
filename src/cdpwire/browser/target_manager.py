"""Target registry driven by the protocol's auto-attach mechanism.

The registry keeps four views of the remote world:

- discovered targets (``Target.targetCreated`` .. ``Target.targetDestroyed``),
  independent of any filter;
- attached targets by target id, one :class:`Target` object per id;
- attached targets by session id, several sessions may point at one target
  while a swap is in progress;
- ignored target ids (filtered out and silently detached).

All state changes happen inline in the event handlers, which run on the
connection's message pump. Work that has to wait on the wire (setup commands
after attach, silent detach) is spawned as separate tasks so the pump is
never blocked. Announcements are dispatched on the connection's event bus.
"""

import asyncio
import functools
import logging
from collections.abc import Callable
from typing import Any

from bubus import EventBus

from cdpwire.browser.connection import Connection
from cdpwire.browser.deferred import Deferred, wait_with_timeout
from cdpwire.browser.emitter import BackgroundTasks, Listener, remove_handler
from cdpwire.browser.events import (
    ConnectionClosedEvent,
    SessionDisconnectedEvent,
    SessionReadyEvent,
    SessionSwappedEvent,
    TargetAvailableEvent,
    TargetChangedEvent,
    TargetDiscoveredEvent,
    TargetGoneEvent,
    TargetSwappedEvent,
)
from cdpwire.browser.session import CDPSession
from cdpwire.browser.target import Target, TargetState
from cdpwire.browser.views import ConnectionClosedError, SessionID, TargetID, TargetInfo, TargetType

logger = logging.getLogger(__name__)

TargetFilter = Callable[[TargetInfo], bool]
ExposurePredicate = Callable[[Target], bool]


def is_target_exposed(target: Target) -> bool:
    """Default policy: tabs and subtype variants (prerender...) stay internal."""
    return target.type is not TargetType.TAB and not target.subtype


def is_page_target_becoming_primary(target: Target, new_info: TargetInfo) -> bool:
    return bool(target.subtype) and not new_info.subtype


class TargetManager:
    """Tracks targets from discovery to destruction and announces them.

    Dispatches :class:`TargetDiscoveredEvent`, :class:`TargetAvailableEvent`,
    :class:`TargetChangedEvent`, :class:`TargetSwappedEvent` and
    :class:`TargetGoneEvent`. "Available" fires at most once per Target
    object and "gone" fires only for targets that were announced as available.

    Args:
        connection: The root connection; listeners are attached immediately.
        target_filter: Targets for which this returns False are silently
            detached and ignored.
        is_exposed: Decides whether a target is announced to callers.
        wait_for_initial_targets: When True, :meth:`initialize` waits until
            every target present at startup has finished its setup.
        use_tab_target: Attach to tab targets and reach pages through them.

    Example:
        >>> manager = TargetManager(connection)
        >>> manager.event_bus.on(TargetAvailableEvent, lambda event: print(event.target))
        >>> await manager.initialize()
    """

    def __init__(
        self,
        connection: Connection,
        target_filter: TargetFilter | None = None,
        is_exposed: ExposurePredicate | None = None,
        wait_for_initial_targets: bool = True,
        use_tab_target: bool = False,
    ):
        self._connection = connection
        self.event_bus: EventBus = connection.event_bus
        self._background_tasks = BackgroundTasks()
        self._target_filter = target_filter
        self._is_exposed = is_exposed or is_target_exposed
        self._wait_for_initial_targets = wait_for_initial_targets
        self._tab_mode = use_tab_target
        self._discovery_filter: list[dict[str, Any]] = [{}] if use_tab_target else [{'type': 'tab', 'exclude': True}, {}]

        self._discovered: dict[TargetID, TargetInfo] = {}
        self._attached_by_target_id: dict[TargetID, Target] = {}
        self._attached_by_session_id: dict[SessionID, Target] = {}
        self._ignored: dict[TargetID, Target] = {}
        self._destroyed_ids: set[TargetID] = set()

        self._targets_ids_for_init: set[TargetID] = set()
        self._initialize_deferred: Deferred[None] = Deferred()
        # emitter session id (None for the connection) -> (emitter, attached, detached)
        self._attachment_listeners: dict[SessionID | None, tuple[Connection | CDPSession, Listener, Listener]] = {}

        connection.on('Target.targetCreated', self._on_target_created)
        connection.on('Target.targetDestroyed', self._on_target_destroyed)
        connection.on('Target.targetInfoChanged', self._on_target_info_changed)
        self.event_bus.on(ConnectionClosedEvent, self._on_connection_closed)
        self.event_bus.on(SessionDisconnectedEvent, self._on_session_disconnected)
        self._setup_attachment_listeners(connection)

    @property
    def connection(self) -> Connection:
        return self._connection

    @property
    def discovery_filter(self) -> list[dict[str, Any]]:
        return list(self._discovery_filter)

    async def initialize(self, timeout_ms: int = 0) -> None:
        """Turn on discovery and auto-attach, then wait for the initial targets.

        Resolves once every target that was discovered (and passed the filter)
        when discovery was enabled has completed its attach handshake.

        Raises:
            ConnectionClosedError: The connection closed first.
            BrowserTimeoutError: ``timeout_ms`` elapsed first.
        """
        await self._connection.send('Target.setDiscoverTargets', {'discover': True, 'filter': self._discovery_filter})
        self._store_existing_targets_for_init()

        auto_attach_filter = self._discovery_filter
        if self._tab_mode:
            auto_attach_filter = [{'type': 'page', 'exclude': True}, *self._discovery_filter]
        await self._connection.send(
            'Target.setAutoAttach',
            {
                'waitForDebuggerOnStart': True,
                'flatten': True,
                'autoAttach': True,
                'filter': auto_attach_filter,
            },
        )
        self._finish_initialization_if_ready()
        await wait_with_timeout(self._initialize_deferred, 'initial targets', timeout_ms)

    def dispose(self) -> None:
        self._connection.off('Target.targetCreated', self._on_target_created)
        self._connection.off('Target.targetDestroyed', self._on_target_destroyed)
        self._connection.off('Target.targetInfoChanged', self._on_target_info_changed)
        remove_handler(self.event_bus, ConnectionClosedEvent, self._on_connection_closed)
        remove_handler(self.event_bus, SessionDisconnectedEvent, self._on_session_disconnected)
        for key in list(self._attachment_listeners):
            self._remove_attachment_listeners(key)
        self._background_tasks.cancel()

    # ------------------------------------------------------------------
    # Queries
    # ------------------------------------------------------------------

    def available_targets(self) -> dict[TargetID, Target]:
        return {target_id: t for target_id, t in self._attached_by_target_id.items() if t._available}

    def attached_targets(self) -> dict[TargetID, Target]:
        return dict(self._attached_by_target_id)

    def discovered_targets(self) -> dict[TargetID, TargetInfo]:
        return dict(self._discovered)

    def get_target(self, target_id: TargetID) -> Target | None:
        return self._attached_by_target_id.get(target_id)

    def target_for_session(self, session_id: SessionID) -> Target | None:
        return self._attached_by_session_id.get(session_id)

    def is_ignored(self, target_id: TargetID) -> bool:
        return target_id in self._ignored

    def pending_initial_targets(self) -> set[TargetID]:
        return set(self._targets_ids_for_init)

    # ------------------------------------------------------------------
    # Attachment listeners
    # ------------------------------------------------------------------

    def _setup_attachment_listeners(self, emitter: Connection | CDPSession) -> None:
        key = _emitter_id(emitter)
        if key in self._attachment_listeners:
            return
        attached = functools.partial(self._on_attached_to_target, emitter)
        detached = functools.partial(self._on_detached_from_target, emitter)
        self._attachment_listeners[key] = (emitter, attached, detached)
        emitter.on('Target.attachedToTarget', attached)
        emitter.on('Target.detachedFromTarget', detached)

    def _remove_attachment_listeners(self, key: SessionID | None) -> None:
        listeners = self._attachment_listeners.pop(key, None)
        if listeners is None:
            return
        emitter, attached, detached = listeners
        emitter.off('Target.attachedToTarget', attached)
        emitter.off('Target.detachedFromTarget', detached)

    # ------------------------------------------------------------------
    # Protocol event handlers
    # ------------------------------------------------------------------

    def _on_target_created(self, params: dict[str, Any]) -> None:
        target_info = TargetInfo.model_validate(params['targetInfo'])
        self._discovered[target_info.target_id] = target_info
        self.event_bus.dispatch(TargetDiscoveredEvent(target_info=target_info))

        # The connection itself is the browser target's session.
        if target_info.target_type is TargetType.BROWSER and target_info.attached:
            if target_info.target_id in self._attached_by_target_id:
                return
            target = Target(target_info)
            target._initialize_without_session()
            self._attached_by_target_id[target_info.target_id] = target

    def _on_target_destroyed(self, params: dict[str, Any]) -> None:
        target_id = params['targetId']
        self._discovered.pop(target_id, None)
        self._destroyed_ids.add(target_id)
        self._finish_initialization_if_ready(target_id)

        target = self._attached_by_target_id.pop(target_id, None)
        if target is None:
            return
        for session_id, attached in list(self._attached_by_session_id.items()):
            if attached is target:
                del self._attached_by_session_id[session_id]
        self._announce_gone(target)

    def _on_target_info_changed(self, params: dict[str, Any]) -> None:
        target_info = TargetInfo.model_validate(params['targetInfo'])
        target_id = target_info.target_id
        self._discovered[target_id] = target_info
        if target_id in self._ignored or not target_info.attached:
            return
        target = self._attached_by_target_id.get(target_id)
        if target is None:
            return

        previous_url = target.url
        was_initialized = target.initialized
        becoming_primary = is_page_target_becoming_primary(target, target_info)
        target._target_info_changed(target_info)

        if becoming_primary:
            session = target.session
            if session is None:
                logger.warning(f'Target {target_id[:8]}... became primary without a session')
            else:
                logger.debug(f'Target {target_id[:8]}... became primary, swapping in session {session.id[:8]}...')
                parent = session.parent_session()
                self.event_bus.dispatch(TargetSwappedEvent(target=target, old_session_id=None, new_session_id=session.id))
                self.event_bus.dispatch(
                    SessionSwappedEvent(old_session_id=None, session=session, parent_session_id=_emitter_id(parent))
                )
            self._announce_available(target)

        if was_initialized and previous_url != target.url:
            self.event_bus.dispatch(
                TargetChangedEvent(target=target, previous_url=previous_url, was_initialized=was_initialized)
            )

    def _on_attached_to_target(self, parent: Connection | CDPSession, params: dict[str, Any]) -> None:
        target_info = TargetInfo.model_validate(params['targetInfo'])
        target_id = target_info.target_id
        session = self._connection.session(params['sessionId'])
        if session is None:
            logger.warning(f'Session {params["sessionId"][:8]}... for target {target_id[:8]}... was not created')
            return
        if not self._connection.is_auto_attached(target_id):
            return

        if target_id in self._destroyed_ids:
            logger.debug(f'Target {target_id[:8]}... was already destroyed, detaching')
            self._silent_detach(parent, session)
            return

        if target_info.target_type is TargetType.SERVICE_WORKER:
            # Detach so the worker can be shut down; it stays known without a session.
            self._finish_initialization_if_ready(target_id)
            self._silent_detach(parent, session)
            if target_id in self._attached_by_target_id:
                return
            target = Target(target_info)
            target._initialize_without_session()
            self._attached_by_target_id[target_id] = target
            self._announce_available(target)
            return

        existing = self._attached_by_target_id.get(target_id)
        if existing is None and self._target_filter is not None and not self._target_filter(target_info):
            ignored = Target(target_info)
            ignored._ignore()
            self._ignored[target_id] = ignored
            self._finish_initialization_if_ready(target_id)
            self._silent_detach(parent, session)
            return

        parent_session = parent if isinstance(parent, CDPSession) else None
        if existing is not None:
            target = existing
            old_session = target._swap_session(session)
        else:
            target = Target(target_info, session, parent_session)
            target._begin_attach()
            self._attached_by_target_id[target_id] = target
            old_session = None
        self._attached_by_session_id[session.id] = target

        self._setup_attachment_listeners(session)
        self.event_bus.dispatch(SessionReadyEvent(session=session, parent_session_id=_emitter_id(parent)))

        if existing is not None:
            if old_session is not session:
                old_session_id = old_session.id if old_session is not None else None
                logger.debug(
                    f'Target {target_id[:8]}... re-attached: session {old_session_id} -> {session.id[:8]}...'
                )
                self.event_bus.dispatch(
                    TargetSwappedEvent(target=target, old_session_id=old_session_id, new_session_id=session.id)
                )
                self.event_bus.dispatch(
                    SessionSwappedEvent(old_session_id=old_session_id, session=session, parent_session_id=_emitter_id(parent))
                )
        else:
            target._begin_initialize()
            self._announce_available(target)

        self._background_tasks.spawn(self._setup_session(target, session), name=f'setup-session:{session.id[:8]}')

    def _on_detached_from_target(self, parent: Connection | CDPSession, params: dict[str, Any]) -> None:
        session_id = params.get('sessionId')
        target = self._attached_by_session_id.pop(session_id, None) if session_id else None
        if target is None:
            return
        if any(other is target for other in self._attached_by_session_id.values()):
            logger.debug(f'Session {session_id[:8]}... detached, target {target.target_id[:8]}... still attached elsewhere')
            return
        if self._attached_by_target_id.get(target.target_id) is target:
            del self._attached_by_target_id[target.target_id]
        self._announce_gone(target)

    def _on_connection_closed(self, event: ConnectionClosedEvent) -> None:
        self._initialize_deferred.reject(
            ConnectionClosedError(f'Connection closed before initial targets attached: {event.reason}')
        )
        targets = list(self._attached_by_target_id.values())
        self._attached_by_target_id.clear()
        self._attached_by_session_id.clear()
        for target in targets:
            self._announce_gone(target)

    def _on_session_disconnected(self, event: SessionDisconnectedEvent) -> None:
        self._remove_attachment_listeners(event.session_id)

    # ------------------------------------------------------------------
    # Helpers
    # ------------------------------------------------------------------

    def _announce_available(self, target: Target) -> None:
        if target._available or not self._is_exposed(target):
            return
        target._available = True
        self.event_bus.dispatch(TargetAvailableEvent(target=target))

    def _announce_gone(self, target: Target) -> None:
        if target.state is TargetState.DESTROYED:
            return
        target._mark_destroyed()
        if target._available:
            self.event_bus.dispatch(TargetGoneEvent(target=target))

    async def _setup_session(self, target: Target, session: CDPSession) -> None:
        results = await asyncio.gather(
            session.send(
                'Target.setAutoAttach',
                {
                    'waitForDebuggerOnStart': True,
                    'flatten': True,
                    'autoAttach': True,
                    'filter': self._discovery_filter,
                },
            ),
            session.send('Runtime.runIfWaitingForDebugger'),
            return_exceptions=True,
        )
        for result in results:
            if isinstance(result, Exception):
                logger.debug(f'Setup of session {session.id[:8]}... failed: {type(result).__name__}: {result}')
        if target.state is TargetState.INITIALIZING:
            target._mark_initialized()
        self._finish_initialization_if_ready(target.target_id)

    def _silent_detach(self, parent: Connection | CDPSession, session: CDPSession) -> None:
        self._background_tasks.spawn(self._detach_quietly(parent, session), name=f'silent-detach:{session.id[:8]}')

    async def _detach_quietly(self, parent: Connection | CDPSession, session: CDPSession) -> None:
        # Errors are expected here (the target may already be gone) and never surface.
        try:
            await session.send('Runtime.runIfWaitingForDebugger')
        except Exception as e:
            logger.debug(f'runIfWaitingForDebugger during silent detach failed: {e}')
        try:
            await parent.send('Target.detachFromTarget', {'sessionId': session.id})
        except Exception as e:
            logger.debug(f'Silent detach of session {session.id[:8]}... failed: {e}')

    def _store_existing_targets_for_init(self) -> None:
        if not self._wait_for_initial_targets:
            return
        for target_id, target_info in self._discovered.items():
            if target_info.target_type is TargetType.BROWSER:
                continue
            if self._target_filter is None or self._target_filter(target_info):
                self._targets_ids_for_init.add(target_id)

    def _finish_initialization_if_ready(self, target_id: TargetID | None = None) -> None:
        if target_id is not None:
            self._targets_ids_for_init.discard(target_id)
        if not self._targets_ids_for_init:
            self._initialize_deferred.resolve(None)


def _emitter_id(emitter: Connection | CDPSession | None) -> SessionID | None:
    return emitter.id if isinstance(emitter, CDPSession) else None
