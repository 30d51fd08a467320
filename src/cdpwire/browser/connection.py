"""Connection multiplexer: one transport, many logical sessions.

The connection is the message pump. Every frame read from the transport goes
through :meth:`Connection._on_message` in arrival order, where it either
settles a pending request or is routed (by ``sessionId``) to the session that
owns it. Sessions are created and dropped here, synchronously, when the
``Target.attachedToTarget`` / ``Target.detachedFromTarget`` events pass through,
so a session is always registered before any frame addressed to it arrives.
"""

import asyncio
import itertools
import json
import logging
from typing import Any

from bubus import EventBus

from cdpwire.browser.callbacks import CallbackRegistry
from cdpwire.browser.deferred import Deferred
from cdpwire.browser.emitter import EventEmitter
from cdpwire.browser.events import ConnectionClosedEvent, SessionAttachedEvent, SessionDetachedEvent
from cdpwire.browser.session import CDPSession
from cdpwire.browser.transport import Transport
from cdpwire.browser.views import (
    CDPWireError,
    ConnectionClosedError,
    SessionID,
    TargetID,
    TargetInfo,
    TransportError,
)

logger = logging.getLogger(__name__)
wire_logger = logging.getLogger('cdpwire.wire')

DEFAULT_PROTOCOL_TIMEOUT_MS = 180_000


class Connection(EventEmitter):
    """The browser-level (root) session over a single transport.

    Protocol events without a ``sessionId`` are emitted on the connection under
    their method name. Typed lifecycle events (:class:`SessionAttachedEvent`,
    :class:`ConnectionClosedEvent`...) are dispatched on :attr:`event_bus`,
    which every session, registry and frame tree of this connection shares.

    Args:
        url: Endpoint the transport is connected to (informational).
        transport: An unstarted transport; the connection takes ownership.
        slow_mo_ms: Delay applied before every outgoing frame.
        protocol_timeout_ms: Default bound for every request, 0 disables.
        event_bus: Bus for lifecycle events; a private one is created by default.

    Example:
        >>> transport = await WebSocketTransport.create(ws_url)
        >>> connection = Connection(ws_url, transport)
        >>> version = await connection.send('Browser.getVersion')
    """

    def __init__(
        self,
        url: str,
        transport: Transport,
        slow_mo_ms: int = 0,
        protocol_timeout_ms: int = DEFAULT_PROTOCOL_TIMEOUT_MS,
        event_bus: EventBus | None = None,
    ):
        super().__init__()
        self._url = url
        self._transport = transport
        self._slow_mo_ms = slow_mo_ms
        self._protocol_timeout_ms = protocol_timeout_ms
        self._ids = itertools.count(1)
        self._callbacks = CallbackRegistry(self._ids)
        self._sessions: dict[SessionID, CDPSession] = {}
        self._manually_attached: set[TargetID] = set()
        self._closed = False
        self._closed_deferred: Deferred[None] = Deferred()
        self.event_bus = event_bus or EventBus()

        self._transport.on_message = self._on_message
        self._transport.on_close = self._on_close
        self._transport.start()

    def __repr__(self) -> str:
        state = 'closed' if self._closed else 'open'
        return f'<Connection {self._url} {state} sessions={len(self._sessions)}>'

    @property
    def url(self) -> str:
        return self._url

    @property
    def closed(self) -> bool:
        return self._closed

    @property
    def protocol_timeout_ms(self) -> int:
        return self._protocol_timeout_ms

    @property
    def pending_count(self) -> int:
        return len(self._callbacks)

    async def wait_closed(self) -> None:
        await self._closed_deferred.value_or_throw()

    # ------------------------------------------------------------------
    # Sessions
    # ------------------------------------------------------------------

    def session(self, session_id: SessionID) -> CDPSession | None:
        return self._sessions.get(session_id)

    def sessions(self) -> list[CDPSession]:
        return list(self._sessions.values())

    def register_session(self, session: CDPSession) -> None:
        if session.connection is not self:
            raise CDPWireError(f'Session {session.id} belongs to a different connection')
        self._sessions[session.id] = session

    def unregister_session(self, session_id: SessionID, reason: str = 'Target detached') -> CDPSession | None:
        """Drop a session, rejecting its pending requests. Unknown ids are a no-op."""
        session = self._sessions.pop(session_id, None)
        if session is None:
            return None
        session._on_closed(reason)
        parent = session.parent_session()
        self.event_bus.dispatch(
            SessionDetachedEvent(session=session, parent_session_id=parent.id if parent is not None else None)
        )
        return session

    def is_auto_attached(self, target_id: TargetID) -> bool:
        return target_id not in self._manually_attached

    async def create_session(self, target_info: TargetInfo) -> CDPSession:
        """Attach explicitly to a target and return its new session.

        Sessions created this way are not picked up by the target registry.
        """
        self._manually_attached.add(target_info.target_id)
        try:
            result = await self.send('Target.attachToTarget', {'targetId': target_info.target_id, 'flatten': True})
        finally:
            self._manually_attached.discard(target_info.target_id)
        session = self._sessions.get(result['sessionId'])
        if session is None:
            raise CDPWireError(f'Session {result["sessionId"]} was not created')
        return session

    # ------------------------------------------------------------------
    # Commands
    # ------------------------------------------------------------------

    async def send(self, method: str, params: dict[str, Any] | None = None, timeout_ms: int | None = None) -> Any:
        """Send a command on the root session and wait for its result.

        Raises:
            ConnectionClosedError: The connection is (or becomes) closed.
            ProtocolError: The remote end answered with an error.
            BrowserTimeoutError: No answer within the protocol timeout.
        """
        if self._closed:
            raise ConnectionClosedError(f'Protocol error ({method}): Connection closed.')
        return await self._raw_send(self._callbacks, method, params, None, timeout_ms)

    async def _raw_send(
        self,
        callbacks: CallbackRegistry,
        method: str,
        params: dict[str, Any] | None,
        session_id: SessionID | None,
        timeout_ms: int | None,
    ) -> Any:
        async def write(message_id: int) -> None:
            message: dict[str, Any] = {'id': message_id, 'method': method, 'params': params or {}}
            if session_id:
                message['sessionId'] = session_id
            text = json.dumps(message)
            if self._slow_mo_ms:
                await asyncio.sleep(self._slow_mo_ms / 1000)
            if self._closed:
                raise ConnectionClosedError(f'Protocol error ({method}): Connection closed.')
            wire_logger.debug(f'SEND ► {text}')
            await self._transport.send(text)

        timeout = self._protocol_timeout_ms if timeout_ms is None else timeout_ms
        return await callbacks.create(method, timeout, write)

    # ------------------------------------------------------------------
    # Message pump
    # ------------------------------------------------------------------

    def _on_message(self, raw: str) -> None:
        wire_logger.debug(f'◀ RECV {raw}')
        if self._closed:
            return
        try:
            message = json.loads(raw)
        except json.JSONDecodeError as e:
            self._fail(TransportError(f'Malformed protocol frame: {e}'))
            return
        problem = _malformed_reason(message)
        if problem is not None:
            self._fail(TransportError(f'Malformed protocol frame ({problem}): {raw[:200]}'))
            return

        method = message.get('method')
        session_id = message.get('sessionId')
        params = message.get('params') or {}

        if method == 'Target.attachedToTarget':
            self._on_attached_to_target(session_id, params)
        elif method == 'Target.detachedFromTarget':
            self.unregister_session(params.get('sessionId', ''), 'Target detached')

        if session_id:
            session = self._sessions.get(session_id)
            if session is None:
                logger.debug(f'Dropping message for unknown session {session_id[:8]}...: {method or message.get("id")}')
                return
            session._on_message(message)
        elif 'id' in message:
            if 'error' in message:
                self._callbacks.reject(message['id'], message['error'])
            else:
                self._callbacks.resolve(message['id'], message.get('result'))
        else:
            self.emit(method, params)

    def _on_attached_to_target(self, parent_session_id: SessionID | None, params: dict[str, Any]) -> None:
        parent: CDPSession | None = None
        if parent_session_id:
            parent = self._sessions.get(parent_session_id)
            if parent is None:
                logger.debug(f'Attach under unknown session {parent_session_id[:8]}... ignored')
                return
        if params['sessionId'] in self._sessions:
            logger.debug(f'Duplicate attach for session {params["sessionId"][:8]}... ignored')
            return
        target_type = params['targetInfo'].get('type', 'other')
        session = CDPSession(self, target_type, params['sessionId'], parent=parent)
        self.register_session(session)
        self.event_bus.dispatch(SessionAttachedEvent(session=session, parent_session_id=parent_session_id))

    def _fail(self, error: TransportError) -> None:
        logger.error(f'Closing connection to {self._url}: {error}')
        self._on_close(error)
        self._spawn(self._transport.close(), name='cdpwire-transport-close')

    def _on_close(self, error: Exception | None = None) -> None:
        if self._closed:
            return
        self._closed = True
        reason = str(error) if error is not None else 'Connection closed'
        logger.debug(f'Connection to {self._url} closed: {reason}')

        self._callbacks.reject_all(lambda label: ConnectionClosedError(f'Protocol error ({label}): Connection closed.'))
        sessions = list(self._sessions.values())
        self._sessions.clear()
        for session in sessions:
            session._on_closed(reason, connection_lost=True)

        self._closed_deferred.resolve(None)
        self.event_bus.dispatch(ConnectionClosedEvent(url=self._url, reason=reason))

    async def close(self) -> None:
        """Tear down all sessions and close the transport. Idempotent."""
        self._on_close(None)
        try:
            await self._transport.close()
        except TransportError as e:
            logger.debug(f'Ignoring transport error during close: {e}')


def _malformed_reason(message: Any) -> str | None:
    """Describe why ``message`` cannot be routed, or return None if it can."""
    if not isinstance(message, dict):
        return 'not an object'
    if 'id' not in message and 'method' not in message:
        return 'neither id nor method'
    if 'id' in message and (not isinstance(message['id'], int) or isinstance(message['id'], bool)):
        return 'id is not an integer'
    if 'method' in message and not isinstance(message['method'], str):
        return 'method is not a string'
    session_id = message.get('sessionId')
    if session_id is not None and not isinstance(session_id, str):
        return 'sessionId is not a string'
    params = message.get('params')
    if params is not None and not isinstance(params, dict):
        return 'params is not an object'
    if message.get('method') == 'Target.attachedToTarget':
        params = params or {}
        if not isinstance(params.get('sessionId'), str) or not params['sessionId']:
            return 'attachedToTarget without sessionId'
        if not isinstance(params.get('targetInfo'), dict):
            return 'attachedToTarget without targetInfo'
    return None
