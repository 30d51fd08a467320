"""Logical protocol channel bound to one attached target."""

import logging
import weakref
from typing import TYPE_CHECKING, Any

from bubus import EventBus

from cdpwire.browser.callbacks import CallbackRegistry
from cdpwire.browser.emitter import EventEmitter
from cdpwire.browser.events import SessionDisconnectedEvent
from cdpwire.browser.views import ConnectionClosedError, SessionID, TargetCloseError

if TYPE_CHECKING:
    from cdpwire.browser.connection import Connection
    from cdpwire.browser.target import Target

logger = logging.getLogger(__name__)


class CDPSession(EventEmitter):
    """A session multiplexed over its connection's transport.

    Commands are stamped with this session's id and written through the
    owning connection; events carrying the id are re-emitted here under their
    method name. Lifecycle events go to the connection's :attr:`event_bus`.
    A nested session keeps a weak back-reference to the session it was
    attached under, it never owns it.

    Sessions are created by the connection when ``Target.attachedToTarget``
    arrives and are closed when the matching ``Target.detachedFromTarget`` (or
    the connection's own close) is processed. After that every ``send`` fails
    immediately with :class:`TargetCloseError` without touching the wire.

    Example:
        >>> session = connection.session(session_id)
        >>> session.on('Page.frameNavigated', on_navigated)
        >>> await session.send('Page.enable')
    """

    def __init__(
        self,
        connection: 'Connection',
        target_type: str,
        session_id: SessionID,
        parent: 'CDPSession | None' = None,
    ):
        super().__init__()
        self._connection: Connection | None = connection
        self._target_type = target_type
        self._session_id = session_id
        self._parent = weakref.ref(parent) if parent is not None else None
        self._callbacks = CallbackRegistry(connection._ids)
        self._event_bus = connection.event_bus
        self._target: Target | None = None
        self._detach_requested = False

    def __repr__(self) -> str:
        state = 'detached' if self.detached else 'attached'
        return f'<CDPSession {self._session_id[:8]}... {self._target_type} {state}>'

    @property
    def id(self) -> SessionID:
        return self._session_id

    @property
    def target_type(self) -> str:
        return self._target_type

    @property
    def connection(self) -> 'Connection | None':
        """The owning connection, or None once this session is closed."""
        return self._connection

    @property
    def event_bus(self) -> EventBus:
        return self._event_bus

    @property
    def detached(self) -> bool:
        return self._connection is None

    @property
    def target(self) -> 'Target | None':
        return self._target

    def _set_target(self, target: 'Target') -> None:
        self._target = target

    def parent_session(self) -> 'CDPSession | None':
        return self._parent() if self._parent is not None else None

    async def send(self, method: str, params: dict[str, Any] | None = None, timeout_ms: int | None = None) -> Any:
        """Send a command to this session's target.

        Raises:
            TargetCloseError: The session is already detached.
            ProtocolError: The remote end answered with an error.
            BrowserTimeoutError: No answer within the protocol timeout.
        """
        if self._connection is None:
            raise TargetCloseError(
                f'Protocol error ({method}): Session closed. Most likely the {self._target_type} has been closed.',
                method=method,
            )
        return await self._connection._raw_send(self._callbacks, method, params, self._session_id, timeout_ms)

    async def detach(self) -> None:
        """Ask the browser to detach this session. Repeated calls are no-ops."""
        if self._connection is None or self._detach_requested:
            return
        self._detach_requested = True
        try:
            await self._connection.send('Target.detachFromTarget', {'sessionId': self._session_id})
        except Exception:
            self._detach_requested = False
            raise

    def _on_message(self, message: dict[str, Any]) -> None:
        if 'id' in message:
            if 'error' in message:
                self._callbacks.reject(message['id'], message['error'])
            else:
                self._callbacks.resolve(message['id'], message.get('result'))
            return
        self.emit(message['method'], message.get('params') or {})

    def _on_closed(self, reason: str, connection_lost: bool = False) -> None:
        if self._connection is None:
            return
        self._connection = None
        if connection_lost:
            self._callbacks.reject_all(lambda label: ConnectionClosedError(f'Protocol error ({label}): Connection closed.'))
        else:
            self._callbacks.reject_all(
                lambda label: TargetCloseError(f'Protocol error ({label}): Target closed.', method=label)
            )
        logger.debug(f'Session {self._session_id[:8]}... ({self._target_type}) closed: {reason}')
        self._event_bus.dispatch(SessionDisconnectedEvent(session_id=self._session_id, reason=reason))
