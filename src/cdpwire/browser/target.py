"""Remote target objects and their lifecycle."""

import logging
from enum import Enum
from typing import TYPE_CHECKING

from cdpwire.browser.deferred import Deferred, wait_with_timeout
from cdpwire.browser.views import SessionID, TargetCloseError, TargetID, TargetInfo, TargetType

if TYPE_CHECKING:
    from cdpwire.browser.session import CDPSession

logger = logging.getLogger(__name__)


class TargetState(str, Enum):
    DISCOVERED = 'discovered'
    IGNORED = 'ignored'
    ATTACHING = 'attaching'
    INITIALIZING = 'initializing'
    INITIALIZED = 'initialized'
    DESTROYED = 'destroyed'


_TRANSITIONS: dict[TargetState, frozenset[TargetState]] = {
    TargetState.DISCOVERED: frozenset({TargetState.IGNORED, TargetState.ATTACHING, TargetState.DESTROYED}),
    TargetState.ATTACHING: frozenset({TargetState.INITIALIZING, TargetState.IGNORED, TargetState.DESTROYED}),
    TargetState.INITIALIZING: frozenset({TargetState.INITIALIZED, TargetState.DESTROYED}),
    TargetState.INITIALIZED: frozenset({TargetState.DESTROYED}),
    TargetState.IGNORED: frozenset(),
    TargetState.DESTROYED: frozenset(),
}


class Target:
    """One remote entity (page, worker, browser...) known to the registry.

    A Target keeps its identity across session swaps: when a prerendered or
    background page is activated the registry points the same object at the new
    session instead of creating another one. Targets that are attached without
    a session (the browser itself, silently detached service workers) have
    ``session`` set to None.

    Attributes:
        state: Current :class:`TargetState`; only legal transitions are applied.
    """

    def __init__(
        self,
        target_info: TargetInfo,
        session: 'CDPSession | None' = None,
        parent_session: 'CDPSession | None' = None,
    ):
        self._target_info = target_info
        self._session = session
        self._parent_session = parent_session
        self._initialized: Deferred[bool] = Deferred()
        self._available = False
        self.state = TargetState.DISCOVERED
        if session is not None:
            session._set_target(self)

    def __repr__(self) -> str:
        return f'<Target {self.target_id[:8]}... {self._target_info.type} {self.state.value} {self.url!r}>'

    @property
    def target_id(self) -> TargetID:
        return self._target_info.target_id

    @property
    def target_info(self) -> TargetInfo:
        return self._target_info

    @property
    def type(self) -> TargetType:
        return self._target_info.target_type

    @property
    def url(self) -> str:
        return self._target_info.url

    @property
    def subtype(self) -> str | None:
        return self._target_info.subtype

    @property
    def opener_id(self) -> TargetID | None:
        return self._target_info.opener_id

    @property
    def session(self) -> 'CDPSession | None':
        return self._session

    @property
    def session_id(self) -> SessionID | None:
        return self._session.id if self._session is not None else None

    @property
    def parent_session(self) -> 'CDPSession | None':
        return self._parent_session

    @property
    def initialized(self) -> bool:
        return self._initialized.resolved()

    async def wait_for_initialized(self, timeout_ms: int = 0) -> None:
        """Wait until setup after attach has finished.

        Raises:
            TargetCloseError: The target went away before finishing.
            BrowserTimeoutError: ``timeout_ms`` elapsed first.
        """
        await wait_with_timeout(self._initialized, f'target {self.target_id[:8]}... initialization', timeout_ms)

    def _transition(self, new_state: TargetState) -> None:
        if new_state not in _TRANSITIONS[self.state]:
            raise ValueError(f'Illegal target transition {self.state.value} -> {new_state.value} for {self.target_id}')
        logger.debug(f'Target {self.target_id[:8]}... {self.state.value} -> {new_state.value}')
        self.state = new_state

    def _ignore(self) -> None:
        self._transition(TargetState.IGNORED)

    def _begin_attach(self) -> None:
        self._transition(TargetState.ATTACHING)

    def _begin_initialize(self) -> None:
        self._transition(TargetState.INITIALIZING)

    def _mark_initialized(self) -> None:
        if self.state is TargetState.INITIALIZING:
            self._transition(TargetState.INITIALIZED)
            self._initialized.resolve(True)

    def _initialize_without_session(self) -> None:
        """Shortcut for targets that are usable without their own session."""
        self._begin_attach()
        self._begin_initialize()
        self._mark_initialized()

    def _mark_destroyed(self) -> bool:
        """Move to DESTROYED. Returns False when the target already was."""
        if self.state is TargetState.DESTROYED:
            return False
        self._transition(TargetState.DESTROYED)
        self._initialized.reject(TargetCloseError(f'Target {self.target_id} closed before it was initialized'))
        return True

    def _swap_session(self, session: 'CDPSession') -> 'CDPSession | None':
        previous = self._session
        self._session = session
        session._set_target(self)
        return previous

    def _target_info_changed(self, target_info: TargetInfo) -> None:
        self._target_info = target_info
