"""Connect/disconnect orchestration on top of the protocol core.

``Browser`` wires a transport, a :class:`Connection` and a
:class:`TargetManager` together, and keeps one :class:`FrameManager` per
available page target.
"""

import asyncio
import logging
from collections.abc import Callable
from typing import Any

import httpx
from bubus import EventBus

from cdpwire.browser.connection import Connection
from cdpwire.browser.deferred import Deferred, race
from cdpwire.browser.emitter import BackgroundTasks, remove_handler
from cdpwire.browser.events import (
    ConnectionClosedEvent,
    TargetAvailableEvent,
    TargetChangedEvent,
    TargetGoneEvent,
    TargetSwappedEvent,
)
from cdpwire.browser.frame_manager import FrameManager
from cdpwire.browser.profile import ConnectionProfile
from cdpwire.browser.target import Target
from cdpwire.browser.target_manager import TargetManager
from cdpwire.browser.transport import Transport, WebSocketTransport
from cdpwire.browser.views import CDPWireError, ConnectionClosedError, TargetID, TargetType, TransportError

logger = logging.getLogger(__name__)


async def resolve_websocket_url(cdp_url: str, client: httpx.AsyncClient | None = None) -> str:
    """Return the browser WebSocket endpoint for ``cdp_url``.

    ``ws://`` and ``wss://`` URLs are returned unchanged. HTTP URLs are resolved
    through the DevTools ``/json/version`` endpoint.

    Raises:
        TransportError: The endpoint could not be fetched or has no
            ``webSocketDebuggerUrl``.
    """
    if cdp_url.startswith(('ws://', 'wss://')):
        return cdp_url

    url = cdp_url.rstrip('/')
    if not url.endswith('/json/version'):
        url = url + '/json/version'

    try:
        if client is None:
            async with httpx.AsyncClient(timeout=10.0) as own_client:
                response = await own_client.get(url)
        else:
            response = await client.get(url)
        response.raise_for_status()
        return response.json()['webSocketDebuggerUrl']
    except (httpx.HTTPError, KeyError, ValueError) as e:
        raise TransportError(f'Could not resolve WebSocket URL from {url}: {type(e).__name__}: {e}') from e


class Browser:
    """A connected browser.

    :attr:`event_bus` is the connection's bus: the registry's target events,
    frame events of every page and :class:`ConnectionClosedEvent` all arrive
    there.

    Example:
        >>> async with await Browser.connect(cdp_url='http://localhost:9222') as browser:
        ...     page = await browser.new_page('https://example.com')
        ...     print(browser.frame_manager(page.target_id).frame_tree.main_frame.url)
    """

    def __init__(self, connection: Connection, target_manager: TargetManager, profile: ConnectionProfile):
        self._connection = connection
        self._target_manager = target_manager
        self.event_bus: EventBus = connection.event_bus
        self._background_tasks = BackgroundTasks()
        self._profile = profile
        self._frame_managers: dict[TargetID, FrameManager] = {}
        self._lock = asyncio.Lock()
        self._disconnected = False
        self._closed_signal: Deferred[BaseException] = Deferred()

        self.event_bus.on(TargetAvailableEvent, self._on_target_available)
        self.event_bus.on(TargetGoneEvent, self._on_target_gone)
        self.event_bus.on(TargetSwappedEvent, self._on_target_swapped)
        self.event_bus.on(ConnectionClosedEvent, self._on_connection_closed)

    @classmethod
    async def connect(
        cls,
        profile: ConnectionProfile | None = None,
        *,
        cdp_url: str | None = None,
        transport: Transport | None = None,
    ) -> 'Browser':
        """Connect and wait until the targets present at startup are attached.

        Args:
            profile: Connection options; defaults to :meth:`ConnectionProfile.from_env`.
            cdp_url: Overrides ``profile.cdp_url``.
            transport: An already opened transport (pipe, tests); skips URL
                resolution entirely.

        Raises:
            CDPWireError: No URL and no transport were given.
            TransportError: The endpoint could not be reached.
            BrowserTimeoutError: Initial targets did not attach in time.
        """
        profile = profile or ConnectionProfile.from_env()
        if cdp_url:
            profile = profile.model_copy(update={'cdp_url': cdp_url})

        if transport is None:
            if not profile.cdp_url:
                raise CDPWireError('Cannot connect without a CDP URL or a transport')
            url = await resolve_websocket_url(profile.cdp_url)
            transport = await WebSocketTransport.create(url)
        else:
            url = profile.cdp_url or 'pipe'
        logger.debug(f'Connecting to browser via CDP: {url}')

        connection = Connection(
            url,
            transport,
            slow_mo_ms=profile.slow_mo_ms,
            protocol_timeout_ms=profile.protocol_timeout_ms,
        )
        target_manager = TargetManager(
            connection,
            target_filter=profile.target_filter,
            is_exposed=profile.is_target_exposed,
            wait_for_initial_targets=profile.wait_for_initial_targets,
            use_tab_target=profile.use_tab_target,
        )
        browser = cls(connection, target_manager, profile)
        try:
            await target_manager.initialize(timeout_ms=profile.protocol_timeout_ms)
        except Exception:
            await browser.disconnect()
            raise
        logger.debug(f'Connected with {len(target_manager.available_targets())} available targets')
        return browser

    async def __aenter__(self) -> 'Browser':
        return self

    async def __aexit__(self, *exc_info: Any) -> None:
        await self.disconnect()

    @property
    def connection(self) -> Connection:
        return self._connection

    @property
    def target_manager(self) -> TargetManager:
        return self._target_manager

    @property
    def profile(self) -> ConnectionProfile:
        return self._profile

    @property
    def is_connected(self) -> bool:
        return not self._disconnected and not self._connection.closed

    def targets(self) -> list[Target]:
        return list(self._target_manager.available_targets().values())

    def pages(self) -> list[Target]:
        return [target for target in self.targets() if target.type is TargetType.PAGE]

    def frame_manager(self, target_id: TargetID) -> FrameManager | None:
        return self._frame_managers.get(target_id)

    async def version(self) -> dict[str, Any]:
        return await self._connection.send('Browser.getVersion')

    async def wait_for_target(self, predicate: Callable[[Target], bool], timeout_ms: int | None = None) -> Target:
        """Return the first available target matching ``predicate``.

        Targets that become available, or change URL, while waiting are
        checked too. ``timeout_ms`` defaults to the protocol timeout.

        Raises:
            BrowserTimeoutError: Nothing matched in time.
            ConnectionClosedError: The connection dropped first.
        """
        timeout = self._profile.protocol_timeout_ms if timeout_ms is None else timeout_ms
        found: Deferred[Target] = Deferred(
            timeout_ms=timeout,
            message=f'waiting for target failed: timeout {timeout}ms exceeded',
            label='target',
        )

        def check(event: TargetAvailableEvent | TargetChangedEvent) -> None:
            if event.target._available and predicate(event.target):
                found.resolve(event.target)

        self.event_bus.on(TargetAvailableEvent, check)
        self.event_bus.on(TargetChangedEvent, check)
        try:
            for target in self._target_manager.available_targets().values():
                if predicate(target):
                    found.resolve(target)
                    break
            result = await race(found, self._closed_signal)
            if isinstance(result, BaseException):
                raise result
            return result
        finally:
            remove_handler(self.event_bus, TargetAvailableEvent, check)
            remove_handler(self.event_bus, TargetChangedEvent, check)
            found.dispose()

    async def new_page(self, url: str = 'about:blank') -> Target:
        """Open a new page target and wait until it is attached and set up."""
        result = await self._connection.send('Target.createTarget', {'url': url})
        target_id = result['targetId']
        target = await self.wait_for_target(lambda t: t.target_id == target_id)
        await target.wait_for_initialized(self._profile.protocol_timeout_ms)
        return target

    async def disconnect(self) -> None:
        """Close the connection without closing the browser. Idempotent."""
        async with self._lock:
            await self._teardown()

    async def close(self) -> None:
        """Ask the browser to exit, then disconnect. Idempotent."""
        async with self._lock:
            if self._disconnected:
                return
            if not self._connection.closed:
                try:
                    await self._connection.send('Browser.close')
                except CDPWireError as e:
                    logger.debug(f'Browser.close failed, disconnecting anyway: {e}')
            await self._teardown()

    async def _teardown(self) -> None:
        if self._disconnected:
            return
        self._disconnected = True
        for frame_manager in self._frame_managers.values():
            frame_manager.dispose()
        self._frame_managers.clear()
        self._target_manager.dispose()
        self._background_tasks.cancel()
        await self._connection.close()
        self._closed_signal.resolve(ConnectionClosedError('Browser disconnected'))
        await self.event_bus.stop(clear=True, timeout=5)

    # ------------------------------------------------------------------
    # Registry listeners
    # ------------------------------------------------------------------

    def _on_target_available(self, event: TargetAvailableEvent) -> None:
        target = event.target
        if target.type is TargetType.PAGE and target.session is not None and target.target_id not in self._frame_managers:
            frame_manager = FrameManager(target.session)
            self._frame_managers[target.target_id] = frame_manager
            self._background_tasks.spawn(
                self._initialize_frame_manager(target, frame_manager), name=f'frames:{target.target_id[:8]}'
            )

    def _on_target_gone(self, event: TargetGoneEvent) -> None:
        frame_manager = self._frame_managers.pop(event.target.target_id, None)
        if frame_manager is not None:
            frame_manager.dispose()

    async def _on_target_swapped(self, event: TargetSwappedEvent) -> None:
        # Awaited so the old session's disconnect is handled after the tree has moved.
        target = event.target
        frame_manager = self._frame_managers.get(target.target_id)
        if frame_manager is None or target.session is None:
            return
        try:
            await frame_manager.swap_session(target.session)
        except CDPWireError as e:
            logger.debug(f'Frame tree swap for {target.target_id[:8]}... failed: {e}')

    def _on_connection_closed(self, event: ConnectionClosedEvent) -> None:
        self._closed_signal.resolve(ConnectionClosedError(f'Connection closed: {event.reason}'))

    async def _initialize_frame_manager(self, target: Target, frame_manager: FrameManager) -> None:
        try:
            await frame_manager.initialize()
        except CDPWireError as e:
            # The page may close while its frame tree is being fetched.
            logger.debug(f'Frame tree for {target.target_id[:8]}... unavailable: {e}')
