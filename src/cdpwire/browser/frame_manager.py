"""Keeps a :class:`FrameTree` in sync with a page session's ``Page.*`` events."""

import logging
from typing import Any

from cdpwire.browser.emitter import remove_handler
from cdpwire.browser.events import (
    FrameDetachedEvent,
    FrameLifecycleEvent,
    FrameLoadingStateEvent,
    FrameNavigatedEvent,
    SessionDisconnectedEvent,
)
from cdpwire.browser.frame_tree import Frame, FrameTree
from cdpwire.browser.session import CDPSession
from cdpwire.browser.views import FrameID, FrameInfo

logger = logging.getLogger(__name__)


class FrameManager:
    """Binds one page session to one frame tree.

    The tree outlives session swaps: :meth:`swap_session` moves the listeners
    to the new session and reconciles the tree with its ``Page.getFrameTree``
    snapshot. Frames whose ids are still present keep their identity; only
    frames missing from the snapshot are detached.

    Example:
        >>> manager = FrameManager(target.session)
        >>> await manager.initialize()
        >>> manager.frame_tree.main_frame.url
        'https://example.com/'
    """

    def __init__(self, session: CDPSession, frame_tree: FrameTree | None = None):
        self._session = session
        if frame_tree is None:
            target_id = session.target.target_id if session.target is not None else None
            frame_tree = FrameTree(session.event_bus, target_id=target_id)
        self._frame_tree = frame_tree
        self._handlers = {
            'Page.frameAttached': self._on_frame_attached,
            'Page.frameNavigated': self._on_frame_navigated,
            'Page.navigatedWithinDocument': self._on_navigated_within_document,
            'Page.frameDetached': self._on_frame_detached,
            'Page.frameStartedLoading': self._on_frame_started_loading,
            'Page.frameStoppedLoading': self._on_frame_stopped_loading,
            'Page.lifecycleEvent': self._on_lifecycle_event,
        }
        self._bind(session)
        self._session_bus = session.event_bus
        self._session_bus.on(SessionDisconnectedEvent, self._on_session_disconnected)

    @property
    def session(self) -> CDPSession:
        return self._session

    @property
    def frame_tree(self) -> FrameTree:
        return self._frame_tree

    async def initialize(self) -> None:
        """Enable page events and seed the tree from the current snapshot."""
        snapshot = await self._enable()
        self._handle_frame_tree(snapshot)
        await self._session.send('Page.setLifecycleEventsEnabled', {'enabled': True})

    async def swap_session(self, session: CDPSession) -> None:
        if session is self._session:
            return
        logger.debug(f'Frame manager moving from session {self._session.id[:8]}... to {session.id[:8]}...')
        self._unbind(self._session)
        self._session = session
        self._bind(session)
        snapshot = await self._enable()
        self._reconcile_frame_tree(snapshot)
        await session.send('Page.setLifecycleEventsEnabled', {'enabled': True})

    def dispose(self) -> None:
        self._unbind(self._session)
        remove_handler(self._session_bus, SessionDisconnectedEvent, self._on_session_disconnected)

    async def _enable(self) -> dict[str, Any]:
        session = self._session
        await session.send('Page.enable')
        result = await session.send('Page.getFrameTree')
        return result['frameTree']

    def _dispatch(self, event: Any) -> None:
        self._frame_tree.event_bus.dispatch(event)

    # ------------------------------------------------------------------
    # Binding
    # ------------------------------------------------------------------

    def _bind(self, session: CDPSession) -> None:
        for method, handler in self._handlers.items():
            session.on(method, handler)

    def _unbind(self, session: CDPSession) -> None:
        for method, handler in self._handlers.items():
            session.off(method, handler)

    def _on_session_disconnected(self, event: SessionDisconnectedEvent) -> None:
        # Sessions that were swapped out no longer own the tree.
        if event.session_id != self._session.id:
            return
        main = self._frame_tree.main_frame
        if main is not None:
            self._frame_tree.remove_frame(main.frame_id, reason='disconnect')

    # ------------------------------------------------------------------
    # Tree updates
    # ------------------------------------------------------------------

    def _handle_frame_tree(self, node: dict[str, Any]) -> None:
        frame_info = FrameInfo.model_validate(node['frame'])
        if frame_info.parent_id is not None:
            self._attach(frame_info.frame_id, frame_info.parent_id)
        self._navigated(frame_info)
        for child in node.get('childFrames') or ():
            self._handle_frame_tree(child)

    def _reconcile_frame_tree(self, node: dict[str, Any]) -> None:
        tree = self._frame_tree
        snapshot: dict[FrameID, FrameInfo] = {}
        order: list[tuple[FrameInfo, FrameID | None]] = []

        def collect(current: dict[str, Any], parent_id: FrameID | None) -> None:
            info = FrameInfo.model_validate(current['frame'])
            snapshot[info.frame_id] = info
            order.append((info, parent_id))
            for child in current.get('childFrames') or ():
                collect(child, info.frame_id)

        collect(node, None)
        root = order[0][0]
        main = tree.main_frame
        if main is None or main.frame_id != root.frame_id:
            # A different document now; treat it like a navigation.
            self._handle_frame_tree(node)
            return

        for frame in tree.frames():
            if frame.frame_id in tree and frame.frame_id not in snapshot:
                tree.remove_frame(frame.frame_id)

        for info, parent_id in order:
            if parent_id is not None:
                self._attach(info.frame_id, parent_id)
            frame = tree.get_by_id(info.frame_id)
            if frame is None:
                continue
            previous_url = frame.url
            self._update(frame, info)
            if frame.url != previous_url:
                self._dispatch(FrameNavigatedEvent(frame_id=frame.frame_id, url=frame.url, target_id=tree.target_id))

    def _attach(self, frame_id: FrameID, parent_id: FrameID) -> None:
        tree = self._frame_tree
        existing = tree.get_by_id(frame_id)
        if existing is not None:
            # Out-of-process iframes re-attach under the same id.
            if existing.parent_id != parent_id:
                logger.warning(f'Frame {frame_id} re-attached under {parent_id}, keeping parent {existing.parent_id}')
            return
        if parent_id not in tree:
            logger.debug(f'Ignoring frame {frame_id}: parent {parent_id} unknown')
            return
        tree.add_frame(Frame(frame_id=frame_id, parent_id=parent_id))

    def _navigated(self, frame_info: FrameInfo, same_document: bool = False) -> None:
        tree = self._frame_tree
        frame_id = frame_info.frame_id
        is_main_frame = frame_info.parent_id is None

        if is_main_frame:
            main = tree.main_frame
            if main is None:
                frame = tree.add_frame(Frame(frame_id=frame_id))
            else:
                for child in tree.child_frames(main.frame_id):
                    tree.remove_frame(child.frame_id)
                frame = main if main.frame_id == frame_id else tree.rename_main_frame(frame_id)
        else:
            frame = tree.get_by_id(frame_id)
            if frame is None:
                logger.debug(f'Navigation of unknown frame {frame_id} ignored')
                return
            for child in tree.child_frames(frame_id):
                tree.remove_frame(child.frame_id)

        self._update(frame, frame_info)
        self._dispatch(
            FrameNavigatedEvent(
                frame_id=frame.frame_id, url=frame.url, same_document=same_document, target_id=tree.target_id
            )
        )

    @staticmethod
    def _update(frame: Frame, frame_info: FrameInfo) -> None:
        frame.url = frame_info.full_url
        frame.name = frame_info.name
        frame.loader_id = frame_info.loader_id

    # ------------------------------------------------------------------
    # Protocol event handlers
    # ------------------------------------------------------------------

    def _on_frame_attached(self, params: dict[str, Any]) -> None:
        self._attach(params['frameId'], params['parentFrameId'])

    def _on_frame_navigated(self, params: dict[str, Any]) -> None:
        self._navigated(FrameInfo.model_validate(params['frame']))

    def _on_navigated_within_document(self, params: dict[str, Any]) -> None:
        frame = self._frame_tree.get_by_id(params['frameId'])
        if frame is None:
            return
        frame.url = params['url']
        self._dispatch(
            FrameNavigatedEvent(
                frame_id=frame.frame_id, url=frame.url, same_document=True, target_id=self._frame_tree.target_id
            )
        )

    def _on_frame_detached(self, params: dict[str, Any]) -> None:
        frame_id = params['frameId']
        if params.get('reason') == 'swap':
            # The frame moves to another session and stays in the tree.
            frame = self._frame_tree.get_by_id(frame_id)
            if frame is not None:
                self._dispatch(
                    FrameDetachedEvent(
                        frame_id=frame_id, parent_id=frame.parent_id, reason='swap', target_id=self._frame_tree.target_id
                    )
                )
            return
        self._frame_tree.remove_frame(frame_id)

    def _on_frame_started_loading(self, params: dict[str, Any]) -> None:
        self._set_loading(params['frameId'], True)

    def _on_frame_stopped_loading(self, params: dict[str, Any]) -> None:
        self._set_loading(params['frameId'], False)

    def _set_loading(self, frame_id: FrameID, is_loading: bool) -> None:
        frame = self._frame_tree.get_by_id(frame_id)
        if frame is None:
            return
        frame.is_loading = is_loading
        self._dispatch(FrameLoadingStateEvent(frame_id=frame_id, is_loading=is_loading, target_id=self._frame_tree.target_id))

    def _on_lifecycle_event(self, params: dict[str, Any]) -> None:
        frame = self._frame_tree.get_by_id(params['frameId'])
        if frame is None:
            return
        name = params['name']
        if name == 'init':
            frame.loader_id = params.get('loaderId')
            frame.lifecycle_events = set()
        frame.lifecycle_events = frame.lifecycle_events | {name}
        self._dispatch(
            FrameLifecycleEvent(
                frame_id=frame.frame_id,
                name=name,
                loader_id=params.get('loaderId'),
                lifecycle_events=frozenset(frame.lifecycle_events),
                target_id=self._frame_tree.target_id,
            )
        )
