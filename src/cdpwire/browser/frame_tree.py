"""Per-target tree of navigable frames."""

import logging
from typing import Literal

from bubus import EventBus
from pydantic import BaseModel, ConfigDict, Field

from cdpwire.browser.deferred import wait_for_event
from cdpwire.browser.events import FrameAttachedEvent, FrameDetachedEvent
from cdpwire.browser.views import FrameID, TargetID

logger = logging.getLogger(__name__)


class Frame(BaseModel):
    """Mutable state of one frame; identity is ``frame_id``."""

    model_config = ConfigDict(validate_assignment=True)

    frame_id: FrameID
    parent_id: FrameID | None = None
    url: str = ''
    name: str | None = None
    loader_id: str | None = None
    is_loading: bool = False
    lifecycle_events: set[str] = Field(default_factory=set)

    @property
    def is_main_frame(self) -> bool:
        return self.parent_id is None


class FrameTree:
    """Strict tree of frames with exactly one root (the main frame).

    Children are kept in attach order. Structural errors (a second root, a
    duplicate id, an unknown parent) are programming errors and raise
    ValueError instead of being repaired.

    Dispatches :class:`FrameAttachedEvent` on :meth:`add_frame` and one
    :class:`FrameDetachedEvent` per removed frame, children before parents.
    Events are stamped with ``target_id`` so trees can share a bus.
    """

    def __init__(self, event_bus: EventBus | None = None, target_id: TargetID | None = None) -> None:
        self.event_bus = event_bus or EventBus()
        self._target_id = target_id
        self._frames: dict[FrameID, Frame] = {}
        # parent id -> ordered set of child ids
        self._child_ids: dict[FrameID, dict[FrameID, None]] = {}
        self._main_frame_id: FrameID | None = None

    @property
    def target_id(self) -> TargetID | None:
        return self._target_id

    def __len__(self) -> int:
        return len(self._frames)

    def __contains__(self, frame_id: FrameID) -> bool:
        return frame_id in self._frames

    def frames(self) -> list[Frame]:
        return list(self._frames.values())

    def get_by_id(self, frame_id: FrameID) -> Frame | None:
        return self._frames.get(frame_id)

    def get_main_frame(self) -> Frame | None:
        if self._main_frame_id is None:
            return None
        return self._frames[self._main_frame_id]

    main_frame = property(get_main_frame)

    def child_frames(self, frame_id: FrameID) -> list[Frame]:
        return [self._frames[child_id] for child_id in self._child_ids.get(frame_id, ())]

    def parent_frame(self, frame_id: FrameID) -> Frame | None:
        frame = self._frames.get(frame_id)
        if frame is None or frame.parent_id is None:
            return None
        return self._frames.get(frame.parent_id)

    def add_frame(self, frame: Frame) -> Frame:
        if frame.frame_id in self._frames:
            raise ValueError(f'Frame {frame.frame_id} is already in the tree')
        if frame.parent_id is None:
            if self._main_frame_id is not None:
                raise ValueError(f'Cannot add root frame {frame.frame_id}: main frame {self._main_frame_id} exists')
            self._main_frame_id = frame.frame_id
        else:
            if frame.parent_id not in self._frames:
                raise ValueError(f'Parent frame {frame.parent_id} of {frame.frame_id} is not in the tree')
            self._child_ids.setdefault(frame.parent_id, {})[frame.frame_id] = None
        self._frames[frame.frame_id] = frame
        self.event_bus.dispatch(
            FrameAttachedEvent(frame=frame, frame_id=frame.frame_id, parent_id=frame.parent_id, target_id=self._target_id)
        )
        return frame

    def remove_frame(
        self,
        frame_id: FrameID,
        reason: Literal['remove', 'disconnect'] = 'remove',
    ) -> list[FrameID]:
        """Remove ``frame_id`` and its whole subtree.

        Frames are removed in post-order so every detach event for a child is
        emitted before the one for its parent. Returns the removed ids in that
        order; an unknown id removes nothing.
        """
        if frame_id not in self._frames:
            return []

        order: list[FrameID] = []
        stack: list[tuple[FrameID, bool]] = [(frame_id, False)]
        while stack:
            current, expanded = stack.pop()
            if expanded:
                order.append(current)
                continue
            stack.append((current, True))
            for child_id in reversed(list(self._child_ids.get(current, ()))):
                stack.append((child_id, False))

        for removed_id in order:
            frame = self._frames.pop(removed_id)
            self._child_ids.pop(removed_id, None)
            if frame.parent_id is not None:
                siblings = self._child_ids.get(frame.parent_id)
                if siblings is not None:
                    siblings.pop(removed_id, None)
                    if not siblings:
                        del self._child_ids[frame.parent_id]
            if removed_id == self._main_frame_id:
                self._main_frame_id = None
            self.event_bus.dispatch(
                FrameDetachedEvent(frame_id=removed_id, parent_id=frame.parent_id, reason=reason, target_id=self._target_id)
            )
        return order

    def rename_main_frame(self, new_frame_id: FrameID) -> Frame:
        """Give the main frame a new id (cross-process navigation).

        The main frame must have no children left; callers detach them first.
        """
        main = self.get_main_frame()
        if main is None:
            raise ValueError('Cannot rename main frame: tree is empty')
        if self._child_ids.get(main.frame_id):
            raise ValueError(f'Cannot rename main frame {main.frame_id} while it has child frames')
        if new_frame_id in self._frames:
            raise ValueError(f'Frame {new_frame_id} is already in the tree')
        del self._frames[main.frame_id]
        logger.debug(f'Main frame {main.frame_id} renamed to {new_frame_id}')
        main.frame_id = new_frame_id
        self._frames[new_frame_id] = main
        self._main_frame_id = new_frame_id
        return main

    async def wait_for_frame(self, frame_id: FrameID, timeout_ms: int = 0) -> Frame:
        """Return frame ``frame_id``, waiting for it to attach if necessary."""
        frame = self._frames.get(frame_id)
        if frame is not None:
            return frame
        event = await wait_for_event(
            self.event_bus,
            FrameAttachedEvent,
            predicate=lambda event: event.frame_id == frame_id and event.target_id == self._target_id,
            timeout_ms=timeout_ms,
        )
        return event.frame
