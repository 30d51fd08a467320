"""Protocol event routing and background task bookkeeping.

Typed lifecycle events travel on a :class:`bubus.EventBus`. Raw protocol
events have no event class, so connections and sessions route them here by
method name (``'Page.frameNavigated'``) with the wire ``params`` dict as the
payload.

Listeners run inline in registration order; coroutine functions are scheduled
as separate tasks so a slow consumer never holds up the message pump.
"""

import asyncio
import inspect
import logging
from collections.abc import Callable, Coroutine
from typing import Any

from bubus import BaseEvent, EventBus

logger = logging.getLogger(__name__)

Listener = Callable[[Any], Any]


def remove_handler(event_bus: EventBus, event_type: type[BaseEvent[Any]], handler: Callable[..., Any]) -> None:
    """Unregister ``handler`` for ``event_type``; unknown handlers are ignored."""
    handlers = event_bus.handlers.get(event_type.__name__)
    if handlers and handler in handlers:
        handlers.remove(handler)


def handler_count(event_bus: EventBus, event_type: type[BaseEvent[Any]]) -> int:
    return len(event_bus.handlers.get(event_type.__name__, ()))


class BackgroundTasks:
    """Tracks fire-and-forget tasks so failures are logged and teardown can cancel them."""

    def __init__(self) -> None:
        self._tasks: set[asyncio.Task[Any]] = set()

    def __len__(self) -> int:
        return len(self._tasks)

    def spawn(self, awaitable: Any, name: str | None = None) -> asyncio.Task[Any]:
        if isinstance(awaitable, Coroutine):
            task = asyncio.get_running_loop().create_task(awaitable, name=name)
        else:
            task = asyncio.ensure_future(awaitable)
        self._tasks.add(task)
        task.add_done_callback(self._on_done)
        return task

    def cancel(self) -> None:
        for task in list(self._tasks):
            task.cancel()

    def _on_done(self, task: asyncio.Task[Any]) -> None:
        self._tasks.discard(task)
        if task.cancelled():
            return
        error = task.exception()
        if error is not None:
            logger.error(f'Background task {task.get_name()} failed: {type(error).__name__}: {error}', exc_info=error)


class EventEmitter:
    """Method-name keyed listener registration with inline/background dispatch."""

    def __init__(self) -> None:
        self._listeners: dict[str, list[Listener]] = {}
        self._background_tasks = BackgroundTasks()

    def on(self, method: str, listener: Listener) -> 'EventEmitter':
        self._listeners.setdefault(method, []).append(listener)
        return self

    def once(self, method: str, listener: Listener) -> 'EventEmitter':
        def wrapper(params: Any) -> Any:
            self.off(method, wrapper)
            return listener(params)

        return self.on(method, wrapper)

    def off(self, method: str, listener: Listener) -> 'EventEmitter':
        listeners = self._listeners.get(method)
        if listeners and listener in listeners:
            listeners.remove(listener)
            if not listeners:
                del self._listeners[method]
        return self

    def remove_all_listeners(self, method: str | None = None) -> 'EventEmitter':
        if method is None:
            self._listeners.clear()
        else:
            self._listeners.pop(method, None)
        return self

    def listener_count(self, method: str) -> int:
        return len(self._listeners.get(method, ()))

    def emit(self, method: str, params: Any = None) -> bool:
        """Deliver ``params`` to every listener of ``method``.

        Returns True when at least one listener was registered. A listener that
        raises is logged and does not prevent delivery to the others.
        """
        listeners = self._listeners.get(method)
        if not listeners:
            return False
        for listener in list(listeners):
            try:
                result = listener(params)
            except Exception:
                logger.exception(f'Listener {listener!r} failed while handling {method}')
                continue
            if inspect.isawaitable(result):
                self._spawn(result, name=f'listener:{method}')
        return True

    def _spawn(self, awaitable: Any, name: str | None = None) -> asyncio.Task[Any]:
        return self._background_tasks.spawn(awaitable, name=name)

    def _cancel_background_tasks(self) -> None:
        self._background_tasks.cancel()
