"""Single-assignment futures and the waits built on them.

Every async boundary in the protocol core (RPC responses, event waits,
initialization barriers) goes through a :class:`Deferred` so that a hung
remote end can always be cut short by a timeout or by its owner closing.
"""

import asyncio
import functools
from collections.abc import Awaitable, Callable
from typing import Any, Generic, TypeVar

from bubus import EventBus

from cdpwire.browser.emitter import EventEmitter, remove_handler
from cdpwire.browser.views import BrowserTimeoutError

T = TypeVar('T')

DoneCallback = Callable[['Deferred[Any]'], None]


class Deferred(Generic[T]):
    """A future that settles exactly once.

    Late calls to :meth:`resolve` or :meth:`reject` are ignored. The underlying
    asyncio future is only created when somebody awaits, so a Deferred can be
    built outside of a running loop as long as no timeout is requested.

    Example:
        >>> deferred = Deferred[int](timeout_ms=1000, label='answer')
        >>> deferred.resolve(42)
        >>> await deferred.value_or_throw()
        42
    """

    def __init__(
        self,
        timeout_ms: int = 0,
        message: str | None = None,
        label: str | None = None,
    ):
        self._settled = False
        self._value: T | None = None
        self._error: BaseException | None = None
        self._future: asyncio.Future[T] | None = None
        self._callbacks: list[DoneCallback] = []
        self._timer: asyncio.TimerHandle | None = None
        if timeout_ms:
            message = message or f'Timed out after waiting {timeout_ms}ms'
            self._timer = asyncio.get_running_loop().call_later(
                timeout_ms / 1000,
                self.reject,
                BrowserTimeoutError(message, label=label, timeout_ms=timeout_ms),
            )

    def __repr__(self) -> str:
        if not self._settled:
            state = 'pending'
        elif self._error is not None:
            state = f'rejected {self._error!r}'
        else:
            state = f'resolved {self._value!r}'
        return f'<Deferred {state}>'

    def __await__(self):
        return self.value_or_throw().__await__()

    def finished(self) -> bool:
        return self._settled

    def resolved(self) -> bool:
        return self._settled and self._error is None

    def value(self) -> T | None:
        """Return the resolved value, or None when pending or rejected."""
        return self._value if self.resolved() else None

    @property
    def error(self) -> BaseException | None:
        return self._error

    def resolve(self, value: T = None) -> bool:  # type: ignore[assignment]
        if self._settled:
            return False
        self._settled = True
        self._value = value
        self._finish()
        if self._future is not None and not self._future.done():
            self._future.set_result(value)
        return True

    def reject(self, error: BaseException) -> bool:
        if self._settled:
            return False
        self._settled = True
        self._error = error
        self._finish()
        if self._future is not None and not self._future.done():
            self._future.set_exception(error)
        return True

    async def value_or_throw(self) -> T:
        if self._settled:
            if self._error is not None:
                raise self._error
            return self._value  # type: ignore[return-value]
        if self._future is None:
            self._future = asyncio.get_running_loop().create_future()
            self._future.add_done_callback(_consume_exception)
        # shield so a cancelled waiter does not cancel the shared future
        return await asyncio.shield(self._future)

    def add_done_callback(self, callback: DoneCallback) -> None:
        """Call ``callback(self)`` once settled (immediately if already settled)."""
        if self._settled:
            callback(self)
        else:
            self._callbacks.append(callback)

    def remove_done_callback(self, callback: DoneCallback) -> None:
        try:
            self._callbacks.remove(callback)
        except ValueError:
            pass

    def dispose(self) -> None:
        """Stop the timeout timer without settling."""
        if self._timer is not None:
            self._timer.cancel()
            self._timer = None

    def _finish(self) -> None:
        self.dispose()
        callbacks, self._callbacks = self._callbacks, []
        for callback in callbacks:
            callback(self)


def _consume_exception(future: asyncio.Future[Any]) -> None:
    # Waiters may be cancelled before the shared future settles with an error.
    if not future.cancelled():
        future.exception()


def _adopt(winner: Deferred[Any], source: Deferred[Any]) -> None:
    if source.error is not None:
        winner.reject(source.error)
    else:
        winner.resolve(source.value())


async def race(*sources: Awaitable[Any]) -> Any:
    """Settle with whichever source settles first.

    Losers are not cancelled, their outcome is simply ignored. Coroutines are
    wrapped in tasks; Deferreds are observed through done callbacks.

    Raises:
        ValueError: No sources were given.
    """
    if not sources:
        raise ValueError('race() needs at least one source')
    winner: Deferred[Any] = Deferred()
    watched: list[tuple[Deferred[Any], DoneCallback]] = []

    def on_task_done(task: asyncio.Future[Any]) -> None:
        if task.cancelled():
            winner.reject(asyncio.CancelledError())
        elif task.exception() is not None:
            winner.reject(task.exception())  # type: ignore[arg-type]
        else:
            winner.resolve(task.result())

    for source in sources:
        if isinstance(source, Deferred):
            callback = functools.partial(_adopt, winner)
            watched.append((source, callback))
            source.add_done_callback(callback)
        else:
            asyncio.ensure_future(source).add_done_callback(on_task_done)

    try:
        return await winner.value_or_throw()
    finally:
        for source, callback in watched:
            source.remove_done_callback(callback)


async def wait_with_timeout(awaitable: Awaitable[T], label: str, timeout_ms: int) -> T:
    """Await ``awaitable`` but give up after ``timeout_ms``.

    ``timeout_ms == 0`` disables the timer. On expiry a
    :class:`BrowserTimeoutError` carrying ``label`` and the duration is raised;
    the underlying work is not cancelled.
    """
    if not timeout_ms:
        return await awaitable
    timer: Deferred[T] = Deferred(
        timeout_ms=timeout_ms,
        message=f'waiting for {label} failed: timeout {timeout_ms}ms exceeded',
        label=label,
    )
    try:
        return await race(awaitable, timer)
    finally:
        timer.dispose()


async def wait_for_event(
    source: EventBus | EventEmitter,
    event_type: type[Any] | str,
    predicate: Callable[[Any], bool] | None = None,
    timeout_ms: int = 0,
    abort: Deferred[Any] | None = None,
) -> Any:
    """Wait for the first ``event_type`` from ``source`` that satisfies ``predicate``.

    ``source`` is an event bus for lifecycle event classes, or a connection or
    session for raw protocol events named by method (``'Page.loadEventFired'``).

    Bound by ``timeout_ms`` (0 waits forever) and by ``abort``: if ``abort``
    settles first its error is raised, or, when it resolves with an exception
    instance, that exception is raised. The listener is always removed.
    """
    name = event_type if isinstance(event_type, str) else event_type.__name__
    deferred: Deferred[Any] = Deferred(
        timeout_ms=timeout_ms,
        message=f'Timeout exceeded while waiting for event {name}',
        label=name,
    )

    def listener(event: Any) -> None:
        if predicate is None or predicate(event):
            deferred.resolve(event)

    source.on(event_type, listener)
    try:
        if abort is None:
            return await deferred.value_or_throw()
        result = await race(deferred, abort)
        if isinstance(result, BaseException):
            raise result
        return result
    finally:
        if isinstance(event_type, str):
            source.off(event_type, listener)
        else:
            remove_handler(source, event_type, listener)
        deferred.dispose()
