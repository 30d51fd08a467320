"""Pending-request tables shared by connections and sessions."""

import logging
from collections.abc import Awaitable, Callable, Iterator
from dataclasses import dataclass, field
from typing import Any

from cdpwire.browser.deferred import Deferred
from cdpwire.browser.views import ProtocolError

logger = logging.getLogger(__name__)


@dataclass
class _Callback:
    id: int
    label: str
    deferred: Deferred[Any] = field(default_factory=Deferred)


class CallbackRegistry:
    """Table of in-flight requests for one connection or session.

    Ids come from a counter shared by the whole connection so that an id is
    never outstanding twice, whichever session sent it.
    """

    def __init__(self, ids: Iterator[int]):
        self._ids = ids
        self._callbacks: dict[int, _Callback] = {}

    def __len__(self) -> int:
        return len(self._callbacks)

    def __contains__(self, message_id: int) -> bool:
        return message_id in self._callbacks

    def pending_ids(self) -> list[int]:
        return list(self._callbacks)

    async def create(
        self,
        label: str,
        timeout_ms: int,
        request: Callable[[int], Awaitable[None]],
    ) -> Any:
        """Register a callback, write the request and wait for its settlement.

        The entry is removed however the wait ends (response, error, timeout,
        teardown or cancellation), so a late response finds nothing to settle.
        """
        callback = _Callback(next(self._ids), label)
        if timeout_ms:
            callback.deferred = Deferred(
                timeout_ms=timeout_ms,
                message=f'{label} timed out. Increase the protocol_timeout_ms setting if needed.',
                label=label,
            )
        self._callbacks[callback.id] = callback
        try:
            await request(callback.id)
            return await callback.deferred.value_or_throw()
        finally:
            callback.deferred.dispose()
            self._callbacks.pop(callback.id, None)

    def resolve(self, message_id: int, result: Any) -> None:
        callback = self._callbacks.pop(message_id, None)
        if callback is None:
            logger.debug(f'Ignoring response for unknown or expired request id {message_id}')
            return
        callback.deferred.resolve(result)

    def reject(self, message_id: int, error: dict[str, Any]) -> None:
        callback = self._callbacks.pop(message_id, None)
        if callback is None:
            logger.debug(f'Ignoring error for unknown or expired request id {message_id}: {error}')
            return
        callback.deferred.reject(ProtocolError.from_response(callback.label, error))

    def reject_all(self, error_factory: Callable[[str], BaseException]) -> None:
        callbacks = list(self._callbacks.values())
        self._callbacks.clear()
        for callback in callbacks:
            callback.deferred.reject(error_factory(callback.label))
