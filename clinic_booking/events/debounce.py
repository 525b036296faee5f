"""
Keyed debouncer.

Each key has at most one pending timer. Calling again for the same key
cancels the previous handle and restarts the quiet period, so a burst
collapses into one callback. Keys never wait on each other.
"""

import asyncio
import logging
from typing import Any, Callable, Hashable, Optional

logger = logging.getLogger(__name__)


class DebounceHandle:
    """Cancellable ticket for one scheduled callback."""

    def __init__(
        self,
        key: Hashable,
        timer: asyncio.TimerHandle,
        callback: Callable[..., Any],
        args: tuple,
    ):
        self.key = key
        self._timer = timer
        self.callback = callback
        self.args = args
        self.fired = False

    @property
    def cancelled(self) -> bool:
        return self._timer.cancelled()

    def cancel(self) -> None:
        self._timer.cancel()


class KeyedDebouncer:
    def __init__(self, delay: float, name: str = "debounce"):
        self.delay = delay
        self.name = name
        self._handles: dict[Hashable, DebounceHandle] = {}
        self._counts: dict[Hashable, int] = {}

    def call(self, key: Hashable, callback: Callable[..., Any], *args: Any) -> DebounceHandle:
        """
        Schedule `callback(*args, count)` after the quiet period for `key`.

        `count` is the number of calls coalesced into this one.
        """
        previous = self._handles.get(key)
        if previous is not None:
            previous.cancel()

        self._counts[key] = self._counts.get(key, 0) + 1
        loop = asyncio.get_running_loop()
        timer = loop.call_later(self.delay, self._fire, key, callback, args)
        handle = DebounceHandle(key, timer, callback, args)
        self._handles[key] = handle
        return handle

    def _fire(self, key: Hashable, callback: Callable[..., Any], args: tuple) -> None:
        handle = self._handles.pop(key, None)
        if handle is not None:
            handle.fired = True
        count = self._counts.pop(key, 1)
        try:
            callback(*args, count)
        except Exception:
            logger.exception(f"{self.name} callback failed for key={key}")

    def cancel(self, key: Hashable) -> bool:
        handle = self._handles.pop(key, None)
        self._counts.pop(key, None)
        if handle is None:
            return False
        handle.cancel()
        return True

    def cancel_all(self) -> None:
        for handle in self._handles.values():
            handle.cancel()
        self._handles.clear()
        self._counts.clear()

    def flush(self) -> None:
        """Run every pending callback now (used on teardown and in tests)."""
        pending = list(self._handles.items())
        for key, handle in pending:
            handle.cancel()
            self._fire(key, handle.callback, handle.args)

    def pending(self, key: Optional[Hashable] = None) -> bool:
        if key is None:
            return bool(self._handles)
        return key in self._handles
