"""Per-event-kind listener registry.

agi-driver driver/listeners v0.1.0

Listeners are invoked in registration order. Two invocation styles:
- emit(): notification. Sync listeners run inline; coroutine results are
  scheduled as tasks and not awaited.
- collect_first(): interactive. Every listener is awaited in order; the first
  result of the accepted type is handed to ``on_response`` immediately and
  later results are ignored.
"""

from __future__ import annotations

import asyncio
import inspect
import logging
from collections.abc import Awaitable, Callable, Iterable
from typing import Any

__all__ = [
    "Listener",
    "ListenerRegistry",
]

logger = logging.getLogger(__name__)

# 类型别名：监听器可以是同步函数或协程函数
Listener = Callable[..., Any]


class ListenerRegistry:
    """Listener lists keyed by event kind.

    Attributes:
        kinds: Accepted kinds (None = any)
    """

    def __init__(self, kinds: Iterable[str] | None = None) -> None:
        self.kinds: frozenset[str] | None = frozenset(kinds) if kinds is not None else None
        self._listeners: dict[str, list[Listener]] = {}
        # 一次性注册按 (kind, id) 记录，同一函数在不同 kind 下互不影响
        self._once: set[tuple[str, int]] = set()
        self._tasks: set[asyncio.Task[Any]] = set()

    def _check_kind(self, kind: str) -> str:
        kind = str(getattr(kind, "value", kind))
        if self.kinds is not None and kind not in self.kinds:
            raise ValueError(
                f"Unknown event kind '{kind}'. Valid kinds: {', '.join(sorted(self.kinds))}"
            )
        return kind

    def add(self, kind: str, listener: Listener, *, once: bool = False) -> Listener:
        """Register ``listener`` for ``kind``.

        Returns:
            The listener, so ``add`` can be used as a decorator helper
        """
        kind = self._check_kind(kind)
        self._listeners.setdefault(kind, []).append(listener)
        if once:
            self._once.add((kind, id(listener)))
        return listener

    def remove(self, kind: str, listener: Listener) -> bool:
        """Unregister the first registration of ``listener`` for ``kind``."""
        kind = self._check_kind(kind)
        listeners = self._listeners.get(kind, [])
        for index, registered in enumerate(listeners):
            if registered == listener:
                del listeners[index]
                if registered not in listeners:
                    self._once.discard((kind, id(registered)))
                return True
        return False

    def clear(self, kind: str | None = None) -> None:
        """Remove all listeners (of ``kind``, or of every kind)."""
        if kind is None:
            self._listeners.clear()
            self._once.clear()
            return
        kind = self._check_kind(kind)
        for listener in self._listeners.pop(kind, []):
            self._once.discard((kind, id(listener)))

    def listeners(self, kind: str) -> list[Listener]:
        """Snapshot of the listeners for ``kind`` in registration order."""
        kind = self._check_kind(kind)
        return list(self._listeners.get(kind, []))

    def count(self, kind: str) -> int:
        return len(self._listeners.get(self._check_kind(kind), []))

    def _take(self, kind: str) -> list[Listener]:
        """Snapshot listeners and drop one-shot registrations."""
        kind = self._check_kind(kind)
        snapshot = self.listeners(kind)
        for listener in snapshot:
            if (kind, id(listener)) in self._once:
                self.remove(kind, listener)
        return snapshot

    def emit(self, kind: str, *args: Any) -> None:
        """Notify every listener of ``kind``.

        Exceptions raised by a listener are logged and do not prevent the
        remaining listeners from running.
        """
        for listener in self._take(kind):
            try:
                result = listener(*args)
            except Exception as e:
                logger.warning(f"Listener {listener!r} for '{kind}' failed: {e}", exc_info=True)
                continue
            if inspect.isawaitable(result):
                self._schedule(kind, listener, result)

    def _schedule(self, kind: str, listener: Listener, awaitable: Awaitable[Any]) -> None:
        task = asyncio.ensure_future(awaitable)
        self._tasks.add(task)

        def _done(t: asyncio.Task[Any]) -> None:
            self._tasks.discard(t)
            if t.cancelled():
                return
            exc = t.exception()
            if exc is not None:
                logger.warning(f"Async listener {listener!r} for '{kind}' failed: {exc}")

        task.add_done_callback(_done)

    async def collect_first(
        self,
        kind: str,
        *args: Any,
        accept: type | tuple[type, ...],
        on_response: Callable[[Any], None],
    ) -> bool:
        """Await every listener of ``kind`` in order; first accepted result wins.

        Args:
            kind: Event kind
            *args: Arguments passed to each listener
            accept: Result type(s) that count as a response
            on_response: Called once with the first accepted result

        Returns:
            True if a response was delivered
        """
        responded = False
        for listener in self._take(kind):
            try:
                result = listener(*args)
                if inspect.isawaitable(result):
                    result = await result
            except asyncio.CancelledError:
                raise
            except Exception as e:
                logger.warning(f"Listener {listener!r} for '{kind}' failed: {e}", exc_info=True)
                continue

            if not isinstance(result, accept):
                continue
            if responded:
                logger.debug(f"Ignoring extra '{kind}' response from {listener!r}")
                continue
            responded = True
            on_response(result)
        return responded

    @property
    def pending_tasks(self) -> int:
        """Number of scheduled async listener tasks still running."""
        return len(self._tasks)
