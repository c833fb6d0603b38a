from __future__ import annotations

import inspect
from collections import defaultdict
from typing import Any, Callable, Dict, List

from couchlogin.logging import get_logger

logger = get_logger(__name__)

Listener = Callable[..., Any]


class EventEmitter:
    """Named lifecycle events (``login``, ``logout``, ``signup``...) with listeners.

    Listeners may be plain functions or coroutines. A failing listener is
    logged and never affects the operation that emitted the event.
    """

    def __init__(self) -> None:
        self._listeners: Dict[str, List[Listener]] = defaultdict(list)

    def on(self, event: str, listener: Listener) -> Listener:
        self._listeners[event].append(listener)
        return listener

    def off(self, event: str, listener: Listener) -> None:
        if listener in self._listeners.get(event, []):
            self._listeners[event].remove(listener)

    def listeners(self, event: str) -> List[Listener]:
        return list(self._listeners.get(event, []))

    async def emit(self, event: str, *args: Any) -> None:
        for listener in self.listeners(event):
            try:
                result = listener(*args)
                if inspect.isawaitable(result):
                    await result
            except Exception as exc:
                logger.error(
                    "event_listener_failed",
                    lifecycle_event=event,
                    error=str(exc),
                    error_type=type(exc).__name__,
                )
