"""Minimal named-event listener registry for call sessions."""

from __future__ import annotations

import asyncio
from collections.abc import Callable
from typing import Any

Listener = Callable[..., Any]


class EventEmitter:
    def __init__(self) -> None:
        self._listeners: dict[str, list[Listener]] = {}

    def on(self, event: str, listener: Listener) -> Listener:
        self._listeners.setdefault(event, []).append(listener)
        return listener

    def once(self, event: str, listener: Listener) -> Listener:
        def _once(*args: Any) -> Any:
            self.off(event, _once)
            return listener(*args)

        _once.__wrapped__ = listener  # type: ignore[attr-defined]
        return self.on(event, _once)

    def off(self, event: str, listener: Listener) -> None:
        listeners = self._listeners.get(event, [])
        for registered in listeners:
            if registered is listener or getattr(registered, "__wrapped__", None) is listener:
                listeners.remove(registered)
                return

    def emit(self, event: str, *args: Any) -> bool:
        """Call every listener for ``event``; returns whether any existed."""
        listeners = list(self._listeners.get(event, []))
        for listener in listeners:
            listener(*args)
        return bool(listeners)

    def listener_count(self, event: str) -> int:
        return len(self._listeners.get(event, []))

    def remove_all_listeners(self, event: str | None = None) -> None:
        if event is None:
            self._listeners.clear()
        else:
            self._listeners.pop(event, None)

    def wait_for(self, event: str) -> asyncio.Future[Any]:
        """Future resolved with the first argument of the next ``event``."""
        future: asyncio.Future[Any] = asyncio.get_running_loop().create_future()

        def _resolve(*args: Any) -> None:
            if not future.done():
                future.set_result(args[0] if args else None)

        self.once(event, _resolve)
        return future
