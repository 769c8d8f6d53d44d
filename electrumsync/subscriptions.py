"""Routes server push notifications to method-keyed handlers."""

from __future__ import annotations

import asyncio
import inspect
import itertools
from dataclasses import dataclass
from typing import Any
from collections.abc import Callable

from loguru import logger

from electrumsync.core.protocol import RpcNotification
from electrumsync.core.serialization import decode_notification

NotificationHandler = Callable[[list[Any]], Any]


@dataclass(frozen=True, slots=True)
class SubscriptionHandle:
    """Opaque token returned by subscribe(); pass it to unsubscribe()."""

    method: str
    token: int


class SubscriptionRouter:
    """Holds handler registrations; never talks to the server itself.

    Registrations survive reconnects. Handlers receive the notification params
    and may be plain functions or coroutines.
    """

    def __init__(self) -> None:
        self._handlers: dict[str, dict[int, NotificationHandler]] = {}
        self._tokens = itertools.count(1)
        self._tasks: set[asyncio.Task[Any]] = set()

    def subscribe(self, method: str, handler: NotificationHandler) -> SubscriptionHandle:
        if not method:
            raise ValueError("method is required")
        if not callable(handler):
            raise TypeError("handler must be callable")
        token = next(self._tokens)
        self._handlers.setdefault(method, {})[token] = handler
        return SubscriptionHandle(method=method, token=token)

    def unsubscribe(self, handle: SubscriptionHandle) -> bool:
        handlers = self._handlers.get(handle.method)
        if not handlers or handle.token not in handlers:
            return False
        del handlers[handle.token]
        if not handlers:
            del self._handlers[handle.method]
        return True

    def clear(self, method: str | None = None) -> None:
        if method is None:
            self._handlers.clear()
        else:
            self._handlers.pop(method, None)

    def methods(self) -> list[str]:
        return list(self._handlers)

    def handler_count(self, method: str) -> int:
        return len(self._handlers.get(method, {}))

    def is_active(self, handle: SubscriptionHandle) -> bool:
        return handle.token in self._handlers.get(handle.method, {})

    def dispatch(self, notification: RpcNotification | dict[str, Any]) -> int:
        """Invoke every handler registered for the notification's method.

        Returns how many handlers were invoked. A failing handler is logged and
        does not affect the others.
        """
        if isinstance(notification, dict):
            decoded = decode_notification(notification)
            if decoded is None:
                logger.debug("Dropping message without method: {}", str(notification)[:200])
                return 0
            notification = decoded
        handlers = list(self._handlers.get(notification.method, {}).values())
        if not handlers:
            logger.debug("No handler for notification {}", notification.method)
            return 0
        for handler in handlers:
            try:
                outcome = handler(notification.params)
            except Exception:
                logger.exception("Subscription handler for {} failed", notification.method)
                continue
            if inspect.isawaitable(outcome):
                self._track(notification.method, outcome)
        return len(handlers)

    def _track(self, method: str, awaitable: Any) -> None:
        task = asyncio.ensure_future(awaitable)
        self._tasks.add(task)

        def _done(t: asyncio.Task[Any]) -> None:
            self._tasks.discard(t)
            if t.cancelled():
                return
            exc = t.exception()
            if exc is not None:
                logger.opt(exception=exc).error("Async subscription handler for {} failed", method)

        task.add_done_callback(_done)

    async def drain(self) -> None:
        """Wait for async handlers that are still running."""
        if self._tasks:
            await asyncio.gather(*list(self._tasks), return_exceptions=True)
