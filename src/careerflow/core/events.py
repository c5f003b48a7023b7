from __future__ import annotations

import asyncio
import functools
import inspect
import logging
from collections import defaultdict
from collections.abc import Callable
from typing import Any, TypeVar

from careerflow.types import ProgressEvent

logger = logging.getLogger(__name__)

F = TypeVar("F", bound=Callable[..., Any])

Listener = Callable[[ProgressEvent], None]


def non_propagating(func: F) -> F:
    """Run ``func`` and log instead of raising; the wrapped call always returns None on error."""

    @functools.wraps(func)
    def wrapper(*args: Any, **kwargs: Any) -> Any:
        try:
            return func(*args, **kwargs)
        except Exception:
            logger.warning("Suppressed delivery failure in %s", func.__qualname__, exc_info=True)
            return None

    return wrapper  # type: ignore[return-value]


class Subscription:
    """A registered event queue; events published after construction are never missed.

    Iterate it asynchronously and close it (or use it as a context manager) when done.
    """

    def __init__(self, bus: ProgressBus, user_id: str, request_id: str | None):
        self.user_id = user_id
        self.request_id = request_id
        self.queue: asyncio.Queue[ProgressEvent] = asyncio.Queue()
        self._bus = bus
        self._closed = False

    def accepts(self, event: ProgressEvent) -> bool:
        return self.request_id is None or self.request_id == event.request_id

    def __aiter__(self) -> Subscription:
        return self

    async def __anext__(self) -> ProgressEvent:
        if self._closed:
            raise StopAsyncIteration
        return await self.queue.get()

    def close(self) -> None:
        if not self._closed:
            self._closed = True
            self._bus._unregister(self)

    def __enter__(self) -> Subscription:
        return self

    def __exit__(self, *exc_info: object) -> None:
        self.close()


class ProgressBus:
    """Fan-out of job progress events to websocket subscribers and plain listeners.

    Subscriptions are keyed by user id; a subscriber may narrow to one request id.
    Publishing never awaits and never raises into the caller.
    """

    def __init__(self) -> None:
        self._subscriptions: dict[str, list[Subscription]] = defaultdict(list)
        self._listeners: list[Listener] = []

    def add_listener(self, listener: Listener) -> None:
        if inspect.iscoroutinefunction(listener) or inspect.iscoroutinefunction(
            getattr(listener, "__call__", None)
        ):
            raise TypeError("progress listeners must be synchronous callables")
        self._listeners.append(listener)

    def subscriber_count(self, user_id: str) -> int:
        return len(self._subscriptions.get(user_id, []))

    @non_propagating
    def publish(self, event: ProgressEvent) -> None:
        for subscription in list(self._subscriptions.get(event.user_id, [])):
            if subscription.accepts(event):
                subscription.queue.put_nowait(event)

        for listener in list(self._listeners):
            _deliver(listener, event)

    def subscribe(self, user_id: str, request_id: str | None = None) -> Subscription:
        subscription = Subscription(self, user_id, request_id)
        self._subscriptions[user_id].append(subscription)
        return subscription

    def _unregister(self, subscription: Subscription) -> None:
        entries = self._subscriptions.get(subscription.user_id, [])
        if subscription in entries:
            entries.remove(subscription)
        if not entries:
            self._subscriptions.pop(subscription.user_id, None)


@non_propagating
def _deliver(listener: Listener, event: ProgressEvent) -> None:
    listener(event)
