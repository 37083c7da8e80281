"""In-process publish/subscribe between the request path and the transport.

publish() only schedules work on the running event loop, so a request handler
can acknowledge as soon as it has published. Each subscriber runs in its own
task; a failing subscriber is logged and does not affect the publisher or the
other subscribers. Nothing here is durable: a crash between publish and the
handler finishing loses the payload.
"""

import asyncio
import inspect
from collections import defaultdict
from typing import Any, Awaitable, Callable

from loguru import logger

EVENT_TRACKED = "event.tracked"
BATCH_EVENTS_TRACKED = "batch.events.tracked"
DEVICE_LINKED = "device.linked"

Handler = Callable[[Any], Awaitable[None] | None]


class EventBus:
    def __init__(self) -> None:
        self._subscribers: dict[str, list[Handler]] = defaultdict(list)
        self._pending: set[asyncio.Task] = set()

    def subscribe(self, topic: str, handler: Handler) -> None:
        self._subscribers[topic].append(handler)

    def publish(self, topic: str, payload: Any) -> int:
        """Schedule every subscriber of `topic`; return how many were scheduled.

        Must be called from inside a running event loop.
        """
        handlers = list(self._subscribers.get(topic, ()))
        if not handlers:
            logger.debug("No subscribers for bus topic {}", topic)
            return 0

        loop = asyncio.get_running_loop()
        for handler in handlers:
            task = loop.create_task(self._dispatch(topic, handler, payload))
            self._pending.add(task)
            task.add_done_callback(self._pending.discard)
        return len(handlers)

    async def _dispatch(self, topic: str, handler: Handler, payload: Any) -> None:
        try:
            result = handler(payload)
            if inspect.isawaitable(result):
                await result
        except Exception:
            logger.exception("Bus subscriber {} failed on topic {}", _handler_name(handler), topic)

    @property
    def pending(self) -> int:
        return len(self._pending)

    async def join(self) -> None:
        """Wait until every scheduled handler has finished."""
        while self._pending:
            await asyncio.gather(*list(self._pending), return_exceptions=True)


def _handler_name(handler: Handler) -> str:
    return getattr(handler, "__qualname__", repr(handler))
