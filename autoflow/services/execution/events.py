"""Event emitters for execution lifecycle notifications.

EventBus carries the engine's workflow:* and node:* events to subscribers.
QueueEvents is the informational side-channel each queue publishes job
lifecycle notifications on (waiting, active, completed, failed). Neither is
used for control flow.
"""

import asyncio
import inspect
from collections import defaultdict
from typing import Any, Awaitable, Callable, Dict, List, Optional, Union

from autoflow.core.logging import get_logger

logger = get_logger(__name__)

EventHandler = Callable[[Dict[str, Any]], Union[None, Awaitable[None]]]


class EventBus:
    """Minimal async-aware event emitter.

    Subscribers may be plain functions or coroutine functions. A failing
    subscriber is logged and never affects other subscribers or the emitter.
    """

    def __init__(self):
        self._handlers: Dict[str, List[EventHandler]] = defaultdict(list)

    def on(self, event: str, handler: EventHandler) -> None:
        """Subscribe ``handler`` to ``event``."""
        self._handlers[event].append(handler)

    def off(self, event: str, handler: EventHandler) -> None:
        """Unsubscribe ``handler`` from ``event`` if present."""
        handlers = self._handlers.get(event, [])
        if handler in handlers:
            handlers.remove(handler)

    def listener_count(self, event: str) -> int:
        return len(self._handlers.get(event, []))

    async def emit(self, event: str, payload: Dict[str, Any]) -> None:
        """Deliver ``payload`` to every subscriber of ``event``."""
        for handler in list(self._handlers.get(event, [])):
            try:
                result = handler(payload)
                if inspect.isawaitable(result):
                    await result
            except asyncio.CancelledError:
                raise
            except Exception as e:
                logger.error("Event subscriber failed", event_name=event, error=str(e))

    def clear(self) -> None:
        self._handlers.clear()


class QueueEvents:
    """Per-queue lifecycle side-channel.

    Listeners are synchronous callables invoked as ``listener(event, job_id, data)``.
    Every publication is also logged at debug level.
    """

    def __init__(self, queue_name: str):
        self.queue_name = queue_name
        self._listeners: List[Callable[[str, str, Dict[str, Any]], None]] = []
        self._closed = False

    @property
    def closed(self) -> bool:
        return self._closed

    def subscribe(self, listener: Callable[[str, str, Dict[str, Any]], None]) -> None:
        self._listeners.append(listener)

    def publish(self, event: str, job_id: str, data: Optional[Dict[str, Any]] = None) -> None:
        if self._closed:
            return
        data = data or {}
        logger.debug("Queue event", queue=self.queue_name, event_name=event, job_id=job_id, **data)
        for listener in list(self._listeners):
            try:
                listener(event, job_id, data)
            except Exception as e:
                logger.warning("Queue event listener failed", queue=self.queue_name,
                               event_name=event, error=str(e))

    async def close(self) -> None:
        self._closed = True
        self._listeners.clear()
