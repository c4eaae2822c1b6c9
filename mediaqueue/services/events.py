"""
In-process publish/subscribe for job events.

Listeners subscribe to one event type or to every event with "*". Delivery is
synchronous, in subscription order, specific listeners before wildcard ones.
A listener that raises is logged and skipped; the rest still run.
"""
import asyncio
from collections import defaultdict
from typing import AsyncIterator, Callable, Dict, List, Optional, Union

from mediaqueue.schemas.job import JobEvent, JobEventType
from mediaqueue.utils.logger import logger

WILDCARD = "*"

Listener = Callable[[JobEvent], None]
EventKey = Union[JobEventType, str]


def _event_key(event_type: EventKey) -> str:
    if event_type == WILDCARD:
        return WILDCARD
    return JobEventType(event_type).value


class EventBus:
    def __init__(self):
        self._listeners: Dict[str, List[Listener]] = defaultdict(list)

    def subscribe(self, event_type: EventKey, listener: Listener) -> Callable[[], bool]:
        """Register `listener`; returns a callable that unsubscribes it."""
        key = _event_key(event_type)
        self._listeners[key].append(listener)
        return lambda: self.unsubscribe(key, listener)

    def unsubscribe(self, event_type: EventKey, listener: Listener) -> bool:
        listeners = self._listeners.get(_event_key(event_type))
        if not listeners or listener not in listeners:
            return False
        listeners.remove(listener)
        return True

    def listener_count(self, event_type: Optional[EventKey] = None) -> int:
        if event_type is None:
            return sum(len(listeners) for listeners in self._listeners.values())
        return len(self._listeners.get(_event_key(event_type), ()))

    def clear(self) -> None:
        self._listeners.clear()

    def emit(self, event: JobEvent) -> None:
        # Snapshot the lists so listeners may unsubscribe while being called
        targets = list(self._listeners.get(event.type.value, ())) + list(self._listeners.get(WILDCARD, ()))
        for listener in targets:
            try:
                listener(event)
            except Exception as exc:
                logger.error(
                    "events.listener_error",
                    extra={"event": event.type.value, "job_id": event.job_id, "error": str(exc)},
                    exc_info=True,
                )

    async def stream(self, event_type: EventKey = WILDCARD, max_pending: int = 256) -> AsyncIterator[JobEvent]:
        """Yield events as they are emitted until the consumer stops iterating.

        Must be consumed on the event loop thread that emits. Events beyond
        `max_pending` unread ones are dropped with a warning.
        """
        queue: asyncio.Queue = asyncio.Queue(maxsize=max_pending)

        def enqueue(event: JobEvent) -> None:
            try:
                queue.put_nowait(event)
            except asyncio.QueueFull:
                logger.warning("events.stream_overflow", extra={"event": event.type.value, "job_id": event.job_id})

        unsubscribe = self.subscribe(event_type, enqueue)
        try:
            while True:
                yield await queue.get()
        finally:
            unsubscribe()
