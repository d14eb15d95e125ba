"""
Engine notifications.

Observers (the route layer, a UI) subscribe to the bus and receive the
dataclass events below; the engine never reaches into observer state.
"""

import asyncio
import logging
from dataclasses import dataclass, asdict
from typing import Callable

logger = logging.getLogger(__name__)


@dataclass
class ThreadUpdated:
    thread_id: str


@dataclass
class RequestStarted:
    thread_id: str
    message_id: str


@dataclass
class RequestCancelled:
    thread_id: str
    message_id: str


@dataclass
class RequestCompleted:
    thread_id: str
    message_id: str


@dataclass
class Notification:
    """Non-blocking, toast-style message for the user."""
    level: str
    message: str
    thread_id: str | None = None


Event = ThreadUpdated | RequestStarted | RequestCancelled | RequestCompleted | Notification


def event_payload(event: Event) -> dict:
    return {"event": type(event).__name__, **asdict(event)}


class EventBus:
    def __init__(self):
        self._subscribers: list[Callable[[Event], None]] = []

    def subscribe(self, callback: Callable[[Event], None]) -> Callable[[], None]:
        """Register a callback; returns a function that unsubscribes it."""
        self._subscribers.append(callback)

        def unsubscribe() -> None:
            if callback in self._subscribers:
                self._subscribers.remove(callback)

        return unsubscribe

    def subscribe_queue(self) -> tuple[asyncio.Queue, Callable[[], None]]:
        """Subscribe an asyncio.Queue, for streaming consumers."""
        queue: asyncio.Queue = asyncio.Queue()
        return queue, self.subscribe(queue.put_nowait)

    def publish(self, event: Event) -> None:
        for callback in list(self._subscribers):
            try:
                callback(event)
            except Exception as e:
                logger.warning("Event subscriber failed on %s: %s", type(event).__name__, e)
