"""
Active request registry: at most one in-flight generation per thread.

    Idle -> Pending -> {Completed, Cancelled}

An entry exists only while Pending. Completion and cancellation both remove
it, and each mutation is a check-and-set with no suspension point, so a
result may be committed only by the caller whose `complete()` returned True.
"""

import logging
from enum import Enum

from threadchat.models.chat import ActiveRequest
from threadchat.services.events import (
    EventBus,
    RequestCancelled,
    RequestCompleted,
    RequestStarted,
)

logger = logging.getLogger(__name__)


class RequestState(str, Enum):
    IDLE = "idle"
    PENDING = "pending"
    COMPLETED = "completed"
    CANCELLED = "cancelled"


class ActiveRequestRegistry:
    def __init__(self, events: EventBus | None = None):
        self.events = events or EventBus()
        self._active: dict[str, ActiveRequest] = {}
        self._last: dict[str, RequestState] = {}

    def start(self, thread_id: str, message_id: str) -> ActiveRequest | None:
        """Claim the thread. Returns None (conflict) if it is already pending."""
        if thread_id in self._active:
            logger.info("Thread %s already has a pending request", thread_id)
            return None
        request = ActiveRequest(thread_id=thread_id, pending_message_id=message_id)
        self._active[thread_id] = request
        self._last[thread_id] = RequestState.PENDING
        self.events.publish(RequestStarted(thread_id=thread_id, message_id=message_id))
        return request

    def has(self, thread_id: str) -> bool:
        return thread_id in self._active

    def get(self, thread_id: str) -> ActiveRequest | None:
        return self._active.get(thread_id)

    def state(self, thread_id: str) -> RequestState:
        """Current state; the last terminal state is reported until the next start."""
        return self._last.get(thread_id, RequestState.IDLE)

    def pending_message_ids(self) -> set[str]:
        return {r.pending_message_id for r in self._active.values()}

    def cancel(self, thread_id: str) -> ActiveRequest | None:
        request = self._active.pop(thread_id, None)
        if request is None:
            return None
        self._last[thread_id] = RequestState.CANCELLED
        logger.info("Cancelled request on thread %s (message %s)", thread_id, request.pending_message_id)
        self.events.publish(
            RequestCancelled(thread_id=thread_id, message_id=request.pending_message_id)
        )
        return request

    def complete(self, thread_id: str, message_id: str | None = None) -> bool:
        """
        Release the thread if it is still pending (and, when given, still owned
        by `message_id`). False means the request was cancelled meanwhile and
        its result must be discarded.
        """
        request = self._active.get(thread_id)
        if request is None:
            return False
        if message_id is not None and request.pending_message_id != message_id:
            return False
        del self._active[thread_id]
        self._last[thread_id] = RequestState.COMPLETED
        self.events.publish(
            RequestCompleted(thread_id=thread_id, message_id=request.pending_message_id)
        )
        return True
