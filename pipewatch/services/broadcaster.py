"""
Session Broadcaster
===================
Fans pipeline events out to everyone watching a session.

Contract used by the poller:
    emit(session_id, event_type, payload)

Delivery is best-effort. A slow subscriber whose queue is full loses the
event; nothing here ever raises back into the poller.

Notification Toggle:
    CICD_NOTIFICATIONS is consumed here, not by the poller. Terminal events
    (complete / stalled / error) carry notify=True when enabled so the UI
    can raise a desktop notification; status ticks never do.
"""
import asyncio
import logging
from typing import Any, Dict, Optional, Protocol, Set

from pipewatch.core.constants import EVENT_STATUS

logger = logging.getLogger(__name__)

SUBSCRIBER_QUEUE_SIZE = 100


class Broadcaster(Protocol):
    def emit(self, session_id: str, event_type: str, payload: Dict[str, Any]) -> None:
        ...


class SessionBroadcaster:
    """In-process pub/sub keyed by session id, one asyncio.Queue per subscriber."""

    def __init__(self, notifications_enabled: bool = True) -> None:
        self.notifications_enabled = notifications_enabled
        self._subscribers: Dict[str, Set[asyncio.Queue]] = {}

    def subscribe(self, session_id: str, maxsize: int = SUBSCRIBER_QUEUE_SIZE) -> asyncio.Queue:
        queue: asyncio.Queue = asyncio.Queue(maxsize=maxsize)
        self._subscribers.setdefault(session_id, set()).add(queue)
        logger.debug("Subscriber added for session %s", session_id)
        return queue

    def unsubscribe(self, session_id: str, queue: asyncio.Queue) -> None:
        queues = self._subscribers.get(session_id)
        if not queues:
            return
        queues.discard(queue)
        if not queues:
            del self._subscribers[session_id]

    def subscriber_count(self, session_id: Optional[str] = None) -> int:
        if session_id is not None:
            return len(self._subscribers.get(session_id, ()))
        return sum(len(q) for q in self._subscribers.values())

    def emit(self, session_id: str, event_type: str, payload: Dict[str, Any]) -> None:
        envelope = {
            "type": event_type,
            "sessionId": session_id,
            "notify": self.notifications_enabled and event_type != EVENT_STATUS,
            **payload,
        }
        for queue in list(self._subscribers.get(session_id, ())):
            try:
                queue.put_nowait(envelope)
            except asyncio.QueueFull:
                logger.warning("Dropping %s for session %s: subscriber queue full", event_type, session_id)
