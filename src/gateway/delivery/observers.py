"""Control-plane observer fan-out.

Observers are clients watching gateway activity (registry mutations,
ingress outcomes, deliveries, tunnel state). They are distinct from
target sessions: observers receive notifications, sessions receive
envelopes.

The observer map is guarded by one threading.Lock. emit() copies the
map under the lock and enqueues outside it, so a slow observer never
holds up the others. An observer whose queue is full is disconnected.

Source:
- src/gateway/notifications/emitter.py (NotificationEmitter)
- src/gateway/delivery/sse.py (format_sse_event)
"""

import asyncio
import logging
import threading
import uuid
from typing import AsyncIterator, Dict, List, Optional

from src.gateway.delivery.sse import format_sse_event
from src.gateway.notifications.emitter import NotificationEmitter
from src.gateway.notifications.models import Notification

logger = logging.getLogger(__name__)


DEFAULT_OBSERVER_QUEUE_SIZE = 64

# Queue sentinel ending an observer stream
_CLOSED = None


class ObserverHub(NotificationEmitter):
    """Broadcasts notifications to attached observers.

    Example:
        >>> hub = ObserverHub()
        >>> observer_id = hub.connect()
        >>> async for frame in hub.stream(observer_id):
        ...     send(frame)
    """

    def __init__(self, queue_size: int = DEFAULT_OBSERVER_QUEUE_SIZE):
        self.queue_size = queue_size
        self._lock = threading.Lock()
        self._observers: Dict[str, asyncio.Queue] = {}

    def connect(self, observer_id: Optional[str] = None) -> str:
        """Register an observer and return its id."""
        observer_id = observer_id or str(uuid.uuid4())
        queue: asyncio.Queue = asyncio.Queue(maxsize=self.queue_size)
        with self._lock:
            self._observers[observer_id] = queue
        logger.info("Observer connected", extra={"observer_id": observer_id})
        return observer_id

    def disconnect(self, observer_id: str) -> bool:
        """Remove an observer and end its stream.

        Returns:
            True if the observer was connected.
        """
        with self._lock:
            queue = self._observers.pop(observer_id, None)
        if queue is None:
            return False

        # Make room for the sentinel
        while not queue.empty():
            queue.get_nowait()
        queue.put_nowait(_CLOSED)

        logger.info("Observer disconnected", extra={"observer_id": observer_id})
        return True

    def snapshot(self) -> List[str]:
        """Ids of the currently connected observers."""
        with self._lock:
            return list(self._observers)

    def is_connected(self, observer_id: str) -> bool:
        with self._lock:
            return observer_id in self._observers

    async def emit(self, notification: Notification) -> None:
        with self._lock:
            observers = list(self._observers.items())

        message = notification.to_wire()
        for observer_id, queue in observers:
            try:
                queue.put_nowait(message)
            except asyncio.QueueFull:
                logger.warning(
                    "Observer queue full, disconnecting",
                    extra={"observer_id": observer_id, "queue_size": self.queue_size},
                )
                self.disconnect(observer_id)

    async def stream(self, observer_id: str) -> AsyncIterator[str]:
        """Yield SSE frames for an observer until it is disconnected.

        Raises:
            KeyError: If the observer is not connected.
        """
        with self._lock:
            queue = self._observers.get(observer_id)
        if queue is None:
            raise KeyError(observer_id)

        try:
            while True:
                message = await queue.get()
                if message is _CLOSED:
                    break
                yield format_sse_event(message, event=message["type"])
        finally:
            self.disconnect(observer_id)

    async def close(self) -> None:
        for observer_id in self.snapshot():
            self.disconnect(observer_id)
