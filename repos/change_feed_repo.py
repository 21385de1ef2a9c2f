import asyncio
import logging
from threading import Lock
from typing import Callable, Dict, List

from models.session_models import ChangeEvent

logger = logging.getLogger(__name__)

ChangeCallback = Callable[[ChangeEvent], None]


def room_topic(room_name: str) -> str:
    return f"room:{room_name}"


def session_topic(session_id: str) -> str:
    return f"session:{session_id}"


class Subscription:
    """
    One subscriber on one topic. Events are queued on the loop that created the
    subscription and handed to the callback in publish order.
    """

    def __init__(self, feed: "ChangeFeed", topic: str, callback: ChangeCallback):
        self.feed = feed
        self.topic = topic
        self.callback = callback
        self.closed = False
        self._loop = asyncio.get_running_loop()
        self._queue: asyncio.Queue = asyncio.Queue()
        self._task = self._loop.create_task(self._run())

    async def _run(self):
        while True:
            event = await self._queue.get()
            try:
                if not self.closed:
                    self.callback(event)
            except Exception:
                logger.exception(f"Change feed callback failed on {self.topic}")
            finally:
                self._queue.task_done()

    def deliver(self, event: ChangeEvent):
        if self.closed:
            return
        try:
            running = asyncio.get_running_loop()
        except RuntimeError:
            running = None

        if running is self._loop:
            self._queue.put_nowait(event)
            return
        try:
            self._loop.call_soon_threadsafe(self._queue.put_nowait, event)
        except RuntimeError:
            logger.warning(f"Dropped {event.type.value} on {self.topic}: subscriber loop is closed")

    async def flush(self):
        """Wait until every event queued so far has been handed to the callback"""
        if not self.closed:
            await self._queue.join()

    def close(self) -> bool:
        """Release the subscription. Returns False if it was already released."""
        if self.closed:
            return False
        self.closed = True
        self._task.cancel()
        while not self._queue.empty():
            self._queue.get_nowait()
            self._queue.task_done()
        self.feed._remove(self)
        logger.info(f"Unsubscribed from {self.topic}")
        return True


class ChangeFeed:
    """In-process insert/update/delete notifications keyed by topic"""

    def __init__(self):
        self._subscribers: Dict[str, List[Subscription]] = {}
        self._lock = Lock()

    def subscribe(self, topic: str, callback: ChangeCallback) -> Subscription:
        subscription = Subscription(self, topic, callback)
        with self._lock:
            self._subscribers.setdefault(topic, []).append(subscription)
        logger.info(f"Subscribed to {topic}")
        return subscription

    def publish(self, event: ChangeEvent):
        with self._lock:
            targets = list(self._subscribers.get(event.topic, []))
        for subscription in targets:
            subscription.deliver(event)

    def subscriber_count(self, topic: str) -> int:
        with self._lock:
            return len(self._subscribers.get(topic, []))

    def _remove(self, subscription: Subscription):
        with self._lock:
            subscribers = self._subscribers.get(subscription.topic, [])
            if subscription in subscribers:
                subscribers.remove(subscription)
            if not subscribers:
                self._subscribers.pop(subscription.topic, None)
