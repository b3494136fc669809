"""Thread-safe registry of WebSocket subscribers for coordination change notices.

Notices carry no authoritative state; a subscriber that receives one re-reads
its whole thread list.
"""
import asyncio
import threading
import logging
import uuid
from dataclasses import dataclass, field
from typing import Dict, FrozenSet, Optional

logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class ChangeNotice:
    table: str
    action: str  # INSERT | UPDATE
    thread_id: str
    actor_id: str
    audience: FrozenSet[str] = field(default_factory=frozenset)

    def to_dict(self) -> dict:
        return {
            "table": self.table,
            "action": self.action,
            "thread_id": self.thread_id,
            "actor_id": self.actor_id,
        }


class Subscription:
    def __init__(self, user_id: str, loop: asyncio.AbstractEventLoop, max_pending: int):
        self.id = str(uuid.uuid4())
        self.user_id = user_id
        self.loop = loop
        self.queue: asyncio.Queue = asyncio.Queue(maxsize=max_pending)

    def _offer(self, notice: ChangeNotice) -> None:
        try:
            self.queue.put_nowait(notice)
        except asyncio.QueueFull:
            # A pending notice already forces a full refetch.
            logger.debug(f"Dropped notice for subscription {self.id}; queue full")

    async def next_notice(self) -> ChangeNotice:
        return await self.queue.get()


class ChangeNotifier:
    def __init__(self, max_pending: int = 32):
        self._lock = threading.Lock()
        self._subscriptions: Dict[str, Subscription] = {}
        self._max_pending = max_pending

    def subscribe(self, user_id: str) -> Subscription:
        """Register a subscriber. Must be called from inside the subscriber's event loop."""
        subscription = Subscription(user_id, asyncio.get_running_loop(), self._max_pending)
        with self._lock:
            self._subscriptions[subscription.id] = subscription
        logger.debug(f"Registered subscription {subscription.id} for user {user_id}")
        return subscription

    def unsubscribe(self, subscription: Subscription) -> None:
        with self._lock:
            self._subscriptions.pop(subscription.id, None)
        logger.debug(f"Unregistered subscription {subscription.id}")

    def subscriber_count(self, user_id: Optional[str] = None) -> int:
        with self._lock:
            if user_id is None:
                return len(self._subscriptions)
            return sum(1 for s in self._subscriptions.values() if s.user_id == user_id)

    def publish(self, notice: ChangeNotice) -> int:
        """Deliver notice to every subscriber in its audience. Returns number of deliveries."""
        with self._lock:
            targets = [s for s in self._subscriptions.values() if s.user_id in notice.audience]
        delivered = 0
        for subscription in targets:
            # Own event-log inserts are already reflected by the caller's refetch
            if notice.table == "thread_events" and subscription.user_id == notice.actor_id:
                continue
            try:
                subscription.loop.call_soon_threadsafe(subscription._offer, notice)
                delivered += 1
            except RuntimeError:
                logger.warning(f"Event loop closed for subscription {subscription.id}; dropping it")
                self.unsubscribe(subscription)
        return delivered

    def reset(self) -> None:
        with self._lock:
            self._subscriptions.clear()


_notifier = ChangeNotifier()


def get_notifier() -> ChangeNotifier:
    return _notifier
