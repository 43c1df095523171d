"""
Live-Location Broadcaster

Fans a session's location out to the viewers allowed to see it at publish
time: recipients holding a valid sharing grant, plus staff on the security
topic while the session is in emergency. Grants are read from the session on
every publish and never cached here.

Publishing never blocks the caller. Each subscriber topic has a bounded queue
drained by its own pump task; when a queue is full the oldest pending update
is dropped, since only the latest location is authoritative.
A topic's queue and pump are dropped once the queue runs empty.
"""

import asyncio
import logging
from collections import deque
from dataclasses import dataclass
from datetime import datetime
from typing import Any, Deque, Dict, List, Optional

from ...core.clock import Clock, to_timestamp
from ...models.safety import SafetySession, SessionStatus
from .publisher import RealtimePublisher, SECURITY_TOPIC, user_topic


@dataclass
class QueuedUpdate:
    """Update waiting to be published to one topic"""
    topic: str
    payload: Dict[str, Any]
    queued_at: datetime


class SubscriberQueue:
    """
    Bounded FIFO for one subscriber topic.

    Features:
    - Maximum size enforcement, dropping the oldest entry on overflow
    - Non-blocking put
    - Statistics tracking
    """

    def __init__(self, topic: str, max_size: int = 10, logger: Optional[logging.Logger] = None):
        if max_size < 1:
            raise ValueError(f"Queue size must be at least 1, got {max_size}")
        self.topic = topic
        self.max_size = max_size
        self.logger = logger or logging.getLogger(__name__)
        self._items: Deque[QueuedUpdate] = deque()

        self._stats = {
            'enqueued': 0,
            'dequeued': 0,
            'overflow_drops': 0,
        }

    def put_nowait(self, update: QueuedUpdate) -> Optional[QueuedUpdate]:
        """
        Add an update, evicting the oldest one if the queue is full.

        Returns:
            The dropped update, or None if nothing was dropped
        """
        dropped = None
        if len(self._items) >= self.max_size:
            dropped = self._items.popleft()
            self._stats['overflow_drops'] += 1
            self.logger.debug(
                f"Queue overflow: dropped oldest update - topic={self.topic}, "
                f"queued_at={to_timestamp(dropped.queued_at)}, queue_size={len(self._items)}/{self.max_size}"
            )

        self._items.append(update)
        self._stats['enqueued'] += 1
        return dropped

    def get_nowait(self) -> Optional[QueuedUpdate]:
        if not self._items:
            return None
        self._stats['dequeued'] += 1
        return self._items.popleft()

    def size(self) -> int:
        return len(self._items)

    def is_empty(self) -> bool:
        return not self._items

    def get_stats(self) -> Dict[str, int]:
        return {**self._stats, 'current_size': len(self._items), 'max_size': self.max_size}


class LiveLocationBroadcaster:
    """Non-blocking location fan-out over the real-time publisher"""

    def __init__(self, publisher: RealtimePublisher, clock: Clock, queue_size: int = 10):
        self.logger = logging.getLogger(__name__)
        self.publisher = publisher
        self.clock = clock
        self.queue_size = queue_size

        self._queues: Dict[str, SubscriberQueue] = {}
        self._pumps: Dict[str, asyncio.Task] = {}
        self._retired = {'enqueued': 0, 'dequeued': 0, 'overflow_drops': 0}

    def targets_for(self, session: SafetySession, now: Optional[datetime] = None) -> List[str]:
        """Topics allowed to receive this session's location right now"""
        now = now or self.clock.now()
        targets = []
        for grant in session.valid_grants(now):
            topic = user_topic(grant.recipient_id)
            if topic not in targets:
                targets.append(topic)

        if session.status == SessionStatus.EMERGENCY:
            targets.append(SECURITY_TOPIC)

        return targets

    def publish_location(self, session: SafetySession) -> List[str]:
        """
        Queue the session's current location for every allowed viewer.

        Must be called from a running event loop; returns immediately.

        Returns:
            Topics the update was queued for
        """
        if session.current_location is None:
            return []

        now = self.clock.now()
        targets = self.targets_for(session, now)
        if not targets:
            return []

        payload = {
            'type': 'location_update',
            'session_id': session.id,
            'owner_id': session.owner_id,
            'mode': session.mode.value,
            'status': session.status.value,
            'location': session.current_location.to_dict(),
            'timestamp': to_timestamp(now)
        }

        for topic in targets:
            queue = self._queues.get(topic)
            if queue is None:
                queue = SubscriberQueue(topic, self.queue_size, self.logger)
                self._queues[topic] = queue

            queue.put_nowait(QueuedUpdate(topic=topic, payload=payload, queued_at=now))
            self._ensure_pump(topic)

        self.logger.debug(f"Queued location of session {session.id} for {len(targets)} viewer(s)")
        return targets

    def _ensure_pump(self, topic: str):
        pump = self._pumps.get(topic)
        if pump is None or pump.done():
            self._pumps[topic] = asyncio.create_task(self._pump(topic))

    async def _pump(self, topic: str):
        queue = self._queues[topic]
        while True:
            update = queue.get_nowait()
            if update is None:
                self._retire(topic, queue)
                break
            try:
                await self.publisher.publish(topic, update.payload)
            except asyncio.CancelledError:
                raise
            except Exception as e:
                self.logger.warning(f"Failed to publish location on {topic}: {e}")

    def _retire(self, topic: str, queue: SubscriberQueue):
        # Nothing awaits between here and the pump returning; a later publish
        # starts a fresh queue and pump.
        stats = queue.get_stats()
        for key in self._retired:
            self._retired[key] += stats[key]
        if self._queues.get(topic) is queue:
            del self._queues[topic]
        if self._pumps.get(topic) is asyncio.current_task():
            del self._pumps[topic]

    async def drain(self):
        """Wait until every queued update has been published"""
        while self._pumps:
            await asyncio.gather(*list(self._pumps.values()), return_exceptions=True)
            for topic, pump in list(self._pumps.items()):
                if pump.done():
                    del self._pumps[topic]

    async def close(self):
        pumps = list(self._pumps.values())
        for pump in pumps:
            pump.cancel()
        await asyncio.gather(*pumps, return_exceptions=True)
        self._pumps.clear()
        self._queues.clear()

    def get_statistics(self) -> Dict[str, Any]:
        """Totals across all topics, plus per-topic stats for topics with a live queue"""
        totals = dict(self._retired)
        topics = {topic: queue.get_stats() for topic, queue in self._queues.items()}
        for stats in topics.values():
            for key in totals:
                totals[key] += stats[key]
        return {**totals, 'topics': topics}
