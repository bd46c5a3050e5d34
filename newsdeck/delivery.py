# Newsdeck — local delivery queue
#
# In-process fan-out to stream and long-poll subscribers.
#
# Each channel keeps a short FIFO of updates. A global sequence number acts
# as the subscriber cursor: a subscriber asks for "everything after seq N"
# and gets back the items plus its new cursor.
#
# Retention: at most max_updates per channel and nothing older than
# max_age_secs; the oldest updates are dropped first. The publisher never
# waits on subscribers.

import logging
import threading
import time
from collections import deque
from dataclasses import dataclass, field
from typing import Any, Callable, Deque, Dict, Iterable, List, Set, Tuple

logger = logging.getLogger(__name__)

DEFAULT_MAX_UPDATES = 100
DEFAULT_MAX_AGE_SECS = 5 * 60


@dataclass
class QueuedUpdate:
    """One batch of items delivered to one channel."""
    seq: int
    items: List[Dict[str, Any]]
    timestamp: float
    item_ids: Set[str] = field(default_factory=set)


class LocalDeliveryQueue:
    """Thread-safe per-channel update queue with blocking waits."""

    def __init__(
        self,
        max_updates: int = DEFAULT_MAX_UPDATES,
        max_age_secs: float = DEFAULT_MAX_AGE_SECS,
        clock: Callable[[], float] = time.monotonic,
    ):
        self.max_updates = max_updates
        self.max_age_secs = max_age_secs
        self._clock = clock
        self._queues: Dict[str, Deque[QueuedUpdate]] = {}
        self._seq = 0
        self._cond = threading.Condition()

    def add_items(self, channel_ids: Iterable[str], items: List[Dict[str, Any]]) -> int:
        """
        Queue items for each channel and wake waiting subscribers.

        Items already queued for a channel (same internalId) are skipped for
        that channel. Returns the sequence number assigned, 0 if nothing
        was queued.
        """
        channel_ids = list(channel_ids)
        queued = 0
        with self._cond:
            now = self._clock()
            for channel_id in channel_ids:
                queue = self._queues.setdefault(channel_id, deque(maxlen=self.max_updates))
                self._trim(queue, now)
                fresh = self._unseen(queue, items)
                if not fresh:
                    continue
                self._seq += 1
                queue.append(QueuedUpdate(
                    seq=self._seq,
                    items=fresh,
                    timestamp=now,
                    item_ids={i.get("internalId") for i in fresh if i.get("internalId")},
                ))
                queued = self._seq
            if queued:
                self._cond.notify_all()
        if queued:
            logger.debug(f"Queued {len(items)} items for {channel_ids}")
        return queued

    @staticmethod
    def _unseen(queue: Deque[QueuedUpdate], items: List[Dict[str, Any]]) -> List[Dict[str, Any]]:
        seen: Set[str] = set()
        for update in queue:
            seen |= update.item_ids
        return [i for i in items if not i.get("internalId") or i.get("internalId") not in seen]

    def _trim(self, queue: Deque[QueuedUpdate], now: float) -> None:
        cutoff = now - self.max_age_secs
        while queue and queue[0].timestamp < cutoff:
            queue.popleft()

    def cursor(self) -> int:
        """Current sequence number; a new subscriber starts here (no replay)."""
        with self._cond:
            return self._seq

    def items_since(self, channel_id: str, after_seq: int) -> Tuple[List[Dict[str, Any]], int]:
        """Items queued for a channel after a cursor, and the new cursor."""
        with self._cond:
            return self._collect(channel_id, self._valid_cursor(after_seq))

    def _valid_cursor(self, after_seq: int) -> int:
        """
        A cursor ahead of this queue was issued by another process or before
        a restart; it reads as 0 so nothing queued here is held back.
        """
        if after_seq > self._seq:
            logger.debug(f"Cursor {after_seq} is ahead of {self._seq}, reading from start")
            return 0
        return after_seq

    def _collect(self, channel_id: str, after_seq: int) -> Tuple[List[Dict[str, Any]], int]:
        queue = self._queues.get(channel_id)
        if not queue:
            return [], max(after_seq, 0)
        self._trim(queue, self._clock())
        items: List[Dict[str, Any]] = []
        last = after_seq
        for update in queue:
            if update.seq > after_seq:
                items.extend(update.items)
                last = update.seq
        return items, last

    def wait_for_items(
        self,
        channel_id: str,
        after_seq: int,
        timeout: float,
    ) -> Tuple[List[Dict[str, Any]], int]:
        """
        Block until the channel has items after the cursor or the timeout
        passes. Returns ([], cursor) on timeout.
        """
        deadline = time.monotonic() + timeout
        with self._cond:
            after_seq = self._valid_cursor(after_seq)
            while True:
                items, last = self._collect(channel_id, after_seq)
                if items:
                    return items, last
                remaining = deadline - time.monotonic()
                if remaining <= 0:
                    return [], after_seq
                self._cond.wait(remaining)

    def stats(self) -> Dict[str, int]:
        with self._cond:
            return {
                "queuedChannels": len(self._queues),
                "totalQueuedItems": sum(
                    len(u.items) for q in self._queues.values() for u in q
                ),
                "cursor": self._seq,
            }

    def clear(self) -> None:
        """Drop everything queued; waiting subscribers keep waiting."""
        with self._cond:
            self._queues.clear()
        logger.info("Delivery queue cleared")
