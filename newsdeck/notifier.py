# Newsdeck — fan-out notifier
#
# Runs after the batch is committed. Two independent paths:
#   broadcast  → BroadcastTransport.publish on a daemon thread
#   local      → LocalDeliveryQueue.add_items inline (memory append only)
# Neither path raises into the ingestion call and neither retries.

import logging
import threading
from typing import List, Optional, Sequence

from .broadcast import BroadcastTransport, NullBroadcastTransport
from .delivery import LocalDeliveryQueue
from .schema import CanonicalItem

logger = logging.getLogger(__name__)


class FanoutNotifier:
    """Publishes freshly persisted items to subscribers. Never raises."""

    def __init__(
        self,
        transport: Optional[BroadcastTransport] = None,
        queue: Optional[LocalDeliveryQueue] = None,
    ):
        self.transport = transport or NullBroadcastTransport()
        self.queue = queue or LocalDeliveryQueue()
        self._threads: List[threading.Thread] = []
        self._lock = threading.Lock()

    def notify(self, channel_ids: Sequence[str], items: Sequence[CanonicalItem]) -> None:
        if not channel_ids or not items:
            logger.debug("Nothing to notify")
            return

        channel_ids = list(channel_ids)
        payload = [item.to_dict() for item in items]

        self._broadcast(channel_ids, payload)

        try:
            self.queue.add_items(channel_ids, payload)
        except Exception as e:
            logger.error(
                f"Local delivery failed for {channel_ids} ({len(payload)} items): {e}"
            )

    def _broadcast(self, channel_ids: List[str], payload: List[dict]) -> None:
        def _publish():
            try:
                self.transport.publish(channel_ids, payload)
            except Exception as e:
                logger.error(f"Broadcast failed for {channel_ids}: {e}")

        thread = threading.Thread(target=_publish, name="newsdeck-broadcast", daemon=True)
        try:
            thread.start()
        except RuntimeError as e:
            logger.error(f"Could not start broadcast thread: {e}")
            return
        with self._lock:
            self._threads = [t for t in self._threads if t.is_alive()]
            self._threads.append(thread)

    def join(self, timeout: Optional[float] = None) -> None:
        """Wait for in-flight broadcasts (shutdown and tests)."""
        with self._lock:
            threads = list(self._threads)
        for thread in threads:
            thread.join(timeout)
