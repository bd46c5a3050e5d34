"""
Ingestion pipeline.

    RECEIVED → NORMALIZED → BUILT → CHANNELS_RESOLVED → PERSISTED → NOTIFIED → COMPLETE

Anything that fails before PERSISTED leaves no trace. Once the batch is
committed the call succeeds, whatever happens during notification.
"""
import logging
from datetime import datetime
from typing import Any, Optional

from .builder import build_items
from .normalizer import normalize_payload
from .notifier import FanoutNotifier
from .resolver import ChannelResolver
from .schema import IngestionResult, IngestionState
from .store import NewsdeckStore, projection_items

logger = logging.getLogger(__name__)


class IngestionService:
    """One instance per process; each ingest() call is independent."""

    def __init__(
        self,
        store: NewsdeckStore,
        resolver: ChannelResolver,
        notifier: FanoutNotifier,
    ):
        self.store = store
        self.resolver = resolver
        self.notifier = notifier

    def ingest(self, body: Any, now: Optional[datetime] = None) -> IngestionResult:
        """
        Run one payload through the pipeline.

        Raises:
            ValidationError: payload rejected, nothing stored.
            PersistenceError: write failed, nothing stored.
        """
        state = IngestionState.RECEIVED

        batch = normalize_payload(body)
        state = self._advance(state, IngestionState.NORMALIZED)

        items = build_items(batch, now=now)
        state = self._advance(state, IngestionState.BUILT)

        channel_ids = self.resolver.resolve(batch.channel_id, batch.producer_id)
        state = self._advance(state, IngestionState.CHANNELS_RESOLVED)

        totals = self.store.write_batch(items, channel_ids)
        state = self._advance(state, IngestionState.PERSISTED)

        try:
            # Subscribers see what the channels now hold
            self.notifier.notify(channel_ids, projection_items(items))
        except Exception as e:
            logger.error(f"Notification failed after commit: {e}")
        state = self._advance(state, IngestionState.NOTIFIED)

        result = IngestionResult(
            channel_id=batch.channel_id,
            producer_id=batch.producer_id,
            items_added=len(items),
            channels_updated=len(channel_ids),
            matching_channels=channel_ids,
            channel_totals=totals,
            inserted_items=items,
        )
        self._advance(state, IngestionState.COMPLETE)
        logger.info(
            f"Ingested {result.items_added} items into {result.channels_updated} channels "
            f"(channel={batch.channel_id}, producer={batch.producer_id})"
        )
        return result

    @staticmethod
    def _advance(current: IngestionState, new: IngestionState) -> IngestionState:
        logger.debug(f"ingestion {current.value} -> {new.value}")
        return new
