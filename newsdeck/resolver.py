"""
Channel resolver: which channels receive a batch.

    explicit channel id  → exactly that channel
    producer id          → every non-archived channel, in any group,
                           whose producer binding equals the producer id
"""
import logging
from typing import List, Optional

from .directory import ChannelDirectory
from .errors import ValidationError

logger = logging.getLogger(__name__)


class ChannelResolver:
    """Resolves target channel ids against a channel-group directory."""

    def __init__(self, directory: ChannelDirectory):
        self.directory = directory

    def resolve(self, channel_id: Optional[str], producer_id: Optional[str]) -> List[str]:
        """
        Return the target channel ids, deduplicated, first-seen order.

        An empty list is a valid result: the batch is still persisted,
        it just reaches no channel.
        """
        if channel_id:
            return [channel_id]
        if not producer_id:
            raise ValidationError("Unable to resolve producer or channel identifier from payload")

        matching = {}
        for group in self.directory.list_channel_groups():
            for channel in group.active_channels():
                if channel.producer_binding == producer_id:
                    matching.setdefault(channel.id, group.id)

        if not matching:
            logger.info(f"No channel bound to producer {producer_id}")
        return list(matching)
