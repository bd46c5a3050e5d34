# Newsdeck — live stream endpoint
#
# One ChannelStream per subscriber per channel. Frames are Server-Sent Events:
#   data: {"type": "connected", "channelId": "..."}
#   data: {"type": "update", "channelId": "...", "items": [...]}
#   : heartbeat
#
# The read cursor is taken when the stream is opened. Items queued before
# that are never replayed, and nothing is kept for a closed subscriber.

import json
import logging
from dataclasses import dataclass, field
from typing import Any, Dict, Iterator, List, Optional, Tuple

from .delivery import LocalDeliveryQueue

logger = logging.getLogger(__name__)

HEARTBEAT_FRAME = ": heartbeat\n\n"
SSE_HEADERS = {
    "Cache-Control": "no-cache, no-transform",
    "Connection": "keep-alive",
    "X-Accel-Buffering": "no",
}


def sse_frame(payload: Dict[str, Any]) -> str:
    return f"data: {json.dumps(payload)}\n\n"


@dataclass
class GeoFilter:
    """Region / municipality filter applied to streamed items."""
    region_codes: List[str] = field(default_factory=list)
    municipality_codes: List[str] = field(default_factory=list)
    show_items_without_location: bool = False

    @property
    def active(self) -> bool:
        return bool(self.region_codes or self.municipality_codes)

    @classmethod
    def from_args(cls, args: Any) -> Optional["GeoFilter"]:
        """Build from a request's query args (a werkzeug MultiDict)."""
        geo = cls(
            region_codes=args.getlist("regionCode"),
            municipality_codes=args.getlist("municipalityCode"),
            show_items_without_location=args.get("showItemsWithoutLocation") == "true",
        )
        return geo if geo.active else None

    def matches(self, item: Dict[str, Any]) -> bool:
        location = item.get("location") or {}
        region = location.get("regionCode")
        municipality = location.get("municipalityCode")
        if not (location.get("countryCode") or region or municipality):
            return self.show_items_without_location

        if self.municipality_codes:
            if municipality and municipality in self.municipality_codes:
                return True
            # Region-wide events count for a region the user picked
            return bool(region and not municipality and region in self.region_codes)

        return bool(region and region in self.region_codes)

    def apply(self, items: List[Dict[str, Any]]) -> List[Dict[str, Any]]:
        return [i for i in items if self.matches(i)]


def _filtered(items: List[Dict[str, Any]], geo: Optional[GeoFilter]) -> List[Dict[str, Any]]:
    return geo.apply(items) if geo else items


class ChannelStream:
    """SSE frame generator for one subscriber on one channel."""

    def __init__(
        self,
        queue: LocalDeliveryQueue,
        channel_id: str,
        heartbeat_secs: float = 30.0,
        geo: Optional[GeoFilter] = None,
    ):
        self.queue = queue
        self.channel_id = channel_id
        self.heartbeat_secs = heartbeat_secs
        self.geo = geo
        self.cursor = queue.cursor()

    def events(self) -> Iterator[str]:
        logger.info(f"Stream opened for channel {self.channel_id}")
        yield sse_frame({"type": "connected", "channelId": self.channel_id})
        try:
            while True:
                items, self.cursor = self.queue.wait_for_items(
                    self.channel_id, self.cursor, self.heartbeat_secs
                )
                items = _filtered(items, self.geo)
                if items:
                    yield sse_frame({
                        "type": "update",
                        "channelId": self.channel_id,
                        "items": items,
                    })
                else:
                    yield HEARTBEAT_FRAME
        finally:
            logger.info(f"Stream closed for channel {self.channel_id}")


def wait_for_updates(
    queue: LocalDeliveryQueue,
    channel_id: str,
    last_seen: Optional[int],
    timeout: float,
    geo: Optional[GeoFilter] = None,
) -> Tuple[List[Dict[str, Any]], int]:
    """
    Long-poll: items after last_seen (everything still queued if None),
    or an empty list once the timeout passes. Returns (items, cursor).
    """
    items, cursor = queue.wait_for_items(channel_id, last_seen or 0, timeout)
    return _filtered(items, geo), cursor
