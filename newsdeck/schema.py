"""
Newsdeck data model.

CanonicalItem is the immutable record of one ingested event. Channel and
ChannelGroup mirror the dashboard/column data owned by the directory; the
ingestion core only reads them to resolve producer bindings.

Wire format (to_dict) uses camelCase keys, matching what producers send.
"""
from enum import Enum
from dataclasses import dataclass, field
from typing import Optional, List, Dict, Any


class IngestionState(Enum):
    """Stages of one ingestion call, in order."""
    RECEIVED = "received"
    NORMALIZED = "normalized"
    BUILT = "built"
    CHANNELS_RESOLVED = "channels_resolved"
    PERSISTED = "persisted"
    NOTIFIED = "notified"
    COMPLETE = "complete"


@dataclass(frozen=True)
class CanonicalItem:
    """One ingested event. Created once, never mutated."""

    # Identity
    internal_id: str                   # uuid4, system-generated
    producer_id: str                   # workflow / binding the item came from
    title: str
    external_id: Optional[str] = None  # producer-supplied, not unique

    # Content
    source: str = "workflows"
    description: Optional[str] = None
    priority: int = 3                  # 0..5
    category: Optional[str] = None
    severity: Optional[str] = None
    location: Optional[Dict[str, Any]] = None
    source_url: Optional[str] = None

    # Metadata
    extra: Dict[str, Any] = field(default_factory=dict)
    raw: Dict[str, Any] = field(default_factory=dict)
    created_at: str = ""               # ingestion time, shared by the batch
    event_timestamp: str = ""          # producer time or ingestion time

    @property
    def coordinates(self) -> Optional[List[float]]:
        if self.location:
            return self.location.get("coordinates")
        return None

    def location_code(self, key: str) -> Optional[str]:
        """countryCode / regionCode / municipalityCode, if present as a string."""
        if not self.location:
            return None
        value = self.location.get(key)
        return value if isinstance(value, str) and value else None

    def to_dict(self) -> Dict[str, Any]:
        return {
            "internalId": self.internal_id,
            "externalId": self.external_id,
            "producerId": self.producer_id,
            "source": self.source,
            "title": self.title,
            "description": self.description,
            "priority": self.priority,
            "category": self.category,
            "severity": self.severity,
            "location": self.location,
            "sourceUrl": self.source_url,
            "extra": self.extra,
            "raw": self.raw,
            "createdAt": self.created_at,
            "eventTimestamp": self.event_timestamp,
        }

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> "CanonicalItem":
        return cls(
            internal_id=data["internalId"],
            producer_id=data.get("producerId", ""),
            title=data.get("title", ""),
            external_id=data.get("externalId"),
            source=data.get("source") or "workflows",
            description=data.get("description"),
            priority=int(data.get("priority", 3)),
            category=data.get("category"),
            severity=data.get("severity"),
            location=data.get("location"),
            source_url=data.get("sourceUrl"),
            extra=data.get("extra") or {},
            raw=data.get("raw") or {},
            created_at=data.get("createdAt", ""),
            event_timestamp=data.get("eventTimestamp", ""),
        )


@dataclass
class Channel:
    """A delivery destination ("column") inside a channel group."""
    id: str
    producer_binding: Optional[str] = None
    archived: bool = False
    title: str = ""

    def to_dict(self) -> Dict[str, Any]:
        return {
            "id": self.id,
            "title": self.title,
            "producerBinding": self.producer_binding,
            "archived": self.archived,
        }

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> "Channel":
        """Deserialize, accepting the legacy flowId / isArchived keys."""
        binding = data.get("producerBinding")
        if binding is None:
            binding = data.get("flowId")
        archived = data.get("archived")
        if archived is None:
            archived = data.get("isArchived", False)
        return cls(
            id=str(data["id"]),
            producer_binding=binding if isinstance(binding, str) and binding else None,
            archived=bool(archived),
            title=data.get("title", ""),
        )


@dataclass
class ChannelGroup:
    """An owning collection of channels ("dashboard")."""
    id: str
    name: str = ""
    channels: List[Channel] = field(default_factory=list)

    def active_channels(self) -> List[Channel]:
        return [c for c in self.channels if not c.archived]

    def to_dict(self) -> Dict[str, Any]:
        return {
            "id": self.id,
            "name": self.name,
            "channels": [c.to_dict() for c in self.channels],
        }

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> "ChannelGroup":
        # Older groups store their channels under "columns"
        channels = data.get("channels")
        if channels is None:
            channels = data.get("columns", [])
        return cls(
            id=str(data["id"]),
            name=data.get("name", ""),
            channels=[Channel.from_dict(c) for c in channels or []],
        )


@dataclass
class IngestionResult:
    """Outcome of one ingestion call, returned to the producer."""
    channel_id: Optional[str]
    producer_id: Optional[str]
    items_added: int
    channels_updated: int
    matching_channels: List[str]
    channel_totals: Dict[str, int]
    inserted_items: List[CanonicalItem]

    def to_dict(self) -> Dict[str, Any]:
        result: Dict[str, Any] = {}
        if self.channel_id is not None:
            result["channelId"] = self.channel_id
        if self.producer_id is not None:
            result["producerId"] = self.producer_id
        result.update({
            "itemsAdded": self.items_added,
            "channelsUpdated": self.channels_updated,
            "matchingChannels": self.matching_channels,
            "channelTotals": self.channel_totals,
            "insertedItems": [i.to_dict() for i in self.inserted_items],
        })
        return result
