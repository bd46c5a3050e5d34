# Newsdeck — payload normalizer
#
# Producers have sent several envelope shapes over time. Each shape gets a
# small pure detector; the first one that matches wins and everything
# downstream sees a single NormalizedPayload.
#
# SHAPES:
#   flat          { channelId|producerId, items: [...], extra }
#   data-wrapped  { "data-0": {...}, "data-1": { items: [...], events: {...} } }
#
# IDENTIFIERS (highest priority first):
#   channelId > producerId > events.{channelId|producerId} > flowId

from dataclasses import dataclass, field
from typing import Optional, List, Dict, Any, Callable, Tuple

from .errors import ValidationError

DATA_KEY_PREFIX = "data-"

# Accepted spellings per identifier; the first is the current name
CHANNEL_KEYS = ("channelId", "columnId")
PRODUCER_KEYS = ("producerId", "workflowId")


@dataclass
class NormalizedPayload:
    """Canonical form of an ingestion request body."""
    items: List[Any]
    channel_id: Optional[str] = None
    producer_id: Optional[str] = None
    extra: Dict[str, Any] = field(default_factory=dict)


def _is_record(value: Any) -> bool:
    return isinstance(value, dict)


def _optional_id(value: Any) -> Optional[str]:
    """Identifier strings are stripped; blank or non-string means absent."""
    if isinstance(value, str):
        stripped = value.strip()
        return stripped or None
    return None


def _first_id(record: Dict[str, Any], keys: Tuple[str, ...]) -> Optional[str]:
    for key in keys:
        value = _optional_id(record.get(key))
        if value:
            return value
    return None


# ═══════════════════════════════════════════════════════════════
# SHAPE DETECTORS — body -> effective payload, or None
# ═══════════════════════════════════════════════════════════════

def detect_flat(body: Dict[str, Any]) -> Optional[Dict[str, Any]]:
    if isinstance(body.get("items"), list):
        return body
    return None


def detect_data_wrapped(body: Dict[str, Any]) -> Optional[Dict[str, Any]]:
    """First data-<n> sibling that holds an items array, in key order."""
    for key, value in body.items():
        if not key.startswith(DATA_KEY_PREFIX):
            continue
        if _is_record(value) and isinstance(value.get("items"), list):
            return value
    return None


SHAPE_DETECTORS: List[Callable[[Dict[str, Any]], Optional[Dict[str, Any]]]] = [
    detect_flat,
    detect_data_wrapped,
]


def effective_payload(body: Dict[str, Any]) -> Dict[str, Any]:
    for detector in SHAPE_DETECTORS:
        payload = detector(body)
        if payload is not None:
            return payload
    return body


# ═══════════════════════════════════════════════════════════════
# IDENTIFIER EXTRACTORS — payload -> (channel_id, producer_id)
# ═══════════════════════════════════════════════════════════════

def explicit_ids(payload: Dict[str, Any]) -> Tuple[Optional[str], Optional[str]]:
    return _first_id(payload, CHANNEL_KEYS), _first_id(payload, PRODUCER_KEYS)


def nested_event_ids(payload: Dict[str, Any]) -> Tuple[Optional[str], Optional[str]]:
    events = payload.get("events")
    if not _is_record(events):
        return None, None
    return _first_id(events, CHANNEL_KEYS), _first_id(events, PRODUCER_KEYS)


def legacy_flow_id(payload: Dict[str, Any]) -> Tuple[Optional[str], Optional[str]]:
    return None, _optional_id(payload.get("flowId"))


ID_EXTRACTORS = [explicit_ids, nested_event_ids, legacy_flow_id]


def extract_ids(payload: Dict[str, Any]) -> Tuple[Optional[str], Optional[str]]:
    """Walk the extractors; earlier ones win per identifier."""
    channel_id: Optional[str] = None
    producer_id: Optional[str] = None
    for extractor in ID_EXTRACTORS:
        found_channel, found_producer = extractor(payload)
        channel_id = channel_id or found_channel
        producer_id = producer_id or found_producer
    return channel_id, producer_id


def normalize_payload(body: Any) -> NormalizedPayload:
    """
    Turn a raw request body into a NormalizedPayload.

    Raises:
        ValidationError: body is not an object, has no items array,
            or carries neither a channel id nor a producer id.
    """
    if not _is_record(body):
        raise ValidationError("Request body must be a JSON object")

    payload = effective_payload(body)
    channel_id, producer_id = extract_ids(payload)

    items = payload.get("items")
    if not isinstance(items, list):
        raise ValidationError("items array is required in request body")

    if not channel_id and not producer_id:
        raise ValidationError("Either channelId or producerId is required in request body")

    extra = payload.get("extra")
    return NormalizedPayload(
        items=items,
        channel_id=channel_id,
        producer_id=producer_id,
        extra=dict(extra) if _is_record(extra) else {},
    )
