# Newsdeck — item builder
#
# Raw producer items -> CanonicalItem.
#
# SCHEMA RULES:
#   - Every canonical field is read through its FieldRule in ITEM_SCHEMA:
#     input keys in priority order, an acceptance check, an optional
#     conversion and a default
#   - A key whose value fails the check is skipped and the next key is tried
#   - The whole batch is validated before any item is built
#   - Nothing is trimmed; values are kept exactly as the producer sent them
#   - priority is always an int in [0, 5]

import math
import uuid
from dataclasses import dataclass, field
from datetime import datetime, timezone
from typing import Optional, List, Dict, Any, Tuple, Callable
from urllib.parse import urlparse

from .errors import ValidationError
from .normalizer import NormalizedPayload
from .schema import CanonicalItem

DEFAULT_PRIORITY = 3
MIN_PRIORITY = 0
MAX_PRIORITY = 5
DEFAULT_SOURCE = "workflows"


@dataclass(frozen=True)
class BuildContext:
    """What defaults may depend on: the batch and its ingestion time."""
    batch: NormalizedPayload
    created_at: str


def _non_empty_string(value: Any) -> bool:
    return isinstance(value, str) and value.strip() != ""


def _is_string(value: Any) -> bool:
    return isinstance(value, str)


def _is_record(value: Any) -> bool:
    return isinstance(value, dict)


def _is_number(value: Any) -> bool:
    return isinstance(value, (int, float)) and not isinstance(value, bool)


def _is_finite_number(value: Any) -> bool:
    return _is_number(value) and math.isfinite(value)


def is_absolute_url(value: str) -> bool:
    parsed = urlparse(value)
    return parsed.scheme in ("http", "https") and bool(parsed.netloc)


@dataclass(frozen=True)
class FieldRule:
    """
    How one canonical field is read from a raw item.

    default is either a value or a callable taking a BuildContext.
    key_checks adds a stricter check for individual keys.
    """
    name: str
    keys: Tuple[str, ...]
    accept: Callable[[Any], bool] = _non_empty_string
    convert: Optional[Callable[[Any], Any]] = None
    default: Any = None
    required: bool = False
    key_checks: Dict[str, Callable[[Any], bool]] = field(default_factory=dict)

    def accepts(self, key: str, value: Any) -> bool:
        if not self.accept(value):
            return False
        check = self.key_checks.get(key)
        return check(value) if check else True

    def default_for(self, ctx: BuildContext) -> Any:
        return self.default(ctx) if callable(self.default) else self.default


_MISSING = object()


def _read(raw: Dict[str, Any], rule: FieldRule) -> Any:
    """First acceptable value among the rule's keys, or _MISSING."""
    for key in rule.keys:
        if key in raw and rule.accepts(key, raw[key]):
            return raw[key]
    return _MISSING


def _resolve(raw: Dict[str, Any], rule: FieldRule, ctx: BuildContext) -> Any:
    value = _read(raw, rule)
    if value is _MISSING:
        return rule.default_for(ctx)
    return rule.convert(value) if rule.convert else value


def utc_now() -> datetime:
    return datetime.now(timezone.utc)


def iso(ts: datetime) -> str:
    """ISO-8601 UTC with millisecond precision."""
    return ts.astimezone(timezone.utc).isoformat(timespec="milliseconds").replace("+00:00", "Z")


# ── Field normalizers ────────────────────────────────────────────────────────

def clamp_priority(value: Any) -> int:
    """Numbers are rounded and clamped to [0, 5]; anything else gets the default."""
    if not _is_finite_number(value):
        return DEFAULT_PRIORITY
    return max(MIN_PRIORITY, min(MAX_PRIORITY, int(round(value))))


def _parse_pair(text: str) -> Optional[List[float]]:
    parts = text.split(",")
    if len(parts) != 2:
        return None
    try:
        pair = [float(p.strip()) for p in parts]
    except ValueError:
        return None
    if not all(math.isfinite(n) for n in pair):
        return None
    return pair


def normalize_coordinates(coords: Any) -> Optional[List[float]]:
    """
    Accepts [lat, lng], ["lat, lng"] or "lat, lng".
    Returns [lat, lng] as floats, or None for any other shape.
    """
    if isinstance(coords, str):
        return _parse_pair(coords)
    if isinstance(coords, list):
        if len(coords) == 1 and isinstance(coords[0], str):
            return _parse_pair(coords[0])
        if len(coords) == 2 and all(_is_finite_number(c) for c in coords):
            return [float(c) for c in coords]
    return None


def normalize_location(location: Any) -> Optional[Dict[str, Any]]:
    if not isinstance(location, dict):
        return None
    normalized = dict(location)
    coordinates = normalize_coordinates(location.get("coordinates"))
    if coordinates is None:
        normalized.pop("coordinates", None)
    else:
        normalized["coordinates"] = coordinates
    return normalized


def _batch_producer(ctx: BuildContext) -> Optional[str]:
    return ctx.batch.producer_id or ctx.batch.channel_id


def _ingestion_time(ctx: BuildContext) -> str:
    return ctx.created_at


def _empty_record(ctx: BuildContext) -> Dict[str, Any]:
    return {}


ITEM_SCHEMA: Tuple[FieldRule, ...] = (
    FieldRule("title", ("title",), required=True),
    FieldRule("external_id", ("externalId", "id")),
    FieldRule("producer_id", ("producerId", "flowId"), default=_batch_producer),
    FieldRule("source", ("source",), default=DEFAULT_SOURCE),
    FieldRule("event_timestamp", ("timestamp", "eventTimestamp"), default=_ingestion_time),
    FieldRule("priority", ("priority", "newsValue"), accept=_is_finite_number,
              convert=clamp_priority, default=DEFAULT_PRIORITY),
    # URL and url are taken as sent; source only when it is an absolute URL
    FieldRule("source_url", ("URL", "url", "source"), key_checks={"source": is_absolute_url}),
    FieldRule("description", ("description",), accept=_is_string),
    FieldRule("category", ("category",), accept=_is_string),
    FieldRule("severity", ("severity",), accept=_is_string),
    FieldRule("location", ("location",), accept=_is_record, convert=normalize_location),
    FieldRule("extra", ("extra",), accept=_is_record, convert=dict, default=_empty_record),
)


RULES: Dict[str, FieldRule] = {rule.name: rule for rule in ITEM_SCHEMA}


def resolve_source_url(raw: Dict[str, Any]) -> Optional[str]:
    value = _read(raw, RULES["source_url"])
    return None if value is _MISSING else value


# ── Validation ───────────────────────────────────────────────────────────────

def validate_item(raw: Any) -> None:
    """Check required fields before anything is built."""
    if not isinstance(raw, dict):
        raise ValidationError("Each item must be an object with required fields")
    for rule in ITEM_SCHEMA:
        if rule.required and _read(raw, rule) is _MISSING:
            raise ValidationError(f"Each item must have a {rule.name}")


def validate_items(items: List[Any]) -> None:
    for raw in items:
        validate_item(raw)


# ── Building ─────────────────────────────────────────────────────────────────

def build_item(
    raw: Dict[str, Any],
    batch: NormalizedPayload,
    created_at: str,
) -> CanonicalItem:
    """Build one CanonicalItem from an already-validated raw item."""
    ctx = BuildContext(batch=batch, created_at=created_at)
    values = {rule.name: _resolve(raw, rule, ctx) for rule in ITEM_SCHEMA}
    # Batch-level extra wins on key collisions
    values["extra"] = {**values["extra"], **batch.extra}
    return CanonicalItem(
        internal_id=str(uuid.uuid4()),
        raw=raw,
        created_at=created_at,
        **values,
    )


def build_items(
    batch: NormalizedPayload,
    now: Optional[datetime] = None,
) -> List[CanonicalItem]:
    """
    Validate and build every item in a batch.

    All items share one created_at. Raises ValidationError before any
    item is built if a single item is malformed.
    """
    validate_items(batch.items)
    created_at = iso(now or utc_now())
    return [build_item(raw, batch, created_at) for raw in batch.items]
