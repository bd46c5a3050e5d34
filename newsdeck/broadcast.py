# Newsdeck — broadcast transports
#
# Cross-process fan-out. A publish carries the just-inserted items keyed by
# channel id; every process subscribed to the topic feeds them into its own
# LocalDeliveryQueue.
#
# Transports:
#   RedisStreamTransport  XADD to a Redis stream (durable topic); each process
#                         runs a RedisStreamSubscriber reading it with XREAD
#   HttpBroadcastTransport  push envelopes posted to peer webhooks
#   NullBroadcastTransport  single process, local delivery only
#
# Push envelope (Pub/Sub push format):
#   { "message": { "data": base64(json), "messageId": "...", "publishTime": "..." } }
# Message:
#   { "channelIds": [...], "items": [...], "timestamp": "..." }

import base64
import binascii
import json
import logging
import threading
import time
import uuid
from datetime import datetime, timezone
from typing import Any, Callable, Dict, List, Optional, Protocol, Sequence, Tuple

import redis
import requests

from .errors import NotificationError, ValidationError

logger = logging.getLogger(__name__)

DEFAULT_STREAM = "newsdeck:news-items"
DEFAULT_STREAM_MAXLEN = 10000


class BroadcastTransport(Protocol):
    def publish(self, channel_ids: Sequence[str], items: List[Dict[str, Any]]) -> None:
        ...


def build_message(channel_ids: Sequence[str], items: List[Dict[str, Any]]) -> Dict[str, Any]:
    return {
        "channelIds": list(channel_ids),
        "items": items,
        "timestamp": datetime.now(timezone.utc).isoformat(),
    }


def encode_push_envelope(message: Dict[str, Any]) -> Dict[str, Any]:
    data = base64.b64encode(json.dumps(message).encode("utf-8")).decode("ascii")
    return {
        "message": {
            "data": data,
            "messageId": uuid.uuid4().hex,
            "publishTime": datetime.now(timezone.utc).isoformat(),
        }
    }


def decode_message(decoded: Any) -> Tuple[List[str], List[Dict[str, Any]]]:
    """Validate a decoded message into (channel_ids, items)."""
    channel_ids = decoded.get("channelIds") if isinstance(decoded, dict) else None
    items = decoded.get("items") if isinstance(decoded, dict) else None
    if not isinstance(channel_ids, list) or not isinstance(items, list):
        raise ValidationError("Pub/Sub message needs channelIds and items arrays")
    return [str(c) for c in channel_ids], [i for i in items if isinstance(i, dict)]


def decode_push_envelope(body: Any) -> Tuple[List[str], List[Dict[str, Any]]]:
    """
    Parse a push envelope into (channel_ids, items).

    Raises:
        ValidationError: envelope or message is malformed.
    """
    message = body.get("message") if isinstance(body, dict) else None
    if not isinstance(message, dict) or not message.get("data"):
        raise ValidationError("Invalid Pub/Sub message format")
    try:
        decoded = json.loads(base64.b64decode(message["data"]).decode("utf-8"))
    except (binascii.Error, UnicodeDecodeError, json.JSONDecodeError) as e:
        raise ValidationError(f"Undecodable Pub/Sub message: {e}") from e
    return decode_message(decoded)


class NullBroadcastTransport:
    """No topic configured: local delivery only."""

    def publish(self, channel_ids: Sequence[str], items: List[Dict[str, Any]]) -> None:
        logger.debug("Broadcast skipped: no topic configured")


class HttpBroadcastTransport:
    """Posts push envelopes to every subscriber URL of the topic."""

    def __init__(self, urls: Sequence[str], timeout: float = 2.0, session: Any = None):
        self.urls = list(urls)
        self.timeout = timeout
        self.session = session or requests.Session()

    def publish(self, channel_ids: Sequence[str], items: List[Dict[str, Any]]) -> None:
        """
        Deliver one message to each URL. Raises NotificationError listing
        every URL that failed; successful URLs are not retried.
        """
        envelope = encode_push_envelope(build_message(channel_ids, items))
        message_id = envelope["message"]["messageId"]
        failures = []
        for url in self.urls:
            try:
                r = self.session.post(
                    url,
                    json=envelope,
                    headers={"Content-Type": "application/json"},
                    timeout=self.timeout,
                )
                if not r.ok:
                    failures.append(f"{url}: HTTP {r.status_code}")
            except requests.RequestException as e:
                failures.append(f"{url}: {e}")

        if failures:
            raise NotificationError(
                f"Broadcast {message_id} failed for {len(failures)}/{len(self.urls)} "
                f"subscribers: {'; '.join(failures)}"
            )
        logger.info(
            f"Broadcast {message_id} published: channels={list(channel_ids)} items={len(items)}"
        )


class RedisStreamTransport:
    """
    Appends each message to a Redis stream. Entries outlive the publish, so
    a subscriber that was down reads them when it comes back.
    """

    def __init__(self, client: Any, stream: str = DEFAULT_STREAM, maxlen: int = DEFAULT_STREAM_MAXLEN):
        self.client = client
        self.stream = stream
        self.maxlen = maxlen

    @classmethod
    def from_url(cls, url: str, stream: str = DEFAULT_STREAM,
                 maxlen: int = DEFAULT_STREAM_MAXLEN) -> "RedisStreamTransport":
        return cls(redis.Redis.from_url(url, decode_responses=True), stream, maxlen)

    def publish(self, channel_ids: Sequence[str], items: List[Dict[str, Any]]) -> None:
        message = build_message(channel_ids, items)
        try:
            entry_id = self.client.xadd(
                self.stream,
                {"data": json.dumps(message)},
                maxlen=self.maxlen,
                approximate=True,
            )
        except redis.RedisError as e:
            raise NotificationError(f"Broadcast to stream {self.stream} failed: {e}") from e
        logger.info(
            f"Broadcast {entry_id} appended to {self.stream}: "
            f"channels={list(channel_ids)} items={len(items)}"
        )


class RedisStreamSubscriber:
    """
    Reads the broadcast stream on a daemon thread and feeds every message
    into the local delivery queue.

    Starts replay_secs in the past so a restarted process picks up what it
    missed while its queue would still have held it. Items this process
    published itself are dropped by the queue's internalId check.
    """

    def __init__(
        self,
        client: Any,
        queue: Any,
        stream: str = DEFAULT_STREAM,
        replay_secs: float = 300.0,
        block_ms: int = 5000,
        batch_size: int = 100,
        retry_secs: float = 2.0,
        clock: Callable[[], float] = time.time,
    ):
        self.client = client
        self.queue = queue
        self.stream = stream
        self.block_ms = block_ms
        self.batch_size = batch_size
        self.retry_secs = retry_secs
        # Stream ids are "<ms>-<seq>"
        self.last_id = f"{max(0, int((clock() - replay_secs) * 1000))}-0"
        self._stop = threading.Event()
        self._thread: Optional[threading.Thread] = None

    @classmethod
    def from_url(cls, url: str, queue: Any, **kwargs) -> "RedisStreamSubscriber":
        return cls(redis.Redis.from_url(url, decode_responses=True), queue, **kwargs)

    def poll_once(self) -> int:
        """Read one batch of entries; returns how many were read."""
        response = self.client.xread(
            {self.stream: self.last_id}, count=self.batch_size, block=self.block_ms,
        )
        read = 0
        for _stream, entries in response or []:
            for entry_id, fields in entries:
                self.last_id = entry_id
                read += 1
                try:
                    channel_ids, items = decode_message(json.loads(fields.get("data", "")))
                except (ValidationError, json.JSONDecodeError, TypeError) as e:
                    logger.warning(f"Skipping malformed stream entry {entry_id}: {e}")
                    continue
                try:
                    self.queue.add_items(channel_ids, items)
                except Exception as e:
                    logger.error(f"Local delivery of stream entry {entry_id} failed: {e}")
        return read

    def _run(self) -> None:
        logger.info(f"Subscribed to {self.stream} from {self.last_id}")
        while not self._stop.is_set():
            try:
                self.poll_once()
            except redis.RedisError as e:
                logger.error(f"Reading {self.stream} failed: {e}")
                self._stop.wait(self.retry_secs)
        logger.info(f"Unsubscribed from {self.stream}")

    def start(self) -> "RedisStreamSubscriber":
        self._thread = threading.Thread(target=self._run, name="newsdeck-subscriber", daemon=True)
        self._thread.start()
        return self

    def stop(self, timeout: Optional[float] = None) -> None:
        self._stop.set()
        if self._thread:
            self._thread.join(timeout)


def make_transport(
    urls: Sequence[str],
    timeout: float = 2.0,
    redis_url: str = "",
    stream: str = DEFAULT_STREAM,
    maxlen: int = DEFAULT_STREAM_MAXLEN,
) -> BroadcastTransport:
    """Redis stream if configured, else push URLs, else local delivery only."""
    if redis_url:
        return RedisStreamTransport.from_url(redis_url, stream=stream, maxlen=maxlen)
    if urls:
        return HttpBroadcastTransport(urls, timeout=timeout)
    return NullBroadcastTransport()
