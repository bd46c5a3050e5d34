#!/usr/bin/env python3
"""
Newsdeck Ingestion Server
-------------------------
Accepts event payloads from workflows, stores them, and pushes new items to
live subscribers of each channel.

Usage:
    python newsdeck_server.py --config newsdeck.yaml

    # Or installed:
    newsdeck-server --port 3000 --db /var/lib/newsdeck/newsdeck.db

API:
    POST /api/news-items              → ingest a batch (X-API-Key or Bearer token)
    GET  /api/channels/<id>/stream    → Server-Sent Events: connected, update
    GET  /api/channels/<id>/updates   → long-poll, ?lastSeen=<cursor>
    GET  /api/channels/<id>/items     → persisted items, ?limit=<n>
    POST /api/pubsub/news-items       → broadcast topic push webhook
    GET  /api/pubsub/news-items       → delivery queue stats
    GET  /health
"""

import hmac
import logging
import sys
import time
from functools import wraps
from typing import Optional

from flask import Flask, Response, g, jsonify, request, stream_with_context

from newsdeck.broadcast import RedisStreamSubscriber, decode_push_envelope, make_transport
from newsdeck.config import Config
from newsdeck.delivery import LocalDeliveryQueue
from newsdeck.directory import SqliteChannelDirectory
from newsdeck.errors import ConfigError, PersistenceError, ValidationError
from newsdeck.ingestion import IngestionService
from newsdeck.notifier import FanoutNotifier
from newsdeck.resolver import ChannelResolver
from newsdeck.schema import ChannelGroup
from newsdeck.store import NewsdeckStore
from newsdeck.stream import SSE_HEADERS, ChannelStream, GeoFilter, wait_for_updates

logger = logging.getLogger("newsdeck")

INGEST_ENDPOINT = "/api/news-items"


# ── Auth ─────────────────────────────────────────────────────────────────────

def _provided_key() -> str:
    auth = request.headers.get("Authorization", "")
    if auth.startswith("Bearer "):
        return auth[len("Bearer "):].strip()
    return request.headers.get("X-API-Key", "").strip()


def require_api_key(f):
    """Decorator: reject requests without a valid API key."""
    @wraps(f)
    def decorated(*args, **kwargs):
        secret = g.config.api_key
        if not secret:
            return jsonify({"error": "API key not configured"}), 503
        provided = _provided_key()
        if not hmac.compare_digest(provided, secret):
            code = 401 if not provided else 403
            return jsonify({
                "error": "Unauthorized",
                "message": "Valid API key required. Use Authorization: Bearer <key> or X-API-Key: <key> header",
            }), code
        return f(*args, **kwargs)
    return decorated


# ── App factory ──────────────────────────────────────────────────────────────

def seed_channel_groups(directory: SqliteChannelDirectory, config: Config) -> None:
    for data in config.channel_groups:
        group = ChannelGroup.from_dict(data)
        directory.save_channel_group(group)
        logger.info(f"Seeded channel group {group.id} ({len(group.channels)} channels)")


def start_stream_subscriber(
    config: Config,
    queue: LocalDeliveryQueue,
) -> Optional[RedisStreamSubscriber]:
    """Follow the Redis broadcast stream into the local queue, if one is configured."""
    if not config.broadcast_redis_url:
        return None
    return RedisStreamSubscriber.from_url(
        config.broadcast_redis_url,
        queue,
        stream=config.broadcast_stream,
        replay_secs=config.queue_max_age_secs,
    ).start()


def create_app(
    config: Config,
    service: Optional[IngestionService] = None,
    queue: Optional[LocalDeliveryQueue] = None,
) -> Flask:
    """Wire store, directory, notifier and routes into a Flask app."""
    app = Flask(__name__)

    if service is None:
        store = NewsdeckStore(config.db_path)
        directory = SqliteChannelDirectory(config.db_path)
        seed_channel_groups(directory, config)
        queue = queue or LocalDeliveryQueue(
            max_updates=config.queue_max_updates,
            max_age_secs=config.queue_max_age_secs,
        )
        notifier = FanoutNotifier(
            transport=make_transport(
                config.broadcast_urls,
                config.broadcast_timeout_secs,
                redis_url=config.broadcast_redis_url,
                stream=config.broadcast_stream,
                maxlen=config.broadcast_stream_maxlen,
            ),
            queue=queue,
        )
        service = IngestionService(store, ChannelResolver(directory), notifier)
    queue = service.notifier.queue

    app.extensions["newsdeck"] = service

    @app.before_request
    def _bind():
        g.config = config
        g.started = time.monotonic()

    @app.after_request
    def _log_ingest(response):
        if request.path == INGEST_ENDPOINT and request.method == "POST":
            elapsed_ms = int((time.monotonic() - g.get("started", time.monotonic())) * 1000)
            service.store.log_request(
                endpoint=INGEST_ENDPOINT,
                method="POST",
                status_code=response.status_code,
                response_time_ms=elapsed_ms,
                error=g.get("ingest_error"),
                metadata=g.get("ingest_metadata"),
            )
        return response

    # ── Routes ───────────────────────────────────────────────────────────────

    @app.route(INGEST_ENDPOINT, methods=["POST"])
    @require_api_key
    def api_ingest():
        body = request.get_json(force=True, silent=True)
        if body is None:
            g.ingest_error = "Invalid JSON body"
            return jsonify({"error": "Request body must be valid JSON"}), 400
        try:
            result = service.ingest(body)
        except ValidationError as e:
            g.ingest_error = e.message
            app.logger.info(f"Rejected ingestion: {e.message}")
            return jsonify({"error": e.message}), e.status
        except PersistenceError as e:
            g.ingest_error = str(e)
            app.logger.error(f"Ingestion failed: {e}")
            return jsonify({"error": "Internal server error"}), 500

        g.ingest_metadata = {
            "channelId": result.channel_id,
            "producerId": result.producer_id,
            "itemsAdded": result.items_added,
            "matchingChannels": result.matching_channels,
        }
        return jsonify({"success": True, **result.to_dict()})

    @app.route("/api/channels/<channel_id>/stream")
    def api_stream(channel_id):
        stream = ChannelStream(
            queue,
            channel_id,
            heartbeat_secs=config.stream_heartbeat_secs,
            geo=GeoFilter.from_args(request.args),
        )
        return Response(
            stream_with_context(stream.events()),
            mimetype="text/event-stream",
            headers=SSE_HEADERS,
        )

    @app.route("/api/channels/<channel_id>/updates")
    def api_updates(channel_id):
        last_seen = request.args.get("lastSeen", type=int)
        items, cursor = wait_for_updates(
            queue,
            channel_id,
            last_seen,
            timeout=config.long_poll_timeout_secs,
            geo=GeoFilter.from_args(request.args),
        )
        response = jsonify({
            "success": True,
            "channelId": channel_id,
            "items": items,
            "cursor": cursor,
        })
        response.headers["Cache-Control"] = "no-cache, no-store, must-revalidate"
        return response

    @app.route("/api/channels/<channel_id>/items")
    def api_channel_items(channel_id):
        limit = request.args.get("limit", type=int)
        if "limit" in request.args and (limit is None or limit < 1):
            return jsonify({"error": "limit must be a positive integer"}), 400
        try:
            items = service.store.get_channel_items(channel_id, limit=limit)
        except Exception as e:
            app.logger.error(f"get_channel_items error: {e}")
            return jsonify({"error": "Internal server error"}), 500
        return jsonify({"channelId": channel_id, "items": items, "count": len(items)})

    @app.route("/api/pubsub/news-items", methods=["POST"])
    def api_pubsub_push():
        body = request.get_json(force=True, silent=True)
        try:
            channel_ids, items = decode_push_envelope(body)
        except ValidationError as e:
            app.logger.warning(f"Invalid push message: {e.message}")
            return jsonify({"error": e.message}), 400
        try:
            queue.add_items(channel_ids, items)
        except Exception as e:
            # 200 so the topic does not keep redelivering the message
            app.logger.error(f"Push delivery failed: {e}")
            return jsonify({"success": False, "error": "Internal error"}), 200
        app.logger.info(f"Push received: channels={channel_ids} items={len(items)}")
        return jsonify({"success": True})

    @app.route("/api/pubsub/news-items", methods=["GET"])
    def api_pubsub_stats():
        return jsonify({"success": True, "service": "pubsub-webhook", "stats": queue.stats()})

    @app.route("/health")
    def health():
        return jsonify({"status": "ok", "db": service.store.db_path})

    return app


# ── Main ─────────────────────────────────────────────────────────────────────

def main(argv=None):
    import argparse

    parser = argparse.ArgumentParser(description="Newsdeck Ingestion Server")
    parser.add_argument("--config", help="Path to newsdeck.yaml")
    parser.add_argument("--host", help="Bind address (use 0.0.0.0 to expose on network)")
    parser.add_argument("--port", type=int)
    parser.add_argument("--db", help="Path to newsdeck.db (overrides NEWSDECK_DB env var)")
    args = parser.parse_args(argv)

    try:
        config = Config.load(args.config)
    except ConfigError as e:
        print(f"Config error: {e}", file=sys.stderr)
        return 2

    if args.host:
        config.host = args.host
    if args.port:
        config.port = args.port
    if args.db:
        config.db_path = args.db
        config.resolve_paths()

    logging.basicConfig(
        level=getattr(logging, config.log_level.upper(), logging.INFO),
        format="%(asctime)s [newsdeck] %(levelname)s: %(message)s",
        handlers=[logging.StreamHandler(sys.stdout)],
    )

    app = create_app(config)
    subscriber = start_stream_subscriber(config, app.extensions["newsdeck"].notifier.queue)
    if subscriber:
        broadcast = f"redis stream {config.broadcast_stream}"
    else:
        broadcast = f"{len(config.broadcast_urls)} push subscribers"
    logger.info(
        f"Newsdeck listening on http://{config.host}:{config.port} "
        f"(db={config.db_path}, broadcast={broadcast})"
    )
    if not config.api_key:
        logger.warning("No API key configured; ingestion requests will be refused")

    app.run(host=config.host, port=config.port, debug=False, threaded=True)
    return 0


if __name__ == "__main__":
    sys.exit(main())
