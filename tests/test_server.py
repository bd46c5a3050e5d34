"""HTTP tests for newsdeck_server.py using the Flask test client."""
import json

import pytest

from newsdeck.broadcast import build_message, encode_push_envelope
from newsdeck.config import Config
import newsdeck_server
from newsdeck_server import create_app, start_stream_subscriber

API_KEY = "secret"
AUTH = {"X-API-Key": API_KEY}


@pytest.fixture
def config(db_path):
    return Config(
        db_path=db_path,
        api_key=API_KEY,
        stream_heartbeat_secs=0.05,
        long_poll_timeout_secs=0.05,
        channel_groups=[{
            "id": "dash-a",
            "name": "Dashboard A",
            "channels": [
                {"id": "col-1", "producerBinding": "flow-fire"},
                {"id": "col-2", "producerBinding": "flow-fire", "archived": True},
            ],
        }],
    )


@pytest.fixture
def app(config):
    app = create_app(config)
    app.config["TESTING"] = True
    return app


@pytest.fixture
def client(app):
    return app.test_client()


@pytest.fixture
def service(app):
    return app.extensions["newsdeck"]


def ingest(client, body, headers=AUTH):
    return client.post("/api/news-items", json=body, headers=headers)


# ━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━
# Auth
# ━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━


class TestAuth:

    BODY = {"channelId": "col-1", "items": [{"title": "t"}]}

    def test_missing_key(self, client):
        assert ingest(client, self.BODY, headers={}).status_code == 401

    def test_wrong_key(self, client):
        assert ingest(client, self.BODY, headers={"X-API-Key": "nope"}).status_code == 403

    def test_bearer_token(self, client):
        resp = ingest(client, self.BODY, headers={"Authorization": f"Bearer {API_KEY}"})
        assert resp.status_code == 200

    def test_no_key_configured(self, config):
        config.api_key = ""
        client = create_app(config).test_client()
        assert ingest(client, self.BODY).status_code == 503


# ━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━
# Ingestion
# ━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━


class TestIngest:

    def test_explicit_channel(self, client):
        resp = ingest(client, {
            "channelId": "col-1",
            "items": [{"title": "Fire downtown", "externalId": "ext-9"}],
        })
        assert resp.status_code == 200
        data = resp.get_json()
        assert data["success"] is True
        assert data["itemsAdded"] == 1
        assert data["channelsUpdated"] == 1
        assert data["matchingChannels"] == ["col-1"]
        assert data["insertedItems"][0]["externalId"] == "ext-9"

    def test_producer_fan_out_skips_archived(self, client):
        data = ingest(client, {"producerId": "flow-fire", "items": [{"title": "t"}]}).get_json()
        assert data["matchingChannels"] == ["col-1"]

    def test_missing_items(self, client):
        resp = ingest(client, {"channelId": "col-1"})
        assert resp.status_code == 400
        assert "items array is required" in resp.get_json()["error"]

    def test_missing_identifiers(self, client):
        resp = ingest(client, {"items": [{"title": "t"}]})
        assert resp.status_code == 400

    def test_missing_title(self, client, service):
        resp = ingest(client, {"channelId": "col-1", "items": [{"description": "x"}]})
        assert resp.status_code == 400
        assert service.store.count_items() == 0

    def test_invalid_json(self, client):
        resp = client.post(
            "/api/news-items", data="{not json", content_type="application/json", headers=AUTH,
        )
        assert resp.status_code == 400

    def test_persistence_failure_is_500(self, client, service, monkeypatch):
        from newsdeck.errors import PersistenceError

        def fail(items, channel_ids):
            raise PersistenceError("locked")

        monkeypatch.setattr(service.store, "write_batch", fail)
        resp = ingest(client, {"channelId": "col-1", "items": [{"title": "t"}]})
        assert resp.status_code == 500
        assert resp.get_json()["error"] == "Internal server error"

    def test_requests_are_logged(self, client, service):
        ingest(client, {"channelId": "col-1", "items": [{"title": "t"}]})
        ingest(client, {"channelId": "col-1"})
        latest, first = service.store.recent_requests(limit=2)
        assert first["status_code"] == 200
        assert first["metadata"]["itemsAdded"] == 1
        assert latest["status_code"] == 400
        assert "items array" in latest["error"]

    def test_items_endpoint(self, client):
        ingest(client, {"channelId": "col-1", "items": [{"title": "a"}, {"title": "b"}]})
        data = client.get("/api/channels/col-1/items?limit=1").get_json()
        assert data["count"] == 1
        assert data["channelId"] == "col-1"

    @pytest.mark.parametrize("limit", ["0", "-3", "abc"])
    def test_items_endpoint_rejects_bad_limit(self, client, limit):
        resp = client.get(f"/api/channels/col-1/items?limit={limit}")
        assert resp.status_code == 400


# ━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━
# Subscribers
# ━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━


class TestSubscribers:

    def test_long_poll_sees_ingested_items(self, client):
        ingest(client, {"channelId": "col-1", "items": [{"title": "Fire"}]})
        data = client.get("/api/channels/col-1/updates").get_json()
        assert data["success"] is True
        assert [i["title"] for i in data["items"]] == ["Fire"]

        again = client.get(f"/api/channels/col-1/updates?lastSeen={data['cursor']}").get_json()
        assert again["items"] == []
        assert again["cursor"] == data["cursor"]

    def test_long_poll_geo_filter(self, client):
        ingest(client, {"channelId": "col-1", "items": [
            {"title": "in", "location": {"regionCode": "01"}},
            {"title": "out", "location": {"regionCode": "12"}},
        ]})
        data = client.get("/api/channels/col-1/updates?regionCode=01").get_json()
        assert [i["title"] for i in data["items"]] == ["in"]

    def test_stream_opens_with_connected_frame(self, client):
        resp = client.get("/api/channels/col-1/stream")
        assert resp.status_code == 200
        assert resp.mimetype == "text/event-stream"
        assert resp.headers["Cache-Control"].startswith("no-cache")

        first = next(iter(resp.response))
        if isinstance(first, bytes):
            first = first.decode()
        assert json.loads(first[len("data: "):]) == {"type": "connected", "channelId": "col-1"}
        resp.close()


# ━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━
# Broadcast push webhook
# ━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━


class TestPushWebhook:

    ITEMS = [{"internalId": "remote-1", "title": "From another process"}]

    def test_push_feeds_local_queue(self, client):
        envelope = encode_push_envelope(build_message(["col-1"], self.ITEMS))
        resp = client.post("/api/pubsub/news-items", json=envelope)
        assert resp.status_code == 200
        assert resp.get_json()["success"] is True

        data = client.get("/api/channels/col-1/updates").get_json()
        assert [i["internalId"] for i in data["items"]] == ["remote-1"]

    def test_own_broadcast_not_delivered_twice(self, client):
        data = ingest(client, {"channelId": "col-1", "items": [{"title": "t"}]}).get_json()
        echoed = encode_push_envelope(build_message(["col-1"], data["insertedItems"]))
        client.post("/api/pubsub/news-items", json=echoed)

        updates = client.get("/api/channels/col-1/updates").get_json()
        assert len(updates["items"]) == 1

    def test_malformed_push(self, client):
        assert client.post("/api/pubsub/news-items", json={"foo": 1}).status_code == 400

    def test_internal_error_still_acknowledged(self, client, service, monkeypatch):
        def boom(channel_ids, items):
            raise RuntimeError("queue unavailable")

        monkeypatch.setattr(service.notifier.queue, "add_items", boom)
        envelope = encode_push_envelope(build_message(["col-1"], self.ITEMS))
        resp = client.post("/api/pubsub/news-items", json=envelope)
        assert resp.status_code == 200
        assert resp.get_json()["success"] is False

    def test_stats(self, client):
        envelope = encode_push_envelope(build_message(["col-1"], self.ITEMS))
        client.post("/api/pubsub/news-items", json=envelope)
        stats = client.get("/api/pubsub/news-items").get_json()["stats"]
        assert stats["totalQueuedItems"] == 1


def test_health(client, config):
    data = client.get("/health").get_json()
    assert data["status"] == "ok"
    assert data["db"] == config.db_path


def test_stream_subscriber_only_with_redis(config, app, monkeypatch):
    queue = app.extensions["newsdeck"].notifier.queue
    assert start_stream_subscriber(config, queue) is None

    started = {}

    class StubSubscriber:
        def start(self):
            started["running"] = True
            return self

    def from_url(url, queue, **kwargs):
        started.update(url=url, queue=queue, **kwargs)
        return StubSubscriber()

    monkeypatch.setattr(newsdeck_server.RedisStreamSubscriber, "from_url", from_url)
    config.broadcast_redis_url = "redis://localhost:6379/0"
    assert start_stream_subscriber(config, queue) is not None
    assert started["running"]
    assert started["queue"] is queue
    assert started["replay_secs"] == config.queue_max_age_secs
