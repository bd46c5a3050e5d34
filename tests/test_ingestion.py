"""
End-to-end tests for the ingestion pipeline: normalize, build, resolve,
persist, notify.
"""
from datetime import datetime, timezone

import pytest

from newsdeck.errors import PersistenceError, ValidationError
from newsdeck.ingestion import IngestionService
from newsdeck.notifier import FanoutNotifier
from newsdeck.resolver import ChannelResolver

from conftest import FakeTransport

NOW = datetime(2024, 1, 1, tzinfo=timezone.utc)


def test_explicit_channel_scenario(service, store):
    result = service.ingest({
        "channelId": "col-1",
        "items": [{"title": "Fire downtown", "externalId": "ext-9"}],
    }, now=NOW)

    assert result.items_added == 1
    assert result.channels_updated == 1
    assert result.matching_channels == ["col-1"]
    assert result.channel_totals == {"col-1": 1}

    service.ingest({
        "channelId": "col-1",
        "items": [{"title": "Fire downtown, updated", "externalId": "ext-9"}],
    }, now=NOW)

    assert store.count_projections("col-1", "ext-9") == 1
    [row] = store.get_channel_items("col-1")
    assert row["title"] == "Fire downtown, updated"


def test_producer_fan_out(service, store):
    result = service.ingest({"producerId": "flow-fire", "items": [{"title": "t"}]})

    assert result.channels_updated == 2
    assert sorted(result.matching_channels) == ["col-1", "col-3"]
    assert store.count_projections("col-1") == 1
    assert store.count_projections("col-3") == 1
    assert store.count_projections("col-old") == 0


def test_legacy_flow_id(service):
    result = service.ingest({"flowId": "flow-traffic", "items": [{"title": "Jam"}]})
    assert result.matching_channels == ["col-2"]
    assert result.producer_id == "flow-traffic"
    assert result.inserted_items[0].producer_id == "flow-traffic"


def test_wrapped_payload(service):
    result = service.ingest({
        "data-0": {"ignored": True},
        "data-1": {"items": [{"title": "t"}], "events": {"channelId": "col-2"}},
    })
    assert result.matching_channels == ["col-2"]


def test_unbound_producer_still_persists(service, store, transport, queue):
    result = service.ingest({"producerId": "flow-nobody", "items": [{"title": "t"}]})

    assert result.items_added == 1
    assert result.channels_updated == 0
    assert result.matching_channels == []
    assert store.count_items() == 1
    service.notifier.join(1)
    assert transport.published == []


def test_empty_batch(service, store):
    result = service.ingest({"channelId": "col-1", "items": []})
    assert result.items_added == 0
    assert result.channels_updated == 1
    assert result.matching_channels == ["col-1"]
    assert store.count_items() == 0


def test_missing_title_persists_nothing(service, store):
    with pytest.raises(ValidationError):
        service.ingest({"channelId": "col-1", "items": [{"title": "ok"}, {"description": "x"}]})
    assert store.count_items() == 0


def test_missing_identifiers_never_touch_store(store, directory, notifier, monkeypatch):
    def fail(*args, **kwargs):
        raise AssertionError("store touched")

    monkeypatch.setattr(store, "write_batch", fail)
    service = IngestionService(store, ChannelResolver(directory), notifier)
    with pytest.raises(ValidationError):
        service.ingest({"items": [{"title": "t"}]})


def test_priority_clamped_end_to_end(service, store):
    result = service.ingest({
        "channelId": "col-1",
        "items": [{"title": "a", "priority": 11}, {"title": "b", "priority": -2}, {"title": "c"}],
    })
    stored = [store.get_item(i.internal_id).priority for i in result.inserted_items]
    assert stored == [5, 0, 3]


def test_notifies_queue_and_broadcast(service, transport, queue):
    result = service.ingest({"channelId": "col-1", "items": [{"title": "t"}]})
    service.notifier.join(2)

    items, _ = queue.items_since("col-1", 0)
    assert [i["internalId"] for i in items] == [result.inserted_items[0].internal_id]
    assert transport.published[0][0] == ["col-1"]


def test_broadcast_failure_is_not_fatal(store, directory, queue):
    notifier = FanoutNotifier(transport=FakeTransport(fail=True), queue=queue)
    service = IngestionService(store, ChannelResolver(directory), notifier)

    result = service.ingest({"channelId": "col-1", "items": [{"title": "t"}]})
    notifier.join(2)

    assert result.items_added == 1
    assert store.count_items() == 1
    assert queue.items_since("col-1", 0)[0]


def test_queue_failure_is_not_fatal(store, directory, transport, caplog):
    class BrokenQueue:
        def add_items(self, channel_ids, items):
            raise RuntimeError("queue gone")

    notifier = FanoutNotifier(transport=transport, queue=BrokenQueue())
    service = IngestionService(store, ChannelResolver(directory), notifier)

    result = service.ingest({"channelId": "col-1", "items": [{"title": "t"}]})
    notifier.join(2)

    assert result.items_added == 1
    assert "queue gone" in caplog.text


def test_persistence_error_skips_notification(store, directory, notifier, queue, monkeypatch):
    def fail(items, channel_ids):
        raise PersistenceError("disk full")

    monkeypatch.setattr(store, "write_batch", fail)
    service = IngestionService(store, ChannelResolver(directory), notifier)

    with pytest.raises(PersistenceError):
        service.ingest({"channelId": "col-1", "items": [{"title": "t"}]})
    assert queue.items_since("col-1", 0) == ([], 0)


def test_result_serialization(service):
    result = service.ingest({"channelId": "col-1", "items": [{"title": "t"}]}).to_dict()
    assert result["channelId"] == "col-1"
    assert "producerId" not in result
    assert set(result) >= {
        "itemsAdded", "channelsUpdated", "matchingChannels", "channelTotals", "insertedItems",
    }
    assert result["insertedItems"][0]["title"] == "t"


def test_live_delivery_matches_projection_for_duplicate_external_ids(service, store, queue):
    result = service.ingest({"channelId": "col-1", "items": [
        {"title": "first", "externalId": "dup"},
        {"title": "second", "externalId": "dup"},
        {"title": "other"},
    ]})

    assert result.items_added == 3
    queued, _ = queue.items_since("col-1", 0)
    assert [i["title"] for i in queued] == ["second", "other"]
    stored = {row["internalId"] for row in store.get_channel_items("col-1")}
    assert {i["internalId"] for i in queued} == stored
