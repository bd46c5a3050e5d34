"""Shared test fixtures for newsdeck tests."""

import sys
from pathlib import Path

import pytest

# Ensure the repo root (newsdeck package + server module) is importable
sys.path.insert(0, str(Path(__file__).parent.parent))

from newsdeck.delivery import LocalDeliveryQueue
from newsdeck.directory import SqliteChannelDirectory
from newsdeck.ingestion import IngestionService
from newsdeck.notifier import FanoutNotifier
from newsdeck.resolver import ChannelResolver
from newsdeck.schema import ChannelGroup
from newsdeck.store import NewsdeckStore


class FakeTransport:
    """Records publishes; optionally fails every call."""

    def __init__(self, fail: bool = False):
        self.fail = fail
        self.published = []

    def publish(self, channel_ids, items):
        if self.fail:
            raise RuntimeError("topic unavailable")
        self.published.append((list(channel_ids), items))


@pytest.fixture
def db_path(tmp_path):
    return str(tmp_path / "newsdeck.db")


@pytest.fixture
def store(db_path):
    return NewsdeckStore(db_path)


@pytest.fixture
def directory(db_path):
    directory = SqliteChannelDirectory(db_path)
    directory.save_channel_group(ChannelGroup.from_dict({
        "id": "dash-a",
        "name": "Dashboard A",
        "channels": [
            {"id": "col-1", "producerBinding": "flow-fire"},
            {"id": "col-2", "producerBinding": "flow-traffic"},
            {"id": "col-old", "producerBinding": "flow-fire", "archived": True},
        ],
    }))
    directory.save_channel_group(ChannelGroup.from_dict({
        "id": "dash-b",
        "name": "Dashboard B",
        "columns": [
            {"id": "col-3", "flowId": "flow-fire"},
            {"id": "col-1", "flowId": "flow-fire"},
        ],
    }))
    return directory


@pytest.fixture
def queue():
    return LocalDeliveryQueue()


@pytest.fixture
def transport():
    return FakeTransport()


@pytest.fixture
def notifier(transport, queue):
    return FanoutNotifier(transport=transport, queue=queue)


@pytest.fixture
def service(store, directory, notifier):
    return IngestionService(store, ChannelResolver(directory), notifier)
