"""
Channel-group directory backed by the same SQLite database as the store.

Dashboards (channel groups) and their columns (channels) are managed by the
rest of the application; ingestion only needs list_channel_groups(). The
save/delete helpers exist for seeding from config and for tests.
"""
import json
import logging
import sqlite3
from datetime import datetime, timezone
from typing import List, Optional, Protocol

from .errors import PersistenceError
from .schema import ChannelGroup
from .store import connect, init_schema

logger = logging.getLogger(__name__)


class ChannelDirectory(Protocol):
    """What the resolver needs from the dashboard subsystem."""

    def list_channel_groups(self) -> List[ChannelGroup]:
        ...


class SqliteChannelDirectory:
    """Reads channel groups from the channel_groups table."""

    def __init__(self, db_path: str):
        self.db_path = db_path
        init_schema(db_path)

    def list_channel_groups(self) -> List[ChannelGroup]:
        try:
            with connect(self.db_path) as conn:
                rows = conn.execute(
                    "SELECT id, name, channels FROM channel_groups ORDER BY id"
                ).fetchall()
        except sqlite3.Error as e:
            raise PersistenceError(f"Could not load channel groups: {e}") from e

        groups = []
        for row in rows:
            try:
                channels = json.loads(row["channels"] or "[]")
            except (json.JSONDecodeError, TypeError):
                logger.warning(f"Channel group {row['id']} has unreadable channels, skipping")
                continue
            groups.append(ChannelGroup.from_dict({
                "id": row["id"],
                "name": row["name"] or "",
                "channels": channels,
            }))
        return groups

    def get(self, group_id: str) -> Optional[ChannelGroup]:
        for group in self.list_channel_groups():
            if group.id == group_id:
                return group
        return None

    def save_channel_group(self, group: ChannelGroup) -> None:
        """Insert or replace a channel group."""
        data = group.to_dict()
        now = datetime.now(timezone.utc).isoformat()
        try:
            with connect(self.db_path) as conn:
                conn.execute("""
                    INSERT INTO channel_groups (id, name, channels, updated_at)
                    VALUES (?, ?, ?, ?)
                    ON CONFLICT(id) DO UPDATE SET
                        name=excluded.name,
                        channels=excluded.channels,
                        updated_at=excluded.updated_at
                """, (data["id"], data["name"], json.dumps(data["channels"]), now))
        except sqlite3.Error as e:
            raise PersistenceError(f"Could not save channel group {group.id}: {e}") from e

    def delete_channel_group(self, group_id: str) -> None:
        with connect(self.db_path) as conn:
            conn.execute("DELETE FROM channel_groups WHERE id = ?", (group_id,))
