"""
Newsdeck storage backend (SQLite).

Tables:
    canonical_items      — append-only log of every ingested item
    channel_projections  — one row per (channel, item); replaced by external id
    channel_groups       — dashboard/column directory data
    request_log          — one row per ingestion request
"""
import json
import logging
import sqlite3
from contextlib import contextmanager
from datetime import datetime, timezone
from pathlib import Path
from typing import Any, Dict, Iterator, List, Optional, Sequence

from .errors import PersistenceError
from .schema import CanonicalItem

logger = logging.getLogger(__name__)

# Stay well below SQLite's host-parameter limit
DELETE_CHUNK = 500

LOCATION_CODES = ("countryCode", "regionCode", "municipalityCode")

SCHEMA = (
    """
    CREATE TABLE IF NOT EXISTS canonical_items (
        internal_id TEXT PRIMARY KEY,
        external_id TEXT,
        producer_id TEXT NOT NULL,
        source TEXT NOT NULL DEFAULT 'workflows',
        title TEXT NOT NULL,
        description TEXT,
        priority INTEGER NOT NULL CHECK (priority >= 0 AND priority <= 5),
        category TEXT,
        severity TEXT,
        location TEXT,      -- JSON object
        source_url TEXT,
        extra TEXT,         -- JSON object
        raw TEXT,           -- JSON object
        event_timestamp TEXT NOT NULL,
        created_at TEXT NOT NULL
    )
    """,
    "CREATE INDEX IF NOT EXISTS idx_items_external ON canonical_items(external_id)",
    "CREATE INDEX IF NOT EXISTS idx_items_producer ON canonical_items(producer_id)",
    "CREATE INDEX IF NOT EXISTS idx_items_created ON canonical_items(created_at)",
    """
    CREATE TABLE IF NOT EXISTS channel_projections (
        channel_id TEXT NOT NULL,
        item_id TEXT NOT NULL,
        external_id TEXT,
        data TEXT NOT NULL,  -- JSON copy of the canonical item
        country_code TEXT,
        region_code TEXT,
        municipality_code TEXT,
        created_at TEXT NOT NULL,
        PRIMARY KEY (channel_id, item_id),
        FOREIGN KEY (item_id) REFERENCES canonical_items(internal_id) ON DELETE CASCADE
    )
    """,
    "CREATE INDEX IF NOT EXISTS idx_projections_external ON channel_projections(channel_id, external_id)",
    "CREATE INDEX IF NOT EXISTS idx_projections_created ON channel_projections(channel_id, created_at)",
    """
    CREATE TABLE IF NOT EXISTS channel_groups (
        id TEXT PRIMARY KEY,
        name TEXT,
        channels TEXT,  -- JSON list
        updated_at TEXT NOT NULL
    )
    """,
    """
    CREATE TABLE IF NOT EXISTS request_log (
        id INTEGER PRIMARY KEY AUTOINCREMENT,
        endpoint TEXT NOT NULL,
        method TEXT NOT NULL,
        status_code INTEGER,
        response_time_ms INTEGER,
        error TEXT,
        metadata TEXT,
        created_at TEXT NOT NULL
    )
    """,
)


@contextmanager
def connect(db_path: str) -> Iterator[sqlite3.Connection]:
    """
    Open a connection with FK enforcement and WAL mode.

    The block runs as one transaction: committed on success, rolled back
    on any exception. The connection is always closed.
    """
    conn = sqlite3.connect(db_path, timeout=10)
    conn.row_factory = sqlite3.Row
    try:
        conn.execute("PRAGMA foreign_keys = ON")
        conn.execute("PRAGMA journal_mode = WAL")
        yield conn
        conn.commit()
    except BaseException:
        conn.rollback()
        raise
    finally:
        conn.close()


def init_schema(db_path: str) -> None:
    """Create tables if they don't exist."""
    Path(db_path).parent.mkdir(parents=True, exist_ok=True)
    with connect(db_path) as conn:
        for statement in SCHEMA:
            conn.execute(statement)


def _dumps(value: Any) -> Optional[str]:
    return json.dumps(value) if value is not None else None


def _loads(value: Optional[str]) -> Any:
    if value is None:
        return None
    try:
        return json.loads(value)
    except (json.JSONDecodeError, TypeError):
        return None


def projection_items(items: Sequence[CanonicalItem]) -> List[CanonicalItem]:
    """
    Items that get a projection row. Within one batch the last item for an
    external id wins; items without one are all kept.
    """
    last_index = {i.external_id: n for n, i in enumerate(items) if i.external_id}
    return [
        item for n, item in enumerate(items)
        if not item.external_id or last_index[item.external_id] == n
    ]


class NewsdeckStore:
    """SQLite-backed store for canonical items and channel projections."""

    def __init__(self, db_path: Optional[str] = None):
        if db_path is None:
            db_path = str(Path.home() / ".local" / "share" / "newsdeck" / "newsdeck.db")
        self.db_path = db_path
        init_schema(db_path)

    # ── Batched write ────────────────────────────────────────────────────────

    def write_batch(
        self,
        items: Sequence[CanonicalItem],
        channel_ids: Sequence[str],
    ) -> Dict[str, int]:
        """
        Persist a batch and its channel projections in one transaction.

        1. Insert every item into canonical_items.
        2. Per channel: drop projection rows whose item carries one of the
           batch's external ids, then insert the new rows.

        Returns rows written per channel. Raises PersistenceError; on error
        nothing from the batch is committed.
        """
        projections = projection_items(items)
        totals: Dict[str, int] = {}
        try:
            with connect(self.db_path) as conn:
                conn.executemany("""
                    INSERT INTO canonical_items
                    (internal_id, external_id, producer_id, source, title, description,
                     priority, category, severity, location, source_url, extra, raw,
                     event_timestamp, created_at)
                    VALUES (?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?)
                """, [self._item_row(i) for i in items])

                external_ids = sorted({i.external_id for i in projections if i.external_id})
                for channel_id in channel_ids:
                    self._replace_external_ids(conn, channel_id, external_ids)
                    conn.executemany("""
                        INSERT INTO channel_projections
                        (channel_id, item_id, external_id, data,
                         country_code, region_code, municipality_code, created_at)
                        VALUES (?, ?, ?, ?, ?, ?, ?, ?)
                    """, [self._projection_row(channel_id, i) for i in projections])
                    totals[channel_id] = len(projections)
        except sqlite3.Error as e:
            logger.error(
                f"write_batch failed ({len(items)} items, {len(channel_ids)} channels): {e}"
            )
            raise PersistenceError(f"Could not persist batch: {e}") from e
        return totals

    @staticmethod
    def _replace_external_ids(
        conn: sqlite3.Connection,
        channel_id: str,
        external_ids: List[str],
    ) -> None:
        for start in range(0, len(external_ids), DELETE_CHUNK):
            chunk = external_ids[start:start + DELETE_CHUNK]
            placeholders = ",".join("?" for _ in chunk)
            conn.execute(f"""
                DELETE FROM channel_projections
                WHERE channel_id = ?
                  AND item_id IN (
                      SELECT internal_id FROM canonical_items
                      WHERE external_id IN ({placeholders})
                  )
            """, (channel_id, *chunk))

    @staticmethod
    def _item_row(item: CanonicalItem) -> tuple:
        return (
            item.internal_id,
            item.external_id,
            item.producer_id,
            item.source,
            item.title,
            item.description,
            item.priority,
            item.category,
            item.severity,
            _dumps(item.location),
            item.source_url,
            _dumps(item.extra),
            _dumps(item.raw),
            item.event_timestamp,
            item.created_at,
        )

    @staticmethod
    def _projection_row(channel_id: str, item: CanonicalItem) -> tuple:
        return (
            channel_id,
            item.internal_id,
            item.external_id,
            json.dumps(item.to_dict()),
            *(item.location_code(code) for code in LOCATION_CODES),
            item.created_at,
        )

    # ── Reads ────────────────────────────────────────────────────────────────

    def get_item(self, internal_id: str) -> Optional[CanonicalItem]:
        with connect(self.db_path) as conn:
            row = conn.execute(
                "SELECT * FROM canonical_items WHERE internal_id = ?",
                (internal_id,)
            ).fetchone()
        return self._row_to_item(row) if row else None

    def get_channel_items(self, channel_id: str, limit: Optional[int] = None) -> List[Dict[str, Any]]:
        """Projection data for a channel, newest first. limit, if given, must be >= 1."""
        query = """
            SELECT data FROM channel_projections
            WHERE channel_id = ?
            ORDER BY created_at DESC, rowid DESC
        """
        params: tuple = (channel_id,)
        if limit is not None:
            if limit < 1:
                raise ValueError(f"limit must be a positive integer, got {limit}")
            query += " LIMIT ?"
            params = (channel_id, limit)
        with connect(self.db_path) as conn:
            rows = conn.execute(query, params).fetchall()
        return [json.loads(r["data"]) for r in rows]

    def count_projections(self, channel_id: str, external_id: Optional[str] = None) -> int:
        with connect(self.db_path) as conn:
            if external_id is None:
                row = conn.execute(
                    "SELECT COUNT(*) FROM channel_projections WHERE channel_id = ?",
                    (channel_id,)
                ).fetchone()
            else:
                row = conn.execute(
                    "SELECT COUNT(*) FROM channel_projections WHERE channel_id = ? AND external_id = ?",
                    (channel_id, external_id)
                ).fetchone()
        return row[0]

    def count_items(self) -> int:
        with connect(self.db_path) as conn:
            return conn.execute("SELECT COUNT(*) FROM canonical_items").fetchone()[0]

    def _row_to_item(self, row: sqlite3.Row) -> CanonicalItem:
        data = dict(row)
        return CanonicalItem(
            internal_id=data["internal_id"],
            producer_id=data["producer_id"],
            title=data["title"],
            external_id=data["external_id"],
            source=data["source"],
            description=data["description"],
            priority=data["priority"],
            category=data["category"],
            severity=data["severity"],
            location=_loads(data["location"]),
            source_url=data["source_url"],
            extra=_loads(data["extra"]) or {},
            raw=_loads(data["raw"]) or {},
            created_at=data["created_at"],
            event_timestamp=data["event_timestamp"],
        )

    # ── Request log ──────────────────────────────────────────────────────────

    def log_request(
        self,
        endpoint: str,
        method: str,
        status_code: int,
        response_time_ms: int,
        error: Optional[str] = None,
        metadata: Optional[Dict[str, Any]] = None,
    ) -> None:
        """Record one API request. Never raises."""
        now = datetime.now(timezone.utc).isoformat()
        try:
            with connect(self.db_path) as conn:
                conn.execute("""
                    INSERT INTO request_log
                    (endpoint, method, status_code, response_time_ms, error, metadata, created_at)
                    VALUES (?, ?, ?, ?, ?, ?, ?)
                """, (endpoint, method, status_code, response_time_ms, error,
                      _dumps(metadata), now))
        except sqlite3.Error as e:
            logger.warning(f"Failed to write request log: {e}")

    def recent_requests(self, limit: int = 50) -> List[Dict[str, Any]]:
        with connect(self.db_path) as conn:
            rows = conn.execute(
                "SELECT * FROM request_log ORDER BY id DESC LIMIT ?",
                (limit,)
            ).fetchall()
        requests = []
        for row in rows:
            entry = dict(row)
            entry["metadata"] = _loads(entry["metadata"])
            requests.append(entry)
        return requests
