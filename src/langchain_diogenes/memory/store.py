"""
Memory store backends.

The pipeline only needs two calls from a store:

  - ``query(user_id, text, limit)`` → records relevant to the text
  - ``put(user_id, record)`` → True on success

``InMemoryMemoryStore`` keeps records in process and is what tests and local
runs use. ``PostgresMemoryStore`` keeps them in a ``memory_records`` table and
answers queries with ILIKE keyword search; its blocking driver calls run in a
worker thread.
"""

import asyncio
import logging
import re
from datetime import datetime, timezone
from typing import Optional, Protocol, runtime_checkable

from psycopg.types.json import Jsonb

from .types import MemoryRecord

logger = logging.getLogger(__name__)

MIN_KEYWORD_CHARS = 4
_WORD = re.compile(r"[\w']+")


def keywords(text: str) -> list[str]:
    """Lowercased words long enough to carry meaning, in order, unique."""
    seen: dict[str, None] = {}
    for word in _WORD.findall(text.lower()):
        if len(word) >= MIN_KEYWORD_CHARS:
            seen.setdefault(word, None)
    return list(seen)


@runtime_checkable
class MemoryStore(Protocol):
    async def query(self, user_id: str, text: str, limit: int) -> list[MemoryRecord]:
        ...

    async def put(self, user_id: str, record: MemoryRecord) -> bool:
        ...


class InMemoryMemoryStore:
    """Per-user record lists held in process memory."""

    def __init__(self, max_records_per_user: int = 1000):
        self.max_records_per_user = max_records_per_user
        self._records: dict[str, list[MemoryRecord]] = {}

    async def query(self, user_id: str, text: str, limit: int) -> list[MemoryRecord]:
        records = self._records.get(user_id, [])
        words = keywords(text)
        if not words:
            return sorted(records, key=lambda r: r.timestamp, reverse=True)[:limit]

        scored = []
        for record in records:
            haystack = set(keywords(record.content)) | {t.lower() for t in record.tags}
            hits = sum(1 for w in words if w in haystack)
            if hits:
                scored.append((hits, record.timestamp, record))
        scored.sort(key=lambda item: (item[0], item[1]), reverse=True)
        return [record for _, _, record in scored[:limit]]

    async def put(self, user_id: str, record: MemoryRecord) -> bool:
        records = self._records.setdefault(user_id, [])
        # last write wins for a repeated id
        records[:] = [r for r in records if r.id != record.id]
        records.append(record)
        if len(records) > self.max_records_per_user:
            del records[: len(records) - self.max_records_per_user]
        return True

    def all(self, user_id: str) -> list[MemoryRecord]:
        return list(self._records.get(user_id, []))


class PostgresMemoryStore:
    """
    Memory records in PostgreSQL.

    ``pg_conn`` is a psycopg connection (autocommit, dict_row recommended).
    Without a connection every call is a no-op, mirroring a disabled store.
    """

    def __init__(self, pg_conn=None):
        self._pg_conn = pg_conn
        self._table_ready = False
        self._setup_table()

    @classmethod
    def from_url(cls, db_url: str) -> "PostgresMemoryStore":
        from psycopg import Connection
        from psycopg.rows import dict_row

        conn = Connection.connect(
            db_url,
            autocommit=True,
            prepare_threshold=0,
            row_factory=dict_row,
        )
        return cls(pg_conn=conn)

    def _setup_table(self):
        """Create memory_records table."""
        if not self._pg_conn:
            return
        try:
            with self._pg_conn.cursor() as cur:
                cur.execute("""
                    CREATE TABLE IF NOT EXISTS memory_records (
                        id TEXT PRIMARY KEY,
                        user_id TEXT NOT NULL,
                        content TEXT NOT NULL,
                        type TEXT NOT NULL,
                        source TEXT NOT NULL,
                        importance REAL NOT NULL DEFAULT 0.5,
                        tags TEXT[] DEFAULT '{}',
                        metadata JSONB NOT NULL DEFAULT '{}',
                        created_at TIMESTAMPTZ NOT NULL DEFAULT now()
                    )
                """)
                cur.execute("""
                    CREATE INDEX IF NOT EXISTS idx_memory_records_user
                    ON memory_records (user_id)
                """)
                # tables created before metadata was stored
                cur.execute("""
                    ALTER TABLE memory_records
                    ADD COLUMN IF NOT EXISTS metadata JSONB NOT NULL DEFAULT '{}'
                """)
                self._table_ready = True
        except Exception as e:
            logger.warning("Failed to setup memory_records table: %s", e)

    async def query(self, user_id: str, text: str, limit: int) -> list[MemoryRecord]:
        return await asyncio.to_thread(self._query_sync, user_id, text, limit)

    async def put(self, user_id: str, record: MemoryRecord) -> bool:
        return await asyncio.to_thread(self._put_sync, user_id, record)

    def _query_sync(self, user_id: str, text: str, limit: int) -> list[MemoryRecord]:
        if not self._pg_conn or not self._table_ready:
            return []
        words = keywords(text)
        where = "user_id = %s"
        params: list = [user_id]
        if words:
            conditions = " OR ".join(
                "content ILIKE '%%' || %s || '%%' OR %s = ANY(tags)" for _ in words
            )
            where += f" AND ({conditions})"
            for word in words:
                params.extend([word, word])
        params.append(limit)
        sql = f"""
            SELECT id, content, type, source, importance, tags, metadata, created_at
            FROM memory_records
            WHERE {where}
            ORDER BY created_at DESC
            LIMIT %s
        """
        try:
            with self._pg_conn.cursor() as cur:
                cur.execute(sql, params)
                return [self._row_to_record(row) for row in cur.fetchall()]
        except Exception as e:
            logger.warning("Memory query failed for user %s: %s", user_id, e)
            return []

    def _put_sync(self, user_id: str, record: MemoryRecord) -> bool:
        if not self._pg_conn or not self._table_ready:
            return False
        try:
            with self._pg_conn.cursor() as cur:
                cur.execute(
                    """
                    INSERT INTO memory_records
                        (id, user_id, content, type, source, importance, tags, metadata, created_at)
                    VALUES (%s, %s, %s, %s, %s, %s, %s, %s, %s)
                    ON CONFLICT (id) DO UPDATE SET
                        content = EXCLUDED.content,
                        importance = EXCLUDED.importance,
                        tags = EXCLUDED.tags,
                        metadata = EXCLUDED.metadata
                    """,
                    (
                        record.id,
                        user_id,
                        record.content,
                        record.type,
                        record.source,
                        record.importance,
                        list(record.tags),
                        Jsonb(record.metadata),
                        record.timestamp,
                    ),
                )
            return True
        except Exception as e:
            logger.warning("Failed to store memory %s: %s", record.id, e)
            return False

    @staticmethod
    def _row_to_record(row) -> MemoryRecord:
        if not isinstance(row, dict):
            keys = (
                "id", "content", "type", "source", "importance", "tags", "metadata", "created_at",
            )
            row = dict(zip(keys, row))
        created: Optional[datetime] = row.get("created_at")
        return MemoryRecord(
            id=row["id"],
            content=row["content"],
            type=row["type"],
            source=row["source"],
            importance=float(row.get("importance") or 0.5),
            tags=list(row.get("tags") or []),
            timestamp=created or datetime.now(timezone.utc),
            metadata=dict(row.get("metadata") or {}),
        )
