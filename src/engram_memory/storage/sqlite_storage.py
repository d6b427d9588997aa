"""
SQLite record store.

Async storage backend using aiosqlite over a single persistent connection.
Memories live in one table with an FTS5 external-content index kept in sync
by triggers; contradictions and feedback votes reference memories with
``ON DELETE CASCADE`` foreign keys.
"""

import logging
import os
import re
import time
from collections.abc import Sequence
from typing import Any

import aiosqlite
import numpy as np

from ..errors import StorageError
from ..models.contradiction import Contradiction
from ..models.memory import DEFAULT_NAMESPACE, SECONDS_PER_DAY, Memory
from ..models.validators import Category, ContradictionStatus
from .base import (
    UPDATABLE_FIELDS,
    DailyCreation,
    FeedbackCounts,
    MemoryStorage,
    OverviewCounts,
    StorageStats,
)

logger = logging.getLogger(__name__)

_SCHEMA = (
    """
    CREATE TABLE IF NOT EXISTS memories (
        id TEXT PRIMARY KEY,
        content TEXT NOT NULL,
        entity TEXT,
        category TEXT NOT NULL DEFAULT 'fact',
        confidence REAL NOT NULL DEFAULT 0.8,
        embedding BLOB,
        namespace TEXT NOT NULL DEFAULT 'default',
        tags TEXT NOT NULL DEFAULT '[]',
        source TEXT NOT NULL DEFAULT 'manual',
        created_at REAL NOT NULL,
        updated_at REAL NOT NULL,
        last_accessed REAL,
        access_count INTEGER NOT NULL DEFAULT 0,
        decay_rate REAL NOT NULL DEFAULT 0.01,
        feedback_score REAL NOT NULL DEFAULT 0.0
    )
    """,
    "CREATE INDEX IF NOT EXISTS idx_memories_namespace ON memories(namespace)",
    "CREATE INDEX IF NOT EXISTS idx_memories_entity ON memories(entity, namespace)",
    "CREATE INDEX IF NOT EXISTS idx_memories_created ON memories(created_at)",
    """
    CREATE VIRTUAL TABLE IF NOT EXISTS memories_fts USING fts5(
        content, entity, tags,
        content='memories', content_rowid='rowid'
    )
    """,
    """
    CREATE TRIGGER IF NOT EXISTS memories_fts_insert AFTER INSERT ON memories BEGIN
        INSERT INTO memories_fts(rowid, content, entity, tags)
        VALUES (new.rowid, new.content, new.entity, new.tags);
    END
    """,
    """
    CREATE TRIGGER IF NOT EXISTS memories_fts_delete AFTER DELETE ON memories BEGIN
        INSERT INTO memories_fts(memories_fts, rowid, content, entity, tags)
        VALUES ('delete', old.rowid, old.content, old.entity, old.tags);
    END
    """,
    """
    CREATE TRIGGER IF NOT EXISTS memories_fts_update AFTER UPDATE OF content, entity, tags ON memories BEGIN
        INSERT INTO memories_fts(memories_fts, rowid, content, entity, tags)
        VALUES ('delete', old.rowid, old.content, old.entity, old.tags);
        INSERT INTO memories_fts(rowid, content, entity, tags)
        VALUES (new.rowid, new.content, new.entity, new.tags);
    END
    """,
    """
    CREATE TABLE IF NOT EXISTS contradictions (
        id TEXT PRIMARY KEY,
        memory1_id TEXT NOT NULL REFERENCES memories(id) ON DELETE CASCADE,
        memory2_id TEXT NOT NULL REFERENCES memories(id) ON DELETE CASCADE,
        pair_low TEXT NOT NULL,
        pair_high TEXT NOT NULL,
        confidence REAL NOT NULL,
        reason TEXT NOT NULL,
        category TEXT,
        entity TEXT,
        status TEXT NOT NULL DEFAULT 'unresolved',
        detected_at REAL NOT NULL,
        resolved_at REAL,
        resolution_action TEXT
    )
    """,
    # At most one open record per unordered pair
    """
    CREATE UNIQUE INDEX IF NOT EXISTS idx_contradictions_open_pair
    ON contradictions(pair_low, pair_high) WHERE status = 'unresolved'
    """,
    "CREATE INDEX IF NOT EXISTS idx_contradictions_status ON contradictions(status, detected_at)",
    """
    CREATE TABLE IF NOT EXISTS memory_feedback (
        id TEXT PRIMARY KEY,
        memory_id TEXT NOT NULL REFERENCES memories(id) ON DELETE CASCADE,
        helpful INTEGER NOT NULL,
        context TEXT,
        created_at REAL NOT NULL
    )
    """,
    "CREATE INDEX IF NOT EXISTS idx_feedback_memory ON memory_feedback(memory_id, created_at)",
)

_MEMORY_COLUMNS = (
    "id, content, entity, category, confidence, embedding, namespace, tags, source, "
    "created_at, updated_at, last_accessed, access_count, decay_rate, feedback_score"
)

_SORTABLE_COLUMNS = frozenset({"created_at", "updated_at", "confidence", "access_count", "last_accessed", "id"})

_FTS_TOKEN_RE = re.compile(r"\w+")


# ---------------------------------------------------------------------------
# Encoding helpers
# ---------------------------------------------------------------------------


def pack_embedding(embedding: Sequence[float] | None) -> bytes | None:
    """Little-endian float32 blob, or None for a missing embedding."""
    if not embedding:
        return None
    return np.asarray(embedding, dtype="<f4").tobytes()


def unpack_embedding(blob: bytes | None) -> list[float] | None:
    if not blob:
        return None
    return np.frombuffer(blob, dtype="<f4").astype(float).tolist()


def build_match_query(query: str) -> str | None:
    """
    Turn arbitrary user text into a safe FTS5 MATCH expression.

    Each word is quoted (so FTS operators in the input are inert) and the
    words are OR-joined so any overlap counts as a match.
    """
    tokens = _FTS_TOKEN_RE.findall(query.lower())
    if not tokens:
        return None
    return " OR ".join(f'"{token}"' for token in dict.fromkeys(tokens))


def _parse_sort(sort: str) -> str:
    parts = sort.split()
    column = parts[0] if parts else "created_at"
    direction = parts[1].upper() if len(parts) > 1 else "ASC"
    if column not in _SORTABLE_COLUMNS or direction not in ("ASC", "DESC") or len(parts) > 2:
        raise ValueError(f"Unsupported sort order: {sort!r}")
    return f"{column} {direction}, id ASC"


def _row_to_memory(row: aiosqlite.Row) -> Memory:
    data = dict(row)
    embedding = unpack_embedding(data.pop("embedding", None))
    return Memory.from_row(data, embedding)


class SqliteMemoryStorage(MemoryStorage):
    """Async SQLite record store for memories, contradictions and feedback."""

    def __init__(self, db_path: str | os.PathLike[str]):
        """
        Initialize the store.

        Args:
            db_path: Path to the SQLite database file (``":memory:"`` for a
                throwaway in-process database)
        """
        self.db_path = str(db_path)
        self._db: aiosqlite.Connection | None = None

    async def initialize(self) -> None:
        """Open the connection and create the schema if needed."""
        if self._db is not None:
            return

        if self.db_path != ":memory:":
            directory = os.path.dirname(os.path.abspath(self.db_path))
            os.makedirs(directory, exist_ok=True)

        try:
            db = await aiosqlite.connect(self.db_path)
            db.row_factory = aiosqlite.Row
            await db.execute("PRAGMA foreign_keys = ON")
            if self.db_path != ":memory:":
                await db.execute("PRAGMA journal_mode = WAL")
            for statement in _SCHEMA:
                await db.execute(statement)
            await db.commit()
        except aiosqlite.Error as e:
            raise StorageError(f"Failed to initialize SQLite store at {self.db_path}: {e}") from e

        self._db = db
        logger.info(f"SQLite memory store initialized at {self.db_path}")

    async def close(self) -> None:
        if self._db is not None:
            await self._db.close()
            self._db = None

    @property
    def db(self) -> aiosqlite.Connection:
        if self._db is None:
            raise StorageError("SQLite store used before initialize()")
        return self._db

    async def _fetch_memories(self, sql: str, params: Sequence[Any] = ()) -> list[Memory]:
        cursor = await self.db.execute(sql, params)
        return [_row_to_memory(row) for row in await cursor.fetchall()]

    async def _scalar(self, sql: str, params: Sequence[Any] = ()) -> Any:
        cursor = await self.db.execute(sql, params)
        row = await cursor.fetchone()
        return row[0] if row else None

    # -- memories ---------------------------------------------------------

    async def create_memory(self, memory: Memory) -> Memory:
        row = memory.to_row()
        row["embedding"] = pack_embedding(memory.embedding)
        columns = ", ".join(row)
        placeholders = ", ".join("?" for _ in row)
        try:
            await self.db.execute(f"INSERT INTO memories ({columns}) VALUES ({placeholders})", tuple(row.values()))
            await self.db.commit()
        except aiosqlite.IntegrityError as e:
            raise StorageError(f"Could not insert memory {memory.id[:8]}: {e}") from e
        logger.debug(f"Stored memory {memory.id[:8]} in namespace '{memory.namespace}'")
        return memory

    async def get_memory(self, memory_id: str) -> Memory | None:
        memories = await self._fetch_memories(f"SELECT {_MEMORY_COLUMNS} FROM memories WHERE id = ?", (memory_id,))
        return memories[0] if memories else None

    async def update_memory(
        self,
        memory_id: str,
        updates: dict[str, Any],
        preserve_timestamps: bool = False,
    ) -> Memory | None:
        unknown = set(updates) - UPDATABLE_FIELDS
        if unknown:
            raise ValueError(f"Cannot update memory fields: {sorted(unknown)}")

        current = await self.get_memory(memory_id)
        if current is None:
            return None

        data = current.model_dump()
        data.update(updates)
        if not preserve_timestamps:
            data["updated_at"] = time.time()
        # Re-validate so range and enum checks apply to partial updates too
        updated = Memory.model_validate(data)

        row = updated.to_row()
        row["embedding"] = pack_embedding(updated.embedding)
        row.pop("id")
        row.pop("created_at")
        assignments = ", ".join(f"{column} = ?" for column in row)
        cursor = await self.db.execute(
            f"UPDATE memories SET {assignments} WHERE id = ?",
            (*row.values(), memory_id),
        )
        await self.db.commit()
        if cursor.rowcount == 0:
            return None
        return updated

    async def delete_memory(self, memory_id: str) -> bool:
        cursor = await self.db.execute("DELETE FROM memories WHERE id = ?", (memory_id,))
        await self.db.commit()
        deleted = cursor.rowcount > 0
        if deleted:
            logger.debug(f"Deleted memory {memory_id[:8]}")
        return deleted

    async def list_memories(
        self,
        namespace: str | None = None,
        category: Category | None = None,
        limit: int = 50,
        offset: int = 0,
        sort: str = "created_at DESC",
    ) -> list[Memory]:
        conditions: list[str] = []
        params: list[Any] = []
        if namespace is not None:
            conditions.append("namespace = ?")
            params.append(namespace)
        if category is not None:
            conditions.append("category = ?")
            params.append(Category(category).value)
        where = f"WHERE {' AND '.join(conditions)}" if conditions else ""
        return await self._fetch_memories(
            f"SELECT {_MEMORY_COLUMNS} FROM memories {where} ORDER BY {_parse_sort(sort)} LIMIT ? OFFSET ?",
            (*params, limit, offset),
        )

    async def search_full_text(self, query: str, limit: int = 20, namespace: str | None = None) -> list[Memory]:
        match = build_match_query(query)
        if match is None or limit <= 0:
            return []

        columns = ", ".join(f"m.{c.strip()}" for c in _MEMORY_COLUMNS.split(","))
        sql = f"""
            SELECT {columns}
            FROM memories_fts f
            JOIN memories m ON m.rowid = f.rowid
            WHERE memories_fts MATCH ?
        """
        params: list[Any] = [match]
        if namespace is not None:
            sql += " AND m.namespace = ?"
            params.append(namespace)
        sql += " ORDER BY f.rank, m.id LIMIT ?"
        params.append(limit)

        try:
            return await self._fetch_memories(sql, params)
        except aiosqlite.OperationalError as e:
            raise StorageError(f"Full-text search failed for {query!r}: {e}") from e

    async def memories_with_embeddings(self, namespace: str | None = None) -> list[Memory]:
        sql = f"SELECT {_MEMORY_COLUMNS} FROM memories WHERE embedding IS NOT NULL"
        params: tuple[Any, ...] = ()
        if namespace is not None:
            sql += " AND namespace = ?"
            params = (namespace,)
        sql += " ORDER BY created_at ASC, id ASC"
        return await self._fetch_memories(sql, params)

    async def memories_by_entity(
        self,
        entity: str,
        namespace: str,
        limit: int = 50,
        exclude_id: str | None = None,
    ) -> list[Memory]:
        sql = f"SELECT {_MEMORY_COLUMNS} FROM memories WHERE entity = ? AND namespace = ?"
        params: list[Any] = [entity, namespace]
        if exclude_id is not None:
            sql += " AND id != ?"
            params.append(exclude_id)
        sql += " ORDER BY created_at DESC, id ASC LIMIT ?"
        params.append(limit)
        return await self._fetch_memories(sql, params)

    async def touch_access(self, memory_ids: Sequence[str], at: float | None = None) -> None:
        unique_ids = list(dict.fromkeys(memory_ids))
        if not unique_ids:
            return
        accessed_at = time.time() if at is None else at
        await self.db.executemany(
            "UPDATE memories SET access_count = access_count + 1, last_accessed = ? WHERE id = ?",
            [(accessed_at, memory_id) for memory_id in unique_ids],
        )
        await self.db.commit()

    async def stats(self) -> StorageStats:
        total = await self._scalar("SELECT COUNT(*) FROM memories") or 0
        with_embeddings = await self._scalar("SELECT COUNT(*) FROM memories WHERE embedding IS NOT NULL") or 0

        cursor = await self.db.execute("SELECT category, COUNT(*) FROM memories GROUP BY category")
        by_category = {row[0]: row[1] for row in await cursor.fetchall()}

        cursor = await self.db.execute("SELECT namespace, COUNT(*) FROM memories GROUP BY namespace")
        by_namespace = {row[0] or DEFAULT_NAMESPACE: row[1] for row in await cursor.fetchall()}

        return StorageStats(
            total=total,
            by_category=by_category,
            by_namespace=by_namespace,
            with_embeddings=with_embeddings,
        )

    # -- contradictions ---------------------------------------------------

    async def create_contradiction(self, contradiction: Contradiction) -> Contradiction | None:
        row = contradiction.to_row()
        row["pair_low"], row["pair_high"] = contradiction.pair
        columns = ", ".join(row)
        placeholders = ", ".join("?" for _ in row)
        try:
            cursor = await self.db.execute(
                f"INSERT OR IGNORE INTO contradictions ({columns}) VALUES ({placeholders})",
                tuple(row.values()),
            )
            await self.db.commit()
        except aiosqlite.IntegrityError as e:
            # Foreign key failure: one side no longer exists
            raise StorageError(
                f"Could not record contradiction {contradiction.memory1_id[:8]}/{contradiction.memory2_id[:8]}: {e}"
            ) from e
        if cursor.rowcount == 0:
            return None
        return contradiction

    async def contradiction_exists(self, memory1_id: str, memory2_id: str) -> bool:
        low, high = sorted((memory1_id, memory2_id))
        found = await self._scalar(
            "SELECT 1 FROM contradictions WHERE pair_low = ? AND pair_high = ? AND status = ? LIMIT 1",
            (low, high, ContradictionStatus.UNRESOLVED.value),
        )
        return found is not None

    async def get_contradiction(self, contradiction_id: str) -> Contradiction | None:
        cursor = await self.db.execute("SELECT * FROM contradictions WHERE id = ?", (contradiction_id,))
        row = await cursor.fetchone()
        return Contradiction.from_row(dict(row)) if row else None

    async def list_contradictions(
        self,
        status: ContradictionStatus | None = ContradictionStatus.UNRESOLVED,
        limit: int = 100,
    ) -> list[Contradiction]:
        if status is None:
            cursor = await self.db.execute(
                "SELECT * FROM contradictions ORDER BY detected_at DESC, id ASC LIMIT ?",
                (limit,),
            )
        else:
            cursor = await self.db.execute(
                "SELECT * FROM contradictions WHERE status = ? ORDER BY detected_at DESC, id ASC LIMIT ?",
                (ContradictionStatus(status).value, limit),
            )
        return [Contradiction.from_row(dict(row)) for row in await cursor.fetchall()]

    async def update_contradiction(self, contradiction: Contradiction) -> bool:
        row = contradiction.to_row()
        cursor = await self.db.execute(
            """
            UPDATE contradictions
            SET confidence = ?, reason = ?, status = ?, resolved_at = ?, resolution_action = ?
            WHERE id = ?
            """,
            (
                row["confidence"],
                row["reason"],
                row["status"],
                row["resolved_at"],
                row["resolution_action"],
                row["id"],
            ),
        )
        await self.db.commit()
        return cursor.rowcount > 0

    # -- feedback ---------------------------------------------------------

    async def record_feedback_vote(
        self,
        feedback_id: str,
        memory_id: str,
        helpful: bool,
        context: str | None,
        created_at: float,
    ) -> None:
        try:
            await self.db.execute(
                "INSERT INTO memory_feedback (id, memory_id, helpful, context, created_at) VALUES (?, ?, ?, ?, ?)",
                (feedback_id, memory_id, 1 if helpful else 0, context, created_at),
            )
            await self.db.commit()
        except aiosqlite.IntegrityError as e:
            raise StorageError(f"Could not record feedback for memory {memory_id[:8]}: {e}") from e

    async def feedback_counts(self, memory_id: str) -> FeedbackCounts:
        cursor = await self.db.execute(
            """
            SELECT COUNT(*), SUM(helpful), MIN(created_at), MAX(created_at)
            FROM memory_feedback WHERE memory_id = ?
            """,
            (memory_id,),
        )
        row = await cursor.fetchone()
        if not row:
            return FeedbackCounts()
        return FeedbackCounts(total=row[0] or 0, helpful=row[1] or 0, first_at=row[2], last_at=row[3])

    async def feedback_history(self, memory_id: str, limit: int = 10) -> list[dict[str, Any]]:
        cursor = await self.db.execute(
            """
            SELECT id, helpful, context, created_at FROM memory_feedback
            WHERE memory_id = ?
            ORDER BY created_at DESC, id ASC
            LIMIT ?
            """,
            (memory_id, limit),
        )
        return [
            {"id": row[0], "helpful": bool(row[1]), "context": row[2], "created_at": row[3]}
            for row in await cursor.fetchall()
        ]

    async def low_feedback_memories(self, threshold: float, min_feedback: int) -> list[tuple[Memory, int]]:
        columns = ", ".join(f"m.{c.strip()}" for c in _MEMORY_COLUMNS.split(","))
        cursor = await self.db.execute(
            f"""
            SELECT {columns}, COUNT(f.id) AS feedback_count
            FROM memories m
            JOIN memory_feedback f ON f.memory_id = m.id
            WHERE m.feedback_score <= ?
            GROUP BY m.id
            HAVING COUNT(f.id) >= ?
            ORDER BY m.feedback_score ASC, m.id ASC
            """,
            (threshold, min_feedback),
        )
        results = []
        for row in await cursor.fetchall():
            data = dict(row)
            count = data.pop("feedback_count")
            embedding = unpack_embedding(data.pop("embedding", None))
            results.append((Memory.from_row(data, embedding), count))
        return results

    # -- reporting --------------------------------------------------------

    async def overview_counts(self, now: float) -> OverviewCounts:
        week_ago = now - 7 * SECONDS_PER_DAY
        month_ago = now - 30 * SECONDS_PER_DAY
        cursor = await self.db.execute(
            """
            SELECT
                SUM(CASE WHEN created_at >= ? THEN 1 ELSE 0 END),
                SUM(CASE WHEN created_at >= ? THEN 1 ELSE 0 END),
                AVG(confidence),
                SUM(CASE WHEN access_count > 0 THEN 1 ELSE 0 END),
                SUM(CASE WHEN last_accessed IS NOT NULL AND last_accessed >= ? THEN 1 ELSE 0 END)
            FROM memories
            """,
            (week_ago, month_ago, month_ago),
        )
        row = await cursor.fetchone()
        if not row:
            return OverviewCounts()
        return OverviewCounts(
            created_last_7_days=row[0] or 0,
            created_last_30_days=row[1] or 0,
            avg_confidence=row[2] or 0.0,
            total_recalled=row[3] or 0,
            accessed_last_30_days=row[4] or 0,
        )

    async def stale_candidates(self, before: float, limit: int, offset: int = 0) -> tuple[list[Memory], int]:
        total = await self._scalar(
            "SELECT COUNT(*) FROM memories WHERE COALESCE(last_accessed, created_at) < ?",
            (before,),
        )
        memories = await self._fetch_memories(
            f"""
            SELECT {_MEMORY_COLUMNS} FROM memories
            WHERE COALESCE(last_accessed, created_at) < ?
            ORDER BY COALESCE(last_accessed, created_at) ASC, id ASC
            LIMIT ? OFFSET ?
            """,
            (before, limit, offset),
        )
        return memories, total or 0

    async def never_recalled(self, limit: int, offset: int = 0) -> tuple[list[Memory], int]:
        total = await self._scalar("SELECT COUNT(*) FROM memories WHERE access_count = 0")
        memories = await self._fetch_memories(
            f"""
            SELECT {_MEMORY_COLUMNS} FROM memories
            WHERE access_count = 0
            ORDER BY created_at ASC, id ASC
            LIMIT ? OFFSET ?
            """,
            (limit, offset),
        )
        return memories, total or 0

    async def daily_creation(self, since: float) -> list[DailyCreation]:
        cursor = await self.db.execute(
            """
            SELECT date(created_at, 'unixepoch') AS day, COUNT(*), AVG(confidence)
            FROM memories
            WHERE created_at >= ?
            GROUP BY day
            ORDER BY day
            """,
            (since,),
        )
        return [DailyCreation(date=row[0], created=row[1], avg_confidence=row[2]) for row in await cursor.fetchall()]
