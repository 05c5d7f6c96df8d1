"""
SQLite-backed persistence store for both memory engines.

Tables:
- semantic_memory: knowledge entries with float32 embedding BLOBs
- knowledge_relationships: directed edges, UNIQUE(source_id, target_id)
- procedural_memory: behavior records
- episodic_memory: externally owned source of promotable episodes

A single connection in WAL mode is shared by worker threads; every call
runs via ``asyncio.to_thread`` and is serialized by a lock. Counter
updates are single UPDATE statements with SQL increments.
"""

import asyncio
import sqlite3
import threading
from pathlib import Path
from typing import Any, Callable, Dict, List, Optional, Sequence, Union

import numpy as np

from ..config.settings import StoreConfig
from ..errors import PersistenceError
from ..telemetry import get_logger
from .base import PersistenceStore, Row

logger = get_logger(__name__)

_SCHEMA = """
CREATE TABLE IF NOT EXISTS semantic_memory (
    id TEXT PRIMARY KEY,
    agent_id TEXT NOT NULL,
    user_id TEXT NOT NULL,
    category TEXT NOT NULL,
    content TEXT NOT NULL,
    context_summary TEXT NOT NULL DEFAULT '{}',
    entities TEXT NOT NULL DEFAULT '{}',
    confidence_score REAL NOT NULL,
    usage_count INTEGER NOT NULL DEFAULT 0,
    embedding BLOB,
    source_type TEXT,
    source_episode_id TEXT,
    source_session TEXT,
    created_at REAL NOT NULL,
    last_accessed REAL NOT NULL
);

CREATE INDEX IF NOT EXISTS idx_semantic_memory_owner
ON semantic_memory(agent_id, user_id);

CREATE TABLE IF NOT EXISTS knowledge_relationships (
    source_id TEXT NOT NULL,
    target_id TEXT NOT NULL,
    relationship_type TEXT NOT NULL,
    strength REAL NOT NULL,
    created_at REAL NOT NULL,
    updated_at REAL NOT NULL,
    UNIQUE (source_id, target_id),
    CHECK (source_id != target_id)
);

CREATE TABLE IF NOT EXISTS procedural_memory (
    id TEXT PRIMARY KEY,
    agent_id TEXT NOT NULL,
    user_id TEXT NOT NULL,
    procedure_name TEXT NOT NULL,
    procedure_type TEXT NOT NULL,
    procedure_data TEXT NOT NULL DEFAULT '{}',
    context_conditions TEXT NOT NULL DEFAULT '{}',
    context_tags TEXT NOT NULL DEFAULT '[]',
    effectiveness_score REAL NOT NULL,
    usage_count INTEGER NOT NULL DEFAULT 1,
    success_count INTEGER NOT NULL DEFAULT 0,
    success_rate REAL NOT NULL DEFAULT 0.0,
    adaptation_history TEXT NOT NULL DEFAULT '[]',
    is_active INTEGER NOT NULL DEFAULT 1,
    last_used REAL NOT NULL,
    created_at REAL NOT NULL,
    UNIQUE (agent_id, user_id, procedure_name),
    CHECK (success_count <= usage_count)
);

CREATE INDEX IF NOT EXISTS idx_procedural_memory_owner_type
ON procedural_memory(agent_id, user_id, procedure_type);

CREATE TABLE IF NOT EXISTS episodic_memory (
    id TEXT PRIMARY KEY,
    agent_id TEXT NOT NULL,
    user_id TEXT NOT NULL,
    content TEXT NOT NULL,
    context TEXT NOT NULL DEFAULT '{}',
    importance_score REAL NOT NULL DEFAULT 0.5,
    promoted_to_semantic INTEGER NOT NULL DEFAULT 0,
    created_at REAL NOT NULL
);
"""

_KNOWLEDGE_COLUMNS = (
    "id", "agent_id", "user_id", "category", "content", "context_summary", "entities",
    "confidence_score", "usage_count", "embedding", "source_type", "source_episode_id",
    "source_session", "created_at", "last_accessed",
)

_BEHAVIOR_COLUMNS = (
    "id", "agent_id", "user_id", "procedure_name", "procedure_type", "procedure_data",
    "context_conditions", "context_tags", "effectiveness_score", "usage_count",
    "success_count", "success_rate", "adaptation_history", "is_active", "last_used", "created_at",
)

_EPISODE_COLUMNS = (
    "id", "agent_id", "user_id", "content", "context", "importance_score",
    "promoted_to_semantic", "created_at",
)

# Columns a caller may patch through update_behavior
_BEHAVIOR_UPDATABLE = frozenset({
    "procedure_data", "context_conditions", "context_tags", "effectiveness_score",
    "adaptation_history", "is_active", "last_used", "created_at",
})

_RELEVANCE_SQL = "(usage_count * 0.3 + success_count * 0.4 + effectiveness_score * 0.3)"


def _to_blob(vector: Union[np.ndarray, Sequence[float], None]) -> Optional[bytes]:
    if vector is None:
        return None
    return np.asarray(vector, dtype=np.float32).tobytes()


def _from_blob(blob: Optional[bytes]) -> np.ndarray:
    if not blob:
        return np.zeros(0, dtype=np.float32)
    return np.frombuffer(blob, dtype=np.float32).copy()


def _placeholders(n: int) -> str:
    return ", ".join("?" for _ in range(n))


class SQLiteMemoryStore(PersistenceStore):
    """
    File-backed SQLite implementation of ``PersistenceStore``.

    Thread-safe with WAL mode; one connection guarded by a lock.
    """

    def __init__(self, db_path: Union[str, Path], timeout: float = 10.0):
        """
        Initialize the store at the given path.

        Args:
            db_path: Path to SQLite database file (``":memory:"`` for tests)
            timeout: Seconds to wait on a locked database
        """
        self.db_path = str(db_path)
        if self.db_path != ":memory:":
            Path(self.db_path).parent.mkdir(parents=True, exist_ok=True)

        self._lock = threading.Lock()
        self._closed = False
        try:
            self._conn = sqlite3.connect(
                self.db_path,
                check_same_thread=False,  # Accessed from worker threads
                timeout=timeout,
            )
            self._conn.row_factory = sqlite3.Row
            self._conn.execute("PRAGMA journal_mode=WAL")
            self._conn.execute("PRAGMA synchronous=NORMAL")
            self._conn.executescript(_SCHEMA)
            self._conn.commit()
        except sqlite3.Error as e:
            raise PersistenceError(f"failed to open {self.db_path}: {e}") from e

    @classmethod
    def from_config(cls, config: StoreConfig) -> "SQLiteMemoryStore":
        return cls(config.db_path, timeout=config.timeout_seconds)

    # ------------------ plumbing ------------------
    def _call(self, fn: Callable[..., Any], *args: Any, **kwargs: Any) -> Any:
        with self._lock:
            try:
                return fn(*args, **kwargs)
            except sqlite3.Error as e:
                if not self._closed and self._conn.in_transaction:
                    self._conn.rollback()
                logger.error("sqlite_query_failed", op=fn.__name__, error=str(e))
                raise PersistenceError(f"{fn.__name__}: {e}") from e

    async def _run(self, fn: Callable[..., Any], *args: Any, **kwargs: Any) -> Any:
        return await asyncio.to_thread(self._call, fn, *args, **kwargs)

    def _fetchall(self, sql: str, params: Sequence[Any] = ()) -> List[Row]:
        return [dict(r) for r in self._conn.execute(sql, params).fetchall()]

    def _fetchone(self, sql: str, params: Sequence[Any] = ()) -> Optional[Row]:
        row = self._conn.execute(sql, params).fetchone()
        return dict(row) if row else None

    def _write(self, sql: str, params: Sequence[Any] = ()) -> int:
        cursor = self._conn.execute(sql, params)
        self._conn.commit()
        return cursor.rowcount

    def _insert(self, table: str, columns: Sequence[str], row: Row) -> None:
        values = [row.get(c) for c in columns]
        self._write(
            f"INSERT INTO {table} ({', '.join(columns)}) VALUES ({_placeholders(len(columns))})",
            values,
        )

    def disconnect(self) -> None:
        """Close the connection synchronously."""
        with self._lock:
            if not self._closed:
                self._conn.close()
                self._closed = True

    async def close(self) -> None:
        await asyncio.to_thread(self.disconnect)

    def stats(self) -> Dict[str, Any]:
        """Row counts per table."""
        with self._lock:
            return {
                table: self._conn.execute(f"SELECT COUNT(*) FROM {table}").fetchone()[0]
                for table in ("semantic_memory", "knowledge_relationships", "procedural_memory", "episodic_memory")
            }

    async def ensure_vector_index(self) -> bool:
        def _ensure() -> bool:
            self._conn.execute(
                "CREATE INDEX IF NOT EXISTS idx_semantic_memory_owner_category "
                "ON semantic_memory(agent_id, user_id, category, created_at)"
            )
            self._conn.commit()
            return True

        return await self._run(_ensure)

    # ------------------ knowledge ------------------
    async def insert_knowledge(self, row: Row) -> None:
        row = dict(row)
        row["embedding"] = _to_blob(row.get("embedding"))
        await self._run(self._insert, "semantic_memory", _KNOWLEDGE_COLUMNS, row)

    def _decode_knowledge(self, row: Row) -> Row:
        row["embedding"] = _from_blob(row.get("embedding"))
        return row

    async def get_knowledge(self, entry_id: str, agent_id: str, user_id: str) -> Optional[Row]:
        row = await self._run(
            self._fetchone,
            "SELECT * FROM semantic_memory WHERE id = ? AND agent_id = ? AND user_id = ?",
            (entry_id, agent_id, user_id),
        )
        return self._decode_knowledge(row) if row else None

    async def search_knowledge(
        self,
        agent_id: str,
        user_id: str,
        embedding: np.ndarray,
        *,
        min_similarity: float,
        limit: int,
        categories: Optional[Sequence[str]] = None,
        created_after: Optional[float] = None,
        exclude_id: Optional[str] = None,
    ) -> List[Row]:
        """
        Brute-force cosine search over the owner's rows.

        Rows whose stored vector has a different length, or a zero norm,
        never match.
        """
        sql = "SELECT * FROM semantic_memory WHERE agent_id = ? AND user_id = ?"
        params: List[Any] = [agent_id, user_id]
        if categories:
            sql += f" AND category IN ({_placeholders(len(categories))})"
            params.extend(categories)
        if created_after is not None:
            sql += " AND created_at >= ?"
            params.append(created_after)
        if exclude_id is not None:
            sql += " AND id != ?"
            params.append(exclude_id)

        rows = await self._run(self._fetchall, sql, params)

        query = np.asarray(embedding, dtype=np.float32).reshape(-1)
        query_norm = float(np.linalg.norm(query))
        if not rows or query_norm == 0.0:
            return []

        scored = []
        for row in rows:
            vector = _from_blob(row.get("embedding"))
            if vector.shape[0] != query.shape[0]:
                continue
            norm = float(np.linalg.norm(vector))
            if norm == 0.0:
                continue
            similarity = float(np.clip(np.dot(vector, query) / (norm * query_norm), -1.0, 1.0))
            if similarity < min_similarity:
                continue
            row["embedding"] = vector
            row["similarity_score"] = similarity
            scored.append(row)

        scored.sort(key=lambda r: (r["similarity_score"], r["created_at"]), reverse=True)
        return scored[:limit]

    async def touch_knowledge(self, entry_ids: Sequence[str], agent_id: str, user_id: str, now: float) -> int:
        ids = list(dict.fromkeys(entry_ids))
        if not ids:
            return 0
        return await self._run(
            self._write,
            f"UPDATE semantic_memory SET usage_count = usage_count + 1, last_accessed = ? "
            f"WHERE agent_id = ? AND user_id = ? AND id IN ({_placeholders(len(ids))})",
            [now, agent_id, user_id, *ids],
        )

    def _delete_knowledge_ids(self, ids: Sequence[str]) -> int:
        if not ids:
            return 0
        marks = _placeholders(len(ids))
        self._conn.execute(
            f"DELETE FROM knowledge_relationships WHERE source_id IN ({marks}) OR target_id IN ({marks})",
            [*ids, *ids],
        )
        cursor = self._conn.execute(f"DELETE FROM semantic_memory WHERE id IN ({marks})", list(ids))
        self._conn.commit()
        return cursor.rowcount

    async def delete_knowledge(self, entry_id: str, agent_id: str, user_id: str) -> bool:
        def _delete() -> bool:
            owned = self._fetchone(
                "SELECT id FROM semantic_memory WHERE id = ? AND agent_id = ? AND user_id = ?",
                (entry_id, agent_id, user_id),
            )
            if not owned:
                return False
            return self._delete_knowledge_ids([entry_id]) > 0

        return await self._run(_delete)

    async def count_knowledge(self, agent_id: str, user_id: str) -> int:
        row = await self._run(
            self._fetchone,
            "SELECT COUNT(*) AS n FROM semantic_memory WHERE agent_id = ? AND user_id = ?",
            (agent_id, user_id),
        )
        return int(row["n"])

    async def knowledge_label_stats(self, agent_id: str, user_id: str) -> List[Row]:
        return await self._run(
            self._fetchall,
            """
            SELECT category AS label,
                   COUNT(*) AS frequency,
                   AVG(confidence_score) AS avg_score,
                   AVG(usage_count) AS avg_usage
            FROM semantic_memory
            WHERE agent_id = ? AND user_id = ?
            GROUP BY category
            """,
            (agent_id, user_id),
        )

    async def evict_stale_knowledge(
        self, agent_id: str, user_id: str, *, created_before: float, access_floor: int
    ) -> int:
        def _evict() -> int:
            stale = self._fetchall(
                "SELECT id FROM semantic_memory WHERE agent_id = ? AND user_id = ? "
                "AND created_at < ? AND usage_count < ?",
                (agent_id, user_id, created_before, access_floor),
            )
            return self._delete_knowledge_ids([r["id"] for r in stale])

        return await self._run(_evict)

    # ------------------ relationships ------------------
    async def upsert_relationship(
        self, source_id: str, target_id: str, relationship_type: str, strength: float, now: float
    ) -> None:
        if source_id == target_id:
            raise PersistenceError(f"self-loop rejected for {source_id}")
        strength = max(0.0, min(1.0, float(strength)))
        await self._run(
            self._write,
            """
            INSERT INTO knowledge_relationships
                (source_id, target_id, relationship_type, strength, created_at, updated_at)
            VALUES (?, ?, ?, ?, ?, ?)
            ON CONFLICT(source_id, target_id) DO UPDATE SET
                strength = excluded.strength,
                updated_at = excluded.updated_at
            """,
            (source_id, target_id, relationship_type, strength, now, now),
        )

    async def list_relationships(self, source_id: str, agent_id: str, user_id: str, limit: int = 5) -> List[Row]:
        return await self._run(
            self._fetchall,
            """
            SELECT r.source_id, r.target_id, r.relationship_type, r.strength,
                   r.created_at, r.updated_at,
                   t.category AS target_category, t.content AS target_content
            FROM knowledge_relationships r
            JOIN semantic_memory t ON t.id = r.target_id
            WHERE r.source_id = ? AND t.agent_id = ? AND t.user_id = ?
            ORDER BY r.strength DESC, r.updated_at DESC
            LIMIT ?
            """,
            (source_id, agent_id, user_id, limit),
        )

    async def count_relationships(self, agent_id: str, user_id: str) -> int:
        row = await self._run(
            self._fetchone,
            """
            SELECT COUNT(*) AS n
            FROM knowledge_relationships r
            JOIN semantic_memory s ON s.id = r.source_id
            WHERE s.agent_id = ? AND s.user_id = ?
            """,
            (agent_id, user_id),
        )
        return int(row["n"])

    # ------------------ episodic source ------------------
    async def insert_episode(self, row: Row) -> None:
        await self._run(self._insert, "episodic_memory", _EPISODE_COLUMNS, row)

    async def fetch_promoted_episodes(
        self, agent_id: str, user_id: str, *, created_after: float, limit: int
    ) -> List[Row]:
        return await self._run(
            self._fetchall,
            """
            SELECT e.* FROM episodic_memory e
            WHERE e.agent_id = ? AND e.user_id = ?
              AND e.promoted_to_semantic = 1
              AND e.created_at >= ?
              AND NOT EXISTS (
                  SELECT 1 FROM semantic_memory s
                  WHERE s.source_episode_id = e.id
                    AND s.agent_id = e.agent_id AND s.user_id = e.user_id
              )
            ORDER BY e.importance_score DESC, e.created_at DESC
            LIMIT ?
            """,
            (agent_id, user_id, created_after, limit),
        )

    # ------------------ behaviors ------------------
    async def insert_behavior(self, row: Row) -> None:
        await self._run(self._insert, "procedural_memory", _BEHAVIOR_COLUMNS, row)

    async def get_behavior(self, behavior_id: str, agent_id: str, user_id: str) -> Optional[Row]:
        return await self._run(
            self._fetchone,
            "SELECT * FROM procedural_memory WHERE id = ? AND agent_id = ? AND user_id = ?",
            (behavior_id, agent_id, user_id),
        )

    async def recent_behaviors(self, agent_id: str, user_id: str, behavior_type: str, limit: int) -> List[Row]:
        return await self._run(
            self._fetchall,
            """
            SELECT * FROM procedural_memory
            WHERE agent_id = ? AND user_id = ? AND procedure_type = ? AND is_active = 1
            ORDER BY created_at DESC
            LIMIT ?
            """,
            (agent_id, user_id, behavior_type, limit),
        )

    async def merge_behavior(
        self,
        behavior_id: str,
        agent_id: str,
        user_id: str,
        *,
        effectiveness: float,
        old_weight: float,
        success_increment: int,
        now: float,
    ) -> bool:
        # SET expressions all read the pre-update row
        changed = await self._run(
            self._write,
            """
            UPDATE procedural_memory SET
                effectiveness_score = MAX(0.0, MIN(1.0, effectiveness_score * ? + ? * (1.0 - ?))),
                usage_count = usage_count + 1,
                success_count = MIN(success_count + ?, usage_count + 1),
                success_rate = CAST(MIN(success_count + ?, usage_count + 1) AS REAL) / (usage_count + 1),
                last_used = ?
            WHERE id = ? AND agent_id = ? AND user_id = ?
            """,
            (old_weight, effectiveness, old_weight, success_increment, success_increment,
             now, behavior_id, agent_id, user_id),
        )
        return changed > 0

    async def record_behavior_usage(self, behavior_id: str, agent_id: str, user_id: str, now: float) -> bool:
        changed = await self._run(
            self._write,
            """
            UPDATE procedural_memory SET
                usage_count = usage_count + 1,
                success_rate = CAST(success_count AS REAL) / (usage_count + 1),
                last_used = ?
            WHERE id = ? AND agent_id = ? AND user_id = ?
            """,
            (now, behavior_id, agent_id, user_id),
        )
        return changed > 0

    async def record_behavior_success(self, behavior_id: str, agent_id: str, user_id: str) -> bool:
        changed = await self._run(
            self._write,
            """
            UPDATE procedural_memory SET
                success_count = MIN(success_count + 1, usage_count),
                success_rate = CAST(MIN(success_count + 1, usage_count) AS REAL) / MAX(usage_count, 1)
            WHERE id = ? AND agent_id = ? AND user_id = ?
            """,
            (behavior_id, agent_id, user_id),
        )
        return changed > 0

    async def update_behavior(self, behavior_id: str, agent_id: str, user_id: str, fields: Row) -> bool:
        unknown = set(fields) - _BEHAVIOR_UPDATABLE
        if unknown:
            raise PersistenceError(f"cannot update columns: {sorted(unknown)}")
        if not fields:
            return False
        columns = list(fields)
        assignments = ", ".join(f"{c} = ?" for c in columns)
        changed = await self._run(
            self._write,
            f"UPDATE procedural_memory SET {assignments} WHERE id = ? AND agent_id = ? AND user_id = ?",
            [fields[c] for c in columns] + [behavior_id, agent_id, user_id],
        )
        return changed > 0

    async def rank_behaviors(
        self,
        agent_id: str,
        user_id: str,
        *,
        min_effectiveness: float,
        limit: int,
        behavior_types: Optional[Sequence[str]] = None,
        context_tags: Optional[Sequence[str]] = None,
    ) -> List[Row]:
        sql = (
            f"SELECT *, {_RELEVANCE_SQL} AS relevance_score FROM procedural_memory "
            "WHERE agent_id = ? AND user_id = ? AND is_active = 1 AND effectiveness_score >= ?"
        )
        params: List[Any] = [agent_id, user_id, min_effectiveness]
        if behavior_types:
            sql += f" AND procedure_type IN ({_placeholders(len(behavior_types))})"
            params.extend(behavior_types)
        if context_tags:
            sql += (
                " AND EXISTS (SELECT 1 FROM json_each(procedural_memory.context_tags) "
                f"WHERE json_each.value IN ({_placeholders(len(context_tags))}))"
            )
            params.extend(context_tags)
        sql += " ORDER BY relevance_score DESC, last_used DESC LIMIT ?"
        params.append(limit)
        return await self._run(self._fetchall, sql, params)

    async def top_behaviors(self, agent_id: str, user_id: str, limit: int) -> List[Row]:
        return await self._run(
            self._fetchall,
            """
            SELECT * FROM procedural_memory
            WHERE agent_id = ? AND user_id = ? AND is_active = 1
            ORDER BY success_rate DESC, usage_count DESC
            LIMIT ?
            """,
            (agent_id, user_id, limit),
        )

    async def search_behaviors(self, agent_id: str, user_id: str, text: str, limit: int) -> List[Row]:
        like = f"%{text}%"
        return await self._run(
            self._fetchall,
            """
            SELECT * FROM procedural_memory
            WHERE agent_id = ? AND user_id = ? AND is_active = 1
              AND (procedure_data LIKE ? OR context_conditions LIKE ?
                   OR procedure_name LIKE ? OR procedure_type LIKE ?)
            ORDER BY success_rate DESC, usage_count DESC
            LIMIT ?
            """,
            (agent_id, user_id, like, like, like, like, limit),
        )

    async def warm_behaviors(self, agent_id: str, user_id: str, *, min_effectiveness: float, limit: int) -> List[Row]:
        return await self._run(
            self._fetchall,
            """
            SELECT * FROM procedural_memory
            WHERE agent_id = ? AND user_id = ? AND is_active = 1 AND effectiveness_score >= ?
            ORDER BY usage_count DESC
            LIMIT ?
            """,
            (agent_id, user_id, min_effectiveness, limit),
        )

    async def behavior_label_stats(self, agent_id: str, user_id: str) -> List[Row]:
        return await self._run(
            self._fetchall,
            """
            SELECT procedure_type AS label,
                   COUNT(*) AS frequency,
                   AVG(effectiveness_score) AS avg_score,
                   AVG(usage_count) AS avg_usage
            FROM procedural_memory
            WHERE agent_id = ? AND user_id = ?
            GROUP BY procedure_type
            """,
            (agent_id, user_id),
        )

    async def count_behaviors(self, agent_id: str, user_id: str) -> int:
        row = await self._run(
            self._fetchone,
            "SELECT COUNT(*) AS n FROM procedural_memory WHERE agent_id = ? AND user_id = ?",
            (agent_id, user_id),
        )
        return int(row["n"])

    async def delete_behavior(self, behavior_id: str, agent_id: str, user_id: str) -> bool:
        changed = await self._run(
            self._write,
            "DELETE FROM procedural_memory WHERE id = ? AND agent_id = ? AND user_id = ?",
            (behavior_id, agent_id, user_id),
        )
        return changed > 0

    async def evict_stale_behaviors(
        self,
        agent_id: str,
        user_id: str,
        *,
        created_before: float,
        usage_floor: int,
        effectiveness_floor: float,
    ) -> int:
        return await self._run(
            self._write,
            """
            DELETE FROM procedural_memory
            WHERE agent_id = ? AND user_id = ?
              AND effectiveness_score < ?
              AND usage_count < ?
              AND created_at < ?
            """,
            (agent_id, user_id, effectiveness_floor, usage_floor, created_before),
        )
