"""
SQLite + sqlite-vec Vector Store Implementation.

The default single-file backend:
- `memories` holds the entry rows (AUTOINCREMENT ids, never reused)
- `vec_memories` is a sqlite-vec `vec0` index keyed by entry id, cosine metric
- WAL mode so similarity searches never block each other or a writer
- Entry and vector rows are always written and deleted in one transaction

Every call opens its own connection in a worker thread; SQLite
connections are not shared across threads.
"""

import asyncio
import logging
import sqlite3
from datetime import datetime
from pathlib import Path
from typing import Optional

from ..errors import StoreError
from ..persona import GLOBAL_PERSONA
from .base import MemoryEntry, RetrievedMemory, VectorStore, normalize_tags

logger = logging.getLogger("ltm.memory.sqlite")

# vec0 rejects KNN queries with k above this
MAX_KNN = 4096


class SqliteVecStore(VectorStore):
    """
    sqlite-vec implementation of the vector store.

    Stores memories in a local SQLite file with full persistence.
    """

    def __init__(
        self,
        db_path: str = "ltm-memory.db",
        embedding_dimension: int = 384,
    ):
        if db_path == ":memory:" or db_path.startswith("file::memory:"):
            # Each connection would open its own empty in-memory database
            raise ValueError("SqliteVecStore needs a database file; in-memory databases are not supported")
        self.db_path = db_path
        self.embedding_dimension = embedding_dimension
        self._initialized = False
        logger.info(f"SqliteVecStore configured with database: {db_path}")

    def _connect(self) -> sqlite3.Connection:
        """Open a connection with the sqlite-vec extension loaded."""
        try:
            import sqlite_vec
        except ImportError:
            raise StoreError("sqlite-vec not installed. Install with: pip install sqlite-vec")

        conn = sqlite3.connect(self.db_path, timeout=5.0)
        try:
            conn.row_factory = sqlite3.Row
            conn.execute("PRAGMA busy_timeout=5000")
            conn.enable_load_extension(True)
            sqlite_vec.load(conn)
            conn.enable_load_extension(False)
        except (sqlite3.Error, AttributeError) as e:
            conn.close()
            raise StoreError(f"Failed to load sqlite-vec extension: {e}") from e
        return conn

    def _serialize(self, embedding: list[float]) -> bytes:
        from sqlite_vec import serialize_float32

        if len(embedding) != self.embedding_dimension:
            raise StoreError(
                f"Embedding has {len(embedding)} dimensions, store expects {self.embedding_dimension}"
            )
        return serialize_float32(list(embedding))

    # ------------------------------------------------------------------
    # Schema
    # ------------------------------------------------------------------

    def _init_db(self) -> None:
        """Create schema and run one-time migrations."""
        Path(self.db_path).parent.mkdir(parents=True, exist_ok=True)

        conn = self._connect()
        try:
            conn.execute("PRAGMA journal_mode=WAL")
            conn.execute("""
                CREATE TABLE IF NOT EXISTS memories (
                    id INTEGER PRIMARY KEY AUTOINCREMENT,
                    text TEXT NOT NULL,
                    tags TEXT NOT NULL DEFAULT '',
                    persona TEXT NOT NULL DEFAULT 'Global',
                    created_at TIMESTAMP NOT NULL
                )
            """)
            self._migrate(conn)

            conn.execute("""
                CREATE INDEX IF NOT EXISTS idx_memories_persona
                ON memories(persona)
            """)

            conn.execute(f"""
                CREATE VIRTUAL TABLE IF NOT EXISTS vec_memories USING vec0(
                    entry_id INTEGER PRIMARY KEY,
                    embedding float[{self.embedding_dimension}] distance_metric=cosine
                )
            """)
            conn.commit()
        except sqlite3.Error as e:
            raise StoreError(f"Failed to initialize memory database: {e}") from e
        finally:
            conn.close()

    def _migrate(self, conn: sqlite3.Connection) -> None:
        """Add the persona column to databases created before personas existed."""
        columns = {row["name"] for row in conn.execute("PRAGMA table_info(memories)")}
        if "persona" not in columns:
            conn.execute(
                f"ALTER TABLE memories ADD COLUMN persona TEXT DEFAULT '{GLOBAL_PERSONA}'"
            )
            logger.info("Added persona column to memories table")
        conn.execute(
            "UPDATE memories SET persona = ? WHERE persona IS NULL",
            (GLOBAL_PERSONA,),
        )

    async def initialize(self) -> None:
        """Create the database file and tables."""
        await asyncio.to_thread(self._init_db)
        self._initialized = True
        count = await self.count()
        logger.info(f"sqlite-vec store initialized with {count} existing memories")

    def _ensure_initialized(self) -> None:
        """Ensure the store is initialized."""
        if not self._initialized:
            raise StoreError("SqliteVecStore not initialized. Call initialize() first.")

    # ------------------------------------------------------------------
    # Writes
    # ------------------------------------------------------------------

    def _add_sync(
        self,
        text: str,
        tags: list[str],
        persona: str,
        embedding: list[float],
    ) -> MemoryEntry:
        vector = self._serialize(embedding)
        created_at = datetime.now()

        conn = self._connect()
        try:
            # `with conn` rolls the entry insert back if the vector insert fails
            with conn:
                cursor = conn.execute(
                    "INSERT INTO memories (text, tags, persona, created_at) VALUES (?, ?, ?, ?)",
                    (text, ",".join(tags), persona, created_at.isoformat()),
                )
                entry_id = cursor.lastrowid
                try:
                    conn.execute(
                        "INSERT INTO vec_memories (entry_id, embedding) VALUES (?, ?)",
                        (entry_id, vector),
                    )
                except sqlite3.Error as e:
                    logger.error(f"Vector insert failed for entry {entry_id}, rolling back entry: {e}")
                    raise
        except sqlite3.Error as e:
            raise StoreError(f"Failed to store memory: {e}") from e
        finally:
            conn.close()

        return MemoryEntry(
            id=entry_id,
            text=text,
            tags=list(tags),
            persona=persona,
            created_at=created_at,
        )

    async def add(
        self,
        text: str,
        tags: list[str],
        persona: str,
        embedding: list[float],
    ) -> MemoryEntry:
        """Store an entry and its embedding in a single transaction."""
        self._ensure_initialized()
        entry = await asyncio.to_thread(self._add_sync, text, tags, persona, embedding)
        logger.debug(f"Stored memory {entry.id} (persona={persona})")
        return entry

    def _delete_sync(self, entry_id: int) -> bool:
        conn = self._connect()
        try:
            with conn:
                conn.execute("DELETE FROM vec_memories WHERE entry_id = ?", (entry_id,))
                cursor = conn.execute("DELETE FROM memories WHERE id = ?", (entry_id,))
                return cursor.rowcount > 0
        except sqlite3.Error as e:
            raise StoreError(f"Failed to delete memory {entry_id}: {e}") from e
        finally:
            conn.close()

    async def delete(self, entry_id: int) -> bool:
        """Delete one entry and its vector."""
        self._ensure_initialized()
        return await asyncio.to_thread(self._delete_sync, entry_id)

    def _clear_sync(self) -> None:
        conn = self._connect()
        try:
            with conn:
                conn.execute("DELETE FROM vec_memories")
                conn.execute("DELETE FROM memories")
        except sqlite3.Error as e:
            raise StoreError(f"Failed to clear memory: {e}") from e
        finally:
            conn.close()

    async def clear(self) -> None:
        """Delete all vectors and entries in one transaction."""
        self._ensure_initialized()
        await asyncio.to_thread(self._clear_sync)
        logger.info("sqlite-vec store cleared")

    # ------------------------------------------------------------------
    # Reads
    # ------------------------------------------------------------------

    def _row_to_entry(self, row: sqlite3.Row) -> MemoryEntry:
        return MemoryEntry(
            id=row["id"],
            text=row["text"],
            tags=normalize_tags(row["tags"]),
            persona=row["persona"] or GLOBAL_PERSONA,
            created_at=datetime.fromisoformat(row["created_at"]),
        )

    def _nearest_sync(self, query_embedding: list[float], k: int) -> list[RetrievedMemory]:
        vector = self._serialize(query_embedding)

        conn = self._connect()
        try:
            rows = conn.execute(
                """
                WITH knn AS (
                    SELECT entry_id, distance
                    FROM vec_memories
                    WHERE embedding MATCH ? AND k = ?
                )
                SELECT m.id, m.text, m.tags, m.persona, m.created_at, knn.distance
                FROM knn
                JOIN memories m ON m.id = knn.entry_id
                ORDER BY knn.distance
                """,
                (vector, k),
            ).fetchall()
        except sqlite3.Error as e:
            raise StoreError(f"Similarity search failed: {e}") from e
        finally:
            conn.close()

        results = []
        for row in rows:
            entry = self._row_to_entry(row)
            results.append(RetrievedMemory(
                id=entry.id,
                text=entry.text,
                tags=entry.tags,
                persona=entry.persona,
                created_at=entry.created_at,
                distance=float(row["distance"]),
            ))
        return results

    async def nearest(
        self,
        query_embedding: list[float],
        k: int,
    ) -> list[RetrievedMemory]:
        """k-NN search over the vec0 index."""
        self._ensure_initialized()
        if k <= 0:
            return []
        return await asyncio.to_thread(self._nearest_sync, query_embedding, min(k, MAX_KNN))

    def _get_sync(self, entry_id: int) -> Optional[MemoryEntry]:
        conn = self._connect()
        try:
            row = conn.execute(
                "SELECT id, text, tags, persona, created_at FROM memories WHERE id = ?",
                (entry_id,),
            ).fetchone()
        except sqlite3.Error as e:
            raise StoreError(f"Failed to read memory {entry_id}: {e}") from e
        finally:
            conn.close()
        return self._row_to_entry(row) if row else None

    async def get(self, entry_id: int) -> Optional[MemoryEntry]:
        """Get a specific memory by id."""
        self._ensure_initialized()
        return await asyncio.to_thread(self._get_sync, entry_id)

    def _count_sync(self) -> int:
        conn = self._connect()
        try:
            return conn.execute("SELECT COUNT(*) FROM memories").fetchone()[0]
        except sqlite3.Error as e:
            raise StoreError(f"Failed to count memories: {e}") from e
        finally:
            conn.close()

    async def count(self) -> int:
        """Get total number of stored memories."""
        self._ensure_initialized()
        return await asyncio.to_thread(self._count_sync)

    async def close(self) -> None:
        """Nothing is held open between calls."""
        self._initialized = False
        logger.info("sqlite-vec store closed")
