"""
Memory Manager - Orchestrates the vector memory system.

This is the high-level interface that callers and the streaming
pipeline use. It handles:
- Validating and embedding new memories before anything is written
- Persona-scoped similarity search with a relevance cutoff
- Wiping the store
"""

import logging
from typing import Literal, Optional

from ..errors import IngestError, RetrievalError, StoreError
from ..persona import GLOBAL_PERSONA
from .base import MemoryEntry, RetrievedMemory, VectorStore, normalize_tags
from .embeddings import EmbeddingService, create_embedding_service
from .sqlite_store import SqliteVecStore

logger = logging.getLogger("ltm.memory.manager")

DEFAULT_RELEVANCE_CUTOFF = 0.75
DEFAULT_ISOLATION_OVERFETCH = 15


class MemoryManager:
    """
    High-level long-term memory store.

    Wraps a VectorStore backend with embedding generation and the
    retrieval rules: persona isolation, relevance cutoff, and
    best-match-first truncation.
    """

    def __init__(
        self,
        vector_store: VectorStore,
        embedding_service: EmbeddingService,
        relevance_cutoff: float = DEFAULT_RELEVANCE_CUTOFF,
        isolation_overfetch: int = DEFAULT_ISOLATION_OVERFETCH,
    ):
        self.vector_store = vector_store
        self.embedding_service = embedding_service
        self.relevance_cutoff = relevance_cutoff
        self.isolation_overfetch = isolation_overfetch
        self._initialized = False
        logger.info(
            f"MemoryManager created (cutoff={relevance_cutoff}, overfetch={isolation_overfetch})"
        )

    async def initialize(self) -> None:
        """Initialize the memory system."""
        await self.vector_store.initialize()
        self._initialized = True
        count = await self.vector_store.count()
        logger.info(f"MemoryManager initialized with {count} stored memories")

    def _ensure_initialized(self) -> None:
        """Ensure the system is initialized."""
        if not self._initialized:
            raise RuntimeError("MemoryManager not initialized. Call initialize() first.")

    async def ingest(
        self,
        text: str,
        tags: list[str] | str | None = None,
        persona: str = GLOBAL_PERSONA,
    ) -> int:
        """
        Embed and store a memory.

        Args:
            text: Memory text (must not be blank)
            tags: Tag list or comma-separated string
            persona: Persona label, "Global" for shared memories

        Returns:
            The id of the new entry

        Raises:
            IngestError: Blank text, embedding failure (nothing written),
                or a store failure (partial writes rolled back)
        """
        self._ensure_initialized()

        if not text or not text.strip():
            raise IngestError("Memory text must not be empty")

        tag_list = normalize_tags(tags)
        persona = persona or GLOBAL_PERSONA
        logger.debug(f"Ingesting memory ({len(text)} chars, persona={persona}, tags={tag_list})")

        try:
            embedding = await self.embedding_service.embed(text)
        except Exception as e:
            raise IngestError(f"Embedding failed, nothing stored: {e}") from e

        try:
            entry = await self.vector_store.add(text, tag_list, persona, embedding)
        except StoreError as e:
            raise IngestError(f"Failed to store memory: {e}") from e

        logger.info(f"Stored memory {entry.id} with {len(embedding)}-dim embedding")
        return entry.id

    async def retrieve(
        self,
        query: str,
        limit: int = 5,
        persona: Optional[str] = None,
        isolate: bool = False,
    ) -> list[RetrievedMemory]:
        """
        Find the memories most similar to a query.

        Args:
            query: Free text to search for
            limit: Maximum number of results
            persona: Requesting persona (used only when isolating)
            isolate: Restrict results to `persona` plus the Global pool

        Returns:
            Hits under the relevance cutoff, best match first. May be empty.

        Raises:
            RetrievalError: Embedding or index query failed
        """
        self._ensure_initialized()

        if limit <= 0:
            return []

        # Over-fetch when isolating so persona filtering still leaves enough hits
        k = max(limit, self.isolation_overfetch) if isolate else limit
        requesting = persona or GLOBAL_PERSONA

        try:
            query_embedding = await self.embedding_service.embed(query)
        except Exception as e:
            raise RetrievalError(f"Query embedding failed: {e}") from e

        try:
            candidates = await self.vector_store.nearest(query_embedding, k)
        except StoreError as e:
            raise RetrievalError(f"Similarity search failed: {e}") from e

        if isolate:
            candidates = [
                c for c in candidates
                if c.persona == requesting or c.persona == GLOBAL_PERSONA
            ]

        relevant = [c for c in candidates if c.distance < self.relevance_cutoff]
        relevant.sort(key=lambda c: c.distance)
        results = relevant[:limit]

        logger.info(
            f"Retrieved {len(results)} memories (k={k}, candidates={len(candidates)}, "
            f"persona={requesting if isolate else '*'})"
        )
        for r in results:
            logger.debug(f"  - #{r.id} distance={r.distance:.3f}: {r.text[:60]}")

        return results

    async def clear(self) -> None:
        """Irreversibly delete every memory."""
        self._ensure_initialized()
        await self.vector_store.clear()
        logger.info("Long-term memory wiped")

    async def get(self, entry_id: int) -> Optional[MemoryEntry]:
        """Get a single memory by id."""
        self._ensure_initialized()
        return await self.vector_store.get(entry_id)

    async def delete(self, entry_id: int) -> bool:
        """Delete a single memory and its vector."""
        self._ensure_initialized()
        deleted = await self.vector_store.delete(entry_id)
        if deleted:
            logger.info(f"Deleted memory {entry_id}")
        return deleted

    async def count(self) -> int:
        """Number of stored memories."""
        self._ensure_initialized()
        return await self.vector_store.count()

    async def close(self) -> None:
        """Clean up resources."""
        await self.vector_store.close()
        self._initialized = False
        logger.info("MemoryManager closed")


async def create_memory_manager(
    store_type: Literal["sqlite", "chroma", "pgvector"] = "sqlite",
    embedding_provider: Literal["local", "openai"] = "local",
    openai_api_key: str = "",
    embedding_model: str = "",
    embedding_dimensions: int = 384,
    db_path: str = "ltm-memory.db",
    postgres_url: str = "",
    chroma_path: str = "./memory_store",
    relevance_cutoff: float = DEFAULT_RELEVANCE_CUTOFF,
    isolation_overfetch: int = DEFAULT_ISOLATION_OVERFETCH,
) -> MemoryManager:
    """
    Factory function to create a configured MemoryManager.

    Args:
        store_type: "sqlite" (default), "chroma" or "pgvector"
        embedding_provider: "local" or "openai"
        openai_api_key: Required for OpenAI embeddings
        embedding_model: Embedding model name ("" for provider default)
        embedding_dimensions: Vector width of the store
        db_path: SQLite database file for the sqlite store
        postgres_url: Required for pgvector store
        chroma_path: Path for ChromaDB storage
        relevance_cutoff: Maximum cosine distance returned by retrieve
        isolation_overfetch: Minimum neighbours fetched when isolating

    Returns:
        Initialized MemoryManager
    """
    embedding_service = create_embedding_service(
        provider=embedding_provider,
        api_key=openai_api_key,
        model=embedding_model,
        dimensions=embedding_dimensions if embedding_provider == "openai" else None,
    )

    if store_type == "sqlite":
        vector_store = SqliteVecStore(
            db_path=db_path,
            embedding_dimension=embedding_dimensions,
        )
    elif store_type == "chroma":
        from .chroma_store import ChromaVectorStore
        vector_store = ChromaVectorStore(persist_directory=chroma_path)
    elif store_type == "pgvector":
        if not postgres_url:
            raise ValueError("postgres_url required for pgvector store")
        from .pgvector_store import PgVectorStore
        vector_store = PgVectorStore(
            connection_string=postgres_url,
            embedding_dimension=embedding_dimensions,
        )
    else:
        raise ValueError(f"Unknown store type: {store_type}")

    manager = MemoryManager(
        vector_store=vector_store,
        embedding_service=embedding_service,
        relevance_cutoff=relevance_cutoff,
        isolation_overfetch=isolation_overfetch,
    )

    await manager.initialize()
    return manager
