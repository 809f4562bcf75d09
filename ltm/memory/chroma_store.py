"""
ChromaDB Vector Store Implementation.

ChromaDB is a convenient alternative for local use:
- No server required
- Stores everything in a local directory
- Document, embedding and metadata are written in a single call,
  so an entry can never exist without its vector

Chroma ids are strings; integer ids are assigned here, monotonically,
under a lock. The highest id ever issued is kept in a small file next to
the collection so ids are never reused, even after a wipe and a restart.
"""

import asyncio
import logging
from datetime import datetime
from pathlib import Path
from typing import Optional

from ..errors import StoreError
from ..persona import GLOBAL_PERSONA
from .base import MemoryEntry, RetrievedMemory, VectorStore, normalize_tags

logger = logging.getLogger("ltm.memory.chroma")


class ChromaVectorStore(VectorStore):
    """
    ChromaDB implementation of the vector store.

    Stores memories locally with full persistence.
    """

    def __init__(
        self,
        persist_directory: str = "./memory_store",
        collection_name: str = "ltm_memories",
    ):
        self.persist_directory = Path(persist_directory)
        self.collection_name = collection_name
        self._client = None
        self._collection = None
        self._last_id = 0
        self._write_lock = asyncio.Lock()
        logger.info(f"ChromaVectorStore configured with directory: {persist_directory}")

    async def initialize(self) -> None:
        """Initialize ChromaDB client and collection."""
        try:
            import chromadb
            from chromadb.config import Settings
        except ImportError:
            raise StoreError(
                "chromadb not installed. Install with: pip install chromadb"
            )

        # Create persist directory if needed
        self.persist_directory.mkdir(parents=True, exist_ok=True)

        # Initialize persistent client
        self._client = chromadb.PersistentClient(
            path=str(self.persist_directory),
            settings=Settings(
                anonymized_telemetry=False,
                allow_reset=True,
            ),
        )

        self._collection = self._client.get_or_create_collection(
            name=self.collection_name,
            metadata={"hnsw:space": "cosine", "description": "Long-term memory store"},
        )

        existing = self._collection.get(include=[])
        self._last_id = max(
            max((int(i) for i in existing["ids"]), default=0),
            self._read_high_water_mark(),
        )

        count = self._collection.count()
        logger.info(f"ChromaDB initialized with {count} existing memories")

    @property
    def _high_water_path(self) -> Path:
        return self.persist_directory / f"{self.collection_name}.last_id"

    def _read_high_water_mark(self) -> int:
        try:
            return int(self._high_water_path.read_text().strip() or 0)
        except FileNotFoundError:
            return 0
        except (OSError, ValueError) as e:
            logger.warning(f"Ignoring unreadable id high-water mark: {e}")
            return 0

    def _write_high_water_mark(self) -> None:
        try:
            self._high_water_path.write_text(str(self._last_id))
        except OSError as e:
            logger.warning(f"Could not record last memory id {self._last_id}: {e}")

    def _ensure_initialized(self) -> None:
        """Ensure the store is initialized."""
        if self._collection is None:
            raise StoreError("ChromaVectorStore not initialized. Call initialize() first.")

    def _metadata_to_entry(self, id: str, metadata: dict, document: str) -> MemoryEntry:
        """Convert ChromaDB metadata back to a MemoryEntry."""
        return MemoryEntry(
            id=int(id),
            text=document,
            tags=normalize_tags(metadata.get("tags", "")),
            persona=metadata.get("persona") or GLOBAL_PERSONA,
            created_at=datetime.fromisoformat(metadata["created_at"]),
        )

    async def add(
        self,
        text: str,
        tags: list[str],
        persona: str,
        embedding: list[float],
    ) -> MemoryEntry:
        """Store a memory with its embedding in one collection write."""
        self._ensure_initialized()

        async with self._write_lock:
            entry = MemoryEntry(
                id=self._last_id + 1,
                text=text,
                tags=list(tags),
                persona=persona,
            )
            try:
                self._collection.add(
                    ids=[str(entry.id)],
                    embeddings=[list(embedding)],
                    documents=[text],
                    metadatas=[{
                        "tags": entry.tags_csv,
                        "persona": persona,
                        "created_at": entry.created_at.isoformat(),
                    }],
                )
            except Exception as e:
                raise StoreError(f"Failed to store memory: {e}") from e
            self._last_id = entry.id
            self._write_high_water_mark()

        logger.debug(f"Stored new memory: {entry.id}")
        return entry

    async def nearest(
        self,
        query_embedding: list[float],
        k: int,
    ) -> list[RetrievedMemory]:
        """k-NN search over the collection."""
        self._ensure_initialized()

        try:
            total = self._collection.count()
            if total == 0 or k <= 0:
                return []

            results = self._collection.query(
                query_embeddings=[list(query_embedding)],
                n_results=min(k, total),
                include=["documents", "metadatas", "distances"],
            )
        except Exception as e:
            raise StoreError(f"Similarity search failed: {e}") from e

        hits = []
        if results["ids"] and results["ids"][0]:
            for i, id in enumerate(results["ids"][0]):
                entry = self._metadata_to_entry(
                    id=id,
                    metadata=results["metadatas"][0][i],
                    document=results["documents"][0][i],
                )
                hits.append(RetrievedMemory(
                    id=entry.id,
                    text=entry.text,
                    tags=entry.tags,
                    persona=entry.persona,
                    created_at=entry.created_at,
                    distance=float(results["distances"][0][i]),
                ))

        hits.sort(key=lambda x: x.distance)
        return hits

    async def get(self, entry_id: int) -> Optional[MemoryEntry]:
        """Get a specific memory by id."""
        self._ensure_initialized()

        results = self._collection.get(
            ids=[str(entry_id)],
            include=["documents", "metadatas"],
        )

        if results["ids"]:
            return self._metadata_to_entry(
                id=results["ids"][0],
                metadata=results["metadatas"][0],
                document=results["documents"][0],
            )
        return None

    async def delete(self, entry_id: int) -> bool:
        """Delete one memory."""
        self._ensure_initialized()

        async with self._write_lock:
            if not self._collection.get(ids=[str(entry_id)], include=[])["ids"]:
                return False
            try:
                self._collection.delete(ids=[str(entry_id)])
            except Exception as e:
                raise StoreError(f"Failed to delete memory {entry_id}: {e}") from e
        return True

    async def clear(self) -> None:
        """Delete every memory. Ids keep counting from where they were."""
        self._ensure_initialized()

        async with self._write_lock:
            try:
                ids = self._collection.get(include=[])["ids"]
                if ids:
                    self._collection.delete(ids=ids)
            except Exception as e:
                raise StoreError(f"Failed to clear memory: {e}") from e
        logger.info("ChromaDB store cleared")

    async def count(self) -> int:
        """Get total number of stored memories."""
        self._ensure_initialized()
        return self._collection.count()

    async def close(self) -> None:
        """Clean up resources."""
        # ChromaDB PersistentClient handles cleanup automatically
        self._client = None
        self._collection = None
        logger.info("ChromaDB connection closed")
