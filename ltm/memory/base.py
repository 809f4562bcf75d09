"""
Base interfaces and data structures for vector memory.

Defines the abstract contracts that different vector store
backends must implement.
"""

from abc import ABC, abstractmethod
from dataclasses import dataclass, field
from datetime import datetime
from typing import Optional

from ..persona import GLOBAL_PERSONA


def normalize_tags(tags) -> list[str]:
    """Ordered, de-duplicated, non-empty tag list from a list or CSV string."""
    if tags is None:
        return []
    if isinstance(tags, str):
        tags = tags.split(",")
    seen = set()
    result = []
    for tag in tags:
        tag = str(tag).strip()
        if tag and tag not in seen:
            seen.add(tag)
            result.append(tag)
    return result


@dataclass
class MemoryEntry:
    """
    A single stored memory.

    Entries are immutable once written; the only mutation is deletion,
    which always removes the paired vector as well.
    """
    id: int
    text: str
    tags: list[str] = field(default_factory=list)
    persona: str = GLOBAL_PERSONA
    created_at: datetime = field(default_factory=datetime.now)

    @property
    def tags_csv(self) -> str:
        return ",".join(self.tags)


@dataclass
class RetrievedMemory:
    """A retrieval hit: the entry fields plus its cosine distance to the query."""
    id: int
    text: str
    tags: list[str]
    persona: str
    created_at: datetime
    distance: float  # Cosine distance, 0 = identical

    def to_context_line(self) -> str:
        """Format this memory as one line of prompt context."""
        label = ", ".join(self.tags) if self.tags else "general"
        return f"- [{label}] {self.text}"

    def to_dict(self) -> dict:
        return {
            "id": self.id,
            "text": self.text,
            "tags": list(self.tags),
            "persona": self.persona,
            "created_at": self.created_at.isoformat(),
            "distance": self.distance,
        }


class VectorStore(ABC):
    """
    Abstract interface for vector storage backends.

    Every backend keeps a memory entry and its embedding as a pair:
    both exist or neither does, and readers never observe one without
    the other.

    Implementations: sqlite-vec (default), ChromaDB (local), pgvector (production)
    """

    @abstractmethod
    async def initialize(self) -> None:
        """Initialize the vector store (create tables, collections, etc.)."""
        pass

    @abstractmethod
    async def add(
        self,
        text: str,
        tags: list[str],
        persona: str,
        embedding: list[float],
    ) -> MemoryEntry:
        """
        Store an entry and its embedding atomically.

        Args:
            text: Memory text
            tags: Ordered tag list
            persona: Persona label
            embedding: The vector embedding

        Returns:
            The stored entry with its assigned id

        Raises:
            StoreError: If either write fails; nothing is left behind
        """
        pass

    @abstractmethod
    async def nearest(
        self,
        query_embedding: list[float],
        k: int,
    ) -> list[RetrievedMemory]:
        """
        k-nearest-neighbour search by cosine distance.

        Args:
            query_embedding: The embedding to search for
            k: Number of neighbours to return

        Returns:
            Up to k hits, ordered by ascending distance
        """
        pass

    @abstractmethod
    async def get(self, entry_id: int) -> Optional[MemoryEntry]:
        """Get a specific memory by id."""
        pass

    @abstractmethod
    async def delete(self, entry_id: int) -> bool:
        """Delete one entry and its vector. Returns False if it did not exist."""
        pass

    @abstractmethod
    async def clear(self) -> None:
        """Delete every entry and vector in one atomic step."""
        pass

    @abstractmethod
    async def count(self) -> int:
        """Get total number of stored memories."""
        pass

    @abstractmethod
    async def close(self) -> None:
        """Clean up resources."""
        pass
