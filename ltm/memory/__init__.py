"""
Vector Memory System for long-term conversational memory.

Stores short memory records with their embeddings and retrieves them
by semantic similarity, optionally scoped to a persona.
"""

from .base import MemoryEntry, RetrievedMemory, VectorStore
from .embeddings import EmbeddingService, create_embedding_service
from .sqlite_store import SqliteVecStore
from .chroma_store import ChromaVectorStore
from .pgvector_store import PgVectorStore
from .memory_manager import MemoryManager, create_memory_manager

__all__ = [
    "MemoryEntry",
    "RetrievedMemory",
    "VectorStore",
    "EmbeddingService",
    "create_embedding_service",
    "SqliteVecStore",
    "ChromaVectorStore",
    "PgVectorStore",
    "MemoryManager",
    "create_memory_manager",
]
