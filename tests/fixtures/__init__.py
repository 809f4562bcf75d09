"""
Test doubles and sample data for LTM engine tests.
"""

import asyncio
import math
import zlib
from datetime import datetime
from typing import Optional
from unittest.mock import MagicMock

from ltm.llm.base import ChatTurn, ChunkCallback, GenerationOptions, InferenceEngine
from ltm.memory.base import MemoryEntry, RetrievedMemory, VectorStore
from ltm.memory.embeddings import EmbeddingService
from ltm.persona import GLOBAL_PERSONA

DIM = 384


def normalize(vector: list[float]) -> list[float]:
    norm = math.sqrt(sum(x * x for x in vector))
    if norm == 0:
        return unit_vector(0)
    return [x / norm for x in vector]


def unit_vector(axis: int, dim: int = DIM) -> list[float]:
    vector = [0.0] * dim
    vector[axis] = 1.0
    return vector


def vector_at_distance(distance: float, axis: int = 1, dim: int = DIM) -> list[float]:
    """Unit vector whose cosine distance to unit_vector(0) is `distance`."""
    cos = 1.0 - distance
    sin = math.sqrt(max(0.0, 1.0 - cos * cos))
    vector = [0.0] * dim
    vector[0] = cos
    vector[axis] = sin
    return vector


def cosine_distance(a: list[float], b: list[float]) -> float:
    dot = sum(x * y for x, y in zip(a, b))
    na = math.sqrt(sum(x * x for x in a))
    nb = math.sqrt(sum(y * y for y in b))
    return 1.0 - dot / (na * nb)


class FakeEmbeddingService(EmbeddingService):
    """
    Deterministic bag-of-words embeddings.

    Each lower-cased word is hashed into one dimension. `overrides` pins
    exact vectors for chosen texts.
    """

    def __init__(self, overrides: Optional[dict[str, list[float]]] = None, dim: int = DIM):
        self.overrides = dict(overrides or {})
        self._dim = dim
        self.calls: list[str] = []

    @property
    def dimension(self) -> int:
        return self._dim

    async def embed(self, text: str) -> list[float]:
        self.calls.append(text)
        if text in self.overrides:
            return list(self.overrides[text])
        vector = [0.0] * self._dim
        for word in text.lower().split():
            word = word.strip(".,!?\"'")
            if word:
                vector[zlib.crc32(word.encode()) % self._dim] += 1.0
        return normalize(vector)


class FakeVectorStore(VectorStore):
    """In-memory vector store with exact cosine search."""

    def __init__(self):
        self.entries: dict[int, MemoryEntry] = {}
        self.vectors: dict[int, list[float]] = {}
        self._next_id = 1
        self.initialized = False
        self.closed = False

    async def initialize(self) -> None:
        self.initialized = True

    async def add(self, text, tags, persona, embedding) -> MemoryEntry:
        entry = MemoryEntry(id=self._next_id, text=text, tags=list(tags), persona=persona)
        self._next_id += 1
        self.entries[entry.id] = entry
        self.vectors[entry.id] = list(embedding)
        return entry

    async def nearest(self, query_embedding, k) -> list[RetrievedMemory]:
        scored = sorted(
            (cosine_distance(query_embedding, vector), entry_id)
            for entry_id, vector in self.vectors.items()
        )
        results = []
        for distance, entry_id in scored[:k]:
            entry = self.entries[entry_id]
            results.append(RetrievedMemory(
                id=entry.id,
                text=entry.text,
                tags=list(entry.tags),
                persona=entry.persona,
                created_at=entry.created_at,
                distance=distance,
            ))
        return results

    async def get(self, entry_id) -> Optional[MemoryEntry]:
        return self.entries.get(entry_id)

    async def delete(self, entry_id) -> bool:
        self.vectors.pop(entry_id, None)
        return self.entries.pop(entry_id, None) is not None

    async def clear(self) -> None:
        self.entries.clear()
        self.vectors.clear()

    async def count(self) -> int:
        return len(self.entries)

    async def close(self) -> None:
        self.closed = True


class FakeEngine(InferenceEngine):
    """
    Scripted inference engine that records every lifecycle call.

    `events` holds tuples like ("load", model_id) in call order.
    """

    def __init__(
        self,
        chunks: Optional[list[str]] = None,
        delay: float = 0.0,
        stream_error: Optional[Exception] = None,
        load_error: Optional[Exception] = None,
        context_error: Optional[Exception] = None,
        max_context: Optional[int] = None,
    ):
        super().__init__()
        self.chunks = chunks if chunks is not None else ["Hello", " there", "."]
        self.delay = delay
        self.stream_error = stream_error
        self.load_error = load_error
        self.context_error = context_error
        self.max_context = max_context
        self.events: list[tuple] = []
        self.requests: list[list[ChatTurn]] = []
        self.options: list[GenerationOptions] = []
        self.closed = False

    @property
    def provider_name(self) -> str:
        return "fake"

    async def load_model(self, model_id: str) -> None:
        self.events.append(("load", model_id))
        if self.load_error:
            raise self.load_error
        self._loaded_model = model_id

    async def unload_model(self) -> None:
        self.events.append(("unload", self._loaded_model))
        self._loaded_model = None

    async def create_context(self, context_size: int) -> int:
        self.events.append(("create_context", context_size))
        if self.context_error:
            raise self.context_error
        return min(context_size, self.max_context) if self.max_context else context_size

    async def dispose_context(self) -> None:
        self.events.append(("dispose_context",))

    async def stream_chat(
        self,
        messages: list[ChatTurn],
        on_chunk: ChunkCallback,
        options: GenerationOptions | None = None,
    ) -> str:
        self.requests.append(list(messages))
        self.options.append(options)
        parts = []
        for chunk in self.chunks:
            if self.delay:
                await asyncio.sleep(self.delay)
            parts.append(chunk)
            on_chunk(chunk)
        if self.stream_error:
            raise self.stream_error
        return "".join(parts)

    async def close(self) -> None:
        self.closed = True


def make_memory(
    id: int = 1,
    text: str = "User likes milk",
    tags: Optional[list[str]] = None,
    persona: str = GLOBAL_PERSONA,
    distance: float = 0.2,
) -> RetrievedMemory:
    """Create a sample retrieval hit."""
    return RetrievedMemory(
        id=id,
        text=text,
        tags=tags if tags is not None else ["preference"],
        persona=persona,
        created_at=datetime(2024, 1, 1, 12, 0, 0),
        distance=distance,
    )


def make_openai_stream(*contents):
    """Async iterator of streamed chat chunks carrying the given deltas."""
    async def stream():
        for content in contents:
            choice = MagicMock()
            choice.delta.content = content
            chunk = MagicMock()
            chunk.choices = [choice]
            yield chunk
    return stream()
