"""
Caller-facing engine surface.

Wraps the memory manager, session manager and streaming orchestrator
behind one object whose methods return plain result dicts
(`{"success": True, ...}` or `{"success": False, "error": ...}`), ready to
be bridged to a UI process.
"""

import logging
from typing import Callable, Optional

from .config import Config
from .errors import LTMError
from .llm.base import ChunkCallback, InferenceEngine
from .llm.factory import create_inference_engine
from .llm.session import SessionManager
from .memory.memory_manager import MemoryManager, create_memory_manager
from .orchestrator import PromptPayload, StreamingOrchestrator
from .persona import GLOBAL_PERSONA

logger = logging.getLogger("ltm.api")


class MemoryEngine:
    """Long-term memory engine: ingestion, retrieval, sessions and streaming."""

    def __init__(
        self,
        memory: MemoryManager,
        engine: InferenceEngine,
        sessions: SessionManager,
        orchestrator: StreamingOrchestrator,
    ):
        self.memory = memory
        self.engine = engine
        self.sessions = sessions
        self.orchestrator = orchestrator

    @classmethod
    async def create(cls, cfg: Config) -> "MemoryEngine":
        """Build and initialize every component from configuration."""
        memory = await create_memory_manager(
            store_type=cfg.memory.store_type,
            embedding_provider=cfg.memory.embedding_provider,
            openai_api_key=cfg.openai.api_key,
            embedding_model=cfg.memory.embedding_model,
            embedding_dimensions=cfg.memory.embedding_dimensions,
            db_path=cfg.memory.db_path,
            postgres_url=cfg.memory.postgres_url,
            chroma_path=cfg.memory.chroma_path,
            relevance_cutoff=cfg.memory.relevance_cutoff,
            isolation_overfetch=cfg.memory.isolation_overfetch,
        )
        engine = create_inference_engine(
            cfg.inference.engine,
            base_url=cfg.inference.base_url,
            api_key=cfg.inference.api_key,
            context_size=cfg.inference.context_size,
            gpu_layers=cfg.inference.gpu_layers,
            vision_gpu_layers=cfg.inference.vision_gpu_layers,
            request_timeout=cfg.inference.request_timeout,
        )
        sessions = SessionManager(
            engine,
            context_size=cfg.inference.context_size,
            settle_delay=cfg.inference.settle_delay,
        )
        orchestrator = StreamingOrchestrator(
            memory,
            sessions,
            retrieval_limit=cfg.orchestrator.retrieval_limit,
            vision_timeout=cfg.inference.vision_timeout,
            temperature=cfg.inference.temperature,
            auto_ingest=cfg.orchestrator.auto_ingest,
            auto_ingest_min_chars=cfg.orchestrator.auto_ingest_min_chars,
            auto_ingest_tag=cfg.orchestrator.auto_ingest_tag,
        )
        logger.info(
            f"Engine ready (store={cfg.memory.store_type}, inference={engine.provider_name})"
        )
        return cls(memory, engine, sessions, orchestrator)

    async def ingest(
        self,
        text: str,
        tags: list[str] | str | None = None,
        persona: str = GLOBAL_PERSONA,
    ) -> dict:
        try:
            entry_id = await self.memory.ingest(text, tags, persona)
        except LTMError as e:
            logger.error(f"Ingest failed: {e}")
            return {"success": False, "error": str(e)}
        return {"success": True, "id": entry_id}

    async def retrieve(
        self,
        query: str,
        limit: int = 5,
        persona: Optional[str] = None,
        isolate: bool = False,
    ) -> dict:
        try:
            results = await self.memory.retrieve(query, limit, persona, isolate)
        except LTMError as e:
            logger.error(f"Retrieve failed: {e}")
            return {"success": False, "error": str(e)}
        return {"success": True, "results": [r.to_dict() for r in results]}

    async def clear(self) -> dict:
        try:
            await self.memory.clear()
        except LTMError as e:
            logger.error(f"Clear failed: {e}")
            return {"success": False, "error": str(e)}
        return {"success": True}

    async def create_session(
        self,
        model_id: str,
        system_prompt: str = "",
        context_size: int | None = None,
    ) -> dict:
        try:
            await self.sessions.create_session(model_id, system_prompt, context_size)
        except LTMError as e:
            return {"success": False, "error": str(e)}
        return {"success": True}

    async def stream_response(
        self,
        payload: PromptPayload,
        on_chunk: ChunkCallback,
        on_done: Optional[Callable[[str], None]] = None,
        on_error: Optional[Callable[[str], None]] = None,
    ) -> dict:
        """
        Stream a reply, then report completion through `on_done`.

        A failed generation still completes (with the error fragment
        already streamed); only retrieval and missing-session failures
        go to `on_error`.
        """
        try:
            reply = await self.orchestrator.stream_response(payload, on_chunk)
        except LTMError as e:
            logger.error(f"Stream failed: {e}")
            if on_error:
                on_error(str(e))
            return {"success": False, "error": str(e)}

        if on_done:
            on_done(reply or "")
        return {"success": reply is not None}

    async def close(self) -> None:
        """Finish background work and release every resource."""
        await self.orchestrator.drain()
        await self.sessions.dispose()
        await self.engine.close()
        await self.memory.close()
        logger.info("Engine shut down")
